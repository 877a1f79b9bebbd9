import json

import structlog

from docwatch.feishu.client import FeishuClient
from docwatch.tracking.doc_types import DocumentType, api_file_type

log = structlog.get_logger()

MAX_SHEET_RANGE = "A1:Z500"
MAX_TABLE_RECORDS = 500


class ContentFetcher:
    """Downloads a plain-text rendering of a document for snapshotting.

    Sheets and tables are rendered with ``## <name>`` heading lines so the diff
    can report which sheet or table changed.
    """

    def __init__(self, client: FeishuClient) -> None:
        self.client = client

    async def fetch(
        self, document_id: str, document_type: DocumentType, raw_type: str | None = None
    ) -> str | None:
        if document_type == DocumentType.TEXT_DOC:
            return await self._fetch_text(document_id, api_file_type(document_type, raw_type))
        if document_type == DocumentType.SPREADSHEET:
            return await self._fetch_sheet(document_id)
        if document_type == DocumentType.STRUCTURED_TABLE:
            return await self._fetch_table(document_id)
        return None

    async def _fetch_text(self, document_id: str, file_type: str) -> str:
        if file_type == "doc":
            path = f"/open-apis/doc/v2/{document_id}/raw_content"
        else:
            path = f"/open-apis/docx/v1/documents/{document_id}/raw_content"
        data = await self.client.request("GET", path, document_id=document_id)
        return (data.get("data") or {}).get("content") or ""

    async def _fetch_sheet(self, document_id: str) -> str:
        meta = await self.client.request(
            "GET",
            f"/open-apis/sheets/v2/spreadsheets/{document_id}/metainfo",
            document_id=document_id,
        )
        sheets = (meta.get("data") or {}).get("sheets") or []
        lines: list[str] = []
        for sheet in sheets:
            sheet_id = sheet.get("sheetId")
            if not sheet_id:
                continue
            values = await self.client.request(
                "GET",
                f"/open-apis/sheets/v2/spreadsheets/{document_id}/values/{sheet_id}!{MAX_SHEET_RANGE}",
                document_id=document_id,
            )
            rows = ((values.get("data") or {}).get("valueRange") or {}).get("values") or []
            lines.append(f"## {sheet.get('title') or sheet_id}")
            for row in rows:
                cells = ["" if cell is None else str(cell) for cell in row or []]
                if any(cells):
                    lines.append("\t".join(cells).rstrip())
        return "\n".join(lines)

    async def _fetch_table(self, document_id: str) -> str:
        tables = await self.client.request(
            "GET",
            f"/open-apis/bitable/v1/apps/{document_id}/tables",
            params={"page_size": 100},
            document_id=document_id,
        )
        lines: list[str] = []
        for table in (tables.get("data") or {}).get("items") or []:
            table_id = table.get("table_id")
            if not table_id:
                continue
            records = await self.client.request(
                "GET",
                f"/open-apis/bitable/v1/apps/{document_id}/tables/{table_id}/records",
                params={"page_size": MAX_TABLE_RECORDS},
                document_id=document_id,
            )
            lines.append(f"## {table.get('name') or table_id}")
            for record in (records.get("data") or {}).get("items") or []:
                lines.append(
                    json.dumps(record.get("fields") or {}, ensure_ascii=False, sort_keys=True)
                )
        return "\n".join(lines)
