import structlog

from docwatch.errors import PermanentAccessError
from docwatch.feishu.client import FeishuClient
from docwatch.tracking.doc_types import DocumentType, api_file_type, normalize_document_type
from docwatch.tracking.types import DocMetadata

log = structlog.get_logger()

META_PATH = "/open-apis/suite/docs-api/meta"


def _as_int(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_docs_meta(document_id: str, fallback_type: DocumentType, data: dict) -> DocMetadata:
    body = data.get("data") or {}
    for failed in body.get("failed_list") or []:
        if failed.get("token") == document_id:
            raise PermanentAccessError(document_id, "listed in failed_list", code=_as_int(failed.get("code")))

    metas = body.get("docs_metas") or []
    meta = next((m for m in metas if m.get("docs_token") == document_id), None)
    if meta is None and metas:
        meta = metas[0]
    if meta is None:
        raise PermanentAccessError(document_id, "no metadata returned")

    raw_type = meta.get("docs_type")
    document_type = normalize_document_type(raw_type) if raw_type else fallback_type
    return DocMetadata(
        document_id=meta.get("docs_token") or document_id,
        document_type=document_type,
        raw_type=raw_type,
        title=meta.get("title"),
        owner_id=meta.get("owner_id"),
        created_at=_as_int(meta.get("create_time")),
        last_modified_by=meta.get("latest_modify_user") or "unknown",
        last_modified_at=_as_int(meta.get("latest_modify_time")) or 0,
        revision=_as_int(meta.get("revision")),
    )


class MetadataClient:
    def __init__(self, client: FeishuClient) -> None:
        self.client = client

    async def fetch_metadata(
        self,
        document_id: str,
        document_type: DocumentType | str,
        raw_type: str | None = None,
    ) -> DocMetadata:
        """Current owner, last editor, last-modified time and revision of a document.

        Raises PermanentAccessError without retrying; transient failures are
        retried by the client and surface as TransientUpstreamError.
        """
        if isinstance(document_type, str) and not isinstance(document_type, DocumentType):
            raw_type = raw_type or document_type
        normalized = normalize_document_type(document_type)
        file_type = api_file_type(normalized, raw_type)

        data = await self.client.request(
            "POST",
            META_PATH,
            json={"request_docs": [{"docs_token": document_id, "docs_type": file_type}]},
            document_id=document_id,
        )
        metadata = parse_docs_meta(document_id, normalized, data)
        log.debug(
            "metadata_fetched",
            document_id=document_id,
            document_type=metadata.document_type.value,
            last_modified_by=metadata.last_modified_by,
            last_modified_at=metadata.last_modified_at,
        )
        return metadata
