from enum import Enum


class DocumentType(str, Enum):
    TEXT_DOC = "text-doc"
    SPREADSHEET = "spreadsheet"
    STRUCTURED_TABLE = "structured-table"
    GENERIC_FILE = "generic-file"


_RAW_TYPES: dict[str, DocumentType] = {
    "doc": DocumentType.TEXT_DOC,
    "docx": DocumentType.TEXT_DOC,
    "docs": DocumentType.TEXT_DOC,
    "document": DocumentType.TEXT_DOC,
    "documents": DocumentType.TEXT_DOC,
    "wiki": DocumentType.TEXT_DOC,
    "sheet": DocumentType.SPREADSHEET,
    "sheets": DocumentType.SPREADSHEET,
    "spreadsheet": DocumentType.SPREADSHEET,
    "bitable": DocumentType.STRUCTURED_TABLE,
    "base": DocumentType.STRUCTURED_TABLE,
    "table": DocumentType.STRUCTURED_TABLE,
    "database": DocumentType.STRUCTURED_TABLE,
}

# file_type values accepted by the drive subscribe and docs meta endpoints
_API_TYPES = {"doc", "docx", "sheet", "bitable", "file"}

_DEFAULT_API_TYPE: dict[DocumentType, str] = {
    DocumentType.TEXT_DOC: "docx",
    DocumentType.SPREADSHEET: "sheet",
    DocumentType.STRUCTURED_TABLE: "bitable",
    DocumentType.GENERIC_FILE: "file",
}


def normalize_document_type(raw: str | DocumentType | None) -> DocumentType:
    """Collapse an upstream type string into the closed DocumentType set.

    Unknown or empty values fall back to GENERIC_FILE instead of raising.
    """
    if isinstance(raw, DocumentType):
        return raw
    if not raw:
        return DocumentType.GENERIC_FILE
    key = str(raw).strip().lower()
    try:
        return DocumentType(key)
    except ValueError:
        return _RAW_TYPES.get(key, DocumentType.GENERIC_FILE)


def api_file_type(document_type: DocumentType, raw_type: str | None = None) -> str:
    """Upstream ``file_type`` parameter for a document.

    The raw type wins when it is one the API understands and agrees with the
    normalized type, so legacy ``doc`` files are not addressed as ``docx``.
    """
    if raw_type:
        key = raw_type.strip().lower()
        if key in _API_TYPES and normalize_document_type(key) == document_type:
            return key
    return _DEFAULT_API_TYPE[document_type]
