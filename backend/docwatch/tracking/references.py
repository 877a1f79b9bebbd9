import re
from dataclasses import dataclass

from docwatch.errors import InvalidDocumentReference
from docwatch.tracking.doc_types import DocumentType, normalize_document_type

_URL_PATTERN = re.compile(
    r"https?://[\w.-]+\.(?:feishu\.cn|larksuite\.com|larkoffice\.com)"
    r"/(docs|docx|sheets|base|bitable|wiki|file)/([A-Za-z0-9]+)"
)
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9]{10,64}$")

_PATH_TYPES = {
    "docs": "doc",
    "docx": "docx",
    "sheets": "sheet",
    "base": "bitable",
    "bitable": "bitable",
    "wiki": "wiki",
    "file": "file",
}


@dataclass(frozen=True)
class DocumentReference:
    document_id: str
    document_type: DocumentType
    raw_type: str | None = None


def parse_document_reference(text: str, document_type: str | None = None) -> DocumentReference:
    """Accept a document URL or a bare token.

    An explicit ``document_type`` wins over the one implied by the URL path.
    Bare tokens default to a text document.
    """
    text = text.strip()
    match = _URL_PATTERN.search(text)
    if match:
        raw_type = _PATH_TYPES[match.group(1)]
        token = match.group(2)
    elif _TOKEN_PATTERN.match(text):
        raw_type = None
        token = text
    else:
        raise InvalidDocumentReference(f"not a document URL or token: {text!r}")

    if document_type:
        return DocumentReference(token, normalize_document_type(document_type), document_type)
    if raw_type is None:
        return DocumentReference(token, DocumentType.TEXT_DOC, None)
    return DocumentReference(token, normalize_document_type(raw_type), raw_type)
