from docwatch.tracking.types import (
    ChangeCandidate,
    ChangeType,
    DocMetadata,
    EventSource,
    TrackedDocument,
)


def has_changed(document: TrackedDocument, metadata: DocMetadata) -> bool:
    # The timestamp is the canonical signal; the editor comparison catches
    # same-second edits by different collaborators.
    return (
        metadata.last_modified_at != document.last_known_modified_at
        or metadata.last_modified_by != document.last_known_editor
    )


def detect_change(document: TrackedDocument, metadata: DocMetadata) -> ChangeCandidate | None:
    if not has_changed(document, metadata):
        return None

    change_type = ChangeType.EDIT
    if metadata.title and document.title and metadata.title != document.title:
        change_type = ChangeType.RENAME

    return ChangeCandidate(
        document_id=document.document_id,
        change_type=change_type,
        changed_by=metadata.last_modified_by,
        changed_at=metadata.last_modified_at,
        source=EventSource.POLL,
        revision=metadata.revision,
        title=metadata.title,
    )
