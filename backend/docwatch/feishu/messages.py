from datetime import datetime, timezone

from docwatch.tracking.types import ChangeEvent, ChangeType, DiffSummary, TrackedDocument

_CHANGE_LABELS = {
    ChangeType.EDIT: "edited",
    ChangeType.RENAME: "renamed",
    ChangeType.MOVE: "moved",
    ChangeType.DELETE: "deleted",
    ChangeType.UNKNOWN: "changed",
}

MAX_HEADINGS = 5


def format_timestamp(epoch_seconds: int) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def build_change_text(
    event: ChangeEvent,
    document: TrackedDocument | None = None,
    diff: DiffSummary | None = None,
) -> str:
    name = document.display_name if document else event.document_id
    label = _CHANGE_LABELS.get(event.change_type, "changed")
    lines = [
        f"\U0001f4dd Document {label}: {name}",
        f"Modified by: {event.changed_by}",
        f"Modified at: {format_timestamp(event.changed_at)}",
    ]
    if diff is None or diff.is_empty:
        return "\n".join(lines)

    lines.append(f"Changes: +{diff.added_chars} / -{diff.removed_chars} chars")
    if diff.changed_headings:
        shown = diff.changed_headings[:MAX_HEADINGS]
        more = len(diff.changed_headings) - len(shown)
        sections = ", ".join(shown) + (f" (+{more} more)" if more > 0 else "")
        lines.append(f"Sections: {sections}")
    return "\n".join(lines)


def build_tracking_stopped_text(document: TrackedDocument, reason: str) -> str:
    return (
        f"⚠️ Stopped tracking {document.display_name}\n"
        f"Reason: {reason}\n"
        "Watch the document again once access is restored."
    )


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def build_rule_text(
    rule_name: str,
    event: ChangeEvent,
    diff: DiffSummary | None = None,
    template: str | None = None,
    title: str | None = None,
) -> str:
    values = _TemplateValues(
        rule=rule_name,
        document_id=event.document_id,
        title=title or event.document_id,
        changed_by=event.changed_by,
        changed_at=format_timestamp(event.changed_at),
        change_type=event.change_type.value,
        summary=diff.summary if diff else "",
    )
    if template:
        return template.format_map(values)
    text = f"\U0001f514 Rule \"{rule_name}\" matched: {values['title']} {event.change_type.value} by {event.changed_by}"
    if diff and diff.summary:
        text += f"\n{diff.summary}"
    return text
