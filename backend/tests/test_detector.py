from docwatch.tracking.detector import detect_change, has_changed
from docwatch.tracking.types import ChangeType, EventSource

from conftest import make_document, make_metadata


class TestHasChanged:
    def test_same_state_is_not_a_change(self):
        assert not has_changed(make_document(), make_metadata())

    def test_new_timestamp(self):
        assert has_changed(make_document(), make_metadata(modified_at=150))

    def test_same_second_different_editor(self):
        assert has_changed(make_document(), make_metadata(editor="bob", modified_at=100))

    def test_timestamp_moving_backwards_counts_as_change(self):
        # the processor decides whether an older observation is stale
        assert has_changed(make_document(), make_metadata(modified_at=90))


class TestDetectChange:
    def test_unchanged_returns_none(self):
        assert detect_change(make_document(), make_metadata()) is None

    def test_edit_candidate(self):
        candidate = detect_change(make_document(), make_metadata(modified_at=150, revision=7))
        assert candidate.change_type == ChangeType.EDIT
        assert candidate.changed_by == "alice"
        assert candidate.changed_at == 150
        assert candidate.source == EventSource.POLL
        assert candidate.revision == 7

    def test_title_change_is_rename(self):
        candidate = detect_change(
            make_document(), make_metadata(editor="bob", modified_at=160, title="Roadmap 2027")
        )
        assert candidate.change_type == ChangeType.RENAME
        assert candidate.title == "Roadmap 2027"

    def test_unknown_previous_title_is_edit(self):
        candidate = detect_change(
            make_document(title=None), make_metadata(modified_at=160, title="Roadmap")
        )
        assert candidate.change_type == ChangeType.EDIT
