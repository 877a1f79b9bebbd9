import asyncio

from docwatch.tracking.types import PollState, TrackedDocument


class TrackedDocumentRegistry:
    """Process-wide set of tracked documents, keyed by document id.

    Shared by the poller, the change processor and the webhook path. The map
    itself is guarded by one lock; each document additionally has its own lock
    that serializes mutation of that entry.
    """

    def __init__(self) -> None:
        self._docs: dict[str, TrackedDocument] = {}
        self._doc_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._docs

    def lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._doc_locks.get(document_id)
        if lock is None:
            lock = self._doc_locks[document_id] = asyncio.Lock()
        return lock

    def discard_lock(self, document_id: str) -> None:
        """Forget the lock of an untracked document once nobody holds it."""
        lock = self._doc_locks.get(document_id)
        if lock is not None and document_id not in self._docs and not lock.locked():
            del self._doc_locks[document_id]

    def get(self, document_id: str) -> TrackedDocument | None:
        return self._docs.get(document_id)

    def is_current(self, document: TrackedDocument) -> bool:
        """False once the entry was unwatched or replaced."""
        return self._docs.get(document.document_id) is document

    def list_documents(self, notify_target_id: str | None = None) -> list[TrackedDocument]:
        docs = list(self._docs.values())
        if notify_target_id is not None:
            docs = [d for d in docs if d.notify_target_id == notify_target_id]
        return docs

    async def upsert(self, document: TrackedDocument) -> tuple[TrackedDocument, bool]:
        """Insert ``document`` or retarget the existing entry. Returns (entry, created)."""
        async with self._lock:
            existing = self._docs.get(document.document_id)
            if existing is None:
                self._docs[document.document_id] = document
                return document, True
            existing.notify_target_id = document.notify_target_id
            existing.document_type = document.document_type
            if document.raw_type:
                existing.raw_type = document.raw_type
            if document.title:
                existing.title = document.title
            return existing, False

    async def remove(self, document_id: str) -> TrackedDocument | None:
        async with self._lock:
            document = self._docs.pop(document_id, None)
            if document is not None:
                document.state = PollState.REMOVED
            return document

    def due_for_poll(self, now: float) -> list[TrackedDocument]:
        """Documents that may start a poll: idle, or failing with backoff elapsed."""
        return [
            d
            for d in self._docs.values()
            if d.state in (PollState.IDLE, PollState.FAILING) and d.next_poll_at <= now
        ]

    def begin_poll(self, document: TrackedDocument) -> bool:
        """Single-flight claim. False when a poll is already in progress."""
        if not self.is_current(document):
            return False
        if document.state not in (PollState.IDLE, PollState.FAILING):
            return False
        document.state = PollState.POLLING
        return True
