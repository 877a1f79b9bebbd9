import asyncio
from collections.abc import Awaitable, Callable

import structlog

from docwatch.backoff import backoff_delay
from docwatch.feishu.messages import build_change_text, build_tracking_stopped_text
from docwatch.tracking.metrics import MetricsRecorder
from docwatch.tracking.types import ChangeEvent, DeliveryResult, DiffSummary, TrackedDocument

log = structlog.get_logger()

SendThreadMessage = Callable[[str, str], Awaitable[bool]]


class NotificationDispatcher:
    """Delivers messages to chat threads with bounded retries.

    Delivery failures are logged and counted but never raised: the change event
    they describe is already recorded.
    """

    def __init__(
        self,
        send_thread_message: SendThreadMessage,
        metrics: MetricsRecorder,
        *,
        max_attempts: int = 3,
        retry_base: float = 0.5,
        retry_factor: float = 2.0,
        retry_jitter: float = 0.2,
        timeout: float = 10.0,
    ) -> None:
        self._send = send_thread_message
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.retry_base = retry_base
        self.retry_factor = retry_factor
        self.retry_jitter = retry_jitter
        self.timeout = timeout

    async def notify(
        self,
        notify_target_id: str,
        event: ChangeEvent,
        diff: DiffSummary | None = None,
        document: TrackedDocument | None = None,
    ) -> DeliveryResult:
        text = build_change_text(event, document, diff)
        return await self.send_text(
            notify_target_id, text, kind="change", document_id=event.document_id
        )

    async def notify_tracking_stopped(self, document: TrackedDocument, reason: str) -> DeliveryResult:
        text = build_tracking_stopped_text(document, reason)
        return await self.send_text(
            document.notify_target_id, text, kind="tracking_stopped", document_id=document.document_id
        )

    async def send_text(
        self,
        notify_target_id: str,
        text: str,
        *,
        kind: str = "text",
        document_id: str | None = None,
    ) -> DeliveryResult:
        error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                sent = await asyncio.wait_for(self._send(notify_target_id, text), self.timeout)
                if sent:
                    self.metrics.incr("notifications_sent")
                    log.info(
                        "notification_delivered",
                        kind=kind,
                        document_id=document_id,
                        notify_target_id=notify_target_id,
                        attempt=attempt,
                    )
                    return DeliveryResult.DELIVERED
                error = "send reported failure"
            except asyncio.TimeoutError:
                error = f"timed out after {self.timeout}s"
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__

            if attempt < self.max_attempts:
                delay = backoff_delay(
                    attempt, base=self.retry_base, factor=self.retry_factor, jitter=self.retry_jitter
                )
                log.warning(
                    "notification_retry",
                    kind=kind,
                    document_id=document_id,
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=error,
                )
                await asyncio.sleep(delay)

        self.metrics.incr("notifications_failed")
        log.error(
            "notification_permanently_failed",
            kind=kind,
            document_id=document_id,
            notify_target_id=notify_target_id,
            attempts=self.max_attempts,
            error=error,
        )
        return DeliveryResult.FAILED
