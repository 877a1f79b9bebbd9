import structlog

from docwatch.errors import DocWatchError
from docwatch.feishu.client import FeishuClient
from docwatch.tracking.doc_types import DocumentType, api_file_type
from docwatch.tracking.metrics import MetricsRecorder

log = structlog.get_logger()


class WebhookRegistrar:
    """Best-effort push subscriptions. Polling keeps working when these fail."""

    def __init__(self, client: FeishuClient, metrics: MetricsRecorder) -> None:
        self.client = client
        self.metrics = metrics

    async def register(
        self,
        document_id: str,
        document_type: DocumentType,
        notify_target_id: str,
        raw_type: str | None = None,
    ) -> bool:
        file_type = api_file_type(document_type, raw_type)
        try:
            await self.client.subscribe(document_id, file_type)
        except DocWatchError as exc:
            self.metrics.incr("webhook_registration_failures")
            log.warning(
                "webhook_degraded_mode",
                document_id=document_id,
                file_type=file_type,
                notify_target_id=notify_target_id,
                error=str(exc),
            )
            return False
        log.info("webhook_registered", document_id=document_id, file_type=file_type)
        return True

    async def deregister(
        self, document_id: str, document_type: DocumentType, raw_type: str | None = None
    ) -> bool:
        file_type = api_file_type(document_type, raw_type)
        try:
            await self.client.delete_subscribe(document_id, file_type)
        except DocWatchError as exc:
            log.warning("webhook_deregister_failed", document_id=document_id, error=str(exc))
            return False
        log.info("webhook_deregistered", document_id=document_id)
        return True
