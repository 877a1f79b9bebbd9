import asyncio
import json
import time

import httpx
import structlog

from docwatch.backoff import backoff_delay
from docwatch.config import settings
from docwatch.errors import DocWatchError, PermanentAccessError, TransientUpstreamError

log = structlog.get_logger()

TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"

# Upstream codes that mean the token is stale; refresh and retry.
TOKEN_EXPIRED_CODES = {99991661, 99991663, 99991668}
RATE_LIMIT_CODES = {99991400, 99991429}
# Not found, deleted or forbidden. Never retried.
PERMANENT_ACCESS_CODES = {
    91402,
    91403,
    1061002,
    1061003,
    1061004,
    1061007,
    1061044,
    1770002,
    1770032,
    1254040,
    1254302,
}


class FeishuClient:
    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        base_url: str = "https://open.feishu.cn",
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_base: float = 0.5,
        retry_factor: float = 2.0,
        retry_jitter: float = 0.2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_base = retry_base
        self.retry_factor = retry_factor
        self.retry_jitter = retry_jitter
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> "FeishuClient":
        return cls(
            settings.feishu_app_id,
            settings.feishu_app_secret,
            base_url=settings.feishu_base_url,
            timeout=settings.request_timeout_seconds,
            max_attempts=settings.retry_attempts,
            retry_base=settings.retry_base_seconds,
            retry_factor=settings.retry_factor,
            retry_jitter=settings.retry_jitter,
        )

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def _tenant_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            try:
                async with self._http() as client:
                    resp = await client.post(
                        TOKEN_PATH,
                        json={"app_id": self.app_id, "app_secret": self.app_secret},
                    )
            except httpx.HTTPError as exc:
                raise TransientUpstreamError(f"token request failed: {exc}") from exc
            if resp.status_code != 200:
                raise TransientUpstreamError("token request rejected", status=resp.status_code)
            data = resp.json()
            if data.get("code", 0) != 0:
                raise TransientUpstreamError(
                    f"token error: {data.get('msg')}", code=data.get("code")
                )
            self._token = data["tenant_access_token"]
            # refresh a minute before upstream expiry
            self._token_expires_at = time.monotonic() + max(int(data.get("expire", 7200)) - 60, 0)
            return self._token

    def _invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        document_id: str | None = None,
    ) -> dict:
        token = await self._tenant_token()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with self._http() as client:
                resp = await client.request(
                    method, path, headers=headers, json=json, params=params
                )
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"timeout calling {path}") from exc
        except httpx.HTTPError as exc:
            raise TransientUpstreamError(f"network error calling {path}: {exc}") from exc

        if resp.status_code == 429:
            raise TransientUpstreamError("rate limited", status=429)
        if resp.status_code >= 500:
            raise TransientUpstreamError("upstream unavailable", status=resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientUpstreamError(
                f"non-JSON response from {path}", status=resp.status_code
            ) from exc

        code = data.get("code", 0)
        if code in TOKEN_EXPIRED_CODES:
            self._invalidate_token()
            raise TransientUpstreamError("tenant token expired", code=code)
        if code in RATE_LIMIT_CODES:
            raise TransientUpstreamError("rate limited", code=code)
        if document_id is not None and (
            code in PERMANENT_ACCESS_CODES or resp.status_code in (403, 404)
        ):
            raise PermanentAccessError(document_id, data.get("msg") or "not accessible", code=code)
        if code != 0 or resp.status_code >= 400:
            raise TransientUpstreamError(
                f"{path} failed: {data.get('msg')}", status=resp.status_code, code=code
            )
        return data

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        document_id: str | None = None,
        retry: bool = True,
    ) -> dict:
        attempts = self.max_attempts if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._send(
                    method, path, json=json, params=params, document_id=document_id
                )
            except TransientUpstreamError as exc:
                if attempt == attempts:
                    log.error(
                        "feishu_request_failed",
                        path=path,
                        document_id=document_id,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise
                delay = backoff_delay(
                    attempt,
                    base=self.retry_base,
                    factor=self.retry_factor,
                    jitter=self.retry_jitter,
                )
                log.warning(
                    "feishu_request_retry",
                    path=path,
                    document_id=document_id,
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                await asyncio.sleep(delay)
        raise TransientUpstreamError(f"{path}: no attempts made")

    async def subscribe(self, document_id: str, file_type: str) -> dict:
        return await self.request(
            "POST",
            f"/open-apis/drive/v1/files/{document_id}/subscribe",
            params={"file_type": file_type},
            document_id=document_id,
        )

    async def delete_subscribe(self, document_id: str, file_type: str) -> dict:
        return await self.request(
            "POST",
            f"/open-apis/drive/v1/files/{document_id}/delete_subscribe",
            params={"file_type": file_type},
            document_id=document_id,
        )

    async def send_thread_message(self, chat_id: str, text: str) -> bool:
        """Post a plain-text message to a chat. Single attempt; callers own retries."""
        try:
            await self.request(
                "POST",
                "/open-apis/im/v1/messages",
                params={"receive_id_type": "chat_id"},
                json={
                    "receive_id": chat_id,
                    "msg_type": "text",
                    "content": json.dumps({"text": text}, ensure_ascii=False),
                },
                retry=False,
            )
        except DocWatchError as exc:
            log.warning("feishu_send_failed", chat_id=chat_id, error=str(exc))
            return False
        return True
