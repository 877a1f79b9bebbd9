import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from docwatch.errors import PermanentAccessError, TransientUpstreamError
from docwatch.feishu.client import TOKEN_PATH, FeishuClient
from docwatch.tracking.doc_types import DocumentType
from docwatch.tracking.metadata import META_PATH, MetadataClient


def _meta_body(token="doxcnA1", editor="ou_alice", modified="150", docs_type="docx"):
    return {
        "code": 0,
        "data": {
            "docs_metas": [
                {
                    "docs_token": token,
                    "docs_type": docs_type,
                    "title": "Roadmap",
                    "owner_id": "ou_owner",
                    "create_time": "100",
                    "latest_modify_user": editor,
                    "latest_modify_time": modified,
                }
            ],
            "failed_list": [],
        },
    }


class UpstreamStub:
    """Serves the token endpoint and replays queued responses for everything else."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.token_requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == TOKEN_PATH:
            self.token_requests += 1
            return httpx.Response(
                200, json={"code": 0, "tenant_access_token": f"t-{self.token_requests}", "expire": 7200}
            )
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(stub: UpstreamStub) -> FeishuClient:
    return FeishuClient(
        "cli_app", "secret", transport=httpx.MockTransport(stub), retry_jitter=0
    )


@pytest.mark.asyncio
async def test_fetch_metadata_parses_docs_meta():
    stub = UpstreamStub(httpx.Response(200, json=_meta_body()))
    metadata = await MetadataClient(_client(stub)).fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)

    assert metadata.last_modified_by == "ou_alice"
    assert metadata.last_modified_at == 150
    assert metadata.title == "Roadmap"
    assert metadata.document_type == DocumentType.TEXT_DOC
    request = stub.requests[0]
    assert request.url.path == META_PATH
    assert request.headers["Authorization"] == "Bearer t-1"
    assert json.loads(request.content) == {
        "request_docs": [{"docs_token": "doxcnA1", "docs_type": "docx"}]
    }


@pytest.mark.asyncio
async def test_unknown_upstream_type_becomes_generic_file():
    stub = UpstreamStub(httpx.Response(200, json=_meta_body(docs_type="whiteboard")))
    metadata = await MetadataClient(_client(stub)).fetch_metadata("doxcnA1", "docx")
    assert metadata.document_type == DocumentType.GENERIC_FILE
    assert metadata.raw_type == "whiteboard"


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    stub = UpstreamStub(
        httpx.Response(503),
        httpx.ConnectError("boom"),
        httpx.Response(200, json=_meta_body()),
    )
    with patch("docwatch.feishu.client.asyncio.sleep", new=AsyncMock()) as sleep:
        metadata = await MetadataClient(_client(stub)).fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)

    assert metadata.last_modified_at == 150
    assert len(stub.requests) == 3
    assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
async def test_gives_up_after_three_attempts():
    stub = UpstreamStub(
        httpx.Response(429), httpx.Response(500), httpx.Response(502), httpx.Response(200, json=_meta_body())
    )
    with patch("docwatch.feishu.client.asyncio.sleep", new=AsyncMock()):
        with pytest.raises(TransientUpstreamError):
            await MetadataClient(_client(stub)).fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)
    assert len(stub.requests) == 3


@pytest.mark.asyncio
async def test_failed_list_is_permanent_and_not_retried():
    body = {"code": 0, "data": {"docs_metas": [], "failed_list": [{"token": "doxcnA1", "code": 970005}]}}
    stub = UpstreamStub(httpx.Response(200, json=body), httpx.Response(200, json=_meta_body()))
    with pytest.raises(PermanentAccessError) as exc_info:
        await MetadataClient(_client(stub)).fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)
    assert exc_info.value.document_id == "doxcnA1"
    assert len(stub.requests) == 1


@pytest.mark.asyncio
async def test_forbidden_is_permanent():
    stub = UpstreamStub(httpx.Response(403, json={"code": 1770032, "msg": "forbidden"}))
    with pytest.raises(PermanentAccessError):
        await MetadataClient(_client(stub)).fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)
    assert len(stub.requests) == 1


@pytest.mark.asyncio
async def test_expired_token_is_refreshed():
    stub = UpstreamStub(
        httpx.Response(200, json={"code": 99991663, "msg": "token expired"}),
        httpx.Response(200, json=_meta_body()),
    )
    with patch("docwatch.feishu.client.asyncio.sleep", new=AsyncMock()):
        await MetadataClient(_client(stub)).fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)

    assert stub.token_requests == 2
    assert stub.requests[1].headers["Authorization"] == "Bearer t-2"


@pytest.mark.asyncio
async def test_token_is_cached_between_calls():
    stub = UpstreamStub(httpx.Response(200, json=_meta_body()), httpx.Response(200, json=_meta_body()))
    client = MetadataClient(_client(stub))
    await client.fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)
    await client.fetch_metadata("doxcnA1", DocumentType.TEXT_DOC)
    assert stub.token_requests == 1


@pytest.mark.asyncio
async def test_send_thread_message_single_attempt():
    stub = UpstreamStub(httpx.Response(500))
    sent = await _client(stub).send_thread_message("oc_thread", "hello")
    assert sent is False
    assert len(stub.requests) == 1


@pytest.mark.asyncio
async def test_send_thread_message_posts_text():
    stub = UpstreamStub(httpx.Response(200, json={"code": 0, "data": {}}))
    assert await _client(stub).send_thread_message("oc_thread", "hello") is True

    request = stub.requests[0]
    assert request.url.params["receive_id_type"] == "chat_id"
    body = json.loads(request.content)
    assert body["receive_id"] == "oc_thread"
    assert body["msg_type"] == "text"
    assert json.loads(body["content"]) == {"text": "hello"}
