"""
Unit tests for CompletionClient: request building and the HTTP round trip.
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from convo_coach.errors import CompletionError
from convo_coach.llm.completion_client import CompletionClient


class TestBuildRequest:
    """Request body shape."""

    def test_system_prompt_first(self):
        client = CompletionClient(api_key="key", model="test-model", temperature=0.2, max_tokens=120)
        request = client.build_request(
            "Be helpful",
            [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
                {"role": "user", "content": "How are you?"},
            ],
        )

        body = request.model_dump()
        assert body["model"] == "test-model"
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 120
        assert body["stream"] is False
        assert body["messages"][0] == {"role": "system", "content": "Be helpful"}
        assert [m["role"] for m in body["messages"][1:]] == ["user", "assistant", "user"]

    def test_zero_temperature_respected(self):
        client = CompletionClient(api_key="key", temperature=0.0)
        assert client.build_request("s", []).temperature == 0.0

    def test_explicit_zero_overrides_kept(self):
        client = CompletionClient(api_key="key", max_tokens=0, timeout_s=0)
        assert client.max_tokens == 0
        assert client.timeout_s == 0


class TestComplete:
    @pytest.mark.asyncio
    async def test_missing_api_key_raises(self):
        client = CompletionClient(api_key="")

        with pytest.raises(CompletionError):
            await client.complete("system", [{"role": "user", "content": "hello"}])

    @pytest.mark.asyncio
    async def test_close_without_session(self):
        await CompletionClient(api_key="key").close()


class ChatService:
    """In-process chat endpoint; each test sets the handler."""

    def __init__(self):
        self.requests = []
        self.url = ""
        self.respond = None

    async def handle(self, request):
        self.requests.append({"headers": dict(request.headers), "body": await request.json()})
        return await self.respond(request)


@pytest_asyncio.fixture
async def service():
    chat = ChatService()
    app = web.Application()
    app.router.add_post("/chat/completions", chat.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    chat.url = str(server.make_url("/chat/completions"))
    yield chat
    await server.close()


@pytest_asyncio.fixture
async def client(service):
    completion = CompletionClient(api_key="test-key", base_url=service.url, model="test-model")
    yield completion
    await completion.close()


def reply(content):
    return web.json_response({"choices": [{"message": {"role": "assistant", "content": content}}]})


class TestCompleteOverHttp:
    """Round trips against a local chat endpoint."""

    @pytest.mark.asyncio
    async def test_success_returns_raw_content(self, service, client):
        async def respond(request):
            return reply("Hello! What did you do today?")

        service.respond = respond
        text = await client.complete("Be a partner", [{"role": "user", "content": "Hi"}])

        assert text == "Hello! What did you do today?"
        sent = service.requests[0]
        assert sent["headers"]["Authorization"] == "Bearer test-key"
        assert sent["body"]["model"] == "test-model"
        assert sent["body"]["messages"][0] == {"role": "system", "content": "Be a partner"}
        assert sent["body"]["messages"][-1] == {"role": "user", "content": "Hi"}

    @pytest.mark.asyncio
    async def test_error_status_carried_on_exception(self, service, client):
        async def respond(request):
            return web.Response(status=503, text="over capacity")

        service.respond = respond
        with pytest.raises(CompletionError) as exc_info:
            await client.complete("s", [{"role": "user", "content": "Hi"}])

        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_timeout_raises(self, service):
        async def respond(request):
            await asyncio.sleep(0.3)
            return reply("too late")

        service.respond = respond
        slow_client = CompletionClient(api_key="test-key", base_url=service.url, timeout_s=0.05)
        try:
            with pytest.raises(CompletionError) as exc_info:
                await slow_client.complete("s", [{"role": "user", "content": "Hi"}])
        finally:
            await slow_client.close()

        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_invalid_json_body_raises(self, service, client):
        async def respond(request):
            return web.Response(text="<html>gateway</html>", content_type="application/json")

        service.respond = respond
        with pytest.raises(CompletionError):
            await client.complete("s", [{"role": "user", "content": "Hi"}])

    @pytest.mark.asyncio
    async def test_missing_choices_raises(self, service, client):
        async def respond(request):
            return web.json_response({"id": "chatcmpl-1", "choices": []})

        service.respond = respond
        with pytest.raises(CompletionError):
            await client.complete("s", [{"role": "user", "content": "Hi"}])

    @pytest.mark.asyncio
    async def test_blank_content_raises(self, service, client):
        async def respond(request):
            return reply("   ")

        service.respond = respond
        with pytest.raises(CompletionError):
            await client.complete("s", [{"role": "user", "content": "Hi"}])

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_raises(self):
        unreachable = CompletionClient(api_key="test-key", base_url="http://127.0.0.1:9/chat/completions")
        try:
            with pytest.raises(CompletionError):
                await unreachable.complete("s", [{"role": "user", "content": "Hi"}])
        finally:
            await unreachable.close()

    @pytest.mark.asyncio
    async def test_session_reused_across_requests(self, service, client):
        async def respond(request):
            return reply("ok")

        service.respond = respond
        await client.complete("s", [{"role": "user", "content": "one"}])
        first = client._session
        await client.complete("s", [{"role": "user", "content": "two"}])

        assert client._session is first
        assert len(service.requests) == 2
