"""Tests for the OpenAI-compatible chat client."""

import json

import httpx
import pytest

from circular_prompt.client.openai import OpenAIChatClient
from circular_prompt.config import ClientConfig
from circular_prompt.loop.models import TaskSpec
from circular_prompt.utils.exceptions import (
    ContextOverflowError,
    ModelClientError,
    RateLimitError,
)


def completion(text, total_tokens=None):
    body = {"choices": [{"message": {"role": "assistant", "content": text}}]}
    if total_tokens is not None:
        body["usage"] = {
            "prompt_tokens": total_tokens - 10,
            "completion_tokens": 10,
            "total_tokens": total_tokens,
        }
    return httpx.Response(200, json=body)


class Recorder:
    """MockTransport handler returning queued responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        return self.responses.pop(0)


def make_client(responses, context_window=1000):
    recorder = Recorder(responses)
    http = httpx.AsyncClient(
        base_url="https://api.test/v1", transport=httpx.MockTransport(recorder)
    )
    client = OpenAIChatClient(
        ClientConfig(model="test-model", continue_message="Keep going."),
        context_window=context_window,
        http_client=http,
    )
    return client, recorder


@pytest.fixture
def spec():
    return TaskSpec.create(prompt="Fix the parser.", base_context="Context doc.", task_id="t")


class TestConversation:
    """Thread and message handling."""

    @pytest.mark.asyncio
    async def test_first_turn_sends_task_spec(self, spec):
        """Test the first turn sends the base context and prompt."""
        client, recorder = make_client([completion("Working. Next steps: tests", 250)])

        handle = await client.open_thread(spec)
        result = await client.send_and_await(handle)

        messages = recorder.requests[0]["messages"]
        assert messages == [
            {"role": "system", "content": "Context doc."},
            {"role": "user", "content": "Fix the parser."},
        ]
        assert recorder.requests[0]["model"] == "test-model"
        assert result.text == "Working. Next steps: tests"
        assert result.usage.ratio == pytest.approx(0.25)
        assert result.sent_text == ""

    @pytest.mark.asyncio
    async def test_follow_up_turn_sends_continue_message(self, spec):
        """Test later turns send the continue message."""
        client, recorder = make_client([completion("one"), completion("two")])

        handle = await client.open_thread(spec)
        await client.send_and_await(handle)
        result = await client.send_and_await(handle)

        messages = recorder.requests[1]["messages"]
        assert messages[-2] == {"role": "assistant", "content": "one"}
        assert messages[-1] == {"role": "user", "content": "Keep going."}
        assert result.sent_text == "Keep going."
        assert result.usage is None

    @pytest.mark.asyncio
    async def test_no_system_message_without_context(self):
        """Test no system message is sent without base context."""
        client, recorder = make_client([completion("ok")])
        handle = await client.open_thread(TaskSpec.create("Just the prompt"))

        await client.send_and_await(handle)

        assert recorder.requests[0]["messages"] == [
            {"role": "user", "content": "Just the prompt"}
        ]

    @pytest.mark.asyncio
    async def test_threads_are_isolated(self, spec):
        """Test each thread keeps its own history."""
        client, recorder = make_client([completion("a"), completion("b")])

        first = await client.open_thread(spec)
        await client.send_and_await(first)
        second = await client.open_thread(spec)
        await client.send_and_await(second)

        assert recorder.requests[1]["messages"] == recorder.requests[0]["messages"]

    @pytest.mark.asyncio
    async def test_unknown_thread(self, spec):
        """Test sending on a closed thread fails."""
        client, _ = make_client([])
        handle = await client.open_thread(spec)
        await client.close_thread(handle)

        with pytest.raises(ModelClientError):
            await client.send_and_await(handle)


class TestErrorMapping:
    """HTTP errors mapped to the exception taxonomy."""

    @pytest.mark.asyncio
    async def test_rate_limit(self, spec):
        """Test HTTP 429 maps to RateLimitError with Retry-After."""
        client, _ = make_client([httpx.Response(429, headers={"Retry-After": "7"}, text="slow")])
        handle = await client.open_thread(spec)

        with pytest.raises(RateLimitError) as exc_info:
            await client.send_and_await(handle)
        assert exc_info.value.reset_after == 7.0

    @pytest.mark.asyncio
    async def test_retry_after_rate_limit_does_not_duplicate_messages(self, spec):
        """Test a failed turn does not duplicate messages on retry."""
        client, recorder = make_client(
            [completion("one"), httpx.Response(429), completion("two")]
        )
        handle = await client.open_thread(spec)
        await client.send_and_await(handle)

        with pytest.raises(RateLimitError):
            await client.send_and_await(handle)
        await client.send_and_await(handle)

        assert recorder.requests[2]["messages"] == recorder.requests[1]["messages"]

    @pytest.mark.asyncio
    async def test_context_overflow(self, spec):
        """Test a context length error maps to ContextOverflowError."""
        body = {"error": {"code": "context_length_exceeded", "message": "too long"}}
        client, _ = make_client([httpx.Response(400, json=body)])
        handle = await client.open_thread(spec)

        with pytest.raises(ContextOverflowError):
            await client.send_and_await(handle)

    @pytest.mark.asyncio
    async def test_other_errors(self, spec):
        """Test other HTTP errors map to ModelClientError."""
        client, _ = make_client([httpx.Response(500, text="oops")])
        handle = await client.open_thread(spec)

        with pytest.raises(ModelClientError) as exc_info:
            await client.send_and_await(handle)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error(self, spec):
        """Test transport failures map to ModelClientError."""
        def fail(request):
            raise httpx.ConnectError("refused", request=request)

        http = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(fail))
        client = OpenAIChatClient(ClientConfig(), context_window=1000, http_client=http)
        handle = await client.open_thread(spec)

        with pytest.raises(ModelClientError):
            await client.send_and_await(handle)
        await client.aclose()
