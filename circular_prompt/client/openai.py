"""OpenAI-compatible chat client implementation."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from circular_prompt.client.base import ModelClient, ThreadHandle, TurnResult, UsageSample
from circular_prompt.config.config import ClientConfig
from circular_prompt.loop.models import TaskSpec
from circular_prompt.utils.exceptions import (
    ContextOverflowError,
    ModelClientError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

_OVERFLOW_MARKERS = ("context_length_exceeded", "maximum context length", "context window")


class OpenAIChatClient(ModelClient):
    """Model client speaking the Chat Completions API.

    Each thread keeps its own message list. The base context goes in the
    system message and the prompt is the first user message. Every later
    turn appends the configured continuation message.
    """

    def __init__(
        self,
        config: ClientConfig,
        context_window: int,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            config: Client configuration.
            context_window: Model window in tokens, used to turn reported
                token counts into a usage ratio.
            http_client: Pre-built HTTP client (tests inject a mock
                transport here).
        """
        self.config = config
        self.context_window = context_window
        self._threads: dict[str, list[dict[str, Any]]] = {}

        if http_client is None:
            headers = {"Content-Type": "application/json"}
            if config.api_key:
                headers["Authorization"] = f"Bearer {config.api_key}"
            http_client = httpx.AsyncClient(
                base_url=config.base_url,
                headers=headers,
                timeout=httpx.Timeout(config.timeout),
            )
        self.client = http_client
        logger.info(f"OpenAI chat client initialized with model: {config.model}")

    async def open_thread(self, task: TaskSpec) -> ThreadHandle:
        handle = ThreadHandle(task_id=task.task_id)
        messages: list[dict[str, Any]] = []
        if task.base_context:
            messages.append({"role": "system", "content": task.base_context})
        messages.append({"role": "user", "content": task.prompt})
        self._threads[handle.thread_id] = messages
        handle.data["pending"] = True
        logger.debug(f"Opened thread {handle.thread_id} for task {task.task_id}")
        return handle

    async def send_and_await(self, handle: ThreadHandle) -> TurnResult:
        messages = self._threads.get(handle.thread_id)
        if messages is None:
            raise ModelClientError(f"Unknown thread: {handle.thread_id}")

        # Outgoing messages join the thread only after a successful reply
        if handle.data.get("pending"):
            outgoing = []
            sent = ""
        else:
            outgoing = [{"role": "user", "content": self.config.continue_message}]
            sent = self.config.continue_message

        payload = {
            "model": self.config.model,
            "messages": messages + outgoing,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

        try:
            response = await self.client.post("/chat/completions", json=payload)
        except httpx.HTTPError as e:
            raise ModelClientError(f"Request failed: {e}", cause=e) from e

        self._raise_for_status(response)
        data = response.json()
        text = data["choices"][0]["message"].get("content") or ""

        messages.extend(outgoing)
        messages.append({"role": "assistant", "content": text})
        handle.data["pending"] = False

        return TurnResult(text=text, usage=self._usage(data), sent_text=sent)

    async def close_thread(self, handle: ThreadHandle) -> None:
        self._threads.pop(handle.thread_id, None)

    async def aclose(self) -> None:
        await self.client.aclose()
        self._threads.clear()
        logger.info("OpenAI chat client shutdown")

    def _usage(self, data: dict[str, Any]) -> UsageSample | None:
        usage = data.get("usage")
        if not usage:
            return None
        prompt_tokens = usage.get("prompt_tokens")
        completion_tokens = usage.get("completion_tokens")
        total = usage.get("total_tokens")
        if total is None and prompt_tokens is not None:
            total = prompt_tokens + (completion_tokens or 0)
        if total is None:
            return None
        return UsageSample(
            ratio=total / self.context_window,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return

        body = response.text
        if response.status_code == 429:
            reset_after = None
            retry_after = response.headers.get("retry-after")
            if retry_after:
                try:
                    reset_after = float(retry_after)
                except ValueError:
                    reset_after = None
            raise RateLimitError(reset_after=reset_after, details={"body": body[:200]})

        if response.status_code in (400, 413) and any(
            marker in body.lower() for marker in _OVERFLOW_MARKERS
        ):
            raise ContextOverflowError(details={"body": body[:200]})

        raise ModelClientError(
            f"Model API returned HTTP {response.status_code}",
            status_code=response.status_code,
            details={"body": body[:200]},
        )
