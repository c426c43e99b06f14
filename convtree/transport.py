"""Model transport: turns a chat completion stream into reconciler events."""

import logging
from typing import AsyncIterator, Dict, List, Optional, Protocol, Set

from openai import AsyncOpenAI, OpenAIError

from .config import MODEL
from .streaming import StreamEvent

logger = logging.getLogger("convtree")


class ModelTransport(Protocol):
    def open_stream(
        self, request_id: str, context: List[Dict[str, str]], model_id: Optional[str] = None
    ) -> AsyncIterator[StreamEvent]: ...

    def cancel(self, request_id: str) -> None: ...


class OpenAITransport:
    """
    Streams chat completions from an OpenAI-compatible endpoint.

    ``delta.content`` becomes ``chunk`` events and ``delta.reasoning_content``
    (sent by reasoning models on compatible servers) becomes
    ``reasoning_chunk``. The stream always ends with ``complete`` or
    ``error`` unless it was cancelled.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = MODEL) -> None:
        self._client = client
        self.model = model
        self._active: Set[str] = set()
        self._cancelled: Set[str] = set()

    @property
    def client(self) -> AsyncOpenAI:
        # Built lazily so the API key is only required once a request is made.
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    def cancel(self, request_id: str) -> None:
        # Streams that are not running have nothing to close; the reconciler
        # already drops their events once the session is stopped.
        if request_id in self._active:
            self._cancelled.add(request_id)

    async def open_stream(
        self, request_id: str, context: List[Dict[str, str]], model_id: Optional[str] = None
    ) -> AsyncIterator[StreamEvent]:
        text: List[str] = []
        reasoning: List[str] = []
        self._active.add(request_id)
        try:
            try:
                stream = await self.client.chat.completions.create(
                    model=model_id or self.model,
                    messages=context,
                    stream=True,
                )
            except OpenAIError as exc:
                logger.warning("Could not open stream %s: %s", request_id, exc)
                yield StreamEvent.error(request_id, f"{type(exc).__name__}: {exc}")
                return

            try:
                async for chunk in stream:
                    if request_id in self._cancelled:
                        logger.info("Cancelled stream %s", request_id)
                        return
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    reasoning_part = getattr(delta, "reasoning_content", None)
                    if reasoning_part:
                        reasoning.append(reasoning_part)
                        yield StreamEvent.reasoning_chunk(request_id, reasoning_part)
                    if delta.content:
                        text.append(delta.content)
                        yield StreamEvent.chunk(request_id, delta.content)
            except OpenAIError as exc:
                logger.warning("Stream %s broke off: %s", request_id, exc)
                yield StreamEvent.error(request_id, f"{type(exc).__name__}: {exc}")
                return
            finally:
                await stream.close()

            if request_id in self._cancelled:
                return
            yield StreamEvent.complete(request_id, "".join(text), "".join(reasoning) or None)
        finally:
            self._active.discard(request_id)
            self._cancelled.discard(request_id)
