"""Streaming reconciler: applies model stream events to their target message.

A session binds a request id to exactly one target message. Events for a
request are applied in arrival order; ordering and delivery belong to the
transport. Each event handler runs to completion without awaiting, so a
node is never observed half-updated.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Literal, Optional

from pydantic import BaseModel

from .config import ENDED_SESSIONS_KEPT
from .errors import NotFound, SessionConflict, TransportError
from .models import Conversation, Message

logger = logging.getLogger("convtree")

EventType = Literal["chunk", "reasoning_chunk", "complete", "error"]
SessionState = Literal["open", "completed", "failed", "aborted"]


class StreamEvent(BaseModel):
    """One event from the model transport."""

    request_id: str
    type: EventType
    text: str = ""
    reasoning: Optional[str] = None
    reason: str = ""

    @classmethod
    def chunk(cls, request_id: str, text: str) -> "StreamEvent":
        return cls(request_id=request_id, type="chunk", text=text)

    @classmethod
    def reasoning_chunk(cls, request_id: str, text: str) -> "StreamEvent":
        return cls(request_id=request_id, type="reasoning_chunk", text=text)

    @classmethod
    def complete(cls, request_id: str, text: str, reasoning: Optional[str] = None) -> "StreamEvent":
        return cls(request_id=request_id, type="complete", text=text, reasoning=reasoning)

    @classmethod
    def error(cls, request_id: str, reason: str) -> "StreamEvent":
        return cls(request_id=request_id, type="error", reason=reason)


@dataclass
class StreamSession:
    request_id: str
    target_id: str
    state: SessionState = "open"

    @property
    def is_open(self) -> bool:
        return self.state == "open"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def ensure_request_free(conversation: Conversation, request_id: str) -> None:
    if request_id in conversation.sessions:
        raise SessionConflict(f"Request id already used: {request_id}", request_id=request_id)


def ensure_target_free(conversation: Conversation, target_id: str) -> Message:
    target = conversation.store.get(target_id)
    busy = any(
        s.is_open and s.target_id == target_id for s in conversation.sessions.values()
    )
    if target.is_streaming or busy:
        raise SessionConflict(
            f"Message is already streaming: {target_id}", message_id=target_id
        )
    return target


def start_session(conversation: Conversation, request_id: str, target_id: str) -> StreamSession:
    """Register a session without notifying; callers own the notification."""
    ensure_request_free(conversation, request_id)
    target = ensure_target_free(conversation, target_id)
    target.is_streaming = True
    target.has_error = False
    session = StreamSession(request_id=request_id, target_id=target_id)
    conversation.sessions[request_id] = session
    prune_sessions(conversation)
    logger.info("Opened stream %s -> %s", request_id, target_id)
    return session


def prune_sessions(conversation: Conversation, keep: Optional[int] = None) -> None:
    """Forget all but the newest ``keep`` ended sessions; open ones always stay."""
    keep = ENDED_SESSIONS_KEPT if keep is None else keep
    ended = [rid for rid, s in conversation.sessions.items() if not s.is_open]
    for request_id in ended[: max(0, len(ended) - keep)]:
        del conversation.sessions[request_id]


def open_session(conversation: Conversation, request_id: str, target_id: str) -> StreamSession:
    """Open a streaming session targeting an existing message."""
    session = start_session(conversation, request_id, target_id)
    conversation.notify("stream_open", [target_id])
    return session


def get_session(conversation: Conversation, request_id: str) -> StreamSession:
    try:
        return conversation.sessions[request_id]
    except KeyError:
        raise NotFound(f"Unknown stream: {request_id}", request_id=request_id) from None


def apply_event(conversation: Conversation, event: StreamEvent) -> Optional[Message]:
    """
    Apply one stream event to its session's target.

    Returns the updated message, or None when the event was discarded
    because the session already ended. An ``error`` event finalizes the
    target, keeping any partial content, then raises TransportError.
    """
    session = get_session(conversation, event.request_id)
    if not session.is_open:
        logger.debug("Discarding %s for %s stream %s", event.type, session.state, event.request_id)
        return None

    target = conversation.store.get(session.target_id)
    if event.type == "chunk":
        target.content += event.text
    elif event.type == "reasoning_chunk":
        target.reasoning_content = (target.reasoning_content or "") + event.text
    elif event.type == "complete":
        target.content = event.text
        if event.reasoning is not None:
            target.reasoning_content = event.reasoning
        target.is_streaming = False
        target.has_error = False
        session.state = "completed"
        logger.info("Completed stream %s (%d chars)", event.request_id, len(target.content))
    else:
        target.is_streaming = False
        target.has_error = True
        session.state = "failed"
        logger.warning("Stream %s failed: %s", event.request_id, event.reason)
        conversation.notify("stream_error", [target.id])
        raise TransportError(event.reason or "Model stream failed", message_id=target.id, request_id=event.request_id)

    conversation.notify(f"stream_{event.type}", [target.id])
    return target


def stop(conversation: Conversation, request_id: str) -> bool:
    """
    Abort a session. Later events for it are discarded.

    Returns False if the session had already ended.
    """
    session = get_session(conversation, request_id)
    if not session.is_open:
        return False
    session.state = "aborted"
    if session.target_id in conversation.store:
        conversation.store.get(session.target_id).is_streaming = False
    logger.info("Stopped stream %s", request_id)
    conversation.notify("stream_stop", [session.target_id])
    return True


async def pump(
    conversation: Conversation, request_id: str, events: AsyncIterator[StreamEvent]
) -> Optional[Message]:
    """Feed an async event stream through the reconciler until the session ends."""
    session = get_session(conversation, request_id)
    try:
        async for event in events:
            if not session.is_open:
                break
            apply_event(conversation, event)
            if not session.is_open:
                break
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    if session.is_open:
        logger.warning("Stream %s ended without a final event", request_id)
    if session.target_id not in conversation.store:
        return None
    return conversation.store.get(session.target_id)
