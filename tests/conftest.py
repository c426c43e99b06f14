"""
Shared fixtures and fakes for the ConvTree test suite.

No test talks to a real model: streams are fed from in-memory event lists,
and the HTTP tests use FakeTransport in place of OpenAITransport.
"""

from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest

from convtree import Conversation, StreamEvent, append, apply_event, continue_reply


# ---------------------------------------------------------------------------
# Conversation fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def conversation():
    """A fresh conversation holding only its system root."""
    return Conversation(title="Test chat", system_prompt="You are terse.")


@pytest.fixture
def chat(conversation):
    """root -> user("Hi") -> assistant("Hola"), reply already complete."""
    user = append(conversation, conversation.root_id, "user", "Hi")
    session = continue_reply(conversation, user.id, request_id="req-hola")
    apply_event(conversation, StreamEvent.complete("req-hola", "Hola"))
    return SimpleNamespace(conv=conversation, user_id=user.id, assistant_id=session.target_id)


# ---------------------------------------------------------------------------
# Stream helpers
# ---------------------------------------------------------------------------


async def event_stream(*events: StreamEvent):
    for event in events:
        yield event


def scripted_reply(text: str, reasoning: Optional[str] = None) -> Callable[[str], List[StreamEvent]]:
    """Build a script that streams ``text`` in two chunks, then completes."""

    def script(request_id: str) -> List[StreamEvent]:
        half = len(text) // 2
        events = []
        if reasoning:
            events.append(StreamEvent.reasoning_chunk(request_id, reasoning))
        events.append(StreamEvent.chunk(request_id, text[:half]))
        events.append(StreamEvent.chunk(request_id, text[half:]))
        events.append(StreamEvent.complete(request_id, text, reasoning))
        return events

    return script


class FakeTransport:
    """In-memory ModelTransport that replays a script per request."""

    def __init__(self, script: Optional[Callable[[str], List[StreamEvent]]] = None):
        self.script = script or scripted_reply("Hello there")
        self.requests: List[Dict] = []
        self.cancelled: List[str] = []

    async def open_stream(self, request_id, context, model_id=None):
        self.requests.append({"request_id": request_id, "context": context, "model_id": model_id})
        for event in self.script(request_id):
            if request_id in self.cancelled:
                return
            yield event

    def cancel(self, request_id):
        self.cancelled.append(request_id)
