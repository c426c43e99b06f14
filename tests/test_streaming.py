"""
Tests for convtree.streaming (the reconciler).

Covers:
  - chunk / reasoning_chunk accumulation and authoritative complete
  - error keeps partial output and raises TransportError
  - stop discards late events idempotently
  - session conflicts and unknown request ids
  - pump over async event streams
"""

import pytest

from convtree import (
    NotFound,
    SessionConflict,
    StreamEvent,
    TransportError,
    append,
    apply_event,
    continue_reply,
    open_session,
    prune_sessions,
    pump,
    stop,
)
from .conftest import event_stream


@pytest.fixture
def streaming(conversation):
    """A user turn with an open stream "r1" into an empty assistant placeholder."""
    user = append(conversation, conversation.root_id, "user", "Hi")
    session = continue_reply(conversation, user.id, request_id="r1")
    return conversation, session.target_id


class TestChunks:

    def test_complete_replaces_accumulated_text(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.chunk("r1", "Hel"))
        apply_event(conv, StreamEvent.chunk("r1", "lo"))
        assert conv.store.get(target).content == "Hello"
        assert conv.store.get(target).is_streaming is True

        apply_event(conv, StreamEvent.complete("r1", "Hello"))

        message = conv.store.get(target)
        assert message.content == "Hello"
        assert message.is_streaming is False
        assert conv.sessions["r1"].state == "completed"

    def test_complete_corrects_drift(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.chunk("r1", "Helo"))
        apply_event(conv, StreamEvent.complete("r1", "Hello"))
        assert conv.store.get(target).content == "Hello"

    def test_reasoning_channel(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.reasoning_chunk("r1", "thinking "))
        apply_event(conv, StreamEvent.reasoning_chunk("r1", "hard"))
        assert conv.store.get(target).reasoning_content == "thinking hard"

        apply_event(conv, StreamEvent.complete("r1", "Answer", "thought"))
        assert conv.store.get(target).reasoning_content == "thought"

    def test_complete_without_reasoning_keeps_streamed_reasoning(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.reasoning_chunk("r1", "hmm"))
        apply_event(conv, StreamEvent.complete("r1", "Answer"))
        assert conv.store.get(target).reasoning_content == "hmm"

    def test_events_notify(self, streaming):
        conv, target = streaming
        kinds = []
        conv.subscribe(lambda event: kinds.append(event.kind))
        apply_event(conv, StreamEvent.chunk("r1", "a"))
        apply_event(conv, StreamEvent.complete("r1", "a"))
        assert kinds == ["stream_chunk", "stream_complete"]


class TestErrors:

    def test_error_keeps_partial_content(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.chunk("r1", "Partial"))

        with pytest.raises(TransportError) as excinfo:
            apply_event(conv, StreamEvent.error("r1", "connection reset"))

        assert "connection reset" in str(excinfo.value)
        assert excinfo.value.request_id == "r1"
        message = conv.store.get(target)
        assert message.content == "Partial"
        assert message.is_streaming is False
        assert message.has_error is True
        assert conv.sessions["r1"].state == "failed"

    def test_events_after_error_discarded(self, streaming):
        conv, target = streaming
        with pytest.raises(TransportError):
            apply_event(conv, StreamEvent.error("r1", "boom"))
        assert apply_event(conv, StreamEvent.chunk("r1", "late")) is None
        assert conv.store.get(target).content == ""

    def test_unknown_request(self, streaming):
        conv, _target = streaming
        with pytest.raises(NotFound):
            apply_event(conv, StreamEvent.chunk("nope", "x"))


class TestStop:

    def test_late_chunk_ignored(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.chunk("r1", "Hel"))

        assert stop(conv, "r1") is True
        assert apply_event(conv, StreamEvent.chunk("r1", "lo")) is None
        assert apply_event(conv, StreamEvent.complete("r1", "Hello")) is None

        message = conv.store.get(target)
        assert message.content == "Hel"
        assert message.is_streaming is False
        assert conv.sessions["r1"].state == "aborted"

    def test_stop_is_idempotent(self, streaming):
        conv, _target = streaming
        assert stop(conv, "r1") is True
        assert stop(conv, "r1") is False

    def test_stop_after_complete(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.complete("r1", "done"))
        assert stop(conv, "r1") is False
        assert conv.store.get(target).content == "done"

    def test_stop_unknown(self, conversation):
        with pytest.raises(NotFound):
            stop(conversation, "nope")


class TestSessions:

    def test_second_session_on_streaming_node(self, streaming):
        conv, target = streaming
        with pytest.raises(SessionConflict):
            open_session(conv, "r2", target)
        assert "r2" not in conv.sessions

    def test_reopen_after_completion(self, streaming):
        conv, target = streaming
        apply_event(conv, StreamEvent.complete("r1", "first"))
        session = open_session(conv, "r2", target)
        apply_event(conv, StreamEvent.chunk("r2", " more"))
        assert session.is_open
        assert conv.store.get(target).content == "first more"

    def test_reopen_clears_error_flag(self, streaming):
        conv, target = streaming
        with pytest.raises(TransportError):
            apply_event(conv, StreamEvent.error("r1", "boom"))
        open_session(conv, "r2", target)
        assert conv.store.get(target).has_error is False

    def test_request_id_cannot_be_reused(self, streaming):
        conv, _target = streaming
        other = append(conv, conv.root_id, "user", "Other")
        with pytest.raises(SessionConflict):
            open_session(conv, "r1", other.id)

    def test_ended_sessions_are_pruned_oldest_first(self, conversation):
        user = append(conversation, conversation.root_id, "user", "Hi")
        first = continue_reply(conversation, user.id, request_id="r0")
        apply_event(conversation, StreamEvent.complete("r0", "zero"))
        for n in range(1, 4):
            open_session(conversation, f"r{n}", first.target_id)
            apply_event(conversation, StreamEvent.complete(f"r{n}", str(n)))
        other = append(conversation, conversation.root_id, "user", "Other")
        open_reply = continue_reply(conversation, other.id, request_id="open")

        prune_sessions(conversation, keep=2)

        assert list(conversation.sessions) == ["r2", "r3", "open"]
        assert conversation.sessions["open"] is open_reply
        with pytest.raises(NotFound):
            apply_event(conversation, StreamEvent.chunk("r0", "late"))

    def test_opening_a_session_prunes(self, conversation, monkeypatch):
        import convtree.streaming as streaming_module

        monkeypatch.setattr(streaming_module, "ENDED_SESSIONS_KEPT", 1)
        user = append(conversation, conversation.root_id, "user", "Hi")
        session = continue_reply(conversation, user.id, request_id="r0")
        apply_event(conversation, StreamEvent.complete("r0", "zero"))
        open_session(conversation, "r1", session.target_id)
        apply_event(conversation, StreamEvent.complete("r1", "one"))
        open_session(conversation, "r2", session.target_id)

        assert list(conversation.sessions) == ["r1", "r2"]

    def test_concurrent_sessions_on_distinct_nodes(self, conversation):
        a = append(conversation, conversation.root_id, "user", "A")
        first = continue_reply(conversation, a.id, request_id="ra")
        b = append(conversation, conversation.root_id, "user", "B")
        second = continue_reply(conversation, b.id, request_id="rb")

        apply_event(conversation, StreamEvent.chunk("rb", "bee"))
        apply_event(conversation, StreamEvent.chunk("ra", "ay"))

        assert conversation.store.get(first.target_id).content == "ay"
        assert conversation.store.get(second.target_id).content == "bee"


class TestPump:

    @pytest.mark.asyncio
    async def test_pump_until_complete(self, streaming):
        conv, target = streaming
        events = event_stream(
            StreamEvent.chunk("r1", "Hel"),
            StreamEvent.chunk("r1", "lo"),
            StreamEvent.complete("r1", "Hello"),
            StreamEvent.chunk("r1", "ignored"),
        )
        message = await pump(conv, "r1", events)
        assert message.id == target
        assert message.content == "Hello"
        assert message.is_streaming is False

    @pytest.mark.asyncio
    async def test_pump_raises_on_error_event(self, streaming):
        conv, target = streaming
        events = event_stream(StreamEvent.chunk("r1", "Par"), StreamEvent.error("r1", "boom"))
        with pytest.raises(TransportError):
            await pump(conv, "r1", events)
        assert conv.store.get(target).content == "Par"

    @pytest.mark.asyncio
    async def test_pump_stops_reading_after_stop(self, streaming):
        conv, target = streaming
        consumed = []

        async def source():
            for text in ["a", "b", "c"]:
                consumed.append(text)
                if text == "b":
                    stop(conv, "r1")
                yield StreamEvent.chunk("r1", text)

        message = await pump(conv, "r1", source())
        assert consumed == ["a", "b"]
        assert message.content == "a"

    @pytest.mark.asyncio
    async def test_pump_without_final_event_stays_streaming(self, streaming):
        conv, target = streaming
        message = await pump(conv, "r1", event_stream(StreamEvent.chunk("r1", "x")))
        assert message.is_streaming is True
        assert conv.sessions["r1"].is_open

    @pytest.mark.asyncio
    async def test_pump_unknown_request(self, conversation):
        with pytest.raises(NotFound):
            await pump(conversation, "nope", event_stream())
