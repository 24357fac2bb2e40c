"""Tests for the conversation session controller.

All scenarios run on a private event loop via ``asyncio.run``; the relay,
capture and synthesis are scripted fakes so ordering is deterministic.
"""

import asyncio

import pytest

from voicesphere.interface.events import CaptureFailed, CaptureFinalized, CapturePartial
from voicesphere.interface.session import (
    PERMISSION_DENIED_MESSAGE,
    RECOGNITION_UNAVAILABLE,
    UNEXPECTED_PROBLEM,
    SessionController,
)
from voicesphere.interface.voice.capture import CaptureError
from voicesphere.models import Role, SessionState
from voicesphere.relay.completion import UpstreamError


class ScriptedSource:
    """Reply source whose answers can be held back per prompt.

    With ``stubborn=True`` cancellation is ignored, which models a reply
    that arrives after the caller has moved on.
    """

    def __init__(self, stubborn=False):
        self.stubborn = stubborn
        self.calls = []
        self.cancelled = []
        self.gates = {}
        self.replies = {}
        self.errors = {}

    def hold(self, prompt):
        self.gates[prompt] = asyncio.Event()
        return self.gates[prompt]

    async def fetch_reply(self, prompt, history):
        self.calls.append((prompt, [turn.content for turn in history]))
        gate = self.gates.get(prompt)
        while gate is not None and not gate.is_set():
            try:
                await gate.wait()
            except asyncio.CancelledError:
                self.cancelled.append(prompt)
                if not self.stubborn:
                    raise
        if prompt in self.errors:
            raise self.errors[prompt]
        return self.replies.get(prompt, f"Reply to {prompt}")


class FakeCapture:
    def __init__(self, available=True, start_error=None):
        self.available = available
        self.start_error = start_error
        self.listener = None
        self.started = 0
        self.stopped = 0

    def attach(self, listener):
        self.listener = listener

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started += 1

    def stop(self):
        self.stopped += 1


class RecordingSynthesis:
    def __init__(self):
        self.spoken = []
        self.cancels = 0

    def speak(self, text):
        self.spoken.append(text)

    def cancel_all(self):
        self.cancels += 1


async def settle(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)


def contents(session):
    return [(turn.role, turn.content) for turn in session.transcript]


# ======================================================================
# Typed queries
# ======================================================================
class TestSubmitQuery:
    def test_initial_state(self):
        session = SessionController(ScriptedSource())
        assert session.state is SessionState.IDLE
        assert session.transcript == ()
        assert session.pending_transcript == ""
        assert session.last_error is None
        assert session.request_seq == 0

    def test_typed_query_round_trip(self):
        source = ScriptedSource()
        synthesis = RecordingSynthesis()

        async def scenario():
            session = SessionController(source, synthesis=synthesis)
            gate = source.hold("Hello")
            task = session.submit_query("  Hello  ")

            # User turn is visible before the reply arrives.
            assert session.state is SessionState.PROCESSING
            assert contents(session) == [(Role.USER, "Hello")]
            assert session.request_seq == 1

            gate.set()
            turn = await task
            assert turn.role is Role.ASSISTANT
            return session

        session = asyncio.run(scenario())
        assert session.state is SessionState.IDLE
        assert contents(session) == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Reply to Hello"),
        ]
        assert session.inflight is None
        assert synthesis.spoken == ["Reply to Hello"]

    def test_blank_query_ignored(self):
        async def scenario():
            session = SessionController(ScriptedSource())
            assert session.submit_query("   ") is None
            return session

        session = asyncio.run(scenario())
        assert session.state is SessionState.IDLE
        assert session.transcript == ()
        assert session.request_seq == 0

    def test_history_excludes_new_prompt(self):
        source = ScriptedSource()

        async def scenario():
            session = SessionController(source)
            await session.submit_query("One")
            await session.submit_query("Two")

        asyncio.run(scenario())
        assert source.calls == [
            ("One", []),
            ("Two", ["One", "Reply to One"]),
        ]

    def test_transcript_alternates_with_timestamps_ordered(self):
        async def scenario():
            session = SessionController(ScriptedSource())
            for prompt in ("a", "b", "c"):
                await session.submit_query(prompt)
            return session

        session = asyncio.run(scenario())
        roles = [turn.role for turn in session.transcript]
        assert roles == [Role.USER, Role.ASSISTANT] * 3
        stamps = [turn.timestamp for turn in session.transcript]
        assert stamps == sorted(stamps)

    def test_new_query_supersedes_pending_one(self):
        source = ScriptedSource()

        async def scenario():
            session = SessionController(source)
            source.hold("A")
            first = session.submit_query("A")
            await asyncio.sleep(0)
            second = session.submit_query("B")
            await second
            with pytest.raises(asyncio.CancelledError):
                await first
            return session

        session = asyncio.run(scenario())
        assert source.cancelled == ["A"]
        assert session.request_seq == 2
        assert contents(session) == [
            (Role.USER, "A"),
            (Role.USER, "B"),
            (Role.ASSISTANT, "Reply to B"),
        ]
        assert session.state is SessionState.IDLE

    def test_late_reply_for_superseded_request_discarded(self):
        source = ScriptedSource(stubborn=True)
        synthesis = RecordingSynthesis()

        async def scenario():
            session = SessionController(source, synthesis=synthesis)
            gate = source.hold("A")
            first = session.submit_query("A")
            await asyncio.sleep(0)
            await session.submit_query("B")

            gate.set()
            assert await first is None
            return session

        session = asyncio.run(scenario())
        assert source.cancelled == ["A"]
        assert contents(session) == [
            (Role.USER, "A"),
            (Role.USER, "B"),
            (Role.ASSISTANT, "Reply to B"),
        ]
        assert synthesis.spoken == ["Reply to B"]

    def test_relay_error_becomes_assistant_turn(self):
        source = ScriptedSource()
        source.errors["Hi"] = UpstreamError("Failed to process that request.")
        synthesis = RecordingSynthesis()

        async def scenario():
            session = SessionController(source, synthesis=synthesis)
            await session.submit_query("Hi")
            return session

        session = asyncio.run(scenario())
        expected = "I ran into a problem: Failed to process that request."
        assert contents(session)[-1] == (Role.ASSISTANT, expected)
        assert session.state is SessionState.IDLE
        assert synthesis.spoken == [expected]

    def test_unexpected_error_becomes_assistant_turn(self):
        source = ScriptedSource()
        source.errors["Hi"] = ValueError("bad json")

        async def scenario():
            session = SessionController(source)
            await session.submit_query("Hi")
            return session

        session = asyncio.run(scenario())
        assert contents(session)[-1] == (Role.ASSISTANT, UNEXPECTED_PROBLEM)
        assert session.state is SessionState.IDLE


# ======================================================================
# Capture
# ======================================================================
class TestCapture:
    def test_unsupported_capture(self):
        session = SessionController(ScriptedSource())
        assert session.start_capture() is False
        assert session.state is SessionState.IDLE
        assert session.last_error == RECOGNITION_UNAVAILABLE

    def test_unavailable_adapter(self):
        capture = FakeCapture(available=False)
        session = SessionController(ScriptedSource(), capture=capture)
        assert session.start_capture() is False
        assert session.last_error == RECOGNITION_UNAVAILABLE
        assert capture.started == 0

    def test_start_failure_message(self):
        capture = FakeCapture(start_error=CaptureError("Microphone is busy"))
        session = SessionController(ScriptedSource(), capture=capture)
        assert session.start_capture() is False
        assert session.state is SessionState.IDLE
        assert session.last_error == "Microphone is busy"

    def test_start_clears_previous_error_and_pending(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        session.last_error = "old"
        session.pending_transcript = "stale"
        assert session.start_capture() is True
        assert session.state is SessionState.LISTENING
        assert session.last_error is None
        assert session.pending_transcript == ""

    def test_partials_replace_pending_text(self):
        session = SessionController(ScriptedSource(), capture=FakeCapture())
        session.start_capture()
        session.dispatch(CapturePartial("what's"))
        session.dispatch(CapturePartial("what's the weather "))
        assert session.pending_transcript == "what's the weather"

    def test_partial_ignored_when_not_listening(self):
        session = SessionController(ScriptedSource(), capture=FakeCapture())
        session.dispatch(CapturePartial("hello"))
        assert session.pending_transcript == ""
        assert session.state is SessionState.IDLE

    def test_finalize_submits_pending_text(self):
        source = ScriptedSource()
        capture = FakeCapture()

        async def scenario():
            session = SessionController(source, capture=capture)
            session.start_capture()
            session.dispatch(CapturePartial("What's the weather?"))
            session.dispatch(CaptureFinalized())
            assert session.state is SessionState.PROCESSING
            assert session.pending_transcript == ""
            await session.inflight
            return session

        session = asyncio.run(scenario())
        assert contents(session) == [
            (Role.USER, "What's the weather?"),
            (Role.ASSISTANT, "Reply to What's the weather?"),
        ]
        assert session.state is SessionState.IDLE

    def test_finalize_without_text_goes_idle(self):
        source = ScriptedSource()
        session = SessionController(source, capture=FakeCapture())
        session.start_capture()
        session.dispatch(CapturePartial("   "))
        session.dispatch(CaptureFinalized())
        assert session.state is SessionState.IDLE
        assert session.transcript == ()
        assert source.calls == []

    def test_start_while_listening_stops(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        session.start_capture()
        session.dispatch(CapturePartial("half a thought"))
        assert session.start_capture() is False
        assert session.state is SessionState.IDLE
        assert session.pending_transcript == ""
        assert capture.stopped == 1

    def test_toggle(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        assert session.toggle_capture() is True
        assert session.state is SessionState.LISTENING
        assert session.toggle_capture() is False
        assert session.state is SessionState.IDLE

    def test_stop_discards_partial_text(self):
        source = ScriptedSource()
        session = SessionController(source, capture=FakeCapture())
        session.start_capture()
        session.dispatch(CapturePartial("never mind"))
        session.stop_capture()
        assert session.state is SessionState.IDLE
        assert session.pending_transcript == ""
        assert session.transcript == ()
        assert source.calls == []

    def test_stop_when_idle_is_noop(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        session.stop_capture()
        assert capture.stopped == 0

    def test_permission_denied(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        session.start_capture()
        session.dispatch(CapturePartial("partial"))
        session.dispatch(CaptureFailed("not-allowed"))
        assert session.last_error == PERMISSION_DENIED_MESSAGE
        assert session.state is SessionState.IDLE
        assert session.pending_transcript == ""
        assert session.transcript == ()
        assert capture.stopped == 1

    def test_other_capture_error(self):
        session = SessionController(ScriptedSource(), capture=FakeCapture())
        session.start_capture()
        session.dispatch(CaptureFailed("network"))
        assert session.last_error == "Recognition error: network"
        assert session.state is SessionState.IDLE

    def test_unknown_event_rejected(self):
        session = SessionController(ScriptedSource())
        with pytest.raises(TypeError):
            session.dispatch("finalized")

    def test_adapter_events_apply_immediately(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        session.start_capture()
        capture.listener(CapturePartial("hello"))
        assert session.pending_transcript == "hello"

    def test_capture_error_then_restart_keeps_new_capture(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        session.start_capture()
        capture.listener(CaptureFailed("not-allowed"))
        assert session.start_capture() is True
        assert session.state is SessionState.LISTENING
        assert session.last_error is None
        assert capture.stopped == 1

    def test_finalize_then_restart_keeps_utterance(self):
        source = ScriptedSource()
        capture = FakeCapture()

        async def scenario():
            session = SessionController(source, capture=capture)
            session.start_capture()
            capture.listener(CapturePartial("Tell me a joke"))
            capture.listener(CaptureFinalized())
            assert session.start_capture() is True
            await session.inflight
            return session

        session = asyncio.run(scenario())
        assert source.calls == [("Tell me a joke", [])]
        assert contents(session)[0] == (Role.USER, "Tell me a joke")
        assert session.state is SessionState.LISTENING

    def test_posted_events_are_drained(self):
        source = ScriptedSource()
        capture = FakeCapture()

        async def scenario():
            session = SessionController(source, capture=capture)
            runner = asyncio.create_task(session.run())
            session.start_capture()
            session.post(CapturePartial("Tell me a joke"))
            session.post(CaptureFinalized())
            await settle(lambda: len(session.transcript) == 2)
            runner.cancel()
            return session

        session = asyncio.run(scenario())
        assert contents(session)[0] == (Role.USER, "Tell me a joke")
        assert session.state is SessionState.IDLE


# ======================================================================
# Capture overlapping a pending request
# ======================================================================
class TestCaptureDuringProcessing:
    def test_reply_lands_while_listening(self):
        source = ScriptedSource()

        async def scenario():
            session = SessionController(source, capture=FakeCapture())
            gate = source.hold("First")
            task = session.submit_query("First")
            await asyncio.sleep(0)

            assert session.start_capture() is True
            assert session.state is SessionState.LISTENING

            gate.set()
            await task
            # The reply is recorded but listening continues.
            assert session.state is SessionState.LISTENING
            assert contents(session)[-1] == (Role.ASSISTANT, "Reply to First")

            session.stop_capture()
            return session

        session = asyncio.run(scenario())
        assert session.state is SessionState.IDLE

    def test_stop_returns_to_processing(self):
        source = ScriptedSource()

        async def scenario():
            session = SessionController(source, capture=FakeCapture())
            gate = source.hold("First")
            task = session.submit_query("First")
            session.start_capture()
            session.stop_capture()
            assert session.state is SessionState.PROCESSING
            gate.set()
            await task
            return session

        session = asyncio.run(scenario())
        assert session.state is SessionState.IDLE

    def test_spoken_query_supersedes_typed_one(self):
        source = ScriptedSource()

        async def scenario():
            session = SessionController(source, capture=FakeCapture())
            source.hold("Typed")
            session.submit_query("Typed")
            await asyncio.sleep(0)
            session.start_capture()
            session.dispatch(CapturePartial("Spoken"))
            session.dispatch(CaptureFinalized())
            await session.inflight
            return session

        session = asyncio.run(scenario())
        assert source.cancelled == ["Typed"]
        assert contents(session) == [
            (Role.USER, "Typed"),
            (Role.USER, "Spoken"),
            (Role.ASSISTANT, "Reply to Spoken"),
        ]

    def test_typed_query_while_listening_stops_capture(self):
        capture = FakeCapture()

        async def scenario():
            session = SessionController(ScriptedSource(), capture=capture)
            session.start_capture()
            session.dispatch(CapturePartial("abandoned"))
            task = session.submit_query("Typed instead")
            assert session.state is SessionState.PROCESSING
            assert session.pending_transcript == ""
            await task
            return session

        session = asyncio.run(scenario())
        assert capture.stopped == 1
        assert contents(session)[0] == (Role.USER, "Typed instead")


# ======================================================================
# Reset, close and observers
# ======================================================================
class TestLifecycle:
    def test_reset_clears_conversation(self):
        synthesis = RecordingSynthesis()

        async def scenario():
            session = SessionController(ScriptedSource(), synthesis=synthesis)
            await session.submit_query("Hi")
            session.last_error = "Recognition error: network"
            session.reset()
            return session

        session = asyncio.run(scenario())
        assert session.transcript == ()
        assert session.state is SessionState.IDLE
        assert session.pending_transcript == ""
        assert session.last_error == "Recognition error: network"
        assert synthesis.cancels == 1

    def test_reset_drops_pending_reply(self):
        source = ScriptedSource(stubborn=True)

        async def scenario():
            session = SessionController(source)
            gate = source.hold("Hi")
            task = session.submit_query("Hi")
            await asyncio.sleep(0)
            session.reset()
            gate.set()
            assert await task is None
            return session

        session = asyncio.run(scenario())
        assert session.transcript == ()
        assert session.state is SessionState.IDLE

    def test_reset_while_listening(self):
        capture = FakeCapture()
        session = SessionController(ScriptedSource(), capture=capture)
        session.start_capture()
        session.dispatch(CapturePartial("something"))
        session.reset()
        assert session.state is SessionState.IDLE
        assert session.pending_transcript == ""
        assert capture.stopped == 1

    def test_close_cancels_inflight(self):
        source = ScriptedSource()

        async def scenario():
            session = SessionController(source)
            source.hold("Hi")
            task = session.submit_query("Hi")
            await asyncio.sleep(0)
            session.close()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert source.cancelled == ["Hi"]

    def test_observer_receives_snapshots(self):
        snapshots = []

        async def scenario():
            session = SessionController(ScriptedSource(), on_change=snapshots.append)
            await session.submit_query("Hi")

        asyncio.run(scenario())
        assert [s.state for s in snapshots] == [SessionState.PROCESSING, SessionState.IDLE]
        assert [len(s.transcript) for s in snapshots] == [1, 2]

    def test_failing_observer_does_not_break_session(self):
        def explode(_snapshot):
            raise RuntimeError("observer bug")

        async def scenario():
            session = SessionController(ScriptedSource(), on_change=explode)
            await session.submit_query("Hi")
            return session

        session = asyncio.run(scenario())
        assert len(session.transcript) == 2
