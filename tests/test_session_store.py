"""Tests for SessionStore and the call-session state machine."""

import asyncio
import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from receptionist.errors import InvalidTransition
from receptionist.models.call import TRANSITIONS, CallSession, CallState
from receptionist.session import SessionStore, redact_pii


class TestCallSession:
    def test_defaults(self):
        session = CallSession(call_sid="CA1")
        assert session.state is CallState.START
        assert session.scheduled_event_id is None
        assert not session.is_ended

    def test_happy_path(self):
        session = CallSession(call_sid="CA1")
        for state in (
            CallState.LISTENING,
            CallState.INTENT_RESOLVED,
            CallState.SCHEDULING,
            CallState.BOOKED,
            CallState.END,
        ):
            session.advance(state)
        assert session.is_ended
        assert session.history == [
            "listening", "intent_resolved", "awaiting_datetime", "booked", "end",
        ]

    def test_illegal_transition_raises(self):
        session = CallSession(call_sid="CA1")
        with pytest.raises(InvalidTransition):
            session.advance(CallState.BOOKED)
        assert session.state is CallState.START

    def test_rejections_return_to_scheduling(self):
        session = CallSession(call_sid="CA1", state=CallState.SCHEDULING)
        session.advance(CallState.OUT_OF_HOURS)
        assert session.is_scheduling
        session.advance(CallState.SCHEDULING)
        session.advance(CallState.BOOKING_FAILED)
        session.advance(CallState.SCHEDULING)
        assert session.state is CallState.SCHEDULING

    def test_every_state_can_end(self):
        for state in CallState:
            if state is not CallState.END:
                assert CallState.END in TRANSITIONS[state]

    def test_end_is_terminal(self):
        assert TRANSITIONS[CallState.END] == frozenset()

    def test_json_round_trip(self):
        session = CallSession(call_sid="CA1", caller="+15551234567")
        session.advance(CallState.LISTENING)
        session.attach_event("evt-1")
        restored = CallSession.model_validate_json(session.model_dump_json())
        assert restored == session
        assert restored.state is CallState.LISTENING


class TestRedaction:
    def test_masks_phone_number(self):
        assert redact_pii("+15551234567") == "+15***67"

    def test_short_values_fully_masked(self):
        assert redact_pii("123") == "***"
        assert redact_pii("") == "***"


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_transaction_creates_on_demand(self):
        store = SessionStore()
        async with store.transaction("CA1", create=True, caller="+15551234567") as session:
            session.advance(CallState.LISTENING)
        assert "CA1" in store
        assert store.get("CA1").caller == "+15551234567"
        assert store.get("CA1").state is CallState.LISTENING

    @pytest.mark.asyncio
    async def test_transaction_without_create_yields_none(self):
        store = SessionStore()
        async with store.transaction("missing") as session:
            assert session is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_session_removed_when_ended(self):
        store = SessionStore()
        async with store.transaction("CA1", create=True) as session:
            session.advance(CallState.END)
        assert "CA1" not in store

    @pytest.mark.asyncio
    async def test_transactions_on_one_call_are_serialized(self):
        store = SessionStore()
        async with store.transaction("CA1", create=True) as session:
            session.advance(CallState.LISTENING)

        order = []

        async def worker(name, delay):
            async with store.transaction("CA1") as session:
                order.append(f"{name}-in")
                await asyncio.sleep(delay)
                session.advance(CallState.LISTENING)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a", 0.05), worker("b", 0))
        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )
        assert store.get("CA1").history.count("listening") == 3

    @pytest.mark.asyncio
    async def test_different_calls_do_not_block(self):
        store = SessionStore()
        entered = asyncio.Event()

        async def slow():
            async with store.transaction("CA1", create=True):
                entered.set()
                await asyncio.sleep(0.2)

        task = asyncio.create_task(slow())
        await entered.wait()
        async with store.transaction("CA2", create=True) as other:
            assert other.call_sid == "CA2"
            assert not task.done()
        await task

    @pytest.mark.asyncio
    async def test_remove(self):
        store = SessionStore()
        async with store.transaction("CA1", create=True):
            pass
        removed = await store.remove("CA1")
        assert removed.call_sid == "CA1"
        assert await store.remove("CA1") is None

    @pytest.mark.asyncio
    async def test_locks_are_released(self):
        store = SessionStore()
        async with store.transaction("CA1", create=True):
            pass
        await store.remove("CA1")
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_expire_stale(self):
        store = SessionStore(ttl_seconds=60)
        async with store.transaction("old", create=True):
            pass
        async with store.transaction("fresh", create=True):
            pass
        store.get("old").updated_at = time.time() - 120

        expired = await store.expire_stale()
        assert expired == ["old"]
        assert [s.call_sid for s in store.active()] == ["fresh"]

    @pytest.mark.asyncio
    async def test_sweeper_runs_until_cancelled(self):
        store = SessionStore(ttl_seconds=0)
        async with store.transaction("CA1", create=True):
            pass
        store.get("CA1").updated_at = time.time() - 5

        task = asyncio.create_task(store.run_sweeper(interval=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(store) == 0
