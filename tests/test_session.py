import anyio
import pytest

from millama.history import HistoryStore
from millama.model import (
    Decision,
    DecisionOutcome,
    Message,
    RateLimited,
    SessionState,
    TransportFailure,
)
from millama.session import DraftSessionManager, compose_system_prompt
from tests.fakes import (
    ALICE,
    BOB,
    MODEL,
    FakeClock,
    FakeDraftClient,
    FakeGateway,
    FakeSender,
    Harness,
    running_manager,
)


def test_compose_system_prompt() -> None:
    assert compose_system_prompt("be kind") == "be kind"
    assert (
        compose_system_prompt("be kind", base_prompt="You reply in chats.")
        == "You reply in chats.\n\nbe kind"
    )
    assert (
        compose_system_prompt("be kind", guidance="mention lunch")
        == "be kind\n\nAdditional guidance: mention lunch"
    )


@pytest.mark.anyio
async def test_duplicate_users_rejected() -> None:
    clock = FakeClock()
    async with anyio.create_task_group() as tg:
        with pytest.raises(ValueError, match="duplicate"):
            DraftSessionManager(
                users=[ALICE, ALICE],
                history=HistoryStore(limit=5),
                draft_client=FakeDraftClient(),
                gateway=FakeGateway(),
                sender=FakeSender(),
                model_params=MODEL,
                task_group=tg,
                debounce_s=1.0,
                clock=clock,
                sleep=clock.sleep,
            )


@pytest.mark.anyio
async def test_burst_is_coalesced_into_one_draft() -> None:
    async with running_manager() as h:
        await h.say(ALICE.id, "a")
        await h.clock.advance(0.4)
        await h.say(ALICE.id, "b")
        await h.clock.advance(0.5)
        await h.say(ALICE.id, "c")

        session = h.session(ALICE.id)
        assert session.pending_messages_since_last_draft == 3
        assert session.debounce_deadline == pytest.approx(1.9)

        await h.clock.advance(0.99)
        assert h.client.calls == []

        await h.clock.advance(0.01)
        assert len(h.client.calls) == 1
        call = h.client.calls[0]
        assert call.texts == ["a", "b", "c"]
        assert call.system_prompt == ALICE.system_prompt
        assert call.model_params == MODEL

        assert session.state is SessionState.AWAITING_APPROVAL
        assert session.pending_messages_since_last_draft == 0
        assert session.debounce_deadline is None
        assert session.session_token == "101:1"
        assert h.gateway.of("present") == [("present", ALICE.id, "draft 1", "101:1")]
        assert h.states(ALICE.id) == [
            SessionState.DRAFTING,
            SessionState.AWAITING_APPROVAL,
        ]


@pytest.mark.anyio
async def test_new_message_supersedes_pending_draft() -> None:
    async with running_manager(history_limit=3) as h:
        await h.say(ALICE.id, "a")
        await h.clock.advance(0.4)
        await h.say(ALICE.id, "b")
        await h.clock.advance(0.5)
        await h.say(ALICE.id, "c")
        await h.clock.advance(1.0)
        assert h.client.calls[0].texts == ["a", "b", "c"]

        await h.clock.advance(0.6)
        await h.say(ALICE.id, "d")
        # The pending draft stays up until the new burst settles.
        assert h.session(ALICE.id).state is SessionState.AWAITING_APPROVAL

        await h.clock.advance(1.0)
        assert len(h.client.calls) == 2
        assert h.client.calls[1].texts == ["b", "c", "d"]
        assert ("withdraw", ALICE.id, "101:1") in h.gateway.events
        assert h.gateway.of("present")[-1] == ("present", ALICE.id, "draft 2", "101:2")
        assert h.states(ALICE.id) == [
            SessionState.DRAFTING,
            SessionState.AWAITING_APPROVAL,
            SessionState.SUPERSEDED,
            SessionState.IDLE,
            SessionState.DRAFTING,
            SessionState.AWAITING_APPROVAL,
        ]

        outcome = await h.manager.decide(Decision("101:1", "approve"))
        assert outcome is DecisionOutcome.STALE
        assert h.sender.sent == []
        assert h.session(ALICE.id).state is SessionState.AWAITING_APPROVAL


@pytest.mark.anyio
async def test_trigger_while_drafting_is_queued_and_stale_result_dropped() -> None:
    client = FakeDraftClient()
    client.hold()
    async with running_manager(client=client) as h:
        await h.say(ALICE.id, "a")
        await h.clock.advance(1.0)
        assert len(client.calls) == 1
        assert h.session(ALICE.id).state is SessionState.DRAFTING

        await h.say(ALICE.id, "b")
        await h.clock.advance(1.0)
        session = h.session(ALICE.id)
        assert len(client.calls) == 1
        assert session.generation_id == 2
        assert session.queued_cycle is not None

        client.release()
        await anyio.wait_all_tasks_blocked()

        assert len(client.calls) == 2
        assert client.calls[1].texts == ["a", "b"]
        assert client.max_in_flight[ALICE.system_prompt] == 1
        assert h.gateway.of("present") == [("present", ALICE.id, "draft 2", "101:2")]
        assert session.state is SessionState.AWAITING_APPROVAL
        assert session.current_draft_text == "draft 2"


@pytest.mark.anyio
async def test_users_are_independent() -> None:
    client = FakeDraftClient()
    client.hold()
    async with running_manager(users=(ALICE, BOB), client=client) as h:
        await h.say(ALICE.id, "hi")
        await h.clock.advance(0.5)
        await h.say(BOB.id, "yo")
        await h.clock.advance(0.5)
        assert [call.system_prompt for call in client.calls] == [ALICE.system_prompt]

        await h.clock.advance(0.5)
        assert [call.system_prompt for call in client.calls] == [
            ALICE.system_prompt,
            BOB.system_prompt,
        ]
        assert client.calls[0].texts == ["hi"]
        assert client.calls[1].texts == ["yo"]

        client.release()
        await anyio.wait_all_tasks_blocked()
        assert h.session(ALICE.id).session_token == "101:1"
        assert h.session(BOB.id).session_token == "202:1"
        assert client.max_in_flight[ALICE.system_prompt] == 1
        assert client.max_in_flight[BOB.system_prompt] == 1


@pytest.mark.anyio
async def test_untracked_and_outgoing_messages_do_not_trigger() -> None:
    async with running_manager() as h:
        assert h.manager.handle_incoming(999, "who dis") is False
        outgoing = Message(sender_id=1, text="hey", timestamp=0.0, direction="outgoing")
        assert h.manager.handle_message(ALICE.id, outgoing) is True

        await h.clock.advance(5.0)
        assert h.client.calls == []
        assert h.history.snapshot(999) == ()
        assert h.history.snapshot(ALICE.id) == (outgoing,)
        assert h.session(ALICE.id).debounce_deadline is None


@pytest.mark.anyio
async def test_approve_sends_exactly_once() -> None:
    async with running_manager() as h:
        await h.say(ALICE.id, "lunch?")
        await h.clock.advance(1.0)

        outcome = await h.manager.decide(Decision("101:1", "approve"))
        assert outcome is DecisionOutcome.APPLIED
        assert h.sender.sent == [(ALICE.id, "draft 1")]
        assert h.gateway.of("sent") == [("sent", ALICE.id, "101:1", "draft 1")]

        session = h.session(ALICE.id)
        assert session.state is SessionState.IDLE
        assert session.session_token is None
        assert SessionState.SENT in h.states(ALICE.id)

        last = h.history.snapshot(ALICE.id)[-1]
        assert last.direction == "outgoing"
        assert last.text == "draft 1"
        assert last.sender_id == 1

        again = await h.manager.decide(Decision("101:1", "approve"))
        assert again is DecisionOutcome.STALE
        assert len(h.sender.sent) == 1

        # Recording our own reply does not start another cycle.
        await h.clock.advance(5.0)
        assert len(h.client.calls) == 1


@pytest.mark.anyio
async def test_reject_sends_nothing() -> None:
    async with running_manager() as h:
        await h.say(ALICE.id, "lunch?")
        await h.clock.advance(1.0)

        outcome = await h.manager.decide(Decision("101:1", "reject"))
        assert outcome is DecisionOutcome.APPLIED
        assert h.sender.sent == []
        assert h.gateway.of("rejected") == [("rejected", ALICE.id, "101:1")]
        assert h.states(ALICE.id)[-2:] == [SessionState.REJECTED, SessionState.IDLE]

        late = await h.manager.decide(Decision("101:1", "approve"))
        assert late is DecisionOutcome.STALE
        assert h.sender.sent == []


@pytest.mark.anyio
async def test_send_failure_allows_one_resend() -> None:
    async with running_manager(sender=FakeSender(failures=1)) as h:
        await h.say(ALICE.id, "lunch?")
        await h.clock.advance(1.0)

        first = await h.manager.decide(Decision("101:1", "approve"))
        assert first is DecisionOutcome.FAILED
        session = h.session(ALICE.id)
        assert session.state is SessionState.AWAITING_APPROVAL
        assert session.session_token == "101:1"
        assert h.gateway.of("send_failed") == [
            ("send_failed", ALICE.id, "101:1", True, False)
        ]

        second = await h.manager.decide(Decision("101:1", "approve"))
        assert second is DecisionOutcome.APPLIED
        assert h.sender.sent == [(ALICE.id, "draft 1")]
        assert h.sender.attempts == 2
        assert session.state is SessionState.IDLE


@pytest.mark.anyio
async def test_send_failure_twice_discards_draft() -> None:
    async with running_manager(sender=FakeSender(failures=5)) as h:
        await h.say(ALICE.id, "lunch?")
        await h.clock.advance(1.0)

        assert await h.manager.decide(Decision("101:1", "approve")) is DecisionOutcome.FAILED
        assert await h.manager.decide(Decision("101:1", "approve")) is DecisionOutcome.FAILED
        assert h.gateway.of("send_failed")[-1] == (
            "send_failed",
            ALICE.id,
            "101:1",
            False,
            False,
        )
        assert h.session(ALICE.id).state is SessionState.IDLE

        assert await h.manager.decide(Decision("101:1", "approve")) is DecisionOutcome.STALE
        assert h.sender.attempts == 2
        assert h.sender.sent == []


@pytest.mark.anyio
async def test_unexpected_send_error_keeps_draft_resendable() -> None:
    sender = FakeSender(failures=1, error=TimeoutError("request timed out"))
    async with running_manager(sender=sender) as h:
        await h.say(ALICE.id, "lunch?")
        await h.clock.advance(1.0)

        first = await h.manager.decide(Decision("101:1", "approve"))
        assert first is DecisionOutcome.FAILED
        session = h.session(ALICE.id)
        assert session.state is SessionState.AWAITING_APPROVAL
        assert session.session_token == "101:1"
        assert session.current_draft_text == "draft 1"
        assert h.gateway.of("send_failed") == [
            ("send_failed", ALICE.id, "101:1", True, False)
        ]

        second = await h.manager.decide(Decision("101:1", "approve"))
        assert second is DecisionOutcome.APPLIED
        assert h.sender.sent == [(ALICE.id, "draft 1")]
        assert session.state is SessionState.IDLE


async def _approve_in_background(h: Harness, outcomes: list[DecisionOutcome]) -> None:
    outcomes.append(await h.manager.decide(Decision("101:1", "approve")))


@pytest.mark.anyio
async def test_message_during_send_waits_for_send_to_finish() -> None:
    sender = FakeSender()
    sender.hold()
    async with running_manager(sender=sender) as h:
        await h.say(ALICE.id, "lunch?")
        await h.clock.advance(1.0)

        outcomes: list[DecisionOutcome] = []
        h.task_group.start_soon(_approve_in_background, h, outcomes)
        await anyio.wait_all_tasks_blocked()
        session = h.session(ALICE.id)
        assert session.state is SessionState.SENT

        await h.say(ALICE.id, "hello?")
        await h.clock.advance(1.0)
        assert len(h.client.calls) == 1
        assert session.queued_cycle is not None

        sender.release()
        await anyio.wait_all_tasks_blocked()

        assert outcomes == [DecisionOutcome.APPLIED]
        assert h.sender.sent == [(ALICE.id, "draft 1")]
        assert len(h.client.calls) == 2
        assert h.client.calls[1].texts == ["lunch?", "hello?", "draft 1"]
        assert h.gateway.of("present")[-1] == ("present", ALICE.id, "draft 2", "101:2")
        assert session.state is SessionState.AWAITING_APPROVAL


@pytest.mark.anyio
async def test_send_failure_after_new_messages_reports_superseded() -> None:
    sender = FakeSender(failures=1)
    sender.hold()
    async with running_manager(sender=sender) as h:
        await h.say(ALICE.id, "lunch?")
        await h.clock.advance(1.0)

        outcomes: list[DecisionOutcome] = []
        h.task_group.start_soon(_approve_in_background, h, outcomes)
        await anyio.wait_all_tasks_blocked()
        await h.say(ALICE.id, "hello?")
        await h.clock.advance(1.0)

        sender.release()
        await anyio.wait_all_tasks_blocked()

        assert outcomes == [DecisionOutcome.FAILED]
        assert h.sender.attempts == 1
        assert h.gateway.of("send_failed") == [
            ("send_failed", ALICE.id, "101:1", False, True)
        ]
        assert len(h.client.calls) == 2
        assert h.client.calls[1].texts == ["lunch?", "hello?"]
        assert h.session(ALICE.id).session_token == "101:2"
        assert await h.manager.decide(Decision("101:1", "approve")) is DecisionOutcome.STALE


@pytest.mark.anyio
async def test_rephrase_redrafts_same_snapshot_with_guidance() -> None:
    async with running_manager(base_system_prompt="Reply briefly.") as h:
        await h.say(ALICE.id, "are you coming?")
        await h.clock.advance(1.0)

        blank = await h.manager.decide(Decision("101:1", "rephrase", guidance="  "))
        assert blank is DecisionOutcome.FAILED
        assert h.session(ALICE.id).state is SessionState.AWAITING_APPROVAL

        outcome = await h.manager.decide(
            Decision("101:1", "rephrase", guidance="say you are running late")
        )
        assert outcome is DecisionOutcome.APPLIED
        await anyio.wait_all_tasks_blocked()

        assert len(h.client.calls) == 2
        first, second = h.client.calls
        assert first.system_prompt == f"Reply briefly.\n\n{ALICE.system_prompt}"
        assert second.system_prompt == (
            f"Reply briefly.\n\n{ALICE.system_prompt}"
            "\n\nAdditional guidance: say you are running late"
        )
        assert second.history == first.history
        assert ("withdraw", ALICE.id, "101:1") in h.gateway.events
        assert h.session(ALICE.id).session_token == "101:2"

        assert await h.manager.decide(Decision("101:1", "approve")) is DecisionOutcome.STALE


@pytest.mark.anyio
async def test_failure_returns_to_idle_and_waits_for_next_window() -> None:
    client = FakeDraftClient([RateLimited("slow down", retry_after=3.0)])
    async with running_manager(client=client) as h:
        await h.say(ALICE.id, "hello")
        await h.clock.advance(1.0)

        session = h.session(ALICE.id)
        assert session.state is SessionState.IDLE
        assert h.gateway.of("present") == []
        [(_, user_id, failure)] = h.gateway.of("failure")
        assert user_id == ALICE.id
        assert failure.kind == "rate_limited"

        await h.clock.advance(10.0)
        assert len(client.calls) == 1

        await h.say(ALICE.id, "hello?")
        await h.clock.advance(1.0)
        assert len(client.calls) == 2
        assert client.calls[1].texts == ["hello", "hello?"]
        assert session.state is SessionState.AWAITING_APPROVAL


@pytest.mark.anyio
async def test_client_exception_becomes_transport_failure() -> None:
    client = FakeDraftClient([RuntimeError("boom")])
    async with running_manager(client=client) as h:
        await h.say(ALICE.id, "hello")
        await h.clock.advance(1.0)

        [(_, _, failure)] = h.gateway.of("failure")
        assert isinstance(failure, TransportFailure)
        assert "boom" in failure.message
        assert h.session(ALICE.id).state is SessionState.IDLE


@pytest.mark.anyio
async def test_retry_redrafts_from_idle() -> None:
    client = FakeDraftClient([TransportFailure("timeout")])
    async with running_manager(client=client) as h:
        await h.say(ALICE.id, "hello")
        await h.clock.advance(1.0)
        assert h.session(ALICE.id).state is SessionState.IDLE

        assert await h.manager.retry(ALICE.id) is True
        await anyio.wait_all_tasks_blocked()
        assert len(client.calls) == 2
        assert h.gateway.of("present") == [("present", ALICE.id, "draft 2", "101:2")]

        assert await h.manager.retry(ALICE.id) is False
        assert await h.manager.retry(999) is False


@pytest.mark.anyio
async def test_empty_history_makes_no_call() -> None:
    async with running_manager() as h:
        assert await h.manager.retry(ALICE.id) is False
        await anyio.wait_all_tasks_blocked()
        assert h.client.calls == []
        assert h.session(ALICE.id).state is SessionState.IDLE


@pytest.mark.anyio
async def test_undelivered_draft_returns_to_idle() -> None:
    async with running_manager(gateway=FakeGateway(deliver=False)) as h:
        await h.say(ALICE.id, "hello")
        await h.clock.advance(1.0)

        session = h.session(ALICE.id)
        assert session.state is SessionState.IDLE
        assert session.session_token is None
        assert await h.manager.decide(Decision("101:1", "approve")) is DecisionOutcome.STALE


@pytest.mark.anyio
async def test_unknown_token_is_stale() -> None:
    async with running_manager() as h:
        assert await h.manager.decide(Decision("garbage", "approve")) is DecisionOutcome.STALE
        assert await h.manager.decide(Decision("999:1", "reject")) is DecisionOutcome.STALE
