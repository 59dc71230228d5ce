from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from models.customer_data import CustomerData, ChatData
from exceptions.flow_exception import ExternalCallException, SessionStateException, FlowNotFoundException

from conftest import node, edge, make_flow


async def start(session_service, flow_db, flow, preview=False, **kwargs):
    flow = await flow_db.create_flow(flow)
    return await session_service.start_session(
        flow,
        organization_id="org_1",
        chat_id=kwargs.pop("chat_id", "chat_1"),
        customer_id=kwargs.pop("customer_id", "customer_1"),
        channel="whatsapp",
        preview=preview,
        **kwargs
    )


def input_flow(**input_data):
    return make_flow(
        [
            node("s", "start"),
            node("ask", "text", text="What is your name?"),
            node("i", "input", inputConfig={"variableName": "name", **input_data.pop("inputConfig", {})}, **input_data),
            node("hi", "text", text="Hi {{name}}"),
        ],
        [edge("s", "ask"), edge("ask", "i"), edge("i", "hi", "text")],
    )


@pytest.mark.asyncio
async def test_split_paragraphs_sends_messages_in_order(session_service, flow_db, dispatch):
    """A, B and C leave as three messages, then the flow ends gracefully."""
    flow = make_flow(
        [node("s", "start"), node("t", "text", text="A\n\nB\n\nC", splitParagraphs=True)],
        [edge("s", "t")],
    )
    session = await start(session_service, flow_db, flow)

    assert dispatch.contents == ["A", "B", "C"]
    assert session.status == "inactive"
    assert session.error is None
    stored = await flow_db.get_session(session.id)
    assert [entry.content for entry in stored.message_history if entry.sender_type == "bot"] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_partial_delivery_is_recorded_in_error(session_service, flow_db, dispatch, mocker):
    """A dispatch failure midway through a split text keeps what was already delivered."""
    delivered = []

    async def fail_after_first(message):
        if delivered:
            raise ExternalCallException("Channel service returned status 503", node_id=message.node_id)
        delivered.append(message.content)

    mocker.patch.object(dispatch, "send_message", new_callable=AsyncMock, side_effect=fail_after_first)
    flow = make_flow(
        [node("s", "start"), node("t", "text", text="A\n\nB\n\nC", splitParagraphs=True)],
        [edge("s", "t")],
    )
    session = await start(session_service, flow_db, flow)

    assert delivered == ["A"]
    assert session.status == "inactive"
    assert session.error == "Channel service returned status 503 (1 of 3 messages delivered)"
    stored = await flow_db.get_session(session.id)
    assert [entry.content for entry in stored.message_history if entry.sender_type == "bot"] == ["A"]
    assert [entry.content for entry in stored.message_history if entry.sender_type == "error"] == [session.error]


@pytest.mark.asyncio
@pytest.mark.parametrize("age, expected", [("20", "adult"), ("10", "minor")])
async def test_condition_routes_by_variable(session_service, flow_db, dispatch, age, expected):
    flow = make_flow(
        [
            node("s", "start"),
            node("c", "condition", conditions=[{"variable": "age", "operator": ">", "value": "18"}]),
            node("a", "text", text="adult"),
            node("m", "text", text="minor"),
        ],
        [edge("s", "c"), edge("c", "a", "condition-0"), edge("c", "m", "else")],
        variables=[{"id": "v1", "name": "age", "value": age}],
    )
    await start(session_service, flow_db, flow)
    assert dispatch.contents == [expected]


@pytest.mark.asyncio
async def test_branch_without_edge_is_a_dead_end(session_service, flow_db, dispatch):
    flow = make_flow(
        [node("s", "start"), node("c", "condition", conditions=[{"variable": "x", "operator": "isSet"}]), node("a", "text", text="set")],
        [edge("s", "c"), edge("c", "a", "condition-0")],
    )
    session = await start(session_service, flow_db, flow)
    assert session.status == "inactive"
    assert session.current_node_id == "c"
    assert dispatch.contents == []


@pytest.mark.asyncio
async def test_flow_without_start_node_starts_nothing(session_service, flow_db):
    flow = make_flow([node("t", "text", text="orphan")], [])
    assert await start(session_service, flow_db, flow) is None
    assert flow_db.sessions == {}


@pytest.mark.asyncio
async def test_rapid_messages_are_coalesced(session_service, flow_db, dispatch, clock):
    """Messages inside the debounce window resolve the input once, joined in order."""
    session = await start(session_service, flow_db, input_flow(inputConfig={"debounceTime": 5}))
    assert session.awaiting == "input"
    assert dispatch.contents == ["What is your name?"]

    session = await session_service.handle_inbound_message(session, "Ana")
    assert session.debounce_timestamp == clock.now + timedelta(seconds=5)
    clock.advance(2)
    session = await session_service.handle_inbound_message(session, "Silva")

    assert session.pending_input == ["Ana", "Silva"]
    stored = await flow_db.get_session(session.id)
    assert stored.debounce_timestamp == clock.now + timedelta(seconds=5)
    assert dispatch.contents == ["What is your name?"]

    clock.advance(5)
    session = await session_service.flush_debounced_input(session)

    assert session.variables["name"] == "Ana\nSilva"
    assert dispatch.contents == ["What is your name?", "Hi Ana\nSilva"]
    assert session.status == "inactive"


@pytest.mark.asyncio
async def test_zero_debounce_resolves_immediately(session_service, flow_db, dispatch):
    session = await start(session_service, flow_db, input_flow(inputConfig={"debounceTime": 0}))
    session = await session_service.handle_inbound_message(session, "Ana")
    assert dispatch.contents[-1] == "Hi Ana"
    assert session.awaiting is None


@pytest.mark.asyncio
async def test_session_ended_by_overdue_buffer_is_not_touched(session_service, flow_db, dispatch, clock):
    """Settling an overdue burst can end the session; the newer message is not recorded on it."""
    session = await start(session_service, flow_db, input_flow(inputConfig={"debounceTime": 5}))
    session = await session_service.handle_inbound_message(session, "Bob")
    clock.advance(10)

    session = await session_service.handle_inbound_message(session, "second message")

    assert dispatch.contents[-1] == "Hi Bob"
    assert session.is_terminal
    stored = await flow_db.get_session(session.id)
    assert stored.status == "inactive"
    assert stored.message_history[-1].content == "Hi Bob"
    assert "second message" not in [entry.content for entry in stored.message_history]


@pytest.mark.asyncio
async def test_overdue_buffer_moves_on_before_new_message(session_service, flow_db, dispatch, clock):
    flow = make_flow(
        [
            node("s", "start"),
            node("i", "input", inputConfig={"variableName": "name", "debounceTime": 5}),
            node("i2", "input", inputConfig={"variableName": "city", "debounceTime": 5}),
        ],
        [edge("s", "i"), edge("i", "i2", "text")],
    )
    session = await start(session_service, flow_db, flow)
    session = await session_service.handle_inbound_message(session, "Ana")
    clock.advance(10)

    session = await session_service.handle_inbound_message(session, "Lisbon")

    assert session.variables["name"] == "Ana"
    assert session.current_node_id == "i2"
    assert session.pending_input == ["Lisbon"]
    assert session.message_history[-1].content == "Lisbon"


@pytest.mark.asyncio
async def test_options_input_routes_to_option_handle(session_service, flow_db, dispatch):
    flow = make_flow(
        [
            node("s", "start"),
            node("i", "input", inputType="options", options=[{"text": "Sales"}, {"text": "Support"}], inputConfig={"debounceTime": 0}),
            node("sales", "text", text="Sales team"),
            node("support", "text", text="Support team"),
            node("nm", "text", text="Please pick an option"),
        ],
        [edge("s", "i"), edge("i", "sales", "option-0"), edge("i", "support", "option-1"), edge("i", "nm", "no-match")],
    )
    session = await start(session_service, flow_db, flow)
    await session_service.handle_inbound_message(session, "support")
    assert dispatch.contents == ["Support team"]


@pytest.mark.asyncio
async def test_input_timeout_follows_timeout_handle(session_service, flow_db, dispatch, clock):
    flow = make_flow(
        [
            node("s", "start"),
            node("i", "input", inputConfig={"timeout": 30}),
            node("late", "text", text="Still there?"),
        ],
        [edge("s", "i"), edge("i", "late", "timeout")],
    )
    session = await start(session_service, flow_db, flow)
    assert session.timeout_at is not None

    clock.advance(10)
    session = await session_service.handle_input_timeout(session)
    assert session.awaiting == "input"
    assert dispatch.contents == []

    clock.advance(21)
    session = await session_service.handle_input_timeout(session)
    assert dispatch.contents == ["Still there?"]
    assert session.status == "inactive"


@pytest.mark.asyncio
async def test_input_timeout_without_handle_ends_session(session_service, flow_db, clock):
    flow = make_flow([node("s", "start"), node("i", "input", inputConfig={"timeout": 30})], [edge("s", "i")])
    session = await start(session_service, flow_db, flow)

    clock.advance(31)
    session = await session_service.handle_input_timeout(session)

    assert session.status == "timeout"
    assert (await flow_db.get_session(session.id)).status == "timeout"


@pytest.mark.asyncio
async def test_delay_suspends_and_resumes(session_service, flow_db, dispatch, clock):
    flow = make_flow(
        [node("s", "start"), node("a", "text", text="first"), node("d", "delay", delaySeconds=60), node("b", "text", text="second")],
        [edge("s", "a"), edge("a", "d"), edge("d", "b")],
    )
    session = await start(session_service, flow_db, flow)

    assert session.awaiting == "delay"
    assert dispatch.contents == ["first"]
    delay = next(iter(flow_db.delays.values()))
    assert delay.delay_node_id == "d"
    assert (delay.delay_completes_at - clock.now).total_seconds() == 60

    session = await session_service.resume_delay(delay)

    assert dispatch.contents == ["first", "second"]
    assert session.status == "inactive"


@pytest.mark.asyncio
async def test_message_while_delayed_is_only_recorded(session_service, flow_db, dispatch):
    flow = make_flow([node("s", "start"), node("d", "delay", delaySeconds=60), node("b", "text", text="second")], [edge("s", "d"), edge("d", "b")])
    session = await start(session_service, flow_db, flow)

    session = await session_service.handle_inbound_message(session, "hello?")

    assert session.awaiting == "delay"
    assert session.pending_input == []
    assert (await flow_db.get_session(session.id)).message_history[-1].content == "hello?"
    assert dispatch.contents == []


@pytest.mark.asyncio
async def test_failed_node_follows_error_handle(session_service, flow_db, dispatch, http_request_service, mocker):
    mocker.patch.object(http_request_service, "send", new_callable=AsyncMock, side_effect=ExternalCallException("boom", node_id="r"))
    flow = make_flow(
        [
            node("s", "start"),
            node("r", "request", request={"method": "GET", "url": "https://api.test"}),
            node("ok", "text", text="done"),
            node("sorry", "text", text="Something went wrong"),
        ],
        [edge("s", "r"), edge("r", "ok"), edge("r", "sorry", "error")],
    )
    session = await start(session_service, flow_db, flow)

    assert dispatch.contents == ["Something went wrong"]
    assert [entry.content for entry in session.message_history if entry.sender_type == "error"] == ["boom"]
    assert session.status == "inactive"


@pytest.mark.asyncio
async def test_failed_node_without_error_handle_ends_session(session_service, flow_db, dispatch, http_request_service, mocker):
    """The customer sees nothing; the error stays in the history for operators."""
    mocker.patch.object(http_request_service, "send", new_callable=AsyncMock, side_effect=ExternalCallException("boom", node_id="r"))
    flow = make_flow(
        [node("s", "start"), node("r", "request", request={"method": "GET", "url": "https://api.test"}), node("ok", "text", text="done")],
        [edge("s", "r"), edge("r", "ok")],
    )
    session = await start(session_service, flow_db, flow)

    assert dispatch.contents == []
    assert session.status == "inactive"
    assert session.error == "boom"
    assert [entry.content for entry in session.message_history if entry.sender_type == "error"] == ["boom"]


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained(session_service, flow_db, node_execution_service, mocker):
    mocker.patch.object(node_execution_service, "execute", new_callable=AsyncMock, side_effect=RuntimeError("kaput"))
    flow = make_flow([node("s", "start")], [])
    session = await start(session_service, flow_db, flow)
    assert session.status == "inactive"
    assert session.error == "kaput"


@pytest.mark.asyncio
async def test_session_is_persisted_before_external_call(session_service, flow_db, http_request_service, mocker):
    """A crash during the call resumes on the calling node."""
    seen = {}

    async def record_stored_state(request, node_id=None):
        stored = next(iter(flow_db.sessions.values()))
        seen["current_node_id"] = stored.current_node_id
        seen["variables"] = dict(stored.variables)
        return 200, {"ok": True}

    mocker.patch.object(http_request_service, "send", new_callable=AsyncMock, side_effect=record_stored_state)
    flow = make_flow(
        [
            node("s", "start"),
            node("v", "variable", variable={"name": "step", "value": "before call"}),
            node("r", "request", request={"method": "GET", "url": "https://api.test"}),
        ],
        [edge("s", "v"), edge("v", "r")],
    )
    await start(session_service, flow_db, flow)

    assert seen == {"current_node_id": "r", "variables": {"step": "before call"}}


@pytest.mark.asyncio
async def test_cancellation_during_run_drops_pending_effects(session_service, flow_db, dispatch, http_request_service, clock, mocker):
    async def cancel_during_call(request, node_id=None):
        session_id = next(iter(flow_db.sessions))
        await flow_db.mark_session_cancelled(session_id, ended_at=clock.now, reason="customer left the funnel")
        return 200, {"id": "x"}

    mocker.patch.object(http_request_service, "send", new_callable=AsyncMock, side_effect=cancel_during_call)
    flow = make_flow(
        [
            node("s", "start"),
            node("a", "text", text="before"),
            node("r", "request", request={"method": "GET", "url": "https://api.test", "variableMappings": [{"variable": "remote", "jsonPath": "id"}]}),
            node("b", "text", text="after"),
        ],
        [edge("s", "a"), edge("a", "r"), edge("r", "b")],
    )
    session = await start(session_service, flow_db, flow)

    assert dispatch.contents == ["before"]
    stored = await flow_db.get_session(session.id)
    assert stored.cancelled
    assert stored.status == "inactive"
    assert "remote" not in stored.variables
    assert stored.message_history[-1].content == "customer left the funnel"


@pytest.mark.asyncio
async def test_cancel_session(session_service, flow_db, dispatch):
    flow = make_flow([node("s", "start"), node("d", "delay", delaySeconds=60), node("b", "text", text="second")], [edge("s", "d"), edge("d", "b")])
    session = await start(session_service, flow_db, flow)
    delay = next(iter(flow_db.delays.values()))

    cancelled = await session_service.cancel_session(session.id, reason="opted out")

    assert cancelled.status == "inactive"
    assert cancelled.cancelled
    assert cancelled.awaiting is None
    assert flow_db.delays[delay.id].processed

    # A late delay resumption finds nothing to do
    await session_service.resume_delay(delay)
    assert dispatch.contents == []

    with pytest.raises(SessionStateException):
        await session_service.cancel_session(session.id)
    with pytest.raises(FlowNotFoundException):
        await session_service.cancel_session("missing")


@pytest.mark.asyncio
async def test_step_limit_stops_runaway_loops(session_service, flow_db):
    flow = make_flow(
        [node("s", "start"), node("a", "text", text="loop"), node("j", "jump_to", targetNodeId="a")],
        [edge("s", "a"), edge("a", "j")],
    )
    session = await start(session_service, flow_db, flow)
    assert session.status == "inactive"
    assert session.error.startswith("Step limit of 50 reached")


@pytest.mark.asyncio
async def test_jump_to_bypasses_edges(session_service, flow_db, dispatch):
    flow = make_flow(
        [node("s", "start"), node("j", "jump_to", targetNodeId="far"), node("near", "text", text="near"), node("far", "text", text="far")],
        [edge("s", "j"), edge("j", "near")],
    )
    await start(session_service, flow_db, flow)
    assert dispatch.contents == ["far"]


@pytest.mark.asyncio
async def test_preview_runs_draft_without_dispatch(session_service, flow_db, dispatch):
    """Preview sessions execute the draft with test values and never deliver messages."""
    flow = make_flow(
        [node("s", "start"), node("t", "text", text="Hi {{name}}")],
        [edge("s", "t")],
        variables=[{"id": "v1", "name": "name", "value": "Real", "testValue": "Tester"}],
        published=False,
    )
    session = await start(session_service, flow_db, flow, preview=True)

    assert dispatch.sent == []
    assert session.preview
    assert [entry.content for entry in session.message_history if entry.sender_type == "bot"] == ["Hi Tester"]


@pytest.mark.asyncio
async def test_live_sessions_ignore_unpublished_draft(session_service, flow_db):
    flow = make_flow([node("s", "start"), node("t", "text", text="draft only")], [edge("s", "t")], published=False)
    assert await start(session_service, flow_db, flow) is None


@pytest.mark.asyncio
async def test_update_customer_writes_customer_and_chat(session_service, flow_db):
    flow_db.customers["customer_1"] = CustomerData(id="customer_1", organization_id="org_1", name="Ana")
    flow_db.chats["chat_1"] = ChatData(id="chat_1", organization_id="org_1")
    flow = make_flow(
        [
            node("s", "start"),
            node("e", "update_customer", updateCustomer={"field": "email", "value": "{{customer.name}}@example.com"}),
            node("t", "update_customer", updateCustomer={"field": "team", "teamId": "support"}),
        ],
        [edge("s", "e"), edge("e", "t")],
    )
    await start(session_service, flow_db, flow)

    assert flow_db.customers["customer_1"].email == "Ana@example.com"
    assert flow_db.chats["chat_1"].team_id == "support"


@pytest.mark.asyncio
async def test_system_message_reaches_history_only(session_service, flow_db, dispatch):
    flow = make_flow([node("s", "start"), node("m", "system_message", text="VIP customer")], [edge("s", "m")])
    session = await start(session_service, flow_db, flow)
    assert dispatch.sent == []
    assert [(entry.sender_type, entry.content) for entry in session.message_history] == [("system", "VIP customer")]
