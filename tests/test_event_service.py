from unittest.mock import AsyncMock

import pytest

from models.flow_trigger_data import FlowTriggerData
from models.request.inbound_event_request import InboundEventRequest

from conftest import node, edge, make_flow


def inbound(text="Hello", chat_id="chat_1", sender_type="customer", **overrides):
    return InboundEventRequest(**{
        "organization_id": "org_1",
        "chat_id": chat_id,
        "customer_id": "customer_1",
        "channel": "whatsapp",
        "sender_type": sender_type,
        "message_type": "text",
        "message_body": {"text": {"body": text}},
        **overrides,
    })


async def welcome_flow(flow_db, published=True):
    flow = await flow_db.create_flow(make_flow(
        [
            node("s", "start"),
            node("w", "text", text="Welcome!"),
            node("i", "input", inputConfig={"variableName": "answer", "debounceTime": 0}),
            node("bye", "text", text="You said {{answer}}"),
        ],
        [edge("s", "w"), edge("w", "i"), edge("i", "bye", "text")],
        published=published,
    ))
    await flow_db.save_trigger(FlowTriggerData(
        flow_id=flow.id,
        organization_id="org_1",
        type="first_contact",
        conditions={"operator": "AND", "rules": [{"type": "channel", "params": {"channels": ["whatsapp"]}}]},
    ))
    return flow


@pytest.mark.asyncio
async def test_first_contact_starts_session(event_service, flow_db, dispatch):
    flow = await welcome_flow(flow_db)

    response = await event_service.process_inbound_event(inbound())

    assert response.status == "success"
    assert response.session_started
    assert response.flow_id == flow.id
    assert response.current_node_id == "i"
    assert dispatch.contents == ["Welcome!"]

    session = await flow_db.get_session(response.session_id)
    assert session.message_history[0].sender_type == "user"
    assert session.message_history[0].content == "Hello"

    event = flow_db.events[response.event_id]
    assert event.metadata.status == "processed"
    assert event.data == {"user_reply": "Hello"}


@pytest.mark.asyncio
async def test_next_message_goes_to_active_session(event_service, flow_db, dispatch):
    await welcome_flow(flow_db)
    first = await event_service.process_inbound_event(inbound())

    second = await event_service.process_inbound_event(inbound("Pizza"))

    assert second.status == "success"
    assert not second.session_started
    assert second.session_id == first.session_id
    assert dispatch.contents == ["Welcome!", "You said Pizza"]
    assert second.session_status == "inactive"


@pytest.mark.asyncio
async def test_returning_customer_is_not_first_contact(event_service, flow_db, dispatch):
    """Without an explicit flag, an earlier session means the customer is known."""
    await welcome_flow(flow_db)
    await event_service.process_inbound_event(inbound())
    await event_service.process_inbound_event(inbound("done"))

    response = await event_service.process_inbound_event(inbound("back again"))

    assert response.status == "no_automation"
    assert response.message == "No trigger matched"
    assert dispatch.contents == ["Welcome!", "You said done"]


@pytest.mark.asyncio
async def test_explicit_first_contact_flag_wins(event_service, flow_db):
    await welcome_flow(flow_db)
    response = await event_service.process_inbound_event(inbound(is_first_contact=False))
    assert response.status == "no_automation"


@pytest.mark.asyncio
async def test_unpublished_flow_does_not_start(event_service, flow_db, dispatch):
    await welcome_flow(flow_db, published=False)
    response = await event_service.process_inbound_event(inbound())
    assert response.status == "no_automation"
    assert dispatch.sent == []


@pytest.mark.asyncio
async def test_message_after_session_ended_by_overdue_buffer_reaches_triggers(event_service, flow_db, dispatch, clock):
    flow = await flow_db.create_flow(make_flow(
        [
            node("s", "start"),
            node("i", "input", inputConfig={"variableName": "answer", "debounceTime": 5}),
            node("bye", "text", text="You said {{answer}}"),
        ],
        [edge("s", "i"), edge("i", "bye", "text")],
    ))
    await flow_db.save_trigger(FlowTriggerData(flow_id=flow.id, organization_id="org_1", type="first_contact"))
    first = await event_service.process_inbound_event(inbound("Hello"))
    await event_service.process_inbound_event(inbound("Pizza"))
    clock.advance(10)

    response = await event_service.process_inbound_event(inbound("Hello again", is_first_contact=True))

    assert dispatch.contents == ["You said Pizza"]
    assert response.session_started
    assert response.session_id != first.session_id
    ended = await flow_db.get_session(first.session_id)
    assert ended.status == "inactive"
    assert "Hello again" not in [entry.content for entry in ended.message_history]


@pytest.mark.asyncio
async def test_agent_message_only_tracks_activity(event_service, flow_db):
    await welcome_flow(flow_db)
    response = await event_service.process_inbound_event(inbound("On it", sender_type="agent"))

    assert response.status == "no_automation"
    assert flow_db.sessions == {}
    chat = flow_db.chats["chat_1"]
    assert chat.last_agent_message_at is not None
    assert chat.last_customer_message_at is None


@pytest.mark.asyncio
async def test_processing_error_is_recorded(event_service, flow_db, session_service, mocker):
    await welcome_flow(flow_db)
    mocker.patch.object(session_service, "start_session", new_callable=AsyncMock, side_effect=RuntimeError("db down"))

    response = await event_service.process_inbound_event(inbound())

    assert response.status == "error"
    assert response.error_details == "db down"
    event = flow_db.events[response.event_id]
    assert event.metadata.status == "error"
    assert event.result == {"error": "db down"}
    # The lock is released even when processing fails
    assert flow_db.locks == {}
