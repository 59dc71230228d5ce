import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from utils.log_utils import LogUtil
from utils.lock_utils import ChatLockManager
from models.flow_data import FlowData
from models.flow_trigger_data import FlowTriggerData, InactivityFiring
from models.flow_session_data import FlowSessionData, HistoryEntry
from models.delay_data import DelayData
from models.inbound_event_data import InboundEventData
from models.customer_data import CustomerData, ChatData
from services.node_type_registry import NodeTypeRegistry
from services.flow_graph_service import FlowGraphService
from services.variable_service import VariableService
from services.condition_evaluation_service import ConditionEvaluationService
from services.trigger_evaluation_service import TriggerEvaluationService
from services.internal.http_request_service import HttpRequestService
from services.internal.openai_service import OpenAIService
from services.internal.agent_service import AgentService
from services.node_execution_service import NodeExecutionService
from services.session_service import SessionService
from services.flow_service import FlowService
from services.event_service import EventService
from services.scheduler_service import SchedulerService


START_TIME = datetime(2024, 5, 6, 12, 0, 0)  # A Monday


class FakeClock:
    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingDispatch:
    """Stands in for MessageDispatchService and keeps every outbound message"""

    def __init__(self):
        self.sent = []

    async def send_message(self, message):
        self.sent.append(message)

    @property
    def contents(self) -> List[Optional[str]]:
        return [message.content for message in self.sent]


class FakeFlowDB:
    """
    In-memory FlowDB. Stored models are copies, so callers holding a model
    never see writes they did not make, as with MongoDB.
    """

    def __init__(self):
        self.flows: Dict[str, FlowData] = {}
        self.triggers: Dict[str, FlowTriggerData] = {}
        self.sessions: Dict[str, FlowSessionData] = {}
        self.delays: Dict[str, DelayData] = {}
        self.events: Dict[str, InboundEventData] = {}
        self.locks: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, CustomerData] = {}
        self.chats: Dict[str, ChatData] = {}
        self.prompts: Dict[str, Dict[str, Any]] = {}
        self.integrations: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.firings: Dict[tuple, InactivityFiring] = {}

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def close(self):
        pass

    # Flows
    async def create_flow(self, flow: FlowData) -> FlowData:
        flow = flow.model_copy(deep=True)
        flow.id = self._new_id()
        self.flows[flow.id] = flow
        return flow.model_copy(deep=True)

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        flow = self.flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(self, organization_id: str) -> List[FlowData]:
        return [flow.model_copy(deep=True) for flow in self.flows.values() if flow.organization_id == organization_id]

    async def update_flow(self, flow_id: str, fields: Dict[str, Any]) -> Optional[FlowData]:
        flow = self.flows.get(flow_id)
        if flow is None:
            return None
        updated = FlowData.model_validate({**flow.model_dump(), **fields, "updated_at": datetime.utcnow()})
        self.flows[flow_id] = updated
        return updated.model_copy(deep=True)

    async def delete_flow(self, flow_id: str) -> bool:
        return self.flows.pop(flow_id, None) is not None

    # Triggers
    async def save_trigger(self, trigger: FlowTriggerData) -> Optional[FlowTriggerData]:
        trigger = trigger.model_copy(deep=True)
        if trigger.id is None:
            trigger.id = self._new_id()
        elif trigger.id not in self.triggers:
            return None
        self.triggers[trigger.id] = trigger
        return trigger.model_copy(deep=True)

    async def get_trigger(self, trigger_id: str) -> Optional[FlowTriggerData]:
        trigger = self.triggers.get(trigger_id)
        return trigger.model_copy(deep=True) if trigger else None

    async def list_triggers(self, flow_id: str) -> List[FlowTriggerData]:
        return [trigger for trigger in self.triggers.values() if trigger.flow_id == flow_id]

    async def get_active_triggers(self, organization_id: str) -> List[FlowTriggerData]:
        return [t for t in self.triggers.values() if t.organization_id == organization_id and t.is_active]

    async def get_active_triggers_by_type(self, trigger_type: str) -> List[FlowTriggerData]:
        return [t for t in self.triggers.values() if t.type == trigger_type and t.is_active]

    async def delete_trigger(self, trigger_id: str) -> bool:
        return self.triggers.pop(trigger_id, None) is not None

    async def delete_triggers_by_flow(self, flow_id: str) -> int:
        doomed = [trigger_id for trigger_id, t in self.triggers.items() if t.flow_id == flow_id]
        for trigger_id in doomed:
            del self.triggers[trigger_id]
        return len(doomed)

    # Sessions
    async def create_session(self, session: FlowSessionData) -> FlowSessionData:
        session.id = self._new_id()
        self.sessions[session.id] = session.model_copy(deep=True)
        return session

    async def get_session(self, session_id: str) -> Optional[FlowSessionData]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_active_session_by_chat(self, chat_id: str) -> Optional[FlowSessionData]:
        active = [
            s for s in self.sessions.values()
            if s.chat_id == chat_id and s.status == "active" and not s.preview
        ]
        if not active:
            return None
        return max(active, key=lambda s: s.created_at).model_copy(deep=True)

    async def has_previous_session(self, chat_id: str, customer_id: Optional[str] = None) -> bool:
        return any(
            not s.preview and (s.chat_id == chat_id or (customer_id and s.customer_id == customer_id))
            for s in self.sessions.values()
        )

    async def save_session(self, session: FlowSessionData) -> bool:
        stored = self.sessions.get(session.id)
        if stored is None or stored.cancelled:
            return False
        self.sessions[session.id] = session.model_copy(deep=True)
        return True

    async def is_session_cancelled(self, session_id: str) -> bool:
        stored = self.sessions.get(session_id)
        return bool(stored and stored.cancelled)

    async def mark_session_cancelled(self, session_id: str, ended_at: datetime, reason: Optional[str] = None) -> Optional[FlowSessionData]:
        stored = self.sessions.get(session_id)
        if stored is None or stored.status != "active":
            return None
        stored.cancelled = True
        stored.status = "inactive"
        stored.awaiting = None
        stored.pending_input = []
        stored.timeout_at = None
        stored.debounce_timestamp = None
        stored.resume_at = None
        stored.ended_at = ended_at
        stored.message_history.append(HistoryEntry(content=reason or "Session cancelled", sender_type="system", timestamp=ended_at))
        return stored.model_copy(deep=True)

    async def get_sessions_with_due_debounce(self, now: datetime) -> List[FlowSessionData]:
        return [
            s.model_copy(deep=True) for s in self.sessions.values()
            if s.status == "active" and s.awaiting == "input" and s.debounce_timestamp and s.debounce_timestamp <= now
        ]

    async def get_sessions_with_due_timeout(self, now: datetime) -> List[FlowSessionData]:
        return [
            s.model_copy(deep=True) for s in self.sessions.values()
            if s.status == "active" and s.awaiting == "input" and s.timeout_at and s.timeout_at <= now
        ]

    async def get_stalled_sessions(self, cutoff: datetime) -> List[FlowSessionData]:
        return [
            s.model_copy(deep=True) for s in self.sessions.values()
            if s.status == "active" and s.awaiting is None and s.last_interaction and s.last_interaction <= cutoff
        ]

    # Delays
    async def save_delay(self, delay: DelayData) -> DelayData:
        delay = delay.model_copy(deep=True)
        delay.id = self._new_id()
        self.delays[delay.id] = delay
        return delay

    async def get_pending_delays(self, now: datetime) -> List[DelayData]:
        return [d.model_copy() for d in self.delays.values() if not d.processed and d.delay_completes_at <= now]

    async def mark_delay_as_processed(self, delay_id: str) -> bool:
        delay = self.delays.get(delay_id)
        if delay is None or delay.processed:
            return False
        delay.processed = True
        return True

    async def mark_delays_processed_for_session(self, session_id: str) -> int:
        count = 0
        for delay in self.delays.values():
            if delay.session_id == session_id and not delay.processed:
                delay.processed = True
                count += 1
        return count

    # Inbound events
    async def save_inbound_event(self, event: InboundEventData) -> InboundEventData:
        event = event.model_copy(deep=True)
        event.id = self._new_id()
        self.events[event.id] = event
        return event

    async def update_inbound_event_status(self, event_id: str, status: str, result: Optional[Dict[str, Any]] = None) -> bool:
        event = self.events.get(event_id)
        if event is None:
            return False
        event.metadata.status = status
        event.result = result or {}
        return True

    # Chat locks
    async def acquire_chat_lock(self, chat_id: str, owner_id: str, ttl_seconds: int) -> bool:
        now = datetime.utcnow()
        lease = self.locks.get(chat_id)
        if lease and lease["owner_id"] != owner_id and lease["expires_at"] > now:
            return False
        self.locks[chat_id] = {"owner_id": owner_id, "expires_at": now + timedelta(seconds=ttl_seconds)}
        return True

    async def release_chat_lock(self, chat_id: str, owner_id: str) -> bool:
        lease = self.locks.get(chat_id)
        if lease and lease["owner_id"] == owner_id:
            del self.locks[chat_id]
            return True
        return False

    # Customers and chats
    async def get_customer(self, customer_id: str) -> Optional[CustomerData]:
        customer = self.customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def update_customer(self, customer_id: str, fields: Dict[str, Any]) -> bool:
        customer = self.customers.get(customer_id)
        if customer is None:
            return False
        self.customers[customer_id] = customer.model_copy(update=fields)
        return True

    async def get_chat(self, chat_id: str) -> Optional[ChatData]:
        chat = self.chats.get(chat_id)
        return chat.model_copy(deep=True) if chat else None

    async def update_chat(self, chat_id: str, fields: Dict[str, Any]) -> bool:
        chat = self.chats.get(chat_id)
        if chat is None:
            return False
        self.chats[chat_id] = chat.model_copy(update=fields)
        return True

    async def touch_chat_activity(self, chat_id, organization_id, customer_id, channel, sender_type, timestamp) -> None:
        chat = self.chats.get(chat_id) or ChatData(
            id=chat_id,
            organization_id=organization_id,
            customer_id=customer_id,
            channel=channel,
            start_time=timestamp
        )
        chat.last_message_at = timestamp
        if sender_type == "agent":
            chat.last_agent_message_at = timestamp
        else:
            chat.last_customer_message_at = timestamp
        self.chats[chat_id] = chat

    async def get_idle_chats(self, organization_id: str, activity_field: str, cutoff: datetime) -> List[ChatData]:
        return [
            chat.model_copy(deep=True) for chat in self.chats.values()
            if chat.organization_id == organization_id
            and getattr(chat, activity_field) is not None
            and getattr(chat, activity_field) <= cutoff
        ]

    async def get_customer_messages(self, customer_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("customer_id") == customer_id][-limit:]

    async def get_prompt(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        return self.prompts.get(prompt_id)

    async def get_integration(self, integration_id: str) -> Optional[Dict[str, Any]]:
        return self.integrations.get(integration_id)

    # Inactivity firings
    async def get_inactivity_firing(self, trigger_id: str, chat_id: str) -> Optional[InactivityFiring]:
        return self.firings.get((trigger_id, chat_id))

    async def save_inactivity_firing(self, firing: InactivityFiring) -> bool:
        self.firings[(firing.trigger_id, firing.chat_id)] = firing
        return True


# ---------------------------------------------------------------------------
# Flow builders
# ---------------------------------------------------------------------------

def node(node_id: str, node_type: str, **data) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    return {"id": f"{source}->{target}:{handle}", "source": source, "target": target, "sourceHandle": handle}


def make_flow(
    nodes: List[Dict[str, Any]],
    edges: List[Dict[str, Any]],
    variables: Optional[List[Dict[str, Any]]] = None,
    organization_id: str = "org_1",
    published: bool = True
) -> FlowData:
    return FlowData.model_validate({
        "organization_id": organization_id,
        "name": "Test flow",
        "nodes": nodes if published else [],
        "edges": edges if published else [],
        "draft_nodes": nodes,
        "draft_edges": edges,
        "variables": variables or [],
        "is_published": published,
    })


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def log_util():
    return LogUtil()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def flow_db():
    return FakeFlowDB()


@pytest.fixture
def dispatch():
    return RecordingDispatch()


@pytest.fixture
def variable_service(log_util):
    return VariableService(log_util=log_util)


@pytest.fixture
def flow_graph_service(log_util):
    return FlowGraphService(log_util=log_util)


@pytest.fixture
def condition_service(log_util, variable_service):
    return ConditionEvaluationService(log_util=log_util, variable_service=variable_service)


@pytest.fixture
def trigger_service(log_util):
    return TriggerEvaluationService(log_util=log_util)


@pytest.fixture
def http_request_service(log_util):
    return HttpRequestService(log_util=log_util, timeout_seconds=5)


@pytest.fixture
def openai_service(log_util):
    return OpenAIService(log_util=log_util, api_url="https://api.openai.test/v1", default_api_key="sk-test")


@pytest.fixture
def agent_service(log_util):
    return AgentService(log_util=log_util, agent_service_url="http://agent.test/agent/respond")


@pytest.fixture
def node_execution_service(log_util, flow_db, variable_service, condition_service, http_request_service, openai_service, agent_service):
    return NodeExecutionService(
        log_util=log_util,
        flow_db=flow_db,
        variable_service=variable_service,
        condition_evaluation_service=condition_service,
        http_request_service=http_request_service,
        openai_service=openai_service,
        agent_service=agent_service
    )


@pytest.fixture
def session_service(log_util, flow_db, flow_graph_service, variable_service, node_execution_service, dispatch, clock):
    return SessionService(
        log_util=log_util,
        flow_db=flow_db,
        flow_graph_service=flow_graph_service,
        node_type_registry=NodeTypeRegistry(),
        variable_service=variable_service,
        node_execution_service=node_execution_service,
        message_dispatch_service=dispatch,
        max_steps_per_run=50,
        default_debounce_seconds=3,
        clock=clock
    )


@pytest.fixture
def lock_manager(log_util, flow_db):
    return ChatLockManager(log_util=log_util, flow_db=flow_db, lease_ttl_seconds=30, acquire_timeout_seconds=1)


@pytest.fixture
def flow_service(log_util, flow_db, flow_graph_service, variable_service):
    return FlowService(
        log_util=log_util,
        flow_db=flow_db,
        flow_graph_service=flow_graph_service,
        variable_service=variable_service
    )


@pytest.fixture
def event_service(log_util, flow_db, session_service, trigger_service, lock_manager):
    return EventService(
        log_util=log_util,
        flow_db=flow_db,
        session_service=session_service,
        trigger_evaluation_service=trigger_service,
        lock_manager=lock_manager
    )


@pytest.fixture
def scheduler_service(log_util, flow_db, session_service, trigger_service, lock_manager, clock):
    return SchedulerService(
        log_util=log_util,
        flow_db=flow_db,
        session_service=session_service,
        trigger_evaluation_service=trigger_service,
        lock_manager=lock_manager,
        check_interval_seconds=1,
        clock=clock
    )
