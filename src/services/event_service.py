from datetime import datetime
from typing import Optional

# Utils
from utils.log_utils import LogUtil
from utils.lock_utils import ChatLockManager

# Database
from database.flow_db import FlowDB

# Services
from services.channel_message_adapter import ChannelMessageAdapter
from services.session_service import SessionService
from services.trigger_evaluation_service import TriggerEvaluationService, TriggerEvent

# Models
from models.flow_session_data import FlowSessionData
from models.request.inbound_event_request import InboundEventRequest
from models.response.event_response import EventResponse
from models.inbound_event_data import InboundEventData, InboundEventMetadata


class EventService:
    """
    Service for handling inbound events from channel services.
    Records every event, then either feeds an active session or evaluates the
    organization's triggers to start a new one.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        session_service: SessionService,
        trigger_evaluation_service: TriggerEvaluationService,
        lock_manager: ChatLockManager,
        channel_adapter: Optional[ChannelMessageAdapter] = None
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.session_service = session_service
        self.trigger_evaluation_service = trigger_evaluation_service
        self.lock_manager = lock_manager
        self.channel_adapter = channel_adapter or ChannelMessageAdapter(log_util)

    async def process_inbound_event(self, request: InboundEventRequest) -> EventResponse:
        """
        Steps:
        1. Normalize the payload and save the event with status "pending"
        2. Under the chat lock, resume the active session or evaluate triggers
        3. Update the event status to "processed" or "error"
        """
        timestamp = request.timestamp or datetime.utcnow()
        self.log_util.info(
            service_name="EventService",
            message=f"[EVENT] Received {request.message_type} from {request.sender_type} on {request.channel} for chat {request.chat_id}"
        )

        normalized_message = self.channel_adapter.normalize_message(
            channel=request.channel,
            message_type=request.message_type,
            message_body=request.message_body
        )
        event = InboundEventData(
            metadata=InboundEventMetadata(
                organization_id=request.organization_id,
                chat_id=request.chat_id,
                customer_id=request.customer_id,
                channel=request.channel,
                sender_type=request.sender_type,
                status="pending",
                message_type=request.message_type,
                received_at=timestamp
            ),
            data=normalized_message.to_dict()
        )
        saved_event = await self.flow_db.save_inbound_event(event)
        event_id = saved_event.id if saved_event else None

        try:
            async with self.lock_manager.hold(request.chat_id):
                await self.flow_db.touch_chat_activity(
                    chat_id=request.chat_id,
                    organization_id=request.organization_id,
                    customer_id=request.customer_id,
                    channel=request.channel,
                    sender_type=request.sender_type,
                    timestamp=timestamp
                )
                response = await self._route_event(request, normalized_message.get_text_content(), timestamp)
        except Exception as e:
            self.log_util.error(
                service_name="EventService",
                message=f"[EVENT] Error processing event for chat {request.chat_id}: {str(e)}"
            )
            if event_id:
                await self.flow_db.update_inbound_event_status(event_id, "error", {"error": str(e)})
            return EventResponse(
                status="error",
                message="Error processing inbound event",
                event_id=event_id,
                error_details=str(e)
            )

        response.event_id = event_id
        if event_id:
            await self.flow_db.update_inbound_event_status(event_id, "processed", response.model_dump(exclude={"event_id"}))
        return response

    async def _route_event(self, request: InboundEventRequest, text: str, timestamp: datetime) -> EventResponse:
        # Agent replies only feed inactivity tracking
        if request.sender_type == "agent":
            return EventResponse(status="no_automation", message="Agent message recorded")

        session = await self.flow_db.get_active_session_by_chat(request.chat_id)
        if session is not None:
            # An overdue burst may end the session; this message then goes to the triggers
            session = await self.session_service.flush_overdue_input(session)
            if not session.is_terminal:
                session = await self.session_service.handle_inbound_message(session, text)
                return self._session_response("success", "Message delivered to active session", session, started=False)
            self.log_util.info(
                service_name="EventService",
                message=f"[EVENT] Session {session.id} ended before the message for chat {request.chat_id}, evaluating triggers"
            )

        is_first_contact = request.is_first_contact
        if is_first_contact is None:
            is_first_contact = not await self.flow_db.has_previous_session(
                chat_id=request.chat_id,
                customer_id=request.customer_id
            )

        triggers = await self.flow_db.get_active_triggers(request.organization_id)
        trigger_event = TriggerEvent(channel=request.channel, timestamp=timestamp, is_first_contact=is_first_contact)
        trigger = self.trigger_evaluation_service.find_matching_trigger(triggers, trigger_event)
        if trigger is None:
            self.log_util.info(
                service_name="EventService",
                message=f"[TRIGGER_CHECK] No trigger matched for chat {request.chat_id} (first_contact={is_first_contact})"
            )
            return EventResponse(status="no_automation", message="No trigger matched")

        flow = await self.flow_db.get_flow(trigger.flow_id)
        if flow is None or not flow.is_published:
            self.log_util.warning(
                service_name="EventService",
                message=f"[TRIGGER_CHECK] Trigger {trigger.id} points at flow {trigger.flow_id} which is missing or unpublished"
            )
            return EventResponse(status="no_automation", message="Matched flow is not published", flow_id=trigger.flow_id)

        session = await self.session_service.start_session(
            flow,
            organization_id=request.organization_id,
            chat_id=request.chat_id,
            customer_id=request.customer_id,
            channel=request.channel,
            trigger_id=trigger.id,
            initial_message=text or None
        )
        if session is None:
            return EventResponse(status="no_automation", message="Flow has no start node", flow_id=flow.id)
        return self._session_response("success", "Session started", session, started=True)

    @staticmethod
    def _session_response(status: str, message: str, session: FlowSessionData, started: bool) -> EventResponse:
        return EventResponse(
            status=status,
            message=message,
            session_started=started,
            session_id=session.id,
            flow_id=session.flow_id,
            current_node_id=session.current_node_id,
            session_status=session.status
        )
