from fastapi import APIRouter
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.event_service import EventService

# Models
from models.request.inbound_event_request import InboundEventRequest
from models.response.event_response import EventResponse


def create_event_api(
    log_util: LogUtil,
    event_service: EventService
) -> APIRouter:
    """
    Create API router for inbound events from channel services.
    This is the entry point for WhatsApp, Instagram, Telegram, SMS and webchat
    messages, and for agent replies used in inactivity tracking.
    """
    router = APIRouter(
        prefix="/event",
        tags=["event"],
    )

    @router.post("/inbound", response_model=EventResponse)
    async def process_inbound_event(request: InboundEventRequest) -> EventResponse:
        """
        Record the event, then resume the chat's active session or evaluate
        triggers to start a new one.
        """
        try:
            return await event_service.process_inbound_event(request)
        except Exception as e:
            log_util.error(
                service_name="EventAPI",
                message=f"[EVENT] Error processing inbound event for chat {request.chat_id}: {str(e)}"
            )
            # Channel services expect a body, not a 500
            return EventResponse(
                status="error",
                message="Error processing inbound event",
                error_details=str(e)
            )

    @router.get("/health")
    async def event_health_check() -> Dict[str, Any]:
        """Health check endpoint for event API"""
        return {
            "status": "healthy",
            "api": "event_api",
            "service": "flow_service"
        }

    return router
