from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class EventResponse(BaseModel):
    """
    Response model for inbound event processing.
    Indicates whether a session was started or resumed and where it stands.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "success",
                "message": "Session started",
                "event_id": "evt_1",
                "session_started": True,
                "session_id": "session_123",
                "flow_id": "flow_123",
                "current_node_id": "node_456",
                "session_status": "active",
                "error_details": None
            }
        }
    )

    status: str = Field(..., description="Processing status (success, error, no_automation)")
    message: str = Field(..., description="Human-readable message")
    event_id: Optional[str] = Field(None, description="Stored inbound event ID")
    session_started: bool = Field(default=False, description="Whether a new session was created")
    session_id: Optional[str] = Field(None, description="Session handling the event")
    flow_id: Optional[str] = Field(None, description="Flow ID of the session")
    current_node_id: Optional[str] = Field(None, description="Current node ID of the session")
    session_status: Optional[str] = Field(None, description="Session status after processing")
    error_details: Optional[str] = Field(None, description="Error details if status is error")
