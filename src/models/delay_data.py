from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class DelayData(BaseModel):
    """
    Model for storing a pending resumption when a delay node suspends a session.
    Used by the background scheduler to resume the session once the delay elapses.
    """
    id: Optional[str] = None  # MongoDB _id
    session_id: str = Field(..., description="Suspended session")
    organization_id: str = Field(..., description="Organization owning the flow")
    flow_id: str = Field(..., description="Flow ID where delay node exists")
    chat_id: str = Field(..., description="Chat the session is bound to")
    delay_node_id: str = Field(..., description="Delay node ID")
    delay_seconds: int = Field(..., description="Configured delay in seconds")
    delay_started_at: datetime = Field(default_factory=datetime.utcnow, description="When delay started")
    delay_completes_at: datetime = Field(..., description="When the session should resume (delay_started_at + delay_seconds)")
    processed: bool = Field(default=False, description="Whether the session has been resumed")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when delay record was created")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when delay record was last updated")
