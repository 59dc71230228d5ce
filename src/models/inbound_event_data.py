from typing import Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field


class InboundEventMetadata(BaseModel):
    """
    Metadata about the inbound event - routing and processing information
    """
    organization_id: str = Field(..., description="Organization owning the chat")
    chat_id: str = Field(..., description="Conversation the event belongs to")
    customer_id: Optional[str] = Field(None, description="Customer bound to the chat")
    channel: str = Field(default="whatsapp", description="Channel name (whatsapp, instagram, telegram, system, etc.)")
    sender_type: str = Field(default="customer", description="Who produced the event: customer or agent")
    status: str = Field(default="pending", description="Processing status: pending, processed, error")
    message_type: str = Field(..., description="Type of message (text, button, interactive, image, etc.)")
    received_at: datetime = Field(default_factory=datetime.utcnow)


class InboundEventData(BaseModel):
    """
    Model for storing inbound events received from channel services.
    Structured into metadata (routing info) and data (normalized payload)
    """
    id: Optional[str] = None  # MongoDB _id
    metadata: InboundEventMetadata = Field(..., description="Metadata about the event (routing and processing info)")
    data: Dict[str, Any] = Field(default_factory=dict, description="Normalized message payload")
    result: Dict[str, Any] = Field(default_factory=dict, description="Outcome of processing")
