from typing import Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict


class InboundEventRequest(BaseModel):
    """
    Request model for inbound events from channel services.
    Channel-agnostic: WhatsApp, Instagram, Telegram, SMS and webchat all post this shape.
    Agent replies are posted too (sender_type="agent") so inactivity can be tracked per source.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "organization_id": "org_1",
                "chat_id": "chat_123",
                "customer_id": "customer_456",
                "channel": "whatsapp",
                "sender_type": "customer",
                "message_type": "text",
                "message_body": {
                    "type": "text",
                    "text": {"body": "Hello"}
                }
            }
        }
    )

    organization_id: str = Field(..., description="Organization owning the chat")
    chat_id: str = Field(..., description="Conversation the message belongs to")
    customer_id: Optional[str] = Field(None, description="Customer bound to the chat")
    channel: str = Field(default="whatsapp", description="Channel name (whatsapp, instagram, telegram, sms, webchat, etc.)")
    sender_type: str = Field(default="customer", description="customer or agent")
    message_type: str = Field(..., description="Type of message (text, button, interactive, image, etc.)")
    message_body: Dict[str, Any] = Field(..., description="Channel-specific message payload")
    timestamp: Optional[datetime] = Field(None, description="When the channel received the message, defaults to now")
    is_first_contact: Optional[bool] = Field(None, description="Set by the channel service when it knows the customer is new")
