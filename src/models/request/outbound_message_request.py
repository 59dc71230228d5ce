from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class OutboundMessageRequest(BaseModel):
    """
    Request model for a message delivered to the customer.
    Sent from the flow runtime to the channel service.
    """
    organization_id: str
    chat_id: str
    customer_id: Optional[str] = None
    channel: Optional[str] = None
    session_id: Optional[str] = None
    node_id: Optional[str] = None

    # Message content
    message_type: str = "text"  # text, image, audio, video, document, interactive_list
    content: Optional[str] = None
    media_url: Optional[str] = None
    file_id: Optional[str] = None
    caption: Optional[str] = None
    links: List[str] = []
    interactive: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
