from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal

from models.request.outbound_message_request import OutboundMessageRequest


class NodeExecutionResult(BaseModel):
    """
    Outcome of executing a single node. Side effects are described here and
    committed by the session state machine, never applied by the node itself.
    """
    node_id: str
    messages: List[OutboundMessageRequest] = []  # Delivered to the customer
    system_messages: List[str] = []  # Model-context only
    variable_updates: Dict[str, str] = {}
    customer_update: Dict[str, Any] = {}
    chat_update: Dict[str, Any] = {}

    # Routing: target_node_id wins over handle, handle None is the default edge
    handle: Optional[str] = None
    target_node_id: Optional[str] = None

    # Suspension
    wait: Optional[Literal["input", "delay"]] = None
    delay_seconds: int = 0

    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
