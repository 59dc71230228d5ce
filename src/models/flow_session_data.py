from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
import uuid

SessionStatus = Literal["active", "inactive", "timeout"]


class HistoryEntry(BaseModel):
    """
    One line of a session's message history. `system` entries reach the model
    context only, `error` entries keep diagnostic detail for operators.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str = ""
    sender_type: Literal["bot", "user", "system", "error"]
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    node_id: Optional[str] = None
    metadata: Dict[str, Any] = {}


class FlowSessionData(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: Optional[str] = None  # MongoDB _id
    organization_id: str
    flow_id: str
    trigger_id: Optional[str] = None
    chat_id: str
    customer_id: Optional[str] = None
    channel: Optional[str] = None
    current_node_id: Optional[str] = None
    status: SessionStatus = "active"
    variables: Dict[str, str] = {}
    message_history: List[HistoryEntry] = []

    # Suspension state, set while the session waits on an input or delay node
    awaiting: Optional[Literal["input", "delay"]] = None
    pending_input: List[str] = []
    timeout_at: Optional[datetime] = None
    debounce_timestamp: Optional[datetime] = None
    resume_at: Optional[datetime] = None

    preview: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_interaction: datetime = Field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != "active"
