from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict
from datetime import datetime


class CustomerData(BaseModel):
    """
    Customer record as read by the flow runtime. Custom fields are keyed by slug
    and exposed to interpolation as `customer.<slug>`.
    """
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: Optional[str] = None  # MongoDB _id
    organization_id: str
    name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    instagram: Optional[str] = None
    facebook: Optional[str] = None
    profile_picture: Optional[str] = None
    funnel_id: Optional[str] = None
    stage_id: Optional[str] = None
    custom_fields: Dict[str, str] = {}
    created_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)


class ChatData(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: Optional[str] = None  # MongoDB _id
    organization_id: str
    customer_id: Optional[str] = None
    channel: Optional[str] = None
    ticket_number: Optional[str] = None
    status: Optional[str] = "pending"
    team_id: Optional[str] = None
    assigned_to: Optional[str] = None
    sale_value: Optional[str] = None
    tags: List[str] = []
    start_time: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_customer_message_at: Optional[datetime] = None
    last_agent_message_at: Optional[datetime] = None
