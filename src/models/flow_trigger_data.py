from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional, List, Literal, Union, Dict, Any
from datetime import datetime


class TimeSlot(BaseModel):
    id: Optional[str] = None
    day: int = Field(..., ge=0, le=6)  # 0 = Sunday ... 6 = Saturday
    startTime: str  # "HH:MM"
    endTime: str  # "HH:MM"


class ChannelRuleParams(BaseModel):
    channels: List[str] = []


class ScheduleRuleParams(BaseModel):
    timezone: str = "UTC"
    timeSlots: List[TimeSlot] = []


class InactivityRuleParams(BaseModel):
    source: Literal["customer", "agent"] = "customer"
    minutes: int = Field(default=30, gt=0)


class TriggerRule(BaseModel):
    id: Optional[str] = None
    type: Literal["channel", "schedule", "inactivity"]
    params: Union[ChannelRuleParams, ScheduleRuleParams, InactivityRuleParams]

    @model_validator(mode="before")
    @classmethod
    def parse_params_by_type(cls, values: Any) -> Any:
        # Params carry no discriminator of their own, the rule type decides
        if isinstance(values, dict) and isinstance(values.get("params"), dict):
            params_model = {
                "channel": ChannelRuleParams,
                "schedule": ScheduleRuleParams,
                "inactivity": InactivityRuleParams,
            }.get(values.get("type"))
            if params_model is not None:
                values = dict(values)
                values["params"] = params_model.model_validate(values["params"])
        return values


class TriggerConditions(BaseModel):
    operator: Literal["AND", "OR"] = "AND"
    rules: List[TriggerRule] = []


class FlowTriggerData(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: Optional[str] = None  # MongoDB _id
    flow_id: str  # Reference to the flow's MongoDB _id
    organization_id: str
    type: Literal["first_contact", "inactivity"] = "first_contact"
    conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    is_active: bool = True
    priority: int = 0  # Higher fires first, ties keep stored order
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def rules_of_type(self, rule_type: str) -> List[TriggerRule]:
        return [rule for rule in self.conditions.rules if rule.type == rule_type]


class InactivityFiring(BaseModel):
    """
    Records that an inactivity trigger already fired for a chat's current idle period
    """
    id: Optional[str] = None
    trigger_id: str
    chat_id: str
    last_activity_at: datetime
    fired_at: datetime = Field(default_factory=datetime.utcnow)
