from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional
import re

_LEGACY_OPTION_HANDLE = re.compile(r"^option(\d+)$")


class FlowEdge(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    source: str  # Source node id
    target: str  # Target node id
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None

    @field_validator("sourceHandle")
    @classmethod
    def normalize_source_handle(cls, value: Optional[str]) -> Optional[str]:
        # Empty string means the implicit default handle
        if value is None or value == "":
            return None
        # Older builds emitted option handles as "option{i}"
        legacy = _LEGACY_OPTION_HANDLE.match(value)
        if legacy:
            return f"option-{legacy.group(1)}"
        return value
