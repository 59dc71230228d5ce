from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime

from models.flow_node_data import FlowNode
from models.flow_edge_data import FlowEdge


class FlowVariable(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: str
    name: str = ""
    value: Optional[str] = ""
    testValue: Optional[str] = None  # Used only by preview sessions


class Viewport(BaseModel):
    x: float = 0
    y: float = 0
    zoom: float = 1


class FlowData(BaseModel):
    """
    A flow with two independent snapshots: `draft_nodes/draft_edges` are what the
    editor saves, `nodes/edges` is the published copy the runtime executes.
    """
    model_config = ConfigDict(extra='allow')

    id: Optional[str] = None  # MongoDB _id
    organization_id: str
    name: str
    description: Optional[str] = None
    nodes: List[FlowNode] = []
    edges: List[FlowEdge] = []
    draft_nodes: List[FlowNode] = []
    draft_edges: List[FlowEdge] = []
    variables: List[FlowVariable] = []
    viewport: Viewport = Field(default_factory=Viewport)
    is_published: bool = False
    published_at: Optional[datetime] = None
    created_by_prompt: Optional[str] = None
    created_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
