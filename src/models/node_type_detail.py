from pydantic import BaseModel, Field


class NodeTypeDetail(BaseModel):
    """
    Catalog entry describing a node type
    """
    node_type: str  # e.g., "text", "condition", "openai"
    node_name: str  # e.g., "Send Text", "Condition"
    category: str  # "trigger", "message", "logic", "integration", "annotation"
    user_input_required: bool  # Whether the node suspends until the customer replies
    is_external: bool = Field(default=False, description="Whether executing the node calls an external service")
    is_branching: bool = Field(default=False, description="Whether the node exposes more than one outgoing handle")
    executable: bool = Field(default=True, description="False for purely visual nodes ignored by the runtime")
