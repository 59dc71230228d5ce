"""
Node Type Registry
Static catalog of the node types a flow may contain.
"""
from typing import Dict, List, Optional, get_args

from models.node_type_detail import NodeTypeDetail
from models.flow_node_data import FlowNode, MEDIA_NODE_TYPES


_NODE_TYPE_DETAILS: List[NodeTypeDetail] = [
    NodeTypeDetail(node_type="start", node_name="Start", category="trigger", user_input_required=False),
    NodeTypeDetail(node_type="text", node_name="Send Text", category="message", user_input_required=False),
    NodeTypeDetail(node_type="audio", node_name="Send Audio", category="message", user_input_required=False),
    NodeTypeDetail(node_type="image", node_name="Send Image", category="message", user_input_required=False),
    NodeTypeDetail(node_type="video", node_name="Send Video", category="message", user_input_required=False),
    NodeTypeDetail(node_type="document", node_name="Send Document", category="message", user_input_required=False),
    NodeTypeDetail(node_type="delay", node_name="Delay", category="logic", user_input_required=False),
    NodeTypeDetail(node_type="variable", node_name="Set Variable", category="logic", user_input_required=False),
    NodeTypeDetail(node_type="condition", node_name="Condition", category="logic", user_input_required=False, is_branching=True),
    NodeTypeDetail(node_type="input", node_name="Wait For Input", category="logic", user_input_required=True, is_branching=True),
    NodeTypeDetail(node_type="update_customer", node_name="Update Customer", category="integration", user_input_required=False),
    NodeTypeDetail(node_type="openai", node_name="OpenAI", category="integration", user_input_required=False, is_external=True, is_branching=True),
    NodeTypeDetail(node_type="agenteia", node_name="AI Agent", category="integration", user_input_required=False, is_external=True),
    NodeTypeDetail(node_type="jump_to", node_name="Jump To", category="logic", user_input_required=False),
    NodeTypeDetail(node_type="request", node_name="HTTP Request", category="integration", user_input_required=False, is_external=True),
    NodeTypeDetail(node_type="group", node_name="Group", category="annotation", user_input_required=False, executable=False),
    NodeTypeDetail(node_type="system_message", node_name="System Message", category="message", user_input_required=False),
]

NODE_TYPES: Dict[str, NodeTypeDetail] = {detail.node_type: detail for detail in _NODE_TYPE_DETAILS}

# Node types that suspend a run until something outside the run happens
SUSPENDING_NODE_TYPES = ("input", "delay")

VALID_CATEGORIES = ["trigger", "message", "logic", "integration", "annotation"]


def _node_class_types() -> List[str]:
    # Literal discriminator of every member of the FlowNode union
    union = get_args(FlowNode)[0]
    return [get_args(node_class.model_fields["type"].annotation)[0] for node_class in get_args(union)]


class NodeTypeRegistry:
    """
    Read-only access to the node type catalog
    """

    def __init__(self):
        missing = set(_node_class_types()) - set(NODE_TYPES)
        if missing:
            raise ValueError(f"Node types without catalog entry: {sorted(missing)}")

    def list_node_types(self, category: Optional[str] = None) -> List[NodeTypeDetail]:
        if category is None:
            return list(NODE_TYPES.values())
        return [detail for detail in NODE_TYPES.values() if detail.category == category]

    def get_node_type(self, node_type: str) -> Optional[NodeTypeDetail]:
        return NODE_TYPES.get(node_type)

    def is_known(self, node_type: str) -> bool:
        return node_type in NODE_TYPES

    @staticmethod
    def is_media(node_type: str) -> bool:
        return node_type in MEDIA_NODE_TYPES

    @staticmethod
    def is_suspending(node_type: str) -> bool:
        return node_type in SUSPENDING_NODE_TYPES
