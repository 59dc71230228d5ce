from pydantic import BaseModel, Field, Discriminator, ConfigDict, TypeAdapter
from typing import Optional, List, Dict, Any, Union, Literal, Annotated

# Handle ids shared by several node types
ELSE_HANDLE = "else"
TEXT_HANDLE = "text"
NO_MATCH_HANDLE = "no-match"
TIMEOUT_HANDLE = "timeout"
ERROR_HANDLE = "error"


class NodePosition(BaseModel):
    x: float = 0
    y: float = 0


class BaseNodeData(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)  # Editor-only keys (variables, nodes, removedHandles...) are kept as-is

    label: Optional[str] = None
    isStart: Optional[bool] = False


# Base node with common fields
class BaseFlowNode(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: str
    type: str
    position: NodePosition = Field(default_factory=NodePosition)
    data: BaseNodeData = Field(default_factory=BaseNodeData)

    @property
    def is_start(self) -> bool:
        return self.type == "start" or bool(self.data.isStart)

    def output_handles(self) -> List[Optional[str]]:
        """
        Outgoing handles exposed by the node's current configuration.
        None stands for the implicit default handle (edge without sourceHandle).
        """
        return [None]

    def waits_for_user(self) -> bool:
        return False


# Start Node
class StartNode(BaseFlowNode):
    type: Literal["start"]


# Text Node
class ListRow(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: Optional[str] = None
    title: str = ""
    description: Optional[str] = ""


class ListSection(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    title: str = ""
    rows: List[ListRow] = []


class ListMenu(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    title: Optional[str] = ""
    description: Optional[str] = ""
    buttonText: Optional[str] = ""
    footerText: Optional[str] = ""
    sections: List[ListSection] = []


class TextNodeData(BaseNodeData):
    text: Optional[str] = None
    content: Optional[str] = None  # Older editor builds stored the body here
    splitParagraphs: bool = False
    extractLinks: bool = False
    list: Optional[ListMenu] = None

    @property
    def body(self) -> str:
        return self.text if self.text is not None else (self.content or "")


class TextNode(BaseFlowNode):
    type: Literal["text"]
    data: TextNodeData = Field(default_factory=TextNodeData)


# Media Nodes
class MediaNodeData(BaseNodeData):
    mediaUrl: Optional[str] = None
    fileId: Optional[str] = None
    caption: Optional[str] = None


class AudioNode(BaseFlowNode):
    type: Literal["audio"]
    data: MediaNodeData = Field(default_factory=MediaNodeData)


class ImageNode(BaseFlowNode):
    type: Literal["image"]
    data: MediaNodeData = Field(default_factory=MediaNodeData)


class VideoNode(BaseFlowNode):
    type: Literal["video"]
    data: MediaNodeData = Field(default_factory=MediaNodeData)


class DocumentNode(BaseFlowNode):
    type: Literal["document"]
    data: MediaNodeData = Field(default_factory=MediaNodeData)


# Delay Node
class DelayNodeData(BaseNodeData):
    delaySeconds: int = Field(default=0, ge=0)


class DelayNode(BaseFlowNode):
    type: Literal["delay"]
    data: DelayNodeData = Field(default_factory=DelayNodeData)


# Variable Node
class VariableAssignment(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: Optional[str] = None
    name: str = ""
    value: Optional[str] = ""


class VariableNodeData(BaseNodeData):
    variable: VariableAssignment = Field(default_factory=VariableAssignment)


class VariableNode(BaseFlowNode):
    type: Literal["variable"]
    data: VariableNodeData = Field(default_factory=VariableNodeData)


# Condition Node
class SubCondition(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    type: Literal["variable", "clientData"] = "variable"
    field: str = ""
    operator: str = "equalTo"
    value: Optional[str] = ""


class ConditionBranch(BaseModel):
    """
    Either the simple {variable, operator, value} triple or a compound
    {logicOperator, subConditions} group.
    """
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    variable: Optional[str] = None
    operator: Optional[str] = None
    value: Optional[str] = ""
    logicOperator: Literal["AND", "OR"] = "AND"
    subConditions: Optional[List[SubCondition]] = None


class ConditionNodeData(BaseNodeData):
    conditions: List[ConditionBranch] = []
    condition: Optional[ConditionBranch] = None  # Single-condition layout of the first editor

    def branches(self) -> List[ConditionBranch]:
        if self.conditions:
            return self.conditions
        return [self.condition] if self.condition is not None else []


class ConditionNode(BaseFlowNode):
    type: Literal["condition"]
    data: ConditionNodeData = Field(default_factory=ConditionNodeData)

    def output_handles(self) -> List[Optional[str]]:
        handles: List[Optional[str]] = [f"condition-{index}" for index in range(len(self.data.branches()))]
        handles.append(ELSE_HANDLE)
        return handles


# Input Node
class InputOption(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    id: Optional[str] = None  # Stable handle key; options without one fall back to their index
    text: str = ""
    value: Optional[str] = None


class InputConfig(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    variableName: str = ""
    timeout: int = 0  # Seconds, 0 disables the timeout
    debounceTime: Optional[int] = None  # Seconds, falls back to DEBOUNCE_SECONDS
    fallbackNodeId: Optional[str] = None


class InputNodeData(BaseNodeData):
    inputType: Literal["text", "options"] = "text"
    options: List[InputOption] = []
    inputConfig: InputConfig = Field(default_factory=InputConfig)

    def option_handle(self, index: int) -> str:
        option_id = self.options[index].id
        return f"option-{option_id}" if option_id else f"option-{index}"


class InputNode(BaseFlowNode):
    type: Literal["input"]
    data: InputNodeData = Field(default_factory=InputNodeData)

    def output_handles(self) -> List[Optional[str]]:
        if self.data.inputType == "options":
            handles: List[Optional[str]] = [self.data.option_handle(index) for index in range(len(self.data.options))]
            handles.append(NO_MATCH_HANDLE)
        else:
            handles = [TEXT_HANDLE]
        handles.append(TIMEOUT_HANDLE)
        return handles

    def waits_for_user(self) -> bool:
        return True


# Update Customer Node
class UpdateCustomerConfig(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    field: Literal["funnel", "team", "user", "email", "phone", "facebook", "instagram"] = "email"
    value: Optional[str] = ""
    funnelId: Optional[str] = None
    stageId: Optional[str] = None
    teamId: Optional[str] = None
    userId: Optional[str] = None


class UpdateCustomerNodeData(BaseNodeData):
    updateCustomer: UpdateCustomerConfig = Field(default_factory=UpdateCustomerConfig)


class UpdateCustomerNode(BaseFlowNode):
    type: Literal["update_customer"]
    data: UpdateCustomerNodeData = Field(default_factory=UpdateCustomerNodeData)


# OpenAI Node
class ToolCondition(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    paramName: str = ""
    value: str = ""
    targetNodeId: str = ""


class OpenAITool(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    name: str
    description: Optional[str] = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    targetNodeId: Optional[str] = None
    conditions: List[ToolCondition] = []
    defaultTargetNodeId: Optional[str] = None


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    apiType: Literal["textGeneration", "audioGeneration", "textToSpeech"] = "textGeneration"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    maxTokens: int = 1000
    variableName: Optional[str] = ""
    integrationId: Optional[str] = None
    promptId: Optional[str] = None
    promptType: Optional[Literal["select", "custom"]] = None
    customPrompt: Optional[str] = None
    messageType: Literal["chatMessages", "allClientMessages"] = "chatMessages"
    voice: Optional[str] = "alloy"
    tools: List[OpenAITool] = []


class OpenAINodeData(BaseNodeData):
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)


class OpenAINode(BaseFlowNode):
    type: Literal["openai"]
    data: OpenAINodeData = Field(default_factory=OpenAINodeData)

    def output_handles(self) -> List[Optional[str]]:
        handles: List[Optional[str]] = [None]
        handles.extend(f"tool-{index}" for index in range(len(self.data.openai.tools)))
        handles.append(ERROR_HANDLE)
        return handles


# Agent Node
class AgentConfig(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    promptId: Optional[str] = None
    variableName: str = ""


class AgentNodeData(BaseNodeData):
    agenteia: AgentConfig = Field(default_factory=AgentConfig)


class AgentNode(BaseFlowNode):
    type: Literal["agenteia"]
    data: AgentNodeData = Field(default_factory=AgentNodeData)

    def output_handles(self) -> List[Optional[str]]:
        return [None, ERROR_HANDLE]


# Jump To Node
class JumpToNodeData(BaseNodeData):
    targetNodeId: Optional[str] = None


class JumpToNode(BaseFlowNode):
    type: Literal["jump_to"]
    data: JumpToNodeData = Field(default_factory=JumpToNodeData)

    def output_handles(self) -> List[Optional[str]]:
        return []


# Request Node
class KeyValue(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    key: str = ""
    value: str = ""


class VariableMapping(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    variable: str = ""
    jsonPath: str = ""


class RequestConfig(BaseModel):
    model_config = ConfigDict(extra='allow', coerce_numbers_to_str=True)

    method: str = "GET"
    url: str = ""
    headers: List[KeyValue] = []
    params: List[KeyValue] = []
    body: Optional[str] = ""
    bodyType: Literal["json", "form", "text", "none"] = "json"
    variableMappings: List[VariableMapping] = []


class RequestNodeData(BaseNodeData):
    request: RequestConfig = Field(default_factory=RequestConfig)


class RequestNode(BaseFlowNode):
    type: Literal["request"]
    data: RequestNodeData = Field(default_factory=RequestNodeData)

    def output_handles(self) -> List[Optional[str]]:
        return [None, ERROR_HANDLE]


# Group Node
class GroupNodeData(BaseNodeData):
    color: Optional[str] = "#6b7280"
    width: Optional[float] = 300
    height: Optional[float] = 200


class GroupNode(BaseFlowNode):
    type: Literal["group"]
    data: GroupNodeData = Field(default_factory=GroupNodeData)

    def output_handles(self) -> List[Optional[str]]:
        return []


# System Message Node
class SystemMessageNodeData(BaseNodeData):
    text: str = ""


class SystemMessageNode(BaseFlowNode):
    type: Literal["system_message"]
    data: SystemMessageNodeData = Field(default_factory=SystemMessageNodeData)


# Union of all node types with discriminator
FlowNode = Annotated[
    Union[
        StartNode,
        TextNode,
        AudioNode,
        ImageNode,
        VideoNode,
        DocumentNode,
        DelayNode,
        VariableNode,
        ConditionNode,
        InputNode,
        UpdateCustomerNode,
        OpenAINode,
        AgentNode,
        JumpToNode,
        RequestNode,
        GroupNode,
        SystemMessageNode
    ],
    Discriminator("type")
]

MEDIA_NODE_TYPES = ("audio", "image", "video", "document")

flow_node_adapter = TypeAdapter(FlowNode)


def parse_node(node: Dict[str, Any]) -> BaseFlowNode:
    return flow_node_adapter.validate_python(node)
