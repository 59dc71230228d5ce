"""
Node Execution Service
Executes one node and describes its effects (messages, variable writes, routing,
suspension) as a NodeExecutionResult. Nothing here mutates the session or the
customer; the session state machine commits the result.
"""
import json
import re
from typing import Any, Dict, List, Optional

from utils.log_utils import LogUtil
from utils.json_path_utils import extract_json_path
from database.flow_db import FlowDB

# Models
from models.flow_node_data import (
    BaseFlowNode,
    TextNode,
    VariableNode,
    ConditionNode,
    InputNode,
    DelayNode,
    UpdateCustomerNode,
    OpenAINode,
    OpenAITool,
    AgentNode,
    JumpToNode,
    RequestNode,
    SystemMessageNode,
    MEDIA_NODE_TYPES,
    TEXT_HANDLE,
    NO_MATCH_HANDLE,
)
from models.flow_session_data import FlowSessionData
from models.node_execution_result import NodeExecutionResult
from models.request.outbound_message_request import OutboundMessageRequest

# Services
from services.flow_graph_service import FlowGraph
from services.variable_service import VariableService, ResolutionContext, format_value
from services.condition_evaluation_service import ConditionEvaluationService, select_option
from services.internal.http_request_service import HttpRequestService
from services.internal.openai_service import OpenAIService
from services.internal.agent_service import AgentService

# Exceptions
from exceptions.flow_exception import NodeConfigurationException

LINK_PATTERN = re.compile(r"https?://[^\s<>\"']+")

HISTORY_ROLES = {"user": "user", "bot": "assistant", "system": "system"}


class NodeExecutionService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        variable_service: VariableService,
        condition_evaluation_service: ConditionEvaluationService,
        http_request_service: HttpRequestService,
        openai_service: OpenAIService,
        agent_service: AgentService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.variable_service = variable_service
        self.condition_evaluation_service = condition_evaluation_service
        self.http_request_service = http_request_service
        self.openai_service = openai_service
        self.agent_service = agent_service

    async def execute(
        self,
        node: BaseFlowNode,
        session: FlowSessionData,
        graph: FlowGraph,
        context: ResolutionContext
    ) -> NodeExecutionResult:
        self.log_util.info(
            service_name="NodeExecutionService",
            message=f"[NODE_EXEC] Executing {node.type} node {node.id} for session {session.id}"
        )

        if isinstance(node, TextNode):
            return self._execute_text(node, session, context)
        if node.type in MEDIA_NODE_TYPES:
            return self._execute_media(node, session, context)
        if isinstance(node, DelayNode):
            return self._execute_delay(node)
        if isinstance(node, VariableNode):
            return self._execute_variable(node, context)
        if isinstance(node, ConditionNode):
            handle = self.condition_evaluation_service.select_branch(node.data.branches(), context)
            return NodeExecutionResult(node_id=node.id, handle=handle)
        if isinstance(node, InputNode):
            return NodeExecutionResult(node_id=node.id, wait="input")
        if isinstance(node, UpdateCustomerNode):
            return self._execute_update_customer(node, context)
        if isinstance(node, OpenAINode):
            return await self._execute_openai(node, session, graph, context)
        if isinstance(node, AgentNode):
            return await self._execute_agent(node, session, context)
        if isinstance(node, JumpToNode):
            return self._execute_jump_to(node, graph)
        if isinstance(node, RequestNode):
            return await self._execute_request(node, context)
        if isinstance(node, SystemMessageNode):
            return NodeExecutionResult(
                node_id=node.id,
                system_messages=[self.variable_service.interpolate(node.data.text, context)]
            )
        # start, and anything purely structural
        return NodeExecutionResult(node_id=node.id)

    def _outbound(self, session: FlowSessionData, node: BaseFlowNode, **fields) -> OutboundMessageRequest:
        return OutboundMessageRequest(
            organization_id=session.organization_id,
            chat_id=session.chat_id,
            customer_id=session.customer_id,
            channel=session.channel,
            session_id=session.id,
            node_id=node.id,
            **fields
        )

    def _execute_text(self, node: TextNode, session: FlowSessionData, context: ResolutionContext) -> NodeExecutionResult:
        data = node.data
        # Split on the raw template so substituted values never create paragraphs
        chunks = data.body.split("\n\n") if data.splitParagraphs else [data.body]
        texts = [text for text in (self.variable_service.interpolate(chunk, context).strip() for chunk in chunks) if text]

        messages: List[OutboundMessageRequest] = []
        if data.list is not None and data.list.sections:
            messages.append(self._outbound(
                session, node,
                message_type="interactive_list",
                content="\n\n".join(texts),
                interactive=self._render_list(data, context),
                links=self._links("\n".join(texts)) if data.extractLinks else []
            ))
        else:
            for text in texts:
                messages.append(self._outbound(
                    session, node,
                    message_type="text",
                    content=text,
                    links=self._links(text) if data.extractLinks else []
                ))

        if not messages:
            self.log_util.warning(
                service_name="NodeExecutionService",
                message=f"[NODE_EXEC] Text node {node.id} produced no message"
            )
        return NodeExecutionResult(node_id=node.id, messages=messages)

    def _render_list(self, data, context: ResolutionContext) -> Dict[str, Any]:
        interpolate = self.variable_service.interpolate
        menu = data.list
        return {
            "title": interpolate(menu.title, context),
            "description": interpolate(menu.description, context),
            "button": interpolate(menu.buttonText, context),
            "footer": interpolate(menu.footerText, context),
            "sections": [
                {
                    "title": interpolate(section.title, context),
                    "rows": [
                        {
                            "id": row.id or f"row-{section_index}-{row_index}",
                            "title": interpolate(row.title, context),
                            "description": interpolate(row.description, context),
                        }
                        for row_index, row in enumerate(section.rows)
                    ],
                }
                for section_index, section in enumerate(menu.sections)
            ],
        }

    @staticmethod
    def _links(text: str) -> List[str]:
        return [link.rstrip(".,;:!?)") for link in LINK_PATTERN.findall(text)]

    def _execute_media(self, node: BaseFlowNode, session: FlowSessionData, context: ResolutionContext) -> NodeExecutionResult:
        data = node.data
        media_url = self.variable_service.interpolate(data.mediaUrl, context).strip()
        if not media_url and not data.fileId:
            raise NodeConfigurationException(f"{node.type} node has neither mediaUrl nor fileId", node_id=node.id)
        message = self._outbound(
            session, node,
            message_type=node.type,
            media_url=media_url or None,
            file_id=data.fileId,
            caption=self.variable_service.interpolate(data.caption, context) or None
        )
        return NodeExecutionResult(node_id=node.id, messages=[message])

    def _execute_delay(self, node: DelayNode) -> NodeExecutionResult:
        if node.data.delaySeconds <= 0:
            return NodeExecutionResult(node_id=node.id)
        return NodeExecutionResult(node_id=node.id, wait="delay", delay_seconds=node.data.delaySeconds)

    def _execute_variable(self, node: VariableNode, context: ResolutionContext) -> NodeExecutionResult:
        name = node.data.variable.name
        if not name:
            raise NodeConfigurationException("Variable node has no variable name", node_id=node.id)
        value = self.variable_service.interpolate(node.data.variable.value or "", context)
        return NodeExecutionResult(node_id=node.id, variable_updates={name: value})

    def _execute_update_customer(self, node: UpdateCustomerNode, context: ResolutionContext) -> NodeExecutionResult:
        config = node.data.updateCustomer
        customer_update: Dict[str, Any] = {}
        chat_update: Dict[str, Any] = {}

        if config.field == "funnel":
            if not config.funnelId or not config.stageId:
                raise NodeConfigurationException("Funnel update requires funnelId and stageId", node_id=node.id)
            customer_update = {"funnel_id": config.funnelId, "stage_id": config.stageId}
        elif config.field == "team":
            if not config.teamId:
                raise NodeConfigurationException("Team update requires teamId", node_id=node.id)
            chat_update = {"team_id": config.teamId}
        elif config.field == "user":
            if not config.userId:
                raise NodeConfigurationException("User update requires userId", node_id=node.id)
            chat_update = {"assigned_to": config.userId}
        else:
            value = self.variable_service.interpolate(config.value or "", context).strip()
            if not value:
                raise NodeConfigurationException(f"Update of '{config.field}' resolved to an empty value", node_id=node.id)
            customer_update = {config.field: value}

        return NodeExecutionResult(
            node_id=node.id,
            customer_update=customer_update,
            chat_update=chat_update
        )

    def _execute_jump_to(self, node: JumpToNode, graph: FlowGraph) -> NodeExecutionResult:
        target = node.data.targetNodeId
        if not target or graph.get_node(target) is None:
            raise NodeConfigurationException(f"Jump target '{target}' does not exist", node_id=node.id)
        return NodeExecutionResult(node_id=node.id, target_node_id=target)

    async def _execute_request(self, node: RequestNode, context: ResolutionContext) -> NodeExecutionResult:
        config = node.data.request
        interpolate = self.variable_service.interpolate

        request = self.http_request_service.build_request(
            method=config.method,
            url=interpolate(config.url, context),
            headers={
                interpolate(header.key, context): interpolate(header.value, context)
                for header in config.headers if header.key
            },
            params=[
                (interpolate(param.key, context), interpolate(param.value, context))
                for param in config.params if param.key
            ],
            body=interpolate(config.body or "", context),
            body_type=config.bodyType,
            node_id=node.id
        )
        status_code, payload = await self.http_request_service.send(request, node_id=node.id)

        variable_updates: Dict[str, str] = {}
        for mapping in config.variableMappings:
            if not mapping.variable:
                continue
            value = extract_json_path(payload, mapping.jsonPath) if mapping.jsonPath else payload
            if value is None:
                self.log_util.warning(
                    service_name="NodeExecutionService",
                    message=f"[NODE_EXEC] Path '{mapping.jsonPath}' not found in response of node {node.id}"
                )
            variable_updates[mapping.variable] = self._to_variable_value(value)

        return NodeExecutionResult(
            node_id=node.id,
            variable_updates=variable_updates,
            metadata={"status_code": status_code}
        )

    @staticmethod
    def _to_variable_value(value: Any) -> str:
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return format_value(value)

    async def _conversation(self, session: FlowSessionData, message_type: str) -> List[Dict[str, str]]:
        if message_type == "allClientMessages" and session.customer_id:
            stored = await self.flow_db.get_customer_messages(session.customer_id)
            return [
                {"role": "user" if message.get("sender_type") == "customer" else "assistant", "content": message.get("content", "")}
                for message in stored if message.get("content")
            ]
        return [
            {"role": HISTORY_ROLES[entry.sender_type], "content": entry.content}
            for entry in session.message_history
            if entry.sender_type in HISTORY_ROLES and entry.content
        ]

    async def _resolve_prompt(self, node: OpenAINode, context: ResolutionContext) -> str:
        config = node.data.openai
        prompt = ""
        if config.promptType != "custom" and config.promptId:
            stored = await self.flow_db.get_prompt(config.promptId)
            if stored is None:
                raise NodeConfigurationException(f"Prompt {config.promptId} not found", node_id=node.id)
            prompt = stored.get("content", "")
        elif config.customPrompt:
            prompt = config.customPrompt
        return self.variable_service.interpolate(prompt, context)

    async def _execute_openai(
        self,
        node: OpenAINode,
        session: FlowSessionData,
        graph: FlowGraph,
        context: ResolutionContext
    ) -> NodeExecutionResult:
        config = node.data.openai

        api_key: Optional[str] = None
        if config.integrationId:
            integration = await self.flow_db.get_integration(config.integrationId)
            if integration is None:
                raise NodeConfigurationException(f"Integration {config.integrationId} not found", node_id=node.id)
            api_key = integration.get("api_key")

        prompt = await self._resolve_prompt(node, context)
        variable_updates: Dict[str, str] = {}
        messages: List[OutboundMessageRequest] = []

        if config.apiType == "textToSpeech":
            if not prompt:
                raise NodeConfigurationException("Text to speech node has no text", node_id=node.id)
            audio = await self.openai_service.text_to_speech(prompt, config.voice, api_key=api_key, node_id=node.id)
            messages.append(self._outbound(session, node, message_type="audio", metadata={"audio_base64": audio, "mime_type": "audio/mpeg"}))
            if config.variableName:
                variable_updates[config.variableName] = prompt
            return NodeExecutionResult(node_id=node.id, messages=messages, variable_updates=variable_updates)

        conversation = [{"role": "system", "content": prompt}] if prompt else []
        conversation.extend(await self._conversation(session, config.messageType))

        audio_voice = (config.voice or "alloy") if config.apiType == "audioGeneration" else None
        tools = None
        if config.tools and config.apiType == "textGeneration":
            tools = [
                {"name": tool.name, "description": tool.description or "", "parameters": tool.parameters}
                for tool in config.tools
            ]

        response = await self.openai_service.chat_completion(
            model=config.model,
            messages=conversation,
            temperature=config.temperature,
            max_tokens=config.maxTokens,
            tools=tools,
            api_key=api_key,
            audio_voice=audio_voice,
            node_id=node.id
        )

        if config.variableName:
            variable_updates[config.variableName] = response.content
        if response.audio_base64:
            messages.append(self._outbound(session, node, message_type="audio", metadata={"audio_base64": response.audio_base64, "mime_type": "audio/mpeg"}))

        result = NodeExecutionResult(node_id=node.id, messages=messages, variable_updates=variable_updates)

        if response.tool_name:
            self._route_tool_call(node, graph, response.tool_name, response.tool_arguments, result)
        return result

    def _route_tool_call(
        self,
        node: OpenAINode,
        graph: FlowGraph,
        tool_name: str,
        arguments: Dict[str, Any],
        result: NodeExecutionResult
    ) -> None:
        """
        Tool call routing order: matching tool condition, tool target, tool default
        target, edge on the tool's handle, then the node's default handle.
        """
        tools: List[OpenAITool] = node.data.openai.tools
        index = next((i for i, tool in enumerate(tools) if tool.name == tool_name), None)
        if index is None:
            self.log_util.warning(
                service_name="NodeExecutionService",
                message=f"[NODE_EXEC] Model called unknown tool '{tool_name}' on node {node.id}, following default handle"
            )
            return
        tool = tools[index]

        # Tool arguments land in variables of the same name
        for name, value in arguments.items():
            result.variable_updates[name] = self._to_variable_value(value)
        result.metadata["tool_call"] = {"name": tool_name, "arguments": arguments}

        for condition in tool.conditions:
            if condition.paramName in arguments and condition.targetNodeId:
                if format_value(arguments[condition.paramName]).strip().lower() == condition.value.strip().lower():
                    result.target_node_id = condition.targetNodeId
                    return
        for target in (tool.targetNodeId, tool.defaultTargetNodeId):
            if target:
                result.target_node_id = target
                return
        handle = f"tool-{index}"
        if graph.has_route(node.id, handle):
            result.handle = handle

    async def _execute_agent(self, node: AgentNode, session: FlowSessionData, context: ResolutionContext) -> NodeExecutionResult:
        config = node.data.agenteia
        response = await self.agent_service.respond(
            organization_id=session.organization_id,
            chat_id=session.chat_id,
            customer_id=session.customer_id,
            prompt_id=config.promptId,
            messages=await self._conversation(session, "chatMessages"),
            variables=dict(context.variables),
            node_id=node.id
        )
        variable_updates = {config.variableName: response} if config.variableName else {}
        return NodeExecutionResult(node_id=node.id, variable_updates=variable_updates)

    def resolve_input(self, node: InputNode, answer: str, graph: FlowGraph) -> NodeExecutionResult:
        """
        Route the (debounced) answer to an input node: option handle, no-match,
        fallbackNodeId when no-match is not wired, or the text handle.
        """
        config = node.data.inputConfig
        result = NodeExecutionResult(node_id=node.id)
        if config.variableName:
            result.variable_updates[config.variableName] = answer

        if node.data.inputType == "options":
            index = select_option([option.text for option in node.data.options], answer)
            if index is not None:
                result.handle = node.data.option_handle(index)
                option_value = node.data.options[index].value
                if config.variableName and option_value:
                    result.variable_updates[config.variableName] = option_value
            elif not graph.has_route(node.id, NO_MATCH_HANDLE) and config.fallbackNodeId:
                result.target_node_id = config.fallbackNodeId
            else:
                result.handle = NO_MATCH_HANDLE
        else:
            result.handle = TEXT_HANDLE

        self.log_util.info(
            service_name="NodeExecutionService",
            message=f"[NODE_EXEC] Input node {node.id} resolved to handle={result.handle} target={result.target_node_id}"
        )
        return result
