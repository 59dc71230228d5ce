"""
Flow Graph Service
Runtime view over a flow's nodes and edges, plus publish-time structural validation.
"""
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

from utils.log_utils import LogUtil
from models.flow_node_data import BaseFlowNode, JumpToNode, OpenAINode, InputNode
from models.flow_edge_data import FlowEdge
from models.flow_data import FlowVariable
from services.node_type_registry import NodeTypeRegistry
from services.variable_service import normalize_variable_name


class FlowGraph:
    """
    Nodes indexed by id and the edges that are live for the nodes' current
    configuration. Handles are derived from node config on construction, so an
    edge whose sourceHandle the source no longer exposes is void.
    """

    def __init__(self, nodes: Sequence[BaseFlowNode], edges: Sequence[FlowEdge]):
        self.nodes: Dict[str, BaseFlowNode] = {}
        for node in nodes:
            # First occurrence wins on duplicated ids, validation reports them
            self.nodes.setdefault(node.id, node)

        self.live_edges: List[FlowEdge] = []
        self.void_edges: List[FlowEdge] = []
        self._routes: Dict[Tuple[str, Optional[str]], str] = {}

        for edge in edges:
            if not self._is_live(edge):
                self.void_edges.append(edge)
                continue
            self.live_edges.append(edge)
            # One target per handle, the first wired edge wins
            self._routes.setdefault((edge.source, edge.sourceHandle), edge.target)

    def _is_live(self, edge: FlowEdge) -> bool:
        source = self.nodes.get(edge.source)
        target = self.nodes.get(edge.target)
        if source is None or target is None:
            return False
        if source.type == "group" or target.type == "group":
            return False
        return edge.sourceHandle in source.output_handles()

    def get_node(self, node_id: Optional[str]) -> Optional[BaseFlowNode]:
        if node_id is None:
            return None
        node = self.nodes.get(node_id)
        if node is None or node.type == "group":
            return None
        return node

    def start_nodes(self) -> List[BaseFlowNode]:
        return [node for node in self.nodes.values() if node.is_start and node.type != "group"]

    def start_node(self) -> Optional[BaseFlowNode]:
        starts = self.start_nodes()
        return starts[0] if starts else None

    def next_node_id(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """
        Target of the live edge leaving `node_id` through `handle` (None = default handle)
        """
        return self._routes.get((node_id, handle))

    def has_route(self, node_id: str, handle: Optional[str] = None) -> bool:
        return (node_id, handle) in self._routes

    def wired_handles(self, node_id: str) -> List[Optional[str]]:
        return [handle for (source, handle) in self._routes if source == node_id]

    def automatic_successors(self, node: BaseFlowNode) -> List[str]:
        """
        Nodes a run can move to from `node` without waiting on the customer or a timer
        """
        if NodeTypeRegistry.is_suspending(node.type):
            return []
        successors = [target for (source, _), target in self._routes.items() if source == node.id]
        if isinstance(node, JumpToNode) and node.data.targetNodeId:
            successors.append(node.data.targetNodeId)
        if isinstance(node, OpenAINode):
            for tool in node.data.openai.tools:
                successors.extend(
                    target for target in [tool.targetNodeId, tool.defaultTargetNodeId]
                    + [condition.targetNodeId for condition in tool.conditions] if target
                )
        return successors


class FlowGraphService:
    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def build_graph(self, nodes: Sequence[BaseFlowNode], edges: Sequence[FlowEdge]) -> FlowGraph:
        graph = FlowGraph(nodes, edges)
        if graph.void_edges:
            self.log_util.debug(
                service_name="FlowGraphService",
                message=f"Ignoring {len(graph.void_edges)} void edge(s): {[edge.id for edge in graph.void_edges]}"
            )
        return graph

    def validate_flow(
        self,
        nodes: Sequence[BaseFlowNode],
        edges: Sequence[FlowEdge],
        variables: Sequence[FlowVariable]
    ) -> List[str]:
        """
        Structural checks a flow must pass before it is published.
        Returns every problem found; an empty list means the flow is publishable.
        """
        problems: List[str] = []

        # Node ids
        duplicated_ids = [node_id for node_id, count in Counter(node.id for node in nodes).items() if count > 1]
        for node_id in duplicated_ids:
            problems.append(f"Duplicate node id '{node_id}'")

        graph = FlowGraph(nodes, edges)

        # Start node
        starts = graph.start_nodes()
        if len(starts) == 0:
            problems.append("Flow has no start node")
        elif len(starts) > 1:
            problems.append(f"Flow has {len(starts)} start nodes: {[node.id for node in starts]}")

        # Edge endpoints
        for edge in edges:
            for end, node_id in (("source", edge.source), ("target", edge.target)):
                node = graph.nodes.get(node_id)
                if node is None:
                    problems.append(f"Edge '{edge.id}' {end} '{node_id}' does not exist")
                elif node.type == "group":
                    problems.append(f"Edge '{edge.id}' {end} '{node_id}' is a group node")

        # Control transfers that bypass edges
        for node in graph.nodes.values():
            if isinstance(node, JumpToNode):
                problems.extend(self._check_target(graph, node.id, "jump target", node.data.targetNodeId, required=True))
            elif isinstance(node, OpenAINode):
                for tool in node.data.openai.tools:
                    label = f"tool '{tool.name}'"
                    problems.extend(self._check_target(graph, node.id, f"{label} target", tool.targetNodeId))
                    problems.extend(self._check_target(graph, node.id, f"{label} default target", tool.defaultTargetNodeId))
                    for condition in tool.conditions:
                        problems.extend(self._check_target(graph, node.id, f"{label} condition target", condition.targetNodeId))
            elif isinstance(node, InputNode):
                problems.extend(self._check_target(graph, node.id, "fallback node", node.data.inputConfig.fallbackNodeId))

        # Variables
        seen_names = set()
        for variable in variables:
            name = normalize_variable_name(variable.name)
            if not name:
                problems.append(f"Variable '{variable.id}' has an empty name")
            elif name in seen_names:
                problems.append(f"Variable name '{name}' is used more than once")
            seen_names.add(name)

        # Automatic cycles
        cycle = self.find_automatic_cycle(graph)
        if cycle:
            problems.append(f"Nodes {cycle} form a cycle that never waits for input or a delay")

        return problems

    @staticmethod
    def _check_target(graph: FlowGraph, node_id: str, what: str, target_id: Optional[str], required: bool = False) -> List[str]:
        if not target_id:
            return [f"Node '{node_id}' has no {what}"] if required else []
        target = graph.nodes.get(target_id)
        if target is None:
            return [f"Node '{node_id}' {what} '{target_id}' does not exist"]
        if target.type == "group":
            return [f"Node '{node_id}' {what} '{target_id}' is a group node"]
        return []

    def find_automatic_cycle(self, graph: FlowGraph) -> Optional[List[str]]:
        """
        Iterative DFS over automatic transitions. Returns the node ids of the
        first cycle found, or None.
        """
        white, grey, black = 0, 1, 2
        color: Dict[str, int] = {node_id: white for node_id in graph.nodes}

        for root in graph.nodes:
            if color[root] != white:
                continue
            path: List[str] = [root]
            stack = [(root, iter(graph.automatic_successors(graph.nodes[root])))]
            color[root] = grey
            while stack:
                node_id, successors = stack[-1]
                advanced = False
                for successor in successors:
                    if successor not in color:
                        continue
                    if color[successor] == grey:
                        return path[path.index(successor):]
                    if color[successor] == white:
                        color[successor] = grey
                        path.append(successor)
                        stack.append((successor, iter(graph.automatic_successors(graph.nodes[successor]))))
                        advanced = True
                        break
                if not advanced:
                    color[node_id] = black
                    path.pop()
                    stack.pop()
        return None
