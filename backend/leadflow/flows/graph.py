# /leadflow/flows/graph.py

"""
In-memory view of one flow's nodes and edges.

The graph is built from repository rows and handed explicitly to the
interpreter; nothing here touches the database.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from leadflow.flows.errors import FlowConfigurationError
from leadflow.models.flow import Flow, FlowEdge, FlowNode, NodeType


class FlowGraph:
    def __init__(self, flow: Flow, nodes: Iterable[FlowNode], edges: Iterable[FlowEdge]):
        self.flow = flow
        self.nodes: Dict[str, FlowNode] = {}
        for node in nodes:
            if node.id in self.nodes:
                raise FlowConfigurationError(f"Duplicate node id {node.id} in flow {flow.id}")
            self.nodes[node.id] = node
        self.edges: List[FlowEdge] = list(edges)
        self._outgoing: Dict[str, List[FlowEdge]] = defaultdict(list)
        for edge in self.edges:
            self._outgoing[edge.source_node_id].append(edge)

    @property
    def start_node(self) -> FlowNode:
        starts = [n for n in self.nodes.values() if n.node_type == NodeType.START]
        if len(starts) != 1:
            raise FlowConfigurationError(f"Flow {self.flow.id} must have exactly one start node, found {len(starts)}")
        return starts[0]

    def node(self, node_id: str) -> FlowNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise FlowConfigurationError(f"Node {node_id} does not exist in flow {self.flow.id}") from None

    def outgoing(self, node_id: str) -> List[FlowEdge]:
        return list(self._outgoing.get(node_id, []))

    def handles(self, node_id: str) -> List[Optional[str]]:
        """Distinct output ports of a node, in edge order."""
        seen: List[Optional[str]] = []
        for edge in self._outgoing.get(node_id, []):
            if edge.source_handle not in seen:
                seen.append(edge.source_handle)
        return seen

    def next_node_id(self, node_id: str, handle: Optional[str] = None, fallback: bool = True) -> Optional[str]:
        """
        Target of the edge leaving ``node_id`` through ``handle``.

        When no edge uses the requested handle and ``fallback`` is set, the
        node's unlabeled edge is followed instead. Returns None when the node
        has no usable exit.
        """
        edges = self._outgoing.get(node_id, [])
        for edge in edges:
            if edge.source_handle == handle:
                return self._target(edge)
        if handle is not None and fallback:
            for edge in edges:
                if edge.source_handle is None:
                    return self._target(edge)
        return None

    def _target(self, edge: FlowEdge) -> str:
        if edge.target_node_id not in self.nodes:
            raise FlowConfigurationError(
                f"Edge {edge.id} points to missing node {edge.target_node_id} in flow {self.flow.id}"
            )
        return edge.target_node_id

    def validate(self) -> "FlowGraph":
        """
        Checks the structural rules every executable flow satisfies:
        one start node with no inbound edges, no dangling edges, no two edges
        leaving a node through the same handle, and no edges leaving an end node.
        """
        start = self.start_node

        seen_ports = set()
        for edge in self.edges:
            if edge.source_node_id not in self.nodes or edge.target_node_id not in self.nodes:
                raise FlowConfigurationError(f"Edge {edge.id} in flow {self.flow.id} references a missing node")
            if edge.target_node_id == start.id:
                raise FlowConfigurationError(f"Start node of flow {self.flow.id} has an inbound edge ({edge.id})")
            port = (edge.source_node_id, edge.source_handle)
            if port in seen_ports:
                raise FlowConfigurationError(
                    f"Node {edge.source_node_id} has more than one edge on handle {edge.source_handle!r}"
                )
            seen_ports.add(port)
            if self.nodes[edge.source_node_id].node_type == NodeType.END:
                raise FlowConfigurationError(f"End node {edge.source_node_id} has an outgoing edge")
        return self
