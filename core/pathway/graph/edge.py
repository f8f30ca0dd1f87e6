"""
Edge Protocol - How nodes connect in a pathway graph.

Edges define:
1. Source node and the output port the edge leaves from
2. Target node and (optionally) the input port it feeds

Ports carry the branching semantics: a router emits on one route port, a loop
on ``loop-body`` / ``loop-complete``, a parallel node on ``branch-N`` and its
default port. The nodes reachable from a loop's body port or a parallel
node's branch port form that construct's *region*; regions are private to the
construct and are driven by its executor, not by the enclosing schedule.

The graph is immutable once loaded and safe to share between concurrent runs.
"""

import json
from collections import deque
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    model_validator,
)

from pathway.errors import GraphIntegrityError
from pathway.graph.node import (
    DEFAULT_PORT,
    LOOP_BODY_PORT,
    LOOP_COMPLETE_PORT,
    NODE_CONFIG_MODELS,
    NodeSpec,
    NodeType,
    ParallelConfig,
    RouterConfig,
    declared_ports,
    parse_node_config,
)


class EdgeSpec(BaseModel):
    """
    A directed connection between two nodes.

    Accepts both the engine's field names and the builder canvas names:

        EdgeSpec(id="e1", sourceNodeId="route", sourcePortId="a", targetNodeId="easy")
        EdgeSpec(id="e1", source="route", sourceHandle="a", target="easy")
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str
    source_node_id: str = Field(
        validation_alias=AliasChoices("sourceNodeId", "source_node_id", "source"),
        description="Source node ID",
    )
    source_port_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("sourcePortId", "source_port_id", "sourceHandle"),
        description="Output port on the source; None means the default port",
    )
    target_node_id: str = Field(
        validation_alias=AliasChoices("targetNodeId", "target_node_id", "target"),
        description="Target node ID",
    )
    target_port_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("targetPortId", "target_port_id", "targetHandle"),
        description="Input port on the target; None means the default input",
    )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "sourceNodeId": self.source_node_id,
            "targetNodeId": self.target_node_id,
        }
        if self.source_port_id:
            data["sourcePortId"] = self.source_port_id
        if self.target_port_id:
            data["targetPortId"] = self.target_port_id
        return data


class GraphSpec(BaseModel):
    """
    Complete specification of a pathway graph.

    Example:
        GraphSpec(
            id="reading-pathway",
            nodes=[NodeSpec(id="profile", type="student-profile"), ...],
            edges=[EdgeSpec(id="e1", source="profile", target="route"), ...],
        )

    Construction never raises for structural problems; ``validate()`` lists
    them and ``from_document()`` raises ``GraphIntegrityError`` if any exist.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str = "pathway"
    name: str = "Untitled Pathway"
    description: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    entry_node_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("entryNodeIds", "entry_node_ids", "entryNodes"),
    )

    _nodes: dict[str, NodeSpec] = PrivateAttr(default_factory=dict)
    _configs: dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_errors: list[str] = PrivateAttr(default_factory=list)
    _outgoing: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _incoming: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _regions: dict[tuple[str, str], frozenset[str]] = PrivateAttr(default_factory=dict)
    _back_edge_ids: frozenset[str] = PrivateAttr(default_factory=frozenset)
    _topo_order: list[str] = PrivateAttr(default_factory=list)
    _on_cycle: list[str] = PrivateAttr(default_factory=list)
    _topo_index: dict[str, int] = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fill_edge_ids(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("edges"), list):
            edges = []
            for i, edge in enumerate(data["edges"]):
                if isinstance(edge, dict) and not edge.get("id"):
                    edge = {**edge, "id": f"e{i}"}
                edges.append(edge)
            data = {**data, "edges": edges}
        return data

    def model_post_init(self, __context: Any) -> None:
        for node in self.nodes:
            self._nodes.setdefault(node.id, node)
            self._outgoing.setdefault(node.id, [])
            self._incoming.setdefault(node.id, [])
            try:
                self._configs[node.id] = parse_node_config(node)
            except ValidationError as e:
                self._configs[node.id] = None
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                    for err in e.errors()
                )
                self._config_errors.append(f"Node '{node.id}' ({node.type}) config: {problems}")
        for edge in self.edges:
            if edge.source_node_id in self._outgoing:
                self._outgoing[edge.source_node_id].append(edge)
            if edge.target_node_id in self._incoming:
                self._incoming[edge.target_node_id].append(edge)

        self._regions = self._compute_regions()
        self._back_edge_ids = self._compute_back_edges()
        self._topo_order, self._on_cycle = self._compute_topology()
        self._topo_index = {
            node_id: i for i, node_id in enumerate(self._topo_order + self._on_cycle)
        }

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_document(cls, document: dict[str, Any] | str) -> "GraphSpec":
        """Parse and validate a graph document, raising GraphIntegrityError."""
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as e:
                raise GraphIntegrityError(f"Graph document is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise GraphIntegrityError("Graph document must be a JSON object")
        if "workflow" in document and "nodes" not in document:
            document = document["workflow"]
        try:
            graph = cls.model_validate(document)
        except ValidationError as e:
            raise GraphIntegrityError(
                [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
            ) from e
        errors = graph.validate()
        if errors:
            raise GraphIntegrityError(errors)
        return graph

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [n.model_dump(mode="json") for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "entryNodeIds": [n.id for n in self.entry_nodes()],
        }

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> NodeSpec | None:
        return self._nodes.get(node_id)

    def node(self, node_id: str) -> NodeSpec:
        """Get a node by ID, raising GraphIntegrityError if absent."""
        node = self._nodes.get(node_id)
        if node is None:
            raise GraphIntegrityError(f"Node '{node_id}' not found in graph '{self.id}'")
        return node

    def config(self, node_id: str) -> Any:
        """Typed configuration for ``node_id`` (None for free-form types)."""
        return self._configs.get(node_id)

    def entry_nodes(self) -> list[NodeSpec]:
        """Explicit entry nodes, else nodes with no incoming forward edges."""
        if self.entry_node_ids:
            return [self._nodes[n] for n in self.entry_node_ids if n in self._nodes]
        return [
            node
            for node in self.nodes
            if not any(not self.is_back_edge(e) for e in self._incoming.get(node.id, []))
        ]

    def port_of(self, edge: EdgeSpec) -> str:
        """Effective output port of ``edge`` on its source node."""
        source = self._nodes.get(edge.source_node_id)
        if source is None:
            return edge.source_port_id or DEFAULT_PORT
        if edge.source_port_id:
            if source.type == NodeType.LOOP and edge.source_port_id == DEFAULT_PORT:
                return LOOP_COMPLETE_PORT
            return edge.source_port_id
        config = self._configs.get(source.id)
        if isinstance(config, RouterConfig):
            for route in config.routes:
                if route.target_node_id == edge.target_node_id:
                    return route.id
        if source.type == NodeType.LOOP:
            return LOOP_COMPLETE_PORT
        return DEFAULT_PORT

    def outgoing_edges(self, node_id: str, port_id: str | None = None) -> list[EdgeSpec]:
        """Outgoing edges in declaration order, optionally limited to one port."""
        edges = self._outgoing.get(node_id, [])
        if port_id is None:
            return list(edges)
        return [e for e in edges if self.port_of(e) == port_id]

    def incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        return list(self._incoming.get(node_id, []))

    # ------------------------------------------------------------------
    # Construct regions
    # ------------------------------------------------------------------

    def region_ports(self, node_id: str) -> list[str]:
        """Ports of ``node_id`` that open a private region."""
        node = self._nodes.get(node_id)
        if node is None:
            return []
        if node.type == NodeType.LOOP:
            return [LOOP_BODY_PORT]
        config = self._configs.get(node_id)
        if isinstance(config, ParallelConfig):
            return config.ports
        return []

    def region(self, node_id: str, port_id: str) -> frozenset[str]:
        """Nodes reachable from ``node_id``'s ``port_id`` without passing back through it."""
        return self._regions.get((node_id, port_id), frozenset())

    def _compute_regions(self) -> dict[tuple[str, str], frozenset[str]]:
        regions: dict[tuple[str, str], frozenset[str]] = {}
        for node in self.nodes:
            for port in self.region_ports(node.id):
                seen: set[str] = set()
                queue = deque(e.target_node_id for e in self.outgoing_edges(node.id, port))
                while queue:
                    current = queue.popleft()
                    if current == node.id or current in seen or current not in self._nodes:
                        continue
                    seen.add(current)
                    queue.extend(e.target_node_id for e in self._outgoing.get(current, []))
                regions[(node.id, port)] = frozenset(seen)
        return regions

    def _compute_back_edges(self) -> frozenset[str]:
        back = set()
        for edge in self.edges:
            target = self._nodes.get(edge.target_node_id)
            if target is not None and target.type == NodeType.LOOP:
                if edge.source_node_id in self._regions.get((target.id, LOOP_BODY_PORT), ()):
                    back.add(edge.id)
        return frozenset(back)

    def is_back_edge(self, edge: EdgeSpec) -> bool:
        """True for an edge that closes a loop body back onto its loop node."""
        return edge.id in self._back_edge_ids

    def schedule_nodes(self, region: frozenset[str] | None = None) -> frozenset[str]:
        """
        Nodes a schedule over ``region`` dispatches directly.

        Nodes owned by a construct inside the region are excluded; that
        construct's executor schedules them.
        """
        scope = frozenset(self._nodes) if region is None else region
        owned: set[str] = set()
        for node_id in scope:
            for port in self.region_ports(node_id):
                owned |= self.region(node_id, port)
        return scope - owned

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _compute_topology(self) -> tuple[list[str], list[str]]:
        """(topological order, nodes left on a cycle). Ties break by declaration order."""
        position = {node.id: i for i, node in enumerate(self.nodes)}
        indegree = dict.fromkeys(self._nodes, 0)
        for edge in self.edges:
            if edge.target_node_id in indegree and edge.source_node_id in self._nodes:
                if not self.is_back_edge(edge):
                    indegree[edge.target_node_id] += 1
        ready = sorted((n for n, d in indegree.items() if d == 0), key=position.__getitem__)
        order: list[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            released = []
            for edge in self._outgoing.get(current, []):
                if self.is_back_edge(edge) or edge.target_node_id not in indegree:
                    continue
                indegree[edge.target_node_id] -= 1
                if indegree[edge.target_node_id] == 0:
                    released.append(edge.target_node_id)
            ready = sorted(ready + released, key=position.__getitem__)
        done = set(order)
        remaining = [n for n in self._nodes if n not in done]
        return order, remaining

    def topological_order(self) -> list[str]:
        return list(self._topo_order)

    def topological_index(self, node_id: str) -> int:
        return self._topo_index.get(node_id, len(self._topo_index))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Validate the graph structure. Returns a list of problems (empty if valid)."""
        errors: list[str] = []

        seen_nodes: set[str] = set()
        for node in self.nodes:
            if node.id in seen_nodes:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_nodes.add(node.id)

        seen_edges: set[str] = set()
        for edge in self.edges:
            if edge.id in seen_edges:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edges.add(edge.id)

        if not self.nodes:
            errors.append("Graph has no nodes")

        errors.extend(self._config_errors)

        dangling = False
        for edge in self.edges:
            source = self._nodes.get(edge.source_node_id)
            if source is None:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source_node_id}'")
                dangling = True
            if edge.target_node_id not in self._nodes:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target_node_id}'")
                dangling = True
            if source is not None and not (
                source.type in NODE_CONFIG_MODELS and self._configs.get(source.id) is None
            ):
                port = self.port_of(edge)
                if port not in declared_ports(source, self._configs.get(source.id)):
                    errors.append(
                        f"Edge '{edge.id}' leaves undeclared port '{port}' of node '{source.id}'"
                    )

        for entry_id in self.entry_node_ids:
            if entry_id not in self._nodes:
                errors.append(f"Entry node '{entry_id}' not found")

        if dangling or not self.nodes:
            return errors

        entries = self.entry_nodes()
        if not entries:
            errors.append("Graph has no entry node (every node has an incoming edge)")

        if self._on_cycle:
            errors.append(
                "Graph contains a cycle not closed through a loop body: "
                + ", ".join(sorted(self._on_cycle))
            )

        # Reachability from entry nodes
        reachable: set[str] = set()
        queue = deque(n.id for n in entries)
        while queue:
            current = queue.popleft()
            if current in reachable:
                continue
            reachable.add(current)
            queue.extend(e.target_node_id for e in self._outgoing.get(current, []))
        for node in self.nodes:
            if node.id not in reachable:
                errors.append(f"Node '{node.id}' is unreachable from the entry nodes")

        if len(self._components()) > 1:
            errors.append(
                "Graph has disconnected components: "
                + " | ".join(", ".join(sorted(c)) for c in self._components())
            )

        errors.extend(self._validate_regions())
        return errors

    def _components(self) -> list[set[str]]:
        """Weakly connected components, in node declaration order."""
        neighbours: dict[str, set[str]] = {n: set() for n in self._nodes}
        for edge in self.edges:
            if edge.source_node_id in neighbours and edge.target_node_id in neighbours:
                neighbours[edge.source_node_id].add(edge.target_node_id)
                neighbours[edge.target_node_id].add(edge.source_node_id)
        components: list[set[str]] = []
        seen: set[str] = set()
        for start in self._nodes:
            if start in seen:
                continue
            component: set[str] = set()
            stack = [start]
            while stack:
                current = stack.pop()
                if current in component:
                    continue
                component.add(current)
                stack.extend(neighbours[current] - component)
            seen |= component
            components.append(component)
        return components

    def _validate_regions(self) -> list[str]:
        errors = []
        for node in self.nodes:
            ports = self.region_ports(node.id)
            claimed: dict[str, str] = {}
            for port in ports:
                region = self.region(node.id, port)
                if not region and node.type == NodeType.LOOP:
                    errors.append(f"Loop node '{node.id}' has no '{LOOP_BODY_PORT}' edge")
                for member in sorted(region):
                    if member in claimed:
                        errors.append(
                            f"Parallel node '{node.id}': node '{member}' is reachable from "
                            f"both '{claimed[member]}' and '{port}'"
                        )
                    claimed.setdefault(member, port)
                    # A region may only be entered through its construct's port
                    for edge in self._incoming.get(member, []):
                        if edge.source_node_id == node.id:
                            if self.port_of(edge) != port and not self.is_back_edge(edge):
                                errors.append(
                                    f"Node '{member}' is inside '{node.id}' port '{port}' but "
                                    f"also fed from port '{self.port_of(edge)}'"
                                )
                        elif edge.source_node_id not in region and not self.is_back_edge(edge):
                            errors.append(
                                f"Node '{member}' is inside '{node.id}' port '{port}' but is "
                                f"also fed from outside by '{edge.source_node_id}'"
                            )
        return errors
