"""Core Pydantic models for the flow engine."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, Type
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)


class ExecutionStatusEnum(str, Enum):
    """Enumeration of flow execution statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FlowLogLevel(str, Enum):
    """Levels of the per-execution log stream."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class NodeType(str, Enum):
    """Every kind of node a flow can contain."""
    TRIGGER = "trigger"
    CONDITION = "condition"
    AI_ANALYSIS = "ai_analysis"
    DATABASE_QUERY = "database_query"
    DATABASE_UPDATE = "database_update"
    API_CALL = "api_call"
    NOTIFICATION = "notification"
    DELAY = "delay"
    TRANSFORM = "transform"
    WEBHOOK = "webhook"


class ValidationResult(BaseModel):
    """Result of flow validation."""
    is_valid: bool = Field(..., description="Whether the flow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


# Node configuration, one model per node type

class NodeConfig(BaseModel):
    """Settings shared by every node type.

    Unknown keys are kept so that configs written by the flow builder
    survive a load/save round trip.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    continue_on_error: bool = Field(False, alias="continueOnError")


class TriggerConfig(NodeConfig):
    """Trigger nodes pass the execution input through unchanged."""


class ConditionConfig(NodeConfig):
    condition: str = Field("", description="Template resolved and coerced to a boolean")


class AIAnalysisConfig(NodeConfig):
    prompt: Optional[str] = Field(None, description="Prompt; falls back to the flow's ai_prompt")
    model: Optional[str] = Field(None, description="Model override for this node")


class DatabaseQueryConfig(NodeConfig):
    table: str = Field("", description="Table to read from")
    filters: Dict[str, Any] = Field(default_factory=dict, description="Equality filters, templates allowed")
    use_context: bool = Field(False, description="Restrict to the row whose id is the execution context id")
    limit: Optional[int] = Field(None, description="Maximum number of rows returned")

    @field_validator('table')
    @classmethod
    def validate_table(cls, table):
        if not table or not table.strip():
            raise ValueError("Table name is required for database_query node")
        return table.strip()

    @field_validator('limit')
    @classmethod
    def validate_limit(cls, limit):
        if limit is not None and limit <= 0:
            raise ValueError("Limit must be a positive integer")
        return limit


class DatabaseUpdateConfig(NodeConfig):
    table: str = Field("", description="Table to update")
    updates: Dict[str, Any] = Field(default_factory=dict, description="Column values, templates allowed")
    record_id: Optional[Any] = Field(None, alias="id", description="Fallback id of the row to update")

    @field_validator('table')
    @classmethod
    def validate_table(cls, table):
        if not table or not table.strip():
            raise ValueError("Table name is required for database_update node")
        return table.strip()


class ApiCallConfig(NodeConfig):
    url: str = Field("", description="Target URL, templates allowed")
    method: str = Field("GET", description="HTTP method")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra request headers")
    body: Optional[Any] = Field(None, description="JSON body, templates allowed")

    @field_validator('url')
    @classmethod
    def validate_url(cls, url):
        if not url or not url.strip():
            raise ValueError("URL is required for api_call node")
        return url.strip()

    @field_validator('method')
    @classmethod
    def normalize_method(cls, method):
        return (method or "GET").upper()


class NotificationConfig(NodeConfig):
    channel: str = Field("email", alias="type", description="Notification channel")
    recipient: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None


class DelayConfig(NodeConfig):
    delay: int = Field(1000, ge=0, description="Wait time in milliseconds")


class TransformConfig(NodeConfig):
    transform: Dict[str, Any] = Field(default_factory=dict, description="Output field -> template")


class WebhookConfig(NodeConfig):
    url: str = Field("", description="Webhook URL, templates allowed")
    method: str = Field("POST", description="HTTP method")
    body: Optional[Any] = Field(None, description="Body; defaults to the input merged with node results")

    @field_validator('url')
    @classmethod
    def validate_url(cls, url):
        if not url or not url.strip():
            raise ValueError("URL is required for webhook node")
        return url.strip()

    @field_validator('method')
    @classmethod
    def normalize_method(cls, method):
        return (method or "POST").upper()


NODE_CONFIG_MODELS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.AI_ANALYSIS: AIAnalysisConfig,
    NodeType.DATABASE_QUERY: DatabaseQueryConfig,
    NodeType.DATABASE_UPDATE: DatabaseUpdateConfig,
    NodeType.API_CALL: ApiCallConfig,
    NodeType.NOTIFICATION: NotificationConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.TRANSFORM: TransformConfig,
    NodeType.WEBHOOK: WebhookConfig,
}


# Flow graph

class NodeDefinition(BaseModel):
    """Definition of a flow node.

    ``config`` arrives as a free-form mapping and is parsed into the typed
    config model of the node's type during validation.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Node type")
    label: Optional[str] = Field(None, description="Human readable label")
    config: Any = Field(default_factory=dict, description="Per-type configuration")
    continue_on_error: bool = Field(False, alias="continueOnError")
    position: Optional[Dict[str, Any]] = Field(None, description="Builder canvas position")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not empty."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()

    @field_validator('config')
    @classmethod
    def parse_config(cls, config, info: ValidationInfo):
        """Parse the raw config into the model for this node's type."""
        node_type = info.data.get('type')
        if node_type is None:
            # type itself failed validation and is already reported
            return config

        config_model = NODE_CONFIG_MODELS[node_type]
        if isinstance(config, config_model):
            return config
        if isinstance(config, NodeConfig):
            config = config.model_dump(by_alias=True)
        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ValueError("Node config must be an object")

        try:
            return config_model.model_validate(config)
        except ValidationError as e:
            messages = "; ".join(error["msg"] for error in e.errors())
            raise ValueError(f"Invalid config for {node_type.value} node: {messages}")

    @property
    def display_name(self) -> str:
        return self.label or self.type.value

    @property
    def continues_on_error(self) -> bool:
        """The flag may be set on the node itself or inside its config."""
        return self.continue_on_error or bool(getattr(self.config, "continue_on_error", False))


class EdgeDefinition(BaseModel):
    """Directed connection between two nodes."""
    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    condition: Optional[str] = Field(None, description="Template that must resolve truthy to follow the edge")
    label: Optional[str] = Field(None, description="Human readable label")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('condition')
    @classmethod
    def blank_condition_is_none(cls, condition):
        if condition is not None and not condition.strip():
            return None
        return condition


class FlowDefinition(BaseModel):
    """Complete definition of a flow as authored in the builder."""
    name: str = Field(..., description="Name of the flow")
    description: Optional[str] = Field(None, description="Description of the flow")
    module: str = Field("general", description="Clinic module the flow belongs to")
    category: str = Field("automation", description="Flow category")
    trigger_type: str = Field("manual", description="What starts the flow")
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="Trigger settings")
    nodes: List[NodeDefinition] = Field(..., description="Nodes of the flow, in authoring order")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges between nodes")
    ai_prompt: Optional[str] = Field(None, description="Default prompt for ai_analysis nodes")
    ai_model: Optional[str] = Field(None, description="Default model for ai_analysis nodes")
    is_active: bool = Field(True, description="Inactive flows cannot be executed")
    priority: int = Field(0, description="Higher priority flows are listed first")
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure flow name is not empty."""
        if not name.strip():
            raise ValueError("Flow name cannot be empty")
        return name.strip()

    @field_validator('nodes')
    @classmethod
    def validate_nodes(cls, nodes):
        """Ensure there is at least one node and node IDs are unique."""
        if not nodes:
            raise ValueError("At least one node is required")
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @model_validator(mode='after')
    def validate_edge_references(self):
        """Every edge must connect two nodes of this flow."""
        node_ids = {node.id for node in self.nodes}
        for edge in self.edges:
            if edge.source not in node_ids:
                raise ValueError(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                raise ValueError(f"Edge references non-existent target node: {edge.target}")
        return self

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        """Outgoing edges of a node in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def start_candidates(self) -> List[NodeDefinition]:
        """Nodes without incoming edges, in authoring order."""
        targets = {edge.target for edge in self.edges}
        return [node for node in self.nodes if node.id not in targets]

    def find_start_node(self) -> Tuple[NodeDefinition, bool]:
        """
        Return the node the walk starts at.

        Returns:
            The first node without incoming edges, and False; or the first
            node of the flow and True when every node has an incoming edge.
        """
        candidates = self.start_candidates()
        if candidates:
            return candidates[0], False
        return self.nodes[0], True

    def validate_structure(self) -> ValidationResult:
        """Collect warnings about graph shapes that run but are likely mistakes."""
        warnings = []

        candidates = self.start_candidates()
        if not candidates:
            warnings.append(
                f"No start node found (every node has an incoming edge); "
                f"execution would fall back to the first node '{self.nodes[0].id}'"
            )
        elif len(candidates) > 1:
            warnings.append(
                f"Multiple nodes without incoming edges: {', '.join(node.id for node in candidates)}; "
                f"only '{candidates[0].id}' will run as the start node"
            )

        start_node, _ = self.find_start_node()
        unreachable = {node.id for node in self.nodes} - self._find_reachable_nodes(start_node.id)
        if unreachable:
            warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")

        if self._has_cycles():
            warnings.append("Flow contains cycles; the walk is bounded only by the per-node visit limit")

        return ValidationResult(is_valid=True, errors=[], warnings=warnings)

    def _find_reachable_nodes(self, entry_point: str) -> Set[str]:
        """Find all nodes reachable from the entry point."""
        reachable = {entry_point}
        edge_map: Dict[str, List[str]] = {}
        for edge in self.edges:
            edge_map.setdefault(edge.source, []).append(edge.target)

        queue = [entry_point]
        while queue:
            current = queue.pop(0)
            for neighbor in edge_map.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)

        return reachable

    def _has_cycles(self) -> bool:
        """Check if the flow contains cycles using DFS."""
        if not self.edges:
            return False

        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)

        visited = set()
        rec_stack = set()

        def has_cycle_util(node):
            visited.add(node)
            rec_stack.add(node)

            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True

            rec_stack.remove(node)
            return False

        for node in self.nodes:
            if node.id not in visited:
                if has_cycle_util(node.id):
                    return True

        return False


class Flow(FlowDefinition):
    """A stored flow."""
    id: str = Field(..., description="Flow ID")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class FlowUpdate(BaseModel):
    """Partial update of a stored flow; unset fields are left unchanged."""
    name: Optional[str] = None
    description: Optional[str] = None
    module: Optional[str] = None
    category: Optional[str] = None
    trigger_type: Optional[str] = None
    trigger_config: Optional[Dict[str, Any]] = None
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None
    ai_prompt: Optional[str] = None
    ai_model: Optional[str] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


# Execution

class FlowContext(BaseModel):
    """Accumulated state of one walk.

    Instances are frozen; every executed node produces a new context through
    ``with_result`` instead of mutating a shared results map.
    """
    model_config = ConfigDict(frozen=True)

    execution_id: str
    flow_id: str
    context_type: str
    context_id: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    node_results: Dict[str, Any] = Field(default_factory=dict)
    ai_prompt: Optional[str] = None
    ai_model: Optional[str] = None

    def with_result(self, node_id: str, result: Dict[str, Any]) -> "FlowContext":
        """Return a new context with ``result`` recorded under ``node_id``."""
        return self.model_copy(update={"node_results": {**self.node_results, node_id: result}})

    def template_scope(self, current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Build the mapping templates are resolved against.

        Node results are reachable by node id and the input under ``input``.
        When ``current`` is given (edge conditions), its fields are also
        exposed at the top level unless a node id or ``input`` shadows them.
        """
        scope: Dict[str, Any] = {}
        if current:
            scope.update(current)
        scope["context"] = {"type": self.context_type, "id": self.context_id}
        scope.update(self.node_results)
        scope["input"] = self.input_data
        return scope


class ExecutionStatus(BaseModel):
    """Status of a flow execution, as returned to pollers."""
    execution_id: str = Field(..., description="Unique identifier for the execution")
    flow_id: str = Field(..., description="ID of the flow being executed")
    status: ExecutionStatusEnum = Field(..., description="Current execution status")
    context_type: str = Field(..., description="Kind of record the execution is about")
    context_id: Optional[str] = Field(None, description="ID of that record")
    input_data: Dict[str, Any] = Field(default_factory=dict)
    current_node_id: Optional[str] = Field(None, description="Last node that produced a result")
    node_results: Dict[str, Any] = Field(default_factory=dict, description="Result of every executed node")
    output_data: Optional[Dict[str, Any]] = Field(None, description="Final results on completion")
    triggered_by: Optional[str] = None
    triggered_by_type: str = "api"
    started_at: datetime = Field(..., description="Timestamp when execution started")
    completed_at: Optional[datetime] = Field(None, description="Timestamp when execution finished")
    duration_ms: Optional[int] = None
    error_message: Optional[str] = Field(None, description="Error message if execution failed")
    error_stack: Optional[str] = None


class LogEntry(BaseModel):
    """Entry of a per-execution log stream."""
    id: int
    execution_id: str = Field(..., description="ID of the execution")
    node_id: Optional[str] = Field(None, description="Node that produced the entry")
    level: FlowLogLevel = Field(..., description="Severity")
    message: str = Field(..., description="Log message")
    data: Optional[Dict[str, Any]] = Field(None, description="Arbitrary payload")
    created_at: datetime = Field(..., description="Timestamp of the entry")
