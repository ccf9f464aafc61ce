"""Flow graph schema definitions using Pydantic models.

A flow is a directed graph of typed nodes (triggers, AI prompts, third-party actions,
conditions, transformers) joined by edges. Each node kind carries its own typed
configuration model; the raw ``data`` map stored on a node is parsed into that model
at dispatch time.

Design:
- Node types form a closed enumeration grouped by prefix (trigger_, prompt_, action_)
- Unknown types are still storable so older engines can load newer flows
- Positions are display-only and never influence execution
"""

from enum import Enum
from typing import Any, Literal, get_args

import networkx as nx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from agentflow.core.errors import ConfigurationError
from agentflow.core.variables import stringify


class NodeType(str, Enum):
    """Supported node types in flow graphs"""

    TRIGGER_GMAIL = "trigger_gmail"
    TRIGGER_SLACK = "trigger_slack"
    TRIGGER_WEBHOOK = "trigger_webhook"
    TRIGGER_SCHEDULER = "trigger_scheduler"
    PROMPT_LLM = "prompt_llm"
    PROMPT_MEMORY = "prompt_memory"
    ACTION_SLACK = "action_slack"
    ACTION_NOTION = "action_notion"
    ACTION_EMAIL = "action_email"
    ACTION_WEBHOOK = "action_webhook"
    CONDITION = "condition"
    TRANSFORMER = "transformer"


TRIGGER_PREFIX = "trigger_"
PROMPT_PREFIX = "prompt_"
ACTION_PREFIX = "action_"


def is_trigger_type(node_type: str | None) -> bool:
    return bool(node_type) and str(node_type).startswith(TRIGGER_PREFIX)


def is_action_type(node_type: str | None) -> bool:
    return bool(node_type) and str(node_type).startswith(ACTION_PREFIX)


def is_prompt_type(node_type: str | None) -> bool:
    return bool(node_type) and str(node_type).startswith(PROMPT_PREFIX)


# ========== Typed node configuration ==========


def _is_text_field(annotation: Any) -> bool:
    """True for ``str`` and ``str | None`` annotations."""
    if annotation is str:
        return True
    args = set(get_args(annotation))
    return bool(args) and args <= {str, type(None)}


class _NodeConfig(BaseModel):
    """Base for node configuration. Unknown keys are kept for forward compatibility."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @model_validator(mode="before")
    @classmethod
    def coerce_text_fields(cls, data: Any) -> Any:
        """A lone ``{{marker}}`` resolves to a typed value; text fields take its string form."""
        if not isinstance(data, dict):
            return data
        coerced = dict(data)
        for name, info in cls.model_fields.items():
            if not _is_text_field(info.annotation):
                continue
            for key in {name, info.alias or name}:
                value = coerced.get(key)
                if value is not None and not isinstance(value, str):
                    coerced[key] = stringify(value)
        return coerced


class GmailTriggerConfig(_NodeConfig):
    filter: str | None = None
    labels: list[str] | None = None


class SlackTriggerConfig(_NodeConfig):
    channel: str | None = None
    event_type: str | None = Field(default=None, alias="eventType")


class WebhookTriggerConfig(_NodeConfig):
    endpoint: str = Field(min_length=1)
    method: str = "POST"


class SchedulerTriggerConfig(_NodeConfig):
    cron: str = Field(min_length=1)
    timezone: str = "UTC"


class LLMPromptConfig(_NodeConfig):
    prompt: str = Field(min_length=1)
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int = Field(default=1000, alias="maxTokens")


class MemoryPromptConfig(_NodeConfig):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, alias="topK")
    threshold: float = 0.7


class SlackActionConfig(_NodeConfig):
    channel: str | None = None
    user: str | None = None
    message: str = Field(min_length=1)
    thread_reply: bool = Field(default=False, alias="threadReply")

    @model_validator(mode="after")
    def check_destination(self) -> "SlackActionConfig":
        if not self.channel and not self.user:
            raise ValueError("channel or user is required")
        return self


class NotionActionConfig(_NodeConfig):
    database: str | None = None
    page: str | None = None
    title: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_target(self) -> "NotionActionConfig":
        if not self.database and not self.page:
            raise ValueError("database or page is required")
        return self


class EmailActionConfig(_NodeConfig):
    to: str | list[str]
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    html: bool = False

    @model_validator(mode="after")
    def check_recipients(self) -> "EmailActionConfig":
        if not self.to:
            raise ValueError("at least one recipient is required")
        return self

    @property
    def recipients(self) -> list[str]:
        return [self.to] if isinstance(self.to, str) else list(self.to)


class WebhookActionConfig(_NodeConfig):
    url: str = Field(min_length=1)
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class ConditionConfig(_NodeConfig):
    """
    Structured comparison for condition nodes.
    NO arbitrary code execution - only a fixed set of operators.
    """

    condition: Any
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than"] = (
        "equals"
    )
    value: Any = None

    @model_validator(mode="after")
    def check_condition_present(self) -> "ConditionConfig":
        if self.condition is None:
            raise ValueError("condition value is required")
        return self


class TransformerConfig(_NodeConfig):
    """Configuration for transformer nodes.

    json: parse ``script`` as a JSON document
    text: emit ``script`` verbatim (after variable resolution)
    mapping: emit ``script`` as a dict of already-resolved values
    """

    transformation: Literal["json", "text", "mapping"] = "text"
    script: Any

    @model_validator(mode="after")
    def check_script_present(self) -> "TransformerConfig":
        if self.script is None or self.script == "":
            raise ValueError("transformation script is required")
        return self


NODE_CONFIG_MODELS: dict[NodeType, type[_NodeConfig]] = {
    NodeType.TRIGGER_GMAIL: GmailTriggerConfig,
    NodeType.TRIGGER_SLACK: SlackTriggerConfig,
    NodeType.TRIGGER_WEBHOOK: WebhookTriggerConfig,
    NodeType.TRIGGER_SCHEDULER: SchedulerTriggerConfig,
    NodeType.PROMPT_LLM: LLMPromptConfig,
    NodeType.PROMPT_MEMORY: MemoryPromptConfig,
    NodeType.ACTION_SLACK: SlackActionConfig,
    NodeType.ACTION_NOTION: NotionActionConfig,
    NodeType.ACTION_EMAIL: EmailActionConfig,
    NodeType.ACTION_WEBHOOK: WebhookActionConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.TRANSFORMER: TransformerConfig,
}


def parse_node_config(node_type: str, data: dict[str, Any] | None) -> _NodeConfig:
    """Build the typed configuration for a node kind.

    Raises:
        ConfigurationError: Unknown node type or missing/invalid configuration
    """
    try:
        kind = NodeType(node_type)
    except ValueError:
        raise ConfigurationError(f"Unknown node type: {node_type}") from None

    model = NODE_CONFIG_MODELS[kind]
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            msg = err["msg"].removeprefix("Value error, ")
            problems.append(f"{loc}: {msg}" if loc else msg)
        raise ConfigurationError(
            f"Invalid configuration for {kind.value} node: {'; '.join(problems)}"
        ) from e


# ========== Graph model ==========


class Position(BaseModel):
    """Editor canvas coordinates (display only)"""

    x: float
    y: float


class FlowNode(BaseModel):
    """Graph node with type-specific configuration in ``data``"""

    id: str
    type: str
    label: str | None = None
    position: Position = Field(default_factory=lambda: Position(x=0, y=0))
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def empty_data(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def kind(self) -> NodeType | None:
        """Known node type, or None for types this engine does not handle."""
        try:
            return NodeType(self.type)
        except ValueError:
            return None

    @property
    def is_trigger(self) -> bool:
        return is_trigger_type(self.type)

    def config(self) -> _NodeConfig:
        return parse_node_config(self.type, self.data)


class FlowEdge(BaseModel):
    """Directed edge between nodes. Condition nodes route on ``source_handle``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")
    data: dict[str, Any] | None = None


class FlowDefinition(BaseModel):
    """Complete flow graph (nodes + edges)"""

    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)

    def node_map(self) -> dict[str, FlowNode]:
        """O(1) lookup of nodes by id (last definition wins on duplicates)."""
        return {n.id: n for n in self.nodes}

    def outgoing_edges(self) -> dict[str, list[FlowEdge]]:
        """Outgoing edges per source node id, in edge declaration order."""
        edge_map: dict[str, list[FlowEdge]] = {}
        for edge in self.edges:
            edge_map.setdefault(edge.source, []).append(edge)
        return edge_map

    def trigger_nodes(self) -> list[FlowNode]:
        return [n for n in self.nodes if n.is_trigger]

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def to_dict(self) -> dict[str, Any]:
        """Serializable form using the editor's camelCase edge keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
