"""
Node Protocol - Typed units of work in a pathway graph.

A node is ``{id, type, data}``. ``type`` is a closed ``NodeType`` set; builder
aliases (``proficiency-router``, ``human-input``, ...) are normalized on load.
``data`` holds the type-specific configuration, either flat or nested under
``data.config``. The typed config models below describe the shape each
multi-port node requires; they are parsed once when the graph is loaded.
"""

from enum import StrEnum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_PORT = "output"
LOOP_BODY_PORT = "loop-body"
LOOP_COMPLETE_PORT = "loop-complete"
TRUE_PORT = "true"
FALSE_PORT = "false"


def branch_port(index: int) -> str:
    """Port name for a parallel branch (1-based)."""
    return f"branch-{index}"


class NodeType(StrEnum):
    """Every node type the engine can execute."""

    # Flow control
    ROUTER = "router"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    PARALLEL = "parallel"
    MERGE = "merge"
    # Interaction
    HUMAN_IN_LOOP = "human-in-loop"
    COMPREHENSION_CHECK = "comprehension-check"
    MULTIPLE_CHOICE = "multiple-choice"
    FREE_RESPONSE = "free-response"
    VOICE_INPUT = "voice-input"
    ORAL_PRACTICE = "oral-practice"
    # AI
    AI_MODEL = "ai-model"
    PROMPT_TEMPLATE = "prompt-template"
    CONTENT_GENERATOR = "content-generator"
    VOCABULARY_BUILDER = "vocabulary-builder"
    STRUCTURED_OUTPUT = "structured-output"
    CURRICULUM_SELECTOR = "curriculum-selector"
    # Scaffolding
    SCAFFOLDED_CONTENT = "scaffolded-content"
    SCAFFOLDING = "scaffolding"
    L1_BRIDGE = "l1-bridge"
    VISUAL_SUPPORT = "visual-support"
    # Numeracy
    WORD_PROBLEM_DECODER = "word-problem-decoder"
    MATH_PROBLEM_GENERATOR = "math-problem-generator"
    # Data
    INPUT = "input"
    OUTPUT = "output"
    PROCESS = "process"
    STUDENT_PROFILE = "student-profile"
    VARIABLE = "variable"
    # Outcomes
    FEEDBACK_GENERATOR = "feedback-generator"
    CELEBRATION = "celebration"
    PROGRESS_TRACKER = "progress-tracker"


NODE_TYPE_ALIASES: dict[str, NodeType] = {
    "proficiency-router": NodeType.ROUTER,
    "human-input": NodeType.HUMAN_IN_LOOP,
    "feedback": NodeType.FEEDBACK_GENERATOR,
    "ai": NodeType.AI_MODEL,
    "ai-call": NodeType.AI_MODEL,
    "trigger": NodeType.INPUT,
}


def normalize_node_type(value: Any) -> Any:
    if isinstance(value, str):
        key = value.strip().lower()
        return NODE_TYPE_ALIASES.get(key, key)
    return value


class NodeSpec(BaseModel):
    """
    One node of a graph document.

    Example:
        NodeSpec(id="route", type="router", data={"config": {
            "routingCriteria": "elpa-level",
            "routes": [{"id": "a", "condition": "elpaLevel < 3"}],
        }})
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field(min_length=1)
    type: NodeType
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return normalize_node_type(value)

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        return {} if value is None else value

    def config_data(self) -> dict[str, Any]:
        """Flat configuration: ``data`` overlaid with ``data.config``."""
        merged = {k: v for k, v in self.data.items() if k != "config"}
        nested = self.data.get("config")
        if isinstance(nested, dict):
            merged.update(nested)
        return merged

    @property
    def label(self) -> str:
        return str(self.data.get("label") or self.id)


# ---------------------------------------------------------------------------
# Typed configurations for multi-port and policy-bearing nodes
# ---------------------------------------------------------------------------


class _NodeConfig(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


class RoutingCriteria(StrEnum):
    ELPA_LEVEL = "elpa-level"
    PERFORMANCE = "performance"
    LEARNING_STYLE = "learning-style"
    INTEREST = "interest"
    AI_DETERMINED = "ai-determined"


# Binding consulted for each criterion; exposed to route conditions as ``value``
CRITERIA_SUBJECT: dict[RoutingCriteria, tuple[str, ...]] = {
    RoutingCriteria.ELPA_LEVEL: ("elpaLevel",),
    RoutingCriteria.PERFORMANCE: ("score", "performance"),
    RoutingCriteria.LEARNING_STYLE: ("learningStyle",),
    RoutingCriteria.INTEREST: ("interests", "interest"),
    RoutingCriteria.AI_DETERMINED: (),
}


class RouteSpec(_NodeConfig):
    id: str
    name: str = ""
    condition: str = ""
    target_node_id: str | None = None


class RouterConfig(_NodeConfig):
    routing_criteria: RoutingCriteria = RoutingCriteria.ELPA_LEVEL
    routes: list[RouteSpec] = Field(min_length=1)
    default_route: str | None = None
    use_ai_for_routing: bool = Field(
        default=False, validation_alias=AliasChoices("useAIForRouting", "use_ai_for_routing")
    )
    routing_prompt: str | None = None

    @model_validator(mode="after")
    def _check_routes(self) -> "RouterConfig":
        ids = [r.id for r in self.routes]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate route ids: {ids}")
        if self.default_route is not None and self.default_route not in ids:
            raise ValueError(f"defaultRoute '{self.default_route}' is not a declared route")
        return self

    def route(self, route_id: str) -> RouteSpec | None:
        for r in self.routes:
            if r.id == route_id:
                return r
        return None

    @property
    def uses_ai(self) -> bool:
        return self.use_ai_for_routing or self.routing_criteria == RoutingCriteria.AI_DETERMINED


class ConditionalConfig(_NodeConfig):
    condition: str = Field(min_length=1)


class LoopType(StrEnum):
    COUNT = "count"
    UNTIL_MASTERY = "until-mastery"
    FOREACH_ITEM = "foreach-item"
    UNTIL_CONDITION = "until-condition"


LOOP_TYPE_ALIASES = {
    "count-based": LoopType.COUNT,
    "for-each": LoopType.FOREACH_ITEM,
    "foreach": LoopType.FOREACH_ITEM,
}


class LoopConfig(_NodeConfig):
    loop_type: LoopType = LoopType.COUNT
    max_iterations: int = Field(default=5, ge=1)
    mastery_threshold: float | None = None
    iteration_variable: str = "iteration"
    continue_on_error: bool = False
    delay_between_iterations: float = Field(default=0, ge=0)  # milliseconds
    exit_condition: str | None = None
    items: list[Any] | None = None
    items_variable: str | None = None

    @field_validator("loop_type", mode="before")
    @classmethod
    def _normalize_loop_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return LOOP_TYPE_ALIASES.get(value, value)
        return value


class MergeStrategy(StrEnum):
    WAIT_ALL = "wait-all"
    FIRST_COMPLETE = "first-complete"
    COMBINE_OUTPUTS = "combine-outputs"
    BEST_RESULT = "best-result"


class ParallelConfig(_NodeConfig):
    branches: int = Field(default=2, ge=1)
    merge_strategy: MergeStrategy = MergeStrategy.WAIT_ALL
    timeout_seconds: float | None = Field(default=None, gt=0)
    continue_on_branch_failure: bool = False
    comparator_key: str | None = None

    @property
    def ports(self) -> list[str]:
        return [branch_port(i) for i in range(1, self.branches + 1)]


class RequiredRole(StrEnum):
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"
    ANY = "any"


class HumanInputType(StrEnum):
    APPROVAL = "approval"
    TEXT_INPUT = "text-input"
    SELECTION = "selection"
    RATING = "rating"
    FILE_UPLOAD = "file-upload"


class HumanInLoopConfig(_NodeConfig):
    required_role: RequiredRole = RequiredRole.ANY
    input_type: HumanInputType = HumanInputType.APPROVAL
    prompt: str = "Input required"
    options: list[str] | None = None
    timeout_minutes: float | None = Field(default=None, gt=0)
    default_on_timeout: Any = None
    notify_by_email: bool = False

    @property
    def has_default(self) -> bool:
        return self.default_on_timeout is not None


class AIProvider(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    GROQ = "groq"
    LOCAL = "local"


class AIModelConfig(_NodeConfig):
    provider: AIProvider | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int = Field(default=1024, gt=0)
    system_prompt: str = ""
    prompt: str | None = None
    stream_response: bool = False
    retry_on_failure: bool = True
    fallback_model: str | None = None


NODE_CONFIG_MODELS: dict[NodeType, type[_NodeConfig]] = {
    NodeType.ROUTER: RouterConfig,
    NodeType.CONDITIONAL: ConditionalConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.PARALLEL: ParallelConfig,
    NodeType.HUMAN_IN_LOOP: HumanInLoopConfig,
    NodeType.AI_MODEL: AIModelConfig,
}


def parse_node_config(node: NodeSpec) -> _NodeConfig | None:
    """Parse the typed config for ``node`` (None for free-form node types)."""
    model = NODE_CONFIG_MODELS.get(node.type)
    if model is None:
        return None
    return model.model_validate(node.config_data())


def declared_ports(node: NodeSpec, config: _NodeConfig | None) -> set[str]:
    """Output ports ``node`` may emit on."""
    if isinstance(config, RouterConfig):
        return {r.id for r in config.routes}
    if isinstance(config, ConditionalConfig):
        return {TRUE_PORT, FALSE_PORT}
    if isinstance(config, LoopConfig):
        return {LOOP_BODY_PORT, LOOP_COMPLETE_PORT, DEFAULT_PORT}
    if isinstance(config, ParallelConfig):
        return {*config.ports, DEFAULT_PORT}
    return {DEFAULT_PORT}
