"""
Schema definitions for model <-> agent <-> tool messages.

These data models serve as the contract between the completion session, the orchestration loop,
and individual tools.  We keep them separate from runtime logic so they can be imported anywhere
without side-effects.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Tuple,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Parameter schemas
# ---------------------------------------------------------------------------
class SchemaKind(str, Enum):
    """Shapes a :class:`ParameterSchema` can describe."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ENUM = "enum"


_WIRE_TYPE_ALIASES = {"integer": "number", "int": "number", "float": "number", "bool": "boolean"}


class ParameterSchema(BaseModel):
    """
    Recursive description of a value's shape.

    ``required`` is always a subset of ``properties``; arrays carry exactly one ``items`` schema
    and enums at least one literal value.
    """

    kind: SchemaKind
    description: Optional[str] = None
    properties: Dict[str, "ParameterSchema"] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)
    items: Optional["ParameterSchema"] = None
    values: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self) -> "ParameterSchema":
        unknown = [name for name in self.required if name not in self.properties]
        if unknown:
            raise ValueError(f"required names {unknown} are not declared properties")
        if self.kind is SchemaKind.ARRAY and self.items is None:
            raise ValueError("array schema needs an 'items' schema")
        if self.kind is SchemaKind.ENUM and not self.values:
            raise ValueError("enum schema needs at least one value")
        return self

    # Shorthand constructors --------------------------------------------------
    @classmethod
    def string(cls, description: str | None = None) -> "ParameterSchema":
        return cls(kind=SchemaKind.STRING, description=description)

    @classmethod
    def number(cls, description: str | None = None) -> "ParameterSchema":
        return cls(kind=SchemaKind.NUMBER, description=description)

    @classmethod
    def boolean(cls, description: str | None = None) -> "ParameterSchema":
        return cls(kind=SchemaKind.BOOLEAN, description=description)

    @classmethod
    def array(cls, items: "ParameterSchema", description: str | None = None) -> "ParameterSchema":
        return cls(kind=SchemaKind.ARRAY, items=items, description=description)

    @classmethod
    def enum(cls, values: List[str], description: str | None = None) -> "ParameterSchema":
        return cls(kind=SchemaKind.ENUM, values=list(values), description=description)

    @classmethod
    def object(
        cls,
        properties: Mapping[str, "ParameterSchema"] | None = None,
        required: List[str] | None = None,
        description: str | None = None,
    ) -> "ParameterSchema":
        return cls(
            kind=SchemaKind.OBJECT,
            properties=dict(properties or {}),
            required=list(required or []),
            description=description,
        )

    # Wire format -------------------------------------------------------------
    def to_wire(self) -> Dict[str, Any]:
        """JSON-schema-like dictionary sent to the model."""
        if self.kind is SchemaKind.ENUM:
            wire: Dict[str, Any] = {"type": "string", "enum": list(self.values)}
        else:
            wire = {"type": self.kind.value}
        if self.description:
            wire["description"] = self.description
        if self.kind is SchemaKind.OBJECT:
            wire["properties"] = {name: prop.to_wire() for name, prop in self.properties.items()}
            if self.required:
                wire["required"] = list(self.required)
        elif self.kind is SchemaKind.ARRAY and self.items is not None:
            wire["items"] = self.items.to_wire()
        return wire

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ParameterSchema":
        """Parse the dictionary form produced by :meth:`to_wire` (or plain JSON schema)."""
        if "anyOf" in data:
            raise ValueError("'anyOf' schemas have no ParameterSchema equivalent")
        description = data.get("description")
        if data.get("enum"):
            return cls.enum([str(v) for v in data["enum"]], description=description)

        raw_type = data.get("type")
        if raw_type is None:
            raw_type = "object" if "properties" in data else "string"
        type_name = _WIRE_TYPE_ALIASES.get(str(raw_type), str(raw_type))
        kind = SchemaKind(type_name)

        if kind is SchemaKind.OBJECT:
            properties = {
                name: cls.from_wire(prop) for name, prop in (data.get("properties") or {}).items()
            }
            return cls.object(properties, list(data.get("required") or []), description)
        if kind is SchemaKind.ARRAY:
            items = cls.from_wire(data.get("items") or {"type": "string"})
            return cls.array(items, description)
        return cls(kind=kind, description=description)


ParameterSchema.model_rebuild()


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
ToolHandler = Callable[[Dict[str, Any]], Any]


class FunctionDefinition(BaseModel):
    """A named tool the model may call.  ``handler`` receives the argument dict."""

    name: str = Field(..., min_length=1, description="Unique tool name")
    description: str = ""
    parameters: ParameterSchema = Field(default_factory=ParameterSchema.object)
    handler: ToolHandler

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameters_from_wire(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return ParameterSchema.from_wire(value)
        return value

    def to_catalog_entry(self) -> Dict[str, Any]:
        """Description of this tool without its handler."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.to_wire(),
        }


class FunctionCall(BaseModel):
    """A call that the model wants the agent to execute."""

    name: str = Field(..., description="Registered tool name")
    arguments: Dict[str, Any] = Field(
        default_factory=dict, description="Argument bag handed to the tool handler"
    )


class ToolResult(BaseModel):
    """Outcome of a single tool invocation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, result: Any) -> "ToolResult":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


# ---------------------------------------------------------------------------
# Agent bookkeeping
# ---------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """Lifecycle of an agent run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.STOPPED)


class AgentStep(BaseModel):
    """A single iteration of the agent loop (for history / reflection)."""

    iteration: int = Field(..., ge=1)
    timestamp: int = Field(default_factory=_now_ms, description="Epoch milliseconds")
    thought: Optional[str] = None
    action: Optional[FunctionCall] = None
    observation: Optional[ToolResult] = None


class AgentPlan(BaseModel):
    """Ordered plan steps; ``dependencies`` maps a step index to its prerequisites."""

    steps: List[str] = Field(default_factory=list)
    dependencies: Dict[int, List[int]] = Field(default_factory=dict)


class AgentResult(BaseModel):
    """Immutable snapshot returned at the end of a run."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    status: TaskStatus
    steps: Tuple[AgentStep, ...] = ()
    final_answer: Optional[str] = None
    error: Optional[BaseException] = None
    iterations: int = 0


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
class Message(BaseModel):
    """One entry of a session's conversation history."""

    role: Literal["system", "user", "assistant"]
    content: str
