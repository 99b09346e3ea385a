"""
Turn declarative schemas into the JSON description sent to the model, and check values against
that description.

A schema may be given as

* a :class:`~promptkit.core.schema.ParameterSchema`,
* a JSON-schema-like ``dict`` (``{"type": "object", "properties": {...}}``),
* a pydantic ``BaseModel`` subclass, or
* a plain Python annotation (``str``, ``list[int]``, ``Literal["a", "b"]``, ``Optional[X]``...).

Union annotations cannot be described losslessly by the six schema kinds.  How they are handled
is an explicit choice, see :class:`UnionPolicy`.
"""

from __future__ import annotations

import copy
import inspect
import json
import logging
import types
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Union,
    get_args,
    get_origin,
)

from pydantic import (
    BaseModel,
    ConfigDict,
)

from promptkit.core.errors import SchemaError
from promptkit.core.schema import ParameterSchema

logger = logging.getLogger(__name__)

_NONE_TYPE = type(None)
_ARRAY_ORIGINS = (list, tuple, set, frozenset)


class UnionPolicy(str, Enum):
    """What :func:`to_wire_schema` does with a union of two or more alternatives."""

    FIRST = "first"  # keep the first alternative (lossy, logged)
    ANY_OF = "any_of"  # emit {"anyOf": [...]}
    ERROR = "error"  # refuse with SchemaError


class ValidationFailure(BaseModel):
    """First mismatch found by :func:`validate`."""

    model_config = ConfigDict(frozen=True)

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


# ---------------------------------------------------------------------------
# Wire schema generation
# ---------------------------------------------------------------------------
def is_model_schema(schema: Any) -> bool:
    """True if *schema* is a pydantic model class."""
    return (
        isinstance(schema, type) and get_origin(schema) is None and issubclass(schema, BaseModel)
    )


def to_wire_schema(schema: Any, union_policy: UnionPolicy = UnionPolicy.FIRST) -> Dict[str, Any]:
    """
    Return the JSON-serialisable description of *schema*.

    Parameters
    ----------
    schema:
        Any of the accepted schema forms (see module docstring).
    union_policy:
        How to describe unions of more than one non-null alternative.

    Raises
    ------
    SchemaError
        If *union_policy* is ``ERROR`` and a union is encountered.
    """
    if isinstance(schema, ParameterSchema):
        return schema.to_wire()
    if isinstance(schema, Mapping):
        return copy.deepcopy(dict(schema))
    return _annotation_to_wire(schema, union_policy)


def _annotation_to_wire(tp: Any, policy: UnionPolicy) -> Dict[str, Any]:
    origin = get_origin(tp)
    args = get_args(tp)

    if origin is Annotated:
        return _annotation_to_wire(args[0], policy)
    if origin is Union or (hasattr(types, "UnionType") and origin is types.UnionType):
        return _union_to_wire(tp, args, policy)
    if origin is Literal:
        return {"type": "string", "enum": [str(value) for value in args]}
    if origin in _ARRAY_ORIGINS:
        item = args[0] if args else str
        return {"type": "array", "items": _annotation_to_wire(item, policy)}
    if origin is dict:
        return {"type": "object", "properties": {}}

    if tp in _ARRAY_ORIGINS:
        return {"type": "array", "items": {"type": "string"}}
    if tp is dict:
        return {"type": "object", "properties": {}}
    if tp is str:
        return {"type": "string"}
    if tp is bool:
        return {"type": "boolean"}
    if tp in (int, float):
        return {"type": "number"}
    if inspect.isclass(tp) and issubclass(tp, Enum):
        return {"type": "string", "enum": [str(member.value) for member in tp]}
    if is_model_schema(tp):
        return _model_to_wire(tp, policy)

    logger.warning("Unsupported schema annotation %r, describing it as a string", tp)
    return {"type": "string"}


def _union_to_wire(tp: Any, args: tuple, policy: UnionPolicy) -> Dict[str, Any]:
    alternatives = [arg for arg in args if arg is not _NONE_TYPE]
    if len(alternatives) == 1:
        # Optional[X]: optionality lives in the parent's required list
        return _annotation_to_wire(alternatives[0], policy)
    if policy is UnionPolicy.ANY_OF:
        return {"anyOf": [_annotation_to_wire(arg, policy) for arg in alternatives]}
    if policy is UnionPolicy.ERROR:
        raise SchemaError(f"Union type {tp!r} cannot be described without loss")
    logger.warning("Union type %r collapsed to its first alternative %r", tp, alternatives[0])
    return _annotation_to_wire(alternatives[0], policy)


def is_optional_annotation(tp: Any) -> bool:
    origin = get_origin(tp)
    if origin is Union or (hasattr(types, "UnionType") and origin is types.UnionType):
        return _NONE_TYPE in get_args(tp)
    return False


def _model_to_wire(model_cls: type, policy: UnionPolicy) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, field_info in model_cls.model_fields.items():
        key = field_info.alias or name
        prop = _annotation_to_wire(field_info.annotation, policy)
        if field_info.description:
            prop["description"] = field_info.description
        properties[key] = prop
        if field_info.is_required() and not is_optional_annotation(field_info.annotation):
            required.append(key)

    wire: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        wire["required"] = required
    return wire


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _matches_type(value: Any, type_name: str) -> bool:
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_name == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "object":
        return isinstance(value, dict)
    if type_name == "array":
        return isinstance(value, list)
    if type_name == "null":
        return value is None
    return True  # unknown types are not checked


def _check(value: Any, wire: Mapping[str, Any], path: str) -> Optional[ValidationFailure]:
    if "anyOf" in wire:
        for branch in wire["anyOf"]:
            if _check(value, branch, path) is None:
                return None
        return ValidationFailure(path=path, message="value matches none of the alternatives")

    type_name = wire.get("type")
    if type_name and not _matches_type(value, type_name):
        return ValidationFailure(
            path=path, message=f"expected {type_name}, got {_type_name(value)}"
        )

    allowed = wire.get("enum")
    if allowed is not None and value not in allowed:
        return ValidationFailure(path=path, message=f"expected one of {allowed}, got {value!r}")

    if isinstance(value, dict) and (type_name == "object" or "properties" in wire):
        required = wire.get("required") or []
        for name in required:
            if name not in value:
                return ValidationFailure(path=f"{path}.{name}", message="missing required field")
        for name, prop in (wire.get("properties") or {}).items():
            # Optional fields may be explicitly null
            if name in value and not (value[name] is None and name not in required):
                failure = _check(value[name], prop, f"{path}.{name}")
                if failure is not None:
                    return failure

    if isinstance(value, list) and "items" in wire:
        for index, item in enumerate(value):
            failure = _check(item, wire["items"], f"{path}[{index}]")
            if failure is not None:
                return failure
    return None


def validate(value: Any, schema: Any) -> Any:
    """
    Structurally check *value* against *schema*.

    Returns *value* unchanged when it conforms, otherwise a :class:`ValidationFailure` naming
    the first failing path.  No type coercion is attempted and extra object keys are allowed.
    """
    wire = to_wire_schema(schema, union_policy=UnionPolicy.ANY_OF)
    failure = _check(value, wire, "$")
    return value if failure is None else failure


# ---------------------------------------------------------------------------
# Prompt rendering
# ---------------------------------------------------------------------------
def render_schema_prompt(schema: Any, union_policy: UnionPolicy = UnionPolicy.FIRST) -> str:
    """Instructions asking the model for JSON that matches *schema* exactly."""
    wire = to_wire_schema(schema, union_policy=union_policy)
    noun = {"object": "JSON object", "array": "JSON array"}.get(wire.get("type", ""), "JSON value")
    return (
        "You must respond with valid JSON matching this exact schema:\n"
        f"{json.dumps(wire, indent=2)}\n"
        "\n"
        "Rules:\n"
        f"- Respond ONLY with the {noun}, no additional text\n"
        "- Ensure all required fields are present\n"
        "- Follow the exact structure and types specified\n"
        "- Do not include any markdown formatting or code blocks"
    )


def schema_to_string(schema: Any, indent: int = 0) -> str:
    """Compact, TypeScript-like rendering of *schema* for prompts and logs."""
    wire = schema if isinstance(schema, Mapping) else to_wire_schema(schema)
    spaces = "  " * indent

    if "anyOf" in wire:
        return " | ".join(schema_to_string(branch, indent) for branch in wire["anyOf"])
    if wire.get("enum"):
        return " | ".join(json.dumps(value) for value in wire["enum"])
    if wire.get("type") == "object" and wire.get("properties"):
        required = set(wire.get("required") or [])
        lines = [
            f"{spaces}  {name}{'' if name in required else '?'}: "
            f"{schema_to_string(prop, indent + 1)}"
            for name, prop in wire["properties"].items()
        ]
        return "{\n" + "\n".join(lines) + f"\n{spaces}}}"
    if wire.get("type") == "array" and wire.get("items"):
        return f"Array<{schema_to_string(wire['items'], indent)}>"
    return str(wire.get("type", "any"))
