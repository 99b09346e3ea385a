"""
Function registry for promptkit.

A :class:`FunctionRegistry` holds the tools an agent may call.  Tools are
:class:`~promptkit.core.schema.FunctionDefinition` objects whose handler receives a single
argument dict; keyword-style Python functions can be registered with the
:meth:`~FunctionRegistry.tool` decorator, which infers the parameter schema from the signature.
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    get_type_hints,
)

from promptkit.core.schema import (
    FunctionDefinition,
    ParameterSchema,
)
from promptkit.structured.schema_coercer import (
    is_optional_annotation,
    to_wire_schema,
)

logger = logging.getLogger(__name__)


class FunctionRegistry:
    """
    Named tool declarations, kept in registration order.

    Re-registering an existing name overwrites the previous definition and logs a warning.
    The registry is not locked; callers sharing one instance between concurrent runs must
    serialise mutations themselves.
    """

    def __init__(self, definitions: Iterable[FunctionDefinition] | None = None) -> None:
        self._functions: Dict[str, FunctionDefinition] = {}
        if definitions:
            self.register_many(definitions)

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #
    def register(self, definition: FunctionDefinition) -> FunctionDefinition:
        """Add *definition*, overwriting any tool with the same name."""
        if definition.name in self._functions:
            logger.warning("Function '%s' already registered, overwriting", definition.name)
        else:
            logger.debug("Registering function '%s'", definition.name)
        self._functions[definition.name] = definition
        return definition

    def register_many(self, definitions: Iterable[FunctionDefinition]) -> None:
        for definition in definitions:
            self.register(definition)

    def unregister(self, name: str) -> None:
        self._functions.pop(name, None)

    def clear(self) -> None:
        self._functions.clear()

    def tool(
        self, name: str | None = None, description: str | None = None
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Register a keyword-style function as a tool.

        The function is registered as a decorator, so it can be used like this::

            @registry.tool("add")
            def add(a: float, b: float) -> float:
                \"\"\"Add two numbers.\"\"\"
                return a + b

        The parameter schema is inferred from the signature and the description defaults to the
        docstring.  The decorated function is returned unchanged.
        """

        def wrapper(fn: Callable[..., Any]) -> Callable[..., Any]:
            definition = function_definition_from_callable(fn, name=name, description=description)
            self.register(definition)
            return fn

        return wrapper

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #
    def get(self, name: str) -> FunctionDefinition | None:
        return self._functions.get(name)

    def has(self, name: str) -> bool:
        return name in self._functions

    def list(self) -> List[FunctionDefinition]:
        return list(self._functions.values())

    def names(self) -> List[str]:
        return list(self._functions.keys())

    def to_catalog(self) -> List[Dict[str, Any]]:
        """Name, description and wire parameters of every tool, in registration order."""
        return [definition.to_catalog_entry() for definition in self._functions.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[FunctionDefinition]:
        return iter(list(self._functions.values()))

    def __len__(self) -> int:
        return len(self._functions)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def create_parameters(
    properties: Mapping[str, ParameterSchema | Mapping[str, Any]],
    required: List[str] | None = None,
) -> ParameterSchema:
    """Object schema over *properties*; every property is required unless *required* is given."""
    props = {
        name: prop if isinstance(prop, ParameterSchema) else ParameterSchema.from_wire(prop)
        for name, prop in properties.items()
    }
    return ParameterSchema.object(props, required or list(props))


def parameters_from_signature(fn: Callable[..., Any]) -> ParameterSchema:
    """Extract an object schema from *fn*'s keyword parameters and type hints."""
    sig = inspect.signature(fn)
    try:
        type_hints = get_type_hints(fn)
    except (NameError, TypeError):
        logger.debug("Could not resolve type hints of %r", fn)
        type_hints = {}

    properties: Dict[str, ParameterSchema] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        hint = type_hints.get(param_name, str)
        properties[param_name] = ParameterSchema.from_wire(to_wire_schema(hint))
        if param.default is inspect.Parameter.empty and not is_optional_annotation(hint):
            required.append(param_name)
    return ParameterSchema.object(properties, required)


def function_definition_from_callable(
    fn: Callable[..., Any], name: str | None = None, description: str | None = None
) -> FunctionDefinition:
    """Wrap a keyword-style function into a :class:`FunctionDefinition`."""

    @functools.wraps(fn)
    def handler(args: Dict[str, Any]) -> Any:
        return fn(**args)

    return FunctionDefinition(
        name=name or fn.__name__,
        description=description or inspect.getdoc(fn) or "",
        parameters=parameters_from_signature(fn),
        handler=handler,
    )
