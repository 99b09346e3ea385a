"""
promptkit: agent orchestration over a single-turn completion primitive.

Structured output with bounded retries, a JSON function-calling protocol, and a cancellable
agent loop with optional planning and reflection.
"""

from promptkit.agent.agent_loop import (
    Agent,
    AgentConfig,
    run_agent,
)
from promptkit.agent.planner import (
    PlanningAgent,
    PlanningAgentConfig,
    run_agent_with_planning,
)
from promptkit.agent.tool_executor import (
    execute_tool,
    execute_tools,
)
from promptkit.core.backends import (
    CompletionBackend,
    ScriptedBackend,
    load_backend,
    register_backend,
)
from promptkit.core.client import PromptClient
from promptkit.core.errors import (
    FunctionCallError,
    PromptKitError,
    QuotaExceededError,
    SchemaError,
    SessionError,
    StructuredOutputError,
)
from promptkit.core.protocol import parse_response
from promptkit.core.schema import (
    AgentPlan,
    AgentResult,
    AgentStep,
    FunctionCall,
    FunctionDefinition,
    ParameterSchema,
    TaskStatus,
    ToolResult,
)
from promptkit.core.session import (
    Session,
    SessionOptions,
)
from promptkit.structured.schema_coercer import UnionPolicy
from promptkit.structured.structured_output import (
    extract_structured,
    extract_structured_streaming,
)
from promptkit.tools import FunctionRegistry

__all__ = [
    "Agent",
    "AgentConfig",
    "AgentPlan",
    "AgentResult",
    "AgentStep",
    "CompletionBackend",
    "FunctionCall",
    "FunctionCallError",
    "FunctionDefinition",
    "FunctionRegistry",
    "ParameterSchema",
    "PlanningAgent",
    "PlanningAgentConfig",
    "PromptClient",
    "PromptKitError",
    "QuotaExceededError",
    "SchemaError",
    "ScriptedBackend",
    "Session",
    "SessionError",
    "SessionOptions",
    "StructuredOutputError",
    "TaskStatus",
    "ToolResult",
    "UnionPolicy",
    "execute_tool",
    "execute_tools",
    "extract_structured",
    "extract_structured_streaming",
    "load_backend",
    "parse_response",
    "register_backend",
    "run_agent",
    "run_agent_with_planning",
]
