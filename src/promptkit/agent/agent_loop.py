"""
Main orchestration loop for promptkit.

An :class:`Agent` drives one session through a bounded number of iterations::

    idle -> running -> {completed, failed, stopped}

Each iteration prompts the session, classifies the response, and either executes the requested
tool (feeding the result back as the next prompt) or treats the response as an answer candidate
checked against the stop predicate.
"""

from __future__ import annotations

import logging
from typing import (
    Any,
    Callable,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from promptkit.agent.tool_executor import (
    execute_tool,
    format_tool_result,
)
from promptkit.config import settings
from promptkit.core.client import PromptClient
from promptkit.core.protocol import (
    build_function_system_prompt,
    parse_response,
)
from promptkit.core.schema import (
    AgentResult,
    AgentStep,
    FunctionDefinition,
    TaskStatus,
)
from promptkit.core.session import SessionOptions
from promptkit.tools import FunctionRegistry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Complete the given task step by step."
COMPLETION_INDICATORS = (
    "task is complete",
    "task complete",
    "finished",
    "done",
    "completed",
    "final answer",
)
CONTINUE_AFTER_TOOL = (
    "Continue with the task. If the task is complete, "
    "respond with your final answer without calling any functions."
)
CONTINUE_PROMPT = "Continue with the task."


class AgentConfig(BaseModel):
    """Options recognised by :class:`Agent`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_iterations: int = Field(default_factory=lambda: settings.MAX_ITERATIONS, gt=0)
    functions: List[FunctionDefinition] = Field(default_factory=list)
    registry: Optional[FunctionRegistry] = Field(
        default=None, description="Shared registry; `functions` are registered into it"
    )
    system_prompt: Optional[str] = None
    stop_condition: Optional[Callable[[List[AgentStep]], bool]] = None
    on_step: Optional[Callable[[AgentStep], Any]] = None
    retry_strategy: Optional[Callable[[AgentStep], Optional[str]]] = None
    temperature: Optional[float] = Field(default=None, ge=0.0)
    top_k: Optional[int] = Field(default=None, ge=1)
    check_types: bool = False


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------
class Agent:
    """Bounded, cancellable tool-using loop over a single session."""

    def __init__(self, config: AgentConfig | None = None, client: PromptClient | None = None):
        self.config = config or AgentConfig()
        self.client = client or PromptClient()
        self.registry = self.config.registry
        if self.registry is None:
            self.registry = FunctionRegistry()
        if self.config.functions:
            self.registry.register_many(self.config.functions)

        self._status = TaskStatus.IDLE
        self._steps: List[AgentStep] = []
        self._stop_requested = False

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def run(self, task: str) -> AgentResult:
        """
        Execute *task* until it is answered, the iteration budget runs out, or :meth:`stop`.

        Session failures end the run with ``status=failed`` and the error attached; they are
        not raised.  The session is disposed on every exit path.
        """
        self._status = TaskStatus.RUNNING
        self._steps = []
        self._stop_requested = False
        session = None
        iteration = 0

        try:
            session = await self.client.create_session(
                self.session_options(self.build_system_prompt())
            )
            current_prompt = task

            while iteration < self.config.max_iterations:
                if self._stop_requested:
                    logger.info("Agent stopped before iteration %d", iteration + 1)
                    break
                iteration += 1
                logger.debug("Agent iteration %d/%d", iteration, self.config.max_iterations)

                response = await session.prompt(current_prompt)
                parsed = parse_response(response)

                if parsed.function_call is not None:
                    call = parsed.function_call
                    result = await execute_tool(
                        call, self.registry, check_types=self.config.check_types
                    )
                    step = AgentStep(
                        iteration=iteration,
                        thought=parsed.reasoning,
                        action=call,
                        observation=result,
                    )
                    formatted = format_tool_result(call.name, result)
                    current_prompt = f"{formatted}\n\n{CONTINUE_AFTER_TOOL}"
                    if self.config.retry_strategy is not None:
                        feedback = self.config.retry_strategy(step)
                        if feedback:
                            current_prompt = f"{current_prompt}\n\n{feedback}"
                    self._append(step)
                    continue

                answer = parsed.regular_response or ""
                step = AgentStep(iteration=iteration, thought=answer)
                if self._should_finish(step, answer):
                    self._append(step)
                    self._status = TaskStatus.COMPLETED
                    return self._result(final_answer=answer, iterations=iteration)

                self._append(step)
                current_prompt = CONTINUE_PROMPT

            self._status = TaskStatus.STOPPED if self._stop_requested else TaskStatus.COMPLETED
            final_answer = self._steps[-1].thought if self._steps else None
            return self._result(final_answer=final_answer, iterations=iteration)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Agent run failed: %s", exc)
            self._status = TaskStatus.FAILED
            return self._result(error=exc, iterations=len(self._steps))
        finally:
            if session is not None:
                self.client.destroy_session(session.session_id)

    def stop(self) -> None:
        """Request cancellation; observed at the start of the next iteration."""
        self._stop_requested = True

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def steps(self) -> List[AgentStep]:
        return list(self._steps)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def build_system_prompt(self) -> str:
        """Configured (or default) system prompt followed by the tool catalog, if any."""
        base = self.config.system_prompt or DEFAULT_SYSTEM_PROMPT
        function_prompt = build_function_system_prompt(self.registry.to_catalog())
        if function_prompt:
            return f"{base}\n\n{function_prompt}"
        return base

    @staticmethod
    def is_task_complete(response: str) -> bool:
        """Default stop heuristic: the response mentions a completion indicator."""
        lowered = response.lower()
        return any(indicator in lowered for indicator in COMPLETION_INDICATORS)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def session_options(self, system_prompt: str) -> SessionOptions:
        overrides = {}
        if self.config.temperature is not None:
            overrides["temperature"] = self.config.temperature
        if self.config.top_k is not None:
            overrides["top_k"] = self.config.top_k
        return SessionOptions(system_prompt=system_prompt, **overrides)

    def _should_finish(self, candidate: AgentStep, answer: str) -> bool:
        if self.config.stop_condition is not None:
            return bool(self.config.stop_condition([*self._steps, candidate]))
        return self.is_task_complete(answer)

    def _append(self, step: AgentStep) -> None:
        self._steps.append(step)
        if self.config.on_step is not None:
            self.config.on_step(step)

    def _result(
        self,
        final_answer: str | None = None,
        error: BaseException | None = None,
        iterations: int = 0,
    ) -> AgentResult:
        return AgentResult(
            status=self._status,
            steps=tuple(self._steps),
            final_answer=final_answer,
            error=error,
            iterations=iterations,
        )


async def run_agent(
    task: str, config: AgentConfig | None = None, client: PromptClient | None = None
) -> AgentResult:
    """Run *task* on a fresh :class:`Agent`."""
    return await Agent(config, client).run(task)
