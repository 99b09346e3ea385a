"""Helpers over an agent's step history: inspection, formatting and ready-made stop conditions."""

from __future__ import annotations

import json
import logging
from typing import (
    Callable,
    List,
    Optional,
    Sequence,
)

from pydantic_core import to_jsonable_python

from promptkit.core.schema import AgentStep

logger = logging.getLogger(__name__)

StopCondition = Callable[[List[AgentStep]], bool]


def _failed(step: AgentStep) -> bool:
    return step.observation is not None and not step.observation.success


def _to_json(value) -> str:
    return json.dumps(to_jsonable_python(value, fallback=str), indent=2)


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------
def is_task_complete(steps: Sequence[AgentStep]) -> bool:
    """True when the last step is a plain answer or a successful tool call."""
    if not steps:
        return False
    last = steps[-1]
    if last.thought and last.action is None:
        return True
    return last.observation is not None and last.observation.success


def extract_final_answer(steps: Sequence[AgentStep]) -> Optional[str]:
    """Thought of the most recent step that did not call a tool."""
    for step in reversed(steps):
        if step.thought and step.action is None:
            return step.thought
    return None


def count_function_calls(steps: Sequence[AgentStep]) -> int:
    return sum(1 for step in steps if step.action is not None)


def get_successful_steps(steps: Sequence[AgentStep]) -> List[AgentStep]:
    """Steps without a failed observation (plain answers count as successful)."""
    return [step for step in steps if not _failed(step)]


def get_failed_steps(steps: Sequence[AgentStep]) -> List[AgentStep]:
    return [step for step in steps if _failed(step)]


def has_errors(steps: Sequence[AgentStep]) -> bool:
    return any(_failed(step) for step in steps)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------
def format_agent_history(steps: Sequence[AgentStep]) -> str:
    """Verbose, human readable transcript of *steps*."""
    blocks = []
    for step in steps:
        lines = [f"=== Step {step.iteration} ==="]
        if step.thought:
            lines.append(f"Thought: {step.thought}")
        if step.action is not None:
            lines.append(f"Action: {step.action.name}")
            lines.append(f"Arguments: {_to_json(step.action.arguments)}")
        if step.observation is not None:
            lines.append(f"Observation: {'Success' if step.observation.success else 'Failed'}")
            if step.observation.result is not None:
                lines.append(f"Result: {_to_json(step.observation.result)}")
            if step.observation.error:
                lines.append(f"Error: {step.observation.error}")
        blocks.append("\n".join(lines) + "\n")
    return "\n".join(blocks)


def format_steps_for_reflection(steps: Sequence[AgentStep]) -> str:
    """Compact step summary embedded in reflection and replanning prompts."""
    blocks = []
    for step in steps:
        formatted = f"Step {step.iteration}:"
        if step.thought:
            formatted += f"\n  Thought: {step.thought}"
        if step.action is not None:
            formatted += f"\n  Action: {step.action.name}"
        if step.observation is not None:
            formatted += f"\n  Result: {'Success' if step.observation.success else 'Failed'}"
        blocks.append(formatted)
    return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Stop conditions
# ---------------------------------------------------------------------------
def max_function_calls(limit: int) -> StopCondition:
    """Stop once *limit* tool calls have been made."""

    def condition(steps: List[AgentStep]) -> bool:
        return count_function_calls(steps) >= limit

    return condition


def keyword_detected(keywords: Sequence[str]) -> StopCondition:
    """Stop when the last thought mentions any of *keywords* (case-insensitive)."""
    lowered = [keyword.lower() for keyword in keywords]

    def condition(steps: List[AgentStep]) -> bool:
        if not steps or not steps[-1].thought:
            return False
        thought = steps[-1].thought.lower()
        return any(keyword in thought for keyword in lowered)

    return condition


def no_progress_after(iterations: int) -> StopCondition:
    """Stop when each of the last *iterations* steps is a failed tool call."""

    def condition(steps: List[AgentStep]) -> bool:
        if iterations < 1 or len(steps) < iterations:
            return False
        return all(_failed(step) for step in steps[-iterations:])

    return condition


def answer_provided() -> StopCondition:
    return is_task_complete


# ---------------------------------------------------------------------------
# Retry feedback
# ---------------------------------------------------------------------------
class RetryFeedback:
    """
    Corrective prompt after failed tool calls, for ``AgentConfig.retry_strategy``.

    Each failure (up to *max_retries* in a row) yields a "try a different approach" hint; past
    that the model is asked for its best answer.  A successful step resets the count.
    """

    def __init__(self, max_retries: int = 3) -> None:
        self.max_retries = max_retries
        self.retries = 0

    def __call__(self, step: AgentStep) -> Optional[str]:
        if not _failed(step):
            self.retries = 0
            return None
        if self.retries < self.max_retries:
            self.retries += 1
            return (
                f"The previous action failed. Error: {step.observation.error}. "
                f"Please try a different approach (attempt {self.retries}/{self.max_retries})."
            )
        logger.info("Retry budget of %d exhausted", self.max_retries)
        return (
            "Max retries reached. "
            "Please provide your best answer based on the information available."
        )
