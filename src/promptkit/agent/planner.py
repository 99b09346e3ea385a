"""
Planning and reflection on top of :class:`~promptkit.agent.agent_loop.Agent`.

``run_with_planning`` wraps the agent loop in a super-loop:

1. **Plan** - ask a dedicated planning session for a numbered plan.
2. **Execute** - run the agent on the task.
3. **Reflect** - while the run did not complete, reflection budget remains and nobody called
   :meth:`~PlanningAgent.stop`, ask for a reflection on the steps so far and re-run the agent
   with a continuation prompt embedding it.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from pydantic import Field

from promptkit.agent.agent_loop import (
    Agent,
    AgentConfig,
)
from promptkit.agent.agent_utils import format_steps_for_reflection
from promptkit.config import settings
from promptkit.core.client import PromptClient
from promptkit.core.schema import (
    AgentPlan,
    AgentResult,
    TaskStatus,
)
from promptkit.core.session import Session

logger = logging.getLogger(__name__)

PLANNING_CAPABILITIES = """

You are also capable of:
- Creating detailed plans before execution
- Reflecting on your progress
- Adjusting your approach based on feedback
- Breaking complex tasks into manageable steps"""

_PLAN_STEP_RE = re.compile(r"^\s*(\d+)[.)]\s+(.+)$", re.MULTILINE)


class PlanningAgentConfig(AgentConfig):
    """:class:`AgentConfig` plus the planning and reflection options."""

    enable_planning: bool = True
    max_reflections: int = Field(default_factory=lambda: settings.MAX_REFLECTIONS, ge=0)
    planning_prompt: Optional[str] = None
    reflection_prompt: Optional[str] = None


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------
def build_planning_prompt(task: str) -> str:
    return (
        f'Create a detailed step-by-step plan to accomplish this task: "{task}"\n\n'
        "Break it down into clear, actionable steps. For each step, specify:\n"
        "1. What needs to be done\n"
        "2. What resources or functions might be needed\n"
        "3. Dependencies on other steps"
    )


def build_reflection_prompt(steps_text: str) -> str:
    return (
        "Review the steps taken so far and provide:\n"
        "1. What has been accomplished\n"
        "2. What challenges were encountered\n"
        "3. What should be done differently\n"
        "4. Next recommended actions\n\n"
        f"Steps taken:\n{steps_text}"
    )


def build_continuation_prompt(reflection: str, task: str) -> str:
    return (
        "Previous attempt was not fully successful.\n\n"
        f"Reflection:\n{reflection}\n\n"
        f'Please continue with the task: "{task}"'
    )


def build_replan_prompt(task: str, steps_text: str) -> str:
    return (
        "Based on the reflection and current progress, create a new plan to complete the task: "
        f'"{task}"\n\n'
        f"Current progress:\n{steps_text}\n\n"
        "Create a revised step-by-step plan."
    )


def parse_plan(plan_text: str) -> AgentPlan:
    """
    Extract the numbered items (``1. ...`` or ``1) ...``, one per line) of *plan_text*.

    Steps are sequential: step *i* depends on step *i - 1*.
    """
    steps = [match.group(2).strip() for match in _PLAN_STEP_RE.finditer(plan_text)]
    dependencies = {index: [index - 1] for index in range(1, len(steps))}
    return AgentPlan(steps=steps, dependencies=dependencies)


# ---------------------------------------------------------------------------
# Planning agent
# ---------------------------------------------------------------------------
class PlanningAgent(Agent):
    """Agent that plans before executing and reflects after unsuccessful runs."""

    config: PlanningAgentConfig

    def __init__(
        self, config: PlanningAgentConfig | None = None, client: PromptClient | None = None
    ):
        super().__init__(config or PlanningAgentConfig(), client)
        self._current_plan: Optional[AgentPlan] = None
        self._reflection_count = 0
        self._planning_session: Optional[Session] = None

    @property
    def current_plan(self) -> Optional[AgentPlan]:
        return self._current_plan

    @property
    def reflection_count(self) -> int:
        return self._reflection_count

    def build_planning_system_prompt(self) -> str:
        return self.build_system_prompt() + PLANNING_CAPABILITIES

    async def run_with_planning(self, task: str) -> AgentResult:
        """
        Plan, execute and reflect on *task*.

        With ``enable_planning=False`` this is a plain :meth:`run`.  Failures of the planning
        session end the run with ``status=failed``.
        """
        if not self.config.enable_planning:
            return await self.run(task)

        self._status = TaskStatus.RUNNING
        self._steps = []
        self._stop_requested = False
        self._reflection_count = 0
        self._current_plan = None

        try:
            self._planning_session = await self.client.create_session(
                self.session_options(self.build_planning_system_prompt())
            )
            planning_prompt = self.config.planning_prompt or build_planning_prompt(task)
            self._current_plan = parse_plan(await self._planning_session.prompt(planning_prompt))
            logger.info("Plan has %d steps", len(self._current_plan.steps))
            return await self._execute_with_reflection(task)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Planning run failed: %s", exc)
            self._status = TaskStatus.FAILED
            return self._result(error=exc, iterations=len(self._steps))
        finally:
            if self._planning_session is not None:
                self.client.destroy_session(self._planning_session.session_id)
                self._planning_session = None

    async def _execute_with_reflection(self, task: str) -> AgentResult:
        result = await self.run(task)
        while (
            result.status is not TaskStatus.COMPLETED
            and self._reflection_count < self.config.max_reflections
            and not self._stop_requested
        ):
            before = self._reflection_count
            reflection = await self.reflect()
            if self._reflection_count == before:
                # Nothing to reflect on still uses up a reflection
                self._reflection_count += 1
            if self._stop_requested:
                logger.info("Planning agent stopped during reflection")
                self._status = TaskStatus.STOPPED
                final_answer = self._steps[-1].thought if self._steps else None
                return self._result(final_answer=final_answer, iterations=len(self._steps))
            logger.info(
                "Reflection %d/%d after status '%s'",
                self._reflection_count,
                self.config.max_reflections,
                result.status.value,
            )
            result = await self.run(build_continuation_prompt(reflection, task))
        return result

    async def reflect(self) -> str:
        """Ask the planning session to review the current step history."""
        if not self._steps:
            return "No steps to reflect on"
        prompt = self.config.reflection_prompt or build_reflection_prompt(
            format_steps_for_reflection(self._steps)
        )
        reflection = await self._prompt_planning(prompt)
        self._reflection_count += 1
        return reflection

    async def replan(self, task: str) -> AgentPlan:
        """Replace :attr:`current_plan` with a plan revised against the steps so far."""
        prompt = build_replan_prompt(task, format_steps_for_reflection(self._steps))
        self._current_plan = parse_plan(await self._prompt_planning(prompt))
        return self._current_plan

    async def _prompt_planning(self, prompt: str) -> str:
        """Prompt the active planning session, or a temporary one outside ``run_with_planning``."""
        if self._planning_session is not None and self._planning_session.is_active:
            return await self._planning_session.prompt(prompt)
        session = await self.client.create_session(
            self.session_options(self.build_planning_system_prompt())
        )
        try:
            return await session.prompt(prompt)
        finally:
            self.client.destroy_session(session.session_id)


async def run_agent_with_planning(
    task: str, config: PlanningAgentConfig | None = None, client: PromptClient | None = None
) -> AgentResult:
    """Run *task* on a fresh :class:`PlanningAgent`."""
    return await PlanningAgent(config, client).run_with_planning(task)
