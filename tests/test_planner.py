"""Tests for the planning / reflection super-loop."""

import asyncio

from promptkit.agent.planner import (
    PLANNING_CAPABILITIES,
    PlanningAgent,
    PlanningAgentConfig,
    build_continuation_prompt,
    build_planning_prompt,
    parse_plan,
    run_agent_with_planning,
)
from promptkit.core.backends import ScriptedBackend
from promptkit.core.client import PromptClient
from promptkit.core.errors import SessionError
from promptkit.core.schema import TaskStatus

PLAN = "Here is the plan:\n1. Look up the data\n2) Summarise it\n3. Report back\nGood luck!"
TASK = "Summarise the report"


def _agent(*responses, **config):
    backend = ScriptedBackend(responses)
    client = PromptClient(backend)
    return PlanningAgent(PlanningAgentConfig(**config), client), backend, client


def test_parse_plan() -> None:
    """Numbered lines become steps with sequential dependencies."""

    plan = parse_plan(PLAN)
    assert plan.steps == ["Look up the data", "Summarise it", "Report back"]
    assert plan.dependencies == {1: [0], 2: [1]}

    assert parse_plan("no numbered items here").steps == []
    assert parse_plan("no numbered items here").dependencies == {}


def test_plan_then_complete_without_reflection() -> None:
    """A run that completes straight away never reflects."""

    agent, backend, client = _agent(PLAN, "Summary written. Task complete.")
    result = asyncio.run(agent.run_with_planning(TASK))

    assert result.status is TaskStatus.COMPLETED
    assert agent.current_plan.steps[0] == "Look up the data"
    assert agent.reflection_count == 0
    assert backend.prompts == [build_planning_prompt(TASK), TASK]
    assert backend.conversations[0][0].content.endswith(PLANNING_CAPABILITIES)
    assert client.active_sessions == []


def test_reflects_after_failed_run() -> None:
    """A failed run triggers a reflection and a re-run with the continuation prompt."""

    agent, backend, client = _agent(
        PLAN,
        "Reading the report.",
        RuntimeError("connection dropped"),
        "Retry the summary step.",
        "Summary written. Task complete.",
        max_iterations=3,
        max_reflections=2,
    )
    result = asyncio.run(agent.run_with_planning(TASK))

    assert result.status is TaskStatus.COMPLETED
    assert agent.reflection_count == 1
    assert backend.prompts[3].startswith("Review the steps taken so far and provide:")
    assert "Step 1:\n  Thought: Reading the report." in backend.prompts[3]
    assert backend.prompts[4] == build_continuation_prompt("Retry the summary step.", TASK)
    assert client.active_sessions == []


def test_reflection_budget_is_respected() -> None:
    """With max_reflections=0 a failed run is returned as is."""

    agent, backend, _ = _agent(
        PLAN, "Reading.", RuntimeError("down"), max_iterations=3, max_reflections=0
    )
    result = asyncio.run(agent.run_with_planning(TASK))

    assert result.status is TaskStatus.FAILED
    assert agent.reflection_count == 0
    assert len(backend.prompts) == 3


def test_stop_during_reflection_skips_continuation() -> None:
    """stop() arriving while the reflection is pending ends the run as stopped."""

    holder = {}

    def reflect_and_stop(prompt):
        holder["agent"].stop()
        return "Try again."

    agent, backend, client = _agent(
        PLAN, "Reading.", RuntimeError("down"), reflect_and_stop, max_iterations=3
    )
    holder["agent"] = agent
    result = asyncio.run(agent.run_with_planning(TASK))

    assert result.status is TaskStatus.STOPPED
    assert agent.status is TaskStatus.STOPPED
    assert agent.reflection_count == 1
    # plan, two run prompts, the reflection; no continuation run
    assert len(backend.prompts) == 4
    assert client.active_sessions == []


def test_reflection_loop_terminates_without_steps() -> None:
    """Runs that fail before any step still consume the reflection budget."""

    agent, backend, _ = _agent(
        PLAN, RuntimeError("down"), RuntimeError("down"), RuntimeError("down"), max_reflections=2
    )
    result = asyncio.run(agent.run_with_planning(TASK))

    assert result.status is TaskStatus.FAILED
    assert agent.reflection_count == 2
    # plan + three runs, no reflection prompts
    assert len(backend.prompts) == 4


def test_planning_failure_fails_the_run() -> None:
    """Errors from the planning session end with a failed result."""

    agent, _, client = _agent(RuntimeError("planner offline"))
    result = asyncio.run(agent.run_with_planning(TASK))

    assert result.status is TaskStatus.FAILED
    assert isinstance(result.error, SessionError)
    assert agent.current_plan is None
    assert client.active_sessions == []


def test_planning_disabled_runs_plainly() -> None:
    """enable_planning=False skips the planning phase."""

    agent, backend, _ = _agent("All done.", enable_planning=False)
    result = asyncio.run(agent.run_with_planning(TASK))

    assert result.status is TaskStatus.COMPLETED
    assert backend.prompts == [TASK]
    assert agent.current_plan is None


def test_reflect_and_replan_outside_a_run() -> None:
    """Manual reflection needs steps; replanning uses a temporary session."""

    agent, backend, client = _agent("1. Gather\n2. Write")
    assert asyncio.run(agent.reflect()) == "No steps to reflect on"
    assert backend.prompts == []

    plan = asyncio.run(agent.replan(TASK))
    assert plan.steps == ["Gather", "Write"]
    assert agent.current_plan == plan
    assert backend.prompts[0].startswith("Based on the reflection and current progress")
    assert f'"{TASK}"' in backend.prompts[0]
    assert client.active_sessions == []


def test_run_agent_with_planning_helper() -> None:
    """The module-level helper builds a fresh agent."""

    client = PromptClient(ScriptedBackend([PLAN, "Final answer: ok"]))
    result = asyncio.run(run_agent_with_planning(TASK, client=client))
    assert result.status is TaskStatus.COMPLETED
    assert result.final_answer == "Final answer: ok"
