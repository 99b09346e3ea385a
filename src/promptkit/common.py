"""Common utility functions for the project."""

from enum import Enum
from typing import Any

from promptkit.core.schema import AgentStep


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def print_step(step: AgentStep) -> None:
    """Render one agent step on the terminal: blue thought, green/red tool outcome."""
    if step.thought:
        colored_print(f"[{step.iteration}] {step.thought}", AnsiColors.BLUE)
    if step.action is None or step.observation is None:
        return
    if step.observation.success:
        colored_print(f"[{step.action.name}] {step.observation.result}", AnsiColors.GREEN)
    else:
        colored_print(f"[{step.action.name}] {step.observation.error}", AnsiColors.RED)
