"""Agent loop, tool execution and planning."""
