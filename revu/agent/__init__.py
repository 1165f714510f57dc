"""Agentic tool-calling runtime: conversation loop, tool execution, subagents."""
