"""revu -- agentic code review runtime."""

__version__ = "0.1.0"
