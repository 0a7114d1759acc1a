"""External agent invocation."""

from .runner import AgentResult, AgentRunner

__all__ = ["AgentResult", "AgentRunner"]
