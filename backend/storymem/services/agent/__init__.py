"""Agent framework: tool-calling agent loop with Fact Store recall tools."""

from .tool import Tool, ToolParameter
from .runner import AgentRunner
from .trace_logger import AgentTraceLogger
from .recall_agent import AgentRecall, run_recall_agent

__all__ = ["Tool", "ToolParameter", "AgentRunner", "AgentTraceLogger", "AgentRecall", "run_recall_agent"]
