"""Core agent loop over native tool calls.

The runner orchestrates: LLM call -> tool execution -> tool messages -> repeat.
A reply without tool calls is the final answer. When the round budget runs out
while the model is still calling tools, one last call without tools forces a
text answer.
"""

import logging
from typing import Any, Dict, List, Optional

from ...errors import MemoryManagerError
from ..llm.client import ToolCall
from .tool import Tool
from .trace_logger import AgentTraceLogger

logger = logging.getLogger(__name__)

# Maximum chars per tool observation to prevent context overflow
OBSERVATION_MAX_CHARS = 6000


class AgentRunner:
    """Execute a tool-calling agent loop against an LLMGateway."""

    def __init__(
        self,
        gateway,
        tools: List[Tool],
        max_rounds: int = 3,
        max_tokens: int = 800,
        agent_name: str = "agent",
        trace_logger: Optional[AgentTraceLogger] = None,
    ):
        self.gateway = gateway
        self.tools = {t.name: t for t in tools}
        self.schemas = [t.to_openai_schema() for t in tools]
        self.max_rounds = max(1, max_rounds)
        self.max_tokens = max_tokens
        self.agent_name = agent_name
        self.trace_logger = trace_logger

    async def _execute(self, call: ToolCall) -> str:
        tool = self.tools.get(call.name)
        if not tool:
            return f"未知工具: {call.name}"
        try:
            observation = await tool.func(**(call.arguments or {}))
        except TypeError as e:
            logger.warning(f"[{self.agent_name}] Bad arguments for {call.name}: {e}")
            return f"参数错误: {e}"
        except Exception as e:
            logger.error(f"[{self.agent_name}] Tool {call.name} failed: {e}")
            return f"工具执行失败: {e}"
        if len(observation) > OBSERVATION_MAX_CHARS:
            observation = observation[:OBSERVATION_MAX_CHARS] + "\n... (truncated)"
        return observation

    async def run(self, user_message: str) -> Dict[str, Any]:
        """Run the agent loop until a text answer or the round limit.

        Returns:
            {
                "answer": str,        # Final text ("" when none was produced)
                "turns": int,         # Number of LLM calls made
                "trace": list,        # Per-round trace records
                "success": bool,      # Whether every LLM call succeeded
                "error": str | None   # Error message if an LLM call failed
            }
        """
        messages: List[Dict[str, Any]] = [{"role": "user", "content": user_message}]
        trace: List[Dict[str, Any]] = []
        answer = ""
        calls = 0

        for round_idx in range(self.max_rounds):
            logger.info(f"[{self.agent_name}] Round {round_idx + 1}/{self.max_rounds}")
            try:
                calls += 1
                response = await self.gateway.complete_chat(messages, self.schemas, self.max_tokens)
            except MemoryManagerError as e:
                error = f"LLM call failed (round {round_idx + 1}): {e}"
                logger.warning(f"[{self.agent_name}] {error}")
                return self._finish(user_message, answer, calls, trace, False, error)

            # No tool calls: the content is the answer
            if not response.tool_calls:
                answer = (response.content or "").strip()
                trace.append({"round": round_idx + 1, "answer": answer})
                logger.info(f"[{self.agent_name}] Finished: {answer[:150]}")
                break

            # Some backends reject an assistant message with empty content
            assistant = dict(response.raw_message)
            if not assistant.get("content"):
                assistant.pop("content", None)
            messages.append(assistant)

            record: Dict[str, Any] = {"round": round_idx + 1, "tool_calls": []}
            for call in response.tool_calls:
                observation = await self._execute(call)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": observation})
                record["tool_calls"].append({
                    "name": call.name,
                    "arguments": call.arguments,
                    "observation": observation,
                })
                logger.info(
                    f"[{self.agent_name}]   [Round {round_idx + 1}] {call.name}"
                    f"({call.raw_arguments[:60]}) -> {observation[:100]}"
                )
            trace.append(record)

            # Last round: force text output (no tools)
            if round_idx == self.max_rounds - 1:
                try:
                    calls += 1
                    final = await self.gateway.complete_chat(messages, None, self.max_tokens)
                except MemoryManagerError as e:
                    error = f"Final round failed: {e}"
                    logger.warning(f"[{self.agent_name}] {error}")
                    return self._finish(user_message, answer, calls, trace, False, error)
                answer = (final.content or "").strip()
                trace.append({"round": "final", "answer": answer})
                logger.info(f"[{self.agent_name}] Forced answer: {answer[:150]}")

        return self._finish(user_message, answer, calls, trace, True, None)

    def _finish(self, query, answer, turns, trace, success, error) -> Dict[str, Any]:
        if self.trace_logger:
            self.trace_logger.log(query, trace, answer if success else f"[ERROR] {error}")
        return {
            "answer": answer,
            "turns": turns,
            "trace": trace,
            "success": success,
            "error": error,
        }
