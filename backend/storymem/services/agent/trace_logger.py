"""JSON traces of recall agent runs, written only when debug is on."""

import json
import logging
import os
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _tool_usage(trace: List[Dict[str, Any]]) -> Dict[str, int]:
    usage: Counter = Counter()
    for record in trace:
        for call in record.get("tool_calls", []):
            usage[call.get("name", "?")] += 1
    return dict(usage)


class AgentTraceLogger:
    def __init__(self, agent_name: str, enabled: bool = False, logs_dir: Optional[str] = None):
        self.agent_name = agent_name
        self.enabled = enabled
        self.logs_dir = logs_dir or os.path.join("logs", "agent_traces")

    def log(self, query: str, trace: List[Dict[str, Any]], final_answer: Any) -> Optional[str]:
        """Write one run to `<agent>_trace_<ts>.json` plus a `<agent>_trace.json` copy of the latest."""
        if not self.enabled:
            return None

        document = {
            "agent": self.agent_name,
            "recordedAt": datetime.now().isoformat(),
            "rounds": len(trace),
            "toolUsage": _tool_usage(trace),
            "prompt": query,
            "trace": trace,
            "answer": final_answer,
        }
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        path = os.path.join(self.logs_dir, f"{self.agent_name}_trace_{stamp}.json")
        latest = os.path.join(self.logs_dir, f"{self.agent_name}_trace.json")
        try:
            os.makedirs(self.logs_dir, exist_ok=True)
            for target in (path, latest):
                with open(target, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2, ensure_ascii=False, default=str)
        except OSError as e:
            logger.warning(f"[{self.agent_name}] Failed to save trace: {e}")
            return None

        logger.info(f"[{self.agent_name}] Trace saved to {path} (tools: {document['toolUsage']})")
        return path
