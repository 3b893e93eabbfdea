"""Tool definition schema for the agent framework.

Tools are the bridge between the agent's reasoning and the Fact Store. The
LLM never sees Python code; it only sees the function schema rendered by
to_openai_schema().
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Dict, List, Optional

_JSON_TYPES = {
    "string": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
}


@dataclass
class ToolParameter:
    """A single parameter that a tool accepts."""
    name: str
    type: str  # "string", "int", ...
    description: str
    required: bool = True
    default: Any = None
    enum: Optional[List[str]] = None


@dataclass
class Tool:
    """An agent tool: a named async function with a schema the LLM can read."""
    name: str
    description: str
    parameters: List[ToolParameter]
    func: Callable[..., Coroutine[Any, Any, str]]  # async (kwargs) -> str

    def to_openai_schema(self) -> Dict[str, Any]:
        """Render this tool in the OpenAI function-calling format."""
        properties: Dict[str, Any] = {}
        for p in self.parameters:
            prop: Dict[str, Any] = {
                "type": _JSON_TYPES.get(p.type, "string"),
                "description": p.description,
            }
            if p.enum:
                prop["enum"] = list(p.enum)
            properties[p.name] = prop
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }
