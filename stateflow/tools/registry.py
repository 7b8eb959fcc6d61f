"""
Tool Registry.

Tools are plain Python functions that nodes may call, either directly or
through tool-call records of the form ``{"id", "name", "arguments"}``
produced by an agent node. The engine itself never calls tools.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import inspect
import logging


logger = logging.getLogger(__name__)


@dataclass
class Tool:
    """
    A registered tool.

    Attributes:
        name: Unique identifier for the tool
        func: The callable function
        description: Human-readable description
        parameters: Parameter name -> annotation
    """
    name: str
    func: Callable
    description: str = ""
    parameters: Dict[str, str] = field(default_factory=dict)

    def __call__(self, *args, **kwargs) -> Any:
        """Call the tool function."""
        return self.func(*args, **kwargs)

    def invoke(self, arguments: Dict[str, Any]) -> Any:
        """Call the tool with keyword arguments, ignoring unknown keys."""
        accepted = {k: v for k, v in arguments.items() if k in self.parameters}
        return self.func(**accepted)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize tool metadata."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def _describe_parameters(func: Callable) -> Dict[str, str]:
    params = {}
    for param_name, param in inspect.signature(func).parameters.items():
        if param_name in ("self", "cls"):
            continue
        if param.annotation is inspect.Parameter.empty:
            params[param_name] = "Any"
        else:
            params[param_name] = getattr(param.annotation, "__name__", str(param.annotation))
    return params


class ToolRegistry:
    """
    Registry for tools.

    Usage:
        registry = ToolRegistry()

        @registry.register("shout")
        def shout(text: str) -> dict:
            return {"text": text.upper()}

        registry.execute_call({"id": "1", "name": "shout", "arguments": {"text": "hi"}})
    """

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(
        self,
        name: Optional[str] = None,
        description: str = "",
    ) -> Callable:
        """Decorator to register a function as a tool."""
        def decorator(func: Callable) -> Callable:
            self.add(func, name, description)
            return func

        return decorator

    def add(self, func: Callable, name: Optional[str] = None, description: str = "") -> Tool:
        """Directly add a function as a tool (non-decorator version)."""
        tool = Tool(
            name=name or func.__name__,
            func=func,
            description=(description or func.__doc__ or "").strip(),
            parameters=_describe_parameters(func),
        )
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")
        return tool

    def get(self, name: str) -> Optional[Tool]:
        """Get a tool by name."""
        return self._tools.get(name)

    def call(self, name: str, **kwargs) -> Any:
        """
        Call a tool by name.

        Raises:
            KeyError: If tool not found
        """
        tool = self.get(name)
        if not tool:
            raise KeyError(f"Tool '{name}' not found in registry")
        return tool.invoke(kwargs)

    def execute_call(self, call: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute a tool-call record and return a ``tool`` message.

        Tool failures are reported in the message content so the calling
        agent can react to them; an unknown tool name raises KeyError.
        """
        name = call["name"]
        tool = self.get(name)
        if tool is None:
            raise KeyError(f"Tool '{name}' not found in registry")
        try:
            content = tool.invoke(call.get("arguments") or {})
            status = "ok"
        except (ValueError, TypeError, ZeroDivisionError) as e:
            logger.warning(f"Tool '{name}' failed: {e}")
            content = f"error: {e}"
            status = "error"
        return {
            "role": "tool",
            "tool_call_id": call.get("id"),
            "name": name,
            "content": content,
            "status": status,
        }

    def list_tools(self) -> List[Dict[str, Any]]:
        """List all registered tools with their metadata."""
        return [tool.to_dict() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())


# Global tool registry instance
tool_registry = ToolRegistry()


def register_tool(name: Optional[str] = None, description: str = "") -> Callable:
    """Convenience decorator to register a tool in the global registry."""
    return tool_registry.register(name, description)


def get_tool(name: str) -> Optional[Tool]:
    """Get a tool from the global registry."""
    return tool_registry.get(name)
