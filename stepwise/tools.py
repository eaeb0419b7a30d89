"""Tool registry mapping tool names to async ``(params) -> str`` callables."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .exceptions import UnknownToolError
from .logging_utils import log_tool

Tool = Callable[[Dict[str, Any]], Awaitable[str]]


class ToolRegistry:
    """Host-supplied tools the executor can call by name.

    The registry does no retrying of its own; callers wrap ``invoke`` with
    the resilience layer.
    """

    def __init__(self, tools: Optional[Mapping[str, Tool]] = None) -> None:
        self._tools: Dict[str, Tool] = dict(tools or {})

    def register(self, name: str, tool: Tool) -> None:
        self._tools[name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def invoke(self, name: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Call a registered tool.

        Raises:
            UnknownToolError: No tool is registered under ``name``
        """

        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        log_tool(f"[Tools] {name}({', '.join(sorted(params or {}))})")
        result = await tool(dict(params or {}))
        return result if isinstance(result, str) else str(result)


__all__ = ["ToolRegistry", "Tool"]
