import threading
from typing import Any, Dict, Iterable, List, Optional

from sandbox_engine.logger import logger
from sandbox_engine.tool.base import CATEGORY_METADATA, ToolCategory, ToolDefinition


class ToolRegistry:
    """Thread-safe catalog of tool definitions keyed by id.

    Read-mostly after startup. Re-registering an id replaces the entry.
    """

    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}
        self._lock = threading.RLock()

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool definition.

        Args:
            tool: Tool definition to add or replace
        """
        if not tool.id:
            raise ValueError("Tool id must not be empty")
        with self._lock:
            if tool.id in self._tools:
                logger.warning(f"Replacing registered tool: {tool.id}")
            self._tools[tool.id] = tool
        logger.info(f"Registered tool: {tool.id} ({tool.metadata.category.value})")

    def register_tools(self, tools: Iterable[ToolDefinition]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, tool_id: str) -> bool:
        with self._lock:
            removed = self._tools.pop(tool_id, None)
        if removed is not None:
            logger.info(f"Unregistered tool: {tool_id}")
        return removed is not None

    def get(self, tool_id: str) -> Optional[ToolDefinition]:
        with self._lock:
            return self._tools.get(tool_id)

    def get_all(self) -> List[ToolDefinition]:
        with self._lock:
            return list(self._tools.values())

    def is_registered(self, tool_id: str) -> bool:
        with self._lock:
            return tool_id in self._tools

    def tool_ids(self) -> List[str]:
        with self._lock:
            return list(self._tools.keys())

    def by_category(self, *categories: ToolCategory) -> List[ToolDefinition]:
        """Tools in any of the given categories, deprecated ones last."""
        wanted = set(categories)
        with self._lock:
            tools = [t for t in self._tools.values() if t.metadata.category in wanted]
        return sorted(tools, key=lambda t: t.metadata.deprecated)

    def to_params(
        self,
        categories: Optional[Iterable[ToolCategory]] = None,
        include_deprecated: bool = False,
    ) -> List[Dict]:
        """Function-calling schemas, optionally restricted to categories."""
        tools = self.by_category(*categories) if categories is not None else self.get_all()
        return [
            tool.to_param()
            for tool in tools
            if include_deprecated or not tool.metadata.deprecated
        ]

    def category_summary(self) -> List[Dict[str, Any]]:
        with self._lock:
            counts: Dict[ToolCategory, int] = {}
            for tool in self._tools.values():
                counts[tool.metadata.category] = counts.get(tool.metadata.category, 0) + 1
        summary = [
            {
                "category": category.value,
                "tool_count": count,
                **CATEGORY_METADATA.get(category, {}),
            }
            for category, count in counts.items()
        ]
        return sorted(summary, key=lambda item: item.get("priority", 99))

    def clear(self) -> None:
        with self._lock:
            self._tools.clear()
        logger.debug("Cleared tool registry")

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, tool_id: str) -> bool:
        return self.is_registered(tool_id)
