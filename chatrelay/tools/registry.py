"""
Tool registry: central dispatch for all tools.
config.yaml decides which tools are enabled; new tools are added here and
in config.yaml. Nothing else changes.

ToolExecutor is the single entry point the invoker uses to run a tool.
An unknown tool name is fatal for the turn; a tool that raises is not:
its error goes back to the model as a result so it can explain itself.
"""

import logging
import time

from chatrelay.errors import UnknownToolError
from chatrelay.events import ToolResult
from chatrelay.tools.base import ExecutionContext, tool_schema
from chatrelay.tools.documents import CreateDocumentTool
from chatrelay.tools.search_products import SearchProductsTool
from chatrelay.tools.weather import WeatherTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Maps tool name -> implementation."""

    def __init__(self, tools: list | None = None):
        self.tools: dict[str, object] = {}
        for tool in tools or []:
            self.register(tool)

    @classmethod
    def from_config(
        cls,
        tools_cfg: dict,
        product_index=None,
        backend=None,
        store=None,
        artifact_model: str = "",
    ) -> "ToolRegistry":
        registry = cls()

        # --- Product search (needs the index) ---
        sp_cfg = tools_cfg.get("search_products", {})
        if sp_cfg.get("enabled", True) and product_index is not None:
            registry.register(SearchProductsTool(
                product_index,
                max_results=sp_cfg.get("max_results", 5),
            ))

        # --- Weather ---
        w_cfg = tools_cfg.get("get_weather", {})
        if w_cfg.get("enabled", True):
            registry.register(WeatherTool(timeout=w_cfg.get("timeout", 10)))

        # --- Documents (needs a backend to draft with and a store to keep them) ---
        d_cfg = tools_cfg.get("create_document", {})
        if d_cfg.get("enabled", True) and backend is not None and store is not None:
            registry.register(CreateDocumentTool(backend, artifact_model, store))

        logger.info("Tool registry loaded: %s", registry.list_tools())
        return registry

    def register(self, tool):
        self.tools[tool.name] = tool

    def get(self, name: str):
        """Get a tool by name, or None if not registered."""
        return self.tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self.tools.keys())

    def schemas(self, names: list[str] | None = None) -> list[dict]:
        """Function-calling schemas for the given (or all) tools."""
        selected = self.list_tools() if names is None else [n for n in names if n in self.tools]
        return [tool_schema(self.tools[n]) for n in selected]


class ToolExecutor:
    """Runs a requested tool call and wraps the outcome as a ToolResult."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute(
        self,
        tool_name: str,
        arguments: dict,
        context: ExecutionContext,
        tool_call_id: str = "",
    ) -> ToolResult:
        tool = self.registry.get(tool_name)
        if tool is None:
            logger.warning("Tool '%s' not found in registry", tool_name)
            raise UnknownToolError(tool_name, self.registry.list_tools())

        start = time.monotonic()
        try:
            result = await tool.execute(arguments, context)
        except Exception as e:
            logger.warning("Tool '%s' failed: %s", tool_name, e)
            return ToolResult(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                result={"error": f"Error running {tool_name}: {e}"},
                is_error=True,
            )
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug("Tool '%s' finished in %.0fms", tool_name, elapsed_ms)
        return ToolResult(tool_call_id=tool_call_id, tool_name=tool_name, result=result)
