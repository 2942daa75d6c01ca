"""Gateway controller and the MCP stdio server that exposes it."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from toolgate import __version__
from toolgate.gateway.executor import DEFAULT_TIMEOUT_MS, CodeModeExecutor, RegistrationError
from toolgate.gateway.registry import CapabilityRegistry, ToolNotFoundError
from toolgate.gateway.router import ToolRouter
from toolgate.gateway.shaper import ResponseShaper
from toolgate.providers.base import CompletionClient
from toolgate.validation.config import FilterPolicy, GatewayConfig

logger = logging.getLogger(__name__)

SEARCH_TOOLS = "search_tools"
LIST_TOOLS = "list_tools"
TOOL_INFO = "tool_info"
CALL_TOOL_CHAIN = "call_tool_chain"

DEFAULT_SEARCH_LIMIT = 10
DEFAULT_MAX_OUTPUT_SIZE = 50000

NOT_INITIALIZED = "(gateway not initialized yet)"
OUTPUT_LIMIT_MARKER = "\n...\n[max_output_size exceeded: filter the data inside the script before returning it]"

CHAIN_DESCRIPTION = """Run a Python script against the registered tools in a single round trip.

Top-level `await` is allowed. Each provider is a global object: call its tools
as `await <provider>.<tool>(arg=value)`. Flat names such as
`await <provider>_<tool>(arg=value)` work too. Do not import anything.

## Runtime helpers
- __interfaces: interfaces of every registered tool
- __get_tool_interface(name): interface of one tool
- print(...): output is captured and returned in `logs`
- json, asyncio: available without import

## Suggested flow
1. print(__interfaces) to learn the interfaces
2. Call a tool and print(result) to see its shape
3. Reduce the data in the script and `return` only what you need
{filter_section}
## Example
```python
result = await context7.resolve_library_id(libraryName="react")
print(result)
return result
```"""

FILTER_SECTION_OPTIONAL = """
## filter_response
- false (default): return the raw result, best when more code will process it
- true: summarize with a language model, best for large results shown to the user
"""

FILTER_SECTION_FORCED = """
## Response filtering
Results are always summarized by a language model. Pass `purpose` to steer what is kept.
"""


@dataclass
class GatewayResponse:
    """Text returned to the agent for one operation."""

    text: str
    is_error: bool = False


def build_tool_definitions(policy: FilterPolicy, digest: str) -> List[types.Tool]:
    """
    Build the advertised tool surface for the current policy.

    ``filter_response`` is left out of the execution schema when the policy
    forces summarization, since the toggle would do nothing.
    """
    summary = digest or NOT_INITIALIZED

    chain_properties: Dict[str, Any] = {
        "code": {
            "type": "string",
            "description": "Python statements; call tools with await <provider>.<tool>(...)",
        },
        "timeout": {"type": "number", "description": "Timeout in milliseconds", "default": DEFAULT_TIMEOUT_MS},
        "max_output_size": {
            "type": "number",
            "description": "Maximum characters in the returned result",
            "default": DEFAULT_MAX_OUTPUT_SIZE,
        },
    }
    if not policy.force_summarize:
        chain_properties["filter_response"] = {
            "type": "boolean",
            "description": "Summarize the result with a language model (default false)",
            "default": False,
        }
    chain_properties["purpose"] = {
        "type": "string",
        "description": "What the result is needed for; guides which information a summary keeps",
    }

    filter_section = FILTER_SECTION_FORCED if policy.force_summarize else FILTER_SECTION_OPTIONAL

    return [
        types.Tool(
            name=SEARCH_TOOLS,
            description=f"Search the available tools (progressive discovery).\n{summary}",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "What you want to do"},
                    "limit": {
                        "type": "number",
                        "description": "Maximum number of tools to return",
                        "default": DEFAULT_SEARCH_LIMIT,
                    },
                },
                "required": ["query"],
            },
        ),
        types.Tool(
            name=LIST_TOOLS,
            description=f"List every registered tool with a one-line description.\n{summary}",
            inputSchema={"type": "object", "properties": {}},
        ),
        types.Tool(
            name=TOOL_INFO,
            description="Get the full call interface of one tool",
            inputSchema={
                "type": "object",
                "properties": {
                    "tool_name": {"type": "string", "description": "Tool name, e.g. provider_tool"},
                },
                "required": ["tool_name"],
            },
        ),
        types.Tool(
            name=CALL_TOOL_CHAIN,
            description=CHAIN_DESCRIPTION.format(filter_section=filter_section),
            inputSchema={
                "type": "object",
                "properties": chain_properties,
                "required": ["code"],
            },
        ),
    ]


def _json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


class GatewayController:
    """
    Dispatches the agent's operations to the router, registry and executor.

    Providers are registered lazily on the first operation. Concurrent first
    calls wait on the same lock, so registration runs exactly once.
    """

    def __init__(
        self,
        config: GatewayConfig,
        executor: Optional[CodeModeExecutor] = None,
        client: Optional[CompletionClient] = None,
    ):
        self.config = config
        self.client = client or CompletionClient(config.completion)
        self.executor = executor or CodeModeExecutor()
        self.registry = CapabilityRegistry(self.executor)
        self.shaper = ResponseShaper(config.filter, self.client)
        self.router = ToolRouter(
            self.registry,
            self.executor,
            config.routing,
            self.client,
            model=config.routing.effective_model(config.completion),
        )
        self._ready = False
        self._init_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def ensure_ready(self) -> None:
        """Register every provider and build the registry, once."""
        if self._ready:
            return
        async with self._init_lock:
            if self._ready:
                return
            for descriptor in self.config.providers:
                await self.registry.register_provider(descriptor)
            await self.registry.refresh()
            self._ready = True
            logger.info("Gateway ready.\n%s", self.registry.digest or "(no tools)")
            report = self.registry.token_savings_report()
            logger.info(
                "Advertising ~%d tokens instead of ~%d for %d tools (~%d saved)",
                report["digest_tokens"],
                report["full_schema_tokens"],
                report["tools_count"],
                report["tokens_saved"],
            )

    def tool_definitions(self) -> List[types.Tool]:
        return build_tool_definitions(self.config.filter, self.registry.digest)

    # ── Dispatch ──────────────────────────────────────────────────────────

    def _bind_operation(
        self, name: str, args: Dict[str, Any]
    ) -> Optional[Tuple[Callable[..., Awaitable[GatewayResponse]], Dict[str, Any]]]:
        """Map an operation name and raw arguments to a handler and coerced kwargs."""
        if name == SEARCH_TOOLS:
            return self.search_tools, {
                "query": str(args.get("query") or ""),
                "limit": int(args.get("limit") or DEFAULT_SEARCH_LIMIT),
            }
        if name == LIST_TOOLS:
            return self.list_tools, {}
        if name == TOOL_INFO:
            return self.tool_info, {"tool_name": str(args.get("tool_name") or "")}
        if name == CALL_TOOL_CHAIN:
            return self.call_tool_chain, {
                "code": str(args.get("code") or ""),
                "timeout": int(args.get("timeout") or DEFAULT_TIMEOUT_MS),
                "max_output_size": int(args.get("max_output_size") or DEFAULT_MAX_OUTPUT_SIZE),
                "filter_response": bool(args.get("filter_response", False)),
                "purpose": args.get("purpose") or None,
            }
        return None

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> GatewayResponse:
        """
        Route one tool call from the agent.

        Bad arguments, unknown names and registration failures become error
        responses; anything else propagates to the MCP call handler.
        """
        try:
            operation = self._bind_operation(name, arguments or {})
        except (TypeError, ValueError) as e:
            return GatewayResponse(f"Error: invalid arguments for {name}: {e}", is_error=True)

        if operation is None:
            return GatewayResponse(f"Error: Unknown tool: {name}", is_error=True)

        handler, kwargs = operation
        try:
            return await handler(**kwargs)
        except RegistrationError as e:
            logger.error("Provider registration failed: %s", e)
            return GatewayResponse(f"Error: {e}", is_error=True)

    # ── Operations ────────────────────────────────────────────────────────

    async def search_tools(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> GatewayResponse:
        if not query:
            return GatewayResponse(_json({"error": "query is required"}), is_error=True)
        await self.ensure_ready()

        records = await self.router.search(query, limit)
        payload: Dict[str, Any] = {"tools": [r.as_search_hit() for r in records]}
        if not records:
            payload["message"] = f"No tools matched '{query}'. Try list_tools or a broader query."
        return GatewayResponse(_json(payload))

    async def list_tools(self) -> GatewayResponse:
        await self.ensure_ready()
        return GatewayResponse(_json({"tools": self.registry.list_summaries()}))

    async def tool_info(self, tool_name: str) -> GatewayResponse:
        await self.ensure_ready()
        try:
            return GatewayResponse(self.registry.get_full_interface(tool_name))
        except ToolNotFoundError as e:
            return GatewayResponse(_json({"error": str(e)}), is_error=True)

    async def call_tool_chain(
        self,
        code: str,
        timeout: int = DEFAULT_TIMEOUT_MS,
        max_output_size: int = DEFAULT_MAX_OUTPUT_SIZE,
        filter_response: bool = False,
        purpose: Optional[str] = None,
    ) -> GatewayResponse:
        if not code.strip():
            return GatewayResponse(_json({"error": "code is required"}), is_error=True)
        await self.ensure_ready()

        chain = await self.executor.call_tool_chain(code, timeout)
        content = chain.envelope_json()
        wants_filter = filter_response or self.config.filter.force_summarize
        is_error = not chain.success

        if len(content) > max_output_size:
            if wants_filter and purpose:
                return GatewayResponse(await self.shaper.shape(content, purpose), is_error=is_error)
            return GatewayResponse(content[:max_output_size] + OUTPUT_LIMIT_MARKER, is_error=is_error)

        if wants_filter:
            return GatewayResponse(await self.shaper.shape(content, purpose), is_error=is_error)

        return GatewayResponse(content, is_error=is_error)

    async def close(self) -> None:
        await self.executor.close()


def create_server(controller: GatewayController) -> Server:
    """Wire the controller into an MCP low-level server."""
    server = Server("toolgate", version=__version__)

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        return controller.tool_definitions()

    @server.call_tool()
    async def call_tool(name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        response = await controller.dispatch(name, arguments)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=response.text)],
            isError=response.is_error,
        )

    return server


async def serve(controller: GatewayController, eager: bool = True) -> None:
    """
    Serve the gateway over stdio until the client disconnects.

    With ``eager`` set, providers are registered before the server starts
    accepting requests, and a RegistrationError stops startup.
    """
    try:
        if eager:
            await controller.ensure_ready()
        server = create_server(controller)
        async with stdio_server() as (read_stream, write_stream):
            logger.info("toolgate %s serving on stdio", __version__)
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await controller.close()
