"""Code-mode executor: registers providers, searches tools, runs caller scripts."""

from __future__ import annotations

import ast
import asyncio
import builtins
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from toolgate.gateway.schema import ChainResult, ToolDef, ToolRecord, normalize_name
from toolgate.gateway.transport import MCPTransport, MCPTransportError, create_transport
from toolgate.validation.config import ProviderDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000

_CHAIN_TEMPLATE = "async def __toolgate_chain__():\n    pass\n"

_STOP_WORDS = {
    "the", "and", "for", "that", "this", "with", "from", "have", "has",
    "how", "does", "what", "where", "when", "why", "can", "which",
    "tool", "tools", "please", "want", "need", "use", "get",
}


class RegistrationError(Exception):
    """Raised when a provider cannot be started, reached, or listed."""


class ToolCallError(Exception):
    """Raised inside a script when a tool call fails."""


def _split_identifiers(text: str) -> Set[str]:
    """Split text into words, also breaking apart snake_case and kebab-case."""
    tokens = re.findall(r"[a-z0-9_\-]{2,}", text.lower())
    words: Set[str] = set()
    for token in tokens:
        words.add(token)
        for part in re.split(r"[_\-]", token):
            if len(part) >= 2:
                words.add(part)
    return words


def _extract_output(raw: Dict[str, Any]) -> Any:
    """Turn an MCP ``tools/call`` result into a script-friendly value."""
    if raw.get("structuredContent") is not None:
        return raw["structuredContent"]

    texts: List[str] = []
    for part in raw.get("content") or []:
        if isinstance(part, dict):
            texts.append(part.get("text") or json.dumps(part))
        else:
            texts.append(str(part))

    if len(texts) == 1:
        try:
            return json.loads(texts[0])
        except ValueError:
            return texts[0]
    return "\n".join(texts)


def _format_log_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return repr(value)


class ProviderNamespace:
    """Attribute access to one provider's tools inside a script."""

    def __init__(self, provider: str, functions: Dict[str, Callable]):
        self._provider = provider
        self._functions = functions

    def __getattr__(self, item: str) -> Callable:
        try:
            return self._functions[normalize_name(item)]
        except KeyError:
            available = ", ".join(sorted(self._functions)) or "(none)"
            raise AttributeError(f"Provider '{self._provider}' has no tool '{item}'. Available: {available}")

    def __dir__(self) -> List[str]:
        return sorted(self._functions)

    def __repr__(self) -> str:
        return f"<tools of {self._provider}: {', '.join(sorted(self._functions))}>"


class CodeModeExecutor:
    """
    Executes caller scripts against the tools of registered MCP providers.

    Each provider's tools are exposed to the script both as attributes of a
    namespace object named after the provider (``await docs.search(q="x")``)
    and as flat functions (``await docs_search(q="x")``). ``print`` output is
    captured into the result's logs; the script's ``return`` value becomes
    the result. Scripts run in-process and are not sandboxed.
    """

    def __init__(self, transport_factory: Callable[[ProviderDescriptor], MCPTransport] = create_transport):
        self._transport_factory = transport_factory
        self._transports: Dict[str, MCPTransport] = {}
        self._tools: Dict[str, List[ToolDef]] = {}

    @property
    def providers(self) -> List[str]:
        return list(self._transports)

    # ── Registration ──────────────────────────────────────────────────────

    async def register_provider(self, descriptor: ProviderDescriptor) -> List[ToolDef]:
        """
        Connect to a provider and record its tools. Idempotent per name.

        Raises:
            RegistrationError: If the provider cannot be started or listed.
        """
        if descriptor.name in self._transports:
            return self._tools[descriptor.name]

        transport = self._transport_factory(descriptor)
        try:
            await transport.start()
            await transport.initialize()
            raw_tools = await transport.list_tools()
        except (MCPTransportError, OSError) as exc:
            await transport.stop()
            raise RegistrationError(f"Failed to register provider '{descriptor.name}': {exc}") from exc

        tools = [ToolDef.from_mcp(descriptor.name, raw) for raw in raw_tools if raw.get("name")]
        self._transports[descriptor.name] = transport
        self._tools[descriptor.name] = tools
        logger.info("Registered provider %s with %d tools", descriptor.name, len(tools))
        return tools

    async def list_tools(self) -> List[ToolDef]:
        """Return all tools across all providers."""
        tools: List[ToolDef] = []
        for provider_tools in self._tools.values():
            tools.extend(provider_tools)
        return tools

    # ── Lexical search ────────────────────────────────────────────────────

    async def search_tools(self, query: str, limit: int = 10) -> List[ToolDef]:
        """Rank tools by keyword overlap with the query."""
        tools = await self.list_tools()
        query_words = _split_identifiers(query) - _STOP_WORDS
        if not query_words:
            return tools[:limit]

        scored: List[Tuple[ToolDef, int]] = []
        for tool in tools:
            name_overlap = len(query_words & _split_identifiers(tool.raw_name))
            desc_overlap = len(query_words & _split_identifiers(tool.description))
            score = desc_overlap + name_overlap * 3
            if score > 0:
                scored.append((tool, score))

        scored.sort(key=lambda x: x[1], reverse=True)
        return [tool for tool, _score in scored[:limit]]

    # ── Tool calls ────────────────────────────────────────────────────────

    async def call_tool(self, provider: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Call one tool and return its output (parsed JSON when possible)."""
        transport = self._transports.get(provider)
        if transport is None:
            raise ToolCallError(f"Provider '{provider}' is not registered")

        try:
            raw = await transport.call_tool(tool_name, arguments or {})
        except MCPTransportError as exc:
            raise ToolCallError(f"{provider}.{tool_name} failed: {exc}") from exc

        output = _extract_output(raw)
        if raw.get("isError"):
            raise ToolCallError(f"{provider}.{tool_name} returned an error: {output}")
        return output

    def _bind(self, tool: ToolDef) -> Callable:
        async def call(*args: Any, **kwargs: Any) -> Any:
            arguments: Dict[str, Any] = {}
            if args:
                if len(args) != 1 or not isinstance(args[0], dict):
                    raise TypeError(f"{tool.qualified_name}() takes keyword arguments or a single dict")
                arguments.update(args[0])
            arguments.update(kwargs)
            return await self.call_tool(tool.provider, tool.name, arguments)

        call.__name__ = tool.qualified_name
        call.__doc__ = tool.description
        return call

    # ── Script execution ──────────────────────────────────────────────────

    def _build_namespace(self, logs: List[str]) -> Dict[str, Any]:
        def captured_print(*args: Any, sep: str = " ", end: str = "\n", **_kwargs: Any) -> None:
            logs.append(sep.join(_format_log_value(a) for a in args))

        records = {
            tool.qualified_name: ToolRecord.from_tool(tool)
            for provider_tools in self._tools.values()
            for tool in provider_tools
        }

        def get_tool_interface(name: str) -> Optional[str]:
            record = records.get(normalize_name(name))
            return record.interface() if record else None

        namespace: Dict[str, Any] = {
            "__builtins__": builtins,
            "__name__": "__toolgate_chain__",
            "print": captured_print,
            "json": json,
            "asyncio": asyncio,
            "__interfaces": "\n\n".join(r.interface() for r in records.values()),
            "__get_tool_interface": get_tool_interface,
        }

        for provider, tools in self._tools.items():
            functions = {normalize_name(tool.name): self._bind(tool) for tool in tools}
            namespace[normalize_name(provider)] = ProviderNamespace(provider, functions)
            for tool in tools:
                namespace[tool.qualified_name] = functions[normalize_name(tool.name)]

        return namespace

    @staticmethod
    def _compile(code: str, namespace: Dict[str, Any]) -> Callable:
        """Wrap the script's statements in an async function body."""
        body = ast.parse(code, filename="<chain>", mode="exec").body
        tree = ast.parse(_CHAIN_TEMPLATE)
        tree.body[0].body = body or [ast.Pass()]
        ast.fix_missing_locations(tree)
        exec(compile(tree, "<chain>", "exec"), namespace)
        return namespace["__toolgate_chain__"]

    async def call_tool_chain(self, code: str, timeout_ms: Optional[int] = None) -> ChainResult:
        """
        Run a caller script with every registered tool in scope.

        Parameters
        ----------
        code : Python statements; ``await`` is allowed at top level and the
            value of a top-level ``return`` becomes the result.
        timeout_ms : wall-clock limit in milliseconds (default 30000)
        """
        timeout_ms = timeout_ms or DEFAULT_TIMEOUT_MS
        logs: List[str] = []
        namespace = self._build_namespace(logs)

        try:
            chain = self._compile(code, namespace)
        except SyntaxError as exc:
            return ChainResult(success=False, logs=logs, error=f"SyntaxError: {exc}")

        try:
            result = await asyncio.wait_for(chain(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return ChainResult(success=False, logs=logs, error=f"Script timed out after {timeout_ms} ms")
        except Exception as exc:
            logger.debug("Script raised", exc_info=True)
            return ChainResult(success=False, logs=logs, error=f"{type(exc).__name__}: {exc}")

        return ChainResult(success=True, result=result, logs=logs)

    # ── Cleanup ───────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop all provider connections."""
        for transport in self._transports.values():
            await transport.stop()
        self._transports.clear()
        self._tools.clear()
