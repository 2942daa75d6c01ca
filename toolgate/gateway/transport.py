"""MCP provider communication over stdio subprocesses or streamable HTTP."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from toolgate import __version__
from toolgate.validation.config import ProviderDescriptor

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
DEFAULT_REQUEST_TIMEOUT = 120.0

# One JSON-RPC message per line; tool listings and results can far exceed
# asyncio's 64 KiB default line limit.
STDIO_READ_LIMIT = 16 * 1024 * 1024


class MCPTransportError(Exception):
    """Raised when MCP transport communication fails."""


class MCPTransport:
    """
    Base JSON-RPC client for one MCP provider.

    Subclasses implement ``start``, ``stop``, ``_request`` and ``notify``;
    the MCP methods on top of them are shared.
    """

    def __init__(self, name: str, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.name = name
        self.request_timeout = request_timeout
        self._request_id = 0

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    @property
    def is_running(self) -> bool:
        raise NotImplementedError

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    def _next_request(self, method: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        self._request_id += 1
        request: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
        }
        if params:
            request["params"] = params
        return request

    async def _request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a JSON-RPC request and return the result."""
        if not self.is_running:
            await self.start()

        response = await self._request(self._next_request(method, params))

        if "error" in response:
            err = response["error"] or {}
            raise MCPTransportError(f"MCP error {err.get('code')}: {err.get('message')}")

        return response.get("result") or {}

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        result = await self.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "toolgate", "version": __version__},
        })
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch the full tool list, following pagination cursors."""
        tools: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            result = await self.send("tools/list", {"cursor": cursor} if cursor else None)
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call a tool on the MCP server."""
        return await self.send("tools/call", {"name": name, "arguments": arguments or {}})


class StdioTransport(MCPTransport):
    """
    Talk to an MCP server over a child process's stdin/stdout.

    Requests are serialized with a lock: one request is written and its
    response read before the next request goes out.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        read_limit: int = STDIO_READ_LIMIT,
    ):
        super().__init__(name, request_timeout)
        self.command = command
        self.args = args or []
        self.env = env or {}
        self.read_limit = read_limit
        self._process: Optional[asyncio.subprocess.Process] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Spawn the MCP server subprocess."""
        if self.is_running:
            return

        merged_env = {**os.environ, **self.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=self.read_limit,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise MCPTransportError(
                f"MCP server command not found or not executable: {self.command} ({exc})"
            ) from exc
        logger.info("Started provider %s: %s %s (pid=%s)", self.name, self.command, " ".join(self.args), self._process.pid)

    async def stop(self) -> None:
        """Terminate the MCP server subprocess."""
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            process.kill()
        except ProcessLookupError:
            pass

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _write(self, message: Dict[str, Any]) -> None:
        assert self._process is not None and self._process.stdin is not None
        self._process.stdin.write((json.dumps(message) + "\n").encode())
        await self._process.stdin.drain()

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        async with self._lock:
            try:
                await self._write(message)
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise MCPTransportError(f"MCP transport error: {exc}") from exc

    async def _request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            try:
                await self._write(request)
                return await asyncio.wait_for(self._read_response(request["id"]), self.request_timeout)
            except asyncio.TimeoutError as exc:
                raise MCPTransportError(
                    f"MCP server '{self.name}' did not answer {request['method']} within {self.request_timeout}s"
                ) from exc
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise MCPTransportError(f"MCP transport error: {exc}") from exc
            except (ValueError, asyncio.LimitOverrunError) as exc:
                raise MCPTransportError(
                    f"MCP server '{self.name}' sent a message larger than {self.read_limit} bytes"
                ) from exc

    async def _read_response(self, request_id: int) -> Dict[str, Any]:
        assert self._process is not None and self._process.stdout is not None
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                raise MCPTransportError("MCP server closed connection (empty response)")
            try:
                message = json.loads(raw.decode())
            except ValueError:
                logger.debug("Ignoring non-JSON output from %s: %r", self.name, raw[:200])
                continue
            if not isinstance(message, dict):
                continue

            if message.get("id") == request_id and "method" not in message:
                return message

            # Server-initiated request: we expose no client capabilities.
            if "method" in message and "id" in message:
                await self._write({
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "error": {"code": -32601, "message": f"Method not found: {message['method']}"},
                })


class HttpTransport(MCPTransport):
    """Talk to a remote MCP server over streamable HTTP (JSON or SSE replies)."""

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(name, request_timeout)
        self.url = url
        self.headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            headers={
                **self.headers,
                "Accept": "application/json, text/event-stream",
            },
            timeout=self.request_timeout,
            transport=self._transport,
        )

    async def stop(self) -> None:
        client = self._client
        self._client = None
        self._session_id = None
        if client is not None:
            await client.aclose()

    @property
    def is_running(self) -> bool:
        return self._client is not None

    async def _post(self, message: Dict[str, Any]) -> httpx.Response:
        assert self._client is not None
        headers = {"Mcp-Session-Id": self._session_id} if self._session_id else {}
        try:
            response = await self._client.post(self.url, json=message, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MCPTransportError(
                f"MCP server '{self.name}' returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise MCPTransportError(f"MCP transport error for '{self.name}': {exc}") from exc

        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id
        return response

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._post(message)

    async def _request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._post(request)
        content_type = response.headers.get("content-type", "")

        if content_type.startswith("text/event-stream"):
            for message in _parse_sse(response.text):
                if message.get("id") == request["id"] and "method" not in message:
                    return message
            raise MCPTransportError(f"MCP server '{self.name}' sent no response for {request['method']}")

        try:
            message = response.json()
        except ValueError as exc:
            raise MCPTransportError(f"MCP server '{self.name}' returned invalid JSON") from exc
        if isinstance(message, list):
            message = next((m for m in message if m.get("id") == request["id"]), {})
        return message


def _parse_sse(body: str) -> List[Dict[str, Any]]:
    """Extract JSON-RPC messages from a buffered Server-Sent Events body."""
    messages: List[Dict[str, Any]] = []
    data_lines: List[str] = []

    for line in body.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line and data_lines:
            try:
                message = json.loads("\n".join(data_lines))
            except ValueError:
                message = None
            if isinstance(message, dict):
                messages.append(message)
            data_lines = []

    return messages


def create_transport(descriptor: ProviderDescriptor) -> MCPTransport:
    """Build the transport matching a provider's declared connection."""
    if descriptor.is_local:
        return StdioTransport(
            name=descriptor.name,
            command=descriptor.command or "",
            args=list(descriptor.args),
            env=dict(descriptor.env),
        )
    return HttpTransport(
        name=descriptor.name,
        url=descriptor.url or "",
        headers=descriptor.auth_headers(),
    )
