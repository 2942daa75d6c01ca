"""Shared fakes for gateway tests."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from toolgate.gateway.executor import CodeModeExecutor
from toolgate.gateway.transport import MCPTransport, MCPTransportError
from toolgate.providers.base import CompletionClient
from toolgate.validation.config import CompletionSettings, ProviderDescriptor


def text_result(value: Any, is_error: bool = False) -> Dict[str, Any]:
    text = value if isinstance(value, str) else json.dumps(value)
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


class FakeTransport(MCPTransport):
    """In-memory MCP provider."""

    def __init__(
        self,
        name: str,
        tools: List[Dict[str, Any]],
        handlers: Optional[Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]]] = None,
        fail: bool = False,
        init_delay: float = 0.0,
    ):
        super().__init__(name)
        self.tools = tools
        self.handlers = handlers or {}
        self.fail = fail
        self.init_delay = init_delay
        self.calls: List[tuple] = []
        self.starts = 0
        self.running = False

    async def start(self) -> None:
        if self.fail:
            raise MCPTransportError("connection refused")
        self.starts += 1
        self.running = True

    async def stop(self) -> None:
        self.running = False

    @property
    def is_running(self) -> bool:
        return self.running

    async def notify(self, method, params=None) -> None:
        return None

    async def _request(self, request):
        method = request["method"]
        params = request.get("params") or {}
        if method == "initialize":
            await asyncio.sleep(self.init_delay)
            return {"id": request["id"], "result": {"serverInfo": {"name": self.name}}}
        if method == "tools/list":
            return {"id": request["id"], "result": {"tools": self.tools}}
        if method == "tools/call":
            self.calls.append((params["name"], params.get("arguments", {})))
            handler = self.handlers.get(params["name"])
            if handler is None:
                return {"id": request["id"], "error": {"code": -32602, "message": "unknown tool"}}
            return {"id": request["id"], "result": handler(params.get("arguments", {}))}
        return {"id": request["id"], "error": {"code": -32601, "message": "not found"}}


DOCS_TOOLS = [
    {
        "name": "resolve-library-id",
        "description": "Resolve a package name to a library id.\nMore details here.",
        "inputSchema": {
            "type": "object",
            "properties": {"libraryName": {"type": "string", "description": "Package name"}},
            "required": ["libraryName"],
        },
    },
    {
        "name": "get-library-docs",
        "description": "Fetch documentation for a library id",
        "inputSchema": {
            "type": "object",
            "properties": {
                "libraryId": {"type": "string"},
                "tokens": {"type": "integer"},
            },
            "required": ["libraryId"],
        },
    },
    {
        "name": "search",
        "description": "Full-text search across all indexed documentation",
        "inputSchema": {"type": "object", "properties": {"q": {"type": "string"}}},
    },
]

WEATHER_TOOLS = [
    {
        "name": "forecast",
        "description": "Weather forecast for a city",
        "inputSchema": {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
    },
]


def docs_handlers() -> Dict[str, Callable]:
    return {
        "resolve-library-id": lambda args: text_result({"id": f"/lib/{args.get('libraryName')}"}),
        "get-library-docs": lambda args: text_result("docs for " + str(args.get("libraryId"))),
        "search": lambda args: text_result("boom", is_error=True),
    }


class TransportFactory:
    """Hands out FakeTransports keyed by provider name and remembers them."""

    def __init__(self, specs: Dict[str, Dict[str, Any]]):
        self.specs = specs
        self.created: Dict[str, List[FakeTransport]] = {}

    def __call__(self, descriptor: ProviderDescriptor) -> FakeTransport:
        spec = self.specs[descriptor.name]
        transport = FakeTransport(descriptor.name, **spec)
        self.created.setdefault(descriptor.name, []).append(transport)
        return transport


@pytest.fixture
def factory():
    return TransportFactory({
        "docs": {"tools": DOCS_TOOLS, "handlers": docs_handlers()},
        "weather": {"tools": WEATHER_TOOLS, "handlers": {"forecast": lambda a: text_result({"city": a["city"], "temp": 21})}},
    })


@pytest.fixture
def executor(factory):
    return CodeModeExecutor(transport_factory=factory)


@pytest.fixture
def docs_provider():
    return ProviderDescriptor(name="docs", url="https://x/mcp")


@pytest.fixture
def weather_provider():
    return ProviderDescriptor(name="weather", transport="local-process", command="weather-mcp")


class CompletionRecorder:
    """httpx MockTransport handler that records requests and replays replies."""

    def __init__(self, reply: Any = "ok", status: int = 200):
        self.reply = reply
        self.status = status
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if isinstance(self.reply, Exception):
            raise self.reply
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "upstream failure"}})
        return httpx.Response(200, json={
            "model": "test-model",
            "choices": [{"message": {"role": "assistant", "content": self.reply}, "finish_reason": "stop"}],
            "usage": {"total_tokens": 42},
        })

    def client(self, api_key: Optional[str] = "sk-test") -> CompletionClient:
        return CompletionClient(
            CompletionSettings(api_key=api_key, base_url="https://llm.test/v1"),
            transport=httpx.MockTransport(self),
        )
