"""Tests for MCP transports."""

import json
import sys

import httpx
import pytest

from toolgate.gateway.transport import (
    PROTOCOL_VERSION,
    HttpTransport,
    MCPTransportError,
    StdioTransport,
    _parse_sse,
    create_transport,
)
from toolgate.validation.config import ProviderDescriptor


class FakeMcpServer:
    """Streamable HTTP MCP endpoint for httpx.MockTransport."""

    def __init__(self, sse: bool = False, status: int = 200):
        self.sse = sse
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        message = json.loads(request.content)
        self.requests.append((message, dict(request.headers)))
        if self.status != 200:
            return httpx.Response(self.status)
        if "id" not in message:
            return httpx.Response(202)

        if message["method"] == "initialize":
            result = {"protocolVersion": PROTOCOL_VERSION, "serverInfo": {"name": "fake"}}
        elif message["method"] == "tools/list":
            cursor = (message.get("params") or {}).get("cursor")
            if cursor:
                result = {"tools": [{"name": "b"}]}
            else:
                result = {"tools": [{"name": "a"}], "nextCursor": "page-2"}
        else:
            result = {"content": [{"type": "text", "text": "done"}]}

        reply = {"jsonrpc": "2.0", "id": message["id"], "result": result}
        headers = {"mcp-session-id": "session-1"}
        if self.sse:
            body = "event: message\ndata: " + json.dumps(reply) + "\n\n"
            headers["content-type"] = "text/event-stream"
            return httpx.Response(200, text=body, headers=headers)
        return httpx.Response(200, json=reply, headers=headers)


def make_transport(server: FakeMcpServer, **kwargs) -> HttpTransport:
    return HttpTransport("fake", "https://mcp.test/mcp", transport=httpx.MockTransport(server), **kwargs)


class TestHttpTransport:
    @pytest.mark.asyncio
    async def test_initialize_and_session_header(self):
        server = FakeMcpServer()
        transport = make_transport(server, headers={"Authorization": "Bearer t"})

        result = await transport.initialize()
        await transport.call_tool("anything", {"x": 1})
        await transport.stop()

        assert result["serverInfo"]["name"] == "fake"
        methods = [message.get("method") for message, _ in server.requests]
        assert methods == ["initialize", "notifications/initialized", "tools/call"]
        first_headers = server.requests[0][1]
        assert "mcp-session-id" not in first_headers
        assert first_headers["authorization"] == "Bearer t"
        assert "text/event-stream" in first_headers["accept"]
        assert server.requests[2][1]["mcp-session-id"] == "session-1"
        assert server.requests[2][0]["params"] == {"name": "anything", "arguments": {"x": 1}}

    @pytest.mark.asyncio
    async def test_list_tools_follows_cursor(self):
        transport = make_transport(FakeMcpServer())

        tools = await transport.list_tools()

        assert [t["name"] for t in tools] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sse_reply(self):
        transport = make_transport(FakeMcpServer(sse=True))

        result = await transport.call_tool("anything")

        assert result["content"][0]["text"] == "done"

    @pytest.mark.asyncio
    async def test_http_error(self):
        transport = make_transport(FakeMcpServer(status=500))

        with pytest.raises(MCPTransportError, match="HTTP 500"):
            await transport.initialize()

    @pytest.mark.asyncio
    async def test_json_rpc_error(self):
        def handler(request):
            message = json.loads(request.content)
            return httpx.Response(200, json={
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32602, "message": "bad params"},
            })

        transport = HttpTransport("fake", "https://mcp.test/mcp", transport=httpx.MockTransport(handler))

        with pytest.raises(MCPTransportError, match="-32602: bad params"):
            await transport.call_tool("x")


STUB_STDIO_SERVER = '''
import json
import sys

while True:
    line = sys.stdin.readline()
    if not line:
        break
    message = json.loads(line)
    if "id" not in message:
        continue
    if message["method"] == "initialize":
        result = {"protocolVersion": "2025-03-26", "capabilities": {}, "serverInfo": {"name": "stub"}}
    elif message["method"] == "tools/list":
        result = {"tools": [
            {"name": "tool_%d" % i, "description": "d" * 1000, "inputSchema": {"type": "object"}}
            for i in range(100)
        ]}
    else:
        result = {"content": [{"type": "text", "text": "ok"}]}
    sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result}) + "\\n")
    sys.stdout.flush()
'''


class TestStdioTransport:
    @pytest.fixture
    def server_script(self, tmp_path):
        path = tmp_path / "stub_server.py"
        path.write_text(STUB_STDIO_SERVER)
        return str(path)

    @pytest.mark.asyncio
    async def test_large_tool_list(self, server_script):
        transport = StdioTransport("stub", sys.executable, [server_script])
        try:
            await transport.initialize()
            tools = await transport.list_tools()
            result = await transport.call_tool("tool_1")
        finally:
            await transport.stop()

        assert len(tools) == 100
        assert len(tools[99]["description"]) == 1000
        assert result["content"][0]["text"] == "ok"
        assert transport.is_running is False

    @pytest.mark.asyncio
    async def test_message_over_limit_is_transport_error(self, server_script):
        transport = StdioTransport("stub", sys.executable, [server_script], read_limit=4096)
        try:
            await transport.initialize()
            with pytest.raises(MCPTransportError, match="larger than 4096 bytes"):
                await transport.list_tools()
        finally:
            await transport.stop()


class TestParseSse:
    def test_multiple_events(self):
        body = 'data: {"id": 1}\n\nevent: message\ndata: {"id": 2}\n'

        assert _parse_sse(body) == [{"id": 1}, {"id": 2}]

    def test_multiline_data_and_junk(self):
        body = 'data: {"id":\ndata: 3}\n\ndata: not json\n\n: comment\n'

        assert _parse_sse(body) == [{"id": 3}]


class TestCreateTransport:
    def test_remote(self):
        descriptor = ProviderDescriptor(name="docs", url="https://x/mcp", auth_type="bearer", auth_token="tok")

        transport = create_transport(descriptor)

        assert isinstance(transport, HttpTransport)
        assert transport.url == "https://x/mcp"
        assert transport.headers == {"Authorization": "Bearer tok"}

    def test_local_process(self):
        descriptor = ProviderDescriptor(
            name="fs",
            transport="local-process",
            command="npx",
            args=["-y", "server"],
            env={"ROOT": "/tmp"},
        )

        transport = create_transport(descriptor)

        assert isinstance(transport, StdioTransport)
        assert transport.command == "npx"
        assert transport.args == ["-y", "server"]
        assert transport.env == {"ROOT": "/tmp"}
        assert transport.is_running is False

    @pytest.mark.asyncio
    async def test_missing_command(self):
        transport = StdioTransport("ghost", "/nonexistent/toolgate-test-binary")

        with pytest.raises(MCPTransportError, match="not found"):
            await transport.start()
