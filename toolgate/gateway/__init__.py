"""
Gateway: one small MCP surface in front of many tool providers.

Instead of loading every provider's full tool schemas into the agent's
context, the gateway advertises four tools: search, list, interface lookup,
and script execution. Large results are truncated or summarized before they
reach the agent.

Standard MCP:   LLM <-- every schema --> N servers <-- full output --> LLM
Gateway:        LLM <-- 4 tools + digest --> gateway --> N servers --> shaped output
"""

from toolgate.gateway.executor import CodeModeExecutor, RegistrationError, ToolCallError
from toolgate.gateway.registry import CapabilityRegistry, ToolNotFoundError
from toolgate.gateway.router import ToolRouter
from toolgate.gateway.schema import ChainResult, ToolDef, ToolParam, ToolRecord, normalize_name
from toolgate.gateway.server import GatewayController, GatewayResponse, build_tool_definitions, serve
from toolgate.gateway.shaper import ResponseShaper
from toolgate.gateway.transport import HttpTransport, MCPTransport, MCPTransportError, StdioTransport

__all__ = [
    "CapabilityRegistry",
    "ChainResult",
    "CodeModeExecutor",
    "GatewayController",
    "GatewayResponse",
    "HttpTransport",
    "MCPTransport",
    "MCPTransportError",
    "RegistrationError",
    "ResponseShaper",
    "StdioTransport",
    "ToolCallError",
    "ToolDef",
    "ToolNotFoundError",
    "ToolParam",
    "ToolRecord",
    "ToolRouter",
    "build_tool_definitions",
    "normalize_name",
    "serve",
]
