"""
toolgate - A token-saving MCP gateway for language-model agents.

Sits between an agent and any number of MCP tool providers and exposes a
small, fixed tool surface instead of every provider's schemas.

Architecture:
- Configuration is read from environment variables (indexed or delimited)
- Tools are discovered by model ranking, with keyword search as the fallback
- Agents run short Python scripts that call many tools in one round trip
- Oversized results are truncated or summarized before they reach the agent
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

__all__ = [
    "__version__",
]
