"""Tool router: model-ranked discovery with a lexical fallback."""

from __future__ import annotations

import logging
from typing import List, Optional

from toolgate.gateway.executor import CodeModeExecutor
from toolgate.gateway.registry import CapabilityRegistry
from toolgate.gateway.schema import ToolRecord
from toolgate.providers.base import CompletionClient, CompletionError
from toolgate.validation.config import RoutingPolicy

logger = logging.getLogger(__name__)

NO_MATCH = "none"
DESCRIPTION_CHARS = 100


def _ranking_prompt(limit: int) -> str:
    return (
        "You select tools for an agent. Given the tool list and the request, "
        f"reply with the names of at most {limit} tools most relevant to the request, "
        "most relevant first, as a comma-separated list.\n"
        f"Use the names exactly as listed. If no tool is relevant, reply with: {NO_MATCH}\n"
        "Reply with tool names only, no explanation."
    )


def parse_ranked_names(text: str) -> List[str]:
    """Split a comma-separated model reply into candidate names."""
    cleaned = text.strip().strip("`").strip()
    if cleaned.lower() == NO_MATCH:
        return []
    names = []
    for part in cleaned.replace("\n", ",").split(","):
        name = part.strip().strip("`'\"").lstrip("-* ").strip()
        if name:
            names.append(name)
    return names


class ToolRouter:
    """
    Answers discovery queries.

    When routing is enabled, a credential is configured and tools are known,
    the completion model ranks the compact tool list. Any completion failure,
    or routing being unavailable, sends the query to the executor's lexical
    search instead.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        executor: CodeModeExecutor,
        policy: RoutingPolicy,
        client: Optional[CompletionClient] = None,
        model: Optional[str] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.policy = policy
        self.client = client
        self.model = model

    @property
    def uses_model(self) -> bool:
        return self.policy.enabled and self.client is not None and self.client.available

    async def search(self, query: str, limit: int = 10) -> List[ToolRecord]:
        if self.uses_model and self.registry.records:
            try:
                return await self._rank(query, limit)
            except CompletionError as e:
                logger.warning("Model ranking failed, using keyword search: %s", e)
        return await self._lexical(query, limit)

    async def _rank(self, query: str, limit: int) -> List[ToolRecord]:
        digest = "\n".join(r.prompt_line(DESCRIPTION_CHARS) for r in self.registry.records)
        prompt = f"Tools:\n{digest}\n\nRequest: {query}"

        response = await self.client.complete(
            prompt,
            system=_ranking_prompt(limit),
            model=self.model,
            max_tokens=500,
            temperature=0,
        )

        results: List[ToolRecord] = []
        seen = set()
        for name in parse_ranked_names(response.content):
            record = self.registry.get(name)
            if record is None or record.qualified_name in seen:
                continue
            seen.add(record.qualified_name)
            results.append(record)
            if len(results) >= limit:
                break
        return results

    async def _lexical(self, query: str, limit: int) -> List[ToolRecord]:
        results: List[ToolRecord] = []
        for tool in await self.executor.search_tools(query, limit):
            record = self.registry.get(tool.qualified_name)
            results.append(record if record is not None else ToolRecord.from_tool(tool))
        return results
