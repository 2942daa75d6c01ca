"""Capability registry: tracks known tools and the digest shown to the agent."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

from toolgate.gateway.executor import CodeModeExecutor
from toolgate.gateway.schema import ToolRecord, normalize_name
from toolgate.validation.config import ProviderDescriptor

logger = logging.getLogger(__name__)

DIGEST_SAMPLE_SIZE = 2


class ToolNotFoundError(LookupError):
    """Raised when a tool name does not resolve to a registered tool."""

    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' not found")
        self.name = name


def build_digest(records: List[ToolRecord]) -> str:
    """
    Group tool names by provider into a short multi-line digest.

    Returns something like::

        Connected providers:
        - context7: resolve-library-id, get-library-docs
        - github: search_code, get_issue (26 tools)
    """
    if not records:
        return ""

    by_provider: Dict[str, List[str]] = {}
    for record in records:
        by_provider.setdefault(record.provider, []).append(record.tool.name)

    lines = ["Connected providers:"]
    for provider, names in by_provider.items():
        sample = ", ".join(names[:DIGEST_SAMPLE_SIZE])
        suffix = f" ({len(names)} tools)" if len(names) > DIGEST_SAMPLE_SIZE else ""
        lines.append(f"- {provider}: {sample}{suffix}")
    return "\n".join(lines)


class CapabilityRegistry:
    """
    Owns the set of tools the gateway currently knows about.

    ``refresh()`` rebuilds every record and the digest from the executor's
    live tool list. The record map is replaced in one assignment, so readers
    never see a half-built set.
    """

    def __init__(self, executor: CodeModeExecutor):
        self._executor = executor
        self._records: Mapping[str, ToolRecord] = {}
        self._digest = ""
        self._full_schema_chars = 0

    # ── Providers ─────────────────────────────────────────────────────────

    async def register_provider(self, descriptor: ProviderDescriptor) -> None:
        """Register a provider with the executor (RegistrationError propagates)."""
        await self._executor.register_provider(descriptor)

    async def refresh(self) -> None:
        """Rebuild all records and the capability digest."""
        tools = await self._executor.list_tools()

        records: Dict[str, ToolRecord] = {}
        full_schema_chars = 0
        for tool in tools:
            record = ToolRecord.from_tool(tool)
            if record.qualified_name in records:
                logger.warning("Duplicate tool name after normalization: %s", record.raw_name)
                continue
            records[record.qualified_name] = record
            full_schema_chars += len(tool.description) + len(str(tool.input_schema))

        self._records = records
        self._digest = build_digest(list(records.values()))
        self._full_schema_chars = full_schema_chars
        logger.info("Capability digest rebuilt: %d tools", len(records))

    # ── Lookup ────────────────────────────────────────────────────────────

    @property
    def digest(self) -> str:
        return self._digest

    @property
    def records(self) -> List[ToolRecord]:
        return list(self._records.values())

    def get(self, name: str) -> Optional[ToolRecord]:
        """
        Resolve a tool by raw (``provider.tool``) or normalized name.

        Both sides are normalized, so ``context7.resolve-library-id``,
        ``context7_resolve_library_id`` and ``Context7.Resolve_Library_Id``
        all find the same record.
        """
        if not name:
            return None
        return self._records.get(normalize_name(name))

    def get_full_interface(self, name: str) -> str:
        """Return the full interface for one tool, or raise ToolNotFoundError."""
        record = self.get(name)
        if record is None:
            raise ToolNotFoundError(name)
        return record.interface()

    def list_summaries(self) -> List[Dict[str, str]]:
        return [{"name": r.qualified_name, "brief": r.brief()} for r in self._records.values()]

    # ── Reporting ─────────────────────────────────────────────────────────

    def token_savings_report(self) -> Dict[str, int]:
        """Estimate tokens saved by advertising the digest instead of full schemas."""
        # 4 chars ≈ 1 token
        full_tokens = self._full_schema_chars // 4
        digest_tokens = len(self._digest) // 4
        return {
            "tools_count": len(self._records),
            "full_schema_tokens": full_tokens,
            "digest_tokens": digest_tokens,
            "tokens_saved": max(full_tokens - digest_tokens, 0),
        }
