"""Tests for the capability registry."""

import pytest

from toolgate.gateway.executor import RegistrationError
from toolgate.gateway.registry import CapabilityRegistry, ToolNotFoundError, build_digest
from toolgate.gateway.schema import ToolDef, ToolRecord, normalize_name
from toolgate.validation.config import ProviderDescriptor


class TestNormalizeName:
    def test_dots_and_hyphens(self):
        assert normalize_name("context7.resolve-library-id") == "context7_resolve_library_id"

    def test_already_normalized(self):
        assert normalize_name("context7_resolve_library_id") == "context7_resolve_library_id"

    def test_case_folded(self):
        assert normalize_name("Docs.Search") == "docs_search"


class TestDigest:
    def _records(self, provider, names):
        return [ToolRecord.from_tool(ToolDef(name=n, provider=provider)) for n in names]

    def test_empty(self):
        assert build_digest([]) == ""

    def test_two_tools_no_suffix(self):
        digest = build_digest(self._records("docs", ["a", "b"]))

        assert digest.splitlines()[1] == "- docs: a, b"

    def test_more_than_two_tools_counted(self):
        records = self._records("docs", ["a", "b", "c", "d"]) + self._records("weather", ["forecast"])

        lines = build_digest(records).splitlines()

        assert lines[0] == "Connected providers:"
        assert lines[1] == "- docs: a, b (4 tools)"
        assert lines[2] == "- weather: forecast"


class TestCapabilityRegistry:
    @pytest.fixture
    def registry(self, executor):
        return CapabilityRegistry(executor)

    @pytest.mark.asyncio
    async def test_refresh_builds_records_and_digest(self, registry, docs_provider, weather_provider):
        await registry.register_provider(docs_provider)
        await registry.register_provider(weather_provider)
        await registry.refresh()

        names = [r.qualified_name for r in registry.records]
        assert names == [
            "docs_resolve_library_id",
            "docs_get_library_docs",
            "docs_search",
            "weather_forecast",
        ]
        assert "- docs: resolve-library-id, get-library-docs (3 tools)" in registry.digest
        assert "- weather: forecast" in registry.digest

    @pytest.mark.asyncio
    async def test_registration_is_idempotent(self, registry, factory, docs_provider):
        await registry.register_provider(docs_provider)
        await registry.register_provider(docs_provider)
        await registry.refresh()

        assert len(factory.created["docs"]) == 1
        assert len(registry.records) == 3

    @pytest.mark.asyncio
    async def test_registration_failure_propagates(self, executor, factory):
        factory.specs["broken"] = {"tools": [], "fail": True}
        registry = CapabilityRegistry(executor)

        with pytest.raises(RegistrationError, match="broken"):
            await registry.register_provider(ProviderDescriptor(name="broken", url="https://b/mcp"))

    @pytest.mark.asyncio
    async def test_refresh_replaces_record_set(self, registry, docs_provider, weather_provider):
        await registry.register_provider(docs_provider)
        await registry.refresh()
        before = registry.records

        await registry.register_provider(weather_provider)
        await registry.refresh()

        assert len(before) == 3
        assert len(registry.records) == 4

    @pytest.mark.asyncio
    async def test_lookup_tolerates_spellings(self, registry, docs_provider):
        await registry.register_provider(docs_provider)
        await registry.refresh()

        raw = registry.get_full_interface("docs.resolve-library-id")
        normalized = registry.get_full_interface("docs_resolve_library_id")
        mixed = registry.get_full_interface("Docs.Resolve_Library-ID")

        assert raw == normalized == mixed
        assert "async def docs_resolve_library_id(*, libraryName: str) -> Any:" in raw

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry, docs_provider):
        await registry.register_provider(docs_provider)
        await registry.refresh()

        assert registry.get("docs.nope") is None
        with pytest.raises(ToolNotFoundError, match="docs.nope"):
            registry.get_full_interface("docs.nope")

    @pytest.mark.asyncio
    async def test_list_summaries(self, registry, docs_provider):
        await registry.register_provider(docs_provider)
        await registry.refresh()

        summaries = registry.list_summaries()

        assert summaries[0] == {
            "name": "docs_resolve_library_id",
            "brief": "Resolve a package name to a library id.",
        }

    @pytest.mark.asyncio
    async def test_token_savings_report(self, registry, docs_provider):
        await registry.register_provider(docs_provider)
        await registry.refresh()

        report = registry.token_savings_report()

        assert report["tools_count"] == 3
        assert report["full_schema_tokens"] > 0
        assert report["tokens_saved"] == max(report["full_schema_tokens"] - report["digest_tokens"], 0)


class TestInterface:
    def test_optional_params_and_docs(self):
        tool = ToolDef.from_mcp("docs", {
            "name": "get-library-docs",
            "description": "Fetch docs",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "libraryId": {"type": "string", "description": "Library id"},
                    "tokens": {"type": ["integer", "null"]},
                },
                "required": ["libraryId"],
            },
        })

        text = ToolRecord.from_tool(tool).interface()

        assert text.startswith("async def docs_get_library_docs(*, libraryId: str, tokens: int = None) -> Any:")
        assert "libraryId (string, required): Library id" in text
        assert "tokens (integer, optional)" in text
        assert "await docs.get_library_docs(...)" in text

    def test_no_params(self):
        tool = ToolDef(name="ping", provider="svc", description="Ping")

        assert ToolRecord.from_tool(tool).interface().startswith("async def svc_ping() -> Any:")
