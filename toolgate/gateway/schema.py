"""Data models for tool definitions, registry records, and execution results."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

_SEPARATORS = re.compile(r"[.\-]")

_JSON_TO_PY = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "array": "list",
    "object": "dict",
    "null": "None",
}


def normalize_name(name: str) -> str:
    """
    Flatten a provider-qualified tool name into one identifier token.

    ``context7.resolve-library-id`` -> ``context7_resolve_library_id``
    """
    return _SEPARATORS.sub("_", name.strip()).lower()


class ToolParam(BaseModel):
    """A single parameter for a tool."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False

    @property
    def py_type(self) -> str:
        return _JSON_TO_PY.get(self.type, "Any")


class ToolDef(BaseModel):
    """A tool as reported by its provider."""

    name: str  # e.g. "resolve-library-id"
    provider: str  # e.g. "context7"
    description: str = ""
    params: List[ToolParam] = Field(default_factory=list)
    input_schema: Dict[str, Any] = Field(default_factory=dict)

    @property
    def raw_name(self) -> str:
        """Full name as ``provider.tool`` (e.g. ``context7.resolve-library-id``)."""
        return f"{self.provider}.{self.name}"

    @property
    def qualified_name(self) -> str:
        """Normalized flat token (e.g. ``context7_resolve_library_id``)."""
        return normalize_name(self.raw_name)

    @classmethod
    def from_mcp(cls, provider: str, raw: Dict[str, Any]) -> "ToolDef":
        """Convert one entry of an MCP ``tools/list`` result."""
        input_schema = raw.get("inputSchema") or {}
        properties = input_schema.get("properties") or {}
        required = set(input_schema.get("required") or [])

        params: List[ToolParam] = []
        for pname, pinfo in properties.items():
            ptype = pinfo.get("type", "string")
            if isinstance(ptype, list):
                ptype = next((t for t in ptype if t != "null"), "string")
            params.append(ToolParam(
                name=pname,
                type=ptype,
                description=(pinfo.get("description") or "")[:200],
                required=pname in required,
            ))

        return cls(
            name=raw["name"],
            provider=provider,
            description=raw.get("description") or "",
            params=params,
            input_schema=input_schema,
        )


class ToolRecord(BaseModel):
    """Registry view of one tool: normalized name, description, interface on demand."""

    qualified_name: str
    raw_name: str
    provider: str
    description: str = ""
    tool: ToolDef

    @classmethod
    def from_tool(cls, tool: ToolDef) -> "ToolRecord":
        return cls(
            qualified_name=tool.qualified_name,
            raw_name=tool.raw_name,
            provider=tool.provider,
            description=tool.description,
            tool=tool,
        )

    def brief(self, width: int = 100) -> str:
        """First line of the description, clipped."""
        first = self.description.strip().split("\n")[0] if self.description else ""
        return first[:width]

    def prompt_line(self, width: int = 100) -> str:
        """One-line representation for a model prompt."""
        return f"{self.qualified_name}: {self.description[:width]}"

    def interface(self) -> str:
        """Full call interface as a Python async stub (rendered on demand)."""
        required = [p for p in self.tool.params if p.required]
        optional = [p for p in self.tool.params if not p.required]

        sig = [f"{p.name}: {p.py_type}" for p in required]
        sig += [f"{p.name}: {p.py_type} = None" for p in optional]
        if sig:
            sig = ["*"] + sig

        lines = [f"async def {self.qualified_name}({', '.join(sig)}) -> Any:"]
        doc = self.description.strip() or self.raw_name
        lines.append('    """' + doc.replace('"""', "'''"))
        if self.tool.params:
            lines.append("")
            lines.append("    Args:")
            for p in self.tool.params:
                req = "required" if p.required else "optional"
                desc = f": {p.description}" if p.description else ""
                lines.append(f"        {p.name} ({p.type}, {req}){desc}")
        lines.append("")
        lines.append(f"    Call as: await {normalize_name(self.provider)}.{normalize_name(self.tool.name)}(...)")
        lines.append('    """')
        return "\n".join(lines)

    def as_search_hit(self) -> Dict[str, str]:
        return {
            "name": self.qualified_name,
            "description": self.description,
            "interface": self.interface(),
        }


class ChainResult(BaseModel):
    """Outcome of running a caller script against the registered tools."""

    success: bool = True
    result: Any = None
    logs: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    def envelope_json(self) -> str:
        """Serialized execution envelope handed back to the agent."""
        data: Dict[str, Any] = {"success": self.success, "result": self.result, "logs": self.logs}
        if self.error is not None:
            data["error"] = self.error
        return json.dumps(data, indent=2, ensure_ascii=False, default=str)
