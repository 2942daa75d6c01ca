"""
toolgate Configuration - Environment-driven configuration loading and validation.

This module provides the models that describe the gateway's providers and
policies, and the resolver that builds them from environment variables.

Providers can be described in two historically-accreted shapes:

- Indexed: ``MCP_1_NAME``, ``MCP_1_URL``, ``MCP_2_NAME``, ``MCP_2_COMMAND``, ...
- Delimited: ``MCP_NAME="a;b"``, ``MCP_URL="https://a/mcp;https://b/mcp"``

The indexed shape wins entirely whenever it yields any provider; the two
shapes are never merged.
"""

import json
import logging
import os
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

MAX_INDEXED_PROVIDERS = 20

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

REMOTE = "remote"
LOCAL_PROCESS = "local-process"

_LOCAL_TRANSPORT_ALIASES = {"stdio", "local-process", "local"}


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class ProviderDescriptor(BaseModel):
    """One remote tool source (an MCP server reached over HTTP or stdio)."""

    model_config = ConfigDict(frozen=True)

    name: str
    transport: str = REMOTE
    url: Optional[str] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    auth_type: str = "none"
    auth_token: Optional[str] = None
    auth_header: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.transport == LOCAL_PROCESS

    def auth_headers(self) -> Dict[str, str]:
        """
        HTTP headers carrying this provider's credential, if any.

        A token without an explicit auth type is sent as a bearer token.
        """
        if not self.auth_token:
            return {}
        if self.auth_type in ("none", "bearer"):
            return {"Authorization": f"Bearer {self.auth_token}"}
        if self.auth_type == "api-key":
            return {self.auth_header or "X-API-Key": self.auth_token}
        return {self.auth_header or "Authorization": self.auth_token}


class CompletionSettings(BaseModel):
    """Settings for the OpenAI-compatible completion API."""

    api_key: Optional[str] = None
    base_url: str = OPENAI_BASE_URL
    model: str = "gpt-4o-mini"
    timeout: float = 60.0


class FilterPolicy(BaseModel):
    """Response shaping policy."""

    enabled: bool = True
    max_response_chars: int = 10000
    summarize_threshold: int = 5000
    force_summarize: bool = False


class RoutingPolicy(BaseModel):
    """Tool discovery policy."""

    enabled: bool = True
    model: Optional[str] = None

    def effective_model(self, completion: CompletionSettings) -> str:
        return self.model or completion.model


class GatewayConfig(BaseModel):
    """Complete gateway configuration schema."""

    providers: List[ProviderDescriptor] = Field(default_factory=list)
    completion: CompletionSettings = Field(default_factory=CompletionSettings)
    filter: FilterPolicy = Field(default_factory=FilterPolicy)
    routing: RoutingPolicy = Field(default_factory=RoutingPolicy)

    @property
    def has_credential(self) -> bool:
        return bool(self.completion.api_key)


# ── Helpers ───────────────────────────────────────────────────────────────


def _is_true(value: Optional[str]) -> bool:
    return (value or "").lower() == "true"


def _is_not_false(value: Optional[str]) -> bool:
    return (value or "").lower() != "false"


def _split(value: Optional[str], sep: str) -> List[str]:
    if value is None:
        return []
    return value.split(sep)


def _at(values: List[str], index: int) -> Optional[str]:
    if index < len(values) and values[index]:
        return values[index]
    return None


def _infer_transport(transport: Optional[str], command: Optional[str]) -> str:
    """A start command always selects a local process."""
    if command:
        return LOCAL_PROCESS
    if transport and transport.lower() in _LOCAL_TRANSPORT_ALIASES:
        return LOCAL_PROCESS
    return REMOTE


def parse_env_json(raw: Optional[str], label: str) -> Dict[str, str]:
    """
    Parse a provider's extra environment variables from a JSON object.

    Malformed input never aborts loading: the problem is logged and the
    offending entries (or the whole map) are dropped.

    Args:
        raw: The JSON text, or None.
        label: Variable name used in warnings.

    Returns:
        Dictionary of string-valued environment overrides.
    """
    if not raw:
        return {}

    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning(
            "Failed to parse %s: %s. Provider will start without extra environment variables.",
            label,
            e,
        )
        return {}

    if not isinstance(parsed, dict):
        logger.warning(
            "%s is not a JSON object (got %s). Provider will start without extra environment variables.",
            label,
            type(parsed).__name__,
        )
        return {}

    env: Dict[str, str] = {}
    for key, value in parsed.items():
        if isinstance(value, str):
            env[key] = value
        else:
            logger.warning(
                "%s has a non-string value for key %r (%s), skipping",
                label,
                key,
                type(value).__name__,
            )
    return env


# ── Provider parsing strategies ───────────────────────────────────────────


def parse_indexed_providers(environ: Mapping[str, str]) -> List[ProviderDescriptor]:
    """Parse ``MCP_<N>_<FIELD>`` variables for N in 1..20."""
    providers: List[ProviderDescriptor] = []

    for i in range(1, MAX_INDEXED_PROVIDERS + 1):
        prefix = f"MCP_{i}_"
        name = environ.get(f"{prefix}NAME")
        if not name:
            continue

        command = environ.get(f"{prefix}COMMAND") or None
        args = environ.get(f"{prefix}ARGS")

        providers.append(ProviderDescriptor(
            name=name,
            transport=_infer_transport(environ.get(f"{prefix}TRANSPORT"), command),
            url=environ.get(f"{prefix}URL") or None,
            command=command,
            args=args.split(",") if args else [],
            env=parse_env_json(environ.get(f"{prefix}ENV_JSON"), f"{prefix}ENV_JSON"),
            auth_type=environ.get(f"{prefix}AUTH_TYPE") or "none",
            auth_token=environ.get(f"{prefix}AUTH_TOKEN") or None,
            auth_header=environ.get(f"{prefix}AUTH_KEY") or None,
        ))

    return providers


def parse_delimited_providers(environ: Mapping[str, str]) -> List[ProviderDescriptor]:
    """Parse ``MCP_<FIELD>`` variables holding ``;``-joined positional values."""
    urls = _split(environ.get("MCP_URL"), ";")
    names = _split(environ.get("MCP_NAME"), ";")
    commands = _split(environ.get("MCP_COMMAND"), ";")
    transports = _split(environ.get("MCP_TRANSPORT"), ";")
    auth_types = _split(environ.get("MCP_AUTH_TYPE"), ";")
    auth_keys = _split(environ.get("MCP_AUTH_KEY"), ";")
    auth_tokens = _split(environ.get("MCP_AUTH_TOKEN"), ";")
    args_list = _split(environ.get("MCP_ARGS"), ";")
    env_jsons = _split(environ.get("MCP_ENV_JSON"), ";")

    count = max(len(urls), len(commands), len(names))

    providers: List[ProviderDescriptor] = []
    for i in range(count):
        name = _at(names, i)
        if not name:
            continue

        command = _at(commands, i)
        args = _at(args_list, i)

        providers.append(ProviderDescriptor(
            name=name,
            transport=_infer_transport(_at(transports, i), command),
            url=_at(urls, i),
            command=command,
            args=args.split(",") if args else [],
            env=parse_env_json(_at(env_jsons, i), f"MCP_ENV_JSON[{i}]"),
            auth_type=_at(auth_types, i) or "none",
            auth_token=_at(auth_tokens, i),
            auth_header=_at(auth_keys, i),
        ))

    return providers


PROVIDER_STRATEGIES: List[Callable[[Mapping[str, str]], List[ProviderDescriptor]]] = [
    parse_indexed_providers,
    parse_delimited_providers,
]


def resolve_providers(environ: Mapping[str, str]) -> List[ProviderDescriptor]:
    """Apply the provider strategies in order; the first non-empty result wins."""
    for strategy in PROVIDER_STRATEGIES:
        providers = strategy(environ)
        if providers:
            return providers
    return []


# ── Policies ──────────────────────────────────────────────────────────────


def _int_env(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e


def resolve_completion(environ: Mapping[str, str]) -> CompletionSettings:
    api_key = (
        environ.get("LLM_API_KEY")
        or environ.get("OPENAI_API_KEY")
        or environ.get("OPENROUTER_API_KEY")
        or None
    )

    base_url = environ.get("LLM_BASE_URL")
    if not base_url:
        base_url = OPENROUTER_BASE_URL if environ.get("OPENROUTER_API_KEY") else OPENAI_BASE_URL

    timeout = environ.get("LLM_TIMEOUT")
    try:
        return CompletionSettings(
            api_key=api_key,
            base_url=base_url,
            model=environ.get("LLM_MODEL") or "gpt-4o-mini",
            timeout=float(timeout) if timeout else 60.0,
        )
    except (ValueError, ValidationError) as e:
        raise ConfigError(f"Invalid completion settings: {e}") from e


def resolve_filter(environ: Mapping[str, str]) -> FilterPolicy:
    return FilterPolicy(
        enabled=_is_not_false(environ.get("ENABLE_LLM_FILTER")),
        max_response_chars=_int_env(environ, "MAX_RESPONSE_CHARS", 10000),
        summarize_threshold=_int_env(environ, "SUMMARIZE_THRESHOLD", 5000),
        force_summarize=_is_true(environ.get("FORCE_LLM_FILTER")),
    )


def resolve_routing(environ: Mapping[str, str]) -> RoutingPolicy:
    return RoutingPolicy(
        enabled=_is_not_false(environ.get("ENABLE_LLM_SEARCH")),
        model=environ.get("ROUTER_MODEL") or None,
    )


def resolve(environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """
    Build a configuration from environment variables.

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        GatewayConfig (not yet validated).
    """
    if environ is None:
        environ = os.environ

    try:
        return GatewayConfig(
            providers=resolve_providers(environ),
            completion=resolve_completion(environ),
            filter=resolve_filter(environ),
            routing=resolve_routing(environ),
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def validate(config: GatewayConfig) -> None:
    """
    Validate a resolved configuration.

    Raises:
        ConfigError: If no provider is configured, a provider is missing the
            fields its transport needs, or provider names collide.
    """
    if not config.providers:
        raise ConfigError(
            "At least one tool provider must be configured "
            "(MCP_1_NAME/MCP_1_URL, or MCP_NAME/MCP_URL)."
        )

    seen = set()
    for provider in config.providers:
        if provider.name in seen:
            raise ConfigError(f"Provider name '{provider.name}' is configured more than once")
        seen.add(provider.name)

        if provider.is_local:
            if not provider.command:
                raise ConfigError(
                    f"Provider '{provider.name}' uses a local process but has no start command (MCP_COMMAND)"
                )
        elif not provider.url:
            raise ConfigError(
                f"Provider '{provider.name}' is remote but has no connection URL (MCP_URL)"
            )

    if config.filter.enabled and not config.has_credential:
        logger.warning("Response summarization is enabled but no LLM API key is set; falling back to truncation")

    if config.filter.summarize_threshold > config.filter.max_response_chars:
        logger.warning(
            "SUMMARIZE_THRESHOLD (%d) exceeds MAX_RESPONSE_CHARS (%d); responses will only be truncated "
            "unless FORCE_LLM_FILTER is set",
            config.filter.summarize_threshold,
            config.filter.max_response_chars,
        )


def load_config(environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """Resolve and validate configuration in one step."""
    config = resolve(environ)
    validate(config)
    return config


def _mask(secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-2:]}"


def redacted_dump(config: GatewayConfig) -> Dict[str, Any]:
    """Configuration as a plain dictionary with credentials masked."""
    data = config.model_dump()
    data["completion"]["api_key"] = _mask(config.completion.api_key)
    for provider in data["providers"]:
        provider["auth_token"] = _mask(provider["auth_token"])
        provider["env"] = {key: "****" for key in provider["env"]}
    return data
