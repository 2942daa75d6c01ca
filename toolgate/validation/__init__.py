"""
toolgate validation module.

This module provides configuration resolution and validation.
"""

from toolgate.validation.config import (
    CompletionSettings,
    ConfigError,
    FilterPolicy,
    GatewayConfig,
    ProviderDescriptor,
    RoutingPolicy,
    load_config,
    resolve,
    validate,
)

__all__ = [
    "CompletionSettings",
    "ConfigError",
    "FilterPolicy",
    "GatewayConfig",
    "ProviderDescriptor",
    "RoutingPolicy",
    "load_config",
    "resolve",
    "validate",
]
