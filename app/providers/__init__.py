"""
Upstream adapters: HTTP with classified errors, OpenRouter, and the
provider fallback chain.
"""
from .chain import (
    Attempt,
    ChainResult,
    Provider,
    ProviderFallbackChain,
    with_params,
)
from .openrouter import OpenRouterClient, model_order, parse_json_object, strip_code_fences

__all__ = [
    "Attempt",
    "ChainResult",
    "Provider",
    "ProviderFallbackChain",
    "with_params",
    "OpenRouterClient",
    "model_order",
    "parse_json_object",
    "strip_code_fences",
]
