"""Agent provider adapters."""

from typing import Dict, List, Optional

from ..exceptions import ProviderNotFoundError
from .base import (
    ApprovalDecision,
    MessagePage,
    ProviderAdapter,
    ProviderSessionOptions,
    SubagentCompletedInfo,
    SubagentStartedInfo,
    SubagentToolCallInfo,
)
from .claude_agent_sdk import ClaudeAdapter
from .echo import EchoAdapter


class ProviderRegistry:
    """Provider adapters by id."""

    def __init__(self, default: str = "claude") -> None:
        self._providers: Dict[str, ProviderAdapter] = {}
        self.default = default

    def register(self, provider: ProviderAdapter) -> None:
        self._providers[provider.id] = provider

    def get(self, provider_id: Optional[str] = None) -> ProviderAdapter:
        provider_id = provider_id or self.default
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return provider

    def all(self) -> List[ProviderAdapter]:
        """Registered providers, the default one first."""
        providers = list(self._providers.values())
        providers.sort(key=lambda p: p.id != self.default)
        return providers

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers


__all__ = [
    "ApprovalDecision",
    "ClaudeAdapter",
    "EchoAdapter",
    "MessagePage",
    "ProviderAdapter",
    "ProviderRegistry",
    "ProviderSessionOptions",
    "SubagentCompletedInfo",
    "SubagentStartedInfo",
    "SubagentToolCallInfo",
]
