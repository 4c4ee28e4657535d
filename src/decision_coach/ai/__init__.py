"""LLM client, context assembly, and turn orchestration."""

from .client import AIClient, ApproxByteCounter, ChatResult, ClientSettings, ProviderError, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "ChatResult", "ProviderError", "TokenCounterRegistry", "ApproxByteCounter"]
