"""AI client, tool providers, and turn orchestration."""

from .client import AIClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "TokenCounterRegistry", "ApproxByteCounter"]
