"""
Common building blocks for the wallet onboarding workflow.

Modules:
- backend: async REST client for the onboarding backend (httpx + pydantic)
- sessions: identity registration, session exchange, PIN status
- challenges: challenge polling engine with cancellation
- wallets: in-memory wallet registry
- config: environment-driven settings
- errors: error taxonomy
"""

__all__ = [
    "backend",
    "challenges",
    "config",
    "errors",
    "sessions",
    "wallets",
]
