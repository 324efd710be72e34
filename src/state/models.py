from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class WorkflowStep(str, Enum):
    """Onboarding steps. Exactly one is active at a time."""

    INITIAL = "initial"
    AWAITING_PIN = "awaiting_pin"
    AWAITING_WALLET_CREATION = "awaiting_wallet_creation"
    MANAGING_WALLETS = "managing_wallets"


class Identity(BaseModel):
    """
    Durable handle for one end user.

    Fields
    - user_id: opaque identifier registered with the backend (e.g. "user_<uuid4>").

    Notes
    - Created once per end user and persisted under a single key-value entry.
    - The only validation is non-emptiness; the identifier's shape is opaque.
    """

    model_config = {"frozen": True}

    user_id: str = Field(..., description="Backend user identifier")

    @field_validator("user_id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("user_id must be non-empty")
        return v


class WorkflowError(BaseModel):
    """Human-readable error surfaced to the presentation layer."""

    model_config = {"frozen": True}

    message: str
