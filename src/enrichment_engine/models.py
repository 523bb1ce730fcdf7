"""
Pydantic models for the engine's side files.

- LedgerEntry: one line of the resume journal (<output>.ledger.jsonl)
- KeyUsage: one credential's entry in used_keys.json
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntry(BaseModel):
    """A completed record key. Presence means "do not reprocess"."""

    key: str
    completed_at: datetime = Field(default_factory=_utcnow)
    status: Optional[str] = None
    credential_id: Optional[str] = None

    @field_validator("key")
    def _non_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("ledger key must be non-empty")
        return v


class KeyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INVALID = "INVALID"
    EXHAUSTED = "EXHAUSTED"


class KeyUsage(BaseModel):
    """Persisted usage and health of one API key across runs."""

    token_hint: str = ""
    used_credits: int = 0
    remaining_credits: Optional[int] = None
    status: KeyStatus = KeyStatus.ACTIVE
    reason: str = ""
    last_used_at: Optional[datetime] = None

    @field_validator("used_credits")
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("used_credits must be >= 0")
        return v
