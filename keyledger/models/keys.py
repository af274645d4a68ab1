"""
Key lifecycle document models.

Each model maps to one document collection. Documents are stored in JSON
mode (datetimes as ISO-8601 UTC strings) and the document id is never part
of the stored fields: it is the key string for ``keys`` / ``generated_keys``
and the user identity for ``whitelist`` / ``blacklist``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

KEYS = "keys"
PENDING_KEYS = "generated_keys"
WHITELIST = "whitelist"
DENYLIST = "blacklist"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Document(BaseModel):
    model_config = {"extra": "ignore"}

    @field_validator("*", mode="after")
    @classmethod
    def _assume_utc(cls, value: Any) -> Any:
        # Stored timestamps without an offset are UTC
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_fields(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]):
        return cls.model_validate(fields)


class KeyRecord(_Document):
    """
    A key bound (or about to be bound) to an identity.

    ``expires_at`` of None means permanent. Whitelist-origin keys are never
    expired regardless of ``expires_at``.
    """

    owner_identity: Optional[str] = None
    owner_alias_label: Optional[str] = None
    device_fingerprint: str = ""
    device_limit: int = Field(default=1, ge=1)
    bound_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    is_whitelist_grant: bool = False

    @property
    def is_permanent(self) -> bool:
        return self.is_whitelist_grant or self.expires_at is None

    def is_expired(self, now: datetime) -> bool:
        if self.is_whitelist_grant or self.expires_at is None:
            return False
        return self.expires_at < now


class PendingKeyRecord(_Document):
    """A generated key waiting to be redeemed."""

    issued_by: str
    issued_at: datetime = Field(default_factory=utcnow)
    validity_days: Optional[int] = None
    state: Literal["pending"] = "pending"

    @property
    def is_permanent(self) -> bool:
        return self.validity_days is None


class WhitelistGrant(_Document):
    owner_identity: str
    owner_alias_label: Optional[str] = None
    linked_key: str
    granted_by: str
    granted_at: datetime = Field(default_factory=utcnow)


class DenylistEntry(_Document):
    owner_identity: str
    owner_alias_label: Optional[str] = None
    added_by: str
    added_at: datetime = Field(default_factory=utcnow)
