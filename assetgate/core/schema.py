"""
Records returned by the registry and carried on the log stream.
"""

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Dict, Any


TEMPORARY_ROLE = "temporary"
NULL_ACCOUNT = "0x" + "0" * 40


class LogEvent(str, Enum):
    ASSET_CREATED = "asset_created"
    AUTHORIZATION_ADDED = "authorization_added"
    AUTHORIZATION_REMOVED = "authorization_removed"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    ACCESS_ATTEMPT = "access_attempt"


def normalize_account(account: str) -> str:
    """Canonical spelling of an account identity."""
    return (account or "").strip().lower()


def is_null_account(account: str) -> bool:
    """True for the empty identity and the all-zero address."""
    normalized = normalize_account(account)
    return normalized == "" or normalized == NULL_ACCOUNT


@dataclass
class AssetRecord:
    key: str
    owner: str = ""
    description: str = ""
    initialized: bool = False
    authorization_count: int = 0


@dataclass
class AuthorizationEntry:
    asset_key: str
    account: str
    role: str = ""
    active: bool = False
    expires_at: int = 0  # 0 = never expires

    def is_current(self, now: float) -> bool:
        """A current grant is active and not past its expiry."""
        return self.active and (self.expires_at == 0 or self.expires_at > now)


@dataclass
class AccessLogEntry:
    account: str
    asset_key: str
    timestamp: int
    granted: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LogRecord:
    seq: int
    tx_id: str
    event: LogEvent
    asset_key: str
    account: str
    ts: int
    data: Dict[str, Any] = field(default_factory=dict)
    prev_hash: str = ""
    record_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for transport."""
        result = asdict(self)
        result["event"] = self.event.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LogRecord':
        """Create from a transported dictionary."""
        data = dict(data)
        data["event"] = LogEvent(data["event"])
        return cls(**data)
