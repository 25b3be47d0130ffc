"""
Registry client interface used by the reconciling access cache.

Two implementations: an in-process client bound to an AuthorizationRegistry,
and an HTTP client talking to the FastAPI surface in assetgate.api.main.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List

import requests

from . import errors
from .config import REGISTRY_CALL_TIMEOUT_SEC
from .schema import AccessLogEntry, AssetRecord, AuthorizationEntry, LogEvent, LogRecord, normalize_account


class IRegistryClient(ABC):
    """Read/write operations the cache needs from the registry, on behalf of one identity."""

    @abstractmethod
    def get_asset(self, asset_key: str) -> AssetRecord:
        pass

    @abstractmethod
    def get_asset_authorization_at_index(self, asset_key: str, index: int) -> str:
        pass

    @abstractmethod
    def get_authorization_entry(self, asset_key: str, account: str) -> AuthorizationEntry:
        pass

    @abstractmethod
    def can_access(self, asset_key: str, account: str) -> bool:
        pass

    @abstractmethod
    def batch_log_access(self, entries: List[AccessLogEntry]) -> int:
        pass

    @abstractmethod
    def get_log_records(self, after_seq: int = 0, asset_key: str = None,
                        events: Iterable[LogEvent] = None, limit: int = 500) -> List[LogRecord]:
        pass

    @abstractmethod
    def head_seq(self) -> int:
        pass


class LocalRegistryClient(IRegistryClient):
    """Calls an AuthorizationRegistry in the same process."""

    def __init__(self, registry, identity: str):
        self.registry = registry
        self.identity = normalize_account(identity)

    def get_asset(self, asset_key: str) -> AssetRecord:
        return self.registry.get_asset(asset_key)

    def get_asset_authorization_at_index(self, asset_key: str, index: int) -> str:
        return self.registry.get_asset_authorization_at_index(asset_key, index)

    def get_authorization_entry(self, asset_key: str, account: str) -> AuthorizationEntry:
        return self.registry.get_authorization_entry(asset_key, account)

    def can_access(self, asset_key: str, account: str) -> bool:
        return self.registry.can_access(asset_key, account)

    def batch_log_access(self, entries: List[AccessLogEntry]) -> int:
        return self.registry.batch_log_access(entries, caller=self.identity)

    def get_log_records(self, after_seq: int = 0, asset_key: str = None,
                        events: Iterable[LogEvent] = None, limit: int = 500) -> List[LogRecord]:
        return self.registry.get_log_records(after_seq, asset_key, events, limit)

    def head_seq(self) -> int:
        return self.registry.head_seq()


class HttpRegistryClient(IRegistryClient):
    """Calls the registry's HTTP API with requests; every call carries a timeout."""

    def __init__(self, base_url: str, identity: str, timeout: float = REGISTRY_CALL_TIMEOUT_SEC,
                 session: requests.Session = None):
        self.base_url = base_url.rstrip("/")
        self.identity = normalize_account(identity)
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs):
        headers = kwargs.pop("headers", {})
        headers["X-Account-Id"] = self.identity
        response = self.session.request(
            method,
            f"{self.base_url}{path}",
            headers=headers,
            timeout=self.timeout,
            **kwargs
        )

        if response.status_code >= 400:
            raise _error_from_response(response)
        return response.json()

    @staticmethod
    def _quote(value: str) -> str:
        return requests.utils.quote(value, safe="")

    def get_asset(self, asset_key: str) -> AssetRecord:
        data = self._request("GET", f"/assets/{self._quote(asset_key)}")
        return AssetRecord(
            key=data["key"],
            owner=data["owner"],
            description=data["description"],
            initialized=data["initialized"],
            authorization_count=data["authorization_count"]
        )

    def get_asset_authorization_at_index(self, asset_key: str, index: int) -> str:
        data = self._request("GET", f"/assets/{self._quote(asset_key)}/authorizations/index/{index}")
        return data["account"]

    def get_authorization_entry(self, asset_key: str, account: str) -> AuthorizationEntry:
        data = self._request("GET", f"/assets/{self._quote(asset_key)}/authorizations/{self._quote(account)}")
        return AuthorizationEntry(
            asset_key=asset_key,
            account=data["account"],
            role=data["role"],
            active=data["active"],
            expires_at=data["expires_at"]
        )

    def can_access(self, asset_key: str, account: str) -> bool:
        data = self._request("GET", f"/assets/{self._quote(asset_key)}/can-access/{self._quote(account)}")
        return data["granted"]

    def batch_log_access(self, entries: List[AccessLogEntry]) -> int:
        data = self._request("POST", "/access-logs/batch", json={
            "entries": [entry.to_dict() for entry in entries]
        })
        return data["recorded"]

    def get_log_records(self, after_seq: int = 0, asset_key: str = None,
                        events: Iterable[LogEvent] = None, limit: int = 500) -> List[LogRecord]:
        params = {"after_seq": after_seq, "limit": limit}
        if asset_key is not None:
            params["asset_key"] = asset_key
        if events:
            params["events"] = [LogEvent(e).value for e in events]

        data = self._request("GET", "/logs", params=params)
        return [LogRecord.from_dict(record) for record in data["records"]]

    def head_seq(self) -> int:
        return self._request("GET", "/logs/head")["head_seq"]


def _error_from_response(response) -> Exception:
    """Rebuild the registry error named in an error body, when there is one."""
    try:
        body = response.json()
    except ValueError:
        body = {}

    error_class = getattr(errors, body.get("error", ""), None)
    message = body.get("detail") or f"HTTP {response.status_code}"
    if isinstance(error_class, type) and issubclass(error_class, errors.RegistryError):
        return error_class(message)

    return requests.HTTPError(f"{response.status_code}: {message}", response=response)
