"""
HTTP API for the authorization registry.

The caller's identity is taken from the X-Account-Id header. Registry errors
map onto HTTP status codes and carry the error class name in the body, so
HttpRegistryClient can re-raise the same exception on the other side.
"""

from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from .schemas import (
    AccessResponse,
    AccountResponse,
    AssetKeyResponse,
    AssetResponse,
    AuthorizationEntryResponse,
    AuthorizationRequest,
    BatchAuthorizationRequest,
    BatchLogRequest,
    BatchRemoveRequest,
    CountResponse,
    CreateAssetRequest,
    HeadResponse,
    HealthResponse,
    LogListResponse,
    LogRecordModel,
    MutationResponse,
    RecordedResponse,
    TransferOwnershipRequest,
    VerifyResponse,
)
from ..core.config import DB_PATH, VERSION, debug_enabled
from ..core.db import health_check
from ..core.errors import (
    AlreadyExists,
    AssetNotFound,
    NotOwner,
    NotOwnerOrAdmin,
    RegistryError,
    ValidationFailed,
)
from ..core.registry import AuthorizationRegistry
from ..core.schema import AccessLogEntry, LogEvent
from ..util.logging import logger

app = FastAPI(
    title="Asset Authorization Registry",
    version=VERSION,
    description="Authoritative per-asset authorization registry with a hash-chained log stream",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

_registry: Optional[AuthorizationRegistry] = None


def get_registry() -> AuthorizationRegistry:
    """Process-wide registry on DB_PATH, created on first use."""
    global _registry
    if _registry is None:
        _registry = AuthorizationRegistry(DB_PATH)
    return _registry


def caller_identity(x_account_id: str = Header(default="")) -> str:
    return x_account_id


ERROR_STATUS = {
    AlreadyExists: 409,
    AssetNotFound: 404,
    NotOwnerOrAdmin: 403,
    NotOwner: 403,
    ValidationFailed: 400,
}


def status_for(exc: RegistryError) -> int:
    for error_class in type(exc).__mro__:
        if error_class in ERROR_STATUS:
            return ERROR_STATUS[error_class]
    return 400


@app.exception_handler(RegistryError)
async def registry_exception_handler(request, exc):
    """Rejected registry operations: the request had no effect."""
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    content = {"detail": "Internal server error"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(registry: AuthorizationRegistry = Depends(get_registry)):
    """Check system health."""
    db_health = health_check(registry.db_path)
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        asset_count=registry.get_asset_count() if db_health else 0
    )


# Assets
# Fixed paths are declared before /assets/{asset_key} so they are not captured by it

@app.post("/assets", response_model=MutationResponse)
def create_asset(req: CreateAssetRequest, caller: str = Depends(caller_identity),
                 registry: AuthorizationRegistry = Depends(get_registry)):
    registry.create_asset(req.asset_key, req.description, caller)
    return MutationResponse(success=True, asset_key=req.asset_key)


@app.get("/assets/count", response_model=CountResponse)
def asset_count(registry: AuthorizationRegistry = Depends(get_registry)):
    return CountResponse(count=registry.get_asset_count())


@app.get("/assets/index/{index}", response_model=AssetKeyResponse)
def asset_at_index(index: int, registry: AuthorizationRegistry = Depends(get_registry)):
    return AssetKeyResponse(asset_key=registry.get_asset_at_index(index))


@app.get("/assets/{asset_key}", response_model=AssetResponse)
def get_asset(asset_key: str, registry: AuthorizationRegistry = Depends(get_registry)):
    """Unknown keys return the default record with initialized=false."""
    asset = registry.get_asset(asset_key)
    return AssetResponse(
        key=asset.key,
        owner=asset.owner,
        description=asset.description,
        initialized=asset.initialized,
        authorization_count=asset.authorization_count
    )


@app.post("/assets/{asset_key}/owner", response_model=MutationResponse)
def transfer_ownership(asset_key: str, req: TransferOwnershipRequest, caller: str = Depends(caller_identity),
                       registry: AuthorizationRegistry = Depends(get_registry)):
    registry.transfer_ownership(asset_key, req.new_owner, caller)
    return MutationResponse(success=True, asset_key=asset_key)


# Authorizations

@app.post("/assets/{asset_key}/authorizations", response_model=MutationResponse)
def add_authorization(asset_key: str, req: AuthorizationRequest, caller: str = Depends(caller_identity),
                      registry: AuthorizationRegistry = Depends(get_registry)):
    registry.add_authorization(asset_key, req.account, req.role, caller, duration=req.duration)
    return MutationResponse(success=True, asset_key=asset_key)


@app.post("/assets/{asset_key}/authorizations/batch", response_model=MutationResponse)
def add_authorization_batch(asset_key: str, req: BatchAuthorizationRequest, caller: str = Depends(caller_identity),
                            registry: AuthorizationRegistry = Depends(get_registry)):
    if req.durations is None:
        registry.add_authorization_batch(asset_key, req.accounts, req.roles, caller)
    else:
        registry.add_authorization_batch_with_duration(asset_key, req.accounts, req.roles, req.durations, caller)
    return MutationResponse(success=True, asset_key=asset_key)


@app.post("/assets/{asset_key}/authorizations/batch-remove", response_model=MutationResponse)
def remove_authorization_batch(asset_key: str, req: BatchRemoveRequest, caller: str = Depends(caller_identity),
                               registry: AuthorizationRegistry = Depends(get_registry)):
    registry.remove_authorization_batch(asset_key, req.accounts, caller)
    return MutationResponse(success=True, asset_key=asset_key)


@app.get("/assets/{asset_key}/authorizations/count", response_model=CountResponse)
def authorization_count(asset_key: str, registry: AuthorizationRegistry = Depends(get_registry)):
    return CountResponse(count=registry.get_asset_authorization_count(asset_key))


@app.get("/assets/{asset_key}/authorizations/index/{index}", response_model=AccountResponse)
def authorization_at_index(asset_key: str, index: int, registry: AuthorizationRegistry = Depends(get_registry)):
    return AccountResponse(account=registry.get_asset_authorization_at_index(asset_key, index))


@app.get("/assets/{asset_key}/authorizations/{account}", response_model=AuthorizationEntryResponse)
def get_authorization(asset_key: str, account: str, registry: AuthorizationRegistry = Depends(get_registry)):
    entry = registry.get_authorization_entry(asset_key, account)
    return AuthorizationEntryResponse(
        account=entry.account,
        role=entry.role,
        active=entry.active,
        expires_at=entry.expires_at
    )


@app.delete("/assets/{asset_key}/authorizations/{account}", response_model=MutationResponse)
def remove_authorization(asset_key: str, account: str, caller: str = Depends(caller_identity),
                         registry: AuthorizationRegistry = Depends(get_registry)):
    registry.remove_authorization(asset_key, account, caller)
    return MutationResponse(success=True, asset_key=asset_key)


# Access

@app.get("/assets/{asset_key}/can-access/{account}", response_model=AccessResponse)
def can_access(asset_key: str, account: str, registry: AuthorizationRegistry = Depends(get_registry)):
    """Read-only check; leaves no log record."""
    return AccessResponse(asset_key=asset_key, account=account, granted=registry.can_access(asset_key, account))


@app.post("/assets/{asset_key}/access", response_model=AccessResponse)
def get_access(asset_key: str, caller: str = Depends(caller_identity),
               registry: AuthorizationRegistry = Depends(get_registry)):
    """Access check for the calling identity, recorded on the log stream."""
    return AccessResponse(asset_key=asset_key, account=caller, granted=registry.get_access(asset_key, caller))


@app.post("/access-logs/batch", response_model=RecordedResponse)
def batch_log_access(req: BatchLogRequest, caller: str = Depends(caller_identity),
                     registry: AuthorizationRegistry = Depends(get_registry)):
    entries = [
        AccessLogEntry(account=e.account, asset_key=e.asset_key, timestamp=e.timestamp, granted=e.granted)
        for e in req.entries
    ]
    return RecordedResponse(recorded=registry.batch_log_access(entries, caller))


# Log stream

@app.get("/logs", response_model=LogListResponse)
def get_logs(after_seq: int = 0, asset_key: Optional[str] = None,
             events: Optional[List[str]] = Query(default=None),
             limit: int = Query(default=500, ge=1, le=1000),
             registry: AuthorizationRegistry = Depends(get_registry)):
    try:
        event_filter = [LogEvent(e) for e in events] if events else None
    except ValueError:
        logger.log_validation_error("get_logs", [f"unknown event in {events}"])
        raise HTTPException(status_code=400, detail=f"Unknown event type in: {events}")

    records = registry.get_log_records(after_seq, asset_key, event_filter, limit)
    return LogListResponse(records=[LogRecordModel(**record.to_dict()) for record in records])


@app.get("/logs/head", response_model=HeadResponse)
def log_head(registry: AuthorizationRegistry = Depends(get_registry)):
    return HeadResponse(head_seq=registry.head_seq())


@app.get("/logs/verify", response_model=VerifyResponse)
def verify_logs(registry: AuthorizationRegistry = Depends(get_registry)):
    """Recompute the log hash chain."""
    valid, first_bad_seq = registry.verify_log_chain()
    return VerifyResponse(valid=valid, first_bad_seq=first_bad_seq)
