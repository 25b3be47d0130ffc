"""
Request and response models for the registry HTTP API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any


class CreateAssetRequest(BaseModel):
    asset_key: str
    description: str

    @field_validator('asset_key')
    @classmethod
    def asset_key_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('asset_key cannot be empty')
        return v

    @field_validator('description')
    @classmethod
    def description_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('description cannot be empty')
        return v


class AuthorizationRequest(BaseModel):
    account: str
    role: str
    duration: int = 0

    @field_validator('account')
    @classmethod
    def account_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('account cannot be empty')
        return v

    @field_validator('role')
    @classmethod
    def role_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('role cannot be empty')
        return v


class BatchAuthorizationRequest(BaseModel):
    accounts: List[str]
    roles: List[str]
    durations: Optional[List[int]] = None  # omitted = plain batch add


class BatchRemoveRequest(BaseModel):
    accounts: List[str]


class TransferOwnershipRequest(BaseModel):
    new_owner: str

    @field_validator('new_owner')
    @classmethod
    def new_owner_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('new_owner cannot be empty')
        return v


class AccessLogEntryModel(BaseModel):
    account: str
    asset_key: str
    timestamp: int
    granted: bool


class BatchLogRequest(BaseModel):
    entries: List[AccessLogEntryModel]


class MutationResponse(BaseModel):
    success: bool
    asset_key: str


class AssetResponse(BaseModel):
    key: str
    owner: str
    description: str
    initialized: bool
    authorization_count: int


class AuthorizationEntryResponse(BaseModel):
    account: str
    role: str
    active: bool
    expires_at: int


class AccountResponse(BaseModel):
    account: str


class AssetKeyResponse(BaseModel):
    asset_key: str


class CountResponse(BaseModel):
    count: int


class AccessResponse(BaseModel):
    asset_key: str
    account: str
    granted: bool


class RecordedResponse(BaseModel):
    recorded: int


class LogRecordModel(BaseModel):
    seq: int
    tx_id: str
    event: str
    asset_key: str
    account: str
    ts: int
    data: Dict[str, Any]
    prev_hash: str
    record_hash: str


class LogListResponse(BaseModel):
    records: List[LogRecordModel]


class HeadResponse(BaseModel):
    head_seq: int


class VerifyResponse(BaseModel):
    valid: bool
    first_bad_seq: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    asset_count: int
