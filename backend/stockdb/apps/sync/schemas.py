from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from . import models


class SourceBase(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=128)
    source_type: str = Field(..., min_length=1, max_length=32)
    endpoint_url: Optional[str] = Field(None, max_length=512)
    auth_type: models.SourceAuthType = models.SourceAuthType.NONE
    field_map: Optional[Dict[str, Any]] = None
    create_missing_items: bool = False
    entry_type: Literal["sync", "restock"] = "sync"
    max_concurrency: Optional[int] = Field(None, ge=1, le=32)
    sync_interval_minutes: Optional[int] = Field(None, ge=1)
    is_active: bool = True
    push_enabled: bool = False
    push_url: Optional[str] = Field(None, max_length=512)


class SourceCreate(SourceBase):
    source_key: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_\-]*$")
    credentials: Optional[Dict[str, str]] = None
    webhook_secret: Optional[str] = Field(None, min_length=8)


class SourceUpdate(BaseModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=128)
    endpoint_url: Optional[str] = Field(None, max_length=512)
    auth_type: Optional[models.SourceAuthType] = None
    credentials: Optional[Dict[str, str]] = None
    webhook_secret: Optional[str] = Field(None, min_length=8)
    field_map: Optional[Dict[str, Any]] = None
    create_missing_items: Optional[bool] = None
    entry_type: Optional[Literal["sync", "restock"]] = None
    max_concurrency: Optional[int] = Field(None, ge=1, le=32)
    sync_interval_minutes: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None
    push_enabled: Optional[bool] = None
    push_url: Optional[str] = Field(None, max_length=512)


class SourceRead(SourceBase):
    id: str
    source_key: str
    credentials: Dict[str, Any] = Field(default_factory=dict)
    has_webhook_secret: bool = False
    last_synced_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_pushed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class RunCreateRequest(BaseModel):
    # Uploaded catalog body; when omitted the source endpoint is fetched.
    payload: Optional[Any] = None


class SyncRunRead(BaseModel):
    id: str
    source_id: str
    trigger: models.SyncTrigger
    status: models.SyncRunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_records: int
    created: int
    updated: int
    failed: int
    skipped: int
    entries_written: int
    error_json: Optional[Dict[str, Any]] = None
    failures_json: Optional[List[Dict[str, Any]]] = None
    triggered_by: Optional[str] = None

    class Config:
        from_attributes = True


class SyncRunPage(BaseModel):
    total: int
    limit: int
    offset: int
    runs: List[SyncRunRead]


class RunCancelRead(BaseModel):
    run_id: str
    cancelled: bool


class ConnectionTestRead(BaseModel):
    ok: bool
    status: Optional[int] = None
    response_time_ms: int
    error_code: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class WebhookResultRead(BaseModel):
    event_id: str
    event_type: str
    duplicate: bool
    processed: bool
    run_id: Optional[str] = None
    reason: Optional[str] = None
    summary: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True


class SyncAlertRead(BaseModel):
    kind: str
    source_id: str
    source_key: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True


class PushRequest(BaseModel):
    # Limit the push to these stock items; all active tracked items otherwise.
    item_ids: Optional[List[int]] = Field(None, min_length=1, max_length=1000)


class PushFailureRead(BaseModel):
    item_id: int
    sku: str
    code: str
    message: str


class PushResultRead(BaseModel):
    source_id: str
    total: int
    successful: int
    failed: int
    skipped: int
    errors: List[PushFailureRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class SourceTransactionRead(BaseModel):
    id: str
    source_id: str
    run_id: Optional[str] = None
    transaction_type: str
    direction: models.TransactionDirection
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    status: models.TransactionStatus
    request_json: Optional[Dict[str, Any]] = None
    response_status: Optional[int] = None
    error: Optional[str] = None
    elapsed_ms: Optional[int] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SourceTransactionPage(BaseModel):
    total: int
    limit: int
    offset: int
    transactions: List[SourceTransactionRead]
