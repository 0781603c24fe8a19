from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from . import models


class StockItemBase(BaseModel):
    sku: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=128)
    price: Optional[Decimal] = None
    parent_id: Optional[int] = None
    track_inventory: bool = True
    allow_backorder: bool = False
    low_stock_threshold: int = Field(5, ge=0)


class StockItemCreate(StockItemBase):
    opening_quantity: int = 0


class StockItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=128)
    price: Optional[Decimal] = None
    track_inventory: Optional[bool] = None
    allow_backorder: Optional[bool] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)


class StockItemRead(StockItemBase):
    id: int
    current_quantity: int
    ledger_sequence: int
    is_active: bool
    is_placeholder: bool
    is_low_stock: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StockQuantityRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    entry_type: Optional[models.LedgerEntryTypeEnum] = None
    reference_type: Optional[str] = Field(None, max_length=64)
    reference_id: Optional[str] = Field(None, max_length=64)
    note: Optional[str] = None


class StockSetRequest(BaseModel):
    target_quantity: int
    entry_type: models.LedgerEntryTypeEnum = models.LedgerEntryTypeEnum.ADJUSTMENT
    reference_type: Optional[str] = Field(None, max_length=64)
    reference_id: Optional[str] = Field(None, max_length=64)
    note: Optional[str] = None


class StockAdjustRequest(BaseModel):
    quantity_change: int
    note: Optional[str] = None


class AdjustmentResultRead(BaseModel):
    item_id: int
    sku: Optional[str] = None
    before: int
    after: int
    delta: int
    entry_type: Optional[models.LedgerEntryTypeEnum] = None
    entry_id: Optional[int] = None
    skipped: bool = False
    reason: Optional[str] = None

    class Config:
        from_attributes = True


class StockLineIn(BaseModel):
    item_id: int
    quantity: int = Field(..., gt=0)


class StockTargetIn(BaseModel):
    item_id: int
    target_quantity: int


class OrderLinesRequest(BaseModel):
    lines: List[StockLineIn] = Field(..., min_length=1)
    note: Optional[str] = None


class BulkImportRequest(BaseModel):
    updates: List[StockTargetIn] = Field(..., min_length=1)
    reference_id: Optional[str] = Field(None, max_length=64)
    note: Optional[str] = None


class BatchLineRead(BaseModel):
    index: int
    item_id: int
    status: str
    before: Optional[int] = None
    after: Optional[int] = None
    delta: Optional[int] = None
    entry_id: Optional[int] = None
    error_code: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class BatchResultRead(BaseModel):
    ok: bool
    lines: List[BatchLineRead]

    class Config:
        from_attributes = True


class LedgerEntryRead(BaseModel):
    id: int
    item_id: int
    sequence: int
    delta_quantity: int
    quantity_before: int
    quantity_after: int
    entry_type: models.LedgerEntryTypeEnum
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    actor_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LedgerPageRead(BaseModel):
    item_id: int
    total: int
    limit: int
    offset: int
    entries: List[LedgerEntryRead]

    class Config:
        from_attributes = True


class LowStockItemRead(BaseModel):
    id: int
    sku: str
    name: str
    category: Optional[str] = None
    current_quantity: int
    low_stock_threshold: int

    class Config:
        from_attributes = True
