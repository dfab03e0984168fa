"""
Pydantic schemas for request/response validation (Http/Requests).
"""
from pydantic import BaseModel, Field, validator
from typing import Optional, List
from datetime import datetime
from channelsync.models import ChannelProvider


class ConnectResponse(BaseModel):
    provider: str
    authorization_url: str


class ChannelAccountResponse(BaseModel):
    id: str
    provider: ChannelProvider
    external_shop_id: str
    shop_name: Optional[str] = None
    is_active: bool
    needs_reauth: bool
    token_expires_at: Optional[int] = None
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncRequest(BaseModel):
    min_modified_since: Optional[datetime] = None


class SyncErrorResponse(BaseModel):
    external_ref: Optional[str] = None
    kind: str
    message: str


class SyncResultResponse(BaseModel):
    channel_account_id: str
    success: bool
    total_fetched: int
    total_inserted: int
    total_updated: int
    total_skipped: int
    total_failed: int
    pages: int
    aborted: bool
    job_id: Optional[str] = None
    errors: List[SyncErrorResponse] = []


class FulfillmentRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=128)
    carrier: str = Field(..., min_length=1, max_length=64)
    tracking_url: Optional[str] = None

    @validator("tracking_number", "carrier")
    def strip_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class FulfillmentResponse(BaseModel):
    order_id: str
    external_order_id: str
    fulfillment_id: Optional[str] = None
    tracking_number: str
    carrier: str
    tracking_url: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
