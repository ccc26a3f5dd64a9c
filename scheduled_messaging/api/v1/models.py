"""
Pydantic models for API requests and responses.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from scheduled_messaging.models.database import MessageKind, ScheduledStatus, ProviderRole


class ScheduleMessageRequest(BaseModel):
    """Request model for scheduling a message."""
    owner_ref: str = Field(..., min_length=1, description="Requesting account reference")
    kind: MessageKind = Field(MessageKind.TEXT, description="Message kind")
    content: str = Field(..., description="Text body, or recording URL for audio")
    sender_id: Optional[str] = Field(None, description="Sender/caller identifier")
    recipients: List[str] = Field(..., min_length=1, description="Destination phone numbers")
    scheduled_at: datetime = Field(..., description="When the message becomes due (UTC if naive)")
    max_retries: Optional[int] = Field(None, ge=0, description="Delivery attempts before failing")

    @validator("recipients", pre=True)
    def split_recipients(cls, v):
        """Accept a comma separated string as well as a list."""
        if isinstance(v, str):
            return [r.strip() for r in v.split(",") if r.strip()]
        return v


class ScheduledMessageResponse(BaseModel):
    """Response model for a scheduled message."""
    id: UUID = Field(..., description="Scheduled message ID")
    owner_ref: str = Field(..., description="Requesting account reference")
    kind: MessageKind = Field(..., description="Message kind")
    content: str = Field(..., description="Message content")
    sender_id: str = Field(..., description="Sender identifier")
    recipients: List[str] = Field(default=[], description="Normalized recipients")
    recipient_count: int = Field(..., description="Number of recipients")
    scheduled_at: datetime = Field(..., description="Due time (UTC)")
    status: ScheduledStatus = Field(..., description="Lifecycle status")
    cost: Decimal = Field(..., description="Estimated, then actual, cost")
    retry_count: int = Field(..., description="Failed attempts so far")
    max_retries: int = Field(..., description="Attempt budget")
    error_message: Optional[str] = Field(None, description="Failure reason")
    provider: Optional[ProviderRole] = Field(None, description="Gateway variant that accepted the send")
    provider_name: Optional[str] = Field(None, description="Backend name")
    provider_message_id: Optional[str] = Field(None, description="Provider's message ID")
    accepted_count: Optional[int] = Field(None, description="Recipients accepted by the provider")
    rejected_count: Optional[int] = Field(None, description="Recipients rejected")
    processed_at: Optional[datetime] = Field(None, description="When the message was claimed")
    sent_at: Optional[datetime] = Field(None, description="When the provider accepted it")
    failed_at: Optional[datetime] = Field(None, description="When it failed for good")
    cancelled_at: Optional[datetime] = Field(None, description="When it was cancelled")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")

    class Config:
        from_attributes = True


class ScheduledMessageListResponse(BaseModel):
    """One page of an owner's scheduled messages."""
    items: List[ScheduledMessageResponse]
    total: int = Field(..., description="Messages matching the filters")
    page: int
    limit: int
    pages: int


class MessageUpdatesRequest(BaseModel):
    """Batch status lookup."""
    ids: List[UUID] = Field(..., min_length=1, description="Scheduled message IDs")
    owner_ref: Optional[str] = Field(None, description="Restrict to this account's messages")


class MessageUpdate(BaseModel):
    """Compact state of one scheduled message."""
    id: UUID
    status: ScheduledStatus
    retry_count: int
    error_message: Optional[str] = None
    provider: Optional[ProviderRole] = None
    provider_message_id: Optional[str] = None
    accepted_count: Optional[int] = None
    rejected_count: Optional[int] = None
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime

    class Config:
        from_attributes = True


class MessageUpdatesResponse(BaseModel):
    """States found for the requested IDs; unknown IDs are listed apart."""
    updates: List[MessageUpdate]
    missing: List[str] = Field(default=[], description="Requested IDs with no visible message")


class CostEstimateRequest(BaseModel):
    """Request model for a cost estimate."""
    kind: MessageKind = Field(MessageKind.TEXT, description="Message kind")
    content: str = Field("", description="Message content")
    recipients: List[str] = Field(..., min_length=1, description="Destination phone numbers")


class CostEstimateResponse(BaseModel):
    """Itemized cost estimate."""
    kind: MessageKind
    encoding: Optional[str] = Field(None, description="narrow or wide; text only")
    segments: int = Field(..., description="Billable units per recipient")
    recipient_count: int = Field(..., description="Valid recipients billed")
    destinations: Dict[str, int] = Field(default={}, description="Recipients per destination class")
    total_cost: Decimal


class DeliveryStatusResponse(BaseModel):
    """Provider-side delivery status."""
    provider_message_id: str
    status: str
    delivered_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    provider: Optional[str] = None
    error: Optional[str] = None
    timestamp: str


class ProcessingSummaryResponse(BaseModel):
    """Counts for one processing pass."""
    claimed: int
    sent: int
    partial: int
    retried: int
    failed: int
    errors: int


class DiagnosticsResponse(BaseModel):
    """Worker and queue diagnostics."""
    claimed: int = Field(..., description="Messages claimed by this worker since start")
    pending: int
    processing: int
    failed_last_24h: int


class ErrorResponse(BaseModel):
    """Response model for errors."""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str = Field(..., description="Health status")
    timestamp: datetime = Field(..., description="Check timestamp")
    checks: Dict[str, Dict[str, Any]] = Field(..., description="Individual check results")
