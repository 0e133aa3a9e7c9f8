from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from orderdesk.models import Outcome

class OrderResponse(BaseModel):
    id: int
    order_number: str
    user_id: Optional[int]
    customer_name: Optional[str]
    charge_cents: int
    payment_method: str
    status: str
    charged: bool
    ticket_channel_id: Optional[str]
    claimed_by: Optional[str]
    assigned_card_id: Optional[int]
    created_at: Optional[datetime]
    completed_at: Optional[datetime]
    ticket_closed_at: Optional[datetime]

    class Config:
        from_attributes = True

class ClaimRequest(BaseModel):
    staff: str

class ResolveRequest(BaseModel):
    outcome: Outcome
    staff: Optional[str] = None

class ResolveResponse(BaseModel):
    order_number: str
    outcome: Outcome
    status: str
    charged: bool
    charged_cents: int = 0
    balance_cents: Optional[int] = None
    already_complete: bool = False
    message: str

class CloseRequest(BaseModel):
    force: bool = False

class CloseResponse(BaseModel):
    order_number: str
    closed: bool
    message: str
    delete_in_seconds: Optional[float] = None
    ticket_channel_id: Optional[str] = None

class TicketPollResponse(BaseModel):
    created: List[str]
    failed: List[str]

class InventoryStats(BaseModel):
    unused: int
    used: int
    total: int
    low: bool = False

class BatchIngestRequest(BaseModel):
    lines: List[str] = Field(default_factory=list)

class IngestErrorItem(BaseModel):
    line_number: int
    card_string: str
    error: str

class BatchIngestResponse(BaseModel):
    added: int
    failed: int
    processed: int
    errors: List[IngestErrorItem]
    errors_omitted: int = 0

class FormatErrorItem(BaseModel):
    line_number: int
    raw: str
    reason: str

class DuplicateItem(BaseModel):
    line_number: int
    card_number: str
    source: str  # "batch" | "inventory"
    first_line_number: Optional[int] = None

class StrictIngestResponse(BaseModel):
    success: bool
    added: int
    format_errors: List[FormatErrorItem]
    duplicates: List[DuplicateItem]
    format_errors_omitted: int = 0
    duplicates_omitted: int = 0

class UploadOpenResponse(BaseModel):
    upload_id: str
    expires_in_seconds: int

class DailyStatsResponse(BaseModel):
    date: str
    success_count: int
    failure_count: int
    total: int
    success_rate: float

class DailySummaryResponse(BaseModel):
    today: DailyStatsResponse
    inventory: InventoryStats
    queued_orders: int

class AlertCheckResponse(BaseModel):
    inventory: InventoryStats
    low: bool
    alert_sent: bool
    cooldown_remaining_seconds: int = 0
