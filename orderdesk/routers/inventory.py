from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.orm import Session
from typing import Optional, Tuple

from orderdesk import inventory
from orderdesk.alerts import monitor
from orderdesk.batch_validator import StrictIngestResult, ingest_batch_strict
from orderdesk.config import settings
from orderdesk.database import get_db
from orderdesk.schemas import (
    AlertCheckResponse,
    BatchIngestRequest,
    BatchIngestResponse,
    DuplicateItem,
    FormatErrorItem,
    IngestErrorItem,
    InventoryStats,
    StrictIngestResponse,
    UploadOpenResponse,
)
from orderdesk.transport import ChatTransport, get_transport

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


class CardCreate(BaseModel):
    card: str


def _cap(items: list, limit: int) -> Tuple[list, int]:
    """Show at most ``limit`` report entries, count the rest."""
    return items[:limit], max(0, len(items) - limit)


def strict_response(result: StrictIngestResult, limit: Optional[int] = None) -> StrictIngestResponse:
    limit = settings.REPORT_MAX_ENTRIES if limit is None else limit
    format_errors, format_errors_omitted = _cap(result.format_errors, limit)
    duplicates, duplicates_omitted = _cap(result.duplicates, limit)
    return StrictIngestResponse(
        success=result.success,
        added=result.added,
        format_errors=[FormatErrorItem(line_number=e.line_number, raw=e.raw, reason=e.reason) for e in format_errors],
        duplicates=[
            DuplicateItem(
                line_number=d.line_number,
                card_number=d.card_number,
                source=d.source,
                first_line_number=d.first_line_number,
            )
            for d in duplicates
        ],
        format_errors_omitted=format_errors_omitted,
        duplicates_omitted=duplicates_omitted,
    )


@router.get("/stats", response_model=InventoryStats)
def get_stats(db: Session = Depends(get_db)):
    return inventory.get_inventory_stats(db)


@router.post("/cards", status_code=status.HTTP_201_CREATED)
def add_card(request: CardCreate, db: Session = Depends(get_db)):
    card = inventory.add_card(db, request.card)
    return {"id": card.id, "status": card.status, "last4": card.card_number[-4:]}


@router.post("/batch", response_model=BatchIngestResponse)
def ingest_batch(request: BatchIngestRequest, db: Session = Depends(get_db)):
    """Per-line ingestion: good lines are admitted even when others fail."""
    result = inventory.ingest_batch(db, request.lines)
    errors, omitted = _cap(result.errors, settings.REPORT_MAX_ENTRIES)
    return BatchIngestResponse(
        added=result.added,
        failed=result.failed,
        processed=result.processed,
        errors=[IngestErrorItem(line_number=e.line_number, card_string=e.card_string, error=e.error) for e in errors],
        errors_omitted=omitted,
    )


@router.post("/batch/strict", response_model=StrictIngestResponse)
def ingest_batch_strict_endpoint(request: BatchIngestRequest, db: Session = Depends(get_db)):
    """All-or-nothing ingestion: any format error or duplicate rejects the whole batch."""
    return strict_response(ingest_batch_strict(db, request.lines))


@router.post("/uploads", response_model=UploadOpenResponse, status_code=status.HTTP_201_CREATED)
def open_upload(opened_by: Optional[str] = None):
    upload_id = inventory.upload_sessions.open(opened_by)
    return UploadOpenResponse(upload_id=upload_id, expires_in_seconds=settings.UPLOAD_TIMEOUT_SECONDS)


@router.put("/uploads/{upload_id}", response_model=StrictIngestResponse)
def submit_upload(upload_id: str, request: BatchIngestRequest, db: Session = Depends(get_db)):
    inventory.upload_sessions.consume(upload_id)
    return strict_response(ingest_batch_strict(db, request.lines))


@router.post("/check", response_model=AlertCheckResponse)
async def check_inventory(force: bool = False, db: Session = Depends(get_db),
                          transport: ChatTransport = Depends(get_transport)):
    return await monitor.check_inventory_and_alert(db, transport, force_bypass_cooldown=force)
