from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from orderdesk import inventory, tickets
from orderdesk.database import get_db
from orderdesk.models import OrderStatus
from orderdesk.schemas import (
    ClaimRequest,
    CloseRequest,
    CloseResponse,
    OrderResponse,
    ResolveRequest,
    ResolveResponse,
    TicketPollResponse,
)
from orderdesk.transport import ChatTransport, delete_channel_later, get_transport

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("/tickets/poll", response_model=TicketPollResponse)
async def poll_tickets(db: Session = Depends(get_db), transport: ChatTransport = Depends(get_transport)):
    """Run one ticket-creation cycle now instead of waiting for the scheduler."""
    return await tickets.create_pending_tickets(db, transport)


@router.get("/{order_number}", response_model=OrderResponse)
def get_order(order_number: str, db: Session = Depends(get_db)):
    return tickets.get_order(db, order_number)


@router.post("/{order_number}/ticket", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(order_number: str, db: Session = Depends(get_db),
                        transport: ChatTransport = Depends(get_transport)):
    order = await run_in_threadpool(tickets.get_order, db, order_number)
    if order.status != OrderStatus.PAYMENT_VERIFIED.value or order.ticket_channel_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order #{order_number} is not waiting for a ticket (status: {order.status})"
        )

    channel_ref = await tickets.create_ticket_for_order(db, order, transport)
    if channel_ref is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order #{order_number} was ticketed concurrently"
        )

    await run_in_threadpool(db.refresh, order)
    return order


@router.post("/{order_number}/claim", response_model=OrderResponse)
async def claim_order(order_number: str, request: ClaimRequest, db: Session = Depends(get_db),
                      transport: ChatTransport = Depends(get_transport)):
    return await tickets.claim_ticket(db, order_number, request.staff, transport)


@router.post("/{order_number}/assign-card", response_model=OrderResponse)
def assign_card(order_number: str, db: Session = Depends(get_db)):
    return inventory.assign_to_order(db, order_number)


@router.post("/{order_number}/resolve", response_model=ResolveResponse)
async def resolve_order(order_number: str, request: ResolveRequest, db: Session = Depends(get_db),
                        transport: ChatTransport = Depends(get_transport)):
    return await tickets.resolve_ticket(db, order_number, request.outcome, transport, staff=request.staff)


@router.post("/{order_number}/close", response_model=CloseResponse)
async def close_order_ticket(order_number: str, background_tasks: BackgroundTasks,
                             request: CloseRequest = CloseRequest(), db: Session = Depends(get_db),
                             transport: ChatTransport = Depends(get_transport)):
    result = await tickets.close_ticket(db, order_number, transport, force=request.force)
    if result.closed:
        background_tasks.add_task(
            delete_channel_later, transport, result.ticket_channel_id, result.delete_in_seconds
        )
    return result
