import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from orderdesk.alerts import monitor
from orderdesk.config import settings
from orderdesk.database import SessionLocal
from orderdesk.errors import OrderDeskError
from orderdesk.tickets import create_pending_tickets
from orderdesk.transport import get_transport

log = logging.getLogger("orderdesk.scheduler")


async def poll_ticket_creation():
    db = SessionLocal()
    try:
        await create_pending_tickets(db, get_transport())
    except (OrderDeskError, SQLAlchemyError) as e:
        log.error(f"❌ [Ticket Poller] cycle failed: {e}")
    finally:
        await run_in_threadpool(db.close)


async def check_inventory():
    db = SessionLocal()
    try:
        await monitor.check_inventory_and_alert(db, get_transport())
    except (OrderDeskError, SQLAlchemyError) as e:
        log.error(f"❌ [Card Monitor] Error checking inventory: {e}")
    finally:
        await run_in_threadpool(db.close)


def start_periodic_tasks(scheduler: AsyncIOScheduler):
    """
    Registers the ticket poller and the inventory monitor.
    A slow cycle is never overlapped by the next one.
    """

    scheduler.add_job(
        poll_ticket_creation,
        "interval",
        seconds=settings.TICKET_POLL_INTERVAL_SECONDS,
        id="ticket_poller",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        check_inventory,
        "interval",
        seconds=settings.INVENTORY_CHECK_INTERVAL_SECONDS,
        id="inventory_monitor",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    log.info(
        f"📊 Periodic tasks registered: tickets every {settings.TICKET_POLL_INTERVAL_SECONDS}s, "
        f"inventory every {settings.INVENTORY_CHECK_INTERVAL_SECONDS // 60} minutes"
    )
