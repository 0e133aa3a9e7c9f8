"""
Low-inventory alerting with a cooldown.

The cooldown lives in an ``AlertState`` held by the monitor for the life of
the process. Each replica keeps its own, so with several replicas staff may
see one alert per replica per cooldown window.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from orderdesk.config import settings
from orderdesk.inventory import get_inventory_stats
from orderdesk.models import utcnow
from orderdesk.schemas import AlertCheckResponse, InventoryStats
from orderdesk.transport import ChatTransport, best_effort

logger = logging.getLogger(__name__)


@dataclass
class AlertState:
    cooldown: timedelta
    last_sent_at: Optional[datetime] = None

    def remaining(self, now: datetime) -> timedelta:
        if self.last_sent_at is None:
            return timedelta(0)
        return max(timedelta(0), self.last_sent_at + self.cooldown - now)


def _alert_message(stats: InventoryStats) -> str:
    if stats.unused == 0:
        return (
            "🚨 CARD INVENTORY EMPTY! @everyone **URGENT:** No cards available! "
            "Orders cannot be processed until cards are added."
        )
    return (
        "⚠️ CARD INVENTORY LOW! @everyone Card inventory is running low. "
        "Please refill soon to avoid order processing delays."
    )


class InventoryAlertMonitor:
    def __init__(self, threshold: Optional[int] = None, cooldown_seconds: Optional[int] = None,
                 channel_id: Optional[str] = None, clock: Callable[[], datetime] = utcnow):
        self.threshold = settings.INVENTORY_LOW_THRESHOLD if threshold is None else threshold
        cooldown = settings.INVENTORY_ALERT_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self.state = AlertState(cooldown=timedelta(seconds=cooldown))
        self.channel_id = channel_id or settings.INVENTORY_ALERT_CHANNEL_ID
        self.clock = clock

    async def check_inventory_and_alert(self, db: Session, transport: ChatTransport,
                                        force_bypass_cooldown: bool = False) -> AlertCheckResponse:
        """Alert when unused cards are at or below the threshold.

        A forced check skips the cooldown for this one evaluation; the
        cooldown timestamp only moves when an alert actually went out.
        """
        stats = await run_in_threadpool(get_inventory_stats, db)
        low = stats.unused <= self.threshold
        logger.info(f"[Card Monitor] Unused: {stats.unused}, Used: {stats.used}, Total: {stats.total}")

        if not low:
            logger.info(f"✅ [Card Monitor] Inventory healthy ({stats.unused} unused cards)")
            return AlertCheckResponse(inventory=stats, low=False, alert_sent=False)

        now = self.clock()
        remaining = self.state.remaining(now)
        if remaining and not force_bypass_cooldown:
            logger.info(
                f"⏱️ [Card Monitor] Inventory low but alert on cooldown "
                f"({round(remaining.total_seconds() / 60)} minutes remaining)"
            )
            return AlertCheckResponse(
                inventory=stats,
                low=True,
                alert_sent=False,
                cooldown_remaining_seconds=int(remaining.total_seconds()),
            )

        # Take the window before awaiting delivery so overlapping checks see it
        previous = self.state.last_sent_at
        self.state.last_sent_at = now
        sent = await best_effort(
            "Sending low inventory alert",
            transport.send_message(
                self.channel_id,
                _alert_message(stats),
                {"🟢 Unused": str(stats.unused), "🔴 Used": str(stats.used), "📊 Total": str(stats.total)},
            ),
        )
        if sent:
            logger.info(f"🚨 [Card Monitor] Low inventory alert sent to {self.channel_id}")
        elif self.state.last_sent_at == now:
            self.state.last_sent_at = previous

        return AlertCheckResponse(
            inventory=stats,
            low=True,
            alert_sent=sent,
            cooldown_remaining_seconds=int(self.state.remaining(now).total_seconds()),
        )


monitor = InventoryAlertMonitor()
