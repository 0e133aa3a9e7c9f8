from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from orderdesk import daily_stats
from orderdesk.database import get_db
from orderdesk.schemas import DailyStatsResponse, DailySummaryResponse

router = APIRouter(prefix="/api/stats", tags=["stats"])

@router.get("/", response_model=DailyStatsResponse)
def get_stats(db: Session = Depends(get_db)):
    return daily_stats.get_today_stats(db)

@router.get("/daily", response_model=DailySummaryResponse)
def get_daily_summary(db: Session = Depends(get_db)):
    return daily_stats.get_daily_summary(db)
