"""
Calendar API endpoint (month/week grid with appointments and occurrences)

The grid is built in the threadpool. A client disconnect or the configured
query timeout cancels the expansion through a CancellationToken.
"""
import asyncio
import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from estatecrm.api.deps import get_app_settings, get_current_user, get_db
from estatecrm.application.calendar import CalendarQuery
from estatecrm.config import Settings
from estatecrm.domain.recurrence import CancellationToken
from estatecrm.domain.time_grid import ViewKind
from estatecrm.infrastructure.db.models import User


router = APIRouter(prefix="/api/v1/calendar", tags=["calendar"])

DISCONNECT_POLL_SECONDS = 0.1
logger = logging.getLogger(__name__)


class CalendarItemResponse(BaseModel):
    appointment_id: int
    sequence_index: int | None
    parent_appointment_id: int | None
    title: str
    type: str
    status: str
    start: datetime
    end: datetime
    is_occurrence: bool


class CalendarDayResponse(BaseModel):
    date: date
    in_month: bool
    items: list[CalendarItemResponse]


class CalendarResponse(BaseModel):
    view: ViewKind
    reference: date
    timezone: str
    days: list[CalendarDayResponse]
    truncated_series: list[int]


async def run_cancellable(request: Request, token: CancellationToken, timeout: float, func, *args):
    """
    Run `func` in the threadpool, cancelling `token` when the client goes away
    or `timeout` seconds pass. Waits for `func` to return or raise either way.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    work = asyncio.ensure_future(run_in_threadpool(func, *args))
    while True:
        done, _ = await asyncio.wait({work}, timeout=DISCONNECT_POLL_SECONDS)
        if done:
            return work.result()
        if token.cancelled:
            continue
        if loop.time() >= deadline:
            logger.warning("Calendar query exceeded %.1fs, cancelling", timeout)
            token.cancel()
        elif await request.is_disconnected():
            logger.info("Client disconnected, cancelling calendar query")
            token.cancel()


@router.get("/", response_model=CalendarResponse)
async def get_calendar(
    request: Request,
    reference: date,
    view: ViewKind = ViewKind.MONTH,
    tz: str | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
):
    """Whole-week grid around `reference`; days are bucketed in `tz` (default: the user's zone)"""
    query = CalendarQuery(
        db,
        week_start=settings.CALENDAR_WEEK_START,
        safety_limit=settings.RECURRENCE_SAFETY_LIMIT,
    )
    token = CancellationToken()
    result = await run_cancellable(
        request, token, settings.CALENDAR_QUERY_TIMEOUT_SECONDS,
        query.execute, user.id, reference, view, tz or user.timezone or settings.TIMEZONE, token,
    )

    return CalendarResponse(
        view=result.view,
        reference=result.reference,
        timezone=result.timezone,
        truncated_series=result.truncated_series,
        days=[
            CalendarDayResponse(
                date=day.date,
                in_month=day.in_month,
                items=[
                    CalendarItemResponse(
                        appointment_id=item.appointment_id,
                        sequence_index=item.sequence_index,
                        parent_appointment_id=item.parent_appointment_id,
                        title=item.title,
                        type=item.type,
                        status=item.status,
                        start=item.start,
                        end=item.end,
                        is_occurrence=item.is_occurrence,
                    )
                    for item in day.items
                ],
            )
            for day in result.days
        ],
    )
