"""Attendance state and study time, derived from the event log.

Nothing stores a student's "current status". Every question is answered by
reading the study day's (or week's) events in timestamp order and folding
over them:

* ``check_in`` / ``break_end`` open a session,
* ``check_out`` / ``break_start`` close it and add its length to the total.

The fold never rejects a sequence; an out-of-place event (a ``break_start``
without a session, a double ``check_in``) simply contributes nothing.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .app_logging import get_logger
from .config import Config
from .studyday import ensure_local, now_local, study_date, study_day_bounds, week_bounds

logger = get_logger("studyroom.attendance")

EventType = models.EventType

_STATUS_AFTER = {
    EventType.CHECK_IN.value: models.AttendanceStatus.CHECKED_IN,
    EventType.CHECK_OUT.value: models.AttendanceStatus.CHECKED_OUT,
    EventType.BREAK_START.value: models.AttendanceStatus.ON_BREAK,
    EventType.BREAK_END.value: models.AttendanceStatus.CHECKED_IN,
}


def sessions(events: Iterable[models.AttendanceEvent]) -> Tuple[List[Tuple[datetime, datetime]], Optional[datetime]]:
    """Split ordered events into closed ``(start, end)`` sessions and the open session's start."""
    closed = []
    session_start: Optional[datetime] = None
    for ev in events:
        ts = ensure_local(ev.timestamp)
        if ev.type in (EventType.CHECK_IN.value, EventType.BREAK_END.value):
            session_start = ts
        elif ev.type in (EventType.CHECK_OUT.value, EventType.BREAK_START.value):
            if session_start is not None:
                closed.append((session_start, ts))
                session_start = None
    return closed, session_start


def replay(events: Iterable[models.AttendanceEvent]) -> Tuple[int, Optional[datetime]]:
    """Fold ordered events into ``(closed_seconds, open_session_start)``.

    Each closed session contributes its whole seconds. A session still open at
    the end of the log is returned separately and not counted.
    """
    closed, open_since = sessions(events)
    total_seconds = sum(int((end - start).total_seconds()) for start, end in closed)
    return total_seconds, open_since


def status_from_events(events: List[models.AttendanceEvent]) -> models.AttendanceStatus:
    if not events:
        return models.AttendanceStatus.CHECKED_OUT
    return _STATUS_AFTER.get(events[-1].type, models.AttendanceStatus.CHECKED_OUT)


def _today_events(db: Session, student_id: str, now: Optional[datetime]) -> List[models.AttendanceEvent]:
    start, end = study_day_bounds(study_date(now))
    return crud.list_events(db, student_id, start, end)


def get_today_attendance(db: Session, student_id: str, now: Optional[datetime] = None) -> schemas.TodayAttendanceOut:
    try:
        events = _today_events(db, student_id, now)
    except SQLAlchemyError:
        logger.exception("failed to load attendance", extra={"student_id": student_id})
        return schemas.TodayAttendanceOut(attendance=[], status=models.AttendanceStatus.CHECKED_OUT)
    return schemas.TodayAttendanceOut(
        attendance=[schemas.AttendanceEventOut.model_validate(ev) for ev in events],
        status=status_from_events(events),
    )


def get_today_status(db: Session, student_id: str, now: Optional[datetime] = None) -> models.AttendanceStatus:
    return get_today_attendance(db, student_id, now).status


def get_today_study_time(db: Session, student_id: str, now: Optional[datetime] = None) -> schemas.StudyTimeOut:
    """Closed study seconds of the study day plus the open session's start.

    The client adds the live part (now - ``check_in_time``) itself.
    """
    events = _today_events(db, student_id, now)
    total_seconds, open_since = replay(events)
    return schemas.StudyTimeOut(total_seconds=total_seconds, check_in_time=open_since)


def get_weekly_study_time(db: Session, student_id: str, now: Optional[datetime] = None) -> int:
    """Whole minutes studied this week, including a session still open at ``now``."""
    now = ensure_local(now) or now_local()
    start, end = week_bounds(now)
    events = crud.list_events(db, student_id, start, end, end_inclusive=False)

    closed, open_since = sessions(events)
    total = sum((end - start for start, end in closed), timedelta())
    if open_since is not None:
        total += now - open_since
    return int(total.total_seconds() // 60)


def get_weekly_progress(db: Session, student_id: str, now: Optional[datetime] = None) -> schemas.WeeklyProgressOut:
    student = crud.get_student(db, student_id)
    goal_hours = 0
    type_name = None
    if student and student.student_type:
        goal_hours = student.student_type.weekly_goal_hours or 0
        type_name = student.student_type.name

    actual_minutes = get_weekly_study_time(db, student_id, now)
    goal_minutes = goal_hours * 60
    progress = min(100, round(actual_minutes / goal_minutes * 100)) if goal_minutes > 0 else 0
    return schemas.WeeklyProgressOut(
        goal_hours=goal_hours, actual_minutes=actual_minutes,
        progress_percent=progress, student_type_name=type_name,
    )


def _append(db: Session, student_id: str, type: models.EventType, now: Optional[datetime],
            error: str) -> schemas.ActionResult:
    try:
        ev = crud.record_event(db, student_id, type, ensure_local(now) or now_local())
    except SQLAlchemyError:
        db.rollback()
        logger.exception("failed to record %s", type.value, extra={"student_id": student_id})
        return schemas.ActionResult(success=False, error=error)
    return schemas.ActionResult(success=True, data=schemas.AttendanceEventOut.model_validate(ev))


def check_in(db: Session, student_id: str, now: Optional[datetime] = None) -> schemas.ActionResult:
    return _append(db, student_id, EventType.CHECK_IN, now, "입실 처리에 실패했습니다.")


def check_out(db: Session, student_id: str, now: Optional[datetime] = None) -> schemas.ActionResult:
    """Record a checkout and end the current subject at the same instant."""
    now = ensure_local(now) or now_local()
    try:
        crud.close_current_subject(db, student_id, now)
        ev = crud.add_event(db, student_id, EventType.CHECK_OUT, now)
        db.commit()
        db.refresh(ev)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("failed to record check_out", extra={"student_id": student_id})
        return schemas.ActionResult(success=False, error="퇴실 처리에 실패했습니다.")
    return schemas.ActionResult(success=True, data=schemas.AttendanceEventOut.model_validate(ev))


def start_break(db: Session, student_id: str, now: Optional[datetime] = None) -> schemas.ActionResult:
    return _append(db, student_id, EventType.BREAK_START, now, "외출 처리에 실패했습니다.")


def end_break(db: Session, student_id: str, now: Optional[datetime] = None) -> schemas.ActionResult:
    """Return from a break.

    Up to ``GRACE_PERIOD_MINUTES`` the break is just a pause and a
    ``break_end`` is appended. A longer break is rewritten as a checkout at the
    moment the break began followed by a fresh check-in now, so the time away
    never bridges two sessions. The split is committed as one transaction.
    """
    now = ensure_local(now) or now_local()
    start, end = study_day_bounds(study_date(now))
    try:
        break_start = crud.last_event_of_type(db, student_id, EventType.BREAK_START, start, end)
    except SQLAlchemyError:
        logger.exception("failed to load break_start", extra={"student_id": student_id})
        return schemas.ActionResult(success=False, error="복귀 처리에 실패했습니다.")

    if break_start is not None:
        started = ensure_local(break_start.timestamp)
        elapsed_minutes = (now - started).total_seconds() / 60
        if elapsed_minutes > Config.GRACE_PERIOD_MINUTES:
            try:
                crud.close_current_subject(db, student_id, started)
                crud.add_event(db, student_id, EventType.CHECK_OUT, started)
                ev = crud.add_event(db, student_id, EventType.CHECK_IN, now)
                db.commit()
                db.refresh(ev)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("failed to split long break", extra={"student_id": student_id})
                return schemas.ActionResult(success=False, error="재입실 처리에 실패했습니다.")
            logger.info("long break converted to checkout and re-entry", extra={
                "student_id": student_id, "break_minutes": round(elapsed_minutes, 1)
            })
            return schemas.ActionResult(
                success=True, data=schemas.AttendanceEventOut.model_validate(ev), was_long_break=True
            )

    result = _append(db, student_id, EventType.BREAK_END, now, "복귀 처리에 실패했습니다.")
    if result.success:
        result.was_long_break = False
    return result
