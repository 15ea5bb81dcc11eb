"""Automatic late-arrival / early-departure penalties.

After a check-in or checkout the API schedules one of the checks below as a
background task. A check compares the action time with the branch's mandatory
window for the study day, asks the exemption engine whether an approved
absence schedule covers the moment, and otherwise books a penalty point and
notifies the student. Failures here are logged and never reach the student.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import absence, crud, models, schemas
from .app_logging import get_logger
from .config import Config
from .logic import notify
from .studyday import at_clock, ensure_local, now_local, study_date

logger = get_logger("studyroom.penalties")

MandatoryResolver = Callable[[Session, str, str], schemas.MandatoryWindow]


async def give_auto_points(db: Session, student_id: str, point_type: models.PointType,
                           amount: int, reason: str) -> Optional[models.Point]:
    point = models.Point(
        student_id=student_id, admin_id=None, type=point_type.value, amount=amount, reason=reason, is_auto=True
    )
    db.add(point)
    db.commit()
    db.refresh(point)
    logger.info("auto point issued", extra={
        "student_id": student_id, "point_type": point_type.value, "amount": amount, "reason": reason
    })

    is_penalty = point_type == models.PointType.PENALTY
    await notify(
        db, student_id, "point",
        "벌점이 부여되었습니다" if is_penalty else "상점이 부여되었습니다",
        f"{reason} ({'-' if is_penalty else '+'}{amount}점)",
        link="/student/points",
    )
    return point


async def check_late_arrival(db: Session, student_id: str, now: Optional[datetime] = None,
                             resolver: MandatoryResolver = crud.get_mandatory_time) -> Optional[models.Point]:
    """Penalise a check-in after the mandatory start, unless exempted."""
    now = ensure_local(now) or now_local()
    branch_id = crud.get_student_branch_id(db, student_id)
    if not branch_id:
        return None
    day = study_date(now)
    mandatory = resolver(db, branch_id, day.isoformat())
    if not mandatory.start_time:
        return None
    if now <= at_clock(day, mandatory.start_time):
        return None

    exemption = absence.is_in_absence_period(db, student_id, now, mandatory.date_type_name)
    if exemption.is_exempted:
        logger.info("late arrival exempted by absence schedule", extra={
            "student_id": student_id, "schedule_id": exemption.schedule.id
        })
        return None
    return await give_auto_points(
        db, student_id, models.PointType.PENALTY, Config.LATE_PENALTY_AMOUNT, Config.LATE_PENALTY_REASON
    )


async def check_early_departure(db: Session, student_id: str, now: Optional[datetime] = None,
                                resolver: MandatoryResolver = crud.get_mandatory_time) -> Optional[models.Point]:
    """Penalise a checkout before the mandatory end, unless exempted.

    End times past midnight are written as ``25:30`` and land on the next
    calendar day.
    """
    now = ensure_local(now) or now_local()
    branch_id = crud.get_student_branch_id(db, student_id)
    if not branch_id:
        return None
    day = study_date(now)
    mandatory = resolver(db, branch_id, day.isoformat())
    if not mandatory.end_time:
        return None
    if now >= at_clock(day, mandatory.end_time):
        return None

    exemption = absence.is_in_absence_period(db, student_id, now, mandatory.date_type_name)
    if exemption.is_exempted:
        logger.info("early departure exempted by absence schedule", extra={
            "student_id": student_id, "schedule_id": exemption.schedule.id
        })
        return None
    return await give_auto_points(
        db, student_id, models.PointType.PENALTY, Config.EARLY_LEAVE_PENALTY_AMOUNT, Config.EARLY_LEAVE_PENALTY_REASON
    )


async def run_penalty_check(check, student_id: str, now: datetime, session_factory) -> None:
    """Background-task entry point: own session, every error logged and dropped."""
    db = session_factory()
    try:
        await check(db, student_id, now)
    except Exception:
        db.rollback()
        logger.exception("auto penalty check failed", extra={"student_id": student_id, "check": check.__name__})
    finally:
        db.close()
