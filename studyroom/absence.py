"""Absence schedules and the exemption check.

A student registers the times they are legitimately away (academy classes,
hospital visits, ...). Approved, active schedules suppress the automatic
late-arrival and early-departure penalties while the check time falls inside
the schedule's window widened by ``buffer_minutes`` on both sides.

Schedules are either weekly (``day_of_week`` with optional ``valid_from`` /
``valid_until``) or one-off (``specific_date``). Day indices are 0=Sunday.
"""

from datetime import datetime, date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .app_logging import get_logger
from .config import Config
from .studyday import at_clock, day_index, ensure_local, now_local, parse_clock

logger = get_logger("studyroom.absence")

STORE_ERROR = "부재 일정 처리 중 오류가 발생했습니다."
NOT_FOUND = "부재 일정을 찾을 수 없습니다."

# columns a generic update may touch; is_active only changes through toggle_schedule
_EDITABLE = {
    "title", "description", "is_recurring", "day_of_week", "start_time", "end_time",
    "date_type", "valid_from", "valid_until", "specific_date", "buffer_minutes",
}
_DATE_TYPES = {t.value for t in models.ScheduleDateType}


def _parse_date(value: str) -> date:
    return date.fromisoformat(value)


def validate_schedule(fields: Dict[str, Any]) -> Optional[str]:
    """Return an error message for an invalid schedule, ``None`` when it is fine."""
    if not (fields.get("title") or "").strip():
        return "제목을 입력해주세요."
    if fields.get("is_recurring") is None:
        return "반복 여부를 선택해주세요."
    try:
        start = parse_clock(fields["start_time"])
        end = parse_clock(fields["end_time"])
    except (KeyError, TypeError, ValueError, AttributeError):
        return "시간 형식이 올바르지 않습니다."
    if start[0] > 23 or end[0] > 23:
        return "시간 형식이 올바르지 않습니다."
    if end <= start:
        return "종료 시간은 시작 시간보다 늦어야 합니다."
    if fields.get("date_type") not in _DATE_TYPES:
        return "적용 날짜 유형이 올바르지 않습니다."
    buffer_minutes = fields.get("buffer_minutes")
    if buffer_minutes is not None and buffer_minutes < 0:
        return "버퍼 시간은 0분 이상이어야 합니다."

    if fields.get("is_recurring"):
        days = fields.get("day_of_week") or []
        if not days:
            return "반복 요일을 하나 이상 선택해주세요."
        if any(not isinstance(d, int) or not 0 <= d <= 6 for d in days):
            return "요일 값이 올바르지 않습니다."
        try:
            valid_from = _parse_date(fields["valid_from"]) if fields.get("valid_from") else None
            valid_until = _parse_date(fields["valid_until"]) if fields.get("valid_until") else None
        except ValueError:
            return "날짜 형식이 올바르지 않습니다."
        if valid_from and valid_until and valid_until < valid_from:
            return "유효 기간이 올바르지 않습니다."
    else:
        if not fields.get("specific_date"):
            return "날짜를 선택해주세요."
        try:
            _parse_date(fields["specific_date"])
        except ValueError:
            return "날짜 형식이 올바르지 않습니다."
    return None


def _normalise(fields: Dict[str, Any]) -> Dict[str, Any]:
    # keep recurrence_type in step with is_recurring and drop fields the other kind ignores
    if fields.get("is_recurring"):
        fields["recurrence_type"] = models.RecurrenceType.WEEKLY.value
        fields["specific_date"] = None
        fields["day_of_week"] = sorted(set(fields.get("day_of_week") or []))
    else:
        fields["recurrence_type"] = models.RecurrenceType.ONE_TIME.value
        fields["day_of_week"] = None
        fields["valid_from"] = None
        fields["valid_until"] = None
    if isinstance(fields.get("date_type"), models.ScheduleDateType):
        fields["date_type"] = fields["date_type"].value
    return fields


def _to_out(schedule: models.AbsenceSchedule, student_name: Optional[str] = None) -> schemas.AbsenceScheduleOut:
    out = schemas.AbsenceScheduleOut.model_validate(schedule)
    out.student_name = student_name
    return out


def _failure(message: str) -> schemas.ActionResult:
    return schemas.ActionResult(success=False, error=message)


def create_schedule(db: Session, student_id: str, data: schemas.AbsenceScheduleCreate,
                    actor: schemas.Actor) -> schemas.ActionResult:
    fields = data.model_dump()
    if fields.get("buffer_minutes") is None:
        fields["buffer_minutes"] = Config.ABSENCE_BUFFER_MINUTES
    fields["date_type"] = fields.get("date_type") or models.ScheduleDateType.ALL
    fields = _normalise(fields)
    error = validate_schedule(fields)
    if error:
        return _failure(error)

    schedule = models.AbsenceSchedule(student_id=student_id, is_active=True, created_by=actor.id, **fields)
    if actor.user_type == models.UserType.STUDENT:
        schedule.status = models.ScheduleStatus.PENDING.value
    else:
        # registered by a parent or admin: no approval round-trip
        schedule.status = models.ScheduleStatus.APPROVED.value
        schedule.approved_by = actor.id
        schedule.approved_at = now_local()
    try:
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("failed to create absence schedule", extra={"student_id": student_id})
        return _failure(STORE_ERROR)
    logger.info("absence schedule created", extra={
        "student_id": student_id, "schedule_id": schedule.id, "schedule_status": schedule.status
    })
    return schemas.ActionResult(success=True, data=_to_out(schedule))


def get_schedule(db: Session, schedule_id: str) -> Optional[models.AbsenceSchedule]:
    return db.query(models.AbsenceSchedule).filter(models.AbsenceSchedule.id == schedule_id).first()


def _commit(db: Session, message: str, **extra) -> Optional[schemas.ActionResult]:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(message, extra=extra)
        return _failure(STORE_ERROR)
    return None


def update_schedule(db: Session, schedule_id: str, changes: Dict[str, Any],
                    actor: schemas.Actor) -> schemas.ActionResult:
    """Apply a partial edit.

    ``status`` is never writable here. A student editing an approved schedule
    sends it back to ``pending`` for re-approval.
    """
    schedule = get_schedule(db, schedule_id)
    if not schedule:
        return _failure(NOT_FOUND)

    edited = {k: v for k, v in changes.items() if k in _EDITABLE}
    merged = {column: getattr(schedule, column) for column in _EDITABLE}
    merged.update(edited)
    if merged.get("buffer_minutes") is None:
        merged["buffer_minutes"] = Config.ABSENCE_BUFFER_MINUTES
    merged = _normalise(merged)
    error = validate_schedule(merged)
    if error:
        return _failure(error)

    for key, value in merged.items():
        setattr(schedule, key, value)
    if edited and actor.user_type == models.UserType.STUDENT \
            and schedule.status == models.ScheduleStatus.APPROVED.value:
        schedule.status = models.ScheduleStatus.PENDING.value
        schedule.approved_by = None
        schedule.approved_at = None
        logger.info("approved schedule edited by student, awaiting re-approval",
                    extra={"student_id": schedule.student_id, "schedule_id": schedule.id})
    failed = _commit(db, "failed to update absence schedule", schedule_id=schedule_id)
    if failed:
        return failed
    db.refresh(schedule)
    return schemas.ActionResult(success=True, data=_to_out(schedule))


def approve_schedule(db: Session, schedule_id: str, actor: schemas.Actor) -> schemas.ActionResult:
    schedule = get_schedule(db, schedule_id)
    if not schedule:
        return _failure(NOT_FOUND)
    if schedule.status != models.ScheduleStatus.PENDING.value:
        return _failure("대기 중인 부재 일정만 승인할 수 있습니다.")
    schedule.status = models.ScheduleStatus.APPROVED.value
    schedule.approved_by = actor.id
    schedule.approved_at = now_local()
    failed = _commit(db, "failed to approve absence schedule", schedule_id=schedule_id)
    if failed:
        return failed
    logger.info("absence schedule approved", extra={"schedule_id": schedule_id, "approved_by": actor.id})
    return schemas.ActionResult(success=True)


def reject_schedule(db: Session, schedule_id: str, actor: schemas.Actor) -> schemas.ActionResult:
    """Reject a pending schedule. Rejected schedules are deleted, not kept."""
    schedule = get_schedule(db, schedule_id)
    if not schedule:
        return _failure(NOT_FOUND)
    if schedule.status != models.ScheduleStatus.PENDING.value:
        return _failure("대기 중인 부재 일정만 거절할 수 있습니다.")
    student_id, title = schedule.student_id, schedule.title
    db.delete(schedule)
    failed = _commit(db, "failed to reject absence schedule", schedule_id=schedule_id)
    if failed:
        return failed
    logger.info("absence schedule rejected", extra={
        "schedule_id": schedule_id, "student_id": student_id, "title": title, "rejected_by": actor.id
    })
    return schemas.ActionResult(success=True)


def toggle_schedule(db: Session, schedule_id: str) -> schemas.ActionResult:
    schedule = get_schedule(db, schedule_id)
    if not schedule:
        return _failure(NOT_FOUND)
    schedule.is_active = not schedule.is_active
    failed = _commit(db, "failed to toggle absence schedule", schedule_id=schedule_id)
    if failed:
        return failed
    return schemas.ActionResult(success=True, data={"is_active": schedule.is_active})


def delete_schedule(db: Session, schedule_id: str) -> schemas.ActionResult:
    schedule = get_schedule(db, schedule_id)
    if not schedule:
        return _failure(NOT_FOUND)
    db.delete(schedule)
    failed = _commit(db, "failed to delete absence schedule", schedule_id=schedule_id)
    if failed:
        return failed
    return schemas.ActionResult(success=True)


def list_for_student(db: Session, student_id: str) -> List[models.AbsenceSchedule]:
    return db.query(models.AbsenceSchedule).filter(
        models.AbsenceSchedule.student_id == student_id
    ).order_by(models.AbsenceSchedule.created_at.desc()).all()


def list_pending_for_student(db: Session, student_id: str) -> List[models.AbsenceSchedule]:
    return db.query(models.AbsenceSchedule).filter(
        models.AbsenceSchedule.student_id == student_id,
        models.AbsenceSchedule.status == models.ScheduleStatus.PENDING.value,
    ).order_by(models.AbsenceSchedule.created_at.desc()).all()


def list_pending_for_branch(db: Session, branch_id: str) -> List[Tuple[models.AbsenceSchedule, str]]:
    rows = db.query(models.AbsenceSchedule, models.Student.name).join(
        models.Student, models.Student.id == models.AbsenceSchedule.student_id
    ).filter(
        models.Student.branch_id == branch_id,
        models.AbsenceSchedule.status == models.ScheduleStatus.PENDING.value,
    ).order_by(models.AbsenceSchedule.created_at.desc()).all()
    return [(schedule, name) for schedule, name in rows]


def list_all_approved_with_student_names(db: Session) -> List[Tuple[models.AbsenceSchedule, str]]:
    rows = db.query(models.AbsenceSchedule, models.Student.name).outerjoin(
        models.Student, models.Student.id == models.AbsenceSchedule.student_id
    ).filter(
        models.AbsenceSchedule.status == models.ScheduleStatus.APPROVED.value,
    ).order_by(models.AbsenceSchedule.created_at.desc()).all()
    return [(schedule, name or "알 수 없음") for schedule, name in rows]


def exemption_window(schedule: models.AbsenceSchedule, base_date: date) -> Tuple[datetime, datetime]:
    """Schedule window on ``base_date`` widened by its buffer on both sides."""
    # a zero/missing buffer falls back to the branch default
    buffer_minutes = schedule.buffer_minutes or Config.ABSENCE_BUFFER_MINUTES
    start = at_clock(base_date, schedule.start_time) - timedelta(minutes=buffer_minutes)
    end = at_clock(base_date, schedule.end_time) + timedelta(minutes=buffer_minutes)
    return start, end


def _within_validity(schedule: models.AbsenceSchedule, check_date: str) -> bool:
    if schedule.valid_from and check_date < schedule.valid_from:
        return False
    if schedule.valid_until and check_date > schedule.valid_until:
        return False
    return True


def _occurs_on(schedule: models.AbsenceSchedule, d: date) -> bool:
    if not schedule.is_recurring:
        return schedule.specific_date == d.isoformat()
    if not _within_validity(schedule, d.isoformat()):
        return False
    # no weekday set means every day
    if schedule.day_of_week and day_index(d) not in schedule.day_of_week:
        return False
    return True


def _date_type_applies(schedule: models.AbsenceSchedule, current_date_type: Optional[str]) -> bool:
    if not current_date_type or not schedule.date_type or schedule.date_type == models.ScheduleDateType.ALL.value:
        return True
    return schedule.date_type == current_date_type


def is_in_absence_period(db: Session, student_id: str, check_time: datetime,
                         current_date_type: Optional[str] = None) -> schemas.ExemptionOut:
    """Whether ``check_time`` falls inside an approved, active absence window.

    The first matching schedule wins. If the schedules cannot be loaded the
    answer is "not exempted".
    """
    check_time = ensure_local(check_time)
    try:
        candidates = db.query(models.AbsenceSchedule).filter(
            models.AbsenceSchedule.student_id == student_id,
            models.AbsenceSchedule.is_active.is_(True),
            models.AbsenceSchedule.status == models.ScheduleStatus.APPROVED.value,
        ).all()
    except SQLAlchemyError:
        logger.exception("failed to load absence schedules", extra={"student_id": student_id})
        return schemas.ExemptionOut(is_exempted=False)

    check_date = check_time.date()
    for schedule in candidates:
        if not _date_type_applies(schedule, current_date_type):
            continue
        if not _occurs_on(schedule, check_date):
            continue
        start, end = exemption_window(schedule, check_date)
        if start <= check_time <= end:
            return schemas.ExemptionOut(
                is_exempted=True, schedule=_to_out(schedule), exemption_start=start, exemption_end=end
            )
    return schemas.ExemptionOut(is_exempted=False)


def get_today_absence_schedules(db: Session, student_id: str,
                                now: Optional[datetime] = None) -> List[models.AbsenceSchedule]:
    """Active schedules occurring today, for display (no time-of-day test)."""
    today = (ensure_local(now) or now_local()).date()
    try:
        schedules = db.query(models.AbsenceSchedule).filter(
            models.AbsenceSchedule.student_id == student_id,
            models.AbsenceSchedule.is_active.is_(True),
        ).all()
    except SQLAlchemyError:
        logger.exception("failed to load absence schedules", extra={"student_id": student_id})
        return []
    return [s for s in schedules if _occurs_on(s, today)]
