from sqlalchemy.orm import Session
from . import models, schemas
from .studyday import ensure_local, now_local
from datetime import datetime
from typing import List, Optional


def get_student(db: Session, student_id: str) -> Optional[models.Student]:
    return db.query(models.Student).filter(models.Student.id == student_id).first()


def get_student_branch_id(db: Session, student_id: str) -> Optional[str]:
    student = get_student(db, student_id)
    return student.branch_id if student else None


def add_event(db: Session, student_id: str, type: models.EventType, timestamp: Optional[datetime] = None,
              source: models.EventSource = models.EventSource.MANUAL) -> models.AttendanceEvent:
    """Stage an attendance event; the caller commits."""
    ev = models.AttendanceEvent(
        student_id=student_id, type=type.value, timestamp=ensure_local(timestamp) or now_local(), source=source.value
    )
    db.add(ev)
    return ev


def record_event(db: Session, student_id: str, type: models.EventType, timestamp: Optional[datetime] = None,
                 source: models.EventSource = models.EventSource.MANUAL) -> models.AttendanceEvent:
    ev = add_event(db, student_id, type, timestamp, source)
    db.commit()
    db.refresh(ev)
    return ev


def list_events(db: Session, student_id: str, start: datetime, end: datetime,
                end_inclusive: bool = True) -> List[models.AttendanceEvent]:
    ts = models.AttendanceEvent.timestamp
    upper = ts <= end if end_inclusive else ts < end
    return db.query(models.AttendanceEvent).filter(
        models.AttendanceEvent.student_id == student_id,
        ts >= start,
        upper,
    ).order_by(ts.asc()).all()


def last_event_of_type(db: Session, student_id: str, type: models.EventType,
                       start: datetime, end: datetime) -> Optional[models.AttendanceEvent]:
    ts = models.AttendanceEvent.timestamp
    return db.query(models.AttendanceEvent).filter(
        models.AttendanceEvent.student_id == student_id,
        models.AttendanceEvent.type == type.value,
        ts >= start,
        ts <= end,
    ).order_by(ts.desc()).first()


def get_current_subject(db: Session, student_id: str) -> Optional[models.Subject]:
    return db.query(models.Subject).filter_by(student_id=student_id, is_current=True).first()


def close_current_subject(db: Session, student_id: str, as_of: datetime) -> int:
    """End whatever subject is marked current; the caller commits."""
    subjects = db.query(models.Subject).filter_by(student_id=student_id, is_current=True).all()
    for subject in subjects:
        subject.is_current = False
        subject.ended_at = ensure_local(as_of)
    return len(subjects)


def get_mandatory_time(db: Session, branch_id: str, date_str: str) -> schemas.MandatoryWindow:
    """Mandatory attendance window of a branch on a study date.

    Custom times on the date assignment win over the date type defaults. A date
    without an assignment has no window.
    """
    assignment = db.query(models.DateAssignment).filter(
        models.DateAssignment.branch_id == branch_id,
        models.DateAssignment.date == date_str,
    ).first()
    if not assignment or not assignment.date_type:
        return schemas.MandatoryWindow()
    date_type = assignment.date_type
    return schemas.MandatoryWindow(
        start_time=assignment.custom_start_time or date_type.default_start_time,
        end_time=assignment.custom_end_time or date_type.default_end_time,
        date_type_name=date_type.name,
    )


def list_points(db: Session, student_id: str, point_type: Optional[str] = None):
    q = db.query(models.Point).filter(models.Point.student_id == student_id)
    if point_type:
        q = q.filter(models.Point.type == point_type)
    return q.order_by(models.Point.created_at.desc()).all()


def list_notifications(db: Session, student_id: str):
    return db.query(models.StudentNotification).filter(
        models.StudentNotification.student_id == student_id
    ).order_by(models.StudentNotification.id.desc()).all()
