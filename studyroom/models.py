import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON, UniqueConstraint, Text, Index
from sqlalchemy.orm import relationship

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class UserType(str, enum.Enum):
    STUDENT = "student"
    PARENT = "parent"
    ADMIN = "admin"


class EventType(str, enum.Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    BREAK_START = "break_start"
    BREAK_END = "break_end"


class EventSource(str, enum.Enum):
    DEVICE = "device"
    MANUAL = "manual"


class AttendanceStatus(str, enum.Enum):
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    ON_BREAK = "on_break"


class ScheduleStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RecurrenceType(str, enum.Enum):
    WEEKLY = "weekly"
    ONE_TIME = "one_time"


class ScheduleDateType(str, enum.Enum):
    SEMESTER = "semester"
    VACATION = "vacation"
    ALL = "all"


class PointType(str, enum.Enum):
    REWARD = "reward"
    PENALTY = "penalty"


class StudentType(Base):
    __tablename__ = "student_types"
    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    weekly_goal_hours = Column(Integer, default=0, nullable=False)


class Student(Base):
    __tablename__ = "students"
    id = Column(String, primary_key=True, index=True)  # auth user id
    name = Column(String, nullable=False)
    branch_id = Column(String, nullable=True, index=True)
    seat_number = Column(Integer, nullable=True)
    student_type_id = Column(String, ForeignKey("student_types.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    student_type = relationship("StudentType")
    attendance_events = relationship("AttendanceEvent", back_populates="student")
    absence_schedules = relationship("AbsenceSchedule", back_populates="student")


class AttendanceEvent(Base):
    """Append-only check-in/check-out/break log; state is derived by replay."""
    __tablename__ = "attendance"
    id = Column(String, primary_key=True, default=_uuid)
    student_id = Column(String, ForeignKey("students.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # EventType
    timestamp = Column(DateTime(timezone=True), nullable=False)
    source = Column(String, default=EventSource.MANUAL.value, nullable=False)

    student = relationship("Student", back_populates="attendance_events")

    __table_args__ = (Index("ix_attendance_student_timestamp", "student_id", "timestamp"),)


class AbsenceSchedule(Base):
    __tablename__ = "student_absence_schedules"
    id = Column(String, primary_key=True, default=_uuid)
    student_id = Column(String, ForeignKey("students.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_recurring = Column(Boolean, default=True, nullable=False)
    recurrence_type = Column(String, nullable=True)  # weekly / one_time
    day_of_week = Column(JSON, nullable=True)  # [0..6], 0=Sunday
    start_time = Column(String, nullable=False)  # HH:MM:SS
    end_time = Column(String, nullable=False)
    date_type = Column(String, default=ScheduleDateType.ALL.value)  # semester / vacation / all
    valid_from = Column(String, nullable=True)  # YYYY-MM-DD
    valid_until = Column(String, nullable=True)
    specific_date = Column(String, nullable=True)
    buffer_minutes = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    status = Column(String, default=ScheduleStatus.PENDING.value, nullable=False, index=True)
    created_by = Column(String, nullable=True)
    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = relationship("Student", back_populates="absence_schedules")


class Point(Base):
    __tablename__ = "points"
    id = Column(String, primary_key=True, default=_uuid)
    student_id = Column(String, ForeignKey("students.id"), nullable=False, index=True)
    admin_id = Column(String, nullable=True)  # None for automatic points
    type = Column(String, nullable=False)  # reward / penalty
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    is_auto = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class StudentNotification(Base):
    __tablename__ = "student_notifications"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String, index=True, nullable=False)
    type = Column(String, nullable=False)  # late / absent / point / schedule
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Subject(Base):
    """What the student is studying right now; closed on checkout / long break."""
    __tablename__ = "subjects"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String, index=True, nullable=False)
    subject_name = Column(String, nullable=False)
    is_current = Column(Boolean, default=True, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)


class DateTypeDefinition(Base):
    __tablename__ = "date_type_definitions"
    id = Column(String, primary_key=True, default=_uuid)
    branch_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)  # e.g. semester / vacation / special
    default_start_time = Column(String, nullable=False)  # HH:MM[:SS]
    default_end_time = Column(String, nullable=False)  # may exceed 24:00, e.g. 25:30


class DateAssignment(Base):
    __tablename__ = "date_assignments"
    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(String, index=True, nullable=False)
    date = Column(String, index=True, nullable=False)  # YYYY-MM-DD (study date)
    date_type_id = Column(String, ForeignKey("date_type_definitions.id"), nullable=False)
    custom_start_time = Column(String, nullable=True)
    custom_end_time = Column(String, nullable=True)

    date_type = relationship("DateTypeDefinition")

    __table_args__ = (UniqueConstraint('branch_id', 'date', name='_branch_date_uc'),)
