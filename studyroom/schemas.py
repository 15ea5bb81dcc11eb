from pydantic import BaseModel, ConfigDict
from typing import Optional, List, Any
from datetime import datetime

from .models import EventType, EventSource, AttendanceStatus, ScheduleDateType, UserType


class Actor(BaseModel):
    id: str
    user_type: UserType


class ActionResult(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    was_long_break: Optional[bool] = None


class AttendanceEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    type: EventType
    timestamp: datetime
    source: EventSource


class TodayAttendanceOut(BaseModel):
    attendance: List[AttendanceEventOut]
    status: AttendanceStatus


class StudyTimeOut(BaseModel):
    total_seconds: int
    check_in_time: Optional[datetime] = None


class WeeklyStudyTimeOut(BaseModel):
    student_id: str
    minutes: int


class WeeklyProgressOut(BaseModel):
    goal_hours: int
    actual_minutes: int
    progress_percent: int
    student_type_name: Optional[str] = None


class AbsenceScheduleBase(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    is_recurring: Optional[bool] = None
    day_of_week: Optional[List[int]] = None  # 0=Sunday ... 6=Saturday
    start_time: Optional[str] = None  # HH:MM[:SS]
    end_time: Optional[str] = None
    date_type: Optional[ScheduleDateType] = None
    valid_from: Optional[str] = None  # YYYY-MM-DD
    valid_until: Optional[str] = None
    specific_date: Optional[str] = None
    buffer_minutes: Optional[int] = None


class AbsenceScheduleCreate(AbsenceScheduleBase):
    title: str
    is_recurring: bool = True
    start_time: str
    end_time: str
    date_type: ScheduleDateType = ScheduleDateType.ALL


class AbsenceScheduleUpdate(AbsenceScheduleBase):
    pass


class AbsenceScheduleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    title: str
    description: Optional[str]
    is_recurring: bool
    recurrence_type: Optional[str]
    day_of_week: Optional[List[int]]
    start_time: str
    end_time: str
    date_type: Optional[str]
    valid_from: Optional[str]
    valid_until: Optional[str]
    specific_date: Optional[str]
    buffer_minutes: int
    is_active: bool
    status: str
    created_by: Optional[str]
    approved_by: Optional[str]
    approved_at: Optional[datetime]
    student_name: Optional[str] = None


class ExemptionOut(BaseModel):
    is_exempted: bool
    schedule: Optional[AbsenceScheduleOut] = None
    exemption_start: Optional[datetime] = None
    exemption_end: Optional[datetime] = None


class MandatoryWindow(BaseModel):
    start_time: Optional[str] = None  # HH:MM[:SS], end may be >= 24:00
    end_time: Optional[str] = None
    date_type_name: Optional[str] = None


class PointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    admin_id: Optional[str]
    type: str
    amount: int
    reason: str
    is_auto: bool
    created_at: datetime


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: str
    type: str
    title: str
    message: str
    link: Optional[str]
    is_read: bool
    created_at: datetime
