import time
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, FastAPI, Depends, WebSocket, WebSocketDisconnect, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import absence, attendance, crud, models, penalties, schemas
from .app_logging import clear_request_context, clear_request_id, get_logger, set_request_id
from .config import Config
from .database import Base, SessionLocal, engine, get_db
from .logic import broadcast_event
from .studyday import ensure_local, now_local
from .websockets import ws_manager

REQUEST_ID_HEADER = "X-Request-ID"

logger = get_logger("studyroom.api")
request_logger = get_logger("studyroom.request")

Base.metadata.create_all(bind=engine)

app = FastAPI(title="StudyRoom Attendance API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER, "").strip() or str(uuid.uuid4())
    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        if request.url.path != "/health":
            request_logger.info("request completed", extra={
                "method": request.method, "path": request.url.path, "status": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            })
        return response
    finally:
        clear_request_id()
        clear_request_context()


@app.exception_handler(SQLAlchemyError)
async def handle_db_error(request: Request, exc: SQLAlchemyError):
    logger.error("database operation failed", exc_info=exc)
    return JSONResponse(status_code=503, content={"detail": "Database temporarily unavailable"})


def get_session_factory():
    return SessionLocal


def verify_api_key(x_api_key: Optional[str] = Header(None)):
    if x_api_key != Config.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def current_actor(x_user_id: Optional[str] = Header(None), x_user_type: Optional[str] = Header(None)) -> schemas.Actor:
    """Caller identity, already authenticated upstream and forwarded in headers."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="로그인이 필요합니다.")
    try:
        user_type = models.UserType(x_user_type or models.UserType.STUDENT.value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid user type")
    return schemas.Actor(id=x_user_id, user_type=user_type)


def current_student(actor: schemas.Actor = Depends(current_actor)) -> str:
    if actor.user_type != models.UserType.STUDENT:
        raise HTTPException(status_code=403, detail="학생만 이용할 수 있습니다.")
    return actor.id


def staff_only(actor: schemas.Actor = Depends(current_actor)) -> schemas.Actor:
    if actor.user_type == models.UserType.STUDENT:
        raise HTTPException(status_code=403, detail="권한이 없습니다.")
    return actor


def _unwrap(result: schemas.ActionResult, not_found: str = absence.NOT_FOUND) -> schemas.ActionResult:
    if not result.success:
        status_code = 404 if result.error == not_found else 400
        raise HTTPException(status_code=status_code, detail=result.error)
    return result


def _existing_schedule(db: Session, schedule_id: str) -> models.AbsenceSchedule:
    schedule = absence.get_schedule(db, schedule_id)
    if not schedule:
        raise HTTPException(status_code=404, detail=absence.NOT_FOUND)
    return schedule


def _schedules_out(rows) -> List[schemas.AbsenceScheduleOut]:
    return [schemas.AbsenceScheduleOut.model_validate(s) for s in rows]


def _named_schedules_out(rows) -> List[schemas.AbsenceScheduleOut]:
    items = []
    for schedule, name in rows:
        out = schemas.AbsenceScheduleOut.model_validate(schedule)
        out.student_name = name
        items.append(out)
    return items


@app.get("/health")
def health():
    return {"status": "ok"}


# --- attendance -------------------------------------------------------------

async def _after_event(result: schemas.ActionResult):
    if result.data is not None:
        await broadcast_event(result.data)


@app.post("/attendance/check-in", response_model=schemas.ActionResult, dependencies=[Depends(verify_api_key)])
async def check_in(background_tasks: BackgroundTasks, student_id: str = Depends(current_student),
                   db: Session = Depends(get_db), session_factory=Depends(get_session_factory)):
    now = now_local()
    result = _unwrap(attendance.check_in(db, student_id, now))
    await _after_event(result)
    background_tasks.add_task(penalties.run_penalty_check, penalties.check_late_arrival, student_id, now, session_factory)
    return result


@app.post("/attendance/check-out", response_model=schemas.ActionResult, dependencies=[Depends(verify_api_key)])
async def check_out(background_tasks: BackgroundTasks, student_id: str = Depends(current_student),
                    db: Session = Depends(get_db), session_factory=Depends(get_session_factory)):
    now = now_local()
    result = _unwrap(attendance.check_out(db, student_id, now))
    await _after_event(result)
    background_tasks.add_task(penalties.run_penalty_check, penalties.check_early_departure, student_id, now, session_factory)
    return result


@app.post("/attendance/break/start", response_model=schemas.ActionResult, dependencies=[Depends(verify_api_key)])
async def start_break(student_id: str = Depends(current_student), db: Session = Depends(get_db)):
    result = _unwrap(attendance.start_break(db, student_id))
    await _after_event(result)
    return result


@app.post("/attendance/break/end", response_model=schemas.ActionResult, dependencies=[Depends(verify_api_key)])
async def end_break(student_id: str = Depends(current_student), db: Session = Depends(get_db)):
    result = _unwrap(attendance.end_break(db, student_id))
    await _after_event(result)
    return result


@app.get("/attendance/today", response_model=schemas.TodayAttendanceOut, dependencies=[Depends(verify_api_key)])
def today_attendance(student_id: str = Depends(current_student), db: Session = Depends(get_db)):
    return attendance.get_today_attendance(db, student_id)


@app.get("/attendance/study-time/today", response_model=schemas.StudyTimeOut, dependencies=[Depends(verify_api_key)])
def today_study_time(student_id: str = Depends(current_student), db: Session = Depends(get_db)):
    return attendance.get_today_study_time(db, student_id)


def _target_student(actor: schemas.Actor, student_id: Optional[str]) -> str:
    # students only ever see their own numbers
    if actor.user_type == models.UserType.STUDENT and student_id and student_id != actor.id:
        raise HTTPException(status_code=403, detail="권한이 없습니다.")
    return student_id or actor.id


@app.get("/attendance/study-time/weekly", response_model=schemas.WeeklyStudyTimeOut, dependencies=[Depends(verify_api_key)])
def weekly_study_time(student_id: Optional[str] = None, actor: schemas.Actor = Depends(current_actor),
                      db: Session = Depends(get_db)):
    target = _target_student(actor, student_id)
    return schemas.WeeklyStudyTimeOut(student_id=target, minutes=attendance.get_weekly_study_time(db, target))


@app.get("/attendance/weekly-progress", response_model=schemas.WeeklyProgressOut, dependencies=[Depends(verify_api_key)])
def weekly_progress(student_id: Optional[str] = None, actor: schemas.Actor = Depends(current_actor),
                    db: Session = Depends(get_db)):
    return attendance.get_weekly_progress(db, _target_student(actor, student_id))


@app.get("/students/{student_id}/status", dependencies=[Depends(verify_api_key), Depends(staff_only)])
def student_status(student_id: str, db: Session = Depends(get_db)):
    if not crud.get_student(db, student_id):
        raise HTTPException(status_code=404, detail="Student not found")
    subject = crud.get_current_subject(db, student_id)
    return {
        "student_id": student_id,
        "status": attendance.get_today_status(db, student_id),
        "current_subject": subject.subject_name if subject else None,
    }


# --- absence schedules ------------------------------------------------------

@app.get("/absence-schedules", response_model=List[schemas.AbsenceScheduleOut], dependencies=[Depends(verify_api_key)])
def my_absence_schedules(student_id: str = Depends(current_student), db: Session = Depends(get_db)):
    return _schedules_out(absence.list_for_student(db, student_id))


@app.post("/absence-schedules", response_model=schemas.ActionResult, dependencies=[Depends(verify_api_key)])
def create_my_absence_schedule(payload: schemas.AbsenceScheduleCreate, student_id: str = Depends(current_student),
                               db: Session = Depends(get_db)):
    actor = schemas.Actor(id=student_id, user_type=models.UserType.STUDENT)
    return _unwrap(absence.create_schedule(db, student_id, payload, actor))


@app.get("/students/{student_id}/absence-schedules", response_model=List[schemas.AbsenceScheduleOut],
         dependencies=[Depends(verify_api_key), Depends(staff_only)])
def student_absence_schedules(student_id: str, db: Session = Depends(get_db)):
    return _schedules_out(absence.list_for_student(db, student_id))


@app.post("/students/{student_id}/absence-schedules", response_model=schemas.ActionResult,
          dependencies=[Depends(verify_api_key)])
def create_student_absence_schedule(student_id: str, payload: schemas.AbsenceScheduleCreate,
                                    actor: schemas.Actor = Depends(staff_only), db: Session = Depends(get_db)):
    if not crud.get_student(db, student_id):
        raise HTTPException(status_code=404, detail="Student not found")
    return _unwrap(absence.create_schedule(db, student_id, payload, actor))


@app.get("/students/{student_id}/absence-schedules/today", response_model=List[schemas.AbsenceScheduleOut],
         dependencies=[Depends(verify_api_key)])
def today_absence_schedules(student_id: str, db: Session = Depends(get_db)):
    return _schedules_out(absence.get_today_absence_schedules(db, student_id))


@app.get("/students/{student_id}/absence-schedules/pending", response_model=List[schemas.AbsenceScheduleOut],
         dependencies=[Depends(verify_api_key), Depends(staff_only)])
def student_pending_schedules(student_id: str, db: Session = Depends(get_db)):
    return _schedules_out(absence.list_pending_for_student(db, student_id))


@app.get("/students/{student_id}/exemption", response_model=schemas.ExemptionOut,
         dependencies=[Depends(verify_api_key)])
def exemption(student_id: str, at: Optional[datetime] = None, date_type: Optional[str] = None,
              db: Session = Depends(get_db)):
    check_time = ensure_local(at) if at else now_local()
    return absence.is_in_absence_period(db, student_id, check_time, date_type)


@app.get("/branches/{branch_id}/absence-schedules/pending", response_model=List[schemas.AbsenceScheduleOut],
         dependencies=[Depends(verify_api_key), Depends(staff_only)])
def branch_pending_schedules(branch_id: str, db: Session = Depends(get_db)):
    return _named_schedules_out(absence.list_pending_for_branch(db, branch_id))


@app.get("/admin/absence-schedules", response_model=List[schemas.AbsenceScheduleOut],
         dependencies=[Depends(verify_api_key), Depends(staff_only)])
def approved_absence_schedules(db: Session = Depends(get_db)):
    return _named_schedules_out(absence.list_all_approved_with_student_names(db))


def _check_owner(schedule: models.AbsenceSchedule, actor: schemas.Actor):
    if actor.user_type == models.UserType.STUDENT and schedule.student_id != actor.id:
        raise HTTPException(status_code=403, detail="권한이 없습니다.")


@app.patch("/absence-schedules/{schedule_id}", response_model=schemas.ActionResult, dependencies=[Depends(verify_api_key)])
def update_absence_schedule(schedule_id: str, payload: schemas.AbsenceScheduleUpdate,
                            actor: schemas.Actor = Depends(current_actor), db: Session = Depends(get_db)):
    _check_owner(_existing_schedule(db, schedule_id), actor)
    return _unwrap(absence.update_schedule(db, schedule_id, payload.model_dump(exclude_unset=True), actor))


@app.post("/absence-schedules/{schedule_id}/approve", response_model=schemas.ActionResult,
          dependencies=[Depends(verify_api_key)])
def approve_absence_schedule(schedule_id: str, actor: schemas.Actor = Depends(staff_only), db: Session = Depends(get_db)):
    return _unwrap(absence.approve_schedule(db, schedule_id, actor))


@app.post("/absence-schedules/{schedule_id}/reject", response_model=schemas.ActionResult,
          dependencies=[Depends(verify_api_key)])
def reject_absence_schedule(schedule_id: str, actor: schemas.Actor = Depends(staff_only), db: Session = Depends(get_db)):
    return _unwrap(absence.reject_schedule(db, schedule_id, actor))


@app.post("/absence-schedules/{schedule_id}/toggle", response_model=schemas.ActionResult,
          dependencies=[Depends(verify_api_key)])
def toggle_absence_schedule(schedule_id: str, actor: schemas.Actor = Depends(current_actor), db: Session = Depends(get_db)):
    _check_owner(_existing_schedule(db, schedule_id), actor)
    return _unwrap(absence.toggle_schedule(db, schedule_id))


@app.delete("/absence-schedules/{schedule_id}", response_model=schemas.ActionResult,
            dependencies=[Depends(verify_api_key)])
def delete_absence_schedule(schedule_id: str, actor: schemas.Actor = Depends(current_actor), db: Session = Depends(get_db)):
    _check_owner(_existing_schedule(db, schedule_id), actor)
    return _unwrap(absence.delete_schedule(db, schedule_id))


# --- points / notifications -------------------------------------------------

@app.get("/points/{student_id}", response_model=List[schemas.PointOut], dependencies=[Depends(verify_api_key)])
def list_points(student_id: str, type: Optional[models.PointType] = None, db: Session = Depends(get_db)):
    return crud.list_points(db, student_id, type.value if type else None)


@app.get("/notifications/{student_id}", response_model=List[schemas.NotificationOut], dependencies=[Depends(verify_api_key)])
def list_notifications(student_id: str, db: Session = Depends(get_db)):
    return crud.list_notifications(db, student_id)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, student_id: Optional[str] = None, role: Optional[str] = None):
    try:
        if role == models.UserType.ADMIN.value:
            await ws_manager.connect_admin(websocket)
        elif student_id:
            await ws_manager.connect_student(student_id, websocket)
        else:
            await websocket.accept()
            await websocket.close(code=4000)
            return

        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)
