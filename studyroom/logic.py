from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional

from . import models, schemas
from .app_logging import get_logger
from .websockets import ws_manager

logger = get_logger("studyroom.notify")


async def notify(db: Session, student_id: str, type: str, title: str, message: str,
                 link: Optional[str] = None) -> Optional[models.StudentNotification]:
    """Store a student notification and push it to open dashboards.

    Delivery is best effort: a failure is logged and ``None`` returned so the
    action that raised the notification is never affected.
    """
    notif = models.StudentNotification(
        student_id=student_id, type=type, title=title, message=message, link=link, is_read=False
    )
    try:
        db.add(notif)
        db.commit()
        db.refresh(notif)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("failed to store notification", extra={"student_id": student_id})
        return None
    try:
        await ws_manager.broadcast(student_id, {"type": "notification", "data": {
            "id": notif.id, "student_id": student_id, "type": type, "title": title,
            "message": message, "link": link, "created_at": notif.created_at.isoformat()
        }})
    except Exception:
        logger.exception("failed to push notification", extra={"student_id": student_id})
    return notif


async def broadcast_event(ev: schemas.AttendanceEventOut):
    data = ev.model_dump(mode="json")
    await ws_manager.broadcast(ev.student_id, {"type": data["type"], "data": data})
