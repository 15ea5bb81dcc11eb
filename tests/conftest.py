import os
from datetime import datetime
from typing import Generator

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STUDYROOM_API_KEY"] = "test-key"

from fastapi.testclient import TestClient  # noqa: E402

from studyroom import models  # noqa: E402
from studyroom.database import Base, SessionLocal, engine  # noqa: E402
from studyroom.main import app  # noqa: E402
from studyroom.studyday import KST  # noqa: E402

API_HEADERS = {"X-API-Key": "test-key"}


def kst(*args) -> datetime:
    return datetime(*args, tzinfo=KST)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db() -> Generator:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    return TestClient(app)


@pytest.fixture
def student(db) -> models.Student:
    s = models.Student(id="stu-1", name="김학생", branch_id="branch-1", seat_number=12)
    db.add(s)
    db.commit()
    return s


@pytest.fixture
def add_event(db):
    def _add(student_id, type, ts):
        ev = models.AttendanceEvent(student_id=student_id, type=type, timestamp=ts, source="manual")
        db.add(ev)
        db.commit()
        return ev
    return _add


def student_headers(student_id="stu-1"):
    return {**API_HEADERS, "X-User-Id": student_id, "X-User-Type": "student"}


def admin_headers(admin_id="admin-1"):
    return {**API_HEADERS, "X-User-Id": admin_id, "X-User-Type": "admin"}
