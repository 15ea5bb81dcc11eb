import json
import logging

import pytest

from studyroom import models
from studyroom.app_logging import (
    JSONFormatter, clear_request_context, clear_request_id, redact_sensitive_data, set_request_id,
)
from conftest import API_HEADERS, admin_headers, kst, student_headers

NOW = kst(2024, 3, 13, 12, 0)  # Wednesday


@pytest.fixture
def frozen_now(monkeypatch):
    import studyroom.absence
    import studyroom.attendance
    import studyroom.crud
    import studyroom.main
    import studyroom.penalties
    import studyroom.studyday

    state = {"now": NOW}
    for module in (studyroom.absence, studyroom.attendance, studyroom.crud, studyroom.main,
                   studyroom.penalties, studyroom.studyday):
        monkeypatch.setattr(module, "now_local", lambda: state["now"])
    return state


def schedule_payload(**overrides):
    data = {"title": "수학 학원", "is_recurring": True, "day_of_week": [3],
            "start_time": "11:00", "end_time": "12:30", "buffer_minutes": 10}
    data.update(overrides)
    return data


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_request_id_is_echoed_or_generated(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_api_key_required(client, student):
    response = client.get("/attendance/today", headers={"X-User-Id": "stu-1"})
    assert response.status_code == 401
    response = client.get("/attendance/today", headers={**student_headers(), "X-API-Key": "wrong"})
    assert response.status_code == 401


def test_identity_required(client, student):
    assert client.get("/attendance/today", headers=API_HEADERS).status_code == 401
    bad_type = {**API_HEADERS, "X-User-Id": "stu-1", "X-User-Type": "janitor"}
    assert client.get("/attendance/today", headers=bad_type).status_code == 400


def test_student_only_routes_reject_staff(client, student):
    assert client.post("/attendance/check-in", headers=admin_headers()).status_code == 403


def test_check_in_break_and_status(client, student, frozen_now):
    response = client.post("/attendance/check-in", headers=student_headers())
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["type"] == "check_in"
    assert body["data"]["source"] == "manual"

    frozen_now["now"] = kst(2024, 3, 13, 13, 0)
    assert client.post("/attendance/break/start", headers=student_headers()).json()["success"]

    today = client.get("/attendance/today", headers=student_headers()).json()
    assert [e["type"] for e in today["attendance"]] == ["check_in", "break_start"]
    assert today["status"] == "on_break"

    frozen_now["now"] = kst(2024, 3, 13, 13, 10)
    body = client.post("/attendance/break/end", headers=student_headers()).json()
    assert body["was_long_break"] is False
    assert body["data"]["type"] == "break_end"

    study = client.get("/attendance/study-time/today", headers=student_headers()).json()
    assert study["total_seconds"] == 3600

    status = client.get("/students/stu-1/status", headers=admin_headers()).json()
    assert status["status"] == "checked_in"


def test_long_break_reports_split(client, student, frozen_now):
    client.post("/attendance/check-in", headers=student_headers())
    frozen_now["now"] = kst(2024, 3, 13, 13, 0)
    client.post("/attendance/break/start", headers=student_headers())
    frozen_now["now"] = kst(2024, 3, 13, 14, 0)

    body = client.post("/attendance/break/end", headers=student_headers()).json()
    assert body["was_long_break"] is True
    assert body["data"]["type"] == "check_in"


def test_weekly_study_time_and_progress(client, student, frozen_now):
    client.post("/attendance/check-in", headers=student_headers())
    frozen_now["now"] = kst(2024, 3, 13, 14, 30)
    client.post("/attendance/check-out", headers=student_headers())

    weekly = client.get("/attendance/study-time/weekly", headers=student_headers()).json()
    assert weekly == {"student_id": "stu-1", "minutes": 150}

    weekly = client.get("/attendance/study-time/weekly", params={"student_id": "stu-1"},
                        headers=admin_headers()).json()
    assert weekly["minutes"] == 150

    progress = client.get("/attendance/weekly-progress", headers=student_headers()).json()
    assert progress["actual_minutes"] == 150
    assert progress["goal_hours"] == 0


def test_late_check_in_books_penalty_in_background(client, db, student, frozen_now):
    db.add(models.DateTypeDefinition(id="dt-1", branch_id="branch-1", name="semester",
                                     default_start_time="08:00", default_end_time="22:00"))
    db.add(models.DateAssignment(branch_id="branch-1", date="2024-03-13", date_type_id="dt-1"))
    db.commit()

    assert client.post("/attendance/check-in", headers=student_headers()).status_code == 200

    points = client.get("/points/stu-1", params={"type": "penalty"}, headers=API_HEADERS).json()
    assert [(p["reason"], p["amount"], p["is_auto"]) for p in points] == [("지각", 1, True)]
    notifications = client.get("/notifications/stu-1", headers=API_HEADERS).json()
    assert notifications[0]["message"] == "지각 (-1점)"


def test_late_check_in_covered_by_schedule(client, db, student, frozen_now):
    db.add(models.DateTypeDefinition(id="dt-1", branch_id="branch-1", name="semester",
                                     default_start_time="08:00", default_end_time="22:00"))
    db.add(models.DateAssignment(branch_id="branch-1", date="2024-03-13", date_type_id="dt-1"))
    db.commit()
    created = client.post("/students/stu-1/absence-schedules", json=schedule_payload(),
                          headers=admin_headers())
    assert created.json()["data"]["status"] == "approved"

    client.post("/attendance/check-in", headers=student_headers())
    assert client.get("/points/stu-1", headers=API_HEADERS).json() == []


class TestAbsenceSchedules:
    def test_student_creates_pending_schedule(self, client, student):
        response = client.post("/absence-schedules", json=schedule_payload(), headers=student_headers())
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["recurrence_type"] == "weekly"

        mine = client.get("/absence-schedules", headers=student_headers()).json()
        assert [s["id"] for s in mine] == [data["id"]]

    def test_validation_error_is_400(self, client, student):
        response = client.post("/absence-schedules", json=schedule_payload(end_time="10:00"),
                               headers=student_headers())
        assert response.status_code == 400
        assert response.json()["detail"] == "종료 시간은 시작 시간보다 늦어야 합니다."

    def test_missing_fields_are_422(self, client, student):
        response = client.post("/absence-schedules", json={"title": "학원"}, headers=student_headers())
        assert response.status_code == 422

    def test_staff_cannot_use_student_route(self, client, student):
        assert client.post("/absence-schedules", json=schedule_payload(),
                           headers=admin_headers()).status_code == 403

    def test_unknown_student(self, client, student):
        response = client.post("/students/nobody/absence-schedules", json=schedule_payload(),
                               headers=admin_headers())
        assert response.status_code == 404

    def test_approval_flow(self, client, student):
        schedule_id = client.post("/absence-schedules", json=schedule_payload(),
                                  headers=student_headers()).json()["data"]["id"]

        pending = client.get("/branches/branch-1/absence-schedules/pending", headers=admin_headers()).json()
        assert [(s["id"], s["student_name"]) for s in pending] == [(schedule_id, "김학생")]
        assert len(client.get("/students/stu-1/absence-schedules/pending", headers=admin_headers()).json()) == 1

        assert client.post(f"/absence-schedules/{schedule_id}/approve",
                           headers=student_headers()).status_code == 403
        assert client.post(f"/absence-schedules/{schedule_id}/approve",
                           headers=admin_headers()).json()["success"]
        assert client.post(f"/absence-schedules/{schedule_id}/approve",
                           headers=admin_headers()).status_code == 400

        approved = client.get("/admin/absence-schedules", headers=admin_headers()).json()
        assert [(s["id"], s["student_name"]) for s in approved] == [(schedule_id, "김학생")]

    def test_student_edit_resets_approval(self, client, student):
        schedule_id = client.post("/students/stu-1/absence-schedules", json=schedule_payload(),
                                  headers=admin_headers()).json()["data"]["id"]
        response = client.patch(f"/absence-schedules/{schedule_id}", json={"end_time": "13:00"},
                                headers=student_headers())
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "pending"
        assert response.json()["data"]["end_time"] == "13:00"

    def test_reject_removes_schedule(self, client, student):
        schedule_id = client.post("/absence-schedules", json=schedule_payload(),
                                  headers=student_headers()).json()["data"]["id"]
        assert client.post(f"/absence-schedules/{schedule_id}/reject", headers=admin_headers()).json()["success"]
        assert client.get("/absence-schedules", headers=student_headers()).json() == []
        assert client.post(f"/absence-schedules/{schedule_id}/reject", headers=admin_headers()).status_code == 404

    def test_other_students_schedule_is_forbidden(self, client, db, student):
        db.add(models.Student(id="stu-2", name="박학생", branch_id="branch-1"))
        db.commit()
        schedule_id = client.post("/absence-schedules", json=schedule_payload(),
                                  headers=student_headers()).json()["data"]["id"]
        intruder = student_headers("stu-2")
        assert client.post(f"/absence-schedules/{schedule_id}/toggle", headers=intruder).status_code == 403
        assert client.delete(f"/absence-schedules/{schedule_id}", headers=intruder).status_code == 403
        assert client.patch(f"/absence-schedules/{schedule_id}", json={"title": "x"},
                            headers=intruder).status_code == 403

    def test_other_students_weekly_numbers_are_forbidden(self, client, db, student):
        db.add(models.Student(id="stu-2", name="박학생", branch_id="branch-1"))
        db.commit()
        for path in ("/attendance/study-time/weekly", "/attendance/weekly-progress"):
            assert client.get(path, params={"student_id": "stu-2"},
                              headers=student_headers()).status_code == 403
            assert client.get(path, params={"student_id": "stu-1"},
                              headers=student_headers()).status_code == 200
            assert client.get(path, params={"student_id": "stu-2"},
                              headers=admin_headers()).status_code == 200

    def test_null_buffer_in_patch_is_not_a_store_error(self, client, student):
        schedule_id = client.post("/students/stu-1/absence-schedules", json=schedule_payload(),
                                  headers=admin_headers()).json()["data"]["id"]
        response = client.patch(f"/absence-schedules/{schedule_id}", json={"buffer_minutes": None},
                                headers=admin_headers())
        assert response.status_code == 200
        assert response.json()["data"]["buffer_minutes"] == 60

        response = client.patch(f"/absence-schedules/{schedule_id}", json={"is_recurring": None},
                                headers=admin_headers())
        assert response.status_code == 400
        assert response.json()["detail"] == "반복 여부를 선택해주세요."

    def test_toggle_and_delete(self, client, student):
        schedule_id = client.post("/absence-schedules", json=schedule_payload(),
                                  headers=student_headers()).json()["data"]["id"]
        toggled = client.post(f"/absence-schedules/{schedule_id}/toggle", headers=student_headers()).json()
        assert toggled["data"] == {"is_active": False}
        assert client.delete(f"/absence-schedules/{schedule_id}", headers=student_headers()).json()["success"]
        assert client.delete(f"/absence-schedules/{schedule_id}", headers=student_headers()).status_code == 404

    def test_exemption_and_today(self, client, student, frozen_now):
        client.post("/students/stu-1/absence-schedules", json=schedule_payload(), headers=admin_headers())

        inside = client.get("/students/stu-1/exemption", params={"at": "2024-03-13T10:50:00+09:00"},
                            headers=API_HEADERS).json()
        assert inside["is_exempted"] is True
        assert inside["schedule"]["title"] == "수학 학원"
        outside = client.get("/students/stu-1/exemption", params={"at": "2024-03-13T10:49:00+09:00"},
                             headers=API_HEADERS).json()
        assert outside["is_exempted"] is False
        # no time given: frozen now, 12:00
        assert client.get("/students/stu-1/exemption", headers=API_HEADERS).json()["is_exempted"] is True

        today = client.get("/students/stu-1/absence-schedules/today", headers=API_HEADERS).json()
        assert [s["title"] for s in today] == ["수학 학원"]


def test_database_errors_become_503(client, student, monkeypatch):
    from sqlalchemy.exc import OperationalError
    import studyroom.main

    def boom(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("db down"))

    monkeypatch.setattr(studyroom.main.absence, "list_for_student", boom)
    response = client.get("/absence-schedules", headers=student_headers())
    assert response.status_code == 503
    assert response.json() == {"detail": "Database temporarily unavailable"}


def test_json_formatter_includes_request_id_and_redacts():
    record = logging.LogRecord("studyroom.test", logging.INFO, __file__, 1, "hello", None, None)
    record.student_id = "stu-1"
    record.api_key = "secret"
    set_request_id("req-9")
    try:
        payload = json.loads(JSONFormatter().format(record))
    finally:
        clear_request_id()
        clear_request_context()

    assert payload["msg"] == "hello"
    assert payload["request_id"] == "req-9"
    assert payload["student_id"] == "stu-1"
    assert payload["extra_context"] == {"api_key": "[REDACTED]"}


def test_redact_sensitive_data_is_recursive():
    data = {"user": {"Password": "x", "name": "kim"}, "items": [{"token": "t"}]}
    assert redact_sensitive_data(data) == {
        "user": {"Password": "[REDACTED]", "name": "kim"},
        "items": [{"token": "[REDACTED]"}],
    }
