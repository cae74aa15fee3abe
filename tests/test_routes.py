import csv
import io
import sqlite3
from datetime import datetime, timedelta

import pytest

from payments import shift_month


def _db(app):
    conn = sqlite3.connect(app.config["DATABASE"])
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _add_student(client, name="Ana"):
    response = client.post("/students/add", data={"name": name})
    assert response.status_code == 302
    return int(response.headers["Location"].rsplit("/", 1)[1])


def _add_group(client, name="Evening B1"):
    response = client.post("/groups/add", data={"name": name})
    assert response.status_code == 302
    return int(response.headers["Location"].rsplit("/", 1)[1])


def _lesson_form(start, end, price="100", **extra):
    data = {
        "title": "Algebra",
        "start": start.strftime("%Y-%m-%dT%H:%M"),
        "end": end.strftime("%Y-%m-%dT%H:%M"),
        "price": price,
        "type": "student",
    }
    data.update(extra)
    return data


@pytest.fixture
def past():
    # ends now and never starts before the current month, so it is past and in-month
    end = datetime.now().replace(second=0, microsecond=0)
    month_start = end.replace(day=1, hour=0, minute=0)
    return max(end - timedelta(hours=1), month_start), end


@pytest.fixture
def future():
    start = datetime.now() + timedelta(days=400)
    return start, start + timedelta(hours=1)


def test_add_student_requires_name(auth_client):
    response = auth_client.post("/students/add", data={"name": "  "})
    assert response.status_code == 200
    assert b"Name is required" in response.data


def test_student_crud(app, auth_client):
    student_id = _add_student(auth_client)
    assert b"Ana" in auth_client.get(f"/student/{student_id}").data

    response = auth_client.post(f"/student/{student_id}/edit", data={"name": "Ana Maria"})
    assert response.status_code == 302
    assert b"Ana Maria" in auth_client.get("/").data

    auth_client.post(f"/student/{student_id}/delete")
    assert auth_client.get(f"/student/{student_id}").status_code == 404


def test_group_crud(auth_client):
    group_id = _add_group(auth_client)
    assert b"Evening B1" in auth_client.get(f"/group/{group_id}").data
    auth_client.post(f"/group/{group_id}/edit", data={"name": "Morning A2"})
    assert b"Morning A2" in auth_client.get(f"/group/{group_id}").data
    auth_client.post(f"/group/{group_id}/delete")
    assert auth_client.get(f"/group/{group_id}").status_code == 404


def test_missing_entities_404(auth_client):
    assert auth_client.get("/student/999").status_code == 404
    assert auth_client.get("/group/999/edit").status_code == 404
    assert auth_client.post("/lesson/999/delete").status_code == 404
    assert auth_client.post("/lesson/999/toggle_paid").status_code == 404


def test_add_lesson_and_pending_payment(app, auth_client, past):
    student_id = _add_student(auth_client)
    response = auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    assert response.status_code == 302
    assert response.headers["Location"] == f"/student/{student_id}"

    page = auth_client.get(f"/student/{student_id}").data
    assert b"Pending payment: <b>100.00</b>" in page
    assert b"Pending: 100.00" in auth_client.get("/").data


def test_lesson_validation(auth_client, past):
    response = auth_client.post("/lessons/add", data=_lesson_form(*past))
    assert b"Student ID is required for student lessons" in response.data

    start = past[0]
    response = auth_client.post(
        "/lessons/add", data=_lesson_form(start, start - timedelta(hours=1), studentId=1)
    )
    assert b"End must not be before start" in response.data

    response = auth_client.post("/lessons/add", data=_lesson_form(*past, price="-5", studentId=1))
    assert b"Price must not be negative" in response.data


def test_lesson_for_unknown_student_is_rejected(app, auth_client, past):
    response = auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=42))
    assert response.status_code == 200
    assert b"does not exist" in response.data
    with _db(app) as conn:
        assert conn.execute("SELECT COUNT(*) FROM lessons").fetchone()[0] == 0


def test_toggle_paid(app, auth_client, past):
    student_id = _add_student(auth_client)
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    with _db(app) as conn:
        lesson_id = conn.execute("SELECT id FROM lessons").fetchone()[0]

    auth_client.post(f"/lesson/{lesson_id}/toggle_paid")
    with _db(app) as conn:
        assert conn.execute("SELECT paid FROM lessons").fetchone()[0] == 1
    assert b"Pending payment: <b>0.00</b>" in auth_client.get(f"/student/{student_id}").data

    auth_client.post(f"/lesson/{lesson_id}/toggle_paid")
    with _db(app) as conn:
        assert conn.execute("SELECT paid FROM lessons").fetchone()[0] == 0


def test_edit_lesson_moves_it_to_a_group(app, auth_client, past):
    student_id = _add_student(auth_client)
    group_id = _add_group(auth_client)
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    with _db(app) as conn:
        lesson_id = conn.execute("SELECT id FROM lessons").fetchone()[0]

    assert auth_client.get(f"/lesson/{lesson_id}/edit").status_code == 200
    response = auth_client.post(
        f"/lesson/{lesson_id}/edit",
        data=_lesson_form(*past, type="group", groupId=group_id, studentId=student_id),
    )
    assert response.headers["Location"] == f"/group/{group_id}"
    with _db(app) as conn:
        row = conn.execute("SELECT type, student_id, group_id FROM lessons").fetchone()
    assert tuple(row) == ("group", None, group_id)


def test_deleting_student_deletes_lessons(app, auth_client, past):
    student_id = _add_student(auth_client)
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    auth_client.post(f"/student/{student_id}/delete")
    with _db(app) as conn:
        assert conn.execute("SELECT COUNT(*) FROM lessons").fetchone()[0] == 0


def test_delete_lesson(app, auth_client, past):
    student_id = _add_student(auth_client)
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    with _db(app) as conn:
        lesson_id = conn.execute("SELECT id FROM lessons").fetchone()[0]
    assert auth_client.post(f"/lesson/{lesson_id}/delete").status_code == 302
    with _db(app) as conn:
        assert conn.execute("SELECT COUNT(*) FROM lessons").fetchone()[0] == 0


def test_lessons_page_lists_lessons(auth_client, past):
    student_id = _add_student(auth_client, "Bruno")
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    page = auth_client.get("/lessons").data
    assert b"Algebra" in page and b"Bruno" in page


def test_dashboard_monthly_summary(auth_client, past):
    student_id = _add_student(auth_client)
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    auth_client.post("/lessons/add", data=_lesson_form(*past, price="40", studentId=student_id,
                                                       paid="on", external="on"))
    start = past[0]
    summary = auth_client.get(f"/api/summary?year={start.year}&month={start.month}").get_json()
    assert summary["ownPending"] == 100
    assert summary["externalCollected"] == 40
    assert summary["totalCollected"] == 40
    assert summary["totalPending"] == 100

    year, month = shift_month(start.year, start.month, -1)
    other = auth_client.get(f"/api/summary?year={year}&month={month}").get_json()
    assert other["totalPending"] == 0 and other["totalCollected"] == 0


def test_bad_month_is_rejected(auth_client):
    assert auth_client.get("/?month=13").status_code == 400
    assert auth_client.get("/calendar?year=abc").status_code == 400


def test_calendar_shows_month_lessons(auth_client, past):
    student_id = _add_student(auth_client, "Carla")
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    start = past[0]
    page = auth_client.get(f"/calendar?year={start.year}&month={start.month}").data
    assert b"Carla" in page
    year, month = shift_month(start.year, start.month, 1)
    assert b"Carla" not in auth_client.get(f"/calendar?year={year}&month={month}").data


def test_summary_csv(auth_client, past, future):
    student_id = _add_student(auth_client, "Dora")
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    auth_client.post("/lessons/add", data=_lesson_form(*future, studentId=student_id))
    start = past[0]
    response = auth_client.get(f"/summary/csv?year={start.year}&month={start.month}")
    assert response.mimetype == "text/csv"
    rows = list(csv.reader(io.StringIO(response.get_data(as_text=True))))
    assert rows[0][0] == "Start"
    assert rows[1][3:] == ["Dora", "100.00", "own", "pending"]
    assert ["totalPending", "100.00"] in rows


# ---------- JSON API ----------

def test_api_lesson_crud(auth_client, past):
    group_id = _add_group(auth_client)
    start, end = past
    response = auth_client.post(
        "/api/lessons",
        json={
            "start": start.isoformat(),
            "end": end.isoformat(),
            "price": 80,
            "type": "group",
            "groupId": group_id,
        },
    )
    assert response.status_code == 201
    lesson = response.get_json()
    assert lesson["group"]["name"] == "Evening B1"
    assert lesson["paid"] is False and lesson["student"] is None

    response = auth_client.put(f"/api/lessons/{lesson['id']}", json={"paid": True})
    assert response.get_json()["paid"] is True

    assert len(auth_client.get("/api/lessons").get_json()) == 1
    assert auth_client.delete(f"/api/lessons/{lesson['id']}").status_code == 200
    assert auth_client.get(f"/api/lessons/{lesson['id']}").status_code == 404


@pytest.mark.parametrize(
    "body, message",
    [
        ({}, "Missing required fields"),
        ({"start": "2026-01-01T10:00", "end": "2026-01-01T11:00", "price": 1, "type": "student"},
         "Student ID is required for student lessons"),
        ({"start": "2026-01-01T10:00", "end": "2026-01-01T11:00", "price": 1, "type": "group"},
         "Group ID is required for group lessons"),
        ({"start": "yesterday", "end": "2026-01-01T11:00", "price": 1, "type": "group", "groupId": 1},
         "Start and end must be valid dates"),
        ({"start": "2026-01-01T10:00", "end": "2026-01-01T11:00", "price": "ten", "type": "group",
          "groupId": 1}, "Price must be a number"),
    ],
)
def test_api_lesson_validation(auth_client, body, message):
    response = auth_client.post("/api/lessons", json=body)
    assert response.status_code == 400
    assert response.get_json() == {"error": message}


def test_api_students_and_groups_have_pending_payment(auth_client, past, future):
    student_id = _add_student(auth_client)
    _add_group(auth_client)
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    auth_client.post("/lessons/add", data=_lesson_form(*future, price="500", studentId=student_id))

    students = auth_client.get("/api/students").get_json()
    assert [(s["name"], s["pendingPayment"]) for s in students] == [("Ana", 100)]
    groups = auth_client.get("/api/groups").get_json()
    assert groups[0]["pendingPayment"] == 0

    detail = auth_client.get(f"/api/students/{student_id}").get_json()
    assert detail["pendingPayment"] == 100
    assert len(detail["lessons"]) == 2
    assert auth_client.get("/api/groups/999").status_code == 404


def test_api_lesson_has_timestamps(auth_client, past):
    student_id = _add_student(auth_client)
    start, end = past
    lesson = auth_client.post(
        "/api/lessons",
        json={"start": start.isoformat(), "end": end.isoformat(), "price": 10,
              "type": "student", "studentId": student_id},
    ).get_json()
    assert lesson["createdAt"] and lesson["updatedAt"]
    listed = auth_client.get("/api/lessons").get_json()[0]
    assert listed["createdAt"] == lesson["createdAt"]


def test_api_lesson_title_must_be_text(auth_client):
    response = auth_client.post(
        "/api/lessons",
        json={"title": 5, "start": "2026-01-01T10:00", "end": "2026-01-01T11:00", "price": 1,
              "type": "group", "groupId": 1},
    )
    assert response.status_code == 400
    assert response.get_json() == {"error": "Title must be text"}


@pytest.mark.parametrize("query", ["month=13", "year=abc", "year=2026&month=0"])
def test_api_summary_bad_month(auth_client, query):
    response = auth_client.get(f"/api/summary?{query}")
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid year or month"}


@pytest.mark.parametrize("collection", ["students", "groups"])
def test_api_entity_crud(auth_client, collection):
    response = auth_client.post(f"/api/{collection}", json={"name": "  Ana  "})
    assert response.status_code == 201
    entity = response.get_json()
    assert entity["name"] == "Ana"
    assert entity["createdAt"] and entity["updatedAt"]

    response = auth_client.put(f"/api/{collection}/{entity['id']}", json={"name": "Bea"})
    assert response.status_code == 200
    assert response.get_json()["name"] == "Bea"
    assert auth_client.get(f"/api/{collection}/{entity['id']}").get_json()["name"] == "Bea"

    response = auth_client.delete(f"/api/{collection}/{entity['id']}")
    assert response.status_code == 200
    assert "deleted successfully" in response.get_json()["message"]
    assert auth_client.get(f"/api/{collection}/{entity['id']}").status_code == 404


@pytest.mark.parametrize("collection", ["students", "groups"])
@pytest.mark.parametrize("body", [{}, {"name": ""}, {"name": "   "}, {"name": 7}, {"name": None}])
def test_api_entity_name_is_required(app, auth_client, collection, body):
    response = auth_client.post(f"/api/{collection}", json=body)
    assert response.status_code == 400
    assert response.get_json() == {"error": "Name is required"}

    entity_id = auth_client.post(f"/api/{collection}", json={"name": "Ana"}).get_json()["id"]
    response = auth_client.put(f"/api/{collection}/{entity_id}", json=body)
    assert response.status_code == 400
    assert response.get_json() == {"error": "Name is required"}
    assert auth_client.get(f"/api/{collection}/{entity_id}").get_json()["name"] == "Ana"


@pytest.mark.parametrize("collection, label", [("students", "Student"), ("groups", "Group")])
def test_api_entity_missing(auth_client, collection, label):
    for response in (
        auth_client.put(f"/api/{collection}/999", json={"name": "Ana"}),
        auth_client.delete(f"/api/{collection}/999"),
    ):
        assert response.status_code == 404
        assert response.get_json() == {"error": f"{label} not found"}


def test_api_student_delete_cascades_to_lessons(app, auth_client, past):
    student_id = auth_client.post("/api/students", json={"name": "Ana"}).get_json()["id"]
    auth_client.post("/lessons/add", data=_lesson_form(*past, studentId=student_id))
    with _db(app) as conn:
        assert conn.execute("SELECT COUNT(*) FROM lessons").fetchone()[0] == 1

    assert auth_client.delete(f"/api/students/{student_id}").status_code == 200
    with _db(app) as conn:
        assert conn.execute("SELECT COUNT(*) FROM lessons").fetchone()[0] == 0
