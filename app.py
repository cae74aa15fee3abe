"""
Copyright (c) 2025 Amit Kadam

All Rights Reserved. No part of this software may be copied, reproduced, distributed, or used in derivative works without the prior written permission of the copyright holder.

For permission requests, contact: amitkadam96k@gmail.com
"""

from flask import (
    Flask, Blueprint, render_template, request, redirect,
    flash, abort, g, current_app, jsonify, Response
)
from flask.logging import default_handler
import sqlite3
from markupsafe import escape
from werkzeug.security import generate_password_hash, check_password_hash
from collections import defaultdict
from datetime import datetime
import calendar
import csv
import hmac
import io
import logging
import math
import os

from config import Config
from payments import (
    Lesson, COLLECTED, PENDING, NOT_YET_DUE,
    in_month, lesson_bucket, lesson_status, lessons_in_month,
    monthly_summary, pending_payment, shift_month,
)
from session_tokens import (
    SESSION_COOKIE, SESSION_TTL_SECONDS, MissingSecretError,
    issue_session_token, verify_session_token,
)

bp = Blueprint("tutor", __name__)

PUBLIC_PATHS = {"/login", "/logout", "/favicon.ico", "/robots.txt", "/healthz"}
PUBLIC_PREFIXES = ("/static/", "/api/auth/")

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

LESSON_SELECT = """
    SELECT l.*, s.name AS student_name, sg.name AS group_name
    FROM lessons l
    LEFT JOIN students s ON l.student_id = s.id
    LEFT JOIN study_groups sg ON l.group_id = sg.id
"""


# ---------- APP FACTORY ----------

def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Flask's session only carries flash messages here; a random key keeps
    # them working when no secret is configured.
    app.secret_key = (
        app.config.get("SECRET_KEY") or app.config.get("AUTH_SECRET") or os.urandom(32)
    )

    password = app.config.get("ADMIN_PASSWORD")
    app.config["ADMIN_PASSWORD_HASH"] = (
        generate_password_hash(password) if password else None
    )

    configure_logging(app)
    app.register_blueprint(bp)

    with app.app_context():
        init_db()
    app.logger.info("Database ready at %s", app.config["DATABASE"])
    if not app.config.get("AUTH_SECRET"):
        app.logger.error("AUTH_SECRET is not set; every protected page will redirect to /login")
    return app


def configure_logging(app):
    app.logger.removeHandler(default_handler)
    level = app.config.get("LOG_LEVEL", "INFO")
    for logger in (app.logger, logging.getLogger("session_tokens")):
        logger.setLevel(level)
        if not logger.handlers:
            console = logging.StreamHandler()
            console.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s in %(module)s: %(message)s"))
            logger.addHandler(console)


# ---------- DB HELPERS ----------

def get_db():
    conn = sqlite3.connect(current_app.config["DATABASE"], timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def init_db():
    with get_db() as db:
        db.executescript(
            """
            CREATE TABLE IF NOT EXISTS students (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS study_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- A lesson belongs to exactly one student or one group
            CREATE TABLE IF NOT EXISTS lessons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL DEFAULT '',
                start_at TEXT NOT NULL,
                end_at TEXT NOT NULL,
                price REAL NOT NULL CHECK (price >= 0),
                paid INTEGER NOT NULL DEFAULT 0,
                external INTEGER NOT NULL DEFAULT 0,
                type TEXT NOT NULL CHECK (type IN ('student', 'group')),
                student_id INTEGER,
                group_id INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (
                    (type = 'student' AND student_id IS NOT NULL AND group_id IS NULL)
                    OR (type = 'group' AND group_id IS NOT NULL AND student_id IS NULL)
                ),
                FOREIGN KEY(student_id) REFERENCES students(id) ON DELETE CASCADE,
                FOREIGN KEY(group_id) REFERENCES study_groups(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_lessons_start ON lessons(start_at);
            """
        )


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


def parse_datetime(value):
    """Parse an ISO-8601 value into a naive local datetime."""
    dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def row_to_lesson(row):
    return Lesson(
        id=row["id"],
        title=row["title"] or "",
        start=datetime.fromisoformat(row["start_at"]),
        end=datetime.fromisoformat(row["end_at"]),
        price=float(row["price"]),
        paid=bool(row["paid"]),
        external=bool(row["external"]),
        type=row["type"],
        student_id=row["student_id"],
        group_id=row["group_id"],
    )


def fetch_lessons(db, where="", params=(), order="l.start_at DESC"):
    rows = db.execute(
        f"{LESSON_SELECT} {where} ORDER BY {order}",
        params,
    ).fetchall()
    return rows, [row_to_lesson(r) for r in rows]


def _as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ("on", "true", "1", "yes")
    return bool(value)


def _as_id(value):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def validate_lesson(data):
    """Return (values, error) for lesson fields coming from a form or JSON body."""
    start = data.get("start")
    end = data.get("end")
    price = data.get("price")
    lesson_type = data.get("type")
    if not start or not end or price in (None, "") or not lesson_type:
        return None, "Missing required fields"
    if lesson_type not in ("student", "group"):
        return None, "Type must be 'student' or 'group'"

    try:
        start_dt = parse_datetime(start)
        end_dt = parse_datetime(end)
    except ValueError:
        return None, "Start and end must be valid dates"
    if end_dt < start_dt:
        return None, "End must not be before start"

    try:
        price = float(price)
    except (TypeError, ValueError):
        return None, "Price must be a number"
    if not math.isfinite(price) or price < 0:
        return None, "Price must not be negative"

    student_id = _as_id(data.get("studentId"))
    group_id = _as_id(data.get("groupId"))
    if lesson_type == "student" and student_id is None:
        return None, "Student ID is required for student lessons"
    if lesson_type == "group" and group_id is None:
        return None, "Group ID is required for group lessons"

    title = data.get("title") or ""
    if not isinstance(title, str):
        return None, "Title must be text"

    values = {
        "title": title.strip(),
        "start_at": start_dt.isoformat(timespec="seconds"),
        "end_at": end_dt.isoformat(timespec="seconds"),
        "price": price,
        "paid": 1 if _as_bool(data.get("paid", False)) else 0,
        "external": 1 if _as_bool(data.get("external", False)) else 0,
        "type": lesson_type,
        "student_id": student_id if lesson_type == "student" else None,
        "group_id": group_id if lesson_type == "group" else None,
    }
    return values, None


def save_lesson(db, values, lesson_id=None):
    stamp = now_iso()
    if lesson_id is None:
        cur = db.execute(
            "INSERT INTO lessons (title, start_at, end_at, price, paid, external, type, "
            "student_id, group_id, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (
                values["title"], values["start_at"], values["end_at"], values["price"],
                values["paid"], values["external"], values["type"],
                values["student_id"], values["group_id"], stamp, stamp,
            ),
        )
        db.commit()
        return cur.lastrowid
    db.execute(
        "UPDATE lessons SET title=?, start_at=?, end_at=?, price=?, paid=?, external=?, "
        "type=?, student_id=?, group_id=?, updated_at=? WHERE id=?",
        (
            values["title"], values["start_at"], values["end_at"], values["price"],
            values["paid"], values["external"], values["type"],
            values["student_id"], values["group_id"], stamp, lesson_id,
        ),
    )
    db.commit()
    return lesson_id


def parse_month(args):
    """Return (year, month) from query args, defaulting to today, or None if invalid."""
    today = datetime.now()
    try:
        year = int(args.get("year", today.year))
        month = int(args.get("month", today.month))
    except ValueError:
        return None
    if not 1 <= month <= 12 or not 1 <= year <= 9998:
        return None
    return year, month


def requested_month():
    parsed = parse_month(request.args)
    if parsed is None:
        abort(400)
    return parsed


def money(amount):
    return f"{amount:,.2f}"


# ---------- AUTH HELPERS ----------

def is_public_path(path):
    if path in PUBLIC_PATHS:
        return True
    return path.startswith(PUBLIC_PREFIXES)


def set_session_cookie(response, token):
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=SESSION_TTL_SECONDS,
        path="/",
        secure=current_app.config.get("AUTH_COOKIE_SECURE", True),
        httponly=True,
        samesite="Lax",
    )
    return response


def clear_session_cookie(response):
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=current_app.config.get("AUTH_COOKIE_SECURE", True),
        httponly=True,
        samesite="Lax",
    )
    return response


@bp.before_app_request
def require_session():
    g.admin = None
    if is_public_path(request.path):
        return None

    token = request.cookies.get(SESSION_COOKIE)
    subject = None
    try:
        subject = verify_session_token(token, current_app.config.get("AUTH_SECRET"))
    except MissingSecretError:
        current_app.logger.exception("Session check failed for %s", request.path)

    if subject is None:
        if token:
            current_app.logger.info("Rejected session cookie on %s", request.path)
        return clear_session_cookie(redirect("/login"))

    g.admin = subject
    return None


def check_credentials(username, password):
    """Return True when the pair matches the configured admin account.

    Raises RuntimeError when no admin account is configured.
    """
    admin = current_app.config.get("ADMIN_USERNAME")
    password_hash = current_app.config.get("ADMIN_PASSWORD_HASH")
    if not admin or not password_hash:
        raise RuntimeError("ADMIN_USERNAME / ADMIN_PASSWORD are not set")
    same_user = hmac.compare_digest(username.encode("utf-8"), admin.encode("utf-8"))
    return check_password_hash(password_hash, password) and same_user


# ---------- AUTH ROUTES ----------

@bp.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")

        try:
            valid = check_credentials(username, password)
        except RuntimeError:
            current_app.logger.error("Login attempted but admin credentials are not configured")
            flash("Admin credentials are not configured on the server.", "danger")
            valid = None

        if valid:
            token = issue_session_token(username, current_app.config.get("AUTH_SECRET"))
            current_app.logger.info("Admin logged in")
            return set_session_cookie(redirect("/"), token)
        if valid is False:
            current_app.logger.info("Failed login attempt")
            flash("Invalid username or password.", "danger")

    content = """
    <h2>Login</h2>
    <form method="post" class="mt-3" style="max-width:400px;">
        <input name="username" class="form-control mb-3" placeholder="Username" required>
        <input name="password" type="password" class="form-control mb-3" placeholder="Password" required>
        <button class="btn btn-primary w-100">Login</button>
    </form>
    """
    return render_template("base.html", content=content)


@bp.route("/logout")
def logout():
    flash("Logged out.", "s")
    return clear_session_cookie(redirect("/login"))


@bp.route("/healthz")
def healthz():
    return Response("ok", mimetype="text/plain")


# ---------- HOME ----------

def _pending_badge(amount):
    if amount > 0:
        return f"<span class='badge bg-danger'>Pending: {money(amount)}</span>"
    return "<span class='badge bg-success'>Up to date</span>"


@bp.route("/")
def home():
    year, month = requested_month()
    now = datetime.now()
    with get_db() as db:
        students = db.execute("SELECT id, name FROM students ORDER BY name").fetchall()
        groups = db.execute("SELECT id, name FROM study_groups ORDER BY name").fetchall()
        _, lessons = fetch_lessons(db)

    by_student = defaultdict(list)
    by_group = defaultdict(list)
    for lesson in lessons:
        if lesson.student_id is not None:
            by_student[lesson.student_id].append(lesson)
        if lesson.group_id is not None:
            by_group[lesson.group_id].append(lesson)

    student_items = "".join(
        [
            "<li class='list-group-item d-flex justify-content-between align-items-center'>"
            f"<a href='/student/{s['id']}'>{escape(s['name'])}</a>"
            f"{_pending_badge(pending_payment(by_student[s['id']], now))}"
            "</li>"
            for s in students
        ]
    )
    group_items = "".join(
        [
            "<li class='list-group-item d-flex justify-content-between align-items-center'>"
            f"<a href='/group/{grp['id']}'>{escape(grp['name'])}</a>"
            f"{_pending_badge(pending_payment(by_group[grp['id']], now))}"
            "</li>"
            for grp in groups
        ]
    )

    summary = monthly_summary(lessons, year, month, now)
    prev_year, prev_month = shift_month(year, month, -1)
    next_year, next_month = shift_month(year, month, 1)

    content = f"""
    <h1 class="mb-4">Tutor Manager</h1>
    <div class="row g-4">
        <div class="col-md-4">
            <div class="d-flex justify-content-between align-items-center mb-2">
                <h4>Students</h4>
                <a href="/students/add" class="btn btn-sm btn-success">+ Add</a>
            </div>
            <ul class="list-group">{student_items or "<li class='list-group-item text-muted'>No students yet</li>"}</ul>
        </div>
        <div class="col-md-4">
            <div class="d-flex justify-content-between align-items-center mb-2">
                <h4>Groups</h4>
                <a href="/groups/add" class="btn btn-sm btn-success">+ Add</a>
            </div>
            <ul class="list-group">{group_items or "<li class='list-group-item text-muted'>No groups yet</li>"}</ul>
        </div>
        <div class="col-md-4">
            <div class="d-flex justify-content-between align-items-center mb-2">
                <a href="/?year={prev_year}&month={prev_month}" class="btn btn-sm btn-outline-secondary">&laquo;</a>
                <h4 class="mb-0">{MONTH_NAMES[month - 1]} {year}</h4>
                <a href="/?year={next_year}&month={next_month}" class="btn btn-sm btn-outline-secondary">&raquo;</a>
            </div>
            <table class="table table-sm table-bordered" id="monthly-summary">
                <tr><td>Pending (own)</td><td class="text-end">{money(summary.own_pending)}</td></tr>
                <tr><td>Collected (own)</td><td class="text-end">{money(summary.own_collected)}</td></tr>
                <tr><td>Pending (external)</td><td class="text-end">{money(summary.external_pending)}</td></tr>
                <tr><td>Collected (external)</td><td class="text-end">{money(summary.external_collected)}</td></tr>
                <tr class="table-light"><th>Total collected</th><th class="text-end">{money(summary.total_collected)}</th></tr>
                <tr class="table-light"><th>Total pending</th><th class="text-end">{money(summary.total_pending)}</th></tr>
            </table>
            <a href="/summary/csv?year={year}&month={month}" class="btn btn-sm btn-outline-primary">Download CSV</a>
        </div>
    </div>
    """
    return render_template("base.html", content=content)


# ---------- STUDENTS & GROUPS ----------

# kind -> (table, url prefix, lesson column, label)
ENTITIES = {
    "student": ("students", "/student", "student_id", "Student"),
    "group": ("study_groups", "/group", "group_id", "Group"),
}


def _entity_form(title, value=""):
    return f"""
    <h3>{title}</h3>
    <form method="post" style="max-width:500px;">
        <input name="name" class="form-control mb-3" placeholder="Name" value="{escape(value)}" required>
        <button class="btn btn-primary">Save</button>
    </form>
    <a href="/" class="btn btn-secondary mt-3">Back</a>
    """


def _lesson_rows(rows, lessons, now, show_owner=True):
    out = ""
    for row, lesson in zip(rows, lessons):
        status = lesson_status(lesson, now)
        badge = {
            COLLECTED: "<span class='badge bg-success'>Paid</span>",
            PENDING: "<span class='badge bg-danger'>Pending</span>",
            NOT_YET_DUE: "<span class='badge bg-secondary'>Upcoming</span>",
        }[status]
        if lesson.external:
            badge += " <span class='badge bg-info text-dark'>External</span>"
        owner = ""
        if show_owner:
            name = row["student_name"] if lesson.type == "student" else row["group_name"]
            owner = f"<td>{escape(name or '')}</td>"
        toggle = "Mark unpaid" if lesson.paid else "Mark paid"
        out += (
            "<tr>"
            f"<td>{lesson.start:%Y-%m-%d %H:%M}</td>"
            f"<td>{lesson.end:%H:%M}</td>"
            f"<td>{escape(lesson.title)}</td>"
            f"{owner}"
            f"<td class='text-end'>{money(lesson.price)}</td>"
            f"<td>{badge}</td>"
            "<td>"
            f"<form method='post' action='/lesson/{lesson.id}/toggle_paid' class='d-inline'>"
            f"<button class='btn btn-sm btn-outline-success me-1'>{toggle}</button></form>"
            f"<a href='/lesson/{lesson.id}/edit' class='btn btn-sm btn-warning me-1'>Edit</a>"
            f"<form method='post' action='/lesson/{lesson.id}/delete' class='d-inline' "
            f"onsubmit=\"return confirm('Delete this lesson?');\">"
            f"<button class='btn btn-sm btn-danger'>Delete</button></form>"
            "</td>"
            "</tr>"
        )
    return out


def find_entity(kind, entity_id):
    table = ENTITIES[kind][0]
    with get_db() as db:
        return db.execute(f"SELECT * FROM {table} WHERE id=?", (entity_id,)).fetchone()


def insert_entity(kind, name):
    table = ENTITIES[kind][0]
    stamp = now_iso()
    with get_db() as db:
        cur = db.execute(
            f"INSERT INTO {table} (name, created_at, updated_at) VALUES (?,?,?)",
            (name, stamp, stamp),
        )
        db.commit()
    return cur.lastrowid


def update_entity(kind, entity_id, name):
    table = ENTITIES[kind][0]
    with get_db() as db:
        db.execute(
            f"UPDATE {table} SET name=?, updated_at=? WHERE id=?",
            (name, now_iso(), entity_id),
        )
        db.commit()


def remove_entity(kind, entity_id):
    table = ENTITIES[kind][0]
    with get_db() as db:
        # Foreign keys will cascade to lessons
        db.execute(f"DELETE FROM {table} WHERE id=?", (entity_id,))
        db.commit()


def add_entity(kind):
    _, prefix, _, label = ENTITIES[kind]
    if request.method == "POST":
        name = request.form.get("name", "").strip()
        if not name:
            flash("Name is required.", "danger")
        else:
            entity_id = insert_entity(kind, name)
            flash(f"{label} added!", "s")
            return redirect(f"{prefix}/{entity_id}")
    return render_template("base.html", content=_entity_form(f"Add {label}"))


def entity_detail(kind, entity_id):
    table, prefix, column, label = ENTITIES[kind]
    now = datetime.now()
    with get_db() as db:
        entity = db.execute(f"SELECT * FROM {table} WHERE id=?", (entity_id,)).fetchone()
        if entity is None:
            abort(404)
        rows, lessons = fetch_lessons(db, f"WHERE l.{column} = ?", (entity_id,))

    pending = pending_payment(lessons, now)
    content = f"""
    <div class="d-flex justify-content-between align-items-center mb-2">
        <h2>{escape(entity['name'])} <small class="text-muted">{label}</small></h2>
        <div>
            <a href="/lessons/add?type={kind}&id={entity_id}" class="btn btn-success me-2">+ Add Lesson</a>
            <a href="{prefix}/{entity_id}/edit" class="btn btn-outline-secondary me-2">Edit</a>
            <form method="post" action="{prefix}/{entity_id}/delete" class="d-inline"
                  onsubmit="return confirm('Delete this {kind} and all its lessons?');">
                <button class="btn btn-outline-danger">Delete</button>
            </form>
        </div>
    </div>
    <p>Pending payment: <b>{money(pending)}</b></p>
    <table class="table table-sm table-bordered">
        <tr class="table-light">
            <th>Start</th><th>End</th><th>Title</th><th class="text-end">Price</th>
            <th>Status</th><th>Actions</th>
        </tr>
        {_lesson_rows(rows, lessons, now, show_owner=False) or "<tr><td colspan='6' class='text-muted'>No lessons yet.</td></tr>"}
    </table>
    <a href="/" class="btn btn-secondary mt-3">Back</a>
    """
    return render_template("base.html", content=content)


def edit_entity(kind, entity_id):
    _, prefix, _, label = ENTITIES[kind]
    entity = find_entity(kind, entity_id)
    if entity is None:
        abort(404)

    if request.method == "POST":
        name = request.form.get("name", "").strip()
        if not name:
            flash("Name is required.", "danger")
        else:
            update_entity(kind, entity_id, name)
            flash(f"{label} updated!", "s")
            return redirect(f"{prefix}/{entity_id}")

    return render_template("base.html", content=_entity_form(f"Edit {label}", entity["name"]))


def delete_entity(kind, entity_id):
    label = ENTITIES[kind][3]
    if find_entity(kind, entity_id) is None:
        abort(404)
    remove_entity(kind, entity_id)
    flash(f"{label} and all its lessons deleted.", "s")
    return redirect("/")


@bp.route("/students/add", methods=["GET", "POST"])
def add_student():
    return add_entity("student")


@bp.route("/student/<int:student_id>")
def student_detail(student_id):
    return entity_detail("student", student_id)


@bp.route("/student/<int:student_id>/edit", methods=["GET", "POST"])
def edit_student(student_id):
    return edit_entity("student", student_id)


@bp.route("/student/<int:student_id>/delete", methods=["POST"])
def delete_student(student_id):
    return delete_entity("student", student_id)


@bp.route("/groups/add", methods=["GET", "POST"])
def add_group():
    return add_entity("group")


@bp.route("/group/<int:group_id>")
def group_detail(group_id):
    return entity_detail("group", group_id)


@bp.route("/group/<int:group_id>/edit", methods=["GET", "POST"])
def edit_group(group_id):
    return edit_entity("group", group_id)


@bp.route("/group/<int:group_id>/delete", methods=["POST"])
def delete_group(group_id):
    return delete_entity("group", group_id)


# ---------- LESSONS ----------

@bp.route("/lessons")
def lessons():
    now = datetime.now()
    with get_db() as db:
        rows, items = fetch_lessons(db)

    content = f"""
    <div class="d-flex justify-content-between align-items-center mb-3">
        <h2>All Lessons</h2>
        <a href="/lessons/add" class="btn btn-success btn-lg">+ Add Lesson</a>
    </div>
    <table class="table table-sm table-bordered">
        <tr class="table-light">
            <th>Start</th><th>End</th><th>Title</th><th>Student / Group</th>
            <th class="text-end">Price</th><th>Status</th><th>Actions</th>
        </tr>
        {_lesson_rows(rows, items, now) or "<tr><td colspan='7' class='text-muted'>No lessons yet.</td></tr>"}
    </table>
    """
    return render_template("base.html", content=content)


def _lesson_form(title, values, students, groups):
    def options(rows, selected):
        return "".join(
            [
                f"<option value='{r['id']}'{' selected' if r['id'] == selected else ''}>"
                f"{escape(r['name'])}</option>"
                for r in rows
            ]
        )

    def checked(key):
        return " checked" if _as_bool(values.get(key) or False) else ""

    lesson_type = values.get("type") or "student"
    return f"""
    <h3>{title}</h3>
    <form method="post" style="max-width:600px;">
        <input name="title" class="form-control mb-3" placeholder="Title" value="{escape(values.get('title', ''))}">
        <div class="row g-2 mb-3">
            <div class="col"><label class="form-label">Start</label>
                <input type="datetime-local" name="start" class="form-control" value="{escape(values.get('start', ''))}" required></div>
            <div class="col"><label class="form-label">End</label>
                <input type="datetime-local" name="end" class="form-control" value="{escape(values.get('end', ''))}" required></div>
        </div>
        <input name="price" class="form-control mb-3" placeholder="Price" value="{escape(values.get('price', ''))}" required>
        <select name="type" class="form-select mb-3">
            <option value="student"{' selected' if lesson_type == 'student' else ''}>Student lesson</option>
            <option value="group"{' selected' if lesson_type == 'group' else ''}>Group lesson</option>
        </select>
        <label class="form-label">Student</label>
        <select name="studentId" class="form-select mb-3">
            <option value="">-</option>{options(students, _as_id(values.get('studentId')))}
        </select>
        <label class="form-label">Group</label>
        <select name="groupId" class="form-select mb-3">
            <option value="">-</option>{options(groups, _as_id(values.get('groupId')))}
        </select>
        <div class="form-check mb-2">
            <input class="form-check-input" type="checkbox" name="paid" id="paidCheck"{checked('paid')}>
            <label class="form-check-label" for="paidCheck">Paid</label>
        </div>
        <div class="form-check mb-3">
            <input class="form-check-input" type="checkbox" name="external" id="externalCheck"{checked('external')}>
            <label class="form-check-label" for="externalCheck">External</label>
        </div>
        <button class="btn btn-primary btn-lg w-100">Save Lesson</button>
    </form>
    <a href="/lessons" class="btn btn-secondary mt-3">Back</a>
    """


def _owner_url(values):
    if values["type"] == "student":
        return f"/student/{values['student_id']}"
    return f"/group/{values['group_id']}"


@bp.route("/lessons/add", methods=["GET", "POST"])
def add_lesson():
    with get_db() as db:
        students = db.execute("SELECT id, name FROM students ORDER BY name").fetchall()
        groups = db.execute("SELECT id, name FROM study_groups ORDER BY name").fetchall()

    form_values = request.form.to_dict()
    if request.method == "GET":
        kind = request.args.get("type", "student")
        form_values = {"type": kind}
        if kind in ENTITIES:
            form_values["studentId" if kind == "student" else "groupId"] = request.args.get("id")

    if request.method == "POST":
        values, error = validate_lesson(form_values)
        if error:
            flash(error + ".", "danger")
        else:
            try:
                with get_db() as db:
                    save_lesson(db, values)
                flash("Lesson added!", "s")
                return redirect(_owner_url(values))
            except sqlite3.IntegrityError:
                flash("Selected student or group does not exist.", "danger")

    return render_template(
        "base.html", content=_lesson_form("Add Lesson", form_values, students, groups)
    )


@bp.route("/lesson/<int:lesson_id>/edit", methods=["GET", "POST"])
def edit_lesson(lesson_id):
    with get_db() as db:
        row = db.execute("SELECT * FROM lessons WHERE id=?", (lesson_id,)).fetchone()
        if row is None:
            abort(404)
        students = db.execute("SELECT id, name FROM students ORDER BY name").fetchall()
        groups = db.execute("SELECT id, name FROM study_groups ORDER BY name").fetchall()

    if request.method == "POST":
        form_values = request.form.to_dict()
        values, error = validate_lesson(form_values)
        if error:
            flash(error + ".", "danger")
        else:
            try:
                with get_db() as db:
                    save_lesson(db, values, lesson_id)
                flash("Lesson updated!", "s")
                return redirect(_owner_url(values))
            except sqlite3.IntegrityError:
                flash("Selected student or group does not exist.", "danger")
    else:
        form_values = {
            "title": row["title"],
            "start": row["start_at"][:16],
            "end": row["end_at"][:16],
            "price": row["price"],
            "type": row["type"],
            "studentId": row["student_id"],
            "groupId": row["group_id"],
            "paid": row["paid"],
            "external": row["external"],
        }

    return render_template(
        "base.html", content=_lesson_form("Edit Lesson", form_values, students, groups)
    )


@bp.route("/lesson/<int:lesson_id>/delete", methods=["POST"])
def delete_lesson(lesson_id):
    with get_db() as db:
        row = db.execute("SELECT id FROM lessons WHERE id=?", (lesson_id,)).fetchone()
        if row is None:
            abort(404)
        db.execute("DELETE FROM lessons WHERE id=?", (lesson_id,))
        db.commit()
    flash("Lesson deleted.", "s")
    return redirect(request.referrer or "/lessons")


@bp.route("/lesson/<int:lesson_id>/toggle_paid", methods=["POST"])
def toggle_paid(lesson_id):
    with get_db() as db:
        row = db.execute("SELECT paid FROM lessons WHERE id=?", (lesson_id,)).fetchone()
        if row is None:
            abort(404)
        db.execute(
            "UPDATE lessons SET paid=?, updated_at=? WHERE id=?",
            (0 if row["paid"] else 1, now_iso(), lesson_id),
        )
        db.commit()
    return redirect(request.referrer or "/lessons")


# ---------- CALENDAR ----------

def _calendar_class(lesson, now):
    if lesson.external:
        return "bg-info-subtle"
    status = lesson_status(lesson, now)
    if status == COLLECTED:
        return "bg-success-subtle"
    if status == PENDING:
        return "bg-danger-subtle"
    return "bg-warning-subtle"


@bp.route("/calendar")
def calendar_view():
    year, month = requested_month()
    now = datetime.now()
    with get_db() as db:
        rows, items = fetch_lessons(db, order="l.start_at")

    by_day = defaultdict(list)
    for row, lesson in zip(rows, items):
        if in_month(lesson, year, month):
            by_day[lesson.start.date()].append((row, lesson))

    weeks_html = ""
    for week in calendar.Calendar(firstweekday=0).monthdatescalendar(year, month):
        cells = ""
        for day in week:
            if day.month != month:
                cells += "<td class='bg-light'></td>"
                continue
            entries = "".join(
                [
                    f"<div class='small rounded px-1 mb-1 {_calendar_class(lesson, now)}'>"
                    f"<a href='/lesson/{lesson.id}/edit' class='text-decoration-none text-dark'>"
                    f"{lesson.start:%H:%M} "
                    f"{escape(row['student_name'] or row['group_name'] or '')}</a></div>"
                    for row, lesson in by_day[day]
                ]
            )
            cells += f"<td style='height:110px;width:14%;'><div class='fw-bold'>{day.day}</div>{entries}</td>"
        weeks_html += f"<tr>{cells}</tr>"

    prev_year, prev_month = shift_month(year, month, -1)
    next_year, next_month = shift_month(year, month, 1)
    headers = "".join([f"<th>{name}</th>" for name in calendar.day_abbr])

    content = f"""
    <div class="d-flex justify-content-between align-items-center mb-3">
        <a href="/calendar?year={prev_year}&month={prev_month}" class="btn btn-outline-secondary">&laquo; Previous</a>
        <h2 class="mb-0">{MONTH_NAMES[month - 1]} {year}</h2>
        <a href="/calendar?year={next_year}&month={next_month}" class="btn btn-outline-secondary">Next &raquo;</a>
    </div>
    <table class="table table-bordered" id="calendar">
        <tr class="table-light">{headers}</tr>
        {weeks_html}
    </table>
    <p class="small">
        <span class="badge bg-success-subtle text-dark">Paid</span>
        <span class="badge bg-danger-subtle text-dark">Pending</span>
        <span class="badge bg-warning-subtle text-dark">Upcoming</span>
        <span class="badge bg-info-subtle text-dark">External</span>
    </p>
    """
    return render_template("base.html", content=content)


# ---------- MONTHLY CSV ----------

@bp.route("/summary/csv")
def summary_csv():
    year, month = requested_month()
    now = datetime.now()
    with get_db() as db:
        rows, items = fetch_lessons(db, order="l.start_at")

    month_ids = {lesson.id for lesson in lessons_in_month(items, year, month)}
    summary = monthly_summary(items, year, month, now)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["Start", "End", "Title", "Student / Group", "Price", "Bucket", "Status"])
    for row, lesson in zip(rows, items):
        if lesson.id not in month_ids:
            continue
        writer.writerow(
            [
                lesson.start.isoformat(timespec="minutes"),
                lesson.end.isoformat(timespec="minutes"),
                lesson.title,
                row["student_name"] or row["group_name"] or "",
                f"{lesson.price:.2f}",
                lesson_bucket(lesson),
                lesson_status(lesson, now),
            ]
        )
    writer.writerow([])
    for label, value in summary.as_dict().items():
        writer.writerow([label, f"{value:.2f}"])

    output.seek(0)
    filename = f"lessons_{year}_{month:02d}.csv"
    return Response(
        output.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment;filename={filename}"},
    )


# ---------- JSON API ----------

def lesson_to_json(row):
    lesson = row_to_lesson(row)
    student = group = None
    if lesson.student_id is not None:
        student = {"id": lesson.student_id, "name": row["student_name"]}
    if lesson.group_id is not None:
        group = {"id": lesson.group_id, "name": row["group_name"]}
    return {
        "id": lesson.id,
        "title": lesson.title,
        "start": lesson.start.isoformat(),
        "end": lesson.end.isoformat(),
        "external": lesson.external,
        "paid": lesson.paid,
        "price": lesson.price,
        "type": lesson.type,
        "studentId": lesson.student_id,
        "groupId": lesson.group_id,
        "student": student,
        "group": group,
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _json_error(message, status):
    return jsonify({"error": message}), status


def json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


@bp.route("/api/auth/login", methods=["POST"])
def api_login():
    body = json_body()
    username = str(body.get("username") or "")
    password = str(body.get("password") or "")
    try:
        valid = check_credentials(username, password)
    except RuntimeError:
        current_app.logger.error("Login attempted but admin credentials are not configured")
        return _json_error("Admin credentials are not configured", 500)
    if not valid:
        current_app.logger.info("Failed API login attempt")
        return _json_error("Invalid credentials", 401)

    token = issue_session_token(username, current_app.config.get("AUTH_SECRET"))
    current_app.logger.info("Admin logged in through the API")
    return set_session_cookie(jsonify({"ok": True}), token)


@bp.route("/api/auth/logout", methods=["POST"])
def api_logout():
    return clear_session_cookie(jsonify({"ok": True}))


def _api_entities(kind):
    table, _, column, _ = ENTITIES[kind]
    now = datetime.now()
    with get_db() as db:
        entities = db.execute(f"SELECT * FROM {table} ORDER BY name").fetchall()
        _, lessons = fetch_lessons(db)

    grouped = defaultdict(list)
    for lesson in lessons:
        key = getattr(lesson, column)
        if key is not None:
            grouped[key].append(lesson)

    return jsonify(
        [
            {
                "id": e["id"],
                "name": e["name"],
                "createdAt": e["created_at"],
                "updatedAt": e["updated_at"],
                "pendingPayment": pending_payment(grouped[e["id"]], now),
            }
            for e in entities
        ]
    )


def _api_entity(kind, entity_id):
    table, _, column, label = ENTITIES[kind]
    now = datetime.now()
    with get_db() as db:
        entity = db.execute(f"SELECT * FROM {table} WHERE id=?", (entity_id,)).fetchone()
        if entity is None:
            return _json_error(f"{label} not found", 404)
        rows, lessons = fetch_lessons(db, f"WHERE l.{column} = ?", (entity_id,))

    return jsonify(
        {
            "id": entity["id"],
            "name": entity["name"],
            "createdAt": entity["created_at"],
            "updatedAt": entity["updated_at"],
            "lessons": [lesson_to_json(r) for r in rows],
            "pendingPayment": pending_payment(lessons, now),
        }
    )


def _entity_json(entity):
    return {
        "id": entity["id"],
        "name": entity["name"],
        "createdAt": entity["created_at"],
        "updatedAt": entity["updated_at"],
    }


def _json_name():
    name = json_body().get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    return name.strip()


def _api_create_entity(kind):
    name = _json_name()
    if name is None:
        return _json_error("Name is required", 400)
    entity_id = insert_entity(kind, name)
    return jsonify(_entity_json(find_entity(kind, entity_id))), 201


def _api_change_entity(kind, entity_id):
    label = ENTITIES[kind][3]
    if find_entity(kind, entity_id) is None:
        return _json_error(f"{label} not found", 404)

    if request.method == "DELETE":
        remove_entity(kind, entity_id)
        return jsonify({"message": f"{label} deleted successfully"})

    name = _json_name()
    if name is None:
        return _json_error("Name is required", 400)
    update_entity(kind, entity_id, name)
    return jsonify(_entity_json(find_entity(kind, entity_id)))


@bp.route("/api/students", methods=["GET", "POST"])
def api_students():
    if request.method == "POST":
        return _api_create_entity("student")
    return _api_entities("student")


@bp.route("/api/students/<int:student_id>", methods=["GET", "PUT", "DELETE"])
def api_student(student_id):
    if request.method == "GET":
        return _api_entity("student", student_id)
    return _api_change_entity("student", student_id)


@bp.route("/api/groups", methods=["GET", "POST"])
def api_groups():
    if request.method == "POST":
        return _api_create_entity("group")
    return _api_entities("group")


@bp.route("/api/groups/<int:group_id>", methods=["GET", "PUT", "DELETE"])
def api_group(group_id):
    if request.method == "GET":
        return _api_entity("group", group_id)
    return _api_change_entity("group", group_id)


@bp.route("/api/lessons", methods=["GET", "POST"])
def api_lessons():
    if request.method == "GET":
        with get_db() as db:
            rows, _ = fetch_lessons(db)
        return jsonify([lesson_to_json(r) for r in rows])

    values, error = validate_lesson(json_body())
    if error:
        return _json_error(error, 400)
    try:
        with get_db() as db:
            lesson_id = save_lesson(db, values)
            row = db.execute(f"{LESSON_SELECT} WHERE l.id = ?", (lesson_id,)).fetchone()
    except sqlite3.IntegrityError:
        return _json_error("Student or group does not exist", 400)
    return jsonify(lesson_to_json(row)), 201


@bp.route("/api/lessons/<int:lesson_id>", methods=["GET", "PUT", "DELETE"])
def api_lesson(lesson_id):
    with get_db() as db:
        row = db.execute(f"{LESSON_SELECT} WHERE l.id = ?", (lesson_id,)).fetchone()
        if row is None:
            return _json_error("Lesson not found", 404)

        if request.method == "GET":
            return jsonify(lesson_to_json(row))

        if request.method == "DELETE":
            db.execute("DELETE FROM lessons WHERE id=?", (lesson_id,))
            db.commit()
            return jsonify({"message": "Lesson deleted successfully"})

        # PUT merges the given fields over the stored lesson
        merged = lesson_to_json(row)
        body = json_body()
        merged.update({k: v for k, v in body.items() if k in merged and v is not None})
        if body.get("type") == "student":
            merged["groupId"] = None
        elif body.get("type") == "group":
            merged["studentId"] = None
        values, error = validate_lesson(merged)
        if error:
            return _json_error(error, 400)
        try:
            save_lesson(db, values, lesson_id)
        except sqlite3.IntegrityError:
            return _json_error("Student or group does not exist", 400)
        row = db.execute(f"{LESSON_SELECT} WHERE l.id = ?", (lesson_id,)).fetchone()
    return jsonify(lesson_to_json(row))


@bp.route("/api/summary")
def api_summary():
    parsed = parse_month(request.args)
    if parsed is None:
        return _json_error("Invalid year or month", 400)
    year, month = parsed
    with get_db() as db:
        _, lessons = fetch_lessons(db)
    summary = monthly_summary(lessons, year, month, datetime.now())
    return jsonify({"year": year, "month": month, **summary.as_dict()})


if __name__ == "__main__":
    app = create_app()
    print("\nTUTOR MANAGER: STUDENTS, GROUPS, LESSONS, PAYMENTS")
    print("Open: http://127.0.0.1:5000\n")
    app.run(port=5000, debug=True)
