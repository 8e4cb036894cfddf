import os, io, secrets, string, argparse, functools, hmac, hashlib, re, time
from datetime import datetime, timedelta
from flask import Flask, request, session, jsonify, abort, send_file, send_from_directory
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.utils import secure_filename
from flask_mail import Mail, Message
from dotenv import load_dotenv
from sqlalchemy import func, or_, and_
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
import qrcode

from models import (db, utcnow, _as_naive_utc,
                    User, CourseRegistry, ProfessionalRequest, Subject,
                    SchoolClass, ClassStudent, ClassInvite, Material,
                    Form, Question, Option, Answer, AnswerComment, FormCorrection, FormResult,
                    ROLE_ADMIN, ROLE_COORDINATOR, ROLE_TEACHER, ROLE_STUDENT, PROFESSIONAL_ROLES,
                    QUESTION_TYPES, QUESTION_TRUE_FALSE, OBJECTIVE_TYPES,
                    FORM_STATUS_OPEN, FORM_STATUS_CORRECTED)

load_dotenv()

# --------------------------------------------------------------------
# Utils
# --------------------------------------------------------------------

def parse_dt(s):
    """Parse an ISO-8601 / <input type=datetime-local> string to naive UTC."""
    if not s or not isinstance(s, str):
        return None
    s = s.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return _as_naive_utc(datetime.fromisoformat(s))
    except ValueError:
        return None

def _normalize_db_url(url):
    if not url:
        return None
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url

def gen_code(n=8, alphabet=string.ascii_uppercase + string.digits):
    return ''.join(secrets.choice(alphabet) for _ in range(n))

def _human_size(num_bytes):
    if num_bytes >= 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f} MB"
    return f"{max(1, round(num_bytes / 1024))} KB"

# --------------------------------------------------------------------
# Config
# --------------------------------------------------------------------
APP_SECRET = os.environ.get("APP_SECRET") or secrets.token_hex(32)
DB_PATH = os.path.abspath(os.environ.get("EVOLVERE_DB", "evolvere.db"))
DB_URI  = _normalize_db_url(os.environ.get("DATABASE_URL")) or f"sqlite:///{DB_PATH}"
UPLOAD_DIR = os.path.abspath(os.environ.get("UPLOAD_DIR", "uploads"))
FRONTEND_URL = os.environ.get("FRONTEND_URL")  # optional override for invite links
MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "5"))
SESSION_LIFETIME_HOURS = int(os.environ.get("SESSION_LIFETIME_HOURS", "2"))
INVITE_DEFAULT_DAYS = int(os.environ.get("INVITE_DEFAULT_DAYS", "7"))
ALLOWED_MATERIAL_EXTENSIONS = {"pdf", "doc", "docx", "ppt", "pptx", "txt", "zip"}

mail = Mail()

def create_app(db_path=DB_URI, upload_dir=UPLOAD_DIR):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = APP_SECRET
    app.config["SQLALCHEMY_DATABASE_URI"] = db_path
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True}
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=SESSION_LIFETIME_HOURS)
    app.config["SESSION_COOKIE_NAME"] = "evolvere_session"
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["UPLOAD_DIR"] = upload_dir
    app.config["MAX_UPLOAD_BYTES"] = MAX_UPLOAD_MB * 1024 * 1024
    # leave room for the multipart envelope; per-file limits are checked in the routes
    app.config["MAX_CONTENT_LENGTH"] = (MAX_UPLOAD_MB + 1) * 1024 * 1024
    app.config["CSRF_ENABLED"] = True

    app.config["MAIL_SERVER"] = os.environ.get("MAIL_SERVER", "localhost")
    app.config["MAIL_PORT"] = int(os.environ.get("MAIL_PORT", "587"))
    app.config["MAIL_USE_TLS"] = os.environ.get("MAIL_USE_TLS", "1") == "1"
    app.config["MAIL_USERNAME"] = os.environ.get("MAIL_USERNAME")
    app.config["MAIL_PASSWORD"] = os.environ.get("MAIL_PASSWORD")
    app.config["MAIL_DEFAULT_SENDER"] = os.environ.get("MAIL_DEFAULT_SENDER") or app.config["MAIL_USERNAME"]

    db.init_app(app)
    mail.init_app(app)
    with app.app_context():
        db.create_all()
    return app

app = create_app()

# --------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------
@app.errorhandler(HTTPException)
def _http_error(exc):
    return jsonify({"ok": False, "error": exc.description}), exc.code

@app.errorhandler(RequestEntityTooLarge)
def _upload_too_large(exc):
    return jsonify({"ok": False, "error": f"File exceeds {MAX_UPLOAD_MB} MB."}), 400

@app.errorhandler(SQLAlchemyError)
def _db_error(exc):
    db.session.rollback()
    app.logger.exception("Database error on %s %s", request.method, request.path)
    return jsonify({"ok": False, "error": "Internal server error."}), 500

def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, "JSON body must be an object.")
    return data

def _int_field(data, field, required=True, minimum=1):
    raw = data.get(field)
    if raw in (None, ""):
        if required:
            abort(422, f"Field '{field}' is required.")
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        abort(422, f"Field '{field}' must be an integer.")
    if minimum is not None and value < minimum:
        abort(422, f"Field '{field}' must be at least {minimum}.")
    return value

# --------------------------------------------------------------------
# CSRF helpers (JSON header)
# --------------------------------------------------------------------
CSRF_EXEMPT = {"login", "register"}

def _csrf_key():
    if "csrf_key" not in session:
        session["csrf_key"] = secrets.token_hex(16)
    return session["csrf_key"]

def csrf_token():
    secret = APP_SECRET.encode()
    key = _csrf_key().encode()
    return hmac.new(secret, key, hashlib.sha256).hexdigest()

def verify_csrf_header():
    sent = request.headers.get("X-CSRF", "")
    return hmac.compare_digest(sent, csrf_token())

@app.before_request
def _csrf_protect():
    if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return
    if not app.config.get("CSRF_ENABLED", True) or request.endpoint in CSRF_EXEMPT:
        return
    # anonymous requests are rejected by the auth decorators
    if "user_id" not in session:
        return
    if not verify_csrf_header():
        abort(400, "bad csrf")

# --------------------------------------------------------------------
# Auth/session helpers
# --------------------------------------------------------------------
def current_user():
    uid = session.get("user_id")
    return db.session.get(User, uid) if uid else None

def logout_everyone():
    session.pop("user_id", None)
    session.pop("user_role", None)

def login_session(user):
    logout_everyone()
    session["user_id"] = user.id
    session["user_role"] = user.role
    session.permanent = True

def require_user(*roles):
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            u = current_user()
            if not u:
                logout_everyone()
                abort(401, "Not authenticated.")
            if not u.is_active:
                abort(403, "Account disabled.")
            if roles and u.role not in roles:
                abort(403, "Access denied.")
            return fn(*args, **kwargs)
        return wrapper
    return deco

def require_student():
    return require_user(ROLE_STUDENT)

STAFF = (ROLE_ADMIN, ROLE_COORDINATOR, ROLE_TEACHER)
MANAGERS = (ROLE_ADMIN, ROLE_COORDINATOR)

def _coordinator_course(user):
    """Registry course a coordinator is validated for (None for admins)."""
    if user.role != ROLE_COORDINATOR:
        return None
    if not user.course:
        abort(404, "Coordinator not found.")
    return user.course

def _can_manage_subject(user, subject):
    if user.role == ROLE_ADMIN:
        return True
    if user.role == ROLE_COORDINATOR:
        return subject.course_id == user.course_id
    if user.role == ROLE_TEACHER:
        return subject.professional_id == user.id
    return False

def _require_subject_manager(user, subject):
    if not _can_manage_subject(user, subject):
        abort(403, "You do not manage this subject.")

# --------------------------------------------------------------------
# Field validation
# --------------------------------------------------------------------
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

def _validate_user_fields(fields):
    """Return the first error message for the given fields, or None."""
    for field, value in fields.items():
        value = value if isinstance(value, str) else ("" if value is None else str(value))
        if field == "username":
            if not value.strip():
                return "Name is required."
            if not 3 <= len(value.strip()) <= 50:
                return "Name must be between 3 and 50 characters."
        elif field == "email":
            if not value.strip():
                return "Email is required."
            if not EMAIL_RE.match(value.strip()):
                return "Invalid email."
        elif field == "password":
            if not value:
                return "Password is required."
            if len(value) < 6:
                return "Password must have at least 6 characters."
        elif field == "confirm_password":
            if not value:
                return "Password confirmation is required."
            if value != fields.get("password"):
                return "Passwords must match."
    return None

def _validate_form_fields(title, description):
    if not title:
        return "Title is required."
    if not 3 <= len(title) <= 150:
        return "Title must be between 3 and 150 characters."
    if description and len(description) > 255:
        return "Description must have at most 255 characters."
    return None

def _new_registration():
    code = gen_code(8, string.digits)
    while User.query.filter_by(registration=code).first() is not None:
        code = gen_code(8, string.digits)
    return code

# --------------------------------------------------------------------
# Email
# --------------------------------------------------------------------
def send_email(to_email, subject, body):
    if not app.config.get("MAIL_USERNAME") or not app.config.get("MAIL_PASSWORD"):
        return False
    msg = Message(subject=subject, recipients=[to_email], body=body)
    try:
        mail.send(msg)
        return True
    except Exception as exc:
        app.logger.exception("Email send failed: %s", exc)
        return False

def _approval_email(name):
    return (f"Hello {name},\n\n"
            "Your professional account on Evolvere has been approved. "
            "You can now sign in and manage your subjects and classes.\n\n"
            "Evolvere team")

def _rejection_email(name):
    return (f"Hello {name},\n\n"
            "We could not validate your professional account on Evolvere "
            "with the documents provided, so the request was declined. "
            "You are welcome to register again with updated information.\n\n"
            "Evolvere team")

# --------------------------------------------------------------------
# Register / Login / Logout / Session
# --------------------------------------------------------------------
@app.post("/api/users/register")
def register():
    data = _json_body()
    username = (data.get("username") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    confirm = data.get("confirm_password") or ""
    error = _validate_user_fields({"username": username, "email": email,
                                   "password": password, "confirm_password": confirm})
    if error:
        abort(422, error)
    if User.query.filter_by(email=email).first():
        abort(422, "Email already exists.")

    user = User(username=username, email=email, registration=_new_registration(), role=ROLE_STUDENT)
    user.set_password(password)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        abort(422, "Email already exists.")
    login_session(user)
    return jsonify({"ok": True, "message": "Registration complete.",
                    "user": user.session_payload(), "csrf": csrf_token()}), 201

@app.post("/api/login")
def login():
    data = _json_body()
    email = (data.get("email") or "").strip().lower()
    pw = data.get("password") or ""
    error = _validate_user_fields({"email": email, "password": pw})
    if error:
        abort(422, error)

    user = User.query.filter_by(email=email).first()
    if not user:
        abort(404, "Email not found.")
    if not user.check_password(pw):
        abort(422, "Incorrect password.")
    if not user.is_active:
        abort(403, "Account disabled.")

    login_session(user)
    user.last_login = utcnow()
    db.session.commit()
    return jsonify({"ok": True, "message": "Signed in.",
                    "user": user.session_payload(), "csrf": csrf_token()})

@app.post("/api/logout")
def logout():
    logout_everyone()
    session.pop("csrf_key", None)
    return jsonify({"ok": True, "message": "Signed out."})

@app.route("/api/session")
def session_info():
    u = current_user()
    if not u:
        abort(401, "Not authenticated.")
    return jsonify({"ok": True, "user": u.session_payload(), "csrf": csrf_token()})

# --------------------------------------------------------------------
# Users & students
# --------------------------------------------------------------------
@app.route("/api/users/<int:user_id>")
@require_user()
def user_detail(user_id):
    user = db.get_or_404(User, user_id, description="User not found.")
    return jsonify({"ok": True, "user": user.to_dict()})

@app.route("/api/users/<int:user_id>", methods=["PATCH"])
@require_user()
def user_edit(user_id):
    me = current_user()
    if me.id != user_id and me.role != ROLE_ADMIN:
        abort(403, "You can only edit your own account.")
    user = db.get_or_404(User, user_id, description="User not found.")
    data = _json_body()
    changed = False

    username = (data.get("username") or "").strip()
    if username and username != user.username:
        error = _validate_user_fields({"username": username})
        if error:
            abort(422, error)
        user.username = username
        changed = True

    email = (data.get("email") or "").strip().lower()
    if email and email != user.email:
        error = _validate_user_fields({"email": email})
        if error:
            abort(422, error)
        if User.query.filter_by(email=email).first():
            abort(422, "Email already exists.")
        user.email = email
        changed = True

    current_pw = data.get("current_password") or ""
    new_pw = data.get("password") or ""
    confirm = data.get("confirm_password") or ""
    if current_pw or new_pw or confirm:
        if not (current_pw and new_pw and confirm):
            abort(422, "To change the password fill in every password field.")
        if not user.check_password(current_pw):
            abort(422, "Current password is incorrect.")
        error = _validate_user_fields({"password": new_pw, "confirm_password": confirm})
        if error:
            abort(422, error)
        user.set_password(new_pw)
        changed = True

    if not changed:
        abort(400, "No changes were made.")
    db.session.commit()
    return jsonify({"ok": True, "message": "User updated.", "user": user.to_dict()})

@app.route("/api/students")
@require_user(*MANAGERS)
def students_list():
    me = current_user()
    q = User.query.filter_by(role=ROLE_STUDENT)
    course = _coordinator_course(me)
    if course:
        q = q.filter(User.course_id == course.id)
    students = q.order_by(User.username.asc()).all()
    return jsonify({"ok": True, "students": [s.to_dict() for s in students]})

def _delete_user(user):
    """Delete `user` (rows cascade in the DB) and settle forms they were blocking."""
    form_ids = [fid for (fid,) in db.session.query(FormCorrection.form_id)
                .filter(FormCorrection.student_id == user.id, FormCorrection.corrected.is_(False)).all()]
    db.session.delete(user)
    db.session.flush()
    db.session.expire_all()
    for form in Form.query.filter(Form.id.in_(form_ids)).all():
        _refresh_form_status(form)
    db.session.commit()

@app.route("/api/students/<int:student_id>", methods=["DELETE"])
@require_user(*MANAGERS)
def students_delete(student_id):
    me = current_user()
    student = User.query.filter_by(id=student_id, role=ROLE_STUDENT).first()
    if not student:
        abort(404, "Student not found.")
    course = _coordinator_course(me)
    if course and student.course_id != course.id:
        abort(403, "Student belongs to another course.")
    _delete_user(student)
    app.logger.info("Student %s deleted by user %s", student_id, me.id)
    return jsonify({"ok": True, "message": "Student deleted."})

# --------------------------------------------------------------------
# Course registry
# --------------------------------------------------------------------
@app.route("/api/courses")
def courses_list():
    q = CourseRegistry.query
    text = (request.args.get("q") or "").strip()
    if text:
        q = q.filter(CourseRegistry.name.ilike(f"%{text}%"))
    uf = (request.args.get("uf") or "").strip().upper()
    if uf:
        q = q.filter(CourseRegistry.uf == uf)
    try:
        limit = max(1, min(int(request.args.get("limit") or 100), 1000))
    except ValueError:
        abort(422, "limit must be an integer.")
    courses = q.order_by(CourseRegistry.name.asc()).limit(limit).all()
    if not courses:
        abort(404, "No course found.")
    return jsonify({"ok": True, "courses": [c.to_dict() for c in courses]})

@app.route("/api/courses/validate/<int:course_code>")
def courses_validate(course_code):
    course = CourseRegistry.query.filter_by(course_code=course_code).first()
    if not course:
        abort(404, "No course found with this code.")
    return jsonify({"ok": True, "course": course.to_dict()})

def _approved_teachers_query(course=None):
    q = ProfessionalRequest.query.filter_by(role=ROLE_TEACHER, approved=True)
    if course is not None:
        q = q.filter(ProfessionalRequest.access_code == str(course.course_code))
    return q

@app.route("/api/courses/<int:course_id>/teachers")
@require_user()
def courses_teachers(course_id):
    course = db.get_or_404(CourseRegistry, course_id, description="Course not found.")
    teachers = [
        {"id": r.professional_id, "username": r.professional.username, "institution": r.institution}
        for r in _approved_teachers_query(course).all()
    ]
    if not teachers:
        abort(404, "No teacher found for this course.")
    return jsonify({"ok": True, "teachers": teachers})

@app.route("/api/courses/<int:course_id>/subjects")
@require_user()
def courses_subjects(course_id):
    db.get_or_404(CourseRegistry, course_id, description="Course not found.")
    subjects = Subject.query.filter_by(course_id=course_id).order_by(Subject.name.asc()).all()
    if not subjects:
        abort(404, "No subject found for this course.")
    return jsonify({"ok": True, "subjects": [s.to_dict() for s in subjects]})

# --------------------------------------------------------------------
# Account setup & professional validation
# --------------------------------------------------------------------
ROLE_ALIASES = {"2": ROLE_COORDINATOR, "3": ROLE_TEACHER, "4": ROLE_STUDENT}

def _read_upload(field, allowed_exts):
    """Return (FileStorage, bytes, ext) for an uploaded file or abort(400)."""
    f = request.files.get(field)
    if f is None or not f.filename:
        return None, None, None
    filename = secure_filename(f.filename)
    ext = filename.rsplit(".", 1)[1].lower() if "." in filename else ""
    if ext not in allowed_exts:
        abort(400, f"File type '.{ext}' is not allowed.")
    content = f.read()
    if len(content) > app.config["MAX_UPLOAD_BYTES"]:
        abort(400, f"File exceeds {MAX_UPLOAD_MB} MB.")
    return f, content, ext

def _store_upload(subdir, ext, content):
    folder = os.path.join(app.config["UPLOAD_DIR"], subdir)
    os.makedirs(folder, exist_ok=True)
    name = f"{int(time.time() * 1000)}_{secrets.token_hex(4)}.{ext}"
    with open(os.path.join(folder, name), "wb") as fh:
        fh.write(content)
    return f"{subdir}/{name}"

def _remove_upload(rel_path):
    if not rel_path:
        return
    full = os.path.join(app.config["UPLOAD_DIR"], rel_path)
    if os.path.exists(full):
        os.remove(full)

@app.post("/api/account")
@require_user()
def account_setup():
    me = current_user()
    data = request.form if request.files or request.form else _json_body()
    role = str(data.get("role") or "").strip().lower()
    role = ROLE_ALIASES.get(role, role)
    institution = (data.get("institution") or "").strip()
    access_code = str(data.get("access_code") or "").strip()
    if role != ROLE_STUDENT and role not in PROFESSIONAL_ROLES:
        abort(422, "Invalid role.")
    if not institution:
        abort(422, "Institution is required.")

    course = CourseRegistry.query.filter_by(course_code=int(access_code)).first() if access_code.isdigit() else None
    if not course:
        abort(404, "No course found with this code.")

    if role == ROLE_STUDENT:
        if me.course_id is not None:
            abort(422, "This account is already configured.")
        me.institution = institution
        me.course_id = course.id
        db.session.commit()
        return jsonify({"ok": True, "message": "Account configured."})

    if me.professional_request is not None:
        abort(422, "This account is already configured.")
    _, content, ext = _read_upload("diploma", {"pdf"})
    if content is None:
        abort(400, "A PDF diploma is required for this profile.")

    diploma_path = _store_upload("diplomas", ext, content)
    req = ProfessionalRequest(professional_id=me.id, institution=institution,
                              access_code=str(course.course_code), diploma=diploma_path, role=role)
    db.session.add(req)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        _remove_upload(diploma_path)
        raise
    app.logger.info("Professional request from user %s for course %s (%s)", me.id, course.course_code, role)
    return jsonify({"ok": True, "message": "Account configured; awaiting approval."}), 201

def _request_scope(me):
    """Pending-request query visible to an admin or a coordinator."""
    q = ProfessionalRequest.query.filter_by(approved=False)
    course = _coordinator_course(me)
    if course:
        q = q.filter(ProfessionalRequest.role == ROLE_TEACHER,
                     ProfessionalRequest.access_code == str(course.course_code))
    return q

def _scoped_request_or_404(me, user_id):
    req = ProfessionalRequest.query.filter_by(professional_id=user_id).first()
    if not req:
        abort(404, "Request not found.")
    course = _coordinator_course(me)
    if course and (req.role != ROLE_TEACHER or req.access_code != str(course.course_code)):
        abort(403, "Request belongs to another course.")
    return req

def _registry_by_code(access_code):
    if not str(access_code).isdigit():
        return None
    return CourseRegistry.query.filter_by(course_code=int(access_code)).first()

@app.route("/api/account/requests")
@require_user(*MANAGERS)
def account_requests():
    reqs = _request_scope(current_user()).order_by(ProfessionalRequest.updated_at.desc()).all()
    if not reqs:
        abort(404, "No request found.")
    return jsonify({"ok": True, "requests": [r.to_dict(_registry_by_code(r.access_code)) for r in reqs]})

@app.post("/api/account/requests/<int:user_id>/approve")
@require_user(*MANAGERS)
def account_approve(user_id):
    me = current_user()
    req = _scoped_request_or_404(me, user_id)
    user = req.professional
    course = _registry_by_code(req.access_code)
    req.approved = True
    user.role = req.role
    user.institution = req.institution
    user.course_id = course.id if course else None
    db.session.commit()
    app.logger.info("User %s approved as %s by %s", user.id, req.role, me.id)
    sent = send_email(user.email, "Account validation - Evolvere", _approval_email(user.username))
    return jsonify({"ok": True, "message": "Account approved.", "email_sent": sent})

@app.route("/api/account/requests/<int:user_id>", methods=["DELETE"])
@require_user(*MANAGERS)
def account_reject(user_id):
    me = current_user()
    req = _scoped_request_or_404(me, user_id)
    if req.approved:
        abort(422, "Request was already approved.")
    user = req.professional
    email, name, diploma = user.email, user.username, req.diploma
    _delete_user(user)
    _remove_upload(diploma)
    app.logger.info("Request of user %s rejected by %s", user_id, me.id)
    sent = send_email(email, "Account validation - Evolvere", _rejection_email(name))
    return jsonify({"ok": True, "message": "Request rejected.", "email_sent": sent})

@app.route("/api/account/requests/<int:user_id>/diploma")
@require_user(*MANAGERS)
def account_diploma(user_id):
    req = _scoped_request_or_404(current_user(), user_id)
    if not req.diploma:
        abort(404, "No diploma uploaded.")
    return send_from_directory(app.config["UPLOAD_DIR"], req.diploma, mimetype="application/pdf")

@app.route("/api/teachers")
@require_user(*MANAGERS)
def teachers_list():
    course = _coordinator_course(current_user())
    teachers = []
    for r in _approved_teachers_query(course).all():
        u = r.professional
        subjects = Subject.query.filter_by(professional_id=u.id).order_by(Subject.name.asc()).all()
        course_row = _registry_by_code(r.access_code)
        teachers.append({
            "id": u.id,
            "username": u.username,
            "registration": u.registration,
            "course": course_row.name if course_row else None,
            "subjects": [s.name for s in subjects],
        })
    if not teachers:
        abort(404, "No teacher found.")
    return jsonify({"ok": True, "teachers": teachers})

@app.route("/api/teachers/<int:teacher_id>", methods=["DELETE"])
@require_user(*MANAGERS)
def teachers_delete(teacher_id):
    me = current_user()
    teacher = User.query.filter_by(id=teacher_id, role=ROLE_TEACHER).first()
    if not teacher:
        abort(404, "Teacher not found.")
    course = _coordinator_course(me)
    if course and teacher.course_id != course.id:
        abort(403, "Teacher belongs to another course.")
    diploma = teacher.professional_request.diploma if teacher.professional_request else None
    _delete_user(teacher)
    _remove_upload(diploma)
    app.logger.info("Teacher %s removed by %s", teacher_id, me.id)
    return jsonify({"ok": True, "message": "Teacher removed."})

@app.route("/api/coordinator/kpis")
@require_user(*MANAGERS)
def coordinator_kpis():
    me = current_user()
    course = _coordinator_course(me)
    subjects = Subject.query
    if course:
        subjects = subjects.filter(Subject.course_id == course.id)
    kpi = {
        "teachers": _approved_teachers_query(course).count(),
        "subjects": subjects.count(),
        "requests": _request_scope(me).count(),
    }
    return jsonify({"ok": True, "kpi": kpi})

# --------------------------------------------------------------------
# Subjects
# --------------------------------------------------------------------
def _subject_payload(data, partial=False):
    name = (data.get("name") or "").strip()
    if not partial or "name" in data:
        if not name or len(name) > 255:
            abort(422, "Subject name is required (max 255 characters).")
    teacher_id = _int_field(data, "professional_id", required=not partial)
    if teacher_id is not None:
        teacher = User.query.filter_by(id=teacher_id, role=ROLE_TEACHER).first()
        if not teacher:
            abort(422, "professional_id must reference an approved teacher.")
    return name, teacher_id

@app.route("/api/subjects")
@require_user()
def subjects_list():
    q = Subject.query
    course_id = request.args.get("course_id", type=int)
    if course_id:
        q = q.filter(Subject.course_id == course_id)
    subjects = q.order_by(Subject.name.asc()).all()
    return jsonify({"ok": True, "subjects": [s.to_dict() for s in subjects]})

@app.post("/api/subjects")
@require_user(*MANAGERS)
def subjects_create():
    me = current_user()
    data = _json_body()
    name, teacher_id = _subject_payload(data)
    course_id = _int_field(data, "course_id", required=me.role == ROLE_ADMIN)
    course = _coordinator_course(me)
    if course:
        if course_id is not None and course_id != course.id:
            abort(403, "Coordinators can only create subjects in their own course.")
        course_id = course.id
    db.get_or_404(CourseRegistry, course_id, description="Course not found.")
    subject = Subject(name=name, professional_id=teacher_id, course_id=course_id)
    db.session.add(subject)
    db.session.commit()
    return jsonify({"ok": True, "subject": subject.to_dict()}), 201

@app.route("/api/subjects/<int:subject_id>")
@require_user()
def subjects_detail(subject_id):
    subject = db.get_or_404(Subject, subject_id, description="Subject not found.")
    data = subject.to_dict()
    data["classes"] = [c.to_dict() for c in sorted(subject.classes, key=lambda c: c.name)]
    return jsonify({"ok": True, "subject": data})

@app.route("/api/subjects/<int:subject_id>", methods=["PUT"])
@require_user(*MANAGERS)
def subjects_update(subject_id):
    subject = db.get_or_404(Subject, subject_id, description="Subject not found.")
    _require_subject_manager(current_user(), subject)
    name, teacher_id = _subject_payload(_json_body(), partial=True)
    if name:
        subject.name = name
    if teacher_id is not None:
        subject.professional_id = teacher_id
    db.session.commit()
    return jsonify({"ok": True, "subject": subject.to_dict()})

@app.route("/api/subjects/<int:subject_id>", methods=["DELETE"])
@require_user(*MANAGERS)
def subjects_delete(subject_id):
    subject = db.get_or_404(Subject, subject_id, description="Subject not found.")
    _require_subject_manager(current_user(), subject)
    db.session.delete(subject)
    db.session.commit()
    return jsonify({"ok": True, "message": "Subject deleted."})

@app.route("/api/teachers/<int:teacher_id>/subjects")
@require_user()
def teacher_subjects(teacher_id):
    subjects = Subject.query.filter_by(professional_id=teacher_id).order_by(Subject.name.asc()).all()
    if not subjects:
        abort(404, "No subject found for this teacher.")
    return jsonify({"ok": True, "subjects": [s.to_dict() for s in subjects]})

# --------------------------------------------------------------------
# Classes, invites & enrollment
# --------------------------------------------------------------------
@app.post("/api/classes")
@require_user(*STAFF)
def classes_create():
    data = _json_body()
    name = (data.get("name") or "").strip()
    period = (data.get("period") or "").strip()
    if not name or not period or not data.get("subject_id") or not data.get("capacity"):
        abort(400, "All fields (name, period, subject_id, capacity) are required.")
    if len(name) > 100 or len(period) > 20:
        abort(422, "Name (max 100) or period (max 20) is too long.")
    subject_id = _int_field(data, "subject_id")
    capacity = _int_field(data, "capacity")
    expires_at = None
    if data.get("expires_at"):
        expires_at = parse_dt(data.get("expires_at"))
        if expires_at is None:
            abort(422, "expires_at must be an ISO date/time.")
    subject = db.get_or_404(Subject, subject_id, description="Subject not found.")
    _require_subject_manager(current_user(), subject)
    klass = SchoolClass(name=name, period=period, capacity=capacity, subject_id=subject.id,
                        course_id=subject.course_id, expires_at=expires_at)
    db.session.add(klass)
    db.session.commit()
    return jsonify({"ok": True, "message": "Class created.", "class": klass.to_dict()}), 201

@app.route("/api/subjects/<int:subject_id>/classes")
@require_user()
def classes_by_subject(subject_id):
    db.get_or_404(Subject, subject_id, description="Subject not found.")
    classes = SchoolClass.query.filter_by(subject_id=subject_id).order_by(SchoolClass.name.asc()).all()
    return jsonify({"ok": True, "classes": [c.to_dict() for c in classes]})

def _class_for_staff(class_id):
    klass = db.get_or_404(SchoolClass, class_id, description="Class not found.")
    _require_subject_manager(current_user(), klass.subject)
    return klass

@app.route("/api/classes/<int:class_id>")
@require_user()
def classes_detail(class_id):
    me = current_user()
    klass = db.get_or_404(SchoolClass, class_id, description="Class not found.")
    if me.role == ROLE_STUDENT:
        if not klass.has_student(me.id):
            abort(403, "You are not enrolled in this class.")
    else:
        _require_subject_manager(me, klass.subject)
    data = klass.to_dict()
    data["students"] = sorted(
        ({"id": e.student.id, "username": e.student.username} for e in klass.enrollments),
        key=lambda s: s["username"].lower())
    return jsonify({"ok": True, "class": data})

@app.route("/api/classes/<int:class_id>/students/<int:student_id>", methods=["DELETE"])
@require_user(*STAFF)
def classes_remove_student(class_id, student_id):
    _class_for_staff(class_id)
    deleted = ClassStudent.query.filter_by(class_id=class_id, student_id=student_id).delete()
    if not deleted:
        abort(404, "Student is not enrolled in this class.")
    db.session.commit()
    return jsonify({"ok": True, "message": "Student removed from class."})

def _invite_url(code):
    base = (FRONTEND_URL or request.url_root).rstrip("/")
    return f"{base}/join/{code}"

@app.post("/api/classes/<int:class_id>/invites")
@require_user(*STAFF)
def classes_invite(class_id):
    klass = _class_for_staff(class_id)
    data = _json_body()
    days = _int_field(data, "expires_in_days", required=False) or INVITE_DEFAULT_DAYS
    if days > 365:
        abort(422, "Invites last at most 365 days.")
    max_uses = _int_field(data, "max_uses", required=False)

    code = gen_code()
    while ClassInvite.query.filter_by(code=code).first() is not None:
        code = gen_code()
    invite = ClassInvite(code=code, class_id=klass.id, max_uses=max_uses,
                         expires_at=utcnow() + timedelta(days=days))
    db.session.add(invite)
    db.session.commit()
    data = invite.to_dict()
    data["join_url"] = _invite_url(invite.code)
    return jsonify({"ok": True, "invite": data}), 201

@app.route("/api/invites/<code>/qr.png")
@require_user(*STAFF)
def invite_qr_png(code):
    invite = ClassInvite.query.filter_by(code=code.strip().upper()).first_or_404(description="Invite not found.")
    _require_subject_manager(current_user(), invite.school_class.subject)

    qr = qrcode.QRCode(
        version=None,  # auto
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(_invite_url(invite.code))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return send_file(buf, mimetype="image/png",
                     as_attachment=False,
                     download_name=f"{invite.code}.png")

@app.post("/api/enrollments/join")
@require_student()
def enrollments_join():
    student = current_user()
    code = (_json_body().get("code") or "").strip().upper()
    if not code:
        abort(422, "Invite code is required.")
    invite = ClassInvite.query.filter_by(code=code).first()
    if not invite or not invite.is_valid:
        abort(404, "Invalid, expired or exhausted invite code.")
    klass = invite.school_class
    if klass.is_expired:
        abort(403, "This class is closed.")
    if klass.has_student(student.id):
        abort(409, "You are already enrolled in this class.")
    if klass.student_count >= klass.capacity:
        abort(409, "This class is full.")

    # conditional increment keeps use_count <= max_uses under concurrent joins
    claimed = ClassInvite.query.filter(
        ClassInvite.id == invite.id,
        or_(ClassInvite.max_uses.is_(None), ClassInvite.use_count < ClassInvite.max_uses),
    ).update({ClassInvite.use_count: ClassInvite.use_count + 1}, synchronize_session=False)
    if not claimed:
        db.session.rollback()
        abort(404, "Invalid, expired or exhausted invite code.")
    db.session.add(ClassStudent(class_id=klass.id, student_id=student.id))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        abort(409, "You are already enrolled in this class.")
    return jsonify({"ok": True, "message": f"Enrolled in class {klass.name}.",
                    "class": {"id": klass.id, "name": klass.name}})

@app.route("/api/dashboard/student")
@require_student()
def student_dashboard():
    student = current_user()
    enrollments = ClassStudent.query.filter_by(student_id=student.id).all()
    classes = [e.school_class.to_dict() for e in enrollments]
    recent = (FormResult.query.filter_by(student_id=student.id)
              .order_by(FormResult.updated_at.desc()).limit(3).all())
    return jsonify({
        "ok": True,
        "classes": classes,
        "pending_forms": _pending_forms_query(student).count(),
        "recent_results": [_result_summary(r) for r in recent],
    })

# --------------------------------------------------------------------
# Materials
# --------------------------------------------------------------------
def _student_in_subject(student, subject_id, class_id=None):
    q = ClassStudent.query.join(SchoolClass, SchoolClass.id == ClassStudent.class_id).filter(
        ClassStudent.student_id == student.id, SchoolClass.subject_id == subject_id)
    if class_id is not None:
        q = q.filter(SchoolClass.id == class_id)
    return q.first() is not None

@app.post("/api/materials")
@require_user(*STAFF)
def materials_upload():
    me = current_user()
    subject_id = _int_field(request.form, "subject_id")
    class_id = _int_field(request.form, "class_id", required=False)
    subject = db.get_or_404(Subject, subject_id, description="Subject not found.")
    _require_subject_manager(me, subject)
    if class_id is not None:
        klass = db.get_or_404(SchoolClass, class_id, description="Class not found.")
        if klass.subject_id != subject.id:
            abort(422, "Class does not belong to this subject.")

    f, content, ext = _read_upload("material", ALLOWED_MATERIAL_EXTENSIONS)
    if content is None:
        abort(400, "A file is required.")
    name = (request.form.get("name") or "").strip() or secure_filename(f.filename)
    rel_path = _store_upload("materials", ext, content)
    material = Material(name=name[:255], file_path=rel_path, file_type=ext.upper(),
                        size=_human_size(len(content)), subject_id=subject.id,
                        class_id=class_id, created_by=me.id)
    db.session.add(material)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        _remove_upload(rel_path)
        raise
    return jsonify({"ok": True, "material": material.to_dict()}), 201

@app.route("/api/subjects/<int:subject_id>/materials")
@require_user()
def materials_by_subject(subject_id):
    me = current_user()
    subject = db.get_or_404(Subject, subject_id, description="Subject not found.")
    if me.role == ROLE_STUDENT:
        if not _student_in_subject(me, subject.id):
            abort(403, "You are not enrolled in this subject.")
    else:
        _require_subject_manager(me, subject)
    materials = Material.query.filter_by(subject_id=subject_id).order_by(Material.created_at.desc()).all()
    return jsonify({"ok": True, "materials": [m.to_dict() for m in materials]})

@app.route("/api/classes/<int:class_id>/materials")
@require_user()
def materials_by_class(class_id):
    me = current_user()
    klass = db.get_or_404(SchoolClass, class_id, description="Class not found.")
    if me.role == ROLE_STUDENT:
        if not klass.has_student(me.id):
            abort(403, "You are not enrolled in this class.")
    else:
        _require_subject_manager(me, klass.subject)
    materials = (Material.query.filter(Material.subject_id == klass.subject_id)
                 .filter(or_(Material.class_id.is_(None), Material.class_id == klass.id))
                 .order_by(Material.created_at.desc()).all())
    return jsonify({"ok": True, "materials": [m.to_dict() for m in materials]})

@app.route("/api/materials/<int:material_id>/download")
@require_user()
def materials_download(material_id):
    me = current_user()
    material = db.get_or_404(Material, material_id, description="Material not found.")
    if me.role == ROLE_STUDENT:
        if not _student_in_subject(me, material.subject_id, material.class_id):
            abort(403, "You are not enrolled in this subject.")
    else:
        _require_subject_manager(me, db.session.get(Subject, material.subject_id))
    ext = material.file_path.rsplit(".", 1)[-1]
    return send_from_directory(app.config["UPLOAD_DIR"], material.file_path,
                               as_attachment=True, download_name=f"{secure_filename(material.name)}.{ext}")

@app.route("/api/materials/<int:material_id>", methods=["DELETE"])
@require_user(*STAFF)
def materials_delete(material_id):
    material = db.get_or_404(Material, material_id, description="Material not found.")
    _require_subject_manager(current_user(), db.session.get(Subject, material.subject_id))
    rel_path = material.file_path
    db.session.delete(material)
    db.session.commit()
    _remove_upload(rel_path)
    return jsonify({"ok": True, "message": "Material deleted."})

# --------------------------------------------------------------------
# Forms: creation & listing
# --------------------------------------------------------------------
def _normalize_form_questions(payload):
    if not isinstance(payload, list) or not payload:
        raise ValueError("Add at least one question.")
    cleaned = []
    for idx, raw in enumerate(payload, start=1):
        if not isinstance(raw, dict):
            raise ValueError("Question payload must be objects.")
        q_type = (raw.get("type") or "").strip().lower()
        if q_type not in QUESTION_TYPES:
            raise ValueError(f"Question {idx}: unsupported type '{q_type}'.")
        text = str(raw.get("text") or "").strip()
        if not text:
            raise ValueError(f"Question {idx} needs a text.")
        try:
            points = float(raw.get("points") or 0)
        except (TypeError, ValueError):
            raise ValueError(f"Question {idx}: points must be a number.")
        if not 0 <= points <= 999.99:
            raise ValueError(f"Question {idx}: points must be between 0 and 999.99.")
        normalized = {"text": text, "type": q_type, "points": round(points, 2), "options": []}

        options_raw = raw.get("options") or []
        if q_type in OBJECTIVE_TYPES:
            if not isinstance(options_raw, list):
                raise ValueError(f"Question {idx}: options must be a list.")
            options = []
            for opt in options_raw:
                if isinstance(opt, dict):
                    opt_text = str(opt.get("text") or "").strip()
                    correct = opt.get("correct") is True
                else:
                    opt_text, correct = str(opt or "").strip(), False
                if not opt_text:
                    continue
                if len(opt_text) > 255:
                    raise ValueError(f"Question {idx}: options have at most 255 characters.")
                options.append({"text": opt_text, "correct": correct})
            if q_type == QUESTION_TRUE_FALSE and len(options) != 2:
                raise ValueError(f"Question {idx}: true/false questions need exactly two options.")
            if len(options) < 2:
                raise ValueError(f"Question {idx}: multiple-choice questions need at least two options.")
            if sum(1 for o in options if o["correct"]) != 1:
                raise ValueError(f"Question {idx}: mark exactly one correct option.")
            normalized["options"] = options
        elif options_raw:
            raise ValueError(f"Question {idx}: open questions take no options.")
        cleaned.append(normalized)
    return cleaned

def _form_for_staff(form_id):
    form = db.get_or_404(Form, form_id, description="Form not found.")
    _require_subject_manager(current_user(), form.subject)
    return form

@app.route("/api/forms/relations")
@require_user(*STAFF)
def forms_relations():
    me = current_user()
    q = Subject.query
    if me.role == ROLE_TEACHER:
        q = q.filter(Subject.professional_id == me.id)
    elif me.role == ROLE_COORDINATOR:
        q = q.filter(Subject.course_id == me.course_id)
    subjects = q.order_by(Subject.name.asc()).all()
    if not subjects:
        abort(404, "No subject found.")
    relations = [{
        "subject_id": s.id,
        "subject_name": s.name,
        "classes": [{"id": c.id, "name": c.name, "period": c.period} for c in s.classes],
    } for s in subjects]
    return jsonify({"ok": True, "relations": relations})

@app.post("/api/forms")
@require_user(*STAFF)
def forms_publish():
    me = current_user()
    data = _json_body()
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip() or None
    error = _validate_form_fields(title, description)
    if error:
        abort(422, error)
    subject_id = _int_field(data, "subject_id")
    class_id = _int_field(data, "class_id", required=False)
    total_duration = _int_field(data, "total_duration", required=False, minimum=0) or 0
    deadline = parse_dt(data.get("deadline"))
    if deadline is None:
        abort(422, "deadline must be an ISO date/time.")
    if deadline <= utcnow():
        abort(422, "deadline must be in the future.")

    subject = db.get_or_404(Subject, subject_id, description="Subject not found.")
    _require_subject_manager(me, subject)
    if class_id is not None:
        klass = db.get_or_404(SchoolClass, class_id, description="Class not found.")
        if klass.subject_id != subject.id:
            abort(422, "Class does not belong to this subject.")
    if Form.query.filter_by(title=title, class_id=class_id, subject_id=subject.id).first():
        abort(422, "A form with this title already exists.")
    try:
        questions = _normalize_form_questions(data.get("questions"))
    except ValueError as exc:
        abort(422, str(exc))

    form = Form(title=title, description=description, created_by=me.id, subject_id=subject.id,
                class_id=class_id, total_duration=total_duration, deadline=deadline,
                status=FORM_STATUS_OPEN)
    for q in questions:
        question = Question(text=q["text"], points=q["points"], type=q["type"])
        question.options = [Option(text=o["text"], correct=o["correct"]) for o in q["options"]]
        form.questions.append(question)
    db.session.add(form)
    db.session.commit()
    app.logger.info("Form %s published by %s with %d question(s)", form.id, me.id, len(questions))
    return jsonify({"ok": True, "message": "Form published.", "form": form.to_dict()}), 201

@app.route("/api/classes/<int:class_id>/forms")
@require_user(*STAFF)
def forms_by_class(class_id):
    klass = _class_for_staff(class_id)
    forms = (Form.query.filter(or_(Form.class_id == klass.id,
                                   and_(Form.class_id.is_(None), Form.subject_id == klass.subject_id)))
             .order_by(Form.updated_at.desc()).all())
    if not forms:
        abort(404, "No form found.")
    return jsonify({"ok": True, "forms": [f.to_dict() for f in forms]})

def _student_can_answer(form, student):
    if form.class_id is not None:
        return form.school_class.has_student(student.id)
    return _student_in_subject(student, form.subject_id)

@app.route("/api/forms/<int:form_id>")
@require_user()
def forms_view(form_id):
    me = current_user()
    form = db.get_or_404(Form, form_id, description="Form not found.")
    if me.role == ROLE_STUDENT:
        if not _student_can_answer(form, me):
            abort(403, "This form is not assigned to you.")
        return jsonify({"ok": True, "form": form.to_dict(reveal_answers=False)})
    _require_subject_manager(me, form.subject)
    return jsonify({"ok": True, "form": form.to_dict()})

@app.route("/api/forms/<int:form_id>", methods=["DELETE"])
@require_user(*STAFF)
def forms_delete(form_id):
    form = _form_for_staff(form_id)
    db.session.delete(form)
    db.session.commit()
    return jsonify({"ok": True, "message": "Form deleted."})

def _answered_form_ids(student_id):
    return db.select(FormResult.form_id).where(FormResult.student_id == student_id)

@app.route("/api/classes/<int:class_id>/forms/available")
@require_student()
def forms_available(class_id):
    student = current_user()
    klass = db.get_or_404(SchoolClass, class_id, description="Class not found.")
    if not klass.has_student(student.id):
        abort(403, "You are not enrolled in this class.")
    forms = (Form.query.filter(Form.class_id == klass.id,
                               Form.id.notin_(_answered_form_ids(student.id)))
             .order_by(Form.deadline.asc()).all())
    return jsonify({"ok": True, "class_name": klass.name, "forms": [f.summary() for f in forms]})

def _pending_forms_query(student):
    rows = (db.session.query(SchoolClass.id, SchoolClass.subject_id)
            .join(ClassStudent, ClassStudent.class_id == SchoolClass.id)
            .filter(ClassStudent.student_id == student.id).all())
    class_ids = [r[0] for r in rows]
    subject_ids = list({r[1] for r in rows})
    return (Form.query
            .filter(Form.id.notin_(_answered_form_ids(student.id)))
            .filter(Form.deadline > utcnow())
            .filter(or_(
                and_(Form.class_id.isnot(None), Form.class_id.in_(class_ids)),
                and_(Form.class_id.is_(None), Form.subject_id.in_(subject_ids)),
            ))
            .order_by(Form.deadline.asc()))

@app.route("/api/forms/pending")
@require_student()
def forms_pending():
    forms = _pending_forms_query(current_user()).all()
    return jsonify({"ok": True, "forms": [f.summary() for f in forms]})

# --------------------------------------------------------------------
# Forms: submission & automatic scoring
# --------------------------------------------------------------------
def _normalize_submission(form, payload):
    """Map question_id -> (question, option, open_text) for the answers sent."""
    if not isinstance(payload, list):
        raise ValueError("answers must be a list.")
    questions = {q.id: q for q in form.questions}
    picked = {}
    for idx, raw in enumerate(payload, start=1):
        if not isinstance(raw, dict):
            raise ValueError("Answer payload must be objects.")
        try:
            qid = int(raw.get("question_id"))
        except (TypeError, ValueError):
            raise ValueError(f"Answer {idx}: invalid question_id.")
        question = questions.get(qid)
        if question is None:
            raise ValueError(f"Question {qid} does not belong to this form.")
        if qid in picked:
            raise ValueError(f"Question {qid} was answered twice.")
        if question.is_objective:
            if str(raw.get("open_answer") or "").strip():
                raise ValueError(f"Question {qid} takes an option, not a written answer.")
            option_id = raw.get("option_id")
            if option_id in (None, ""):
                continue
            try:
                option_id = int(option_id)
            except (TypeError, ValueError):
                raise ValueError(f"Answer {idx}: invalid option_id.")
            option = next((o for o in question.options if o.id == option_id), None)
            if option is None:
                raise ValueError(f"Option {option_id} does not belong to question {qid}.")
            picked[qid] = (question, option, None)
        else:
            if raw.get("option_id") not in (None, ""):
                raise ValueError(f"Question {qid} takes a written answer, not an option.")
            text = str(raw.get("open_answer") or "").strip()
            if not text:
                continue
            picked[qid] = (question, None, text)
    return picked

def _recompute_result(form, student_id):
    """Rebuild the student's FormResult from the stored answers.

    Objective questions score when the chosen option is correct. Open answers
    score their awarded points once corrected (counted correct when > 0) and
    are not counted while they wait for correction. Unanswered questions are
    wrong.
    """
    answers = {a.question_id: a for a in Answer.query.filter_by(form_id=form.id, user_id=student_id).all()}
    points = 0.0
    correct = 0
    wrong = 0
    for q in form.questions:
        a = answers.get(q.id)
        if a is None:
            wrong += 1
        elif q.is_objective:
            if a.option is not None and a.option.correct:
                points += q.points or 0
                correct += 1
            else:
                wrong += 1
        elif a.corrected:
            awarded = a.awarded_points or 0
            points += awarded
            if awarded > 0:
                correct += 1
            else:
                wrong += 1
    result = FormResult.query.filter_by(form_id=form.id, student_id=student_id).first()
    if result is None:
        result = FormResult(form_id=form.id, student_id=student_id)
        db.session.add(result)
    result.points = round(points, 2)
    result.correct = correct
    result.wrong = wrong
    return result

def _refresh_correction_state(form, student_id):
    """Flip the per-student and per-form correction flags from answer rows."""
    tracking = FormCorrection.query.filter_by(form_id=form.id, student_id=student_id).first()
    if tracking is None:
        return None
    pending = Answer.query.filter(Answer.form_id == form.id, Answer.user_id == student_id,
                                  Answer.open_answer.isnot(None), Answer.corrected.is_(False)).count()
    tracking.corrected = pending == 0
    _refresh_form_status(form)
    return tracking

def _refresh_form_status(form):
    remaining = FormCorrection.query.filter_by(form_id=form.id, corrected=False).count()
    form.status = FORM_STATUS_CORRECTED if remaining == 0 else FORM_STATUS_OPEN

@app.post("/api/forms/<int:form_id>/answers")
@require_student()
def forms_submit(form_id):
    student = current_user()
    form = db.get_or_404(Form, form_id, description="Form not found.")
    if not _student_can_answer(form, student):
        abort(403, "This form is not assigned to you.")
    if not form.is_open:
        abort(403, "The deadline for this form has passed.")
    if FormResult.query.filter_by(form_id=form.id, student_id=student.id).first():
        abort(409, "You have already answered this form.")
    try:
        picked = _normalize_submission(form, _json_body().get("answers"))
    except ValueError as exc:
        abort(422, str(exc))

    has_open = False
    for question, option, text in picked.values():
        if option is not None:
            db.session.add(Answer(user_id=student.id, form_id=form.id, question_id=question.id,
                                  option=option, corrected=True))
        else:
            has_open = True
            db.session.add(Answer(user_id=student.id, form_id=form.id, question_id=question.id,
                                  open_answer=text, corrected=False))
    try:
        db.session.flush()
        result = _recompute_result(form, student.id)
        if has_open:
            db.session.add(FormCorrection(form_id=form.id, student_id=student.id, corrected=False))
            form.status = FORM_STATUS_OPEN
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        abort(409, "You have already answered this form.")
    return jsonify({
        "ok": True,
        "message": "Answers submitted.",
        "result": {
            "points": result.points,
            "correct": result.correct,
            "wrong": result.wrong,
            "max_points": form.total_points,
            "pending_correction": has_open,
        },
    }), 201

# --------------------------------------------------------------------
# Forms: manual correction
# --------------------------------------------------------------------
@app.route("/api/classes/<int:class_id>/corrections")
@require_user(*STAFF)
def corrections_by_class(class_id):
    klass = _class_for_staff(class_id)
    forms = (Form.query.filter(Form.class_id == klass.id)
             .filter(Form.id.in_(db.select(Answer.form_id).where(Answer.open_answer.isnot(None))))
             .order_by(Form.deadline.desc()).all())
    if not forms:
        abort(404, "No form awaiting correction.")
    rows = []
    for f in forms:
        rows.append({
            "form_id": f.id,
            "title": f.title,
            "status": f.status,
            "subject_id": f.subject_id,
            "subject_name": f.subject.name,
            "students": len(f.corrections),
            "pending_students": sum(1 for c in f.corrections if not c.corrected),
        })
    return jsonify({"ok": True, "forms": rows})

def _comment_dict(c):
    return {"id": c.id, "teacher_id": c.teacher_id, "comment": c.comment,
            "created_at": c.created_at.isoformat()}

@app.route("/api/forms/<int:form_id>/open-answers")
@require_user(*STAFF)
def corrections_open_answers(form_id):
    form = _form_for_staff(form_id)
    answers = (Answer.query.join(User, User.id == Answer.user_id)
               .filter(Answer.form_id == form.id, Answer.open_answer.isnot(None))
               .order_by(User.username.asc(), Answer.question_id.asc()).all())
    if not answers:
        abort(404, "No open answer to correct.")
    tracking = {c.student_id: c.corrected for c in form.corrections}
    students = []
    by_student = {}
    for a in answers:
        entry = by_student.get(a.user_id)
        if entry is None:
            entry = {"student_id": a.user_id, "username": a.user.username,
                     "corrected": tracking.get(a.user_id, False), "answers": []}
            by_student[a.user_id] = entry
            students.append(entry)
        entry["answers"].append({
            "answer_id": a.id,
            "question_id": a.question_id,
            "question_text": a.question.text,
            "max_points": a.question.points,
            "open_answer": a.open_answer,
            "corrected": a.corrected,
            "awarded_points": a.awarded_points,
            "comments": [_comment_dict(c) for c in a.comments],
        })
    return jsonify({"ok": True, "form_name": form.title, "students": students})

@app.post("/api/forms/<int:form_id>/corrections")
@require_user(*STAFF)
def corrections_save(form_id):
    me = current_user()
    form = _form_for_staff(form_id)
    data = _json_body()
    student_id = _int_field(data, "student_id")
    items = data.get("corrections")
    if not isinstance(items, list) or not items:
        abort(422, "Send at least one correction.")

    for idx, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            abort(422, "Correction payload must be objects.")
        answer_id = _int_field(item, "answer_id")
        answer = db.session.get(Answer, answer_id)
        if answer is None:
            abort(404, f"Answer {answer_id} not found.")
        if answer.form_id != form.id or answer.user_id != student_id:
            abort(422, f"Answer {answer_id} does not belong to this form/student.")
        if not answer.is_open:
            abort(422, f"Answer {answer_id} is scored automatically.")
        max_points = answer.question.points or 0
        raw_points = item.get("points")
        if raw_points in (None, ""):
            awarded = answer.awarded_points or 0
        else:
            try:
                awarded = float(raw_points)
            except (TypeError, ValueError):
                abort(422, f"Correction {idx}: points must be a number.")
        if not 0 <= awarded <= max_points:
            abort(422, f"Correction {idx}: points must be between 0 and {max_points}.")
        comment = str(item.get("comment") or "").strip()
        if comment:
            db.session.add(AnswerComment(answer_id=answer.id, teacher_id=me.id, comment=comment))
        answer.awarded_points = round(awarded, 2)
        answer.corrected = True

    db.session.flush()
    result = _recompute_result(form, student_id)
    tracking = _refresh_correction_state(form, student_id)
    db.session.commit()
    app.logger.info("Form %s: %d answer(s) of student %s corrected by %s",
                    form.id, len(items), student_id, me.id)
    return jsonify({
        "ok": True,
        "message": "Correction saved.",
        "student_corrected": bool(tracking and tracking.corrected),
        "form_status": form.status,
        "result": {"points": result.points, "correct": result.correct, "wrong": result.wrong},
    })

# --------------------------------------------------------------------
# Forms: results
# --------------------------------------------------------------------
def _result_summary(r):
    form = r.form
    return {
        "form_id": form.id,
        "form_title": form.title,
        "subject_name": form.subject.name if form.subject else None,
        "points": r.points,
        "max_points": form.total_points,
        "correct": r.correct,
        "wrong": r.wrong,
        "updated_at": r.updated_at.isoformat() if r.updated_at else None,
    }

@app.route("/api/forms/<int:form_id>/results")
@require_user(*STAFF)
def forms_results(form_id):
    form = _form_for_staff(form_id)
    tracking = {c.student_id: c.corrected for c in form.corrections}
    results = (FormResult.query.join(User, User.id == FormResult.student_id)
               .filter(FormResult.form_id == form.id)
               .order_by(User.username.asc()).all())
    rows = [{
        "student_id": r.student_id,
        "username": r.student.username,
        "points": r.points,
        "correct": r.correct,
        "wrong": r.wrong,
        "pending_correction": tracking.get(r.student_id) is False,
    } for r in results]
    average = round(sum(r.points for r in results) / len(results), 2) if results else 0.0
    return jsonify({
        "ok": True,
        "form": form.summary(),
        "max_points": form.total_points,
        "submissions": len(rows),
        "average": average,
        "results": rows,
    })

@app.route("/api/forms/<int:form_id>/my-result")
@require_student()
def forms_my_result(form_id):
    student = current_user()
    form = db.get_or_404(Form, form_id, description="Form not found.")
    result = FormResult.query.filter_by(form_id=form.id, student_id=student.id).first()
    if not result:
        abort(404, "You have not answered this form.")
    tracking = FormCorrection.query.filter_by(form_id=form.id, student_id=student.id).first()
    answers = {a.question_id: a for a in Answer.query.filter_by(form_id=form.id, user_id=student.id).all()}
    items = []
    for q in form.questions:
        a = answers.get(q.id)
        item = {"question_id": q.id, "text": q.text, "type": q.type, "max_points": q.points,
                "option_id": None, "open_answer": None, "correct": None, "awarded_points": None,
                "comments": []}
        if a is not None:
            item["option_id"] = a.option_id
            item["open_answer"] = a.open_answer
            if q.is_objective:
                item["correct"] = bool(a.option and a.option.correct)
            elif a.corrected:
                item["awarded_points"] = a.awarded_points
            item["comments"] = [_comment_dict(c) for c in a.comments]
        items.append(item)
    return jsonify({
        "ok": True,
        "form": form.summary(),
        "points": result.points,
        "max_points": form.total_points,
        "correct": result.correct,
        "wrong": result.wrong,
        "pending_correction": bool(tracking and not tracking.corrected),
        "answers": items,
    })

# --------------------------------------------------------------------
# Performance
# --------------------------------------------------------------------
UNKNOWN_SUBJECT = "Unknown subject"

def _student_report(student_id):
    overall = (db.session.query(func.avg(FormResult.points))
               .filter(FormResult.student_id == student_id).scalar())
    subject_rows = (db.session.query(Subject.name, func.avg(FormResult.points))
                    .select_from(FormResult)
                    .join(Form, Form.id == FormResult.form_id)
                    .outerjoin(Subject, Subject.id == Form.subject_id)
                    .filter(FormResult.student_id == student_id)
                    .group_by(Subject.id, Subject.name).all())
    best = (db.session.query(FormResult.points, Subject.name)
            .select_from(FormResult)
            .join(Form, Form.id == FormResult.form_id)
            .outerjoin(Subject, Subject.id == Form.subject_id)
            .filter(FormResult.student_id == student_id)
            .order_by(FormResult.points.desc()).first())

    disciplines = sorted(
        ({"name": name or UNKNOWN_SUBJECT, "grade": round(float(avg or 0), 1)} for name, avg in subject_rows),
        key=lambda d: d["grade"], reverse=True)
    if best:
        best_grade = {"name": best[1] or UNKNOWN_SUBJECT, "grade": round(float(best[0] or 0), 1)}
    else:
        best_grade = {"name": "N/A", "grade": 0.0}
    return {
        "overall_average": round(float(overall or 0), 1),
        "best_grade": best_grade,
        "disciplines": disciplines,
    }

@app.route("/api/performance/me")
@require_student()
def performance_me():
    return jsonify({"ok": True, "data": _student_report(current_user().id)})

@app.route("/api/performance/recent")
@require_student()
def performance_recent():
    limit = max(1, min(request.args.get("limit", default=5, type=int) or 5, 50))
    results = (FormResult.query.filter_by(student_id=current_user().id)
               .order_by(FormResult.updated_at.desc(), FormResult.id.desc()).limit(limit).all())
    if not results:
        abort(404, "No recent grade found.")
    return jsonify({"ok": True, "notes": [_result_summary(r) for r in results]})

# --------------------------------------------------------------------
# Dev entry
# --------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    args = parser.parse_args()
    app.run(host=args.host, port=args.port)

if __name__ == "__main__":
    main()
