
import sqlite3
from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import UniqueConstraint, event
from sqlalchemy.engine import Engine
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()

@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_connection, connection_record):
    # ondelete=CASCADE / SET NULL only fire on SQLite with this pragma
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

ROLE_ADMIN = "admin"
ROLE_COORDINATOR = "coordinator"
ROLE_TEACHER = "teacher"
ROLE_STUDENT = "student"
PROFESSIONAL_ROLES = (ROLE_COORDINATOR, ROLE_TEACHER)

QUESTION_MULTIPLE_CHOICE = "multiple_choice"
QUESTION_TRUE_FALSE = "true_false"
QUESTION_OPEN = "open"
QUESTION_TYPES = (QUESTION_MULTIPLE_CHOICE, QUESTION_TRUE_FALSE, QUESTION_OPEN)
OBJECTIVE_TYPES = (QUESTION_MULTIPLE_CHOICE, QUESTION_TRUE_FALSE)

FORM_STATUS_OPEN = 1
FORM_STATUS_CORRECTED = 2


def utcnow():
    """Naive UTC now; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _as_naive_utc(dt):
    """Return dt as naive UTC (or None). Handles aware/naive inputs safely."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class CourseRegistry(db.Model):
    """Officially recognised courses; account setup validates against course_code."""
    __tablename__ = "course_valid"
    id = db.Column(db.Integer, primary_key=True)
    code_ies = db.Column(db.Integer, nullable=False)
    acronym_ies = db.Column(db.String(200), nullable=False)
    name_ies = db.Column(db.String(255), nullable=False)
    situation = db.Column(db.String(100), nullable=False)
    course_code = db.Column(db.Integer, unique=True, index=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    degree = db.Column(db.String(100), nullable=False)
    city = db.Column(db.String(150), nullable=False)
    uf = db.Column(db.String(3), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "code_ies": self.code_ies,
            "acronym_ies": self.acronym_ies,
            "name_ies": self.name_ies,
            "situation": self.situation,
            "course_code": self.course_code,
            "name": self.name,
            "degree": self.degree,
            "city": self.city,
            "uf": self.uf,
        }

class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(100), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    registration = db.Column(db.String(20), unique=True, index=True, nullable=True)
    role = db.Column(db.String(32), nullable=False, default=ROLE_STUDENT)  # admin, coordinator, teacher, student
    status = db.Column(db.Integer, nullable=False, default=1)  # 1 active, 0 disabled
    institution = db.Column(db.String(255), nullable=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course_valid.id', ondelete="SET NULL"), index=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login = db.Column(db.DateTime, nullable=True)

    course = db.relationship('CourseRegistry')
    professional_request = db.relationship(
        'ProfessionalRequest', uselist=False, back_populates='professional',
        cascade="all,delete-orphan", passive_deletes=True)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

    @property
    def is_active(self):
        return self.status == 1

    def session_payload(self):
        return {"id": self.id, "name": self.username, "role": self.role}

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "registration": self.registration,
            "role": self.role,
            "status": self.status,
            "institution": self.institution,
            "course_id": self.course_id,
            "course": self.course.name if self.course else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

class ProfessionalRequest(db.Model):
    """A teacher/coordinator asking to be validated for a registry course."""
    __tablename__ = "validate_professionals"
    id = db.Column(db.Integer, primary_key=True)
    professional_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), unique=True, index=True, nullable=False)
    institution = db.Column(db.String(255), nullable=False)
    access_code = db.Column(db.String(200), index=True, nullable=False)
    diploma = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(32), nullable=False)
    approved = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    professional = db.relationship('User', back_populates='professional_request')

    def to_dict(self, course=None):
        return {
            "id": self.professional_id,
            "username": self.professional.username if self.professional else None,
            "role": self.role,
            "institution": self.institution,
            "access_code": self.access_code,
            "has_diploma": bool(self.diploma),
            "approved": self.approved,
            "course": course.name if course else None,
            "flag": course.acronym_ies if course else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

class Subject(db.Model):
    __tablename__ = "subjects"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    professional_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), index=True, nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course_valid.id', ondelete="CASCADE"), index=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    professional = db.relationship('User')
    course = db.relationship('CourseRegistry')

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "professional_id": self.professional_id,
            "professor_name": self.professional.username if self.professional else None,
            "course_id": self.course_id,
            "course_name": self.course.name if self.course else None,
        }

class ClassStudent(db.Model):
    __tablename__ = "class_student"
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    student = db.relationship('User')
    school_class = db.relationship('SchoolClass', back_populates='enrollments')

class SchoolClass(db.Model):
    __tablename__ = "classes"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    period = db.Column(db.String(20), nullable=False)  # e.g. "2025.1"
    capacity = db.Column(db.Integer, nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subjects.id', ondelete="CASCADE"), index=True, nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course_valid.id', ondelete="CASCADE"), index=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    subject = db.relationship('Subject', backref=db.backref('classes', cascade="all,delete-orphan", passive_deletes=True))
    enrollments = db.relationship('ClassStudent', back_populates='school_class',
                                  cascade="all,delete-orphan", passive_deletes=True)

    @property
    def is_expired(self):
        expires_at = _as_naive_utc(self.expires_at)
        return bool(expires_at and expires_at <= utcnow())

    @property
    def student_count(self):
        return len(self.enrollments)

    def has_student(self, student_id):
        return any(e.student_id == student_id for e in self.enrollments)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "period": self.period,
            "capacity": self.capacity,
            "subject_id": self.subject_id,
            "subject_name": self.subject.name if self.subject else None,
            "course_id": self.course_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "student_count": self.student_count,
        }

class ClassInvite(db.Model):
    __tablename__ = "classes_invites"
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(10), unique=True, index=True, nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), index=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    # None means unlimited
    max_uses = db.Column(db.Integer, nullable=True)
    use_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    school_class = db.relationship('SchoolClass', backref=db.backref('invites', cascade="all,delete-orphan", passive_deletes=True))

    @property
    def is_valid(self):
        if _as_naive_utc(self.expires_at) <= utcnow():
            return False
        if self.max_uses is not None and (self.use_count or 0) >= self.max_uses:
            return False
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "class_id": self.class_id,
            "expires_at": self.expires_at.isoformat(),
            "max_uses": self.max_uses,
            "use_count": self.use_count,
        }

class Material(db.Model):
    __tablename__ = "materials"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    file_path = db.Column(db.String(255), nullable=False)  # relative to UPLOAD_DIR
    file_type = db.Column(db.String(50), nullable=False)
    size = db.Column(db.String(20), nullable=True)  # human readable, e.g. "2.4 MB"
    subject_id = db.Column(db.Integer, db.ForeignKey('subjects.id', ondelete="CASCADE"), index=True, nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), index=True, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "file_type": self.file_type,
            "size": self.size,
            "subject_id": self.subject_id,
            "class_id": self.class_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

class Form(db.Model):
    __tablename__ = "form"
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(150), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), index=True, nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subjects.id', ondelete="CASCADE"), index=True, nullable=False)
    # NULL means the form targets every class of the subject
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), index=True, nullable=True)
    total_duration = db.Column(db.Integer, nullable=False, default=0)  # minutes
    deadline = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.Integer, nullable=False, default=FORM_STATUS_OPEN)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    creator = db.relationship('User')
    subject = db.relationship('Subject')
    school_class = db.relationship('SchoolClass')
    questions = db.relationship('Question', backref='form', cascade="all,delete-orphan",
                                passive_deletes=True, order_by='Question.id')

    @property
    def is_open(self):
        return utcnow() < _as_naive_utc(self.deadline)

    @property
    def total_points(self):
        return round(sum((q.points or 0) for q in self.questions), 2)

    def summary(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "subject_id": self.subject_id,
            "discipline_name": self.subject.name if self.subject else None,
            "class_id": self.class_id,
            "deadline": self.deadline.isoformat(),
            "status": self.status,
        }

    def to_dict(self, reveal_answers=True):
        data = self.summary()
        data.update({
            "total_points": self.total_points,
            "total_duration": self.total_duration,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "questions": [q.to_dict(reveal_answers) for q in self.questions],
        })
        return data

class Question(db.Model):
    __tablename__ = "questions"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.Integer, db.ForeignKey('form.id', ondelete="CASCADE"), index=True, nullable=False)
    text = db.Column(db.Text, nullable=False)
    points = db.Column(db.Float, nullable=False, default=0)
    type = db.Column(db.String(32), nullable=False)  # multiple_choice, true_false, open

    options = db.relationship('Option', backref='question', cascade="all,delete-orphan",
                              passive_deletes=True, order_by='Option.id')

    @property
    def is_objective(self):
        return self.type in OBJECTIVE_TYPES

    def to_dict(self, reveal_answers=True):
        return {
            "id": self.id,
            "text": self.text,
            "points": self.points,
            "type": self.type,
            "options": [o.to_dict(reveal_answers) for o in self.options],
        }

class Option(db.Model):
    __tablename__ = "options"
    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="CASCADE"), index=True, nullable=False)
    text = db.Column(db.String(255), nullable=False)
    correct = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self, reveal_answers=True):
        data = {"id": self.id, "text": self.text}
        if reveal_answers:
            data["correct"] = self.correct
        return data

class Answer(db.Model):
    __tablename__ = "answers_form"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), index=True, nullable=False)
    form_id = db.Column(db.Integer, db.ForeignKey('form.id', ondelete="CASCADE"), index=True, nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete="CASCADE"), index=True, nullable=False)
    option_id = db.Column(db.Integer, db.ForeignKey('options.id', ondelete="CASCADE"), nullable=True)
    open_answer = db.Column(db.Text, nullable=True)
    corrected = db.Column(db.Boolean, nullable=False, default=False)
    awarded_points = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = db.relationship('User')
    question = db.relationship('Question')
    option = db.relationship('Option')
    form = db.relationship('Form', backref=db.backref('answers', cascade="all,delete-orphan", passive_deletes=True))

    __table_args__ = (
        UniqueConstraint('user_id', 'question_id', name='uq_answer_user_question'),
    )

    @property
    def is_open(self):
        return self.open_answer is not None

class AnswerComment(db.Model):
    __tablename__ = "comment_answers"
    id = db.Column(db.Integer, primary_key=True)
    answer_id = db.Column(db.Integer, db.ForeignKey('answers_form.id', ondelete="CASCADE"), index=True, nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    answer = db.relationship('Answer', backref=db.backref('comments', cascade="all,delete-orphan",
                                                          passive_deletes=True, order_by='AnswerComment.id'))
    teacher = db.relationship('User')

class FormCorrection(db.Model):
    """Per-student flag: all open answers of this student on this form are corrected."""
    __tablename__ = "form_corrections"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.Integer, db.ForeignKey('form.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), index=True, nullable=False)
    corrected = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    form = db.relationship('Form', backref=db.backref('corrections', cascade="all,delete-orphan", passive_deletes=True))

    __table_args__ = (
        UniqueConstraint('form_id', 'student_id', name='uq_correction_form_student'),
    )

class FormResult(db.Model):
    __tablename__ = "results_form"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.Integer, db.ForeignKey('form.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), index=True, nullable=False)
    points = db.Column(db.Float, nullable=False, default=0)
    correct = db.Column(db.Integer, nullable=False, default=0)
    wrong = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    form = db.relationship('Form', backref=db.backref('results', cascade="all,delete-orphan", passive_deletes=True))
    student = db.relationship('User')

    __table_args__ = (
        UniqueConstraint('form_id', 'student_id', name='uq_result_form_student'),
    )
