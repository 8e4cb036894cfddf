import os
import sys
from datetime import timedelta

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("APP_SECRET", "test-secret")
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app as flask_app
from models import (db, utcnow, User, CourseRegistry, ProfessionalRequest, Subject,
                    SchoolClass, ClassStudent, ClassInvite,
                    ROLE_ADMIN, ROLE_COORDINATOR, ROLE_TEACHER, ROLE_STUDENT)

PASSWORD = "secret1"


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(TESTING=True, UPLOAD_DIR=str(tmp_path))
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(app):
    """Return a test client signed in as `email` with the CSRF header set."""
    def _login(email, password=PASSWORD):
        c = app.test_client()
        resp = c.post("/api/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        c.environ_base["HTTP_X_CSRF"] = resp.get_json()["csrf"]
        return c
    return _login


class Seeder:
    """Direct-to-database factories; every method returns plain ids."""

    def __init__(self, app):
        self.app = app
        self._n = 0

    def _add(self, obj):
        with self.app.app_context():
            db.session.add(obj)
            db.session.commit()
            return obj.id

    def course(self, course_code=100001, name="Computer Science", uf="SP"):
        return self._add(CourseRegistry(code_ies=1, acronym_ies="DEMO", name_ies="Demo University",
                                        situation="Active", course_code=course_code, name=name,
                                        degree="Bachelor", city="Campinas", uf=uf))

    def user(self, role=ROLE_STUDENT, email=None, username=None, course_id=None, status=1):
        self._n += 1
        u = User(username=username or f"{role.title()} {self._n:02d}",
                 email=email or f"{role}{self._n}@example.com",
                 registration=f"{10000000 + self._n}", role=role,
                 course_id=course_id, status=status)
        u.set_password(PASSWORD)
        return self._add(u)

    def professional(self, role, course_id, approved=True, email=None, diploma=None):
        with self.app.app_context():
            code = str(db.session.get(CourseRegistry, course_id).course_code)
        uid = self.user(role=role if approved else ROLE_STUDENT, email=email,
                        course_id=course_id if approved else None)
        self._add(ProfessionalRequest(professional_id=uid, institution="Demo University",
                                      access_code=code, role=role, approved=approved,
                                      diploma=diploma))
        return uid

    def subject(self, teacher_id, course_id, name="Algorithms"):
        return self._add(Subject(name=name, professional_id=teacher_id, course_id=course_id))

    def klass(self, subject_id, name="ALG-A", capacity=30, expires_at=None):
        with self.app.app_context():
            course_id = db.session.get(Subject, subject_id).course_id
        return self._add(SchoolClass(name=name, period="2025.1", capacity=capacity,
                                     subject_id=subject_id, course_id=course_id,
                                     expires_at=expires_at))

    def enroll(self, class_id, student_id):
        with self.app.app_context():
            db.session.add(ClassStudent(class_id=class_id, student_id=student_id))
            db.session.commit()

    def invite(self, class_id, code="JOIN1234", days=7, max_uses=None, use_count=0):
        return self._add(ClassInvite(code=code, class_id=class_id, max_uses=max_uses,
                                     use_count=use_count, expires_at=utcnow() + timedelta(days=days)))

    def world(self):
        """Course + coordinator + teacher + subject + class with one enrolled student."""
        course = self.course()
        coordinator = self.professional(ROLE_COORDINATOR, course, email="coord@example.com")
        teacher = self.professional(ROLE_TEACHER, course, email="teacher@example.com")
        student = self.user(email="student@example.com", course_id=course)
        subject = self.subject(teacher, course)
        klass = self.klass(subject)
        self.enroll(klass, student)
        admin = self.user(role=ROLE_ADMIN, email="admin@example.com")
        return dict(course=course, coordinator=coordinator, teacher=teacher, student=student,
                    subject=subject, klass=klass, admin=admin)


@pytest.fixture
def seed(app):
    return Seeder(app)


@pytest.fixture
def world(seed):
    return seed.world()


def _sample_questions():
    return [
        {"text": "Worst case of quicksort?", "type": "multiple_choice", "points": 2,
         "options": [{"text": "O(n log n)"}, {"text": "O(n^2)", "correct": True}, {"text": "O(n)"}]},
        {"text": "Merge sort is stable.", "type": "true_false", "points": 1,
         "options": [{"text": "True", "correct": True}, {"text": "False"}]},
        {"text": "Explain the heap property.", "type": "open", "points": 3},
    ]


@pytest.fixture
def publish(login, world):
    """Publish a form as the world's teacher; return the created form dict."""
    def _publish(status=201, **overrides):
        body = {
            "title": "Warm-up quiz",
            "description": "Sorting basics",
            "subject_id": world["subject"],
            "class_id": world["klass"],
            "total_duration": 20,
            "deadline": (utcnow() + timedelta(days=1)).isoformat(),
            "questions": _sample_questions(),
        }
        body.update(overrides)
        resp = login("teacher@example.com").post("/api/forms", json=body)
        assert resp.status_code == status, resp.get_json()
        return resp.get_json().get("form") or resp.get_json()
    return _publish


@pytest.fixture
def build_answers():
    """Answer every question of a form dict, choosing correct options when `right`."""
    def _build(form, right=True, open_text="Parent is not smaller than its children."):
        answers = []
        for q in form["questions"]:
            if q["type"] == "open":
                if open_text is not None:
                    answers.append({"question_id": q["id"], "open_answer": open_text})
                continue
            option = next(o for o in q["options"] if o["correct"] is right)
            answers.append({"question_id": q["id"], "option_id": option["id"]})
        return answers
    return _build
