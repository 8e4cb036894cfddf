# scripts/dev_seed.py
from datetime import timedelta

from app import create_app, _new_registration
from models import (db, utcnow, User, CourseRegistry, ProfessionalRequest, Subject,
                    SchoolClass, ClassStudent, Form, Question, Option,
                    ROLE_ADMIN, ROLE_COORDINATOR, ROLE_TEACHER, ROLE_STUDENT,
                    QUESTION_MULTIPLE_CHOICE, QUESTION_TRUE_FALSE, QUESTION_OPEN)

def upsert_user(name, email, role, password, course=None):
    u = User.query.filter_by(email=email).one_or_none()
    if u is None:
        u = User(username=name, email=email, role=role, registration=_new_registration(),
                 course_id=course.id if course else None,
                 institution="Demo University" if course else None)
        u.set_password(password)
        db.session.add(u)
        db.session.flush()
        print(f"[seed] created {role} user: {email}")
    else:
        print(f"[seed] {role} user already exists: {email}")
    return u

def upsert_course():
    c = CourseRegistry.query.filter_by(course_code=100001).one_or_none()
    if c is None:
        c = CourseRegistry(code_ies=1, acronym_ies="DEMO", name_ies="Demo University",
                           situation="Active", course_code=100001, name="Computer Science",
                           degree="Bachelor", city="Campinas", uf="SP")
        db.session.add(c)
        db.session.flush()
        print("[seed] created course 100001")
    return c

def approve(user, course, role):
    if user.professional_request is None:
        db.session.add(ProfessionalRequest(professional_id=user.id, institution="Demo University",
                                           access_code=str(course.course_code), role=role,
                                           approved=True))

def main():
    app = create_app()
    with app.app_context():
        db.create_all()   # safe if tables already exist

        course = upsert_course()
        upsert_user("Alice Admin", "admin@example.com", ROLE_ADMIN, "admin123")
        coord = upsert_user("Carla Coordinator", "coord@example.com", ROLE_COORDINATOR, "coord123", course)
        teacher = upsert_user("Tom Teacher", "teacher@example.com", ROLE_TEACHER, "teacher123", course)
        student = upsert_user("Stu Dent", "student@example.com", ROLE_STUDENT, "student123", course)
        approve(coord, course, ROLE_COORDINATOR)
        approve(teacher, course, ROLE_TEACHER)

        subject = Subject.query.filter_by(name="Algorithms", course_id=course.id).one_or_none()
        if subject is None:
            subject = Subject(name="Algorithms", professional_id=teacher.id, course_id=course.id)
            klass = SchoolClass(name="ALG-A", period="2025.1", capacity=40,
                                subject=subject, course_id=course.id)
            db.session.add_all([subject, klass])
            db.session.flush()
            db.session.add(ClassStudent(class_id=klass.id, student_id=student.id))

            form = Form(title="Warm-up quiz", description="Sorting basics", created_by=teacher.id,
                        subject_id=subject.id, class_id=klass.id, total_duration=20,
                        deadline=utcnow() + timedelta(days=7))
            q1 = Question(text="Worst case of quicksort?", points=2, type=QUESTION_MULTIPLE_CHOICE)
            q1.options = [Option(text="O(n log n)"), Option(text="O(n^2)", correct=True), Option(text="O(n)")]
            q2 = Question(text="Merge sort is stable.", points=1, type=QUESTION_TRUE_FALSE)
            q2.options = [Option(text="True", correct=True), Option(text="False")]
            q3 = Question(text="Explain the heap property.", points=3, type=QUESTION_OPEN)
            form.questions.extend([q1, q2, q3])
            db.session.add(form)
            print("[seed] created subject, class and demo form")

        db.session.commit()
        print("[seed] done.")

if __name__ == "__main__":
    main()
