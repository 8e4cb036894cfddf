from datetime import timedelta

from models import db, utcnow, Form, FormResult


def _result(app, form_id, student_id, points, age_days=0):
    with app.app_context():
        db.session.add(FormResult(form_id=form_id, student_id=student_id, points=points,
                                  correct=0, wrong=0, updated_at=utcnow() - timedelta(days=age_days)))
        db.session.commit()


def test_report_without_results(world, login):
    c = login("student@example.com")
    data = c.get("/api/performance/me").get_json()["data"]
    assert data == {"overall_average": 0.0, "best_grade": {"name": "N/A", "grade": 0.0}, "disciplines": []}
    assert c.get("/api/performance/recent").status_code == 404


def test_report_averages_by_subject(app, world, seed, publish, login):
    databases = seed.subject(world["teacher"], world["course"], name="Databases")
    f1 = publish(title="Quiz one")
    f2 = publish(title="Quiz two")
    f3 = publish(title="DB quiz", subject_id=databases, class_id=None)
    _result(app, f1["id"], world["student"], 4)
    _result(app, f2["id"], world["student"], 5)
    _result(app, f3["id"], world["student"], 9)

    data = login("student@example.com").get("/api/performance/me").get_json()["data"]
    assert data["overall_average"] == 6.0
    assert data["best_grade"] == {"name": "Databases", "grade": 9.0}
    assert data["disciplines"] == [{"name": "Databases", "grade": 9.0},
                                   {"name": "Algorithms", "grade": 4.5}]


def test_recent_results_latest_first(app, world, publish, login):
    forms = [publish(title=f"Quiz {i}") for i in range(7)]
    for age, form in enumerate(forms):
        _result(app, form["id"], world["student"], age, age_days=age)

    notes = login("student@example.com").get("/api/performance/recent").get_json()["notes"]
    assert [n["form_title"] for n in notes] == ["Quiz 0", "Quiz 1", "Quiz 2", "Quiz 3", "Quiz 4"]
    assert notes[0]["subject_name"] == "Algorithms"
    assert notes[0]["max_points"] == 6


def test_performance_is_student_only(world, login):
    assert login("teacher@example.com").get("/api/performance/me").status_code == 403
