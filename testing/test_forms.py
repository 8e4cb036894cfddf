from datetime import timedelta

from models import (db, utcnow, Form, Question, Option, Answer, FormCorrection, FormResult,
                    FORM_STATUS_OPEN)


def test_publish_persists_questions_and_options(app, publish):
    form = publish()
    assert form["total_points"] == 6
    assert [q["type"] for q in form["questions"]] == ["multiple_choice", "true_false", "open"]
    assert form["status"] == FORM_STATUS_OPEN
    with app.app_context():
        assert Question.query.count() == 3
        assert Option.query.count() == 5


def test_publish_validation(publish):
    past = (utcnow() - timedelta(hours=1)).isoformat()
    assert publish(status=422, title="ab")["error"] == "Title must be between 3 and 150 characters."
    assert publish(status=422, description="x" * 256)["ok"] is False
    assert publish(status=422, deadline=None)["ok"] is False
    assert publish(status=422, deadline=past)["error"] == "deadline must be in the future."
    assert publish(status=422, questions=[])["error"] == "Add at least one question."


def test_publish_rejects_bad_questions(app, publish):
    two_correct = [{"text": "Pick", "type": "multiple_choice", "points": 1,
                    "options": [{"text": "a", "correct": True}, {"text": "b", "correct": True}]}]
    one_option = [{"text": "Pick", "type": "multiple_choice", "points": 1,
                   "options": [{"text": "a", "correct": True}]}]
    three_tf = [{"text": "Sure?", "type": "true_false", "points": 1,
                 "options": [{"text": "T", "correct": True}, {"text": "F"}, {"text": "Maybe"}]}]
    open_with_options = [{"text": "Why?", "type": "open", "points": 1, "options": [{"text": "a"}]}]
    negative = [{"text": "Why?", "type": "open", "points": -1}]
    unknown = [{"text": "Why?", "type": "essay", "points": 1}]

    for questions in (two_correct, one_option, three_tf, open_with_options, negative, unknown):
        publish(status=422, questions=questions)
    # nothing half-written
    with app.app_context():
        assert Form.query.count() == 0
        assert Question.query.count() == 0


def test_publish_unique_title_per_class(publish, world, seed):
    publish()
    assert publish(status=422)["error"] == "A form with this title already exists."
    other = seed.klass(world["subject"], name="ALG-B")
    publish(class_id=other)


def test_publish_class_must_belong_to_subject(publish, world, seed):
    other_subject = seed.subject(world["teacher"], world["course"], name="Databases")
    foreign_class = seed.klass(other_subject, name="DB-A")
    publish(status=422, class_id=foreign_class)


def test_student_cannot_publish(world, login):
    resp = login("student@example.com").post("/api/forms", json={"title": "Nope"})
    assert resp.status_code == 403


def test_forms_by_class_newest_first(app, publish, world, login):
    c = login("teacher@example.com")
    assert c.get(f"/api/classes/{world['klass']}/forms").status_code == 404

    first = publish(title="First quiz")
    second = publish(title="Second quiz")
    with app.app_context():
        db.session.get(Form, first["id"]).updated_at = utcnow() - timedelta(days=1)
        db.session.commit()

    forms = c.get(f"/api/classes/{world['klass']}/forms").get_json()["forms"]
    assert [f["id"] for f in forms] == [second["id"], first["id"]]
    assert forms[0]["total_points"] == 6
    assert len(forms[0]["questions"][0]["options"]) == 3


def test_student_view_hides_correct_flags(publish, login):
    form = publish()
    data = login("student@example.com").get(f"/api/forms/{form['id']}").get_json()["form"]
    for q in data["questions"]:
        for o in q["options"]:
            assert "correct" not in o


def test_view_requires_enrollment(publish, seed, login):
    form = publish()
    seed.user(email="outsider@example.com")
    assert login("outsider@example.com").get(f"/api/forms/{form['id']}").status_code == 403


def test_pending_for_student(app, publish, world, seed, login):
    later = publish(title="Later quiz", deadline=(utcnow() + timedelta(days=5)).isoformat())
    sooner = publish(title="Subject-wide quiz", class_id=None,
                     deadline=(utcnow() + timedelta(days=2)).isoformat())
    closed = publish(title="Closed quiz")
    with app.app_context():
        db.session.get(Form, closed["id"]).deadline = utcnow() - timedelta(minutes=1)
        db.session.commit()
    other_subject = seed.subject(world["teacher"], world["course"], name="Databases")
    publish(title="Other subject quiz", subject_id=other_subject, class_id=None)

    rows = login("student@example.com").get("/api/forms/pending").get_json()["forms"]
    assert [r["id"] for r in rows] == [sooner["id"], later["id"]]
    assert rows[0]["discipline_name"] == "Algorithms"


def test_submit_scores_objective_questions(app, publish, world, login, build_answers):
    form = publish()
    c = login("student@example.com")
    resp = c.post(f"/api/forms/{form['id']}/answers", json={"answers": build_answers(form)})
    assert resp.status_code == 201
    result = resp.get_json()["result"]
    assert result == {"points": 3.0, "correct": 2, "wrong": 0, "max_points": 6.0,
                      "pending_correction": True}

    with app.app_context():
        answers = Answer.query.filter_by(form_id=form["id"]).all()
        assert sorted(a.corrected for a in answers) == [False, True, True]
        tracking = FormCorrection.query.filter_by(form_id=form["id"], student_id=world["student"]).one()
        assert tracking.corrected is False

    again = c.post(f"/api/forms/{form['id']}/answers", json={"answers": build_answers(form)})
    assert again.status_code == 409

    pending = c.get("/api/forms/pending").get_json()["forms"]
    assert pending == []
    available = c.get(f"/api/classes/{world['klass']}/forms/available").get_json()
    assert available["class_name"] == "ALG-A"
    assert available["forms"] == []


def test_submit_wrong_and_blank_answers(app, publish, login, build_answers):
    form = publish()
    resp = login("student@example.com").post(f"/api/forms/{form['id']}/answers",
                                             json={"answers": build_answers(form, right=False, open_text=None)})
    assert resp.status_code == 201
    result = resp.get_json()["result"]
    # the blank open question counts as wrong too
    assert (result["points"], result["correct"], result["wrong"]) == (0.0, 0, 3)
    assert result["pending_correction"] is False
    with app.app_context():
        assert FormCorrection.query.count() == 0
        assert FormResult.query.count() == 1


def test_submit_rejects_foreign_ids(publish, world, login, build_answers):
    form = publish()
    other = publish(title="Other quiz")
    c = login("student@example.com")

    foreign_question = [{"question_id": other["questions"][0]["id"],
                         "option_id": other["questions"][0]["options"][0]["id"]}]
    assert c.post(f"/api/forms/{form['id']}/answers", json={"answers": foreign_question}).status_code == 422

    q1, q2 = form["questions"][0], form["questions"][1]
    mismatched = [{"question_id": q1["id"], "option_id": q2["options"][0]["id"]}]
    assert c.post(f"/api/forms/{form['id']}/answers", json={"answers": mismatched}).status_code == 422

    # the rejected attempts did not count as a submission
    ok = c.post(f"/api/forms/{form['id']}/answers", json={"answers": build_answers(form)})
    assert ok.status_code == 201


def test_submit_after_deadline_or_not_enrolled(app, publish, seed, login, build_answers):
    form = publish()
    seed.user(email="outsider@example.com")
    assert login("outsider@example.com").post(
        f"/api/forms/{form['id']}/answers", json={"answers": build_answers(form)}).status_code == 403

    with app.app_context():
        db.session.get(Form, form["id"]).deadline = utcnow() - timedelta(seconds=1)
        db.session.commit()
    resp = login("student@example.com").post(f"/api/forms/{form['id']}/answers",
                                             json={"answers": build_answers(form)})
    assert resp.status_code == 403


def test_delete_form_cascades(app, publish, login, build_answers):
    form = publish()
    login("student@example.com").post(f"/api/forms/{form['id']}/answers", json={"answers": build_answers(form)})
    assert login("teacher@example.com").delete(f"/api/forms/{form['id']}").status_code == 200
    with app.app_context():
        for model in (Form, Question, Option, Answer, FormCorrection, FormResult):
            assert model.query.count() == 0


def test_form_relations(world, seed, login):
    seed.klass(world["subject"], name="ALG-B")
    rel = login("teacher@example.com").get("/api/forms/relations").get_json()["relations"]
    assert len(rel) == 1
    assert rel[0]["subject_name"] == "Algorithms"
    assert sorted(c["name"] for c in rel[0]["classes"]) == ["ALG-A", "ALG-B"]


def test_submit_rejects_answer_of_wrong_kind(publish, login, build_answers):
    form = publish()
    mc, open_q = form["questions"][0], form["questions"][2]
    c = login("student@example.com")

    text_for_choice = [{"question_id": mc["id"], "open_answer": "O(n^2)"}]
    resp = c.post(f"/api/forms/{form['id']}/answers", json={"answers": text_for_choice})
    assert resp.status_code == 422

    option_for_open = [{"question_id": open_q["id"], "option_id": mc["options"][0]["id"]}]
    resp = c.post(f"/api/forms/{form['id']}/answers", json={"answers": option_for_open})
    assert resp.status_code == 422

    assert c.post(f"/api/forms/{form['id']}/answers",
                  json={"answers": build_answers(form)}).status_code == 201
