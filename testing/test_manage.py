import json

import manage
from models import db, User, CourseRegistry, ROLE_ADMIN

CSV = """code_ies,acronym_ies,name_ies,situation,course_code,name,degree,city,uf
1,DEMO,Demo University,Active,100001,Computer Science,Bachelor,Campinas,sp
1,DEMO,Demo University,Active,100002,Mathematics,Bachelor,Campinas,SP
1,DEMO,Demo University,Active,100001,Duplicate,Bachelor,Campinas,SP
1,DEMO,Demo University,Active,not-a-code,Broken,Bachelor,Campinas,SP
"""


def test_import_courses_skips_duplicates(app, tmp_path):
    path = tmp_path / "courses.csv"
    path.write_text(CSV, encoding="utf-8")
    assert manage.import_courses(app, str(path)) == (2, 2)
    assert manage.import_courses(app, str(path)) == (0, 4)
    with app.app_context():
        assert CourseRegistry.query.filter_by(course_code=100001).one().uf == "SP"


def test_seed_admins_generates_passwords(app, tmp_path):
    path = tmp_path / "admins.json"
    path.write_text(json.dumps([{"username": "Ana Admin", "email": "Ana@Example.com"}]))
    out = manage.seed_admins(app, str(path))
    assert out[0]["action"] == "created"
    with app.app_context():
        user = User.query.filter_by(email="ana@example.com").one()
        assert user.role == ROLE_ADMIN
        assert user.check_password(out[0]["password"])

    assert manage.seed_admins(app, str(path))[0]["action"] == "updated"
