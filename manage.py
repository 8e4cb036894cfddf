import argparse, csv, json, secrets, string
from app import create_app, _new_registration
from models import db, User, CourseRegistry, ROLE_ADMIN, ROLE_STUDENT

def rand_password(n=10):
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(n))

def _upsert_accounts(items, role):
    out = []
    for it in items:
        name = it["username"].strip()
        email = it["email"].strip().lower()
        pw = it.get("password") or rand_password()
        u = User.query.filter_by(email=email).first()
        if not u:
            u = User(username=name, email=email, role=role, registration=_new_registration())
            u.set_password(pw)
            db.session.add(u)
            action = "created"
        else:
            u.username = name
            u.role = role
            u.set_password(pw)
            action = "updated"
        out.append({"email": email, "password": pw, "role": role, "action": action})
    db.session.commit()
    return out

def seed_admins(app, json_path):
    """
    JSON: [{"username":"Ana Admin","email":"ana@school.edu","password":"..."}]
    If password omitted, one is generated and printed.
    """
    with app.app_context():
        with open(json_path, "r") as fh:
            out = _upsert_accounts(json.load(fh), ROLE_ADMIN)
        print("Seeded/updated:", len(out))
        for r in out:
            print(f"{r['email']} ({r['role']}): {r['password']} ({r['action']})")
        return out

def seed_students(app, json_path):
    with app.app_context():
        with open(json_path, "r") as fh:
            out = _upsert_accounts(json.load(fh), ROLE_STUDENT)
        print("Seeded/updated:", len(out))
        for r in out:
            print(f"{r['email']}: {r['password']} ({r['action']})")
        return out

COURSE_COLUMNS = ("code_ies", "acronym_ies", "name_ies", "situation",
                  "course_code", "name", "degree", "city", "uf")

def import_courses(app, csv_path):
    """
    CSV header: code_ies,acronym_ies,name_ies,situation,course_code,name,degree,city,uf
    Rows whose course_code is already registered are skipped.
    """
    with app.app_context():
        known = {c for (c,) in db.session.query(CourseRegistry.course_code).all()}
        created, skipped = 0, 0
        with open(csv_path, newline="", encoding="utf-8") as fh:
            reader = csv.DictReader(fh)
            missing = [c for c in COURSE_COLUMNS if c not in (reader.fieldnames or [])]
            if missing:
                raise SystemExit(f"missing CSV columns: {', '.join(missing)}")
            for row in reader:
                try:
                    code = int(row["course_code"])
                    code_ies = int(row["code_ies"])
                except (TypeError, ValueError):
                    skipped += 1
                    continue
                if code in known:
                    skipped += 1
                    continue
                db.session.add(CourseRegistry(
                    code_ies=code_ies,
                    acronym_ies=row["acronym_ies"].strip(),
                    name_ies=row["name_ies"].strip(),
                    situation=row["situation"].strip(),
                    course_code=code,
                    name=row["name"].strip(),
                    degree=row["degree"].strip(),
                    city=row["city"].strip(),
                    uf=row["uf"].strip().upper(),
                ))
                known.add(code)
                created += 1
        db.session.commit()
        print(f"Courses imported: {created}, skipped: {skipped}")
        return created, skipped

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("cmd", choices=["seed-admins", "seed-students", "import-courses"])
    parser.add_argument("path")
    args = parser.parse_args()

    app = create_app()
    if args.cmd == "seed-admins":
        seed_admins(app, args.path)
    elif args.cmd == "seed-students":
        seed_students(app, args.path)
    else:
        import_courses(app, args.path)
