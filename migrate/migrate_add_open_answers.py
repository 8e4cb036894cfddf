#!/usr/bin/env python3
"""
Migration: Add open-answer correction support

This migration:
1. Adds open_answer / corrected / awarded_points to answers_form
2. Creates comment_answers, form_corrections and results_form tables
"""

import sys
import os

# Add parent directory to path to import models
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, db
from models import AnswerComment, FormCorrection, FormResult
from sqlalchemy import inspect, text

ANSWER_COLUMNS = [
    ("open_answer", "TEXT"),
    ("corrected", "BOOLEAN NOT NULL DEFAULT 0"),
    ("awarded_points", "FLOAT"),
]
NEW_TABLES = [AnswerComment.__table__, FormCorrection.__table__, FormResult.__table__]

def migrate():
    with app.app_context():
        print("Starting migration: Add open-answer correction support")
        columns = {c["name"] for c in inspect(db.engine).get_columns("answers_form")}

        with db.engine.connect() as conn:
            for name, ddl in ANSWER_COLUMNS:
                if name in columns:
                    print(f"{name} column already exists")
                    continue
                print(f"Adding {name} column to answers_form...")
                conn.execute(text(f"ALTER TABLE answers_form ADD COLUMN {name} {ddl}"))
            # objective answers were always scored on submission
            conn.execute(text("UPDATE answers_form SET corrected = 1 WHERE open_answer IS NULL"))
            conn.commit()

        print("Creating correction tables...")
        db.metadata.create_all(db.engine, tables=NEW_TABLES, checkfirst=True)
        print("\nMigration completed successfully!")

def rollback():
    """Rollback this migration (use with caution in production)"""
    with app.app_context():
        print("Rolling back migration: Add open-answer correction support")
        # SQLite has no portable DROP COLUMN; only the new tables are removed
        confirm = input("This will DROP comment_answers, form_corrections and results_form. Continue? (yes/no): ")
        if confirm.lower() == 'yes':
            db.metadata.drop_all(db.engine, tables=NEW_TABLES, checkfirst=True)
            print("Rollback completed")
        else:
            print("Rollback cancelled")

if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "rollback":
        rollback()
    else:
        migrate()
