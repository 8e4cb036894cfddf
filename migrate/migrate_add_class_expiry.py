#!/usr/bin/env python3
"""
Migration: Add class expiry and form correction status

Adds classes.expires_at and form.status (1 = open / awaiting correction,
2 = fully corrected). Safe to run more than once.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, db
from sqlalchemy import inspect, text

CHANGES = [
    ("classes", "expires_at", "DATETIME"),
    ("form", "status", "INTEGER NOT NULL DEFAULT 1"),
]

def migrate():
    with app.app_context():
        print("Starting migration: Add class expiry and form status")
        insp = inspect(db.engine)
        with db.engine.connect() as conn:
            for table, column, ddl in CHANGES:
                existing = {c["name"] for c in insp.get_columns(table)}
                if column in existing:
                    print(f"{table}.{column} already exists")
                    continue
                print(f"Adding {table}.{column}...")
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            conn.commit()
        print("\nMigration completed successfully!")

if __name__ == "__main__":
    migrate()
