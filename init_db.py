#!/usr/bin/env python3
"""
Initialize database with the current schema
Pass --reset to drop existing tables first (destroys stored users and stats)
"""
import sys

from app import app, db
from models import User, GmailAccount, Email, GeneratedReply


def init_db(reset=False):
    with app.app_context():
        if reset:
            db.drop_all()
            print("✓ Dropped existing tables")
        db.create_all()
        tables = [model.__tablename__ for model in (User, GmailAccount, Email, GeneratedReply)]
        print(f"✓ Tables ready: {', '.join(tables)}")


if __name__ == '__main__':
    init_db(reset='--reset' in sys.argv)
