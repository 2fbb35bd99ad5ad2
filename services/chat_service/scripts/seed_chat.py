#!/usr/bin/env python3
"""
Seed chat database with demo learners, a direct conversation and a study group.
Run from the chat-service container (or the service directory locally).
"""
import sys
import os

# Add service path - in container /app is the service root
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from database import SessionLocal, init_db
from models import User
from schemas import SendMessageRequest
from auth import create_access_token
from datetime import timedelta
import conversations
import messages

USERS = [
    {"id": "seed-linh", "name": "Linh Tran", "email": "linh@lingo.dev"},
    {"id": "seed-minh", "name": "Minh Nguyen", "email": "minh@lingo.dev"},
    {"id": "seed-anna", "name": "Anna Schmidt", "email": "anna@lingo.dev"},
    {"id": "seed-kenji", "name": "Kenji Sato", "email": "kenji@lingo.dev"},
]


def seed_users(db):
    for user_data in USERS:
        existing = db.query(User).filter(User.id == user_data["id"]).first()
        if not existing:
            db.add(User(**user_data))
    db.commit()


def seed_conversations(db):
    linh, minh, anna, kenji = [u["id"] for u in USERS]

    # message ids make re-runs idempotent
    messages.send_direct(db, linh, minh, SendMessageRequest(
        text="Hi Minh! Want to practice German together?",
        client_message_id="seed-dm-1"
    ))
    direct = conversations.find_or_create_direct(db, minh, linh)
    messages.send_to_conversation(db, minh, direct.id, SendMessageRequest(
        text="Ja, gerne! Tomorrow at 8?",
        client_message_id="seed-dm-2"
    ))

    existing_group = next(
        (c for c in conversations.list_conversations(db, anna) if c.title == "German A2 Study"),
        None
    )
    if existing_group:
        group_id = existing_group.id
    else:
        group_id = conversations.create_group(db, anna, "German A2 Study", [linh, minh, kenji]).id
    messages.send_to_conversation(db, anna, group_id, SendMessageRequest(
        text="Welcome! Today's topic: separable verbs.",
        client_message_id="seed-group-1"
    ))
    conversations.set_nickname(db, kenji, group_id, "Ken")


def print_tokens():
    for user_data in USERS:
        token = create_access_token({"sub": user_data["id"]}, expires_delta=timedelta(days=7))
        print(f"  {user_data['name']:<14} {token}")


if __name__ == "__main__":
    print("Seeding chat database...")
    init_db()
    db = SessionLocal()
    try:
        seed_users(db)
        seed_conversations(db)
    finally:
        db.close()
    print("✓ Chat database seeded")
    print("Dev tokens (valid 7 days):")
    print_tokens()
    print("✓ Complete!")
