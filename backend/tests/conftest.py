import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from taskflow.core.security import create_access_token
from taskflow.db import mongo
from taskflow.main import app


@pytest.fixture
def mock_db(monkeypatch):
    """In-process motor-compatible database standing in for the live connection."""
    database = AsyncMongoMockClient()["taskflow_test"]
    monkeypatch.setattr(mongo, "_db", database)
    return database


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture invitation emails instead of talking to SMTP."""
    sent = []

    def fake_send(to_email, project_name, inviter_name, role, token, expires_at):
        sent.append({
            "to": to_email,
            "project_name": project_name,
            "inviter_name": inviter_name,
            "role": role,
            "token": token,
            "expires_at": expires_at,
        })
        return True, "sent"

    monkeypatch.setattr("taskflow.services.invitations.send_project_invitation_email", fake_send)
    return sent


@pytest.fixture
def client(mock_db):
    # No context manager: startup would try to reach a real MongoDB
    return TestClient(app)


async def make_user(database, email: str, name: str | None = None) -> dict:
    doc = {
        "user_id": str(uuid.uuid4()),
        "email": email.lower(),
        "name": name or email.split("@")[0].title(),
        "password_hash": "x",
        "created_at": datetime.now(timezone.utc),
        "last_login_at": None,
    }
    await database["users"].insert_one(dict(doc))
    return doc


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}
