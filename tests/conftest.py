"""
Shared test fixtures for pytest.

- db: mongomock database with the production indexes
- s3 / storage: ImageStorage over an in-memory S3 client
- mailer: Mailer that records messages instead of sending them
- client: TestClient with db, storage and mailer injected
- make_user / citizen / volunteer / other_volunteer / admin: stored users
- principal, auth_headers: helpers turning a stored user into a caller
"""

import base64
from datetime import datetime, timezone

import mongomock
import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from database import USERS, create_document, ensure_indexes, get_db
from images import ImageStorage, get_image_storage
from mailer import Mailer, get_mailer
from main import app
from schemas import Principal, User
from security import create_token, hash_password

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)


def png_data_url(content: bytes = b"\x89PNG\r\n\x1a\nfake-image") -> str:
    return "data:image/png;base64," + base64.b64encode(content).decode()


class FakeS3Client:
    """Just enough of the boto3 S3 client for ImageStorage."""

    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.fail_puts = False

    def put_object(self, Bucket, Key, Body, ContentType):
        if self.fail_puts:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.objects[Key] = (Body, ContentType)

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)
        self.deleted.append(Key)


class RecordingMailer(Mailer):
    def __init__(self):
        super().__init__(host=None, admin_email="admin@connectaid.test")
        self.sent = []

    def send(self, to_email, subject, body, reply_to=None):
        self.sent.append({"to": to_email, "subject": subject, "body": body, "reply_to": reply_to})
        return True


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    database = client["connectaid_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def storage(s3):
    return ImageStorage("test-bucket", client=s3, folder="test/requests")


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def client(db, storage, mailer):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_image_storage] = lambda: storage
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="citizen", **overrides):
        counter["n"] += 1
        data = {
            "first_name": role.title(),
            "last_name": f"User{counter['n']}",
            "email": f"{role}{counter['n']}@example.com",
            "password_hash": PASSWORD_HASH,
            "role": role,
            "email_verified": True,
            "is_approved": True,
            "is_active": True,
            "created_at": datetime.now(timezone.utc),
        }
        data.update(overrides)
        user = User(**data)
        user.id = create_document(db, USERS, user)
        return user

    return _make


@pytest.fixture
def citizen(make_user):
    return make_user("citizen")


@pytest.fixture
def volunteer(make_user):
    return make_user("volunteer")


@pytest.fixture
def other_volunteer(make_user):
    return make_user("volunteer")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


def principal(user: User) -> Principal:
    return Principal(
        id=user.id,
        role=user.role,
        email=user.email,
        email_verified=user.email_verified,
        is_approved=user.is_approved,
    )


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_token(user)}"}
