"""Accounts: registration, login, email verification, password reset and
the admin operations on users and volunteer applications."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import structlog
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import permissions
import settings
from database import TOKENS, USERS, as_utc, create_document, get_documents, object_id
from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from schemas import Principal, RegisterRequest, Role, TokenType, User, VerificationToken
from security import create_token, hash_password, verify_password

logger = structlog.get_logger(__name__)

TOKEN_TTL = {
    TokenType.EMAIL_VERIFICATION: timedelta(hours=24),
    TokenType.PASSWORD_RESET: timedelta(hours=1),
}
INVALID_TOKEN = "Invalid or expired token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def find_user_by_email(db: Database, email: str) -> Optional[User]:
    doc = db[USERS].find_one({"email": email.strip().lower()})
    return User.from_document(doc) if doc else None


def load_user(db: Database, user_id: str) -> User:
    doc = db[USERS].find_one({"_id": object_id(user_id, "user id")})
    if not doc:
        raise NotFound("User not found")
    return User.from_document(doc)


# ---------- Verification tokens ----------

def issue_token(db: Database, user: User, token_type: TokenType, now: Optional[datetime] = None) -> VerificationToken:
    """Create a fresh token, replacing any earlier token of the same type for the user."""
    now = now or _utcnow()
    db[TOKENS].delete_many({"user_id": user.id, "type": token_type.value})
    token = VerificationToken(
        user_id=user.id,
        email=user.email,
        token=secrets.token_hex(32),
        type=token_type,
        expires_at=now + TOKEN_TTL[token_type],
        created_at=now,
    )
    token.id = create_document(db, TOKENS, token)
    return token


def _find_live_token(db: Database, token: str, token_type: TokenType, now: datetime) -> Optional[dict]:
    doc = db[TOKENS].find_one({"token": token, "type": token_type.value, "used": False})
    if not doc or as_utc(doc["expires_at"]) <= now:
        return None
    return doc


def is_token_valid(db: Database, token: str, token_type: TokenType, now: Optional[datetime] = None) -> bool:
    return _find_live_token(db, token, token_type, now or _utcnow()) is not None


def consume_token(db: Database, token: str, token_type: TokenType, now: Optional[datetime] = None) -> User:
    now = now or _utcnow()
    doc = _find_live_token(db, token, token_type, now)
    if not doc:
        raise ValidationError(INVALID_TOKEN)
    result = db[TOKENS].update_one({"_id": doc["_id"], "used": False}, {"$set": {"used": True, "used_at": now}})
    if result.matched_count == 0:
        raise ValidationError(INVALID_TOKEN)
    user_doc = db[USERS].find_one({"_id": ObjectId(doc["user_id"])})
    if not user_doc:
        raise ValidationError(INVALID_TOKEN)
    return User.from_document(user_doc)


# ---------- Registration & login ----------

def register(db: Database, payload: RegisterRequest, admin_email: Optional[str] = None) -> Tuple[User, str]:
    """Create an unverified account. Returns the user and its email verification token."""
    admin_email = admin_email if admin_email is not None else settings.ADMIN_EMAIL
    email = str(payload.email).strip().lower()
    if find_user_by_email(db, email):
        raise Conflict("User with this email already exists")

    if admin_email and email == admin_email:
        role = Role.ADMIN
    elif payload.user_type == "volunteer":
        role = Role.VOLUNTEER
    else:
        role = Role.CITIZEN

    user = User(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=email,
        password_hash=hash_password(payload.password),
        phone=payload.phone or None,
        location=payload.location or None,
        role=role,
        email_verified=False,
        is_approved=role != Role.VOLUNTEER,
        created_at=_utcnow(),
    )
    try:
        user.id = create_document(db, USERS, user)
    except DuplicateKeyError:
        raise Conflict("User with this email already exists") from None
    token = issue_token(db, user, TokenType.EMAIL_VERIFICATION)
    logger.info("user.registered", user_id=user.id, role=user.role)
    return user, token.token


def authenticate(db: Database, email: str, password: str) -> User:
    user = find_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        raise Unauthorized("Invalid email or password")
    return user


def login(db: Database, email: str, password: str) -> Tuple[User, str]:
    user = authenticate(db, email, password)
    allowed, reason = permissions.can_login(user)
    if not allowed:
        logger.info("user.login_denied", user_id=user.id, reason=reason)
        raise Forbidden(reason)
    user.last_login_at = _utcnow()
    db[USERS].update_one({"_id": ObjectId(user.id)}, {"$set": {"last_login_at": user.last_login_at}})
    return user, create_token(user)


def check_user_status(db: Database, email: str, password: Optional[str] = None) -> dict:
    user = find_user_by_email(db, email)
    if not user:
        raise NotFound("User not found")
    if password is not None and not verify_password(password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    allowed, reason = permissions.can_login(user)
    return {"user": user.public(), "can_login": allowed, "reason": reason}


def verify_email(db: Database, token: str) -> User:
    user = consume_token(db, token, TokenType.EMAIL_VERIFICATION)
    now = _utcnow()
    db[USERS].update_one({"_id": ObjectId(user.id)}, {"$set": {"email_verified": True, "email_verified_at": now}})
    user.email_verified = True
    user.email_verified_at = now
    logger.info("user.email_verified", user_id=user.id)
    return user


def request_password_reset(db: Database, email: str) -> Optional[Tuple[User, str]]:
    """Issue a reset token if the account exists; callers answer identically either way."""
    user = find_user_by_email(db, email)
    if not user:
        return None
    token = issue_token(db, user, TokenType.PASSWORD_RESET)
    return user, token.token


def reset_password(db: Database, token: str, password: str) -> User:
    user = consume_token(db, token, TokenType.PASSWORD_RESET)
    db[USERS].update_one({"_id": ObjectId(user.id)}, {"$set": {"password_hash": hash_password(password)}})
    logger.info("user.password_reset", user_id=user.id)
    return user


# ---------- Admin ----------

def list_users(db: Database) -> list:
    return [User.from_document(doc) for doc in get_documents(db, USERS, {}, sort=[("created_at", -1)])]


def set_user_active(db: Database, admin: Principal, user_id: str, action: str) -> User:
    user = load_user(db, user_id)
    if action == "deactivate" and not permissions.can_deactivate(admin, user):
        if user.id == admin.id:
            raise Forbidden("You cannot deactivate your own account")
        raise Forbidden("Cannot deactivate admin accounts")
    user.is_active = action == "activate"
    db[USERS].update_one({"_id": ObjectId(user.id)}, {"$set": {"is_active": user.is_active}})
    logger.info("user.active_changed", user_id=user.id, is_active=user.is_active, admin_id=admin.id)
    return user


def pending_volunteers(db: Database) -> list:
    query = {"role": Role.VOLUNTEER.value, "is_approved": False, "email_verified": True}
    return [User.from_document(doc) for doc in get_documents(db, USERS, query, sort=[("created_at", -1)])]


def decide_volunteer(db: Database, admin: Principal, volunteer_id: str, action: str) -> Tuple[User, str]:
    """Approve a volunteer, or reject the application by deleting the account."""
    user = load_user(db, volunteer_id)
    if user.role != Role.VOLUNTEER:
        raise NotFound("Volunteer not found")

    if action == "approve":
        now = _utcnow()
        db[USERS].update_one(
            {"_id": ObjectId(user.id)},
            {"$set": {"is_approved": True, "approved_at": now, "approved_by": admin.id}},
        )
        user.is_approved, user.approved_at, user.approved_by = True, now, admin.id
        logger.info("volunteer.approved", user_id=user.id, admin_id=admin.id)
        return user, f"{user.full_name} has been approved as a volunteer."

    db[USERS].delete_one({"_id": ObjectId(user.id)})
    db[TOKENS].delete_many({"user_id": user.id})
    logger.info("volunteer.rejected", user_id=user.id, admin_id=admin.id)
    return user, f"{user.full_name}'s volunteer application has been rejected."
