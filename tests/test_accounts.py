"""Tests for registration, login, tokens and admin user management."""

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

import accounts
from conftest import PASSWORD, principal
from database import TOKENS, USERS
from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from schemas import RegisterRequest, TokenType


def registration(**fields):
    data = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "Ada@Example.com",
        "password": PASSWORD,
    }
    data.update(fields)
    return RegisterRequest(**data)


class TestRegister:
    def test_citizen_registration(self, db):
        user, token = accounts.register(db, registration(), admin_email="")
        assert user.email == "ada@example.com"
        assert user.role == "citizen"
        assert user.email_verified is False
        assert user.is_approved is True
        assert db[TOKENS].find_one({"token": token})["type"] == "email_verification"

    def test_volunteer_starts_unapproved(self, db):
        user, _ = accounts.register(db, registration(user_type="volunteer"), admin_email="")
        assert user.role == "volunteer"
        assert user.is_approved is False

    def test_admin_email_gets_admin_role(self, db):
        user, _ = accounts.register(db, registration(), admin_email="ada@example.com")
        assert user.role == "admin"

    def test_duplicate_email_conflicts(self, db):
        accounts.register(db, registration(), admin_email="")
        with pytest.raises(Conflict):
            accounts.register(db, registration(email="ada@example.com"), admin_email="")


class TestLogin:
    def test_unverified_user_denied(self, db):
        accounts.register(db, registration(), admin_email="")
        with pytest.raises(Forbidden, match="Email not verified"):
            accounts.login(db, "ada@example.com", PASSWORD)

    def test_wrong_password(self, db, citizen):
        with pytest.raises(Unauthorized):
            accounts.login(db, citizen.email, "wrong-password")

    def test_unknown_email(self, db):
        with pytest.raises(Unauthorized):
            accounts.login(db, "nobody@example.com", PASSWORD)

    def test_pending_volunteer_denied(self, db, make_user):
        pending = make_user("volunteer", is_approved=False)
        with pytest.raises(Forbidden, match="pending admin approval"):
            accounts.login(db, pending.email, PASSWORD)

    def test_success_returns_token_and_stamps_login(self, db, citizen):
        user, token = accounts.login(db, citizen.email.upper(), PASSWORD)
        assert token
        assert db[USERS].find_one({"_id": ObjectId(citizen.id)})["last_login_at"] is not None

    def test_check_user_status(self, db, make_user):
        deactivated = make_user("citizen", is_active=False)
        status = accounts.check_user_status(db, deactivated.email, PASSWORD)
        assert status["can_login"] is False
        assert status["reason"] == "Account is deactivated"
        assert "password_hash" not in status["user"]
        with pytest.raises(Unauthorized):
            accounts.check_user_status(db, deactivated.email, "nope")
        with pytest.raises(NotFound):
            accounts.check_user_status(db, "ghost@example.com")


class TestTokens:
    def test_verify_email_consumes_token(self, db):
        user, token = accounts.register(db, registration(), admin_email="")
        verified = accounts.verify_email(db, token)
        assert verified.email_verified is True
        accounts.login(db, user.email, PASSWORD)
        with pytest.raises(ValidationError):
            accounts.verify_email(db, token)

    def test_expired_token_rejected(self, db):
        _, token = accounts.register(db, registration(), admin_email="")
        db[TOKENS].update_one(
            {"token": token}, {"$set": {"expires_at": datetime.now(timezone.utc) - timedelta(minutes=1)}}
        )
        with pytest.raises(ValidationError):
            accounts.verify_email(db, token)

    def test_reissue_replaces_previous_token(self, db, citizen):
        first = accounts.issue_token(db, citizen, TokenType.PASSWORD_RESET)
        second = accounts.issue_token(db, citizen, TokenType.PASSWORD_RESET)
        assert not accounts.is_token_valid(db, first.token, TokenType.PASSWORD_RESET)
        assert accounts.is_token_valid(db, second.token, TokenType.PASSWORD_RESET)

    def test_token_types_do_not_mix(self, db, citizen):
        token = accounts.issue_token(db, citizen, TokenType.EMAIL_VERIFICATION)
        with pytest.raises(ValidationError):
            accounts.reset_password(db, token.token, "another-password")

    def test_password_reset_flow(self, db, citizen):
        _, token = accounts.request_password_reset(db, citizen.email)
        accounts.reset_password(db, token, "brand-new-pass")
        accounts.login(db, citizen.email, "brand-new-pass")
        with pytest.raises(Unauthorized):
            accounts.login(db, citizen.email, PASSWORD)
        assert not accounts.is_token_valid(db, token, TokenType.PASSWORD_RESET)

    def test_reset_for_unknown_email_is_silent(self, db):
        assert accounts.request_password_reset(db, "ghost@example.com") is None


class TestAdmin:
    def test_deactivate_and_reactivate(self, db, admin, citizen):
        user = accounts.set_user_active(db, principal(admin), citizen.id, "deactivate")
        assert user.is_active is False
        with pytest.raises(Forbidden, match="deactivated"):
            accounts.login(db, citizen.email, PASSWORD)
        accounts.set_user_active(db, principal(admin), citizen.id, "activate")
        accounts.login(db, citizen.email, PASSWORD)

    def test_admin_cannot_deactivate_self(self, db, admin):
        with pytest.raises(Forbidden, match="your own account"):
            accounts.set_user_active(db, principal(admin), admin.id, "deactivate")

    def test_admin_cannot_deactivate_other_admin(self, db, admin, make_user):
        other = make_user("admin")
        with pytest.raises(Forbidden, match="admin accounts"):
            accounts.set_user_active(db, principal(admin), other.id, "deactivate")

    def test_pending_volunteers_lists_verified_only(self, db, make_user):
        waiting = make_user("volunteer", is_approved=False)
        make_user("volunteer", is_approved=False, email_verified=False)
        make_user("volunteer")
        assert [u.id for u in accounts.pending_volunteers(db)] == [waiting.id]

    def test_approve_volunteer(self, db, admin, make_user):
        pending = make_user("volunteer", is_approved=False)
        user, message = accounts.decide_volunteer(db, principal(admin), pending.id, "approve")
        assert user.is_approved is True
        assert user.approved_by == admin.id
        assert "approved" in message
        accounts.login(db, pending.email, PASSWORD)

    def test_reject_volunteer_deletes_account(self, db, admin, make_user):
        pending = make_user("volunteer", is_approved=False)
        accounts.issue_token(db, pending, TokenType.EMAIL_VERIFICATION)
        accounts.decide_volunteer(db, principal(admin), pending.id, "reject")
        assert db[USERS].find_one({"_id": ObjectId(pending.id)}) is None
        assert db[TOKENS].count_documents({"user_id": pending.id}) == 0

    def test_decide_on_non_volunteer(self, db, admin, citizen):
        with pytest.raises(NotFound):
            accounts.decide_volunteer(db, principal(admin), citizen.id, "approve")
