"""Tests for lifecycle transitions."""

from datetime import datetime, timezone

import pytest
from bson import ObjectId

import lifecycle
from errors import Conflict, Forbidden, ValidationError
from schemas import (
    ExistingImage,
    Principal,
    RequestCreate,
    RequestEdit,
    RequestImage,
    RequestStatus,
    Role,
    ServiceRequest,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

CITIZEN = Principal(id=str(ObjectId()), role=Role.CITIZEN, email="citizen@example.com")
VOLUNTEER = Principal(id=str(ObjectId()), role=Role.VOLUNTEER)
OTHER_VOLUNTEER = Principal(id=str(ObjectId()), role=Role.VOLUNTEER)
ADMIN = Principal(id=str(ObjectId()), role=Role.ADMIN)


def image(key):
    return RequestImage(url=f"https://cdn.example.com/{key}", storage_key=key)


def open_request(**fields):
    data = {
        "title": "Need blood",
        "description": "O+ donor needed",
        "type": "blood",
        "location": "City hospital",
        "created_by": CITIZEN.id,
    }
    data.update(fields)
    return ServiceRequest(**data)


def accepted_request(**fields):
    data = {"status": "accepted", "assigned_to": VOLUNTEER.id}
    data.update(fields)
    return open_request(**data)


class TestNewRequest:
    def test_citizen_creates_open_unassigned_request(self):
        payload = RequestCreate(title="Need blood", description="O+", type="blood", location="Hospital")
        request = lifecycle.new_request(CITIZEN, payload, now=NOW)

        assert request.status == RequestStatus.OPEN
        assert request.created_by == CITIZEN.id
        assert request.assigned_to is None
        assert request.priority == "medium"
        assert request.contact_info.email == "citizen@example.com"
        assert request.created_at == NOW

    @pytest.mark.parametrize("actor", [VOLUNTEER, ADMIN])
    def test_only_citizens_create(self, actor):
        payload = RequestCreate(title="t", description="d", type="other", location="l")
        with pytest.raises(Forbidden):
            lifecycle.new_request(actor, payload)

    def test_image_cap(self):
        payload = RequestCreate(title="t", description="d", type="other", location="l")
        with pytest.raises(ValidationError, match="Maximum 5 images"):
            lifecycle.new_request(CITIZEN, payload, images=[image(str(i)) for i in range(6)])


class TestAccept:
    def test_accept_assigns_volunteer(self):
        changes = lifecycle.accept(VOLUNTEER, open_request(), now=NOW)
        assert changes == {
            "status": "accepted",
            "assigned_to": VOLUNTEER.id,
            "accepted_at": NOW,
            "updated_at": NOW,
        }

    @pytest.mark.parametrize("status", ["accepted", "in_progress", "completed"])
    def test_not_open_is_conflict_for_every_volunteer(self, status):
        request = open_request(status=status, assigned_to=VOLUNTEER.id)
        for actor in (VOLUNTEER, OTHER_VOLUNTEER):
            with pytest.raises(Conflict, match="not available"):
                lifecycle.accept(actor, request)

    @pytest.mark.parametrize("status", ["open", "accepted", "completed"])
    def test_owner_citizen_is_forbidden_in_any_status(self, status):
        with pytest.raises(Forbidden):
            lifecycle.accept(CITIZEN, open_request(status=status))

    def test_self_accept_forbidden(self):
        with pytest.raises(Forbidden, match="your own request"):
            lifecycle.accept(VOLUNTEER, open_request(created_by=VOLUNTEER.id))


class TestAdvanceStatus:
    def test_assignee_moves_forward(self):
        changes = lifecycle.advance_status(VOLUNTEER, accepted_request(), "in_progress", now=NOW)
        assert changes == {"status": "in_progress", "updated_at": NOW}

    def test_completion_stamps_completed_at(self):
        request = accepted_request()
        changes = lifecycle.advance_status(VOLUNTEER, request, "completed", now=NOW)
        assert changes["status"] == "completed"
        assert changes["completed_at"] == NOW

    def test_admin_may_advance(self):
        changes = lifecycle.advance_status(ADMIN, accepted_request(), "completed", now=NOW)
        assert changes["status"] == "completed"

    def test_unrelated_volunteer_forbidden(self):
        with pytest.raises(Forbidden):
            lifecycle.advance_status(OTHER_VOLUNTEER, accepted_request(), "in_progress")

    @pytest.mark.parametrize("target", ["open", "accepted", "cancelled", ""])
    def test_target_outside_allowed_set(self, target):
        with pytest.raises(ValidationError, match="Invalid status"):
            lifecycle.advance_status(VOLUNTEER, accepted_request(), target)

    def test_never_moves_backward(self):
        request = accepted_request(status="completed")
        with pytest.raises(Conflict):
            lifecycle.advance_status(VOLUNTEER, request, "in_progress")
        with pytest.raises(Conflict):
            lifecycle.advance_status(ADMIN, request, "completed")

    def test_admin_cannot_advance_open_request(self):
        with pytest.raises(Conflict, match="not been accepted"):
            lifecycle.advance_status(ADMIN, open_request(), "in_progress")


class TestEdit:
    def test_owner_edits_open_request(self):
        payload = RequestEdit(title="New title", priority="urgent")
        changes = lifecycle.edit(CITIZEN, open_request(), payload, images=[], now=NOW)
        assert changes["title"] == "New title"
        assert changes["priority"] == "urgent"
        assert "description" not in changes
        assert changes["images"] == []
        assert changes["updated_at"] == NOW

    def test_non_owner_forbidden(self):
        with pytest.raises(Forbidden):
            lifecycle.edit(VOLUNTEER, open_request(), RequestEdit(title="x"), images=[])

    @pytest.mark.parametrize("status", ["accepted", "in_progress", "completed"])
    def test_owner_conflict_once_not_open(self, status):
        request = accepted_request(status=status)
        with pytest.raises(Conflict):
            lifecycle.edit(CITIZEN, request, RequestEdit(title="new"), images=[])


class TestSplitImages:
    def test_none_keeps_everything(self):
        request = open_request(images=[image("a"), image("b")])
        kept, released = lifecycle.split_images(request, None)
        assert [i.storage_key for i in kept] == ["a", "b"]
        assert released == []

    def test_prunes_images_not_listed(self):
        request = open_request(images=[image("a"), image("b"), image("c")])
        kept, released = lifecycle.split_images(request, [ExistingImage(storage_key="b")])
        assert [i.storage_key for i in kept] == ["b"]
        assert [i.storage_key for i in released] == ["a", "c"]

    def test_unknown_keys_are_ignored(self):
        request = open_request(images=[image("a")])
        kept, _ = lifecycle.split_images(request, [ExistingImage(storage_key="elsewhere")])
        assert kept == []

    def test_total_capped_at_five(self):
        request = open_request(images=[image(str(i)) for i in range(4)])
        with pytest.raises(ValidationError):
            lifecycle.split_images(request, None, new_count=2)


class TestSoftDelete:
    def test_owner_deletes_open(self):
        assert lifecycle.soft_delete(CITIZEN, open_request(), now=NOW) == {"is_active": False, "updated_at": NOW}

    def test_owner_cannot_delete_accepted(self):
        with pytest.raises(Forbidden):
            lifecycle.soft_delete(CITIZEN, accepted_request())

    def test_admin_deletes_accepted(self):
        assert lifecycle.soft_delete(ADMIN, accepted_request())["is_active"] is False
