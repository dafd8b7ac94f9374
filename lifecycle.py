"""Service request lifecycle: open -> accepted -> in_progress -> completed.

The machine is linear and one-way. There is no cancellation and no path back
to ``open``. Transition functions are pure: they check the caller and the
current state, then return the field changes to persist. Persisting them
(conditionally, where two callers can race) is the caller's job.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple

import permissions
from errors import Conflict, Forbidden, ValidationError
from schemas import (
    ContactInfo,
    ExistingImage,
    MAX_IMAGES,
    Principal,
    RequestCreate,
    RequestEdit,
    RequestImage,
    RequestStatus,
    Role,
    ServiceRequest,
)

ADVANCE_TARGETS = (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED)
EDITABLE_FIELDS = {"title", "description", "type", "location", "priority"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_image_capacity(count: int) -> None:
    if count > MAX_IMAGES:
        raise ValidationError(f"Maximum {MAX_IMAGES} images allowed")


def new_request(
    actor: Principal,
    payload: RequestCreate,
    images: Optional[List[RequestImage]] = None,
    now: Optional[datetime] = None,
) -> ServiceRequest:
    if actor.role != Role.CITIZEN:
        raise Forbidden("Only citizens can create service requests")
    images = images or []
    ensure_image_capacity(len(images))
    now = now or _utcnow()

    contact = payload.contact_info
    contact_info = ContactInfo(
        phone=contact.phone if contact else None,
        email=str(contact.email).lower() if contact and contact.email else actor.email or None,
        preferred_contact=contact.preferred_contact if contact else "both",
    )
    return ServiceRequest(
        title=payload.title,
        description=payload.description,
        type=payload.type,
        location=payload.location,
        priority=payload.priority,
        status=RequestStatus.OPEN,
        created_by=actor.id,
        assigned_to=None,
        images=images,
        contact_info=contact_info,
        created_at=now,
        updated_at=now,
    )


def accept(actor: Principal, request: ServiceRequest, now: Optional[datetime] = None) -> dict:
    if actor.role != Role.VOLUNTEER:
        raise Forbidden("Only volunteers can accept requests")
    if request.created_by == actor.id:
        raise Forbidden("Cannot accept your own request")
    if not permissions.can_accept(actor, request) or request.assigned_to is not None:
        raise Conflict("Request is not available for acceptance")
    now = now or _utcnow()
    return {
        "status": RequestStatus.ACCEPTED.value,
        "assigned_to": actor.id,
        "accepted_at": now,
        "updated_at": now,
    }


def advance_status(
    actor: Principal,
    request: ServiceRequest,
    target: str,
    now: Optional[datetime] = None,
) -> dict:
    if not permissions.can_update_status(actor, request):
        raise Forbidden("Not authorized to update this request status")
    try:
        target_status = RequestStatus(target)
    except ValueError:
        raise ValidationError("Invalid status") from None
    if target_status not in ADVANCE_TARGETS:
        raise ValidationError("Invalid status")

    current = RequestStatus(request.status)
    if current == RequestStatus.OPEN or request.assigned_to is None:
        raise Conflict("Request has not been accepted yet")
    if target_status.rank <= current.rank:
        raise Conflict(f"Cannot move request from {current.value} to {target_status.value}")

    now = now or _utcnow()
    changes = {"status": target_status.value, "updated_at": now}
    if target_status == RequestStatus.COMPLETED:
        changes["completed_at"] = now
    return changes


def ensure_editable(actor: Principal, request: ServiceRequest) -> None:
    if not permissions.can_edit(actor, request):
        raise Forbidden("Not authorized to edit this request")
    if request.status != RequestStatus.OPEN:
        raise Conflict("Cannot edit request that has been accepted")


def split_images(
    request: ServiceRequest,
    keep: Optional[List[ExistingImage]],
    new_count: int = 0,
) -> Tuple[List[RequestImage], List[RequestImage]]:
    """Return (kept, released) images for an edit.

    ``keep`` is the caller's list of current images to retain; ``None`` keeps
    all of them. Entries that do not match a current image are ignored.
    """
    if keep is None:
        kept = list(request.images)
    else:
        wanted = {image.storage_key for image in keep}
        kept = [image for image in request.images if image.storage_key in wanted]
    kept_keys = {image.storage_key for image in kept}
    released = [image for image in request.images if image.storage_key not in kept_keys]
    ensure_image_capacity(len(kept) + new_count)
    return kept, released


def edit(
    actor: Principal,
    request: ServiceRequest,
    payload: RequestEdit,
    images: List[RequestImage],
    now: Optional[datetime] = None,
) -> dict:
    ensure_editable(actor, request)
    ensure_image_capacity(len(images))

    changes = payload.model_dump(mode="json", include=EDITABLE_FIELDS, exclude_none=True)
    if payload.contact_info is not None:
        contact = payload.contact_info
        changes["contact_info"] = ContactInfo(
            phone=contact.phone,
            email=str(contact.email).lower() if contact.email else None,
            preferred_contact=contact.preferred_contact,
        ).model_dump()
    changes["images"] = [image.model_dump() for image in images]
    changes["updated_at"] = now or _utcnow()
    return changes


def soft_delete(actor: Principal, request: ServiceRequest, now: Optional[datetime] = None) -> dict:
    if not permissions.can_delete(actor, request):
        raise Forbidden("Not authorized to delete this request")
    return {"is_active": False, "updated_at": now or _utcnow()}
