"""Role-based read filters for listing service requests."""

from typing import Optional

from errors import ValidationError
from schemas import Principal, RequestStatus, RequestType, Role

ASSIGNED = "assigned"
ASSIGNMENT_STATUSES = {
    RequestStatus.ACCEPTED.value,
    RequestStatus.IN_PROGRESS.value,
    RequestStatus.COMPLETED.value,
}


def _check_filters(status: Optional[str], type_: Optional[str]) -> None:
    if status and status != ASSIGNED and status not in {s.value for s in RequestStatus}:
        raise ValidationError("Invalid status filter")
    if type_ and type_ not in {t.value for t in RequestType}:
        raise ValidationError("Invalid type filter")


def request_query(actor: Principal, status: Optional[str] = None, type_: Optional[str] = None) -> dict:
    """Build the Mongo filter for the requests ``actor`` may list.

    Citizens see their own requests. Volunteers see open, unassigned requests
    posted by others plus their own assignments; a status filter narrows that.
    Admins see everything. Soft-deleted requests are never listed.
    """
    _check_filters(status, type_)
    query = {"is_active": True}
    if type_:
        query["type"] = type_

    if actor.role == Role.CITIZEN:
        query["created_by"] = actor.id
        if status and status != ASSIGNED:
            query["status"] = status
    elif actor.role == Role.VOLUNTEER:
        if status == ASSIGNED:
            query["assigned_to"] = actor.id
        elif status in ASSIGNMENT_STATUSES:
            query["assigned_to"] = actor.id
            query["status"] = status
        elif status == RequestStatus.OPEN.value:
            query.update(_open_for(actor))
        else:
            query["$or"] = [_open_for(actor), {"assigned_to": actor.id}]
    elif actor.role == Role.ADMIN:
        if status == ASSIGNED:
            query["assigned_to"] = {"$ne": None}
        elif status:
            query["status"] = status
    return query


def _open_for(actor: Principal) -> dict:
    return {
        "status": RequestStatus.OPEN.value,
        "assigned_to": None,
        "created_by": {"$ne": actor.id},
    }
