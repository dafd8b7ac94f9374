"""Service request operations: load, check, transition, persist.

Every mutation re-reads the request, re-evaluates the lifecycle rules for the
caller and writes with a filter on the state it observed, so a write that
lost a race matches nothing and surfaces as ``Conflict``.
"""

import math
from typing import List, Optional

import structlog
from bson import ObjectId
from pymongo.database import Database

import lifecycle
import permissions
from database import REQUESTS, USERS, create_document, get_documents, object_id
from errors import Conflict, Forbidden, NotFound
from images import purge_images, upload_images
from schemas import Principal, RequestCreate, RequestEdit, RequestStatus, Role, ServiceRequest
from visibility import request_query

logger = structlog.get_logger(__name__)

PROFILE_FIELDS = {"first_name": 1, "last_name": 1, "email": 1, "phone": 1}
MAX_PAGE_SIZE = 100


def load_request(db: Database, request_id: str, include_inactive: bool = False) -> ServiceRequest:
    doc = db[REQUESTS].find_one({"_id": object_id(request_id, "request id")})
    if not doc or (not doc.get("is_active", True) and not include_inactive):
        raise NotFound("Request not found")
    return ServiceRequest.from_document(doc)


def _profiles(db: Database, user_ids) -> dict:
    ids = [ObjectId(uid) for uid in user_ids if uid and ObjectId.is_valid(uid)]
    if not ids:
        return {}
    profiles = {}
    for doc in db[USERS].find({"_id": {"$in": ids}}, PROFILE_FIELDS):
        uid = str(doc["_id"])
        profiles[uid] = {
            "id": uid,
            "first_name": doc.get("first_name"),
            "last_name": doc.get("last_name"),
            "email": doc.get("email"),
            "phone": doc.get("phone"),
        }
    return profiles


def present(db: Database, requests: List[ServiceRequest]) -> List[dict]:
    """Serialize requests with the creator's and assignee's public profile."""
    user_ids = {r.created_by for r in requests} | {r.assigned_to for r in requests if r.assigned_to}
    profiles = _profiles(db, user_ids)
    out = []
    for request in requests:
        data = request.model_dump(mode="json")
        data["creator"] = profiles.get(request.created_by)
        data["assignee"] = profiles.get(request.assigned_to) if request.assigned_to else None
        out.append(data)
    return out


def create_request(db: Database, storage, actor: Principal, payload: RequestCreate) -> ServiceRequest:
    request = lifecycle.new_request(actor, payload)
    lifecycle.ensure_image_capacity(len(payload.images))
    if payload.images:
        request.images = upload_images(storage, payload.images)
        if len(request.images) < len(payload.images):
            logger.warning(
                "request.images_partially_uploaded",
                requested=len(payload.images),
                uploaded=len(request.images),
            )
    request.id = create_document(db, REQUESTS, request)
    logger.info("request.created", request_id=request.id, created_by=actor.id, type=request.type)
    return request


def list_requests(
    db: Database,
    actor: Principal,
    status: Optional[str] = None,
    type_: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
):
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    query = request_query(actor, status, type_)
    docs = get_documents(db, REQUESTS, query, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    total = db[REQUESTS].count_documents(query)
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit),
    }
    return [ServiceRequest.from_document(doc) for doc in docs], pagination


def get_request(db: Database, actor: Principal, request_id: str) -> ServiceRequest:
    request = load_request(db, request_id, include_inactive=actor.role == Role.ADMIN)
    if not permissions.can_view(actor, request):
        raise Forbidden("Access denied")
    return request


def claim_open_request(db: Database, request_id: str, changes: dict) -> bool:
    """Apply an accept only if the request is still open and unassigned."""
    result = db[REQUESTS].update_one(
        {
            "_id": ObjectId(request_id),
            "status": RequestStatus.OPEN.value,
            "assigned_to": None,
            "is_active": True,
        },
        {"$set": changes},
    )
    return result.matched_count == 1


def accept_request(db: Database, actor: Principal, request_id: str) -> ServiceRequest:
    request = load_request(db, request_id)
    changes = lifecycle.accept(actor, request)
    if not claim_open_request(db, request.id, changes):
        logger.info("request.accept_lost_race", request_id=request.id, volunteer_id=actor.id)
        raise Conflict("Request is not available for acceptance")
    logger.info("request.accepted", request_id=request.id, volunteer_id=actor.id)
    return load_request(db, request.id)


def update_status(db: Database, actor: Principal, request_id: str, target: str) -> ServiceRequest:
    request = load_request(db, request_id)
    changes = lifecycle.advance_status(actor, request, target)
    result = db[REQUESTS].update_one(
        {"_id": ObjectId(request.id), "status": request.status, "is_active": True},
        {"$set": changes},
    )
    if result.matched_count == 0:
        raise Conflict("Request status changed, please reload and retry")
    logger.info(
        "request.status_changed",
        request_id=request.id,
        from_status=request.status,
        to_status=changes["status"],
        actor_id=actor.id,
    )
    return load_request(db, request.id)


def apply_edit(db: Database, request: ServiceRequest, changes: dict) -> bool:
    """Write an edit only if the request is still open and holds the images it was computed from."""
    query = {
        "_id": ObjectId(request.id),
        "status": RequestStatus.OPEN.value,
        "is_active": True,
        "images": {"$size": len(request.images)},
    }
    if request.images:
        query["images.storage_key"] = {"$all": [image.storage_key for image in request.images]}
    result = db[REQUESTS].update_one(query, {"$set": changes})
    return result.matched_count == 1


def edit_request(db: Database, storage, actor: Principal, request_id: str, payload: RequestEdit) -> ServiceRequest:
    request = load_request(db, request_id)
    lifecycle.ensure_editable(actor, request)
    kept, released = lifecycle.split_images(request, payload.existing_images, len(payload.images))
    uploaded = upload_images(storage, payload.images) if payload.images else []
    changes = lifecycle.edit(actor, request, payload, kept + uploaded)

    if not apply_edit(db, request, changes):
        purge_images(storage, uploaded)
        raise Conflict("Request changed while editing, please reload and retry")
    if released:
        purge_images(storage, released)
    logger.info("request.edited", request_id=request.id, released_images=len(released), new_images=len(uploaded))
    return load_request(db, request.id)


def delete_request(db: Database, storage, actor: Principal, request_id: str) -> None:
    request = load_request(db, request_id)
    changes = lifecycle.soft_delete(actor, request)
    query = {"_id": ObjectId(request.id), "is_active": True}
    if actor.role != Role.ADMIN:
        query["status"] = RequestStatus.OPEN.value
    result = db[REQUESTS].update_one(query, {"$set": changes})
    if result.matched_count == 0:
        raise Conflict("Request can no longer be deleted")
    if request.images:
        purge_images(storage, request.images)
    logger.info("request.deleted", request_id=request.id, actor_id=actor.id)
