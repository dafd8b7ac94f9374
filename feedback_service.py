"""Ratings left on completed requests."""

from datetime import datetime, timezone

import structlog
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import permissions
from database import FEEDBACK, REQUESTS, USERS, create_document, get_documents, object_id
from errors import Conflict, Forbidden, NotFound, ValidationError
from requests_service import load_request
from schemas import Feedback, FeedbackCreate, Principal

logger = structlog.get_logger(__name__)

DUPLICATE_MESSAGE = "Feedback already exists for this request"


def _counterpart(actor: Principal, request) -> str:
    return request.assigned_to if actor.id == request.created_by else request.created_by


def create_feedback(db: Database, actor: Principal, payload: FeedbackCreate) -> Feedback:
    request = load_request(db, payload.request_id)
    if actor.id not in (request.created_by, request.assigned_to):
        raise Forbidden("Not authorized to leave feedback for this request")
    if not permissions.can_leave_feedback(actor, request):
        raise Conflict("Can only leave feedback for completed requests")

    to_user = _counterpart(actor, request)
    if payload.to_user_id and payload.to_user_id != to_user:
        raise ValidationError("Feedback can only be left for the other party on the request")
    if not to_user or to_user == actor.id:
        raise ValidationError("Cannot leave feedback for yourself")

    if db[FEEDBACK].find_one({"request_id": request.id, "from_user": actor.id}):
        raise Conflict(DUPLICATE_MESSAGE)

    feedback = Feedback(
        request_id=request.id,
        from_user=actor.id,
        to_user=to_user,
        rating=payload.rating,
        comment=payload.comment or None,
        is_public=payload.is_public,
        created_at=datetime.now(timezone.utc),
    )
    try:
        feedback.id = create_document(db, FEEDBACK, feedback)
    except DuplicateKeyError:
        raise Conflict(DUPLICATE_MESSAGE) from None
    logger.info("feedback.created", feedback_id=feedback.id, request_id=request.id, rating=feedback.rating)
    return feedback


def _names(db: Database, user_ids) -> dict:
    ids = [ObjectId(uid) for uid in user_ids if uid and ObjectId.is_valid(uid)]
    if not ids:
        return {}
    docs = db[USERS].find({"_id": {"$in": ids}}, {"first_name": 1, "last_name": 1})
    return {str(d["_id"]): f"{d.get('first_name', '')} {d.get('last_name', '')}".strip() for d in docs}


def _titles(db: Database, request_ids) -> dict:
    ids = [ObjectId(rid) for rid in request_ids if rid and ObjectId.is_valid(rid)]
    if not ids:
        return {}
    docs = db[REQUESTS].find({"_id": {"$in": ids}}, {"title": 1, "type": 1})
    return {str(d["_id"]): {"title": d.get("title"), "type": d.get("type")} for d in docs}


def present(db: Database, items) -> list:
    names = _names(db, {f.from_user for f in items} | {f.to_user for f in items})
    titles = _titles(db, {f.request_id for f in items})
    out = []
    for item in items:
        data = item.model_dump(mode="json")
        data["from_user_name"] = names.get(item.from_user)
        data["to_user_name"] = names.get(item.to_user)
        data["request"] = titles.get(item.request_id)
        out.append(data)
    return out


def request_feedback(db: Database, request_id: str) -> list:
    object_id(request_id, "request id")
    docs = get_documents(db, FEEDBACK, {"request_id": request_id, "is_active": True}, sort=[("created_at", -1)])
    return [Feedback.from_document(doc) for doc in docs]


def user_feedback(db: Database, user_id: str, limit: int = 20) -> list:
    object_id(user_id, "user id")
    docs = get_documents(
        db,
        FEEDBACK,
        {"to_user": user_id, "is_active": True, "is_public": True},
        limit=limit,
        sort=[("created_at", -1)],
    )
    return [Feedback.from_document(doc) for doc in docs]


def rating_stats(db: Database, user_id: str) -> dict:
    ratings = [
        doc["rating"]
        for doc in db[FEEDBACK].find({"to_user": user_id, "is_active": True, "is_public": True}, {"rating": 1})
    ]
    distribution = {str(star): 0 for star in range(1, 6)}
    for rating in ratings:
        distribution[str(rating)] += 1
    average = round(sum(ratings) / len(ratings), 1) if ratings else 0
    return {
        "average_rating": average,
        "total_feedbacks": len(ratings),
        "rating_distribution": distribution,
    }


def given_feedback(db: Database, actor: Principal, limit: int = 10) -> list:
    docs = get_documents(
        db, FEEDBACK, {"from_user": actor.id, "is_active": True}, limit=limit, sort=[("created_at", -1)]
    )
    return [Feedback.from_document(doc) for doc in docs]


def delete_feedback(db: Database, actor: Principal, feedback_id: str) -> None:
    doc = db[FEEDBACK].find_one({"_id": object_id(feedback_id, "feedback id"), "is_active": True})
    if not doc:
        raise NotFound("Feedback not found")
    feedback = Feedback.from_document(doc)
    if not permissions.can_delete_feedback(actor, feedback):
        raise Forbidden("Not authorized to delete this feedback")
    db[FEEDBACK].update_one({"_id": doc["_id"]}, {"$set": {"is_active": False}})
    logger.info("feedback.deleted", feedback_id=feedback.id, actor_id=actor.id)
