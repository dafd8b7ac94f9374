"""Authorization predicates.

Each ``can_*`` function is a pure, total function of the caller and the
entity: it never raises and never touches storage. Callers evaluate them on
every mutating request, never caching a decision across requests.
"""

from typing import Optional, Tuple

from schemas import Feedback, Principal, RequestStatus, Role, ServiceRequest, User


def _is_admin(actor: Principal) -> bool:
    return actor.role == Role.ADMIN


def can_accept(actor: Principal, request: ServiceRequest) -> bool:
    return (
        actor.role == Role.VOLUNTEER
        and request.status == RequestStatus.OPEN
        and request.created_by != actor.id
    )


def can_edit(actor: Principal, request: ServiceRequest) -> bool:
    return request.created_by == actor.id


def can_update_status(actor: Principal, request: ServiceRequest) -> bool:
    return _is_admin(actor) or (
        request.assigned_to is not None and request.assigned_to == actor.id
    )


def can_delete(actor: Principal, request: ServiceRequest) -> bool:
    return _is_admin(actor) or (
        can_edit(actor, request) and request.status == RequestStatus.OPEN
    )


def can_view(actor: Principal, request: ServiceRequest) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if request.created_by == actor.id:
        return True
    if actor.role == Role.VOLUNTEER:
        return request.status == RequestStatus.OPEN or request.assigned_to == actor.id
    return False


def can_leave_feedback(actor: Principal, request: ServiceRequest) -> bool:
    return request.status == RequestStatus.COMPLETED and actor.id in (
        request.created_by,
        request.assigned_to,
    )


def can_delete_feedback(actor: Principal, feedback: Feedback) -> bool:
    return _is_admin(actor) or feedback.from_user == actor.id


def can_deactivate(actor: Principal, target: User) -> bool:
    """Admins may deactivate accounts, but never their own or another admin's."""
    if not _is_admin(actor):
        return False
    if target.id == actor.id:
        return False
    return target.role != Role.ADMIN


def can_login(user: User) -> Tuple[bool, Optional[str]]:
    if not user.is_active:
        return False, "Account is deactivated"
    if not user.email_verified:
        return False, "Email not verified"
    if user.role == Role.VOLUNTEER and not user.is_approved:
        return False, "Account pending admin approval"
    return True, None
