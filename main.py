from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import BackgroundTasks, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import feedback_service
import impact
import requests_service
import settings
from database import connect, ensure_indexes, get_db
from errors import AppError, Forbidden, ValidationError
from images import create_storage, get_image_storage
from log_setup import configure_logging
from mailer import create_mailer, get_mailer
from schemas import (
    ContactMessage,
    FeedbackCreate,
    ForgotPasswordRequest,
    LoginRequest,
    Principal,
    RegisterRequest,
    RequestCreate,
    RequestEdit,
    ResetPasswordRequest,
    Role,
    StatusUpdate,
    TokenType,
    UserAction,
    UserStatusCheck,
    VerifyEmailRequest,
    VolunteerDecision,
)
from security import require_admin, verify_token

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(json_logs=settings.LOG_JSON, log_level=settings.LOG_LEVEL)
    client, db = connect(settings.DATABASE_URL, settings.DATABASE_NAME)
    app.state.db = db
    app.state.image_storage = create_storage()
    app.state.mailer = create_mailer()
    try:
        ensure_indexes(db)
    except PyMongoError as exc:
        logger.error("database.index_setup_failed", error=str(exc))
    yield
    client.close()


app = FastAPI(title=f"{settings.APP_NAME} API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error handling ----------

def _validation_message(errors) -> str:
    parts = []
    for error in errors:
        loc = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return ", ".join(parts) or "Invalid input"


def parse(model, data):
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_validation_message(exc.errors())) from None


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("request.failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _validation_message(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("request.unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---------- Basic routes ----------

@app.get("/")
def root():
    return {"message": f"{settings.APP_NAME} API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    info = {
        "backend": "running",
        "database": "disconnected",
        "collections": [],
    }
    try:
        info["collections"] = db.list_collection_names()[:10]
        info["database"] = "connected"
    except PyMongoError as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


# ---------- Auth endpoints ----------

@app.post("/auth/register", status_code=201)
def register(
    req: RegisterRequest,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    mailer=Depends(get_mailer),
):
    user, token = accounts.register(db, req)
    background_tasks.add_task(mailer.send_verification, user.email, user.first_name, token)
    if user.role == Role.VOLUNTEER:
        background_tasks.add_task(mailer.send_volunteer_notice, user.public())
    return {
        "message": "Registration successful! Please check your email to verify your account.",
        "user": user.public(),
    }


@app.post("/auth/login")
def login(req: LoginRequest, db: Database = Depends(get_db)):
    user, token = accounts.login(db, str(req.email), req.password)
    return {"token": token, "user": user.public()}


@app.post("/auth/check-user-status")
def check_user_status(req: UserStatusCheck, db: Database = Depends(get_db)):
    return accounts.check_user_status(db, str(req.email), req.password)


@app.post("/auth/verify-email")
def verify_email(req: VerifyEmailRequest, db: Database = Depends(get_db)):
    user = accounts.verify_email(db, req.token)
    return {"message": "Email verified successfully!", "user": user.public()}


@app.get("/auth/verify-email")
def verify_email_link(token: Optional[str] = None, db: Database = Depends(get_db)):
    login_url = f"{settings.APP_URL.rstrip('/')}/login"
    if not token:
        return RedirectResponse(f"{login_url}?error=missing-token")
    try:
        accounts.verify_email(db, token)
    except ValidationError:
        return RedirectResponse(f"{login_url}?error=invalid-token")
    return RedirectResponse(f"{login_url}?verified=true")


@app.post("/auth/forgot-password")
def forgot_password(
    req: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    mailer=Depends(get_mailer),
):
    issued = accounts.request_password_reset(db, str(req.email))
    if issued:
        user, token = issued
        background_tasks.add_task(mailer.send_password_reset, user.email, user.first_name, token)
    return {"message": "If an account with that email exists, we have sent a password reset link."}


@app.post("/auth/reset-password")
def reset_password(req: ResetPasswordRequest, db: Database = Depends(get_db)):
    accounts.reset_password(db, req.token, req.password)
    return {"message": "Password reset successfully! You can now log in with your new password."}


@app.get("/auth/reset-password")
def check_reset_token(token: Optional[str] = None, db: Database = Depends(get_db)):
    if not token:
        raise ValidationError("Token is required")
    return {"valid": accounts.is_token_valid(db, token, TokenType.PASSWORD_RESET)}


@app.get("/me")
def me(user: Principal = Depends(verify_token)):
    return user.model_dump(mode="json")


# ---------- Request endpoints ----------

def _one(db: Database, request) -> dict:
    return requests_service.present(db, [request])[0]


@app.post("/requests", status_code=201)
def create_request(
    payload: RequestCreate,
    user: Principal = Depends(verify_token),
    db: Database = Depends(get_db),
    storage=Depends(get_image_storage),
):
    request = requests_service.create_request(db, storage, user, payload)
    return {"message": "Request created successfully", "request": _one(db, request)}


@app.get("/requests")
def list_requests(
    status: Optional[str] = None,
    type_: Optional[str] = Query(None, alias="type"),
    page: int = 1,
    limit: int = 20,
    user: Principal = Depends(verify_token),
    db: Database = Depends(get_db),
):
    items, pagination = requests_service.list_requests(db, user, status, type_, page, limit)
    return {"requests": requests_service.present(db, items), "pagination": pagination}


@app.get("/requests/{request_id}")
def get_request(request_id: str, user: Principal = Depends(verify_token), db: Database = Depends(get_db)):
    request = requests_service.get_request(db, user, request_id)
    return {"request": _one(db, request)}


@app.put("/requests/{request_id}")
def update_request(
    request_id: str,
    body: dict = Body(...),
    user: Principal = Depends(verify_token),
    db: Database = Depends(get_db),
    storage=Depends(get_image_storage),
):
    body = dict(body)
    action = body.pop("action", None)
    if action == "accept":
        request = requests_service.accept_request(db, user, request_id)
    elif action == "update_status":
        update = parse(StatusUpdate, body)
        request = requests_service.update_status(db, user, request_id, update.status)
    elif action is None:
        edit = parse(RequestEdit, body)
        request = requests_service.edit_request(db, storage, user, request_id, edit)
    else:
        raise ValidationError("Invalid action")
    return {"message": "Request updated successfully", "request": _one(db, request)}


@app.delete("/requests/{request_id}")
def delete_request(
    request_id: str,
    user: Principal = Depends(verify_token),
    db: Database = Depends(get_db),
    storage=Depends(get_image_storage),
):
    requests_service.delete_request(db, storage, user, request_id)
    return {"message": "Request deleted successfully"}


# ---------- Feedback endpoints ----------

@app.post("/feedback", status_code=201)
def create_feedback(payload: FeedbackCreate, user: Principal = Depends(verify_token), db: Database = Depends(get_db)):
    feedback = feedback_service.create_feedback(db, user, payload)
    return {
        "message": "Feedback submitted successfully",
        "feedback": feedback_service.present(db, [feedback])[0],
    }


@app.get("/feedback")
def list_feedback(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 10,
    user: Principal = Depends(verify_token),
    db: Database = Depends(get_db),
):
    limit = min(max(limit, 1), 100)
    if request_id:
        items = feedback_service.request_feedback(db, request_id)
        return {"feedback": feedback_service.present(db, items)}
    if user_id:
        items = feedback_service.user_feedback(db, user_id, limit)
        return {
            "feedback": feedback_service.present(db, items),
            "stats": feedback_service.rating_stats(db, user_id),
        }
    items = feedback_service.given_feedback(db, user, limit)
    return {"feedback": feedback_service.present(db, items)}


@app.delete("/feedback/{feedback_id}")
def delete_feedback(feedback_id: str, user: Principal = Depends(verify_token), db: Database = Depends(get_db)):
    feedback_service.delete_feedback(db, user, feedback_id)
    return {"message": "Feedback deleted successfully"}


# ---------- Volunteer endpoints ----------

@app.get("/volunteer/impact")
def volunteer_impact(user: Principal = Depends(verify_token), db: Database = Depends(get_db)):
    if user.role != Role.VOLUNTEER:
        raise Forbidden("Only volunteers can access impact data")
    return impact.volunteer_impact(db, user)


# ---------- Admin endpoints ----------

@app.get("/admin/users")
def admin_list_users(admin: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    users = accounts.list_users(db)
    return {"users": [u.public() for u in users], "total": len(users)}


@app.patch("/admin/users")
def admin_update_user(body: UserAction, admin: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    user = accounts.set_user_active(db, admin, body.user_id, body.action)
    return {"message": f"User {body.action}d successfully", "user": user.public()}


@app.get("/admin/volunteers")
def admin_pending_volunteers(admin: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    return {"volunteers": [u.public() for u in accounts.pending_volunteers(db)]}


@app.post("/admin/volunteers")
def admin_decide_volunteer(
    body: VolunteerDecision,
    admin: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    volunteer, message = accounts.decide_volunteer(db, admin, body.volunteer_id, body.action)
    response = {"message": message}
    if body.action == "approve":
        response["volunteer"] = volunteer.public()
    return response


# ---------- Contact ----------

@app.post("/contact")
def contact(req: ContactMessage, background_tasks: BackgroundTasks, mailer=Depends(get_mailer)):
    background_tasks.add_task(
        mailer.send_contact, req.name, str(req.email), req.subject, req.message, req.phone
    )
    return {"message": "Message sent successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
