"""
Database Schemas for ConnectAid

Each Pydantic model represents a MongoDB collection.
User -> "user", ServiceRequest -> "request", Feedback -> "feedback",
VerificationToken -> "verification_token".
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

MAX_IMAGES = 5


class Role(str, Enum):
    ADMIN = "admin"
    VOLUNTEER = "volunteer"
    CITIZEN = "citizen"


class RequestStatus(str, Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self)


STATUS_ORDER = [
    RequestStatus.OPEN,
    RequestStatus.ACCEPTED,
    RequestStatus.IN_PROGRESS,
    RequestStatus.COMPLETED,
]


class RequestType(str, Enum):
    BLOOD = "blood"
    GARBAGE = "garbage"
    OTHER = "other"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class PreferredContact(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    BOTH = "both"


class TokenType(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class Document(BaseModel):
    """Base for stored models: ``_id`` is exposed as a hex string ``id``."""

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: dict):
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def to_document(self) -> dict:
        return self.model_dump(exclude={"id"})


# ---------- Identity ----------

class Principal(BaseModel):
    """The caller as resolved from the session token."""

    id: str
    role: Role
    email: str = ""
    email_verified: bool = True
    is_approved: bool = True


class User(Document):
    first_name: str = Field(..., max_length=50)
    last_name: str = Field(..., max_length=50)
    email: str = Field(..., description="Lowercased, unique")
    password_hash: str
    phone: Optional[str] = Field(None, max_length=20)
    location: Optional[str] = Field(None, max_length=100)
    role: Role = Role.CITIZEN
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    is_approved: bool = True
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def public(self) -> dict:
        data = self.model_dump(mode="json", exclude={"password_hash"})
        data["full_name"] = self.full_name
        return data


# ---------- Requests ----------

class RequestImage(BaseModel):
    url: str
    storage_key: str
    uploaded_at: Optional[datetime] = None


class ContactInfo(BaseModel):
    model_config = ConfigDict(use_enum_values=True, str_strip_whitespace=True)

    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = None
    preferred_contact: PreferredContact = PreferredContact.BOTH


class ServiceRequest(Document):
    title: str = Field(..., max_length=100)
    description: str = Field(..., max_length=1000)
    type: RequestType
    location: str = Field(..., max_length=200)
    priority: Priority = Priority.MEDIUM
    status: RequestStatus = RequestStatus.OPEN
    created_by: str
    assigned_to: Optional[str] = None
    images: List[RequestImage] = Field(default_factory=list, max_length=MAX_IMAGES)
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Feedback(Document):
    request_id: str
    from_user: str
    to_user: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    is_public: bool = True
    is_active: bool = True
    created_at: Optional[datetime] = None


class VerificationToken(Document):
    user_id: str
    email: str
    token: str
    type: TokenType
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ---------- Request bodies ----------

class ContactInfoIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None
    preferred_contact: PreferredContact = PreferredContact.BOTH


class RequestCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    type: RequestType
    location: str = Field(..., min_length=1, max_length=200)
    priority: Priority = Priority.MEDIUM
    contact_info: Optional[ContactInfoIn] = None
    images: List[str] = Field(default_factory=list, description="Base64 data URLs")


class ExistingImage(BaseModel):
    storage_key: str
    url: Optional[str] = None


class RequestEdit(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    type: Optional[RequestType] = None
    location: Optional[str] = Field(None, min_length=1, max_length=200)
    priority: Optional[Priority] = None
    contact_info: Optional[ContactInfoIn] = None
    images: List[str] = Field(default_factory=list, description="New base64 uploads")
    existing_images: Optional[List[ExistingImage]] = Field(
        None, description="Images to keep; omitted keeps all current images"
    )


class StatusUpdate(BaseModel):
    status: str


class FeedbackCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    request_id: str
    to_user_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    is_public: bool = True


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, max_length=20)
    location: Optional[str] = Field(None, max_length=100)
    user_type: Literal["citizen", "volunteer"] = "citizen"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserStatusCheck(BaseModel):
    email: EmailStr
    password: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class UserAction(BaseModel):
    user_id: str
    action: Literal["activate", "deactivate"]


class VolunteerDecision(BaseModel):
    volunteer_id: str
    action: Literal["approve", "reject"]


class ContactMessage(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
