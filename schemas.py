"""
Schemas for ProblemScout

Row models mirror the store's tables (`problems`, `profiles`) and the auth
provider's user/session payloads. Form models carry the validation the report
dialog and the login/register pages apply before calling into the app.
"""

import base64
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

ProblemCategory = Literal["roads", "utilities", "environment", "safety", "facilities", "other"]
ProblemStatus = Literal["pending", "in-progress", "resolved"]
AuthChangeEvent = Literal["INITIAL_SESSION", "SIGNED_IN", "SIGNED_OUT", "USER_UPDATED"]

STATUSES = ("pending", "in-progress", "resolved")

NO_LOCATION_ADDRESS = "No specific location provided"
MAX_IMAGE_BYTES = 5 * 1024 * 1024


class Location(BaseModel):
    lat: float = Field(..., description="Latitude")
    lng: float = Field(..., description="Longitude")
    address: Optional[str] = Field(None, description="Nearest address or landmark")

    @property
    def is_unspecified(self) -> bool:
        return self.lat == 0 and self.lng == 0 and self.address == NO_LOCATION_ADDRESS


NO_LOCATION = Location(lat=0, lng=0, address=NO_LOCATION_ADDRESS)


class Problem(BaseModel):
    id: str = Field(..., description="Client-generated identifier")
    user_id: str = Field(..., description="Reporter's user id")
    title: str = Field(..., description="Short title")
    description: str = Field(..., description="What is wrong")
    category: ProblemCategory = Field("other")
    status: ProblemStatus = Field("pending")
    location: Location = Field(default_factory=lambda: NO_LOCATION.model_copy())
    image_url: Optional[str] = Field(None, description="Data URI or remote URL")
    upvotes: int = Field(0, ge=0)
    created_at: datetime
    updated_at: datetime

    @property
    def has_location(self) -> bool:
        return not self.location.is_unspecified


class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1, description="Same id as the auth user")
    username: Optional[str] = Field(None, description="Display name")
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class User(BaseModel):
    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)
    email_confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Session(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: int = Field(..., description="Unix timestamp (seconds)")
    user: User


class AuthResponse(BaseModel):
    user: Optional[User] = None
    session: Optional[Session] = None


class Notification(BaseModel):
    kind: Literal["success", "error", "info"]
    title: str
    description: Optional[str] = None


# ---------- Form models ----------

class ReportProblemData(BaseModel):
    """Input to the submission flow; the form layer has already validated it."""
    title: str
    description: str
    category: str
    location: Optional[Location] = None
    image_url: Optional[str] = None


class ReportProblemForm(BaseModel):
    title: str
    description: str
    category: ProblemCategory = "other"
    location: Optional[Location] = None
    image_url: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_length(cls, v: str) -> str:
        if len(v) < 5:
            raise ValueError("Title must be at least 5 characters")
        return v

    @field_validator("description")
    @classmethod
    def description_length(cls, v: str) -> str:
        if len(v) < 10:
            raise ValueError("Description must be at least 10 characters")
        return v

    @field_validator("image_url")
    @classmethod
    def image_reference(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if v.startswith(("http://", "https://")):
            return v
        if not v.startswith("data:image/") or ";base64," not in v:
            raise ValueError("Image must be an image data URI or an http(s) URL")
        payload = v.split(",", 1)[1]
        try:
            size = len(base64.b64decode(payload, validate=True))
        except ValueError:
            raise ValueError("Image data is not valid base64")
        if size > MAX_IMAGE_BYTES:
            raise ValueError("Image size should be less than 5MB")
        return v

    def to_data(self) -> ReportProblemData:
        return ReportProblemData(**self.model_dump())


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AuthSnapshot(BaseModel):
    """What views get to see of the signed-in state."""
    user: Optional[User] = None
    profile: Optional[Profile] = None
    is_loading: bool = False
    phase: str = "anonymous"
