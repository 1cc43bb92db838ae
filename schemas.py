import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


def _normalise_email(value: str) -> str:
    value = value.strip()
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email format")
    return value.lower()


Email = Annotated[str, AfterValidator(_normalise_email)]


def _reject_null(value):
    # Partial updates may omit a required column but never clear it
    if value is None:
        raise ValueError("cannot be null")
    return value


class Role(str, Enum):
    applicant = "applicant"
    company = "company"
    admin = "admin"


# --- Identity / auth ---


class Identity(BaseModel):
    """A subject as resolved by the identity provider."""

    id: str
    email: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ProviderSession(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "bearer"


class AuthResult(BaseModel):
    identity: Optional[Identity] = None
    session: Optional[ProviderSession] = None


class AuthContext(BaseModel):
    """Authenticated caller, handed to route handlers by the request gate."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    role: Role
    access_token: str


class SignupRequest(BaseModel):
    email: Email
    password: str = Field(min_length=6)
    role: Role


class LoginRequest(BaseModel):
    email: Email
    password: str = Field(min_length=1)


class CompanyRegisterRequest(BaseModel):
    email: Email
    password: str = Field(min_length=6)
    company_name: str = Field(min_length=1)
    industry: Optional[str] = None
    company_size: Optional[str] = None
    website: Optional[str] = None
    description: Optional[str] = None
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    def profile_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"email", "password"})


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


# --- Profiles ---


class ApplicantProfileCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: Optional[Email] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    skills: list[str] = Field(default_factory=list)
    experience_years: Optional[int] = Field(default=None, ge=0)


class ApplicantProfileUpdate(BaseModel):
    """Fields an applicant may change directly. File URLs are managed by uploads."""

    model_config = ConfigDict(extra="forbid")

    first_name: Optional[str] = Field(default=None, min_length=1)
    last_name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    skills: Optional[list[str]] = None
    experience_years: Optional[int] = Field(default=None, ge=0)

    @field_validator("first_name", "last_name")
    @classmethod
    def names_not_null(cls, value):
        return _reject_null(value)


class ApplicantProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    skills: Optional[list[str]] = None
    experience_years: Optional[int] = None
    resume_url: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CompanyProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    company_name: str
    industry: Optional[str] = None
    company_size: Optional[str] = None
    website: Optional[str] = None
    description: Optional[str] = None
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: Optional[datetime] = None


# --- Jobs ---


class JobBase(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    requirements: list[str] = Field(default_factory=list)
    location: Optional[str] = None
    employment_type: Optional[str] = None
    job_type: Optional[str] = None
    salary_min: Optional[int] = Field(default=None, ge=0)
    salary_max: Optional[int] = Field(default=None, ge=0)
    industry: Optional[str] = None
    is_active: bool = True
    is_urgent: bool = False
    is_featured: bool = False
    is_remote: bool = False


class JobCreate(JobBase):
    model_config = ConfigDict(extra="forbid")


class JobUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    requirements: Optional[list[str]] = None
    location: Optional[str] = None
    employment_type: Optional[str] = None
    job_type: Optional[str] = None
    salary_min: Optional[int] = Field(default=None, ge=0)
    salary_max: Optional[int] = Field(default=None, ge=0)
    industry: Optional[str] = None
    is_active: Optional[bool] = None
    is_urgent: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_remote: Optional[bool] = None

    @field_validator("title", "description")
    @classmethod
    def required_not_null(cls, value):
        return _reject_null(value)


class Job(JobBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    requirements: Optional[list[str]] = None
    created_at: Optional[datetime] = None


class JobFilters(BaseModel):
    location: Optional[str] = None
    industry: Optional[str] = None
    urgent: bool = False
    featured: bool = False
    remote: bool = False


# --- Mock interviews ---


class InterviewQuestionsRequest(BaseModel):
    resume_text: Optional[str] = Field(default=None, alias="resumeText")
    job_description: Optional[str] = Field(default=None, alias="jobDescription")


class InterviewEvaluationRequest(BaseModel):
    questions: Optional[Any] = None
    answers: Optional[Any] = None


class InterviewQuestions(BaseModel):
    questions: list[str]


class InterviewEvaluation(BaseModel):
    score: int = Field(ge=0, le=100)
    summary: str
