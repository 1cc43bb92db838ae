import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text
from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthorizationRecord(Base):
    """Maps an identity provider subject to its role. One row per subject."""

    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String, unique=True, index=True, nullable=False)  # provider subject id
    email = Column(String, index=True)
    role = Column(String, nullable=False)  # 'applicant' | 'company' | 'admin'
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ApplicantProfile(Base):
    __tablename__ = "applicant_profiles"

    id = Column(String, primary_key=True, default=_new_id)
    # Older rows were keyed by a generated id with the subject stored here
    user_id = Column(String, unique=True, index=True, nullable=True)
    email = Column(String, index=True)
    first_name = Column(String)
    last_name = Column(String)
    phone = Column(String, nullable=True)
    date_of_birth = Column(String, nullable=True)
    address = Column(String, nullable=True)
    skills = Column(JSON, default=list)
    experience_years = Column(Integer, nullable=True)
    resume_url = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CompanyProfile(Base):
    __tablename__ = "company_profiles"

    id = Column(String, primary_key=True)  # provider subject id
    email = Column(String, index=True)
    company_name = Column(String, nullable=False)
    industry = Column(String, nullable=True)
    company_size = Column(String, nullable=True)
    website = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    contact_person = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=_new_id)
    company_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    requirements = Column(JSON, default=list)
    location = Column(String, index=True, nullable=True)
    employment_type = Column(String, nullable=True)
    job_type = Column(String, nullable=True)
    salary_min = Column(Integer, nullable=True)
    salary_max = Column(Integer, nullable=True)
    industry = Column(String, index=True, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_urgent = Column(Boolean, default=False, nullable=False)
    is_featured = Column(Boolean, default=False, nullable=False)
    is_remote = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
