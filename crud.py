from typing import Any, Optional

from sqlalchemy.orm import Session

import models
import schemas


# --- Authorization records ---
def get_authorization_record(db: Session, user_id: str) -> Optional[models.AuthorizationRecord]:
    return (
        db.query(models.AuthorizationRecord)
        .filter(models.AuthorizationRecord.user_id == user_id)
        .first()
    )


def upsert_authorization_record(
    db: Session, user_id: str, email: Optional[str], role: schemas.Role
) -> models.AuthorizationRecord:
    """Insert the role row for a subject, or update its role if one already exists."""
    record = get_authorization_record(db, user_id)
    if record:
        record.role = role.value
        if email:
            record.email = email
    else:
        record = models.AuthorizationRecord(user_id=user_id, email=email, role=role.value)
        db.add(record)
    db.commit()
    db.refresh(record)
    return record


# --- Applicant profiles ---
def get_applicant_profile(db: Session, profile_id: str) -> Optional[models.ApplicantProfile]:
    return db.query(models.ApplicantProfile).filter(models.ApplicantProfile.id == profile_id).first()


def get_applicant_profile_by_user_id(db: Session, user_id: str) -> Optional[models.ApplicantProfile]:
    return db.query(models.ApplicantProfile).filter(models.ApplicantProfile.user_id == user_id).first()


def create_applicant_profile(
    db: Session, user_id: str, email: Optional[str], profile: schemas.ApplicantProfileCreate
) -> models.ApplicantProfile:
    fields = profile.model_dump()
    fields["email"] = fields.get("email") or email
    db_profile = models.ApplicantProfile(id=user_id, user_id=user_id, resume_url=None, **fields)
    db.add(db_profile)
    db.commit()
    db.refresh(db_profile)
    return db_profile


def update_applicant_profile(
    db: Session, profile_id: str, updates: dict[str, Any]
) -> Optional[models.ApplicantProfile]:
    """Apply ``updates`` to the row with the given durable id."""
    db_profile = get_applicant_profile(db, profile_id)
    if not db_profile:
        return None
    for field, value in updates.items():
        setattr(db_profile, field, value)
    db.commit()
    db.refresh(db_profile)
    return db_profile


def delete_applicant_profile(db: Session, profile_id: str) -> bool:
    db_profile = get_applicant_profile(db, profile_id)
    if not db_profile:
        return False
    db.delete(db_profile)
    db.commit()
    return True


# --- Company profiles ---
def get_company_profile(db: Session, company_id: str) -> Optional[models.CompanyProfile]:
    return db.query(models.CompanyProfile).filter(models.CompanyProfile.id == company_id).first()


def create_company_profile(
    db: Session, company_id: str, email: str, fields: dict[str, Any]
) -> models.CompanyProfile:
    db_company = models.CompanyProfile(id=company_id, email=email, **fields)
    db.add(db_company)
    db.commit()
    db.refresh(db_company)
    return db_company


# --- Job CRUD ---
def create_job(db: Session, job: schemas.JobCreate, company_id: str) -> models.Job:
    db_job = models.Job(company_id=company_id, **job.model_dump())
    db.add(db_job)
    db.commit()
    db.refresh(db_job)
    return db_job


def get_job(db: Session, job_id: str) -> Optional[models.Job]:
    return db.query(models.Job).filter(models.Job.id == job_id).first()


def get_jobs_for_company(db: Session, company_id: str) -> list[models.Job]:
    """Retrieves all jobs posted by a company, newest first."""
    return (
        db.query(models.Job)
        .filter(models.Job.company_id == company_id)
        .order_by(models.Job.created_at.desc())
        .all()
    )


def update_job(db: Session, job_id: str, updates: dict[str, Any]) -> Optional[models.Job]:
    db_job = get_job(db, job_id)
    if not db_job:
        return None
    for field, value in updates.items():
        setattr(db_job, field, value)
    db.commit()
    db.refresh(db_job)
    return db_job


def delete_job(db: Session, job_id: str) -> bool:
    db_job = get_job(db, job_id)
    if not db_job:
        return False
    db.delete(db_job)
    db.commit()
    return True


def list_jobs(db: Session, page: int, page_size: int) -> list[models.Job]:
    offset = (page - 1) * page_size
    return (
        db.query(models.Job)
        .order_by(models.Job.created_at.desc())
        .offset(offset)
        .limit(page_size)
        .all()
    )


def search_jobs_by_title(db: Session, title: str) -> list[models.Job]:
    return (
        db.query(models.Job)
        .filter(models.Job.title.ilike(f"%{title}%"))
        .order_by(models.Job.created_at.desc())
        .all()
    )


def filter_jobs(db: Session, filters: schemas.JobFilters) -> list[models.Job]:
    query = db.query(models.Job)
    if filters.location:
        query = query.filter(models.Job.location == filters.location)
    if filters.industry:
        query = query.filter(models.Job.industry == filters.industry)
    # Boolean filters only narrow the result when requested
    if filters.urgent:
        query = query.filter(models.Job.is_urgent.is_(True))
    if filters.featured:
        query = query.filter(models.Job.is_featured.is_(True))
    if filters.remote:
        query = query.filter(models.Job.is_remote.is_(True))
    return query.order_by(models.Job.created_at.desc()).all()
