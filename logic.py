import structlog
from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import crud
import models
import schemas
import uploads
from settings import Settings
from supabase_client import IdentityProvider, ObjectStore, SupabaseError

# Set up logging
logger = structlog.get_logger(__name__)


# --- Accounts ---------------------------------------------------------------


async def sign_up(
    db: Session,
    provider: IdentityProvider,
    request: schemas.SignupRequest,
    settings: Settings,
) -> schemas.AuthResult:
    """Create the identity with the provider, then provision its role row.

    If the role row cannot be written the identity still exists, but the
    request gate will reject it until a role is provisioned.
    """
    if request.role == schemas.Role.admin and not settings.allow_admin_signup:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Role must be one of: applicant, company",
        )

    try:
        result = await provider.sign_up(request.email, request.password, {"role": request.role.value})
    except SupabaseError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    if result.identity:
        try:
            crud.upsert_authorization_record(db, result.identity.id, result.identity.email, request.role)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to provision authorization record", user_id=result.identity.id, exc=str(exc))
    else:
        logger.warning("Signup returned no user", email=request.email)
    return result


async def log_in(
    db: Session,
    provider: IdentityProvider,
    request: schemas.LoginRequest,
    settings: Settings,
) -> dict:
    try:
        result = await provider.sign_in_with_password(request.email, request.password)
    except SupabaseError as exc:
        logger.info("Login rejected", email=request.email, reason=exc.message)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message or "Login failed")

    if not result.session or not result.session.access_token:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="No token returned from identity provider.",
        )

    record = crud.get_authorization_record(db, result.identity.id) if result.identity else None
    role = record.role if record else None
    landing = "/jobs" if role == schemas.Role.applicant.value else "/companydashboard"

    return {
        "message": "Login successful",
        "access_token": result.session.access_token,
        "refresh_token": result.session.refresh_token,
        "user": {**(result.identity.raw if result.identity else {}), "role": role},
        "redirect": f"{settings.frontend_url}{landing}",
    }


async def register_company(
    db: Session,
    provider: IdentityProvider,
    request: schemas.CompanyRegisterRequest,
) -> dict:
    try:
        result = await provider.sign_up(
            request.email, request.password, {"role": schemas.Role.company.value}
        )
    except SupabaseError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if not result.identity:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Company registration failed")

    user_id = result.identity.id
    crud.upsert_authorization_record(db, user_id, request.email, schemas.Role.company)
    try:
        company = crud.create_company_profile(db, user_id, request.email, request.profile_fields())
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Company profile already exists")

    logger.info("Registered company", user_id=user_id, company_name=company.company_name)
    return {
        "message": "Company registered successfully",
        "user_id": user_id,
        "email": request.email,
        "access_token": result.session.access_token if result.session else None,
        "companyProfile": schemas.CompanyProfile.model_validate(company).model_dump(mode="json"),
    }


async def change_password(
    provider: IdentityProvider,
    current_user: schemas.AuthContext,
    request: schemas.ChangePasswordRequest,
) -> None:
    """Re-verify the current password and set the new one, both via the provider."""
    if not current_user.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Account has no email address")
    try:
        await provider.sign_in_with_password(current_user.email, request.current_password)
    except SupabaseError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    try:
        await provider.update_password(current_user.access_token, request.new_password)
    except SupabaseError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    logger.info("Password changed", user_id=current_user.user_id)


# --- Applicant profiles -----------------------------------------------------


def resolve_applicant_profile(db: Session, user_id: str) -> models.ApplicantProfile:
    """Find the caller's profile by durable id, then by the older ``user_id`` key."""
    profile = crud.get_applicant_profile(db, user_id)
    if profile is None:
        profile = crud.get_applicant_profile_by_user_id(db, user_id)
        if profile is not None:
            logger.info("Resolved applicant profile by user_id key", user_id=user_id, profile_id=profile.id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile


async def create_applicant_profile(
    db: Session,
    store: ObjectStore,
    current_user: schemas.AuthContext,
    fields: schemas.ApplicantProfileCreate,
    upload: uploads.ValidatedUpload,
    purpose: uploads.FilePurpose,
) -> models.ApplicantProfile:
    if crud.get_applicant_profile(db, current_user.user_id) or crud.get_applicant_profile_by_user_id(
        db, current_user.user_id
    ):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Profile already exists")

    try:
        profile = crud.create_applicant_profile(db, current_user.user_id, current_user.email, fields)
    except IntegrityError:
        # A concurrent create for the same subject won the insert
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Profile already exists")
    try:
        async with uploads.entity_lease(profile.id, purpose):
            await uploads.replace_object(
                db, store, profile, purpose, upload, (fields.first_name, fields.last_name)
            )
    except HTTPException:
        # Leave nothing behind so the client can simply retry the creation
        crud.delete_applicant_profile(db, profile.id)
        raise
    return profile


async def replace_applicant_file(
    db: Session,
    store: ObjectStore,
    user_id: str,
    purpose: uploads.FilePurpose,
    upload: uploads.ValidatedUpload,
) -> models.ApplicantProfile:
    async with uploads.entity_lease(user_id, purpose):
        profile = resolve_applicant_profile(db, user_id)
        await uploads.replace_object(
            db, store, profile, purpose, upload, (profile.first_name, profile.last_name)
        )
    return profile


def update_applicant_profile(
    db: Session, user_id: str, updates: schemas.ApplicantProfileUpdate
) -> models.ApplicantProfile:
    profile = resolve_applicant_profile(db, user_id)
    changes = updates.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    return crud.update_applicant_profile(db, profile.id, changes)


async def delete_applicant_profile(
    db: Session,
    store: ObjectStore,
    user_id: str,
    purposes: list[uploads.FilePurpose],
) -> None:
    profile = resolve_applicant_profile(db, user_id)
    for purpose in purposes:
        await uploads.remove_stored_file(store, purpose, getattr(profile, purpose.url_field))
    crud.delete_applicant_profile(db, profile.id)
    logger.info("Deleted applicant profile", profile_id=profile.id)


# --- Company jobs -----------------------------------------------------------


def get_owned_job(db: Session, job_id: str, company_id: str) -> models.Job:
    job = crud.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.company_id != company_id:
        logger.warning("Company attempted to access another company's job", job_id=job_id, company_id=company_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return job
