from contextlib import asynccontextmanager
from typing import List, Optional
import json

import httpx
import openai
import structlog
from fastapi import (
    FastAPI,
    Depends,
    HTTPException,
    UploadFile,
    File,
    Form,
    Query,
    Request,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import crud
import logic
import llm_interaction
import models
import schemas
import uploads
from auth import require_applicant, require_company
from database import create_db_and_tables, get_db
from observability import init_observability
from request_id_middleware import RequestIdMiddleware
from settings import Settings, get_settings
from supabase_client import (
    IdentityProvider,
    ObjectStore,
    SupabaseError,
    get_identity_provider,
    get_object_store,
)


# Initialise observability before creating app
init_observability()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the shared auth/storage clients; close them on shutdown."""
    create_db_and_tables()
    settings = get_settings()
    http_client = httpx.AsyncClient(timeout=settings.supabase_timeout_seconds)
    app.state.identity_provider = IdentityProvider(
        http_client,
        settings.supabase_url,
        settings.supabase_anon_key,
        jwt_secret=settings.supabase_jwt_secret,
    )
    app.state.object_store = ObjectStore(
        http_client, settings.supabase_url, settings.supabase_service_role_key
    )
    logger.info("External clients ready", supabase_url=settings.supabase_url)
    try:
        yield
    finally:
        await http_client.aclose()
        logger.info("External clients closed")


app = FastAPI(
    title="Rosie",
    description="Backend API for the Rosie job board: accounts, applicant profiles, job postings and mock interviews",
    version="0.1.0",
    lifespan=lifespan,
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)


# --- Error responses: always {"message": ...} --- #
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    logger.info("Rejected invalid request", problems=problems)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": "Invalid request: " + "; ".join(problems)},
    )


@app.exception_handler(SupabaseError)
async def upstream_exception_handler(request: Request, exc: SupabaseError):
    logger.error("Upstream service error", upstream_status=exc.status_code, message=exc.message)
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"message": exc.message})


def _profile_payload(profile: models.ApplicantProfile) -> dict:
    return schemas.ApplicantProfile.model_validate(profile).model_dump(mode="json")


def _job_payload(job: models.Job) -> dict:
    return schemas.Job.model_validate(job).model_dump(mode="json")


def _parse_skills(raw: Optional[str]) -> List[str]:
    """Multipart forms carry skills as a JSON array or a single plain value."""
    if raw is None or not raw.strip():
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return [raw.strip()]
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]


@app.get("/", include_in_schema=False)
async def read_root():
    return RedirectResponse(url="/docs")


@app.get("/health", tags=["Health"])
async def health_check():
    return {"status": "healthy"}


# --- Auth Endpoints ---
@app.post("/api/auth/signup", status_code=status.HTTP_201_CREATED, tags=["Auth"])
async def signup_endpoint(
    request: schemas.SignupRequest,
    db: Session = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
    settings: Settings = Depends(get_settings),
):
    result = await logic.sign_up(db, provider, request, settings)
    if result.session is None:
        return {
            "message": "Signup successful.",
            "email": result.identity.email if result.identity else request.email,
            "requires_email_verification": True,
        }
    return {
        "message": "User signed up successfully",
        "user": result.identity.raw if result.identity else None,
        "session": result.session.model_dump(),
    }


@app.post("/api/auth/login", tags=["Auth"])
async def login_endpoint(
    request: schemas.LoginRequest,
    db: Session = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
    settings: Settings = Depends(get_settings),
):
    return await logic.log_in(db, provider, request, settings)


@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED, tags=["Auth"])
async def register_company_endpoint(
    request: schemas.CompanyRegisterRequest,
    db: Session = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    return await logic.register_company(db, provider, request)


# --- Applicant Profile Endpoints ---
@app.post("/api/applicant/profile", status_code=status.HTTP_201_CREATED, tags=["Applicant"])
async def create_applicant_profile_endpoint(
    first_name: Optional[str] = Form(None),
    last_name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    date_of_birth: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    skills: Optional[str] = Form(None),
    experience_years: Optional[int] = Form(None),
    resume: Optional[UploadFile] = File(None),
    current_user: schemas.AuthContext = Depends(require_applicant),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    settings: Settings = Depends(get_settings),
):
    """Create the caller's profile and store their resume (PDF)."""
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="First name and last name are required")

    purpose = uploads.resume_purpose(settings)
    upload = await uploads.validate_upload(resume, purpose.policy)

    try:
        fields = schemas.ApplicantProfileCreate(
            first_name=first_name,
            last_name=last_name,
            email=email or None,
            phone=phone,
            date_of_birth=date_of_birth,
            address=address,
            skills=_parse_skills(skills),
            experience_years=experience_years,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid profile: {exc.errors()[0]['msg']}")

    profile = await logic.create_applicant_profile(db, store, current_user, fields, upload, purpose)
    logger.info("Applicant profile created", profile_id=profile.id)
    return {"message": "Profile created successfully", "profile": _profile_payload(profile)}


@app.post("/api/applicant/profile/upload", tags=["Applicant"])
async def upload_resume_endpoint(
    resume: Optional[UploadFile] = File(None),
    current_user: schemas.AuthContext = Depends(require_applicant),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    settings: Settings = Depends(get_settings),
):
    """Replace the caller's resume."""
    purpose = uploads.resume_purpose(settings)
    upload = await uploads.validate_upload(resume, purpose.policy)
    profile = await logic.replace_applicant_file(db, store, current_user.user_id, purpose, upload)
    return {
        "message": "Resume uploaded and profile updated successfully",
        "resume_url": profile.resume_url,
        "profile": _profile_payload(profile),
    }


@app.post("/api/applicant/profile/photo", tags=["Applicant"])
async def upload_photo_endpoint(
    photo: Optional[UploadFile] = File(None),
    current_user: schemas.AuthContext = Depends(require_applicant),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    settings: Settings = Depends(get_settings),
):
    """Replace the caller's profile photo (JPEG, PNG or WebP)."""
    purpose = uploads.photo_purpose(settings)
    upload = await uploads.validate_upload(photo, purpose.policy)
    profile = await logic.replace_applicant_file(db, store, current_user.user_id, purpose, upload)
    return {
        "message": "Photo uploaded successfully",
        "photo_url": profile.photo_url,
        "profile": _profile_payload(profile),
    }


@app.get("/api/applicant/profile", tags=["Applicant"])
def get_applicant_profile_endpoint(
    current_user: schemas.AuthContext = Depends(require_applicant),
    db: Session = Depends(get_db),
):
    profile = logic.resolve_applicant_profile(db, current_user.user_id)
    return {"profile": _profile_payload(profile)}


@app.put("/api/applicant/profile", tags=["Applicant"])
def update_applicant_profile_endpoint(
    updates: schemas.ApplicantProfileUpdate,
    current_user: schemas.AuthContext = Depends(require_applicant),
    db: Session = Depends(get_db),
):
    profile = logic.update_applicant_profile(db, current_user.user_id, updates)
    return {"message": "Profile updated successfully", "profile": _profile_payload(profile)}


@app.delete("/api/applicant/profile", tags=["Applicant"])
async def delete_applicant_profile_endpoint(
    current_user: schemas.AuthContext = Depends(require_applicant),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    settings: Settings = Depends(get_settings),
):
    await logic.delete_applicant_profile(
        db,
        store,
        current_user.user_id,
        [uploads.resume_purpose(settings), uploads.photo_purpose(settings)],
    )
    return {"message": "Profile deleted successfully"}


@app.post("/api/applicant/profile/change-password", tags=["Applicant"])
async def change_password_endpoint(
    request: schemas.ChangePasswordRequest,
    current_user: schemas.AuthContext = Depends(require_applicant),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    await logic.change_password(provider, current_user, request)
    return {"message": "Password updated successfully"}


# --- Company Job Endpoints ---
@app.post("/api/company/jobs", status_code=status.HTTP_201_CREATED, tags=["Company"])
def create_job_endpoint(
    job: schemas.JobCreate,
    current_user: schemas.AuthContext = Depends(require_company),
    db: Session = Depends(get_db),
):
    db_job = crud.create_job(db, job=job, company_id=current_user.user_id)
    logger.info("Job created", job_id=db_job.id, company_id=current_user.user_id)
    return {"message": "Job created", "job": _job_payload(db_job)}


@app.get("/api/company/jobs", response_model=List[schemas.Job], tags=["Company"])
def list_company_jobs_endpoint(
    current_user: schemas.AuthContext = Depends(require_company),
    db: Session = Depends(get_db),
):
    return crud.get_jobs_for_company(db, company_id=current_user.user_id)


@app.get("/api/company/jobs/{job_id}", response_model=schemas.Job, tags=["Company"])
def get_company_job_endpoint(
    job_id: str,
    current_user: schemas.AuthContext = Depends(require_company),
    db: Session = Depends(get_db),
):
    return logic.get_owned_job(db, job_id, current_user.user_id)


@app.put("/api/company/jobs/{job_id}", tags=["Company"])
def update_company_job_endpoint(
    job_id: str,
    updates: schemas.JobUpdate,
    current_user: schemas.AuthContext = Depends(require_company),
    db: Session = Depends(get_db),
):
    logic.get_owned_job(db, job_id, current_user.user_id)
    changes = updates.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    job = crud.update_job(db, job_id, changes)
    return {"message": "Job updated", "job": _job_payload(job)}


@app.delete("/api/company/jobs/{job_id}", tags=["Company"])
def delete_company_job_endpoint(
    job_id: str,
    current_user: schemas.AuthContext = Depends(require_company),
    db: Session = Depends(get_db),
):
    logic.get_owned_job(db, job_id, current_user.user_id)
    crud.delete_job(db, job_id)
    logger.info("Job deleted", job_id=job_id, company_id=current_user.user_id)
    return {"message": "Job deleted"}


# --- Public Job Endpoints --- (static paths before /{job_id})
@app.get("/api/jobs", response_model=List[schemas.Job], tags=["Public Jobs"])
def list_jobs_endpoint(
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return crud.list_jobs(db, page=page, page_size=settings.jobs_page_size)


@app.get("/api/jobs/search", response_model=List[schemas.Job], tags=["Public Jobs"])
def search_jobs_endpoint(
    title: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    if not title or not title.strip():
        raise HTTPException(status_code=400, detail="Title query required")
    return crud.search_jobs_by_title(db, title.strip())


@app.get("/api/jobs/filter", response_model=List[schemas.Job], tags=["Public Jobs"])
def filter_jobs_endpoint(
    location: Optional[str] = Query(None),
    industry: Optional[str] = Query(None),
    urgent: bool = Query(False),
    featured: bool = Query(False),
    remote: bool = Query(False),
    db: Session = Depends(get_db),
):
    filters = schemas.JobFilters(
        location=location, industry=industry, urgent=urgent, featured=featured, remote=remote
    )
    return crud.filter_jobs(db, filters)


@app.get("/api/jobs/{job_id}", response_model=schemas.Job, tags=["Public Jobs"])
def get_job_endpoint(job_id: str, db: Session = Depends(get_db)):
    job = crud.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# --- Mock Interview Endpoints ---
@app.post("/api/interview/generate-questions", tags=["Interview"])
async def generate_questions_endpoint(request: schemas.InterviewQuestionsRequest):
    if request.resume_text is None or request.job_description is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Resume text and job description are required"},
        )
    if not request.resume_text.strip() or not request.job_description.strip():
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Resume text and job description cannot be empty"},
        )

    try:
        questions = await llm_interaction.generate_interview_questions(
            request.resume_text, request.job_description
        )
    except (openai.OpenAIError, ValueError) as exc:
        logger.error("Question generation failed", error=str(exc))
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Failed to generate questions. Please try again.",
                "error": str(exc),
            },
        )
    return {"success": True, "questions": questions}


@app.post("/api/interview/evaluate-interview", tags=["Interview"])
async def evaluate_interview_endpoint(request: schemas.InterviewEvaluationRequest):
    if not request.questions or not request.answers:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Questions and answers are required"},
        )
    if not isinstance(request.questions, list) or not isinstance(request.answers, list):
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Questions and answers must be arrays"},
        )

    try:
        evaluation = await llm_interaction.evaluate_interview(
            [str(q) for q in request.questions], [str(a) for a in request.answers]
        )
    except (openai.OpenAIError, ValueError) as exc:
        logger.error("Interview evaluation failed", error=str(exc))
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Failed to evaluate interview. Please try again.",
                "error": str(exc),
            },
        )
    return {"success": True, "evaluation": evaluation.model_dump()}


# --- Main execution --- (for running with uvicorn)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
