from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod"),
        extra="ignore",
    )

    # Supabase project (hosted auth + storage)
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    # When set, bearer tokens are verified locally instead of calling the auth API
    supabase_jwt_secret: Optional[str] = None
    supabase_timeout_seconds: float = 10.0

    # Storage buckets and per-endpoint upload limits
    resume_bucket: str = "resumes"
    resume_prefix: str = "resumes"
    resume_max_bytes: int = 10 * 1024 * 1024
    photo_bucket: str = "photos"
    photo_prefix: str = "photos"
    photo_max_bytes: int = 5 * 1024 * 1024

    # OpenAI-compatible endpoint used for mock interviews
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://api.groq.com/openai/v1"
    llm_model: str = "llama-3.3-70b-versatile"

    # Frontend (login redirects, CORS)
    app_env: str = "development"
    dev_frontend_url: str = "http://localhost:8080"
    prod_frontend_url: str = "https://rosie-frontend.vercel.app"
    cors_origins: str = "http://localhost:8080,https://rosie-frontend.vercel.app"

    allow_admin_signup: bool = False
    jobs_page_size: int = 10

    @property
    def frontend_url(self) -> str:
        if self.app_env == "development":
            return self.dev_frontend_url
        return self.prod_frontend_url

    @property
    def allowed_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
