import os

# Must be set before the app (and alembic env) read them
TEST_DATABASE_URL = "sqlite:///./rosie-test.db"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("AWS_EMF_ENVIRONMENT", "Local")
os.environ.setdefault("LOG_FORMAT", "console")

import uuid
from dataclasses import dataclass
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

# --- Alembic Imports ---
from alembic.config import Config
from alembic import command
# --- End Alembic Imports ---

# Import app and DB dependency function first
from main import app, get_db

import crud
import schemas
from database import Base
from schemas import AuthResult, Identity, ProviderSession
from settings import Settings, get_settings
from supabase_client import (
    IdentityProvider,
    ObjectStore,
    SupabaseError,
    get_identity_provider,
    get_object_store,
)

TEST_SUPABASE_URL = "https://test.supabase.co"

connect_args = (
    {"check_same_thread": False} if TEST_DATABASE_URL.startswith("sqlite") else {}
)
test_engine = create_engine(TEST_DATABASE_URL, connect_args=connect_args)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


# --- In-memory stand-ins for the hosted auth and storage APIs --- #


class FakeIdentityProvider(IdentityProvider):
    """Token -> identity map. Records every call so tests can assert on them."""

    def __init__(self) -> None:
        super().__init__(None, TEST_SUPABASE_URL, "test-anon-key")
        self.identities: dict[str, Identity] = {}
        self.passwords: dict[str, str] = {}
        self.verify_calls: list[str] = []
        self.sign_up_calls: list[tuple[str, dict]] = []
        self.password_updates: list[tuple[str, str]] = []
        self.sign_up_error: Optional[str] = None

    def add_identity(self, token: str, user_id: str, email: str, password: str = "secret123") -> Identity:
        identity = Identity(id=user_id, email=email, raw={"id": user_id, "email": email})
        self.identities[token] = identity
        self.passwords[email] = password
        return identity

    def _token_for(self, email: str) -> Optional[str]:
        for token, identity in self.identities.items():
            if identity.email == email:
                return token
        return None

    async def verify_token(self, token: str) -> Identity:
        self.verify_calls.append(token)
        identity = self.identities.get(token)
        if identity is None:
            raise SupabaseError("invalid JWT", status_code=401)
        return identity

    async def sign_up(self, email, password, metadata=None) -> AuthResult:
        self.sign_up_calls.append((email, metadata or {}))
        if self.sign_up_error:
            raise SupabaseError(self.sign_up_error, status_code=400)
        user_id = f"user-{uuid.uuid4().hex[:12]}"
        token = f"token-{user_id}"
        identity = self.add_identity(token, user_id, email, password)
        return AuthResult(
            identity=identity,
            session=ProviderSession(access_token=token, refresh_token=f"refresh-{user_id}"),
        )

    async def sign_in_with_password(self, email, password) -> AuthResult:
        token = self._token_for(email)
        if token is None or self.passwords.get(email) != password:
            raise SupabaseError("Invalid login credentials", status_code=400)
        return AuthResult(
            identity=self.identities[token],
            session=ProviderSession(access_token=token, refresh_token=f"refresh-{token}"),
        )

    async def update_password(self, access_token, new_password) -> Identity:
        identity = self.identities.get(access_token)
        if identity is None:
            raise SupabaseError("invalid JWT", status_code=401)
        self.password_updates.append((identity.id, new_password))
        self.passwords[identity.email] = new_password
        return identity


class FakeObjectStore(ObjectStore):
    """Keeps uploaded bytes in a dict; public URL helpers are the real ones."""

    def __init__(self) -> None:
        super().__init__(None, TEST_SUPABASE_URL, "test-service-role-key")
        self.objects: dict[tuple[str, str], bytes] = {}
        self.uploads: list[tuple[str, str, str]] = []
        self.removals: list[tuple[str, list[str]]] = []
        self.upload_error: Optional[str] = None
        self.remove_error: Optional[str] = None

    @property
    def call_count(self) -> int:
        return len(self.uploads) + len(self.removals)

    async def upload(self, bucket, path, content, content_type, upsert=True) -> None:
        self.uploads.append((bucket, path, content_type))
        if self.upload_error:
            raise SupabaseError(self.upload_error, status_code=400)
        self.objects[(bucket, path)] = content

    async def remove(self, bucket, paths) -> None:
        self.removals.append((bucket, list(paths)))
        if self.remove_error:
            raise SupabaseError(self.remove_error, status_code=500)
        for path in paths:
            self.objects.pop((bucket, path), None)


@dataclass
class SeededUser:
    user_id: str
    email: str
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create the test database from models and stamp with Alembic head."""
    db_path = TEST_DATABASE_URL.split("///")[-1]
    if os.path.exists(db_path):
        os.unlink(db_path)

    Base.metadata.create_all(bind=test_engine)

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    command.stamp(alembic_cfg, "head")

    yield  # Tests run here

    test_engine.dispose()
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture(autouse=True)
def clean_tables(setup_test_database):
    """Every test starts from empty tables."""
    yield
    with test_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture(scope="function")
def db_session(setup_test_database):
    """Yields a SQLAlchemy session directly from the test factory."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        supabase_url=TEST_SUPABASE_URL,
        supabase_anon_key="test-anon-key",
        supabase_service_role_key="test-service-role-key",
        supabase_jwt_secret=None,
        app_env="development",
        dev_frontend_url="http://localhost:8080",
        allow_admin_signup=False,
        jobs_page_size=10,
    )


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


# Override the app's dependencies for tests
@pytest.fixture(scope="function")
def override_dependencies(identity_provider, object_store, test_settings):
    """Route handlers get the test database, the fakes and the test settings.

    A new session is created for each API call, like ``get_db`` does.
    """

    def _override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_identity_provider] = lambda: identity_provider
    app.dependency_overrides[get_object_store] = lambda: object_store
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_client(override_dependencies):
    """Provides a test client wired to the test database and the fakes."""
    return TestClient(app)


@pytest.fixture
def make_user(identity_provider, db_session):
    """Register an identity with the fake provider and, by default, its role row."""

    def _make_user(role: str = "applicant", email: Optional[str] = None, with_record: bool = True) -> SeededUser:
        user_id = f"{role}-{uuid.uuid4().hex[:12]}"
        email = email or f"{user_id}@example.com"
        token = f"token-{user_id}"
        identity_provider.add_identity(token, user_id, email)
        if with_record:
            crud.upsert_authorization_record(db_session, user_id, email, schemas.Role(role))
        return SeededUser(user_id=user_id, email=email, token=token)

    return _make_user
