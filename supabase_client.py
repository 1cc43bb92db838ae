"""Async clients for the hosted Supabase auth (GoTrue) and storage APIs.

Both clients share one ``httpx.AsyncClient`` that is created in the FastAPI
lifespan (see ``main.lifespan``) and closed on shutdown. Route handlers get
them through the ``get_identity_provider`` / ``get_object_store``
dependencies, which tests override with in-memory fakes.

Only the handful of calls this service needs are implemented:

* auth: fetch the user behind a bearer token, sign up, password sign-in,
  password update for the signed-in user
* storage: upload (optionally upserting), remove, public URL construction
"""
from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote, unquote, urlsplit

import httpx
import structlog
from fastapi import Request
from jose import JWTError, jwt

from schemas import AuthResult, Identity, ProviderSession

logger = structlog.get_logger(__name__)

# Audience Supabase stamps on access tokens of signed-in users
TOKEN_AUDIENCE = "authenticated"


class SupabaseError(Exception):
    """A call to the hosted auth or storage API failed."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


def _identity_from_user(user: Optional[dict[str, Any]]) -> Optional[Identity]:
    if not user or not user.get("id"):
        return None
    return Identity(id=user["id"], email=user.get("email"), raw=user)


class IdentityProvider:
    def __init__(
        self,
        http: Optional[httpx.AsyncClient],
        base_url: str,
        anon_key: str,
        jwt_secret: Optional[str] = None,
    ) -> None:
        self._http = http
        self.auth_url = f"{base_url.rstrip('/')}/auth/v1"
        self._anon_key = anon_key
        self._jwt_secret = jwt_secret

    def _headers(self, access_token: Optional[str] = None) -> dict[str, str]:
        return {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {access_token or self._anon_key}",
        }

    async def _call(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._http.request(method, f"{self.auth_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Auth API request failed", path=path, error=str(exc))
            raise SupabaseError(f"Auth service unavailable: {exc}") from exc
        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("Auth API rejected request", path=path, status=response.status_code, message=message)
            raise SupabaseError(message, status_code=response.status_code)
        return response.json()

    async def verify_token(self, token: str) -> Identity:
        """Resolve a bearer token to the identity that owns it."""
        if self._jwt_secret:
            return self._verify_locally(token)

        user = await self._call("GET", "/user", headers=self._headers(token))
        identity = _identity_from_user(user)
        if identity is None:
            raise SupabaseError("No user for token", status_code=401)
        return identity

    def _verify_locally(self, token: str) -> Identity:
        try:
            payload = jwt.decode(
                token,
                self._jwt_secret,
                algorithms=["HS256"],
                audience=TOKEN_AUDIENCE,
            )
        except JWTError as exc:
            logger.warning("JWT verification failed", exc=str(exc))
            raise SupabaseError("Invalid token", status_code=401) from exc
        if not payload.get("sub"):
            raise SupabaseError("Token has no subject", status_code=401)
        return Identity(id=payload["sub"], email=payload.get("email"), raw=payload)

    async def sign_up(
        self, email: str, password: str, metadata: Optional[dict[str, Any]] = None
    ) -> AuthResult:
        body = await self._call(
            "POST",
            "/signup",
            headers=self._headers(),
            json={"email": email, "password": password, "data": metadata or {}},
        )
        # With email confirmation enabled the API answers with the bare user
        if body.get("access_token"):
            return AuthResult(
                identity=_identity_from_user(body.get("user")),
                session=ProviderSession.model_validate(body),
            )
        return AuthResult(identity=_identity_from_user(body))

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        body = await self._call(
            "POST",
            "/token",
            params={"grant_type": "password"},
            headers=self._headers(),
            json={"email": email, "password": password},
        )
        return AuthResult(
            identity=_identity_from_user(body.get("user")),
            session=ProviderSession.model_validate(body),
        )

    async def update_password(self, access_token: str, new_password: str) -> Identity:
        user = await self._call(
            "PUT",
            "/user",
            headers=self._headers(access_token),
            json={"password": new_password},
        )
        identity = _identity_from_user(user)
        if identity is None:
            raise SupabaseError("Password update returned no user")
        return identity


class ObjectStore:
    def __init__(self, http: Optional[httpx.AsyncClient], base_url: str, service_role_key: str) -> None:
        self._http = http
        self.storage_url = f"{base_url.rstrip('/')}/storage/v1"
        self._service_role_key = service_role_key

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
        }

    async def upload(
        self,
        bucket: str,
        path: str,
        content: bytes,
        content_type: str,
        upsert: bool = True,
    ) -> None:
        headers = self._headers()
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "true" if upsert else "false"
        url = f"{self.storage_url}/object/{bucket}/{quote(path)}"
        try:
            response = await self._http.post(url, content=content, headers=headers)
        except httpx.HTTPError as exc:
            raise SupabaseError(f"Storage service unavailable: {exc}") from exc
        if response.status_code >= 400:
            raise SupabaseError(_error_message(response), status_code=response.status_code)
        logger.info("Stored object", bucket=bucket, path=path, size=len(content))

    async def remove(self, bucket: str, paths: list[str]) -> None:
        try:
            response = await self._http.request(
                "DELETE",
                f"{self.storage_url}/object/{bucket}",
                headers=self._headers(),
                json={"prefixes": paths},
            )
        except httpx.HTTPError as exc:
            raise SupabaseError(f"Storage service unavailable: {exc}") from exc
        if response.status_code >= 400:
            raise SupabaseError(_error_message(response), status_code=response.status_code)
        logger.info("Removed objects", bucket=bucket, paths=paths)

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.storage_url}/object/public/{bucket}/{quote(path)}"

    def path_from_public_url(self, bucket: str, url: str) -> str:
        """Inverse of ``get_public_url``. Raises ``ValueError`` for foreign URLs."""
        marker = f"/storage/v1/object/public/{bucket}/"
        parsed = urlsplit(url)
        if parsed.netloc != urlsplit(self.storage_url).netloc or marker not in parsed.path:
            raise ValueError(f"Not a public URL for bucket {bucket!r}: {url}")
        path = unquote(parsed.path.split(marker, 1)[1])
        if not path:
            raise ValueError(f"Public URL has no object path: {url}")
        return path


# --- FastAPI dependencies ---


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


def get_object_store(request: Request) -> ObjectStore:
    return request.app.state.object_store
