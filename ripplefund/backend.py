from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging

import httpx

from .config import Settings
from .errors import BackendError, UnknownIdentityError


logger = logging.getLogger(__name__)

UNKNOWN_IDENTITY_CODES = {"invalid_grant", "invalid_credentials"}


@dataclass
class AuthResult:
    user_id: str
    access_token: Optional[str] = None


class Backend(ABC):
    """The slice of the managed data store that the payload flows touch."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthResult:
        """Raises UnknownIdentityError when no account matches the credential."""

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> AuthResult:
        pass

    @abstractmethod
    async def upsert_profile(
        self, user_id: str, xrpl_address: str, access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def insert_contribution(
        self, row: Dict[str, Any], access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_loan_destination(self, loan_id: str) -> str:
        """Wallet address of the borrower behind ``loan_id``."""

    async def aclose(self) -> None:
        return None


class InMemoryBackend(Backend):
    def __init__(self) -> None:
        self._lock = Lock()
        self.users: Dict[str, Dict[str, str]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.loans: Dict[str, Dict[str, Any]] = {}
        self.contributions: List[Dict[str, Any]] = []

    def add_loan(self, loan_id: str, borrower_id: str, borrower_address: str) -> None:
        with self._lock:
            self.loans[loan_id] = {"id": loan_id, "user_id": borrower_id, "status": "funding"}
            profile = self.profiles.setdefault(borrower_id, {"id": borrower_id})
            profile["xrpl_address"] = borrower_address

    async def sign_in(self, email: str, password: str) -> AuthResult:
        user = self.users.get(email)
        if user is None or user["password"] != password:
            raise UnknownIdentityError("Invalid login credentials", status_code=400)
        return AuthResult(user_id=user["id"], access_token=uuid4().hex)

    async def sign_up(self, email: str, password: str) -> AuthResult:
        with self._lock:
            if email in self.users:
                raise BackendError("User already registered", status_code=422)
            user_id = str(uuid4())
            self.users[email] = {"id": user_id, "password": password}
        return AuthResult(user_id=user_id)

    async def upsert_profile(
        self, user_id: str, xrpl_address: str, access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        with self._lock:
            profile = self.profiles.setdefault(user_id, {"id": user_id})
            profile["xrpl_address"] = xrpl_address
            return dict(profile)

    async def insert_contribution(
        self, row: Dict[str, Any], access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        with self._lock:
            stored = {"id": str(uuid4()), **row}
            self.contributions.append(stored)
            return dict(stored)

    async def get_loan_destination(self, loan_id: str) -> str:
        loan = self.loans.get(loan_id)
        if loan is None:
            raise BackendError(f"Unknown loan {loan_id}", status_code=404)
        address = self.profiles.get(loan["user_id"], {}).get("xrpl_address")
        if not address:
            raise BackendError(f"Borrower of loan {loan_id} has no wallet connected")
        return address


class SupabaseBackend(Backend):
    """Supabase auth (GoTrue) and PostgREST over plain HTTP."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        if not settings.supabase_url or not settings.supabase_anon_key:
            raise BackendError("SUPABASE_URL and SUPABASE_ANON_KEY are required")
        self.settings = settings
        self._anon_key = settings.supabase_anon_key
        self._client = client or httpx.AsyncClient(
            base_url=settings.supabase_url.rstrip("/"),
            timeout=settings.http_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, access_token: Optional[str] = None, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {access_token or self._anon_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s %s failed: %s", method, path, exc)
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        if resp.is_error:
            error = self._error_from(resp)
            logger.debug("Supabase %s %s answered %s: %s", method, path, resp.status_code, error.detail)
            raise error
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(f"{method} {path} returned non-JSON body", resp.status_code) from exc

    def _error_from(self, resp: httpx.Response) -> BackendError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = body.get("error_code") or body.get("error") or body.get("code")
        detail = (
            body.get("error_description") or body.get("msg") or body.get("message") or resp.text
        )
        if code in UNKNOWN_IDENTITY_CODES:
            return UnknownIdentityError(detail, resp.status_code)
        return BackendError(detail, resp.status_code)

    def _auth_result(self, body: Any) -> AuthResult:
        if not isinstance(body, dict):
            raise BackendError("Malformed auth response")
        user = body.get("user") or body
        user_id = user.get("id") if isinstance(user, dict) else None
        if not user_id:
            raise BackendError("Auth response carries no user id")
        return AuthResult(user_id=user_id, access_token=body.get("access_token"))

    async def sign_in(self, email: str, password: str) -> AuthResult:
        body = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers=self._headers(),
        )
        return self._auth_result(body)

    async def sign_up(self, email: str, password: str) -> AuthResult:
        body = await self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password},
            headers=self._headers(),
        )
        return self._auth_result(body)

    async def upsert_profile(
        self, user_id: str, xrpl_address: str, access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            "/rest/v1/profiles",
            params={"on_conflict": "id"},
            json={"id": user_id, "xrpl_address": xrpl_address},
            headers=self._headers(access_token, "resolution=merge-duplicates,return=representation"),
        )
        return rows[0] if rows else {"id": user_id, "xrpl_address": xrpl_address}

    async def insert_contribution(
        self, row: Dict[str, Any], access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            "/rest/v1/loan_contributions",
            json=row,
            headers=self._headers(access_token, "return=representation"),
        )
        if not rows:
            raise BackendError("Contribution insert returned no row")
        return rows[0]

    async def get_loan_destination(self, loan_id: str) -> str:
        loans = await self._request(
            "GET",
            "/rest/v1/microloans",
            params={"id": f"eq.{loan_id}", "select": "id,user_id"},
            headers=self._headers(),
        )
        if not loans:
            raise BackendError(f"Unknown loan {loan_id}", status_code=404)
        profiles = await self._request(
            "GET",
            "/rest/v1/profiles",
            params={"id": f"eq.{loans[0]['user_id']}", "select": "xrpl_address"},
            headers=self._headers(),
        )
        address = profiles[0].get("xrpl_address") if profiles else None
        if not address:
            raise BackendError(f"Borrower of loan {loan_id} has no wallet connected")
        return address


def build_backend(settings: Settings) -> Backend:
    if settings.backend_mode.lower() == "mock":
        return InMemoryBackend()
    return SupabaseBackend(settings)