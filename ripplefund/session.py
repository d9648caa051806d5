from typing import Tuple
import hashlib
import hmac
import logging

from .backend import AuthResult, Backend
from .config import Settings
from .errors import BackendError, SessionMaterializationError, UnknownIdentityError
from .models import Session


logger = logging.getLogger(__name__)

WALLET_EMAIL_DOMAIN = "xrpl.local"


def derive_credentials(wallet_address: str, secret: str) -> Tuple[str, str]:
    """Email and password for ``wallet_address``; the same address always maps to the same pair."""
    email = f"{wallet_address.lower()}@{WALLET_EMAIL_DOMAIN}"
    digest = hmac.new(secret.encode("utf-8"), wallet_address.encode("utf-8"), hashlib.sha256)
    return email, f"xrpl-auth-{digest.hexdigest()}"


class SessionMaterializer:
    def __init__(self, backend: Backend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings

    async def materialize(self, wallet_address: str) -> Session:
        if not wallet_address:
            raise SessionMaterializationError(wallet_address, "missing wallet address")
        email, password = derive_credentials(wallet_address, self.settings.session_secret)
        try:
            auth = await self._authenticate(email, password)
            await self.backend.upsert_profile(auth.user_id, wallet_address, auth.access_token)
        except BackendError as exc:
            logger.error("Session creation failed for %s: %s", wallet_address, exc)
            raise SessionMaterializationError(wallet_address, exc.detail) from exc
        logger.info("Session ready for %s as user %s", wallet_address, auth.user_id)
        return Session(
            user_id=auth.user_id,
            wallet_address=wallet_address,
            access_token=auth.access_token,
        )

    async def _authenticate(self, email: str, password: str) -> AuthResult:
        try:
            return await self.backend.sign_in(email, password)
        except UnknownIdentityError:
            logger.info("No account for %s yet, registering", email)
        await self.backend.sign_up(email, password)
        return await self.backend.sign_in(email, password)
