from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


PENDING_PAYLOAD_KEY = "pendingPayloadUuid"
PENDING_CONTEXT_KEY = "pendingPayloadContext"


@dataclass(frozen=True)
class Settings:
    app_name: str = "RippleFund Wallet Gateway"
    xumm_mode: str = os.getenv("XUMM_MODE", "mock")
    xumm_api_url: str = os.getenv("XUMM_API_URL", "https://xumm.app/api/v1/platform")
    xumm_api_key: str = os.getenv("XUMM_API_KEY", "")
    xumm_api_secret: str = os.getenv("XUMM_API_SECRET", "")
    backend_mode: str = os.getenv("BACKEND_MODE", "mock")
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_anon_key: str = os.getenv("SUPABASE_ANON_KEY", "")
    session_secret: str = os.getenv("SESSION_SECRET", "ripplefund-dev-secret")
    poll_interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
    poll_initial_delay_seconds: float = float(os.getenv("POLL_INITIAL_DELAY_SECONDS", "1"))
    poll_max_attempts: int = int(os.getenv("POLL_MAX_ATTEMPTS", "60"))
    pending_store_path: str = os.getenv("PENDING_STORE_PATH", ".ripplefund/pending.json")
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    mock_signer_account: str = os.getenv(
        "MOCK_SIGNER_ACCOUNT", "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
    )
    mock_sign_after_polls: int = int(os.getenv("MOCK_SIGN_AFTER_POLLS", "2"))
    api_key: str = os.getenv("API_KEY", "")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def polling_budget_seconds(self) -> float:
        return self.poll_initial_delay_seconds + self.poll_max_attempts * self.poll_interval_seconds


settings = Settings()
