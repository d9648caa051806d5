from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from xrpl.core.addresscodec import is_valid_classic_address


class PayloadKind(str, Enum):
    SIGN_IN = "SIGN_IN"
    PAYMENT = "PAYMENT"


class PayloadOutcome(str, Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


class PollerState(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    SIGNED = "SIGNED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    TIMED_OUT = "TIMED_OUT"
    ABANDONED = "ABANDONED"


TERMINAL_OUTCOMES = {
    PayloadOutcome.SIGNED: PollerState.SIGNED,
    PayloadOutcome.CANCELLED: PollerState.CANCELLED,
    PayloadOutcome.EXPIRED: PollerState.EXPIRED,
}


class PayloadRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    kind: PayloadKind
    deep_link: str
    qr_payload: str


class PayloadStatus(BaseModel):
    resolved: bool = False
    outcome: PayloadOutcome = PayloadOutcome.PENDING
    signer_account: Optional[str] = None
    txid: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome in TERMINAL_OUTCOMES


class PaymentParams(BaseModel):
    loan_id: str = Field(min_length=1)
    funder_id: str = Field(min_length=1)
    funder_address: str
    destination: str
    amount_xrp: float = Field(gt=0)

    @field_validator("amount_xrp")
    @classmethod
    def _at_least_one_drop(cls, value: float) -> float:
        if round(value, 6) <= 0:
            raise ValueError("Amount must be at least one drop (0.000001 XRP)")
        return value

    @field_validator("funder_address", "destination")
    @classmethod
    def _classic_address(cls, value: str) -> str:
        if not value or not is_valid_classic_address(value):
            raise ValueError(f"Not a valid XRPL classic address: {value!r}")
        return value


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    wallet_address: str
    access_token: Optional[str] = None


class PendingContext(BaseModel):
    """What a resumed payload needs besides its identifier."""

    kind: PayloadKind
    session: Optional[Session] = None
    params: Optional[PaymentParams] = None


class Contribution(BaseModel):
    id: Optional[str] = None
    loan_id: str
    funder_id: str
    amount: float
    tx_hash: str
    contributed_at: datetime


class StartPaymentRequest(BaseModel):
    loan_id: str
    amount_xrp: float = Field(gt=0)
    funder_address: str
    user_id: str
    wallet_address: str


class FlowView(BaseModel):
    identifier: Optional[str] = None
    kind: Optional[PayloadKind] = None
    state: PollerState = PollerState.IDLE
    attempts: int = 0
    deep_link: Optional[str] = None
    qr_payload: Optional[str] = None
    session: Optional[Session] = None
    contribution: Optional[Contribution] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class AppInfo(BaseModel):
    xumm_mode: str
    backend_mode: str
    poll_interval_seconds: float
    poll_initial_delay_seconds: float
    poll_max_attempts: int
