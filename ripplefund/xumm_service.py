from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4
import json
import logging

import httpx
from xrpl.models.exceptions import XRPLModelException
from xrpl.models.transactions import Memo, Payment
from xrpl.utils import XRPRangeException, str_to_hex, xrp_to_drops

from .config import Settings
from .errors import PayloadCreationError
from .models import PayloadKind, PayloadOutcome, PayloadRequest, PayloadStatus, PaymentParams


logger = logging.getLogger(__name__)

LOAN_MEMO_TYPE = "ripplefund:loan"
XUMM_SIGN_URL = "https://xumm.app/sign"


@dataclass
class _MockPayload:
    kind: PayloadKind
    reads: int = 0
    cancelled: bool = False


def build_payment_txjson(params: PaymentParams) -> Dict[str, Any]:
    memo = json.dumps({"loanId": params.loan_id, "funderId": params.funder_id})
    try:
        amount = xrp_to_drops(Decimal(str(round(params.amount_xrp, 6))))
    except XRPRangeException as exc:
        raise ValueError(f"Unsupported XRP amount {params.amount_xrp}: {exc}") from exc
    if int(amount) <= 0:
        raise ValueError(f"Amount {params.amount_xrp} XRP is less than one drop")
    try:
        payment = Payment(
            account=params.funder_address,
            destination=params.destination,
            amount=amount,
            memos=[
                Memo(
                    memo_type=str_to_hex(LOAN_MEMO_TYPE).upper(),
                    memo_data=str_to_hex(memo).upper(),
                )
            ],
        )
    except XRPLModelException as exc:
        raise ValueError(f"Invalid payment for loan {params.loan_id}: {exc}") from exc
    txjson = payment.to_xrpl()
    # XUMM fills in the signer's key
    if not txjson.get("SigningPubKey"):
        txjson.pop("SigningPubKey", None)
    return txjson


def parse_status(body: Dict[str, Any]) -> PayloadStatus:
    meta = body.get("meta")
    if not isinstance(meta, dict):
        return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)
    if meta.get("signed"):
        response = body.get("response")
        if not isinstance(response, dict):
            return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)
        account = response.get("account")
        txid = response.get("txid")
        if not account or not isinstance(account, str):
            return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)
        if txid is not None and not isinstance(txid, str):
            return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)
        return PayloadStatus(
            resolved=True,
            outcome=PayloadOutcome.SIGNED,
            signer_account=account,
            txid=txid,
        )
    if meta.get("cancelled"):
        return PayloadStatus(resolved=True, outcome=PayloadOutcome.CANCELLED)
    if meta.get("expired"):
        return PayloadStatus(resolved=True, outcome=PayloadOutcome.EXPIRED)
    # resolved without a signature means the user rejected it in the wallet
    if meta.get("resolved"):
        return PayloadStatus(resolved=True, outcome=PayloadOutcome.CANCELLED)
    return PayloadStatus()


class XummService:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.mode = settings.xumm_mode.lower()
        self._client = client
        self._mock_payloads: Dict[str, _MockPayload] = {}
        if self.mode != "mock" and self._client is None:
            self._init_client()

    def _init_client(self) -> None:
        if not self.settings.xumm_api_key or not self.settings.xumm_api_secret:
            raise PayloadCreationError(
                "XUMM_API_KEY and XUMM_API_SECRET are required for XUMM mode 'live'"
            )
        self._client = httpx.AsyncClient(
            base_url=self.settings.xumm_api_url.rstrip("/"),
            timeout=self.settings.http_timeout_seconds,
            headers={
                "X-API-Key": self.settings.xumm_api_key,
                "X-API-Secret": self.settings.xumm_api_secret,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def sign_url(self, identifier: str) -> str:
        return f"{XUMM_SIGN_URL}/{identifier}"

    async def create_request(
        self, kind: PayloadKind, params: Optional[PaymentParams] = None
    ) -> PayloadRequest:
        if kind == PayloadKind.PAYMENT:
            if params is None:
                raise ValueError("Payment payloads need a destination and an amount")
            if not params.destination or params.amount_xrp <= 0:
                raise ValueError("Payment payloads need a destination and a positive amount")
        # built in mock mode too, so both modes reject the same payments
        payload = self._payload_body(kind, params)
        if self.mode == "mock":
            return self._mock_create(kind)
        return await self._real_create(kind, payload)

    async def get_status(self, identifier: str) -> PayloadStatus:
        if self.mode == "mock":
            return self._mock_status(identifier)
        return await self._real_status(identifier)

    async def invalidate(self, identifier: str) -> bool:
        if self.mode == "mock":
            payload = self._mock_payloads.get(identifier)
            if payload is None:
                return False
            payload.cancelled = True
            return True
        try:
            resp = await self._client.delete(f"/payload/{identifier}")
            resp.raise_for_status()
            return bool(resp.json().get("result", {}).get("cancelled", False))
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("Could not invalidate payload %s: %s", identifier, exc)
            return False

    def _payload_body(self, kind: PayloadKind, params: Optional[PaymentParams]) -> Dict[str, Any]:
        if kind == PayloadKind.SIGN_IN:
            return {"txjson": {"TransactionType": "SignIn"}}
        return {
            "txjson": build_payment_txjson(params),
            "custom_meta": {
                "identifier": f"loan_funding_{params.loan_id}_{params.funder_id}",
            },
        }

    async def _real_create(self, kind: PayloadKind, payload: Dict[str, Any]) -> PayloadRequest:
        try:
            resp = await self._client.post("/payload", json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as exc:
            raise PayloadCreationError(f"XUMM payload request failed: {exc}") from exc
        except ValueError as exc:
            raise PayloadCreationError("XUMM returned a non-JSON payload response") from exc

        identifier = body.get("uuid") if isinstance(body, dict) else None
        links = body.get("next") if identifier else None
        deep_link = links.get("always") if isinstance(links, dict) else None
        if not identifier or not deep_link:
            raise PayloadCreationError(f"Malformed XUMM payload response: {body!r}")
        refs = body.get("refs")
        qr_payload = (refs.get("qr_png") if isinstance(refs, dict) else None) or deep_link
        logger.info("Created %s payload %s", kind.value, identifier)
        return PayloadRequest(
            identifier=identifier, kind=kind, deep_link=deep_link, qr_payload=qr_payload
        )

    async def _real_status(self, identifier: str) -> PayloadStatus:
        try:
            resp = await self._client.get(f"/payload/{identifier}")
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Status check for payload %s failed: %s", identifier, exc)
            return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)
        if not isinstance(body, dict):
            return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)
        return parse_status(body)

    def _mock_create(self, kind: PayloadKind) -> PayloadRequest:
        identifier = str(uuid4())
        self._mock_payloads[identifier] = _MockPayload(kind=kind)
        deep_link = self.sign_url(identifier)
        return PayloadRequest(
            identifier=identifier,
            kind=kind,
            deep_link=deep_link,
            qr_payload=f"{deep_link}_q.png",
        )

    def _mock_status(self, identifier: str) -> PayloadStatus:
        payload = self._mock_payloads.get(identifier)
        if payload is None:
            return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)
        if payload.cancelled:
            return PayloadStatus(resolved=True, outcome=PayloadOutcome.CANCELLED)
        payload.reads += 1
        if payload.reads < self.settings.mock_sign_after_polls:
            return PayloadStatus()
        return PayloadStatus(
            resolved=True,
            outcome=PayloadOutcome.SIGNED,
            signer_account=self.settings.mock_signer_account,
            txid=uuid4().hex.upper(),
        )
