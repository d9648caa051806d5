from datetime import datetime, timezone
from typing import Optional
import logging

from .backend import Backend
from .errors import BackendError, ContributionRecordError
from .models import Contribution


logger = logging.getLogger(__name__)


class EscrowMaterializer:
    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    async def record_contribution(
        self,
        loan_id: str,
        funder_id: str,
        amount: float,
        signed_reference: str,
        access_token: Optional[str] = None,
    ) -> Contribution:
        # TODO: check that funder_id owns the signing wallet once loan_contributions has a row-level policy for it
        row = {
            "loan_id": loan_id,
            "funder_id": funder_id,
            "amount": amount,
            "tx_hash": signed_reference,
            "contributed_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            stored = await self.backend.insert_contribution(row, access_token)
        except BackendError as exc:
            logger.error(
                "Signed payment %s for loan %s could not be recorded: %s",
                signed_reference,
                loan_id,
                exc,
            )
            raise ContributionRecordError(loan_id, signed_reference, exc.detail) from exc
        logger.info("Recorded contribution %s to loan %s", signed_reference, loan_id)
        return Contribution(**{**row, **stored})
