from __future__ import annotations

import httpx
import pytest

from ripplefund.backend import InMemoryBackend, SupabaseBackend
from ripplefund.config import Settings
from ripplefund.errors import BackendError, ContributionRecordError
from ripplefund.escrow import EscrowMaterializer


class TestRecordContribution:
    @pytest.mark.asyncio
    async def test_records_one_row(self):
        backend = InMemoryBackend()
        contribution = await EscrowMaterializer(backend).record_contribution(
            "loan-7", "user-1", 12.5, "A1B2C3"
        )

        assert contribution.loan_id == "loan-7"
        assert contribution.funder_id == "user-1"
        assert contribution.amount == 12.5
        assert contribution.tx_hash == "A1B2C3"
        assert contribution.id is not None
        assert len(backend.contributions) == 1
        assert backend.contributions[0]["tx_hash"] == "A1B2C3"

    @pytest.mark.asyncio
    async def test_write_failure_needs_reconciliation(self):
        class RejectingBackend(InMemoryBackend):
            async def insert_contribution(self, row, access_token=None):
                raise BackendError("permission denied for table loan_contributions", 403)

        with pytest.raises(ContributionRecordError) as excinfo:
            await EscrowMaterializer(RejectingBackend()).record_contribution(
                "loan-7", "user-1", 12.5, "A1B2C3"
            )

        error = excinfo.value
        assert error.signed_reference == "A1B2C3"
        assert error.loan_id == "loan-7"
        assert "reconciliation" in str(error)

    @pytest.mark.asyncio
    async def test_supabase_insert_uses_session_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                201,
                json=[
                    {
                        "id": "c-1",
                        "loan_id": "loan-7",
                        "funder_id": "user-1",
                        "amount": 3,
                        "tx_hash": "T9",
                        "contributed_at": "2026-10-18T10:00:00+00:00",
                    }
                ],
            )

        settings = Settings(supabase_url="https://db.test", supabase_anon_key="anon")
        client = httpx.AsyncClient(base_url="https://db.test", transport=httpx.MockTransport(handler))
        backend = SupabaseBackend(settings, client=client)
        contribution = await EscrowMaterializer(backend).record_contribution(
            "loan-7", "user-1", 3, "T9", access_token="jwt"
        )
        await backend.aclose()

        assert seen == {"path": "/rest/v1/loan_contributions", "auth": "Bearer jwt"}
        assert contribution.id == "c-1"
