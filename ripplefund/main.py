from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
import logging

from .backend import build_backend
from .config import settings
from .coordinator import PayloadCoordinator
from .errors import (
    PayloadCreationError,
    PayloadInProgressError,
    WalletUnavailableError,
)
from .escrow import EscrowMaterializer
from .models import AppInfo, FlowView, PayloadRequest, Session, StartPaymentRequest
from .poller import StatusPoller
from .resumption import JsonFileStorage, ResumptionStore
from .session import SessionMaterializer
from .xumm_service import XummService


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

backend = build_backend(settings)
xumm_service = XummService(settings)
store = ResumptionStore(JsonFileStorage(settings.pending_store_path))
poller = StatusPoller(xumm_service, store, settings)
coordinator = PayloadCoordinator(
    service=xumm_service,
    store=store,
    poller=poller,
    sessions=SessionMaterializer(backend, settings),
    escrow=EscrowMaterializer(backend),
    backend=backend,
)

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_api_key(x_api_key: str = Header(default="")) -> None:
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.on_event("startup")
async def startup() -> None:
    flow = await coordinator.resume()
    if flow is not None:
        logger.info("Resumed polling for payload %s", flow.identifier)


@app.on_event("shutdown")
async def shutdown() -> None:
    await coordinator.aclose()
    await xumm_service.aclose()
    await backend.aclose()


@app.get("/api/info", response_model=AppInfo)
async def info() -> AppInfo:
    return AppInfo(
        xumm_mode=settings.xumm_mode,
        backend_mode=settings.backend_mode,
        poll_interval_seconds=settings.poll_interval_seconds,
        poll_initial_delay_seconds=settings.poll_initial_delay_seconds,
        poll_max_attempts=settings.poll_max_attempts,
    )


@app.post("/api/signin", response_model=PayloadRequest)
async def start_sign_in(_: None = Depends(require_api_key)) -> PayloadRequest:
    try:
        flow = await coordinator.begin_sign_in()
    except PayloadInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (PayloadCreationError, WalletUnavailableError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return flow.request


@app.post("/api/payments", response_model=PayloadRequest)
async def start_payment(
    payload: StartPaymentRequest, _: None = Depends(require_api_key)
) -> PayloadRequest:
    session = Session(user_id=payload.user_id, wallet_address=payload.wallet_address)
    try:
        flow = await coordinator.begin_payment(
            session, payload.loan_id, payload.amount_xrp, payload.funder_address
        )
    except PayloadInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (PayloadCreationError, WalletUnavailableError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return flow.request


@app.get("/api/payload", response_model=FlowView)
async def current_payload() -> FlowView:
    if coordinator.current is None:
        pending = await store.get()
        if not pending:
            return FlowView()
        context = await store.get_context()
        return FlowView(identifier=pending, kind=context.kind if context else None)
    return coordinator.current.view()


@app.post("/api/payload/cancel")
async def cancel_payload(_: None = Depends(require_api_key)):
    return {"cancelled": await coordinator.cancel()}
