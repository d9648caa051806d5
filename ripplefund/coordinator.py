"""
Wallet sign-in and loan payment flows.

A flow creates a XUMM payload, remembers its identifier in the resumption
store, polls it to a terminal state and then turns a signature into either an
application session or a loan contribution. Every exit path (signed,
cancelled, expired, timed out, failed, abandoned) clears the stored
identifier once, and every flow settles its result exactly once.
"""
from typing import Any, Awaitable, Callable, Optional, Protocol, Set
import asyncio
import logging

from .backend import Backend
from .errors import (
    BackendError,
    ContributionRecordError,
    PayloadAbandonedError,
    PayloadCancelledError,
    PayloadCreationError,
    PayloadExpiredError,
    PayloadHandlingError,
    PayloadInProgressError,
    PayloadTimedOutError,
    RippleFundError,
    SessionMaterializationError,
    WalletUnavailableError,
)
from .escrow import EscrowMaterializer
from .models import (
    Contribution,
    FlowView,
    PayloadKind,
    PayloadRequest,
    PayloadStatus,
    PaymentParams,
    PendingContext,
    PollerState,
    Session,
)
from .poller import PollRun, StatusPoller
from .resumption import ResumptionStore
from .session import SessionMaterializer
from .xumm_service import XummService


logger = logging.getLogger(__name__)


class DeepLinkLauncher(Protocol):
    async def open(self, uri: str) -> bool: ...


class Flow:
    """One payload from creation to its single resolution."""

    def __init__(self, request: PayloadRequest, generation: int) -> None:
        self.request = request
        self.generation = generation
        self.run: Optional[PollRun] = None
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._future.add_done_callback(_mark_retrieved)

    @property
    def identifier(self) -> str:
        return self.request.identifier

    @property
    def done(self) -> bool:
        return self._future.done()

    def settle(self, value: Any = None, error: Optional[BaseException] = None) -> bool:
        if self._future.done():
            return False
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(value)
        return True

    async def result(self) -> Any:
        return await asyncio.shield(self._future)

    def view(self) -> FlowView:
        view = FlowView(
            identifier=self.identifier,
            kind=self.request.kind,
            state=self.run.state if self.run else PollerState.IDLE,
            attempts=self.run.attempts if self.run else 0,
            deep_link=self.request.deep_link,
            qr_payload=self.request.qr_payload,
        )
        if not self._future.done():
            return view
        error = self._future.exception()
        if error is not None:
            view.error = str(error)
            view.error_type = type(error).__name__
            if isinstance(error, PayloadAbandonedError):
                view.state = PollerState.ABANDONED
        elif isinstance(self._future.result(), Session):
            view.session = self._future.result()
        elif isinstance(self._future.result(), Contribution):
            view.contribution = self._future.result()
        return view


def _mark_retrieved(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


Materialize = Callable[[PayloadStatus], Awaitable[Any]]


class _FlowHandler:
    """Terminal handler for one flow; the poller calls at most one method."""

    def __init__(self, coordinator: "PayloadCoordinator", flow: Flow, materialize: Materialize) -> None:
        self.coordinator = coordinator
        self.flow = flow
        self.materialize = materialize

    async def _release(self, identifier: str) -> None:
        # a storage failure must not keep the flow from settling
        try:
            await self.coordinator._release(identifier)
        except Exception:
            logger.exception("Could not clear pending payload %s", identifier)

    async def on_signed(self, identifier: str, status: PayloadStatus) -> None:
        await self._release(identifier)
        try:
            value = await self.materialize(status)
        except RippleFundError as exc:
            self.flow.settle(error=exc)
            return
        self.flow.settle(value)

    async def on_cancelled(self, identifier: str) -> None:
        await self._release(identifier)
        self.flow.settle(error=PayloadCancelledError(identifier))

    async def on_expired(self, identifier: str) -> None:
        await self._release(identifier)
        self.flow.settle(error=PayloadExpiredError(identifier))

    async def on_timeout(self, identifier: str, attempts: int) -> None:
        await self._release(identifier)
        self.flow.settle(error=PayloadTimedOutError(identifier, attempts))

    async def on_error(self, identifier: str, error: Exception) -> None:
        await self._release(identifier)
        self.flow.settle(error=PayloadHandlingError(identifier, str(error) or type(error).__name__))


class PayloadCoordinator:
    def __init__(
        self,
        service: XummService,
        store: ResumptionStore,
        poller: StatusPoller,
        sessions: SessionMaterializer,
        escrow: EscrowMaterializer,
        backend: Backend,
        launcher: Optional[DeepLinkLauncher] = None,
    ) -> None:
        self.service = service
        self.store = store
        self.poller = poller
        self.sessions = sessions
        self.escrow = escrow
        self.backend = backend
        self.launcher = launcher
        self.current: Optional[Flow] = None
        self._background: Set[asyncio.Task] = set()
        self._starting = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self.current is not None and not self.current.done

    async def start_sign_in(self) -> Session:
        flow = await self.begin_sign_in()
        return await flow.result()

    async def start_payment(
        self, session: Session, loan_id: str, amount_xrp: float, funder_address: str
    ) -> Contribution:
        flow = await self.begin_payment(session, loan_id, amount_xrp, funder_address)
        return await flow.result()

    async def begin_sign_in(self) -> Flow:
        async with self._starting:
            self._ensure_idle()
            request = await self.service.create_request(PayloadKind.SIGN_IN)
            return await self._launch(
                request, self._sign_in_materializer, PendingContext(kind=PayloadKind.SIGN_IN)
            )

    async def begin_payment(
        self, session: Session, loan_id: str, amount_xrp: float, funder_address: str
    ) -> Flow:
        async with self._starting:
            self._ensure_idle()
            if session.wallet_address and funder_address != session.wallet_address:
                raise ValueError(
                    f"Funder wallet {funder_address} is not the signed-in wallet {session.wallet_address}"
                )
            try:
                destination = await self.backend.get_loan_destination(loan_id)
            except BackendError as exc:
                raise PayloadCreationError(f"Cannot fund loan {loan_id}: {exc.detail}") from exc
            params = PaymentParams(
                loan_id=loan_id,
                funder_id=session.user_id,
                funder_address=funder_address,
                destination=destination,
                amount_xrp=amount_xrp,
            )
            request = await self.service.create_request(PayloadKind.PAYMENT, params)
            context = PendingContext(kind=PayloadKind.PAYMENT, session=session, params=params)
            return await self._launch(
                request, self._payment_materializer(session, params), context
            )

    async def resume(self) -> Optional[Flow]:
        """Pick up polling for an identifier left in the store by a previous process.

        Payments resume as payments when their context was stored with them;
        anything else resumes as a sign-in.
        """
        if self.busy:
            return self.current
        identifier = await self.store.get()
        if not identifier:
            return None
        context = await self.store.get_context()
        deep_link = self.service.sign_url(identifier)
        if (
            context is not None
            and context.kind == PayloadKind.PAYMENT
            and context.session is not None
            and context.params is not None
        ):
            kind = PayloadKind.PAYMENT
            materialize = self._payment_materializer(context.session, context.params)
        else:
            kind = PayloadKind.SIGN_IN
            materialize = self._sign_in_materializer
        logger.info("Resuming %s payload %s", kind.value, identifier)
        request = PayloadRequest(
            identifier=identifier, kind=kind, deep_link=deep_link, qr_payload=deep_link
        )
        return self._start(request, self.poller.advance(), materialize)

    async def cancel(self) -> bool:
        flow = self.current
        if flow is None or flow.done:
            identifier = await self.store.get()
            if not identifier or not self.poller.claim(identifier):
                return False
            self.poller.advance()
            try:
                await self.store.clear()
            finally:
                self.poller.release(identifier)
            self._invalidate_later(identifier)
            return True
        identifier = flow.identifier
        if not self.poller.claim(identifier):
            # a terminal handler already owns this payload
            return False
        logger.info("Pending payload %s cancelled locally", identifier)
        self.poller.advance()
        try:
            await self.store.clear()
        finally:
            if flow.run is not None:
                flow.run.stop()
            self._invalidate_later(identifier)
            flow.settle(error=PayloadAbandonedError(identifier))
            self.poller.release(identifier)
        return True

    async def aclose(self) -> None:
        tasks = list(self._background)
        if self.current is not None and self.current.run is not None:
            self.current.run.stop()
            if self.current.run.task is not None:
                tasks.append(self.current.run.task)
            # the stored identifier stays so the next process can resume it
            self.current.settle(error=PayloadAbandonedError(self.current.identifier))
        await asyncio.gather(*tasks, return_exceptions=True)

    def _ensure_idle(self) -> None:
        if self.busy:
            raise PayloadInProgressError(self.current.identifier)

    async def _launch(
        self, request: PayloadRequest, materialize: Materialize, context: PendingContext
    ) -> Flow:
        await self.store.set(request.identifier, context)
        generation = self.poller.advance()
        if self.launcher is not None and not await self._open_wallet(request.deep_link):
            self.poller.advance()
            await self.store.clear()
            self._invalidate_later(request.identifier)
            raise WalletUnavailableError(request.deep_link)
        return self._start(request, generation, materialize)

    async def _open_wallet(self, deep_link: str) -> bool:
        try:
            return await self.launcher.open(deep_link)
        except Exception:
            logger.exception("Deep link launcher failed for %s", deep_link)
            return False

    def _start(self, request: PayloadRequest, generation: int, materialize: Materialize) -> Flow:
        flow = Flow(request, generation)
        handler = _FlowHandler(self, flow, materialize)
        flow.run = self.poller.start(request.identifier, handler, generation)
        self.current = flow
        return flow

    async def _sign_in_materializer(self, status: PayloadStatus) -> Session:
        try:
            return await self.sessions.materialize(status.signer_account)
        except RippleFundError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure creating a session for %s", status.signer_account)
            raise SessionMaterializationError(status.signer_account or "", str(exc)) from exc

    def _payment_materializer(self, session: Session, params: PaymentParams) -> Materialize:
        async def materialize(status: PayloadStatus) -> Contribution:
            reference = status.txid or status.signer_account
            try:
                return await self.escrow.record_contribution(
                    params.loan_id,
                    session.user_id,
                    params.amount_xrp,
                    reference,
                    session.access_token,
                )
            except RippleFundError:
                raise
            except Exception as exc:
                logger.exception("Unexpected failure recording payment %s", reference)
                raise ContributionRecordError(params.loan_id, reference, str(exc)) from exc

        return materialize

    async def _release(self, identifier: str) -> None:
        if await self.store.get() == identifier:
            await self.store.clear()

    def _invalidate_later(self, identifier: str) -> None:
        task = asyncio.create_task(self.service.invalidate(identifier))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
