from typing import Optional


class RippleFundError(Exception):
    """Base exception for every terminal failure surfaced by the gateway."""


class PayloadCreationError(RippleFundError):
    """The payload service could not hand out an identifier."""


class PayloadInProgressError(RippleFundError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Payload {identifier} is still awaiting a signature")


class WalletUnavailableError(RippleFundError):
    def __init__(self, deep_link: str):
        self.deep_link = deep_link
        super().__init__("Could not open the XUMM app. Please ensure it is installed.")


class PayloadTerminalError(RippleFundError):
    """A payload reached a terminal state other than signed."""

    def __init__(self, identifier: str, message: str):
        self.identifier = identifier
        super().__init__(message)


class PayloadCancelledError(PayloadTerminalError):
    def __init__(self, identifier: str):
        super().__init__(identifier, f"Payload {identifier} was cancelled in the wallet")


class PayloadExpiredError(PayloadTerminalError):
    def __init__(self, identifier: str):
        super().__init__(identifier, f"Payload {identifier} expired at the payload service")


class PayloadTimedOutError(PayloadTerminalError):
    def __init__(self, identifier: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            identifier, f"Gave up waiting for payload {identifier} after {attempts} status checks"
        )


class PayloadAbandonedError(PayloadTerminalError):
    def __init__(self, identifier: str):
        super().__init__(identifier, f"Payload {identifier} was abandoned before resolution")


class BackendError(RippleFundError):
    """HTTP or data error from the managed data store."""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        self.detail = detail
        self.status_code = status_code
        prefix = f"Backend error {status_code}" if status_code else "Backend error"
        super().__init__(f"{prefix}: {detail}")


class UnknownIdentityError(BackendError):
    """Sign-in was refused because no account exists for the credential."""


class SessionMaterializationError(RippleFundError):
    def __init__(self, wallet_address: str, detail: str):
        self.wallet_address = wallet_address
        self.detail = detail
        super().__init__(f"Failed to create a session for {wallet_address}: {detail}")


class ContributionRecordError(RippleFundError):
    """The payment was signed but recording the contribution failed.

    The funds may already have moved on the ledger, so this needs manual
    reconciliation against ``signed_reference`` rather than a retry.
    """

    def __init__(self, loan_id: str, signed_reference: str, detail: str):
        self.loan_id = loan_id
        self.signed_reference = signed_reference
        self.detail = detail
        super().__init__(
            f"Payment {signed_reference} for loan {loan_id} was signed but could not be "
            f"recorded ({detail}); reconciliation required"
        )


class PayloadHandlingError(PayloadTerminalError):
    """A payload reached a terminal state but handling it failed unexpectedly."""

    def __init__(self, identifier: str, detail: str):
        self.detail = detail
        super().__init__(identifier, f"Payload {identifier} could not be handled: {detail}")
