"""Domain exceptions for the Atelier settlement engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""


class AtelierError(Exception):
    """Base exception for all domain errors."""

    retryable = False

    def __init__(self, message: str, code: str = "ATELIER_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


class ValidationError(AtelierError):
    """Raised when an action's input violates a business rule."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")


# --- State Machine Errors ---


class InvalidStateTransitionError(AtelierError):
    """Raised when an attempted state transition is not allowed.

    Example: paid -> completed (must go through in_progress and delivered)
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: cannot {attempted_event} from {current_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_event


class ConcurrentStateChangeError(AtelierError):
    """Raised when a conditional status update matched zero rows.

    Another request moved the order first. The caller may re-read and retry.
    """

    retryable = True

    def __init__(self, order_id: str, expected_status: str) -> None:
        super().__init__(
            message="Order status changed concurrently, please retry",
            code="CONCURRENT_STATE_CHANGE",
        )
        self.order_id = order_id
        self.expected_status = expected_status


# --- Lookup Errors ---


class OrderNotFoundError(AtelierError):
    """Raised when an order ID does not exist."""

    def __init__(self, order_id: str) -> None:
        super().__init__(message=f"Order not found: {order_id}", code="ORDER_NOT_FOUND")
        self.order_id = order_id


class ServiceNotFoundError(AtelierError):
    """Raised when a service ID does not exist or is inactive."""

    def __init__(self, service_id: str) -> None:
        super().__init__(
            message=f"Service not found: {service_id}", code="SERVICE_NOT_FOUND"
        )
        self.service_id = service_id


class SettlementNotFoundError(AtelierError):
    def __init__(self, settlement_id: str) -> None:
        super().__init__(
            message=f"Settlement not found: {settlement_id}",
            code="SETTLEMENT_NOT_FOUND",
        )


class NotOrderPartyError(AtelierError):
    """Raised when the actor is not the client or provider of record."""

    def __init__(self, order_id: str, role: str) -> None:
        super().__init__(
            message=f"Only the {role} of order {order_id} can perform this action",
            code="NOT_ORDER_PARTY",
        )
        self.role = role


# --- Workspace / Quota Errors ---


class NotAWorkspaceOrderError(AtelierError):
    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Order {order_id} is not a workspace order",
            code="NOT_A_WORKSPACE_ORDER",
        )


class QuotaExhaustedError(AtelierError):
    """Raised when a workspace order has used all of its generations."""

    def __init__(self, used: int, total: int) -> None:
        super().__init__(
            message=f"Quota exhausted: {used}/{total} generations used",
            code="QUOTA_EXHAUSTED",
        )
        self.used = used
        self.total = total


class WorkspaceExpiredError(AtelierError):
    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Workspace for order {order_id} has expired",
            code="WORKSPACE_EXPIRED",
        )


class ProviderNotConfiguredError(AtelierError):
    """Raised when a service has no automated generation back-end."""

    def __init__(self, provider_key: str | None) -> None:
        super().__init__(
            message=f"No generation provider configured (provider_key={provider_key!r})",
            code="PROVIDER_NOT_CONFIGURED",
        )


class FulfillmentAttemptsExhaustedError(AtelierError):
    def __init__(self, attempts: int) -> None:
        super().__init__(
            message=(
                f"Automatic fulfillment already attempted {attempts} times; "
                "deliver manually or cancel the order"
            ),
            code="FULFILLMENT_ATTEMPTS_EXHAUSTED",
        )
        self.attempts = attempts


# --- Payment Errors ---


class PaymentVerificationError(AtelierError):
    """Raised when an on-chain payment does not match what the order expects."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message=message, code="PAYMENT_VERIFICATION_FAILED")
        self.tx_hash = tx_hash


class TransactionAlreadyUsedError(PaymentVerificationError):
    """Raised when a transaction hash has already funded another order."""

    def __init__(self, tx_hash: str) -> None:
        super().__init__(
            message="This transaction has already been used for another order",
            tx_hash=tx_hash,
        )
        self.code = "TRANSACTION_ALREADY_USED"


# --- Settlement Errors ---


class SettlementError(AtelierError):
    """Raised when a payout or refund could not be completed."""

    def __init__(
        self,
        message: str,
        tx_hash: str | None = None,
        settlement_id: str | None = None,
    ) -> None:
        super().__init__(message=message, code="SETTLEMENT_ERROR")
        self.tx_hash = tx_hash
        self.settlement_id = settlement_id


class InsufficientFundsError(SettlementError):
    """Raised when the treasury holds less USDC than a transfer needs."""

    def __init__(self, required: str, available: str) -> None:
        super().__init__(
            message=f"Insufficient treasury USDC. Need ${required}, have ${available}",
        )
        self.code = "INSUFFICIENT_FUNDS"


class TransferRejectedError(SettlementError):
    """Raised when a transfer is refused before broadcast. Nothing left the treasury."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message)
        self.code = "TRANSFER_REJECTED"


class SettlementUnconfirmedError(SettlementError):
    """Raised when a transfer may have been sent but its outcome was not observed.

    tx_hash is None when the submission itself failed after the transfer was
    handed to the wallet, so there is nothing to look up on chain.
    """

    def __init__(self, tx_hash: str | None, reason: str) -> None:
        if tx_hash:
            message = f"Transfer {tx_hash} submitted but not confirmed: {reason}"
        else:
            message = f"Transfer outcome unknown, needs manual review: {reason}"
        super().__init__(message=message, tx_hash=tx_hash)
        self.code = "SETTLEMENT_UNCONFIRMED"


# --- Provider Errors ---


class ProviderError(AtelierError):
    """Raised when a generation back-end rejects or fails a request."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message=message, code="PROVIDER_ERROR")
        self.provider = provider
        self.status_code = status_code


class GenerationFailedError(ProviderError):
    """Raised when a provider job finished in a failed state."""

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message=message, provider=provider)
        self.code = "GENERATION_FAILED"


class ContentRejectedError(ProviderError):
    """Raised when a provider refuses the content (e.g. NSFW filter)."""

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message=message, provider=provider)
        self.code = "CONTENT_REJECTED"


class GenerationTimeoutError(ProviderError):
    def __init__(self, timeout_seconds: float, provider: str = "") -> None:
        super().__init__(
            message=f"Generation timed out after {timeout_seconds:g}s",
            provider=provider,
        )
        self.code = "GENERATION_TIMEOUT"
        self.timeout_seconds = timeout_seconds


# --- Idempotency Errors ---


class DuplicateOperationError(AtelierError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )
