class SettlementError(Exception):
    """Base exception for failures surfaced by the settlement pipeline.

    ``error_code`` is the stable wire identifier returned to callers and
    ``http_status`` the status the HTTP layer answers with.
    """

    error_code = "internal_error"
    http_status = 500

    def __init__(self, message: str, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(message)


class ClientError(SettlementError):
    """Raised when the request itself is malformed."""

    error_code = "bad_request"
    http_status = 400


class MissingFieldsError(ClientError):
    """Raised when required request fields are absent."""

    error_code = "missing_fields"

    def __init__(self, fields: list[str]) -> None:
        self.fields = fields
        super().__init__(f"Missing required fields: {', '.join(fields)}", detail=", ".join(fields))


class AuthError(SettlementError):
    """Raised when the caller's bearer credential is missing or invalid."""

    error_code = "unauthorized"
    http_status = 401


class RateLimitError(SettlementError):
    """Raised when an identity exceeded its request budget."""

    error_code = "rate_limited"
    http_status = 429

    def __init__(self, identity: str, retry_after: int) -> None:
        self.identity = identity
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {identity}, retry after {retry_after}s")


class NotFoundError(SettlementError):
    """Base for lookups that found nothing."""

    error_code = "not_found"
    http_status = 404


class ProductNotFoundError(NotFoundError):
    error_code = "product_not_found"

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class OrderNotFoundError(NotFoundError):
    error_code = "order_not_found"

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Gateway order {order_id} not found")


class SellerNotFoundError(SettlementError):
    """Raised when the product's seller has no balance row to credit."""

    def __init__(self, seller_id: str) -> None:
        self.seller_id = seller_id
        super().__init__(f"Seller {seller_id} not found")


class ProductMisconfiguredError(SettlementError):
    """Raised when a product record lacks the price or seller needed to settle."""

    def __init__(self, product_id: str, reason: str) -> None:
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Product {product_id} is misconfigured: {reason}")


class ReconciliationError(SettlementError):
    """Raised when the gateway order does not match the expected sale."""

    error_code = "mismatch"
    http_status = 400

    def __init__(self, reason: str, observed_status: str | None = None) -> None:
        self.reason = reason
        self.observed_status = observed_status
        super().__init__(f"Reconciliation failed: {reason}", detail=reason)


class GatewayError(SettlementError):
    """Base for payment gateway failures. Details stay in logs."""

    error_code = "gateway_unavailable"
    http_status = 500


class GatewayAuthError(GatewayError):
    """Raised when no access token can be obtained from the gateway."""


class GatewayUnavailableError(GatewayError):
    """Raised on network errors, timeouts and 5xx answers from the gateway."""

    http_status = 503


class ConflictError(SettlementError):
    """Base for contention failures."""

    error_code = "conflict"
    http_status = 503


class TransactionConflictError(ConflictError):
    """Raised when the settlement transaction kept losing optimistic-lock races."""

    error_code = "transaction_conflict"

    def __init__(self, order_id: str, attempts: int) -> None:
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Settlement of {order_id} conflicted {attempts} times")


class OptimisticLockError(Exception):
    """Raised when optimistic locking conflict occurs."""

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"Optimistic lock failed for {entity} {entity_id}")


class CurrencyMismatchError(SettlementError):
    """Raised when a sale's currency differs from the seller balance currency."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Currency mismatch: expected {expected}, got {actual}")
