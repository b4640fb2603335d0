"""Domain exceptions raised by the order, payment and ledger services."""


class MarketplaceError(Exception):
    """Base exception for all marketplace domain errors."""

    retryable = False


class NotFoundError(MarketplaceError):
    def __init__(self, entity: str, entity_id: int | str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class PermissionDeniedError(MarketplaceError):
    pass


class OrderValidationError(MarketplaceError):
    """Input rejected before any mutation; the caller can correct and resubmit."""


class EmptyCartError(OrderValidationError):
    def __init__(self):
        super().__init__("Cart is empty")


class ProductUnavailableError(OrderValidationError):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found or unavailable")


class InsufficientStockError(OrderValidationError):
    def __init__(self, product_id: int, requested: int, product_name: str | None = None):
        self.product_id = product_id
        self.requested = requested
        label = product_name or f"product {product_id}"
        super().__init__(f"Insufficient stock for {label} (requested {requested})")


class UnverifiedSellerError(OrderValidationError):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is sold by an unverified seller and cannot be ordered")


class InactiveBuyerError(OrderValidationError):
    def __init__(self, buyer_id: int):
        self.buyer_id = buyer_id
        super().__init__(f"Buyer {buyer_id} is not active")


class InvalidAmountError(OrderValidationError):
    pass


class ConflictError(MarketplaceError):
    """Operation refused by a state guard; nothing was changed."""


class InvalidTransitionError(ConflictError):
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current} to {target}")


class PayoutConflictError(ConflictError):
    def __init__(self, record_ids: list[int], message: str = "Some records are not eligible for payout"):
        self.record_ids = sorted(record_ids)
        super().__init__(f"{message}: {self.record_ids}")


class RefundNotAllowedError(ConflictError):
    pass


class OrderTimeoutError(MarketplaceError):
    """Deadline exceeded; the order may still have been committed."""

    retryable = True

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Order creation did not finish within {timeout_seconds:g}s. "
            "Check your orders before trying again."
        )


class PaymentProviderError(MarketplaceError):
    pass


class PaymentNotConfiguredError(MarketplaceError):
    pass
