class DomainException(Exception):
    pass


# --- NotFound ---

class NotFoundError(DomainException):
    pass


class CartNotFoundError(NotFoundError):
    pass


class CartItemNotFoundError(NotFoundError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class AddressNotFoundError(NotFoundError):
    pass


class VariantNotFoundError(NotFoundError):
    pass


class VoucherNotFoundError(NotFoundError):
    pass


class PaymentMethodNotFoundError(NotFoundError):
    pass


# --- InvalidState ---

class InvalidStateError(DomainException):
    pass


class CartEmptyError(InvalidStateError):
    pass


class CartAlreadyCheckedOutError(InvalidStateError):
    pass


class VariantUnavailableError(InvalidStateError):
    pass


class PaymentMethodUnavailableError(InvalidStateError):
    pass


class InvalidTransitionError(InvalidStateError):
    def __init__(self, current: str, requested: str, reason: str = ""):
        self.current = current
        self.requested = requested
        message = f"Переход {current} -> {requested} недопустим"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# --- Stock ---

class InsufficientStockError(DomainException):
    def __init__(self, variant_id: str, available: int, required: int):
        self.variant_id = variant_id
        self.available = available
        self.required = required
        super().__init__(
            f"Недостаточно товара {variant_id}. Доступно: {available}, требуется: {required}"
        )


# --- Voucher ---

class VoucherIneligibleError(DomainException):
    kind = "ineligible"

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class VoucherInactiveError(VoucherIneligibleError):
    kind = "inactive"


class VoucherNotStartedError(VoucherIneligibleError):
    kind = "not_started"


class VoucherExpiredError(VoucherIneligibleError):
    kind = "expired"


class VoucherBelowMinimumError(VoucherIneligibleError):
    kind = "below_minimum"


class VoucherAboveMaximumError(VoucherIneligibleError):
    kind = "above_maximum"


class VoucherLimitReachedError(VoucherIneligibleError):
    kind = "limit_reached"


class VoucherAlreadyUsedError(VoucherIneligibleError):
    kind = "already_used"


# --- Payments ---

class InvalidSignatureError(DomainException):
    pass


class AmountMismatchError(DomainException):
    pass


class PaymentGatewayError(DomainException):
    pass


# --- Access / concurrency ---

class ForbiddenError(DomainException):
    pass


class ConflictError(DomainException):
    pass
