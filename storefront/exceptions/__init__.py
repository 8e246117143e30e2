"""Custom exceptions for the storefront pricing backend."""

class StorefrontError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv

class BusinessLogicError(StorefrontError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)

class NotFoundError(StorefrontError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)

class InvalidCartError(BusinessLogicError):
    """Malformed cart input. The caller must fix the cart, not retry."""
    def __init__(self, message, payload=None):
        super().__init__(message, status_code=400, payload=payload)

class InvalidPromoCodeError(BusinessLogicError):
    """A requested promo code matches no active promotion."""
    def __init__(self, code):
        super().__init__(
            f'El código promocional "{code}" no es válido o expiró',
            status_code=400,
            payload={'code': code, 'reason': 'invalid_code'}
        )
        self.code = code

class UsageLimitExceededError(BusinessLogicError):
    """A requested promo code is exhausted and nothing else covered its items."""
    def __init__(self, code, promotion_id):
        super().__init__(
            f'El código promocional "{code}" ya no está disponible',
            status_code=409,
            payload={'code': code, 'promotion_id': promotion_id, 'reason': 'usage_limit_exceeded'}
        )
        self.code = code
        self.promotion_id = promotion_id

class ReservationExpiredError(BusinessLogicError):
    """A reservation lapsed before commit and its use could not be claimed again. Re-price the cart."""
    def __init__(self, reservation_id, promotion_id):
        super().__init__(
            'La promoción ya no está disponible. Vuelva a cotizar el carrito.',
            status_code=409,
            payload={'promotion_id': promotion_id, 'reason': 'reservation_expired'}
        )
        self.reservation_id = reservation_id
        self.promotion_id = promotion_id

class InvalidPromotionError(BusinessLogicError):
    """A promotion or combo definition is malformed. Raised at catalog load time."""
    def __init__(self, message):
        super().__init__(message, status_code=422)

class PricingUnavailableError(StorefrontError):
    """Catalog or usage ledger unreachable. The caller may retry with backoff."""
    def __init__(self, message="El servicio de precios no está disponible. Intente nuevamente."):
        super().__init__(message, 503, {'retryable': True})


class NegativeTotalClampedWarning(UserWarning):
    """A discount exceeded the value it applied to and was clamped."""
