"""Custom exceptions for the checkout engine."""


class PosError(Exception):
    """Base exception for all application errors."""
    code = 'error'
    retryable = False

    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['code'] = self.code
        rv['retryable'] = self.retryable
        rv['status'] = 'error'
        return rv


class BusinessLogicError(PosError):
    """Exception raised for business logic violations."""
    code = 'business_rule'

    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)


class ValidationError(BusinessLogicError):
    """Bad input rejected before any persistence (empty cart, bad quantity...)."""
    code = 'validation'


class NotFoundError(PosError):
    """Exception raised when a resource is not found."""
    code = 'not_found'

    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class InsufficientStockError(BusinessLogicError):
    """Raised when an operation fails due to lack of stock."""
    code = 'insufficient_stock'

    def __init__(self, product_name, required, available):
        message = f"Insufficient stock for {product_name}: required {required}, available {available}"
        super().__init__(
            message,
            status_code=409,
            payload={'product': product_name, 'required': required, 'available': available}
        )


class TenderRejectedError(BusinessLogicError):
    """Tender set does not reconcile against the charged total."""
    code = 'tender_rejected'

    def __init__(self, reason, message, difference=None):
        payload = {'reason': reason}
        if difference is not None:
            payload['difference'] = str(difference)
        super().__init__(message, status_code=400, payload=payload)
        self.reason = reason
        self.difference = difference


class StockConflictError(PosError):
    """Stock changed concurrently and the decrement could not be applied."""
    code = 'stock_conflict'
    retryable = True

    def __init__(self, product_id, expected_qty=None, message=None):
        message = message or f"Stock for product {product_id} changed concurrently"
        super().__init__(message, 409, {'product_id': product_id, 'expected_qty': expected_qty})
        self.product_id = product_id
        self.expected_qty = expected_qty


class DurabilityError(PosError):
    """Storage unavailable mid-commit; nothing was persisted."""
    code = 'storage_unavailable'
    retryable = True

    def __init__(self, message="Storage unavailable, the sale was not recorded"):
        super().__init__(message, 503)
