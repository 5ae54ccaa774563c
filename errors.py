"""
Error taxonomy for the storefront.

Every error carries the HTTP status it maps to and a message that is safe to
show to the client. Internal detail goes to the log, never into ``message``.
"""


class CheckoutError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequest(CheckoutError):
    status_code = 400
    default_message = "Bad request"


class InvalidCheckoutRequest(BadRequest):
    default_message = "Invalid checkout request"


class Unauthorized(CheckoutError):
    status_code = 401
    default_message = "Unauthorized - Please login"


class NotFound(CheckoutError):
    status_code = 404
    default_message = "Not found"


class Forbidden(CheckoutError):
    status_code = 403
    default_message = "Permission denied"


class ProductUnavailable(CheckoutError):
    status_code = 409

    def __init__(self, product_id: str, name: str = None):
        self.product_id = product_id
        label = name or f"Product {product_id}"
        super().__init__(f"{label} is no longer available")


class OutOfStock(CheckoutError):
    status_code = 409

    def __init__(self, product_id: str, name: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock for {name}: requested {requested}, available {available}"
        )


class PersistenceFailure(CheckoutError):
    status_code = 500
    default_message = "Could not save your order, please try again"


class PaymentProviderError(CheckoutError):
    status_code = 502
    default_message = "Payment provider unavailable, please retry"


class PaymentDeclined(CheckoutError):
    status_code = 402
    default_message = "Payment was declined, please try another payment method"


class PaymentConfirmationMismatch(CheckoutError):
    """Provider captured the payment but the order could not be updated.

    Treated as a soft success by the API layer.
    """
    status_code = 200
    default_message = (
        "Payment received. Your order status may take a moment to update; "
        "contact support if it does not."
    )
