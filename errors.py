"""
Domain errors raised by the cart, checkout and payment modules.

Each error carries the HTTP status it maps to; main.py registers a single
exception handler that renders them as {"detail": message}.
"""


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ShopError):
    status_code = 404


class AuthorizationError(ShopError):
    status_code = 403


class BusinessRuleError(ShopError):
    status_code = 400


class EmptyCartError(BusinessRuleError):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class InsufficientStockError(BusinessRuleError):
    def __init__(self, product_name: str):
        super().__init__(f"Insufficient stock for {product_name}")
        self.product_name = product_name


class PaymentNotCompletedError(BusinessRuleError):
    def __init__(self, message: str = "Payment not completed"):
        super().__init__(message)


class PaymentAmountMismatchError(BusinessRuleError):
    def __init__(self, message: str = "Cart changed after payment; please check out again"):
        super().__init__(message)


class OrderNotCancellableError(BusinessRuleError):
    def __init__(self, message: str = "Order cannot be cancelled at this stage"):
        super().__init__(message)


class InvalidStatusTransitionError(BusinessRuleError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change order status from {current} to {requested}")
        self.current = current
        self.requested = requested


class PaymentGatewayError(ShopError):
    """A payment provider call failed; message is safe to show the customer."""
    status_code = 400


class MailDeliveryError(ShopError):
    status_code = 503

    def __init__(self, message: str = "Email could not be sent"):
        super().__init__(message)
