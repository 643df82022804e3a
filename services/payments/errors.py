# services/payments/errors.py
"""
Payment error taxonomy.

Every error carries an http_status and a short machine code so the blueprint
can render it without a per-type branch. A declined card is NOT an error: it
comes back as a FAILED payment.
"""


class PaymentError(Exception):
    http_status = 400
    code = "payment_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(PaymentError):
    """Invalid payment request"""
    http_status = 400
    code = "validation_error"


class OrderNotFound(PaymentError):
    """Order not found"""
    http_status = 404
    code = "order_not_found"


class OrderAlreadyPaid(PaymentError):
    """Order is already paid"""
    http_status = 409
    code = "order_already_paid"


class PaymentNotFound(PaymentError):
    """Payment not found"""
    http_status = 404
    code = "payment_not_found"


class GatewayError(PaymentError):
    """Payment gateway unavailable"""
    http_status = 502
    code = "gateway_error"


class GatewayTimeout(GatewayError):
    """Payment gateway timed out"""
    http_status = 504
    code = "gateway_timeout"


class InvalidSignature(PaymentError):
    """Invalid webhook signature"""
    http_status = 400
    code = "invalid_signature"


class NotRefundable(PaymentError):
    """Payment cannot be refunded"""
    http_status = 409
    code = "not_refundable"


class RefundError(PaymentError):
    """Gateway rejected the refund"""
    http_status = 502
    code = "refund_error"


class RefundFailed(PaymentError):
    """Refund failed"""
    http_status = 502
    code = "refund_failed"
