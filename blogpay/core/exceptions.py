from typing import Optional


class PaymentError(Exception):
    """Base class for settlement errors. `status_code` is what an HTTP caller sees."""

    status_code = 500

    def __init__(self, detail: str, *, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class InvalidSignature(PaymentError):
    status_code = 401


class MalformedPayload(PaymentError):
    status_code = 400


class UnsupportedGateway(PaymentError):
    status_code = 404


class UnknownOrder(PaymentError):
    status_code = 404


class TerminalStateConflict(PaymentError):
    status_code = 409

    def __init__(self, order_id: str, current: str, attempted: str):
        super().__init__(f"Order {order_id} is already {current}; refusing transition to {attempted}")
        self.order_id = order_id
        self.current = current
        self.attempted = attempted


class ReservationInFlight(PaymentError):
    """Another delivery holds the reservation and has not finished applying it."""

    status_code = 409


class GatewayUnavailable(PaymentError):
    status_code = 502


class GatewayRejected(PaymentError):
    """The gateway answered with a client error (bad credentials, invalid request, unknown id)."""

    status_code = 422

    def __init__(self, detail: str, *, http_status: Optional[int] = None):
        super().__init__(detail)
        self.http_status = http_status


class PersistenceFailure(PaymentError):
    status_code = 503


class PlanNotFound(PaymentError):
    status_code = 404


class OrderInFlight(PaymentError):
    status_code = 409
