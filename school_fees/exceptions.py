class SchoolFeesError(Exception):
    """Base class for errors raised by the fee service."""


class DuplicateTransactionError(SchoolFeesError):
    def __init__(self, transaction_id: str):
        super().__init__(f"Payment with transaction ID {transaction_id} already exists")
        self.transaction_id = transaction_id


class InvalidStatusTransition(SchoolFeesError):
    """Raised when a payment cannot move from its current status to the requested one."""

    def __init__(self, payment_id: int, current, target):
        super().__init__(
            f"Payment {payment_id} cannot move from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )
        self.payment_id = payment_id
        self.current = current
        self.target = target


class QueueClosedError(SchoolFeesError):
    pass


class DuplicateEmailError(SchoolFeesError):
    def __init__(self, email: str):
        super().__init__(f"Email {email} is already registered")
        self.email = email


class PaymentRejectedError(SchoolFeesError):
    """The store refused a new payment for a reason other than a duplicate transaction ID."""

    def __init__(self, transaction_id: str, reason: str):
        super().__init__(f"Payment {transaction_id} was rejected: {reason}")
        self.transaction_id = transaction_id
        self.reason = reason
