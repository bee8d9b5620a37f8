class BookingError(Exception):
    """Base class for booking lifecycle errors."""


class BookingNotFound(BookingError):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class InvalidStateTransition(BookingError):
    """The booking is not in a state that allows the requested change."""


class RescheduleNotAllowed(BookingError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class MalformedEventError(Exception):
    """A verified webhook body that does not carry what we need to act on it."""


class PaymentGatewayError(Exception):
    pass


class MeetingProvisioningError(Exception):
    pass
