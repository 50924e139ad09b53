# appointments/services package
#
# Re-exports the public booking API so callers can simply write:
#
#   from appointments.services import reserve_slot, SlotUnavailableError
#   from appointments.services import get_patient_bookings

from appointments.services.booking_service import (  # noqa: F401
    BookingError,
    BookingNotFoundError,
    SlotNotFoundError,
    SlotUnavailableError,
    StaleReservationError,
    cancel_booking,
    confirm_booking,
    release_expired_reservations,
    reservation_timeout,
    reserve_slot,
    update_booking_status,
)

from appointments.services.listing_service import (  # noqa: F401
    get_doctor_bookings,
    get_patient_bookings,
)
