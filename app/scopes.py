from enum import StrEnum


class BookingScope(StrEnum):
    # Customer scopes
    READ = "bookings:read"  # view own bookings and appointments
    WRITE = "bookings:write"  # create a booking or appointment, reschedule
    CANCEL = "bookings:cancel"  # cancel own booking or appointment
    REVIEW = "bookings:review"  # review a completed booking or appointment
    PAY = "bookings:pay"  # fetch client secrets, confirm due payments

    # Provider scopes
    MANAGE = "bookings:manage"  # confirm / reject / start / complete, due + offline

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"
    ADMIN_MODERATE = "admin:reviews:moderate"


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View your own bookings and appointments.",
    BookingScope.WRITE: "Book a service or an appointment slot.",
    BookingScope.CANCEL: "Cancel your own booking or appointment.",
    BookingScope.REVIEW: "Review a completed booking or appointment.",
    BookingScope.PAY: "Pay the down payment and the due amount online.",
    BookingScope.MANAGE: "Manage bookings and appointments for your own services.",
    BookingScope.ADMIN_READ: "Read any booking or appointment regardless of owner (admin).",
    BookingScope.ADMIN_WRITE: "Cancel any booking or appointment, void payments (admin).",
    BookingScope.ADMIN_MODERATE: "Hide reviews from aggregate ratings (admin).",
}
