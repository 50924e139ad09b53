from django.urls import path
from . import api_views

app_name = "appointments"

urlpatterns = [
    # --- Patient ---
    path(
        "api/slots/<int:slot_id>/reserve/",
        api_views.ReserveSlotAPIView.as_view(),
        name="api_reserve_slot",
    ),
    path(
        "api/my-bookings/",
        api_views.PatientBookingsAPIView.as_view(),
        name="api_my_bookings",
    ),
    path(
        "api/bookings/<int:booking_id>/cancel/",
        api_views.CancelBookingAPIView.as_view(),
        name="api_cancel_booking",
    ),
    # --- Doctor ---
    path(
        "api/doctor/bookings/",
        api_views.DoctorBookingsAPIView.as_view(),
        name="api_doctor_bookings",
    ),
    path(
        "api/doctor/bookings/<int:booking_id>/status/",
        api_views.DoctorBookingStatusAPIView.as_view(),
        name="api_doctor_booking_status",
    ),
]
