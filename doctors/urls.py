from django.urls import path
from . import api_views

app_name = "doctors"

urlpatterns = [
    # --- Patient-facing ---
    path(
        "api/",
        api_views.DoctorListAPIView.as_view(),
        name="api_doctor_list",
    ),
    path(
        "api/<int:doctor_id>/available-slots/",
        api_views.DoctorAvailableSlotsAPIView.as_view(),
        name="api_doctor_available_slots",
    ),
    # --- Doctor slot management ---
    path(
        "api/slots/",
        api_views.DoctorSlotListAPIView.as_view(),
        name="api_slot_list",
    ),
    path(
        "api/slots/generate/",
        api_views.GenerateSlotsAPIView.as_view(),
        name="api_generate_slots",
    ),
    path(
        "api/slots/bulk-delete/",
        api_views.BulkDeleteSlotsAPIView.as_view(),
        name="api_bulk_delete_slots",
    ),
    path(
        "api/slots/<int:slot_id>/",
        api_views.DoctorSlotDetailAPIView.as_view(),
        name="api_slot_detail",
    ),
]
