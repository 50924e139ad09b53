from django.urls import path
from . import api_views

app_name = "payments"

urlpatterns = [
    path(
        "api/bookings/<int:booking_id>/order/",
        api_views.CreatePaymentOrderAPIView.as_view(),
        name="api_create_order",
    ),
    path("api/verify/", api_views.VerifyPaymentAPIView.as_view(), name="api_verify_payment"),
    path("api/webhook/", api_views.RazorpayWebhookAPIView.as_view(), name="api_webhook"),
    path(
        "api/bookings/<int:booking_id>/wallet/",
        api_views.WalletPaymentAPIView.as_view(),
        name="api_wallet_pay",
    ),
    path("api/wallet/", api_views.WalletAPIView.as_view(), name="api_wallet"),
]
