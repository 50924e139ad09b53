from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from . import api_views

app_name = "accounts"

urlpatterns = [
    path("token/", api_views.MyTokenObtainPairView.as_view(), name="api_login"),
    path("token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
]
