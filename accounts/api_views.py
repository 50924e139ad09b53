from rest_framework_simplejwt.views import TokenObtainPairView
from .serializers import LoginSerializer


class MyTokenObtainPairView(TokenObtainPairView):
    serializer_class = LoginSerializer
