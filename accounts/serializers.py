from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from django.contrib.auth import get_user_model
from rest_framework import serializers

User = get_user_model()


class LoginSerializer(TokenObtainPairSerializer):
    """
    JWT login with email + password.

    Errors are granular so the client can tell an unknown account from a
    wrong password or a blocked account. The role travels as a token claim
    so the frontend can pick the right dashboard without another request.
    """

    def validate(self, attrs):
        email = (attrs.get("email") or "").strip().lower()
        password = attrs.get("password")

        if not email or not password:
            raise serializers.ValidationError('Must include "email" and "password".')

        try:
            user = User.objects.get(email=email)
        except User.DoesNotExist:
            raise serializers.ValidationError(
                {"detail": "No active account found with the given credentials"}
            )

        if not user.is_active:
            raise serializers.ValidationError(
                {"detail": "This account has been blocked."}
            )

        if not user.check_password(password):
            raise serializers.ValidationError({"detail": "Incorrect password."})

        attrs["email"] = email
        return super().validate(attrs)

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)

        # Add custom claims
        token["name"] = user.name
        token["role"] = user.role
        return token


class UserSummarySerializer(serializers.ModelSerializer):
    """Compact user representation embedded in booking and slot payloads."""

    class Meta:
        model = User
        fields = ["id", "name", "email", "role"]
        read_only_fields = fields
