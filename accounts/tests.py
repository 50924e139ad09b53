"""
Tests for accounts: custom user model, role permissions and JWT login.
"""

import os
from io import StringIO
from types import SimpleNamespace
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.core.management import call_command
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from accounts.permissions import IsAdminRole, IsDoctor, IsPatient, has_role

User = get_user_model()


class CustomUserManagerTests(TestCase):
    def test_create_user_normalizes_email(self):
        """Emails are stored lower-cased so login is case-insensitive."""
        user = User.objects.create_user(
            email="Patient@Example.COM",
            password="testpass123",
            name="Patient Ali",
        )
        self.assertEqual(user.email, "patient@example.com")
        self.assertEqual(user.role, User.Role.PATIENT)
        self.assertTrue(user.is_patient)
        self.assertFalse(user.is_doctor)

    def test_create_user_requires_email(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(email="", password="testpass123")

    def test_create_superuser_is_admin(self):
        admin = User.objects.create_superuser(email="admin@example.com", password="adminpass123")
        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)
        self.assertEqual(admin.role, User.Role.ADMIN)


# ═══════════════════════════════════════════════════════════════════
#  Permission Tests
# ═══════════════════════════════════════════════════════════════════


class RolePermissionTests(TestCase):
    def setUp(self):
        self.patient = User.objects.create_user(
            email="patient@example.com", password="testpass123", name="Patient Ali"
        )
        self.doctor = User.objects.create_user(
            email="doctor@example.com",
            password="testpass123",
            name="Dr. Ahmad",
            role=User.Role.DOCTOR,
        )
        self.admin = User.objects.create_superuser(
            email="admin@example.com", password="adminpass123", name="Admin"
        )

    def _request(self, user):
        return SimpleNamespace(user=user)

    def test_has_role(self):
        self.assertTrue(has_role(self.patient, User.Role.PATIENT))
        self.assertTrue(has_role(self.doctor, User.Role.DOCTOR, User.Role.ADMIN))
        self.assertFalse(has_role(self.patient, User.Role.DOCTOR))
        self.assertFalse(has_role(AnonymousUser(), User.Role.PATIENT))

    def test_inactive_user_has_no_role(self):
        self.patient.is_active = False
        self.assertFalse(has_role(self.patient, User.Role.PATIENT))

    def test_is_patient_permission(self):
        self.assertTrue(IsPatient().has_permission(self._request(self.patient), None))
        self.assertFalse(IsPatient().has_permission(self._request(self.doctor), None))

    def test_is_doctor_permission(self):
        self.assertTrue(IsDoctor().has_permission(self._request(self.doctor), None))
        self.assertFalse(IsDoctor().has_permission(self._request(self.patient), None))

    def test_is_admin_role_permission(self):
        self.assertTrue(IsAdminRole().has_permission(self._request(self.admin), None))
        self.assertFalse(IsAdminRole().has_permission(self._request(self.doctor), None))


# ═══════════════════════════════════════════════════════════════════
#  Login API Tests
# ═══════════════════════════════════════════════════════════════════


class LoginAPITests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.url = reverse("accounts:api_login")
        self.doctor = User.objects.create_user(
            email="doctor@example.com",
            password="testpass123",
            name="Dr. Ahmad",
            role=User.Role.DOCTOR,
        )

    def test_login_returns_tokens_with_role_claim(self):
        response = self.client.post(
            self.url,
            {"email": "Doctor@Example.com", "password": "testpass123"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("refresh", response.data)

        token = AccessToken(response.data["access"])
        self.assertEqual(token["role"], User.Role.DOCTOR)
        self.assertEqual(token["name"], "Dr. Ahmad")

    def test_wrong_password(self):
        response = self.client.post(
            self.url,
            {"email": "doctor@example.com", "password": "wrong"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_blocked_account(self):
        self.doctor.is_active = False
        self.doctor.save()
        response = self.client.post(
            self.url,
            {"email": "doctor@example.com", "password": "testpass123"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("blocked", str(response.data))

    def test_refresh(self):
        login = self.client.post(
            self.url,
            {"email": "doctor@example.com", "password": "testpass123"},
            format="json",
        )
        response = self.client.post(
            reverse("accounts:token_refresh"),
            {"refresh": login.data["refresh"]},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("access", response.data)


class CreateSuperAdminCommandTests(TestCase):
    @patch.dict(os.environ, {"DJANGO_SUPERUSER_EMAIL": "Root@Example.com", "DJANGO_SUPERUSER_PASSWORD": "rootpass123"})
    def test_creates_superuser(self):
        call_command("create_super_admin", stdout=StringIO())

        admin = User.objects.get(email="root@example.com")
        self.assertTrue(admin.is_superuser)
        self.assertEqual(admin.role, User.Role.ADMIN)

    @patch.dict(os.environ, {"DJANGO_SUPERUSER_EMAIL": "doctor@example.com", "DJANGO_SUPERUSER_PASSWORD": "x"})
    def test_promotes_existing_user(self):
        User.objects.create_user(email="doctor@example.com", password="testpass123", name="Dr. Ahmad")
        call_command("create_super_admin", stdout=StringIO())

        user = User.objects.get(email="doctor@example.com")
        self.assertTrue(user.is_staff)
        self.assertEqual(user.role, User.Role.ADMIN)

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_environment(self):
        out = StringIO()
        call_command("create_super_admin", stdout=out)
        self.assertIn("Missing", out.getvalue())
        self.assertFalse(User.objects.exists())
