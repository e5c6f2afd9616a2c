from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from custody.models import Location

from .models import UserRole

User = get_user_model()


class UserRoleTests(TestCase):
    def setUp(self):
        self.location = Location.objects.create(name="Ghat Road", address="1 Ghat Road")
        self.other = Location.objects.create(name="River Side", address="2 River Side")

    def test_operator_only_reaches_assigned_location(self):
        operator = User.objects.create_user(username="op", password="pass1234", assigned_location=self.location)
        self.assertEqual(operator.role, UserRole.OPERATOR)
        self.assertFalse(operator.is_admin_role)
        self.assertTrue(operator.can_access_location(self.location.id))
        self.assertFalse(operator.can_access_location(self.other.id))

    def test_operator_without_location_reaches_nothing(self):
        operator = User.objects.create_user(username="op", password="pass1234")
        self.assertFalse(operator.can_access_location(self.location.id))

    def test_admin_and_superuser_reach_everything(self):
        admin = User.objects.create_user(username="admin", password="pass1234", role=UserRole.ADMIN)
        root = User.objects.create_superuser(username="root", password="pass1234", email="root@example.com")
        for user in (admin, root):
            self.assertTrue(user.is_admin_role)
            self.assertTrue(user.can_access_location(self.other.id))


class UserApiTests(TestCase):
    def setUp(self):
        self.location = Location.objects.create(name="Ghat Road", address="1 Ghat Road")
        self.admin = User.objects.create_user(username="admin", password="pass1234", role=UserRole.ADMIN)
        self.operator = User.objects.create_user(
            username="op", password="pass1234", assigned_location=self.location
        )
        self.client = APIClient()

    def test_admin_creates_operator(self):
        self.client.force_authenticate(self.admin)
        response = self.client.post(
            reverse("users-list"),
            data={
                "username": "newop",
                "password": "longenough",
                "role": UserRole.OPERATOR,
                "assigned_location": self.location.id,
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertNotIn("password", response.data)
        self.assertEqual(response.data["assigned_location_name"], "Ghat Road")

        created = User.objects.get(username="newop")
        self.assertTrue(created.check_password("longenough"))
        self.assertEqual(created.created_by, self.admin)

    def test_password_required_on_create(self):
        self.client.force_authenticate(self.admin)
        response = self.client.post(reverse("users-list"), data={"username": "nopass"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_admin_role_drops_location(self):
        self.client.force_authenticate(self.admin)
        response = self.client.patch(
            reverse("users-detail", kwargs={"pk": self.operator.id}),
            data={"role": UserRole.ADMIN},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.operator.refresh_from_db()
        self.assertIsNone(self.operator.assigned_location)

    def test_filter_by_role(self):
        self.client.force_authenticate(self.admin)
        response = self.client.get(reverse("users-list"), data={"role": UserRole.OPERATOR})
        self.assertEqual([row["username"] for row in response.data], ["op"])

    def test_filter_by_location(self):
        self.client.force_authenticate(self.admin)
        response = self.client.get(reverse("users-list"), data={"location": self.location.id})
        self.assertEqual([row["username"] for row in response.data], ["op"])

        response = self.client.get(reverse("users-list"), data={"location": "abc"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_operator_cannot_manage_users(self):
        self.client.force_authenticate(self.operator)
        response = self.client.get(reverse("users-list"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
