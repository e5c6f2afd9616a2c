from django.contrib.auth.models import AbstractUser
from django.db import models


class UserRole(models.TextChoices):
    OPERATOR = "operator", "Operator"
    ADMIN = "admin", "Admin"


class User(AbstractUser):
    role = models.CharField(
        max_length=20,
        choices=UserRole.choices,
        default=UserRole.OPERATOR,
    )
    phone = models.CharField(max_length=20, blank=True)
    assigned_location = models.ForeignKey(
        "custody.Location",
        on_delete=models.SET_NULL,
        related_name="operators",
        null=True,
        blank=True,
    )
    created_by = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        related_name="created_operators",
        null=True,
        blank=True,
    )

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"

    @property
    def is_admin_role(self) -> bool:
        return self.is_superuser or self.role == UserRole.ADMIN

    def can_access_location(self, location_id) -> bool:
        """Admins reach every location, operators only the one assigned to them."""
        if self.is_admin_role:
            return True
        return self.assigned_location_id is not None and self.assigned_location_id == location_id
