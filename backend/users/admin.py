from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ("username", "email", "role", "assigned_location", "is_active")
    list_filter = ("role", "is_active", "assigned_location")
    fieldsets = BaseUserAdmin.fieldsets + (
        ("Custody", {"fields": ("role", "phone", "assigned_location", "created_by")}),
    )
