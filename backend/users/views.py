from django.contrib.auth import get_user_model
from rest_framework import viewsets
from rest_framework.exceptions import ParseError

from .permissions import IsAdminUserRole
from .serializers import UserSerializer

User = get_user_model()


class UserViewSet(viewsets.ModelViewSet):
    serializer_class = UserSerializer
    permission_classes = [IsAdminUserRole]
    http_method_names = ["get", "post", "patch", "head", "options"]

    def get_queryset(self):
        qs = User.objects.select_related("assigned_location").order_by("-date_joined")
        role = self.request.query_params.get("role")
        if role:
            qs = qs.filter(role=role)
        location_id = self.request.query_params.get("location")
        if location_id:
            if not location_id.isdigit():
                raise ParseError("Invalid location filter")
            qs = qs.filter(assigned_location_id=int(location_id))
        return qs

    def perform_create(self, serializer):
        serializer.save(created_by=self.request.user)
