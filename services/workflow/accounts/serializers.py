"""Serializers for identity records."""
from __future__ import annotations

from rest_framework import serializers

from .models import Role, User


class RoleSerializer(serializers.ModelSerializer):
    class Meta:
        model = Role
        fields = ["id", "name", "description", "created_at"]


class UserSerializer(serializers.ModelSerializer):
    roles = serializers.SlugRelatedField(
        many=True,
        slug_field="name",
        queryset=Role.objects.all(),
        required=False,
    )

    class Meta:
        model = User
        fields = [
            "id",
            "email",
            "display_name",
            "organization_id",
            "roles",
            "is_active",
            "created_at",
            "updated_at",
        ]
