"""Database models for users and their workflow roles."""
from __future__ import annotations

from typing import List

from django.db import models


class Role(models.Model):
    """A named role that workflow steps grant permissions to."""

    name = models.CharField(max_length=100, unique=True)
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class User(models.Model):
    """A lightweight identity record scoped to one organization."""

    email = models.EmailField(unique=True)
    display_name = models.CharField(max_length=255)
    organization_id = models.IntegerField(db_index=True)
    roles = models.ManyToManyField(Role, related_name="users", blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["display_name", "email"]

    def __str__(self) -> str:
        return f"{self.display_name} <{self.email}>"

    def role_names(self) -> List[str]:
        return [role.name for role in self.roles.all()]
