"""URL routes for workflow endpoints."""
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from . import views

router = DefaultRouter()
router.register(r"templates", views.WorkflowTemplateViewSet, basename="template")
router.register(r"steps", views.WorkflowTemplateStepViewSet, basename="step")
router.register(r"workflow-jobs", views.BulkInitializationJobViewSet, basename="workflow-job")

entity_patterns = [
    path("", views.workflow_detail, name="workflow-detail"),
    path("initialize/", views.workflow_initialize, name="workflow-initialize"),
    path("approve/", views.workflow_approve, name="workflow-approve"),
    path("auto-transition/", views.workflow_auto_transition, name="workflow-auto-transition"),
    path("reject/", views.workflow_reject, name="workflow-reject"),
    path("reassign/", views.workflow_reassign, name="workflow-reassign"),
    path("complete/", views.workflow_complete, name="workflow-complete"),
    path("history/", views.workflow_history, name="workflow-history"),
]

urlpatterns = [
    path("", include(router.urls)),
    path("workflow/<str:entity_type>/<int:entity_id>/", include(entity_patterns)),
    path("workflow-status/<str:module>/", views.workflow_status, name="workflow-status"),
    path("workflow-analytics/", views.workflow_analytics, name="workflow-analytics"),
]
