# Generated manually for initial schema.
from __future__ import annotations

import uuid

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


APPROVAL_TYPES = [
    ("none", "No Approval"),
    ("single", "Single Approver"),
    ("multiple", "Multiple Approvers"),
    ("unanimous", "Unanimous Approval"),
]
STEP_TYPES = [
    ("standard", "Standard"),
    ("approval", "Approval"),
    ("assignment", "Assignment"),
    ("review", "Review"),
]
MODULE_CHOICES = [("work_orders", "Work Orders"), ("safety_incidents", "Safety Incidents")]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        ("work_orders", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="WorkflowTemplate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                ("module", models.CharField(choices=MODULE_CHOICES, default="work_orders", max_length=32)),
                ("is_default", models.BooleanField(default=False)),
                ("is_active", models.BooleanField(default=True)),
                ("version", models.PositiveIntegerField(default=1)),
                ("organization_id", models.IntegerField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="accounts.user",
                    ),
                ),
            ],
            options={
                "ordering": ["name", "version"],
                "unique_together": {("organization_id", "name", "version")},
            },
        ),
        migrations.CreateModel(
            name="WorkflowTemplateStep",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                ("step_order", models.PositiveIntegerField(default=1)),
                ("step_type", models.CharField(choices=STEP_TYPES, default="standard", max_length=32)),
                ("approval_type", models.CharField(choices=APPROVAL_TYPES, default="single", max_length=16)),
                ("required_approvals", models.PositiveIntegerField(default=2)),
                ("is_required", models.BooleanField(default=True)),
                ("sla_hours", models.PositiveIntegerField(blank=True, null=True)),
                ("allows_work_order_creation", models.BooleanField(default=False)),
                ("work_order_status", models.CharField(blank=True, max_length=32)),
                ("incident_status", models.CharField(blank=True, max_length=32)),
                ("auto_assign_enabled", models.BooleanField(default=False)),
                ("is_active", models.BooleanField(default=True)),
                ("organization_id", models.IntegerField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "reject_target_step",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="workflows.workflowtemplatestep",
                    ),
                ),
                (
                    "template",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="steps",
                        to="workflows.workflowtemplate",
                    ),
                ),
            ],
            options={"ordering": ["step_order", "id"], "unique_together": {("template", "step_order")}},
        ),
        migrations.CreateModel(
            name="StepRoleAssignment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("role_name", models.CharField(max_length=100)),
                ("can_approve", models.BooleanField(default=False)),
                ("can_reject", models.BooleanField(default=False)),
                ("can_assign", models.BooleanField(default=False)),
                ("can_view", models.BooleanField(default=True)),
                ("can_edit", models.BooleanField(default=False)),
                ("is_primary_assignee", models.BooleanField(default=False)),
                ("organization_id", models.IntegerField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "step",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="role_assignments",
                        to="workflows.workflowtemplatestep",
                    ),
                ),
            ],
            options={"ordering": ["step", "role_name"], "unique_together": {("step", "role_name")}},
        ),
        migrations.CreateModel(
            name="StepCondition",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("field_name", models.CharField(max_length=100)),
                (
                    "operator",
                    models.CharField(
                        choices=[
                            ("equals", "Equals"),
                            ("not_equals", "Not Equals"),
                            ("greater_than", "Greater Than"),
                            ("less_than", "Less Than"),
                            ("contains", "Contains"),
                        ],
                        default="equals",
                        max_length=16,
                    ),
                ),
                ("expected_value", models.JSONField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "step",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="conditions",
                        to="workflows.workflowtemplatestep",
                    ),
                ),
            ],
            options={"ordering": ["step", "id"]},
        ),
        migrations.CreateModel(
            name="WorkflowState",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("pending_approval_from_role", models.CharField(blank=True, max_length=100)),
                ("step_started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("sla_due_at", models.DateTimeField(blank=True, null=True)),
                ("organization_id", models.IntegerField(db_index=True)),
                ("version", models.PositiveIntegerField(default=1)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "assigned_to",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="accounts.user",
                    ),
                ),
                (
                    "current_step",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="workflows.workflowtemplatestep",
                    ),
                ),
                (
                    "incident",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="workflow_state",
                        to="work_orders.incident",
                    ),
                ),
                (
                    "template",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="states",
                        to="workflows.workflowtemplate",
                    ),
                ),
                (
                    "work_order",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="workflow_state",
                        to="work_orders.workorder",
                    ),
                ),
            ],
            options={"ordering": ["-updated_at", "id"]},
        ),
        migrations.AddConstraint(
            model_name="workflowstate",
            constraint=models.CheckConstraint(
                condition=(
                    models.Q(work_order__isnull=False, incident__isnull=True)
                    | models.Q(work_order__isnull=True, incident__isnull=False)
                ),
                name="workflow_state_single_entity",
            ),
        ),
        migrations.CreateModel(
            name="WorkflowApproval",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "approval_action",
                    models.CharField(
                        choices=[("approved", "Approved"), ("rejected", "Rejected"), ("reassigned", "Reassigned")],
                        max_length=16,
                    ),
                ),
                ("comments", models.TextField(blank=True)),
                ("organization_id", models.IntegerField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "approved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="accounts.user",
                    ),
                ),
                (
                    "from_step",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="workflows.workflowtemplatestep",
                    ),
                ),
                (
                    "incident",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="approvals",
                        to="work_orders.incident",
                    ),
                ),
                (
                    "step",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="workflows.workflowtemplatestep",
                    ),
                ),
                (
                    "work_order",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="approvals",
                        to="work_orders.workorder",
                    ),
                ),
            ],
            options={"ordering": ["-created_at", "-id"]},
        ),
        migrations.CreateModel(
            name="ApprovalVote",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "state",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="votes",
                        to="workflows.workflowstate",
                    ),
                ),
                (
                    "step",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="+",
                        to="workflows.workflowtemplatestep",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="+",
                        to="accounts.user",
                    ),
                ),
            ],
            options={"ordering": ["created_at", "id"], "unique_together": {("state", "step", "user")}},
        ),
        migrations.CreateModel(
            name="WorkflowExecutionLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("entity_type", models.CharField(max_length=32)),
                ("entity_id", models.IntegerField()),
                ("workflow_state_id", models.IntegerField(blank=True, null=True)),
                ("step_id", models.IntegerField(blank=True, null=True)),
                ("action_type", models.CharField(max_length=32)),
                ("performed_by_id", models.IntegerField(blank=True, null=True)),
                ("execution_time_ms", models.PositiveIntegerField(default=0)),
                ("success", models.BooleanField(default=True)),
                ("error_message", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("correlation_id", models.CharField(blank=True, max_length=64)),
                ("organization_id", models.IntegerField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [models.Index(fields=["organization_id", "created_at"], name="workflows_w_organiz_5b1c2e_idx")],
            },
        ),
        migrations.CreateModel(
            name="BulkInitializationJob",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("module", models.CharField(choices=MODULE_CHOICES, max_length=32)),
                ("organization_id", models.IntegerField(db_index=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        max_length=32,
                    ),
                ),
                ("initialized", models.PositiveIntegerField(default=0)),
                ("skipped", models.PositiveIntegerField(default=0)),
                ("failed", models.PositiveIntegerField(default=0)),
                ("error_message", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status"], name="workflows_b_status_3f9a1d_idx")],
            },
        ),
    ]
