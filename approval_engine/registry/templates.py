"""
Template registry.

Stores and retrieves reusable workflow definitions. A template's structure
is frozen once any instance references it; it can still be deactivated.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from approval_engine.config import Settings, get_settings
from approval_engine.core.errors import InvalidStateError, NotFoundError, ValidationError
from approval_engine.core.models import (
    AssigneeType,
    TemplateDefinition,
    TriggerKind,
    WorkflowStep,
    WorkflowTemplate,
)
from approval_engine.core.validation import TemplateValidator, ValidationResult
from approval_engine.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


class AssigneeResolver(Protocol):
    """Checks that a step's assignee exists in the directory."""

    async def resolves(self, step: WorkflowStep) -> bool:
        """Return True if the assignee of ``step`` can be resolved."""


class TemplateRegistry:
    """
    Validates and persists workflow templates.

    Usage:
        registry = TemplateRegistry(store)
        template = await registry.create_template(definition)
        matches = await registry.find_templates_for_trigger(TriggerKind.CREATE, "policy")
    """

    def __init__(
        self,
        store: WorkflowStore,
        assignee_resolver: Optional[AssigneeResolver] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.assignee_resolver = assignee_resolver
        self.settings = settings or get_settings()

    # ==================== Queries ====================

    async def get_template(self, template_id: UUID) -> WorkflowTemplate:
        """
        Get a template by ID.

        Raises:
            NotFoundError: If the template does not exist
        """
        template = await self.store.get_template(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    async def list_templates(self, active_only: bool = False) -> list[WorkflowTemplate]:
        """List templates, newest first."""
        return await self.store.list_templates(active_only=active_only)

    async def find_templates_for_trigger(
        self,
        trigger: TriggerKind,
        subject_category: Optional[str] = None,
        subject_type: Optional[str] = None,
    ) -> list[WorkflowTemplate]:
        """
        Find active templates for a trigger event, newest first.

        A template's category and type filters match anything when unset.
        """
        candidates = await self.store.list_templates(trigger=trigger, active_only=True)
        return [t for t in candidates if t.matches(trigger, subject_category, subject_type)]

    # ==================== Mutations ====================

    async def create_template(self, definition: TemplateDefinition) -> WorkflowTemplate:
        """
        Validate and persist a new template.

        Args:
            definition: Template definition

        Returns:
            The stored template

        Raises:
            ValidationError: If the definition is invalid
        """
        await self._validate(definition)

        template = WorkflowTemplate(
            name=definition.name,
            description=definition.description,
            trigger=definition.trigger,
            subject_category=definition.subject_category,
            subject_type=definition.subject_type,
            steps=self._with_system_assignees(definition.steps),
            is_active=definition.is_active,
            created_by=definition.created_by,
        )
        await self.store.create_template(template)

        logger.info(
            f"Created template '{template.name}' ({template.id}) "
            f"with {len(template.steps)} steps on trigger {template.trigger.value}"
        )
        return template

    async def update_template(
        self,
        template_id: UUID,
        definition: TemplateDefinition,
    ) -> WorkflowTemplate:
        """
        Replace a template's definition.

        Raises:
            NotFoundError: If the template does not exist
            InvalidStateError: If an instance already references the template
            ValidationError: If the definition is invalid
        """
        existing = await self.get_template(template_id)
        await self._ensure_unreferenced(template_id, "updated")
        await self._validate(definition)

        template = WorkflowTemplate(
            id=existing.id,
            name=definition.name,
            description=definition.description,
            trigger=definition.trigger,
            subject_category=definition.subject_category,
            subject_type=definition.subject_type,
            steps=self._with_system_assignees(definition.steps),
            is_active=definition.is_active,
            created_by=existing.created_by,
            created_at=existing.created_at,
            updated_at=datetime.utcnow(),
        )
        if await self.store.replace_template(template) is None:
            # Deleted, or an instance was created after the check above
            await self.get_template(template_id)
            raise InvalidStateError(
                f"Template {template_id} is referenced by an instance and cannot be updated",
                template_id=str(template_id),
            )

        logger.info(f"Updated template '{template.name}' ({template.id})")
        return template

    async def set_template_active(self, template_id: UUID, is_active: bool) -> WorkflowTemplate:
        """Activate or deactivate a template."""
        template = await self.store.set_template_active(template_id, is_active)
        if template is None:
            raise NotFoundError("Template", template_id)

        logger.info(f"Template {template_id} {'activated' if is_active else 'deactivated'}")
        return template

    async def delete_template(self, template_id: UUID) -> None:
        """
        Delete a template that no instance references.

        Raises:
            NotFoundError: If the template does not exist
            InvalidStateError: If an instance references the template
        """
        await self.get_template(template_id)
        await self._ensure_unreferenced(template_id, "deleted")

        if not await self.store.delete_template(template_id):
            # An instance was created between the check and the delete
            raise InvalidStateError(
                f"Template {template_id} is referenced by an instance and cannot be deleted",
                template_id=str(template_id),
            )
        logger.info(f"Deleted template {template_id}")

    # ==================== Helper Methods ====================

    async def _validate(self, definition: TemplateDefinition) -> ValidationResult:
        result = TemplateValidator(definition).validate()

        if self.assignee_resolver is not None and result.is_valid:
            for step in definition.steps:
                if step.assignee_type == AssigneeType.SYSTEM:
                    continue
                if not await self.assignee_resolver.resolves(step):
                    result.add_error(
                        code="UNRESOLVABLE_ASSIGNEE",
                        message=(
                            f"Step '{step.name}': {step.assignee_type.value} "
                            f"'{step.assignee_id}' cannot be resolved"
                        ),
                        step_id=step.id,
                    )

        for warning in result.warnings:
            logger.warning(f"Template '{definition.name}': {warning.message}")

        if not result.is_valid:
            codes = sorted({e.code for e in result.errors})
            raise ValidationError(
                f"Template '{definition.name}' is invalid: {', '.join(codes)}",
                issues=result.errors,
            )
        return result

    async def _ensure_unreferenced(self, template_id: UUID, action: str) -> None:
        count = await self.store.count_instances_for_template(template_id)
        if count:
            raise InvalidStateError(
                f"Template {template_id} is referenced by {count} instance(s) and cannot be {action}",
                template_id=str(template_id),
                instance_count=count,
            )

    def _with_system_assignees(self, steps: list[WorkflowStep]) -> list[WorkflowStep]:
        """System steps without an explicit assignee run as the system actor."""
        return [
            step.model_copy(update={"assignee_id": self.settings.engine.system_actor})
            if step.assignee_type == AssigneeType.SYSTEM and not step.assignee_id.strip()
            else step
            for step in steps
        ]
