"""
Template definition validation.

Collects every problem with a definition instead of stopping at the first,
so administrators can fix a template in one pass.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from approval_engine.core.conditions import ConditionError, parse_condition
from approval_engine.core.errors import ValidationIssue
from approval_engine.core.models import AssigneeType, TemplateDefinition


@dataclass
class ValidationResult:
    """Result of template validation."""

    is_valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        step_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation error."""
        self.errors.append(ValidationIssue(code, message, step_id, details))
        self.is_valid = False

    def add_warning(
        self,
        code: str,
        message: str,
        step_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation warning."""
        self.warnings.append(ValidationIssue(code, message, step_id, details))


class TemplateValidator:
    """Validates the structure of a template definition."""

    def __init__(self, definition: TemplateDefinition):
        self.definition = definition

    def validate(self) -> ValidationResult:
        """
        Perform full validation of the definition.

        Returns:
            ValidationResult with errors and warnings
        """
        result = ValidationResult(is_valid=True)

        if not self.definition.steps:
            result.add_error("EMPTY_STEPS", "A template must define at least one step")
            return result

        self._validate_unique_orders(result)
        self._validate_unique_ids(result)
        self._validate_assignees(result)
        self._validate_conditions(result)

        return result

    def _validate_unique_orders(self, result: ValidationResult) -> None:
        seen: dict[int, str] = {}
        for step in self.definition.steps:
            if step.order in seen:
                result.add_error(
                    code="DUPLICATE_ORDER",
                    message=f"Steps '{seen[step.order]}' and '{step.id}' share order {step.order}",
                    step_id=step.id,
                    order=step.order,
                )
            else:
                seen[step.order] = step.id

    def _validate_unique_ids(self, result: ValidationResult) -> None:
        ids = [step.id for step in self.definition.steps]
        for step_id in sorted({x for x in ids if ids.count(x) > 1}):
            result.add_error(
                code="DUPLICATE_STEP_ID",
                message=f"Step id '{step_id}' is used more than once",
                step_id=step_id,
            )

    def _validate_assignees(self, result: ValidationResult) -> None:
        for step in self.definition.steps:
            # System steps may leave the assignee implicit
            if step.assignee_type == AssigneeType.SYSTEM:
                continue
            if not step.assignee_id.strip():
                result.add_error(
                    code="UNRESOLVABLE_ASSIGNEE",
                    message=f"Step '{step.name}' has no {step.assignee_type.value} assignee",
                    step_id=step.id,
                )

    def _validate_conditions(self, result: ValidationResult) -> None:
        for step in self.definition.steps:
            if step.conditions is None:
                continue
            try:
                parse_condition(step.conditions)
            except ConditionError as e:
                result.add_error(
                    code="INVALID_CONDITION",
                    message=f"Step '{step.name}': {e}",
                    step_id=step.id,
                )
            if not step.auto_approve:
                result.add_warning(
                    code="UNUSED_CONDITION",
                    message=f"Step '{step.name}' has conditions but auto_approve is off",
                    step_id=step.id,
                )
