"""Template registry."""

from approval_engine.registry.templates import AssigneeResolver, TemplateRegistry

__all__ = ["AssigneeResolver", "TemplateRegistry"]
