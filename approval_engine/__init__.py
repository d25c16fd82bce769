"""
Approval Workflow Engine

Drives multi-step approval and review workflows attached to a subject
entity, with ordered step activation, conditional auto-approval, overdue
step handling and race-safe decision processing.
"""

__version__ = "1.0.0"
