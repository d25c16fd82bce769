"""Boundary to the external subject service."""

from approval_engine.subjects.reader import (
    HttpSubjectAttributeReader,
    InMemorySubjectAttributeReader,
    SubjectAttributeReader,
    SubjectUnavailableError,
)

__all__ = [
    "HttpSubjectAttributeReader",
    "InMemorySubjectAttributeReader",
    "SubjectAttributeReader",
    "SubjectUnavailableError",
]
