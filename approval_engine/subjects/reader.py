"""
Subject attribute readers.

The engine never owns subject data. Auto-approval conditions are evaluated
against the attribute map returned by one of these readers.
"""

import logging
from typing import Any, Optional, Protocol
from urllib.parse import quote

import httpx

from approval_engine.config import SubjectSettings, get_settings
from approval_engine.core.errors import WorkflowError

logger = logging.getLogger(__name__)


class SubjectUnavailableError(WorkflowError):
    """The subject service could not be reached or returned an error."""

    code = "SUBJECT_UNAVAILABLE"
    retryable = True


class SubjectAttributeReader(Protocol):
    """Reads the current attributes of a subject."""

    async def get_attributes(self, subject_id: str) -> Optional[dict[str, Any]]:
        """Return the subject's attributes, or None if it does not exist."""


class InMemorySubjectAttributeReader:
    """Reader over a local mapping; used in tests and single-process setups."""

    def __init__(self, subjects: Optional[dict[str, dict[str, Any]]] = None):
        self._subjects: dict[str, dict[str, Any]] = dict(subjects or {})

    def set_attributes(self, subject_id: str, attributes: dict[str, Any]) -> None:
        self._subjects[subject_id] = dict(attributes)

    async def get_attributes(self, subject_id: str) -> Optional[dict[str, Any]]:
        attributes = self._subjects.get(subject_id)
        return dict(attributes) if attributes is not None else None


class HttpSubjectAttributeReader:
    """
    Reader backed by the subject service's HTTP API.

    Attributes are read with ``GET {base_url}/{subject_id}``; a 404 means the
    subject does not exist. The id is sent as a single escaped path segment.
    """

    def __init__(
        self,
        settings: Optional[SubjectSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings().subjects
        if not self.settings.base_url and client is None:
            raise ValueError("SUBJECTS_BASE_URL is required for the HTTP subject reader")

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout,
            headers={"Accept": "application/json"},
        )

    async def get_attributes(self, subject_id: str) -> Optional[dict[str, Any]]:
        try:
            resp = await self._client.get(f"/{quote(subject_id, safe='')}")
        except httpx.HTTPError as e:
            raise SubjectUnavailableError(
                f"Subject service request failed for {subject_id}: {e}",
                subject_id=subject_id,
            ) from e

        if resp.status_code == 404:
            logger.info(f"Subject {subject_id} not found")
            return None
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SubjectUnavailableError(
                f"Subject service returned {resp.status_code} for {subject_id}",
                subject_id=subject_id,
                status_code=resp.status_code,
            ) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise SubjectUnavailableError(
                f"Subject service returned a non-JSON body for {subject_id}",
                subject_id=subject_id,
            ) from e
        if not isinstance(data, dict):
            raise SubjectUnavailableError(
                f"Subject service returned a non-object body for {subject_id}",
                subject_id=subject_id,
            )
        return data

    async def close(self) -> None:
        """Close the underlying client if this reader created it."""
        if self._owns_client:
            await self._client.aclose()
