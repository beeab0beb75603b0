"""
Tracking API Client

Request/response access to the tracking API: the fallback delivery path for
location updates and the job directory the tracking session consults before
sending anything for a job.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx
from pydantic import ValidationError

from trackpro.config import Settings, settings as default_settings
from trackpro.exceptions import JobAccessError, TransportError
from trackpro.schemas.tracking import JobInfo, LocationUpdate

logger = logging.getLogger(__name__)


class TrackingApiClient:
    """Thin httpx wrapper around the tracking API."""

    def __init__(
        self,
        technician_id: str,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = config or default_settings
        self.technician_id = technician_id
        self.base_url = cfg.API_BASE_URL.rstrip("/")
        self.token = cfg.API_TOKEN
        self.timeout = cfg.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"X-Technician-Id": self.technician_id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {response.request.url}: {e}") from e

    async def post_location(self, update: LocationUpdate) -> dict:
        """POST one update. Raises TransportError on any failure."""
        url = f"/api/v2/jobs/{update.job_id}/location"
        try:
            async with self._client() as client:
                response = await client.post(url, json=update.to_wire())
                response.raise_for_status()
                return self._json(response)
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"HTTP location update failed: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP location update error: {e}") from e

    async def get_job(self, job_id: str) -> dict:
        try:
            async with self._client() as client:
                response = await client.get(f"/api/v2/jobs/{job_id}")
                response.raise_for_status()
                return self._json(response)
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (403, 404):
                raise JobAccessError(f"Job {job_id} is not available: {e.response.status_code}") from e
            raise TransportError(f"Job lookup failed: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Job lookup error: {e}") from e


class JobDirectory(ABC):
    """Job/Auth collaborator: job validity, status and assigned technician."""

    @abstractmethod
    async def get_job(self, job_id: str) -> JobInfo:
        """Return the job or raise JobAccessError."""


class HttpJobDirectory(JobDirectory):
    def __init__(self, api: TrackingApiClient):
        self.api = api

    async def get_job(self, job_id: str) -> JobInfo:
        payload = await self.api.get_job(job_id)
        try:
            return JobInfo.model_validate(payload)
        except ValidationError as e:
            raise TransportError(f"Malformed job payload for {job_id}: {e}") from e
