"""
Remote RecordStore over the correction API.

Failures are tagged here, at the transport, from the exception type and the
HTTP status. Nothing above this layer looks at error message text.
"""

from typing import Any, List, Mapping, Optional

import httpx

from ..core.config import API_BASE_URL, API_TIMEOUT_SEC, CORRECTED_BY
from ..core.errors import NetworkError, RecordNotFoundError, UnknownServerError, VersionConflictError
from ..core.schema import EditableRecord, coerce_fields, fields_to_json

from util.logging import logger

# Statuses that mean "try again later" rather than "the request was wrong"
TRANSIENT_STATUSES = {429, 502, 503, 504}


class HttpRecordStore:
    """RecordStore backed by ``/classifications`` on the correction API."""

    def __init__(self, base_url: str = None, timeout: float = None,
                 client: Optional[httpx.AsyncClient] = None, corrected_by: str = None):
        self.base_url = (base_url or API_BASE_URL).rstrip("/")
        self.corrected_by = corrected_by or CORRECTED_BY
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=API_TIMEOUT_SEC if timeout is None else timeout
        )

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def update(self, record_id: int, fields: Mapping[str, Any],
                     expected_version: int) -> EditableRecord:
        body = fields_to_json(coerce_fields(fields))
        body["expected_version"] = expected_version
        body["corrected_by"] = self.corrected_by

        response = await self._request("PATCH", f"/classifications/{record_id}", json=body)

        if response.status_code == 409:
            current = EditableRecord.from_dict(response.json()["current_record"])
            raise VersionConflictError(current, expected_version)
        self._raise_for_status(response, record_id)
        return EditableRecord.from_dict(response.json())

    async def get(self, record_id: int) -> EditableRecord:
        response = await self._request("GET", f"/classifications/{record_id}")
        self._raise_for_status(response, record_id)
        return EditableRecord.from_dict(response.json())

    async def list_records(self) -> List[EditableRecord]:
        response = await self._request("GET", "/classifications")
        self._raise_for_status(response)
        return [EditableRecord.from_dict(item) for item in response.json()["items"]]

    async def ping(self) -> bool:
        """Connectivity probe: True when the API answers its health check."""
        try:
            response = await self.client.get("/health")
        except httpx.TransportError:
            return False
        return response.status_code == 200

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{method} {url} failed in transport: {e!r}")
            raise NetworkError(f"{method} {url} failed: {e}") from e

    def _raise_for_status(self, response: httpx.Response, record_id: int = None):
        status = response.status_code
        if status < 400:
            return

        if status == 404 and record_id is not None:
            raise RecordNotFoundError(record_id)
        if status in TRANSIENT_STATUSES:
            raise NetworkError(f"Server temporarily unavailable ({status})")

        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        raise UnknownServerError(f"Server error {status}: {detail}")
