"""HTTP client for the remote voucher endpoint.

This module provides:
- FetchRequest / FetchResponse: the wire format of one fetch
- RemoteClient: POSTs fetch requests and maps failures onto the error taxonomy
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import httpx

from vouchersync.core.config import RemoteConfig, SessionContext
from vouchersync.core.dates import to_api_date
from vouchersync.core.errors import NetworkError, RemoteError, RemoteSlicingRequired

logger = logging.getLogger(__name__)


@dataclass
class FetchRequest:
    """One fetch of a company's records over a date range.

    Attributes:
        company_id: Remote company identifier.
        location_id: Remote location identifier.
        from_date: First day to fetch.
        to_date: Last day to fetch.
        server_slice: Ask the server to slice large answers itself.
        since_revision: Only return records with a higher revision.
    """

    company_id: str
    location_id: str
    from_date: date
    to_date: date
    server_slice: bool = False
    since_revision: int | None = None

    def to_payload(self, auth_token: str) -> dict[str, Any]:
        """Build the JSON body of the request."""
        payload: dict[str, Any] = {
            "companyId": self.company_id,
            "locationId": self.location_id,
            "authToken": auth_token,
            "fromDate": to_api_date(self.from_date),
            "toDate": to_api_date(self.to_date),
            "serverSlice": "Yes" if self.server_slice else "No",
        }
        if self.since_revision is not None:
            payload["sinceRevision"] = self.since_revision
        return payload


@dataclass
class FetchResponse:
    """Records returned by one fetch."""

    records: list[dict[str, Any]] = field(default_factory=list)
    slicing_required: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FetchResponse:
        """Create from API response dictionary.

        ``vouchers`` is accepted as an alias of ``records``.
        """
        records = data.get("records")
        if records is None:
            records = data.get("vouchers", [])
        if not isinstance(records, list):
            raise RemoteError("Malformed response: records is not a list")
        return cls(
            records=records,
            slicing_required=bool(data.get("slicingRequired", False)),
        )


class RemoteClient:
    """HTTP client for the voucher endpoint."""

    def __init__(
        self,
        config: RemoteConfig,
        session: SessionContext,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Endpoint URL, timeouts and retry policy.
            session: Supplies the auth token sent with each request.
            transport: Optional custom httpx transport.
        """
        self._config = config
        self._session = session
        self._client = httpx.Client(
            timeout=config.effective_timeout,
            verify=config.verify_ssl,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def config(self) -> RemoteConfig:
        """The endpoint configuration."""
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> RemoteClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def fetch(self, request: FetchRequest) -> FetchResponse:
        """POST one fetch request.

        Args:
            request: What to fetch.

        Returns:
            The parsed response.

        Raises:
            NetworkError: On timeout, connection failure, 408 or 5xx.
            RemoteError: On any other HTTP error or a malformed body.
            RemoteSlicingRequired: If a server-sliced request is too large.
        """
        payload = request.to_payload(self._session.auth_token)
        logger.debug(
            "Fetching %s %s..%s (slice=%s, since=%s)",
            request.company_id,
            payload["fromDate"],
            payload["toDate"],
            payload["serverSlice"],
            request.since_revision,
        )
        timeout = self._config.effective_timeout
        # httpx timeouts are per phase; a trickling body needs an overall deadline
        deadline = time.monotonic() + timeout
        try:
            with self._client.stream("POST", self._config.endpoint_url, json=payload) as response:
                body = bytearray()
                for chunk in response.iter_bytes():
                    body.extend(chunk)
                    if time.monotonic() > deadline:
                        raise NetworkError(f"Request timed out after {timeout:g}s", timeout=True)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out after {timeout:g}s", timeout=True) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network failure: {e}") from e

        result = self._handle_response(response, bytes(body))
        if request.server_slice and result.slicing_required:
            raise RemoteSlicingRequired(
                f"Remote asked to slice {payload['fromDate']}..{payload['toDate']}"
            )
        return result

    def _handle_response(self, response: httpx.Response, body: bytes) -> FetchResponse:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        text = body.decode(response.encoding or "utf-8", errors="replace")
        if status == 408 or status >= 500:
            raise NetworkError(f"HTTP {status}: {text[:200]}", status)
        if status >= 400:
            raise RemoteError(f"HTTP {status}: {text[:200]}", status)

        try:
            data = json.loads(body)
        except ValueError as e:
            raise RemoteError(f"Invalid JSON in response: {e}", status) from e
        if not isinstance(data, dict):
            raise RemoteError("Malformed response: expected a JSON object", status)
        return FetchResponse.from_dict(data)
