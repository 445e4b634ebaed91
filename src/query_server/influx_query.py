"""Query execution against the time-series query service.

This module owns the only long-lived resource of the reader: a pooled
``httpx.AsyncClient`` shared by all in-flight requests.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from core.config import DIALECT_ANNOTATIONS, REQUEST_TIMEOUT_SECONDS
from core.error_handling import QueryExecutionError
from core.flux_results import TableStream

logger = logging.getLogger(__name__)

QUERY_PATH = "/api/v2/query"


class InfluxQueryService:
    """Runs Flux queries and returns the annotated result as a table stream."""

    def __init__(
        self,
        url: str,
        org_id: str,
        token: str = "",
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.org_id = org_id
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=self.url,
            timeout=timeout,
            verify=verify_ssl,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "InfluxQueryService":
        return cls(
            url=settings.url,
            org_id=settings.org_id,
            token=settings.token,
            timeout=settings.request_timeout_seconds,
            verify_ssl=settings.verify_ssl,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/csv",
        }
        if self.token:
            headers["Authorization"] = f"Token {self.token}"
        return headers

    def _payload(self, flux_query: str) -> Dict[str, Any]:
        return {
            "query": flux_query,
            "type": "flux",
            "dialect": {
                "header": True,
                "delimiter": ",",
                "annotations": list(DIALECT_ANNOTATIONS),
            },
        }

    async def query(self, flux_query: str) -> TableStream:
        """Execute a Flux query.

        An empty successful response yields a stream with no tables.

        Raises:
            QueryExecutionError: on transport failures and non-2xx responses
        """
        logger.debug(f"Executing Flux query:\n{flux_query}")
        try:
            response = await self._client.post(
                QUERY_PATH,
                params={"orgID": self.org_id},
                json=self._payload(flux_query),
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.error(f"Query request to {self.url} failed: {e}")
            raise QueryExecutionError(f"Error querying {self.url}: {e}") from e

        if not response.is_success:
            message = _error_message(response)
            logger.error(f"Query failed: HTTP {response.status_code} - {message}")
            raise QueryExecutionError(
                f"Query failed: HTTP {response.status_code} - {message}",
                status_code=response.status_code,
            )

        return TableStream(response.content)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "InfluxQueryService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text
