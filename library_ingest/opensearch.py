import json
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx
from pydantic import ValidationError

from library_ingest.config import Settings
from library_ingest.errors import SearchEngineError
from library_ingest.schemas import BulkResponse, CountResponse

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {408, 429}


def is_transient_status(status: int) -> bool:
    """Only 408, 429 and 5xx are retried; any other non-2xx status fails the batch."""
    return status in TRANSIENT_STATUSES or status >= 500


class OpenSearchClient:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = settings.os_url.rstrip("/")
        self.timeout_sec = settings.os_timeout_sec
        self._client = client or httpx.AsyncClient(timeout=self.timeout_sec)
        self._owns_client = client is None

    async def __aenter__(self) -> "OpenSearchClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str]:
        response = await self._client.request(
            method,
            f"{self.base_url}{path}",
            json=body,
            params=params,
            timeout=self.timeout_sec,
        )
        return response.status_code, response.text

    async def request_raw(
        self,
        method: str,
        path: str,
        payload: bytes,
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str]:
        response = await self._client.request(
            method,
            f"{self.base_url}{path}",
            content=payload,
            headers=headers,
            params=params,
            timeout=self.timeout_sec,
        )
        return response.status_code, response.text

    async def put_index_template(self, name: str, template: Dict[str, Any]) -> int:
        status, body = await self.request("PUT", f"/_index_template/{name}", template)
        if status >= 300:
            logger.error("index template %s rejected (%s): %s", name, status, body)
        return status

    async def create_index(self, index_name: str) -> bool:
        """Create ``index_name``; returns False when it already existed."""
        status, body = await self.request("PUT", f"/{index_name}")
        if status < 300:
            return True
        if status == 400 and "resource_already_exists_exception" in body:
            return False
        raise SearchEngineError(f"Failed to create index {index_name} ({status}): {body}", status=status)

    async def count(self, index_name: str, query: Optional[Dict[str, Any]] = None) -> int:
        body = {"query": query} if query else None
        status, response = await self.request("POST", f"/{index_name}/_count", body)
        if status == 404:
            return 0
        if status >= 300:
            raise SearchEngineError(f"Count failed ({status}): {response}", status=status)
        try:
            return CountResponse.model_validate_json(response).count
        except ValidationError as exc:
            raise SearchEngineError(f"Unparseable count response from {index_name} ({status}): {response[:200]}", status=status) from exc

    async def bulk_index(self, index_name: str, docs: Iterable[Tuple[str, Dict[str, Any]]], refresh: str) -> Tuple[int, str]:
        lines = []
        for doc_id, doc in docs:
            lines.append(json.dumps({"index": {"_id": doc_id}}, ensure_ascii=False))
            lines.append(json.dumps(doc, ensure_ascii=False))
        payload = "\n".join(lines) + "\n"
        return await self.request_raw(
            "POST",
            f"/{index_name}/_bulk",
            payload.encode("utf-8"),
            {"Content-Type": "application/x-ndjson"},
            params={"refresh": refresh},
        )


def parse_bulk_response(body: str, status: int = 200) -> BulkResponse:
    try:
        return BulkResponse.model_validate_json(body)
    except ValidationError as exc:
        raise SearchEngineError(f"Unparseable bulk response ({status}): {body[:200]}", status=status) from exc
