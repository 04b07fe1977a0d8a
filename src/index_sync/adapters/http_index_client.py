"""Index client speaking the engine's HTTP/JSON protocol over httpx."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
from typing import Any
from urllib.parse import quote

import httpx
from opentelemetry.trace import SpanKind
import orjson

from index_sync.adapters.index_client import (
    AbstractIndexClient,
    BulkAction,
    BulkItemResult,
    WriteAck,
    error_for_status,
)
from index_sync.config import Settings
from index_sync.errors import (
    DocumentNotFoundError,
    IndexConnectionError,
    IndexSyncError,
    IndexTimeoutError,
    IndexValidationError,
    MalformedResponse,
)
from index_sync.observability.metrics import CLIENT_ERRORS, CLIENT_LATENCY, track_latency
from index_sync.observability.tracing import create_span


logger = logging.getLogger(__name__)

_JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}
_NDJSON_HEADERS = {"Content-Type": "application/x-ndjson", "Accept": "application/json"}


class HttpIndexClient(AbstractIndexClient):
    """Index engine client backed by a shared ``httpx.AsyncClient``.

    The client is a lifecycle-scoped handle: create it on start (or use it as
    an async context manager) and close it on stop. It is safe to share
    between concurrent tasks.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers=dict(headers or {}),
            transport=transport,
        )
        logger.debug("Initialized index client for %s", self.base_url)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> HttpIndexClient:
        return cls(
            settings.engine_url,
            timeout=settings.request_timeout,
            connect_timeout=settings.connect_timeout,
            **kwargs,
        )

    async def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def put_document(
        self,
        index: str,
        document_id: str,
        payload: Mapping[str, Any],
        *,
        refresh: bool = False,
        timeout: float | None = None,
    ) -> WriteAck:
        body = await self._request(
            "put_document",
            "PUT",
            f"/{_segment(index)}/_doc/{_segment(document_id)}",
            index=index,
            document_id=document_id,
            json_body=payload,
            params=_refresh_param(refresh),
            timeout=timeout,
        )
        return WriteAck(
            index=index,
            document_id=document_id,
            result=str(body.get("result", "updated")),
            version=body.get("_version"),
        )

    async def delete_document(
        self,
        index: str,
        document_id: str,
        *,
        refresh: bool = False,
        timeout: float | None = None,
    ) -> WriteAck:
        body = await self._request(
            "delete_document",
            "DELETE",
            f"/{_segment(index)}/_doc/{_segment(document_id)}",
            index=index,
            document_id=document_id,
            params=_refresh_param(refresh),
            timeout=timeout,
        )
        return WriteAck(index=index, document_id=document_id, result="deleted", version=body.get("_version"))

    async def get_document(self, index: str, document_id: str, *, timeout: float | None = None) -> dict[str, Any]:
        body = await self._request(
            "get_document",
            "GET",
            f"/{_segment(index)}/_doc/{_segment(document_id)}",
            index=index,
            document_id=document_id,
            timeout=timeout,
        )
        if not body.get("found", True):
            raise DocumentNotFoundError(index, document_id)
        source = body.get("_source")
        if not isinstance(source, dict):
            raise MalformedResponse(f"Document {index}/{document_id} response has no _source")
        return source

    async def bulk(
        self,
        index: str,
        actions: Sequence[BulkAction],
        *,
        refresh: bool = False,
        timeout: float | None = None,
    ) -> list[BulkItemResult]:
        if not actions:
            return []

        body = await self._request(
            "bulk",
            "POST",
            f"/{_segment(index)}/_bulk",
            index=index,
            content=encode_bulk_body(actions),
            headers=_NDJSON_HEADERS,
            params=_refresh_param(refresh),
            timeout=timeout,
        )
        items = body.get("items")
        if not isinstance(items, list) or len(items) != len(actions):
            raise MalformedResponse(
                f"Bulk response for {index} has {len(items) if isinstance(items, list) else 'no'} items, "
                f"expected {len(actions)}"
            )

        results = [_bulk_item_result(index, action, item) for action, item in zip(actions, items, strict=True)]
        failed = sum(1 for result in results if not result.ok)
        if failed:
            logger.warning("Bulk request to %s finished with %d/%d failed items", index, failed, len(results))
        return results

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        index: str,
        body: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "search", "POST", f"/{_segment(index)}/_search", index=index, json_body=body, timeout=timeout
        )

    async def count(
        self,
        index: str,
        query: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> int:
        payload = {"query": dict(query)} if query else None
        body = await self._request(
            "count", "POST", f"/{_segment(index)}/_count", index=index, json_body=payload, timeout=timeout
        )
        count = body.get("count")
        if not isinstance(count, int):
            raise MalformedResponse(f"Count response for {index} has no integer 'count'")
        return count

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    async def ensure_index(
        self,
        index: str,
        body: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> bool:
        if await self._index_exists(index, timeout=timeout):
            logger.debug("Index %s already exists", index)
            return False
        try:
            await self._request(
                "ensure_index", "PUT", f"/{_segment(index)}", index=index, json_body=body or {}, timeout=timeout
            )
        except IndexValidationError as exc:
            # Another writer created it between the existence check and the PUT
            if "already_exists" in str(exc.reason) or "already exists" in str(exc):
                return False
            raise
        logger.info("Created index %s", index)
        return True

    async def delete_index(self, index: str, *, timeout: float | None = None) -> None:
        await self._request("delete_index", "DELETE", f"/{_segment(index)}", index=index, timeout=timeout)
        logger.info("Deleted index %s", index)

    async def delete_by_query(
        self,
        index: str,
        query: Mapping[str, Any],
        *,
        refresh: bool = False,
        timeout: float | None = None,
    ) -> int:
        body = await self._request(
            "delete_by_query",
            "POST",
            f"/{_segment(index)}/_delete_by_query",
            index=index,
            json_body={"query": dict(query)},
            params={"refresh": "true"} if refresh else None,
            timeout=timeout,
        )
        return int(body.get("deleted", 0))

    async def refresh(self, index: str, *, timeout: float | None = None) -> None:
        await self._request("refresh", "POST", f"/{_segment(index)}/_refresh", index=index, timeout=timeout)

    async def _index_exists(self, index: str, *, timeout: float | None = None) -> bool:
        try:
            await self._request("index_exists", "HEAD", f"/{_segment(index)}", index=index, timeout=timeout)
        except DocumentNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        index: str,
        document_id: str | None = None,
        json_body: Mapping[str, Any] | None = None,
        content: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if json_body is not None:
            try:
                content = orjson.dumps(dict(json_body), default=_json_default)
            except TypeError as exc:
                raise IndexValidationError(f"{operation} on {index} has a non-serializable body: {exc}") from exc
        attributes = {"index.name": index, "index.operation": operation, "index.document_id": document_id}

        with create_span(f"index.{operation}", kind=SpanKind.CLIENT, attributes=attributes) as span:
            try:
                with track_latency(CLIENT_LATENCY, operation=operation):
                    response = await self._client.request(
                        method,
                        path,
                        content=content,
                        headers=dict(headers or _JSON_HEADERS),
                        params=params,
                        timeout=httpx.USE_CLIENT_DEFAULT if timeout is None else timeout,
                    )
            except httpx.TimeoutException as exc:
                CLIENT_ERRORS.labels(operation=operation, error_type="timeout").inc()
                raise IndexTimeoutError(f"{operation} on {index} timed out: {exc}") from exc
            except httpx.TransportError as exc:
                CLIENT_ERRORS.labels(operation=operation, error_type="connection").inc()
                raise IndexConnectionError(f"{operation} on {index} failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            body = _decode(response, operation, index)
            if response.status_code >= 400:
                error = error_for_status(response.status_code, body, index=index, document_id=document_id)
                CLIENT_ERRORS.labels(operation=operation, error_type=type(error).__name__).inc()
                raise error
            return body


def encode_bulk_body(actions: Sequence[BulkAction]) -> bytes:
    """Encode bulk actions as newline-delimited action/payload pairs."""
    lines: list[bytes] = []
    for action in actions:
        lines.append(orjson.dumps({action.kind: {"_id": action.document_id}}))
        if action.kind != "delete":
            try:
                lines.append(orjson.dumps(dict(action.payload or {}), default=_json_default))
            except TypeError as exc:
                raise IndexValidationError(f"Bulk payload for {action.document_id} is not serializable: {exc}") from exc
    return b"\n".join(lines) + b"\n"


def _bulk_item_result(index: str, action: BulkAction, item: Any) -> BulkItemResult:
    if not isinstance(item, Mapping) or len(item) != 1:
        raise MalformedResponse(f"Unexpected bulk item for {index}/{action.document_id}: {item!r}")
    (detail,) = item.values()
    if not isinstance(detail, Mapping) or "status" not in detail:
        raise MalformedResponse(f"Bulk item for {index}/{action.document_id} has no status")

    status = int(detail["status"])
    error: IndexSyncError | None = None
    if status >= 400:
        error = error_for_status(status, {"error": detail.get("error")}, index=index, document_id=action.document_id)
    return BulkItemResult(
        document_id=str(detail.get("_id", action.document_id)),
        kind=action.kind,
        status=status,
        result=detail.get("result"),
        error=error,
    )


def _decode(response: httpx.Response, operation: str, index: str) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = orjson.loads(response.content)
    except orjson.JSONDecodeError as exc:
        if response.status_code >= 400:
            return {"error": response.text}
        raise MalformedResponse(f"{operation} on {index} returned invalid JSON") from exc
    if not isinstance(body, dict):
        raise MalformedResponse(f"{operation} on {index} returned {type(body).__name__}, expected an object")
    return body


def _segment(value: str) -> str:
    return quote(value, safe="")


def _refresh_param(refresh: bool) -> dict[str, str] | None:
    return {"refresh": "true"} if refresh else None


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")
