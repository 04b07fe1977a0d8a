"""Search service orchestration layer.

Combines query translation, engine execution and result projection behind a
single ``search(query, options)`` entry point.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
from typing import Any

from opentelemetry.trace import SpanKind

from index_sync.adapters.index_client import AbstractIndexClient
from index_sync.domain.search import SearchRequest, SearchResult
from index_sync.observability.metrics import SEARCH_LATENCY, track_latency
from index_sync.observability.tracing import create_span
from index_sync.service_layer.query_translator import QueryTranslator
from index_sync.service_layer.result_projector import ResultProjector


logger = logging.getLogger(__name__)


class SearchService:
    """High-level search orchestration service.

    A failed search raises; callers never receive a partially populated result.
    """

    def __init__(
        self,
        client: AbstractIndexClient,
        translator: QueryTranslator | None = None,
        projector: ResultProjector | None = None,
    ) -> None:
        """Initialize search service with dependencies.

        Args:
            client: Index engine client used to execute searches
            translator: Builds engine request bodies (default: no mapping validation)
            projector: Reshapes engine responses (default: untyped sources)
        """
        self.client = client
        self.translator = translator or QueryTranslator()
        self.projector = projector or ResultProjector()

    async def search(
        self,
        index: str,
        query: Mapping[str, Any] | SearchRequest | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> SearchResult:
        """Execute a structured search against ``index``.

        Args:
            index: Target index name
            query: Query clause (``{"match": {...}}``) or a prepared ``SearchRequest``
            options: ``sort``, ``aggs``, ``from``, ``size``, ``min_score``, ``_source``, ``highlight``

        Returns:
            SearchResult with total, ordered hits and aggregations
        """
        if isinstance(query, SearchRequest):
            if options:
                raise ValueError("options cannot be combined with a prepared SearchRequest")
            request = query
        else:
            request = self.translator.build_request(query, options)

        with create_span("index.search_request", kind=SpanKind.INTERNAL, attributes={"index.name": index}):
            with track_latency(SEARCH_LATENCY, index=index):
                body = self.translator.translate(request)
                raw = await self.client.search(index, body)
                result = self.projector.project(raw)

        logger.debug(
            "Search on %s matched %d documents, returned %d hits",
            index,
            result.total,
            len(result.hits),
        )
        return result

    async def count(self, index: str, query: Mapping[str, Any] | None = None) -> int:
        """Number of documents in ``index`` matching ``query`` (all documents when omitted)."""
        translated = self.translator.translate_query(query) if query else None
        return await self.client.count(index, translated)
