"""Service layer - use case orchestration.

- retry: bounded exponential backoff policy
- sync_engine: ordered, concurrent dispatch of sync operations
- query_translator: structured requests to engine query bodies
- result_projector: engine responses to typed results
- search_service: translate, execute and project in one call
- indexed_collection: store-facing publish function and collection-level API

Modules are imported directly (``from index_sync.service_layer.sync_engine import SyncEngine``);
``index_sync.config`` depends on ``retry``, so nothing is re-exported here.
"""
