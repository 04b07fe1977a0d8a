"""Keep a search index consistent with a document store and query it.

Sub-packages:
- domain: documents, sync operations, search requests and results
- search: index mappings, serialization, analyzers and fuzzy matching
- adapters: index engine clients (HTTP and in-process)
- service_layer: retry policy, sync engine, query translation, result projection
- observability: logging, metrics and tracing
"""
