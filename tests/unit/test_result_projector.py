"""Unit tests for projecting raw engine responses into SearchResult objects."""

from datetime import datetime, timezone

import pytest

from index_sync.errors import MalformedResponse
from index_sync.search.schema import DateField, IndexMapping, NumericField, TextField
from index_sync.service_layer.result_projector import ResultProjector


def _response(hits=None, total=None, aggregations=None) -> dict:
    hits = hits if hits is not None else []
    response = {
        "took": 3,
        "hits": {
            "total": total if total is not None else {"value": len(hits), "relation": "eq"},
            "max_score": 1.0,
            "hits": hits,
        },
    }
    if aggregations is not None:
        response["aggregations"] = aggregations
    return response


@pytest.mark.unit
class TestHits:
    def test_hits_keep_engine_order(self):
        raw = _response(
            [
                {"_index": "bonds", "_id": "b4", "_score": None, "_source": {"name": "Legal"}, "sort": ["Legal"]},
                {"_index": "bonds", "_id": "b3", "_score": None, "_source": {"name": "Construction"}},
            ]
        )

        result = ResultProjector().project(raw)

        assert result.ids() == ["b4", "b3"]
        assert result.sources() == [{"name": "Legal"}, {"name": "Construction"}]
        assert result.hits[0].sort == ["Legal"]
        assert result.hits[0].index == "bonds"
        assert result.total == 2
        assert result.took_ms == 3

    def test_integer_total(self):
        result = ResultProjector().project(_response([], total=7))

        assert (result.total, result.total_relation) == (7, "eq")

    def test_lower_bound_total(self):
        result = ResultProjector().project(_response([], total={"value": 10000, "relation": "gte"}))

        assert result.total_relation == "gte"

    def test_mapping_restores_types(self):
        mapping = IndexMapping(fields=[TextField("name"), DateField("issued"), NumericField("price", numeric_type="long")])
        raw = _response([{"_id": 1, "_score": 1.0, "_source": {"issued": "2024-01-02T00:00:00+00:00", "price": 5.0}}])

        hit = ResultProjector(mapping).project(raw).hits[0]

        assert hit.id == "1"
        assert hit.source == {"issued": datetime(2024, 1, 2, tzinfo=timezone.utc), "price": 5}

    def test_source_factory_hydrates_documents(self):
        projector = ResultProjector(source_factory=lambda doc_id, source: (doc_id, source["name"]))

        result = projector.project(_response([{"_id": "b1", "_source": {"name": "Bail"}}]))

        assert result.hits[0].document == ("b1", "Bail")

    def test_missing_source_is_empty(self):
        result = ResultProjector().project(_response([{"_id": "b1", "_score": 0.5}]))

        assert result.hits[0].source == {}


@pytest.mark.unit
class TestAggregations:
    def test_buckets_keep_engine_order_and_extras(self):
        raw = _response(
            aggregations={
                "types": {
                    "doc_count_error_upper_bound": 0,
                    "sum_other_doc_count": 0,
                    "buckets": [
                        {"key": "B", "doc_count": 2, "avg_price": {"value": 17500.0}},
                        {"key": "A", "doc_count": 1, "avg_price": {"value": 10000.0}},
                    ],
                    "meta": {"label": "Types"},
                },
                "high": {"value": 30000.0},
            }
        )

        result = ResultProjector().project(raw)

        types = result.aggregations["types"]
        assert types.keys() == ["B", "A"]
        assert types.buckets[0].extra == {"avg_price": {"value": 17500.0}}
        assert types.extra == {"meta": {"label": "Types"}}
        assert result.aggregations["high"].value == 30000.0
        assert result.aggregations["high"].buckets == []

    def test_sort_buckets_by_key(self):
        raw = _response(
            aggregations={
                "mixed": {"buckets": [{"key": "b", "doc_count": 1}, {"key": 2, "doc_count": 1}, {"key": "a", "doc_count": 3}]}
            }
        )

        result = ResultProjector(sort_buckets_by_key=True).project(raw)

        assert result.aggregations["mixed"].keys() == [2, "a", "b"]

    def test_keyed_buckets(self):
        raw = _response(aggregations={"ranges": {"buckets": {"cheap": {"doc_count": 2}, "dear": {"doc_count": 2}}}})

        result = ResultProjector().project(raw)

        assert result.aggregations["ranges"].keys() == ["cheap", "dear"]


@pytest.mark.unit
class TestMalformedResponses:
    @pytest.mark.parametrize(
        "raw",
        [
            [],
            {},
            {"hits": []},
            {"hits": {"total": 1}},
            {"hits": {"hits": []}},
            {"hits": {"total": {"value": -1}, "hits": []}},
            {"hits": {"total": {"value": 1, "relation": "about"}, "hits": []}},
            {"hits": {"total": True, "hits": []}},
            {"hits": {"total": 1, "hits": [{"_source": {}}]}},
            {"hits": {"total": 1, "hits": [{"_id": "b1", "_source": ["x"]}]}},
            {"hits": {"total": 0, "hits": []}, "aggregations": ["types"]},
            {"hits": {"total": 0, "hits": []}, "aggregations": {"types": 3}},
            {"hits": {"total": 0, "hits": []}, "aggregations": {"types": {"buckets": [{"key": "A"}]}}},
            {"hits": {"total": 0, "hits": []}, "aggregations": {"types": {"buckets": [{"key": "A", "doc_count": -2}]}}},
            {"hits": {"total": 0, "hits": []}, "aggregations": {"types": {"buckets": "A"}}},
            {"hits": {"total": 0, "hits": [{"_id": "b1", "_score": "high"}]}},
        ],
    )
    def test_malformed_responses_raise(self, raw):
        with pytest.raises(MalformedResponse):
            ResultProjector().project(raw)
