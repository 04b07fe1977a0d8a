"""End-to-end bond catalogue: store events in, searches out, over the in-memory engine."""

import pytest
import pytest_asyncio

from index_sync.domain.model import IndexableDocument
from index_sync.search.serializer import to_index_payload


@pytest_asyncio.fixture
async def catalogue(bond_collection, bonds):
    report = await bond_collection.synchronize(bonds)
    assert report.indexed == 4
    return bond_collection


def _names(result) -> list[str]:
    return [source["name"] for source in result.sources()]


@pytest.mark.integration
class TestBondCatalogue:
    @pytest.mark.asyncio
    async def test_price_range_is_inclusive(self, catalogue):
        result = await catalogue.search({"range": {"price": {"from": 20000, "to": 30000}}}, {"sort": "price:asc"})

        assert _names(result) == ["Construction", "Legal"]
        assert result.total == 2

    @pytest.mark.asyncio
    async def test_sort_shapes_agree(self, catalogue):
        ascending = [
            await catalogue.search(None, {"sort": "name.keyword:asc"}),
            await catalogue.search(None, {"sort": ["name.keyword:asc"]}),
            await catalogue.search(None, {"sort": {"name.keyword": "asc"}}),
        ]
        descending = [
            await catalogue.search(None, {"sort": "name.keyword:desc"}),
            await catalogue.search(None, {"sort": ["name.keyword:desc"]}),
            await catalogue.search(None, {"sort": {"name.keyword": {"order": "desc"}}}),
        ]

        for result in ascending:
            assert _names(result) == ["Bail", "Commercial", "Construction", "Legal"]
        for result in descending:
            assert _names(result) == ["Legal", "Construction", "Commercial", "Bail"]

    @pytest.mark.asyncio
    async def test_secondary_sort_breaks_ties(self, catalogue):
        cheapest_first = await catalogue.search(None, {"sort": "type.keyword:desc,price:asc"})
        dearest_first = await catalogue.search(None, {"sort": {"type.keyword": "desc", "price": "desc"}})

        assert _names(cheapest_first) == ["Legal", "Commercial", "Construction", "Bail"]
        assert _names(dearest_first) == ["Legal", "Construction", "Commercial", "Bail"]

    @pytest.mark.asyncio
    async def test_terms_aggregation_partitions_documents(self, catalogue):
        result = await catalogue.search(None, {"aggs": {"types": {"terms": {"field": "type.keyword"}}}})

        types = result.aggregations["types"]
        assert types.keys() == ["B", "A", "C"]
        assert [bucket.doc_count for bucket in types.buckets] == [2, 1, 1]
        assert sum(bucket.doc_count for bucket in types.buckets) == result.total == 4

    @pytest.mark.asyncio
    async def test_fuzzy_match_tolerates_misspelling(self, catalogue):
        via_match = await catalogue.search({"match": {"name": {"query": "comersial", "fuzziness": 2}}})
        via_fuzzy = await catalogue.search({"fuzzy": {"name": {"value": "comersial", "fuzziness": 2}}})

        assert _names(via_match) == ["Commercial"]
        assert _names(via_fuzzy) == ["Commercial"]

    @pytest.mark.asyncio
    async def test_exact_match_without_fuzziness_misses(self, catalogue):
        result = await catalogue.search({"match": {"name": "comersial"}})

        assert result.total == 0

    @pytest.mark.asyncio
    async def test_reindexing_is_idempotent(self, catalogue, bonds):
        await catalogue.synchronize(bonds)
        for bond in bonds:
            await catalogue.save_and_wait(bond)

        assert await catalogue.count() == 4

    @pytest.mark.asyncio
    async def test_id_lookup_returns_indexed_projection(self, catalogue, bonds, bond_mapping):
        result = await catalogue.search({"term": {"_id": "b3"}})

        (hit,) = result.hits
        assert hit.id == "b3"
        assert hit.source == to_index_payload(IndexableDocument.from_record(bonds[2]), bond_mapping)


@pytest.mark.integration
class TestStoreLifecycle:
    @pytest.mark.asyncio
    async def test_events_flow_into_search_results(self, bond_collection, bonds):
        for bond in bonds:
            bond_collection.on_create(bond)
        await bond_collection.engine.wait_idle()

        await bond_collection.on_update({**bonds[0], "price": 25000}, changed_fields=["price"])
        await bond_collection.on_remove("b4")
        await bond_collection.refresh()

        result = await bond_collection.search({"range": {"price": {"from": 20000}}}, {"sort": "price:desc"})

        assert _names(result) == ["Bail", "Construction"]

    @pytest.mark.asyncio
    async def test_truncate_then_resynchronize(self, catalogue, bonds):
        assert await catalogue.truncate() == 4
        assert (await catalogue.search()).total == 0

        report = await catalogue.synchronize(bonds, chunk_size=2)

        assert report.chunks == 2
        assert (await catalogue.search()).total == 4
