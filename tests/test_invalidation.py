"""Tests for the invalidation graph."""

import pytest

from coversync import (
    CacheStore,
    EntryStatus,
    Fetcher,
    InvalidationGraph,
    SubscriptionRegistry,
    key,
    rule,
    template,
)

STATUS_CHANGED = rule(
    "claim.statusChanged",
    template("claims", "{id}"),
    key("claims"),
    key("dashboardStats"),
    primary=template("claims", "{id}"),
)
NOTE_ADDED = rule(
    "claim.noteAdded",
    template("claims", "{id}", "notes"),
    template("claims", "{id}"),
)
INVOICE_DELETED = rule(
    "invoice.deleted",
    key("invoices"),
    removes=(template("invoices", "{id}"),),
)


@pytest.fixture
def fetch_log() -> list:
    return []


@pytest.fixture
def fetcher(store: CacheStore, fetch_log: list) -> Fetcher:
    async def fetch(k):
        fetch_log.append(k)
        return f"{k}#refetched"

    return Fetcher(store, fetch, retry_base_delay=0)


@pytest.fixture
def graph(store: CacheStore, fetcher: Fetcher) -> InvalidationGraph:
    return InvalidationGraph(store, fetcher, [STATUS_CHANGED, NOTE_ADDED, INVOICE_DELETED])


class TestResolve:
    """Tests for rule resolution."""

    def test_templates_filled_from_payload(self, graph) -> None:
        prefixes = graph.resolve("claim.statusChanged", {"id": 7, "status": "approved"})
        assert prefixes == {key("claims", 7), key("claims"), key("dashboardStats")}

    def test_unknown_effect_resolves_nothing(self, graph) -> None:
        assert graph.resolve("claim.archived", {"id": 7}) == set()
        assert "claim.archived" not in graph
        assert "claim.statusChanged" in graph

    def test_primary_key(self, graph) -> None:
        assert graph.primary_key("claim.statusChanged", {"id": 7}) == key("claims", 7)
        assert graph.primary_key("claim.noteAdded", {"id": 7}) is None

    def test_unfillable_source_skipped(self, graph) -> None:
        """Test that sources needing absent payload fields are left out."""
        prefixes = graph.resolve("claim.statusChanged", {"claimId": 7})
        assert prefixes == {key("claims"), key("dashboardStats")}
        assert graph.removals("invoice.deleted", {}) == set()

    def test_callable_sources(self, store, fetcher) -> None:
        bulk = rule(
            "claim.bulkAssigned",
            lambda payload: [key("claims", i) for i in payload["ids"]],
        )
        graph = InvalidationGraph(store, fetcher, [bulk])
        assert graph.resolve("claim.bulkAssigned", {"ids": [1, 2]}) == {
            key("claims", 1),
            key("claims", 2),
        }

    def test_duplicate_rule_rejected(self, store, fetcher) -> None:
        with pytest.raises(ValueError, match="Duplicate"):
            InvalidationGraph(store, fetcher, [NOTE_ADDED, NOTE_ADDED])


class TestApply:
    """Tests for invalidation and refetch."""

    async def test_cascade_marks_dependents_stale(self, store, graph) -> None:
        store.put(key("claims", page=1), ["page1"])
        store.put(key("claims", 7), {"id": 7})
        store.put(key("claims", 7, "notes"), [])
        store.put(key("dashboardStats"), {"open": 3})
        store.put(key("clients", 1), {"id": 1})

        graph.invalidate("claim.statusChanged", {"id": 7})

        for stale in (
            key("claims", page=1),
            key("claims", 7),
            key("claims", 7, "notes"),
            key("dashboardStats"),
        ):
            assert store.get(stale).status is EntryStatus.STALE
        assert store.get(key("clients", 1)).status is EntryStatus.FRESH

    async def test_only_subscribed_keys_refetched(
        self, store, fetcher, graph, fetch_log
    ) -> None:
        registry = SubscriptionRegistry(store, fetcher)
        store.put(key("claims", 7), {"id": 7})
        store.put(key("dashboardStats"), {"open": 3})
        registry.subscribe(key("claims", 7), lambda entry: None)

        graph.invalidate("claim.statusChanged", {"id": 7})
        await fetcher.drain()

        assert fetch_log == [key("claims", 7)]
        assert store.get(key("claims", 7)).value == "claims:7#refetched"
        assert store.get(key("dashboardStats")).status is EntryStatus.STALE
        registry.close()

    async def test_refetch_issued_once_per_key(
        self, store, fetcher, graph, fetch_log
    ) -> None:
        """Overlapping prefixes do not fetch the same key twice."""
        registry = SubscriptionRegistry(store, fetcher)
        store.put(key("claims", 7), {"id": 7})
        registry.subscribe(key("claims", 7), lambda entry: None)

        refetched = graph.apply([key("claims"), key("claims", 7)])
        await fetcher.drain()

        assert refetched == [key("claims", 7)]
        assert fetch_log == [key("claims", 7)]
        registry.close()

    async def test_removes_evict_outright(self, store, graph) -> None:
        store.put(key("invoices", 3), {"id": 3})
        store.put(key("invoices", page=1), [{"id": 3}])

        prefixes = graph.invalidate("invoice.deleted", {"id": 3})

        assert key("invoices", 3) not in store
        assert store.get(key("invoices", page=1)).status is EntryStatus.STALE
        assert prefixes == {key("invoices")}

    async def test_unknown_effect_is_noop(self, store, graph) -> None:
        store.put(key("claims", 7), {"id": 7})
        assert graph.invalidate("claim.archived", {"id": 7}) == set()
        assert store.get(key("claims", 7)).status is EntryStatus.FRESH
