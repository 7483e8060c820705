"""Tests for the console's keys, rules and push routes."""

import pytest

from coversync import (
    CacheStore,
    EntryStatus,
    EventRouter,
    Fetcher,
    InvalidationGraph,
    decode_event,
    key,
)
from coversync.rules import (
    DEFAULT_ROUTES,
    DEFAULT_RULES,
    MUTATION_ROUTES,
    SUMMARY_KEYS,
    entity_domain,
    keys,
)


@pytest.fixture
def graph(store: CacheStore) -> InvalidationGraph:
    async def fetch(k):
        return None

    return InvalidationGraph(store, Fetcher(store, fetch), DEFAULT_RULES)


@pytest.fixture
def router(store: CacheStore, graph: InvalidationGraph) -> EventRouter:
    return EventRouter(store, graph, DEFAULT_ROUTES)


class TestKeys:
    """Tests for the key factories."""

    def test_claim_keys(self) -> None:
        assert keys["claim"](7) == key("claims", 7)
        assert keys["claim_notes"](7) == key("claims", 7, "notes")
        assert keys["claims"](page=2, status="open") == key("claims", page=2, status="open")

    def test_header_keys(self) -> None:
        assert keys["header_notifications"]() == key("header", "notifications", limit=10)
        assert keys["header_messages"](5) == key("header", "messages", limit=5)
        assert SUMMARY_KEYS == (
            key("header", "notifications", limit=10),
            key("header", "messages", limit=10),
        )

    def test_entity_domain(self) -> None:
        assert entity_domain("claim") == "claims"
        assert entity_domain("policy") == "policies"
        assert entity_domain("claims") == "claims"


class TestRules:
    """Tests for the invalidation table."""

    def test_status_change(self, graph) -> None:
        assert graph.resolve("claim.statusChanged", {"id": 7}) == {
            key("claims", 7),
            key("claims"),
            key("dashboardStats"),
        }
        assert graph.primary_key("claim.statusChanged", {"id": 7}) == key("claims", 7)

    def test_note_added(self, graph) -> None:
        assert graph.resolve("claim.noteAdded", {"id": 7, "content": "x"}) == {
            key("claims", 7, "notes"),
            key("claims", 7),
        }

    def test_bulk_delete_removes_each_client(self, graph, store) -> None:
        store.put(key("clients", 1), {"id": 1})
        store.put(key("clients", 2), {"id": 2})
        store.put(key("clients", 3), {"id": 3})
        graph.invalidate("client.bulkDeleted", {"clientIds": [1, 2]})
        assert key("clients", 1) not in store
        assert key("clients", 2) not in store
        assert store.get(key("clients", 3)).status is EntryStatus.STALE

    def test_client_assignment(self, graph) -> None:
        prefixes = graph.resolve("client.assigned", {"id": 3, "agentId": 9})
        assert key("clients", "agent", 9) in prefixes

    def test_invoice_delete_removes_detail(self, graph, store) -> None:
        store.put(key("invoices", 5), {"id": 5})
        store.put(key("invoices", page=1), [])
        graph.invalidate("invoice.deleted", {"id": 5})
        assert key("invoices", 5) not in store
        assert store.get(key("invoices", page=1)).status is EntryStatus.STALE

    def test_every_rule_has_a_route(self) -> None:
        effects = {item.effect for item in DEFAULT_RULES}
        # Uploads are multipart requests made outside the JSON transport
        uploads = {e for e in effects if e.endswith(".documentUploaded")}
        missing = effects - set(MUTATION_ROUTES) - uploads
        assert missing == set()

    def test_every_route_has_a_rule(self) -> None:
        effects = {item.effect for item in DEFAULT_RULES}
        assert set(MUTATION_ROUTES) <= effects


class TestRoutes:
    """Tests for push event routing."""

    def test_new_notification(self, store, router) -> None:
        store.put(key("header", "notifications", limit=10), {"unreadCount": 0})
        router.apply(decode_event({"type": "new_notification", "data": {"id": 12}}))

        assert store.get(key("notifications", 12)).value == {"id": 12}
        assert (
            store.get(key("header", "notifications", limit=10)).status
            is EntryStatus.STALE
        )

    def test_message_alias(self, store, router) -> None:
        store.put(key("header", "messages", limit=10), {"unreadCount": 0})
        router.apply(decode_event({"type": "message", "id": 4, "body": "hello"}))

        assert store.get(key("messages", 4)).value == {"id": 4, "body": "hello"}
        assert store.get(key("header", "messages", limit=10)).status is EntryStatus.STALE

    def test_profile_update(self, store, router) -> None:
        store.put(key("header", "profile"), {"name": "A"})
        router.apply(decode_event({"type": "profile_update"}))
        assert store.get(key("header", "profile")).status is EntryStatus.STALE

    def test_activities(self, store, router) -> None:
        router.apply(decode_event({"type": "INITIAL_ACTIVITIES", "data": [{"id": 1}]}))
        router.apply(decode_event({"type": "ACTIVITY_STATS", "data": {"today": 3}}))
        assert store.get(keys["activities_recent"]()).value == [{"id": 1}]
        assert store.get(keys["activities_stats"]()).value == {"today": 3}

        router.apply(decode_event({"type": "NEW_ACTIVITY", "data": {"id": 2}}))
        assert store.get(keys["activity"](2)).value == {"id": 2}
        assert store.get(keys["activities_recent"]()).status is EntryStatus.STALE

    def test_activity_updated(self, store, router) -> None:
        store.put(keys["activity"](2), {"id": 2})
        router.apply(decode_event({"type": "ACTIVITY_UPDATED", "data": {"activityId": 2}}))
        assert store.get(keys["activity"](2)).status is EntryStatus.STALE

    def test_entity_updated(self, store, router) -> None:
        store.put(key("claims", page=1), [{"id": 7, "status": "open"}])
        router.apply(
            decode_event(
                {
                    "type": "entity_updated",
                    "entityKind": "claim",
                    "entityId": "7",
                    "data": {"id": 7, "status": "approved"},
                }
            )
        )
        assert store.get(key("claims", 7)).status is EntryStatus.FRESH
        assert store.get(key("claims", page=1)).status is EntryStatus.STALE

    def test_entity_changed_with_effect(self, store, router) -> None:
        store.put(key("claims", 7, "notes"), [])
        store.put(key("claims", page=1), [])
        router.apply(
            decode_event(
                {
                    "type": "entity_changed",
                    "entityKind": "claim",
                    "entityId": 7,
                    "data": {"effect": "claim.noteAdded"},
                }
            )
        )
        assert store.get(key("claims", 7, "notes")).status is EntryStatus.STALE
        assert store.get(key("claims", page=1)).status is EntryStatus.FRESH

    def test_entity_changed_signal(self, store, router) -> None:
        store.put(key("policies", 3), {"id": 3})
        store.put(key("policies", 4), {"id": 4})
        router.apply(
            decode_event({"type": "entity_changed", "entityKind": "policy", "entityId": 3})
        )
        assert store.get(key("policies", 3)).status is EntryStatus.STALE
        assert store.get(key("policies", 4)).status is EntryStatus.FRESH
