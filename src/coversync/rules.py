"""Query keys, invalidation rules and push routes of the insurance console.

Key layout:
    claims                          every claim read (lists, details, sub-resources)
    claims?{...filters}             one page/filter combination of the claims list
    claims:<id>                     claim detail
    claims:<id>:notes|documents     claim sub-resources
    claims:stats, dashboard:stats   aggregate counters
    header:notifications?{limit}    latest notifications + unread count
    header:messages?{limit}         latest messages + unread count
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from coversync.adapters.http import MutationRoute
from coversync.events import EventRoute
from coversync.invalidation import InvalidationRule, rule
from coversync.keys import QueryKey, define_keys, key, template
from coversync.types import Duration, PushEvent, PushEventType

# Entity kind in push events -> key domain
ENTITY_DOMAINS: dict[str, str] = {
    "claim": "claims",
    "client": "clients",
    "policy": "policies",
    "invoice": "invoices",
    "lead": "leads",
    "notification": "notifications",
    "message": "messages",
    "activity": "activities",
    "quotation": "quotations",
    "agent": "agents",
}

keys = define_keys(
    {
        "claims": lambda **filters: QueryKey.of("claims", **filters),
        "claim": lambda id: ("claims", id),
        "claim_notes": lambda id: ("claims", id, "notes"),
        "claim_documents": lambda id: ("claims", id, "documents"),
        "claims_stats": lambda: ("claims", "stats"),
        "clients": lambda **filters: QueryKey.of("clients", **filters),
        "client": lambda id: ("clients", id),
        "client_notes": lambda id: ("clients", id, "notes"),
        "client_documents": lambda id: ("clients", id, "documents"),
        "clients_by_agent": lambda agent_id: ("clients", "agent", agent_id),
        "clients_stats": lambda: ("clients", "stats"),
        "policies": lambda **filters: QueryKey.of("policies", **filters),
        "policy": lambda id: ("policies", id),
        "policy_documents": lambda id: ("policies", id, "documents"),
        "invoices": lambda **filters: QueryKey.of("invoices", **filters),
        "invoice": lambda id: ("invoices", id),
        "invoices_stats": lambda: ("invoices", "stats"),
        "leads": lambda **filters: QueryKey.of("leads", **filters),
        "lead": lambda id: ("leads", id),
        "dashboard_stats": lambda: ("dashboardStats",),
        "notification": lambda id: ("notifications", id),
        "message": lambda id: ("messages", id),
        "header_notifications": lambda limit=10: QueryKey.of(
            "header", "notifications", limit=limit
        ),
        "header_messages": lambda limit=10: QueryKey.of(
            "header", "messages", limit=limit
        ),
        "profile": lambda: ("header", "profile"),
        "activities_recent": lambda: ("activities", "recent"),
        "activities_stats": lambda: ("activities", "stats"),
        "activity": lambda id: ("activities", id),
    }
)

_DASHBOARD = key("dashboardStats")
_CLAIM = template("claims", "{id}")
_CLIENT = template("clients", "{id}")
_POLICY = template("policies", "{id}")
_INVOICE = template("invoices", "{id}")
_LEAD = template("leads", "{id}")


def _each(
    domain: str, field: str
) -> Callable[[Mapping[str, Any]], list[QueryKey]]:
    """Detail keys for every id in a bulk payload."""

    def build(payload: Mapping[str, Any]) -> list[QueryKey]:
        return [key(domain, item) for item in payload.get(field, ())]

    return build


DEFAULT_RULES: tuple[InvalidationRule, ...] = (
    # Claims
    rule("claim.created", key("claims"), _DASHBOARD),
    rule("claim.updated", _CLAIM, key("claims"), _DASHBOARD, primary=_CLAIM),
    rule("claim.statusChanged", _CLAIM, key("claims"), _DASHBOARD, primary=_CLAIM),
    rule("claim.deleted", key("claims"), _DASHBOARD, removes=(_CLAIM,)),
    rule(
        "claim.noteAdded",
        template("claims", "{id}", "notes"),
        _CLAIM,
        primary=template("claims", "{id}", "notes"),
    ),
    rule("claim.documentUploaded", template("claims", "{id}", "documents"), _CLAIM),
    rule("claim.documentDeleted", template("claims", "{id}", "documents"), _CLAIM),
    rule("claim.bulkUpdated", key("claims"), _DASHBOARD),
    rule("claim.bulkAssigned", key("claims")),
    # Clients
    rule("client.created", key("clients"), key("clients", "stats")),
    rule("client.updated", _CLIENT, key("clients"), primary=_CLIENT),
    rule("client.deleted", key("clients"), removes=(_CLIENT,)),
    rule(
        "client.assigned",
        _CLIENT,
        key("clients"),
        template("clients", "agent", "{agentId}"),
    ),
    rule(
        "client.noteAdded",
        template("clients", "{id}", "notes"),
        _CLIENT,
        primary=template("clients", "{id}", "notes"),
    ),
    rule("client.noteUpdated", template("clients", "{id}", "notes")),
    rule("client.noteDeleted", template("clients", "{id}", "notes")),
    rule("client.documentUploaded", template("clients", "{id}", "documents"), _CLIENT),
    rule("client.bulkUpdated", key("clients")),
    rule(
        "client.bulkDeleted",
        key("clients"),
        removes=(_each("clients", "clientIds"),),
    ),
    # Policies
    rule("policy.created", key("policies"), _DASHBOARD),
    rule("policy.updated", key("policies"), _DASHBOARD, primary=_POLICY),
    rule("policy.deleted", key("policies"), _DASHBOARD, removes=(_POLICY,)),
    rule("policy.documentUploaded", template("policies", "{id}", "documents"), _POLICY),
    # Invoices
    rule("invoice.created", key("invoices"), _DASHBOARD),
    rule("invoice.updated", _INVOICE, key("invoices"), primary=_INVOICE),
    rule("invoice.deleted", key("invoices"), removes=(_INVOICE,)),
    rule("invoice.sent", _INVOICE, key("invoices"), primary=_INVOICE),
    rule("invoice.paid", _INVOICE, key("invoices"), _DASHBOARD, primary=_INVOICE),
    rule("invoice.bulkUpdated", key("invoices")),
    # Leads
    rule("lead.created", key("leads"), _DASHBOARD),
    rule("lead.updated", _LEAD, key("leads"), primary=_LEAD),
    rule("lead.statusChanged", _LEAD, key("leads"), _DASHBOARD, primary=_LEAD),
    rule("lead.deleted", key("leads"), removes=(_LEAD,)),
    # Communications
    rule(
        "notification.read",
        template("notifications", "{id}"),
        key("header", "notifications"),
        primary=template("notifications", "{id}"),
    ),
    rule("notification.allRead", key("notifications"), key("header", "notifications")),
    rule(
        "message.read",
        template("messages", "{id}"),
        key("header", "messages"),
        primary=template("messages", "{id}"),
    ),
    rule("profile.updated", key("header", "profile"), primary=key("header", "profile")),
)

MUTATION_ROUTES: dict[str, MutationRoute] = {
    "claim.created": MutationRoute("POST", "/claims"),
    "claim.updated": MutationRoute("PUT", "/claims/{id}"),
    "claim.statusChanged": MutationRoute("PUT", "/claims/{id}/status"),
    "claim.deleted": MutationRoute("DELETE", "/claims/{id}"),
    "claim.noteAdded": MutationRoute("POST", "/claims/{id}/notes"),
    "claim.documentDeleted": MutationRoute(
        "DELETE", "/claims/{id}/documents/{documentId}"
    ),
    "claim.bulkUpdated": MutationRoute("POST", "/claims/bulk/update"),
    "claim.bulkAssigned": MutationRoute("POST", "/claims/bulk/assign"),
    "client.created": MutationRoute("POST", "/clients"),
    "client.updated": MutationRoute("PUT", "/clients/{id}"),
    "client.deleted": MutationRoute("DELETE", "/clients/{id}"),
    "client.assigned": MutationRoute("PUT", "/clients/{id}/assign"),
    "client.noteAdded": MutationRoute("POST", "/clients/{id}/notes"),
    "client.noteUpdated": MutationRoute("PUT", "/clients/{id}/notes/{noteId}"),
    "client.noteDeleted": MutationRoute("DELETE", "/clients/{id}/notes/{noteId}"),
    "client.bulkUpdated": MutationRoute("POST", "/clients/bulk-update"),
    "client.bulkDeleted": MutationRoute("POST", "/clients/bulk-delete"),
    "policy.created": MutationRoute("POST", "/policies"),
    "policy.updated": MutationRoute("PUT", "/policies/{id}"),
    "policy.deleted": MutationRoute("DELETE", "/policies/{id}"),
    "invoice.created": MutationRoute("POST", "/invoices"),
    "invoice.updated": MutationRoute("PUT", "/invoices/{id}"),
    "invoice.deleted": MutationRoute("DELETE", "/invoices/{id}"),
    "invoice.sent": MutationRoute("POST", "/invoices/{id}/send"),
    "invoice.paid": MutationRoute("PUT", "/invoices/{id}/pay"),
    "invoice.bulkUpdated": MutationRoute("PUT", "/invoices/bulk-update"),
    "lead.created": MutationRoute("POST", "/leads"),
    "lead.updated": MutationRoute("PUT", "/leads/{id}"),
    "lead.statusChanged": MutationRoute("PATCH", "/leads/{id}/status"),
    "lead.deleted": MutationRoute("DELETE", "/leads/{id}"),
    "notification.read": MutationRoute("PUT", "/header/notifications/{id}/read"),
    "notification.allRead": MutationRoute("PUT", "/header/notifications/read-all"),
    "message.read": MutationRoute("PUT", "/header/messages/{id}/read"),
    "profile.updated": MutationRoute("PUT", "/header/profile"),
}

DEFAULT_STALE_TIMES: dict[QueryKey | str, Duration] = {
    "claims": "30s",
    key("claims", "stats"): "1m",
    "dashboardStats": "1m",
    "reports": "5m",
    "header": "30s",
}

SUMMARY_KEYS: tuple[QueryKey, ...] = (
    keys["header_notifications"](),
    keys["header_messages"](),
)

SUBSCRIBE_FRAMES: tuple[dict[str, Any], ...] = ({"type": "SUBSCRIBE_ACTIVITIES"},)

Writes = Callable[[PushEvent], Iterable[tuple[QueryKey, Any]]]


def entity_domain(kind: str) -> str:
    """Map an event's entity kind ("claim") to its key domain ("claims")."""
    return ENTITY_DOMAINS.get(kind, kind)


def _record_id(event: PushEvent) -> str | None:
    if event.entity_id is not None:
        return event.entity_id
    if isinstance(event.data, Mapping):
        for field in ("id", "_id"):
            if event.data.get(field) is not None:
                return str(event.data[field])
    return None


def _write_record(domain: str) -> Writes:
    """Direct write of a complete record pushed in the event."""

    def writes(event: PushEvent) -> Iterable[tuple[QueryKey, Any]]:
        record_id = _record_id(event)
        if record_id is None or not isinstance(event.data, Mapping):
            return []
        return [(key(domain, record_id), event.data)]

    return writes


def _write_entity(event: PushEvent) -> Iterable[tuple[QueryKey, Any]]:
    if event.entity_kind is None:
        return []
    return _write_record(entity_domain(event.entity_kind))(event)


def _entity_prefix(event: PushEvent) -> Iterable[QueryKey]:
    if event.entity_kind is None:
        return []
    return [key(entity_domain(event.entity_kind))]


def _changed_keys(event: PushEvent) -> Iterable[QueryKey]:
    """Signal without a rule: refetch the entity, or the whole domain."""
    if event.entity_kind is None or _signal_effect(event) is not None:
        return []
    domain = entity_domain(event.entity_kind)
    if event.entity_id is None:
        return [key(domain)]
    return [key(domain, event.entity_id)]


def _signal_effect(event: PushEvent) -> str | None:
    """Effect tag carried by a signal, e.g. ``{"effect": "claim.noteAdded"}``."""
    if isinstance(event.data, Mapping):
        effect = event.data.get("effect")
        if isinstance(effect, str):
            return effect
    return None


def _activity_changed(event: PushEvent) -> Iterable[QueryKey]:
    found = [keys["activities_recent"](), keys["activities_stats"]()]
    record_id = _record_id(event)
    if record_id is None and isinstance(event.data, Mapping):
        activity_id = event.data.get("activityId")
        record_id = str(activity_id) if activity_id is not None else None
    if record_id is not None:
        found.append(keys["activity"](record_id))
    return found


def _write_value(target: QueryKey) -> Writes:
    def writes(event: PushEvent) -> Iterable[tuple[QueryKey, Any]]:
        if event.data is None:
            return []
        return [(target, event.data)]

    return writes


_NOTIFICATION = EventRoute(
    writes=_write_record("notifications"),
    invalidates=lambda event: [key("header", "notifications")],
)
_MESSAGE = EventRoute(
    writes=_write_record("messages"),
    invalidates=lambda event: [key("header", "messages")],
)

DEFAULT_ROUTES: dict[PushEventType, EventRoute] = {
    PushEventType.NOTIFICATION: _NOTIFICATION,
    PushEventType.NEW_NOTIFICATION: _NOTIFICATION,
    PushEventType.MESSAGE: _MESSAGE,
    PushEventType.NEW_MESSAGE: _MESSAGE,
    PushEventType.PROFILE_UPDATE: EventRoute(
        invalidates=lambda event: [keys["profile"]()],
    ),
    PushEventType.NEW_ACTIVITY: EventRoute(
        writes=_write_record("activities"),
        invalidates=lambda event: [
            keys["activities_recent"](),
            keys["activities_stats"](),
        ],
    ),
    PushEventType.ACTIVITY_UPDATED: EventRoute(invalidates=_activity_changed),
    PushEventType.INITIAL_ACTIVITIES: EventRoute(
        writes=_write_value(keys["activities_recent"]()),
    ),
    PushEventType.ACTIVITY_STATS: EventRoute(
        writes=_write_value(keys["activities_stats"]()),
    ),
    PushEventType.ENTITY_UPDATED: EventRoute(
        writes=_write_entity,
        invalidates=_entity_prefix,
    ),
    PushEventType.ENTITY_CHANGED: EventRoute(
        invalidates=_changed_keys,
        effect=_signal_effect,
    ),
}
