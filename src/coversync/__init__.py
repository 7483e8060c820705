"""coversync - Client-side data sync engine for the insurance operations console."""

# Adapters
from coversync.adapters import (
    FileTokenStore,
    HttpTransport,
    MemoryTokenStore,
    TokenStore,
    websocket_connector,
)

# Event bus
from coversync.bus import ConnectionState, EventBus

# Client API
from coversync.client import SyncClient, create_client
from coversync.config import SyncConfig

# Duration parsing
from coversync.duration import parse_duration

# Errors
from coversync.errors import (
    AuthError,
    DecodeError,
    HttpError,
    StaleOptimisticRollbackError,
    SyncError,
    TransientNetworkError,
    ValidationError,
)
from coversync.events import EventRoute, EventRouter, decode_event
from coversync.fetcher import Fetcher
from coversync.invalidation import InvalidationGraph, InvalidationRule, rule

# Query keys
from coversync.keys import KeySpec, QueryKey, define_keys, is_prefix, key, template
from coversync.mutations import MutationRunner
from coversync.store import CacheStore
from coversync.subscriptions import SubscriptionRegistry

# Core types
from coversync.types import (
    CacheEntry,
    Duration,
    EntryStatus,
    MutationDescriptor,
    MutationResult,
    PushEvent,
    PushEventType,
)

__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "CacheEntry",
    "CacheStore",
    "ConnectionState",
    "DecodeError",
    "Duration",
    "EntryStatus",
    "EventBus",
    "EventRoute",
    "EventRouter",
    "Fetcher",
    "FileTokenStore",
    "HttpError",
    "HttpTransport",
    "InvalidationGraph",
    "InvalidationRule",
    "KeySpec",
    "MemoryTokenStore",
    "MutationDescriptor",
    "MutationResult",
    "MutationRunner",
    "PushEvent",
    "PushEventType",
    "QueryKey",
    "StaleOptimisticRollbackError",
    "SubscriptionRegistry",
    "SyncClient",
    "SyncConfig",
    "SyncError",
    "TokenStore",
    "TransientNetworkError",
    "ValidationError",
    "create_client",
    "decode_event",
    "define_keys",
    "is_prefix",
    "key",
    "parse_duration",
    "rule",
    "template",
    "websocket_connector",
]
