"""Request orchestration: commands, queues, cache and realtime listeners."""

from hyperfetch.abort import AbortHandle, AbortRegistry
from hyperfetch.adapter import Executor, HttpxAdapter, Response
from hyperfetch.cache import Cache, CacheEntry
from hyperfetch.client import Client
from hyperfetch.command import Command, KeyOverrides
from hyperfetch.errors import (
    AbortError,
    AdapterError,
    CLIError,
    HyperFetchError,
    RequestTimeoutError,
    RetryExhaustedError,
    ValidationError,
)
from hyperfetch.events import EventBus, QueueLoadingEvent, ResponseDetails, Subscription
from hyperfetch.memory import MemoryDatabase, MemoryDatabaseAdapter, MemoryRealtimeSource
from hyperfetch.queue import FetchQueue, QueueState, SubmitQueue
from hyperfetch.realtime import (
    Listener,
    ListenerOptions,
    ListenerSubscription,
    RealtimeBridge,
    RealtimeEvent,
    RealtimeExtra,
)
from hyperfetch.settings import Settings
from hyperfetch.storage import DumpStore
from hyperfetch.watcher import FetchWatcher, WatcherState

__version__ = "0.1.0"

__all__ = [
    "AbortError",
    "AbortHandle",
    "AbortRegistry",
    "AdapterError",
    "CLIError",
    "Cache",
    "CacheEntry",
    "Client",
    "Command",
    "DumpStore",
    "EventBus",
    "Executor",
    "FetchQueue",
    "FetchWatcher",
    "HttpxAdapter",
    "HyperFetchError",
    "KeyOverrides",
    "Listener",
    "ListenerOptions",
    "ListenerSubscription",
    "MemoryDatabase",
    "MemoryDatabaseAdapter",
    "MemoryRealtimeSource",
    "QueueLoadingEvent",
    "QueueState",
    "RealtimeBridge",
    "RealtimeEvent",
    "RealtimeExtra",
    "RequestTimeoutError",
    "Response",
    "ResponseDetails",
    "RetryExhaustedError",
    "Settings",
    "SubmitQueue",
    "Subscription",
    "ValidationError",
    "WatcherState",
    "__version__",
]
