"""
State sources and sinks.

Adapters exposing a backing system (PostgreSQL store, scheduling provider API,
fixture files) through the StateSource/StateSink contract.
"""

from statesync.sources.base import StateSink, StateSource
from statesync.sources.file import FileSource
from statesync.sources.provider import ProviderResource, ProviderSink, ProviderSource
from statesync.sources.store import StoreSink, StoreSource, StoreTable

__all__ = [
    "StateSource",
    "StateSink",
    "StoreSource",
    "StoreSink",
    "StoreTable",
    "ProviderSource",
    "ProviderSink",
    "ProviderResource",
    "FileSource",
]
