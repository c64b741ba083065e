"""Realtime messaging and presence gateway."""

from propchat.realtime.gateway import GatewayConfig, RealtimeGateway, run_periodic
from propchat.realtime.store import DataStore, SqlDataStore, StoreUnavailableError

__all__ = [
    "DataStore",
    "GatewayConfig",
    "RealtimeGateway",
    "SqlDataStore",
    "StoreUnavailableError",
    "run_periodic",
]
