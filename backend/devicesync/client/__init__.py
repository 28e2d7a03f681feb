from .replica import OfflineReplica, MetaKey
from .transport import HttpSyncTransport
from .sync_client import SyncClient

__all__ = [
    "OfflineReplica",
    "MetaKey",
    "HttpSyncTransport",
    "SyncClient"
]
