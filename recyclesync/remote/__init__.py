"""Remote document store access."""

from recyclesync.remote.client import HttpRemoteStore, RemoteCollection, RemoteStore

__all__ = ["HttpRemoteStore", "RemoteCollection", "RemoteStore"]
