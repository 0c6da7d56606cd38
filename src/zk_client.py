#!/usr/bin/env python3
# src/zk_client.py
"""
ZooKeeper admin client used for ensemble bootstrap metadata.

This module provides:
- ZkAdminClient: a session-scoped client with recursive node creation,
  versioned updates and existence checks, every call bounded by a timeout
- ZkSessionPool: reference-counted sessions keyed by ensemble address, with
  connect/reconnect serialized per address
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Optional, Tuple

from kazoo.client import KazooClient
from kazoo.exceptions import (
    BadVersionError,
    KazooException,
    NodeExistsError,
    NoNodeError,
)
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import KazooState

logger = logging.getLogger("zookeeper-operator.zk")

ZK_CONNECT_TIMEOUT = float(os.environ.get("ZK_CONNECT_TIMEOUT", "5"))
ZK_OPERATION_TIMEOUT = float(os.environ.get("ZK_OPERATION_TIMEOUT", "10"))


class ZkAdminError(Exception):
    """Base class for ZooKeeper admin failures. All are retryable."""


class ConnectError(ZkAdminError):
    """A session could not be established."""


class AdminTimeoutError(ZkAdminError):
    """An operation did not complete within its timeout."""


class VersionConflictError(ZkAdminError):
    """The node version did not match the expected version."""

    def __init__(self, path: str, expected_version: int):
        super().__init__(f"Version conflict on {path}: expected version {expected_version}")
        self.path = path
        self.expected_version = expected_version


class NodeNotFoundError(ZkAdminError):
    """The node does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Node not found: {path}")
        self.path = path


def split_path(path: str) -> list:
    """Split an absolute node path into its cumulative prefixes.

    "/a/b/c" -> ["/a", "/a/b", "/a/b/c"]
    """
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        raise ZkAdminError(f"Invalid node path: {path!r}")
    prefixes = []
    current = ""
    for segment in segments:
        current = f"{current}/{segment}"
        prefixes.append(current)
    return prefixes


class ZkAdminClient:
    """Session-scoped client over a single ZooKeeper ensemble."""

    def __init__(
        self,
        client_factory: Callable[..., KazooClient] = KazooClient,
        connect_timeout: float = ZK_CONNECT_TIMEOUT,
        operation_timeout: float = ZK_OPERATION_TIMEOUT,
    ):
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout
        self._operation_timeout = operation_timeout
        self._client: Optional[KazooClient] = None
        self._address = ""
        self._session_lost = False
        self._closed = False

    @property
    def address(self) -> str:
        return self._address

    @property
    def connected(self) -> bool:
        return (
            self._client is not None
            and not self._closed
            and not self._session_lost
            and self._client.connected
        )

    def connect(self, address: str) -> "ZkAdminClient":
        """Establish a session with the ensemble at ``address``."""
        self._address = address
        self._closed = False
        self._session_lost = False
        self._client = self._client_factory(hosts=address, timeout=self._connect_timeout)
        self._client.add_listener(self._on_state_change)

        try:
            self._client.start(timeout=self._connect_timeout)
        except KazooTimeoutError as e:
            self._shutdown_client()
            raise ConnectError(
                f"Timed out connecting to {address} after {self._connect_timeout}s"
            ) from e
        except KazooException as e:
            self._shutdown_client()
            raise ConnectError(f"Failed to connect to {address}: {e}") from e

        logger.info(f"Connected to ZooKeeper ensemble at {address}")
        return self

    def _on_state_change(self, state):
        # Runs on kazoo's event thread; must not block
        if state == KazooState.LOST:
            self._session_lost = True
            logger.warning(f"ZooKeeper session to {self._address} lost")
        elif state == KazooState.SUSPENDED:
            logger.info(f"ZooKeeper connection to {self._address} suspended")
        else:
            logger.debug(f"ZooKeeper connection to {self._address} state: {state}")

    def _require_client(self) -> KazooClient:
        if self._client is None or self._closed:
            raise ConnectError("ZooKeeper client is not connected")
        return self._client

    def _wait(self, async_result, description: str):
        try:
            return async_result.get(timeout=self._operation_timeout)
        except KazooTimeoutError as e:
            raise AdminTimeoutError(
                f"{description} timed out after {self._operation_timeout}s"
            ) from e

    def _create(self, path: str, payload: bytes) -> bool:
        """Create a persistent node. Returns False if it already existed."""
        client = self._require_client()
        try:
            self._wait(client.create_async(path, payload), f"create {path}")
            return True
        except NodeExistsError:
            return False

    def ensure_node(self, path: str, payload: bytes) -> bool:
        """Create ``path`` with ``payload``, creating empty parents as needed.

        Each segment is created individually; "already exists" is tolerated at
        every level so a retry after a partial failure completes the tree.
        Returns True if the terminal node was created by this call.
        """
        prefixes = split_path(path)
        try:
            for parent in prefixes[:-1]:
                if self._create(parent, b""):
                    logger.debug(f"Created intermediate node {parent}")
            created = self._create(prefixes[-1], payload)
        except KazooException as e:
            raise ZkAdminError(f"Failed to ensure node {path}: {e}") from e

        if created:
            logger.info(f"Created node {path}")
        else:
            logger.debug(f"Node {path} already exists")
        return created

    def update_node(self, path: str, payload: bytes, expected_version: int) -> int:
        """Write ``payload`` only if the node is at ``expected_version``.

        Returns the new version.
        """
        client = self._require_client()
        try:
            stat = self._wait(
                client.set_async(path, payload, version=expected_version),
                f"update {path}",
            )
        except BadVersionError as e:
            raise VersionConflictError(path, expected_version) from e
        except NoNodeError as e:
            raise NodeNotFoundError(path) from e
        except KazooException as e:
            raise ZkAdminError(f"Failed to update node {path}: {e}") from e
        logger.debug(f"Updated node {path} to version {stat.version}")
        return stat.version

    def node_version(self, path: str) -> int:
        client = self._require_client()
        try:
            stat = self._wait(client.exists_async(path), f"exists {path}")
        except KazooException as e:
            raise ZkAdminError(f"Failed to stat node {path}: {e}") from e
        if stat is None:
            raise NodeNotFoundError(path)
        return stat.version

    def read_node(self, path: str) -> Tuple[bytes, int]:
        """Return the node's data and version."""
        client = self._require_client()
        try:
            data, stat = self._wait(client.get_async(path), f"get {path}")
        except NoNodeError as e:
            raise NodeNotFoundError(path) from e
        except KazooException as e:
            raise ZkAdminError(f"Failed to read node {path}: {e}") from e
        return data, stat.version

    def _shutdown_client(self):
        client = self._client
        self._client = None
        if client is None:
            return
        try:
            client.stop()
            client.close()
        except KazooException as e:
            logger.warning(f"Error closing ZooKeeper session to {self._address}: {e}")

    def close(self):
        """Release the session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._shutdown_client()
        logger.info(f"Closed ZooKeeper session to {self._address}")


class _PooledSession:
    def __init__(self):
        self.lock = threading.Lock()
        self.client: Optional[ZkAdminClient] = None
        self.refs = 0
        self.discarded = False

    def close(self):
        with self.lock:
            if self.client is not None:
                self.client.close()
                self.client = None


class ZkSessionPool:
    """Long-lived ZooKeeper sessions shared across reconciliation passes.

    One session per ensemble address. ``acquire`` reconnects a session that
    was lost; concurrent acquires of the same address wait for a single
    connect attempt, other addresses are not blocked.
    """

    def __init__(
        self,
        client_factory: Callable[..., KazooClient] = KazooClient,
        connect_timeout: float = ZK_CONNECT_TIMEOUT,
        operation_timeout: float = ZK_OPERATION_TIMEOUT,
    ):
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout
        self._operation_timeout = operation_timeout
        self._lock = threading.Lock()
        self._sessions: Dict[str, _PooledSession] = {}

    def acquire(self, address: str) -> ZkAdminClient:
        with self._lock:
            entry = self._sessions.setdefault(address, _PooledSession())
            entry.refs += 1
            # A cluster recreated at the same address takes the session back
            entry.discarded = False

        try:
            with entry.lock:
                if entry.client is None or not entry.client.connected:
                    if entry.client is not None:
                        logger.info(f"Reconnecting ZooKeeper session to {address}")
                        entry.client.close()
                        entry.client = None
                    client = ZkAdminClient(
                        client_factory=self._client_factory,
                        connect_timeout=self._connect_timeout,
                        operation_timeout=self._operation_timeout,
                    )
                    client.connect(address)
                    entry.client = client
                return entry.client
        except Exception:
            self.release(address)
            raise

    def release(self, address: str):
        """Drop a reference; a discarded session closes with its last reference."""
        with self._lock:
            entry = self._sessions.get(address)
            if entry is None or entry.refs == 0:
                return
            entry.refs -= 1
            if entry.refs > 0 or not entry.discarded:
                return
            del self._sessions[address]
        logger.info(f"Closing discarded ZooKeeper session to {address}")
        entry.close()

    @contextmanager
    def session(self, address: str):
        client = self.acquire(address)
        try:
            yield client
        finally:
            self.release(address)

    def discard(self, address: str):
        """Close and forget an address once its cluster is gone.

        A session still in use is closed when its last reference is released.
        """
        with self._lock:
            entry = self._sessions.get(address)
            if entry is None:
                return
            if entry.refs > 0:
                entry.discarded = True
                return
            del self._sessions[address]
        entry.close()

    def close_all(self):
        with self._lock:
            entries = list(self._sessions.values())
            self._sessions.clear()
        for entry in entries:
            entry.close()
