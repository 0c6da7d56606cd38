#!/usr/bin/env python3
# tests/test_zk_client.py
"""
Test suite for the ZooKeeper admin client and session pool.

Uses an in-memory fake of the kazoo client surface the admin client relies on
(start/stop/close, listeners and the *_async node operations).
"""

import os
import sys
import unittest
from types import SimpleNamespace

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from kazoo.exceptions import BadVersionError, ConnectionLoss, NodeExistsError, NoNodeError
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import KazooState

from zk_client import (
    AdminTimeoutError,
    ConnectError,
    NodeNotFoundError,
    VersionConflictError,
    ZkAdminClient,
    ZkAdminError,
    ZkSessionPool,
    split_path,
)


class FakeAsyncResult:
    def __init__(self, value=None, exception=None):
        self.value = value
        self.exception = exception

    def get(self, timeout=None):
        if self.exception is not None:
            raise self.exception
        return self.value


class FakeKazooClient:
    """In-memory stand-in for kazoo.client.KazooClient."""

    def __init__(self, hosts=None, timeout=None, fail_start=None, hang_ops=False):
        self.hosts = hosts
        self.timeout = timeout
        self.fail_start = fail_start
        self.hang_ops = hang_ops
        self.connected = False
        self.listeners = []
        self.nodes = {"/": [b"", 0]}
        self.stop_calls = 0
        self.close_calls = 0
        self.create_calls = []

    def add_listener(self, listener):
        self.listeners.append(listener)

    def start(self, timeout=None):
        if self.fail_start is not None:
            raise self.fail_start
        self.connected = True

    def stop(self):
        self.stop_calls += 1
        self.connected = False

    def close(self):
        self.close_calls += 1

    def fire(self, state):
        for listener in self.listeners:
            listener(state)

    def _parent(self, path):
        parent = path.rsplit("/", 1)[0]
        return parent or "/"

    def _result(self, func):
        if self.hang_ops:
            return FakeAsyncResult(exception=KazooTimeoutError())
        try:
            return FakeAsyncResult(value=func())
        except Exception as e:
            return FakeAsyncResult(exception=e)

    def create_async(self, path, value=b""):
        def create():
            self.create_calls.append(path)
            if path in self.nodes:
                raise NodeExistsError()
            if self._parent(path) not in self.nodes:
                raise NoNodeError()
            self.nodes[path] = [value, 0]
            return path

        return self._result(create)

    def set_async(self, path, value, version=-1):
        def set_data():
            if path not in self.nodes:
                raise NoNodeError()
            node = self.nodes[path]
            if version != -1 and version != node[1]:
                raise BadVersionError()
            node[0] = value
            node[1] += 1
            return SimpleNamespace(version=node[1])

        return self._result(set_data)

    def exists_async(self, path):
        def exists():
            node = self.nodes.get(path)
            return SimpleNamespace(version=node[1]) if node else None

        return self._result(exists)

    def get_async(self, path):
        def get():
            if path not in self.nodes:
                raise NoNodeError()
            data, version = self.nodes[path]
            return data, SimpleNamespace(version=version)

        return self._result(get)


class FakeClientFactory:
    """Records every fake client handed out."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.clients = []

    def __call__(self, hosts=None, timeout=None):
        client = FakeKazooClient(hosts=hosts, timeout=timeout, **self.kwargs)
        self.clients.append(client)
        return client


class TestSplitPath(unittest.TestCase):
    """Test node path splitting."""

    def test_cumulative_prefixes(self):
        """Test each prefix of the path is returned in order."""
        self.assertEqual(
            split_path("/zookeeper-operator/zk"), ["/zookeeper-operator", "/zookeeper-operator/zk"]
        )

    def test_extra_slashes_ignored(self):
        """Test empty segments are skipped."""
        self.assertEqual(split_path("//a//b/"), ["/a", "/a/b"])

    def test_root_rejected(self):
        """Test a path without segments is rejected."""
        with self.assertRaises(ZkAdminError):
            split_path("/")


class TestZkAdminClient(unittest.TestCase):
    """Test ZkAdminClient node operations."""

    def setUp(self):
        """Set up a connected admin client over a fake kazoo client."""
        self.factory = FakeClientFactory()
        self.client = ZkAdminClient(client_factory=self.factory, connect_timeout=1, operation_timeout=1)
        self.client.connect("zk-client.default.svc.cluster.local:2181")
        self.fake = self.factory.clients[0]

    def test_connect_passes_address_and_timeout(self):
        """Test connect hands the address and timeout to kazoo."""
        self.assertEqual(self.fake.hosts, "zk-client.default.svc.cluster.local:2181")
        self.assertEqual(self.fake.timeout, 1)
        self.assertTrue(self.client.connected)

    def test_ensure_node_creates_parents(self):
        """Test intermediate nodes are created empty."""
        created = self.client.ensure_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=3")

        self.assertTrue(created)
        self.assertEqual(self.fake.nodes["/zookeeper-operator"][0], b"")
        self.assertEqual(self.fake.nodes["/zookeeper-operator/zk"][0], b"CLUSTER_SIZE=3")

    def test_ensure_node_twice(self):
        """Test a second ensure tolerates existing nodes and keeps the version."""
        self.client.ensure_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=3")
        version = self.client.node_version("/zookeeper-operator/zk")

        created = self.client.ensure_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=3")

        self.assertFalse(created)
        self.assertEqual(self.client.node_version("/zookeeper-operator/zk"), version)

    def test_ensure_node_completes_partial_tree(self):
        """Test a retry after a partial creation finishes the tree."""
        self.fake.nodes["/zookeeper-operator"] = [b"", 0]

        created = self.client.ensure_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=3")

        self.assertTrue(created)
        self.assertIn("/zookeeper-operator/zk", self.fake.nodes)

    def test_update_node_success(self):
        """Test a matching version update returns the new version."""
        self.client.ensure_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=3")

        new_version = self.client.update_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=5", 0)

        self.assertEqual(new_version, 1)
        self.assertEqual(self.client.read_node("/zookeeper-operator/zk"), (b"CLUSTER_SIZE=5", 1))

    def test_update_node_conflict(self):
        """Test a stale version raises VersionConflictError and leaves data alone."""
        self.client.ensure_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=3")
        self.client.update_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=4", 0)

        with self.assertRaises(VersionConflictError) as ctx:
            self.client.update_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=5", 0)

        self.assertEqual(ctx.exception.expected_version, 0)
        self.assertEqual(self.fake.nodes["/zookeeper-operator/zk"][0], b"CLUSTER_SIZE=4")

    def test_update_missing_node(self):
        """Test updating a missing node raises NodeNotFoundError."""
        with self.assertRaises(NodeNotFoundError):
            self.client.update_node("/missing", b"x", 0)

    def test_node_version_missing(self):
        """Test node_version on a missing node raises NodeNotFoundError."""
        with self.assertRaises(NodeNotFoundError) as ctx:
            self.client.node_version("/missing")
        self.assertEqual(ctx.exception.path, "/missing")

    def test_read_missing_node(self):
        """Test read_node on a missing node raises NodeNotFoundError."""
        with self.assertRaises(NodeNotFoundError):
            self.client.read_node("/missing")

    def test_other_kazoo_errors_wrapped(self):
        """Test unexpected kazoo errors surface as ZkAdminError."""
        self.fake.exists_async = lambda path: FakeAsyncResult(exception=ConnectionLoss())
        with self.assertRaises(ZkAdminError):
            self.client.node_version("/zookeeper-operator")

    def test_close_idempotent(self):
        """Test close can be called repeatedly."""
        self.client.close()
        self.client.close()

        self.assertEqual(self.fake.stop_calls, 1)
        self.assertEqual(self.fake.close_calls, 1)
        self.assertFalse(self.client.connected)

    def test_operations_after_close(self):
        """Test operations on a closed client raise ConnectError."""
        self.client.close()
        with self.assertRaises(ConnectError):
            self.client.node_version("/zookeeper-operator")

    def test_session_lost(self):
        """Test a LOST state marks the client disconnected."""
        self.fake.fire(KazooState.LOST)
        self.assertFalse(self.client.connected)

    def test_suspended_keeps_session(self):
        """Test a SUSPENDED state does not discard the session."""
        self.fake.fire(KazooState.SUSPENDED)
        self.assertFalse(self.client._session_lost)


class TestZkAdminClientTimeouts(unittest.TestCase):
    """Test timeout and connect failure mapping."""

    def test_connect_timeout(self):
        """Test a start timeout becomes ConnectError and the client is torn down."""
        factory = FakeClientFactory(fail_start=KazooTimeoutError("Connection time-out"))
        client = ZkAdminClient(client_factory=factory, connect_timeout=1)

        with self.assertRaises(ConnectError):
            client.connect("unreachable:2181")

        self.assertEqual(factory.clients[0].stop_calls, 1)
        self.assertFalse(client.connected)

    def test_operation_timeout(self):
        """Test an operation timeout becomes AdminTimeoutError."""
        factory = FakeClientFactory(hang_ops=True)
        client = ZkAdminClient(client_factory=factory, operation_timeout=1)
        client.connect("zk:2181")

        with self.assertRaises(AdminTimeoutError):
            client.ensure_node("/zookeeper-operator/zk", b"CLUSTER_SIZE=3")


class TestZkSessionPool(unittest.TestCase):
    """Test session pooling by ensemble address."""

    def setUp(self):
        """Set up a pool over fake kazoo clients."""
        self.factory = FakeClientFactory()
        self.pool = ZkSessionPool(client_factory=self.factory, connect_timeout=1, operation_timeout=1)

    def test_session_reused(self):
        """Test the same address shares one session."""
        with self.pool.session("zk-a:2181") as first:
            pass
        with self.pool.session("zk-a:2181") as second:
            pass

        self.assertIs(first, second)
        self.assertEqual(len(self.factory.clients), 1)

    def test_addresses_isolated(self):
        """Test distinct addresses get distinct sessions."""
        with self.pool.session("zk-a:2181") as first:
            with self.pool.session("zk-b:2181") as second:
                self.assertIsNot(first, second)
        self.assertEqual(len(self.factory.clients), 2)

    def test_reconnect_after_loss(self):
        """Test a lost session is replaced on the next acquire."""
        with self.pool.session("zk-a:2181") as first:
            pass
        self.factory.clients[0].fire(KazooState.LOST)

        with self.pool.session("zk-a:2181") as second:
            self.assertTrue(second.connected)

        self.assertIsNot(first, second)
        self.assertEqual(len(self.factory.clients), 2)
        self.assertEqual(self.factory.clients[0].close_calls, 1)

    def test_failed_connect_releases_reference(self):
        """Test a failed acquire leaves no reference behind."""
        pool = ZkSessionPool(
            client_factory=FakeClientFactory(fail_start=KazooTimeoutError("Connection time-out"))
        )
        with self.assertRaises(ConnectError):
            pool.acquire("zk-a:2181")

        self.assertEqual(pool._sessions["zk-a:2181"].refs, 0)

    def test_discard_closes_idle_session(self):
        """Test discarding an idle address closes its session."""
        with self.pool.session("zk-a:2181"):
            pass
        self.pool.discard("zk-a:2181")

        self.assertEqual(self.factory.clients[0].close_calls, 1)
        self.assertNotIn("zk-a:2181", self.pool._sessions)

    def test_discard_busy_session_closed_on_release(self):
        """Test a session in use stays open until its last reference is released."""
        with self.pool.session("zk-a:2181") as client:
            with self.pool.session("zk-a:2181"):
                self.pool.discard("zk-a:2181")
            self.assertTrue(client.connected)
            self.assertEqual(self.factory.clients[0].close_calls, 0)

        self.assertFalse(client.connected)
        self.assertEqual(self.factory.clients[0].close_calls, 1)
        self.assertNotIn("zk-a:2181", self.pool._sessions)

    def test_reacquire_cancels_pending_discard(self):
        """Test an address acquired again before release keeps its session."""
        with self.pool.session("zk-a:2181") as first:
            self.pool.discard("zk-a:2181")
            with self.pool.session("zk-a:2181") as second:
                self.assertIs(first, second)

        self.assertTrue(first.connected)
        self.assertEqual(self.factory.clients[0].close_calls, 0)
        self.assertIn("zk-a:2181", self.pool._sessions)

    def test_close_all(self):
        """Test close_all closes every session."""
        with self.pool.session("zk-a:2181"):
            pass
        with self.pool.session("zk-b:2181"):
            pass
        self.pool.close_all()

        self.assertTrue(all(client.close_calls == 1 for client in self.factory.clients))


if __name__ == "__main__":
    unittest.main()
