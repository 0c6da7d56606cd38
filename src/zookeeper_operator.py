#!/usr/bin/env python3
# src/zookeeper_operator.py
"""
ZooKeeper Operator - Kubernetes controller for ZookeeperCluster resources

Watches ZookeeperCluster resources and the pods they own, and runs one
reconciliation at a time per resource on a pool of worker threads. Every
resource is requeued after each pass so drift is healed even without events.
"""

import heapq
import logging
import os
import signal
import threading
import time
from collections import deque
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from prometheus_client import Counter, Gauge, Info, generate_latest

from child_resources import (
    API_TIMEOUT,
    CLUSTER_LABEL,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    ChildResourceManager,
)
from cluster_status import CONDITION_PODS_READY
from zk_client import ZkSessionPool
from zookeeper_reconciler import (
    ERROR_REQUEUE_INTERVAL,
    ReconcileResult,
    ZookeeperReconciler,
    ensemble_address,
)
from zookeeper_types import CRD_GROUP, CRD_PLURAL, CRD_VERSION, with_defaults

# -----------------------------
# Environment variables
# -----------------------------
WATCH_NAMESPACE = os.environ.get("WATCH_NAMESPACE", "")
RESYNC_INTERVAL = int(os.environ.get("RESYNC_INTERVAL", 30))
WORKER_THREADS = int(os.environ.get("WORKER_THREADS", 4))
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8000))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
OPERATOR_VERSION = "0.1.0"

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("zookeeper-operator")

# -----------------------------
# Prometheus Metrics
# -----------------------------
reconcile_total = Counter(
    "zookeeper_operator_reconcile_total",
    "Total number of reconciliation passes",
    ["result"],
)
rolling_restarts_total = Counter(
    "zookeeper_operator_rolling_restarts_total",
    "Total number of rolling restarts initiated",
    ["namespace", "cluster"],
)
meta_node_writes_total = Counter(
    "zookeeper_operator_meta_node_writes_total",
    "Total number of ensemble metadata node creations and updates",
    ["namespace", "cluster"],
)
cluster_replicas = Gauge(
    "zookeeper_cluster_replicas",
    "Desired ensemble size",
    ["namespace", "cluster"],
)
cluster_ready_replicas = Gauge(
    "zookeeper_cluster_ready_replicas",
    "Number of ready ensemble members",
    ["namespace", "cluster"],
)
cluster_pods_ready = Gauge(
    "zookeeper_cluster_pods_ready",
    "Whether every ensemble member is ready",
    ["namespace", "cluster"],
)
info_metric = Info("zookeeper_operator", "Information about the operator instance")

info_metric.info(
    {
        "version": OPERATOR_VERSION,
        "watch_namespace": WATCH_NAMESPACE or "all",
        "crd": f"{CRD_PLURAL}.{CRD_GROUP}/{CRD_VERSION}",
    }
)


def update_metrics(namespace: str, name: str, result: ReconcileResult):
    """Record the outcome of a reconciliation pass."""
    if result.error is not None:
        reconcile_total.labels(result="error").inc()
    elif result.requeue_after is None:
        reconcile_total.labels(result="cancelled").inc()
    else:
        reconcile_total.labels(result="success").inc()

    if result.rolling_restart:
        rolling_restarts_total.labels(namespace=namespace, cluster=name).inc()
    if result.meta_node_written:
        meta_node_writes_total.labels(namespace=namespace, cluster=name).inc()

    if result.status is not None:
        cluster_replicas.labels(namespace=namespace, cluster=name).set(result.status.replicas)
        cluster_ready_replicas.labels(namespace=namespace, cluster=name).set(
            result.status.ready_replicas
        )
        cluster_pods_ready.labels(namespace=namespace, cluster=name).set(
            1 if result.status.is_condition_true(CONDITION_PODS_READY) else 0
        )


def clear_metrics(namespace: str, name: str):
    for metric in (
        rolling_restarts_total,
        meta_node_writes_total,
        cluster_replicas,
        cluster_ready_replicas,
        cluster_pods_ready,
    ):
        try:
            metric.remove(namespace, name)
        except KeyError:
            pass


# -----------------------------
# Work Queue
# -----------------------------


class ReconcileQueue:
    """Work queue keyed by "namespace/name".

    A key handed out by get() is not handed out again until done() is
    called for it; adds arriving in between are replayed afterwards.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._ready = deque()
        self._queued = set()
        self._processing = set()
        self._dirty = set()
        self._delayed = []
        self._due: Dict[str, float] = {}
        self._shutdown = False

    def add(self, key: str):
        with self._cond:
            if self._shutdown:
                return
            if key in self._processing:
                self._dirty.add(key)
                return
            if key not in self._queued:
                self._queued.add(key)
                self._ready.append(key)
                self._cond.notify()

    def add_after(self, key: str, delay: float):
        """Schedule ``key``; an earlier pending schedule is kept."""
        with self._cond:
            if self._shutdown:
                return
            due = time.monotonic() + max(0.0, delay)
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            heapq.heappush(self._delayed, (due, key))
            self._cond.notify()

    def forget(self, key: str):
        with self._cond:
            self._due.pop(key, None)
            self._dirty.discard(key)
            if key in self._queued:
                self._queued.discard(key)
                self._ready.remove(key)

    def _promote_due(self) -> Optional[float]:
        """Move due delayed keys to the ready list. Returns seconds to the next one."""
        now = time.monotonic()
        while self._delayed:
            due, key = self._delayed[0]
            if self._due.get(key) != due:
                # Superseded or forgotten entry
                heapq.heappop(self._delayed)
                continue
            if due > now:
                return due - now
            heapq.heappop(self._delayed)
            del self._due[key]
            if key in self._processing:
                self._dirty.add(key)
            elif key not in self._queued:
                self._queued.add(key)
                self._ready.append(key)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is ready. Returns None on shutdown or timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                wait_for = self._promote_due()
                if self._ready:
                    key = self._ready.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: str):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._queued.add(key)
                self._ready.append(key)
                self._cond.notify()

    def shutdown(self):
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def __len__(self):
        with self._cond:
            return len(self._ready) + len(self._due)


def split_key(key: str) -> Tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


# -----------------------------
# Controller
# -----------------------------


class ZookeeperOperator:
    """Watches ZookeeperCluster resources and dispatches reconciliations."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        namespace: str = WATCH_NAMESPACE,
        workers: int = WORKER_THREADS,
        zk_pool: Optional[ZkSessionPool] = None,
    ):
        self.api = custom_objects_api
        self.core_api = core_api
        self._namespace = namespace
        self._workers = workers
        self.zk_pool = zk_pool or ZkSessionPool()
        self.reconciler = ZookeeperReconciler(
            custom_objects_api, ChildResourceManager(core_api, apps_api), self.zk_pool
        )
        self.queue = ReconcileQueue()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()
        self._threads = []
        self._shutdown_event = threading.Event()

        logger.info(
            f"Operator initialized: namespace={namespace or 'all'}, workers={workers}, "
            f"crd={CRD_PLURAL}.{CRD_GROUP}/{CRD_VERSION}"
        )

    def start(self):
        """Start watch and worker threads."""
        targets = [("cluster-watch", self._watch_clusters), ("pod-watch", self._watch_pods)]
        targets += [(f"worker-{i}", self._worker) for i in range(self._workers)]
        for thread_name, target in targets:
            thread = threading.Thread(target=target, name=thread_name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} operator threads")

    def stop(self):
        """Stop all threads and release ZooKeeper sessions."""
        logger.info("Stopping operator")
        self._shutdown_event.set()
        self.queue.shutdown()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=5)
        self.zk_pool.close_all()

    def healthy(self) -> bool:
        return not self._shutdown_event.is_set() and all(t.is_alive() for t in self._threads)

    def _cancel_event(self, key: str) -> threading.Event:
        with self._cancel_lock:
            event = self._cancel_events.get(key)
            if event is None:
                event = threading.Event()
                self._cancel_events[key] = event
            return event

    def _drop_cancel_event(self, key: str, event: threading.Event):
        with self._cancel_lock:
            # A recreated resource may already hold a fresh event
            if self._cancel_events.get(key) is event:
                del self._cancel_events[key]

    # Watches

    def _list_clusters(self, **kwargs):
        if self._namespace:
            return self.api.list_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                plural=CRD_PLURAL,
                namespace=self._namespace,
                **kwargs,
            )
        return self.api.list_cluster_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, plural=CRD_PLURAL, **kwargs
        )

    def _list_pods(self, **kwargs):
        selector = f"{MANAGED_BY_LABEL}={MANAGED_BY}"
        if self._namespace:
            return self.core_api.list_namespaced_pod(
                namespace=self._namespace, label_selector=selector, **kwargs
            )
        return self.core_api.list_pod_for_all_namespaces(label_selector=selector, **kwargs)

    def _watch_clusters(self):
        """Watch ZookeeperCluster resources.

        The stream is restarted every RESYNC_INTERVAL seconds; the initial
        listing of each new stream re-enqueues every resource.
        """
        logger.info("Starting ZookeeperCluster watch")

        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                for event in w.stream(self._list_clusters, timeout_seconds=RESYNC_INTERVAL):
                    if self._shutdown_event.is_set():
                        break
                    self.handle_cluster_event(event["type"], event["object"])
                w.stop()

            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.info("ZookeeperCluster watch resource version expired, restarting")
                    continue
                logger.error(f"ZookeeperCluster watch error: {e}")
                self._shutdown_event.wait(5)

            except Exception as e:
                logger.error(f"Unexpected ZookeeperCluster watch error: {e}")
                self._shutdown_event.wait(5)

        logger.info("ZookeeperCluster watch stopped")

    def _watch_pods(self):
        """Watch ensemble pods so readiness changes trigger a pass."""
        logger.info("Starting ensemble pod watch")

        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                for event in w.stream(self._list_pods, timeout_seconds=RESYNC_INTERVAL):
                    if self._shutdown_event.is_set():
                        break
                    self.handle_pod_event(event["object"])
                w.stop()

            except ApiException as e:
                if e.status == 410:
                    logger.info("Pod watch resource version expired, restarting")
                    continue
                logger.error(f"Pod watch error: {e}")
                self._shutdown_event.wait(5)

            except Exception as e:
                logger.error(f"Unexpected pod watch error: {e}")
                self._shutdown_event.wait(5)

        logger.info("Pod watch stopped")

    def handle_cluster_event(self, event_type: str, obj: Dict):
        metadata = obj.get("metadata", {})
        key = f"{metadata.get('namespace')}/{metadata.get('name')}"
        logger.debug(f"Received ZookeeperCluster event: {event_type} for {key}")

        if event_type == "DELETED" or metadata.get("deletionTimestamp"):
            self._handle_deleted(key, obj)
            return

        self.queue.add(key)

    def handle_pod_event(self, pod: Dict):
        # Raw dicts: the list wrappers carry no return type for the watch to deserialize into
        metadata = pod.get("metadata", {})
        cluster_name = (metadata.get("labels") or {}).get(CLUSTER_LABEL)
        if cluster_name:
            self.queue.add(f"{metadata.get('namespace')}/{cluster_name}")

    def _handle_deleted(self, key: str, obj: Dict):
        logger.info(f"ZookeeperCluster {key} deleted, cancelling reconciliation")
        # Popped so a resource recreated under the same name starts uncancelled;
        # a pass in flight still holds the event and sees it set
        with self._cancel_lock:
            event = self._cancel_events.pop(key, None)
        if event is not None:
            event.set()
        self.queue.forget(key)

        namespace, name = split_key(key)
        clear_metrics(namespace, name)
        spec, _ = with_defaults(obj.get("spec") or {}, name)
        self.zk_pool.discard(ensemble_address(name, namespace, spec))

    # Workers

    def _worker(self):
        while not self._shutdown_event.is_set():
            key = self.queue.get()
            if key is None:
                break
            try:
                self.process(key)
            except Exception as e:
                logger.error(f"Unexpected error processing {key}: {e}", exc_info=True)
                self.queue.add_after(key, ERROR_REQUEUE_INTERVAL)
            finally:
                self.queue.done(key)

    def process(self, key: str):
        """Reconcile one resource, re-reading it first so no pass acts on a stale copy."""
        namespace, name = split_key(key)
        cancel_event = self._cancel_event(key)
        if cancel_event.is_set():
            self._drop_cancel_event(key, cancel_event)
            return

        try:
            resource = self.api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
                _request_timeout=API_TIMEOUT,
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"ZookeeperCluster {key} no longer exists")
                self.queue.forget(key)
                self._drop_cancel_event(key, cancel_event)
                return
            logger.warning(f"Failed to read ZookeeperCluster {key}: {e}")
            reconcile_total.labels(result="error").inc()
            self.queue.add_after(key, ERROR_REQUEUE_INTERVAL)
            return

        start = time.monotonic()
        result = self.reconciler.reconcile(resource, cancel_event)
        logger.debug(
            f"Reconciled {key} in {time.monotonic() - start:.2f}s, "
            f"requeue after {result.requeue_after}s"
        )
        update_metrics(namespace, name, result)

        if result.requeue_after is None or cancel_event.is_set():
            self._drop_cancel_event(key, cancel_event)
        else:
            self.queue.add_after(key, result.requeue_after)


# -----------------------------
# HTTP Server for Metrics and Health
# -----------------------------

operator: Optional[ZookeeperOperator] = None


class OperatorHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics and a liveness endpoint."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                metrics_data = generate_latest()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.end_headers()
                self.wfile.write(metrics_data)
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self.send_response(500)
                self.send_header("Content-Type", "text/plain")
                self.end_headers()
                self.wfile.write(b"Error generating metrics")

        elif path == "/healthz":
            if operator is None or operator.healthy():
                self.send_response(200)
                self.send_header("Content-Type", "text/plain")
                self.end_headers()
                self.wfile.write(b"OK")
            else:
                self.send_response(503)
                self.send_header("Content-Type", "text/plain")
                self.end_headers()
                self.wfile.write(b"Operator threads not running")

        else:
            self.send_response(404)
            self.send_header("Content-Type", "text/plain")
            self.end_headers()
            self.wfile.write(b"Not Found")

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server():
    """Start the HTTP server in a background thread."""

    def run_server():
        try:
            server = HTTPServer(("0.0.0.0", METRICS_PORT), OperatorHTTPHandler)
            logger.info(f"HTTP server started on port {METRICS_PORT} (metrics: /metrics, health: /healthz)")
            server.serve_forever()
        except Exception as e:
            logger.error(f"HTTP server error: {e}")

    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()


# -----------------------------
# Main
# -----------------------------


def load_kubernetes_config():
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")


def main():
    """Run the operator until interrupted."""
    global operator

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info(f"Starting ZooKeeper Operator {OPERATOR_VERSION}")
    load_kubernetes_config()

    operator = ZookeeperOperator(
        client.CustomObjectsApi(), client.CoreV1Api(), client.AppsV1Api()
    )
    start_metrics_server()
    operator.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        operator.stop()
        logger.info("ZooKeeper Operator shutdown complete")


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    # The main loop will handle cleanup via KeyboardInterrupt
    raise KeyboardInterrupt


if __name__ == "__main__":
    main()
