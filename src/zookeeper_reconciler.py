#!/usr/bin/env python3
# src/zookeeper_reconciler.py
"""
Reconciliation of a single ZookeeperCluster resource.

One pass:
1. Defaults the spec and writes it back when anything was filled in
2. Bootstraps the ensemble metadata node once members are ready
3. Applies the owned ConfigMap, Services and StatefulSet
4. Recomputes membership, endpoints and the PodsReady condition
5. Honors triggerRollingRestart
6. Tracks image version upgrades
7. Patches status only when it changed
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from child_resources import (
    API_TIMEOUT,
    ChildResourceManager,
    ObservedChildren,
    client_service_name,
)
from cluster_status import (
    CONDITION_ERROR,
    CONDITION_FALSE,
    CONDITION_PODS_READY,
    CONDITION_TRUE,
    CONDITION_UPGRADING,
    ClusterStatus,
)
from zk_client import ZkAdminError, ZkSessionPool
from zookeeper_types import (
    CRD_GROUP,
    CRD_PLURAL,
    CRD_VERSION,
    client_port,
    validate_spec,
    with_defaults,
)

logger = logging.getLogger("zookeeper-operator.reconciler")

RECONCILE_INTERVAL = int(os.environ.get("RECONCILE_INTERVAL", "300"))
ERROR_REQUEUE_INTERVAL = int(os.environ.get("ERROR_REQUEUE_INTERVAL", "60"))
SPEC_PATCH_REQUEUE_INTERVAL = int(os.environ.get("SPEC_PATCH_REQUEUE_INTERVAL", "5"))

META_ROOT = "/zookeeper-operator"


class ReconcileCancelled(Exception):
    """The resource was deleted while a pass was in flight."""


@dataclass
class ReconcileResult:
    requeue_after: Optional[float]
    error: Optional[Exception] = None
    status: Optional[ClusterStatus] = None
    rolling_restart: bool = False
    meta_node_written: bool = False


def meta_node_path(cluster_name: str) -> str:
    return f"{META_ROOT}/{cluster_name}"


def cluster_size_payload(replicas: int) -> bytes:
    return f"CLUSTER_SIZE={replicas}".encode()


def ensemble_address(name: str, namespace: str, spec: Dict[str, Any]) -> str:
    domain = spec["kubernetesClusterDomain"]
    return f"{client_service_name(name)}.{namespace}.svc.{domain}:{client_port(spec)}"


class ZookeeperReconciler:
    """Drives a ZookeeperCluster from its spec towards observed state."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        children: ChildResourceManager,
        zk_pool: ZkSessionPool,
    ):
        self.api = custom_objects_api
        self.children = children
        self.zk_pool = zk_pool

    def reconcile(
        self, resource: Dict[str, Any], cancel_event: Optional[threading.Event] = None
    ) -> ReconcileResult:
        """Run one reconciliation pass. Never raises."""
        metadata = resource.get("metadata", {})
        key = f"{metadata.get('namespace')}/{metadata.get('name')}"
        try:
            return self._reconcile(resource, cancel_event)
        except ReconcileCancelled:
            logger.info(f"Reconciliation of {key} cancelled: resource deleted")
            return ReconcileResult(requeue_after=None)
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Conflict reconciling {key}, will retry: {e.reason}")
            else:
                logger.warning(f"Kubernetes API error reconciling {key}: {e}")
            return ReconcileResult(requeue_after=ERROR_REQUEUE_INTERVAL, error=e)
        except ZkAdminError as e:
            logger.warning(f"ZooKeeper error reconciling {key}: {e}")
            return ReconcileResult(requeue_after=ERROR_REQUEUE_INTERVAL, error=e)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            return ReconcileResult(requeue_after=ERROR_REQUEUE_INTERVAL, error=e)

    def _reconcile(
        self, resource: Dict[str, Any], cancel_event: Optional[threading.Event]
    ) -> ReconcileResult:
        metadata = resource["metadata"]
        name = metadata["name"]
        namespace = metadata["namespace"]
        resource_version = metadata.get("resourceVersion")

        if metadata.get("deletionTimestamp"):
            raise ReconcileCancelled()

        raw_spec = resource.get("spec") or {}
        spec, changed = with_defaults(raw_spec, name)
        if changed:
            self._check_cancelled(cancel_event)
            self._patch_spec(name, namespace, resource_version, self._spec_patch(raw_spec, spec))
            logger.info(f"Applied defaults to {namespace}/{name} spec")
            return ReconcileResult(requeue_after=SPEC_PATCH_REQUEUE_INTERVAL)

        observed_status = ClusterStatus.from_dict(resource.get("status"))
        status = observed_status.copy()
        status.replicas = spec["replicas"]

        problems = validate_spec(spec)
        if problems:
            message = "; ".join(problems)
            logger.warning(f"Invalid spec for {namespace}/{name}: {message}")
            status.set_condition(CONDITION_ERROR, CONDITION_TRUE, "InvalidSpec", message)
            self._check_cancelled(cancel_event)
            self._persist_status(name, namespace, resource_version, observed_status, status)
            return ReconcileResult(requeue_after=RECONCILE_INTERVAL, status=status)
        status.set_condition(CONDITION_ERROR, CONDITION_FALSE, "SpecValid", "")

        observed = self.children.list_owned(name, namespace)
        meta_node_written = False
        if any(pod.ready for pod in observed.pods):
            self._check_cancelled(cancel_event)
            meta_node_written = self._bootstrap_ensemble(name, namespace, spec, status)
        else:
            logger.debug(f"No ready members in {namespace}/{name}, deferring ensemble bootstrap")

        self._check_cancelled(cancel_event)
        observed = self.children.apply(resource, spec)

        self._update_membership(name, spec, status, observed)

        rolling_restart = False
        if spec.get("triggerRollingRestart"):
            self._check_cancelled(cancel_event)
            resource_version, rolling_restart = self._rolling_restart(
                name, namespace, resource_version
            )

        self._update_version(spec, status, observed)

        self._check_cancelled(cancel_event)
        self._persist_status(name, namespace, resource_version, observed_status, status)
        return ReconcileResult(
            requeue_after=RECONCILE_INTERVAL,
            status=status,
            rolling_restart=rolling_restart,
            meta_node_written=meta_node_written,
        )

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise ReconcileCancelled()

    @staticmethod
    def _spec_patch(old_spec: Dict[str, Any], new_spec: Dict[str, Any]) -> Dict[str, Any]:
        # Merge patch: top-level keys dropped by defaulting must be nulled out
        patch = dict(new_spec)
        for key in old_spec:
            if key not in new_spec:
                patch[key] = None
        return patch

    def _patch_spec(
        self, name: str, namespace: str, resource_version: Optional[str], spec_patch: Dict[str, Any]
    ) -> Optional[str]:
        """Merge-patch the spec, guarded by resourceVersion. Returns the new version."""
        body = {"spec": spec_patch}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        updated = self.api.patch_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=namespace,
            plural=CRD_PLURAL,
            name=name,
            body=body,
            _request_timeout=API_TIMEOUT,
        )
        return (updated or {}).get("metadata", {}).get("resourceVersion", resource_version)

    def _persist_status(
        self,
        name: str,
        namespace: str,
        resource_version: Optional[str],
        observed_status: ClusterStatus,
        status: ClusterStatus,
    ):
        new_status = status.to_dict()
        if new_status == observed_status.to_dict():
            logger.debug(f"Status of {namespace}/{name} unchanged, skipping update")
            return

        body = {"status": new_status}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        self.api.patch_namespaced_custom_object_status(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=namespace,
            plural=CRD_PLURAL,
            name=name,
            body=body,
            _request_timeout=API_TIMEOUT,
        )
        logger.debug(
            f"Updated status of {namespace}/{name}: "
            f"readyReplicas={status.ready_replicas}/{status.replicas}"
        )

    def _bootstrap_ensemble(
        self, name: str, namespace: str, spec: Dict[str, Any], status: ClusterStatus
    ) -> bool:
        """Ensure the metadata node carries the current size. Returns True if written."""
        path = meta_node_path(name)
        payload = cluster_size_payload(spec["replicas"])
        address = ensemble_address(name, namespace, spec)

        written = False
        with self.zk_pool.session(address) as zk:
            if zk.ensure_node(path, payload):
                written = True
            else:
                data, version = zk.read_node(path)
                if data != payload:
                    new_version = zk.update_node(path, payload, version)
                    written = True
                    logger.info(
                        f"Updated {path} to {payload.decode()} (version {version} -> {new_version})"
                    )

        if not status.meta_root_created:
            logger.info(f"Ensemble metadata node {path} present for {namespace}/{name}")
        status.meta_root_created = True
        return written

    def _update_membership(
        self, name: str, spec: Dict[str, Any], status: ClusterStatus, observed: ObservedChildren
    ):
        ready = [pod.name for pod in observed.pods if pod.ready]
        unready = [pod.name for pod in observed.pods if not pod.ready]
        status.set_members(ready, unready)
        status.replicas = spec["replicas"]
        # Scale-down leaves surplus pods around briefly
        status.ready_replicas = min(status.ready_replicas, status.replicas)

        port = client_port(spec)
        status.internal_client_endpoint = (
            f"{client_service_name(name)}:{port}" if observed.client_service_exists else ""
        )
        status.external_client_endpoint = (
            f"{observed.external_address}:{port}" if observed.external_address else ""
        )

        if status.ready_replicas == status.replicas:
            status.set_condition(
                CONDITION_PODS_READY,
                CONDITION_TRUE,
                "AllPodsReady",
                f"All {status.replicas} members are ready",
            )
        else:
            status.set_condition(
                CONDITION_PODS_READY,
                CONDITION_FALSE,
                "PodsNotReady",
                f"{status.ready_replicas}/{status.replicas} members are ready",
            )

    def _rolling_restart(self, name: str, namespace: str, resource_version: Optional[str]):
        # The flag is cleared only after the sweep was accepted
        if not self.children.restart_sweep(name, namespace):
            logger.warning(f"Rolling restart of {namespace}/{name} not started, keeping trigger")
            return resource_version, False
        resource_version = self._patch_spec(
            name, namespace, resource_version, {"triggerRollingRestart": False}
        )
        logger.info(f"Rolling restart of {namespace}/{name} in progress, trigger cleared")
        return resource_version, True

    def _update_version(self, spec: Dict[str, Any], status: ClusterStatus, observed: ObservedChildren):
        target = spec["image"]["tag"]
        if not status.current_version:
            status.current_version = target

        if status.current_version == target:
            status.target_version = ""
            if status.is_condition_true(CONDITION_UPGRADING):
                status.set_condition(
                    CONDITION_UPGRADING,
                    CONDITION_FALSE,
                    "UpgradeCancelled",
                    f"Image tag reverted to {target}",
                )
            elif status.get_condition(CONDITION_UPGRADING) is None:
                status.set_condition(CONDITION_UPGRADING, CONDITION_FALSE, "NoUpgrade", "")
            return

        status.target_version = target
        upgraded = (
            len(observed.pods) == status.replicas
            and status.ready_replicas == status.replicas
            and all(pod.image_tag == target for pod in observed.pods)
        )
        if upgraded:
            previous = status.current_version
            status.current_version = target
            status.target_version = ""
            status.set_condition(
                CONDITION_UPGRADING,
                CONDITION_FALSE,
                "UpgradeCompleted",
                f"Upgraded from {previous} to {target}",
            )
            logger.info(f"Upgrade from {previous} to {target} completed")
        else:
            status.set_condition(
                CONDITION_UPGRADING,
                CONDITION_TRUE,
                "UpgradeInProgress",
                f"Upgrading from {status.current_version} to {target}",
            )
