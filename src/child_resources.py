#!/usr/bin/env python3
# src/child_resources.py
"""
Kubernetes resources owned by a ZookeeperCluster.

This module provides:
- Builders for the ConfigMap, Services and StatefulSet of an ensemble
- Idempotent create-or-patch apply through CoreV1Api/AppsV1Api
- Observation of owned pods and services
- Rolling restart sweeps via a pod template annotation
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from zookeeper_types import (
    CRD_GROUP,
    CRD_KIND,
    CRD_VERSION,
    STORAGE_EPHEMERAL,
    client_port,
    image_reference,
)

logger = logging.getLogger("zookeeper-operator.children")

API_TIMEOUT = int(os.environ.get("API_TIMEOUT", "10"))

CONTAINER_NAME = "zookeeper"
DATA_VOLUME = "data"
CONF_VOLUME = "conf"
RESTARTED_AT_ANNOTATION = "zookeeper.pravega.io/restartedAt"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "zookeeper-operator"
CLUSTER_LABEL = "zookeeper.pravega.io/cluster"

# Ports published on the headless service, in order
HEADLESS_PORT_NAMES = ("client", "quorum", "leader-election", "metrics", "admin-server")


@dataclass
class PodObservation:
    name: str
    ready: bool
    image_tag: str


@dataclass
class ObservedChildren:
    pods: List[PodObservation] = field(default_factory=list)
    client_service_exists: bool = False
    external_address: str = ""


def configmap_name(cluster_name: str) -> str:
    return f"{cluster_name}-configmap"


def client_service_name(cluster_name: str) -> str:
    return f"{cluster_name}-client"


def headless_service_name(cluster_name: str) -> str:
    return f"{cluster_name}-headless"


def _port_number(spec: Dict[str, Any], name: str) -> Optional[int]:
    for port in spec.get("ports", []):
        if port.get("name") == name:
            return port.get("containerPort")
    return None


def _selector(cluster_name: str) -> Dict[str, str]:
    return {CLUSTER_LABEL: cluster_name}


def _metadata_labels(cluster_name: str) -> Dict[str, str]:
    return {CLUSTER_LABEL: cluster_name, MANAGED_BY_LABEL: MANAGED_BY}


def owner_reference(resource: Dict[str, Any]) -> Dict[str, Any]:
    metadata = resource.get("metadata", {})
    return {
        "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
        "kind": CRD_KIND,
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _metadata(resource: Dict[str, Any], name: str, labels: Dict[str, str]) -> Dict[str, Any]:
    return {
        "name": name,
        "namespace": resource["metadata"]["namespace"],
        "labels": dict(labels, **{MANAGED_BY_LABEL: MANAGED_BY}),
        "ownerReferences": [owner_reference(resource)],
    }


def render_zoo_cfg(spec: Dict[str, Any]) -> str:
    """Render the static part of zoo.cfg from a defaulted spec."""
    config = spec["config"]
    lines = [
        "4lw.commands.whitelist=cons, envi, conf, crst, srvr, stat, mntr, ruok",
        "dataDir=/data",
        "standaloneEnabled=false",
        "reconfigEnabled=true",
        "skipACL=yes",
        "metricsProvider.className=org.apache.zookeeper.metrics.prometheus.PrometheusMetricsProvider",
        f"metricsProvider.httpPort={_port_number(spec, 'metrics')}",
        "metricsProvider.exportJvmInfo=true",
        f"initLimit={config['initLimit']}",
        f"syncLimit={config['syncLimit']}",
        f"tickTime={config['tickTime']}",
        f"globalOutstandingLimit={config['globalOutstandingLimit']}",
        f"preAllocSize={config['preAllocSize']}",
        f"snapCount={config['snapCount']}",
        f"commitLogCount={config['commitLogCount']}",
        f"snapSizeLimitInKb={config['snapSizeLimitInKb']}",
        f"maxCnxns={config['maxCnxns']}",
        f"maxClientCnxns={config['maxClientCnxns']}",
        f"minSessionTimeout={config['minSessionTimeout']}",
        f"maxSessionTimeout={config['maxSessionTimeout']}",
        f"autopurge.snapRetainCount={config['autoPurgeSnapRetainCount']}",
        f"autopurge.purgeInterval={config['autoPurgePurgeInterval']}",
        f"quorumListenOnAllIPs={str(config['quorumListenOnAllIPs']).lower()}",
        f"admin.serverPort={_port_number(spec, 'admin-server')}",
        "dynamicConfigFile=/data/zoo.cfg.dynamic",
    ]
    for key in sorted(config.get("additionalConfig", {})):
        lines.append(f"{key}={config['additionalConfig'][key]}")
    return "\n".join(lines) + "\n"


def render_env(resource: Dict[str, Any], spec: Dict[str, Any]) -> str:
    name = resource["metadata"]["name"]
    namespace = resource["metadata"]["namespace"]
    domain = spec["kubernetesClusterDomain"]
    return "\n".join(
        [
            "#!/usr/bin/env bash",
            f"DOMAIN={headless_service_name(name)}.{namespace}.svc.{domain}",
            f"QUORUM_PORT={_port_number(spec, 'quorum')}",
            f"LEADER_PORT={_port_number(spec, 'leader-election')}",
            f"CLIENT_HOST={client_service_name(name)}",
            f"CLIENT_PORT={client_port(spec)}",
            f"CLUSTER_NAME={name}",
            f"CLUSTER_SIZE={spec['replicas']}",
        ]
    ) + "\n"


def build_configmap(resource: Dict[str, Any], spec: Dict[str, Any]) -> Dict[str, Any]:
    name = resource["metadata"]["name"]
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(resource, configmap_name(name), _selector(name)),
        "data": {
            "zoo.cfg": render_zoo_cfg(spec),
            "env.sh": render_env(resource, spec),
        },
    }


def build_client_service(resource: Dict[str, Any], spec: Dict[str, Any]) -> Dict[str, Any]:
    """Client Service; a LoadBalancer type publishes the external endpoint."""
    name = resource["metadata"]["name"]
    service = spec["clientService"]
    metadata = _metadata(resource, client_service_name(name), _selector(name))
    metadata["annotations"] = dict(service["annotations"])
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {
            "type": service["type"],
            "selector": _selector(name),
            "ports": [{"name": "tcp-client", "port": client_port(spec), "targetPort": client_port(spec)}],
        },
    }


def build_headless_service(resource: Dict[str, Any], spec: Dict[str, Any]) -> Dict[str, Any]:
    name = resource["metadata"]["name"]
    ports = []
    for port_name in HEADLESS_PORT_NAMES:
        number = _port_number(spec, port_name)
        ports.append({"name": f"tcp-{port_name}", "port": number, "targetPort": number})
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(resource, headless_service_name(name), _selector(name)),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": _selector(name),
            "ports": ports,
        },
    }


def _probe(command: str, settings: Dict[str, Any]) -> Dict[str, Any]:
    probe = {"exec": {"command": [command]}}
    probe.update(settings)
    return probe


def build_statefulset(resource: Dict[str, Any], spec: Dict[str, Any]) -> Dict[str, Any]:
    name = resource["metadata"]["name"]
    pod = spec["pod"]
    probes = spec["probes"]

    container = {
        "name": CONTAINER_NAME,
        "image": image_reference(spec),
        "imagePullPolicy": spec["image"]["pullPolicy"],
        "command": ["/usr/local/bin/zookeeperStart.sh"],
        "ports": [
            {"name": port["name"], "containerPort": port["containerPort"]}
            for port in spec["ports"]
        ],
        "env": list(pod.get("env", [])),
        "readinessProbe": _probe("zookeeperReady.sh", probes["readinessProbe"]),
        "livenessProbe": _probe("zookeeperLive.sh", probes["livenessProbe"]),
        "lifecycle": {"preStop": {"exec": {"command": ["zookeeperTeardown.sh"]}}},
        "volumeMounts": [
            {"name": DATA_VOLUME, "mountPath": "/data"},
            {"name": CONF_VOLUME, "mountPath": "/conf"},
        ],
    }
    if pod.get("resources"):
        container["resources"] = pod["resources"]

    volumes = [{"name": CONF_VOLUME, "configMap": {"name": configmap_name(name)}}]
    claim_templates = []
    if spec["storageType"] == STORAGE_EPHEMERAL:
        volumes.append({"name": DATA_VOLUME, "emptyDir": spec["ephemeral"]["emptydirvolumesource"]})
    else:
        persistence = spec["persistence"]
        claim_templates.append(
            {
                "metadata": {
                    "name": DATA_VOLUME,
                    "labels": _selector(name),
                    "annotations": dict(persistence["annotations"]),
                },
                "spec": persistence["spec"],
            }
        )

    pod_spec = {
        "serviceAccountName": pod["serviceAccountName"],
        "terminationGracePeriodSeconds": pod["terminationGracePeriodSeconds"],
        "affinity": pod["affinity"],
        "containers": [container],
        "volumes": volumes,
    }
    for key in ("nodeSelector", "tolerations", "securityContext", "imagePullSecrets"):
        if pod.get(key):
            pod_spec[key] = pod[key]

    statefulset_spec = {
        "serviceName": headless_service_name(name),
        "replicas": spec["replicas"],
        "selector": {"matchLabels": _selector(name)},
        "podManagementPolicy": "OrderedReady",
        "updateStrategy": {"type": "RollingUpdate"},
        "template": {
            "metadata": {
                "labels": dict(pod["labels"], **_metadata_labels(name)),
                "annotations": dict(pod["annotations"]),
            },
            "spec": pod_spec,
        },
    }
    if claim_templates:
        statefulset_spec["volumeClaimTemplates"] = claim_templates
        if spec["persistence"]["reclaimPolicy"] == "Delete":
            statefulset_spec["persistentVolumeClaimRetentionPolicy"] = {
                "whenDeleted": "Delete",
                "whenScaled": "Delete",
            }

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(resource, name, pod["labels"]),
        "spec": statefulset_spec,
    }


def _image_tag(image: str) -> str:
    # Registry hosts may carry a port: only a colon after the last slash is a tag
    repository, _, tag = image.rpartition(":")
    if not repository or "/" in tag:
        return "latest"
    return tag


def _pod_is_ready(pod) -> bool:
    if pod.metadata.deletion_timestamp is not None:
        return False
    for condition in (pod.status.conditions or []) if pod.status else []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _pod_image_tag(pod) -> str:
    for container in pod.spec.containers or []:
        if container.name == CONTAINER_NAME:
            return _image_tag(container.image or "")
    return ""


class ChildResourceManager:
    """Applies and observes the Kubernetes children of a ZookeeperCluster."""

    def __init__(self, core_api: client.CoreV1Api, apps_api: client.AppsV1Api):
        self.core_api = core_api
        self.apps_api = apps_api

    def apply(self, resource: Dict[str, Any], spec: Dict[str, Any]) -> ObservedChildren:
        """Create or patch every owned child and return what is observed."""
        namespace = resource["metadata"]["namespace"]
        name = resource["metadata"]["name"]

        self._apply_configmap(namespace, build_configmap(resource, spec))
        self._apply_service(namespace, build_headless_service(resource, spec))
        self._apply_service(namespace, build_client_service(resource, spec))
        self._apply_statefulset(namespace, build_statefulset(resource, spec))

        return self.list_owned(name, namespace)

    def _apply(self, kind: str, body: Dict[str, Any], read, create, patch):
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        try:
            read(name=name, namespace=namespace, _request_timeout=API_TIMEOUT)
        except ApiException as e:
            if e.status != 404:
                raise
            try:
                create(namespace=namespace, body=body, _request_timeout=API_TIMEOUT)
                logger.info(f"Created {kind} {namespace}/{name}")
                return
            except ApiException as create_error:
                if create_error.status != 409:
                    raise
                logger.debug(f"{kind} {namespace}/{name} appeared concurrently, patching")

        patch(name=name, namespace=namespace, body=body, _request_timeout=API_TIMEOUT)
        logger.debug(f"Patched {kind} {namespace}/{name}")

    def _apply_configmap(self, namespace: str, body: Dict[str, Any]):
        self._apply(
            "ConfigMap",
            body,
            self.core_api.read_namespaced_config_map,
            self.core_api.create_namespaced_config_map,
            self.core_api.patch_namespaced_config_map,
        )

    def _apply_service(self, namespace: str, body: Dict[str, Any]):
        self._apply(
            "Service",
            body,
            self.core_api.read_namespaced_service,
            self.core_api.create_namespaced_service,
            self.core_api.patch_namespaced_service,
        )

    def _apply_statefulset(self, namespace: str, body: Dict[str, Any]):
        def patch_mutable(name, namespace, body, _request_timeout):
            # volumeClaimTemplates and selector are immutable once created
            mutable = {
                "metadata": {"labels": body["metadata"]["labels"]},
                "spec": {
                    "replicas": body["spec"]["replicas"],
                    "template": body["spec"]["template"],
                    "updateStrategy": body["spec"]["updateStrategy"],
                },
            }
            return self.apps_api.patch_namespaced_stateful_set(
                name=name, namespace=namespace, body=mutable, _request_timeout=_request_timeout
            )

        self._apply(
            "StatefulSet",
            body,
            self.apps_api.read_namespaced_stateful_set,
            self.apps_api.create_namespaced_stateful_set,
            patch_mutable,
        )

    def list_owned(self, name: str, namespace: str) -> ObservedChildren:
        """Observe the pods and client service of a cluster."""
        observed = ObservedChildren()

        pods = self.core_api.list_namespaced_pod(
            namespace=namespace,
            label_selector=f"{CLUSTER_LABEL}={name}",
            _request_timeout=API_TIMEOUT,
        )
        for pod in pods.items:
            observed.pods.append(
                PodObservation(
                    name=pod.metadata.name,
                    ready=_pod_is_ready(pod),
                    image_tag=_pod_image_tag(pod),
                )
            )

        try:
            service = self.core_api.read_namespaced_service(
                name=client_service_name(name),
                namespace=namespace,
                _request_timeout=API_TIMEOUT,
            )
            observed.client_service_exists = True
            ingress = (
                service.status.load_balancer.ingress
                if service.status and service.status.load_balancer
                else None
            )
            if ingress:
                observed.external_address = ingress[0].ip or ingress[0].hostname or ""
        except ApiException as e:
            if e.status != 404:
                raise

        return observed

    def restart_sweep(self, name: str, namespace: str) -> bool:
        """Start a rolling restart of every member.

        Stamps the pod template so the StatefulSet controller replaces pods
        one at a time. Returns True once the API server accepted the change.
        """
        restarted_at = datetime.now(timezone.utc).isoformat()
        body = {
            "spec": {
                "template": {
                    "metadata": {"annotations": {RESTARTED_AT_ANNOTATION: restarted_at}}
                }
            }
        }
        try:
            self.apps_api.patch_namespaced_stateful_set(
                name=name, namespace=namespace, body=body, _request_timeout=API_TIMEOUT
            )
        except ApiException as e:
            if e.status == 404:
                logger.warning(f"Cannot restart {namespace}/{name}: StatefulSet not found")
                return False
            raise
        logger.info(f"Rolling restart of {namespace}/{name} initiated at {restarted_at}")
        return True
