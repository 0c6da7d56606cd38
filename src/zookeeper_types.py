#!/usr/bin/env python3
# src/zookeeper_types.py
"""
ZookeeperCluster desired-state model and defaulting.

The spec is handled as the plain dict returned by the CustomObjectsApi. This
module provides:
- Canonical default values for every optional spec field
- with_defaults(): a pure, idempotent defaulting pass reporting changes
- validate_spec(): detection of values defaulting cannot coerce
"""

import copy
import logging
import os
from typing import Any, Dict, List, Tuple

from kubernetes.utils import parse_quantity

logger = logging.getLogger("zookeeper-operator.types")

# CRD configuration
CRD_GROUP = os.environ.get("CRD_GROUP", "zookeeper.pravega.io")
CRD_VERSION = os.environ.get("CRD_VERSION", "v1beta1")
CRD_PLURAL = os.environ.get("CRD_PLURAL", "zookeeperclusters")
CRD_KIND = "ZookeeperCluster"

# Image defaults
DEFAULT_ZK_CONTAINER_REPOSITORY = "pravega/zookeeper"
DEFAULT_ZK_CONTAINER_VERSION = "0.2.15"
DEFAULT_ZK_CONTAINER_POLICY = "Always"

DEFAULT_REPLICAS = 3

STORAGE_PERSISTENCE = "persistence"
STORAGE_EPHEMERAL = "ephemeral"
DEFAULT_RECLAIM_POLICY = "Retain"
DEFAULT_ACCESS_MODE = "ReadWriteOnce"
DEFAULT_STORAGE_SIZE = "20Gi"

DEFAULT_SERVICE_ACCOUNT = "default"
DEFAULT_TERMINATION_GRACE_PERIOD = 30
DEFAULT_ANTI_AFFINITY_WEIGHT = 20
HOSTNAME_TOPOLOGY_KEY = "kubernetes.io/hostname"

DEFAULT_CLUSTER_DOMAIN = "cluster.local"

# Ordered: missing ports are appended in this order
CANONICAL_PORTS = (
    ("client", 2181),
    ("quorum", 2888),
    ("leader-election", 3888),
    ("metrics", 7000),
    ("admin-server", 8080),
)

DEFAULT_CONFIG = {
    "initLimit": 10,
    "tickTime": 2000,
    "syncLimit": 2,
    "globalOutstandingLimit": 1000,
    "preAllocSize": 65536,
    "snapCount": 10000,
    "commitLogCount": 500,
    "snapSizeLimitInKb": 4194304,
    "maxCnxns": 0,
    "maxClientCnxns": 60,
    "autoPurgeSnapRetainCount": 3,
    "autoPurgePurgeInterval": 1,
    "quorumListenOnAllIPs": False,
    "additionalConfig": {},
}
MIN_SESSION_TIMEOUT_TICKS = 2
MAX_SESSION_TIMEOUT_TICKS = 20

# Zero disables these limits; every other count must be positive
NON_NEGATIVE_CONFIG_KEYS = ("maxCnxns", "maxClientCnxns", "autoPurgePurgeInterval")
SESSION_TIMEOUT_KEYS = ("minSessionTimeout", "maxSessionTimeout")

CLIENT_SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer")
DEFAULT_CLIENT_SERVICE_TYPE = "ClusterIP"

PROBE_NAMES = ("readinessProbe", "livenessProbe")
DEFAULT_PROBE = {
    "initialDelaySeconds": 10,
    "periodSeconds": 10,
    "failureThreshold": 3,
    "successThreshold": 1,
    "timeoutSeconds": 10,
}


def _is_absent(value: Any) -> bool:
    return value is None or value == ""


def _is_int(value: Any) -> bool:
    # bool is an int subclass but never a valid count
    return isinstance(value, int) and not isinstance(value, bool)


def _section(spec: Dict[str, Any], key: str) -> Tuple[Dict[str, Any], bool]:
    """Return spec[key] as a dict, creating it when missing or malformed."""
    value = spec.get(key)
    if isinstance(value, dict):
        return value, False
    spec[key] = {}
    return spec[key], True


def _default_image(spec: Dict[str, Any]) -> bool:
    image, changed = _section(spec, "image")
    for key, fallback in (
        ("repository", DEFAULT_ZK_CONTAINER_REPOSITORY),
        ("tag", DEFAULT_ZK_CONTAINER_VERSION),
        ("pullPolicy", DEFAULT_ZK_CONTAINER_POLICY),
    ):
        if _is_absent(image.get(key)):
            image[key] = fallback
            changed = True
    return changed


def _default_config(spec: Dict[str, Any]) -> bool:
    config, changed = _section(spec, "config")
    for key, fallback in DEFAULT_CONFIG.items():
        if config.get(key) is None:
            config[key] = copy.deepcopy(fallback)
            changed = True

    tick_time = config["tickTime"]
    if not _is_int(tick_time) or tick_time <= 0:
        logger.info(f"Coercing invalid tickTime {tick_time!r} to {DEFAULT_CONFIG['tickTime']}")
        tick_time = DEFAULT_CONFIG["tickTime"]
        config["tickTime"] = tick_time
        changed = True

    # Session timeouts derive from the resolved tickTime
    if config.get("minSessionTimeout") is None:
        config["minSessionTimeout"] = MIN_SESSION_TIMEOUT_TICKS * tick_time
        changed = True
    if config.get("maxSessionTimeout") is None:
        config["maxSessionTimeout"] = MAX_SESSION_TIMEOUT_TICKS * tick_time
        changed = True
    return changed


def _default_replicas(spec: Dict[str, Any]) -> bool:
    replicas = spec.get("replicas")
    if _is_int(replicas) and replicas > 0:
        return False
    if replicas not in (None, 0):
        logger.info(f"Coercing invalid replicas value {replicas!r} to {DEFAULT_REPLICAS}")
    spec["replicas"] = DEFAULT_REPLICAS
    return True


def _default_probes(spec: Dict[str, Any]) -> bool:
    probes, changed = _section(spec, "probes")
    for name in PROBE_NAMES:
        # All-or-nothing: a partially written probe is kept as the user wrote it
        if probes.get(name) is None:
            probes[name] = dict(DEFAULT_PROBE)
            changed = True
    return changed


def _default_ports(spec: Dict[str, Any]) -> bool:
    ports = spec.get("ports")
    changed = False
    if not isinstance(ports, list):
        ports = []
        spec["ports"] = ports
        changed = True

    present = {port.get("name") for port in ports if isinstance(port, dict)}
    for name, number in CANONICAL_PORTS:
        if name not in present:
            ports.append({"name": name, "containerPort": number})
            changed = True
    return changed


def default_affinity(cluster_name: str) -> Dict[str, Any]:
    """Preferred anti-affinity spreading members across hosts."""
    return {
        "podAntiAffinity": {
            "preferredDuringSchedulingIgnoredDuringExecution": [
                {
                    "weight": DEFAULT_ANTI_AFFINITY_WEIGHT,
                    "podAffinityTerm": {
                        "labelSelector": {
                            "matchExpressions": [
                                {
                                    "key": "app",
                                    "operator": "In",
                                    "values": [cluster_name],
                                }
                            ]
                        },
                        "topologyKey": HOSTNAME_TOPOLOGY_KEY,
                    },
                }
            ]
        }
    }


def _default_pod(spec: Dict[str, Any], cluster_name: str) -> bool:
    pod, changed = _section(spec, "pod")

    labels = pod.get("labels")
    if not isinstance(labels, dict):
        labels = {}
        pod["labels"] = labels
        changed = True
    for key in ("app", "release"):
        if key not in labels:
            labels[key] = cluster_name
            changed = True

    for key, fallback in (
        ("nodeSelector", {}),
        ("annotations", {}),
        ("tolerations", []),
        ("resources", {}),
        ("env", []),
    ):
        if pod.get(key) is None:
            pod[key] = fallback
            changed = True

    if _is_absent(pod.get("serviceAccountName")):
        pod["serviceAccountName"] = DEFAULT_SERVICE_ACCOUNT
        changed = True
    if pod.get("terminationGracePeriodSeconds") is None:
        pod["terminationGracePeriodSeconds"] = DEFAULT_TERMINATION_GRACE_PERIOD
        changed = True
    if not pod.get("affinity"):
        pod["affinity"] = default_affinity(cluster_name)
        changed = True
    return changed


def _storage_is_zero(size: Any) -> bool:
    if _is_absent(size):
        return True
    try:
        return parse_quantity(size) == 0
    except ValueError:
        # Unparseable sizes are reported by validate_spec()
        return False


def _default_storage(spec: Dict[str, Any]) -> bool:
    changed = False
    if spec.get("storageType") == STORAGE_EPHEMERAL:
        if "persistence" in spec:
            del spec["persistence"]
            changed = True
        ephemeral, section_changed = _section(spec, "ephemeral")
        changed = changed or section_changed
        if not isinstance(ephemeral.get("emptydirvolumesource"), dict):
            ephemeral["emptydirvolumesource"] = {}
            changed = True
        return changed

    if spec.get("storageType") != STORAGE_PERSISTENCE:
        spec["storageType"] = STORAGE_PERSISTENCE
        changed = True
    if "ephemeral" in spec:
        del spec["ephemeral"]
        changed = True

    persistence, section_changed = _section(spec, "persistence")
    changed = changed or section_changed
    if _is_absent(persistence.get("reclaimPolicy")):
        persistence["reclaimPolicy"] = DEFAULT_RECLAIM_POLICY
        changed = True
    if persistence.get("annotations") is None:
        persistence["annotations"] = {}
        changed = True

    claim_spec, section_changed = _section(persistence, "spec")
    changed = changed or section_changed
    if not claim_spec.get("accessModes"):
        claim_spec["accessModes"] = [DEFAULT_ACCESS_MODE]
        changed = True

    resources, section_changed = _section(claim_spec, "resources")
    changed = changed or section_changed
    requests, section_changed = _section(resources, "requests")
    changed = changed or section_changed
    if _storage_is_zero(requests.get("storage")):
        requests["storage"] = DEFAULT_STORAGE_SIZE
        changed = True
    return changed


def with_defaults(spec: Dict[str, Any], cluster_name: str) -> Tuple[Dict[str, Any], bool]:
    """Return a fully defaulted copy of ``spec`` and whether anything changed.

    The input is never mutated. Running the result through this function
    again returns an equal document with ``changed`` False.
    """
    result = copy.deepcopy(spec) if isinstance(spec, dict) else {}
    changed = not isinstance(spec, dict)

    # Every rule must run; no short-circuiting on earlier changes
    for rule_changed in (
        _default_image(result),
        _default_config(result),
        _default_replicas(result),
        _default_probes(result),
        _default_ports(result),
        _default_pod(result, cluster_name),
        _default_storage(result),
    ):
        changed = changed or rule_changed

    if "kubernetesClusterDomain" not in result or _is_absent(result["kubernetesClusterDomain"]):
        result["kubernetesClusterDomain"] = DEFAULT_CLUSTER_DOMAIN
        changed = True
    if result.get("triggerRollingRestart") is None:
        result["triggerRollingRestart"] = False
        changed = True

    client_service, section_changed = _section(result, "clientService")
    changed = changed or section_changed
    if _is_absent(client_service.get("type")):
        client_service["type"] = DEFAULT_CLIENT_SERVICE_TYPE
        changed = True
    if client_service.get("annotations") is None:
        client_service["annotations"] = {}
        changed = True

    return result, changed


def validate_spec(spec: Dict[str, Any]) -> List[str]:
    """Report values in a defaulted spec that defaulting cannot coerce.

    Returns a list of human-readable problems; empty means valid.
    """
    problems = []

    seen_ports = set()
    for port in spec.get("ports", []):
        if not isinstance(port, dict):
            problems.append(f"port entry {port!r} is not an object")
            continue
        name = port.get("name")
        number = port.get("containerPort")
        if name in seen_ports:
            problems.append(f"port name {name!r} is declared more than once")
        seen_ports.add(name)
        if not _is_int(number) or not 0 < number < 65536:
            problems.append(f"port {name!r} has invalid containerPort {number!r}")

    for name in PROBE_NAMES:
        probe = spec.get("probes", {}).get(name)
        if not isinstance(probe, dict):
            problems.append(f"{name} must be an object")
            continue
        for key, value in probe.items():
            if key in DEFAULT_PROBE and (not _is_int(value) or value < 0):
                problems.append(f"{name}.{key} must be a non-negative integer, got {value!r}")

    config = spec.get("config", {})
    count_keys = [key for key, fallback in DEFAULT_CONFIG.items() if _is_int(fallback)]
    for key in count_keys + list(SESSION_TIMEOUT_KEYS):
        value = config.get(key)
        if not _is_int(value):
            problems.append(f"config.{key} must be an integer, got {value!r}")
        elif key in NON_NEGATIVE_CONFIG_KEYS:
            if value < 0:
                problems.append(f"config.{key} must be non-negative, got {value}")
        elif value <= 0:
            problems.append(f"config.{key} must be positive, got {value}")
    min_timeout = config.get("minSessionTimeout")
    max_timeout = config.get("maxSessionTimeout")
    if _is_int(min_timeout) and _is_int(max_timeout) and max_timeout < min_timeout:
        problems.append(
            f"config.maxSessionTimeout {max_timeout} is below minSessionTimeout {min_timeout}"
        )
    if not isinstance(config.get("additionalConfig"), dict):
        problems.append("config.additionalConfig must be a map of strings")

    service_type = spec.get("clientService", {}).get("type")
    if service_type not in CLIENT_SERVICE_TYPES:
        problems.append(
            f"clientService.type must be one of {', '.join(CLIENT_SERVICE_TYPES)}, got {service_type!r}"
        )

    if spec.get("persistence") is not None and spec.get("ephemeral") is not None:
        problems.append("persistence and ephemeral storage are both set")

    size = (
        spec.get("persistence", {})
        .get("spec", {})
        .get("resources", {})
        .get("requests", {})
        .get("storage")
    )
    if size is not None:
        try:
            parse_quantity(size)
        except ValueError:
            problems.append(f"persistence storage request {size!r} is not a valid quantity")

    return problems


def client_port(spec: Dict[str, Any]) -> int:
    """Return the container port named ``client`` from a defaulted spec."""
    for port in spec.get("ports", []):
        if isinstance(port, dict) and port.get("name") == "client":
            return port.get("containerPort")
    return dict(CANONICAL_PORTS)["client"]


def image_reference(spec: Dict[str, Any]) -> str:
    image = spec.get("image", {})
    return f"{image.get('repository')}:{image.get('tag')}"
