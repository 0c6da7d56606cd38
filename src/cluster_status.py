#!/usr/bin/env python3
# src/cluster_status.py
"""
Observed state of a ZookeeperCluster.

Conditions are held in a mapping keyed by condition type so that there is
never more than one entry per type; they serialize back to the ordered list
the CRD status schema expects.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

CONDITION_PODS_READY = "PodsReady"
CONDITION_UPGRADING = "Upgrading"
CONDITION_ERROR = "Error"
CONDITION_TYPES = (CONDITION_PODS_READY, CONDITION_UPGRADING, CONDITION_ERROR)

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ClusterCondition:
    type: str
    status: str = CONDITION_UNKNOWN
    reason: str = ""
    message: str = ""
    last_update_time: str = ""
    last_transition_time: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterCondition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", CONDITION_UNKNOWN),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_update_time=data.get("lastUpdateTime", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastUpdateTime": self.last_update_time,
            "lastTransitionTime": self.last_transition_time,
        }


@dataclass
class ClusterStatus:
    ready_members: List[str] = field(default_factory=list)
    unready_members: List[str] = field(default_factory=list)
    replicas: int = 0
    ready_replicas: int = 0
    internal_client_endpoint: str = ""
    external_client_endpoint: str = ""
    meta_root_created: bool = False
    current_version: str = ""
    target_version: str = ""
    conditions: Dict[str, ClusterCondition] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClusterStatus":
        data = data or {}
        members = data.get("members") or {}
        status = cls(
            ready_members=sorted(members.get("ready") or []),
            unready_members=sorted(members.get("unready") or []),
            replicas=data.get("replicas", 0) or 0,
            ready_replicas=data.get("readyReplicas", 0) or 0,
            internal_client_endpoint=data.get("internalClientEndpoint", "") or "",
            external_client_endpoint=data.get("externalClientEndpoint", "") or "",
            meta_root_created=bool(data.get("metaRootCreated", False)),
            current_version=data.get("currentVersion", "") or "",
            target_version=data.get("targetVersion", "") or "",
        )
        # Later duplicates of a type win, collapsing legacy lists to one per type
        for entry in data.get("conditions") or []:
            condition = ClusterCondition.from_dict(entry)
            if condition.type in CONDITION_TYPES:
                status.conditions[condition.type] = condition
        return status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "members": {
                "ready": list(self.ready_members),
                "unready": list(self.unready_members),
            },
            "replicas": self.replicas,
            "readyReplicas": self.ready_replicas,
            "internalClientEndpoint": self.internal_client_endpoint,
            "externalClientEndpoint": self.external_client_endpoint,
            "metaRootCreated": self.meta_root_created,
            "currentVersion": self.current_version,
            "targetVersion": self.target_version,
            "conditions": [
                self.conditions[ctype].to_dict()
                for ctype in CONDITION_TYPES
                if ctype in self.conditions
            ],
        }

    def copy(self) -> "ClusterStatus":
        return copy.deepcopy(self)

    def set_members(self, ready: Iterable[str], unready: Iterable[str]):
        """Record membership; a name reported in both sets counts as unready."""
        unready_set = set(unready)
        ready_set = set(ready) - unready_set
        self.ready_members = sorted(ready_set)
        self.unready_members = sorted(unready_set)
        self.ready_replicas = len(self.ready_members)

    def get_condition(self, ctype: str) -> Optional[ClusterCondition]:
        return self.conditions.get(ctype)

    def is_condition_true(self, ctype: str) -> bool:
        condition = self.conditions.get(ctype)
        return condition is not None and condition.status == CONDITION_TRUE

    def set_condition(
        self,
        ctype: str,
        status: str,
        reason: str = "",
        message: str = "",
        now: Optional[str] = None,
    ) -> bool:
        """Upsert a condition. Returns True when anything was written.

        lastTransitionTime moves only on a status change; lastUpdateTime moves
        whenever status, reason or message change. Writing an identical
        condition is a no-op.
        """
        if ctype not in CONDITION_TYPES:
            raise ValueError(f"Unknown condition type: {ctype}")
        now = now or utc_now()

        existing = self.conditions.get(ctype)
        if existing is None:
            self.conditions[ctype] = ClusterCondition(
                type=ctype,
                status=status,
                reason=reason,
                message=message,
                last_update_time=now,
                last_transition_time=now,
            )
            return True

        if (existing.status, existing.reason, existing.message) == (status, reason, message):
            return False

        if existing.status != status:
            existing.last_transition_time = now
        existing.status = status
        existing.reason = reason
        existing.message = message
        existing.last_update_time = now
        return True
