"""An in-memory store of the cluster objects touched during remediation."""

from __future__ import annotations

import copy
import datetime as dt
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, TypeVar

from noderemedy.meta import ObjectMeta, Taint
from noderemedy.remediation import SelfNodeRemediation

logger = logging.getLogger(__name__)

AGENT_POD_LABELS = {
    "app.kubernetes.io/name": "self-node-remediation",
    "app.kubernetes.io/component": "agent",
}


class ApiError(Exception):
    """A request against the cluster failed."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class ConflictError(ApiError):
    """The object was modified since it was read."""


class AlreadyExistsError(ApiError):
    """An object with that name already exists."""


@dataclass
class Node:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    unschedulable: bool = False
    taints: list[Taint] = field(default_factory=list)
    status: dict[str, Any] = field(default_factory=dict)


@dataclass
class Pod:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_name: str = ""
    phase: str = ""


@dataclass
class VolumeAttachment:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_name: str = ""


@dataclass
class Machine:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_ref: Optional[str] = None


@dataclass(frozen=True)
class RecordedEvent:
    kind: str
    namespace: str
    name: str
    type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Collects the events emitted about objects."""

    events: list[RecordedEvent] = field(default_factory=list)

    def normal(self, obj: Any, reason: str, message: str) -> None:
        meta = obj.metadata
        event = RecordedEvent(
            kind=type(obj).__name__,
            namespace=meta.namespace,
            name=meta.name,
            type="Normal",
            reason=reason,
            message=message,
        )
        logger.debug("event %s on %s/%s: %s", reason, meta.namespace, meta.name, message)
        self.events.append(event)


_T = TypeVar("_T")


class InMemoryCluster:
    """Holds nodes, pods, volume attachments, machines and remediations.

    Every object read is a copy; updates are checked against the stored
    resource version, patches are not.
    """

    def __init__(
        self,
        *,
        nodes: Iterable[Node] = (),
        pods: Iterable[Pod] = (),
        volume_attachments: Iterable[VolumeAttachment] = (),
        machines: Iterable[Machine] = (),
        remediations: Iterable[SelfNodeRemediation] = (),
    ) -> None:
        self._versions = itertools.count(1)
        self._nodes: dict[str, Node] = {
            n.metadata.name: self._commit(copy.deepcopy(n), n) for n in nodes
        }
        self._pods: list[Pod] = [self._commit(copy.deepcopy(p), p) for p in pods]
        self._volume_attachments: list[VolumeAttachment] = [
            self._commit(copy.deepcopy(va), va) for va in volume_attachments
        ]
        self._machines: dict[tuple[str, str], Machine] = {
            (m.metadata.namespace, m.metadata.name): self._commit(copy.deepcopy(m), m)
            for m in machines
        }
        self._remediations: dict[tuple[str, str], SelfNodeRemediation] = {
            (r.metadata.namespace, r.metadata.name): self._commit(copy.deepcopy(r), r)
            for r in remediations
        }

    def _commit(self, stored: _T, source: Optional[Any] = None) -> _T:
        version = str(next(self._versions))
        stored.metadata.resource_version = version  # type: ignore[attr-defined]
        if source is not None:
            source.metadata.resource_version = version
        return stored

    @staticmethod
    def _check_version(stored: Any, obj: Any) -> None:
        if obj.metadata.resource_version != stored.metadata.resource_version:
            raise ConflictError(
                f'the object "{obj.metadata.name}" has been modified; please apply your '
                "changes to the latest version and try again"
            )

    def _node(self, name: str) -> Node:
        try:
            return self._nodes[name]
        except KeyError:
            raise NotFoundError(f'nodes "{name}" not found') from None

    def _remediation(self, namespace: str, name: str) -> SelfNodeRemediation:
        try:
            return self._remediations[(namespace, name)]
        except KeyError:
            raise NotFoundError(f'selfnoderemediations "{name}" not found') from None

    def get_node(self, name: str) -> Node:
        return copy.deepcopy(self._node(name))

    def update_node(self, node: Node) -> None:
        stored = self._node(node.metadata.name)
        self._check_version(stored, node)
        self._nodes[node.metadata.name] = self._commit(copy.deepcopy(node), node)

    def patch_node(self, node: Node) -> None:
        self._node(node.metadata.name)
        self._nodes[node.metadata.name] = self._commit(copy.deepcopy(node), node)

    def create_node(self, node: Node) -> None:
        if node.metadata.resource_version:
            raise ApiError("resourceVersion should not be set on objects to be created")
        if node.metadata.name in self._nodes:
            raise AlreadyExistsError(f'nodes "{node.metadata.name}" already exists')
        self._nodes[node.metadata.name] = self._commit(copy.deepcopy(node), node)

    def get_machine(self, namespace: str, name: str) -> Machine:
        try:
            return copy.deepcopy(self._machines[(namespace, name)])
        except KeyError:
            raise NotFoundError(f'machines "{name}" not found') from None

    def list_pods(self) -> list[Pod]:
        return copy.deepcopy(self._pods)

    def list_volume_attachments(self) -> list[VolumeAttachment]:
        return copy.deepcopy(self._volume_attachments)

    def delete_pods_on_node(self, node_name: str) -> int:
        """Delete the pods and volume attachments bound to a node; return how many went."""
        before = len(self._pods) + len(self._volume_attachments)
        self._pods = [p for p in self._pods if p.node_name != node_name]
        self._volume_attachments = [
            va for va in self._volume_attachments if va.node_name != node_name
        ]
        return before - len(self._pods) - len(self._volume_attachments)

    def find_agent_pod(self, node_name: str) -> Pod:
        """The remediation agent pod running on a node."""
        for pod in self._pods:
            labels = pod.metadata.labels
            if pod.node_name == node_name and all(
                labels.get(key) == value for key, value in AGENT_POD_LABELS.items()
            ):
                return copy.deepcopy(pod)
        raise NotFoundError(f"failed to find self node remediation pod matching node {node_name}")

    def get_remediation(self, namespace: str, name: str) -> SelfNodeRemediation:
        return copy.deepcopy(self._remediation(namespace, name))

    def update_remediation(self, snr: SelfNodeRemediation) -> None:
        """Store metadata and spec; the stored status is kept."""
        key = (snr.metadata.namespace, snr.metadata.name)
        stored = self._remediation(*key)
        self._check_version(stored, snr)
        updated = copy.deepcopy(snr)
        updated.status = stored.status
        if updated.metadata.deletion_timestamp is not None and not updated.metadata.finalizers:
            del self._remediations[key]
            return
        self._remediations[key] = self._commit(updated, snr)

    def update_remediation_status(self, snr: SelfNodeRemediation) -> None:
        stored = self._remediation(snr.metadata.namespace, snr.metadata.name)
        self._check_version(stored, snr)
        stored.status = copy.deepcopy(snr.status)
        self._commit(stored, snr)

    def patch_remediation_status(self, snr: SelfNodeRemediation) -> None:
        stored = self._remediation(snr.metadata.namespace, snr.metadata.name)
        stored.status = copy.deepcopy(snr.status)
        self._commit(stored, snr)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)