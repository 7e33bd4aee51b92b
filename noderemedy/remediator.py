"""The steps that fence, reboot and recover an unhealthy node."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from noderemedy.cluster import (
    AlreadyExistsError,
    ConflictError,
    EventRecorder,
    InMemoryCluster,
    Node,
    NotFoundError,
)
from noderemedy.config import DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT
from noderemedy.meta import Taint, TaintEffect, delete_taint, taint_exists
from noderemedy.remediation import SelfNodeRemediation

logger = logging.getLogger(__name__)

SNR_FINALIZER = "self-node-remediation.medik8s.io/snr-finalizer"
IS_REBOOT_CAPABLE_ANNOTATION = "is-reboot-capable.self-node-remediation.medik8s.io"

NODE_UNSCHEDULABLE_TAINT = Taint(
    key="node.kubernetes.io/unschedulable", effect=TaintEffect.NO_SCHEDULE.value
)
NODE_NO_EXECUTE_TAINT = Taint(
    key="medik8s.io/remediation", value="self-node-remediation", effect=TaintEffect.NO_EXECUTE.value
)
OUT_OF_SERVICE_TAINT = Taint(
    key="node.kubernetes.io/out-of-service", value="nodeshutdown", effect=TaintEffect.NO_EXECUTE.value
)

SHORT_REQUEUE = dt.timedelta(seconds=1)
RESOURCE_DELETION_TIMEOUT = dt.timedelta(seconds=300)
RESOURCE_DELETION_POLL = dt.timedelta(seconds=5)
DEFAULT_REBOOT_REQUEUE = dt.timedelta(seconds=60)

EVENT_ADD_FINALIZER = "AddFinalizer"
EVENT_MARK_UNSCHEDULABLE = "MarkUnschedulable"
EVENT_ADD_NO_EXECUTE = "AddNoExecute"
EVENT_ADD_OUT_OF_SERVICE = "AddOutOfService"
EVENT_UPDATE_TIME_ASSUMED_REBOOTED = "UpdateTimeAssumedRebooted"
EVENT_DELETE_RESOURCES = "DeleteResources"
EVENT_MARK_SCHEDULABLE = "MarkNodeSchedulable"
EVENT_REMOVE_FINALIZER = "RemoveFinalizer"
EVENT_REMOVE_NO_EXECUTE = "RemoveNoExecuteTaint"
EVENT_REMOVE_OUT_OF_SERVICE = "RemoveOutOfService"
EVENT_NODE_REBOOT = "NodeReboot"
EVENT_REMEDIATION_FINISHED = "RemediationFinished"

_ZERO = dt.timedelta(0)


class RemediationPhase(str, Enum):
    FENCING_STARTED = "Fencing-Started"
    PRE_REBOOT_COMPLETED = "Pre-Reboot-Completed"
    REBOOT_COMPLETED = "Reboot-Completed"
    FENCING_COMPLETED = "Fencing-Completed"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Result:
    """What the reconcile loop should do next."""

    requeue: bool = False
    requeue_after: dt.timedelta = _ZERO


class RemediationError(Exception):
    """A remediation step cannot proceed yet; retry with backoff."""


class UnreconcilableError(RemediationError):
    """A remediation error that retrying will not fix."""


RemoveResources = Callable[[Node, SelfNodeRemediation], dt.timedelta]


def get_phase(snr: SelfNodeRemediation) -> RemediationPhase:
    """The phase recorded in the status; an unset phase means fencing has started."""
    phase = snr.status.phase
    if phase is None:
        return RemediationPhase.FENCING_STARTED
    if phase in (
        RemediationPhase.PRE_REBOOT_COMPLETED.value,
        RemediationPhase.REBOOT_COMPLETED.value,
        RemediationPhase.FENCING_COMPLETED.value,
    ):
        return RemediationPhase(phase)
    return RemediationPhase.UNKNOWN


def linux_uptime() -> dt.timedelta:
    """Time since the host booted."""
    first = Path("/proc/uptime").read_text().split()[0]
    return dt.timedelta(seconds=float(first))


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _default_time_to_assume_rebooted() -> dt.timedelta:
    return dt.timedelta(seconds=DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT)


class NodeRemediator:
    """Carries out each remediation phase against the cluster."""

    def __init__(
        self,
        cluster: InMemoryCluster,
        recorder: EventRecorder,
        *,
        reboot: Callable[[], None],
        my_node_name: str = "",
        time_to_assume_node_rebooted: Callable[[], dt.timedelta] = _default_time_to_assume_rebooted,
        uptime: Callable[[], dt.timedelta] = linux_uptime,
        clock: Callable[[], dt.datetime] = _utcnow,
        reboot_requeue_after: dt.timedelta = DEFAULT_REBOOT_REQUEUE,
        on_fencing_completed: Optional[Callable[[SelfNodeRemediation], None]] = None,
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder
        self.my_node_name = my_node_name
        self._reboot = reboot
        self._time_to_assume_node_rebooted = time_to_assume_node_rebooted
        self._uptime = uptime
        self._clock = clock
        self._reboot_requeue_after = reboot_requeue_after
        self._on_fencing_completed = on_fencing_completed

    # phase: fencing started

    def prepare_reboot(self, node: Node, snr: SelfNodeRemediation) -> Result:
        logger.info("pre-reboot not completed yet, prepare for rebooting")
        if not self.is_node_reboot_capable(node):
            raise RemediationError("Node is not capable to reboot itself")

        if SNR_FINALIZER not in snr.metadata.finalizers:
            return self._add_finalizer(snr)

        self._add_taint(node, NODE_NO_EXECUTE_TAINT, EVENT_ADD_NO_EXECUTE,
                        "Remediation process - NoExecute taint added to the unhealthy node")

        if not node.unschedulable or not taint_exists(node.taints, NODE_UNSCHEDULABLE_TAINT):
            return self._mark_unschedulable(node)

        if snr.status.time_assumed_rebooted is None:
            self._update_time_assumed_rebooted(node, snr)

        snr.status.phase = RemediationPhase.PRE_REBOOT_COMPLETED.value
        return Result()

    # phase: pre-reboot completed

    def reboot_node(self, node: Node, snr: SelfNodeRemediation) -> Result:
        logger.info("node reboot not completed yet, start rebooting")
        if self.my_node_name == node.metadata.name:
            return self._reboot_if_needed(snr, node)

        rebooted, time_left = self.was_node_rebooted(snr)
        if not rebooted:
            return Result(requeue_after=time_left)

        logger.info("TimeAssumedRebooted is old, node %s assumed to be rebooted", node.metadata.name)
        snr.status.phase = RemediationPhase.REBOOT_COMPLETED.value
        return Result()

    # phase: reboot completed

    def handle_reboot_completed(
        self, node: Node, snr: SelfNodeRemediation, remove_resources: RemoveResources
    ) -> Result:
        wait = remove_resources(node, snr)
        if wait:
            return Result(requeue_after=wait)
        self.recorder.normal(node, EVENT_DELETE_RESOURCES,
                             "Remediation process - finished deleting unhealthy node resources")
        snr.status.phase = RemediationPhase.FENCING_COMPLETED.value
        if self._on_fencing_completed is not None:
            self._on_fencing_completed(snr)
        return Result()

    def delete_resources(self, node: Node, snr: SelfNodeRemediation) -> dt.timedelta:
        """Delete the workloads bound to the node; no waiting is needed afterwards."""
        self.cluster.delete_pods_on_node(node.metadata.name)
        return _ZERO

    def use_out_of_service_taint(self, node: Node, snr: SelfNodeRemediation) -> dt.timedelta:
        """Taint the node out of service and wait until its workloads are gone."""
        self._add_taint(node, OUT_OF_SERVICE_TAINT, EVENT_ADD_OUT_OF_SERVICE,
                        "Remediation process - add out-of-service taint to unhealthy node")

        if not self.is_resource_deletion_completed(node):
            expired, time_left = self.is_resource_deletion_expired(snr)
            if not expired:
                return time_left
            raise RemediationError("Not ready to delete out-of-service taint")

        self._remove_taint(node, OUT_OF_SERVICE_TAINT, EVENT_REMOVE_OUT_OF_SERVICE,
                           "Remediation process - remove out-of-service taint from node")
        return _ZERO

    # phase: fencing completed

    def recover_node(self, node: Node, snr: SelfNodeRemediation) -> Result:
        logger.info("fencing completed, cleaning up")
        if node.unschedulable:
            node.unschedulable = False
            try:
                self.cluster.update_node(node)
            except ConflictError:
                return Result(requeue_after=SHORT_REQUEUE)
            except Exception:
                logger.exception("failed to unmark node as schedulable")
                raise
            self.recorder.normal(node, EVENT_MARK_SCHEDULABLE,
                                 "Remediation process - mark healthy remediated node as schedulable")

        if taint_exists(node.taints, NODE_UNSCHEDULABLE_TAINT):
            return Result(requeue_after=SHORT_REQUEUE)

        self._remove_taint(node, NODE_NO_EXECUTE_TAINT, EVENT_REMOVE_NO_EXECUTE,
                           "Remediation process - remove NoExecute taint from healthy remediated node")

        if SNR_FINALIZER in snr.metadata.finalizers:
            self._remove_finalizer(snr)
            self.recorder.normal(snr, EVENT_REMOVE_FINALIZER,
                                 "Remediation process - remove finalizer from snr")
            self.recorder.normal(snr, EVENT_REMEDIATION_FINISHED, "Remediation finished")
        return Result()

    def restore_node(self, node: Node) -> Result:
        """Create the node again from a saved copy, cleared of scheduling restrictions."""
        logger.info("restoring node %s", node.metadata.name)
        node.metadata.resource_version = ""
        node.taints, _ = delete_taint(node.taints, NODE_UNSCHEDULABLE_TAINT)
        node.unschedulable = False
        node.metadata.creation_timestamp = self._clock()
        node.status = {}
        try:
            self.cluster.create_node(node)
        except AlreadyExistsError:
            logger.info("failed to create node %s since it already exists", node.metadata.name)
            return Result()
        except Exception:
            logger.exception("failed to create node %s", node.metadata.name)
            raise
        logger.info("node %s restored successfully", node.metadata.name)
        return Result(requeue=True)

    # checks

    def was_node_rebooted(self, snr: SelfNodeRemediation) -> tuple[bool, dt.timedelta]:
        """Whether the node is assumed rebooted; otherwise also the time still to wait."""
        deadline = snr.status.time_assumed_rebooted
        now = self._clock()
        if deadline is not None and deadline > now:
            return False, deadline - now + SHORT_REQUEUE
        return True, _ZERO

    def is_resource_deletion_completed(self, node: Node) -> bool:
        name = node.metadata.name
        for pod in self.cluster.list_pods():
            if pod.node_name == name and pod.metadata.deletion_timestamp is not None:
                logger.info("waiting for terminating pod %s, phase %s", pod.metadata.name, pod.phase)
                return False
        for attachment in self.cluster.list_volume_attachments():
            if attachment.node_name == name:
                logger.info("waiting for deleting volume attachment %s", attachment.metadata.name)
                return False
        return True

    def is_resource_deletion_expired(self, snr: SelfNodeRemediation) -> tuple[bool, dt.timedelta]:
        """Whether waiting for workload deletion has timed out; otherwise the poll interval."""
        deadline = snr.status.time_assumed_rebooted
        if deadline is not None and deadline + RESOURCE_DELETION_TIMEOUT > self._clock():
            return False, RESOURCE_DELETION_POLL
        return True, _ZERO

    def is_node_reboot_capable(self, node: Node) -> bool:
        """A node can reboot itself if it runs an agent pod and is annotated as capable."""
        try:
            self.cluster.find_agent_pod(node.metadata.name)
        except NotFoundError:
            logger.error("failed to get self node remediation agent pod resource")
            return False
        value = node.metadata.annotations.get(IS_REBOOT_CAPABLE_ANNOTATION, "")
        if value != "true":
            logger.error(
                "node's isRebootCapable annotation is not `true`, which means the node might not "
                "reboot when we'll delete the node. Skipping remediation; annotation value=%r",
                value,
            )
            return False
        return True

    # helpers

    def _reboot_if_needed(self, snr: SelfNodeRemediation, node: Node) -> Result:
        if self._did_i_reboot_myself(snr):
            return Result()
        self.recorder.normal(node, EVENT_NODE_REBOOT,
                             "Remediation process - about to attempt fencing the unhealthy node by rebooting it")
        self._reboot()
        return Result(requeue_after=self._reboot_requeue_after)

    def _did_i_reboot_myself(self, snr: SelfNodeRemediation) -> bool:
        created = snr.metadata.creation_timestamp
        if created is None:
            return True
        return self._uptime() < self._clock() - created

    def _add_finalizer(self, snr: SelfNodeRemediation) -> Result:
        if snr.metadata.deletion_timestamp is not None:
            logger.info("snr is about to be deleted, which means the resource is healthy again")
            return Result()
        snr.metadata.finalizers.append(SNR_FINALIZER)
        try:
            self.cluster.update_remediation(snr)
        except ConflictError:
            return Result(requeue_after=SHORT_REQUEUE)
        except Exception:
            logger.exception("failed to add finalizer to snr")
            raise
        logger.info("finalizer added")
        self.recorder.normal(snr, EVENT_ADD_FINALIZER,
                             "Remediation process - successful adding finalizer")
        return Result(requeue=True)

    def _remove_finalizer(self, snr: SelfNodeRemediation) -> None:
        snr.metadata.finalizers = [f for f in snr.metadata.finalizers if f != SNR_FINALIZER]
        try:
            self.cluster.update_remediation(snr)
        except ConflictError:
            raise
        except Exception:
            logger.exception("failed to remove finalizer from snr")
            raise
        logger.info("finalizer removed")

    def _mark_unschedulable(self, node: Node) -> Result:
        if node.unschedulable:
            logger.info("waiting for unschedulable taint to appear on node %s", node.metadata.name)
            return Result(requeue_after=SHORT_REQUEUE)
        node.unschedulable = True
        logger.info("marking node %s as unschedulable", node.metadata.name)
        try:
            self.cluster.update_node(node)
        except ConflictError:
            node.unschedulable = False
            return Result(requeue_after=SHORT_REQUEUE)
        except Exception:
            logger.exception("failed to mark node as unschedulable")
            raise
        self.recorder.normal(node, EVENT_MARK_UNSCHEDULABLE,
                             "Remediation process - unhealthy node marked as unschedulable")
        return Result(requeue_after=SHORT_REQUEUE)

    def _update_time_assumed_rebooted(self, node: Node, snr: SelfNodeRemediation) -> None:
        logger.info("updating time to assume node %s has been rebooted", node.metadata.name)
        snr.status.time_assumed_rebooted = self._clock() + self._time_to_assume_node_rebooted()
        self.recorder.normal(snr, EVENT_UPDATE_TIME_ASSUMED_REBOOTED,
                             "Remediation process - about to update required fencing time on snr")

    def _add_taint(self, node: Node, template: Taint, reason: str, message: str) -> None:
        if taint_exists(node.taints, template):
            return
        node.taints.append(replace(template, time_added=self._clock()))
        try:
            self.cluster.patch_node(node)
        except Exception:
            logger.exception("failed to add taint %s on node %s", template.key, node.metadata.name)
            raise
        logger.info("taint %s added to node %s", template.key, node.metadata.name)
        self.recorder.normal(node, reason, message)

    def _remove_taint(self, node: Node, template: Taint, reason: str, message: str) -> None:
        taints, deleted = delete_taint(node.taints, template)
        if not deleted:
            return
        node.taints = taints
        try:
            self.cluster.patch_node(node)
        except Exception:
            logger.exception("failed to remove taint %s from node %s", template.key, node.metadata.name)
            raise
        logger.info("taint %s removed from node %s", template.key, node.metadata.name)
        self.recorder.normal(node, reason, message)