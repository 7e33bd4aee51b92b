"""Drives a SelfNodeRemediation resource through its remediation phases."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import replace
from enum import Enum
from typing import Callable, Optional, Union

from noderemedy import features
from noderemedy.cluster import (
    ApiError,
    ConflictError,
    EventRecorder,
    InMemoryCluster,
    Node,
    NotFoundError,
)
from noderemedy.features import FeatureGates
from noderemedy.meta import (
    Condition,
    ConditionStatus,
    OwnerReference,
    is_status_condition_present_and_equal,
    set_status_condition,
)
from noderemedy.remediation import (
    PROCESSING_CONDITION_TYPE,
    SUCCEEDED_CONDITION_TYPE,
    RemediationStrategy,
    SelfNodeRemediation,
)
from noderemedy.remediator import (
    SHORT_REQUEUE,
    SNR_FINALIZER,
    NodeRemediator,
    RemediationError,
    RemediationPhase,
    RemoveResources,
    Result,
    UnreconcilableError,
    get_phase,
)

logger = logging.getLogger(__name__)

NHC_TIMED_OUT_ANNOTATION = "remediation.medik8s.io/nhc-timed-out"
EXCLUDE_REMEDIATION_LABEL = "remediation.medik8s.io/exclude-from-remediation"

EVENT_REMEDIATION_STARTED = "RemediationStarted"
EVENT_REMEDIATION_SKIPPED = "RemediationSkipped"
EVENT_REMEDIATION_STOPPED = "RemediationStoppedByNHC"
EVENT_GET_TARGET_NODE_FAILED = "GetTargetNodeFailed"


class ProcessingChangeReason(str, Enum):
    REMEDIATION_STARTED = "RemediationStarted"
    REMEDIATION_TIMEOUT_BY_NHC = "RemediationTimeoutByNHC"
    REMEDIATION_FINISHED_SUCCESSFULLY = "RemediationFinishedSuccessfully"
    REMEDIATION_SKIPPED_NODE_NOT_FOUND = "RemediationSkippedNodeNotFound"


_CONDITION_STATUSES: dict[ProcessingChangeReason, tuple[ConditionStatus, ConditionStatus]] = {
    ProcessingChangeReason.REMEDIATION_STARTED: (ConditionStatus.TRUE, ConditionStatus.UNKNOWN),
    ProcessingChangeReason.REMEDIATION_FINISHED_SUCCESSFULLY: (
        ConditionStatus.FALSE,
        ConditionStatus.TRUE,
    ),
    ProcessingChangeReason.REMEDIATION_TIMEOUT_BY_NHC: (
        ConditionStatus.FALSE,
        ConditionStatus.FALSE,
    ),
    ProcessingChangeReason.REMEDIATION_SKIPPED_NODE_NOT_FOUND: (
        ConditionStatus.FALSE,
        ConditionStatus.FALSE,
    ),
}


def is_owned_by_nhc(snr: SelfNodeRemediation) -> bool:
    """Whether a NodeHealthCheck created this remediation."""
    return any(ref.kind == "NodeHealthCheck" for ref in snr.metadata.owner_references)


class SelfNodeRemediationReconciler:
    """Reconciles remediation resources, either as the manager or as a node agent."""

    def __init__(
        self,
        cluster: InMemoryCluster,
        recorder: EventRecorder,
        *,
        reboot: Callable[[], None],
        my_node_name: str = "",
        is_agent: bool = False,
        feature_gates: Optional[FeatureGates] = None,
        time_to_assume_node_rebooted: Optional[Callable[[], dt.timedelta]] = None,
        uptime: Optional[Callable[[], dt.timedelta]] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
        reboot_requeue_after: Optional[dt.timedelta] = None,
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder
        self.my_node_name = my_node_name
        self.is_agent = is_agent
        self._feature_gates = feature_gates
        options = {
            key: value
            for key, value in {
                "time_to_assume_node_rebooted": time_to_assume_node_rebooted,
                "uptime": uptime,
                "clock": clock,
                "reboot_requeue_after": reboot_requeue_after,
            }.items()
            if value is not None
        }
        self.remediator = NodeRemediator(
            cluster,
            recorder,
            reboot=reboot,
            my_node_name=my_node_name,
            on_fencing_completed=self._mark_finished,
            **options,
        )

    @property
    def feature_gates(self) -> FeatureGates:
        return self._feature_gates if self._feature_gates is not None else features.gates

    def reconcile(self, namespace: str, name: str) -> Result:
        """Advance the named remediation one step; raises when the step failed."""
        if self.is_agent:
            if name != self.my_node_name:
                logger.info(
                    "agent pod skipping remediation because node belongs to a different agent; "
                    "agent node %s, remediated node %s",
                    self.my_node_name,
                    name,
                )
                return Result()
            logger.info("agent pod starting remediation on owned node")

        try:
            snr = self.cluster.get_remediation(namespace, name)
        except NotFoundError:
            logger.info("SNR already deleted")
            return Result()

        error: Optional[BaseException] = None
        try:
            result = self._reconcile(snr)
        except Exception as exc:
            result, error = Result(), exc

        try:
            self.cluster.update_remediation_status(snr)
        except ConflictError:
            if error is None:
                minimum = SHORT_REQUEUE
                if dt.timedelta(0) < result.requeue_after < minimum:
                    minimum = result.requeue_after
                result = replace(result, requeue_after=minimum)
        except ApiError as update_error:
            logger.error("failed to update snr status: %s", update_error)
            if error is None:
                raise
            raise ApiError(f"[{update_error}, {error}]") from error

        if error is not None:
            raise error
        return result

    def _reconcile(self, snr: SelfNodeRemediation) -> Result:
        if self.is_stopped_by_nhc(snr):
            logger.info("NHC added the timed-out annotation, remediation will be stopped")
            self.recorder.normal(
                snr, EVENT_REMEDIATION_STOPPED, "Remediation was stopped by the Node Healthcheck Operator"
            )
            self.update_conditions(ProcessingChangeReason.REMEDIATION_TIMEOUT_BY_NHC, snr)
            return Result()

        if get_phase(snr) is not RemediationPhase.FENCING_COMPLETED:
            self.update_conditions(ProcessingChangeReason.REMEDIATION_STARTED, snr)

        try:
            node = self.get_node_from_snr(snr)
        except ApiError as exc:
            if isinstance(exc, NotFoundError):
                logger.info("couldn't find node matching remediation %s", snr.metadata.name)
                self.update_conditions(ProcessingChangeReason.REMEDIATION_SKIPPED_NODE_NOT_FOUND, snr)
                self.recorder.normal(
                    snr, EVENT_GET_TARGET_NODE_FAILED, "Remediation failed to get the target node"
                )
            else:
                logger.error("failed to get node %s: %s", snr.metadata.name, exc)
            self.update_last_error(snr, exc)
            return Result()

        if node.metadata.labels.get(EXCLUDE_REMEDIATION_LABEL) == "true":
            message = "remediation skipped this node is excluded from remediation"
            logger.info("%s: %s", message, node.metadata.name)
            self.recorder.normal(snr, EVENT_REMEDIATION_SKIPPED, message)
            return Result()

        if SNR_FINALIZER not in snr.metadata.finalizers:
            message = (
                "Remediation started by SNR agent" if self.is_agent
                else "Remediation started by SNR manager"
            )
            self.recorder.normal(snr, EVENT_REMEDIATION_STARTED, message)

        strategy = self.get_runtime_strategy(snr)
        try:
            if strategy == RemediationStrategy.RESOURCE_DELETION:
                result = self._remediate(snr, node, self.remediator.delete_resources)
            elif strategy == RemediationStrategy.OUT_OF_SERVICE_TAINT:
                result = self._remediate(snr, node, self.remediator.use_out_of_service_taint)
            else:
                logger.error(
                    "Encountered unsupported remediation strategy %r. Please check template spec",
                    strategy,
                )
                result = Result()
        except Exception as exc:
            self.update_last_error(snr, exc)
            return Result()

        self.update_last_error(snr, None)
        return result

    def _remediate(
        self, snr: SelfNodeRemediation, node: Node, remove_resources: RemoveResources
    ) -> Result:
        phase = get_phase(snr)
        if phase is RemediationPhase.FENCING_STARTED:
            return self.remediator.prepare_reboot(node, snr)
        if phase is RemediationPhase.PRE_REBOOT_COMPLETED:
            return self.remediator.reboot_node(node, snr)
        if phase is RemediationPhase.REBOOT_COMPLETED:
            return self.remediator.handle_reboot_completed(node, snr, remove_resources)
        if phase is RemediationPhase.FENCING_COMPLETED:
            if snr.metadata.deletion_timestamp is not None:
                return self.remediator.recover_node(node, snr)
            return Result()
        logger.error("undefined unknown phase %s", phase.value)
        raise RemediationError("unknown phase")

    def _mark_finished(self, snr: SelfNodeRemediation) -> None:
        self.update_conditions(ProcessingChangeReason.REMEDIATION_FINISHED_SUCCESSFULLY, snr)

    def update_conditions(
        self, reason: Union[ProcessingChangeReason, str], snr: SelfNodeRemediation
    ) -> None:
        """Set the Processing and Succeeded conditions that belong to ``reason``."""
        try:
            known = ProcessingChangeReason(reason)
        except ValueError:
            logger.error("couldn't update snr processing condition")
            raise ValueError(f"unkown processingChangeReason:{reason}") from None
        processing, succeeded = _CONDITION_STATUSES[known]

        conditions = snr.status.conditions
        if is_status_condition_present_and_equal(
            conditions, PROCESSING_CONDITION_TYPE, processing
        ) and is_status_condition_present_and_equal(
            conditions, SUCCEEDED_CONDITION_TYPE, succeeded
        ):
            return

        set_status_condition(
            conditions,
            Condition(type=PROCESSING_CONDITION_TYPE, status=processing, reason=known.value),
        )
        set_status_condition(
            conditions,
            Condition(type=SUCCEEDED_CONDITION_TYPE, status=succeeded, reason=known.value),
        )

    def is_stopped_by_nhc(self, snr: Optional[SelfNodeRemediation]) -> bool:
        """Whether the health check timed out this remediation before it was deleted."""
        if snr is None or snr.metadata.deletion_timestamp is not None:
            return False
        return NHC_TIMED_OUT_ANNOTATION in snr.metadata.annotations

    def get_runtime_strategy(
        self, snr: SelfNodeRemediation
    ) -> Union[RemediationStrategy, str]:
        """The strategy to use, resolving Automatic from the cluster's capabilities."""
        strategy = snr.spec.remediation_strategy
        if strategy != RemediationStrategy.AUTOMATIC:
            return strategy
        chosen = (
            RemediationStrategy.OUT_OF_SERVICE_TAINT
            if self.feature_gates.out_of_service_taint_ga
            else RemediationStrategy.RESOURCE_DELETION
        )
        logger.info("Remediating with %s Remediation strategy (auto-selected)", chosen.value)
        return chosen

    def get_node_from_snr(self, snr: SelfNodeRemediation) -> Node:
        """The unhealthy node, found through an owning Machine or by the remediation's name."""
        if not is_owned_by_nhc(snr):
            for ref in snr.metadata.owner_references:
                if ref.kind == "Machine":
                    return self._get_node_from_machine(ref, snr.metadata.namespace)
        return self.cluster.get_node(snr.metadata.name)

    def _get_node_from_machine(self, ref: OwnerReference, namespace: str) -> Node:
        try:
            machine = self.cluster.get_machine(namespace, ref.name)
        except ApiError:
            logger.error("failed to get machine %s/%s from owner ref", namespace, ref.name)
            raise
        if machine.node_ref is None:
            logger.error("failed to retrieve node from the unhealthy machine")
            raise ApiError("nodeRef is nil")
        return self.cluster.get_node(machine.node_ref)

    def update_last_error(
        self, snr: SelfNodeRemediation, error: Optional[BaseException]
    ) -> None:
        """Record ``error`` in the status, then raise it unless retrying is pointless."""
        value = "" if error is None else str(error)
        if snr.status.last_error != value:
            snr.status.last_error = value
            try:
                self.cluster.patch_remediation_status(snr)
            except ApiError:
                logger.exception("Failed to update SelfNodeRemediation status")
                raise
        if error is None or isinstance(error, UnreconcilableError):
            return
        raise error