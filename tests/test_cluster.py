import datetime as dt

import pytest

from noderemedy.cluster import (
    AGENT_POD_LABELS,
    AlreadyExistsError,
    ApiError,
    ConflictError,
    EventRecorder,
    InMemoryCluster,
    Machine,
    Node,
    NotFoundError,
    Pod,
    VolumeAttachment,
)
from noderemedy.meta import ObjectMeta, Taint
from noderemedy.remediation import SelfNodeRemediation


def _node(name="worker-1"):
    return Node(metadata=ObjectMeta(name=name))


def _snr(name="worker-1"):
    return SelfNodeRemediation(metadata=ObjectMeta(name=name, namespace="default"))


def test_get_node_returns_independent_copy():
    cluster = InMemoryCluster(nodes=[_node()])
    node = cluster.get_node("worker-1")
    node.unschedulable = True
    assert cluster.get_node("worker-1").unschedulable is False


def test_missing_node_is_not_found():
    cluster = InMemoryCluster()
    with pytest.raises(NotFoundError):
        cluster.get_node("worker-1")
    with pytest.raises(ApiError):
        cluster.update_node(_node())


def test_update_node_with_stale_version_conflicts():
    cluster = InMemoryCluster(nodes=[_node()])
    first = cluster.get_node("worker-1")
    second = cluster.get_node("worker-1")
    first.unschedulable = True
    cluster.update_node(first)
    second.taints.append(Taint(key="k", effect="NoSchedule"))
    with pytest.raises(ConflictError):
        cluster.update_node(second)
    assert cluster.get_node("worker-1").taints == []


def test_update_node_refreshes_caller_version():
    cluster = InMemoryCluster(nodes=[_node()])
    node = cluster.get_node("worker-1")
    cluster.update_node(node)
    assert node.metadata.resource_version == cluster.get_node("worker-1").metadata.resource_version
    node.unschedulable = True
    cluster.update_node(node)
    assert cluster.get_node("worker-1").unschedulable is True


def test_patch_node_ignores_version():
    cluster = InMemoryCluster(nodes=[_node()])
    node = cluster.get_node("worker-1")
    node.metadata.resource_version = "stale"
    node.taints.append(Taint(key="k", effect="NoExecute"))
    cluster.patch_node(node)
    assert [t.key for t in cluster.get_node("worker-1").taints] == ["k"]


def test_create_node_errors_and_success():
    cluster = InMemoryCluster(nodes=[_node()])
    with pytest.raises(AlreadyExistsError):
        cluster.create_node(_node())
    versioned = Node(metadata=ObjectMeta(name="worker-2", resource_version="7"))
    with pytest.raises(ApiError):
        cluster.create_node(versioned)
    cluster.create_node(_node("worker-2"))
    assert cluster.get_node("worker-2").metadata.name == "worker-2"


def test_delete_pods_on_node_only_touches_that_node():
    cluster = InMemoryCluster(
        pods=[
            Pod(metadata=ObjectMeta(name="a"), node_name="worker-1"),
            Pod(metadata=ObjectMeta(name="b"), node_name="worker-2"),
        ],
        volume_attachments=[
            VolumeAttachment(metadata=ObjectMeta(name="va-1"), node_name="worker-1"),
            VolumeAttachment(metadata=ObjectMeta(name="va-2"), node_name="worker-2"),
        ],
    )
    assert cluster.delete_pods_on_node("worker-1") == 2
    assert [p.metadata.name for p in cluster.list_pods()] == ["b"]
    assert [va.metadata.name for va in cluster.list_volume_attachments()] == ["va-2"]


def test_find_agent_pod():
    cluster = InMemoryCluster(
        pods=[
            Pod(metadata=ObjectMeta(name="plain"), node_name="worker-1"),
            Pod(metadata=ObjectMeta(name="agent", labels=dict(AGENT_POD_LABELS)), node_name="worker-1"),
        ]
    )
    assert cluster.find_agent_pod("worker-1").metadata.name == "agent"
    with pytest.raises(NotFoundError):
        cluster.find_agent_pod("worker-2")


def test_get_machine():
    machine = Machine(metadata=ObjectMeta(name="m-1", namespace="machines"), node_ref="worker-1")
    cluster = InMemoryCluster(machines=[machine])
    assert cluster.get_machine("machines", "m-1").node_ref == "worker-1"
    with pytest.raises(NotFoundError):
        cluster.get_machine("default", "m-1")


def test_update_remediation_keeps_stored_status():
    cluster = InMemoryCluster(remediations=[_snr()])
    snr = cluster.get_remediation("default", "worker-1")
    snr.status.last_error = "boom"
    snr.metadata.finalizers.append("f")
    cluster.update_remediation(snr)
    stored = cluster.get_remediation("default", "worker-1")
    assert stored.metadata.finalizers == ["f"]
    assert stored.status.last_error == ""


def test_update_remediation_removes_deleted_object_without_finalizers():
    snr = _snr()
    snr.metadata.deletion_timestamp = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    cluster = InMemoryCluster(remediations=[snr])
    cluster.update_remediation(snr)
    with pytest.raises(NotFoundError):
        cluster.get_remediation("default", "worker-1")


def test_status_update_checks_version_and_patch_does_not():
    cluster = InMemoryCluster(remediations=[_snr()])
    stale = cluster.get_remediation("default", "worker-1")
    fresh = cluster.get_remediation("default", "worker-1")
    fresh.status.phase = "Pre-Reboot-Completed"
    cluster.update_remediation_status(fresh)
    stale.status.last_error = "late"
    with pytest.raises(ConflictError):
        cluster.update_remediation_status(stale)
    cluster.patch_remediation_status(stale)
    stored = cluster.get_remediation("default", "worker-1")
    assert stored.status.last_error == "late"
    assert stale.metadata.resource_version == stored.metadata.resource_version


def test_recorder_records_kind_and_reason():
    recorder = EventRecorder()
    recorder.normal(_node(), "MarkUnschedulable", "marked")
    recorder.normal(_snr(), "AddFinalizer", "added")
    assert [(e.kind, e.reason, e.type) for e in recorder.events] == [
        ("Node", "MarkUnschedulable", "Normal"),
        ("SelfNodeRemediation", "AddFinalizer", "Normal"),
    ]
    assert recorder.events[1].namespace == "default"