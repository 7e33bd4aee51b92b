# noderemedy

`noderemedy` models self node remediation for a cluster. When a node is
found unhealthy, a remediation resource is created for it. The reconciler
then fences the node, waits until the node can be assumed to have
rebooted, removes its workloads, and finally makes it schedulable again.

The package is a library with no dependencies outside the standard
library. It installs no command-line tool.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Resources and validation

- `noderemedy.remediation`: `SelfNodeRemediation` with its spec
  (`SelfNodeRemediationSpec`), its status (`SelfNodeRemediationStatus`) and
  the `RemediationStrategy` values `Automatic`, `ResourceDeletion` and
  `OutOfServiceTaint`. `validate_strategy(spec)` checks a spec on its own:
  the out-of-service strategy is rejected unless the cluster supports it.
- `noderemedy.template`: `SelfNodeRemediationTemplate`.
  `new_remediation_templates()` returns the default template, named
  `self-node-remediation-automatic-strategy-template` and using the
  automatic strategy.
- `noderemedy.config`: `SelfNodeRemediationConfig` and
  `SelfNodeRemediationConfigSpec`. Validation rejects timeouts and
  intervals below their minimums (`validate_times()`) and malformed custom
  tolerations (`validate_custom_tolerations()`, `validate_toleration()`).
  `new_default_config()` returns the default configuration.
- `noderemedy.features`: `FeatureGates` records whether the out-of-service
  taint is supported and whether it is generally available. The
  module-level `gates` instance is the one validation consults;
  `gates.override(...)` changes flags for the length of a `with` block.
- `noderemedy.meta`: object metadata, taints, tolerations, status
  conditions, `format_duration()`, `aggregate_errors()` and
  `ValidationError`.
- `noderemedy.health`: `HealthCheckResponseCode`, the possible outcomes of
  a peer health check.

Each resource has `validate_create()`, `validate_update(old)` and
`validate_delete()`. When a resource is invalid, the first two raise
`noderemedy.meta.ValidationError`; deletion is always admitted.

```python
from noderemedy.remediation import (
    RemediationStrategy,
    SelfNodeRemediation,
    SelfNodeRemediationSpec,
)

snr = SelfNodeRemediation(
    spec=SelfNodeRemediationSpec(
        remediation_strategy=RemediationStrategy.RESOURCE_DELETION,
    ),
)
snr.validate_create()
```

## Remediation flow

`noderemedy.reconciler.SelfNodeRemediationReconciler` moves a remediation
through these phases, in order:

1. `Fencing-Started`: add a finalizer, the NoExecute taint, and mark the
   node unschedulable; set the time by which the node is assumed rebooted.
2. `Pre-Reboot-Completed`: an agent on the node itself calls the `reboot`
   callable it was given; elsewhere, wait until the assumed reboot time.
3. `Reboot-Completed`: remove the node's workloads, either by deleting its
   pods and volume attachments (`ResourceDeletion`) or by adding the
   out-of-service taint and waiting for them to go (`OutOfServiceTaint`).
   `Automatic` picks the out-of-service taint when the feature gate says
   it is generally available.
4. `Fencing-Completed`: once the remediation is being deleted, make the
   node schedulable, remove the NoExecute taint and the finalizer.

Along the way the reconciler sets the `Processing` and `Succeeded`
conditions, records the last error in the status, and emits events to an
`EventRecorder`.

The individual steps live in `noderemedy.remediator.NodeRemediator`. A node
counts as able to reboot itself only if an agent pod runs on it and it
carries the annotation `is-reboot-capable.self-node-remediation.medik8s.io`
set to `"true"`.

`reconcile(namespace, name)` advances one step and returns a `Result`
(`requeue`, `requeue_after`); call it again when the result asks for a
requeue. It raises when a step failed.

```python
from noderemedy.cluster import EventRecorder, InMemoryCluster
from noderemedy.reconciler import SelfNodeRemediationReconciler

cluster = InMemoryCluster(nodes=[...], pods=[...], remediations=[...])
reconciler = SelfNodeRemediationReconciler(
    cluster, EventRecorder(), reboot=lambda: None
)
result = reconciler.reconcile("default", "worker-1")
```

The clock, the host uptime, the time to assume a node rebooted and the
requeue delay after a reboot can all be passed to the reconciler.

## Storage

`noderemedy.cluster.InMemoryCluster` holds nodes, pods, volume attachments,
machines and remediations in memory. Reads return copies. Updates are
checked against the stored resource version and raise `ConflictError` on a
mismatch; missing objects raise `NotFoundError`, and creating a node that
exists raises `AlreadyExistsError`.

## What it does not do

- It does not talk to a real cluster: all objects live in
  `InMemoryCluster`.
- It does not reboot anything itself; rebooting is whatever callable is
  passed as `reboot`. By default the host uptime is read from
  `/proc/uptime`.
- It does not run peer health checks or a watchdog, and nothing acts on a
  `SelfNodeRemediationConfig` beyond validating it.
- It has no command-line interface or long-running service.