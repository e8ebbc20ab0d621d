"""
Declarative reconciliation engine.

One pass walks an ordered list of ResourceDefinitions. For each definition
the existence check runs first (create on first sight, then requeue), then,
for resources whose live state is kept converged, the drift check compares
a freshly built object against the live one and updates it when it diverged.

The first step that asks for a requeue or reports an error ends the pass;
the caller re-runs the whole pass later. Nothing is carried in memory from
one pass to the next: the cluster is the only state.
"""
import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from pulp_operator import metrics
from pulp_operator.builders import (
    CONFIG_VERSION_ANNOTATION,
    BuildContext,
    Resource,
    component_labels,
    encode_secret,
)
from pulp_operator.cluster import ClusterClient, ResourceKind
from pulp_operator.conditions import ConditionTracker
from pulp_operator.config import settings
from pulp_operator.errors import OperatorError
from pulp_operator.events import NORMAL, WARNING, EventRecorder
from pulp_operator.models import Descriptor

logger = logging.getLogger("pulp_operator.engine")

# Resources holding runtime configuration mounted by several workloads.
# A change to one of them restarts the pods of every listed consumer.
SHARED_CONFIG_CONSUMERS = {
    Resource.SERVER_SECRET: (Resource.API_DEPLOYMENT, Resource.CONTENT_DEPLOYMENT),
}
CONSUMERS = frozenset(c for consumers in SHARED_CONFIG_CONSUMERS.values() for c in consumers)


@dataclass(frozen=True)
class ResourceDefinition:
    resource: Resource
    name: str
    namespace: str
    alias: str
    condition_type: str
    descriptor: Descriptor

    @classmethod
    def for_resource(cls, resource: Resource, descriptor: Descriptor,
                     condition_type: str) -> "ResourceDefinition":
        return cls(
            resource=resource,
            name=resource.name_for(descriptor),
            namespace=descriptor.namespace,
            alias=resource.alias,
            condition_type=condition_type,
            descriptor=descriptor,
        )

    @property
    def kind(self) -> ResourceKind:
        return self.resource.kind

    def reason(self, action: str) -> str:
        return f"{action}{self.alias}{self.kind.kind}"


@dataclass(frozen=True)
class ReconcileOutcome:
    requeue: bool = False
    requeue_delay: Optional[float] = None
    error: Optional[Exception] = None

    @property
    def stop(self) -> bool:
        """True when the remaining steps of the pass must be skipped."""
        return self.requeue or self.error is not None


# ---------------------------------------------------------------------------
# Semantic comparison
# ---------------------------------------------------------------------------

# Alternatives of a one-of field group, e.g. the source of a pod volume.
# Setting one member, even to an empty object, selects it over the others.
ONE_OF_FIELDS = (
    frozenset({"emptyDir", "persistentVolumeClaim", "secret", "configMap",
               "hostPath", "projected", "downwardAPI", "nfs"}),
)


def _unset(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def _one_of_group(key: str):
    for group in ONE_OF_FIELDS:
        if key in group:
            return group
    return None


def _one_of_mismatch(key: str, value: Any, observed: Dict[str, Any]) -> bool:
    """True when ``key`` selects a one-of alternative that ``observed`` does not use."""
    group = _one_of_group(key)
    if group is None or value is None:
        return False
    if observed.get(key) is None:
        return True
    return any(observed.get(other) is not None for other in group - {key})


def is_semantic_subset(expected: Any, observed: Any) -> bool:
    """
    True when every field set in ``expected`` has the same value in ``observed``.

    Unset fields in ``expected`` (None, empty string, empty list or mapping)
    are ignored, so fields defaulted by the API server never count as drift.
    Members of ONE_OF_FIELDS are the exception: an empty object there still
    selects an alternative. Lists are compared element by element over the
    length of ``expected``.
    """
    if _unset(expected):
        return True
    if isinstance(expected, dict):
        if not isinstance(observed, dict):
            return False
        return all(
            not _one_of_mismatch(k, v, observed) and is_semantic_subset(v, observed.get(k))
            for k, v in expected.items()
        )
    if isinstance(expected, list):
        if not isinstance(observed, list) or len(expected) > len(observed):
            return False
        return all(is_semantic_subset(e, o) for e, o in zip(expected, observed))
    return expected == observed


def drifted_fields(expected: Any, observed: Any, path: str = "") -> List[str]:
    """Dotted paths of the fields of ``expected`` that ``observed`` does not match."""
    if _unset(expected):
        return []
    if isinstance(expected, dict) and isinstance(observed, dict):
        fields = []
        for k, v in expected.items():
            field = f"{path}.{k}" if path else k
            if _one_of_mismatch(k, v, observed):
                fields.append(field)
            else:
                fields += drifted_fields(v, observed.get(k), field)
        return fields
    if is_semantic_subset(expected, observed):
        return []
    return [path or "."]


def overlay(observed: Any, expected: Any) -> Any:
    """Fields set in ``expected`` written over a copy of ``observed``."""
    if _unset(expected):
        return copy.deepcopy(observed)
    if isinstance(expected, dict) and isinstance(observed, dict):
        merged = copy.deepcopy(observed)
        for k, v in expected.items():
            group = _one_of_group(k)
            if group is not None and v is not None:
                for other in group - {k}:
                    merged.pop(other, None)
                if _unset(v) and not isinstance(observed.get(k), dict):
                    merged[k] = copy.deepcopy(v)
                    continue
            merged[k] = overlay(observed.get(k), v)
        return merged
    if isinstance(expected, list) and isinstance(observed, list):
        return [overlay(observed[i] if i < len(observed) else None, e) for i, e in enumerate(expected)]
    return copy.deepcopy(expected)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class Reconciler:
    """
    Reconciles the sub-resources of one descriptor.

    Built fresh for every pass with its dependencies injected: the cluster
    client, the event recorder and the logger of the calling handler.
    """

    def __init__(self, cluster: ClusterClient, recorder: EventRecorder,
                 descriptor: Descriptor, log: Optional[logging.Logger] = None):
        self.cluster = cluster
        self.recorder = recorder
        self.descriptor = descriptor
        self.log = log or logger
        self.tracker = ConditionTracker(cluster, descriptor, self.log)

    # -- helpers -----------------------------------------------------------

    def definition(self, resource: Resource, condition_type: str) -> ResourceDefinition:
        return ResourceDefinition.for_resource(resource, self.descriptor, condition_type)

    def set_condition(self, ctype: str, status: bool, reason: str, message: str) -> bool:
        return self.tracker.set_condition(ctype, status, reason, message)

    def _event(self, severity: str, reason: str, message: str):
        self.recorder.event(self.descriptor.object_reference(), severity, reason, message)

    def build(self, definition: ResourceDefinition,
              builder: Optional[Callable[[BuildContext], Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Desired object with the owner reference attached, secrets in data form."""
        ctx = BuildContext(descriptor=definition.descriptor, cluster=self.cluster, log=self.log)
        obj = (builder or definition.resource.build)(ctx)
        obj = encode_secret(obj)
        obj.setdefault("metadata", {})["ownerReferences"] = [definition.descriptor.owner_reference()]
        return obj

    # -- existence ---------------------------------------------------------

    def ensure(self, definition: ResourceDefinition,
               builder: Optional[Callable[[BuildContext], Dict[str, Any]]] = None) -> ReconcileOutcome:
        """Create the sub-resource if it does not exist yet."""
        kind = definition.kind.kind
        try:
            found = self.cluster.get(definition.kind, definition.name, definition.namespace)
        except OperatorError as e:
            self.log.error(f"Failed to get {kind} {definition.name}: {e}")
            metrics.RECONCILE_ERRORS.labels(kind=kind).inc()
            return ReconcileOutcome(error=e)
        if found is not None:
            return ReconcileOutcome()

        try:
            obj = self.build(definition, builder)
        except OperatorError as e:
            self.log.error(f"Failed to build {kind} {definition.name}: {e}")
            metrics.RECONCILE_ERRORS.labels(kind=kind).inc()
            return ReconcileOutcome(error=e)

        self.log.info(f"Creating a new {definition.alias} {kind} {definition.namespace}/{definition.name}")
        self.set_condition(definition.condition_type, False, definition.reason("Creating"),
                           f"Creating {definition.name} {kind}")
        try:
            self.cluster.create(definition.kind, obj)
        except OperatorError as e:
            self.log.error(f"Failed to create {kind} {definition.name}: {e}")
            self.set_condition(definition.condition_type, False, definition.reason("ErrorCreating"),
                               f"Failed to create {definition.name} {kind}: {e}")
            self._event(WARNING, "Failed", f"Failed to create {definition.name} {kind}")
            metrics.RECONCILE_ERRORS.labels(kind=kind).inc()
            return ReconcileOutcome(error=e)

        self._event(NORMAL, "Created", f"{definition.name} {kind} created")
        metrics.RESOURCES_CREATED.labels(kind=kind).inc()
        return ReconcileOutcome(requeue=True)

    # -- drift -------------------------------------------------------------

    def reconcile(self, definition: ResourceDefinition, expected: Dict[str, Any],
                  observed: Dict[str, Any]) -> ReconcileOutcome:
        """Update ``observed`` when it no longer matches ``expected``."""
        if is_semantic_subset(expected, observed):
            return ReconcileOutcome()

        kind = definition.kind.kind
        fields = drifted_fields(expected, observed)
        self.log.info(f"The {definition.name} {kind} has been modified ({', '.join(fields)})! Reconciling ...")
        self.set_condition(definition.condition_type, False, definition.reason("Updating"),
                           f"Reconciling {definition.name} {kind} resource")
        self._event(NORMAL, "Updating", f"Reconciling {definition.name} {kind}")

        desired = overlay(observed, expected)
        # Stale tokens are rejected by the API server instead of overwriting a concurrent change.
        desired["metadata"]["resourceVersion"] = observed.get("metadata", {}).get("resourceVersion")
        try:
            self.cluster.update(definition.kind, desired)
        except OperatorError as e:
            self.log.error(f"Error trying to update the {definition.name} {kind}: {e}")
            self.set_condition(definition.condition_type, False, definition.reason("ErrorUpdating"),
                               f"Failed to reconcile {definition.name} {kind} resource: {e}")
            self._event(WARNING, "Failed", f"Failed to reconcile {definition.name} {kind}")
            metrics.RECONCILE_ERRORS.labels(kind=kind).inc()
            return ReconcileOutcome(error=e)

        self._event(NORMAL, "Updated", f"{definition.name} {kind} reconciled")
        metrics.RESOURCES_UPDATED.labels(kind=kind).inc()
        if definition.resource in SHARED_CONFIG_CONSUMERS:
            self.on_shared_config_changed(definition.resource)
        return ReconcileOutcome(requeue=True, requeue_delay=settings.REQUEUE_DELAY)

    def check_drift(self, definition: ResourceDefinition) -> ReconcileOutcome:
        kind = definition.kind.kind
        try:
            observed = self.cluster.get(definition.kind, definition.name, definition.namespace)
            if observed is None:
                # Deleted since the existence check; the next pass recreates it.
                return ReconcileOutcome(requeue=True)
            expected = self.build(definition)
        except OperatorError as e:
            self.log.error(f"Failed to check {kind} {definition.name} for drift: {e}")
            metrics.RECONCILE_ERRORS.labels(kind=kind).inc()
            return ReconcileOutcome(error=e)
        return self.reconcile(definition, expected, observed)

    # -- cascading restart -------------------------------------------------
    #
    # Consumers record the version of the shared configuration their pods
    # were started with (CONFIG_VERSION_ANNOTATION, stamped by the builder).
    # A mismatch persists in the cluster until the pods are restarted, so a
    # restart that fails is retried by every later pass.

    def _consumer_definition(self, consumer: Resource) -> ResourceDefinition:
        return self.definition(consumer, "")

    def _restart_pods(self, consumer: Resource, workload: Dict[str, Any], reason: str):
        name = workload["metadata"]["name"]
        selector = (workload.get("spec", {}).get("selector", {}).get("matchLabels")
                    or component_labels(self.descriptor, consumer.alias.lower()))
        self.log.info(f"Reprovisioning {name} pods to get the new settings ...")
        self.cluster.delete_pods(self.descriptor.namespace, selector)
        metrics.POD_RESTARTS.labels(workload=name).inc()
        self._event(NORMAL, "Restarted", f"{name} pods restarted to pick up {reason}")

    def _record_config_version(self, consumer: Resource):
        definition = self._consumer_definition(consumer)
        expected = self.build(definition)
        version = (expected["metadata"].get("annotations") or {}).get(CONFIG_VERSION_ANNOTATION)
        body = self.cluster.get(consumer.kind, definition.name, definition.namespace)
        if not version or body is None:
            return
        body["metadata"].setdefault("annotations", {})[CONFIG_VERSION_ANNOTATION] = version
        self.cluster.update(consumer.kind, body)

    def on_shared_config_changed(self, changed: Resource) -> List[str]:
        """
        Restart the pods of every workload consuming ``changed``.

        Best effort: a workload that is missing or whose pods cannot be
        deleted is logged and skipped; its stale configuration version makes
        restart_if_stale retry it on a later pass. Returns the restarted
        workload names.
        """
        restarted = []
        namespace = self.descriptor.namespace
        for consumer in SHARED_CONFIG_CONSUMERS.get(changed, ()):
            name = consumer.name_for(self.descriptor)
            try:
                workload = self.cluster.get(consumer.kind, name, namespace)
                if workload is None:
                    self.log.info(f"{consumer.kind.kind} {name} not found, nothing to restart")
                    continue
                self._restart_pods(consumer, workload, f"new {changed.alias} configuration")
            except OperatorError as e:
                self.log.warning(f"Could not restart {name} pods (will retry on a later pass): {e}")
                continue
            restarted.append(name)
            try:
                self._record_config_version(consumer)
            except OperatorError as e:
                self.log.warning(f"Could not record configuration version on {name}: {e}")
        return restarted

    def restart_if_stale(self, definition: ResourceDefinition) -> ReconcileOutcome:
        """
        Restart a consumer whose pods run an older shared configuration.

        The drift check that follows stamps the current version on the
        workload once the pods are gone.
        """
        kind = definition.kind.kind
        try:
            observed = self.cluster.get(definition.kind, definition.name, definition.namespace)
            if observed is None:
                return ReconcileOutcome()
            expected = self.build(definition)
        except OperatorError as e:
            self.log.error(f"Failed to check {kind} {definition.name} configuration version: {e}")
            metrics.RECONCILE_ERRORS.labels(kind=kind).inc()
            return ReconcileOutcome(error=e)

        wanted = (expected["metadata"].get("annotations") or {}).get(CONFIG_VERSION_ANNOTATION)
        running = (observed["metadata"].get("annotations") or {}).get(CONFIG_VERSION_ANNOTATION)
        if not wanted or wanted == running:
            return ReconcileOutcome()

        self.log.info(f"{definition.name} pods run configuration version {running}, current is {wanted}")
        try:
            self._restart_pods(definition.resource, observed, "the current configuration")
        except OperatorError as e:
            self.log.error(f"Failed to restart {definition.name} pods: {e}")
            self._event(WARNING, "Failed", f"Failed to restart {definition.name} pods")
            metrics.RECONCILE_ERRORS.labels(kind=kind).inc()
            return ReconcileOutcome(error=e)
        return ReconcileOutcome()

    # -- pass --------------------------------------------------------------

    def run(self, definitions: Sequence[ResourceDefinition]) -> ReconcileOutcome:
        """Run the existence and drift checks of every definition, in order."""
        for definition in definitions:
            outcome = self.ensure(definition)
            if outcome.stop:
                return outcome
            if not definition.resource.drift:
                continue
            if definition.resource in CONSUMERS:
                outcome = self.restart_if_stale(definition)
                if outcome.stop:
                    return outcome
            outcome = self.check_drift(definition)
            if outcome.stop:
                return outcome
        return ReconcileOutcome()
