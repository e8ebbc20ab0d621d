"""
Pulp Operator: kopf handlers wiring the reconciliation engine to the cluster.

Reconcile loop (per Pulp CR):
  1. Record defaulted secret names in the CR spec
  2. API pass: file storage PVC (storage class backend only), server secret,
     generated secrets, API deployment and service
  3. Content pass: content deployment and service
  4. Conditions <Type>-API-Ready / <Type>-Content-Ready → True

  Every step is idempotent. A step that creates or updates something asks
  for a requeue: the handler raises kopf.TemporaryError and kopf re-runs the
  whole pass after the delay. Lookup/apply failures are retried the same way.

  Drift: a timer re-runs the pass periodically, so live changes to managed
  resources are repaired even when the CR itself does not change.

  Deletion: every sub-resource carries an owner reference to the CR, the
  cluster's garbage collector removes them with it. The Redis event
  stream is removed by a delete handler that holds no finalizer.

Run with:  kopf run -m pulp_operator.handlers
"""

import logging
from typing import Any, Dict

import kopf

from pulp_operator import config, metrics
from pulp_operator.backup import PodExecutor, backup_directory, run_backup
from pulp_operator.cluster import ClusterClient, ensure_k8s
from pulp_operator.config import settings
from pulp_operator.controllers import reconcile_pulp
from pulp_operator.engine import ReconcileOutcome, Reconciler
from pulp_operator.events import KopfEventRecorder, delete_event_stream
from pulp_operator.models import BackupDescriptor, Descriptor

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pulp-operator")


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    settings.posting.enabled = True
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix="repo-manager.pulpproject.org"
    )
    # Concurrency control: distinct descriptors reconciled in parallel
    settings.execution.max_workers = config.settings.MAX_WORKERS
    ensure_k8s()
    metrics.start_metrics_server(config.settings.METRICS_PORT)
    logger.info(
        f"Pulp Operator started (max_workers={config.settings.MAX_WORKERS}, "
        f"requeue_delay={config.settings.REQUEUE_DELAY}s, interval={config.settings.RECONCILE_INTERVAL}s)"
    )


def _reconciler(descriptor: Descriptor, log) -> Reconciler:
    return Reconciler(ClusterClient(), KopfEventRecorder(), descriptor, log)


def raise_for_outcome(outcome: ReconcileOutcome, name: str):
    """Translate a pass outcome into kopf's retry semantics."""
    if outcome.error is not None:
        raise kopf.TemporaryError(f"{name}: {outcome.error}", delay=settings.ERROR_DELAY)
    if outcome.requeue:
        raise kopf.TemporaryError(
            f"{name}: reconciliation in progress",
            delay=outcome.requeue_delay or settings.REQUEUE_DELAY,
        )


# ---------------------------------------------------------------------------
# CREATE / RESUME / UPDATE handler: the reconciliation pass
# ---------------------------------------------------------------------------

@kopf.on.create(settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL)
@kopf.on.resume(settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL)
@kopf.on.update(settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL, field="spec")
def reconcile_pulp_handler(body: Dict[str, Any], name: str, logger, **kwargs):
    """
    Reconcile a Pulp CR to its desired state.

    Idempotent and stateless: each invocation re-reads the cluster and picks
    up where the previous pass stopped.
    """
    descriptor = Descriptor.from_body(body, plural=settings.CRD_PLURAL)
    outcome = reconcile_pulp(_reconciler(descriptor, logger))
    raise_for_outcome(outcome, name)
    logger.info(f"Pulp {name} reconciled")
    return {"message": "reconciled"}


# ---------------------------------------------------------------------------
# TIMER: periodic pass for drift detection & self-healing
# ---------------------------------------------------------------------------

@kopf.timer(settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL,
            interval=settings.RECONCILE_INTERVAL, idle=settings.RECONCILE_INTERVAL)
def drift_timer(body: Dict[str, Any], name: str, logger, **kwargs):
    descriptor = Descriptor.from_body(body, plural=settings.CRD_PLURAL)
    outcome = reconcile_pulp(_reconciler(descriptor, logger))
    raise_for_outcome(outcome, name)


# ---------------------------------------------------------------------------
# BACKUP: PulpBackup CR
# ---------------------------------------------------------------------------

@kopf.on.create(settings.CRD_GROUP, settings.CRD_VERSION, settings.BACKUP_PLURAL)
def backup_handler(body: Dict[str, Any], name: str, patch, logger, **kwargs):
    """Dump the database of the referenced Pulp deployment into the backup claim."""
    descriptor = BackupDescriptor.from_body(body, plural=settings.BACKUP_PLURAL)
    reconciler = _reconciler(descriptor, logger)
    backup_dir = backup_directory()
    outcome = run_backup(reconciler, PodExecutor(reconciler.cluster), backup_dir)
    raise_for_outcome(outcome, name)
    patch.status["backupDirectory"] = backup_dir
    return {"backupDirectory": backup_dir}


# ---------------------------------------------------------------------------
# DELETE: sub-resources go with the owner reference, only the event stream is ours
# ---------------------------------------------------------------------------

@kopf.on.delete(settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL, optional=True)
def cleanup_pulp_handler(name: str, namespace: str, logger, **kwargs):
    delete_event_stream(namespace, name)
    logger.info(f"Pulp {name} event stream removed")
