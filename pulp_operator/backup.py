"""
Database backup for a PulpBackup descriptor.

The backup claim and the backup-manager pod are reconciled by the engine
like any other sub-resource; the dump itself runs inside the backup-manager
container through the pod exec API.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from kubernetes.client import ApiException
from kubernetes.stream import stream

from pulp_operator.builders import Resource, backup_manager_name
from pulp_operator.cluster import ClusterClient, ResourceKind
from pulp_operator.credentials import retrieve_secret_data
from pulp_operator.engine import ReconcileOutcome, Reconciler, ResourceDefinition
from pulp_operator.errors import ExecError, OperatorError
from pulp_operator.events import NORMAL, WARNING
from pulp_operator.models import BackupDescriptor

logger = logging.getLogger("pulp_operator.backup")

BACKUP_CONDITION = "BackupComplete"
BACKUP_FILE = "pulp.db"
EXEC_TIMEOUT = 3600


class PodExecutor:
    """Runs commands inside a pod container and returns their stdout."""

    def __init__(self, cluster: ClusterClient, timeout: int = EXEC_TIMEOUT):
        self.cluster = cluster
        self.timeout = timeout

    def exec(self, pod: str, namespace: str, command: List[str], container: Optional[str] = None) -> str:
        try:
            resp = stream(
                self.cluster.core.connect_get_namespaced_pod_exec,
                pod, namespace,
                command=command, container=container,
                stderr=True, stdin=False, stdout=True, tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise ExecError(f"Failed to exec {command[0]} in {namespace}/{pod}: {e.reason}") from e
        try:
            resp.run_forever(timeout=self.timeout)
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            if resp.returncode != 0:
                raise ExecError(f"{command[0]} exited with {resp.returncode} in {namespace}/{pod}: {stderr[:500]}")
            return stdout
        finally:
            resp.close()


def postgres_configuration_secret(descriptor: BackupDescriptor) -> str:
    return (descriptor.spec.postgres_configuration_secret
            or f"{descriptor.spec.deployment_name}-postgres-configuration")


def backup_directory(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"/backups/openshift-backup-{now.strftime('%Y-%m-%d-%H%M%S')}"


def backup_database(executor: PodExecutor, cluster: ClusterClient, descriptor: BackupDescriptor,
                    pod: str, backup_dir: str, log: Optional[logging.Logger] = None):
    """Run pg_dump inside the backup-manager pod, writing to the backup claim."""
    log = log or logger
    namespace = descriptor.namespace
    backup_file = f"{backup_dir}/{BACKUP_FILE}"

    log.info("Starting database backup process ...")
    executor.exec(pod, namespace, ["touch", backup_file])
    executor.exec(pod, namespace, ["chmod", "0600", backup_file])

    pg = retrieve_secret_data(
        cluster, postgres_configuration_secret(descriptor), namespace, True,
        "username", "password", "host", "port", "database",
    )
    executor.exec(pod, namespace, [
        "pg_dump", "--clean", "--create", "-Ft",
        "-d", f"postgresql://{pg['username']}:{pg['password']}@{pg['host']}:{pg['port']}/{pg['database']}",
        "-f", backup_file,
    ])
    log.info("Database Backup finished!")


def run_backup(reconciler: Reconciler, executor: PodExecutor, backup_dir: str) -> ReconcileOutcome:
    """Ensure the backup claim and manager pod, then dump the database."""
    descriptor = reconciler.descriptor
    definitions = [
        ResourceDefinition.for_resource(r, descriptor, BACKUP_CONDITION)
        for r in (Resource.BACKUP_CLAIM, Resource.BACKUP_MANAGER)
    ]
    outcome = reconciler.run(definitions)
    if outcome.stop:
        return outcome

    pod_name = backup_manager_name(descriptor)
    try:
        pod = reconciler.cluster.get(ResourceKind.POD, pod_name, descriptor.namespace)
    except OperatorError as e:
        return ReconcileOutcome(error=e)
    phase = ((pod or {}).get("status") or {}).get("phase")
    if phase != "Running":
        reconciler.set_condition(BACKUP_CONDITION, False, "BackupManagerNotReady",
                                 f"Pod {pod_name} is {phase or 'missing'}")
        return ReconcileOutcome(requeue=True, requeue_delay=5)

    reconciler.set_condition(BACKUP_CONDITION, False, "BackupRunning", f"Backing up database to {backup_dir}")
    try:
        executor.exec(pod_name, descriptor.namespace, ["mkdir", "-p", backup_dir])
        backup_database(executor, reconciler.cluster, descriptor, pod_name, backup_dir, reconciler.log)
    except OperatorError as e:
        reconciler.log.error(f"Database backup failed: {e}")
        reconciler.set_condition(BACKUP_CONDITION, False, "BackupFailed", str(e)[:200])
        reconciler.recorder.event(descriptor.object_reference(), WARNING, "Failed", "Database backup failed")
        return ReconcileOutcome(error=e)

    reconciler.set_condition(BACKUP_CONDITION, True, "BackupFinished", f"Backup stored in {backup_dir}")
    reconciler.recorder.event(descriptor.object_reference(), NORMAL, "BackupFinished",
                              f"Database backup stored in {backup_dir}")
    return ReconcileOutcome()
