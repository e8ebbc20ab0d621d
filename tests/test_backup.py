from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from pulp_operator.backup import BACKUP_CONDITION, backup_database, backup_directory, run_backup
from pulp_operator.cluster import ResourceKind
from pulp_operator.errors import ExecError, MissingCredentialData
from pulp_operator.events import NORMAL, WARNING
from pulp_operator.models import BackupDescriptor

from tests.conftest import secret_body

BACKUP_DIR = "/backups/openshift-backup-2024-01-01-000000"


@pytest.fixture
def backup():
    return BackupDescriptor(name="nightly", namespace="pulp", uid="uid-2")


@pytest.fixture
def backup_cluster(cluster):
    cluster.put(ResourceKind.SECRET, secret_body(
        "pulp-postgres-configuration", "pulp",
        username="pulp", password="pw", host="pulp-database-svc", port="5432", database="pulp",
    ))
    return cluster


def run_until_pod(backup_cluster, make_reconciler, backup, executor):
    """Create the claim and the manager pod, then mark the pod running."""
    for _ in range(2):
        assert run_backup(make_reconciler(backup), executor, BACKUP_DIR).requeue
    pod = backup_cluster.stored(ResourceKind.POD, "nightly-backup-manager", "pulp")
    pod["status"] = {"phase": "Running"}


class TestBackup:
    def test_backup_directory(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert backup_directory(now) == BACKUP_DIR

    def test_waits_for_manager_pod(self, backup_cluster, make_reconciler, backup):
        executor = MagicMock()
        for _ in range(2):
            run_backup(make_reconciler(backup), executor, BACKUP_DIR)

        outcome = run_backup(make_reconciler(backup), executor, BACKUP_DIR)

        assert outcome.requeue
        assert backup_cluster.last_conditions()[BACKUP_CONDITION]["reason"] == "BackupManagerNotReady"
        executor.exec.assert_not_called()

    def test_dump_commands(self, backup_cluster, recorder, make_reconciler, backup):
        executor = MagicMock()
        run_until_pod(backup_cluster, make_reconciler, backup, executor)

        outcome = run_backup(make_reconciler(backup), executor, BACKUP_DIR)

        assert not outcome.stop
        commands = [c.args[2] for c in executor.exec.call_args_list]
        assert commands[0] == ["mkdir", "-p", BACKUP_DIR]
        assert commands[1] == ["touch", f"{BACKUP_DIR}/pulp.db"]
        assert commands[2] == ["chmod", "0600", f"{BACKUP_DIR}/pulp.db"]
        assert commands[3] == [
            "pg_dump", "--clean", "--create", "-Ft",
            "-d", "postgresql://pulp:pw@pulp-database-svc:5432/pulp",
            "-f", f"{BACKUP_DIR}/pulp.db",
        ]
        assert backup_cluster.last_conditions()[BACKUP_CONDITION]["status"] == "True"
        assert recorder.events[-1][:2] == (NORMAL, "BackupFinished")

    def test_exec_failure(self, backup_cluster, recorder, make_reconciler, backup):
        executor = MagicMock()
        run_until_pod(backup_cluster, make_reconciler, backup, executor)
        executor.exec.side_effect = ExecError("pg_dump exited with 1")

        outcome = run_backup(make_reconciler(backup), executor, BACKUP_DIR)

        assert isinstance(outcome.error, ExecError)
        condition = backup_cluster.last_conditions()[BACKUP_CONDITION]
        assert condition["reason"] == "BackupFailed"
        assert recorder.events[-1][:2] == (WARNING, "Failed")

    def test_missing_database_credentials(self, cluster, backup):
        executor = MagicMock()
        with pytest.raises(MissingCredentialData):
            backup_database(executor, cluster, backup, "nightly-backup-manager", BACKUP_DIR)
