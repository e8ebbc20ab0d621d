import base64

import pytest

from pulp_operator.builders import CONFIG_VERSION_ANNOTATION, Resource, component_labels
from pulp_operator.cluster import ResourceKind
from pulp_operator.config import settings
from pulp_operator.controllers import reconcile_pulp
from pulp_operator.engine import (
    ResourceDefinition,
    drifted_fields,
    is_semantic_subset,
    overlay,
)
from pulp_operator.errors import ApplyFailure, LookupFailure
from pulp_operator.events import NORMAL, WARNING
from pulp_operator.models import Descriptor


def converge(make_reconciler, descriptor, max_passes=20):
    """Run passes until one finishes without requeue; returns the number of passes."""
    for n in range(1, max_passes + 1):
        outcome = reconcile_pulp(make_reconciler(descriptor))
        assert outcome.error is None
        if not outcome.stop:
            return n
    pytest.fail("reconciliation did not converge")


class TestSemanticSubset:
    def test_unset_expected_fields_are_ignored(self):
        expected = {"spec": {"replicas": 1, "strategy": None, "selector": {}, "name": ""}}
        observed = {"spec": {"replicas": 1, "strategy": {"type": "RollingUpdate"}}}
        assert is_semantic_subset(expected, observed)

    def test_value_mismatch(self):
        assert not is_semantic_subset({"spec": {"replicas": 1}}, {"spec": {"replicas": 2}})

    def test_lists_compare_over_expected_length(self):
        assert is_semantic_subset([{"a": 1}], [{"a": 1, "b": 2}, {"c": 3}])
        assert not is_semantic_subset([{"a": 1}, {"a": 2}], [{"a": 1}])

    def test_drifted_fields_lists_paths(self):
        expected = {"spec": {"replicas": 1, "type": "ClusterIP"}}
        observed = {"spec": {"replicas": 3, "type": "ClusterIP"}}
        assert drifted_fields(expected, observed) == ["spec.replicas"]

    def test_empty_one_of_member_selects_it(self):
        expected = {"name": "file-storage", "emptyDir": {}}
        observed = {"name": "file-storage", "persistentVolumeClaim": {"claimName": "example-file-storage"}}
        assert not is_semantic_subset(expected, observed)
        assert drifted_fields(expected, observed) == ["emptyDir"]
        assert is_semantic_subset(expected, {"name": "file-storage", "emptyDir": {}})

    def test_overlay_replaces_one_of_member(self):
        observed = {"name": "file-storage", "persistentVolumeClaim": {"claimName": "example-file-storage"}}
        merged = overlay(observed, {"name": "file-storage", "emptyDir": {}})
        assert merged == {"name": "file-storage", "emptyDir": {}}

    def test_overlay_keeps_fields_unset_in_expected(self):
        observed = {"metadata": {"name": "x", "annotations": {"a": "b"}}, "spec": {"replicas": 3}}
        merged = overlay(observed, {"metadata": {"name": "x"}, "spec": {"replicas": 1}})
        assert merged == {"metadata": {"name": "x", "annotations": {"a": "b"}}, "spec": {"replicas": 1}}
        assert observed["spec"]["replicas"] == 3


class TestConvergence:
    def test_fresh_descriptor_creates_every_resource_once(self, cluster, recorder, make_reconciler, descriptor):
        passes = converge(make_reconciler, descriptor)

        # one create per pass, plus the final pass that finds everything in place
        assert len(cluster.created) == 8
        assert passes == 9
        assert [name for _, name in cluster.created] == [
            "example-server",
            "example-db-fields-encryption",
            "example-admin-password",
            "example-container-auth",
            "example-api",
            "example-api-svc",
            "example-content",
            "example-content-svc",
        ]
        assert recorder.reasons().count("Created") == 8

    def test_converged_pass_is_a_no_op(self, cluster, recorder, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        created, events = len(cluster.created), len(recorder.events)

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert not outcome.stop
        assert len(cluster.created) == created
        assert cluster.updated == []
        assert len(recorder.events) == events

    def test_sub_resources_carry_owner_reference(self, cluster, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        deployment = cluster.stored(ResourceKind.DEPLOYMENT, "example-api", "pulp")
        assert deployment["metadata"]["ownerReferences"] == [descriptor.owner_reference()]

    def test_creation_sets_creating_condition(self, cluster, make_reconciler, descriptor):
        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert outcome.requeue
        condition = cluster.last_conditions()["Pulp-API-Ready"]
        assert condition["status"] == "False"
        assert condition["reason"] == "CreatingServerSecret"


class TestDriftCorrection:
    def test_drifted_deployment_is_restored(self, cluster, recorder, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        live = cluster.stored(ResourceKind.DEPLOYMENT, "example-api", "pulp")
        version = live["metadata"]["resourceVersion"]
        live["spec"]["replicas"] = 5
        live["metadata"]["annotations"]["deployment.kubernetes.io/revision"] = "2"
        live["spec"]["template"]["spec"]["containers"][0]["terminationMessagePath"] = "/dev/termination-log"

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert outcome.requeue
        assert outcome.requeue_delay == settings.REQUEUE_DELAY
        restored = cluster.stored(ResourceKind.DEPLOYMENT, "example-api", "pulp")
        assert restored["spec"]["replicas"] == 1
        assert restored["metadata"]["annotations"]["deployment.kubernetes.io/revision"] == "2"
        assert CONFIG_VERSION_ANNOTATION in restored["metadata"]["annotations"]
        assert restored["spec"]["template"]["spec"]["containers"][0]["terminationMessagePath"] == "/dev/termination-log"
        assert restored["metadata"]["resourceVersion"] != version
        assert cluster.last_conditions()["Pulp-API-Ready"]["reason"] == "UpdatingApiDeployment"
        assert (NORMAL, "Updated", "example-api Deployment reconciled") in recorder.events

    def test_next_pass_after_correction_converges(self, cluster, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        cluster.stored(ResourceKind.SERVICE, "example-content-svc", "pulp")["spec"]["type"] = "NodePort"

        assert converge(make_reconciler, descriptor) == 2
        assert cluster.stored(ResourceKind.SERVICE, "example-content-svc", "pulp")["spec"]["type"] == "ClusterIP"

    def test_dropping_storage_class_switches_volume_to_empty_dir(self, cluster, make_reconciler, descriptor):
        with_class = Descriptor(name="example", namespace="pulp", uid="uid-1", generation=1,
                                spec={"file_storage_storage_class": "standard"})
        converge(make_reconciler, with_class)
        volumes = cluster.stored(ResourceKind.DEPLOYMENT, "example-api", "pulp")["spec"]["template"]["spec"]["volumes"]
        assert {"name": "file-storage", "persistentVolumeClaim": {"claimName": "example-file-storage"}} in volumes

        converge(make_reconciler, descriptor)

        for name in ("example-api", "example-content"):
            volumes = cluster.stored(ResourceKind.DEPLOYMENT, name, "pulp")["spec"]["template"]["spec"]["volumes"]
            file_storage = [v for v in volumes if v["name"] == "file-storage"]
            assert file_storage == [{"name": "file-storage", "emptyDir": {}}]

    def test_stale_version_token_is_rejected(self, cluster, recorder, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        reconciler = make_reconciler(descriptor)
        definition = ResourceDefinition.for_resource(Resource.API_DEPLOYMENT, descriptor, "Pulp-API-Ready")
        observed = cluster.get(ResourceKind.DEPLOYMENT, "example-api", "pulp")
        observed["spec"]["replicas"] = 3
        # a concurrent writer moves the live object to a newer version
        cluster.put(ResourceKind.DEPLOYMENT, cluster.stored(ResourceKind.DEPLOYMENT, "example-api", "pulp"))

        outcome = reconciler.reconcile(definition, reconciler.build(definition), observed)

        assert isinstance(outcome.error, ApplyFailure)
        assert outcome.error.conflict
        assert cluster.updated == []
        condition = cluster.last_conditions()["Pulp-API-Ready"]
        assert condition["reason"] == "ErrorUpdatingApiDeployment"
        assert condition["status"] == "False"
        assert recorder.events[-1][:2] == (WARNING, "Failed")


class TestFailures:
    def test_lookup_failure_sets_no_condition(self, cluster, make_reconciler, descriptor):
        cluster.fail[("get", ResourceKind.SECRET)] = LookupFailure("deadline exceeded")

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert isinstance(outcome.error, LookupFailure)
        assert cluster.created == []
        assert cluster.status_patches == []

    def test_create_failure_reports_error_condition_and_warning(self, cluster, recorder, make_reconciler,
                                                                descriptor):
        cluster.fail[("create", ResourceKind.SECRET)] = ApplyFailure("forbidden", status=403)

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert isinstance(outcome.error, ApplyFailure)
        condition = cluster.last_conditions()["Pulp-API-Ready"]
        assert condition["reason"] == "ErrorCreatingServerSecret"
        assert condition["status"] == "False"
        assert recorder.events == [(WARNING, "Failed", "Failed to create example-server Secret")]

    def test_status_patch_failure_does_not_stop_the_pass(self, cluster, make_reconciler, descriptor):
        cluster.fail[("patch_status", None)] = ApplyFailure("status unavailable")

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert outcome.requeue
        assert outcome.error is None
        assert len(cluster.created) == 1


class TestCascadingRestart:
    def test_server_secret_drift_restarts_api_and_content(self, cluster, recorder, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        secret = cluster.stored(ResourceKind.SECRET, "example-server", "pulp")
        secret["data"]["settings.py"] = base64.b64encode(b"DEBUG = True\n").decode("ascii")

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert outcome.requeue
        assert cluster.deleted_pods == [
            ("pulp", component_labels(descriptor, "api")),
            ("pulp", component_labels(descriptor, "content")),
        ]
        assert recorder.reasons().count("Restarted") == 2

    def test_workload_drift_restarts_nothing(self, cluster, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        cluster.stored(ResourceKind.DEPLOYMENT, "example-content", "pulp")["spec"]["replicas"] = 4

        reconcile_pulp(make_reconciler(descriptor))

        assert cluster.deleted_pods == []

    def test_missing_consumer_is_skipped(self, cluster, make_reconciler, descriptor):
        reconciler = make_reconciler(descriptor)
        definition = reconciler.definition(Resource.API_DEPLOYMENT, "Pulp-API-Ready")
        cluster.put(ResourceKind.DEPLOYMENT, reconciler.build(definition))

        restarted = reconciler.on_shared_config_changed(Resource.SERVER_SECRET)

        assert restarted == ["example-api"]
        assert len(cluster.deleted_pods) == 1

    def test_pod_deletion_failure_is_not_fatal(self, cluster, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        cluster.fail[("delete_pods", None)] = ApplyFailure("forbidden", status=403)

        assert make_reconciler(descriptor).on_shared_config_changed(Resource.SERVER_SECRET) == []

    def test_unrelated_resource_has_no_consumers(self, make_reconciler, descriptor):
        assert make_reconciler(descriptor).on_shared_config_changed(Resource.API_SERVICE) == []

    def test_failed_restart_is_retried_on_a_later_pass(self, cluster, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        secret = cluster.stored(ResourceKind.SECRET, "example-server", "pulp")
        secret["data"]["settings.py"] = base64.b64encode(b"DEBUG = True\n").decode("ascii")
        cluster.fail[("delete_pods", None)] = ApplyFailure("forbidden", status=403)

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert outcome.requeue
        assert (ResourceKind.SECRET, "example-server") in cluster.updated
        assert cluster.deleted_pods == []

        del cluster.fail[("delete_pods", None)]
        converge(make_reconciler, descriptor)

        assert cluster.deleted_pods == [
            ("pulp", component_labels(descriptor, "api")),
            ("pulp", component_labels(descriptor, "content")),
        ]
        version = cluster.stored(ResourceKind.SECRET, "example-server", "pulp")["metadata"]["resourceVersion"]
        for name in ("example-api", "example-content"):
            annotations = cluster.stored(ResourceKind.DEPLOYMENT, name, "pulp")["metadata"]["annotations"]
            assert annotations[CONFIG_VERSION_ANNOTATION] == version

    def test_restart_failure_during_pass_is_an_error(self, cluster, recorder, make_reconciler, descriptor):
        converge(make_reconciler, descriptor)
        live = cluster.stored(ResourceKind.DEPLOYMENT, "example-api", "pulp")
        live["metadata"]["annotations"][CONFIG_VERSION_ANNOTATION] = "0"
        cluster.fail[("delete_pods", None)] = ApplyFailure("forbidden", status=403)

        outcome = reconcile_pulp(make_reconciler(descriptor))

        assert isinstance(outcome.error, ApplyFailure)
        assert recorder.events[-1] == (WARNING, "Failed", "Failed to restart example-api pods")
        assert cluster.stored(ResourceKind.DEPLOYMENT, "example-api", "pulp")["metadata"]["annotations"][
            CONFIG_VERSION_ANNOTATION] == "0"
