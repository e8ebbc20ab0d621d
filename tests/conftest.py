import base64
import copy

import pytest

from pulp_operator.cluster import ClusterClient, ResourceKind
from pulp_operator.engine import Reconciler
from pulp_operator.errors import ApplyFailure
from pulp_operator.events import EventRecorder
from pulp_operator.models import Descriptor


def secret_body(name, namespace, **data):
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "data": {k: base64.b64encode(v.encode("utf-8")).decode("ascii") for k, v in data.items()},
    }


class FakeCluster:
    """
    In-memory stand-in for ClusterClient.

    Objects are stored as dicts keyed by (kind, namespace, name). Updates
    must carry the current resourceVersion, like the API server enforces.
    Failures are injected per (verb, kind) through ``fail``.
    """

    def __init__(self):
        self.objects = {}
        self.created = []
        self.updated = []
        self.deleted_pods = []
        self.spec_patches = []
        self.status_patches = []
        self.fail = {}
        self._version = 0

    def _check(self, verb, kind=None):
        error = self.fail.get((verb, kind))
        if error is not None:
            raise error

    def _next_version(self):
        self._version += 1
        return str(self._version)

    def put(self, kind, body):
        """Seed an object directly, bypassing failure injection."""
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = self._next_version()
        meta = stored["metadata"]
        self.objects[(kind, meta["namespace"], meta["name"])] = stored
        return stored

    def stored(self, kind, name, namespace):
        return self.objects.get((kind, namespace, name))

    def get(self, kind, name, namespace):
        self._check("get", kind)
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def create(self, kind, body):
        self._check("create", kind)
        meta = body["metadata"]
        if (kind, meta["namespace"], meta["name"]) in self.objects:
            raise ApplyFailure(f"{kind.kind} {meta['name']} already exists", status=409)
        stored = self.put(kind, body)
        self.created.append((kind, meta["name"]))
        return copy.deepcopy(stored)

    def update(self, kind, body):
        self._check("update", kind)
        meta = body["metadata"]
        key = (kind, meta["namespace"], meta["name"])
        current = self.objects.get(key)
        if current is None:
            raise ApplyFailure(f"{kind.kind} {meta['name']} not found", status=404)
        if meta.get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ApplyFailure(f"{kind.kind} {meta['name']} was modified", status=409)
        stored = self.put(kind, body)
        self.updated.append((kind, meta["name"]))
        return copy.deepcopy(stored)

    get_secret_data = ClusterClient.get_secret_data

    def delete_pods(self, namespace, match_labels):
        self._check("delete_pods")
        self.deleted_pods.append((namespace, dict(match_labels)))

    def patch_descriptor_spec(self, descriptor, spec):
        self._check("patch_spec")
        self.spec_patches.append(spec)
        return {"spec": spec}

    def patch_descriptor_status(self, descriptor, status):
        self._check("patch_status")
        self.status_patches.append(status)
        return {"status": status}

    def last_conditions(self):
        """Conditions of the last status patch, keyed by type."""
        if not self.status_patches:
            return {}
        return {c["type"]: c for c in self.status_patches[-1]["conditions"]}


class RecordingEventRecorder(EventRecorder):
    def __init__(self):
        self.events = []

    def event(self, subject, severity, reason, message):
        self.events.append((severity, reason, message))

    def reasons(self):
        return [reason for _, reason, _ in self.events]


@pytest.fixture
def descriptor():
    return Descriptor(name="example", namespace="pulp", uid="uid-1", generation=1)


@pytest.fixture
def cluster():
    fake = FakeCluster()
    fake.put(ResourceKind.SECRET, secret_body(
        "example-postgres-configuration", "pulp",
        username="pulp", password="s3cret", database="pulp", port="5432", sslmode="prefer",
    ))
    return fake


@pytest.fixture
def recorder():
    return RecordingEventRecorder()


@pytest.fixture
def make_reconciler(cluster, recorder):
    def factory(d):
        return Reconciler(cluster, recorder, d)
    return factory
