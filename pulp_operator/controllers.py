"""
Reconciliation passes for a Pulp descriptor.

Each component (API, content) declares the ordered list of sub-resources it
owns; the engine walks that list. The pulp pass applies spec defaults, then
runs the API pass and the content pass, and reports the components ready.
"""
import logging
from typing import Dict, List, Optional

from pulp_operator.builders import (
    Resource,
    admin_password_name,
    container_auth_name,
    db_fields_encryption_name,
)
from pulp_operator.engine import ReconcileOutcome, Reconciler, ResourceDefinition
from pulp_operator.errors import OperatorError
from pulp_operator.models import Descriptor
from pulp_operator.storage import is_storage_class_backend

logger = logging.getLogger("pulp_operator.controllers")

API_RESOURCES = (
    Resource.SERVER_SECRET,
    Resource.DB_FIELDS_ENCRYPTION,
    Resource.ADMIN_PASSWORD,
    Resource.CONTAINER_AUTH,
    Resource.API_DEPLOYMENT,
    Resource.API_SERVICE,
)

CONTENT_RESOURCES = (
    Resource.CONTENT_DEPLOYMENT,
    Resource.CONTENT_SERVICE,
)


def condition_type(descriptor: Descriptor, component: str) -> str:
    """e.g. ``Pulp-API-Ready`` for deployment_type ``pulp``."""
    return f"{descriptor.spec.deployment_type.title()}-{component}-Ready"


def api_work_list(descriptor: Descriptor, log: Optional[logging.Logger] = None) -> List[ResourceDefinition]:
    ctype = condition_type(descriptor, "API")
    resources = list(API_RESOURCES)
    # The file storage PVC only exists for the storage class backend
    if is_storage_class_backend(descriptor, log):
        resources.insert(0, Resource.FILE_STORAGE)
    return [ResourceDefinition.for_resource(r, descriptor, ctype) for r in resources]


def content_work_list(descriptor: Descriptor) -> List[ResourceDefinition]:
    ctype = condition_type(descriptor, "Content")
    return [ResourceDefinition.for_resource(r, descriptor, ctype) for r in CONTENT_RESOURCES]


def spec_defaults(descriptor: Descriptor) -> Dict[str, str]:
    """Secret names the operator records in the CR spec when the user left them empty."""
    defaults = {}
    if not descriptor.spec.container_token_secret:
        defaults["container_token_secret"] = container_auth_name(descriptor)
    if not descriptor.spec.admin_password_secret:
        defaults["admin_password_secret"] = admin_password_name(descriptor)
    if not descriptor.spec.db_fields_encryption_secret:
        defaults["db_fields_encryption_secret"] = db_fields_encryption_name(descriptor)
    return defaults


def apply_spec_defaults(reconciler: Reconciler) -> ReconcileOutcome:
    """Patch defaulted secret names into the descriptor spec."""
    descriptor = reconciler.descriptor
    defaults = spec_defaults(descriptor)
    if not defaults:
        return ReconcileOutcome()
    try:
        reconciler.cluster.patch_descriptor_spec(descriptor, defaults)
    except OperatorError as e:
        reconciler.log.error(f"Failed to record default secret names on {descriptor.name}: {e}")
        return ReconcileOutcome(error=e)
    reconciler.log.info(f"Recorded defaults on {descriptor.name}: {', '.join(sorted(defaults))}")
    return ReconcileOutcome()


def _finish(reconciler: Reconciler, component: str, task: str):
    reconciler.set_condition(
        condition_type(reconciler.descriptor, component), True, f"{task}TasksFinished",
        f"All {task} tasks ran successfully",
    )


def reconcile_api(reconciler: Reconciler) -> ReconcileOutcome:
    outcome = reconciler.run(api_work_list(reconciler.descriptor, reconciler.log))
    if not outcome.stop:
        _finish(reconciler, "API", "Api")
    return outcome


def reconcile_content(reconciler: Reconciler) -> ReconcileOutcome:
    outcome = reconciler.run(content_work_list(reconciler.descriptor))
    if not outcome.stop:
        _finish(reconciler, "Content", "Content")
    return outcome


def reconcile_pulp(reconciler: Reconciler) -> ReconcileOutcome:
    """One full pass over a Pulp descriptor."""
    for step in (apply_spec_defaults, reconcile_api, reconcile_content):
        outcome = step(reconciler)
        if outcome.stop:
            return outcome
    return ReconcileOutcome()
