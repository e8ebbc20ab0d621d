"""
Status condition tracking for a descriptor.

Conditions are upserted by type. lastTransitionTime only moves when the
status or the reason changes; rewriting the same pair keeps the timestamp.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from pulp_operator.cluster import ClusterClient
from pulp_operator.errors import OperatorError
from pulp_operator.models import Condition, Descriptor

logger = logging.getLogger("pulp_operator.conditions")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _status_str(status: bool) -> str:
    return "True" if status else "False"


def get_condition(conditions: List[Condition], ctype: str) -> Optional[Condition]:
    for c in conditions:
        if c.type == ctype:
            return c
    return None


def set_condition(conditions: List[Condition], ctype: str, status: bool, reason: str,
                  message: str, now: Optional[str] = None) -> Tuple[List[Condition], bool]:
    """
    Upsert a condition into a copy of ``conditions``.

    Returns the new list and whether anything (including the message) changed.
    Existing conditions keep their position; new types are appended.
    """
    status_str = _status_str(status)
    updated = []
    found = False
    changed = False
    for c in conditions:
        if c.type != ctype:
            updated.append(c)
            continue
        found = True
        if c.status == status_str and c.reason == reason:
            if c.message != message:
                c = c.model_copy(update={"message": message})
                changed = True
        else:
            c = Condition(type=ctype, status=status_str, reason=reason, message=message,
                          lastTransitionTime=now or _now())
            changed = True
        updated.append(c)
    if not found:
        updated.append(Condition(type=ctype, status=status_str, reason=reason, message=message,
                                 lastTransitionTime=now or _now()))
        changed = True
    return updated, changed


class ConditionTracker:
    """
    Keeps the condition set of one descriptor for the duration of a pass and
    writes every change to the status subresource.
    """

    def __init__(self, cluster: ClusterClient, descriptor: Descriptor,
                 log: Optional[logging.Logger] = None, clock: Callable[[], str] = _now):
        self.cluster = cluster
        self.descriptor = descriptor
        self.conditions: List[Condition] = list(descriptor.conditions)
        self.log = log or logger
        self.clock = clock

    def get(self, ctype: str) -> Optional[Condition]:
        return get_condition(self.conditions, ctype)

    def set_condition(self, ctype: str, status: bool, reason: str, message: str) -> bool:
        """Returns True if the condition set changed."""
        conditions, changed = set_condition(self.conditions, ctype, status, reason, message, now=self.clock())
        if not changed:
            return False
        self.conditions = conditions
        try:
            self.cluster.patch_descriptor_status(
                self.descriptor,
                {"conditions": [c.model_dump() for c in conditions]},
            )
        except OperatorError as e:
            # The in-memory set stays ahead; the next pass rewrites it.
            self.log.error(f"Failed to update {ctype} condition on {self.descriptor.name}: {e}")
        return True
