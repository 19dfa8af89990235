# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Reconciler Module

Generic find-or-adopt-or-create convergence applied to every resource kind.

Each kind (organization, OU, account, OIDC provider, role, bucket, lock
table, KMS key) subclasses ResourceKind and supplies a probe, a health
predicate, a creator and the error codes that signal a naming conflict.
reconcile() then runs the same algorithm for all of them:

    probe -> healthy?        -> FOUND
          -> unhealthy       -> repair -> FOUND
          -> missing         -> create -> CREATED
                                  conflict -> relaxed probe -> ADOPTED
                                                            -> CONFLICT
    throttling / timeouts anywhere                          -> FAILED
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from botocore.exceptions import ClientError

from .aws import ControlPlane, error_code, error_message
from .exceptions import BootstrapError, ConflictError, InvalidStateError, TransientFailure

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Result of reconciling one resource"""

    FOUND = "Found"
    ADOPTED = "Adopted"
    CREATED = "Created"
    CONFLICT = "Conflict"
    FAILED = "Failed"
    PLANNED = "WouldCreate"


class InspectState(str, Enum):
    MISSING = "missing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class Inspection:
    state: InspectState
    resource: Optional[Dict] = None
    reason: str = ""

    @property
    def healthy(self) -> bool:
        return self.state == InspectState.HEALTHY


@dataclass
class ReconcileResult:
    kind: str
    key: str
    outcome: Outcome
    resource: Optional[Dict] = None
    error: Optional[BaseException] = None
    detail: str = ""

    @property
    def changed(self) -> bool:
        return self.outcome == Outcome.CREATED

    def unwrap(self) -> Dict:
        """
        Return the resource, raising the recorded error for CONFLICT and FAILED

        Callers use this to escalate conflicts to fatal errors and hand
        transient failures to the stage retry policy.
        """
        if self.outcome in (Outcome.CONFLICT, Outcome.FAILED):
            raise self.error
        return self.resource


class ResourceKind(ABC):
    """Probe, health check and creator for one kind of resource"""

    kind = "resource"
    conflict_codes: FrozenSet[str] = frozenset()
    remediation = ""

    def __init__(self, plane: ControlPlane):
        self.plane = plane

    @property
    @abstractmethod
    def key(self) -> str:
        """Natural key used for lookup (name, email, URL)"""

    @abstractmethod
    def probe(self) -> Optional[Dict]:
        """Read-only lookup by natural key; None when absent"""

    @abstractmethod
    def create(self) -> Dict:
        """Create with the full desired configuration"""

    def health(self, resource: Dict) -> Optional[str]:
        """Return a reason when the found resource is unusable, None when healthy"""
        return None

    def repair(self, resource: Dict, reason: str) -> Dict:
        """Bring an unhealthy resource back in line; unrepairable by default."""
        raise InvalidStateError(f"{self} is not usable: {reason}", self.remediation)

    def is_conflict(self, error: Exception) -> bool:
        return isinstance(error, ClientError) and error_code(error) in self.conflict_codes

    def adopt_probe(self) -> Optional[Dict]:
        """Relaxed lookup used after a conflict; defaults to the normal probe"""
        return self.probe()

    def placeholder(self) -> Dict:
        """Stand-in resource reported by dry-run"""
        return {"Id": f"dry-run:{self.key}"}

    def __str__(self) -> str:
        return f"{self.kind} '{self.key}'"


def inspect(kind: ResourceKind) -> Inspection:
    """Probe a resource and evaluate its health without mutating anything"""
    resource = kind.probe()
    if resource is None:
        return Inspection(InspectState.MISSING)
    reason = kind.health(resource)
    if reason:
        return Inspection(InspectState.UNHEALTHY, resource, reason)
    return Inspection(InspectState.HEALTHY, resource)


def reconcile(kind: ResourceKind, dry_run: bool = False) -> ReconcileResult:
    """
    Converge one resource toward its desired state

    Args:
        kind: Resource kind bound to its desired configuration
        dry_run: Report the action without any remote call

    Returns:
        ReconcileResult; CONFLICT and FAILED carry the error
    """
    if dry_run:
        logger.info(f"[DRY RUN] Would ensure {kind}")
        return ReconcileResult(kind.kind, kind.key, Outcome.PLANNED, kind.placeholder())

    try:
        inspection = inspect(kind)

        if inspection.state == InspectState.HEALTHY:
            logger.info(f"{kind} already exists")
            return ReconcileResult(kind.kind, kind.key, Outcome.FOUND, inspection.resource)

        if inspection.state == InspectState.UNHEALTHY:
            logger.warning(f"{kind} needs repair: {inspection.reason}")
            resource = kind.repair(inspection.resource, inspection.reason)
            return ReconcileResult(
                kind.kind,
                kind.key,
                Outcome.FOUND,
                resource,
                detail=f"repaired: {inspection.reason}",
            )

        try:
            logger.info(f"Creating {kind}")
            resource = kind.create()
            return ReconcileResult(kind.kind, kind.key, Outcome.CREATED, resource)
        except TransientFailure:
            raise
        except (ClientError, BootstrapError) as e:
            if not kind.is_conflict(e):
                raise
            remote_error = error_message(e) if isinstance(e, ClientError) else str(e)
            logger.warning(f"{kind} reported a conflict ({remote_error}); adopting")

            adopted = kind.adopt_probe()
            if adopted is None:
                return ReconcileResult(
                    kind.kind,
                    kind.key,
                    Outcome.CONFLICT,
                    error=ConflictError(str(kind), remote_error, kind.remediation),
                )
            logger.info(f"Adopted existing {kind}")
            return ReconcileResult(kind.kind, kind.key, Outcome.ADOPTED, adopted)

    except TransientFailure as e:
        logger.warning(f"Transient failure reconciling {kind}: {e}")
        return ReconcileResult(kind.kind, kind.key, Outcome.FAILED, error=e)
