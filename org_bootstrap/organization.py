# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Organization Module

Resource kinds for the organization itself and its organizational units.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .aws import ControlPlane
from .exceptions import InvalidStateError
from .reconciler import Outcome, ReconcileResult, ResourceKind, reconcile

logger = logging.getLogger(__name__)


class OrganizationKind(ResourceKind):
    """The organization singleton, with all features enabled"""

    kind = "organization"
    conflict_codes = frozenset({"AlreadyInOrganizationException"})
    remediation = "Enable all features in the AWS Organizations console"

    @property
    def key(self) -> str:
        return "organization"

    def probe(self) -> Optional[Dict]:
        return self.plane.describe_organization()

    def health(self, resource: Dict) -> Optional[str]:
        feature_set = resource.get("FeatureSet", "ALL")
        if feature_set != "ALL":
            return f"feature set is {feature_set}, expected ALL"
        return None

    def create(self) -> Dict:
        return self.plane.create_organization()

    def placeholder(self) -> Dict:
        return {"Id": "o-dryrun", "FeatureSet": "ALL"}


class OrganizationalUnitKind(ResourceKind):
    """An OU identified by (name, parent)"""

    kind = "organizational unit"
    conflict_codes = frozenset({"DuplicateOrganizationalUnitException"})

    def __init__(self, plane: ControlPlane, parent_id: str, name: str, tags: List[Dict]):
        super().__init__(plane)
        self.parent_id = parent_id
        self.name = name
        self.tags = tags

    @property
    def key(self) -> str:
        return f"{self.parent_id}/{self.name}"

    def probe(self) -> Optional[Dict]:
        for unit in self.plane.list_child_ous(self.parent_id):
            if unit["Name"] == self.name:
                return unit
        return None

    def adopt_probe(self) -> Optional[Dict]:
        # OU names compare case-insensitively on the service side
        wanted = self.name.lower()
        for unit in self.plane.list_child_ous(self.parent_id):
            if unit["Name"].lower() == wanted:
                return unit
        return None

    def create(self) -> Dict:
        return self.plane.create_ou(self.parent_id, self.name, self.tags)

    def placeholder(self) -> Dict:
        return {"Id": f"ou-dryrun-{self.name.lower()}", "Name": self.name}


def ensure_organization(plane: ControlPlane, dry_run: bool = False) -> ReconcileResult:
    """Find or create the organization"""
    return reconcile(OrganizationKind(plane), dry_run=dry_run)


def check_management_account(organization: Dict, caller_account_id: str) -> None:
    """Fail unless the caller is the organization's management account"""
    management_id = organization.get("MasterAccountId")
    if management_id and management_id != caller_account_id:
        raise InvalidStateError(
            f"Account {caller_account_id} is not the management account "
            f"of organization {organization.get('Id')} (management is {management_id})",
            remediation="Re-run with credentials for the management account",
        )


def ensure_ou_path(
    plane: ControlPlane,
    names: Sequence[str],
    tags: List[Dict],
    dry_run: bool = False,
) -> Tuple[str, List[ReconcileResult]]:
    """
    Ensure a chain of OUs under the root, e.g. Workloads -> my-project

    Args:
        plane: Management account control plane
        names: OU names from the root downwards
        tags: Tags for newly created OUs
        dry_run: Report without creating

    Returns:
        Tuple of (leaf OU ID, reconcile results for each level)
    """
    parent_id = "r-dryrun" if dry_run else plane.root_id()
    results = []

    for name in names:
        result = reconcile(OrganizationalUnitKind(plane, parent_id, name, tags), dry_run)
        results.append(result)
        unit = result.unwrap()
        if result.outcome != Outcome.PLANNED:
            logger.info(f"OU {name}: {unit['Id']} ({result.outcome.value})")
        parent_id = unit["Id"]

    return parent_id, results
