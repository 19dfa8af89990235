# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Verification Module

Read-only pass over everything the bootstrap manages, producing one
pass/fail check per resource.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from botocore.exceptions import ClientError

from .accounts import AccountLifecycleManager
from .aws import ControlPlane, error_message
from .backends import BackendProvisioner
from .config import BootstrapConfig
from .exceptions import BootstrapError, InterruptedRun
from .identity import FederationProviderKind, role_kind
from .organization import OrganizationalUnitKind, OrganizationKind
from .reconciler import inspect
from .registry import AccountRegistry

logger = logging.getLogger(__name__)


@dataclass
class Check:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class VerificationReport:
    checks: List[Check] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> List[Check]:
        return [check for check in self.checks if not check.passed]

    def add(self, name: str, passed: bool, detail: str = "") -> None:
        log = logger.info if passed else logger.warning
        log(f"{'PASS' if passed else 'FAIL'} {name}{': ' + detail if detail else ''}")
        self.checks.append(Check(name, passed, detail))

    def to_dict(self) -> Dict:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "passed": self.passed,
            "total": len(self.checks),
            "failed": len(self.failures),
            "checks": [asdict(check) for check in self.checks],
        }


class Verifier:
    """Checks organization, accounts, identity and backends without mutating anything"""

    def __init__(
        self,
        plane: ControlPlane,
        config: BootstrapConfig,
        lifecycle: AccountLifecycleManager,
        backends: BackendProvisioner,
    ):
        self.plane = plane
        self.config = config
        self.lifecycle = lifecycle
        self.backends = backends

    def run(self, registry: AccountRegistry) -> VerificationReport:
        report = VerificationReport()
        self._check_organization(report)
        for environment in self.config.environments:
            account_id = registry.account_for(environment)
            if not account_id:
                report.add(f"{environment} account", False, "not in registry")
                continue
            try:
                self._check_environment(report, environment, account_id)
            except InterruptedRun:
                raise
            except (ClientError, BootstrapError) as e:
                message = error_message(e) if isinstance(e, ClientError) else str(e)
                report.add(f"{environment} access", False, message)
        return report

    def _check_organization(self, report: VerificationReport) -> None:
        organization = inspect(OrganizationKind(self.plane))
        report.add("organization", organization.healthy, organization.reason)
        if not organization.resource:
            return

        parent_id = self.plane.root_id()
        for name in (self.config.workloads_ou_name, self.config.project_ou):
            unit = inspect(OrganizationalUnitKind(self.plane, parent_id, name, []))
            report.add(f"OU {name}", unit.healthy)
            if not unit.resource:
                return
            parent_id = unit.resource["Id"]

    def _check_environment(
        self, report: VerificationReport, environment: str, account_id: str
    ) -> None:
        status = self.lifecycle.status(account_id)
        report.add(f"{environment} account {account_id}", status.usable, status.value)
        if not status.usable:
            return

        with self.plane.assume_account(
            account_id, role_name=self.config.org_access_role_name
        ) as member:
            provider = inspect(FederationProviderKind(member, []))
            report.add(f"{environment} OIDC provider", provider.healthy)

            role = inspect(role_kind(member, self.config, environment, account_id))
            report.add(
                f"{environment} role {self.config.role_name(environment)}",
                role.healthy,
                role.reason,
            )

            states = self.backends.inspect_backend(
                member, environment, account_id, self.config.region
            )
            for name, state in states.items():
                report.add(
                    f"{environment} backend {name}",
                    state.healthy,
                    state.reason or state.state.value,
                )


def write_verification_report(report: VerificationReport, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    logger.info(f"Verification report written to {path}")
    return path
