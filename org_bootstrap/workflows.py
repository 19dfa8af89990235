# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Workflows Module

Stage lists for the four runs:

- organization: organization, OU path, member accounts, account registry
- foundation: central state bucket, OIDC providers, deployment roles,
  state backends
- destroy: backends, roles, providers, optional account closure
- verify: read-only verification
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .accounts import DRY_RUN_ACCOUNT_ID, AccountLifecycleManager
from .backends import BackendProvisioner, ensure_central_bucket
from .destroy import Destroyer, clean_output
from .display import create_closure_table
from .exceptions import BootstrapError, InvalidStateError
from .identity import FederationProviderKind, role_kind, switch_role_url
from .organization import check_management_account, ensure_organization, ensure_ou_path
from .pipeline import BootstrapReport, FailurePolicy, PipelineExecutor, RunContext, Stage
from .reconciler import Outcome, ReconcileResult, reconcile
from .registry import AccountRegistry, load_registry, save_registry
from .terraform import TerraformRunner
from .verify import Verifier, write_verification_report

logger = logging.getLogger(__name__)


class Workflows:
    """Builds and runs the bootstrap stage lists against one run context"""

    def __init__(
        self,
        ctx: RunContext,
        runner: Optional[TerraformRunner] = None,
        environments: Optional[Sequence[str]] = None,
    ):
        """
        Initialize workflows

        Args:
            ctx: Run context shared by all stages
            runner: Terraform runner (built from config when omitted)
            environments: Subset of configured environments to act on
        """
        self.ctx = ctx
        self.config = ctx.config
        self.plane = ctx.plane
        self.environments = list(environments or self.config.environments)
        self.lifecycle = AccountLifecycleManager(ctx.plane, ctx.config, sleep=ctx.sleep)
        self.backends = BackendProvisioner(
            ctx.plane,
            ctx.config,
            runner
            or TerraformRunner(
                self.config.terraform_dir, self.config.output_dir, self.config.terraform_binary
            ),
            sleep=ctx.sleep,
        )
        self.destroyer = Destroyer(ctx.plane, ctx.config, self.lifecycle, sleep=ctx.sleep)
        self.verifier = Verifier(ctx.plane, ctx.config, self.lifecycle, self.backends)
        self._accessible = {}

    # Stage lists

    def organization_stages(self) -> List[Stage]:
        return [
            Stage("Verify credentials", self.verify_credentials),
            Stage("Ensure organization", self.ensure_organization),
            Stage("Ensure organizational units", self.ensure_ou_path),
            Stage("Ensure member accounts", self.ensure_accounts),
            Stage("Save account registry", self.save_registry),
            Stage("Verify cross-account access", self.verify_access, FailurePolicy.WARN),
        ]

    def foundation_stages(self) -> List[Stage]:
        return [
            Stage("Verify credentials", self.verify_credentials),
            Stage("Load account registry", self.load_registry),
            Stage("Validate account status", self.validate_accounts),
            Stage("Ensure central state bucket", self.ensure_central_bucket),
            Stage("Ensure OIDC providers", self.ensure_providers),
            Stage("Ensure deployment roles", self.ensure_roles),
            Stage("Ensure state backends", self.ensure_backends),
            Stage("Generate console URLs", self.generate_console_urls, FailurePolicy.WARN),
            Stage("Verify foundation", self.verify_foundation, FailurePolicy.WARN),
        ]

    def destroy_stages(self, close_accounts: bool = False) -> List[Stage]:
        stages = [
            Stage("Verify credentials", self.verify_credentials),
            Stage("Load account registry", self.load_registry),
            Stage("Destroy state backends", self.destroy_backends),
            Stage("Delete deployment roles", self.delete_roles),
            Stage("Delete OIDC providers", self.delete_providers),
        ]
        if close_accounts:
            stages.append(Stage("Close member accounts", self.close_accounts, FailurePolicy.WARN))
        stages.append(Stage("Clean output files", self.clean_output, FailurePolicy.WARN))
        return stages

    def verify_stages(self) -> List[Stage]:
        return [
            Stage("Verify credentials", self.verify_credentials),
            Stage("Load account registry", self.load_registry),
            Stage("Verify resources", self.verify_resources),
        ]

    def run(self, name: str, stages: Sequence[Stage]) -> BootstrapReport:
        executor = PipelineExecutor(
            name,
            stages,
            self.config.output_dir / f"{name}-report.json",
            stage_attempts=self.config.stage_attempts,
        )
        return executor.run(self.ctx)

    # Shared stages

    def verify_credentials(self, ctx: RunContext) -> None:
        if ctx.dry_run:
            ctx.management_account_id = self.config.management_account_id or DRY_RUN_ACCOUNT_ID
            logger.info(f"[DRY RUN] Would verify credentials for {ctx.management_account_id}")
            return

        identity = self.plane.caller_identity()
        account_id = identity["Account"]
        logger.info(f"Authenticated as {identity['Arn']}")

        expected = self.config.management_account_id
        if expected and expected != account_id:
            raise InvalidStateError(
                f"Credentials belong to {account_id}, expected management account {expected}",
                remediation="Export credentials for the management account",
            )

        organization = self.plane.describe_organization()
        if organization:
            check_management_account(organization, account_id)
        ctx.management_account_id = account_id

    def load_registry(self, ctx: RunContext) -> None:
        registry = load_registry(self.config.registry_file)
        if registry is None:
            raise InvalidStateError(
                f"No account registry at {self.config.registry_file}",
                remediation="org-bootstrap organization",
            )
        ctx.registry = registry
        ctx.accounts = {
            env: registry.account_for(env)
            for env in self.environments
            if registry.account_for(env)
        }
        logger.info(f"Loaded {len(ctx.accounts)} account(s) from {self.config.registry_file}")

    # Organization stages

    def ensure_organization(self, ctx: RunContext) -> None:
        organization = ctx.record(ensure_organization(self.plane, ctx.dry_run)).unwrap()
        logger.info(f"Organization: {organization['Id']}")

    def ensure_ou_path(self, ctx: RunContext) -> None:
        ou_id, results = ensure_ou_path(
            self.plane,
            [self.config.workloads_ou_name, self.config.project_ou],
            self.config.tags(),
            ctx.dry_run,
        )
        for result in results:
            ctx.record(result)
        ctx.ou_id = ou_id

    def ensure_accounts(self, ctx: RunContext) -> None:
        registry = load_registry(self.config.registry_file)
        for environment in self.environments:
            recorded = registry.account_for(environment) if registry else None
            handle = self.lifecycle.ensure_account(environment, recorded, ctx.ou_id)
            ctx.accounts[environment] = handle.account_id
            ctx.record(
                ReconcileResult("account", handle.email, handle.outcome, {"Id": handle.account_id})
            )
            if handle.replaced_account_id:
                ctx.extra.setdefault("replaced_accounts", {})[environment] = {
                    "unusable": handle.replaced_account_id,
                    "replacement": handle.account_id,
                }
            ctx.console.print(
                f"  {environment}: {handle.account_id} ({handle.outcome.value})"
            )

    def save_registry(self, ctx: RunContext) -> None:
        registry = AccountRegistry(management=ctx.management_account_id, accounts=ctx.accounts)
        if ctx.dry_run:
            logger.info(f"[DRY RUN] Would write account registry {self.config.registry_file}")
            return
        save_registry(self.config.registry_file, registry)
        ctx.registry = registry

    def verify_access(self, ctx: RunContext) -> None:
        fresh = [r for r in ctx.outcomes if r.kind == "account" and r.outcome != Outcome.FOUND]
        if fresh and not ctx.dry_run:
            logger.info(f"Waiting {self.config.propagation_delay:.0f}s for role propagation")
            ctx.sleep(self.config.propagation_delay)

        failed = [
            env
            for env, account_id in ctx.accounts.items()
            if not self.lifecycle.verify_access(account_id)
        ]
        if failed:
            raise BootstrapError(
                f"Cannot assume {self.config.org_access_role_name} in: {', '.join(failed)}"
            )

    # Foundation stages

    def validate_accounts(self, ctx: RunContext) -> None:
        self.lifecycle.require_active(ctx.registry, self.environments)

    def ensure_central_bucket(self, ctx: RunContext) -> None:
        result, degraded = ensure_central_bucket(self.plane, self.config, ctx.management_account_id)
        ctx.record(result).unwrap()
        for warning in degraded:
            ctx.warn(warning)
        ctx.extra["central_state_bucket"] = result.key

    def ensure_providers(self, ctx: RunContext) -> None:
        created = False
        for environment, account_id in ctx.accounts.items():
            with self.plane.assume_account(
                account_id,
                role_name=self.config.org_access_role_name,
                session_name=f"oidc-{environment}",
            ) as member:
                kind = FederationProviderKind(member, self.config.tags(environment))
                result = ctx.record(reconcile(kind, dry_run=ctx.dry_run))
                ctx.provider_arns[environment] = result.unwrap()["Arn"]
                created = created or result.changed
        self._wait_for_propagation(ctx, created)

    def ensure_roles(self, ctx: RunContext) -> None:
        created = False
        for environment, account_id in ctx.accounts.items():
            with self.plane.assume_account(
                account_id,
                role_name=self.config.org_access_role_name,
                session_name=f"role-{environment}",
            ) as member:
                kind = role_kind(member, self.config, environment, account_id)
                result = ctx.record(reconcile(kind, dry_run=ctx.dry_run))
                ctx.role_arns[environment] = result.unwrap()["Arn"]
                created = created or result.changed
        self._wait_for_propagation(ctx, created)

    def ensure_backends(self, ctx: RunContext) -> None:
        for environment, account_id in ctx.accounts.items():
            handle = self.backends.ensure_backend(account_id, environment)
            ctx.backends[environment] = handle.to_dict()
            for warning in handle.warnings:
                ctx.warn(warning)

            if handle.planned:
                outcome = Outcome.PLANNED
            elif handle.provisioned:
                outcome = Outcome.CREATED
            else:
                outcome = Outcome.FOUND
            ctx.record(ReconcileResult("state backend", handle.bucket, outcome))

    def generate_console_urls(self, ctx: RunContext) -> None:
        lines = []
        for environment, account_id in ctx.accounts.items():
            url = switch_role_url(self.config, environment, account_id)
            ctx.console_urls[environment] = url
            lines.append(f"{environment}: {url}")

        path = Path(self.config.output_dir) / "console-urls.txt"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logger.info(f"Console URLs written to {path}")

    def verify_foundation(self, ctx: RunContext) -> None:
        if self.config.skip_verification:
            logger.info("Verification skipped")
            return
        self.verify_resources(ctx)

    def verify_resources(self, ctx: RunContext) -> None:
        if ctx.dry_run:
            logger.info("[DRY RUN] Would verify organization, accounts, roles and backends")
            return

        report = self.verifier.run(ctx.registry)
        write_verification_report(report, self.config.output_dir / "verification-report.json")
        summary = report.to_dict()
        ctx.extra["verification"] = {
            "passed": summary["passed"],
            "total": summary["total"],
            "failed": summary["failed"],
            "checks": summary["checks"],
        }
        if not report.passed:
            names = ", ".join(check.name for check in report.failures)
            raise BootstrapError(f"{len(report.failures)} verification check(s) failed: {names}")

    # Destroy stages

    def destroy_backends(self, ctx: RunContext) -> None:
        for environment, account_id in self._destroy_targets(ctx):
            ctx.backends[environment] = self.destroyer.destroy_backend(environment, account_id)

    def delete_roles(self, ctx: RunContext) -> None:
        for environment, account_id in self._destroy_targets(ctx):
            self.destroyer.delete_role(environment, account_id)

    def delete_providers(self, ctx: RunContext) -> None:
        for environment, account_id in self._destroy_targets(ctx):
            self.destroyer.delete_oidc_provider(environment, account_id)

    def close_accounts(self, ctx: RunContext) -> None:
        summary = self.destroyer.close_accounts(ctx.registry, self.environments)
        ctx.extra["closure"] = summary.to_dict()
        ctx.console.print(create_closure_table(summary.to_dict()))
        if summary.failed:
            raise BootstrapError(
                f"{len(summary.failed)} account closure(s) failed: {', '.join(summary.failed)}"
            )

    def clean_output(self, ctx: RunContext) -> None:
        if ctx.dry_run:
            logger.info(f"[DRY RUN] Would remove generated files from {self.config.output_dir}")
            return
        clean_output(self.config.output_dir)

    # Helpers

    def _destroy_targets(self, ctx: RunContext):
        """Environments whose accounts are still accessible, status checked once per run"""
        for environment, account_id in ctx.accounts.items():
            if account_id not in self._accessible:
                self._accessible[account_id] = self.destroyer.accessible(environment, account_id)
            if self._accessible[account_id]:
                yield environment, account_id

    def _wait_for_propagation(self, ctx: RunContext, created: bool) -> None:
        if created and not ctx.dry_run:
            logger.info(f"Waiting {self.config.propagation_delay:.0f}s for IAM propagation")
            ctx.sleep(self.config.propagation_delay)
