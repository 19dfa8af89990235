# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Destroy Module

Teardown in reverse dependency order: state backends, then deployment roles,
then OIDC providers, then (only when explicitly requested) member account
closure.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from .accounts import AccountLifecycleManager, AccountStatus
from .aws import ControlPlane, error_code, error_message
from .config import OIDC_PROVIDER_HOST, BootstrapConfig
from .exceptions import DrainError, TransientFailure
from .polling import PollStatus, poll_until
from .registry import AccountRegistry

logger = logging.getLogger(__name__)

OUTPUT_PATTERNS = (
    "backend-config-*.hcl",
    "*.tfplan",
    "terraform-*.log",
    "*-report.json",
    "console-urls.txt",
)

CLOSURE_QUOTA_REASONS = ("CLOSE_ACCOUNT_QUOTA_EXCEEDED", "CLOSE_ACCOUNT_REQUESTS_LIMIT_EXCEEDED")


@dataclass
class DrainResult:
    bucket: str
    deleted: int = 0
    failures: List[Dict] = field(default_factory=list)


def drain_bucket(plane: ControlPlane, bucket: str, region: Optional[str] = None) -> DrainResult:
    """
    Delete every object version and delete marker in a bucket

    A failed delete is recorded and the drain moves on to the next object.

    Args:
        plane: Control plane for the account owning the bucket
        bucket: Bucket name
        region: Bucket region

    Returns:
        DrainResult with the delete count and failed entries
    """
    result = DrainResult(bucket=bucket)
    for page in plane.list_object_version_pages(bucket, region):
        for entry in page:
            try:
                plane.delete_object_version(bucket, entry["Key"], entry["VersionId"], region)
                result.deleted += 1
            except (ClientError, TransientFailure) as e:
                message = error_message(e) if isinstance(e, ClientError) else str(e)
                logger.warning(f"Failed to delete {entry['Key']} ({entry['VersionId']}): {message}")
                result.failures.append({**entry, "Error": message})

    logger.info(f"Deleted {result.deleted} object version(s) from {bucket}")
    return result


def delete_bucket_drained(plane: ControlPlane, bucket: str, region: Optional[str] = None) -> int:
    """
    Drain then delete a bucket

    Returns:
        Number of object versions and delete markers removed

    Raises:
        DrainError: If any version could not be deleted; the bucket is kept
    """
    result = drain_bucket(plane, bucket, region)
    if result.failures:
        raise DrainError(bucket, result.failures)
    plane.delete_bucket(bucket, region)
    logger.info(f"Deleted bucket {bucket}")
    return result.deleted


def remove_key(plane: ControlPlane, alias: str, window_days: int) -> Optional[str]:
    """
    Delete a KMS alias and schedule its key for deletion

    Returns:
        Key ID, or None when the alias does not exist
    """
    entry = plane.find_alias(alias)
    if entry is None:
        logger.info(f"KMS alias {alias} not found")
        return None

    key_id = entry.get("TargetKeyId")
    plane.delete_alias(alias)
    logger.info(f"Deleted KMS alias {alias}")

    if key_id:
        metadata = plane.describe_key(key_id)
        if metadata.get("KeyState") == "PendingDeletion":
            logger.info(f"KMS key {key_id} already pending deletion")
        else:
            plane.schedule_key_deletion(key_id, window_days)
            logger.info(f"Scheduled KMS key {key_id} for deletion in {window_days} days")
    return key_id


def delete_table(
    plane: ControlPlane,
    name: str,
    sleep: Callable[[float], None] = time.sleep,
    max_attempts: int = 30,
    interval: float = 5.0,
) -> bool:
    """Delete a DynamoDB table and wait until it is gone"""
    table = plane.describe_table(name)
    if table is None:
        logger.info(f"Table {name} not found")
        return False

    if table.get("TableStatus") != "DELETING":
        plane.delete_table(name)

    def check():
        if plane.describe_table(name) is None:
            return PollStatus.SUCCESS, None
        return PollStatus.PENDING, None

    poll_until(
        check,
        max_attempts=max_attempts,
        interval=interval,
        description=f"table {name} deletion",
        sleep=sleep,
    ).raise_on_timeout(f"table {name} deletion")
    logger.info(f"Deleted table {name}")
    return True


def closure_quota(member_count: int) -> int:
    """Accounts closable per rolling 30 days: 10% of members, between 10 and 1000"""
    return min(1000, max(10, member_count // 10))


@dataclass
class ClosureSummary:
    closed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict:
        return {
            "closed": len(self.closed),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "dry_run": self.dry_run,
        }


class Destroyer:
    """Removes bootstrap resources from member accounts"""

    def __init__(
        self,
        plane: ControlPlane,
        config: BootstrapConfig,
        lifecycle: AccountLifecycleManager,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.plane = plane
        self.config = config
        self.lifecycle = lifecycle
        self.sleep = sleep

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def accessible(self, environment: str, account_id: str) -> bool:
        """False when the account is SUSPENDED or PENDING_CLOSURE"""
        if self.dry_run:
            return True
        status = self.lifecycle.status(account_id)
        if status.closed:
            logger.info(
                f"Skipping {environment} account {account_id}: {status.value}, resources inaccessible"
            )
            return False
        if status == AccountStatus.UNKNOWN:
            logger.warning(f"Status of {environment} account {account_id} unknown; attempting anyway")
        return True

    def destroy_backend(self, environment: str, account_id: str) -> Dict:
        """Drain and delete the state bucket, delete the lock table, retire the KMS key"""
        bucket = self.config.state_bucket_name(environment, account_id)
        table = self.config.lock_table_name(environment)
        alias = self.config.key_alias(environment, account_id)
        summary = {
            "environment": environment,
            "bucket": bucket,
            "objects_deleted": 0,
            "bucket_deleted": False,
            "table_deleted": False,
            "key_scheduled": None,
        }

        if self.dry_run:
            logger.info(
                f"[DRY RUN] Would drain and delete {bucket}, delete {table}, "
                f"delete {alias} and schedule its key for deletion"
            )
            return summary

        with self.plane.assume_account(
            account_id, role_name=self.config.org_access_role_name
        ) as member:
            region = member.bucket_region(bucket)
            if region:
                summary["objects_deleted"] = delete_bucket_drained(member, bucket, region)
                summary["bucket_deleted"] = True
            else:
                logger.info(f"Bucket {bucket} not found")

            summary["table_deleted"] = delete_table(member, table, sleep=self.sleep)
            summary["key_scheduled"] = remove_key(
                member, alias, self.config.key_deletion_window_days
            )

        return summary

    def delete_role(self, environment: str, account_id: str) -> bool:
        role_name = self.config.role_name(environment)
        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete role {role_name} in {account_id}")
            return False

        with self.plane.assume_account(
            account_id, role_name=self.config.org_access_role_name
        ) as member:
            if member.get_role(role_name) is None:
                logger.info(f"Role {role_name} not found")
                return False
            member.delete_role(role_name)
        logger.info(f"Deleted role {role_name} in {account_id}")
        return True

    def delete_oidc_provider(self, environment: str, account_id: str) -> bool:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete OIDC provider in {account_id}")
            return False

        with self.plane.assume_account(
            account_id, role_name=self.config.org_access_role_name
        ) as member:
            arns = [
                arn
                for arn in member.list_oidc_provider_arns()
                if arn.endswith(f"oidc-provider/{OIDC_PROVIDER_HOST}")
            ]
            for arn in arns:
                member.delete_oidc_provider(arn)
                logger.info(f"Deleted OIDC provider {arn}")
        return bool(arns)

    def close_accounts(
        self, registry: AccountRegistry, environments: Iterable[str]
    ) -> ClosureSummary:
        """
        Close member accounts, respecting the provider's closure quota

        Returns:
            ClosureSummary with closed, failed and skipped account IDs
        """
        summary = ClosureSummary(dry_run=self.dry_run)
        environments = list(environments)

        if self.dry_run:
            quota = len(environments)
        else:
            members = [a for a in self.plane.list_accounts() if a["Id"] != registry.management]
            quota = closure_quota(len(members))
        attempts = 0
        quota_exhausted = False

        for environment in environments:
            account_id = registry.account_for(environment)
            if not account_id or account_id == registry.management:
                logger.info(f"No closable account for {environment}")
                continue

            if quota_exhausted or attempts >= quota:
                logger.warning(f"Closure quota reached; skipping {environment} ({account_id})")
                summary.skipped.append(account_id)
                continue

            if self.dry_run:
                logger.info(f"[DRY RUN] Would close {environment} account {account_id}")
                summary.closed.append(account_id)
                continue

            status = self.lifecycle.status(account_id)
            if status == AccountStatus.PENDING_CLOSURE:
                logger.info(f"{environment} account {account_id} already pending closure")
                summary.closed.append(account_id)
                continue
            if status == AccountStatus.SUSPENDED:
                logger.info(f"{environment} account {account_id} already suspended")
                summary.skipped.append(account_id)
                continue
            if status == AccountStatus.UNKNOWN:
                logger.error(f"Cannot determine status of {environment} account {account_id}")
                summary.failed.append(account_id)
                continue

            attempts += 1
            try:
                self.plane.close_account(account_id)
                logger.info(f"Closed {environment} account {account_id}")
                summary.closed.append(account_id)
            except TransientFailure as e:
                # TooManyRequests on CloseAccount is the rolling closure quota
                logger.error(f"Closure rate limit hit for {account_id}: {e}")
                summary.failed.append(account_id)
                quota_exhausted = True
            except ClientError as e:
                code = error_code(e)
                summary.failed.append(account_id)
                if code == "ConstraintViolationException" and self._quota_violation(e):
                    logger.error(f"Account closure quota exceeded at {account_id}")
                    quota_exhausted = True
                elif code == "ConflictException":
                    logger.error(
                        f"Cannot close {account_id}: {error_message(e)} "
                        "(check marketplace subscriptions)"
                    )
                elif code in ("AccessDeniedException", "AccessDenied"):
                    logger.error(f"Access denied closing {account_id}; use management credentials")
                else:
                    logger.error(f"Failed to close {account_id}: {error_message(e)}")

        return summary

    @staticmethod
    def _quota_violation(error: ClientError) -> bool:
        reason = error.response.get("Reason", "")
        message = error_message(error)
        return any(r in reason or r in message for r in CLOSURE_QUOTA_REASONS)


def clean_output(output_dir: Path, keep: Iterable[Path] = ()) -> List[Path]:
    """Remove generated descriptors, plans, logs and reports"""
    output_dir = Path(output_dir)
    kept = {Path(p).resolve() for p in keep}
    removed = []
    if not output_dir.is_dir():
        return removed
    for pattern in OUTPUT_PATTERNS:
        for path in sorted(output_dir.glob(pattern)):
            if path.resolve() in kept:
                continue
            path.unlink()
            removed.append(path)
    logger.info(f"Removed {len(removed)} generated file(s) from {output_dir}")
    return removed
