# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Backends Module

Per-environment Terraform state backends (S3 bucket, DynamoDB lock table,
KMS key) and the management account's central state bucket.

A backend is ready only when all three resources exist, the bucket lives
in the target region, the table is usable and the key alias named after
the bucket points to an enabled key.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from .aws import ControlPlane, error_code, error_message
from .config import BootstrapConfig
from .destroy import delete_bucket_drained, delete_table, remove_key
from .exceptions import (
    BootstrapError,
    ConfigurationDegraded,
    ConflictError,
    InvalidStateError,
)
from .reconciler import Inspection, InspectState, ReconcileResult, ResourceKind, inspect, reconcile
from .terraform import (
    ALIAS_ADDRESS,
    BUCKET_ADDRESS,
    KEY_ADDRESS,
    TABLE_ADDRESS,
    TerraformRunner,
)

logger = logging.getLogger(__name__)

USABLE_TABLE_STATES = {"ACTIVE", "UPDATING"}


class StateBucketKind(ResourceKind):
    """State bucket; healthy only in the expected region"""

    kind = "state bucket"

    def __init__(self, plane: ControlPlane, name: str, region: str):
        super().__init__(plane)
        self.name = name
        self.region = region

    @property
    def key(self) -> str:
        return self.name

    def probe(self) -> Optional[Dict]:
        region = self.plane.bucket_region(self.name)
        if region is None:
            return None
        return {"Name": self.name, "Region": region}

    def health(self, resource: Dict) -> Optional[str]:
        if resource["Region"] != self.region:
            return f"bucket is in {resource['Region']}, expected {self.region}"
        return None

    def create(self) -> Dict:
        raise BootstrapError(f"{self} is created by the backend module")


class LockTableKind(ResourceKind):
    kind = "lock table"

    def __init__(self, plane: ControlPlane, name: str):
        super().__init__(plane)
        self.name = name

    @property
    def key(self) -> str:
        return self.name

    def probe(self) -> Optional[Dict]:
        return self.plane.describe_table(self.name)

    def health(self, resource: Dict) -> Optional[str]:
        status = resource.get("TableStatus", "ACTIVE")
        if status not in USABLE_TABLE_STATES:
            return f"table status is {status}"
        return None

    def create(self) -> Dict:
        raise BootstrapError(f"{self} is created by the backend module")


class EncryptionKeyKind(ResourceKind):
    """KMS key found through its alias"""

    kind = "KMS key"

    def __init__(self, plane: ControlPlane, alias: str):
        super().__init__(plane)
        self.alias = alias

    @property
    def key(self) -> str:
        return self.alias

    def probe(self) -> Optional[Dict]:
        entry = self.plane.find_alias(self.alias)
        if entry is None or not entry.get("TargetKeyId"):
            return None
        metadata = self.plane.describe_key(entry["TargetKeyId"])
        return {
            "Alias": self.alias,
            "KeyId": metadata["KeyId"],
            "KeyState": metadata.get("KeyState", "Enabled"),
        }

    def health(self, resource: Dict) -> Optional[str]:
        if resource["KeyState"] != "Enabled":
            return f"key state is {resource['KeyState']}"
        return None

    def create(self) -> Dict:
        raise BootstrapError(f"{self} is created by the backend module")


class CentralStateBucketKind(StateBucketKind):
    """
    Management account bucket for organization-wide state

    Created directly, then hardened with versioning, public access block
    and default encryption. A failed hardening step is recorded as
    ConfigurationDegraded, or raised when strict is set.
    """

    kind = "central state bucket"
    conflict_codes = frozenset({"BucketAlreadyOwnedByYou"})

    def __init__(
        self,
        plane: ControlPlane,
        name: str,
        region: str,
        tags: List[Dict],
        strict: bool = False,
    ):
        super().__init__(plane, name, region)
        self.tags = tags
        self.strict = strict
        self.degraded: List[ConfigurationDegraded] = []

    def create(self) -> Dict:
        try:
            self.plane.create_bucket(self.name, self.region)
        except ClientError as e:
            if error_code(e) == "BucketAlreadyExists":
                raise ConflictError(
                    str(self),
                    error_message(e),
                    remediation="Bucket names are global; choose a different project_name",
                )
            raise

        steps = [
            ("versioning", self.plane.enable_versioning),
            ("public access block", self.plane.block_public_access),
            ("default encryption", self.plane.enable_default_encryption),
        ]
        for step, apply in steps:
            try:
                apply(self.name)
            except ClientError as e:
                self._degrade(step, error_message(e))

        try:
            self.plane.tag_bucket(self.name, self.tags)
        except ClientError as e:
            logger.warning(f"Could not tag {self.name}: {error_message(e)}")

        return {"Name": self.name, "Region": self.region}

    def _degrade(self, step: str, message: str) -> None:
        warning = ConfigurationDegraded(resource=self.name, step=step, message=message)
        if self.strict:
            raise InvalidStateError(
                f"Hardening failed: {warning}",
                remediation="Fix the bucket configuration or re-run without strict_hardening",
            )
        logger.warning(f"Security posture degraded: {warning}")
        self.degraded.append(warning)


def ensure_central_bucket(
    plane: ControlPlane, config: BootstrapConfig, management_account_id: str
) -> Tuple[ReconcileResult, List[ConfigurationDegraded]]:
    """Find or create the management account's state bucket"""
    kind = CentralStateBucketKind(
        plane,
        config.central_bucket_name(management_account_id),
        config.region,
        config.tags(),
        strict=config.strict_hardening,
    )
    result = reconcile(kind, dry_run=config.dry_run)
    return result, kind.degraded


@dataclass
class BackendHandle:
    """Everything a deployment pipeline needs to reach one environment's state"""

    environment: str
    account_id: str
    region: str
    bucket: str
    table: str
    key_alias: str
    state_key: str
    key_id: Optional[str] = None
    provisioned: bool = False
    planned: bool = False
    descriptor_path: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


def render_descriptor(handle: BackendHandle) -> str:
    """Terraform -backend-config file contents"""
    return (
        f'bucket         = "{handle.bucket}"\n'
        f'key            = "{handle.state_key}"\n'
        f'region         = "{handle.region}"\n'
        f'dynamodb_table = "{handle.table}"\n'
        "encrypt        = true\n"
    )


def write_backend_descriptor(output_dir: Path, handle: BackendHandle) -> Path:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"backend-config-{handle.environment}.hcl"
    path.write_text(render_descriptor(handle), encoding="utf-8")
    logger.info(f"Wrote backend descriptor {path}")
    return path


class BackendProvisioner:
    """Ensures the state backend of each environment account"""

    def __init__(
        self,
        plane: ControlPlane,
        config: BootstrapConfig,
        runner: TerraformRunner,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.plane = plane
        self.config = config
        self.runner = runner
        self.sleep = sleep

    def kinds(
        self, member: ControlPlane, environment: str, account_id: str, region: str
    ) -> Dict[str, ResourceKind]:
        return {
            "bucket": StateBucketKind(
                member, self.config.state_bucket_name(environment, account_id), region
            ),
            "table": LockTableKind(member, self.config.lock_table_name(environment)),
            "key": EncryptionKeyKind(member, self.config.key_alias(environment, account_id)),
        }

    def inspect_backend(
        self, member: ControlPlane, environment: str, account_id: str, region: str
    ) -> Dict[str, Inspection]:
        """Probe bucket, table and key independently"""
        return {
            name: inspect(kind)
            for name, kind in self.kinds(member, environment, account_id, region).items()
        }

    def ensure_backend(
        self, account_id: str, environment: str, region: Optional[str] = None
    ) -> BackendHandle:
        """
        Make sure the environment's state backend exists and is ready

        Args:
            account_id: Member account ID
            environment: Environment name
            region: Target region (defaults to the configured region)

        Returns:
            BackendHandle describing a ready backend

        Raises:
            InvalidStateError: On a region mismatch without recreate_backends,
                or when the backend is still not ready after apply
            TerraformError: When plan or apply fails
        """
        region = region or self.config.region
        handle = BackendHandle(
            environment=environment,
            account_id=account_id,
            region=region,
            bucket=self.config.state_bucket_name(environment, account_id),
            table=self.config.lock_table_name(environment),
            key_alias=self.config.key_alias(environment, account_id),
            state_key=self.config.state_key(environment),
        )

        if self.config.dry_run:
            logger.info(
                f"[DRY RUN] Would ensure backend {handle.bucket} / {handle.table} "
                f"in {account_id} ({region})"
            )
            handle.planned = True
            return handle

        with self.plane.assume_account(
            account_id,
            role_name=self.config.org_access_role_name,
            session_name=f"create-backend-{environment}",
        ) as member:
            states = self.inspect_backend(member, environment, account_id, region)

            if all(state.healthy for state in states.values()):
                logger.info(f"Backend for {environment} already exists in {region}")
            else:
                unhealthy = {n: s for n, s in states.items() if s.state == InspectState.UNHEALTHY}
                if unhealthy:
                    states = self._recreate(member, handle, unhealthy, states)

                variables = {
                    "environment": environment,
                    "aws_account_id": account_id,
                    "aws_region": region,
                    "project_name": self.config.project_name,
                    "project_short_name": self.config.project_short_name,
                }
                handle.outputs, handle.warnings = self.runner.apply_backend(
                    variables,
                    self._imports(states),
                    member.credential_env(),
                    environment,
                )
                handle.provisioned = True

                states = self.inspect_backend(member, environment, account_id, region)
                not_ready = {n: s for n, s in states.items() if not s.healthy}
                if not_ready:
                    details = ", ".join(
                        f"{n} {s.state.value}{': ' + s.reason if s.reason else ''}"
                        for n, s in not_ready.items()
                    )
                    raise InvalidStateError(
                        f"Backend for {environment} not ready after apply ({details})",
                        remediation="Inspect the terraform logs in the output directory",
                    )

            handle.key_id = states["key"].resource["KeyId"]

        handle.descriptor_path = str(write_backend_descriptor(self.config.output_dir, handle))
        return handle

    def _recreate(
        self,
        member: ControlPlane,
        handle: BackendHandle,
        unhealthy: Dict[str, Inspection],
        states: Dict[str, Inspection],
    ) -> Dict[str, Inspection]:
        """Drain and delete mismatched backend resources when recreate is enabled"""
        problems = "; ".join(f"{n}: {s.reason}" for n, s in unhealthy.items())
        if not self.config.recreate_backends:
            raise InvalidStateError(
                f"Backend for {handle.environment} is inconsistent ({problems})",
                remediation="org-bootstrap foundation --recreate-backends",
            )

        logger.warning(f"Recreating backend resources for {handle.environment}: {problems}")
        if "bucket" in unhealthy:
            delete_bucket_drained(member, handle.bucket, unhealthy["bucket"].resource["Region"])
        if "table" in unhealthy:
            delete_table(member, handle.table, sleep=self.sleep)
        if "key" in unhealthy:
            remove_key(member, handle.key_alias, self.config.key_deletion_window_days)

        states = dict(states)
        for name in unhealthy:
            states[name] = Inspection(InspectState.MISSING)
        return states

    @staticmethod
    def _imports(states: Dict[str, Inspection]) -> List[Tuple[str, str]]:
        """Resource addresses and import IDs of resources that already exist"""
        imports = []
        if states["bucket"].healthy:
            imports.append((BUCKET_ADDRESS, states["bucket"].resource["Name"]))
        if states["key"].healthy:
            key = states["key"].resource
            imports.append((KEY_ADDRESS, key["KeyId"]))
            imports.append((ALIAS_ADDRESS, key["Alias"]))
        if states["table"].healthy:
            imports.append((TABLE_ADDRESS, states["table"].resource["TableName"]))
        return imports
