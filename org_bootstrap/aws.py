# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Control Plane Module

Thin wrapper around the AWS APIs the bootstrap touches. Every remote read
and write in the package goes through ControlPlane; no other module creates
boto3 clients.

Cross-account work uses an explicit, scoped credential context:

    with plane.assume_account("222222222222") as member:
        member.get_role("GitHubActions-App-Dev-Role")

The member plane is released when the block exits, on every exit path.
"""

import functools
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .exceptions import BootstrapError, TransientFailure

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
}

AWS_MANAGED_POLICY_PREFIX = "arn:aws:iam::aws:policy/"

# SDK-level retries only; anything beyond this is the caller's stage policy
BOTO_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})


def error_code(error: ClientError) -> str:
    """Return the AWS error code of a ClientError"""
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


CONNECTION_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


def _transient(operation: str, error: Exception) -> Optional[TransientFailure]:
    """Return a TransientFailure for throttling and connection errors, else None"""
    if isinstance(error, ClientError) and error_code(error) in TRANSIENT_ERROR_CODES:
        return TransientFailure(
            f"{operation} throttled or unavailable: {error_message(error)}", error
        )
    if isinstance(error, CONNECTION_ERRORS):
        return TransientFailure(f"{operation} connection failed: {error}", error)
    return None


def _remote(func):
    """Translate throttling and connection problems into TransientFailure."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        self._check_active()
        try:
            return func(self, *args, **kwargs)
        except (ClientError,) + CONNECTION_ERRORS as e:
            transient = _transient(func.__name__, e)
            if transient:
                raise transient from e
            raise

    return wrapper


def _mutation(description: str):
    """Mark a write call: in dry-run mode it is logged and skipped."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            if self.dry_run:
                target = ", ".join(str(a) for a in args)
                logger.info(f"[DRY RUN] Would {description}: {target}")
                return None
            return func(self, *args, **kwargs)

        return _remote(wrapper)

    return decorator


class ControlPlane:
    """AWS control-plane adapter bound to one credential context"""

    def __init__(
        self,
        session: Optional[boto3.Session] = None,
        region: Optional[str] = None,
        account_id: Optional[str] = None,
        dry_run: bool = False,
        profile: Optional[str] = None,
    ):
        """
        Initialize control plane

        Args:
            session: boto3 session (a new one is created when omitted)
            region: AWS region
            account_id: Account this context operates in, when known
            dry_run: Skip every mutating call
            profile: Named profile for a new session
        """
        self.session = session or boto3.Session(region_name=region, profile_name=profile)
        self.region = region or self.session.region_name or "us-east-1"
        self.account_id = account_id
        self.dry_run = dry_run
        self.released = False
        self._clients: Dict[tuple, object] = {}

    def _check_active(self) -> None:
        if self.released:
            raise BootstrapError(
                f"Credential context for account {self.account_id} has been released"
            )

    def client(self, service: str, region: Optional[str] = None):
        """Return a cached boto3 client for the service"""
        key = (service, region or self.region)
        if key not in self._clients:
            self._clients[key] = self.session.client(
                service, region_name=key[1], config=BOTO_CONFIG
            )
        return self._clients[key]

    # Credential context

    @_remote
    def caller_identity(self) -> Dict:
        identity = self.client("sts").get_caller_identity()
        if self.account_id is None:
            self.account_id = identity["Account"]
        return identity

    @contextmanager
    def assume_account(
        self,
        account_id: str,
        role_name: str = "OrganizationAccountAccessRole",
        session_name: str = "org-bootstrap",
        duration_seconds: int = 3600,
    ) -> Iterator["ControlPlane"]:
        """
        Assume the operator role in a member account for the duration of a block

        Args:
            account_id: Member account ID
            role_name: Role to assume in the member account
            session_name: STS role session name
            duration_seconds: Credential lifetime

        Yields:
            ControlPlane scoped to the member account
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would assume {role_name} in {account_id}")
            scoped = ControlPlane(
                session=self.session,
                region=self.region,
                account_id=account_id,
                dry_run=True,
            )
        else:
            scoped = self._assume(account_id, role_name, session_name, duration_seconds)

        try:
            yield scoped
        finally:
            scoped.release()
            logger.debug(f"Released credential context for {account_id}")

    @_remote
    def _assume(
        self, account_id: str, role_name: str, session_name: str, duration_seconds: int
    ) -> "ControlPlane":
        role_arn = f"arn:aws:iam::{account_id}:role/{role_name}"
        logger.debug(f"Assuming {role_arn}")
        credentials = self.client("sts").assume_role(
            RoleArn=role_arn,
            RoleSessionName=session_name,
            DurationSeconds=duration_seconds,
        )["Credentials"]

        session = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.region,
        )
        return ControlPlane(session=session, region=self.region, account_id=account_id)

    def release(self) -> None:
        """Drop clients and credentials; later calls on this plane fail."""
        self._clients.clear()
        self.session = None
        self.released = True

    def credential_env(self) -> Dict[str, str]:
        """Environment variables carrying this context's credentials to a subprocess"""
        env = {"AWS_REGION": self.region, "AWS_DEFAULT_REGION": self.region}
        if self.session is None:
            return env
        credentials = self.session.get_credentials()
        if credentials is None:
            return env
        frozen = credentials.get_frozen_credentials()
        env["AWS_ACCESS_KEY_ID"] = frozen.access_key
        env["AWS_SECRET_ACCESS_KEY"] = frozen.secret_key
        if frozen.token:
            env["AWS_SESSION_TOKEN"] = frozen.token
        return env

    # Organizations

    @_remote
    def describe_organization(self) -> Optional[Dict]:
        try:
            return self.client("organizations").describe_organization()["Organization"]
        except ClientError as e:
            if error_code(e) == "AWSOrganizationsNotInUseException":
                return None
            raise

    @_mutation("create organization")
    def create_organization(self) -> Dict:
        return self.client("organizations").create_organization(FeatureSet="ALL")[
            "Organization"
        ]

    @_remote
    def root_id(self) -> str:
        roots = self.client("organizations").list_roots()["Roots"]
        if not roots:
            raise BootstrapError("Organization has no root")
        return roots[0]["Id"]

    @_remote
    def list_child_ous(self, parent_id: str) -> List[Dict]:
        paginator = self.client("organizations").get_paginator(
            "list_organizational_units_for_parent"
        )
        units = []
        for page in paginator.paginate(ParentId=parent_id):
            units.extend(page.get("OrganizationalUnits", []))
        return units

    @_mutation("create organizational unit")
    def create_ou(self, parent_id: str, name: str, tags: List[Dict]) -> Dict:
        return self.client("organizations").create_organizational_unit(
            ParentId=parent_id, Name=name, Tags=tags
        )["OrganizationalUnit"]

    @_remote
    def list_accounts(self) -> List[Dict]:
        paginator = self.client("organizations").get_paginator("list_accounts")
        accounts = []
        for page in paginator.paginate():
            accounts.extend(page.get("Accounts", []))
        return accounts

    @_remote
    def describe_account(self, account_id: str) -> Optional[Dict]:
        try:
            return self.client("organizations").describe_account(AccountId=account_id)[
                "Account"
            ]
        except ClientError as e:
            if error_code(e) == "AccountNotFoundException":
                return None
            raise

    @_mutation("create account")
    def create_account(self, name: str, email: str, tags: List[Dict]) -> Dict:
        return self.client("organizations").create_account(
            Email=email, AccountName=name, Tags=tags
        )["CreateAccountStatus"]

    @_remote
    def describe_create_account_status(self, request_id: str) -> Dict:
        return self.client("organizations").describe_create_account_status(
            CreateAccountRequestId=request_id
        )["CreateAccountStatus"]

    @_remote
    def parent_of(self, account_id: str) -> str:
        parents = self.client("organizations").list_parents(ChildId=account_id)["Parents"]
        return parents[0]["Id"]

    @_mutation("move account")
    def move_account(self, account_id: str, source_id: str, destination_id: str) -> None:
        self.client("organizations").move_account(
            AccountId=account_id,
            SourceParentId=source_id,
            DestinationParentId=destination_id,
        )

    @_mutation("close account")
    def close_account(self, account_id: str) -> None:
        self.client("organizations").close_account(AccountId=account_id)

    # IAM

    @_remote
    def list_oidc_provider_arns(self) -> List[str]:
        providers = self.client("iam").list_open_id_connect_providers()
        return [p["Arn"] for p in providers.get("OpenIDConnectProviderList", [])]

    @_mutation("create OIDC provider")
    def create_oidc_provider(
        self, url: str, client_ids: List[str], thumbprints: List[str], tags: List[Dict]
    ) -> str:
        return self.client("iam").create_open_id_connect_provider(
            Url=url, ClientIDList=client_ids, ThumbprintList=thumbprints, Tags=tags
        )["OpenIDConnectProviderArn"]

    @_mutation("delete OIDC provider")
    def delete_oidc_provider(self, arn: str) -> None:
        self.client("iam").delete_open_id_connect_provider(OpenIDConnectProviderArn=arn)

    @_remote
    def get_role(self, name: str) -> Optional[Dict]:
        try:
            return self.client("iam").get_role(RoleName=name)["Role"]
        except ClientError as e:
            if error_code(e) == "NoSuchEntity":
                return None
            raise

    @_mutation("create role")
    def create_role(
        self, name: str, trust_policy: str, description: str, tags: List[Dict]
    ) -> Dict:
        return self.client("iam").create_role(
            RoleName=name,
            AssumeRolePolicyDocument=trust_policy,
            Description=description,
            MaxSessionDuration=3600,
            Tags=tags,
        )["Role"]

    @_mutation("update role trust policy")
    def update_trust_policy(self, name: str, trust_policy: str) -> None:
        self.client("iam").update_assume_role_policy(
            RoleName=name, PolicyDocument=trust_policy
        )

    @_remote
    def get_role_policy(self, role_name: str, policy_name: str) -> Optional[Dict]:
        try:
            return self.client("iam").get_role_policy(
                RoleName=role_name, PolicyName=policy_name
            )["PolicyDocument"]
        except ClientError as e:
            if error_code(e) == "NoSuchEntity":
                return None
            raise

    @_mutation("put role policy")
    def put_role_policy(self, role_name: str, policy_name: str, document: str) -> None:
        self.client("iam").put_role_policy(
            RoleName=role_name, PolicyName=policy_name, PolicyDocument=document
        )

    @_mutation("delete role")
    def delete_role(self, name: str) -> None:
        """Detach and delete the role's policies, then delete the role."""
        iam = self.client("iam")

        attached = iam.list_attached_role_policies(RoleName=name)["AttachedPolicies"]
        for policy in attached:
            iam.detach_role_policy(RoleName=name, PolicyArn=policy["PolicyArn"])
            if not policy["PolicyArn"].startswith(AWS_MANAGED_POLICY_PREFIX):
                try:
                    iam.delete_policy(PolicyArn=policy["PolicyArn"])
                except ClientError as e:
                    # Still attached elsewhere
                    logger.warning(
                        f"Could not delete policy {policy['PolicyArn']}: {error_message(e)}"
                    )

        for policy_name in iam.list_role_policies(RoleName=name)["PolicyNames"]:
            iam.delete_role_policy(RoleName=name, PolicyName=policy_name)

        iam.delete_role(RoleName=name)

    # S3

    @_remote
    def bucket_region(self, name: str) -> Optional[str]:
        """Region of the bucket, or None when it does not exist"""
        try:
            location = self.client("s3").get_bucket_location(Bucket=name)
        except ClientError as e:
            if error_code(e) in ("NoSuchBucket", "404"):
                return None
            raise
        # us-east-1 reports no constraint; EU is the legacy name of eu-west-1
        constraint = location.get("LocationConstraint")
        if not constraint:
            return "us-east-1"
        if constraint == "EU":
            return "eu-west-1"
        return constraint

    @_mutation("create bucket")
    def create_bucket(self, name: str, region: str) -> None:
        s3 = self.client("s3", region)
        if region == "us-east-1":
            s3.create_bucket(Bucket=name)
        else:
            s3.create_bucket(
                Bucket=name, CreateBucketConfiguration={"LocationConstraint": region}
            )

    @_mutation("enable bucket versioning")
    def enable_versioning(self, name: str) -> None:
        self.client("s3").put_bucket_versioning(
            Bucket=name, VersioningConfiguration={"Status": "Enabled"}
        )

    @_mutation("block public access")
    def block_public_access(self, name: str) -> None:
        self.client("s3").put_public_access_block(
            Bucket=name,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": True,
                "IgnorePublicAcls": True,
                "BlockPublicPolicy": True,
                "RestrictPublicBuckets": True,
            },
        )

    @_mutation("enable default encryption")
    def enable_default_encryption(self, name: str) -> None:
        self.client("s3").put_bucket_encryption(
            Bucket=name,
            ServerSideEncryptionConfiguration={
                "Rules": [
                    {
                        "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"},
                        "BucketKeyEnabled": True,
                    }
                ]
            },
        )

    @_mutation("tag bucket")
    def tag_bucket(self, name: str, tags: List[Dict]) -> None:
        self.client("s3").put_bucket_tagging(Bucket=name, Tagging={"TagSet": tags})

    def list_object_version_pages(
        self, bucket: str, region: Optional[str] = None
    ) -> Iterator[List[Dict]]:
        """
        Yield one list per page of every object version and delete marker

        Each entry carries Key, VersionId and IsDeleteMarker.
        """
        self._check_active()
        paginator = self.client("s3", region).get_paginator("list_object_versions")
        pages = iter(paginator.paginate(Bucket=bucket))
        while True:
            try:
                page = next(pages)
            except StopIteration:
                return
            except (ClientError,) + CONNECTION_ERRORS as e:
                transient = _transient("list_object_versions", e)
                if transient:
                    raise transient from e
                raise

            entries = []
            for version in page.get("Versions", []):
                entries.append(
                    {
                        "Key": version["Key"],
                        "VersionId": version["VersionId"],
                        "IsDeleteMarker": False,
                    }
                )
            for marker in page.get("DeleteMarkers", []):
                entries.append(
                    {
                        "Key": marker["Key"],
                        "VersionId": marker["VersionId"],
                        "IsDeleteMarker": True,
                    }
                )
            yield entries

    @_mutation("delete object version")
    def delete_object_version(
        self, bucket: str, key: str, version_id: str, region: Optional[str] = None
    ) -> None:
        self.client("s3", region).delete_object(
            Bucket=bucket, Key=key, VersionId=version_id
        )

    @_mutation("delete bucket")
    def delete_bucket(self, name: str, region: Optional[str] = None) -> None:
        self.client("s3", region).delete_bucket(Bucket=name)

    # DynamoDB

    @_remote
    def describe_table(self, name: str) -> Optional[Dict]:
        try:
            return self.client("dynamodb").describe_table(TableName=name)["Table"]
        except ClientError as e:
            if error_code(e) == "ResourceNotFoundException":
                return None
            raise

    @_mutation("delete table")
    def delete_table(self, name: str) -> None:
        self.client("dynamodb").delete_table(TableName=name)

    # KMS

    @_remote
    def find_alias(self, alias: str) -> Optional[Dict]:
        paginator = self.client("kms").get_paginator("list_aliases")
        for page in paginator.paginate():
            for entry in page.get("Aliases", []):
                if entry["AliasName"] == alias:
                    return entry
        return None

    @_remote
    def describe_key(self, key_id: str) -> Dict:
        return self.client("kms").describe_key(KeyId=key_id)["KeyMetadata"]

    @_mutation("delete KMS alias")
    def delete_alias(self, alias: str) -> None:
        self.client("kms").delete_alias(AliasName=alias)

    @_mutation("schedule KMS key deletion")
    def schedule_key_deletion(self, key_id: str, pending_window_days: int) -> None:
        self.client("kms").schedule_key_deletion(
            KeyId=key_id, PendingWindowInDays=pending_window_days
        )
