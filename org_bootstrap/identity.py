# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Identity Module

GitHub Actions OIDC provider and per-environment deployment role, plus the
policy documents attached to them.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

from .aws import ControlPlane
from .config import (
    OIDC_CLIENT_ID,
    OIDC_PROVIDER_HOST,
    OIDC_PROVIDER_URL,
    OIDC_THUMBPRINT,
    BootstrapConfig,
)
from .reconciler import ResourceKind

logger = logging.getLogger(__name__)

DEPLOYMENT_POLICY_NAME = "DeploymentPolicy"


def trust_policy(account_id: str, github_repo: str) -> Dict:
    """Trust document allowing only the repository's OIDC tokens to assume the role"""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {
                    "Federated": f"arn:aws:iam::{account_id}:oidc-provider/{OIDC_PROVIDER_HOST}"
                },
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {f"{OIDC_PROVIDER_HOST}:aud": OIDC_CLIENT_ID},
                    "StringLike": {f"{OIDC_PROVIDER_HOST}:sub": f"repo:{github_repo}:*"},
                },
            }
        ],
    }


def deployment_policy(config: BootstrapConfig, environment: str, account_id: str) -> Dict:
    """Inline permissions for the deployment role"""
    bucket = config.state_bucket_name(environment, account_id)
    table = config.lock_table_name(environment)
    region = config.region
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "TerraformStateBucket",
                "Effect": "Allow",
                "Action": ["s3:ListBucket", "s3:GetBucketVersioning", "s3:GetBucketLocation"],
                "Resource": f"arn:aws:s3:::{bucket}",
            },
            {
                "Sid": "TerraformStateObjects",
                "Effect": "Allow",
                "Action": ["s3:GetObject", "s3:PutObject", "s3:DeleteObject"],
                "Resource": f"arn:aws:s3:::{bucket}/*",
            },
            {
                "Sid": "TerraformStateLocking",
                "Effect": "Allow",
                "Action": [
                    "dynamodb:DescribeTable",
                    "dynamodb:GetItem",
                    "dynamodb:PutItem",
                    "dynamodb:DeleteItem",
                ],
                "Resource": f"arn:aws:dynamodb:{region}:{account_id}:table/{table}",
            },
            {
                "Sid": "TerraformStateEncryption",
                "Effect": "Allow",
                "Action": ["kms:Encrypt", "kms:Decrypt", "kms:GenerateDataKey", "kms:DescribeKey"],
                "Resource": "*",
                "Condition": {
                    "ForAnyValue:StringLike": {"kms:ResourceAliases": f"alias/{bucket}"}
                },
            },
            {
                "Sid": "ProjectDeployment",
                "Effect": "Allow",
                "Action": [
                    "s3:*",
                    "cloudfront:*",
                    "acm:*",
                    "route53:*",
                    "logs:*",
                    "cloudwatch:*",
                ],
                "Resource": "*",
                "Condition": {"StringEquals": {"aws:RequestedRegion": [region, "us-east-1"]}},
            },
        ],
    }


def to_json(document: Dict) -> str:
    return json.dumps(document, sort_keys=True)


def parse_document(document: Any) -> Dict:
    """IAM returns policy documents either decoded or as URL-encoded JSON"""
    if isinstance(document, str):
        return json.loads(unquote(document))
    return document or {}


def _canonical(document: Any) -> str:
    return to_json(parse_document(document))


class FederationProviderKind(ResourceKind):
    """GitHub Actions OIDC provider, one per account"""

    kind = "OIDC provider"
    conflict_codes = frozenset({"EntityAlreadyExists"})

    def __init__(self, plane: ControlPlane, tags: List[Dict]):
        super().__init__(plane)
        self.tags = tags

    @property
    def key(self) -> str:
        return OIDC_PROVIDER_URL

    def probe(self) -> Optional[Dict]:
        for arn in self.plane.list_oidc_provider_arns():
            if arn.endswith(f"oidc-provider/{OIDC_PROVIDER_HOST}"):
                return {"Arn": arn}
        return None

    def adopt_probe(self) -> Optional[Dict]:
        for arn in self.plane.list_oidc_provider_arns():
            if OIDC_PROVIDER_HOST in arn:
                return {"Arn": arn}
        return None

    def create(self) -> Dict:
        arn = self.plane.create_oidc_provider(
            OIDC_PROVIDER_URL, [OIDC_CLIENT_ID], [OIDC_THUMBPRINT], self.tags
        )
        return {"Arn": arn}

    def placeholder(self) -> Dict:
        account = self.plane.account_id or "123456789012"
        return {"Arn": f"arn:aws:iam::{account}:oidc-provider/{OIDC_PROVIDER_HOST}"}


class DeploymentRoleKind(ResourceKind):
    """Repository-scoped deployment role with its inline policy"""

    kind = "deployment role"
    conflict_codes = frozenset({"EntityAlreadyExists"})

    def __init__(
        self,
        plane: ControlPlane,
        role_name: str,
        trust: Dict,
        policy: Dict,
        tags: List[Dict],
        description: str = "",
        policy_name: str = DEPLOYMENT_POLICY_NAME,
    ):
        super().__init__(plane)
        self.role_name = role_name
        self.trust = trust
        self.policy = policy
        self.tags = tags
        self.description = description
        self.policy_name = policy_name

    @property
    def key(self) -> str:
        return self.role_name

    def probe(self) -> Optional[Dict]:
        return self.plane.get_role(self.role_name)

    def health(self, resource: Dict) -> Optional[str]:
        if _canonical(resource.get("AssumeRolePolicyDocument")) != to_json(self.trust):
            return "trust policy differs"
        current = self.plane.get_role_policy(self.role_name, self.policy_name)
        if current is None:
            return f"inline policy {self.policy_name} missing"
        if _canonical(current) != to_json(self.policy):
            return f"inline policy {self.policy_name} differs"
        return None

    def repair(self, resource: Dict, reason: str) -> Dict:
        if reason.startswith("trust"):
            self.plane.update_trust_policy(self.role_name, to_json(self.trust))
        self.plane.put_role_policy(self.role_name, self.policy_name, to_json(self.policy))
        logger.info(f"Refreshed policies on {self.role_name}")
        return resource

    def create(self) -> Dict:
        role = self.plane.create_role(
            self.role_name, to_json(self.trust), self.description, self.tags
        )
        self.plane.put_role_policy(self.role_name, self.policy_name, to_json(self.policy))
        return role

    def placeholder(self) -> Dict:
        account = self.plane.account_id or "123456789012"
        return {
            "RoleName": self.role_name,
            "Arn": f"arn:aws:iam::{account}:role/{self.role_name}",
        }


def role_kind(
    plane: ControlPlane, config: BootstrapConfig, environment: str, account_id: str
) -> DeploymentRoleKind:
    """Deployment role kind for one environment"""
    return DeploymentRoleKind(
        plane,
        role_name=config.role_name(environment),
        trust=trust_policy(account_id, config.github_repo),
        policy=deployment_policy(config, environment, account_id),
        tags=config.tags(environment),
        description=f"GitHub Actions deployment role for {config.project_name} {environment}",
    )


def switch_role_url(config: BootstrapConfig, environment: str, account_id: str) -> str:
    """Console switch-role URL for an environment account"""
    return (
        "https://signin.aws.amazon.com/switchrole"
        f"?roleName={config.console_role_name}"
        f"&account={account_id}"
        f"&displayName={config.project_short_name}-{environment}"
    )
