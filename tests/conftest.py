# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Pytest configuration file for the org bootstrap tests.

Provides an in-memory stand-in for the AWS control plane so reconciliation
scenarios can count exactly which mutating calls were issued.
"""

import json
import os
from contextlib import contextmanager
from itertools import count

import pytest
from botocore.exceptions import ClientError

from org_bootstrap.config import OIDC_PROVIDER_HOST, BootstrapConfig

os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

MANAGEMENT_ID = "111111111111"


def client_error(code, operation="Operation", message="error"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeCloud:
    """Shared state of every account the fake control plane can reach"""

    def __init__(self, management_id=MANAGEMENT_ID):
        self.management_id = management_id
        self.organization = None
        self.ous = {}
        self.accounts = {
            management_id: {
                "Id": management_id,
                "Name": "management",
                "Email": "root@example.com",
                "Status": "ACTIVE",
            }
        }
        self.parents = {management_id: "r-root"}
        self.requests = {}
        self.providers = {}
        self.roles = {}
        self.role_policies = {}
        self.buckets = {}
        self.tables = {}
        self.aliases = {}
        self.keys = {}
        self.calls = []
        self.failing_versions = set()
        self.close_errors = {}
        self._ids = count(1)

    def new_account_id(self):
        return f"{200000000000 + next(self._ids):012d}"

    def record(self, method, account_id, *args):
        self.calls.append((method, account_id, args))

    def mutations(self, prefix=""):
        return [c for c in self.calls if c[0].startswith(prefix) and c[0] != "assume"]

    def creations(self):
        return [c for c in self.calls if c[0].startswith("create_")]

    # Seeding helpers

    def add_organization(self):
        self.organization = {
            "Id": "o-fake",
            "FeatureSet": "ALL",
            "MasterAccountId": self.management_id,
        }

    def add_account(self, name, email, status="ACTIVE", account_id=None):
        account_id = account_id or self.new_account_id()
        self.accounts[account_id] = {
            "Id": account_id,
            "Name": name,
            "Email": email,
            "Status": status,
        }
        self.parents[account_id] = "r-root"
        return account_id

    def add_bucket(self, name, region="us-east-1", account_id=None, versions=(), markers=()):
        entries = [(key, vid, False) for key, vid in versions]
        entries += [(key, vid, True) for key, vid in markers]
        self.buckets[name] = {"Region": region, "Account": account_id, "Entries": entries}

    def add_table(self, account_id, name, status="ACTIVE"):
        self.tables[(account_id, name)] = {"TableName": name, "TableStatus": status}

    def add_key(self, account_id, alias, state="Enabled"):
        key_id = f"key-{next(self._ids)}"
        self.keys[key_id] = {"KeyId": key_id, "KeyState": state}
        self.aliases[(account_id, alias)] = key_id
        return key_id

    def add_backend(self, config, environment, account_id, region=None):
        self.add_bucket(
            config.state_bucket_name(environment, account_id),
            region or config.region,
            account_id,
        )
        self.add_table(account_id, config.lock_table_name(environment))
        self.add_key(account_id, config.key_alias(environment, account_id))


class FakeControlPlane:
    """In-memory implementation of the ControlPlane interface"""

    def __init__(self, cloud, account_id=MANAGEMENT_ID, region="us-east-1", dry_run=False):
        self.cloud = cloud
        self.account_id = account_id
        self.region = region
        self.dry_run = dry_run
        self.released = False

    def _mutate(self, method, *args):
        if self.released:
            raise AssertionError("call on released credential context")
        self.cloud.record(method, self.account_id, *args)

    @contextmanager
    def assume_account(self, account_id, role_name="OrganizationAccountAccessRole", **kwargs):
        self.cloud.record("assume", account_id)
        scoped = FakeControlPlane(self.cloud, account_id, self.region, self.dry_run)
        try:
            yield scoped
        finally:
            scoped.released = True

    def credential_env(self):
        return {"AWS_ACCESS_KEY_ID": f"fake-{self.account_id}"}

    def caller_identity(self):
        return {
            "Account": self.account_id,
            "Arn": f"arn:aws:sts::{self.account_id}:assumed-role/test",
        }

    # Organizations

    def describe_organization(self):
        return dict(self.cloud.organization) if self.cloud.organization else None

    def create_organization(self):
        self._mutate("create_organization")
        self.cloud.add_organization()
        return dict(self.cloud.organization)

    def root_id(self):
        return "r-root"

    def list_child_ous(self, parent_id):
        return [
            {"Id": ou["Id"], "Name": ou["Name"]}
            for ou in self.cloud.ous.values()
            if ou["Parent"] == parent_id
        ]

    def create_ou(self, parent_id, name, tags):
        self._mutate("create_ou", parent_id, name)
        for ou in self.cloud.ous.values():
            if ou["Parent"] == parent_id and ou["Name"].lower() == name.lower():
                raise client_error("DuplicateOrganizationalUnitException", "CreateOrganizationalUnit")
        ou_id = f"ou-{len(self.cloud.ous) + 1}"
        self.cloud.ous[ou_id] = {"Id": ou_id, "Name": name, "Parent": parent_id}
        return {"Id": ou_id, "Name": name}

    def list_accounts(self):
        return [dict(a) for a in self.cloud.accounts.values()]

    def describe_account(self, account_id):
        account = self.cloud.accounts.get(account_id)
        return dict(account) if account else None

    def create_account(self, name, email, tags):
        self._mutate("create_account", name, email)
        request_id = f"car-{len(self.cloud.requests) + 1}"
        if any(a["Email"].lower() == email.lower() for a in self.cloud.accounts.values()):
            self.cloud.requests[request_id] = {
                "Id": request_id,
                "State": "FAILED",
                "FailureReason": "EMAIL_ALREADY_EXISTS",
            }
        else:
            account_id = self.cloud.add_account(name, email)
            self.cloud.requests[request_id] = {
                "Id": request_id,
                "State": "SUCCEEDED",
                "AccountId": account_id,
            }
        return {"Id": request_id, "State": "IN_PROGRESS"}

    def describe_create_account_status(self, request_id):
        return dict(self.cloud.requests[request_id])

    def parent_of(self, account_id):
        return self.cloud.parents[account_id]

    def move_account(self, account_id, source_id, destination_id):
        self._mutate("move_account", account_id, destination_id)
        self.cloud.parents[account_id] = destination_id

    def close_account(self, account_id):
        self._mutate("close_account", account_id)
        if account_id in self.cloud.close_errors:
            raise self.cloud.close_errors[account_id]
        self.cloud.accounts[account_id]["Status"] = "PENDING_CLOSURE"

    # IAM

    def list_oidc_provider_arns(self):
        return list(self.cloud.providers.get(self.account_id, []))

    def create_oidc_provider(self, url, client_ids, thumbprints, tags):
        self._mutate("create_oidc_provider", url)
        arn = f"arn:aws:iam::{self.account_id}:oidc-provider/{OIDC_PROVIDER_HOST}"
        providers = self.cloud.providers.setdefault(self.account_id, [])
        if arn in providers:
            raise client_error("EntityAlreadyExists", "CreateOpenIDConnectProvider")
        providers.append(arn)
        return arn

    def delete_oidc_provider(self, arn):
        self._mutate("delete_oidc_provider", arn)
        self.cloud.providers[self.account_id].remove(arn)

    def get_role(self, name):
        role = self.cloud.roles.get((self.account_id, name))
        if role is None:
            return None
        return {
            "RoleName": name,
            "Arn": role["Arn"],
            "AssumeRolePolicyDocument": json.loads(role["Trust"]),
        }

    def create_role(self, name, trust_policy, description, tags):
        self._mutate("create_role", name)
        if (self.account_id, name) in self.cloud.roles:
            raise client_error("EntityAlreadyExists", "CreateRole")
        arn = f"arn:aws:iam::{self.account_id}:role/{name}"
        self.cloud.roles[(self.account_id, name)] = {"Arn": arn, "Trust": trust_policy}
        return {"RoleName": name, "Arn": arn}

    def update_trust_policy(self, name, trust_policy):
        self._mutate("update_trust_policy", name)
        self.cloud.roles[(self.account_id, name)]["Trust"] = trust_policy

    def get_role_policy(self, role_name, policy_name):
        document = self.cloud.role_policies.get((self.account_id, role_name, policy_name))
        return json.loads(document) if document else None

    def put_role_policy(self, role_name, policy_name, document):
        self._mutate("put_role_policy", role_name, policy_name)
        self.cloud.role_policies[(self.account_id, role_name, policy_name)] = document

    def delete_role(self, name):
        self._mutate("delete_role", name)
        del self.cloud.roles[(self.account_id, name)]

    # S3

    def bucket_region(self, name):
        bucket = self.cloud.buckets.get(name)
        return bucket["Region"] if bucket else None

    def create_bucket(self, name, region):
        self._mutate("create_bucket", name, region)
        if name in self.cloud.buckets:
            raise client_error("BucketAlreadyOwnedByYou", "CreateBucket")
        self.cloud.add_bucket(name, region, self.account_id)

    def enable_versioning(self, name):
        self._mutate("enable_versioning", name)

    def block_public_access(self, name):
        self._mutate("block_public_access", name)

    def enable_default_encryption(self, name):
        self._mutate("enable_default_encryption", name)

    def tag_bucket(self, name, tags):
        self._mutate("tag_bucket", name)

    def list_object_version_pages(self, bucket, region=None):
        entries = list(self.cloud.buckets[bucket]["Entries"])
        for start in range(0, len(entries), 2):
            yield [
                {"Key": key, "VersionId": vid, "IsDeleteMarker": marker}
                for key, vid, marker in entries[start : start + 2]
            ]

    def delete_object_version(self, bucket, key, version_id, region=None):
        self._mutate("delete_object_version", bucket, key, version_id)
        if version_id in self.cloud.failing_versions:
            raise client_error("AccessDenied", "DeleteObject")
        entries = self.cloud.buckets[bucket]["Entries"]
        self.cloud.buckets[bucket]["Entries"] = [e for e in entries if e[1] != version_id]

    def delete_bucket(self, name, region=None):
        self._mutate("delete_bucket", name)
        del self.cloud.buckets[name]

    # DynamoDB

    def describe_table(self, name):
        table = self.cloud.tables.get((self.account_id, name))
        return dict(table) if table else None

    def delete_table(self, name):
        self._mutate("delete_table", name)
        del self.cloud.tables[(self.account_id, name)]

    # KMS

    def find_alias(self, alias):
        key_id = self.cloud.aliases.get((self.account_id, alias))
        if key_id is None:
            return None
        return {"AliasName": alias, "TargetKeyId": key_id}

    def describe_key(self, key_id):
        return dict(self.cloud.keys[key_id])

    def delete_alias(self, alias):
        self._mutate("delete_alias", alias)
        del self.cloud.aliases[(self.account_id, alias)]

    def schedule_key_deletion(self, key_id, pending_window_days):
        self._mutate("schedule_key_deletion", key_id, pending_window_days)
        self.cloud.keys[key_id]["KeyState"] = "PendingDeletion"


class FakeTerraformRunner:
    """Materializes backends in the fake cloud instead of running tofu"""

    def __init__(self, cloud):
        self.cloud = cloud
        self.applies = []
        self.import_warnings = []

    def apply_backend(self, variables, imports, env, environment):
        self.applies.append(
            {"variables": dict(variables), "imports": list(imports), "env": dict(env)}
        )
        account_id = variables["aws_account_id"]
        region = variables["aws_region"]
        bucket = f"{variables['project_name']}-state-{environment}-{account_id}"
        table = f"{variables['project_name']}-locks-{environment}"
        alias = f"alias/{bucket}"

        self.cloud.record("create_backend", account_id, environment)
        if bucket not in self.cloud.buckets:
            self.cloud.add_bucket(bucket, region, account_id)
        if (account_id, table) not in self.cloud.tables:
            self.cloud.add_table(account_id, table)
        if (account_id, alias) not in self.cloud.aliases:
            self.cloud.add_key(account_id, alias)
        outputs = {"state_bucket": bucket, "lock_table": table, "kms_key_alias": alias}
        return outputs, list(self.import_warnings)


def no_sleep(seconds):
    pass


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def plane(cloud):
    return FakeControlPlane(cloud)


@pytest.fixture
def runner(cloud):
    return FakeTerraformRunner(cloud)


@pytest.fixture
def config(tmp_path):
    return BootstrapConfig(
        project_name="static-website",
        project_short_name="static-site",
        github_repo="acme/static-website",
        output_dir=tmp_path / "output",
        propagation_delay=0,
        account_poll_interval=0,
        active_wait_interval=0,
    )
