# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Unit tests for member account lifecycle management
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from org_bootstrap.accounts import AccountLifecycleManager, AccountStatus
from org_bootstrap.exceptions import (
    BootstrapError,
    InterruptedRun,
    InvalidStateError,
    TransientFailure,
    WaitTimeoutError,
)
from org_bootstrap.reconciler import Outcome
from org_bootstrap.registry import AccountRegistry

from conftest import MANAGEMENT_ID, client_error, no_sleep

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def lifecycle(plane, config):
    return AccountLifecycleManager(plane, config, sleep=no_sleep, clock=lambda: FIXED_NOW)


class TestEnsureAccount:
    """Test account creation, reuse and replacement"""

    def test_creates_and_places_account(self, lifecycle, cloud):
        handle = lifecycle.ensure_account("dev", None, "ou-project")

        assert handle.outcome == Outcome.CREATED
        assert handle.name == "static-site-dev"
        assert handle.email == "aws+static-site-dev@example.com"
        assert cloud.accounts[handle.account_id]["Status"] == "ACTIVE"
        assert cloud.parents[handle.account_id] == "ou-project"

    def test_recorded_active_account_is_reused(self, lifecycle, cloud):
        account_id = cloud.add_account("static-site-dev", "aws+static-site-dev@example.com")
        cloud.parents[account_id] = "ou-project"

        handle = lifecycle.ensure_account("dev", account_id, "ou-project")

        assert handle.outcome == Outcome.FOUND
        assert handle.account_id == account_id
        assert cloud.mutations() == []

    def test_suspended_account_replaced_with_timestamp_suffix(self, lifecycle, cloud):
        old_id = cloud.add_account(
            "static-site-dev", "aws+static-site-dev@example.com", status="SUSPENDED"
        )

        handle = lifecycle.ensure_account("dev", old_id)

        assert handle.outcome == Outcome.CREATED
        assert handle.account_id != old_id
        assert handle.replaced_account_id == old_id
        assert handle.name == "static-site-dev-20240101120000"
        assert handle.email == "aws+static-site-dev-20240101120000@example.com"

    def test_pending_closure_adopts_existing_replacement(self, lifecycle, cloud):
        old_id = cloud.add_account(
            "static-site-dev", "aws+static-site-dev@example.com", status="PENDING_CLOSURE"
        )
        replacement_id = cloud.add_account(
            "static-site-dev-20231231000000",
            "aws+static-site-dev-20231231000000@example.com",
        )

        handle = lifecycle.ensure_account("dev", old_id)

        assert handle.outcome == Outcome.ADOPTED
        assert handle.account_id == replacement_id
        assert cloud.mutations("create_account") == []

    def test_unknown_status_blocks(self, lifecycle):
        with pytest.raises(InvalidStateError, match="Cannot determine status"):
            lifecycle.ensure_account("dev", "999999999999")

    def test_closed_account_found_by_email_is_replaced(self, lifecycle, cloud):
        old_id = cloud.add_account(
            "static-site-dev", "aws+static-site-dev@example.com", status="SUSPENDED"
        )

        handle = lifecycle.ensure_account("dev")

        assert handle.replaced_account_id == old_id
        assert handle.name == "static-site-dev-20240101120000"

    def test_email_conflict_adopts_case_variant(self, lifecycle, cloud):
        existing_id = cloud.add_account("legacy-dev", "AWS+Static-Site-Dev@Example.com")

        handle = lifecycle.ensure_account("dev")

        assert handle.outcome == Outcome.ADOPTED
        assert handle.account_id == existing_id

    def test_dry_run_makes_no_calls(self, plane, cloud, config):
        config.dry_run = True
        lifecycle = AccountLifecycleManager(plane, config, sleep=no_sleep)

        handle = lifecycle.ensure_account("dev", None, "ou-project")

        assert handle.outcome == Outcome.PLANNED
        assert handle.account_id == "123456789012"
        assert cloud.calls == []


class TestAccountCreation:
    """Test the creation status poll"""

    def _plane(self, states):
        plane = MagicMock()
        plane.list_accounts.return_value = []
        plane.create_account.return_value = {"Id": "car-1", "State": "IN_PROGRESS"}
        plane.describe_create_account_status.side_effect = states
        return plane

    def test_timeout(self, config):
        config.account_poll_attempts = 3
        plane = self._plane([{"State": "IN_PROGRESS"}] * 3)
        lifecycle = AccountLifecycleManager(plane, config, sleep=no_sleep)

        with pytest.raises(WaitTimeoutError):
            lifecycle.ensure_account("dev")
        assert plane.describe_create_account_status.call_count == 3

    def test_non_conflict_failure(self, config):
        plane = self._plane([{"State": "FAILED", "FailureReason": "ACCOUNT_LIMIT_EXCEEDED"}])
        lifecycle = AccountLifecycleManager(plane, config, sleep=no_sleep)

        with pytest.raises(BootstrapError, match="ACCOUNT_LIMIT_EXCEEDED"):
            lifecycle.ensure_account("dev")

    def test_wait_until_active_polls(self, config):
        config.active_wait_attempts = 5
        plane = MagicMock()
        plane.describe_account.side_effect = [
            None,
            {"Id": "222222222222", "Status": "PENDING"},
            {"Id": "222222222222", "Status": "ACTIVE"},
        ]
        lifecycle = AccountLifecycleManager(plane, config, sleep=no_sleep)

        lifecycle.wait_until_active("222222222222")

        assert plane.describe_account.call_count == 3


class TestStatus:
    """Test status probes"""

    def test_statuses(self, lifecycle, cloud):
        active = cloud.add_account("a", "a@example.com")
        suspended = cloud.add_account("b", "b@example.com", status="SUSPENDED")

        assert lifecycle.status(active) == AccountStatus.ACTIVE
        assert lifecycle.status(suspended) == AccountStatus.SUSPENDED
        assert lifecycle.status("999999999999") == AccountStatus.UNKNOWN

    def test_client_error_is_unknown(self, config):
        plane = MagicMock()
        plane.describe_account.side_effect = client_error("AccessDeniedException")
        lifecycle = AccountLifecycleManager(plane, config)

        assert lifecycle.status("222222222222") == AccountStatus.UNKNOWN

    def test_transient_failure_propagates(self, config):
        plane = MagicMock()
        plane.describe_account.side_effect = TransientFailure("throttled")
        lifecycle = AccountLifecycleManager(plane, config)

        with pytest.raises(TransientFailure):
            lifecycle.status("222222222222")


class TestRequireActive:
    """Test the fail-fast ACTIVE check"""

    def test_reports_every_inactive_account(self, lifecycle, cloud):
        dev = cloud.add_account("static-site-dev", "dev@example.com")
        staging = cloud.add_account("static-site-staging", "staging@example.com", status="SUSPENDED")
        prod = cloud.add_account("static-site-prod", "prod@example.com", status="PENDING_CLOSURE")
        registry = AccountRegistry(
            management=MANAGEMENT_ID,
            accounts={"dev": dev, "staging": staging, "prod": prod},
        )

        with pytest.raises(InvalidStateError) as exc_info:
            lifecycle.require_active(registry, ["dev", "staging", "prod"])

        message = str(exc_info.value)
        assert "staging" in message and "SUSPENDED" in message
        assert "prod" in message and "PENDING_CLOSURE" in message
        assert exc_info.value.remediation == "org-bootstrap organization"

    def test_all_active(self, lifecycle, cloud):
        dev = cloud.add_account("static-site-dev", "dev@example.com")
        registry = AccountRegistry(management=MANAGEMENT_ID, accounts={"dev": dev})

        assert lifecycle.require_active(registry, ["dev"]) == {"dev": AccountStatus.ACTIVE}


class TestPlacement:
    """Test OU placement"""

    def test_move_failure_only_warns(self, config):
        plane = MagicMock()
        plane.parent_of.return_value = "r-root"
        plane.move_account.side_effect = client_error("ConcurrentModificationException")
        lifecycle = AccountLifecycleManager(plane, config)

        assert lifecycle.place_in_ou("222222222222", "ou-project") is False

    def test_already_placed(self, lifecycle, cloud):
        account_id = cloud.add_account("a", "a@example.com")
        cloud.parents[account_id] = "ou-project"

        assert lifecycle.place_in_ou(account_id, "ou-project") is True
        assert cloud.mutations("move_account") == []


class TestVerifyAccess:
    """Test cross-account role check"""

    def test_success(self, lifecycle, cloud):
        account_id = cloud.add_account("a", "a@example.com")
        assert lifecycle.verify_access(account_id) is True

    def test_access_denied(self, config):
        plane = MagicMock()
        plane.assume_account.side_effect = client_error("AccessDenied")
        lifecycle = AccountLifecycleManager(plane, config)

        assert lifecycle.verify_access("222222222222") is False

    def test_interrupt_propagates(self, config):
        plane = MagicMock()
        plane.assume_account.side_effect = InterruptedRun("Received signal 15")
        lifecycle = AccountLifecycleManager(plane, config)

        with pytest.raises(InterruptedRun):
            lifecycle.verify_access("222222222222")
