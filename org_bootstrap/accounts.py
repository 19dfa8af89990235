# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Accounts Module

Member account resource kind and the lifecycle manager that decides
whether a recorded account can be reused, must be replaced, or blocks the
run.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from .aws import ControlPlane, error_code, error_message
from .config import BootstrapConfig
from .exceptions import BootstrapError, InterruptedRun, InvalidStateError
from .polling import PollStatus, poll_until
from .reconciler import Outcome, ResourceKind, reconcile
from .registry import AccountRegistry

logger = logging.getLogger(__name__)

CONFLICT_FAILURE_REASONS = {"EMAIL_ALREADY_EXISTS", "DUPLICATE_ACCOUNT_NAME"}

DRY_RUN_ACCOUNT_ID = "123456789012"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING_CLOSURE = "PENDING_CLOSURE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AccountStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def usable(self) -> bool:
        return self == AccountStatus.ACTIVE

    @property
    def closed(self) -> bool:
        return self in (AccountStatus.SUSPENDED, AccountStatus.PENDING_CLOSURE)


def account_status(account: Dict) -> AccountStatus:
    """Status of an Organizations account record ("State" on newer APIs)"""
    return AccountStatus.parse(account.get("Status") or account.get("State"))


class AccountCreationConflict(BootstrapError):
    """Account creation failed because the email or name is already taken."""

    def __init__(self, reason: str):
        super().__init__(f"Account creation failed: {reason}")
        self.reason = reason


class AccountKind(ResourceKind):
    """A member account keyed by its contact email"""

    kind = "account"
    conflict_codes = frozenset({"DuplicateAccountException"})
    remediation = "Check Organizations for an account using this email outside the organization"

    def __init__(
        self,
        plane: ControlPlane,
        name: str,
        email: str,
        tags: List[Dict],
        poll_interval: float = 5.0,
        poll_attempts: int = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(plane)
        self.name = name
        self.email = email
        self.tags = tags
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.sleep = sleep

    @property
    def key(self) -> str:
        return self.email

    def probe(self) -> Optional[Dict]:
        for account in self.plane.list_accounts():
            if account.get("Email") == self.email:
                return account
        return None

    def adopt_probe(self) -> Optional[Dict]:
        email = self.email.lower()
        for account in self.plane.list_accounts():
            if not account_status(account).usable:
                continue
            if account.get("Name") == self.name or account.get("Email", "").lower() == email:
                return account
        return None

    def is_conflict(self, error: Exception) -> bool:
        return isinstance(error, AccountCreationConflict) or super().is_conflict(error)

    def create(self) -> Dict:
        request = self.plane.create_account(self.name, self.email, self.tags)
        request_id = request["Id"]
        logger.info(f"Account creation requested for {self.name} ({request_id})")

        def check():
            status = self.plane.describe_create_account_status(request_id)
            state = status.get("State")
            if state == "SUCCEEDED":
                return PollStatus.SUCCESS, status
            if state == "FAILED":
                return PollStatus.FAILED, status
            return PollStatus.PENDING, status

        result = poll_until(
            check,
            max_attempts=self.poll_attempts,
            interval=self.poll_interval,
            description=f"account creation for {self.name}",
            sleep=self.sleep,
        ).raise_on_timeout(f"account creation for {self.name}")

        if result.status == PollStatus.FAILED:
            reason = result.value.get("FailureReason", "UNKNOWN")
            if reason in CONFLICT_FAILURE_REASONS:
                raise AccountCreationConflict(reason)
            raise BootstrapError(f"Account creation for {self.name} failed: {reason}")

        account_id = result.value["AccountId"]
        logger.info(f"Created account {self.name}: {account_id}")
        return self.plane.describe_account(account_id) or {
            "Id": account_id,
            "Name": self.name,
            "Email": self.email,
            "Status": AccountStatus.ACTIVE.value,
        }

    def placeholder(self) -> Dict:
        return {"Id": DRY_RUN_ACCOUNT_ID, "Name": self.name, "Email": self.email}


@dataclass
class AccountHandle:
    """Account chosen for one environment"""

    environment: str
    account_id: str
    name: str
    email: str
    outcome: Outcome
    replaced_account_id: Optional[str] = None


class AccountLifecycleManager:
    """Status probes, replacement, activation waits and OU placement for member accounts"""

    def __init__(
        self,
        plane: ControlPlane,
        config: BootstrapConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.plane = plane
        self.config = config
        self.sleep = sleep
        self.clock = clock

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def status(self, account_id: str) -> AccountStatus:
        """
        Determine an account's lifecycle status

        Throttling and connection failures propagate as TransientFailure;
        any other lookup failure yields UNKNOWN.
        """
        try:
            account = self.plane.describe_account(account_id)
        except ClientError as e:
            logger.warning(f"Cannot describe account {account_id}: {error_message(e)}")
            return AccountStatus.UNKNOWN
        if account is None:
            return AccountStatus.UNKNOWN
        return account_status(account)

    def account_kind(self, environment: str, suffix: Optional[str] = None) -> AccountKind:
        return AccountKind(
            self.plane,
            name=self.config.account_name(environment, suffix),
            email=self.config.account_email(environment, suffix),
            tags=self.config.tags(environment),
            poll_interval=self.config.account_poll_interval,
            poll_attempts=self.config.account_poll_attempts,
            sleep=self.sleep,
        )

    def ensure_account(
        self,
        environment: str,
        recorded_id: Optional[str] = None,
        ou_id: Optional[str] = None,
    ) -> AccountHandle:
        """
        Resolve the account for an environment, creating or replacing it if needed

        Args:
            environment: Environment name
            recorded_id: Account ID from the registry, if any
            ou_id: OU the account should live in

        Returns:
            AccountHandle for an ACTIVE account

        Raises:
            InvalidStateError: If the recorded account's status is UNKNOWN
        """
        if self.dry_run:
            if recorded_id:
                logger.info(f"[DRY RUN] Would verify {environment} account {recorded_id}")
                return AccountHandle(
                    environment,
                    recorded_id,
                    self.config.account_name(environment),
                    self.config.account_email(environment),
                    Outcome.PLANNED,
                )
            result = reconcile(self.account_kind(environment), dry_run=True)
            return self._handle(environment, result.resource, result.outcome)

        if recorded_id:
            status = self.status(recorded_id)
            if status.usable:
                account = self.plane.describe_account(recorded_id)
                logger.info(f"Reusing {environment} account {recorded_id}")
                handle = self._handle(environment, account, Outcome.FOUND)
            elif status.closed:
                handle = self.replace_account(environment, recorded_id, status)
            else:
                raise InvalidStateError(
                    f"Cannot determine status of {environment} account {recorded_id}",
                    remediation=f"aws organizations describe-account --account-id {recorded_id}",
                )
        else:
            result = reconcile(self.account_kind(environment))
            account = result.unwrap()
            status = account_status(account)
            if status.closed:
                handle = self.replace_account(environment, account["Id"], status)
            else:
                handle = self._handle(environment, account, result.outcome)

        if handle.outcome in (Outcome.CREATED, Outcome.ADOPTED):
            self.wait_until_active(handle.account_id)
        if ou_id:
            self.place_in_ou(handle.account_id, ou_id)
        return handle

    def replace_account(
        self, environment: str, unusable_id: str, status: AccountStatus
    ) -> AccountHandle:
        """Adopt another ACTIVE account for the environment or create a timestamped one"""
        logger.warning(
            f"{environment} account {unusable_id} is {status.value}; looking for a replacement"
        )

        existing = self.find_active_account(environment, exclude={unusable_id})
        if existing:
            logger.info(f"Adopting ACTIVE account {existing['Id']} ({existing['Name']})")
            handle = self._handle(environment, existing, Outcome.ADOPTED)
        else:
            suffix = self.clock().strftime("%Y%m%d%H%M%S")
            result = reconcile(self.account_kind(environment, suffix))
            handle = self._handle(environment, result.unwrap(), result.outcome)
            logger.info(f"Replacement account for {environment}: {handle.account_id}")

        handle.replaced_account_id = unusable_id
        return handle

    def find_active_account(
        self, environment: str, exclude: Iterable[str] = ()
    ) -> Optional[Dict]:
        """Find an ACTIVE account named {short}-{env} or {short}-{env}-<suffix>"""
        base = self.config.account_name(environment)
        excluded = set(exclude)
        for account in self.plane.list_accounts():
            name = account.get("Name", "")
            if account["Id"] in excluded or not account_status(account).usable:
                continue
            if name == base or name.startswith(f"{base}-"):
                return account
        return None

    def wait_until_active(self, account_id: str) -> None:
        """Poll until the account reports ACTIVE; fails on timeout or closure"""

        def check():
            status = self.status(account_id)
            if status.usable:
                return PollStatus.SUCCESS, status
            if status.closed:
                return PollStatus.FAILED, status
            return PollStatus.PENDING, status

        result = poll_until(
            check,
            max_attempts=self.config.active_wait_attempts,
            interval=self.config.active_wait_interval,
            description=f"account {account_id} to become ACTIVE",
            sleep=self.sleep,
        ).raise_on_timeout(f"account {account_id} to become ACTIVE")

        if result.status == PollStatus.FAILED:
            raise InvalidStateError(f"Account {account_id} is {result.value.value}")

    def place_in_ou(self, account_id: str, ou_id: str) -> bool:
        """Move the account under the OU if it lives elsewhere; failures only warn"""
        try:
            parent_id = self.plane.parent_of(account_id)
            if parent_id == ou_id:
                logger.debug(f"Account {account_id} already in {ou_id}")
                return True
            logger.info(f"Moving account {account_id} from {parent_id} to {ou_id}")
            self.plane.move_account(account_id, parent_id, ou_id)
            return True
        except ClientError as e:
            logger.warning(f"Could not move account {account_id} to {ou_id}: {error_message(e)}")
            return False

    def require_active(
        self, registry: AccountRegistry, environments: Iterable[str]
    ) -> Dict[str, AccountStatus]:
        """
        Confirm every environment's account is ACTIVE

        Raises:
            InvalidStateError: If any account is missing or not ACTIVE
        """
        statuses = {}
        problems = []
        for environment in environments:
            account_id = registry.require(environment)
            if self.dry_run:
                logger.info(f"[DRY RUN] Would verify {environment} account {account_id} is ACTIVE")
                statuses[environment] = AccountStatus.ACTIVE
                continue
            status = self.status(account_id)
            statuses[environment] = status
            if not status.usable:
                problems.append(f"{environment} ({account_id}) is {status.value}")
            else:
                logger.info(f"{environment} account {account_id} is ACTIVE")

        if problems:
            raise InvalidStateError(
                "Accounts not ACTIVE: " + ", ".join(problems),
                remediation="org-bootstrap organization",
            )
        return statuses

    def verify_access(self, account_id: str) -> bool:
        """Check the operator role in the account can be assumed"""
        try:
            with self.plane.assume_account(
                account_id, role_name=self.config.org_access_role_name
            ) as member:
                if not self.dry_run:
                    member.caller_identity()
            return True
        except InterruptedRun:
            raise
        except (ClientError, BootstrapError) as e:
            code = error_code(e) if isinstance(e, ClientError) else type(e).__name__
            logger.warning(f"Cannot assume {self.config.org_access_role_name} in {account_id}: {code}")
            return False

    def _handle(self, environment: str, account: Dict, outcome: Outcome) -> AccountHandle:
        return AccountHandle(
            environment=environment,
            account_id=account["Id"],
            name=account.get("Name", self.config.account_name(environment)),
            email=account.get("Email", self.config.account_email(environment)),
            outcome=outcome,
        )
