# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Bootstrap Exceptions

Error taxonomy shared by the reconciler, lifecycle manager, backend
provisioner, destroy path and pipeline executor.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence


class BootstrapError(Exception):
    """Base exception for all bootstrap errors."""

    pass


class ConfigurationError(BootstrapError):
    """
    Raised when the bootstrap is misconfigured.

    Examples:
        - GITHUB_REPO not in owner/name form
        - Missing project name
        - Key deletion window below the provider minimum
    """

    pass


class TransientFailure(BootstrapError):
    """
    Raised for throttling, timeouts and connection failures.

    Retried by the stage-level policy of the pipeline executor, never
    inside the reconciler.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ConflictError(BootstrapError):
    """
    Raised when creation reported a naming conflict and the adopt
    fallback could not locate the resource either.
    """

    def __init__(self, resource: str, remote_error: str, remediation: str = ""):
        message = f"Conflict on {resource}: {remote_error}"
        if remediation:
            message = f"{message}\n  Remediation: {remediation}"
        super().__init__(message)
        self.resource = resource
        self.remote_error = remote_error
        self.remediation = remediation


class InvalidStateError(BootstrapError):
    """
    Raised when a resource is in a state the pipeline cannot work with.

    Examples:
        - Account status UNKNOWN or SUSPENDED where ACTIVE is required
        - State bucket in the wrong region without the recreate flag
        - Account registry missing before the foundation stage
    """

    def __init__(self, message: str, remediation: str = ""):
        full = f"{message}\n  Remediation: {remediation}" if remediation else message
        super().__init__(full)
        self.remediation = remediation


class WaitTimeoutError(BootstrapError):
    """Raised when a bounded poll exhausts its attempts."""

    pass


class DrainError(BootstrapError):
    """Raised when one or more object versions could not be deleted from a bucket."""

    def __init__(self, bucket: str, failures: Sequence[dict]):
        super().__init__(
            f"Failed to delete {len(failures)} object version(s) from {bucket}; "
            "bucket was not deleted"
        )
        self.bucket = bucket
        self.failures = list(failures)


class TerraformError(BootstrapError):
    """Raised when a Terraform/OpenTofu invocation exits non-zero."""

    def __init__(self, command: List[str], returncode: int, output: str = ""):
        super().__init__(
            f"Command failed with exit code {returncode}: {' '.join(command)}"
        )
        self.command = command
        self.returncode = returncode
        self.output = output


class InterruptedRun(BootstrapError):
    """Raised when the run receives SIGINT or SIGTERM."""

    pass


@dataclass
class ConfigurationDegraded:
    """
    Warning record for a post-creation hardening step that failed.

    The resource is still considered usable.
    """

    resource: str
    step: str
    message: str

    def __str__(self) -> str:
        return f"{self.resource}: {self.step} failed ({self.message})"
