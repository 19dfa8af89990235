# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Configuration Module

Typed bootstrap configuration and the deterministic naming conventions
derived from it.

Usage:
    from org_bootstrap.config import load_config

    config = load_config("bootstrap.yaml", dry_run=True)
    config.role_name("dev")  # GitHubActions-Static-Site-Dev-Role
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MIN_KEY_DELETION_WINDOW_DAYS = 7

OIDC_PROVIDER_URL = "https://token.actions.githubusercontent.com"
OIDC_PROVIDER_HOST = "token.actions.githubusercontent.com"
OIDC_CLIENT_ID = "sts.amazonaws.com"
OIDC_THUMBPRINT = "6938fd4d98bab03faadb97b34396831e3780aea1"

# Environment variable name -> config field
ENVIRONMENT_VARIABLES = {
    "PROJECT_NAME": "project_name",
    "PROJECT_SHORT_NAME": "project_short_name",
    "GITHUB_REPO": "github_repo",
    "AWS_DEFAULT_REGION": "region",
    "MANAGEMENT_ACCOUNT_ID": "management_account_id",
    "DRY_RUN": "dry_run",
    "VERBOSE": "verbose",
    "SKIP_VERIFICATION": "skip_verification",
    "RECREATE_BACKENDS": "recreate_backends",
}


def title_case(name: str) -> str:
    """Capitalize each hyphen-separated word: static-site -> Static-Site"""
    return "-".join(part[:1].upper() + part[1:] for part in name.split("-"))


class BootstrapConfig(BaseModel):
    """Bootstrap configuration"""

    project_name: str = Field(description="Project name used in resource names")
    project_short_name: str = Field(
        description="Short project name used in account and role names"
    )
    github_repo: str = Field(description="GitHub repository in owner/name form")
    region: str = Field(default="us-east-1", description="Target AWS region")
    management_account_id: Optional[str] = Field(
        default=None, description="Management account ID (discovered when omitted)"
    )
    account_email_domain: str = Field(
        default="example.com", description="Domain for member account emails"
    )
    environments: List[str] = Field(
        default_factory=lambda: ["dev", "staging", "prod"],
        description="Environments, one member account each",
    )
    workloads_ou_name: str = Field(
        default="Workloads", description="Top-level OU under the root"
    )
    project_ou_name: Optional[str] = Field(
        default=None, description="Project OU under the workloads OU"
    )
    output_dir: Path = Field(
        default=Path("output"), description="Directory for reports and descriptors"
    )
    registry_path: Optional[Path] = Field(
        default=None, description="Account registry file (default <output_dir>/accounts.json)"
    )
    terraform_dir: Path = Field(
        default=Path("terraform/bootstrap"),
        description="Terraform module that materializes a state backend",
    )
    terraform_binary: Optional[str] = Field(
        default=None, description="tofu or terraform (auto-detected when omitted)"
    )
    org_access_role_name: str = Field(
        default="OrganizationAccountAccessRole",
        description="Cross-account operator role in member accounts",
    )
    console_role_name: str = Field(
        default="OrganizationAccountAccessRole",
        description="Role used in generated console switch-role URLs",
    )

    dry_run: bool = False
    verbose: bool = False
    skip_verification: bool = False
    recreate_backends: bool = False
    strict_hardening: bool = Field(
        default=False,
        description="Treat failed bucket hardening steps as fatal instead of warnings",
    )

    account_poll_interval: float = 5.0
    account_poll_attempts: int = 60
    active_wait_interval: float = 10.0
    active_wait_attempts: int = 30
    propagation_delay: float = 30.0
    stage_attempts: int = 3
    key_deletion_window_days: int = MIN_KEY_DELETION_WINDOW_DAYS

    @field_validator(
        "dry_run", "verbose", "skip_verification", "recreate_backends", mode="before"
    )
    @classmethod
    def parse_flag(cls, v: Any) -> bool:
        """Parse bool flags from strings such as 'true' or '1'"""
        if isinstance(v, str):
            return v.strip().lower() in ("true", "1", "yes")
        return bool(v)

    @field_validator("github_repo")
    @classmethod
    def check_github_repo(cls, v: str) -> str:
        parts = v.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"github_repo must be owner/name, got '{v}'")
        return v

    @field_validator("management_account_id")
    @classmethod
    def check_account_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not (len(v) == 12 and v.isdigit()):
            raise ValueError(f"management_account_id must be 12 digits, got '{v}'")
        return v

    @field_validator("key_deletion_window_days")
    @classmethod
    def check_deletion_window(cls, v: int) -> int:
        if v < MIN_KEY_DELETION_WINDOW_DAYS or v > 30:
            raise ValueError("key_deletion_window_days must be between 7 and 30")
        return v

    @field_validator("environments")
    @classmethod
    def check_environments(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one environment is required")
        if len(set(v)) != len(v):
            raise ValueError("environments must be unique")
        return v

    # Naming conventions

    @property
    def project_ou(self) -> str:
        return self.project_ou_name or self.github_repo.split("/")[1]

    @property
    def registry_file(self) -> Path:
        return self.registry_path or self.output_dir / "accounts.json"

    @property
    def role_prefix(self) -> str:
        return f"GitHubActions-{title_case(self.project_short_name)}"

    def account_name(self, environment: str, suffix: Optional[str] = None) -> str:
        name = f"{self.project_short_name}-{environment}"
        return f"{name}-{suffix}" if suffix else name

    def account_email(self, environment: str, suffix: Optional[str] = None) -> str:
        local = f"aws+{self.project_short_name}-{environment}"
        if suffix:
            local = f"{local}-{suffix}"
        return f"{local}@{self.account_email_domain}"

    def role_name(self, environment: str) -> str:
        return f"{self.role_prefix}-{title_case(environment)}-Role"

    def state_bucket_name(self, environment: str, account_id: str) -> str:
        return f"{self.project_name}-state-{environment}-{account_id}"

    def lock_table_name(self, environment: str) -> str:
        return f"{self.project_name}-locks-{environment}"

    def key_alias(self, environment: str, account_id: str) -> str:
        return f"alias/{self.state_bucket_name(environment, account_id)}"

    def central_bucket_name(self, management_account_id: str) -> str:
        return f"{self.project_name}-terraform-state-{management_account_id}"

    def state_key(self, environment: str) -> str:
        return f"environments/{environment}/terraform.tfstate"

    def tags(self, environment: Optional[str] = None) -> List[Dict[str, str]]:
        """Standard resource tags in the Key/Value list form AWS APIs take"""
        tags = [
            {"Key": "ManagedBy", "Value": "bootstrap"},
            {"Key": "Project", "Value": self.project_name},
        ]
        if environment:
            tags.insert(0, {"Key": "Environment", "Value": environment})
        return tags


def load_config(
    config_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> BootstrapConfig:
    """
    Build configuration from a YAML file, environment variables and overrides

    Later sources win: file, then environment, then overrides. Overrides
    set to None are ignored so unset CLI options do not mask other sources.

    Args:
        config_file: Optional path to a YAML file
        environ: Environment mapping (defaults to os.environ)
        **overrides: Explicit field values, usually from CLI options

    Returns:
        Validated BootstrapConfig

    Raises:
        ConfigurationError: If the merged configuration is invalid
    """
    data: Dict[str, Any] = {}

    if config_file:
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {config_file}: {e}")
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file {config_file} must contain a mapping")
        data.update(loaded)

    environ = os.environ if environ is None else environ
    for variable, field in ENVIRONMENT_VARIABLES.items():
        value = environ.get(variable)
        if value:
            data[field] = value

    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = BootstrapConfig.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {errors}")

    logger.debug(
        f"Loaded config for {config.project_name} ({config.github_repo}) in {config.region}"
    )
    return config
