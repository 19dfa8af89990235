# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Account Registry

Persisted record of which accounts exist: the management account plus one
member account per environment. Read at the start of every stage that needs
account IDs and written once after account provisioning.

Schema version 1 is the legacy flat file:

    {"management": "111111111111", "dev": "222222222222", ...}

Schema version 2 nests member accounts and carries the version explicitly.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError, InvalidStateError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


def _check_account_id(value: str) -> str:
    if not (isinstance(value, str) and len(value) == 12 and value.isdigit()):
        raise ValueError(f"account ID must be 12 digits, got '{value}'")
    return value


class AccountRegistry(BaseModel):
    """Environment name -> account ID, plus the management account"""

    schema_version: int = Field(default=SCHEMA_VERSION)
    management: str = Field(description="Management account ID")
    accounts: Dict[str, str] = Field(
        default_factory=dict, description="Environment name -> member account ID"
    )

    @field_validator("management")
    @classmethod
    def check_management(cls, v: str) -> str:
        return _check_account_id(v)

    @field_validator("accounts")
    @classmethod
    def check_accounts(cls, v: Dict[str, str]) -> Dict[str, str]:
        for account_id in v.values():
            _check_account_id(account_id)
        return v

    def account_for(self, environment: str) -> Optional[str]:
        return self.accounts.get(environment)

    def require(self, environment: str) -> str:
        account_id = self.accounts.get(environment)
        if not account_id:
            raise InvalidStateError(
                f"No account recorded for environment '{environment}'",
                remediation="org-bootstrap organization",
            )
        return account_id


def migrate(data: dict) -> dict:
    """Upgrade a raw registry document to the current schema version"""
    version = data.get("schema_version", 1)

    if version == 1:
        management = data.get("management")
        accounts = {
            k: v
            for k, v in data.items()
            if k not in ("management", "schema_version") and v
        }
        logger.info("Migrating account registry from schema version 1")
        data = {
            "schema_version": 2,
            "management": management,
            "accounts": accounts,
        }
        version = 2

    if version != SCHEMA_VERSION:
        raise ConfigurationError(
            f"Unsupported account registry schema version {version} "
            f"(expected {SCHEMA_VERSION})"
        )
    return data


def load_registry(path: Path) -> Optional[AccountRegistry]:
    """
    Load the account registry

    Args:
        path: Registry file path

    Returns:
        AccountRegistry, or None when the file does not exist

    Raises:
        ConfigurationError: If the file exists but cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"No account registry at {path}")
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read account registry {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Account registry {path} must contain an object")

    try:
        return AccountRegistry.model_validate(migrate(data))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid account registry {path}: {e}")


def save_registry(path: Path, registry: AccountRegistry) -> None:
    """Write the registry atomically (temp file + rename)"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".accounts-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(registry.model_dump_json(indent=2))
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    logger.info(f"Saved account registry to {path}")
