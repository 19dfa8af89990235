# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Terraform Module

Runs OpenTofu or Terraform against the backend module: clean init, import of
pre-existing resources, plan to a file, apply, and output collection.
Credentials are handed to the subprocess through its environment; the
parent process environment is never modified.
"""

import json
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .exceptions import ConfigurationError, TerraformError

logger = logging.getLogger(__name__)

# Backend module resource addresses
BUCKET_ADDRESS = "aws_s3_bucket.terraform_state"
KEY_ADDRESS = "aws_kms_key.terraform_state"
ALIAS_ADDRESS = "aws_kms_alias.terraform_state"
TABLE_ADDRESS = "aws_dynamodb_table.terraform_locks"


def detect_binary() -> str:
    """Prefer tofu, fall back to terraform"""
    for candidate in ("tofu", "terraform"):
        if shutil.which(candidate):
            return candidate
    raise ConfigurationError(
        "Neither tofu nor terraform found on PATH; install OpenTofu or Terraform"
    )


class TerraformRunner:
    """Invokes the infrastructure tool in the backend module directory"""

    def __init__(
        self,
        working_dir: Path,
        log_dir: Path,
        binary: Optional[str] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """
        Initialize runner

        Args:
            working_dir: Directory containing the backend module
            log_dir: Directory receiving terraform-*.log files
            binary: tofu or terraform (auto-detected when omitted)
            run: subprocess.run replacement for tests
        """
        self.working_dir = Path(working_dir)
        self.log_dir = Path(log_dir)
        self.binary = binary
        self._run_process = run

    def _command(self, args: Sequence[str]) -> List[str]:
        if self.binary is None:
            self.binary = detect_binary()
        return [self.binary, *args]

    def run(
        self,
        args: Sequence[str],
        env: Dict[str, str],
        log_name: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run one tool command

        Args:
            args: Arguments after the binary name
            env: Variables overlaid on the current environment
            log_name: Log file name under log_dir
            check: Raise TerraformError on a non-zero exit code

        Returns:
            Completed process with captured text output
        """
        command = self._command(args)
        logger.debug(f"Running: {' '.join(command)}")

        result = self._run_process(
            command,
            cwd=str(self.working_dir),
            env={**os.environ, **env, "TF_IN_AUTOMATION": "1"},
            capture_output=True,
            text=True,
        )

        output = (result.stdout or "") + (result.stderr or "")
        if log_name:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_dir / log_name, "a", encoding="utf-8") as f:
                f.write(f"$ {' '.join(command)}\n{output}\n")

        if check and result.returncode != 0:
            logger.error(f"{' '.join(command[:2])} failed:\n{output.strip()}")
            raise TerraformError(command, result.returncode, output)
        return result

    def clean(self) -> None:
        """Remove local state so each environment starts from an empty state file"""
        shutil.rmtree(self.working_dir / ".terraform", ignore_errors=True)
        for name in ("terraform.tfstate", "terraform.tfstate.backup"):
            path = self.working_dir / name
            if path.exists():
                path.unlink()

    def init(self, env: Dict[str, str], environment: str) -> None:
        self.clean()
        self.run(
            ["init", "-reconfigure", "-input=false", "-no-color"],
            env,
            log_name=f"terraform-{environment}-init.log",
        )

    def import_resources(
        self,
        imports: Sequence[Tuple[str, str]],
        variables: Dict[str, str],
        env: Dict[str, str],
        environment: str,
    ) -> List[str]:
        """
        Import pre-existing resources not yet in state

        Failures are returned as warning messages, not raised; plan and
        apply surface any real conflict.

        Args:
            imports: (resource address, import ID) pairs
            variables: Module input variables
            env: Subprocess environment overlay
            environment: Environment name, used for log file names

        Returns:
            Warning messages for imports that failed
        """
        warnings = []
        log_name = f"terraform-{environment}-import.log"
        for address, import_id in imports:
            shown = self.run(["state", "show", "-no-color", address], env, check=False)
            if shown.returncode == 0:
                logger.info(f"{address} already in state")
                continue

            result = self.run(
                ["import", "-input=false", "-no-color", *_var_args(variables), address, import_id],
                env,
                log_name=log_name,
                check=False,
            )
            if result.returncode == 0:
                logger.info(f"Imported {address} ({import_id})")
            else:
                message = f"Import of {address} ({import_id}) failed; see {log_name}"
                logger.warning(message)
                warnings.append(message)
        return warnings

    def plan(self, variables: Dict[str, str], env: Dict[str, str], environment: str) -> str:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        plan_file = str((self.log_dir / f"backend-{environment}.tfplan").resolve())
        self.run(
            ["plan", "-input=false", "-no-color", *_var_args(variables), f"-out={plan_file}"],
            env,
            log_name=f"terraform-{environment}-plan.log",
        )
        return plan_file

    def apply(self, plan_file: str, env: Dict[str, str], environment: str) -> None:
        self.run(
            ["apply", "-input=false", "-no-color", "-auto-approve", plan_file],
            env,
            log_name=f"terraform-{environment}-apply.log",
        )

    def outputs(self, env: Dict[str, str]) -> Dict[str, str]:
        result = self.run(["output", "-json"], env)
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError:
            logger.warning("Could not parse tool outputs")
            return {}
        return {name: entry.get("value") for name, entry in raw.items()}

    def apply_backend(
        self,
        variables: Dict[str, str],
        imports: Sequence[Tuple[str, str]],
        env: Dict[str, str],
        environment: str,
    ) -> Tuple[Dict[str, str], List[str]]:
        """
        init, import, plan and apply the backend module for one environment

        Returns:
            Tuple of (module outputs, import warnings)
        """
        self.init(env, environment)
        warnings = self.import_resources(imports, variables, env, environment)
        plan_file = self.plan(variables, env, environment)
        self.apply(plan_file, env, environment)
        return self.outputs(env), warnings


def _var_args(variables: Dict[str, str]) -> List[str]:
    return [f"-var={name}={value}" for name, value in variables.items()]
