# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Unit tests for the Terraform/OpenTofu runner
"""

import os
import subprocess
from unittest.mock import patch

import pytest

from org_bootstrap.exceptions import ConfigurationError, TerraformError
from org_bootstrap.terraform import BUCKET_ADDRESS, TABLE_ADDRESS, TerraformRunner, detect_binary


class RecordingRun:
    """subprocess.run replacement answering by subcommand"""

    def __init__(self, returncodes=None, stdout=None):
        self.commands = []
        self.envs = []
        self.returncodes = returncodes or {}
        self.stdout = stdout or {}

    def __call__(self, command, cwd=None, env=None, capture_output=False, text=False):
        self.commands.append(command)
        self.envs.append(env)
        key = " ".join(command[1:3])
        subcommand = command[1]
        returncode = self.returncodes.get(key, self.returncodes.get(subcommand, 0))
        return subprocess.CompletedProcess(
            command, returncode, stdout=self.stdout.get(subcommand, ""), stderr=""
        )

    def subcommands(self):
        return [c[1] for c in self.commands]


VARIABLES = {"environment": "dev", "aws_account_id": "222222222222"}


class TestDetectBinary:
    """Test tool detection"""

    @patch("org_bootstrap.terraform.shutil.which")
    def test_prefers_tofu(self, mock_which):
        mock_which.side_effect = lambda name: f"/usr/bin/{name}"
        assert detect_binary() == "tofu"

    @patch("org_bootstrap.terraform.shutil.which")
    def test_falls_back_to_terraform(self, mock_which):
        mock_which.side_effect = lambda name: "/usr/bin/terraform" if name == "terraform" else None
        assert detect_binary() == "terraform"

    @patch("org_bootstrap.terraform.shutil.which", return_value=None)
    def test_neither_installed(self, mock_which):
        with pytest.raises(ConfigurationError):
            detect_binary()


class TestTerraformRunner:
    """Test command sequencing, logging and error handling"""

    def test_apply_backend_sequence(self, tmp_path):
        run = RecordingRun(
            returncodes={"state show": 1},
            stdout={"output": '{"state_bucket": {"value": "bucket-1"}}'},
        )
        workdir = tmp_path / "module"
        workdir.mkdir()
        (workdir / "terraform.tfstate").write_text("{}")
        runner = TerraformRunner(workdir, tmp_path / "logs", binary="tofu", run=run)

        outputs, warnings = runner.apply_backend(
            VARIABLES, [(BUCKET_ADDRESS, "bucket-1")], {"AWS_ACCESS_KEY_ID": "AKIA"}, "dev"
        )

        assert run.subcommands() == ["init", "state", "import", "plan", "apply", "output"]
        assert run.commands[0][:2] == ["tofu", "init"]
        assert "-reconfigure" in run.commands[0]
        assert outputs == {"state_bucket": "bucket-1"}
        assert warnings == []
        assert not (workdir / "terraform.tfstate").exists()

        import_command = run.commands[2]
        assert "-var=environment=dev" in import_command
        assert import_command[-2:] == [BUCKET_ADDRESS, "bucket-1"]

        plan_command = run.commands[3]
        plan_file = str((tmp_path / "logs" / "backend-dev.tfplan").resolve())
        assert f"-out={plan_file}" in plan_command
        assert run.commands[4][-1] == plan_file
        assert "-auto-approve" in run.commands[4]

        for env in run.envs:
            assert env["AWS_ACCESS_KEY_ID"] == "AKIA"
            assert env["TF_IN_AUTOMATION"] == "1"
        assert (tmp_path / "logs" / "terraform-dev-apply.log").exists()

    def test_resources_already_in_state_not_reimported(self, tmp_path):
        run = RecordingRun()
        runner = TerraformRunner(tmp_path, tmp_path / "logs", binary="tofu", run=run)

        warnings = runner.import_resources([(TABLE_ADDRESS, "locks")], VARIABLES, {}, "dev")

        assert warnings == []
        assert run.subcommands() == ["state"]

    def test_failed_import_is_a_warning(self, tmp_path):
        run = RecordingRun(returncodes={"state show": 1, "import": 1})
        runner = TerraformRunner(tmp_path, tmp_path / "logs", binary="tofu", run=run)

        warnings = runner.import_resources([(TABLE_ADDRESS, "locks")], VARIABLES, {}, "dev")

        assert len(warnings) == 1
        assert TABLE_ADDRESS in warnings[0]

    def test_failed_apply_raises(self, tmp_path):
        run = RecordingRun(returncodes={"apply": 1})
        runner = TerraformRunner(tmp_path, tmp_path / "logs", binary="terraform", run=run)

        with pytest.raises(TerraformError) as exc_info:
            runner.apply_backend(VARIABLES, [], {}, "dev")

        assert exc_info.value.returncode == 1
        assert exc_info.value.command[:2] == ["terraform", "apply"]
        assert "output" not in run.subcommands()

    def test_parent_environment_untouched(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AWS_SESSION_TOKEN", raising=False)
        run = RecordingRun()
        runner = TerraformRunner(tmp_path, tmp_path / "logs", binary="tofu", run=run)

        runner.run(["version"], {"AWS_SESSION_TOKEN": "member-token"})

        assert run.envs[0]["AWS_SESSION_TOKEN"] == "member-token"
        assert "AWS_SESSION_TOKEN" not in os.environ
