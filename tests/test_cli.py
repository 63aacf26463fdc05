"""Tests for the clusternet CLI."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from clusternet.cli import cli
from openstack_mock import MockOpenStackContext

DOCUMENT = {
    "apiVersion": "clusternet/v1alpha1",
    "kind": "ClusterNetwork",
    "metadata": {"name": "demo"},
    "spec": {
        "nodeCidr": "10.6.0.0/24",
        "externalNetworkId": "ext-net",
        "apiServerLoadBalancerFloatingIP": "172.24.4.10",
        "apiServerLoadBalancerPort": 6443,
        "managedAPIServerLoadBalancer": True,
        "managedSecurityGroups": True,
    },
    "machines": [{"name": "demo-cp-0", "controlPlane": True, "address": "10.6.0.21"}],
}

BASE_ARGS = ["--cloud", "devstack", "--wait-interval", "0"]


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def spec_file(tmp_path: Path) -> Path:
    path = tmp_path / "demo.yaml"
    path.write_text(yaml.safe_dump(DOCUMENT))
    return path


@pytest.fixture
def status_dir(tmp_path: Path) -> Path:
    path = tmp_path / "status"
    path.mkdir()
    return path


class TestReconcileCommand:
    """Tests for `clusternet reconcile`."""

    def test_reconcile_prints_status(self, runner: CliRunner, spec_file: Path) -> None:
        """A successful pass prints the resulting status."""
        with MockOpenStackContext() as ctx:
            result = runner.invoke(cli, [*BASE_ARGS, "reconcile", str(spec_file)])

            assert result.exit_code == 0, result.output
            assert "apiServerLoadBalancer" in result.output
            assert ctx.connect_calls == ["devstack"]
            assert ctx.state.count("member") == 1

    def test_reconcile_writes_status_file(self, runner: CliRunner, spec_file: Path, status_dir: Path) -> None:
        """--status-dir persists status between invocations."""
        with MockOpenStackContext():
            result = runner.invoke(
                cli, [*BASE_ARGS, "reconcile", str(spec_file), "--status-dir", str(status_dir)]
            )

        assert result.exit_code == 0, result.output
        status = yaml.safe_load((status_dir / "demo.status.yaml").read_text())
        assert status["ready"] is True
        assert status["network"]["apiServerLoadBalancer"]["ip"] == "172.24.4.10"

    def test_cloud_from_environment(self, runner: CliRunner, spec_file: Path) -> None:
        """OS_CLOUD selects the cloud when --cloud is omitted."""
        with MockOpenStackContext() as ctx:
            result = runner.invoke(
                cli, ["--wait-interval", "0", "reconcile", str(spec_file)], env={"OS_CLOUD": "envcloud"}
            )

            assert result.exit_code == 0, result.output
            assert ctx.connect_calls == ["envcloud"]

    def test_cloud_is_required(self, runner: CliRunner, spec_file: Path) -> None:
        """Without --cloud or OS_CLOUD the CLI refuses to run."""
        result = runner.invoke(cli, ["reconcile", str(spec_file)], env={"OS_CLOUD": None})
        assert result.exit_code == 2
        assert "--cloud" in result.output

    def test_failed_pass_exits_nonzero(self, runner: CliRunner, spec_file: Path) -> None:
        """A pass error is reported and fails the command."""
        with MockOpenStackContext() as ctx:
            ctx.state.fail("create_listener")
            result = runner.invoke(cli, [*BASE_ARGS, "reconcile", str(spec_file)])

        assert result.exit_code == 1
        assert "reconcile failed" in result.output

    def test_connection_failure(self, runner: CliRunner, spec_file: Path) -> None:
        """An unknown cloud is reported as a CLI error."""
        with MockOpenStackContext(fail_connect=True):
            result = runner.invoke(cli, [*BASE_ARGS, "reconcile", str(spec_file)])

        assert result.exit_code == 1
        assert "connecting to cloud devstack" in result.output

    def test_invalid_document(self, runner: CliRunner, tmp_path: Path) -> None:
        """Validation errors are printed without connecting."""
        path = tmp_path / "demo.yaml"
        path.write_text("spec:\n  nodeCidr: nope\n")

        with MockOpenStackContext() as ctx:
            result = runner.invoke(cli, [*BASE_ARGS, "reconcile", str(path)])

            assert result.exit_code == 1
            assert "Validation failed" in result.output
            assert ctx.connect_calls == []


class TestDeleteCommand:
    """Tests for `clusternet delete`."""

    def test_delete_requires_confirmation(self, runner: CliRunner, spec_file: Path) -> None:
        """Declining the prompt aborts without touching the cloud."""
        with MockOpenStackContext() as ctx:
            result = runner.invoke(cli, [*BASE_ARGS, "delete", str(spec_file)], input="n\n")

            assert result.exit_code == 1
            assert ctx.connect_calls == []

    def test_delete_after_reconcile(self, runner: CliRunner, spec_file: Path) -> None:
        """Teardown removes the load balancer and groups."""
        with MockOpenStackContext() as ctx:
            runner.invoke(cli, [*BASE_ARGS, "reconcile", str(spec_file)])
            result = runner.invoke(cli, [*BASE_ARGS, "delete", str(spec_file), "--yes"])

            assert result.exit_code == 0, result.output
            assert ctx.state.count("load_balancer") == 0
            assert ctx.state.count("security_group") == 0


class TestMemberCommands:
    """Tests for `clusternet member add/remove`."""

    def test_add_requires_status_dir(self, runner: CliRunner, spec_file: Path) -> None:
        """Membership needs the status of a previous reconcile."""
        result = runner.invoke(
            cli, [*BASE_ARGS, "member", "add", str(spec_file), "demo-cp-1", "10.6.0.22"], env={"STATUS_DIR": None}
        )
        assert result.exit_code == 2

    def test_add_and_remove(self, runner: CliRunner, spec_file: Path, status_dir: Path) -> None:
        """A machine not in the document is added as control plane, then removed."""
        with MockOpenStackContext() as ctx:
            runner.invoke(cli, [*BASE_ARGS, "reconcile", str(spec_file), "--status-dir", str(status_dir)])

            added = runner.invoke(
                cli,
                [*BASE_ARGS, "member", "add", str(spec_file), "demo-cp-1", "10.6.0.22", "--status-dir", str(status_dir)],
            )
            assert added.exit_code == 0, added.output
            assert len(ctx.state.find("member", address="10.6.0.22")) == 1

            removed = runner.invoke(
                cli,
                [*BASE_ARGS, "member", "remove", str(spec_file), "demo-cp-1", "--status-dir", str(status_dir)],
            )
            assert removed.exit_code == 0, removed.output
            assert ctx.state.find("member", address="10.6.0.22") == []

    def test_add_before_reconcile_fails(self, runner: CliRunner, spec_file: Path, status_dir: Path) -> None:
        """Without a load balancer in status the member cannot be added."""
        with MockOpenStackContext():
            result = runner.invoke(
                cli,
                [*BASE_ARGS, "member", "add", str(spec_file), "demo-cp-0", "10.6.0.21", "--status-dir", str(status_dir)],
            )

        assert result.exit_code == 1
        assert "member failed" in result.output


class TestRunCommand:
    """Tests for `clusternet run`."""

    def test_run_exports_configuration(self, runner: CliRunner, tmp_path: Path) -> None:
        """The loop is started with settings passed through the environment."""
        seen: dict[str, str] = {}

        def fake_run() -> None:
            seen.update({key: os.environ[key] for key in ("CLUSTER_NAME", "OS_CLOUD", "SPECS_DIR", "RECONCILE_INTERVAL")})

        with patch.dict(os.environ, {}), patch("clusternet.main.run", side_effect=fake_run):
            result = runner.invoke(
                cli, [*BASE_ARGS, "run", "demo", "--specs-dir", str(tmp_path), "--interval", "120"]
            )

        assert result.exit_code == 0, result.output
        assert seen == {
            "CLUSTER_NAME": "demo",
            "OS_CLOUD": "devstack",
            "SPECS_DIR": str(tmp_path.resolve()),
            "RECONCILE_INTERVAL": "120",
        }
