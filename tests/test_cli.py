"""Tests for the mpo command line."""

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from poolcontroller.cli import cli

POOL_SPEC = """\
kind: MachinePool
name: workers
clusterName: prod
replicas: 2
minSize: 1
maxSize: 3
suspendProcesses:
  processes:
    launch: true
    terminate: true
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestPlanSubnets:
    """Tests for mpo plan-subnets."""

    def test_default_layout(self, runner: CliRunner) -> None:
        """Test the three-zone layout of the default VPC block."""
        result = runner.invoke(cli, ["plan-subnets", "--zones", "us-east-1c,us-east-1a,us-east-1b,us-east-1d"])

        assert result.exit_code == 0, result.output
        rows = [line.split() for line in result.output.splitlines()]
        assert rows == [
            ["us-east-1a", "public", "10.0.0.0/20"],
            ["us-east-1a", "private", "10.0.64.0/18"],
            ["us-east-1b", "public", "10.0.16.0/20"],
            ["us-east-1b", "private", "10.0.128.0/18"],
            ["us-east-1c", "public", "10.0.32.0/20"],
            ["us-east-1c", "private", "10.0.192.0/18"],
        ]

    def test_limit(self, runner: CliRunner) -> None:
        """Test that the zone limit caps the layout."""
        result = runner.invoke(
            cli, ["plan-subnets", "--cidr", "10.1.0.0/16", "--zones", "a,b,c", "--limit", "1"]
        )

        assert result.exit_code == 0, result.output
        assert [line.split()[0] for line in result.output.splitlines()] == ["a", "a"]

    def test_ipv6_column(self, runner: CliRunner) -> None:
        """Test that dual stack prints the IPv6 block too."""
        result = runner.invoke(
            cli,
            ["plan-subnets", "--zones", "us-east-1a", "--ipv6-cidr", "2001:db8:1234:1a00::/56"],
        )

        assert result.exit_code == 0, result.output
        assert all(len(line.split()) == 4 for line in result.output.splitlines())

    def test_invalid_cidr(self, runner: CliRunner) -> None:
        """Test that a malformed CIDR is a usage error, not a traceback."""
        result = runner.invoke(cli, ["plan-subnets", "--cidr", "10.0.0.0/33", "--zones", "a"])

        assert result.exit_code != 0
        assert "Error" in result.output


class TestDiff:
    """Tests for mpo diff."""

    def test_pending_changes(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that drift and the process delta are reported."""
        pool_file = tmp_path / "pool.yaml"
        pool_file.write_text(POOL_SPEC)
        observed_file = tmp_path / "asg.yaml"
        observed_file.write_text(
            yaml.safe_dump(
                {
                    "name": "workers",
                    "desiredCapacity": 2,
                    "minSize": 1,
                    "maxSize": 3,
                    "currentlySuspendProcesses": ["Launch", "HealthCheck"],
                }
            )
        )

        result = runner.invoke(cli, ["diff", str(pool_file), str(observed_file)])

        assert result.exit_code == 0, result.output
        lines = dict(line.split(":", 1) for line in result.output.splitlines())
        assert lines["pool"].strip() == "default/workers"
        assert lines["needs update"].strip() == "yes"
        assert lines["suspend"].strip() == "Terminate"
        assert lines["resume"].strip() == "HealthCheck"

    def test_converged(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that a converged group shows no pending changes."""
        pool_file = tmp_path / "pool.yaml"
        pool_file.write_text(POOL_SPEC)
        observed_file = tmp_path / "asg.yaml"
        observed_file.write_text(
            yaml.safe_dump(
                {
                    "desiredCapacity": 2,
                    "minSize": 1,
                    "maxSize": 3,
                    "currentlySuspendProcesses": ["Terminate", "Launch"],
                }
            )
        )

        result = runner.invoke(cli, ["diff", str(pool_file), str(observed_file)])

        assert result.exit_code == 0, result.output
        assert "needs update:   no" in result.output
        assert "suspend:        -" in result.output

    def test_no_pool_in_file(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that a file without a MachinePool is rejected."""
        pool_file = tmp_path / "cluster.yaml"
        pool_file.write_text("kind: Cluster\nname: prod\n")
        observed_file = tmp_path / "asg.yaml"
        observed_file.write_text("{}\n")

        result = runner.invoke(cli, ["diff", str(pool_file), str(observed_file)])

        assert result.exit_code != 0
        assert "No MachinePool found" in result.output


class TestRun:
    """Tests for mpo run argument checks."""

    def test_missing_specs_dir(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that a missing specs directory is reported before starting."""
        result = runner.invoke(
            cli,
            [
                "run",
                "--cluster",
                "prod",
                "--region",
                "us-east-1",
                "--specs-dir",
                str(tmp_path / "missing"),
            ],
        )

        assert result.exit_code != 0
        assert "Specs directory not found" in result.output
