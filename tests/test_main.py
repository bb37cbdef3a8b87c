"""
Tests for command-line handling.
"""

import pytest

from csiprovisioner.coordinator import ExitCode
from csiprovisioner.main import build_config, main, parse_args
from csiprovisioner.utils.config import ProvisionerSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("NODE_NAME", "NAMESPACE", "POD_NAME", "KUBECONFIG", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestParseArgs:
    """Test flag parsing and configuration overlay."""

    def test_unset_flags_keep_defaults(self):
        """Test flags not given do not override configuration."""
        settings = ProvisionerSettings.from_config(build_config(parse_args([])))

        assert settings == ProvisionerSettings()

    def test_flags_override(self):
        """Test given flags reach the settings."""
        args = parse_args([
            "--csi-address", "/csi/csi.sock",
            "--worker-threads", "10",
            "--retry-interval-start", "2.5",
            "--leader-election",
            "--strict-topology", "true",
            "--capacity-ownerref-level", "-1",
            "--http-endpoint", ":8080",
        ])

        settings = ProvisionerSettings.from_config(build_config(args))

        assert settings.csi_address == "/csi/csi.sock"
        assert settings.worker_threads == 10
        assert settings.retry_interval_start == 2.5
        assert settings.enable_leader_election
        assert settings.strict_topology
        assert settings.capacity_ownerref_level == -1
        assert settings.diagnostics_address == ":8080"

    def test_boolean_flag_value(self):
        args = parse_args(["--node-deployment", "false"])

        assert build_config(args).get("node_deployment.enabled") is False

    def test_config_file_then_flags(self, tmp_path):
        """Test flags take precedence over the configuration file."""
        path = tmp_path / "config.yaml"
        path.write_text("provisioner:\n  worker_threads: 7\n  finalizer_threads: 3\n")

        config = build_config(parse_args(["--config", str(path), "--worker-threads", "9"]))

        assert config.get("provisioner.worker_threads") == 9
        assert config.get("provisioner.finalizer_threads") == 3


class TestMain:
    """Test the entry point."""

    def test_invalid_configuration_exits_fatal(self):
        """Test an invalid combination exits non-zero before running."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--node-deployment", "--log-format", "console"])

        assert exc_info.value.code == ExitCode.FATAL

    def test_verbosity_flag(self):
        """Test klog verbosity lands in the logging level."""
        config = build_config(parse_args(["-v", "5"]))

        assert config.get("logging.level") == 5

    def test_invalid_log_level_exits_fatal(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "loud")

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == ExitCode.FATAL
