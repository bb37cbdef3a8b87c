"""
Tests for configuration loading and validation.
"""

import pytest

from csiprovisioner.errors import FatalConfigurationError
from csiprovisioner.utils.config import Config, ProvisionerSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("NODE_NAME", "NAMESPACE", "POD_NAME", "KUBECONFIG", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestConfig:
    """Test Config."""

    def test_defaults(self):
        """Test default values are loaded."""
        config = Config()

        assert config.get("provisioner.worker_threads") == 100
        assert config.get("leader_election.enabled") is False
        assert config.get("does.not.exist", "fallback") == "fallback"

    def test_file_overrides(self, tmp_path):
        """Test an operator file is merged over the defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("provisioner:\n  worker_threads: 7\n")

        config = Config(str(path))

        assert config.get("provisioner.worker_threads") == 7
        assert config.get("provisioner.finalizer_threads") == 1

    def test_env_overrides(self, monkeypatch):
        """Test identity comes from the environment."""
        monkeypatch.setenv("NODE_NAME", "node-1")
        monkeypatch.setenv("NAMESPACE", "kube-system")
        monkeypatch.setenv("POD_NAME", "csi-0")

        config = Config()

        assert config.get("identity.node_name") == "node-1"
        assert config.get("identity.namespace") == "kube-system"
        assert config.get("identity.pod_name") == "csi-0"

    def test_set_nested(self):
        """Test dot-notation set."""
        config = Config()
        config.set("new.section.value", 3)

        assert config.get("new.section.value") == 3


class TestProvisionerSettings:
    """Test ProvisionerSettings validation."""

    def test_from_defaults(self):
        """Test defaults are valid."""
        settings = ProvisionerSettings.from_config(Config())

        assert settings.worker_threads == 100
        assert settings.retry_interval_start == 1.0
        assert settings.diagnostics_address == ""

    def test_capacity_without_pod_name(self, monkeypatch):
        """Test owner level 1 needs POD_NAME."""
        monkeypatch.setenv("NAMESPACE", "kube-system")
        config = Config()
        config.set("capacity.enabled", True)
        config.set("capacity.ownerref_level", 1)

        with pytest.raises(FatalConfigurationError, match="POD_NAME"):
            ProvisionerSettings.from_config(config)

    def test_capacity_without_owner_needs_no_pod_name(self, monkeypatch):
        """Test owner level -1 works without POD_NAME."""
        monkeypatch.setenv("NAMESPACE", "kube-system")
        config = Config()
        config.set("capacity.enabled", True)
        config.set("capacity.ownerref_level", -1)

        settings = ProvisionerSettings.from_config(config)

        assert settings.enable_capacity

    def test_capacity_without_namespace(self):
        """Test capacity publishing needs NAMESPACE."""
        config = Config()
        config.set("capacity.enabled", True)

        with pytest.raises(FatalConfigurationError, match="NAMESPACE"):
            ProvisionerSettings.from_config(config)

    def test_node_deployment_without_node_name(self):
        """Test node deployment needs NODE_NAME."""
        config = Config()
        config.set("node_deployment.enabled", True)

        with pytest.raises(FatalConfigurationError, match="NODE_NAME"):
            ProvisionerSettings.from_config(config)

    def test_diagnostics_endpoints_exclusive(self):
        """Test metrics address and http endpoint are mutually exclusive."""
        settings = ProvisionerSettings(metrics_address=":8080", http_endpoint=":8081")

        with pytest.raises(FatalConfigurationError):
            settings.validate()

        assert ProvisionerSettings(http_endpoint=":8081").diagnostics_address == ":8081"

    @pytest.mark.parametrize("overrides", [
        {"retry_interval_start": 0},
        {"retry_interval_start": 10.0, "retry_interval_max": 5.0},
        {"worker_threads": 0},
        {"capacity_threads": 0},
        {"capacity_ownerref_level": -2},
        {"volume_name_uuid_length": -2},
        {"operation_timeout": 0},
    ])
    def test_invalid_values(self, overrides):
        """Test numeric knobs are checked."""
        with pytest.raises(FatalConfigurationError):
            ProvisionerSettings(**overrides).validate()

    def test_unparsable_value(self):
        """Test garbage in a numeric field is a configuration error."""
        config = Config()
        config.set("provisioner.worker_threads", "many")

        with pytest.raises(FatalConfigurationError):
            ProvisionerSettings.from_config(config)

    def test_bool_from_string(self):
        """Test boolean flags accept strings."""
        config = Config()
        config.set("provisioner.strict_topology", "true")

        assert ProvisionerSettings.from_config(config).strict_topology


class TestConfigFiles:
    """Test operator file handling."""

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(FatalConfigurationError, match="mapping"):
            Config(str(path))

    def test_unreadable(self, tmp_path):
        with pytest.raises(FatalConfigurationError, match="cannot load"):
            Config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("provisioner: [unclosed\n")

        with pytest.raises(FatalConfigurationError, match="cannot load"):
            Config(str(path))

    def test_explicit_environment(self):
        """Test a given environment replaces os.environ."""
        config = Config(environ={"NODE_NAME": "node-2", "LOG_LEVEL": "4", "UNRELATED": "x"})

        assert config.get("identity.node_name") == "node-2"
        assert config.get("logging.level") == "4"
        assert config.get("identity.pod_name") == ""
