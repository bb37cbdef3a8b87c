"""
Tests for logging setup.
"""

import logging

import pytest
import structlog

from csiprovisioner.utils.logging import (
    COMPONENT,
    _add_component,
    bind_identity,
    clear_identity,
    resolve_level,
)


class TestResolveLevel:
    """Test level names and klog verbosity."""

    @pytest.mark.parametrize("value,expected", [
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        (0, logging.WARNING),
        ("2", logging.INFO),
        (5, logging.DEBUG),
    ])
    def test_levels(self, value, expected):
        assert resolve_level(value) == expected

    @pytest.mark.parametrize("value", ["loud", "-1"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            resolve_level(value)


class TestIdentity:
    """Test identity binding."""

    def test_bind_and_clear(self):
        """Test bound values appear in the context and empty ones are skipped."""
        try:
            bind_identity(driver="hostpath.csi.k8s.io", identity="123-4-hostpath", node="")
            assert structlog.contextvars.get_contextvars() == {
                "driver": "hostpath.csi.k8s.io",
                "identity": "123-4-hostpath",
            }
        finally:
            clear_identity()
        assert structlog.contextvars.get_contextvars() == {}

    def test_component(self):
        assert _add_component(None, "info", {"event": "x"}) == {"event": "x", "component": COMPONENT}
