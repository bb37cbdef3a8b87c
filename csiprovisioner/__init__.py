"""
csiprovisioner - startup and coordination layer of a CSI provisioning sidecar.

Bridges volume claims to a CSI storage driver:
- Probes the driver for its identity and capabilities
- Assembles the controllers the driver's capabilities call for
- Waits for every cache before any controller runs
- Optionally runs only while holding a leader election lease
"""

__version__ = "0.1.0"
