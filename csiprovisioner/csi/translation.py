"""
Mapping between legacy in-tree volume plugins and the CSI drivers that replace them.
"""

from typing import Dict, Optional

# CSI driver name -> in-tree plugin name
MIGRATED_DRIVERS: Dict[str, str] = {
    "ebs.csi.aws.com": "kubernetes.io/aws-ebs",
    "pd.csi.storage.gke.io": "kubernetes.io/gce-pd",
    "disk.csi.azure.com": "kubernetes.io/azure-disk",
    "file.csi.azure.com": "kubernetes.io/azure-file",
    "cinder.csi.openstack.org": "kubernetes.io/cinder",
    "csi.vsphere.vmware.com": "kubernetes.io/vsphere-volume",
    "pxd.portworx.com": "kubernetes.io/portworx-volume",
    "rbd.csi.ceph.com": "kubernetes.io/rbd",
}


def is_migrated_driver(driver_name: str) -> bool:
    return driver_name in MIGRATED_DRIVERS


def legacy_name_for(driver_name: str) -> Optional[str]:
    """
    Get the in-tree plugin name a CSI driver supersedes.

    Args:
        driver_name: CSI driver name

    Returns:
        In-tree plugin name or None if the driver is not a migration target
    """
    return MIGRATED_DRIVERS.get(driver_name)
