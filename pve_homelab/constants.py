# pve_homelab/constants.py

# Tags attached to every Proxmox resource this program manages
MANAGED_TAGS = ["pulumi", "homelab"]

VM_DISTROS = ("ubuntu", "opensuse", "fcos")
CONTAINER_SERVICES = ("grafana", "vault", "netbox")

# Cloud images (NoCloud capable). Downloaded once per Proxmox node.
CLOUD_IMAGES = {
    "ubuntu": "https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img",
    "opensuse": "https://download.opensuse.org/distribution/leap/15.6/appliances/openSUSE-Leap-15.6-Minimal-VM.x86_64-Cloud.qcow2",
}

# Proxmox only accepts .img/.iso names for "iso" content downloads
CLOUD_IMAGE_FILE_NAMES = {
    "ubuntu": "noble-server-cloudimg-amd64.img",
    "opensuse": "openSUSE-Leap-15.6-Minimal-VM.x86_64-Cloud.img",
}

LXC_TEMPLATE_URL = "http://download.proxmox.com/images/system/debian-12-standard_12.7-1_amd64.tar.zst"
LXC_TEMPLATE_FILE_NAME = "debian-12-standard_12.7-1_amd64.tar.zst"
LXC_OS_TYPE = "debian"

# Fedora CoreOS
FCOS_USER = "core"
FCOS_FW_CFG_NAME = "opt/com.coreos/config"
FCOS_STREAM_METADATA_URL = "https://builds.coreos.fedoraproject.org/streams/{stream}.json"
FCOS_BUILD_URL = "https://builds.coreos.fedoraproject.org/prod/streams/{stream}/builds/{version}/{arch}"
FCOS_DOWNLOAD_PAGE = "https://fedoraproject.org/coreos/download?stream={stream}"
COREOS_INSTALLER_IMAGE = "quay.io/coreos/coreos-installer:release"

# Provider timeouts (seconds), enforced by the provider
VM_TIMEOUT_CREATE = 600
VM_TIMEOUT_CLONE = 600
CONTAINER_TIMEOUT_CREATE = 600

DEFAULT_DNS_SERVERS = ["1.1.1.1", "9.9.9.9"]
DEFAULT_TIMEZONE = "UTC"
DEFAULT_VAULT_KV_MOUNT = "secret"
