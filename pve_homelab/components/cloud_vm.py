import pulumi
import pulumi_proxmoxve as proxmox

from ..cloudinit import render_user_data
from ..config.models import ImageSpec, NodeSpec
from ..constants import CLOUD_IMAGE_FILE_NAMES, CLOUD_IMAGES
from ..providers.proxmox import create_vm, download_image, upload_snippet


class ImageCache:
    """One download.File per (distro, Proxmox node); VMs on the same node share it."""

    def __init__(self, images: ImageSpec, provider: proxmox.Provider) -> None:
        self._images = images
        self._provider = provider
        self._files: dict[tuple[str, str], proxmox.download.File] = {}

    def get(self, distro: str, node_name: str) -> proxmox.download.File:
        key = (distro, node_name)
        if key not in self._files:
            self._files[key] = download_image(
                f"{distro}-cloud-image-{node_name}",
                url=CLOUD_IMAGES[distro],
                file_name=CLOUD_IMAGE_FILE_NAMES[distro],
                content_type="iso",
                node_name=node_name,
                datastore_id=self._images.datastoreId,
                provider=self._provider,
            )
        return self._files[key]


def deploy_cloud_vm(
    *,
    node: NodeSpec,
    images: ImageSpec,
    image_cache: ImageCache,
    ssh_user: str,
    ssh_public_keys: list[str],
    timezone: str,
    provider: proxmox.Provider,
) -> proxmox.vm.VirtualMachine:
    """Ubuntu Server / openSUSE Leap VM booted from a cloud image with NoCloud user-data."""
    if node.distro not in CLOUD_IMAGES:
        raise ValueError(f"deploy_cloud_vm does not handle distro {node.distro!r}")

    image = image_cache.get(node.distro, node.proxmoxNode)

    user_data = upload_snippet(
        f"{node.name}-user-data",
        data=render_user_data(
            node,
            ssh_user=ssh_user,
            ssh_public_keys=ssh_public_keys,
            timezone=timezone,
        ),
        file_name=f"{node.name}-user-data.yaml",
        node_name=node.proxmoxNode,
        datastore_id=images.snippetDatastoreId,
        provider=provider,
    )

    pulumi.log.info(f"{node.name}: {node.distro} VM {node.vmId} on {node.proxmoxNode}")

    return create_vm(
        node=node,
        disk_file_id=image.id,
        user_data_file_id=user_data.id,
        provider=provider,
    )
