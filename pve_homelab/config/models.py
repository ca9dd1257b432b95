from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

import pulumi


Distro = Literal["ubuntu", "opensuse", "fcos"]
Service = Literal["grafana", "vault", "netbox"]


@dataclass(frozen=True)
class NodeSpec:
    name: str
    distro: Distro
    proxmoxNode: str
    vmId: int
    ip4: str
    gw4: str
    cores: int
    memoryMb: int
    diskGb: int
    datastoreId: str
    initDatastoreId: str
    bridge: str
    vlanId: int | None = None
    dnsServers: list[str] | None = None


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    service: Service
    proxmoxNode: str
    vmId: int
    ip4: str
    gw4: str
    cores: int
    memoryMb: int
    diskGb: int
    datastoreId: str
    bridge: str
    swapMb: int = 512
    vlanId: int | None = None
    unprivileged: bool = True


@dataclass(frozen=True)
class ImageSpec:
    """Datastores used for downloaded images, LXC templates and snippets."""
    datastoreId: str = "local"
    snippetDatastoreId: str = "local"


@dataclass(frozen=True)
class FcosSpec:
    stream: str = "stable"
    # Volume id of the image placed by homelab-fcos-storage,
    # e.g. "local:iso/fedora-coreos-42.20250803.3.0-proxmoxve.x86_64.img"
    imageFileId: str = ""
    butaneTemplate: str = "fcos.bu.j2"


@dataclass(frozen=True)
class VaultSpec:
    address: str | None = None
    kvMount: str = "secret"
    # logical secret key -> "path/in/kv#field"
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Config:
    """
    In-memory config for the Pulumi program.

    Notes:
      - ssh_private_key is a Pulumi secret (or None); without it LXC service
        provisioning over SSH is skipped.
      - Secrets such as passwords are resolved lazily by providers.vault.SecretResolver.
    """
    stack: str
    nodes: list[NodeSpec]
    containers: list[ContainerSpec]
    images: ImageSpec
    fcos: FcosSpec
    vault: VaultSpec | None

    ssh_user: str
    ssh_public_keys: list[str]
    ssh_private_key: pulumi.Output[str] | None

    timezone: str
