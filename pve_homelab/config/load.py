import os
from typing import Any

import pulumi

from .models import Config, ContainerSpec, FcosSpec, ImageSpec, NodeSpec, VaultSpec
from ..constants import CONTAINER_SERVICES, DEFAULT_TIMEZONE, DEFAULT_VAULT_KV_MOUNT, VM_DISTROS
from ..utils.net import require_cidr


def _read_private_key_from_path(path: str) -> pulumi.Output[str]:
    expanded = os.path.expanduser(path)
    if not os.path.isfile(expanded):
        raise FileNotFoundError(f"sshPrivateKeyPath does not exist: {expanded}")

    with open(expanded, "r", encoding="utf-8") as f:
        data = f.read()

    # Keep it secret inside Pulumi even though it was loaded locally
    return pulumi.Output.secret(data)


def parse_nodes(raw: list[dict[str, Any]]) -> list[NodeSpec]:
    nodes = [NodeSpec(**n) for n in raw]
    for n in nodes:
        if n.distro not in VM_DISTROS:
            raise ValueError(f"Invalid distro {n.distro!r} on node {n.name!r}. Must be one of {sorted(VM_DISTROS)}")
        require_cidr(n.ip4, owner=n.name)
    return nodes


def parse_containers(raw: list[dict[str, Any]]) -> list[ContainerSpec]:
    containers = [ContainerSpec(**c) for c in raw]
    for c in containers:
        if c.service not in CONTAINER_SERVICES:
            raise ValueError(
                f"Invalid service {c.service!r} on container {c.name!r}. Must be one of {sorted(CONTAINER_SERVICES)}"
            )
        require_cidr(c.ip4, owner=c.name)
    return containers


def check_unique(nodes: list[NodeSpec], containers: list[ContainerSpec]) -> None:
    """VM ids and names share one namespace per cluster."""
    seen_ids: dict[int, str] = {}
    seen_names: set[str] = set()
    for guest in [*nodes, *containers]:
        if guest.vmId in seen_ids:
            raise ValueError(f"vmId {guest.vmId} is used by both {seen_ids[guest.vmId]!r} and {guest.name!r}")
        if guest.name in seen_names:
            raise ValueError(f"Duplicate guest name {guest.name!r}")
        seen_ids[guest.vmId] = guest.name
        seen_names.add(guest.name)


def parse_secret_ref(ref: str) -> tuple[str, str]:
    """'homelab/grafana#admin_password' -> ('homelab/grafana', 'admin_password')"""
    path, sep, field = ref.partition("#")
    path = path.strip().strip("/")
    field = field.strip()
    if not sep or not path or not field:
        raise ValueError(f"Secret reference must look like 'path/to/secret#field'. Got: {ref!r}")
    return path, field


def _parse_vault(raw: dict[str, Any] | None) -> VaultSpec | None:
    if not raw:
        return None
    secrets = dict(raw.get("secrets") or {})
    for ref in secrets.values():
        parse_secret_ref(ref)
    return VaultSpec(
        address=raw.get("address"),
        kvMount=raw.get("kvMount") or DEFAULT_VAULT_KV_MOUNT,
        secrets=secrets,
    )


def load_config() -> Config:
    """
    Reads stack config from Pulumi.<stack>.yaml + Pulumi secrets.

    SSH behavior:
      - sshPublicKeys is baked into every guest (cloud-init, Ignition, LXC root)
      - sshPrivateKeyPath (read at deploy time) or sshPrivateKey (secret) enables
        service provisioning inside LXC containers

    Required keys:
      - sshPublicKeys (list)
      - at least one of nodes / containers (list)
    """
    c = pulumi.Config()
    stack = pulumi.get_stack()

    ssh_user = c.get("sshUser") or "ubuntu"
    ssh_public_keys = c.require_object("sshPublicKeys")
    if not ssh_public_keys:
        raise ValueError("Config error: sshPublicKeys must list at least one key.")

    ssh_private_key_path = c.get("sshPrivateKeyPath")
    if ssh_private_key_path:
        ssh_private_key = _read_private_key_from_path(ssh_private_key_path)
    else:
        ssh_private_key = c.get_secret("sshPrivateKey")

    nodes = parse_nodes(c.get_object("nodes") or [])
    containers = parse_containers(c.get_object("containers") or [])
    if not nodes and not containers:
        raise ValueError("Config error: define at least one entry under 'nodes' or 'containers'.")
    check_unique(nodes, containers)

    images = ImageSpec(**(c.get_object("images") or {}))
    fcos = FcosSpec(**(c.get_object("fcos") or {}))
    if any(n.distro == "fcos" for n in nodes) and not fcos.imageFileId:
        raise ValueError("Config error: fcos.imageFileId is required when a node uses distro 'fcos'.")

    if containers and ssh_private_key is None:
        pulumi.log.warn("No sshPrivateKeyPath/sshPrivateKey configured: LXC services will not be provisioned.")

    return Config(
        stack=stack,
        nodes=nodes,
        containers=containers,
        images=images,
        fcos=fcos,
        vault=_parse_vault(c.get_object("vault")),
        ssh_user=ssh_user,
        ssh_public_keys=list(ssh_public_keys),
        ssh_private_key=ssh_private_key,
        timezone=c.get("timezone") or DEFAULT_TIMEZONE,
    )
