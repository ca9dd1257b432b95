"""Ansible inventory for the guests declared in the stack config."""
from typing import Any

import yaml

from .config.models import Config
from .constants import FCOS_USER
from .utils.net import ip_no_cidr

DISTRO_GROUPS = {
    "ubuntu": "ubuntu_servers",
    "opensuse": "opensuse_servers",
    "fcos": "fedora_coreos",
}


def build_inventory(cfg: Config) -> dict[str, Any]:
    children: dict[str, dict[str, Any]] = {}

    def add(group: str, name: str, hostvars: dict[str, Any]) -> None:
        children.setdefault(group, {"hosts": {}})["hosts"][name] = hostvars

    for n in cfg.nodes:
        add(
            DISTRO_GROUPS[n.distro],
            n.name,
            {
                "ansible_host": ip_no_cidr(n.ip4),
                "ansible_user": FCOS_USER if n.distro == "fcos" else cfg.ssh_user,
                "proxmox_node": n.proxmoxNode,
                "proxmox_vmid": n.vmId,
            },
        )

    for c in cfg.containers:
        add(
            f"lxc_{c.service}",
            c.name,
            {
                "ansible_host": ip_no_cidr(c.ip4),
                "ansible_user": "root",
                "proxmox_node": c.proxmoxNode,
                "proxmox_vmid": c.vmId,
            },
        )

    # fcos has no python interpreter, keep it out of the default playbook targets
    managed = sorted(g for g in children if g != DISTRO_GROUPS["fcos"])
    if managed:
        children["managed"] = {"children": {g: {} for g in managed}}

    return {"all": {"children": children}}


def render_inventory(cfg: Config) -> str:
    return yaml.safe_dump(build_inventory(cfg), sort_keys=False, default_flow_style=False)
