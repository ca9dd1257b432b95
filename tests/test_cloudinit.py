"""Tests for cloud-init user-data and LXC provisioning scripts."""

import pytest
import yaml

from pve_homelab.cloudinit import PACKAGE_MANAGERS, package_manager_for, render_user_data
from pve_homelab.components.lxc import provisioning_script
from pve_homelab.config.models import ContainerSpec, NodeSpec

KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHomelabTestKeyOnly admin@homelab"


def make_node(distro):
    return NodeSpec(
        name=f"{distro}-01",
        distro=distro,
        proxmoxNode="pve",
        vmId=201,
        ip4="192.168.1.21/24",
        gw4="192.168.1.1",
        cores=2,
        memoryMb=2048,
        diskGb=20,
        datastoreId="local-lvm",
        initDatastoreId="local-lvm",
        bridge="vmbr0",
    )


def make_container(service):
    return ContainerSpec(
        name=service,
        service=service,
        proxmoxNode="pve",
        vmId=301,
        ip4="192.168.1.31/24",
        gw4="192.168.1.1",
        cores=1,
        memoryMb=1024,
        diskGb=8,
        datastoreId="local-lvm",
        bridge="vmbr0",
    )


class TestUserData:
    @pytest.mark.parametrize("distro,group,refresh", [("ubuntu", "sudo", "apt-get"), ("opensuse", "wheel", "zypper")])
    def test_distro_dispatch(self, distro, group, refresh):
        text = render_user_data(make_node(distro), ssh_user="ansible", ssh_public_keys=[KEY], timezone="UTC")
        assert text.startswith("#cloud-config\n")

        doc = yaml.safe_load(text)
        user = doc["users"][0]
        assert user["name"] == "ansible"
        assert user["groups"] == [group]
        assert user["ssh_authorized_keys"] == [KEY]
        assert "qemu-guest-agent" in doc["packages"]
        assert doc["runcmd"][0][2].startswith(refresh)
        assert doc["hostname"] == f"{distro}-01"

    def test_fcos_has_no_package_manager(self):
        with pytest.raises(ValueError, match="fcos"):
            package_manager_for("fcos")

    def test_package_manager_families(self):
        assert set(PACKAGE_MANAGERS) == {"debian", "suse"}


class TestProvisioningScripts:
    @pytest.mark.parametrize("service", ["grafana", "vault", "netbox"])
    def test_scripts_fail_fast(self, service):
        secrets = {"admin_password": ""} if service == "grafana" else {}
        script = provisioning_script(make_container(service), secrets)
        assert script.startswith("set -euo pipefail\n")
        assert "apt-get update -y" in script

    @pytest.mark.parametrize("service", ["grafana", "vault", "netbox"])
    def test_template_packages_upgraded_before_install(self, service):
        secrets = {"admin_password": ""} if service == "grafana" else {}
        lines = provisioning_script(make_container(service), secrets).splitlines()
        upgrade = lines.index(PACKAGE_MANAGERS["debian"].upgrade)
        assert lines[upgrade - 1] == PACKAGE_MANAGERS["debian"].refresh
        assert lines[upgrade + 1].startswith(PACKAGE_MANAGERS["debian"].install)

    def test_grafana_password_is_quoted(self):
        script = provisioning_script(make_container("grafana"), {"admin_password": "p@ss word'1"})
        assert "reset-admin-password 'p@ss word'\"'\"'1'" in script

    def test_grafana_without_password(self):
        script = provisioning_script(make_container("grafana"), {"admin_password": ""})
        assert "reset-admin-password" not in script

    def test_vault_config_uses_container_address(self):
        script = provisioning_script(make_container("vault"), {})
        assert 'api_addr      = "http://192.168.1.31:8200"' in script
        assert 'node_id = "vault"' in script
