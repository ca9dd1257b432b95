from dataclasses import dataclass

from .config.models import NodeSpec
from .templating import render_template


@dataclass(frozen=True)
class PackageManager:
    refresh: str
    upgrade: str
    install: str
    admin_group: str


# OS family -> package manager commands. Shared by cloud-init user-data
# and the LXC provisioning scripts.
PACKAGE_MANAGERS = {
    "debian": PackageManager(
        refresh="apt-get update -y",
        upgrade="DEBIAN_FRONTEND=noninteractive apt-get -y dist-upgrade",
        install="DEBIAN_FRONTEND=noninteractive apt-get install -y",
        admin_group="sudo",
    ),
    "suse": PackageManager(
        refresh="zypper --non-interactive refresh",
        upgrade="zypper --non-interactive update",
        install="zypper --non-interactive install",
        admin_group="wheel",
    ),
}

DISTRO_FAMILY = {
    "ubuntu": "debian",
    "opensuse": "suse",
}

GUEST_PACKAGES = ["qemu-guest-agent", "curl", "python3"]


def package_manager_for(distro: str) -> PackageManager:
    try:
        return PACKAGE_MANAGERS[DISTRO_FAMILY[distro]]
    except KeyError:
        raise ValueError(f"No package manager known for distro {distro!r}") from None


def render_user_data(
    node: NodeSpec,
    *,
    ssh_user: str,
    ssh_public_keys: list[str],
    timezone: str,
) -> str:
    pm = package_manager_for(node.distro)
    return render_template(
        "cloud-init.yaml.j2",
        hostname=node.name,
        ssh_user=ssh_user,
        ssh_public_keys=ssh_public_keys,
        admin_group=pm.admin_group,
        packages=GUEST_PACKAGES,
        refresh_command=pm.refresh,
        timezone=timezone,
    )
