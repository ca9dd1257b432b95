import pulumi
import pulumi_proxmoxve as proxmox

from ..config.models import FcosSpec, NodeSpec
from ..constants import DEFAULT_DNS_SERVERS
from ..ignition import IgnitionConfig, render_butane
from ..providers.proxmox import create_vm
from ..utils.net import ip_no_cidr


def deploy_fedora_core(
    *,
    node: NodeSpec,
    fcos: FcosSpec,
    ssh_public_keys: list[str],
    timezone: str,
    provider: proxmox.Provider,
) -> proxmox.vm.VirtualMachine:
    """
    Fedora CoreOS VM configured on first boot by Ignition passed through fw_cfg.

    The disk comes from the image placed on the `coreos` storage by
    homelab-fcos-storage. Any change to the Butane input changes kvm_arguments,
    and Ignition only runs on first boot: replace the VM to apply it.
    """
    butane = render_butane(
        fcos.butaneTemplate,
        hostname=node.name,
        ssh_public_keys=ssh_public_keys,
        ip4=node.ip4,
        gw4=node.gw4,
        dns_servers=node.dnsServers or DEFAULT_DNS_SERVERS,
        timezone=timezone,
    )
    ignition = IgnitionConfig(f"{node.name}-ignition", butane)

    pulumi.log.info(f"{node.name}: Fedora CoreOS ({fcos.stream}) VM {node.vmId} at {ip_no_cidr(node.ip4)}")

    return create_vm(
        node=node,
        disk_file_id=fcos.imageFileId,
        kvm_arguments=ignition.kvm_arguments,
        provider=provider,
        depends_on=[ignition],
    )
