import os

import pulumi
import pulumi_proxmoxve as proxmox

from ..config.models import ContainerSpec, NodeSpec
from ..constants import (
    CONTAINER_TIMEOUT_CREATE,
    DEFAULT_DNS_SERVERS,
    LXC_OS_TYPE,
    MANAGED_TAGS,
    VM_TIMEOUT_CLONE,
    VM_TIMEOUT_CREATE,
)


def _env_bool(name: str) -> bool:
    v = os.environ.get(name, "").strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    raise ValueError(f"{name} must be a boolean-like string (true/false). Got: {os.environ.get(name)!r}")


def create_proxmox_provider() -> proxmox.Provider:
    """
    Build the Proxmox provider from the environment.

    Either PROXMOX_VE_API_TOKEN ("user@realm!id=secret") or
    PROXMOX_VE_USERNAME + PROXMOX_VE_PASSWORD must be set.
    """
    endpoint = os.environ.get("PROXMOX_VE_ENDPOINT")
    api_token = os.environ.get("PROXMOX_VE_API_TOKEN")
    username = os.environ.get("PROXMOX_VE_USERNAME")
    password = os.environ.get("PROXMOX_VE_PASSWORD")
    insecure = os.environ.get("PROXMOX_VE_INSECURE")

    if not endpoint or insecure is None or not (api_token or (username and password)):
        raise ValueError(
            "Missing env vars: PROXMOX_VE_ENDPOINT, PROXMOX_VE_INSECURE and either "
            "PROXMOX_VE_API_TOKEN or PROXMOX_VE_USERNAME/PROXMOX_VE_PASSWORD"
        )

    if api_token:
        return proxmox.Provider(
            "proxmoxve",
            endpoint=endpoint,
            api_token=api_token,
            insecure=_env_bool("PROXMOX_VE_INSECURE"),
        )

    return proxmox.Provider(
        "proxmoxve",
        endpoint=endpoint,
        username=username,
        password=password,
        insecure=_env_bool("PROXMOX_VE_INSECURE"),
    )


def download_image(
    name: str,
    *,
    url: str,
    file_name: str,
    content_type: str,
    node_name: str,
    datastore_id: str,
    provider: proxmox.Provider,
) -> proxmox.download.File:
    """content_type is "iso" for VM cloud images and "vztmpl" for LXC templates."""
    return proxmox.download.File(
        name,
        content_type=content_type,
        datastore_id=datastore_id,
        node_name=node_name,
        url=url,
        file_name=file_name,
        overwrite=False,
        opts=pulumi.ResourceOptions(provider=provider),
    )


def upload_snippet(
    name: str,
    *,
    data: pulumi.Input[str],
    file_name: str,
    node_name: str,
    datastore_id: str,
    provider: proxmox.Provider,
) -> proxmox.storage.File:
    return proxmox.storage.File(
        name,
        content_type="snippets",
        datastore_id=datastore_id,
        node_name=node_name,
        source_raw=proxmox.storage.FileSourceRawArgs(data=data, file_name=file_name),
        opts=pulumi.ResourceOptions(provider=provider),
    )


def create_vm(
    *,
    node: NodeSpec,
    disk_file_id: pulumi.Input[str],
    provider: proxmox.Provider,
    user_data_file_id: pulumi.Input[str] | None = None,
    ssh_user: str | None = None,
    kvm_arguments: pulumi.Input[str] | None = None,
    depends_on: list[pulumi.Resource] | None = None,
) -> proxmox.vm.VirtualMachine:
    """
    Create a Proxmox VM whose boot disk is imported from a downloaded image.

    Cloud-init (NoCloud) is attached when user_data_file_id or ssh_user is set.
    Fedora CoreOS ignores cloud-init and is configured via kvm_arguments (fw_cfg).
    """
    initialization = None
    if user_data_file_id is not None or ssh_user is not None:
        initialization = proxmox.vm.VirtualMachineInitializationArgs(
            type="nocloud",
            datastore_id=node.initDatastoreId,
            dns=proxmox.vm.VirtualMachineInitializationDnsArgs(
                servers=node.dnsServers or DEFAULT_DNS_SERVERS,
            ),
            ip_configs=[
                proxmox.vm.VirtualMachineInitializationIpConfigArgs(
                    ipv4=proxmox.vm.VirtualMachineInitializationIpConfigIpv4Args(
                        address=node.ip4,
                        gateway=node.gw4,
                    )
                )
            ],
            user_data_file_id=user_data_file_id,
            user_account=(
                proxmox.vm.VirtualMachineInitializationUserAccountArgs(username=ssh_user)
                if user_data_file_id is None and ssh_user
                else None
            ),
        )

    return proxmox.vm.VirtualMachine(
        resource_name=node.name,
        node_name=node.proxmoxNode,
        vm_id=node.vmId,
        name=node.name,
        on_boot=True,
        started=True,
        tags=[*MANAGED_TAGS, node.distro],
        description=f"Managed by Pulumi (pve-homelab). Distro={node.distro}.",

        agent=proxmox.vm.VirtualMachineAgentArgs(
            enabled=True,
            type="virtio",
            trim=True,
        ),

        cpu=proxmox.vm.VirtualMachineCpuArgs(cores=node.cores, sockets=1, type="x86-64-v2-AES"),
        memory=proxmox.vm.VirtualMachineMemoryArgs(dedicated=node.memoryMb),
        operating_system=proxmox.vm.VirtualMachineOperatingSystemArgs(type="l26"),
        serial_devices=[proxmox.vm.VirtualMachineSerialDeviceArgs(device="socket")],

        disks=[
            proxmox.vm.VirtualMachineDiskArgs(
                interface="virtio0",
                datastore_id=node.datastoreId,
                file_id=disk_file_id,
                size=node.diskGb,
                iothread=True,
                discard="on",
            )
        ],

        network_devices=[
            proxmox.vm.VirtualMachineNetworkDeviceArgs(
                bridge=node.bridge,
                model="virtio",
                vlan_id=node.vlanId,
            )
        ],

        initialization=initialization,
        kvm_arguments=kvm_arguments,

        timeout_create=VM_TIMEOUT_CREATE,
        timeout_clone=VM_TIMEOUT_CLONE,

        opts=pulumi.ResourceOptions(provider=provider, depends_on=depends_on),
    )


def create_container(
    *,
    container: ContainerSpec,
    template_file_id: pulumi.Input[str],
    ssh_public_keys: list[str],
    root_password: pulumi.Input[str] | None,
    provider: proxmox.Provider,
) -> proxmox.ct.Container:
    return proxmox.ct.Container(
        resource_name=container.name,
        node_name=container.proxmoxNode,
        vm_id=container.vmId,
        unprivileged=container.unprivileged,
        start_on_boot=True,
        started=True,
        tags=[*MANAGED_TAGS, container.service],
        description=f"Managed by Pulumi (pve-homelab). Service={container.service}.",

        features=proxmox.ct.ContainerFeaturesArgs(nesting=True),
        operating_system=proxmox.ct.ContainerOperatingSystemArgs(
            template_file_id=template_file_id,
            type=LXC_OS_TYPE,
        ),

        cpu=proxmox.ct.ContainerCpuArgs(cores=container.cores),
        memory=proxmox.ct.ContainerMemoryArgs(dedicated=container.memoryMb, swap=container.swapMb),
        disk=proxmox.ct.ContainerDiskArgs(datastore_id=container.datastoreId, size=container.diskGb),

        network_interfaces=[
            proxmox.ct.ContainerNetworkInterfaceArgs(
                name="eth0",
                bridge=container.bridge,
                vlan_id=container.vlanId,
            )
        ],

        initialization=proxmox.ct.ContainerInitializationArgs(
            hostname=container.name,
            ip_configs=[
                proxmox.ct.ContainerInitializationIpConfigArgs(
                    ipv4=proxmox.ct.ContainerInitializationIpConfigIpv4Args(
                        address=container.ip4,
                        gateway=container.gw4,
                    )
                )
            ],
            user_account=proxmox.ct.ContainerInitializationUserAccountArgs(
                keys=ssh_public_keys,
                password=root_password,
            ),
        ),

        timeout_create=CONTAINER_TIMEOUT_CREATE,

        opts=pulumi.ResourceOptions(provider=provider),
    )
