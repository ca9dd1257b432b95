import pulumi

from pve_homelab.components.cloud_vm import ImageCache, deploy_cloud_vm
from pve_homelab.components.fedora_core import deploy_fedora_core
from pve_homelab.components.lxc import SERVICE_PORTS, TemplateCache, deploy_service_container
from pve_homelab.config.load import load_config
from pve_homelab.inventory import render_inventory
from pve_homelab.providers.proxmox import create_proxmox_provider
from pve_homelab.providers.vault import SecretResolver, create_vault_provider
from pve_homelab.utils.net import ip_no_cidr

# 1) load config
cfg = load_config()

# 2) create providers
proxmox_provider = create_proxmox_provider()
vault_provider = create_vault_provider(cfg.vault) if cfg.vault else None
secrets = SecretResolver(cfg.vault, vault_provider)

# 3) VMs (ubuntu-server, opensuseLeap, fedora_core)
image_cache = ImageCache(cfg.images, proxmox_provider)
vms = {}
for n in cfg.nodes:
    if n.distro == "fcos":
        vms[n.name] = deploy_fedora_core(
            node=n,
            fcos=cfg.fcos,
            ssh_public_keys=cfg.ssh_public_keys,
            timezone=cfg.timezone,
            provider=proxmox_provider,
        )
    else:
        vms[n.name] = deploy_cloud_vm(
            node=n,
            images=cfg.images,
            image_cache=image_cache,
            ssh_user=cfg.ssh_user,
            ssh_public_keys=cfg.ssh_public_keys,
            timezone=cfg.timezone,
            provider=proxmox_provider,
        )

# 4) LXC services (lxc-grafana, lxc-vault, lxc-netbox)
template_cache = TemplateCache(cfg.images, proxmox_provider)
containers = {
    c.name: deploy_service_container(
        container=c,
        template_cache=template_cache,
        ssh_public_keys=cfg.ssh_public_keys,
        ssh_private_key=cfg.ssh_private_key,
        resolver=secrets,
        provider=proxmox_provider,
    )
    for c in cfg.containers
}

# 5) export outputs
pulumi.export("stack", cfg.stack)
pulumi.export("vmIds", {name: vm.vm_id for name, vm in vms.items()})
pulumi.export("vmAddresses", {n.name: ip_no_cidr(n.ip4) for n in cfg.nodes})
pulumi.export(
    "serviceUrls",
    {c.name: f"http://{ip_no_cidr(c.ip4)}:{SERVICE_PORTS[c.service]}" for c in cfg.containers},
)
pulumi.export("containerIds", {name: ct.vm_id for name, ct in containers.items()})
pulumi.export("ansibleInventory", render_inventory(cfg))
