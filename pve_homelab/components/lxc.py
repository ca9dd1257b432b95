import pulumi
import pulumi_proxmoxve as proxmox
from pulumi_command.remote import Command, CommandArgs, ConnectionArgs

from ..cloudinit import PACKAGE_MANAGERS
from ..config.models import ContainerSpec, ImageSpec
from ..constants import LXC_OS_TYPE, LXC_TEMPLATE_FILE_NAME, LXC_TEMPLATE_URL
from ..providers.proxmox import create_container, download_image
from ..providers.vault import SecretResolver
from ..templating import render_template
from ..utils.net import ip_no_cidr

ROOT_PASSWORD_SECRET = "containerRootPassword"

# service -> secrets its install script needs (template variable -> secret key)
SERVICE_SECRETS = {
    "grafana": {"admin_password": "grafanaAdminPassword"},
    "vault": {},
    "netbox": {},
}

SERVICE_PORTS = {
    "grafana": 3000,
    "vault": 8200,
    "netbox": 8000,
}


class TemplateCache:
    """One LXC template download per Proxmox node."""

    def __init__(self, images: ImageSpec, provider: proxmox.Provider) -> None:
        self._images = images
        self._provider = provider
        self._files: dict[str, proxmox.download.File] = {}

    def get(self, node_name: str) -> proxmox.download.File:
        if node_name not in self._files:
            self._files[node_name] = download_image(
                f"lxc-template-{node_name}",
                url=LXC_TEMPLATE_URL,
                file_name=LXC_TEMPLATE_FILE_NAME,
                content_type="vztmpl",
                node_name=node_name,
                datastore_id=self._images.datastoreId,
                provider=self._provider,
            )
        return self._files[node_name]


def provisioning_script(container: ContainerSpec, secrets: dict[str, str]) -> str:
    return render_template(
        f"lxc/{container.service}.sh.j2",
        pm=PACKAGE_MANAGERS[LXC_OS_TYPE],
        hostname=container.name,
        address=ip_no_cidr(container.ip4),
        **secrets,
    )


def _script_output(container: ContainerSpec, resolver: SecretResolver) -> pulumi.Output[str]:
    wanted = SERVICE_SECRETS[container.service]
    resolved = {var: resolver.get(key) for var, key in wanted.items()}
    present = {var: value for var, value in resolved.items() if value is not None}
    for var in wanted:
        if var not in present:
            pulumi.log.warn(f"{container.name}: secret {wanted[var]!r} not set, {var} left at service default")

    def render(values: dict[str, str]) -> str:
        # variables with no secret render as empty strings
        return provisioning_script(container, {**{var: "" for var in wanted}, **values})

    if not present:
        return pulumi.Output.from_input(render({}))
    return pulumi.Output.all(**present).apply(render)


def deploy_service_container(
    *,
    container: ContainerSpec,
    template_cache: TemplateCache,
    ssh_public_keys: list[str],
    ssh_private_key: pulumi.Output[str] | None,
    resolver: SecretResolver,
    provider: proxmox.Provider,
) -> proxmox.ct.Container:
    """
    Grafana / Vault / NetBox LXC.

    The container is always created; the service install script runs over SSH
    only when a private key is configured. NetBox itself is deployed by
    ansible/netbox-deploy/site.yml, the script only prepares the container.
    """
    template = template_cache.get(container.proxmoxNode)

    ct = create_container(
        container=container,
        template_file_id=template.id,
        ssh_public_keys=ssh_public_keys,
        root_password=resolver.get(ROOT_PASSWORD_SECRET),
        provider=provider,
    )

    if ssh_private_key is None:
        return ct

    Command(
        f"{container.name}-provision",
        CommandArgs(
            connection=ConnectionArgs(
                host=ip_no_cidr(container.ip4),
                user="root",
                private_key=ssh_private_key,
                port=22,
                dial_error_limit=30,
            ),
            create=_script_output(container, resolver),
            triggers=[container.name, container.service, ct.id],
        ),
        opts=pulumi.ResourceOptions(depends_on=[ct], additional_secret_outputs=["stdout", "stderr"]),
    )
    return ct
