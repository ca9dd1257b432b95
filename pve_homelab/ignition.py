"""
Fedora CoreOS Ignition helpers.

Butane (YAML, Jinja2-templated here) is transpiled to Ignition JSON by the
`butane` binary. Proxmox has no Ignition datasource, so the JSON is handed to
QEMU through fw_cfg on the VM's `args` line:

    -fw_cfg name=opt/com.coreos/config,string=<ignition json>

QEMU splits option values on commas, so every comma in the JSON has to be
doubled.
"""
import json
import re
import shlex

import pulumi
import pulumi_command as command
from pulumi_command.local import Logging as LocalLogging

from .constants import FCOS_FW_CFG_NAME
from .templating import render_template

_COMMA_RUN = re.compile(r",+")


def escape_fw_cfg(value: str) -> str:
    return value.replace(",", ",,")


def unescape_fw_cfg(value: str) -> str:
    """Inverse of escape_fw_cfg. A lone comma is an option separator, not data."""
    for m in _COMMA_RUN.finditer(value):
        if len(m.group(0)) % 2:
            raise ValueError(f"Unescaped comma at offset {m.start()} in fw_cfg value")
    return value.replace(",,", ",")


def compact_ignition(ignition_json: str) -> str:
    """Validate the Ignition document and drop insignificant whitespace."""
    try:
        doc = json.loads(ignition_json)
    except json.JSONDecodeError as e:
        raise ValueError(f"butane produced invalid Ignition JSON: {e}") from e
    if not isinstance(doc, dict) or "ignition" not in doc:
        raise ValueError("Ignition document is missing the top-level 'ignition' key")
    return json.dumps(doc, separators=(",", ":"), sort_keys=True)


def fw_cfg_kvm_arguments(ignition_json: str) -> str:
    value = f"name={FCOS_FW_CFG_NAME},string={escape_fw_cfg(compact_ignition(ignition_json))}"
    # Proxmox splits `args` shell-style; Ignition strings (SSH keys) contain spaces
    return f"-fw_cfg {shlex.quote(value)}"


def render_butane(
    template_name: str,
    *,
    hostname: str,
    ssh_public_keys: list[str],
    ip4: str,
    gw4: str,
    dns_servers: list[str],
    timezone: str,
) -> str:
    return render_template(
        template_name,
        hostname=hostname,
        ssh_public_keys=ssh_public_keys,
        ip4=ip4,
        gw4=gw4,
        dns_servers=dns_servers,
        timezone=timezone,
    )


class IgnitionConfig(pulumi.ComponentResource):
    """
    Transpiles a rendered Butane document with `butane --strict`.

    Outputs:
      ignition (Output[str]):      compact Ignition JSON
      kvm_arguments (Output[str]): value for the VM's kvm_arguments
    """

    def __init__(self, name: str, butane: str, opts: pulumi.ResourceOptions | None = None) -> None:
        super().__init__("pve-homelab:fcos:IgnitionConfig", name, None, opts)

        self.transpile = command.local.Command(
            f"{name}-butane",
            create="butane --strict",
            stdin=butane,
            triggers=[butane],
            logging=LocalLogging.NONE,
            opts=pulumi.ResourceOptions(parent=self),
        )

        self.ignition = self.transpile.stdout.apply(compact_ignition)
        self.kvm_arguments = self.transpile.stdout.apply(fw_cfg_kvm_arguments)
        self.register_outputs({"ignition": self.ignition})
