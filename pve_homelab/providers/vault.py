import os

import pulumi
import pulumi_vault as vault

from ..config.load import parse_secret_ref
from ..config.models import VaultSpec


def create_vault_provider(spec: VaultSpec) -> vault.Provider:
    """Token auth only: the provider itself picks up VAULT_TOKEN."""
    address = spec.address or os.environ.get("VAULT_ADDR")
    if not address:
        raise ValueError("Vault is configured but neither vault.address nor VAULT_ADDR is set")
    if not os.environ.get("VAULT_TOKEN"):
        raise ValueError("Missing env var: VAULT_TOKEN")

    return vault.Provider("vault", address=address, skip_child_token=True)


def _pick(data: dict, path: str, field: str) -> str:
    if field not in data:
        raise KeyError(f"Field {field!r} not found in Vault secret {path!r}")
    return str(data[field])


class SecretResolver:
    """
    Resolves logical secret keys (e.g. "containerRootPassword").

    Keys mapped under vault.secrets are read from Vault KV v2, anything else
    falls back to the Pulumi config secret of the same name.
    """

    def __init__(
        self,
        spec: VaultSpec | None,
        provider: vault.Provider | None = None,
        config: pulumi.Config | None = None,
    ) -> None:
        self._spec = spec
        self._provider = provider
        self._config = config or pulumi.Config()
        self._cache: dict[str, pulumi.Output[str] | None] = {}

    def from_vault(self, key: str) -> bool:
        return self._spec is not None and key in self._spec.secrets

    def get(self, key: str) -> pulumi.Output[str] | None:
        if key not in self._cache:
            self._cache[key] = self._resolve(key)
        return self._cache[key]

    def require(self, key: str) -> pulumi.Output[str]:
        value = self.get(key)
        if value is None:
            raise ValueError(f"Missing required secret {key!r} (map it under vault.secrets or set it as a config secret)")
        return value

    def _resolve(self, key: str) -> pulumi.Output[str] | None:
        spec = self._spec
        if spec is None or key not in spec.secrets:
            return self._config.get_secret(key)

        path, field = parse_secret_ref(spec.secrets[key])
        result = vault.kv.get_secret_v2_output(
            mount=spec.kvMount,
            name=path,
            opts=pulumi.InvokeOptions(provider=self._provider),
        )
        return pulumi.Output.secret(result.apply(lambda r: _pick(r.data, path, field)))
