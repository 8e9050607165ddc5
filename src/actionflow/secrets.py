# secrets.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol

import yaml

from .errors import ConfigError, SecretNotFound


class SecretsProvider(Protocol):
    def get(self, name: str) -> str:
        """Return the secret value or raise SecretNotFound."""
        ...


class DictSecrets:
    """In-memory provider (CLI --secret flags, tests)."""

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = {k.upper(): str(v) for k, v in (values or {}).items()}

    def get(self, name: str) -> str:
        try:
            return self._values[name.upper()]
        except KeyError:
            raise SecretNotFound(name) from None


class EnvSecrets:
    """Reads secrets from environment variables named PREFIX + NAME."""

    def __init__(self, prefix: str = "ACTIONFLOW_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> str:
        key = self.prefix + name.upper()
        if key not in self._environ:
            raise SecretNotFound(name)
        return self._environ[key]


class ChainedSecrets:
    """First provider that knows the name wins."""

    def __init__(self, *providers: SecretsProvider):
        self.providers = list(providers)

    def get(self, name: str) -> str:
        for provider in self.providers:
            try:
                return provider.get(name)
            except SecretNotFound:
                continue
        raise SecretNotFound(name)


def load_secrets_file(path: str | Path) -> DictSecrets:
    """YAML mapping NAME: value."""
    p = Path(path).expanduser()
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read secrets: {e}", source=str(p)) from e
    if not isinstance(data, dict):
        raise ConfigError("secrets file must be a mapping", source=str(p))
    return DictSecrets({str(k): str(v) for k, v in data.items()})


def resolve_secrets(provider: Optional[SecretsProvider], names: Iterable[str]) -> Dict[str, str]:
    """Fetch every named secret; names the provider does not know are left out."""
    resolved: Dict[str, str] = {}
    if provider is None:
        return resolved
    for name in names:
        try:
            resolved[name] = provider.get(name)
        except SecretNotFound:
            continue
    return resolved
