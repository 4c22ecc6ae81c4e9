"""
Secret resolution for `from_secret` environment values.
"""

import os
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Union

from controller.src.models.step import SecretRef

class MissingSecretError(Exception):
    """Raised when a referenced secret cannot be resolved."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Secret '{name}' is not available")

class SecretProvider(ABC):
    @abstractmethod
    def resolve(self, name: str) -> str:
        pass

class EnvironmentSecretProvider(SecretProvider):
    """Reads secret `name` from the environment variable <prefix><NAME>."""

    def __init__(self, prefix: str = "CONVEYOR_SECRET_", environ: Mapping[str, str] = None):
        self.prefix = prefix
        self._environ = os.environ if environ is None else environ

    def resolve(self, name: str) -> str:
        value = self._environ.get(self.prefix + name.upper())
        if value is None:
            raise MissingSecretError(name)
        return value

def resolve_environment(
    environment: Mapping[str, Union[str, SecretRef]],
    provider: SecretProvider,
) -> Dict[str, str]:
    """Return a plain env map with every secret reference resolved."""
    resolved = {}
    for key, value in environment.items():
        if isinstance(value, SecretRef):
            resolved[key] = provider.resolve(value.from_secret)
        else:
            resolved[key] = value
    return resolved
