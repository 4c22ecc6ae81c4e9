"""Tests for secret resolution."""

import pytest

from controller.src.models.step import SecretRef
from controller.src.services.secrets import (
    EnvironmentSecretProvider,
    MissingSecretError,
    resolve_environment,
)

def test_resolves_secret_refs():
    provider = EnvironmentSecretProvider(environ={"CONVEYOR_SECRET_GITHUB_TOKEN": "ghp_x"})
    env = {"CI": "true", "TOKEN": SecretRef(from_secret="github_token")}

    assert resolve_environment(env, provider) == {"CI": "true", "TOKEN": "ghp_x"}

def test_missing_secret():
    provider = EnvironmentSecretProvider(environ={})
    with pytest.raises(MissingSecretError, match="'aws_key'"):
        resolve_environment({"KEY": SecretRef(from_secret="aws_key")}, provider)

def test_custom_prefix():
    provider = EnvironmentSecretProvider(prefix="S_", environ={"S_TOKEN": "t"})
    assert provider.resolve("token") == "t"

def test_secret_ref_repr():
    assert repr(SecretRef(from_secret="token")) == "SecretRef(from_secret='token')"
