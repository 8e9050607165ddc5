"""Tests for engine configuration and secret providers."""

from __future__ import annotations

from pathlib import Path

import pytest

from actionflow.config import ContinueOnErrorPolicy, EngineConfig, load_config
from actionflow.errors import ConfigError, SecretNotFound
from actionflow.secrets import ChainedSecrets, DictSecrets, EnvSecrets, load_secrets_file, resolve_secrets


def test_defaults():
    config = EngineConfig()
    assert config.step_timeout_minutes == 360
    assert config.continue_on_error_policy is ContinueOnErrorPolicy.ISOLATE
    assert config.worker_count() >= 2


def test_from_env_overrides_base():
    environ = {
        "ACTIONFLOW_MAX_WORKERS": "3",
        "ACTIONFLOW_CONTINUE_ON_ERROR_POLICY": "propagate",
        "UNRELATED": "x",
    }
    config = EngineConfig.from_env(EngineConfig(cancel_grace_seconds=2), environ=environ)
    assert config.max_workers == 3
    assert config.worker_count() == 3
    assert config.continue_on_error_policy is ContinueOnErrorPolicy.PROPAGATE
    assert config.cancel_grace_seconds == 2


def test_from_env_rejects_bad_values():
    with pytest.raises(ConfigError):
        EngineConfig.from_env(environ={"ACTIONFLOW_MAX_WORKERS": "zero"})


def test_merged_ignores_none():
    config = EngineConfig(max_workers=2).merged(max_workers=None, step_timeout_minutes=5, workspace="/tmp/ws")
    assert config.max_workers == 2
    assert config.step_timeout_minutes == 5
    assert config.workspace == Path("/tmp/ws")


def test_load_config_accepts_dashed_keys(tmp_path):
    path = tmp_path / "actionflow.yml"
    path.write_text("max-workers: 6\ncontinue-on-error-policy: propagate\ndefault_shell: sh\n", encoding="utf-8")
    config = load_config(path)
    assert config.max_workers == 6
    assert config.continue_on_error_policy is ContinueOnErrorPolicy.PROPAGATE
    assert config.default_shell == "sh"


def test_load_empty_config_gives_defaults(tmp_path):
    path = tmp_path / "empty.yml"
    path.write_text("", encoding="utf-8")
    assert load_config(path).max_workers is None


@pytest.mark.parametrize(
    "text",
    ["no-such-option: 1\n", "max-workers: 0\n", "step-timeout-minutes: -1\n", "- a list\n", "key: [unclosed\n"],
)
def test_load_config_errors(tmp_path, text):
    path = tmp_path / "bad.yml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as exc:
        load_config(path)
    assert str(path) in str(exc.value)


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yml")


# ----------------------------------------------------------------------
# Secrets
# ----------------------------------------------------------------------

def test_dict_secrets_are_case_insensitive():
    secrets = DictSecrets({"api_token": "abc"})
    assert secrets.get("API_TOKEN") == "abc"
    with pytest.raises(SecretNotFound):
        secrets.get("other")


def test_env_secrets():
    secrets = EnvSecrets(environ={"ACTIONFLOW_SECRET_DEPLOY_KEY": "k3y"})
    assert secrets.get("deploy_key") == "k3y"
    with pytest.raises(SecretNotFound):
        secrets.get("missing")


def test_chained_secrets_first_provider_wins():
    chain = ChainedSecrets(DictSecrets({"A": "from-dict"}), EnvSecrets(environ={"ACTIONFLOW_SECRET_A": "from-env", "ACTIONFLOW_SECRET_B": "b"}))
    assert chain.get("A") == "from-dict"
    assert chain.get("B") == "b"
    with pytest.raises(SecretNotFound):
        chain.get("C")


def test_resolve_secrets_skips_unknown_names():
    provider = DictSecrets({"KNOWN": "v"})
    assert resolve_secrets(provider, ["KNOWN", "UNKNOWN"]) == {"KNOWN": "v"}
    assert resolve_secrets(None, ["KNOWN"]) == {}


def test_load_secrets_file(tmp_path):
    path = tmp_path / "secrets.yml"
    path.write_text("MY_SECRET: s3cr3t\nPORT: 8080\n", encoding="utf-8")
    secrets = load_secrets_file(path)
    assert secrets.get("MY_SECRET") == "s3cr3t"
    assert secrets.get("PORT") == "8080"

    path.write_text("- not a mapping\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_secrets_file(path)
