"""Tests for the installer's key handling, env wizard and generated units."""

import builtins

import pytest
from cryptography.fernet import Fernet

import installer
from laps2onepass import fncLoadConfig, fncParseEnvFile


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    monkeypatch.delenv(installer.ENC_KEY_ENV, raising=False)
    installer.fncSetColorMode(True)
    yield
    installer.fncSetColorMode(False)


def _decrypt(blob, key):
    assert blob.startswith("fernet:")
    return Fernet(key.encode()).decrypt(blob.split(":", 1)[1].encode()).decode()


def test_env_quote():
    assert installer.fncEnvQuote("plain") == "'plain'"
    assert installer.fncEnvQuote("it's") == "\"it's\""
    assert installer.fncEnvQuote(None) == "''"
    with pytest.raises(ValueError):
        installer.fncEnvQuote("both ' and \"")


def test_keyfile_created_once(tmp_path):
    key_path = tmp_path / "laps2onepass.key"
    installer.fncEnsureKeyfile(key_path)
    first = key_path.read_text()
    assert first.startswith(f"{installer.ENC_KEY_ENV}=")
    assert key_path.stat().st_mode & 0o777 == 0o600

    installer.fncEnsureKeyfile(key_path)
    assert key_path.read_text() == first

    key = installer.fncLoadEncKey(key_path)
    Fernet(key.encode())  # valid Fernet key


def test_env_key_wins_over_keyfile(tmp_path, monkeypatch):
    key_path = tmp_path / "laps2onepass.key"
    installer.fncEnsureKeyfile(key_path)
    monkeypatch.setenv(installer.ENC_KEY_ENV, "from-env")
    assert installer.fncLoadEncKey(key_path) == "from-env"


def test_no_key_anywhere(tmp_path):
    assert installer.fncLoadEncKey(tmp_path / "missing.key") is None


def test_migrate_plaintext_secrets(tmp_path):
    key_path = tmp_path / "laps2onepass.key"
    installer.fncEnsureKeyfile(key_path)
    key = installer.fncLoadEncKey(key_path)
    env_path = tmp_path / "laps2onepass.env"
    existing = installer.fncEncryptSecretFernet("already-encrypted", key)
    env_path.write_text(
        "OP_CONNECT_HOST='http://localhost:8080'\n"
        "OP_CONNECT_TOKEN='plain-token'\n"
        "LDAP_AUTH_PW=plain-pw\n"
        f"LDAP_AUTH_PW_ENC='{existing}'\n"
    )

    assert installer.fncEncryptIfNeededInEnv(env_path, key_path) is True

    values = fncParseEnvFile(str(env_path))
    assert values["OP_CONNECT_TOKEN"] == ""
    assert values["LDAP_AUTH_PW"] == ""
    assert _decrypt(values["OP_CONNECT_TOKEN_ENC"], key) == "plain-token"
    # an existing _ENC value is kept, not re-encrypted from the plaintext
    assert values["LDAP_AUTH_PW_ENC"] == existing
    assert "plain-token" not in env_path.read_text()
    assert env_path.stat().st_mode & 0o777 == 0o600
    assert list(tmp_path.glob("laps2onepass.env.bak-*"))


def test_migrate_nothing_to_do(tmp_path):
    key_path = tmp_path / "laps2onepass.key"
    installer.fncEnsureKeyfile(key_path)
    env_path = tmp_path / "laps2onepass.env"
    env_path.write_text("OP_CONNECT_TOKEN=''\nOP_CONNECT_TOKEN_ENC='fernet:abc'\n")
    before = env_path.read_text()

    assert installer.fncEncryptIfNeededInEnv(env_path, key_path) is False
    assert env_path.read_text() == before


def test_migrate_without_key(tmp_path):
    env_path = tmp_path / "laps2onepass.env"
    env_path.write_text("OP_CONNECT_TOKEN=plain\n")
    assert installer.fncEncryptIfNeededInEnv(env_path, tmp_path / "missing.key") is False
    assert env_path.read_text() == "OP_CONNECT_TOKEN=plain\n"


def test_wizard_writes_usable_encrypted_env(tmp_path, monkeypatch):
    key_path = tmp_path / "laps2onepass.key"
    installer.fncEnsureKeyfile(key_path)
    key = installer.fncLoadEncKey(key_path)

    answers = iter([
        "",                                   # OP_CONNECT_HOST default
        "",                                   # OP_VAULT_TITLE default
        "ldaps://dc01.example.com:636",
        "svc-laps@example.com",
        "DC=example,DC=com",
        "",                                   # filter default
        "lapsadmin",
    ])
    secrets = iter(["op-token-123", "bind-pw-456"])
    monkeypatch.setattr(builtins, "input", lambda prompt="": next(answers))
    monkeypatch.setattr(installer, "getpass", lambda prompt="": next(secrets))

    content = installer.fncBuildEnvfileContent(key_path)
    assert "op-token-123" not in content
    assert "bind-pw-456" not in content

    env_path = tmp_path / "laps2onepass.env"
    installer.fncWriteEnvfile(content, env_path)
    assert env_path.stat().st_mode & 0o777 == 0o600

    env = fncParseEnvFile(str(env_path))
    env[installer.ENC_KEY_ENV] = key
    cfg = fncLoadConfig(env)
    assert cfg.connect_host == "http://localhost:8080"
    assert cfg.connect_token == "op-token-123"
    assert cfg.vault_title == "LAPS"
    assert cfg.ldap_bind_password == "bind-pw-456"
    assert cfg.ldap_filter == "(&(objectCategory=computer)(ms-Mcs-AdmPwd=*))"
    assert cfg.laps_username == "lapsadmin"
    assert cfg.lock_path == "/var/lib/laps2onepass/.lock"


def test_wizard_refuses_without_key(tmp_path):
    with pytest.raises(SystemExit):
        installer.fncBuildEnvfileContent(tmp_path / "missing.key")


def test_service_unit():
    unit = installer.fncServiceUnit()
    assert "Type=oneshot" in unit
    assert f"EnvironmentFile=-{installer.ENVFILE}" in unit
    assert f"EnvironmentFile=-{installer.KEYFILE}" in unit
    assert f"ExecCondition={installer.CHECKER}" in unit
    assert "--logfile /var/log/laps2onepass/laps2onepass.log" in unit


def test_timer_unit():
    unit = installer.fncTimerUnit()
    assert "OnUnitActiveSec=1h" in unit
    assert "Unit=laps2onepass.service" in unit


def test_checker_pins_script_hash():
    script = installer.fncCheckerScript("a" * 64, "b" * 64, "c" * 64)
    assert script.startswith("#!/bin/bash")
    assert f"{'a' * 64}  {installer.SCRIPT_DST}" in script
    assert f"{'b' * 64}  {installer.ENVFILE}" in script
    assert f"{'c' * 64}  {installer.KEYFILE}" in script
    assert f"guard {installer.KEYFILE}" in script


def test_checker_without_baselines():
    script = installer.fncCheckerScript("a" * 64)
    assert script.count("sha256sum --quiet --check") == 1
