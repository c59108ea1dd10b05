"""Shared fixtures: a Config, and in-memory stand-ins for AD and 1Password."""

from __future__ import annotations

import copy
import logging
import uuid

import pytest

import laps2onepass as l2o
from laps2onepass import Config, CredentialRecord, StoreError, VaultEntry, VaultField


@pytest.fixture(autouse=True)
def reset_logger():
    """fncMain/fncSetupLogging attach handlers; drop them between tests."""
    logger = logging.getLogger(l2o.PROG)
    level = logger.level
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)


@pytest.fixture
def config():
    return Config(
        connect_host="http://connect.test:8080",
        connect_token="eyJhbGciOiJFUzI1NiIsImtpZCI6InRlc3QifQ",
        vault_title="LAPS",
        ldap_url="ldaps://dc01.example.com:636",
        ldap_bind_dn="CN=svc-laps,OU=Service,DC=example,DC=com",
        ldap_bind_password="bind-secret",
        ldap_base_dn="OU=Computers,DC=example,DC=com",
        laps_username="Administrator",
    )


def make_record(host, secret="abc", name=None, expires_at=l2o.FILETIME_EPOCH):
    return CredentialRecord(name=name or host.split(".")[0], host_key=host, secret=secret, expires_at=expires_at)


def make_entry(title, password="abc", item_id=None, vault_id="vault-1", slot1_purpose="PASSWORD"):
    return VaultEntry(
        id=item_id or str(uuid.uuid4()),
        vault_id=vault_id,
        title=title,
        fields=[
            VaultField(id="username", purpose="USERNAME", label="Username", value="Administrator"),
            VaultField(id="password", type="CONCEALED", purpose=slot1_purpose, label="Password", value=password),
            VaultField(id="notesPlain", purpose="NOTES", label="notesPlain", value=""),
        ],
    )


@pytest.fixture
def record():
    return make_record


@pytest.fixture
def entry():
    return make_entry


class FakeDirectory:
    def __init__(self, records=()):
        self.records = list(records)

    def fetch_records(self):
        return list(self.records)


class FakeStore:
    """Vault held in memory; mirrors the Connect call surface the executor uses."""

    def __init__(self, entries=(), vault_id="vault-1", title="LAPS"):
        self.vault_id = vault_id
        self.title = title
        self.entries = [copy.deepcopy(e) for e in entries]
        self.lookups = 0
        self.created = []
        self.updated = []
        self.fail_on_write = None   # int: raise StoreError on the n-th write (1-based)
        self._writes = 0

    def resolve_vault_id(self, title):
        self.lookups += 1
        if title != self.title:
            raise l2o.ConfigurationError(f"Vault {title} not found")
        return self.vault_id

    def fetch_entries(self, title):
        self.resolve_vault_id(title)
        return [copy.deepcopy(e) for e in self.entries]

    def _write(self):
        self._writes += 1
        if self.fail_on_write == self._writes:
            raise StoreError("update item: HTTP 503: connect unavailable")

    def create_item(self, vault_id, entry):
        self._write()
        stored = copy.deepcopy(entry)
        self.created.append(stored)
        self.entries.append(stored)
        return copy.deepcopy(stored)

    def update_item(self, vault_id, entry):
        self._write()
        stored = copy.deepcopy(entry)
        self.updated.append(stored)
        self.entries = [stored if e.id == entry.id else e for e in self.entries]
        return copy.deepcopy(stored)


@pytest.fixture
def directory_factory():
    return FakeDirectory


@pytest.fixture
def store_factory():
    return FakeStore
