#!/usr/bin/env python3
# Script: laps2onepass.py
#
# What this does:
# - Pull LAPS-managed computer objects from Active Directory
#   (name, dNSHostName, ms-Mcs-AdmPwd, ms-Mcs-AdmPwdExpirationTime)
# - Read every item of one 1Password vault through a Connect server
# - Create a login item for hosts the vault doesn't know yet
# - Rotate the stored password when AD holds a different one
# - Never deletes vault items and never writes an empty password
# - Replaces LAPS-UI: helpdesk reads local admin passwords from 1Password

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import contextlib
import copy
import fcntl
import json
import logging
import os
import re
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from typing import Iterable, Iterator, Mapping, Protocol, Sequence
from urllib import parse as _urlparse, request as _urlreq
from urllib.error import HTTPError, URLError

# Third-party
import ldap3
from colorama import Fore, Style
from cryptography.fernet import Fernet, InvalidToken
from ldap3.core.exceptions import LDAPException

#=================#
# Global Settings #
#=================#

PROG = "laps2onepass"
MIN_PYTHON_VERSION = (3, 10)

DEFAULT_ENVFILE = ".env"
DEFAULT_LOCK_PATH = "/var/lib/laps2onepass/.lock"
DEFAULT_SEARCH_FILTER = "(&(objectCategory=computer)(ms-Mcs-AdmPwd=*))"
DEFAULT_LAPS_USERNAME = "Administrator"
DEFAULT_PAGE_SIZE = 500
DEFAULT_CONNECT_TIMEOUT = 15        # Seconds

LOG_MAX_BYTES = 50 * 1024 * 1024    # Per logfile before rotation
LOG_BACKUPS = 3

ENC_KEY_ENV = "LAPS2OP_ENC_KEY"     # Fernet key for *_ENC values

# AD attributes we read per computer object
LDAP_ATTRIBUTES = ["name", "ms-Mcs-AdmPwd", "ms-Mcs-AdmPwdExpirationTime", "dNSHostName"]

# FILETIME: 100ns ticks since 1601-01-01 UTC
FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
FILETIME_NEVER = datetime.max.replace(tzinfo=timezone.utc)   # clamp for "never expires"
FILETIME_MAX = 2**64 - 1
TICKS_PER_SECOND = 10_000_000
TICKS_PER_MICROSECOND = 10

# 1Password item layout we write and expect back on rotate
PURPOSE_USERNAME = "USERNAME"
PURPOSE_PASSWORD = "PASSWORD"
PURPOSE_NOTES = "NOTES"
SLOT_PASSWORD = 1
SLOT_NOTES = 2
NOTES_FIELD_ID = "notesPlain"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = {
    "trace":   TRACE,
    "debug":   logging.DEBUG,
    "info":    logging.INFO,
    "warn":    logging.WARNING,
    "warning": logging.WARNING,
    "error":   logging.ERROR,
    "fatal":   logging.CRITICAL,
    "panic":   logging.CRITICAL,
}

ENV_ASSIGN_RE = re.compile(r"""^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^\s#]*))\s*(?:#.*)?$""")

log = logging.getLogger(PROG)

#========#
# Errors #
#========#

class Laps2OpError(Exception):
    """Base for every fatal condition; fncMain maps these to exit codes."""

class ConfigurationError(Laps2OpError):
    """Missing/empty settings or an ambiguous vault title."""

class SourceError(Laps2OpError):
    """Directory connect, bind or search failed."""

class StoreError(Laps2OpError):
    """Connect server unreachable, refused or returned garbage."""

class IntegrityFault(Laps2OpError):
    """A vault item doesn't have the username/password/notes layout we write."""

#=============#
# Data model  #
#=============#

@dataclass(frozen=True)
class CredentialRecord:
    name: str
    host_key: str
    secret: str
    expires_at: datetime = FILETIME_EPOCH

    @property
    def has_expiration(self) -> bool:
        return FILETIME_EPOCH < self.expires_at < FILETIME_NEVER

@dataclass
class VaultField:
    id: str
    type: str = "STRING"
    purpose: str = ""
    label: str = ""
    value: str = ""
    extra: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Mapping) -> "VaultField":
        known = ("id", "type", "purpose", "label", "value")
        return cls(
            id=data.get("id") or "",
            type=data.get("type") or "STRING",
            purpose=data.get("purpose") or "",
            label=data.get("label") or "",
            value=data.get("value") or "",
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_api(self) -> dict:
        out = dict(self.extra)
        out.update({"id": self.id, "type": self.type, "label": self.label, "value": self.value})
        if self.purpose:
            out["purpose"] = self.purpose
        return out

@dataclass
class VaultEntry:
    id: str
    vault_id: str
    title: str
    category: str = "LOGIN"
    fields: list[VaultField] = field(default_factory=list)
    extra: dict = field(default_factory=dict, repr=False)

    @property
    def password(self) -> str | None:
        for f in self.fields:
            if f.purpose == PURPOSE_PASSWORD:
                return f.value
        return None

    @classmethod
    def from_api(cls, data: Mapping) -> "VaultEntry":
        known = ("id", "vault", "title", "category", "fields")
        return cls(
            id=data.get("id") or "",
            vault_id=(data.get("vault") or {}).get("id") or "",
            title=data.get("title") or "",
            category=data.get("category") or "LOGIN",
            fields=[VaultField.from_api(f) for f in data.get("fields") or []],
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_api(self) -> dict:
        out = dict(self.extra)
        out.update({
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "vault": {"id": self.vault_id},
            "fields": [f.to_api() for f in self.fields],
        })
        return out

@dataclass(frozen=True)
class CreateSecret:
    record: CredentialRecord

@dataclass(frozen=True)
class RotateSecret:
    target: VaultEntry
    record: CredentialRecord

ReconciliationAction = CreateSecret | RotateSecret

@dataclass
class SyncTotals:
    created: int = 0
    rotated: int = 0

@dataclass(frozen=True)
class Config:
    connect_host: str
    connect_token: str = field(repr=False)
    vault_title: str
    ldap_url: str
    ldap_bind_dn: str
    ldap_bind_password: str = field(repr=False)
    ldap_base_dn: str
    ldap_filter: str = DEFAULT_SEARCH_FILTER
    laps_username: str = DEFAULT_LAPS_USERNAME
    ldap_page_size: int = DEFAULT_PAGE_SIZE
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
    lock_path: str = DEFAULT_LOCK_PATH

#===================#
# Utility / Logging #
#===================#

class _ColorFormatter(logging.Formatter):
    COLORS = {
        TRACE:            Fore.LIGHTBLACK_EX,
        logging.DEBUG:    Fore.CYAN,
        logging.INFO:     Fore.GREEN,
        logging.WARNING:  Fore.YELLOW,
        logging.ERROR:    Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record):
        return f"{self.COLORS.get(record.levelno, '')}{super().format(record)}{Style.RESET_ALL}"

# Function: fncSetupLogging
# Purpose : Configure the laps2onepass logger for stdout (coloured) or a rotating logfile.
# Notes   : Unknown level names fall back to info. Safe to call more than once.
def fncSetupLogging(level_name: str = "info", logfile: str | None = None) -> logging.Logger:
    level = LOG_LEVELS.get((level_name or "").strip().lower(), logging.INFO)
    fmt, datefmt = "%(asctime)s %(levelname)s %(message)s", "%Y-%m-%dT%H:%M:%S%z"

    if logfile:
        handler = RotatingFileHandler(logfile, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS)
        handler.setFormatter(logging.Formatter(fmt, datefmt))
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(_ColorFormatter(fmt, datefmt))

    for old in list(log.handlers):
        log.removeHandler(old)
        old.close()
    log.addHandler(handler)
    log.setLevel(level)
    log.debug("Loglevel set to %s", logging.getLevelName(level).lower())
    return log

# Function: fncPrintMessage
# Purpose : Human-friendly coloured console messages.
# Notes   : Used for the run summary and fatal reasons (not logs).
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.YELLOW + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}")

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        fncPrintMessage("This script requires Python %d.%d or higher. Please upgrade." % MIN_PYTHON_VERSION, "error")
        sys.exit(1)

@contextlib.contextmanager
def fncAcquireLock(path: str) -> Iterator[None]:
    """Hold an exclusive lock on `path` so two runs don't stampede the vault."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fh = open(path, "w")
    except OSError as e:
        raise ConfigurationError(f"Failed to open lock file {path}: {e}") from e
    try:
        os.chmod(path, 0o600)
        try:
            fcntl.lockf(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            raise Laps2OpError(f"Another instance of {PROG} is already running ({path})") from None
        log.debug("Acquired lock: %s", path)
        yield
    finally:
        fh.close()

#==============#
# Environment  #
#==============#

# Function: fncParseEnvFile
# Purpose : Read KEY=value pairs from a dotenv / systemd EnvironmentFile.
# Notes   : Comments and blank lines skipped; single or double quotes stripped.
def fncParseEnvFile(path: str) -> dict[str, str]:
    values: dict[str, str] = {}
    with open(path, "r") as f:
        for line in f:
            m = ENV_ASSIGN_RE.match(line)
            if not m:
                continue
            values[m.group(1)] = next((g for g in m.group(2, 3, 4) if g is not None), "")
    return values

# Function: fncLoadEnvironment
# Purpose : Merge the optional env file under the process environment.
# Notes   : Process env wins, so systemd/CI can override a checked-in .env.
def fncLoadEnvironment(envfile: str | None, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if environ is None else environ)
    if not envfile:
        return env
    if not os.path.exists(envfile):
        log.debug("No env file at %s; using process environment only", envfile)
        return env
    try:
        file_values = fncParseEnvFile(envfile)
    except OSError as e:
        raise ConfigurationError(f"Can't read env file {envfile}: {e}") from e
    log.debug("Loaded %d values from %s", len(file_values), envfile)
    return {**file_values, **env}

def _required(env: Mapping[str, str], name: str, errors: list[str], secret: bool = False) -> str:
    if name not in env:
        log.error("%s not set", name)
        errors.append(name)
        return ""
    value = env[name].strip()
    if not value:
        log.error("%s is empty", name)
        errors.append(name)
        return ""
    log.debug("%s is %s", name, value[:9] + "..." if secret else value)
    return value

# Function: _resolve_secret
# Purpose : Plain NAME wins; otherwise decrypt NAME_ENC ("fernet:<token>") with LAPS2OP_ENC_KEY.
# Notes   : Problems are logged and recorded in `errors`, never raised here.
def _resolve_secret(env: Mapping[str, str], name: str, errors: list[str]) -> str:
    plain = env.get(name, "").strip()
    if plain:
        log.debug("%s begins with %s...", name, plain[:9])
        return plain

    enc = env.get(f"{name}_ENC", "").strip()
    if not enc:
        log.error("%s not set (and no %s_ENC)", name, name)
        errors.append(name)
        return ""
    if not enc.startswith("fernet:"):
        log.error("Unknown %s_ENC format (expected 'fernet:...')", name)
        errors.append(name)
        return ""
    key_b64 = env.get(ENC_KEY_ENV, "").strip()
    if not key_b64:
        log.error("Missing %s for decrypting %s_ENC", ENC_KEY_ENV, name)
        errors.append(name)
        return ""
    try:
        return Fernet(key_b64.encode()).decrypt(enc.split(":", 1)[1].encode()).decode()
    except (InvalidToken, ValueError) as e:
        log.error("Failed to decrypt %s_ENC: %s", name, str(e) or "invalid token")
        errors.append(name)
        return ""

def _optional_int(env: Mapping[str, str], name: str, default: int, errors: list[str]) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        log.error("%s must be a positive integer, got %r", name, raw)
        errors.append(name)
        return default
    return value

# Function: fncLoadConfig
# Purpose : Validate the environment and build the one Config for this run.
# Notes   : Logs every problem first, then raises a single ConfigurationError.
def fncLoadConfig(env: Mapping[str, str]) -> Config:
    errors: list[str] = []
    values = dict(
        connect_host=_required(env, "OP_CONNECT_HOST", errors).rstrip("/"),
        connect_token=_resolve_secret(env, "OP_CONNECT_TOKEN", errors),
        vault_title=_required(env, "OP_VAULT_TITLE", errors),
        ldap_url=_required(env, "LDAP_URL", errors),
        ldap_bind_dn=_required(env, "LDAP_AUTH_CN", errors),
        ldap_bind_password=_resolve_secret(env, "LDAP_AUTH_PW", errors),
        ldap_base_dn=_required(env, "LDAP_SEARCH_BASEDN", errors),
        ldap_filter=env.get("LDAP_SEARCH_FILTER", "").strip() or DEFAULT_SEARCH_FILTER,
        laps_username=env.get("LAPS_USERNAME", "").strip() or DEFAULT_LAPS_USERNAME,
        ldap_page_size=_optional_int(env, "LDAP_PAGE_SIZE", DEFAULT_PAGE_SIZE, errors),
        connect_timeout=_optional_int(env, "OP_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT, errors),
        lock_path=env.get("LAPS2OP_LOCK_FILE", "").strip() or DEFAULT_LOCK_PATH,
    )
    if errors:
        raise ConfigurationError(
            f"Missing or invalid environment variables ({', '.join(errors)}), see previous errors"
        )
    return Config(**values)

#====================#
# FILETIME decoding  #
#====================#

def fncFiletimeToDatetime(ticks: int) -> datetime:
    """Convert a FILETIME (100ns ticks since 1601-01-01 UTC) to an aware datetime.

    Python ints don't overflow, so the offset is split exactly into seconds and
    microseconds and added in one step. The sub-microsecond digit is dropped
    (datetime resolution). Anything past datetime.max, e.g. AD's "never
    expires" 0x7FFFFFFFFFFFFFFF, clamps to datetime.max. Never raises.
    """
    if ticks <= 0:
        return FILETIME_EPOCH
    seconds, rem = divmod(ticks, TICKS_PER_SECOND)
    try:
        return FILETIME_EPOCH + timedelta(seconds=seconds, microseconds=rem // TICKS_PER_MICROSECOND)
    except OverflowError:
        return FILETIME_NEVER

# Function: fncParseFiletime
# Purpose : Turn the raw ms-Mcs-AdmPwdExpirationTime value into ticks.
# Notes   : Absent/garbage/out-of-range -> 0 ("no expiration known"), never raises.
def fncParseFiletime(raw, host: str = "") -> int:
    if raw is None or raw == "":
        log.debug("No ms-Mcs-AdmPwdExpirationTime on %s", host or "<unknown>")
        return 0
    if isinstance(raw, bytes):
        raw = raw.decode(errors="replace")
    try:
        ticks = int(str(raw).strip())
    except ValueError:
        log.warning("Can't convert ms-Mcs-AdmPwdExpirationTime %r on %s", raw, host or "<unknown>")
        return 0
    if ticks < 0 or ticks > FILETIME_MAX:
        log.warning("ms-Mcs-AdmPwdExpirationTime %s out of range on %s", ticks, host or "<unknown>")
        return 0
    return ticks

#=====================#
# Directory (LDAP)    #
#=====================#

class DirectorySource(Protocol):
    def fetch_records(self) -> list[CredentialRecord]: ...

def _first_value(value) -> str:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)

# Function: fncRecordFromLdapEntry
# Purpose : Map one computer object's attributes onto a CredentialRecord.
# Notes   : Attribute names are matched case-insensitively, AD isn't consistent.
def fncRecordFromLdapEntry(attributes: Mapping) -> CredentialRecord:
    attrs = {str(k).lower(): v for k, v in (attributes or {}).items()}
    host = _first_value(attrs.get("dnshostname"))
    raw_exp = attrs.get("ms-mcs-admpwdexpirationtime")
    raw_exp = _first_value(raw_exp) if raw_exp is not None else None
    return CredentialRecord(
        name=_first_value(attrs.get("name")),
        host_key=host,
        secret=_first_value(attrs.get("ms-mcs-admpwd")),
        expires_at=fncFiletimeToDatetime(fncParseFiletime(raw_exp, host)),
    )

class LdapDirectory:
    """Reads LAPS records from AD with a paged subtree search (ldap3)."""

    def __init__(self, config: Config):
        self.config = config

    def _connect(self) -> "ldap3.Connection":
        # raise_exceptions: failed result codes (noSuchObject, sizeLimitExceeded, ...)
        # raise instead of ending the paged generator early
        server = ldap3.Server(self.config.ldap_url, get_info=ldap3.NONE)
        conn = ldap3.Connection(
            server,
            user=self.config.ldap_bind_dn,
            password=self.config.ldap_bind_password,
            receive_timeout=self.config.connect_timeout,
            raise_exceptions=True,
        )
        if not conn.bind():
            desc = (conn.result or {}).get("description") or "unknown error"
            raise SourceError(f"LDAP bind as {self.config.ldap_bind_dn} failed: {desc}")
        return conn

    def fetch_records(self) -> list[CredentialRecord]:
        records: list[CredentialRecord] = []
        try:
            conn = self._connect()
            try:
                entries = conn.extend.standard.paged_search(
                    search_base=self.config.ldap_base_dn,
                    search_filter=self.config.ldap_filter,
                    search_scope=ldap3.SUBTREE,
                    attributes=LDAP_ATTRIBUTES,
                    paged_size=self.config.ldap_page_size,
                    generator=True,
                )
                for entry in entries:
                    if entry.get("type") != "searchResEntry":
                        continue  # referrals
                    record = fncRecordFromLdapEntry(entry.get("attributes") or {})
                    log.log(TRACE, "[%d] %s", len(records), record.host_key)
                    records.append(record)
            finally:
                conn.unbind()
        except LDAPException as e:
            raise SourceError(f"LDAP query against {self.config.ldap_url} failed: {e}") from e
        log.debug("Got %d entries from ldap", len(records))
        return records

#===============================#
# Secret store (1Password)      #
#===============================#

class SecretStore(Protocol):
    def resolve_vault_id(self, title: str) -> str: ...
    def fetch_entries(self, title: str) -> list[VaultEntry]: ...
    def create_item(self, vault_id: str, entry: VaultEntry) -> VaultEntry: ...
    def update_item(self, vault_id: str, entry: VaultEntry) -> VaultEntry: ...

def _connect_error_message(e: HTTPError) -> str:
    try:
        body = json.loads(e.read().decode(errors="ignore"))
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
    except (ValueError, OSError):
        pass
    return str(e.reason)

class ConnectStore:
    """Minimal 1Password Connect REST client (urllib, JSON)."""

    def __init__(self, config: Config):
        self.host = config.connect_host
        self.token = config.connect_token
        self.timeout = config.connect_timeout

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, context: str, payload=None, query=None):
        url = f"{self.host}{path}"
        if query:
            url += "?" + _urlparse.urlencode(query, quote_via=_urlparse.quote)
        data = json.dumps(payload).encode() if payload is not None else None
        req = _urlreq.Request(url, data=data, headers=self._headers(), method=method)
        try:
            with _urlreq.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode()
        except HTTPError as e:
            raise StoreError(f"{context}: HTTP {e.code}: {_connect_error_message(e)}") from e
        except URLError as e:
            raise StoreError(f"{context}: {e.reason}") from e
        except OSError as e:
            raise StoreError(f"{context}: {e}") from e
        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise StoreError(f"{context}: bad JSON from Connect: {e}") from e

    def resolve_vault_id(self, title: str) -> str:
        vaults = self._request("GET", "/v1/vaults", f"vault lookup {title!r}",
                               query={"filter": f'title eq "{title}"'}) or []
        matches = [v for v in vaults if v.get("name") == title]
        if not matches:
            raise ConfigurationError(f"Vault {title} not found")
        if len(matches) > 1:
            raise ConfigurationError(f"Vault {title} found more than once")
        log.debug("Found vault %s (%s)", title, matches[0].get("id"))
        return matches[0]["id"]

    def list_items(self, vault_id: str) -> list[dict]:
        return self._request("GET", f"/v1/vaults/{vault_id}/items", "list items") or []

    def get_item(self, vault_id: str, item_id: str) -> VaultEntry:
        data = self._request("GET", f"/v1/vaults/{vault_id}/items/{item_id}", f"get item {item_id}")
        return VaultEntry.from_api(data or {})

    def fetch_entries(self, title: str) -> list[VaultEntry]:
        vault_id = self.resolve_vault_id(title)
        summaries = self.list_items(vault_id)
        log.debug("Got %d list entries from onepass", len(summaries))
        entries = []
        for index, summary in enumerate(summaries):
            entry = self.get_item(vault_id, summary["id"])
            log.log(TRACE, "[%d] %s", index, entry.title)
            entries.append(entry)
        return entries

    def create_item(self, vault_id: str, entry: VaultEntry) -> VaultEntry:
        data = self._request("POST", f"/v1/vaults/{vault_id}/items", f"create item {entry.title}",
                             payload=entry.to_api())
        return VaultEntry.from_api(data or {})

    def update_item(self, vault_id: str, entry: VaultEntry) -> VaultEntry:
        data = self._request("PUT", f"/v1/vaults/{vault_id}/items/{entry.id}", f"update item {entry.title}",
                             payload=entry.to_api())
        return VaultEntry.from_api(data or {})

#=================#
# Reconciliation  #
#=================#

def fncRecordKey(record: CredentialRecord) -> str:
    return record.host_key

# Function: fncReconcile
# Purpose : Decide per AD record whether the vault needs a create, a rotate, or nothing.
# Notes   : Pure; input order kept. Duplicate vault titles resolve to the first one seen.
def fncReconcile(records: Sequence[CredentialRecord],
                 entries: Sequence[VaultEntry]) -> list[ReconciliationAction]:
    by_title: dict[str, VaultEntry] = {}
    for entry in entries:
        by_title.setdefault(entry.title, entry)

    seen: set[str] = set()
    actions: list[ReconciliationAction] = []
    for record in records:
        key = fncRecordKey(record)
        if not key:
            log.warning("Record %r has no dNSHostName; correlating on an empty title", record.name)
        elif key in seen:
            log.warning("dNSHostName %s appears more than once in ldap results", key)
        seen.add(key)

        if not record.secret:
            log.warning("No LAPS password for %s; skipped, never writing an empty secret", key or record.name)
            continue

        match = by_title.get(key)
        if match is None:
            log.log(TRACE, "Not found %s in onepassentries", key)
            actions.append(CreateSecret(record))
        elif match.password != record.secret:
            log.info("Update required %s", key)
            actions.append(RotateSecret(match, record))
        else:
            log.log(TRACE, "%s already in sync", key)
    return actions

#============#
# Execution  #
#============#

def _note(verb: str, record: CredentialRecord, now: datetime) -> str:
    text = f"{verb} by {PROG} on {now.isoformat()}"
    if record.expires_at == FILETIME_NEVER:
        text += " (LAPS password never expires)"
    elif record.has_expiration:
        text += f" (LAPS password expires {record.expires_at.isoformat()})"
    return text

# Function: fncBuildVaultEntry
# Purpose : Fresh LOGIN item for a host: username, password, notes in that order.
# Notes   : New UUIDs for item and credential fields; notes uses 1Password's notesPlain id.
def fncBuildVaultEntry(record: CredentialRecord, vault_id: str, username: str, now: datetime) -> VaultEntry:
    return VaultEntry(
        id=str(uuid.uuid4()),
        vault_id=vault_id,
        title=record.host_key,
        category="LOGIN",
        fields=[
            VaultField(id=str(uuid.uuid4()), type="STRING", purpose=PURPOSE_USERNAME,
                       label="Username", value=username),
            VaultField(id=str(uuid.uuid4()), type="CONCEALED", purpose=PURPOSE_PASSWORD,
                       label="Password", value=record.secret),
            VaultField(id=NOTES_FIELD_ID, type="STRING", purpose=PURPOSE_NOTES,
                       label=NOTES_FIELD_ID, value=_note("Created", record, now)),
        ],
    )

def fncCheckLayout(entry: VaultEntry):
    """Raise IntegrityFault unless slot 1 is the password and slot 2 the notes."""
    for slot, purpose in ((SLOT_PASSWORD, PURPOSE_PASSWORD), (SLOT_NOTES, PURPOSE_NOTES)):
        if len(entry.fields) <= slot:
            raise IntegrityFault(f"Fields[{slot}] missing on {entry.title} (expected {purpose})")
        if entry.fields[slot].purpose != purpose:
            raise IntegrityFault(
                f"Fields[{slot}] purpose is {entry.fields[slot].purpose or 'empty'}, not {purpose} on {entry.title}"
            )

# Function: fncApplyAction
# Purpose : Perform one create/rotate against the store.
# Notes   : One vault lookup + one write per action. Returns "created" or "rotated".
def fncApplyAction(action: ReconciliationAction, store: SecretStore, config: Config,
                   now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    record = action.record

    if isinstance(action, CreateSecret):
        log.info("Creating %s", record.host_key)
        vault_id = store.resolve_vault_id(config.vault_title)
        created = store.create_item(vault_id, fncBuildVaultEntry(record, vault_id, config.laps_username, now))
        log.info("Created %s successfully", created.title or record.host_key)
        return "created"

    if isinstance(action, RotateSecret):
        log.info("Rotating %s", record.host_key)
        fncCheckLayout(action.target)
        vault_id = store.resolve_vault_id(config.vault_title)
        entry = copy.deepcopy(action.target)
        entry.fields[SLOT_PASSWORD].value = record.secret
        entry.fields[SLOT_NOTES].value = _note("Updated", record, now)
        store.update_item(vault_id, entry)
        log.info("Updated %s successfully", entry.title)
        return "rotated"

    raise TypeError(f"Unknown reconciliation action: {action!r}")

def fncApplyActions(actions: Iterable[ReconciliationAction], store: SecretStore, config: Config) -> SyncTotals:
    """Apply actions in order, stopping at the first failure. Nothing is rolled back."""
    totals = SyncTotals()
    for action in actions:
        try:
            outcome = fncApplyAction(action, store, config)
        except Laps2OpError:
            log.error("Aborted due to previous error (created=%d updated=%d before abort)",
                      totals.created, totals.rotated)
            raise
        if outcome == "created":
            totals.created += 1
        else:
            totals.rotated += 1
    return totals

def fncDescribeAction(action: ReconciliationAction) -> str:
    if isinstance(action, CreateSecret):
        return f"create {action.record.host_key}"
    return f"rotate {action.record.host_key} (item {action.target.id})"

#=================#
# Script harness  #
#=================#

# Function: fncRun
# Purpose : One full pass: read AD, read the vault, reconcile, apply.
# Notes   : Zero AD records is fatal; an empty vault is only a warning.
def fncRun(config: Config, directory: DirectorySource, store: SecretStore, dry_run: bool = False) -> SyncTotals:
    records = directory.fetch_records()
    if not records:
        raise SourceError("No entries returned from ldap")

    entries = store.fetch_entries(config.vault_title)
    if not entries:
        log.warning("No entries returned from onepass")

    actions = fncReconcile(records, entries)
    log.info("Planned %d action(s) for %d ldap record(s) against %d vault item(s)",
             len(actions), len(records), len(entries))

    if dry_run:
        for action in actions:
            log.info("[dry-run] would %s", fncDescribeAction(action))
        return SyncTotals()

    totals = fncApplyActions(actions, store, config)
    log.info("Total created=%d updated=%d", totals.created, totals.rotated)
    return totals

def fncParseArgs(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog=PROG, description="Export LAPS passwords from AD into a 1Password vault")
    parser.add_argument("--loglevel", default="info",
                        help="set loglevel [trace,debug,info,warn,error,fatal,panic]")
    parser.add_argument("--logfile", default="",
                        help="write log to specified file (disables stdout)")
    parser.add_argument("--envfile", default=DEFAULT_ENVFILE,
                        help=f"optional KEY=value file merged under the environment (default {DEFAULT_ENVFILE})")
    parser.add_argument("--dry-run", action="store_true", help="plan only, write nothing to 1Password")
    parser.add_argument("--no-lock", action="store_true", help="skip the single-instance lock file")
    return parser.parse_args(argv)

# Function: fncMain
# Purpose : Program entrypoint; logging, config, lock, sync, exit code.
# Notes   : The only place exceptions become exit codes.
def fncMain(argv: Sequence[str] | None = None) -> int:
    args = fncParseArgs(argv)
    try:
        fncSetupLogging(args.loglevel, args.logfile or None)
    except OSError as e:
        fncPrintMessage(f"Can't open logfile {args.logfile}: {e}", "error")
        return 1
    log.debug("Start programm")

    try:
        config = fncLoadConfig(fncLoadEnvironment(args.envfile))
        lock = contextlib.nullcontext() if args.no_lock else fncAcquireLock(config.lock_path)
        with lock:
            totals = fncRun(config, LdapDirectory(config), ConnectStore(config), dry_run=args.dry_run)
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "error")
        return 130
    except Laps2OpError as e:
        log.error("%s", e)
        fncPrintMessage(f"Aborted: {e}", "error")
        return 1
    except Exception as e:
        log.exception("Unhandled exception: %s", e)
        return 1

    if args.dry_run:
        fncPrintMessage("Dry run complete, nothing written.", "info")
    else:
        fncPrintMessage(f"Total created={totals.created} updated={totals.rotated}", "success")
    log.debug("Successfully exit")
    return 0

if __name__ == "__main__":
    fncCheckPyVersion()
    sys.exit(fncMain())
