#!/usr/bin/env python3
# Installer for laps2onepass: systemd oneshot + hourly timer, env wizard,
# Fernet-encrypted secrets and a checksum guard run before every sync.
import argparse
import hashlib
import os
import re
import shutil
import subprocess
import sys
from datetime import datetime
from getpass import getpass
from pathlib import Path
from colorama import Fore as F, Style as S, just_fix_windows_console

# ============================
# Paths & constants
# ============================
ROOT_DIR = Path(__file__).resolve().parent
SCRIPT_SRC = ROOT_DIR / "laps2onepass.py"
REQS = ROOT_DIR / "requirements.txt"
VERSION = "1.0.0"
PYTHON = "/usr/bin/python3"

SCRIPT_DST = Path("/usr/local/sbin/laps2onepass.py")
CHECKER = Path("/usr/local/sbin/laps2onepass_check.sh")
SERVICE = Path("/etc/systemd/system/laps2onepass.service")
TIMER = Path("/etc/systemd/system/laps2onepass.timer")
LOGDIR = Path("/var/log/laps2onepass")
STATEDIR = Path("/var/lib/laps2onepass")
ENVFILE = Path("/etc/laps2onepass.env")
KEYFILE = Path("/etc/laps2onepass.key")
ENC_KEY_ENV = "LAPS2OP_ENC_KEY"

# Same grammar laps2onepass.py reads the env file with
ASSIGN_RE = re.compile(r"""^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^\s#]*))\s*(?:#.*)?$""")

# Stored only as NAME_ENC='fernet:...'
SECRET_VARS = ("OP_CONNECT_TOKEN", "LDAP_AUTH_PW")

DEFAULT_FILTER = "(&(objectCategory=computer)(ms-Mcs-AdmPwd=*))"

# (section, [(variable, question, default, secret)])
WIZARD = [
    ("1Password Connect", [
        ("OP_CONNECT_HOST", "Connect server URL", "http://localhost:8080", False),
        ("OP_CONNECT_TOKEN", "Connect access token", None, True),
        ("OP_VAULT_TITLE", "Vault the LAPS items live in", "LAPS", False),
    ]),
    ("Active Directory", [
        ("LDAP_URL", "LDAP URL, e.g. ldaps://dc01.example.com:636", None, False),
        ("LDAP_AUTH_CN", "Bind DN or UPN", None, False),
        ("LDAP_AUTH_PW", "Bind password", None, True),
        ("LDAP_SEARCH_BASEDN", "Search base DN", None, False),
        ("LDAP_SEARCH_FILTER", "Search filter", DEFAULT_FILTER, False),
        ("LAPS_USERNAME", "Local admin name written on new items", "Administrator", False),
    ]),
]

BANNER = r"""
  _                 ___
 | |   __ _ _ __ __|_  )___ _ _  ___ _ __  __ _ ______
 | |__/ _` | '_ (_-</ // _ \ ' \/ -_) '_ \/ _` (_-<_-<
 |____\__,_| .__/__/___\___/_||_\___| .__/\__,_/__/__/
           |_|                      |_|
        AD local admin passwords, straight into 1Password.
"""

# ============================
# Output
# ============================
just_fix_windows_console()

_ROLES = {
    "head": F.MAGENTA + S.BRIGHT,
    "info": F.CYAN,
    "ok":   F.GREEN,
    "warn": F.YELLOW,
    "err":  F.RED,
    "ask":  F.CYAN + S.BRIGHT,
    "dim":  F.LIGHTBLACK_EX,
    "em":   F.WHITE + S.BRIGHT,
}
_PLAIN = False

def fncSetColorMode(no_color: bool):
    """--no-color and NO_COLOR win, then FORCE_COLOR, then 'is stdout a tty'."""
    global _PLAIN
    if no_color or os.environ.get("NO_COLOR"):
        _PLAIN = True
    elif os.environ.get("FORCE_COLOR"):
        _PLAIN = False
    else:
        _PLAIN = not getattr(sys.stdout, "isatty", lambda: False)()

def fncPaint(text: str, role: str) -> str:
    if _PLAIN or role not in _ROLES:
        return text
    return f"{_ROLES[role]}{text}{S.RESET_ALL}"

def _say(tag: str, role: str, msg: str):
    print(f"{fncPaint(tag, role)} {msg}")

def fncHeading(msg: str):
    print(fncPaint(msg, "head"))

def fncInfo(msg: str): _say("[*]", "info", msg)
def fncOk(msg: str):   _say("[+]", "ok", msg)
def fncWarn(msg: str): _say("[!]", "warn", msg)
def fncErr(msg: str):  _say("[-]", "err", msg)

def fncPrintBanner():
    print(fncPaint(BANNER, "info"))
    print(f"  v{VERSION}\n")

# ============================
# System helpers
# ============================
def fncRequireRoot():
    if os.geteuid() != 0:
        fncErr("Run me as root (sudo python3 installer.py ...)")
        sys.exit(1)

def fncSha256Sum(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()

# Function: fncSystemctl
# Purpose : Run systemctl, exit on failure unless check=False.
def fncSystemctl(*args: str, check: bool = True) -> bool:
    fncInfo(fncPaint("systemctl " + " ".join(args), "dim"))
    rc = subprocess.run(["systemctl", *args]).returncode
    if rc and check:
        fncErr(f"systemctl {' '.join(args)} exited {rc}")
        sys.exit(rc)
    return rc == 0

def fncInstallRequirements():
    if not REQS.exists():
        fncWarn(f"{REQS.name} missing; assuming colorama, cryptography and ldap3 are installed")
        return
    fncInfo(f"Installing Python dependencies from {REQS.name}")
    rc = subprocess.run([PYTHON, "-m", "pip", "install", "-r", str(REQS), "--break-system-packages"]).returncode
    if rc:
        fncErr("pip install failed, see output above")
        sys.exit(1)
    fncOk("Dependencies installed")

def fncInstallFile(src: Path, dst: Path, mode: int):
    shutil.copy2(src, dst)
    os.chmod(dst, mode)

def fncBackup(path: Path) -> Path | None:
    """Copy path to path.bak-<timestamp>; None when the copy failed."""
    backup = path.with_name(f"{path.name}.bak-{datetime.now():%Y%m%d-%H%M%S}")
    try:
        shutil.copy2(path, backup)
    except OSError as e:
        fncWarn(f"No backup of {path}: {e}")
        return None
    fncInfo(f"Backup: {fncPaint(str(backup), 'em')}")
    return backup

# ============================
# Env file + encryption key
# ============================
def fncEnvQuote(val: str | None) -> str:
    """Quote a value for the env file (read by systemd and laps2onepass.py).

    Neither reader understands shell-style quote splicing, so a value holding a
    single quote goes in double quotes instead. A value with both can't be stored.
    """
    val = val or ""
    if "'" not in val:
        return f"'{val}'"
    if '"' not in val:
        return f'"{val}"'
    raise ValueError("value contains both quote characters")

def fncReadAssignments(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in path.read_text().splitlines():
        m = ASSIGN_RE.match(line)
        if m:
            values[m.group(1)] = next((g for g in m.group(2, 3, 4) if g is not None), "")
    return values

def fncEnsureKeyfile(key_path: Path = KEYFILE):
    """Create the Fernet key file once; later runs only re-tighten its mode."""
    from cryptography.fernet import Fernet

    try:
        if not key_path.exists():
            key_path.write_text(f"{ENC_KEY_ENV}={Fernet.generate_key().decode()}\n")
            fncOk(f"Generated encryption key in {key_path}")
        os.chmod(key_path, 0o600)
    except OSError as e:
        fncErr(f"Can't write {key_path}: {e}")
        sys.exit(1)

def fncLoadEncKey(key_path: Path = KEYFILE) -> str | None:
    """Process env first (the service gets it via EnvironmentFile), then the key file."""
    val = os.environ.get(ENC_KEY_ENV, "").strip()
    if val:
        return val
    try:
        if key_path.exists():
            return fncReadAssignments(key_path).get(ENC_KEY_ENV, "").strip() or None
    except OSError as e:
        fncWarn(f"Can't read {key_path}: {e}")
    return None

def fncEncryptSecretFernet(secret: str, key_b64: str) -> str:
    from cryptography.fernet import Fernet

    return "fernet:" + Fernet(key_b64.encode()).encrypt(secret.encode()).decode()

# Function: fncEncryptIfNeededInEnv
# Purpose : Move plaintext OP_CONNECT_TOKEN / LDAP_AUTH_PW in an existing env file to *_ENC.
# Notes   : An existing NAME_ENC is kept as is; the plaintext line is blanked either way.
#           Returns True when the file was rewritten.
def fncEncryptIfNeededInEnv(env_path: Path = ENVFILE, key_path: Path = KEYFILE) -> bool:
    if not env_path.exists():
        fncInfo(f"{env_path} not found, nothing to migrate")
        return False

    key = fncLoadEncKey(key_path)
    if not key:
        fncErr(f"No {ENC_KEY_ENV} in the environment or {key_path}; secrets left as they are")
        return False

    lines = env_path.read_text().splitlines()
    current = fncReadAssignments(env_path)
    migrated = []
    for idx, line in enumerate(lines):
        m = ASSIGN_RE.match(line)
        if not m or m.group(1) not in SECRET_VARS:
            continue
        name = m.group(1)
        plain = current.get(name, "")
        if not plain:
            continue
        if not current.get(f"{name}_ENC"):
            try:
                lines.append(f"{name}_ENC={fncEnvQuote(fncEncryptSecretFernet(plain, key))}")
            except ValueError as e:
                fncErr(f"Can't encrypt {name}: {e}")
                return False
        lines[idx] = f"{name}=''"
        migrated.append(name)

    if not migrated:
        fncInfo(f"{env_path} holds no plaintext secrets")
        return False

    fncBackup(env_path)
    env_path.write_text("\n".join(lines) + "\n")
    os.chmod(env_path, 0o600)
    fncOk(f"Encrypted {', '.join(migrated)} in {env_path}")
    return True

# ============================
# Wizard
# ============================
def fncAsk(question: str, default: str | None = None, secret: bool = False) -> str:
    if secret:
        prompt = fncPaint(f"{question} (hidden): ", "ask")
    else:
        hint = fncPaint(f" [{default}]", "dim") if default else ""
        prompt = f"{fncPaint(question, 'ask')}{hint}: "
    while True:
        answer = (getpass(prompt) if secret else input(prompt)).strip()
        if answer:
            return answer
        if default is not None:
            return default
        fncWarn("A value is required.")

def fncAskYesNo(question: str, default_yes: bool = False) -> bool:
    hint = fncPaint("[Y/n]" if default_yes else "[y/N]", "dim")
    while True:
        answer = input(f"{fncPaint(question, 'ask')} {hint}: ").strip().lower()
        if not answer:
            return default_yes
        if answer in ("y", "yes", "n", "no"):
            return answer.startswith("y")
        fncWarn("y or n, please.")

def fncBuildEnvfileContent(key_path: Path = KEYFILE) -> str:
    """Ask for every setting and return the env file text, secrets only as *_ENC."""
    key = fncLoadEncKey(key_path)
    if not key:
        fncErr(f"No encryption key ({key_path}); refusing to write secrets in plaintext")
        sys.exit(1)

    lines = ["# Written by the laps2onepass installer. Mode 0600, owner root."]
    for section, questions in WIZARD:
        print()
        fncHeading(f"== {section} ==")
        lines.append("")
        for name, question, default, secret in questions:
            answer = fncAsk(f"{question} ({name})", default=default, secret=secret)
            if secret:
                lines.append(f"{name}=''")
                name, answer = f"{name}_ENC", fncEncryptSecretFernet(answer, key)
            lines.append(f"{name}={fncEnvQuote(answer)}")
    lines += ["", f"LAPS2OP_LOCK_FILE={fncEnvQuote(str(STATEDIR / '.lock'))}"]
    return "\n".join(lines) + "\n"

def fncWriteEnvfile(content: str, env_path: Path = ENVFILE):
    existed = env_path.exists()
    env_path.write_text(content)
    os.chmod(env_path, 0o600)
    fncOk(f"{'Rewrote' if existed else 'Created'} {fncPaint(str(env_path), 'em')} (0600)")

# ============================
# Generated files
# ============================
def fncCheckerScript(script_sha: str, env_sha: str = "", key_sha: str = "") -> str:
    """Bash guard used as ExecCondition: refuses to run a modified script.

    Ownership/mode problems and a changed script are fatal; a changed env or
    key file since the last install/update is only reported.
    """
    baselines = "".join(f"{sha}  {path}\n" for sha, path in ((env_sha, ENVFILE), (key_sha, KEYFILE)) if sha)
    drift = ""
    if baselines:
        drift = (
            "sha256sum --quiet --check - <<'EOF' || say \"env or key file changed since the last install/update\"\n"
            f"{baselines}EOF\n"
        )
    return f"""#!/bin/bash
# Generated by the laps2onepass installer; runs before every sync.
set -euo pipefail

TAG=laps2onepass_check

say() {{ logger -t "$TAG" "$*" || true; echo "$*" >&2; }}
die() {{ say "$*"; exit 1; }}

guard() {{
    local f="$1"
    [[ -e "$f" ]] || {{ say "missing $f"; return 0; }}
    [[ -L "$f" ]] && die "symlink not allowed: $f"
    [[ "$(stat -Lc %u "$f")" == 0 ]] || die "$f is not owned by root"
    (( (8#$(stat -Lc %a "$f") & 8#077) == 0 )) || die "$f is accessible by group/other"
}}

guard {SCRIPT_DST}
guard {ENVFILE}
guard {KEYFILE}

sha256sum --quiet --check - <<'EOF' || die "checksum mismatch on {SCRIPT_DST}, refusing to run"
{script_sha}  {SCRIPT_DST}
EOF
{drift}"""

def fncWriteChecker(script_sha: str):
    env_sha = fncSha256Sum(ENVFILE) if ENVFILE.exists() else ""
    key_sha = fncSha256Sum(KEYFILE) if KEYFILE.exists() else ""
    CHECKER.write_text(fncCheckerScript(script_sha, env_sha, key_sha))
    os.chmod(CHECKER, 0o700)
    fncOk(f"Checker {CHECKER} pinned to {script_sha[:12]}...")

def fncServiceUnit() -> str:
    return f"""[Unit]
Description=laps2onepass - export LAPS passwords from AD to 1Password
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
EnvironmentFile=-{ENVFILE}
EnvironmentFile=-{KEYFILE}
ExecCondition={CHECKER}
ExecStart={PYTHON} {SCRIPT_DST} --envfile '' --logfile {LOGDIR / 'laps2onepass.log'}
User=root
"""

def fncTimerUnit() -> str:
    return """[Unit]
Description=Run laps2onepass every hour

[Timer]
OnBootSec=5min
OnUnitActiveSec=1h
Unit=laps2onepass.service
AccuracySec=1min
Persistent=true

[Install]
WantedBy=timers.target
"""

def fncWriteUnits():
    for path, text in ((SERVICE, fncServiceUnit()), (TIMER, fncTimerUnit())):
        path.write_text(text)
        fncOk(f"Wrote {path}")
    fncSystemctl("daemon-reload")

# ============================
# Actions
# ============================
def fncDoInstall():
    fncRequireRoot()
    fncHeading("Installing laps2onepass")

    fncInstallRequirements()
    fncEnsureKeyfile()

    fncInstallFile(SCRIPT_SRC, SCRIPT_DST, 0o700)
    fncOk(f"Script -> {SCRIPT_DST}")
    for d in (LOGDIR, STATEDIR):
        d.mkdir(mode=0o750, parents=True, exist_ok=True)

    fncWriteEnvfile(fncBuildEnvfileContent())
    fncWriteChecker(fncSha256Sum(SCRIPT_DST))
    fncWriteUnits()
    fncSystemctl("enable", "--now", "laps2onepass.timer")

    fncOk("Done. The timer runs the sync hourly.")
    fncInfo("Try a dry run: " + fncPaint(f"set -a; . {ENVFILE}; . {KEYFILE}; {PYTHON} {SCRIPT_DST} --dry-run", "em"))
    fncInfo("Logs: " + fncPaint(str(LOGDIR / "laps2onepass.log"), "em"))

def fncDoUpdate(auto_restart: bool = False):
    fncRequireRoot()
    fncHeading("Updating laps2onepass")

    missing = [p for p in (SCRIPT_DST, CHECKER, SCRIPT_SRC) if not p.exists()]
    if missing:
        fncErr(f"Missing {', '.join(map(str, missing))}; run 'install' first")
        sys.exit(1)

    fncEnsureKeyfile()
    if not ENVFILE.exists():
        if fncAskYesNo(f"{ENVFILE} doesn't exist. Run the config wizard?", default_yes=True):
            fncWriteEnvfile(fncBuildEnvfileContent())
        else:
            fncWarn("No env file; the service will fail until one exists.")
    elif fncAskYesNo(f"Re-run the config wizard over {ENVFILE}?"):
        fncBackup(ENVFILE)
        fncWriteEnvfile(fncBuildEnvfileContent())
    else:
        fncEncryptIfNeededInEnv(ENVFILE)

    new_sha = fncSha256Sum(SCRIPT_SRC)
    if new_sha == fncSha256Sum(SCRIPT_DST):
        fncInfo("Installed script is already current")
    else:
        fncInstallFile(SCRIPT_SRC, SCRIPT_DST, 0o700)
        if fncSha256Sum(SCRIPT_DST) != new_sha:
            fncErr(f"{SCRIPT_DST} doesn't match the source after copying; aborting")
            sys.exit(1)
        fncOk(f"Script updated to {new_sha[:12]}...")

    # the env file may have changed above
    fncWriteChecker(new_sha)
    fncWriteUnits()
    if auto_restart:
        fncSystemctl("restart", "laps2onepass.timer")

def fncDoUninstall(purge: bool = False):
    fncRequireRoot()
    fncHeading("Removing laps2onepass")

    fncSystemctl("disable", "--now", "laps2onepass.timer", check=False)
    fncSystemctl("stop", "laps2onepass.service", check=False)

    for path in (TIMER, SERVICE, SCRIPT_DST, CHECKER):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            fncWarn(f"Can't remove {path}: {e}")
    fncSystemctl("daemon-reload", check=False)
    fncOk("Units, script and checker removed")

    for label, path in (("env file", ENVFILE), ("key file", KEYFILE), ("logs", LOGDIR), ("state", STATEDIR)):
        if not path.exists():
            continue
        if not purge and not fncAskYesNo(f"Also delete {label} {path}?"):
            fncInfo(f"Kept {path}")
            continue
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
            fncOk(f"Deleted {path}")
        except OSError as e:
            fncWarn(f"Can't delete {path}: {e}")

# ============================
# Entry point
# ============================
def fncMain(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Install, update or remove laps2onepass")
    parser.add_argument("action", choices=["install", "update", "uninstall"])
    parser.add_argument("--restart", action="store_true", help="restart the timer after 'update'")
    parser.add_argument("--purge", action="store_true", help="'uninstall' also deletes env, key, logs and state without asking")
    parser.add_argument("--no-color", action="store_true", help="plain output")
    args = parser.parse_args(argv)
    fncSetColorMode(args.no_color)

    fncPrintBanner()
    if args.action == "install":
        fncDoInstall()
    elif args.action == "update":
        fncDoUpdate(auto_restart=args.restart)
    else:
        fncDoUninstall(purge=args.purge)

if __name__ == "__main__":
    fncMain()
