#!/usr/bin/env python3
"""ghaccounts — wire a second (third, ...) GitHub account into one workstation.

``setup`` creates a dedicated SSH key, an SSH host alias, a per-workspace git
identity (``includeIf``) and optionally a GPG signing key, registers the
public keys with GitHub through the ``gh`` CLI, and records every change in a
manifest.  ``cleanup`` reads that manifest back and reverses the run.
"""

import argparse
import getpass
import json
import os
import re
import shutil
import socket
import subprocess
import sys
import time
from pathlib import Path

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_HOST = "github.com"
NAMESPACE_PREFIX = "github-"
MANIFEST_VERSION = 1

TOKEN_ENV = "GH_ACCOUNTS_TOKEN"
SKIP_SSH_ADD_ENVS = ("GH_ACCOUNTS_SKIP_SSH_ADD", "SKIP_SSH_ADD")

SSH_CONFIG_MODE = 0o600
GIT_CONFIG_MODE = 0o644
IDENTITY_CONFIG_MODE = 0o600
PRIVATE_DIR_MODE = 0o700

# GitHub closes ``ssh -T`` sessions with exit 1 after a successful handshake.
PROBE_OK_CODES = (0, 1)

KEY_ENDPOINTS = {
    "ssh": "/user/keys",
    "gpg": "/user/gpg_keys",
}

REQUIRED_SCOPES = {
    "ssh": ["admin:public_key"],
    "gpg": ["write:gpg_key"],
}

# A granted scope satisfies every requirement it is a superset of.
SCOPE_ALIASES = {
    "admin:public_key": {"admin:public_key", "write:public_key"},
    "write:public_key": {"write:public_key"},
    "write:gpg_key": {"write:gpg_key", "admin:gpg_key"},
    "read:gpg_key": {"read:gpg_key", "write:gpg_key", "admin:gpg_key"},
}

STAGES = [
    "ssh-key", "ssh-config", "gitconfig", "identity",
    "remote", "signing", "probe", "manifest",
]


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    UNDO     = "\uf0e2"   # rotate-left
    KEY      = "\uf084"   # key
    WRENCH   = "\uf0ad"   # wrench
    CODE     = "\uf126"   # code-fork
    USER     = "\uf007"   # user
    GLOBE    = "\uf0ac"   # globe
    SIGN     = "\uf040"   # pencil
    PLUG     = "\uf1e6"   # plug
    STAMP    = "\uf249"   # sticky-note
    TRASH    = "\uf1f8"   # trash

STAGE_ICONS = {
    "ssh-key":    _I.KEY,
    "ssh-config": _I.WRENCH,
    "gitconfig":  _I.CODE,
    "identity":   _I.USER,
    "remote":     _I.GLOBE,
    "signing":    _I.SIGN,
    "probe":      _I.PLUG,
    "manifest":   _I.STAMP,
}

STAGE_LABELS = {
    "ssh-key":    "SSH Key",
    "ssh-config": "SSH Host Alias",
    "gitconfig":  "Git includeIf",
    "identity":   "Per-Alias Git Identity",
    "remote":     "GitHub Registration",
    "signing":    "GPG Signing Key",
    "probe":      "Connectivity",
    "manifest":   "Manifest",
}


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


def _ask_yes_no(prompt: str, default: bool = False) -> bool:
    """Ask a y/n question; EOF or Ctrl-C counts as "no"."""
    try:
        answer = input(f"  {prompt} ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    if not answer:
        return default
    return answer in ("y", "yes")


# ── Errors ───────────────────────────────────────────────────────────────────

class GhAccountsError(Exception):
    """Base class; ``main()`` turns these into a one-line error and exit 1."""


class PreconditionError(GhAccountsError):
    pass


class CollisionError(GhAccountsError):
    pass


class ManagedBlockError(GhAccountsError):
    pass


class KeygenError(GhAccountsError):
    pass


class RemoteError(GhAccountsError):
    pass


class ManifestNotFound(GhAccountsError):
    pass


class ManifestCorrupt(GhAccountsError):
    pass


# ── Managed blocks ───────────────────────────────────────────────────────────

def marker_lines(namespace: str, alias: str, comment: str = "#") -> tuple:
    return (f"{comment} {namespace} {alias} begin",
            f"{comment} {namespace} {alias} end")


def render_block(namespace: str, alias: str, body: str, comment: str = "#") -> str:
    begin, end = marker_lines(namespace, alias, comment)
    return f"{begin}\n{body.rstrip(chr(10))}\n{end}\n"


def _find_line(text: str, line: str, pos: int = 0) -> int:
    """Offset of the first whole line equal to *line* at or after *pos*, or -1."""
    m = re.compile(r"^" + re.escape(line) + r"$", re.M).search(text, pos)
    return m.start() if m else -1


def find_block(text: str, begin: str, end: str):
    """Return the (start, stop) span of a managed block, or None.

    The span covers the begin line through the end line plus its newline.
    A begin line without a later end line is treated as absent so a damaged
    file can never cause everything after the marker to be deleted.
    """
    start = _find_line(text, begin)
    if start == -1:
        return None
    stop = _find_line(text, end, start + len(begin))
    if stop == -1:
        return None
    stop += len(end)
    if stop < len(text) and text[stop] == "\n":
        stop += 1
    return start, stop


def insert_block(text: str, block: str, begin: str, end: str) -> tuple:
    """Append *block* unless the markers already delimit a block.

    Returns ``(new_text, block_text, created)``.  On the reuse path the text
    is returned untouched and *block_text* is what is actually in the file.
    """
    span = find_block(text, begin, end)
    if span is not None:
        return text, text[span[0]:span[1]], False
    if _find_line(text, begin) != -1:
        raise ManagedBlockError(
            f"found '{begin}' without a matching '{end}' line; "
            "repair the file by hand before re-running"
        )
    sep = "\n" if text else ""
    return text + sep + block, block, True


def remove_block(text: str, span) -> tuple:
    """Delete *span* from *text*; returns ``(new_text, removed)``.

    The single separator newline written by :func:`insert_block` is dropped
    as well, but only where that cannot join two lines: when the block ends
    the file, or when the newline forms a blank line of its own.
    """
    if span is None:
        return text, False
    start, stop = span
    before, after = text[:start], text[stop:]
    if before.endswith("\n"):
        head = before[:-1]
        if not after or not head or head.endswith("\n"):
            before = head
    return before + after, True


def locate_recorded_block(text: str, recorded: str, begin: str, end: str):
    """Find a previously recorded block by exact content, else by markers."""
    if recorded:
        idx = text.find(recorded)
        if idx != -1:
            return idx, idx + len(recorded)
    return find_block(text, begin, end)


def read_config(path) -> str:
    """Read a user config file without translating line endings or bytes."""
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as fh:
        return fh.read()


def write_config(path, text: str) -> None:
    with open(path, "w", encoding="utf-8", errors="surrogateescape",
              newline="") as fh:
        fh.write(text)


def check_collision(text: str, pattern: str, namespace: str, alias: str,
                    path) -> None:
    """Refuse to touch *path* when *pattern* exists outside our markers."""
    marker = f"{namespace} {alias} begin"
    if pattern in text and marker not in text:
        raise CollisionError(
            f"found existing entry matching '{pattern}' in {path} without "
            f"managed markers for namespace '{namespace}'; back it up and "
            "remove it manually before proceeding"
        )


# ── Identity ─────────────────────────────────────────────────────────────────

def derive_namespace(user: str) -> str:
    return f"{NAMESPACE_PREFIX}{user.strip().lower()}"


def default_alias(user: str, host: str = DEFAULT_HOST) -> str:
    return f"{host}-{user.strip().lower()}"


def namespace_from_alias(alias: str) -> str:
    """Re-derive the namespace from an alias such as ``github.com-alice``."""
    user = alias.strip().lower()
    prefix = f"{DEFAULT_HOST}-"
    if user.startswith(prefix):
        user = user[len(prefix):]
    else:
        idx = user.find(".com-")
        if idx != -1:
            user = user[idx + len(".com-"):]
    return derive_namespace(user)


def manifest_path_for(home: Path, namespace: str, alias: str) -> Path:
    return Path(home) / ".config" / namespace / f"{alias}.json"


def identity_header(namespace: str, alias: str) -> str:
    return f"# {namespace} {alias}"


def remote_key_title(alias: str) -> str:
    return f"{socket.gethostname()}-{alias}"


def normalize_workspace(path, home: Path) -> str:
    raw = str(path)
    if raw == "~" or raw.startswith("~/"):
        raw = str(home) + raw[1:]
    return os.path.abspath(raw)


class Identity:
    """One GitHub account bound to one workspace subtree.

    Every path the run touches is derived here, so stages never consult the
    environment directly.
    """

    def __init__(self, user: str, email: str, workspace, alias: str = None,
                 host: str = DEFAULT_HOST, home=None):
        if not user or not user.strip():
            raise PreconditionError("GitHub username is required")
        if not email or not email.strip():
            raise PreconditionError("commit email is required")
        self.user = user.strip()
        self.email = email.strip()
        self.host = host
        self.home = Path(home) if home else Path.home()
        self.namespace = derive_namespace(self.user)
        self.alias = (alias or default_alias(self.user, host)).strip().lower()
        self.workspace = normalize_workspace(workspace, self.home)

    @property
    def ssh_dir(self) -> Path:
        return self.home / ".ssh"

    @property
    def key_path(self) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_-]", "", self.alias)
        return self.ssh_dir / f"id_ed25519_{safe}"

    @property
    def public_key_path(self) -> Path:
        return Path(f"{self.key_path}.pub")

    @property
    def ssh_config_path(self) -> Path:
        return self.ssh_dir / "config"

    @property
    def git_config_path(self) -> Path:
        return self.home / ".gitconfig"

    @property
    def identity_config_path(self) -> Path:
        return self.home / f".gitconfig-{self.alias}"

    @property
    def manifest_path(self) -> Path:
        return manifest_path_for(self.home, self.namespace, self.alias)

    @property
    def signing_comment(self) -> str:
        return f"{self.namespace}-{self.alias}"

    @property
    def ssh_pattern(self) -> str:
        return f"Host {self.alias}"

    @property
    def include_pattern(self) -> str:
        return f"path = .gitconfig-{self.alias}"


def render_ssh_host(alias: str, host: str, key_path) -> str:
    return (f"Host {alias}\n"
            f"  HostName {host}\n"
            f"  User git\n"
            f"  IdentityFile {key_path}\n"
            f"  IdentitiesOnly yes")


def render_include(workspace: str, alias: str) -> str:
    return (f'[includeIf "gitdir:{workspace.rstrip("/")}/**"]\n'
            f"\tpath = .gitconfig-{alias}")


def render_identity_config(identity: Identity, fingerprint: str = "") -> str:
    lines = [
        identity_header(identity.namespace, identity.alias),
        "[user]",
        f"\tname = {identity.user}",
        f"\temail = {identity.email}",
    ]
    if fingerprint:
        lines.append(f"\tsigningkey = {fingerprint}")
    lines += [
        "",
        f'[url "git@{identity.alias}:"]',
        f"\tinsteadOf = git@{identity.host}:",
    ]
    if fingerprint:
        lines += ["", "[commit]", "\tgpgsign = true",
                  "", "[gpg]", "\tprogram = gpg"]
    return "\n".join(lines) + "\n"


# ── External tools ───────────────────────────────────────────────────────────

def _run(cmd, error=GhAccountsError, input=None, check=True):
    """Run *cmd* capturing output; raise *error* on a non-zero exit."""
    try:
        result = subprocess.run(cmd, input=input, capture_output=True, text=True)
    except FileNotFoundError:
        raise PreconditionError(
            f"required command '{cmd[0]}' not found in PATH") from None
    if check and result.returncode != 0:
        lines = (result.stderr or result.stdout or "").strip().splitlines()
        detail = lines[-1] if lines else "no output"
        raise error(f"{' '.join(cmd[:3])} exited {result.returncode}: {detail}")
    return result


def require_cmd(cmd: str) -> None:
    if shutil.which(cmd) is None:
        raise PreconditionError(f"required command '{cmd}' not found in PATH")


class SshKeygen:
    """ssh-keygen / ssh-add."""

    def require(self, ssh_add: bool = True) -> None:
        require_cmd("ssh-keygen")
        if ssh_add:
            require_cmd("ssh-add")

    def create_keypair(self, path: Path, comment: str) -> tuple:
        _run(["ssh-keygen", "-q", "-t", "ed25519", "-C", comment,
              "-f", str(path), "-N", ""], KeygenError)
        return Path(path), Path(f"{path}.pub")

    def add_to_agent(self, path: Path) -> None:
        cmd = ["ssh-add"]
        if sys.platform == "darwin":
            cmd.append("--apple-use-keychain")
        _run(cmd + [str(path)], KeygenError)


def _uid_comment(uid: str) -> str:
    m = re.search(r"\(([^()]*)\)", uid)
    return m.group(1) if m else ""


def parse_secret_keys(output: str) -> list:
    """Parse ``gpg --list-secret-keys --with-colons`` into key dicts.

    Only the primary key's fingerprint and first uid are kept; subkey
    ``fpr`` records that follow an ``ssb`` line are ignored.
    """
    keys = []
    current = None
    primary = False
    for line in output.splitlines():
        fields = line.split(":")
        record = fields[0]
        if record == "sec":
            current = {"fingerprint": "", "uid": "", "comment": ""}
            keys.append(current)
            primary = True
        elif record == "ssb":
            primary = False
        elif record == "fpr" and current is not None and primary:
            if not current["fingerprint"] and len(fields) > 9:
                current["fingerprint"] = fields[9]
        elif record == "uid" and current is not None and not current["uid"]:
            uid = fields[9].replace("\\x3a", ":") if len(fields) > 9 else ""
            current["uid"] = uid
            current["comment"] = _uid_comment(uid)
    return [k for k in keys if k["fingerprint"]]


class GpgKeystore:
    """The user's GnuPG keyring, which other identities share."""

    def available(self) -> bool:
        return shutil.which("gpg") is not None

    def require(self) -> None:
        require_cmd("gpg")

    def list_keys(self, selector: str) -> list:
        """Secret keys matching *selector* (an email or a fingerprint)."""
        r = _run(["gpg", "--list-secret-keys", "--with-colons", selector],
                 KeygenError, check=False)
        if r.returncode != 0:
            return []
        return parse_secret_keys(r.stdout)

    def create_keypair(self, name: str, email: str, comment: str) -> str:
        params = "\n".join([
            "Key-Type: eddsa",
            "Key-Curve: Ed25519",
            "Key-Usage: sign",
            f"Name-Real: {name}",
            f"Name-Comment: {comment}",
            f"Name-Email: {email}",
            "Expire-Date: 0",
            "%no-protection",
            "%commit",
            "",
        ])
        _run(["gpg", "--batch", "--generate-key"], KeygenError, input=params)

        keys = self.list_keys(email)
        tagged = [k for k in keys if k["comment"] == comment]
        if tagged:
            return tagged[-1]["fingerprint"]
        if keys:
            return keys[0]["fingerprint"]
        raise KeygenError("failed to determine GPG fingerprint after key generation")

    def delete_keypair(self, fingerprint: str) -> None:
        _run(["gpg", "--batch", "--yes", "--delete-secret-key", fingerprint],
             KeygenError)
        _run(["gpg", "--batch", "--yes", "--delete-key", fingerprint],
             KeygenError)

    def export_public(self, fingerprint: str) -> str:
        r = _run(["gpg", "--armor", "--export", fingerprint], KeygenError)
        if not r.stdout.strip():
            raise KeygenError(f"gpg exported nothing for {fingerprint}")
        return r.stdout


def parse_token_scopes(status: str) -> set:
    """Extract granted scopes from ``gh auth status`` output.

    With several accounts logged in to one host, the block marked
    ``Active account: true`` wins; otherwise the first block is used.
    """
    blocks = []
    current = []
    for line in status.splitlines():
        if "logged in to" in line.lower() and current:
            blocks.append(current)
            current = []
        current.append(line)
    if current:
        blocks.append(current)

    chosen = next(
        (b for b in blocks
         if any("active account: true" in line.lower() for line in b)),
        None,
    )
    if chosen is None:
        chosen = next(
            (b for b in blocks
             if any("token scopes:" in line.lower() for line in b)),
            [],
        )

    for line in chosen:
        lower = line.lower()
        if "token scopes:" in lower:
            tail = lower.split("token scopes:", 1)[1]
            return {
                part.strip("'\"")
                for part in re.split(r"[\s,]+", tail)
                if part.strip("'\"")
            }
    return set()


def missing_scopes(granted: set, required: list) -> list:
    return [
        scope for scope in required
        if not granted.intersection(SCOPE_ALIASES.get(scope, {scope}))
    ]


def refresh_command(host: str, scopes: list) -> str:
    flags = " ".join(f"-s {scope}" for scope in scopes)
    return f"gh auth refresh -h {host} {flags}"


class GitHubCli:
    """GitHub, reached through an installed and (optionally) logged-in ``gh``."""

    def __init__(self, host: str = DEFAULT_HOST):
        self.host = host

    def _gh(self, args, input=None, check=True):
        return _run(["gh"] + args, RemoteError, input=input, check=check)

    def available(self) -> bool:
        return shutil.which("gh") is not None

    def require(self, probe: bool = False) -> None:
        require_cmd("gh")
        if probe:
            require_cmd("ssh")

    def is_authenticated(self) -> bool:
        r = self._gh(["auth", "status", "--hostname", self.host], check=False)
        return r.returncode == 0

    def authenticate(self, token: str, protocol: str = "ssh") -> None:
        self._gh(["auth", "login", "--hostname", self.host,
                  "--git-protocol", protocol, "--with-token", "--skip-ssh-key"],
                 input=f"{token}\n")

    def switch_user(self, user: str) -> None:
        self._gh(["auth", "switch", "--hostname", self.host, "--user", user])

    def current_scopes(self) -> set:
        r = self._gh(["auth", "status", "--hostname", self.host], check=False)
        return parse_token_scopes(f"{r.stdout}\n{r.stderr}")

    def upload_key(self, kind: str, material: str, title: str) -> str:
        if kind == "ssh":
            fields = ["-f", f"title={title}", "-f", f"key={material.strip()}"]
        else:
            fields = ["-f", f"name={title}", "-f", f"armored_public_key={material}"]
        r = self._gh(["api", "-X", "POST", KEY_ENDPOINTS[kind]] + fields)
        try:
            return str(json.loads(r.stdout).get("id", "") or "")
        except (ValueError, AttributeError):
            return ""

    def list_keys(self, kind: str) -> list:
        r = self._gh(["api", f"{KEY_ENDPOINTS[kind]}?per_page=100"])
        try:
            items = json.loads(r.stdout)
        except ValueError:
            raise RemoteError(f"unexpected response listing {kind} keys") from None
        return items if isinstance(items, list) else []

    def delete_key(self, kind: str, key_id: str) -> None:
        self._gh(["api", "-X", "DELETE", f"{KEY_ENDPOINTS[kind]}/{key_id}"])

    def logout(self, user: str) -> None:
        self._gh(["auth", "logout", "--hostname", self.host, "--user", user])

    def probe_connectivity(self, alias: str) -> int:
        r = _run(["ssh", "-T", "-o", "StrictHostKeyChecking=accept-new",
                  f"git@{alias}"], RemoteError, check=False)
        return r.returncode


def lookup_remote_key_id(remote, kind: str, title: str = "",
                         fingerprint: str = "") -> str:
    """Find a remote key id by title (SSH) or fingerprint (GPG); "" if none."""
    try:
        items = remote.list_keys(kind)
    except GhAccountsError:
        return ""
    suffix = fingerprint[-16:].upper() if fingerprint else ""
    for item in items:
        if kind == "ssh":
            if title and item.get("title") == title:
                return str(item.get("id", ""))
        elif fingerprint:
            key_id = str(item.get("key_id", "")).upper()
            if key_id == suffix or item.get("fingerprint") == fingerprint:
                return str(item.get("id", ""))
    return ""


# ── Manifest ─────────────────────────────────────────────────────────────────

SSH_FIELDS = {
    "key_path": "",
    "public_key_path": "",
    "config_path": "",
    "config_block": "",
    "key_reused": False,
    "uploaded": False,
    "github_title": "",
    "github_id": "",
}

GIT_FIELDS = {
    "config_path": "",
    "include_block": "",
    "alias_config_path": "",
}

GPG_FIELDS = {
    "enabled": False,
    "created": False,
    "reused": False,
    "fingerprint": "",
    "comment": "",
    "github_title": "",
    "github_id": "",
}

GH_FIELDS = {
    "auth_login_performed": False,
    "auth_switched": False,
    "scopes_verified": False,
}


def _fields(values: dict, defaults: dict) -> dict:
    return {key: values.get(key, default) for key, default in defaults.items()}


def build_manifest(identity: Identity, ssh: dict, git: dict, gpg: dict,
                   gh: dict) -> dict:
    """Assemble the manifest dict in a fixed key order; no side effects."""
    return {
        "version": MANIFEST_VERSION,
        "namespace": identity.namespace,
        "alias": identity.alias,
        "workspace": identity.workspace,
        "gh_user": identity.user,
        "gh_email": identity.email,
        "ssh": _fields(ssh, SSH_FIELDS),
        "git": _fields(git, GIT_FIELDS),
        "gpg": _fields(gpg, GPG_FIELDS),
        "gh": _fields(gh, GH_FIELDS),
    }


class ManifestFile:
    """JSON record of everything ``setup`` created, consumed by ``cleanup``."""

    def __init__(self, path, data: dict = None):
        self.path = Path(path)
        self.data: dict = data if data is not None else {}

    def load(self) -> dict:
        if not self.path.is_file():
            raise ManifestNotFound(f"manifest not found at {self.path}")
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except ValueError as exc:
            raise ManifestCorrupt(
                f"manifest at {self.path} is not valid JSON: {exc}") from None
        if not isinstance(data, dict):
            raise ManifestCorrupt(f"manifest at {self.path} is not a JSON object")
        version = data.get("version", 1)
        if isinstance(version, int) and version > MANIFEST_VERSION:
            _warn(f"Manifest version {version} is newer than this tool "
                  f"understands ({MANIFEST_VERSION}); unknown fields are ignored")
        self.data = data
        return data

    def save(self) -> None:
        self.path.parent.mkdir(mode=PRIVATE_DIR_MODE, parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(self.data, fh, indent=2)
            fh.write("\n")
        os.chmod(tmp, 0o600)
        tmp.rename(self.path)

    def delete(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True


# ── Setup ────────────────────────────────────────────────────────────────────

class AccountSetup:
    """Provision one identity.  Any failing stage aborts the whole run."""

    def __init__(self, identity: Identity, token: str = "",
                 signing: bool = True, ssh_add: bool = True,
                 probe: bool = True, dry_run: bool = False, yes: bool = False,
                 quiet: bool = False, keygen=None, keystore=None, remote=None):
        self.identity = identity
        self.token = token or ""
        self.signing = signing
        self.ssh_add = ssh_add
        self.probe = probe
        self.dry_run = dry_run
        self.yes = yes
        self.quiet = quiet
        self.keygen = keygen or SshKeygen()
        self.keystore = keystore or GpgKeystore()
        self.remote = remote or GitHubCli(identity.host)

        self.ssh = dict(SSH_FIELDS)
        self.git = dict(GIT_FIELDS)
        self.gpg = dict(GPG_FIELDS, enabled=signing)
        self.gh = dict(GH_FIELDS)
        self.manifest = None
        self._created = []
        self._t0 = None
        self._step = 0
        self._total = sum(1 for s in STAGES if s != "signing" or signing)

    # ── helpers ───────────────────────────────────────────────────────────

    def _next_step(self, stage: str) -> None:
        self._step += 1
        _section(STAGE_ICONS[stage], STAGE_LABELS[stage], self._step, self._total)

    def _ensure_file(self, path: Path, mode: int) -> None:
        if path.exists():
            return
        if not path.parent.exists():
            path.parent.mkdir(parents=True)
            if path.parent == self.identity.ssh_dir:
                os.chmod(path.parent, PRIVATE_DIR_MODE)
        path.touch()
        os.chmod(path, mode)
        if not self.quiet:
            _info(f"Created {path}")

    def _write_text(self, path: Path, content: str, mode: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_config(path, content)
        os.chmod(path, mode)
        if not self.quiet:
            _info(f"Wrote {path}")

    def _guard(self, path: Path, pattern: str) -> None:
        if path.exists():
            check_collision(read_config(path), pattern, self.identity.namespace,
                            self.identity.alias, path)

    def _guard_identity_config(self) -> None:
        path = self.identity.identity_config_path
        if not path.exists():
            return
        text = read_config(path)
        header = identity_header(self.identity.namespace, self.identity.alias)
        if text.strip() and text.splitlines()[0] != header:
            raise CollisionError(
                f"{path} exists but was not written by ghaccounts "
                f"(missing '{header}' header); back it up and remove it "
                "manually before proceeding"
            )

    def _write_block(self, path: Path, pattern: str, body: str, mode: int) -> str:
        """Insert a managed block into *path*; returns the block text in the file."""
        ident = self.identity
        self._ensure_file(path, mode)
        text = read_config(path)
        check_collision(text, pattern, ident.namespace, ident.alias, path)

        begin, end = marker_lines(ident.namespace, ident.alias)
        block = render_block(ident.namespace, ident.alias, body)
        try:
            new_text, recorded, created = insert_block(text, block, begin, end)
        except ManagedBlockError as exc:
            raise ManagedBlockError(f"{path}: {exc}") from None

        if created:
            write_config(path, new_text)
            self._created.append(f"managed block in {path}")
            _info(f"Added managed block for '{ident.alias}' to {path}")
        else:
            _info(f"Managed block already present in {path}")
            if recorded != block:
                _warn("Existing block differs from the requested settings; "
                      "run cleanup first to change it")
        return recorded

    # ── confirmation ──────────────────────────────────────────────────────

    def _run_description(self) -> list:
        ident = self.identity
        lines = [
            f"Generate ed25519 SSH key {ident.key_path} "
            "(replacing any key already at that path)",
            f"Add 'Host {ident.alias}' block to {ident.ssh_config_path}",
            f"Add includeIf gitdir:{ident.workspace.rstrip('/')}/** block "
            f"to {ident.git_config_path}",
            f"Write {ident.identity_config_path} for "
            f"{ident.user} <{ident.email}>",
        ]
        if self.signing:
            lines.append(f"Generate GPG signing key tagged '{ident.signing_comment}' "
                         "(replacing keys with the same tag only)")
        if self.token:
            uploads = "SSH and GPG keys" if self.signing else "SSH key"
            lines.append(f"Log gh in as {ident.user} and upload the {uploads}")
        else:
            lines.append("No token: GitHub registration is left as manual steps")
        lines.append(f"Record everything in {ident.manifest_path}")
        return lines

    def _confirm(self) -> None:
        """Describe the run and ask before touching anything."""
        if self.yes or self.dry_run:
            return

        print()
        print(f"  {_C.BOLD}About to set up '{self.identity.alias}' "
              f"for {self.identity.user}:{_C.RESET}")
        for line in self._run_description():
            print(f"    • {line}")
        print()
        print(f"  {_C.DIM}Run 'ghaccounts cleanup --alias {self.identity.alias}' "
              f"afterwards to reverse all changes.{_C.RESET}")
        print()
        if not _ask_yes_no("Proceed? [y/N]"):
            _info("Aborted.")
            sys.exit(0)
        print()

    # ── entry point ───────────────────────────────────────────────────────

    def run(self):
        """Run every stage; returns the manifest path (None on --dry-run)."""
        self._t0 = time.monotonic()
        ident = self.identity
        _banner(f"{_I.ROCKET}  ghaccounts setup — {ident.alias} ({ident.user})")

        self.preflight()
        self._confirm()
        if self.dry_run:
            for line in self._run_description():
                _dry(line)
            return None

        try:
            self.generate_ssh_key()
            self.write_ssh_config_block()
            self.write_include_block()
            self.write_identity_config()
            self.register_remote()
            if self.signing:
                self.generate_signing_key()
            self.probe_connectivity()
        except GhAccountsError:
            self._report_partial()
            raise

        path = self.persist_manifest()
        self._print_summary()
        return path

    def preflight(self) -> None:
        """Check tools, workspace and every target file before any mutation."""
        ident = self.identity
        self.keygen.require(ssh_add=self.ssh_add)
        if self.signing:
            self.keystore.require()
        if self.token:
            self.remote.require(probe=self.probe)
        if not os.path.isdir(ident.workspace):
            raise PreconditionError(
                f"workspace directory '{ident.workspace}' does not exist")
        self._guard(ident.ssh_config_path, ident.ssh_pattern)
        self._guard(ident.git_config_path, ident.include_pattern)
        self._guard_identity_config()

    # ── stages ────────────────────────────────────────────────────────────

    def generate_ssh_key(self) -> None:
        self._next_step("ssh-key")
        ident = self.identity
        key, pub = ident.key_path, ident.public_key_path

        if key.exists() or pub.exists():
            _info(f"Removing existing SSH key at {key}")
            key.unlink(missing_ok=True)
            pub.unlink(missing_ok=True)
        if not ident.ssh_dir.exists():
            ident.ssh_dir.mkdir(parents=True)
            os.chmod(ident.ssh_dir, PRIVATE_DIR_MODE)

        private, public = self.keygen.create_keypair(key, ident.email)
        self._created.append(f"SSH key {private}")
        self.ssh.update(key_path=str(private), public_key_path=str(public),
                        key_reused=False)
        _info(f"Generated SSH key {private}")

        if self.ssh_add:
            self.keygen.add_to_agent(private)
            _info("Added key to ssh-agent")
        else:
            _skip("Skipping ssh-add step")

    def write_ssh_config_block(self) -> None:
        self._next_step("ssh-config")
        ident = self.identity
        body = render_ssh_host(ident.alias, ident.host, ident.key_path)
        self.ssh["config_block"] = self._write_block(
            ident.ssh_config_path, ident.ssh_pattern, body, SSH_CONFIG_MODE)
        self.ssh["config_path"] = str(ident.ssh_config_path)

    def write_include_block(self) -> None:
        self._next_step("gitconfig")
        ident = self.identity
        body = render_include(ident.workspace, ident.alias)
        self.git["include_block"] = self._write_block(
            ident.git_config_path, ident.include_pattern, body, GIT_CONFIG_MODE)
        self.git["config_path"] = str(ident.git_config_path)

    def write_identity_config(self, fingerprint: str = "") -> None:
        if not fingerprint:
            self._next_step("identity")
        ident = self.identity
        path = ident.identity_config_path
        self._guard_identity_config()
        existed = path.exists()
        self._write_text(path, render_identity_config(ident, fingerprint),
                         IDENTITY_CONFIG_MODE)
        if not existed:
            self._created.append(f"per-alias gitconfig {path}")
        self.git["alias_config_path"] = str(path)

    def register_remote(self) -> None:
        self._next_step("remote")
        if not self.token:
            self._print_manual_steps()
            return
        self.authenticate()
        self.verify_scopes()
        self.upload_ssh_key()

    def authenticate(self) -> None:
        ident = self.identity
        self.remote.authenticate(self.token, protocol="ssh")
        self.gh["auth_login_performed"] = True
        _info(f"gh logged in to {ident.host}")
        self.remote.switch_user(ident.user)
        self.gh["auth_switched"] = True
        _info(f"gh active account switched to {ident.user}")

    def verify_scopes(self) -> None:
        """Abort before uploading anything the token is not allowed to write."""
        required = list(REQUIRED_SCOPES["ssh"])
        if self.signing:
            required += REQUIRED_SCOPES["gpg"]
        fix = refresh_command(self.identity.host, required)

        granted = self.remote.current_scopes()
        if not granted:
            raise RemoteError(
                f"unable to read token scopes from gh auth status; run: {fix}")
        missing = missing_scopes(granted, required)
        if missing:
            raise RemoteError(
                f"GitHub token missing required scopes ({', '.join(missing)}); "
                f"run: {fix}")
        self.gh["scopes_verified"] = True
        _info(f"Token scopes verified: {', '.join(required)}")

    def upload_ssh_key(self) -> None:
        ident = self.identity
        title = remote_key_title(ident.alias)
        material = read_config(ident.public_key_path).strip()
        key_id = self.remote.upload_key("ssh", material, title)
        if not key_id:
            key_id = lookup_remote_key_id(self.remote, "ssh", title=title)
        self.ssh.update(uploaded=True, github_title=title, github_id=key_id)
        self._created.append(f"GitHub SSH key '{title}' (id {key_id or '?'})")
        _info(f"SSH key uploaded to GitHub as '{title}'")

    def generate_signing_key(self) -> None:
        self._next_step("signing")
        ident = self.identity
        comment = ident.signing_comment

        stale = [k for k in self.keystore.list_keys(ident.email)
                 if k["comment"] == comment]
        if stale:
            _info(f"Removing {len(stale)} existing GPG key(s) tagged '{comment}'")
        for key in stale:
            self.keystore.delete_keypair(key["fingerprint"])

        fingerprint = self.keystore.create_keypair(ident.user, ident.email, comment)
        self._created.append(f"GPG key {fingerprint}")
        self.gpg.update(enabled=True, created=True, reused=False,
                        fingerprint=fingerprint, comment=comment)
        _info(f"Generated GPG signing key {fingerprint}")

        self.write_identity_config(fingerprint)
        if self.token:
            self.upload_signing_key()

    def upload_signing_key(self) -> None:
        fingerprint = self.gpg["fingerprint"]
        title = remote_key_title(self.identity.alias)
        armored = self.keystore.export_public(fingerprint)
        key_id = self.remote.upload_key("gpg", armored, title)
        if not key_id:
            key_id = lookup_remote_key_id(self.remote, "gpg",
                                          fingerprint=fingerprint)
        self.gpg.update(github_title=title, github_id=key_id)
        self._created.append(f"GitHub GPG key '{title}' (id {key_id or '?'})")
        _info(f"GPG key uploaded to GitHub as '{title}'")

    def probe_connectivity(self) -> None:
        self._next_step("probe")
        alias = self.identity.alias
        if not self.probe:
            _skip("Skipping ssh -T probe (--skip-probe)")
            return
        if not self.ssh["uploaded"]:
            _skip("SSH key not registered with GitHub yet; skipping ssh -T probe")
            return

        code = self.remote.probe_connectivity(alias)
        if code not in PROBE_OK_CODES:
            raise RemoteError(f"ssh -T git@{alias} failed with exit code {code}")
        _info(f"ssh -T git@{alias} succeeded (exit {code})")

    def persist_manifest(self) -> Path:
        self._next_step("manifest")
        ident = self.identity
        data = build_manifest(ident, self.ssh, self.git, self.gpg, self.gh)
        self.manifest = ManifestFile(ident.manifest_path, data)
        self.manifest.save()
        _info(f"Manifest written to {self.manifest.path}")
        return self.manifest.path

    # ── reporting ─────────────────────────────────────────────────────────

    def _print_manual_steps(self) -> None:
        ident = self.identity
        _skip("No token supplied; skipping gh login and key upload")
        print()
        print("  Remember to:")
        print(f"    1. Add {ident.public_key_path} to GitHub SSH keys for {ident.user}")
        if self.signing:
            print("    2. Add the output of 'gpg --armor --export <fingerprint>' "
                  "to GitHub GPG keys (fingerprint is shown below)")
        print(f"    {3 if self.signing else 2}. Run 'gh auth login --hostname "
              f"{ident.host} --with-token' later if CLI access is needed")

    def _report_partial(self) -> None:
        if not self._created:
            return
        _warn("Setup stopped; no manifest was written.  Already created:")
        for item in self._created:
            _warn(f"  - {item}")
        _warn("Re-run setup once the problem is fixed, or remove these by hand.")

    def _print_summary(self) -> None:
        ident = self.identity
        elapsed = time.monotonic() - self._t0
        _banner(f"{_I.CHECK}  Setup complete ({int(elapsed)}s)")
        _info(f"SSH alias '{ident.alias}' points to {self.ssh['key_path']}")
        _info(f"Git repositories under '{ident.workspace}' use "
              f"'{ident.user} <{ident.email}>'")
        _info(f"Per-alias gitconfig stored at {ident.identity_config_path}")
        if self.gpg["fingerprint"]:
            _info(f"GPG signing fingerprint: {self.gpg['fingerprint']}")
        if self.ssh["uploaded"]:
            _info(f"SSH key uploaded to GitHub with title '{self.ssh['github_title']}'")
        if self.gpg["github_title"]:
            _info(f"GPG key uploaded to GitHub with title '{self.gpg['github_title']}'")
        print()
        print("  To clone via this account:")
        print(f"    git clone git@{ident.alias}:ORG/REPO.git")
        print(f"    # or, inside '{ident.workspace}', simply:")
        print(f"    git clone git@{ident.host}:ORG/REPO.git")
        print()
        _info(f"{_I.STAMP}  Manifest:   {ident.manifest_path}")
        _info(f"{_I.UNDO}  To undo:    ghaccounts cleanup --alias {ident.alias}")


# ── Cleanup ──────────────────────────────────────────────────────────────────

class Action:
    """One reversible step of a cleanup plan."""

    DELETE_FILE = "delete-file"
    REMOVE_BLOCK = "remove-block"
    DELETE_LOCAL_CREDENTIAL = "delete-local-credential"
    DELETE_REMOTE_OBJECT = "delete-remote-object"

    def __init__(self, kind: str, description: str, path: str = "",
                 label: str = "", block: str = "", confirm: bool = False,
                 header: str = "", key_kind: str = "", key_id: str = "",
                 title: str = "", fingerprint: str = "", comment: str = ""):
        self.kind = kind
        self.description = description
        self.path = path
        self.label = label
        self.block = block
        self.confirm = confirm
        self.header = header
        self.key_kind = key_kind
        self.key_id = key_id
        self.title = title
        self.fingerprint = fingerprint
        self.comment = comment

    def __repr__(self):
        return f"Action({self.kind!r}, {self.description!r})"


def resolve_manifest(alias: str = None, manifest_path=None,
                     home=None) -> ManifestFile:
    """Locate and load the manifest for *alias* (or at *manifest_path*).

    The alias path is re-derived from the alias alone; aliases chosen with
    ``--alias`` that do not embed the username are found by scanning the
    ``github-*`` state directories.
    """
    home = Path(home) if home else Path.home()
    if manifest_path:
        path = Path(manifest_path).expanduser()
    elif alias:
        alias = alias.strip().lower()
        path = manifest_path_for(home, namespace_from_alias(alias), alias)
        if not path.is_file():
            matches = sorted((home / ".config").glob(
                f"{NAMESPACE_PREFIX}*/{alias}.json"))
            if len(matches) > 1:
                found = ", ".join(str(m) for m in matches)
                raise PreconditionError(
                    f"alias '{alias}' matches several manifests ({found}); "
                    "pass --manifest")
            if matches:
                path = matches[0]
    else:
        raise PreconditionError("provide --alias or --manifest")

    manifest = ManifestFile(path)
    manifest.load()
    return manifest


class AccountCleanup:
    """Reverse a setup run from its manifest, one best-effort action at a time."""

    def __init__(self, manifest: ManifestFile, dry_run: bool = False,
                 yes: bool = False, quiet: bool = False, keystore=None,
                 remote=None):
        data = manifest.data
        self.manifest = manifest
        self.alias = (data.get("alias") or "").lower()
        self.namespace = data.get("namespace") or ""
        if not self.alias:
            raise PreconditionError(f"alias missing in manifest {manifest.path}")
        if not self.namespace:
            self.namespace = namespace_from_alias(self.alias)
        self.dry_run = dry_run
        self.yes = yes
        self.quiet = quiet
        self.keystore = keystore or GpgKeystore()
        self.remote = remote or GitHubCli()
        self.mutations = 0
        self.already_absent = 0

    def plan(self) -> list:
        d = self.manifest.data
        ssh = d.get("ssh") or {}
        git = d.get("git") or {}
        gpg = d.get("gpg") or {}
        actions = []

        alias_cfg = git.get("alias_config_path") or ""
        if alias_cfg and os.path.isfile(alias_cfg):
            actions.append(Action(
                Action.DELETE_FILE, f"Remove per-alias gitconfig {alias_cfg}",
                path=alias_cfg, label="per-alias gitconfig", confirm=True,
                header=identity_header(self.namespace, self.alias),
            ))

        for cfg, block, what in (
            (git.get("config_path"), git.get("include_block"), "includeIf block"),
            (ssh.get("config_path"), ssh.get("config_block"), "SSH alias block"),
        ):
            if cfg and block and os.path.isfile(cfg):
                actions.append(Action(
                    Action.REMOVE_BLOCK, f"Remove {what} from {cfg}",
                    path=cfg, label=what, block=block,
                ))

        for key, label in ((ssh.get("key_path"), "SSH private key"),
                           (ssh.get("public_key_path"), "SSH public key")):
            if key and os.path.isfile(key):
                actions.append(Action(
                    Action.DELETE_FILE, f"Remove {label} {key}",
                    path=key, label=label, confirm=True,
                ))

        fingerprint = gpg.get("fingerprint") or ""
        if gpg.get("enabled") and fingerprint:
            actions.append(Action(
                Action.DELETE_LOCAL_CREDENTIAL,
                f"Remove generated GPG key {fingerprint}",
                label="GPG key", fingerprint=fingerprint,
                comment=gpg.get("comment") or "",
            ))

        if ssh.get("uploaded"):
            title = ssh.get("github_title") or ""
            actions.append(Action(
                Action.DELETE_REMOTE_OBJECT,
                f"Remove uploaded SSH key '{title}' from GitHub",
                label="SSH key", key_kind="ssh",
                key_id=str(ssh.get("github_id") or ""), title=title,
            ))

        if gpg.get("github_id") or gpg.get("github_title"):
            title = gpg.get("github_title") or ""
            actions.append(Action(
                Action.DELETE_REMOTE_OBJECT,
                f"Remove uploaded GPG key '{title}' from GitHub",
                label="GPG key", key_kind="gpg",
                key_id=str(gpg.get("github_id") or ""), title=title,
                fingerprint=fingerprint,
            ))

        actions.append(Action(
            Action.DELETE_FILE, f"Remove manifest {self.manifest.path}",
            path=str(self.manifest.path), label="manifest",
        ))
        return actions

    def run(self) -> int:
        _banner(f"{_I.UNDO}  ghaccounts cleanup — {self.alias}")
        actions = self.plan()

        _info("Planned cleanup actions:")
        for action in actions:
            print(f"    • {action.description}")
        print()

        if self.dry_run:
            _dry("Nothing was changed.")
            _info("Dry run complete.")
            return 0

        if not self.yes and not _ask_yes_no("Proceed with cleanup? [y/N]"):
            _warn("Cleanup aborted by user.")
            return 0

        for action in actions:
            self.execute(action)
        self._offer_logout()

        _banner(f"{_I.CHECK}  Cleanup complete "
                f"({self.mutations} removed, {self.already_absent} already absent)")
        return 0

    def execute(self, action: Action) -> None:
        handler = {
            Action.DELETE_FILE: self._delete_file,
            Action.REMOVE_BLOCK: self._remove_block,
            Action.DELETE_LOCAL_CREDENTIAL: self._delete_local_credential,
            Action.DELETE_REMOTE_OBJECT: self._delete_remote_object,
        }[action.kind]
        try:
            handler(action)
        except (GhAccountsError, OSError, ValueError) as exc:
            _warn(f"{action.description} failed: {exc}")

    def _absent(self, msg: str) -> None:
        self.already_absent += 1
        if not self.quiet:
            _info(msg)

    def _delete_file(self, action: Action) -> None:
        path = Path(action.path)
        if not path.exists():
            self._absent(f"{action.label} already absent ({path})")
            return
        if action.header:
            if action.header not in read_config(path):
                _warn(f"{path} does not contain expected marker; skipped")
                return
        if action.confirm and not self.yes:
            if not _ask_yes_no(f"Remove {action.label} at {path}? [y/N]"):
                _warn(f"Skipped removing {action.label}")
                return
        if path == self.manifest.path:
            self.manifest.delete()
        else:
            path.unlink()
        self.mutations += 1
        _info(f"{_I.TRASH}  Removed {action.label} ({path})")

    def _remove_block(self, action: Action) -> None:
        path = Path(action.path)
        if not path.is_file():
            self._absent(f"{path} not found; skipping block removal")
            return
        text = read_config(path)
        begin, end = marker_lines(self.namespace, self.alias)
        span = locate_recorded_block(text, action.block, begin, end)
        new_text, removed = remove_block(text, span)
        if not removed:
            self._absent(f"Managed block already absent in {path}")
            return
        write_config(path, new_text)
        self.mutations += 1
        _info(f"Removed managed {action.label} from {path}")

    def _delete_local_credential(self, action: Action) -> None:
        fingerprint = action.fingerprint
        if not self.keystore.available():
            _warn("gpg not available; cannot delete generated GPG key.")
            return
        keys = self.keystore.list_keys(fingerprint)
        if not keys:
            self._absent(f"GPG key {fingerprint} already absent.")
            return
        if action.comment and not any(action.comment in k["uid"] for k in keys):
            _warn(f"GPG key {fingerprint} does not contain expected comment; skipped.")
            return
        self.keystore.delete_keypair(fingerprint)
        self.mutations += 1
        _info(f"Removed GPG key {fingerprint}")

    def _delete_remote_object(self, action: Action) -> None:
        what = f"{action.label} '{action.title}'"
        if not self.remote.available():
            _warn(f"gh CLI not available; cannot delete uploaded {action.label}.")
            return
        if not self.remote.is_authenticated():
            _warn(f"gh is not authenticated; skip deleting remote {action.label}.")
            return

        key_id = action.key_id or lookup_remote_key_id(
            self.remote, action.key_kind, title=action.title,
            fingerprint=action.fingerprint)
        if not key_id:
            _warn(f"{what} not found on GitHub; cannot delete it.")
            return

        try:
            self.remote.delete_key(action.key_kind, key_id)
        except RemoteError as exc:
            if "404" in str(exc) or "not found" in str(exc).lower():
                self._absent(f"{what} already absent from GitHub.")
                return
            raise
        self.mutations += 1
        _info(f"Removed {what} from GitHub")

    def _offer_logout(self) -> None:
        d = self.manifest.data
        user = d.get("gh_user") or ""
        if not ((d.get("gh") or {}).get("auth_switched") and user):
            return
        if not self.remote.available() or not self.remote.is_authenticated():
            return
        if not self.yes and not _ask_yes_no(f"Log out gh user {user}? [y/N]"):
            return
        try:
            self.remote.logout(user)
        except RemoteError as exc:
            _warn(f"Failed to log out gh user {user}: {exc}")
            return
        self.mutations += 1
        _info(f"Logged out gh user {user}")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ghaccounts",
        description="Set up and tear down per-workspace GitHub account identities.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  ghaccounts setup                                   # prompt for user and email
  ghaccounts setup --user alice --email a@x.io -y    # no confirmation prompt
  echo "$PAT" | ghaccounts setup --user alice --email a@x.io --with-token
  ghaccounts cleanup --alias github.com-alice --dry-run
  ghaccounts cleanup --manifest ~/.config/github-alice/github.com-alice.json -y
""",
    )
    sub = p.add_subparsers(dest="command", metavar="{setup,cleanup}")
    sub.required = True

    s = sub.add_parser("setup", help="provision an account identity")
    s.add_argument("--user", help="GitHub username (prompted when omitted)")
    s.add_argument("--email", help="commit email (prompted when omitted)")
    s.add_argument("--workspace", default=None,
                   help="directory whose repositories use this identity "
                        "(default: current directory)")
    s.add_argument("--alias", default=None,
                   help="SSH host alias (default: <host>-<user>)")
    s.add_argument("--host", default=DEFAULT_HOST,
                   help=f"GitHub host (default: {DEFAULT_HOST})")
    s.add_argument("--with-token", action="store_true",
                   help="read a personal access token from stdin")
    s.add_argument("--no-signing", action="store_true",
                   help="do not create a GPG signing key")
    s.add_argument("--skip-ssh-add", action="store_true",
                   help="do not add the new key to ssh-agent")
    s.add_argument("--skip-probe", action="store_true",
                   help="do not run the final ssh -T connectivity check")

    c = sub.add_parser(
        "cleanup", help="reverse a previous setup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="""\
Reverse a previous setup using the manifest it wrote.

The manifest is removed last, so running cleanup again for the same alias
exits 1 with 'manifest not found': there is nothing left to undo.
""",
    )
    c.add_argument("--alias", help="alias used during setup (case-insensitive)")
    c.add_argument("--manifest", help="path to a manifest written by setup")

    for sp in (s, c):
        sp.add_argument(
            "--dry-run", action="store_true",
            help="show what would be done without touching the system",
        )
        sp.add_argument(
            "-y", "--yes", action="store_true",
            help="skip interactive confirmations",
        )
        sp.add_argument(
            "-q", "--quiet", action="store_true",
            help="suppress per-file output; warnings and errors still print",
        )
    return p


def _prompt_required(prompt: str) -> str:
    while True:
        try:
            value = input(prompt).strip()
        except (EOFError, KeyboardInterrupt):
            print()
            raise PreconditionError(f"no value given for '{prompt.strip()}'") from None
        if value:
            return value
        _warn("Value is required.")


def _resolve_token(args, user: str) -> str:
    if args.with_token:
        return sys.stdin.readline().strip()
    token = os.environ.get(TOKEN_ENV, "").strip()
    if token or args.yes or args.dry_run or not sys.stdin.isatty():
        return token
    return getpass.getpass(
        f"  PAT for {user} (leave blank to skip gh auth): ").strip()


def _main_setup(args) -> None:
    if args.with_token and not (args.user and args.email):
        raise PreconditionError("--with-token needs --user and --email")
    user = args.user or _prompt_required("  Account GitHub username: ")
    email = args.email or _prompt_required("  Commit email for that account: ")
    identity = Identity(user, email, args.workspace or os.getcwd(),
                        alias=args.alias, host=args.host)
    skip_ssh_add = args.skip_ssh_add or any(
        os.environ.get(name) == "1" for name in SKIP_SSH_ADD_ENVS)

    AccountSetup(
        identity,
        token=_resolve_token(args, identity.user),
        signing=not args.no_signing,
        ssh_add=not skip_ssh_add,
        probe=not args.skip_probe,
        dry_run=args.dry_run,
        yes=args.yes,
        quiet=args.quiet,
    ).run()


def _main_cleanup(args) -> int:
    manifest = resolve_manifest(alias=args.alias, manifest_path=args.manifest)
    _info(f"Using manifest {manifest.path}")
    return AccountCleanup(
        manifest,
        dry_run=args.dry_run,
        yes=args.yes,
        quiet=args.quiet,
    ).run()


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "setup":
            _main_setup(args)
        else:
            code = _main_cleanup(args)
            if code:
                sys.exit(code)
    except (GhAccountsError, OSError, ValueError) as exc:
        _error(f"error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
