#!/usr/bin/env python3
"""
MIT No Attribution License (MIT-0)

Copyright (c) 2026 Scott Morrison

Permission is hereby granted, free of charge, to any person obtaining a copy of this
software and associated documentation files (the "Software"), to deal in the Software
without restriction, including without limitation the rights to use, copy, modify,
merge, publish, distribute, sublicense, and/or sell copies of the Software, and to
permit persons to whom the Software is furnished to do so.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION OF
CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR
THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

from __future__ import annotations

import contextlib
import dataclasses
import errno
import functools
import os
import re
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, TextIO, Union

import smbclient
from smbprotocol.exceptions import SMBAuthenticationError, SMBException, SMBResponseException
from smbprotocol.header import NtStatus

SCHEME = "smb"
CHUNK_SIZE = 1024
SIZE_SUFFIXES = ("B", "kB", "MB", "GB")
VERSION = "SmbMirror/1.0.0"

# NTSTATUS codes that mean the credentials were refused.
_DENIED_STATUSES = {
    NtStatus.STATUS_ACCESS_DENIED,
    NtStatus.STATUS_LOGON_FAILURE,
}

# Remote errno values that a store may surface, mapped to builtin exception types.
_ERRNO_TYPES: dict[int, type[OSError]] = {
    errno.ENOENT: FileNotFoundError,
    errno.EACCES: PermissionError,
    errno.EPERM: PermissionError,
    errno.ENOTDIR: NotADirectoryError,
    errno.EISDIR: IsADirectoryError,
    errno.EEXIST: FileExistsError,
}


class SmbMirrorError(RuntimeError):
    """Base class for tool-level failures reported at the command boundary."""


class MalformedLocator(SmbMirrorError):
    pass


class EscapesRoot(SmbMirrorError):
    pass


class TransferError(SmbMirrorError):
    pass


# ---------------------------------------------------------------------------
# Locators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Locator:
    """Parsed smb://[[domain;]user[:password]@]server[/share[/path]] address."""

    server: str | None
    share: str | None = None
    path: tuple[str, ...] = ()
    domain: str | None = None
    username: str | None = None
    password: str | None = None
    trailing_slash: bool = False
    scheme: str = SCHEME

    def __str__(self) -> str:
        return self._render(self.password)

    def redacted(self) -> str:
        """Render the locator with any password masked."""

        return self._render(None if self.password is None else "***")

    def _render(self, password: str | None) -> str:
        out = [f"{self.scheme}://"]
        if self.username is not None or password is not None or self.domain is not None:
            if self.domain is not None:
                out.append(f"{self.domain};")
            out.append(self.username or "")
            if password is not None:
                out.append(f":{password}")
            out.append("@")
        if self.server is not None:
            out.append(self.server)
            if self.share is not None:
                out.append("/" + "/".join((self.share, *self.path)))
            if self.trailing_slash:
                out.append("/")
        return "".join(out)

    def child(self, name: str) -> Locator:
        """Return the locator of one entry inside this one."""

        if self.share is None:
            return dataclasses.replace(self, share=name, path=(), trailing_slash=False)
        return dataclasses.replace(self, path=(*self.path, name), trailing_slash=False)

    def simplify(self) -> Locator:
        """Resolve '.' and '..' segments below the server.

        Raises EscapesRoot when a '..' would climb above the server or the
        server name itself is '.' or '..'.
        """

        if self.server in (".", ".."):
            raise EscapesRoot(f"can't simplify . and .. in server name: {self.redacted()}")
        if self.share is None:
            return self

        raw = (self.share, *self.path)
        resolved: list[str] = []
        for seg in raw:
            if seg == ".":
                continue
            if seg == "..":
                if not resolved:
                    raise EscapesRoot(f"{self.redacted()} climbs above the server root")
                resolved.pop()
                continue
            resolved.append(seg)

        trailing = self.trailing_slash
        if not trailing and raw[-1] == ".":
            trailing = True
        return dataclasses.replace(
            self,
            share=resolved[0] if resolved else None,
            path=tuple(resolved[1:]),
            trailing_slash=trailing,
        )


_PASSWORD_RE = re.compile(r"^([^/]*//[^/@:]*:)[^/@]*@")


def _mask_password(raw: str) -> str:
    """Mask the password of a raw, possibly malformed, locator string."""

    return _PASSWORD_RE.sub(r"\1***@", raw)


def parse_locator(raw: str) -> Locator:
    """Parse a locator string without resolving relative segments."""

    prefix = f"{SCHEME}:"
    if raw[: len(prefix)].lower() != prefix:
        raise MalformedLocator(f"locator must start with {prefix}: {_mask_password(raw)}")
    rest = raw[len(prefix) :]
    if not rest.startswith("//"):
        raise MalformedLocator(f"missing // after {prefix}: {_mask_password(raw)}")
    rest = rest[2:]
    if not rest:
        raise MalformedLocator(f"empty locator: {_mask_password(raw)}")

    domain: str | None = None
    username: str | None = None
    password: str | None = None
    at = rest.find("@")
    slash = rest.find("/")
    if at != -1 and (slash == -1 or at < slash):
        creds, rest = rest[:at], rest[at + 1 :]
        if ";" in creds:
            domain, creds = creds.split(";", 1)
        username, sep, pw = creds.partition(":")
        if sep:
            password = pw

    if not rest:
        return Locator(server=None, domain=domain, username=username, password=password)
    if rest.startswith("/"):
        raise MalformedLocator(f"share or path given without a server: {_mask_password(raw)}")

    server, sep, tail = rest.partition("/")
    segments = [s for s in tail.split("/") if s]
    return Locator(
        server=server,
        share=segments[0] if segments else None,
        path=tuple(segments[1:]),
        domain=domain,
        username=username,
        password=password,
        trailing_slash=bool(sep) and (not tail or tail.endswith("/")),
    )


def simplify_url(raw: str) -> str:
    """Parse, simplify and render a locator string."""

    return str(parse_locator(raw).simplify())


def _with_slash(text: str) -> str:
    return text if text.endswith("/") else text + "/"


def _dir_url(locator: Locator) -> str:
    """Display form used for the prompt and mirror headers."""

    return _with_slash(locator.redacted())


# ---------------------------------------------------------------------------
# Formatting and matching
# ---------------------------------------------------------------------------


def sizify(n: float) -> str:
    """Format a byte count with 3 significant digits in B, kB, MB or GB."""

    n = int(round(n))
    i = 0
    while i < len(SIZE_SUFFIXES) - 1 and n >= 1024 ** (i + 1):
        i += 1
    if i > 0:
        return "%.3g %s" % (n / 1024**i, SIZE_SUFFIXES[i])
    return f"{n} {SIZE_SUFFIXES[0]}"


@functools.lru_cache(maxsize=256)
def _compile_name_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a command pattern; invalid regexes fall back to a literal match."""

    try:
        return re.compile(pattern, re.IGNORECASE)
    except (re.error, OverflowError):
        return re.compile(re.escape(pattern), re.IGNORECASE)


def _name_matches(pattern: str, name: str, whole: bool = False) -> bool:
    """Case-insensitive search of pattern in name, or a whole-name match."""

    compiled = _compile_name_pattern(pattern)
    if whole:
        return compiled.fullmatch(name) is not None
    return compiled.search(name) is not None


def _is_safe_local_name(name: str) -> bool:
    """Reject remote names that would escape the current local directory."""

    if not name or name in (".", ".."):
        return False
    return not any(c in name for c in ("/", "\\", "\x00"))


def _status(msg: str, quiet: bool = False) -> None:
    """Emit a namespaced status line unless quiet mode is active."""

    if not quiet:
        print(f"[smbmirror] {msg}", flush=True)


# ---------------------------------------------------------------------------
# Remote store contract
# ---------------------------------------------------------------------------


class EntryKind(Enum):
    FILE = "file"
    DIR = "dir"
    LINK = "link"
    FILE_SHARE = "file_share"
    WORKGROUP = "workgroup"
    SERVER = "server"


@dataclass(frozen=True)
class DirEntry:
    name: str
    kind: EntryKind
    comment: str = ""


@dataclass(frozen=True)
class RemoteStat:
    size: int
    mtime: float


class CredentialCache:
    """Session-scoped credentials keyed by case-insensitive (server, share)."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], tuple[str, str]] = {}

    @staticmethod
    def _key(server: str | None, share: str | None) -> tuple[str, str]:
        return ((server or "").lower(), (share or "").lower())

    def store(self, server: str | None, share: str | None, username: str, password: str) -> None:
        self._entries[self._key(server, share)] = (username, password)

    def resolve(
        self, server: str | None, share: str | None, domain_hint: str | None = None
    ) -> tuple[str | None, str, str] | None:
        """Return (domain, username, password) for an exact match, else None."""

        hit = self._entries.get(self._key(server, share))
        if hit is None:
            return None
        return domain_hint, hit[0], hit[1]

    def __len__(self) -> int:
        return len(self._entries)


@contextlib.contextmanager
def _remote_errors(locator: Locator) -> Iterator[None]:
    """Re-raise OSErrors as builtin types carrying the redacted locator."""

    try:
        yield
    except OSError as e:
        code = e.errno if e.errno is not None else errno.EIO
        exc_type = _ERRNO_TYPES.get(code, OSError)
        raise exc_type(code, e.strerror or str(e), locator.redacted()) from e


def _is_missing(e: OSError) -> bool:
    return isinstance(e, (FileNotFoundError, NotADirectoryError)) or e.errno in (
        errno.ENOENT,
        errno.ENOTDIR,
        errno.ENODEV,
    )


class RemoteStore:
    """Remote session consumed by the interpreter and the transfer engine.

    Implementations raise FileNotFoundError / NotADirectoryError for missing
    entries and PermissionError for access denied, with ``filename`` set to
    the redacted locator that failed.
    """

    def __init__(self, credentials: CredentialCache | None = None) -> None:
        self.credentials = credentials if credentials is not None else CredentialCache()

    def credentials_for(self, locator: Locator) -> tuple[str | None, str | None, str | None]:
        """Cached override first, then whatever the locator carries."""

        override = self.credentials.resolve(locator.server, locator.share, locator.domain)
        if override is not None:
            return override
        return locator.domain, locator.username, locator.password

    def open_dir(self, locator: Locator) -> None:
        """Check that locator names a directory the session may enter."""
        raise NotImplementedError

    def listdir(self, locator: Locator) -> list[DirEntry]:
        """Return the entries of the directory at locator."""
        raise NotImplementedError

    def stat(self, locator: Locator) -> RemoteStat:
        """Return size and mtime of the entry at locator."""
        raise NotImplementedError

    def open_file(self, locator: Locator) -> BinaryIO:
        """Open the file at locator for binary reading."""
        raise NotImplementedError


class LocalTreeStore(RemoteStore):
    """Serve locators from a directory laid out as root/server/share/path."""

    def __init__(self, root: str | os.PathLike[str], credentials: CredentialCache | None = None) -> None:
        super().__init__(credentials)
        self.root = Path(root).expanduser().resolve()

    def _local_path(self, locator: Locator) -> Path:
        parts = [p for p in (locator.server, locator.share, *locator.path) if p is not None]
        for part in parts:
            if not _is_safe_local_name(part):
                raise FileNotFoundError(errno.ENOENT, "invalid path segment", locator.redacted())
        return self.root.joinpath(*parts)

    def open_dir(self, locator: Locator) -> None:
        with _remote_errors(locator):
            path = self._local_path(locator)
            if not path.exists():
                raise FileNotFoundError(errno.ENOENT, "No such file or directory", str(path))
            if not path.is_dir():
                raise NotADirectoryError(errno.ENOTDIR, "Not a directory", str(path))
            os.listdir(path)

    def listdir(self, locator: Locator) -> list[DirEntry]:
        entries: list[DirEntry] = []
        with _remote_errors(locator):
            path = self._local_path(locator)
            with os.scandir(path) as it:
                for ent in sorted(it, key=lambda e: e.name):
                    if locator.server is None or locator.share is None:
                        # The top two levels only hold servers and shares.
                        if ent.is_dir():
                            kind = EntryKind.SERVER if locator.server is None else EntryKind.FILE_SHARE
                            entries.append(DirEntry(ent.name, kind))
                        continue
                    if ent.is_symlink():
                        kind = EntryKind.LINK
                    elif ent.is_dir():
                        kind = EntryKind.DIR
                    else:
                        kind = EntryKind.FILE
                    entries.append(DirEntry(ent.name, kind))
        return entries

    def stat(self, locator: Locator) -> RemoteStat:
        with _remote_errors(locator):
            st = self._local_path(locator).stat()
        return RemoteStat(size=st.st_size, mtime=st.st_mtime)

    def open_file(self, locator: Locator) -> BinaryIO:
        with _remote_errors(locator):
            return open(self._local_path(locator), "rb")


class SmbProtocolStore(RemoteStore):
    """SMB2/3 session backed by smbprotocol's smbclient module."""

    def __init__(self, credentials: CredentialCache | None = None, port: int = 445) -> None:
        super().__init__(credentials)
        self.port = port

    def _unc(self, locator: Locator) -> str:
        if locator.server is None:
            raise OSError(errno.ENODEV, "workgroup browsing is not supported", locator.redacted())
        parts = [p for p in (locator.server, locator.share, *locator.path) if p is not None]
        return "\\\\" + "\\".join(parts)

    def _session_kwargs(self, locator: Locator) -> dict[str, object]:
        domain, username, password = self.credentials_for(locator)
        kwargs: dict[str, object] = {"port": self.port}
        if username:
            kwargs["username"] = f"{domain}\\{username}" if domain else username
        if password is not None:
            kwargs["password"] = password
        return kwargs

    @contextlib.contextmanager
    def _smb_errors(self, locator: Locator) -> Iterator[None]:
        with _remote_errors(locator):
            try:
                yield
            except OSError:
                # SMBOSError already carries a mapped errno.
                raise
            except SMBAuthenticationError as e:
                raise PermissionError(errno.EACCES, str(e), locator.redacted()) from e
            except SMBResponseException as e:
                if getattr(e, "status", None) in _DENIED_STATUSES:
                    raise PermissionError(errno.EACCES, str(e), locator.redacted()) from e
                raise OSError(errno.EIO, str(e), locator.redacted()) from e
            except SMBException as e:
                # Dropped connections and other transport failures.
                raise OSError(errno.EIO, str(e), locator.redacted()) from e

    def _require_share(self, locator: Locator) -> None:
        if locator.share is None:
            raise OSError(errno.ENODEV, "share enumeration is not supported", locator.redacted())

    def open_dir(self, locator: Locator) -> None:
        with self._smb_errors(locator):
            self._require_share(locator)
            smbclient.listdir(self._unc(locator), **self._session_kwargs(locator))

    def listdir(self, locator: Locator) -> list[DirEntry]:
        entries: list[DirEntry] = []
        with self._smb_errors(locator):
            self._require_share(locator)
            for ent in smbclient.scandir(self._unc(locator), **self._session_kwargs(locator)):
                if ent.is_symlink():
                    kind = EntryKind.LINK
                elif ent.is_dir():
                    kind = EntryKind.DIR
                else:
                    kind = EntryKind.FILE
                entries.append(DirEntry(ent.name, kind))
        return entries

    def stat(self, locator: Locator) -> RemoteStat:
        with self._smb_errors(locator):
            st = smbclient.stat(self._unc(locator), **self._session_kwargs(locator))
        return RemoteStat(size=st.st_size, mtime=st.st_mtime)

    def open_file(self, locator: Locator) -> BinaryIO:
        with self._smb_errors(locator):
            handle = smbclient.open_file(self._unc(locator), mode="rb", **self._session_kwargs(locator))
        return _SmbReader(handle, functools.partial(self._smb_errors, locator))


class _SmbReader:
    """Remote file handle whose read and close errors name the remote locator."""

    def __init__(self, handle: BinaryIO, errors: Callable[[], contextlib.AbstractContextManager[None]]) -> None:
        self._handle = handle
        self._errors = errors

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def read(self, size: int = -1) -> bytes:
        with self._errors():
            return self._handle.read(size)

    def close(self) -> None:
        with self._errors():
            self._handle.close()


# ---------------------------------------------------------------------------
# Streaming transfer
# ---------------------------------------------------------------------------


def download_file(
    store: RemoteStore,
    remote: Locator,
    local_path: str | os.PathLike[str],
    *,
    overwrite: bool = True,
    bandwidth: float | None = None,
    out: TextIO | None = None,
) -> int:
    """Stream one remote file to local_path and return the bytes written.

    A zero-length remote file, or an existing local file of the same size
    when overwrite is False, is a no-op returning 0. With a bandwidth cap
    (bytes/sec) the loop sleeps throughput/cap seconds whenever the running
    average exceeds the cap. PermissionError propagates untouched; every
    other failure becomes TransferError. Both handles are always closed.
    """

    out = out or sys.stdout
    local_path = Path(local_path)
    source: BinaryIO | None = None
    sink: BinaryIO | None = None
    progress_started = False
    try:
        source = store.open_file(remote)
        size = store.stat(remote).size
        if size == 0 or (not overwrite and local_path.is_file() and local_path.stat().st_size == size):
            return 0

        try:
            sink = open(local_path, "wb")
        except OSError as e:
            raise TransferError(f"Can't write {local_path}: {e.strerror or e}") from e
        out.write(local_path.name.ljust(40) + "\t   0 % " + " " * 9)
        out.flush()
        progress_started = True

        read = 0
        start = time.monotonic()
        while True:
            data = source.read(CHUNK_SIZE)
            if not data:
                break
            sink.write(data)
            read += len(data)
            elapsed = time.monotonic() - start
            if elapsed <= 0:
                continue
            speed = read / elapsed
            out.write("\b" * 16 + f"{int(read * 100 / size):>3} % {sizify(speed):>8}/s")
            out.flush()
            if bandwidth and speed > bandwidth:
                time.sleep(speed / bandwidth)

        out.write(f"  {sizify(read)}\n")
        out.flush()
        return read
    except PermissionError:
        raise
    except OSError as e:
        if progress_started:
            out.write("\n")
        raise TransferError(f"Can't get {remote.redacted()}: {e.strerror or e}") from e
    finally:
        if source is not None:
            source.close()
        if sink is not None:
            sink.close()


# ---------------------------------------------------------------------------
# Decision policies
# ---------------------------------------------------------------------------

LineReader = Callable[[str], Optional[str]]


def _read_stdin_line(prompt: str) -> str | None:
    """Prompt on stdout and read one line; None at end of input."""

    try:
        return input(prompt)
    except EOFError:
        return None


class AlwaysYes:
    def confirm(self, question: str) -> bool:
        return True

    def ask(self, prompt: str) -> str | None:
        return None


class AlwaysNo:
    def confirm(self, question: str) -> bool:
        return False

    def ask(self, prompt: str) -> str | None:
        return None


class PromptUser:
    """Ask the user through a line reader; answers starting with y/Y confirm."""

    def __init__(self, reader: LineReader | None = None) -> None:
        self.reader = reader or _read_stdin_line

    def confirm(self, question: str) -> bool:
        answer = self.reader(question)
        return bool(answer) and answer.strip()[:1].lower() == "y"

    def ask(self, prompt: str) -> str | None:
        answer = self.reader(prompt)
        return None if answer is None else answer.rstrip("\r\n")


DecisionPolicy = Union[AlwaysYes, AlwaysNo, PromptUser]


# ---------------------------------------------------------------------------
# Command queue tasks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunCommand:
    line: str

    def __str__(self) -> str:
        return self.line


@dataclass(frozen=True)
class CreateLocal:
    name: str

    def __str__(self) -> str:
        return f"lmkdir {self.name}"


@dataclass(frozen=True)
class EnterLocal:
    name: str

    def __str__(self) -> str:
        return f"lcd {self.name}"


@dataclass(frozen=True)
class EnterRemote:
    name: str

    def __str__(self) -> str:
        return f"cd {self.name}"


@dataclass(frozen=True)
class Recurse:
    pattern: str

    def __str__(self) -> str:
        return f"rget {self.pattern}"


@dataclass(frozen=True)
class LeaveRemote:
    def __str__(self) -> str:
        return "cd .."


@dataclass(frozen=True)
class LeaveLocal:
    def __str__(self) -> str:
        return "lcd .."


Task = Union[RunCommand, CreateLocal, EnterLocal, EnterRemote, Recurse, LeaveRemote, LeaveLocal]


def _mirror_tasks(name: str, pattern: str) -> list[Task]:
    """Front-to-back task group that mirrors one remote subdirectory."""

    return [
        CreateLocal(name),
        EnterLocal(name),
        EnterRemote(name),
        Recurse(pattern),
        LeaveRemote(),
        LeaveLocal(),
    ]


def _split_command(line: str) -> tuple[str | None, str | None]:
    """Split a command line into a lower-cased verb and one raw argument."""

    parts = line.strip().split(None, 1)
    if not parts:
        return None, None
    verb = parts[0].lower()
    arg = parts[1] if len(parts) > 1 else None
    if arg is not None and len(arg) >= 2 and arg.startswith('"') and arg.endswith('"'):
        arg = arg[1:-1]
    return verb, arg


def _format_entry(entry: DirEntry, st: RemoteStat | None, now_year: int) -> str:
    """Render one listing line; st is None when the entry vanished before stat."""

    if entry.kind in (EntryKind.FILE_SHARE, EntryKind.WORKGROUP, EntryKind.SERVER):
        return f"{entry.name.rjust(27)} {entry.comment or ''}"
    size_col = "dir" if entry.kind is EntryKind.DIR else " "
    if st is None:
        return f"{size_col.rjust(14)} {' ' * 13}{entry.name}"
    if entry.kind is not EntryKind.DIR:
        size_col = sizify(st.size)
    mtime = datetime.fromtimestamp(st.mtime)
    when = mtime.strftime("%H:%M") if mtime.year == now_year else f" {mtime.year}"
    return f"{size_col.rjust(14)} {mtime.strftime('%b %d')} {when} {entry.name}"


def _session_help_text() -> str:
    return (
        "Available commands: cd <dir>, [mr]get <filename|regexp>, dget <dirname|regexp>, dir, ls\n"
        "                    lcd <localdir>, lmkdir <localdir>, lrmdir <localdir>, help, quit, exit"
    )


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


class Outcome(Enum):
    DONE = "done"
    FAILED = "failed"
    STOP = "stop"


@dataclass
class Session:
    """All mutable state of one client session."""

    store: RemoteStore
    locator: Locator
    local_dir: Path
    queue: deque[Task] = field(default_factory=deque)
    verbose: bool = False
    bandwidth: float | None = None

    @property
    def credentials(self) -> CredentialCache:
        return self.store.credentials


class CommandInterpreter:
    """Drain the session queue one task at a time, prompting when it is empty."""

    def __init__(
        self,
        session: Session,
        reader: LineReader | None = None,
        decider: DecisionPolicy | None = None,
        out: TextIO | None = None,
    ) -> None:
        self.session = session
        self.reader = reader or _read_stdin_line
        self.decider = decider if decider is not None else PromptUser(self.reader)
        self.out = out or sys.stdout
        self._verbs: dict[str, Callable[[str | None], Outcome]] = {
            "dir": self._cmd_dir,
            "ls": self._cmd_dir,
            "cd": self._cmd_cd,
            "lcd": self._cmd_lcd,
            "lmkdir": self._cmd_lmkdir,
            "lrmdir": self._cmd_lrmdir,
            "get": functools.partial(self._fetch, "get"),
            "mget": functools.partial(self._fetch, "mget"),
            "rget": functools.partial(self._fetch, "rget"),
            "dget": self._cmd_dget,
            "quit": self._cmd_quit,
            "exit": self._cmd_quit,
            "help": self._cmd_help,
        }

    def _print(self, text: str = "") -> None:
        self.out.write(text + "\n")
        self.out.flush()

    def prompt(self) -> str:
        return f"{_dir_url(self.session.locator)}> "

    def open_initial(self) -> bool:
        """Open the starting locator, offering authentication on denial."""

        while True:
            try:
                self.session.store.open_dir(self.session.locator)
                return True
            except PermissionError as e:
                if not self._authenticate(e):
                    self._print(f"Access denied: {self.session.locator.redacted()}")
                    return False
            except OSError as e:
                if _is_missing(e):
                    self._print(f"No such directory: {self.session.locator.redacted()}")
                else:
                    self._print(f"Error: {e}")
                return False

    def run(self) -> None:
        queue = self.session.queue
        while True:
            if queue:
                task = queue.popleft()
                if self.session.verbose:
                    self._print(f"[{len(queue):>2}] {task}")
            else:
                line = self.reader(self.prompt())
                if line is None:
                    self._print()
                    break
                task = RunCommand(line)
            if self.execute(task) is Outcome.STOP:
                break

    def execute(self, task: Task) -> Outcome:
        """Run one task, retrying it after each accepted authentication prompt."""

        while True:
            try:
                outcome = self._dispatch(task)
            except PermissionError as e:
                if self._authenticate(e):
                    continue
                outcome = Outcome.FAILED
            except (SmbMirrorError, OSError) as e:
                self._print(f"Error: {e}")
                outcome = Outcome.FAILED
            if outcome is Outcome.FAILED:
                self._abandon_group(task)
            return outcome

    def _dispatch(self, task: Task) -> Outcome:
        session = self.session
        if isinstance(task, RunCommand):
            return self._run_line(task.line)
        if isinstance(task, CreateLocal):
            return self._cmd_lmkdir(task.name)
        if isinstance(task, EnterLocal):
            return self._cmd_lcd(task.name)
        if isinstance(task, LeaveLocal):
            return self._cmd_lcd("..")
        if isinstance(task, EnterRemote):
            return self._change_remote(session.locator.child(task.name))
        if isinstance(task, LeaveRemote):
            return self._change_remote(session.locator.child("..").simplify())
        if isinstance(task, Recurse):
            return self._fetch("rget", task.pattern)
        raise TypeError(f"unknown task: {task!r}")

    def _abandon_group(self, task: Task) -> None:
        """Drop the rest of a mirror group whose enter step failed."""

        if isinstance(task, EnterLocal):
            self._drop_front(EnterRemote, Recurse, LeaveRemote, LeaveLocal)
        elif isinstance(task, EnterRemote):
            self._drop_front(Recurse, LeaveRemote)

    def _drop_front(self, *kinds: type) -> None:
        queue = self.session.queue
        for kind in kinds:
            if not queue or not isinstance(queue[0], kind):
                return
            queue.popleft()

    def _run_line(self, line: str) -> Outcome:
        verb, arg = _split_command(line)
        if verb is None:
            return Outcome.DONE
        handler = self._verbs.get(verb)
        if handler is None:
            self._print(f"Unknown command: {verb}")
            return Outcome.DONE
        return handler(arg)

    # -- authentication -----------------------------------------------------

    def _denied_locator(self, e: PermissionError) -> Locator:
        if e.filename:
            try:
                return parse_locator(str(e.filename))
            except MalformedLocator:
                pass
        return self.session.locator

    def _authenticate(self, e: PermissionError) -> bool:
        """Prompt for credentials and cache them for the denied server/share."""

        target = self._denied_locator(e)
        if not self.decider.confirm("Error: Access denied! Enter authentication? [y/n] "):
            return False
        username = self.decider.ask("username: ")
        if username is None:
            return False
        password = self.decider.ask("password: ")
        if password is None:
            return False
        self.session.credentials.store(target.server, target.share, username, password)
        _status(
            f"credentials cached for {target.server}/{target.share or ''}",
            quiet=not self.session.verbose,
        )
        return True

    # -- remote navigation --------------------------------------------------

    def _change_remote(self, target: Locator) -> Outcome:
        try:
            self.session.store.open_dir(target)
        except PermissionError:
            raise
        except OSError as e:
            if not _is_missing(e):
                raise
            self._print(f"Error: No such directory: {target.redacted()}!")
            return Outcome.FAILED
        self.session.locator = target
        return Outcome.DONE

    def _cmd_cd(self, arg: str | None) -> Outcome:
        if not arg:
            self._print("Error: cd requires a directory")
            return Outcome.FAILED
        # Segments are applied to the session locator so its credentials
        # survive and text in arg is never read as a user or server.
        segments = [seg for seg in arg.split("/") if seg]
        target = self.session.locator
        if target.server is None and segments:
            target = dataclasses.replace(target, server=segments.pop(0), trailing_slash=False)
        for seg in segments:
            target = target.child(seg)
        return self._change_remote(target.simplify())

    def _cmd_dir(self, arg: str | None) -> Outcome:
        store = self.session.store
        locator = self.session.locator
        now_year = datetime.now().year
        for entry in store.listdir(locator):
            if entry.name in (".", ".."):
                continue
            if entry.kind in (EntryKind.FILE_SHARE, EntryKind.WORKGROUP, EntryKind.SERVER):
                self._print(_format_entry(entry, None, now_year))
                continue
            try:
                st: RemoteStat | None = store.stat(locator.child(entry.name))
            except FileNotFoundError:
                st = None
            self._print(_format_entry(entry, st, now_year))
        return Outcome.DONE

    # -- local filesystem ---------------------------------------------------

    def _cmd_lcd(self, arg: str | None) -> Outcome:
        target = (self.session.local_dir / (arg or "")).resolve()
        if not target.is_dir():
            self._print("Error: No such directory!")
            return Outcome.FAILED
        self.session.local_dir = target
        return Outcome.DONE

    def _cmd_lmkdir(self, arg: str | None) -> Outcome:
        if not arg:
            self._print("Error: lmkdir requires a directory")
            return Outcome.FAILED
        try:
            (self.session.local_dir / arg).mkdir()
        except FileExistsError:
            pass
        except PermissionError as e:
            self._print(f"Error: {e}")
            return Outcome.FAILED
        return Outcome.DONE

    def _cmd_lrmdir(self, arg: str | None) -> Outcome:
        if not arg:
            self._print("Error: lrmdir requires a directory")
            return Outcome.FAILED
        try:
            (self.session.local_dir / arg).rmdir()
        except OSError as e:
            if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
                return Outcome.DONE
            self._print(f"Error: {e}")
            return Outcome.FAILED
        return Outcome.DONE

    # -- transfers ----------------------------------------------------------

    def _download(self, name: str, overwrite: bool) -> None:
        session = self.session
        if not _is_safe_local_name(name):
            self._print(f"Error: refusing unsafe remote name: {name!r}")
            return
        try:
            download_file(
                session.store,
                session.locator.child(name),
                session.local_dir / name,
                overwrite=overwrite,
                bandwidth=session.bandwidth,
                out=self.out,
            )
        except TransferError as e:
            self._print(str(e))

    def _confirm_overwrite(self, name: str) -> bool | None:
        """None: identical local copy, skip. True/False: user's overwrite answer."""

        local = self.session.local_dir / name
        if not local.is_file():
            return True
        remote_size = self.session.store.stat(self.session.locator.child(name)).size
        if local.stat().st_size == remote_size:
            return None
        return self.decider.confirm(f"File exists: {name}! Overwrite? [y/n] ")

    def _fetch(self, verb: str, pattern: str | None) -> Outcome:
        """get / mget / rget over the current remote directory.

        rget downloads every matching file without prompting, then pushes a
        mirror group per matching subdirectory to the front of the queue so
        the whole subtree runs before anything queued behind it.
        """

        session = self.session
        pattern = pattern or ""
        entries = [e for e in session.store.listdir(session.locator) if e.name not in (".", "..")]

        if verb == "get":
            exact = next(
                (e for e in entries if e.kind is EntryKind.FILE and _name_matches(pattern, e.name, whole=True)),
                None,
            )
            if exact is not None:
                self._download(exact.name, overwrite=True)
                return Outcome.DONE

        files = [e for e in entries if e.kind is EntryKind.FILE and _name_matches(pattern, e.name)]
        dirs: list[DirEntry] = []
        if verb == "rget":
            dirs = [
                e
                for e in entries
                if e.kind in (EntryKind.DIR, EntryKind.FILE_SHARE) and _name_matches(pattern, e.name)
            ]
        if not files and not dirs:
            self._print("Error: No such file in this directory!")
            return Outcome.FAILED

        if verb == "rget" or len(files) == 1:
            selected = files
        else:
            selected = [e for e in files if self.decider.confirm(f"{e.name}? [y/n] ")]

        safe_dirs: list[DirEntry] = []
        for entry in dirs:
            if not _is_safe_local_name(entry.name):
                self._print(f"Error: refusing unsafe remote name: {entry.name!r}")
                continue
            safe_dirs.append(entry)
        if safe_dirs:
            self._print(_dir_url(session.locator))

        for entry in selected:
            if verb == "rget":
                self._download(entry.name, overwrite=False)
                continue
            answer = self._confirm_overwrite(entry.name)
            if answer:
                self._download(entry.name, overwrite=True)

        tasks: list[Task] = []
        for entry in safe_dirs:
            tasks.extend(_mirror_tasks(entry.name, pattern))
        session.queue.extendleft(reversed(tasks))
        if safe_dirs:
            _status(
                f"scheduled {len(safe_dirs)} subdirectories under {_dir_url(session.locator)}",
                quiet=not session.verbose,
            )
        return Outcome.DONE

    def _cmd_dget(self, arg: str | None) -> Outcome:
        session = self.session
        pattern = arg or ""
        match = next(
            (
                e
                for e in session.store.listdir(session.locator)
                if e.kind is EntryKind.DIR and e.name not in (".", "..") and _name_matches(pattern, e.name)
            ),
            None,
        )
        if match is None or not _is_safe_local_name(match.name):
            self._print("Error: No match!")
            return Outcome.STOP
        session.queue.extendleft(reversed(_mirror_tasks(match.name, ".")))
        return Outcome.DONE

    def _cmd_quit(self, arg: str | None) -> Outcome:
        return Outcome.STOP

    def _cmd_help(self, arg: str | None) -> Outcome:
        self._print(_session_help_text())
        return Outcome.DONE


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


@dataclass
class SmbMirrorOptions:
    commands: list[str] | None
    bandwidth: float | None
    verbose: bool
    root: str | None
    show_version: bool
    show_help: bool


def _usage_text() -> str:
    """Return CLI help text shared by --help and argument error paths."""

    return (
        "usage: smbmirror [-v] [-c commands] [-b KBps] [-r root] [-V] <locator>\n"
        "where locator is in the format [smb:]//[[domain;]user[:password]@]server[/share[/dir]]\n\n"
        "options:\n"
        "  -c, --cmd CMDS           ';'-separated commands run in batch mode (quit is appended)\n"
        "  -b, --bandwidth KBPS     throttle downloads to KBPS kilobytes per second\n"
        "  -v, --verbose            echo queued commands with queue depth, show status lines\n"
        "  -r, --root DIR           serve shares from DIR/server/share instead of SMB\n"
        "  -V, --version            show smbmirror version and exit\n"
        "  -h, --help               show this help and exit\n\n"
        "session commands:\n"
        "  dir, ls, cd <dir>, lcd <dir>, lmkdir <dir>, lrmdir <dir>,\n"
        "  get <pattern>, mget <pattern>, rget <pattern>, dget <pattern>, help, quit, exit\n"
    )


def _parse_bandwidth(raw: str) -> float:
    try:
        kbps = float(raw)
    except ValueError:
        raise RuntimeError(f"Invalid --bandwidth value: {raw}") from None
    if kbps <= 0:
        raise RuntimeError("bandwidth must be > 0")
    return kbps * 1024


def _extract_options(argv: list[str]) -> tuple[SmbMirrorOptions, list[str]]:
    """Parse smbmirror flags and return the remaining positional arguments."""

    commands: list[str] | None = None
    bandwidth: float | None = None
    verbose = False
    root: str | None = None
    show_version = False
    show_help = False
    positionals: list[str] = []

    def value_for(flag: str, i: int) -> str:
        if i >= len(argv):
            raise RuntimeError(f"{flag} requires a value")
        return argv[i]

    i = 0
    while i < len(argv):
        a = argv[i]
        if a == "--":
            positionals.extend(argv[i + 1 :])
            break
        if a in {"--cmd", "-c"}:
            i += 1
            commands = value_for(a, i).split(";")
        elif a.startswith("--cmd="):
            commands = a.split("=", 1)[1].split(";")
        elif a.startswith("-c") and len(a) > 2 and not a.startswith("--"):
            commands = a[2:].split(";")
        elif a in {"--bandwidth", "-b"}:
            i += 1
            bandwidth = _parse_bandwidth(value_for(a, i))
        elif a.startswith("--bandwidth="):
            bandwidth = _parse_bandwidth(a.split("=", 1)[1])
        elif a.startswith("-b") and len(a) > 2 and not a.startswith("--"):
            bandwidth = _parse_bandwidth(a[2:])
        elif a in {"--root", "-r"}:
            i += 1
            root = value_for(a, i)
        elif a.startswith("--root="):
            root = a.split("=", 1)[1]
        elif a.startswith("-r") and len(a) > 2 and not a.startswith("--"):
            root = a[2:]
        elif a in {"--verbose", "-v"}:
            verbose = True
        elif a in {"--version", "-V"}:
            show_version = True
        elif a in {"--help", "-h"}:
            show_help = True
        elif a.startswith("-") and a != "-":
            raise RuntimeError(f"Unsupported option: {a}")
        else:
            positionals.append(a)
        i += 1

    if commands is not None:
        commands = [c.strip() for c in commands if c.strip()]
        commands.append("quit")

    return SmbMirrorOptions(
        commands=commands,
        bandwidth=bandwidth,
        verbose=verbose,
        root=root,
        show_version=show_version,
        show_help=show_help,
    ), positionals


def main() -> int:
    """CLI entrypoint for smbmirror."""

    try:
        opts, positionals = _extract_options(sys.argv[1:])
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        print(_usage_text(), file=sys.stderr)
        return 2

    if opts.show_version:
        print(VERSION)
        return 0
    if opts.show_help:
        print(_usage_text())
        return 0
    if not positionals:
        print(_usage_text())
        return 1
    if len(positionals) > 1:
        print(f"Unexpected arguments: {' '.join(positionals[1:])}", file=sys.stderr)
        return 2

    raw = positionals[0]
    if raw[: len(SCHEME) + 1].lower() != f"{SCHEME}:":
        raw = f"{SCHEME}:{raw}"
    try:
        locator = parse_locator(raw).simplify()
    except SmbMirrorError as e:
        print(f"Invalid locator: {e}", file=sys.stderr)
        return 1

    quiet = not opts.verbose
    credentials = CredentialCache()
    store: RemoteStore
    if opts.root:
        store = LocalTreeStore(opts.root, credentials)
        _status(f"serving shares from {store.root}", quiet=quiet)
    else:
        store = SmbProtocolStore(credentials)
    if opts.bandwidth:
        _status(f"bandwidth cap: {sizify(opts.bandwidth)}/s", quiet=quiet)

    session = Session(
        store=store,
        locator=locator,
        local_dir=Path.cwd(),
        verbose=opts.verbose,
        bandwidth=opts.bandwidth,
    )
    if opts.commands is not None:
        session.queue.extend(RunCommand(c) for c in opts.commands)

    interpreter = CommandInterpreter(session)
    try:
        if not interpreter.open_initial():
            return 1
        interpreter.run()
    except KeyboardInterrupt:
        print()
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
