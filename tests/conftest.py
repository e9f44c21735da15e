"""
Shared pytest fixtures and helpers for the SmbMirror test suite.
"""

import errno
import io
import pathlib
import sys

import pytest

# Ensure the project root is importable regardless of how
# pytest is invoked so every test file can simply do
# ``import smbmirror`` or ``from smbmirror import ...``.
_PROJECT_ROOT = pathlib.Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

import smbmirror  # noqa: E402 - imported after path fix
from smbmirror import (  # noqa: E402
    CommandInterpreter,
    LocalTreeStore,
    PromptUser,
    Session,
    parse_locator,
)

SERVER = "fileserver"
SHARE = "public"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class ScriptedReader:
    """Line reader that replays canned answers and records every prompt.

    Returns None (end of input) once the answers run out.
    """

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        if not self.answers:
            return None
        return self.answers.pop(0)


class DenyingStore(LocalTreeStore):
    """LocalTreeStore that refuses one share until alice/secret is cached."""

    def __init__(self, root, protected_share, username="alice", password="secret"):
        super().__init__(root)
        self.protected_share = protected_share.lower()
        self.expected = (username, password)
        self.denials = 0

    def _check(self, locator):
        if (locator.share or "").lower() != self.protected_share:
            return
        _, username, password = self.credentials_for(locator)
        if (username, password) != self.expected:
            self.denials += 1
            raise PermissionError(errno.EACCES, "Access denied", locator.redacted())

    def open_dir(self, locator):
        self._check(locator)
        super().open_dir(locator)

    def listdir(self, locator):
        self._check(locator)
        return super().listdir(locator)

    def open_file(self, locator):
        self._check(locator)
        return super().open_file(locator)


def make_interpreter(store, locator, local_dir, answers=(), verbose=False, bandwidth=None, decider=None):
    """Build a session + interpreter writing to a StringIO.

    Returns (interpreter, output buffer, scripted reader).
    """
    if isinstance(locator, str):
        locator = parse_locator(locator).simplify()
    session = Session(
        store=store,
        locator=locator,
        local_dir=pathlib.Path(local_dir),
        verbose=verbose,
        bandwidth=bandwidth,
    )
    reader = ScriptedReader(answers)
    out = io.StringIO()
    interp = CommandInterpreter(session, reader=reader, decider=decider or PromptUser(reader), out=out)
    return interp, out, reader


def local_tree(root):
    """Return the set of relative paths below root, dirs suffixed with '/'."""
    found = set()
    for p in pathlib.Path(root).rglob("*"):
        rel = p.relative_to(root).as_posix()
        found.add(rel + "/" if p.is_dir() else rel)
    return found


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def remote_root(tmp_path):
    """Stage a share tree: fileserver/public/{readme.txt, A/{f1, B/{f2}}, empty.dat}."""
    root = tmp_path / "remote"
    share = root / SERVER / SHARE
    (share / "A" / "B").mkdir(parents=True)
    (share / "readme.txt").write_bytes(b"hello share\n")
    (share / "empty.dat").write_bytes(b"")
    (share / "A" / "f1").write_bytes(b"1" * 3000)
    (share / "A" / "B" / "f2").write_bytes(b"2" * 1500)
    (root / SERVER / "private").mkdir()
    (root / SERVER / "private" / "secret.txt").write_bytes(b"top secret")
    return root


@pytest.fixture
def store(remote_root):
    return LocalTreeStore(remote_root)


@pytest.fixture
def local_dir(tmp_path):
    d = tmp_path / "local"
    d.mkdir()
    return d


@pytest.fixture
def share_url():
    return f"smb://{SERVER}/{SHARE}"
