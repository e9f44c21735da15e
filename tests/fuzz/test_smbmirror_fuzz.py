"""
Fuzz / property-based tests for smbmirror using Hypothesis.

Goals:
  - The locator parser never raises anything but MalformedLocator.
  - simplify is idempotent on every locator it accepts.
  - sizify stays within its unit table.
  - rget . reproduces an arbitrary share tree locally.
"""

import pathlib
import string
import sys
import tempfile

import pytest
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

sys.path.insert(0, str(pathlib.Path(__file__).parent.parent.parent))

from smbmirror import (
    SIZE_SUFFIXES,
    EscapesRoot,
    LocalTreeStore,
    MalformedLocator,
    RunCommand,
    _name_matches,
    _split_command,
    parse_locator,
    simplify_url,
    sizify,
)
from tests.conftest import local_tree, make_interpreter

# Hypothesis profile: generous but not unbounded
settings.register_profile(
    "fuzz",
    max_examples=300,
    suppress_health_check=[HealthCheck.too_slow],
    deadline=None,
)
settings.load_profile("fuzz")

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

_NAME_CHARS = string.ascii_letters + string.digits + "_-"

printable_text = st.text(
    alphabet=st.characters(blacklist_categories=("Cs",)),
    min_size=0,
    max_size=256,
)

name = st.text(alphabet=_NAME_CHARS, min_size=1, max_size=8)

segment = st.one_of(name, st.sampled_from([".", "..", ""]))

locator_text = st.builds(
    lambda creds, server, segs, slash: "smb://" + creds + server + "".join("/" + s for s in segs) + slash,
    st.sampled_from(["", "user@", "user:pw@", "dom;user:pw@"]),
    name,
    st.lists(segment, min_size=0, max_size=8),
    st.sampled_from(["", "/"]),
)

share_tree = st.recursive(
    st.binary(min_size=0, max_size=2048),
    lambda children: st.dictionaries(name, children, max_size=4),
    max_leaves=12,
)


def _stage(root, tree):
    for key, value in tree.items():
        target = root / key
        if isinstance(value, dict):
            target.mkdir()
            _stage(target, value)
        else:
            target.write_bytes(value)


def _expected(tree, prefix=""):
    found = {}
    for key, value in tree.items():
        rel = prefix + key
        if isinstance(value, dict):
            found[rel + "/"] = None
            found.update(_expected(value, rel + "/"))
        elif value:
            found[rel] = value
    return found


# ---------------------------------------------------------------------------
# 1. parse_locator only ever raises MalformedLocator
# ---------------------------------------------------------------------------

@given(raw=printable_text)
@settings(max_examples=500)
def test_fuzz_parse_locator_no_crash(raw):
    try:
        loc = parse_locator(raw)
    except MalformedLocator:
        return
    assert raw[:4].lower() == "smb:"
    assert all(seg for seg in loc.path)


@given(raw=st.builds(lambda tail: "smb://" + tail, printable_text))
def test_fuzz_parse_locator_with_scheme(raw):
    try:
        loc = parse_locator(raw)
    except MalformedLocator:
        return
    assert loc.share is None or loc.server is not None


# ---------------------------------------------------------------------------
# 2. simplify is idempotent
# ---------------------------------------------------------------------------

@given(raw=locator_text)
def test_fuzz_simplify_idempotent(raw):
    try:
        once = parse_locator(raw).simplify()
    except EscapesRoot:
        return
    assert once.simplify() == once
    assert "." not in once.path and ".." not in once.path
    assert simplify_url(str(once)) == str(once)


@given(raw=locator_text)
def test_fuzz_simplify_keeps_credentials(raw):
    loc = parse_locator(raw)
    try:
        simple = loc.simplify()
    except EscapesRoot:
        return
    assert (simple.domain, simple.username, simple.password, simple.server) == (
        loc.domain,
        loc.username,
        loc.password,
        loc.server,
    )


# ---------------------------------------------------------------------------
# 3. sizify stays inside its unit table
# ---------------------------------------------------------------------------

@given(n=st.integers(min_value=0, max_value=2**42))
def test_fuzz_sizify_invariants(n):
    text = sizify(n)
    number, unit = text.split(" ")
    assert unit in SIZE_SUFFIXES
    if n < 1024:
        assert text == f"{n} B"
    else:
        assert unit != "B"
        assert 0 < float(number) < 1025 or unit == "GB"


# ---------------------------------------------------------------------------
# 4. Matcher and command splitter never raise
# ---------------------------------------------------------------------------

@given(pattern=printable_text, entry=st.text(alphabet=_NAME_CHARS + ". ", max_size=32), whole=st.booleans())
def test_fuzz_name_matches_no_crash(pattern, entry, whole):
    assert isinstance(_name_matches(pattern, entry, whole=whole), bool)


@given(line=printable_text)
def test_fuzz_split_command_no_crash(line):
    verb, arg = _split_command(line)
    if verb is None:
        assert not line.strip()
    else:
        assert verb
        assert not any(c.isspace() for c in verb)


# ---------------------------------------------------------------------------
# 5. rget . mirrors arbitrary share trees
# ---------------------------------------------------------------------------

@given(tree=st.dictionaries(name, share_tree, max_size=5))
@settings(max_examples=60)
def test_fuzz_rget_mirrors_tree(tree):
    # Names differing only in case would collide on case-folding filesystems.
    def folded_unique(t):
        keys = [k.lower() for k in t]
        if len(keys) != len(set(keys)):
            return False
        return all(folded_unique(v) for v in t.values() if isinstance(v, dict))

    assume(folded_unique(tree))

    with tempfile.TemporaryDirectory() as tmp:
        base = pathlib.Path(tmp)
        share = base / "remote" / "srv" / "share"
        share.mkdir(parents=True)
        _stage(share, tree)
        local = base / "local"
        local.mkdir()

        interp, _, reader = make_interpreter(LocalTreeStore(base / "remote"), "smb://srv/share", local)
        interp.session.queue.extend([RunCommand("rget ."), RunCommand("quit")])
        interp.run()

        expected = _expected(tree)
        assert local_tree(local) == set(expected)
        for rel, data in expected.items():
            if data is not None:
                assert (local / rel).read_bytes() == data
        assert not interp.session.queue
        assert interp.session.local_dir.resolve() == local.resolve()
        assert str(interp.session.locator) == "smb://srv/share"
        assert reader.prompts == []
