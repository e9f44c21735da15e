from __future__ import annotations

import pytest

from smbmirror import MalformedLocator, parse_locator

PIECES = ("smb:", "//", "domain;", "username", ":password", "@", "server", "/share", "/path")


def _compose(mask: int) -> tuple[str, dict[str, bool]]:
    flags = {piece: bool(mask & (1 << bit)) for bit, piece in enumerate(PIECES)}
    return "".join(piece for piece in PIECES if flags[piece]), flags


def _authority(flags: dict[str, bool]) -> str:
    return "".join(p for p in ("domain;", "username", ":password", "server") if flags[p])


def _must_fail(flags: dict[str, bool]) -> bool:
    if not flags["smb:"] or not flags["//"]:
        return True
    tail = flags["/share"] or flags["/path"]
    if flags["@"]:
        return not flags["server"] and tail
    # Without a credential block the whole authority is the server name.
    return not _authority(flags)


@pytest.mark.unit
@pytest.mark.parametrize("mask", range(2 ** len(PIECES)))
def test_locator_parse_matrix(mask: int) -> None:
    raw, flags = _compose(mask)

    if _must_fail(flags):
        with pytest.raises(MalformedLocator):
            parse_locator(raw)
        return

    loc = parse_locator(raw)
    if not flags["@"]:
        assert loc.server == _authority(flags)
        assert loc.username is None
        assert loc.password is None
        return

    assert loc.domain == ("domain" if flags["domain;"] else None)
    assert loc.username == ("username" if flags["username"] else "")
    assert loc.password == ("password" if flags[":password"] else None)
    assert loc.server == ("server" if flags["server"] else None)
    if flags["/share"]:
        assert loc.share == "share"
    elif flags["/path"]:
        assert loc.share == "path"
    else:
        assert loc.share is None
    assert loc.path == (("path",) if flags["/share"] and flags["/path"] else ())
    assert str(loc) == raw

