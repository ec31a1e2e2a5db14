from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from sessiondock.ssh.keys import merge_authorized_key
from sessiondock.workspace.descriptor import descriptor_value, resolve_value

_KEYS = st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=12)
_SEGMENTS = st.text(alphabet="abcdefgXYZ0123456789_-", min_size=1, max_size=10)
_PATHS = st.lists(_SEGMENTS, min_size=1, max_size=4).map("/".join)
_KEY_LINES = st.text(alphabet="abcdefABCDEF0123456789+/= @.-", min_size=1, max_size=40).map(str.strip).filter(bool)


@given(_KEYS, _PATHS)
def test_written_value_is_read_back(key: str, value: str) -> None:
    text = f"# header\n{key}: {value}   # trailing comment\n"
    assert descriptor_value(text, key) == value


@given(_KEYS, _PATHS)
def test_quoted_value_is_unquoted(key: str, value: str) -> None:
    assert descriptor_value(f'{key}: "{value}"\n', key) == value


@given(_PATHS, _PATHS)
def test_absolute_values_ignore_base(value: str, base: str) -> None:
    assert resolve_value(f"/{value}", f"/{base}") == f"/{value}"


@given(_PATHS, _PATHS)
def test_relative_values_land_under_base(value: str, base: str) -> None:
    resolved = resolve_value(f"./{value}", f"/{base}")
    assert resolved == f"/{base}/{value}"


@given(st.lists(_KEY_LINES, max_size=6), _KEY_LINES)
def test_authorized_key_merge_is_idempotent(existing: list[str], public_key: str) -> None:
    once, _ = merge_authorized_key("\n".join(existing), public_key)
    twice, changed = merge_authorized_key(once, public_key)

    assert twice == once
    assert changed is False
    assert [line.strip() for line in once.splitlines()].count(public_key) >= 1
    assert [line.strip() for line in once.splitlines()].count(public_key) == max(1, existing.count(public_key))
