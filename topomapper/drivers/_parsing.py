"""Shared parsing helpers for vendor CLI output."""

from __future__ import annotations

import re
import string
from typing import Iterable, Optional

MAC_RE = re.compile(r"\b([0-9a-fA-F]{2}(?::[0-9a-fA-F]{2}){5})\b")
IPV4_RE = re.compile(r"\b(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})\b")

# key=value pairs in RouterOS "print terse" output. Values may contain spaces
# (comments, identities), so a value runs until the next " key=".
_TERSE_KEY = re.compile(r"(?:(?<=\s)|^)([a-z][a-z0-9-]*)=")
_TERSE_FLAGS = re.compile(r"^\s*\d+\s+([A-Z]*)\s+[a-z]")

# MikroTik prints non-ASCII bytes as bare hex pairs: "vC3B5rk" for "võrk".
_MIKROTIK_HEX = re.compile(r"(?:[C-F][0-9A-F][89AB][0-9A-F])+")


def normalize_mac(value: Optional[str]) -> Optional[str]:
    """Return ``AA:BB:CC:DD:EE:FF`` or None for anything that is not a MAC."""
    if not value:
        return None
    cleaned = value.strip().replace(":", "").replace("-", "").replace(".", "")
    if len(cleaned) != 12 or not all(ch in string.hexdigits for ch in cleaned):
        return None
    return ":".join(cleaned[i : i + 2] for i in range(0, 12, 2)).upper()


def parse_terse_line(line: str) -> dict[str, str]:
    """Split one terse output line into its key=value pairs."""
    matches = list(_TERSE_KEY.finditer(line))
    pairs: dict[str, str] = {}
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(line)
        value = line[m.end() : end].strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        pairs[m.group(1)] = value
    return pairs


def parse_terse(output: str, required: str = "") -> list[dict[str, str]]:
    """Parse terse output into rows, keeping rows that carry ``required``."""
    rows = []
    for line in output.splitlines():
        if not line.strip():
            continue
        row = parse_terse_line(line)
        if not row or (required and required not in row):
            continue
        row["_flags"] = terse_flags(line)
        rows.append(row)
    return rows


def terse_flags(line: str) -> str:
    """Flag column of a terse row: ``"0  R name=..."`` -> ``"R"``."""
    m = _TERSE_FLAGS.match(line)
    return m.group(1) if m else ""


def decode_mikrotik_string(value: Optional[str]) -> Optional[str]:
    if not value:
        return value

    def _decode(m: re.Match[str]) -> str:
        try:
            return bytes.fromhex(m.group(0)).decode("utf-8")
        except UnicodeDecodeError:
            return m.group(0)

    return _MIKROTIK_HEX.sub(_decode, value)


def parse_port_range(spec: str) -> list[int]:
    """``"1-4,7"`` -> ``[1, 2, 3, 4, 7]``; ``"-"`` and garbage -> ``[]``."""
    ports: list[int] = []
    if not spec or spec == "-":
        return ports
    for part in spec.split(","):
        part = part.strip()
        if "-" in part:
            start, _, end = part.partition("-")
            if start.isdigit() and end.isdigit():
                ports.extend(range(int(start), int(end) + 1))
        elif part.isdigit():
            ports.append(int(part))
    return ports


def format_vlan(
    pvid: Optional[str],
    tagged: Iterable[str],
    comments: Optional[dict[str, str]] = None,
) -> Optional[str]:
    """Render port VLAN membership as ``pvid+T:a,b``, ``T:a,b`` or ``pvid``.

    IDs with a known comment render as ``id(comment)``.
    """
    comments = comments or {}

    def _fmt(vlan_id: str) -> str:
        comment = comments.get(vlan_id)
        return f"{vlan_id}({comment})" if comment else vlan_id

    tagged_sorted = sorted(set(tagged), key=lambda v: int(v) if v.isdigit() else 0)
    if pvid and tagged_sorted:
        return f"{_fmt(pvid)}+T:{','.join(_fmt(v) for v in tagged_sorted)}"
    if tagged_sorted:
        return f"T:{','.join(_fmt(v) for v in tagged_sorted)}"
    if pvid:
        return _fmt(pvid)
    return None


def first_match(pattern: str | re.Pattern[str], text: str, flags: int = 0) -> Optional[str]:
    """First capture group of ``pattern`` in ``text``, stripped, or None."""
    m = re.search(pattern, text, flags) if isinstance(pattern, str) else pattern.search(text)
    if not m:
        return None
    value = m.group(1).strip()
    return value or None


_HOSTNAME_ERRORS = re.compile(r"invalid|error|not found|command not|unknown|permission denied|usage:", re.IGNORECASE)
_HOSTNAME_OK = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")


def sanitize_hostname(output: Optional[str]) -> Optional[str]:
    """Return the hostname printed by a device, or None if it looks like an error."""
    if not output:
        return None
    trimmed = output.strip()
    if not trimmed or "\n" in trimmed or _HOSTNAME_ERRORS.search(trimmed):
        return None
    if len(trimmed) > 63 or not _HOSTNAME_OK.match(trimmed):
        return None
    return trimmed
