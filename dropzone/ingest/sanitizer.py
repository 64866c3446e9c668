"""Turn untrusted client file names into storage-relative names."""

import os
import re
import unicodedata
from pathlib import Path
from urllib.parse import unquote

from dropzone.models.core import RejectReason, SafePath, UnsafeFileName

DEFAULT_MAX_LENGTH = 200

_DRIVE_PREFIX_RE = re.compile(r"^[A-Za-z]:")
_NON_PORTABLE_RE = re.compile(r'[<>:"|?*]')
_RESERVED_NAMES = frozenset(
    {
        "CON",
        "PRN",
        "AUX",
        "NUL",
        *(f"COM{i}" for i in range(1, 10)),
        *(f"LPT{i}" for i in range(1, 10)),
    }
)
_MAX_DECODE_ROUNDS = 4


def _decoded_forms(raw_name: str) -> list[str]:
    """The raw name plus every distinct percent-decoding of it, and their NFKC forms."""
    forms = [raw_name]
    current = raw_name
    for _ in range(_MAX_DECODE_ROUNDS):
        decoded = unquote(current, errors="replace")
        if decoded == current:
            break
        forms.append(decoded)
        current = decoded
    forms.extend(unicodedata.normalize("NFKC", form) for form in list(forms))
    return forms


def _has_control_chars(value: str) -> bool:
    return any(unicodedata.category(char) in ("Cc", "Cs") for char in value)


def _escapes_root(candidate: str) -> bool:
    """True for absolute, drive-rooted or UNC names and any `..` segment."""
    unified = candidate.replace("\\", "/")
    if unified.startswith("/") or _DRIVE_PREFIX_RE.match(unified):
        return True
    return any(segment.strip() == ".." for segment in unified.split("/"))


def _clip(text: str, max_bytes: int) -> str:
    """Longest prefix of ``text`` whose UTF-8 form fits in ``max_bytes``."""
    return text.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")


def truncate_name(name: str, max_bytes: int, marker: str = "") -> str:
    """Fit ``name`` plus ``marker`` (placed before the extension) in ``max_bytes`` UTF-8 bytes."""
    stem, suffix = os.path.splitext(name)
    budget = max_bytes - len(marker.encode("utf-8"))
    if len(suffix.encode("utf-8")) >= max_bytes // 2:
        return _clip(name, budget).rstrip(" .") + marker
    return _clip(stem, budget - len(suffix.encode("utf-8"))).rstrip(" .") + marker + suffix


def sanitize(raw_name: str | None, storage_root: Path, *, max_length: int = DEFAULT_MAX_LENGTH) -> SafePath:
    """Validate ``raw_name`` and bind it to ``storage_root``.

    Names longer than ``max_length`` UTF-8 bytes are cut down, keeping the
    extension where it is short enough.

    Raises :class:`UnsafeFileName` with ``INVALID_NAME`` for names that can
    never be stored (empty, control characters, dot names, device names) and
    ``PATH_ESCAPE`` for anything that tries to leave the storage root.
    """
    if raw_name is None or not raw_name.strip():
        raise UnsafeFileName(RejectReason.INVALID_NAME, raw_name)

    forms = _decoded_forms(raw_name)
    if any(_has_control_chars(form) for form in forms):
        raise UnsafeFileName(RejectReason.INVALID_NAME, raw_name)
    if any(_escapes_root(form) for form in forms):
        raise UnsafeFileName(RejectReason.PATH_ESCAPE, raw_name)

    # Browsers may send folder-relative names; only the last segment is kept
    name = raw_name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    if name in ("", ".", ".."):
        raise UnsafeFileName(RejectReason.INVALID_NAME, raw_name)

    name = unicodedata.normalize("NFC", name)
    name = _NON_PORTABLE_RE.sub("_", name).rstrip(" .")
    if not name or name.startswith("."):
        raise UnsafeFileName(RejectReason.INVALID_NAME, raw_name)
    if name.split(".", 1)[0].upper() in _RESERVED_NAMES:
        raise UnsafeFileName(RejectReason.INVALID_NAME, raw_name)

    if len(name.encode("utf-8")) > max_length:
        name = truncate_name(name, max_length)

    root = storage_root.resolve(strict=True)
    resolved = (root / name).resolve(strict=False)
    if resolved.parent != root:
        raise UnsafeFileName(RejectReason.PATH_ESCAPE, raw_name)

    return SafePath(root=root, name=name)
