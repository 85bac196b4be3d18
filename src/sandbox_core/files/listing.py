"""Parsers for shell output used by the sandboxed file adapter.

``ls``, ``stat`` and ``find`` output is not a stable interface: it varies by
coreutils/busybox version, locale and file names. Commands are run with
``LC_ALL=C`` and machine-oriented formats where possible, and every parser
here skips lines it does not understand instead of failing the whole call.
"""

import posixpath
import re

from sandbox_core.files.paths import clean_name
from sandbox_core.protocols.files import FileInfo

MONTHS = {
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
}

_PERMISSIONS = re.compile(r"^[-dlcbpsD][-rwxsStTl]{9}[.+@]?$")
_TOKEN = re.compile(r"\S+")
_CLOCK_OR_YEAR = re.compile(r"^(\d{1,2}:\d{2}|\d{4})$")
_EPOCH = re.compile(r"^\d+(\.\d+)?$")

FIND_TYPES = {"d": "directory", "f": "file", "l": "symlink"}


def type_from_mode(permissions: str) -> str:
    """Entry type from the first character of an ``ls``-style mode string."""
    if permissions.startswith("d"):
        return "directory"
    if permissions.startswith("l"):
        return "symlink"
    if permissions.startswith("-"):
        return "file"
    return "other"


def type_from_description(description: str) -> str:
    """Entry type from ``stat -c %F`` output (e.g. "regular empty file")."""
    if "directory" in description:
        return "directory"
    if "symbolic link" in description:
        return "symlink"
    if "regular" in description:
        return "file"
    return "other"


def _join(parent: str, name: str) -> str:
    if parent in ("", "."):
        return name
    return posixpath.join(parent, name)


def _parse_ls_line(line: str, parent: str) -> FileInfo | None:
    tokens = list(_TOKEN.finditer(line))
    if len(tokens) < 6:
        return None

    permissions = tokens[0].group()
    if not _PERMISSIONS.match(permissions):
        return None

    name_index = None
    size_index = None
    modified = None

    # --time-style=+%s: "<perms> <links> <owner> <group> <size> <epoch> <name>"
    epoch_index = 6 if tokens[4].group().endswith(",") else 5
    if (
        epoch_index + 1 < len(tokens)
        and _EPOCH.match(tokens[epoch_index].group())
        and tokens[epoch_index - 1].group() not in MONTHS
    ):
        size_index = epoch_index - 1
        name_index = epoch_index + 1
        modified = int(float(tokens[epoch_index].group()))

    # Classic date: "<Mon> <day> <HH:MM|YYYY>"
    if name_index is None:
        for i in range(3, len(tokens) - 3):
            if (
                tokens[i].group() in MONTHS
                and tokens[i + 1].group().isdigit()
                and _CLOCK_OR_YEAR.match(tokens[i + 2].group())
            ):
                name_index = i + 3
                size_index = i - 1
                break

    if name_index is None or name_index >= len(tokens):
        return None

    raw_size = tokens[size_index].group()
    if tokens[size_index - 1].group().endswith(","):
        size = 0  # device node: "major, minor"
    else:
        size = int(raw_size) if raw_size.isdigit() else 0

    entry_type = type_from_mode(permissions)
    name = clean_name(line[tokens[name_index].start():].rstrip("\r\n"))
    target = None
    if entry_type == "symlink" and " -> " in name:
        name, target = name.split(" -> ", 1)

    if not name or name in (".", ".."):
        return None

    return FileInfo(
        name=name,
        path=_join(parent, name),
        type=entry_type,
        size=size,
        modified=modified,
        permissions=permissions[:10],
        target=target,
    )


def parse_ls_output(text: str, parent: str = ".") -> list[FileInfo]:
    """Parse ``ls -la`` output into entries.

    ``total`` lines, ``.``/``..`` and lines that do not look like a long
    listing are skipped. Names containing spaces are kept intact, symlinks
    are split on `` -> `` and device nodes (``major, minor`` sizes) report
    size 0.

    Args:
        text: Output of ``LC_ALL=C ls -la``
        parent: Workspace-relative directory that was listed

    Returns:
        Parsed entries in output order
    """
    entries = []
    for line in text.splitlines():
        if not line.strip() or line.startswith("total "):
            continue
        entry = _parse_ls_line(line, parent)
        if entry is not None:
            entries.append(entry)
    return entries


def parse_stat_output(text: str, name: str, path: str) -> FileInfo | None:
    """Parse ``stat -L -c '%F|%s|%Y|%A'`` output."""
    line = text.strip().splitlines()[-1] if text.strip() else ""
    parts = line.split("|")
    if len(parts) != 4:
        return None
    description, size, modified, permissions = parts
    try:
        return FileInfo(
            name=name,
            path=path,
            type=type_from_description(description),
            size=int(size),
            modified=int(float(modified)),
            permissions=permissions.strip() or None,
        )
    except ValueError:
        return None


def parse_find_output(data: bytes, parent: str) -> list[FileInfo]:
    """Parse NUL-separated ``find -printf '%y|%s|%T@|%M|%P\\0'`` records.

    The record with an empty relative path is the starting directory itself
    and is returned with path ``parent``. Malformed records are ignored.

    Args:
        data: Raw find output
        parent: Workspace-relative path find was started in
    """
    entries = []
    for record in data.split(b"\0"):
        if not record:
            continue
        parts = record.decode("utf-8", errors="replace").split("|", 4)
        if len(parts) != 5:
            continue
        kind, size, modified, permissions, relative = parts
        relative = clean_name(relative.lstrip("\n"))
        try:
            size_value = int(size)
            modified_value = int(modified.partition(".")[0])
        except ValueError:
            continue
        entries.append(
            FileInfo(
                name=posixpath.basename(relative or parent) or ".",
                path=_join(parent, relative) if relative else parent,
                type=FIND_TYPES.get(kind.strip(), "other"),
                size=size_value,
                modified=modified_value,
                permissions=permissions or None,
            )
        )
    return entries
