"""Selection of CUDA forward-compatibility libraries against the driver version."""

from __future__ import annotations

import enum
import logging
from typing import Iterable, Sequence

_log = logging.getLogger(__name__)

_DIGITS = "0123456789"


class CompatError(Exception):
    """Raised when the compatibility library directory cannot be determined."""


class CompatMode(enum.Enum):
    """How CUDA forward compatibility is provided to a container."""

    MOUNT = "mount"
    LDCONFIG = "ldconfig"
    DISABLED = "disabled"


def _basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def _dirname(path: str) -> str:
    stripped = path.rstrip("/")
    if not stripped:
        return "/" if path else "."
    if "/" not in stripped:
        return "."
    return stripped[: stripped.rfind("/")].rstrip("/") or "/"


def _compare_prefix(nvrm_version: str, major: str) -> int:
    width = len(major) - len(major.lstrip(_DIGITS))
    left, right = nvrm_version[:width], major[:width]
    return (left > right) - (left < right)


def filter_by_major_version(
    libs: Iterable[str], nvrm_version: str, allow_lower_major_versions: bool
) -> list[str]:
    """Drop libraries whose major version the driver already provides.

    Without ``allow_lower_major_versions`` a library is dropped when the
    driver's major version is greater than or equal to its own; with it, only
    libraries of exactly the driver's major version are dropped.
    """
    kept = []
    for path in libs:
        name = _basename(path)
        _, found, major = name.partition(".so.")
        if found:
            order = _compare_prefix(nvrm_version, major)
            exclude = order == 0 if allow_lower_major_versions else order >= 0
            if exclude:
                continue
        kept.append(path)
    return kept


def compat_library_dir(paths: Sequence[str]) -> str | None:
    """Return the single directory holding all ``paths``, or None if there are none."""
    directories = {_dirname(path) for path in paths}
    if not directories:
        return None
    if len(directories) > 1:
        raise CompatError(
            "compat libraries are spread over several directories: "
            + ", ".join(sorted(directories))
        )
    return directories.pop()


def update_compat_libraries(
    libs: Sequence[str], nvrm_version: str, mode: CompatMode
) -> tuple[list[str], str | None]:
    """Filter the compat libraries for ``mode``.

    Returns the libraries to use and, in ldconfig mode, the directory that
    holds them.
    """
    if mode is CompatMode.DISABLED or not libs:
        return list(libs), None

    filtered = filter_by_major_version(libs, nvrm_version, mode is CompatMode.MOUNT)
    if mode is not CompatMode.LDCONFIG:
        return filtered, None

    compat_dir = compat_library_dir(filtered)
    if compat_dir is not None:
        _log.info("setting CUDA Forward Compatibility directory to %s", compat_dir)
    return filtered, compat_dir