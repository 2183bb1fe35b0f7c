"""Device cgroup (v1) lookup and device whitelisting."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, TypeVar

_log = logging.getLogger(__name__)

PATH_MAX = 4096

_T = TypeVar("_T")


class CgroupError(Exception):
    """Raised when the device cgroup cannot be found or updated."""


@dataclass(frozen=True)
class DeviceRule:
    """A device cgroup access rule."""

    allow: bool
    type: str
    access: str
    major: int
    minor: int

    def __str__(self) -> str:
        return f"{self.type} {self.major}:{self.minor} {self.access}"


def get_device_cgroup_version() -> int:
    """Return the device cgroup version handled here."""
    return 1


def parse_mount_line(line: str, subsys: str) -> tuple[str, str] | None:
    """Parse a mountinfo line; return (mount point, root) of a cgroup for ``subsys``."""
    fields = line.split(" ")
    if len(fields) < 6:
        return None
    root, mount = fields[3], fields[4]
    rest = " ".join(fields[5:])
    dash = rest.find("-")
    if dash < 0:
        return None
    tail = rest[dash:].split(" ")
    if len(tail) < 4:
        return None
    fstype, options = tail[1], tail[3]

    if not (root and mount and fstype and options):
        return None
    if fstype != "cgroup" or subsys not in options:
        return None
    if len(root) >= PATH_MAX or root.startswith("/.."):
        return None
    return mount, root


def parse_cgroup_line(line: str, prefix: str, subsys: str) -> str | None:
    """Parse a /proc/PID/cgroup line; return the cgroup path relative to ``prefix``."""
    parts = line.split(":", 2)
    if len(parts) < 3:
        return None
    _, controllers, path = parts
    if not path or not controllers:
        return None
    if subsys not in controllers:
        return None
    if len(path) >= PATH_MAX or path.startswith("/.."):
        return None
    if prefix != "/" and path.startswith(prefix):
        path = path[len(prefix):]
    return path


def _parse_proc_file(path: str, parse: Callable[[str], _T | None], subsys: str) -> _T:
    try:
        with open(path, encoding="utf-8", errors="surrogateescape") as stream:
            for raw in stream:
                line = raw.split("\n", 1)[0]
                if not line:
                    continue
                result = parse(line)
                if result is not None:
                    return result
    except OSError as exc:
        raise CgroupError(f"read error: {path}: {exc.strerror or exc}") from exc
    raise CgroupError(f"cgroup subsystem {subsys} not found")


def find_device_cgroup_path(pid: int, container_pid: int, prefix: str = "") -> str:
    """Locate the devices cgroup directory of ``container_pid``.

    The cgroup mount is looked up in the mount table of ``pid``; all /proc
    paths, and the result, are taken relative to ``prefix``.
    """
    subsys = "devices"
    mounts = f"{prefix}/proc/{pid}/mountinfo"
    mount, root = _parse_proc_file(mounts, lambda line: parse_mount_line(line, subsys), subsys)
    cgroups = f"{prefix}/proc/{container_pid}/cgroup"
    path = _parse_proc_file(cgroups, lambda line: parse_cgroup_line(line, root, subsys), subsys)
    return f"{prefix}{mount}{path}"


def setup_device_cgroup(dev_cg: str, major: int, minor: int) -> None:
    """Allow read/write access to character device ``major:minor`` in ``dev_cg``."""
    rule = DeviceRule(allow=True, type="c", access="rw", major=major, minor=minor)
    path = os.path.join(dev_cg, "devices.allow")
    _log.info("whitelisting device node %u:%u", major, minor)
    try:
        with open(path, "a", encoding="ascii") as stream:
            stream.write(str(rule))
            stream.flush()
    except OSError as exc:
        raise CgroupError(f"write error: {path}") from exc