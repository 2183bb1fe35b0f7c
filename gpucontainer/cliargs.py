"""Command line parsing for the top-level tool and its ``info`` and ``list`` commands."""

from __future__ import annotations

import dataclasses
import enum
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence

from gpucontainer.configure import ConfigureOptions, parse_configure_args
from gpucontainer.devices import DeviceInfo, DriverInfo

COMMANDS = ("info", "list", "configure")

_ID_MAX = 2**32 - 1
_UGID = re.compile(r"([0-9]+)(?::([0-9]+))?")


class UsageError(ValueError):
    """Raised when the command line cannot be parsed."""


@dataclass
class Context:
    """Everything gathered from the command line."""

    uid: int = -1
    gid: int = -1
    root: Optional[str] = None
    ldcache: Optional[str] = None
    load_kmods: bool = False
    no_pivot: bool = False
    init_flags: list[str] = field(default_factory=list)
    debug_file: Optional[str] = None
    command: Optional[str] = None

    csv_output: bool = False

    compat32: bool = False
    list_bins: bool = False
    list_libs: bool = False
    list_ipcs: bool = False
    list_firmwares: bool = False
    devices: Optional[str] = None
    mig_config: Optional[str] = None
    mig_monitor: Optional[str] = None
    imex_channels: Optional[str] = None
    driver_opts: list[str] = field(default_factory=list)

    configure: Optional[ConfigureOptions] = None


class _Arg(enum.Enum):
    NONE = enum.auto()
    REQUIRED = enum.auto()
    OPTIONAL = enum.auto()


@dataclass(frozen=True)
class _Option:
    name: str
    short: Optional[str]
    arg: _Arg = _Arg.NONE


_MAIN_OPTIONS = (
    _Option("debug", "d", _Arg.REQUIRED),
    _Option("load-kmods", "k"),
    _Option("no-pivot", "n"),
    _Option("user", "u", _Arg.OPTIONAL),
    _Option("root", "r", _Arg.REQUIRED),
    _Option("ldcache", "l", _Arg.REQUIRED),
    _Option("no-create-imex-channels", None),
)

_INFO_OPTIONS = (_Option("csv", None),)

_LIST_OPTIONS = (
    _Option("device", "d", _Arg.REQUIRED),
    _Option("libraries", "l"),
    _Option("binaries", "b"),
    _Option("ipcs", "i"),
    _Option("firmwares", "f"),
    _Option("compat32", None),
    _Option("mig-config", None, _Arg.REQUIRED),
    _Option("mig-monitor", None, _Arg.REQUIRED),
    _Option("imex-channel", None, _Arg.REQUIRED),
    _Option("no-persistenced", None),
    _Option("no-fabricmanager", None),
    _Option("no-gsp-firmware", None),
)


def _lookup_long(options: Sequence[_Option], name: str) -> _Option:
    for option in options:
        if option.name == name:
            return option
    candidates = [option for option in options if name and option.name.startswith(name)]
    if len(candidates) == 1:
        return candidates[0]
    if candidates:
        raise UsageError(f"option '--{name}' is ambiguous")
    raise UsageError(f"unrecognized option '--{name}'")


def _scan(
    args: Sequence[str], options: Sequence[_Option], in_order: bool
) -> tuple[list[tuple[_Option, Optional[str]]], list[str]]:
    """Split ``args`` into recognised options and the remaining arguments.

    With ``in_order`` scanning stops at the first non-option argument, which
    is returned together with everything after it.
    """
    by_short = {option.short: option for option in options if option.short}
    parsed: list[tuple[_Option, Optional[str]]] = []
    rest: list[str] = []
    tokens: Iterator[str] = iter(args)

    for token in tokens:
        if token == "--":
            rest.extend(tokens)
            break
        if token.startswith("--"):
            name, has_value, value = token[2:].partition("=")
            option = _lookup_long(options, name)
            if option.arg is _Arg.NONE:
                if has_value:
                    raise UsageError(f"option '--{option.name}' doesn't allow an argument")
                parsed.append((option, None))
            elif option.arg is _Arg.OPTIONAL:
                parsed.append((option, value if has_value else None))
            else:
                if not has_value:
                    following = next(tokens, None)
                    if following is None:
                        raise UsageError(f"option '--{option.name}' requires an argument")
                    value = following
                parsed.append((option, value))
        elif token.startswith("-") and token != "-":
            cluster = token[1:]
            while cluster:
                letter, cluster = cluster[0], cluster[1:]
                option = by_short.get(letter)
                if option is None:
                    raise UsageError(f"invalid option -- '{letter}'")
                if option.arg is _Arg.NONE:
                    parsed.append((option, None))
                    continue
                if cluster:
                    parsed.append((option, cluster))
                elif option.arg is _Arg.OPTIONAL:
                    parsed.append((option, None))
                else:
                    following = next(tokens, None)
                    if following is None:
                        raise UsageError(f"option requires an argument -- '{letter}'")
                    parsed.append((option, following))
                cluster = ""
        else:
            rest.append(token)
            if in_order:
                rest.extend(tokens)
                break
    return parsed, rest


def _join(current: Optional[str], value: str, sep: str) -> str:
    return value if current is None else f"{current}{sep}{value}"


def parse_ugid(arg: str) -> tuple[int, Optional[int]]:
    """Parse ``UID[:GID]``; the group is None when it is not given."""
    match = _UGID.fullmatch(arg)
    if match is None:
        raise UsageError(f"invalid user: {arg}")
    uid = int(match.group(1))
    gid = None if match.group(2) is None else int(match.group(2))
    if uid >= _ID_MAX or (gid is not None and gid >= _ID_MAX):
        raise UsageError(f"invalid user: {arg}")
    return uid, gid


def parse_info_args(args: Sequence[str]) -> Context:
    """Parse the arguments of the ``info`` command (without the command name)."""
    parsed, rest = _scan(args, _INFO_OPTIONS, in_order=False)
    if rest:
        raise UsageError(f"too many arguments: {rest[0]}")
    ctx = Context(command="info")
    for option, _ in parsed:
        if option.name == "csv":
            ctx.csv_output = True
    return ctx


def parse_list_args(args: Sequence[str]) -> Context:
    """Parse the arguments of the ``list`` command (without the command name).

    Without arguments, or with a single ``--imex-channel=ID`` argument, every
    component of every device is listed.
    """
    parsed, rest = _scan(args, _LIST_OPTIONS, in_order=False)
    if rest:
        raise UsageError(f"too many arguments: {rest[0]}")
    ctx = Context(command="list")
    for option, value in parsed:
        arg = value or ""
        match option.name:
            case "device":
                ctx.devices = _join(ctx.devices, arg, ",")
            case "libraries":
                ctx.list_libs = True
            case "binaries":
                ctx.list_bins = True
            case "ipcs":
                ctx.list_ipcs = True
            case "firmwares":
                ctx.list_firmwares = True
            case "compat32":
                ctx.compat32 = True
            case "mig-config":
                ctx.mig_config = _join(ctx.mig_config, arg, ",")
            case "mig-monitor":
                ctx.mig_monitor = _join(ctx.mig_monitor, arg, ",")
            case "imex-channel":
                ctx.imex_channels = _join(ctx.imex_channels, arg, ",")
            case "no-gsp-firmware":
                ctx.driver_opts.append(option.name)
                ctx.list_firmwares = False
            case _:
                ctx.driver_opts.append(option.name)

    if not args or (len(args) == 1 and ctx.imex_channels is not None):
        ctx.devices = "all"
        ctx.mig_config = None
        ctx.mig_monitor = None
        ctx.compat32 = True
        ctx.list_libs = True
        ctx.list_bins = True
        ctx.list_ipcs = True
        ctx.list_firmwares = True
    return ctx


def parse_args(argv: Optional[Sequence[str]] = None, legacy_api: bool = False) -> Context:
    """Parse a full command line (without the program name).

    Global options come first, then a command and its own arguments.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    parsed, rest = _scan(args, _MAIN_OPTIONS, in_order=True)

    settings: dict[str, object] = {"init_flags": []}
    for option, value in parsed:
        match option.name:
            case "debug":
                settings["debug_file"] = value
            case "load-kmods":
                settings["load_kmods"] = True
                settings["init_flags"].append("load-kmods")  # type: ignore[union-attr]
            case "no-pivot":
                settings["no_pivot"] = True
            case "user":
                if value is not None:
                    uid, gid = parse_ugid(value)
                    settings["uid"] = uid
                    if gid is not None:
                        settings["gid"] = gid
                else:
                    settings["uid"] = os.geteuid()
                    settings["gid"] = os.getegid()
            case "root":
                settings["root"] = value
            case "ldcache":
                settings["ldcache"] = value
            case "no-create-imex-channels":
                settings["init_flags"].append("no-create-imex-channels")  # type: ignore[union-attr]

    if not rest:
        raise UsageError("missing command")
    command, command_args = rest[0], rest[1:]
    if command == "info":
        ctx = parse_info_args(command_args)
    elif command == "list":
        ctx = parse_list_args(command_args)
    elif command == "configure":
        ctx = Context(command="configure")
        ctx.configure = parse_configure_args(command_args, legacy_api)
    else:
        raise UsageError(f"unknown command: {command}")
    return dataclasses.replace(ctx, **settings)


def _text(value: Optional[str]) -> str:
    return "(null)" if value is None else value


def format_info(driver: DriverInfo, info: DeviceInfo, csv_output: bool = False) -> str:
    """Render the driver and device report of the ``info`` command."""
    lines: list[str] = []
    if csv_output:
        lines.append("NVRM version,CUDA version")
        lines.append(f"{_text(driver.nvrm_version)},{_text(driver.cuda_version)}")
        lines.append("")
        lines.append("Device Index,Device Minor,Model,Brand,GPU UUID,Bus Location,Architecture")
        for index, gpu in enumerate(info.gpus):
            lines.append(
                ",".join(
                    [
                        str(index),
                        str(gpu.node.minor),
                        _text(gpu.model),
                        _text(gpu.brand),
                        _text(gpu.uuid),
                        _text(gpu.busid),
                        _text(gpu.arch),
                    ]
                )
            )
    else:
        lines.append(f"{'NVRM version:':<15} {_text(driver.nvrm_version)}")
        lines.append(f"{'CUDA version:':<15} {_text(driver.cuda_version)}")
        for index, gpu in enumerate(info.gpus):
            lines.append("")
            for label, value in (
                ("Device Index:", str(index)),
                ("Device Minor:", str(gpu.node.minor)),
                ("Model:", _text(gpu.model)),
                ("Brand:", _text(gpu.brand)),
                ("GPU UUID:", _text(gpu.uuid)),
                ("Bus Location:", _text(gpu.busid)),
                ("Architecture:", _text(gpu.arch)),
            ):
                lines.append(f"{label:<15} {value}")
    return "\n".join(lines) + "\n"