"""Options of the ``configure`` command and evaluation of container requirements."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional, Sequence

from gpucontainer.devices import Device, DeviceSelection, DriverInfo
from gpucontainer.dsl import Comparator, compare_string, compare_version, evaluate

MAX_REQUIREMENTS = 32

_PID_MAX = 2**31 - 1


class InputError(ValueError):
    """Raised when the command line of the ``configure`` command is invalid."""


@dataclass
class ConfigureOptions:
    """Settings collected from the ``configure`` command line."""

    pid: int = 0
    rootfs: Optional[str] = None
    devices: Optional[str] = None
    requirements: list[str] = field(default_factory=list)
    ldconfig: Optional[str] = None
    container_flags: list[str] = field(default_factory=list)
    mig_config: Optional[str] = None
    mig_monitor: Optional[str] = None
    imex_channels: Optional[str] = None
    driver_opts: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Option:
    name: str
    short: Optional[str]
    takes_arg: bool


_OPTIONS = (
    _Option("pid", "p", True),
    _Option("device", "d", True),
    _Option("require", "r", True),
    _Option("ldconfig", "l", True),
    _Option("compute", "c", False),
    _Option("utility", "u", False),
    _Option("video", "v", False),
    _Option("graphics", "g", False),
    _Option("display", "D", False),
    _Option("ngx", "n", False),
    _Option("compat32", None, False),
    _Option("mig-config", None, True),
    _Option("mig-monitor", None, True),
    _Option("imex-channel", None, True),
    _Option("no-cgroups", None, False),
    _Option("no-devbind", None, False),
    _Option("no-persistenced", None, False),
    _Option("no-fabricmanager", None, False),
    _Option("no-gsp-firmware", None, False),
    _Option("no-cntlibs", None, False),
    _Option("cuda-compat-mode", None, True),
)

_BY_SHORT = {option.short: option for option in _OPTIONS if option.short}

_CAPABILITY_FLAGS = {
    "compute": "compute",
    "utility": "utility",
    "video": "video",
    "graphics": "graphics",
    "display": "display",
    "compat32": "compat32",
    "no-cgroups": "no-cgroups",
    "no-devbind": "no-devbind",
}

_DRIVER_OPTS = ("no-persistenced", "no-fabricmanager", "no-gsp-firmware")


def _join(current: Optional[str], value: str, sep: str) -> str:
    return value if current is None else f"{current}{sep}{value}"


def _parse_pid(arg: str) -> int:
    if not arg.isdigit() or not arg.isascii():
        raise InputError(f"invalid pid: {arg}")
    pid = int(arg)
    if pid > _PID_MAX:
        raise InputError(f"invalid pid: {arg}")
    return pid


def _lookup_long(name: str) -> _Option:
    for option in _OPTIONS:
        if option.name == name:
            return option
    candidates = [option for option in _OPTIONS if name and option.name.startswith(name)]
    if len(candidates) == 1:
        return candidates[0]
    if candidates:
        raise InputError(f"option '--{name}' is ambiguous")
    raise InputError(f"unrecognized option '--{name}'")


def _apply(opts: ConfigureOptions, option: _Option, arg: Optional[str], legacy_api: bool) -> None:
    name = option.name
    value = arg or ""
    match name:
        case "pid":
            opts.pid = _parse_pid(value)
        case "device":
            opts.devices = _join(opts.devices, value, ",")
        case "require":
            if legacy_api:
                if value.startswith("csv-mounts=all"):
                    opts.container_flags.append("jetpack-mount-all")
                    return
                if value.startswith("base-only"):
                    opts.container_flags.append("jetpack-base-only")
                    return
            if len(opts.requirements) >= MAX_REQUIREMENTS:
                raise InputError("too many requirements")
            opts.requirements.append(value)
        case "ldconfig":
            opts.ldconfig = value
        case "ngx":
            if not legacy_api:
                opts.container_flags.append("ngx")
        case "mig-config":
            opts.mig_config = _join(opts.mig_config, value, ",")
        case "mig-monitor":
            opts.mig_monitor = _join(opts.mig_monitor, value, ",")
        case "imex-channel":
            opts.imex_channels = _join(opts.imex_channels, value, ",")
        case "no-cntlibs":
            opts.container_flags.append("cuda-compat-mode=disabled")
        case "cuda-compat-mode":
            opts.container_flags.append(f"cuda-compat-mode={value}")
        case _ if name in _DRIVER_OPTS:
            opts.driver_opts.append(name)
        case _:
            opts.container_flags.append(_CAPABILITY_FLAGS[name])


def _option_argument(option: _Option, inline: Optional[str], rest: Iterator[str], label: str) -> Optional[str]:
    if not option.takes_arg:
        return None
    if inline:
        return inline
    value = next(rest, None)
    if value is None:
        raise InputError(f"option requires an argument -- '{label}'")
    return value


def parse_configure_args(args: Sequence[str], legacy_api: bool = False) -> ConfigureOptions:
    """Parse the arguments of the ``configure`` command (without the command name).

    ``legacy_api`` selects the behaviour for the older library interface, where
    the ``ngx`` capability is ignored and some requirements are container flags.
    """
    opts = ConfigureOptions()
    positionals: list[str] = []
    tokens = iter(args)

    for token in tokens:
        if token == "--":
            positionals.extend(tokens)
            break
        if token.startswith("--"):
            name, has_value, value = token[2:].partition("=")
            option = _lookup_long(name)
            if has_value and not option.takes_arg:
                raise InputError(f"option '--{option.name}' doesn't allow an argument")
            if option.takes_arg and not has_value:
                value = next(tokens, None)
                if value is None:
                    raise InputError(f"option '--{option.name}' requires an argument")
            _apply(opts, option, value if option.takes_arg else None, legacy_api)
        elif token.startswith("-") and token != "-":
            cluster = token[1:]
            while cluster:
                letter, cluster = cluster[0], cluster[1:]
                option = _BY_SHORT.get(letter)
                if option is None:
                    raise InputError(f"invalid option -- '{letter}'")
                value = _option_argument(option, cluster, tokens, letter)
                if option.takes_arg:
                    cluster = ""
                _apply(opts, option, value, legacy_api)
        else:
            positionals.append(token)

    for position, arg in enumerate(positionals):
        if position > 0:
            raise InputError(f"too many arguments: {arg}")
        if not arg.startswith("/") or arg == "/":
            raise InputError("invalid rootfs directory")
        opts.rootfs = arg
    if opts.rootfs is None:
        raise InputError("missing ROOTFS argument")

    if opts.pid > 0:
        opts.container_flags.append("supervised")
    else:
        opts.pid = os.getppid()
        opts.container_flags.append("standalone")
    return opts


@dataclass(frozen=True)
class _RequirementData:
    driver: Optional[DriverInfo]
    device: Optional[Device]


def check_cuda_version(data: Any, cmp: Comparator, version: str) -> bool:
    """Compare the driver's CUDA version; holds when it is unknown."""
    if data.driver is None or data.driver.cuda_version is None:
        return True
    return compare_version(data.driver.cuda_version, cmp, version)


def check_driver_version(data: Any, cmp: Comparator, version: str) -> bool:
    """Compare the kernel driver version; holds when it is unknown."""
    if data.driver is None or data.driver.nvrm_version is None:
        return True
    return compare_version(data.driver.nvrm_version, cmp, version)


def check_device_arch(data: Any, cmp: Comparator, arch: str) -> bool:
    """Compare the device architecture; holds when no device is known."""
    if data.device is None or data.device.arch is None:
        return True
    return compare_version(data.device.arch, cmp, arch)


def check_device_brand(data: Any, cmp: Comparator, brand: str) -> bool:
    """Compare the device brand; holds when no device is known."""
    if data.device is None or data.device.brand is None:
        return True
    return compare_string(data.device.brand, cmp, brand)


RULES = {
    "cuda": check_cuda_version,
    "driver": check_driver_version,
    "arch": check_device_arch,
    "brand": check_device_brand,
}


def _evaluate_all(requirements: Iterable[str], data: _RequirementData) -> None:
    for requirement in requirements:
        evaluate(requirement, data, RULES)


def check_requirements(
    requirements: Sequence[str], driver: Optional[DriverInfo], selection: DeviceSelection
) -> None:
    """Check every requirement against each selected device, or globally if none.

    Raises DslError for an invalid or unsatisfied requirement.
    """
    evaluated = False
    for gpu in selection.gpus:
        _evaluate_all(requirements, _RequirementData(driver, gpu))
        evaluated = True
    for mig in selection.migs:
        _evaluate_all(requirements, _RequirementData(driver, mig.parent))
        evaluated = True
    if not evaluated:
        _evaluate_all(requirements, _RequirementData(driver, None))