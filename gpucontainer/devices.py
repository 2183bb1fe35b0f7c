"""GPU and MIG device descriptions and selection of devices from user input."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

NV_CAPS_DEVICE_PATH = "/dev/nvidia-caps/nvidia-cap{}"

IMEX_CHANNEL_LIMIT = 1 << 20

_UINTMAX_MAX = 2**64 - 1
_UINT_MAX = 2**32 - 1

_HEX_DOMAIN = r"\s*[+-]?(?:0[xX])?[0-9a-fA-F]+"
_PCI_FORMAT = re.compile(
    r"\s*([+-]?)(?:0[xX])?([0-9a-fA-F]+):\s*([0-9a-fA-F]{1,2}):\s*([0-9a-fA-F]{1,2})"
)
_DECIMAL = re.compile(r"\s*([+-]?)(\d+)")
_MIG_INDEX = re.compile(r"\s*([+-]?)(\d+)(?!\d):\s*([+-]?)(\d+)")
_MIG_MINOR_LINE = re.compile(r"gpu\s*([+-]?)(\d+)(?!\d)\s*(\S+)\s+([+-]?)(\d+)")


class DeviceError(ValueError):
    """Raised when a device string cannot be resolved or selected."""


@dataclass
class DeviceNode:
    """A device node on the host."""

    path: Optional[str]
    major: int = 0
    minor: int = 0


@dataclass(eq=False)
class MigDevice:
    """A MIG device carved out of a GPU."""

    uuid: str
    parent: Optional["Device"] = field(default=None, repr=False)
    gi_caps_path: Optional[str] = None
    ci_caps_path: Optional[str] = None


@dataclass(eq=False)
class Device:
    """A physical GPU."""

    uuid: str
    busid: str
    node: DeviceNode = field(default_factory=lambda: DeviceNode(None))
    model: Optional[str] = None
    brand: Optional[str] = None
    arch: Optional[str] = None
    mig_capable: bool = False
    mig_caps_path: Optional[str] = None
    mig_devices: list[MigDevice] = field(default_factory=list)


@dataclass
class DeviceInfo:
    """The GPUs detected on the host."""

    gpus: list[Device] = field(default_factory=list)


@dataclass
class DriverInfo:
    """The driver components detected on the host."""

    nvrm_version: Optional[str] = None
    cuda_version: Optional[str] = None
    devs: list[DeviceNode] = field(default_factory=list)
    bins: list[str] = field(default_factory=list)
    libs: list[str] = field(default_factory=list)
    libs32: list[str] = field(default_factory=list)
    ipcs: list[str] = field(default_factory=list)
    firmwares: list[str] = field(default_factory=list)


@dataclass
class DeviceSelection:
    """A bounded set of selected GPUs and MIG devices, without duplicates."""

    max_gpus: int = 0
    max_migs: int = 0
    all: bool = False
    gpus: list[Device] = field(default_factory=list)
    migs: list[MigDevice] = field(default_factory=list)

    @classmethod
    def for_info(cls, info: DeviceInfo) -> "DeviceSelection":
        """Create an empty selection sized for every device in ``info``."""
        return cls(
            max_gpus=len(info.gpus),
            max_migs=sum(len(gpu.mig_devices) for gpu in info.gpus),
        )

    def add_gpu(self, gpu: Device) -> None:
        """Add ``gpu`` unless it is already selected."""
        if any(selected is gpu for selected in self.gpus):
            return
        if len(self.gpus) + 1 > self.max_gpus:
            raise DeviceError("exceeds maximum GPU device count")
        self.gpus.append(gpu)

    def add_mig(self, mig: MigDevice) -> None:
        """Add ``mig`` unless it is already selected."""
        if any(selected is mig for selected in self.migs):
            return
        if len(self.migs) + 1 > self.max_migs:
            raise DeviceError("exceeds maximum MIG device count")
        self.migs.append(mig)


def _to_unsigned(sign: str, digits: str, limit: int) -> int:
    value = int(digits)
    if value > limit:
        return limit
    if sign == "-":
        return (-value) % (limit + 1)
    return value


def _parse_whole_unsigned(text: str) -> Optional[int]:
    match = _DECIMAL.fullmatch(text)
    if match is None:
        return None
    return _to_unsigned(match.group(1), match.group(2), _UINTMAX_MAX)


def matches_pci_format(gpu: str) -> Optional[str]:
    """Return ``gpu`` as a zero-padded PCI bus id, or None if it is not one."""
    match = _PCI_FORMAT.match(gpu)
    if match is None:
        return None
    sign, domain, bus, device = match.groups()
    domain_id = _to_unsigned(sign, str(int(domain, 16)), _UINT_MAX) & _UINT_MAX
    return f"{domain_id:08x}:{int(bus, 16):02x}:{int(device, 16):02x}.0"


def _split(devs: Optional[str]) -> Iterable[str]:
    if devs is None:
        return ()
    return (dev for dev in devs.split(",") if dev)


def _select_all(available: DeviceInfo, selected: DeviceSelection) -> None:
    try:
        for gpu in available.gpus:
            selected.add_gpu(gpu)
    except DeviceError as exc:
        raise DeviceError(f"error adding all GPU devices: {exc}") from exc
    try:
        for gpu in available.gpus:
            for mig in gpu.mig_devices:
                selected.add_mig(mig)
    except DeviceError as exc:
        raise DeviceError(f"error adding all MIG devices: {exc}") from exc


def _find_gpu(dev: str, available: DeviceInfo) -> Optional[Device]:
    if dev[:4].upper() == "GPU-" and len(dev) > 4:
        for gpu in available.gpus:
            if len(gpu.uuid) == len(dev) and gpu.uuid.lower() == dev.lower():
                return gpu

    busid = matches_pci_format(dev)
    if busid is not None:
        for gpu in available.gpus:
            if gpu.busid[: len(busid)].lower() == busid.lower():
                return gpu

    index = _parse_whole_unsigned(dev)
    if index is not None and index < _UINTMAX_MAX and index < len(available.gpus):
        return available.gpus[index]
    return None


def _find_mig(dev: str, available: DeviceInfo) -> Optional[MigDevice]:
    if dev[:4].upper() == "MIG-" and len(dev) > 4:
        for gpu in available.gpus:
            for mig in gpu.mig_devices:
                if len(mig.uuid) == len(dev) and mig.uuid.lower() == dev.lower():
                    return mig

    match = _MIG_INDEX.match(dev)
    if match is not None:
        gpu_index = _to_unsigned(match.group(1), match.group(2), _UINTMAX_MAX)
        mig_index = _to_unsigned(match.group(3), match.group(4), _UINTMAX_MAX)
        if gpu_index < len(available.gpus):
            gpu = available.gpus[gpu_index]
            if mig_index < len(gpu.mig_devices):
                return gpu.mig_devices[mig_index]
    return None


def _select_one(dev: str, available: DeviceInfo, selected: DeviceSelection) -> None:
    gpu = _find_gpu(dev, available)
    if gpu is not None:
        try:
            selected.add_gpu(gpu)
        except DeviceError as exc:
            raise DeviceError(f"error adding GPU device: {exc}") from exc
        return

    mig = _find_mig(dev, available)
    if mig is not None:
        try:
            selected.add_mig(mig)
        except DeviceError as exc:
            raise DeviceError(f"error adding MIG device: {exc}") from exc
        if mig.parent is not None:
            try:
                selected.add_gpu(mig.parent)
            except DeviceError as exc:
                raise DeviceError(f"error adding GPU device: {exc}") from exc
        return

    raise DeviceError("unknown device")


def select_devices(
    devs: Optional[str], available: DeviceInfo, selected: DeviceSelection
) -> None:
    """Select the devices named in the comma separated ``devs`` string.

    Each entry is ``all``, a GPU UUID, a PCI bus id, a GPU index, a MIG UUID
    or a ``GPU:MIG`` index pair.
    """
    for dev in _split(devs):
        try:
            if dev.lower() == "all":
                _select_all(available, selected)
                selected.all = True
                break
            _select_one(dev, available, selected)
        except DeviceError as exc:
            raise DeviceError(f"{dev}: {exc}") from exc


def _select_mig_capable(
    feature: str, devs: Optional[str], visible: DeviceSelection, selected: DeviceSelection
) -> None:
    for dev in _split(devs):
        try:
            if dev.lower() != "all":
                raise DeviceError("only 'all' devices are currently supported")
            if not visible.all and visible.migs:
                raise DeviceError(
                    f"cannot enable {feature} with specific MIG devices selected"
                )
            for gpu in visible.gpus:
                if gpu.mig_capable:
                    selected.add_gpu(gpu)
            for mig in visible.migs:
                if mig.parent is not None and mig.parent.mig_capable:
                    selected.add_gpu(mig.parent)
            selected.all = True
            break
        except DeviceError as exc:
            raise DeviceError(f"{dev}: {exc}") from exc


def select_mig_config_devices(
    devs: Optional[str], visible: DeviceSelection, selected: DeviceSelection
) -> None:
    """Select the visible MIG-capable GPUs whose MIG configuration is exposed."""
    _select_mig_capable("mig-config", devs, visible, selected)


def select_mig_monitor_devices(
    devs: Optional[str], visible: DeviceSelection, selected: DeviceSelection
) -> None:
    """Select the visible MIG-capable GPUs whose MIG monitoring is exposed."""
    _select_mig_capable("mig-monitor", devs, visible, selected)


def parse_imex_channels(chans: Optional[str]) -> list[int]:
    """Parse a comma separated list of IMEX channel ids."""
    channels = []
    for chan in _split(chans):
        value = _parse_whole_unsigned(chan)
        if value is None or value >= IMEX_CHANNEL_LIMIT:
            raise DeviceError(f"unsupported IMEX channel value: {chan}")
        channels.append(value)
    return channels


def mig_minor_devices(gpu_minor: int, minors_file: str) -> list[str]:
    """Return the capability device paths listed for ``gpu_minor`` in ``minors_file``."""
    paths = []
    try:
        with open(minors_file, encoding="utf-8", errors="surrogateescape") as stream:
            for line in stream:
                match = _MIG_MINOR_LINE.match(line)
                if match is None:
                    continue
                minor = _to_unsigned(match.group(1), match.group(2), _UINT_MAX)
                if minor != gpu_minor:
                    continue
                mig_minor = _to_unsigned(match.group(4), match.group(5), _UINT_MAX)
                paths.append(NV_CAPS_DEVICE_PATH.format(mig_minor))
    except OSError as exc:
        raise DeviceError(f"cannot read {minors_file}: {exc.strerror or exc}") from exc
    return paths