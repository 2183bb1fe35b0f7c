import pytest

from gpucontainer.devices import (
    NV_CAPS_DEVICE_PATH,
    Device,
    DeviceError,
    DeviceInfo,
    DeviceNode,
    DeviceSelection,
    MigDevice,
    matches_pci_format,
    mig_minor_devices,
    parse_imex_channels,
    select_devices,
    select_mig_config_devices,
    select_mig_monitor_devices,
)


def _make_info():
    gpu0 = Device(
        uuid="GPU-aaaa-1111",
        busid="00000000:3B:00.0",
        node=DeviceNode("/dev/nvidia0", 195, 0),
        mig_capable=True,
    )
    gpu1 = Device(
        uuid="GPU-bbbb-2222",
        busid="00000000:5E:00.0",
        node=DeviceNode("/dev/nvidia1", 195, 1),
    )
    for name in ("MIG-cccc-0", "MIG-cccc-1"):
        gpu0.mig_devices.append(MigDevice(uuid=name, parent=gpu0))
    return DeviceInfo(gpus=[gpu0, gpu1])


@pytest.fixture
def info():
    return _make_info()


@pytest.fixture
def selection(info):
    return DeviceSelection.for_info(info)


def test_for_info_sizes(info, selection):
    assert selection.max_gpus == len(info.gpus)
    assert selection.max_migs == len(info.gpus[0].mig_devices)
    assert selection.gpus == [] and selection.migs == [] and not selection.all


def test_matches_pci_format_pads(info):
    assert matches_pci_format("0:3b:0") == info.gpus[0].busid.lower()


def test_matches_pci_format_rejects_uuid():
    assert matches_pci_format("GPU-aaaa-1111") is None
    assert matches_pci_format("3") is None


def test_select_by_index(info, selection):
    select_devices("1", info, selection)
    assert selection.gpus == [info.gpus[1]]
    assert selection.migs == []


def test_select_by_uuid_case_insensitive(info, selection):
    select_devices("gpu-AAAA-1111", info, selection)
    assert selection.gpus == [info.gpus[0]]


def test_select_by_pci_bus_id(info, selection):
    select_devices("0:5e:0", info, selection)
    assert selection.gpus == [info.gpus[1]]


def test_select_mig_by_uuid_adds_parent(info, selection):
    select_devices("MIG-cccc-1", info, selection)
    assert selection.migs == [info.gpus[0].mig_devices[1]]
    assert selection.gpus == [info.gpus[0]]


def test_select_mig_by_index(info, selection):
    select_devices("0:1", info, selection)
    assert selection.migs == [info.gpus[0].mig_devices[1]]
    assert selection.gpus == [info.gpus[0]]


def test_select_all(info, selection):
    select_devices("all", info, selection)
    assert selection.all
    assert selection.gpus == info.gpus
    assert selection.migs == info.gpus[0].mig_devices


def test_duplicates_and_empty_entries(info, selection):
    select_devices(",0,,GPU-aaaa-1111,0", info, selection)
    assert selection.gpus == [info.gpus[0]]


def test_none_selects_nothing(info, selection):
    select_devices(None, info, selection)
    assert selection.gpus == [] and not selection.all


def test_unknown_device(info, selection):
    with pytest.raises(DeviceError, match="^foo: unknown device$"):
        select_devices("foo", info, selection)


def test_index_out_of_range_is_unknown(info, selection):
    with pytest.raises(DeviceError, match="unknown device"):
        select_devices("7", info, selection)


def test_exceeding_maximum(info):
    small = DeviceSelection(max_gpus=1, max_migs=0)
    with pytest.raises(DeviceError) as excinfo:
        select_devices("0,1", info, small)
    assert str(excinfo.value) == (
        "1: error adding GPU device: exceeds maximum GPU device count"
    )
    assert small.gpus == [info.gpus[0]]


def test_add_mig_limit(info):
    small = DeviceSelection(max_gpus=2, max_migs=1)
    small.add_mig(info.gpus[0].mig_devices[0])
    with pytest.raises(DeviceError, match="exceeds maximum MIG device count"):
        small.add_mig(info.gpus[0].mig_devices[1])


def test_mig_config_all_selects_capable(info, selection):
    select_devices("all", info, selection)
    target = DeviceSelection.for_info(info)
    select_mig_config_devices("all", selection, target)
    assert target.all
    assert target.gpus == [info.gpus[0]]


def test_mig_config_rejects_specific_migs(info, selection):
    select_devices("0:0", info, selection)
    target = DeviceSelection.for_info(info)
    with pytest.raises(DeviceError) as excinfo:
        select_mig_config_devices("all", selection, target)
    assert str(excinfo.value) == (
        "all: cannot enable mig-config with specific MIG devices selected"
    )


def test_mig_monitor_only_all(info, selection):
    target = DeviceSelection.for_info(info)
    with pytest.raises(DeviceError) as excinfo:
        select_mig_monitor_devices("0", selection, target)
    assert str(excinfo.value) == "0: only 'all' devices are currently supported"


def test_mig_monitor_none_is_noop(info, selection):
    target = DeviceSelection.for_info(info)
    select_mig_monitor_devices(None, selection, target)
    assert not target.all and target.gpus == []


def test_parse_imex_channels():
    assert parse_imex_channels("1,,2,3") == [1, 2, 3]
    assert parse_imex_channels(None) == []
    assert parse_imex_channels("") == []


@pytest.mark.parametrize("value", ["abc", "1048576", "2x"])
def test_parse_imex_channels_rejects(value):
    with pytest.raises(DeviceError, match=f"unsupported IMEX channel value: {value}"):
        parse_imex_channels(value)


def test_mig_minor_devices(tmp_path):
    minors = tmp_path / "mig-minors"
    minors.write_text(
        "config 1\n"
        "gpu0/gi0/access 21\n"
        "gpu1/gi0/access 30\n"
        "gpu0/gi1/ci0/access 22\n"
    )
    assert mig_minor_devices(0, str(minors)) == [
        NV_CAPS_DEVICE_PATH.format(21),
        NV_CAPS_DEVICE_PATH.format(22),
    ]
    assert mig_minor_devices(1, str(minors)) == [NV_CAPS_DEVICE_PATH.format(30)]


def test_mig_minor_devices_missing_file(tmp_path):
    with pytest.raises(DeviceError):
        mig_minor_devices(0, str(tmp_path / "absent"))