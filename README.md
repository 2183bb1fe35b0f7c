# gpucontainer

Building blocks for setting up a Linux container with GPU support: choosing
which GPUs and MIG devices a container sees, checking a container's driver and
CUDA requirements, granting device access through the cgroup v1 `devices`
controller, narrowing the list of CUDA forward-compatibility libraries, and
parsing the command lines of the `info`, `list` and `configure` commands.

Python 3.10 or later, no third-party dependencies.

## Modules

### `gpucontainer.dsl`

The requirement language. `evaluate(predicate, data, rules)` checks a
predicate such as `"cuda>=11.0,brand=tesla cuda>=12.0"`: space-separated
alternatives, each a comma-separated list of conditions that must all hold.
`rules` maps a name (matched case-insensitively) to a callable
`rule(data, comparator, value)` returning a bool. Malformed expressions and
unknown names raise `DslError("invalid expression")`; an unmet predicate
raises `DslError("unsatisfied condition: ...")` naming its first alternative.

`compare_version(v1, cmp, v2)` compares dotted numeric versions, ignoring
trailing zero components, and raises `DslError` for anything that is not
digits and dots. `compare_string(s1, cmp, s2)` compares case-insensitively
and supports only `=` and `!=`. `Comparator` names the operators `=`, `!=`,
`<`, `<=`, `>`, `>=`.

```python
from gpucontainer.dsl import Comparator, compare_string, compare_version

compare_version("11.2", Comparator.GREATER_EQUAL, "11.0")   # True
compare_version("450.80", Comparator.LESS, "450.80.02")     # True
compare_version("11", Comparator.EQUAL, "11.0.0")           # True
compare_string("Tesla", Comparator.EQUAL, "tesla")          # True
```

### `gpucontainer.compat`

- `filter_by_major_version(libs, nvrm_version, allow_lower_major_versions)`
  drops `*.so.<major>` libraries whose major version the driver already
  provides (or, with `allow_lower_major_versions`, only those of exactly the
  driver's major version).
- `compat_library_dir(paths)` returns the one directory shared by all paths,
  `None` for no paths, and raises `CompatError` if they are spread over
  several directories.
- `update_compat_libraries(libs, nvrm_version, mode)` applies a `CompatMode`
  (`MOUNT`, `LDCONFIG`, `DISABLED`) and returns `(libraries, directory)`; the
  directory is only set in `LDCONFIG` mode.

### `gpucontainer.cgroup`

- `parse_mount_line(line, subsys)` and `parse_cgroup_line(line, prefix, subsys)`
  parse single lines of `/proc/<pid>/mountinfo` and `/proc/<pid>/cgroup`.
- `find_device_cgroup_path(pid, container_pid, prefix="")` locates the devices
  cgroup directory of `container_pid`, using the mount table of `pid`, with
  every path taken under `prefix`.
- `setup_device_cgroup(dev_cg, major, minor)` appends the `DeviceRule`
  `c <major>:<minor> rw` to `devices.allow` in that directory.
- `get_device_cgroup_version()` returns `1`.

Errors raise `CgroupError`.

### `gpucontainer.devices`

Data classes for the host's devices (`DeviceNode`, `Device`, `MigDevice`,
`DeviceInfo`, `DriverInfo`) and a bounded, duplicate-free `DeviceSelection`
(`DeviceSelection.for_info`, `add_gpu`, `add_mig`).

- `select_devices(devs, available, selected)` resolves a comma-separated
  string of `all`, GPU UUIDs (`GPU-...`), PCI bus IDs, GPU indexes, MIG UUIDs
  (`MIG-...`) and `<gpu>:<mig>` index pairs. Selecting a MIG device also
  selects its parent GPU.
- `select_mig_config_devices` and `select_mig_monitor_devices` accept only
  `all` and select the MIG-capable GPUs among the visible ones.
- `matches_pci_format(gpu)` returns a normalised bus ID such as
  `00000000:01:00.0`, or `None`.
- `parse_imex_channels(chans)` parses channel IDs below 2**20.
- `mig_minor_devices(gpu_minor, minors_file)` lists the
  `/dev/nvidia-caps/nvidia-cap<N>` paths recorded for a GPU minor.

Errors raise `DeviceError`.

```python
from gpucontainer.devices import Device, DeviceInfo, DeviceSelection, select_devices

info = DeviceInfo(gpus=[Device(uuid="GPU-placeholder-0", busid="00000000:01:00.0")])
selection = DeviceSelection.for_info(info)
select_devices("0", info, selection)
selection.gpus[0].busid   # '00000000:01:00.0'
```

### `gpucontainer.configure`

`parse_configure_args(args, legacy_api=False)` parses the `configure` command's
options and its `ROOTFS` argument into `ConfigureOptions`, raising
`InputError`. Without `--pid` the parent process ID is used and the
`standalone` flag is set; with it, `supervised`.

`check_requirements(requirements, driver, selection)` evaluates every
requirement with the rules `cuda`, `driver`, `arch` and `brand` (`RULES`)
against each selected GPU and MIG parent, or once with no device when nothing
is selected. Unknown values count as satisfied.

```python
from gpucontainer.configure import check_requirements
from gpucontainer.devices import DeviceSelection, DriverInfo

check_requirements(["cuda>=11.0"], DriverInfo(cuda_version="12.2"), DeviceSelection())
```

### `gpucontainer.cliargs`

`parse_args(argv=None, legacy_api=False)` parses the global options
(`--debug`, `--load-kmods`, `--no-pivot`, `--user[=UID[:GID]]`, `--root`,
`--ldcache`, `--no-create-imex-channels`) followed by a command (`info`,
`list` or `configure`) and returns a `Context`. `parse_info_args`,
`parse_list_args` and `parse_ugid` handle the parts; errors raise
`UsageError`. `list` with no arguments (or only one `--imex-channel`) selects
every component of every device.

`format_info(driver, info, csv_output=False)` renders the driver and device
report as an aligned table or as CSV; missing values appear as `(null)`.

## What this package does not do

There is no command-line program. The package parses command lines and
formats reports, but it does not detect drivers or GPUs, load kernel modules,
enter container namespaces, mount files, update a container's linker cache or
change process capabilities; `DriverInfo` and `DeviceInfo` must be filled in
by the caller. Only the cgroup v1 `devices` controller is handled.