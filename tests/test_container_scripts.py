"""
Tests that run the generated detection and cleanup shell scripts.

The container filesystem is planted under tmp_path with a merged /usr
layout (/bin, /sbin, /lib and /lib64 are symlinks into /usr), and the
scripts are run with sh against that root.
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from lxc_manager.core.config_document import ConfigDocument
from lxc_manager.core.pct_host import CommandResult, ContainerStatus
from lxc_manager.passthrough.cleanup import CleanupEngine
from lxc_manager.passthrough.component_detector import ComponentDetector, ConflictCategory

from conftest import FakeHost


SH = shutil.which("sh")
TOOLS = ["awk", "sed", "grep", "head", "find", "rm"]

pytestmark = [
    pytest.mark.unit,
    pytest.mark.skipif(
        SH is None or any(shutil.which(t) is None for t in TOOLS),
        reason="Needs a POSIX shell and find/grep/sed/awk",
    ),
]

CONFIGURED = (
    "arch: amd64\n"
    "# NVIDIA GPU passthrough (managed by lxc-gpu-passthrough)\n"
    "lxc.cgroup2.devices.allow: c 195:* rwm\n"
    "dev0: /dev/nvidia0,mode=0666\n"
    "lxc.mount.entry: /usr/bin/nvidia-smi usr/bin/nvidia-smi none bind,optional,create=file\n"
    "lxc.mount.entry: /usr/lib/x86_64-linux-gnu/libcuda.so.535.104.05 "
    "usr/lib/x86_64-linux-gnu/libcuda.so.1 none bind,optional,create=file\n"
    "lxc.mount.entry: /usr/lib/x86_64-linux-gnu/libnvidia-ml.so.535.104.05 "
    "usr/lib/x86_64-linux-gnu/libnvidia-ml.so.1 none bind,optional,create=file\n"
)

BIND_TARGETS = [
    "/usr/bin/nvidia-smi",
    "/usr/lib/x86_64-linux-gnu/libcuda.so.1",
    "/usr/lib/x86_64-linux-gnu/libnvidia-ml.so.1",
]


def run_sh(script: str, tools: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        [SH, "-c", script],
        capture_output=True,
        text=True,
        env={"PATH": str(tools)},
        timeout=60,
    )


def plant(root: Path, path: str, content: str = "x") -> Path:
    target = root / path.lstrip("/")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    return target


class LocalShellHost(FakeHost):
    """FakeHost that runs shell snippets for real, on this machine."""

    def __init__(self, config_dir: Path, tools: Path):
        super().__init__(config_dir)
        self.tools = tools

    def exec(self, ctid, argv, timeout=None) -> CommandResult:
        argv = list(argv)
        if argv[:2] != ["sh", "-c"] or self.containers[ctid].status != ContainerStatus.RUNNING:
            return super().exec(ctid, argv, timeout)
        self.calls.append(("exec", ctid, argv, timeout))
        done = run_sh(argv[2], self.tools)
        return CommandResult(done.returncode, stdout=done.stdout, stderr=done.stderr)


@pytest.fixture
def tools(tmp_path):
    """PATH directory with only the utilities the scripts rely on."""
    bin_dir = tmp_path / "tools"
    bin_dir.mkdir()
    for tool in TOOLS:
        (bin_dir / tool).symlink_to(shutil.which(tool))
    return bin_dir


@pytest.fixture
def rootfs(tmp_path):
    """Empty merged-/usr container filesystem."""
    root = tmp_path.resolve() / "rootfs"
    for d in (
        "usr/bin", "usr/sbin", "usr/lib/x86_64-linux-gnu", "usr/lib64",
        "usr/lib/modules/6.5.0", "usr/local/bin", "usr/local/lib", "usr/share",
        "etc/apt/sources.list.d", "opt", "var/lib", "proc",
    ):
        (root / d).mkdir(parents=True)
    for link in ("bin", "sbin", "lib", "lib64"):
        (root / link).symlink_to(f"usr/{link}")
    return root


@pytest.fixture
def detector(fake_host, settings, rootfs):
    return ComponentDetector(fake_host, settings, root=str(rootfs))


def evidence(detector, category, tools, excluded=()):
    result = run_sh(detector.probe_script(category, excluded), tools)
    return result.stdout.strip()


class TestDetectionScripts:

    def test_empty_root_is_clean(self, detector, tools):
        for category in ConflictCategory:
            assert evidence(detector, category, tools) == "", category

    @pytest.mark.parametrize("category,planted,found", [
        (ConflictCategory.BINARIES, "/usr/bin/nvidia-settings", "/usr/bin/nvidia-settings"),
        (ConflictCategory.LIBRARIES,
         "/usr/lib/x86_64-linux-gnu/libnvidia-encode.so.535.104.05",
         "/usr/lib/x86_64-linux-gnu/libnvidia-encode.so.535.104.05"),
        (ConflictCategory.DRIVER_DIRECTORIES,
         "/usr/share/nvidia/nvidia-application-profiles-535-rc", "/usr/share/nvidia"),
        (ConflictCategory.KERNEL_MODULES,
         "/usr/lib/modules/6.5.0/updates/dkms/nvidia.ko",
         "/usr/lib/modules/6.5.0/updates/dkms/nvidia.ko"),
        (ConflictCategory.TOOLKIT, "/usr/local/cuda-12.2/bin/nvcc", "/usr/local/cuda-12.2"),
    ])
    def test_each_category_finds_planted_file(self, detector, tools, rootfs, category, planted, found):
        plant(rootfs, planted)

        assert evidence(detector, category, tools) == str(rootfs) + found

    def test_packages_from_dpkg_database(self, detector, tools):
        dpkg_query = tools / "dpkg-query"
        dpkg_query.write_text(
            f"#!{SH}\n"
            "printf '%s\\n' "
            "'install ok installed bash' "
            "'install ok installed libnvidia-ml1:amd64' "
            "'deinstall ok config-files nvidia-dkms-535' "
            "'install ok installed nvidia-utils-535:amd64'\n"
        )
        dpkg_query.chmod(0o755)

        assert evidence(detector, ConflictCategory.PACKAGES, tools) == "nvidia-utils-535"

    def test_remediation_package_alone_is_clean(self, detector, tools):
        dpkg_query = tools / "dpkg-query"
        dpkg_query.write_text(f"#!{SH}\nprintf '%s\\n' 'install ok installed libnvidia-ml1:amd64'\n")
        dpkg_query.chmod(0o755)

        assert evidence(detector, ConflictCategory.PACKAGES, tools) == ""

    def test_bind_mounts_through_symlinked_lib_are_not_evidence(self, detector, tools, rootfs):
        """/lib -> usr/lib must not expose bind-mounted files under a second name."""
        for path in BIND_TARGETS:
            plant(rootfs, path)
        excluded = ConfigDocument.parse(CONFIGURED).mounted_container_paths()

        for category in ConflictCategory:
            assert evidence(detector, category, tools, excluded) == "", category

    def test_unexcluded_library_reported_by_real_path(self, detector, tools, rootfs):
        plant(rootfs, "/usr/lib/x86_64-linux-gnu/libcuda.so.1")

        assert evidence(detector, ConflictCategory.LIBRARIES, tools) == (
            f"{rootfs}/usr/lib/x86_64-linux-gnu/libcuda.so.1"
        )

    def test_bridge_files_never_evidence(self, detector, tools, rootfs):
        plant(rootfs, "/usr/bin/nvidia-smi")
        plant(rootfs, "/usr/lib/x86_64-linux-gnu/libnvidia-ml.so.1")
        plant(rootfs, "/usr/lib/x86_64-linux-gnu/libnvidia-ml.so.535.104.05")

        assert evidence(detector, ConflictCategory.BINARIES, tools) == ""
        assert evidence(detector, ConflictCategory.LIBRARIES, tools) == ""

    def test_raw_search_prunes_virtual_filesystems(self, detector, tools, rootfs):
        plant(rootfs, "/proc/driver/nvidia/version")
        plant(rootfs, "/opt/nvidia/leftover.txt")
        plant(rootfs, "/usr/lib/x86_64-linux-gnu/libcuda.so.1")

        found = run_sh(detector.raw_search_script(), tools).stdout.split()

        assert sorted(found) == [
            f"{rootfs}/opt/nvidia",
            f"{rootfs}/usr/lib/x86_64-linux-gnu/libcuda.so.1",
        ]


class TestCleanupScripts:

    @pytest.fixture
    def host(self, tmp_path, tools):
        return LocalShellHost(tmp_path / "lxc", tools)

    @pytest.fixture
    def local_detector(self, host, settings, rootfs):
        return ComponentDetector(host, settings, root=str(rootfs))

    def test_clean_leaves_only_bind_targets(self, host, local_detector, settings, rootfs):
        host.add_container("101", CONFIGURED, status=ContainerStatus.RUNNING)
        kept = [plant(rootfs, p) for p in BIND_TARGETS]
        removed = [plant(rootfs, p) for p in (
            "/usr/bin/nvidia-settings",
            "/usr/lib/x86_64-linux-gnu/libnvidia-encode.so.535.104.05",
            "/usr/share/nvidia/nvidia-application-profiles-535-rc",
            "/usr/lib/modules/6.5.0/updates/dkms/nvidia.ko",
            "/usr/local/cuda-12.2/bin/nvcc",
            "/opt/nvidia/leftover.txt",
            "/etc/apt/sources.list.d/cuda-ubuntu2204-x86_64.list",
        )]

        report = local_detector.scan("101")
        assert report.category == ConflictCategory.BINARIES
        assert report.evidence == f"{rootfs}/usr/bin/nvidia-settings"

        result = CleanupEngine(host, local_detector, settings).clean("101", report)

        assert result.success
        assert result.residual is None
        assert [p for p in removed if p.exists()] == []
        assert [p for p in kept if not p.exists()] == []

        host.containers["101"].status = ContainerStatus.RUNNING
        assert local_detector.scan("101").clean
        assert local_detector.raw_file_search("101") == []

    def test_configured_container_needs_no_cleanup(self, host, local_detector, settings, rootfs):
        host.add_container("101", CONFIGURED, status=ContainerStatus.RUNNING)
        for path in BIND_TARGETS:
            plant(rootfs, path)

        result = CleanupEngine(host, local_detector, settings).clean("101")

        assert result.skipped
        assert host.lifecycle("101") == []
        assert all((rootfs / p.lstrip("/")).exists() for p in BIND_TARGETS)

    def test_residual_files_outside_cleaned_prefixes(self, host, local_detector, settings, rootfs):
        host.add_container("101", CONFIGURED, status=ContainerStatus.RUNNING)
        plant(rootfs, "/usr/bin/nvidia-settings")
        plant(rootfs, "/root/nvidia-installer.log")

        result = CleanupEngine(host, local_detector, settings).clean("101")

        assert result.residual_count == 1
        assert result.residual.details["sample"] == [f"{rootfs}/root/nvidia-installer.log"]
        assert not (rootfs / "usr/bin/nvidia-settings").exists()
