"""
cgroup v2 containment for host-process sandboxes.

Every sandbox command runs in its own leaf cgroup below a delegated root. The
leaf carries the memory and process-count ceilings, so they hold for the whole
process tree whatever its uid or session, the kernel's ``memory.events``
counters say whether the memory ceiling fired, and ``cgroup.kill`` reaches
every descendant, including ones that started a session of their own.
"""
import errno
import logging
import mmap
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

CGROUP_MOUNT = Path("/sys/fs/cgroup")
ROOT_ENV = "CODEJUDGE_CGROUP_ROOT"
ROOT_NAME = "codejudge"
SUPERVISOR_NAME = "supervisor"
CONTROLLERS = ("memory", "pids")


@dataclass
class CgroupUsage:
    """Counters read back from one leaf after its command finished."""
    oom_kills: int = 0
    memory_peak_bytes: int = 0
    cpu_time_ms: int = 0


def _write_then_check(path: Path, value: Union[str, int]) -> None:
    value = str(value)
    path.write_text(value)
    back = path.read_text().strip()
    if back != value:
        raise OSError(errno.EINVAL, f"wrote {value!r} but read back {back!r}", str(path))


def _read_keyed(path: Path, key: str) -> Optional[int]:
    """Read ``key`` from a flat-keyed cgroup file such as memory.events."""
    try:
        text = path.read_text()
    except OSError:
        return None
    for line in text.splitlines():
        name, _, value = line.partition(" ")
        if name == key and value.strip().isdigit():
            return int(value)
    return None


def own_cgroup(mount: Path = CGROUP_MOUNT) -> Path:
    """The cgroup of the current process on the unified hierarchy."""
    with open("/proc/self/cgroup") as f:
        for line in f:
            if line.startswith("0::"):
                relative = line.split("::", 1)[1].strip()
                return mount / relative.lstrip("/")
    raise OSError(errno.ENOENT, "process is not on a cgroup v2 hierarchy")


def enable_controllers(node: Path) -> None:
    """Make the memory and pids controllers available to the children of ``node``."""
    available = set((node / "cgroup.controllers").read_text().split())
    missing = [c for c in CONTROLLERS if c not in available]
    if missing:
        raise OSError(errno.ENOTSUP, f"controllers not delegated: {', '.join(missing)}", str(node))
    enabled = set((node / "cgroup.subtree_control").read_text().split())
    wanted = [f"+{c}" for c in CONTROLLERS if c not in enabled]
    if wanted:
        (node / "cgroup.subtree_control").write_text(" ".join(wanted))


class CgroupTree:
    """Leaf cgroups for sandbox commands, created below ``root``.

    ``root`` must already be able to hand the memory and pids controllers to
    its children; ``detect`` prepares such a root when the host delegates one.
    """

    def __init__(self, root: Union[str, Path], remove_attempts: int = 5, remove_delay: float = 0.1):
        self._root = Path(root)
        self._remove_attempts = max(1, remove_attempts)
        self._remove_delay = remove_delay

    @property
    def root(self) -> Path:
        return self._root

    @classmethod
    def detect(cls, root: Optional[str] = None) -> Optional["CgroupTree"]:
        """Prepare a delegated subtree, or return None when the host offers none.

        ``root`` (or ``$CODEJUDGE_CGROUP_ROOT``) names an existing delegated
        cgroup. Without one, a ``codejudge`` child of this process's own cgroup
        is used; this process moves into a ``supervisor`` sibling first, since a
        cgroup holding processes cannot enable controllers for its children.
        """
        root = root or os.environ.get(ROOT_ENV)
        try:
            if root:
                tree = cls(root)
                tree.prepare()
            else:
                parent = own_cgroup()
                tree = cls(parent / ROOT_NAME)
                tree.prepare(parent, move_self=True)
        except OSError as e:
            logger.warning(f"No usable cgroup v2 subtree for sandboxes: {e}")
            return None
        logger.info(f"Sandbox commands will run in cgroups below {tree.root}")
        return tree

    def prepare(self, parent: Optional[Path] = None, move_self: bool = False) -> None:
        if parent is not None:
            try:
                enable_controllers(parent)
            except OSError as e:
                if e.errno != errno.EBUSY or not move_self:
                    raise
                supervisor = parent / SUPERVISOR_NAME
                supervisor.mkdir(exist_ok=True)
                (supervisor / "cgroup.procs").write_text(str(os.getpid()))
                enable_controllers(parent)
        self._root.mkdir(exist_ok=True)
        enable_controllers(self._root)

    def create(self, name: str, memory_bytes: int, max_processes: int) -> Path:
        """Create a leaf with the given ceilings, all applied or none.

        Raises:
            OSError: If the leaf cannot be created or a ceiling does not stick.
        """
        leaf = self._root / name
        leaf.mkdir()
        try:
            _write_then_check(leaf / "memory.max", memory_bytes - memory_bytes % mmap.PAGESIZE)
            try:
                _write_then_check(leaf / "memory.swap.max", 0)
            except FileNotFoundError:
                # Swap accounting disabled on this kernel, nothing to cap.
                pass
            _write_then_check(leaf / "memory.oom.group", 1)
            _write_then_check(leaf / "pids.max", max_processes)
        except OSError:
            self.remove(leaf)
            raise
        return leaf

    @staticmethod
    def attach_self(leaf: Path) -> None:
        """Move the calling process into ``leaf``. Runs in the child before exec."""
        with open(leaf / "cgroup.procs", "w") as f:
            f.write(str(os.getpid()))

    @staticmethod
    def pids(leaf: Path) -> List[int]:
        try:
            return [int(pid) for pid in (leaf / "cgroup.procs").read_text().split()]
        except OSError:
            return []

    def kill(self, leaf: Optional[Path]) -> None:
        """SIGKILL every process in ``leaf``."""
        if leaf is None:
            return
        kill_file = leaf / "cgroup.kill"
        if kill_file.exists():
            try:
                kill_file.write_text("1")
                return
            except OSError as e:
                if e.errno == errno.ENOENT:
                    return
                logger.warning(f"cgroup.kill failed on {leaf}: {e}")
        # Kernels before 5.14: signal each member until the leaf is empty.
        for _ in range(self._remove_attempts):
            members = self.pids(leaf)
            if not members:
                return
            for pid in members:
                try:
                    os.kill(pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            time.sleep(self._remove_delay)

    def usage(self, leaf: Path) -> CgroupUsage:
        usage = CgroupUsage()
        usage.oom_kills = _read_keyed(leaf / "memory.events", "oom_kill") or 0
        cpu_usec = _read_keyed(leaf / "cpu.stat", "usage_usec")
        if cpu_usec is not None:
            usage.cpu_time_ms = cpu_usec // 1000
        try:
            peak = (leaf / "memory.peak").read_text().strip()
        except OSError:
            peak = ""
        if peak.isdigit():
            usage.memory_peak_bytes = int(peak)
        return usage

    def remove(self, leaf: Path) -> bool:
        """Kill whatever is left in ``leaf`` and delete it. Returns False if it lingers."""
        self.kill(leaf)
        for attempt in range(self._remove_attempts):
            try:
                leaf.rmdir()
                return True
            except FileNotFoundError:
                return True
            except OSError:
                if attempt + 1 < self._remove_attempts:
                    time.sleep(self._remove_delay)
        logger.warning(f"Could not remove cgroup {leaf}")
        return False
