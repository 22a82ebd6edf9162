import ast
import io
import json
import subprocess
import sys
from collections import defaultdict
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Set

import pytest

from localpv import executil
from localpv.executil import Elevation, Tracer
from localpv.model import AgentContext, MarkerKind

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "localpv").absolute()

NODE = "worker-1"
MARKER_KEY = "localpv.example.com/pending-device-ids"
ROOT_MOUNT = "/mnt/local-pv"
BY_ID = "/dev/disk/by-id"


# --- line coverage summary for the localpv package ---

_EXECUTED: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    return {node.lineno for node in ast.walk(tree) if isinstance(node, ast.stmt)}


for _file in _PACKAGE_DIR.rglob("*.py"):
    _CANDIDATES[_file.absolute()] = _statement_lines(_file)


def _trace(frame, event, arg):
    if event == "line":
        path = Path(frame.f_code.co_filename)
        if path in _CANDIDATES:
            _EXECUTED[path].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE
    _PREVIOUS_TRACE = sys.gettrace()
    sys.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    sys.settrace(_PREVIOUS_TRACE)
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print
    write_line("")
    write_line("Coverage summary for 'localpv':")
    total = covered = 0
    for path in sorted(_CANDIDATES):
        stmts = _CANDIDATES[path]
        if not stmts:
            continue
        hit = len(_EXECUTED.get(path, set()) & stmts)
        total += len(stmts)
        covered += hit
        write_line(f"{str(path.relative_to(_ROOT_DIR)):<40} {len(stmts):>5} {hit / len(stmts) * 100:>6.1f}%")
    if total:
        write_line(f"{'TOTAL':<40} {total:>5} {covered / total * 100:>6.1f}%")


# --- fake host ---

MUTATING = {"mkfs.ext4", "tee", "mkdir", "chattr", "mount"}


class FakeHost:
    """Stands in for ``subprocess.run``: a node with disks, an fstab and kubectl."""

    def __init__(self):
        self.fstab = "proc  /proc  proc  defaults  0 0\n"
        self.mounted: set = set()
        self.signatures: Dict[str, str] = {}
        self.metadata = {"annotations": {}, "labels": {}}
        self.failures: Dict[str, int] = {}
        self.timeouts: Set[str] = set()
        self.missing: Set[str] = set()
        self.calls: list = []
        self.formatted: list = []
        self.immutable: set = set()
        self.dirs: set = set()

    @staticmethod
    def _strip(argv):
        host_ns = False
        if argv and argv[0] == "sudo":
            argv = argv[2:]
        if argv and argv[0] == "nsenter":
            argv = argv[argv.index("--") + 1:]
            host_ns = True
        return argv, host_ns

    def commands(self, name=None):
        return [c.argv for c in self.calls if name is None or c.argv[0] == name]

    def mutations(self):
        return [c.argv for c in self.calls if c.argv[0] in MUTATING or c.argv[0] == "wipefs"]

    def __call__(self, argv, input=None, capture_output=False, text=True, timeout=None, env=None):
        stripped, host_ns = self._strip(list(argv))
        self.calls.append(SimpleNamespace(argv=stripped, host_ns=host_ns, input=input, raw=list(argv)))
        name = stripped[0]
        if name in self.timeouts:
            raise subprocess.TimeoutExpired(argv, timeout)
        if name in self.missing:
            raise FileNotFoundError(2, "No such file or directory", name)
        if name in self.failures:
            return self._done(self.failures[name], "", f"{name}: boom", capture_output)
        handler = getattr(self, "_" + name.replace(".", "_").replace("-", "_"), None)
        rc, out = handler(stripped, input) if handler else (0, "")
        return self._done(rc, out, "", capture_output)

    @staticmethod
    def _done(rc, out, err, capture):
        if not capture:
            return SimpleNamespace(returncode=rc, stdout=None, stderr=None)
        return SimpleNamespace(returncode=rc, stdout=out, stderr=err)

    def _mountpoint(self, argv, _input):
        return (0 if argv[-1] in self.mounted else 32), ""

    def _wipefs(self, argv, _input):
        return 0, self.signatures.get(argv[-1], "")

    def _cat(self, argv, _input):
        return 0, self.fstab

    def _tee(self, argv, data):
        self.fstab = data
        return 0, data

    def _mkfs_ext4(self, argv, _input):
        self.formatted.append(argv[-1])
        return 0, ""

    def _mkdir(self, argv, _input):
        self.dirs.add(argv[-1])
        return 0, ""

    def _chattr(self, argv, _input):
        self.immutable.add(argv[-1])
        return 0, ""

    def _mount(self, argv, _input):
        source = argv[-1].split("=", 1)[1]
        for line in self.fstab.splitlines():
            fields = line.split()
            if fields and fields[0] == source:
                self.mounted.add(fields[1])
                return 0, ""
        return 1, ""

    def _kubectl(self, argv, _input):
        verb = argv[1]
        if verb == "get":
            field = argv[-1].split(".metadata.", 1)[1].rstrip("}")
            return 0, json.dumps(self.metadata[field])
        key = argv[-1][:-1]
        self.metadata["annotations" if verb == "annotate" else "labels"].pop(key, None)
        return 0, ""


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    monkeypatch.setattr(executil.subprocess, "run", fake)
    monkeypatch.setenv("NODE_NAME", NODE)
    return fake


@pytest.fixture
def tracer(tmp_path):
    return Tracer(dirs=[str(tmp_path / "logs")], level="TRACE", stream=io.StringIO())


@pytest.fixture
def ctx(tracer):
    return AgentContext(
        marker_key=MARKER_KEY,
        root_mount_path=ROOT_MOUNT,
        marker_kind=MarkerKind.ANNOTATION,
        elevation=Elevation(root_prefix=()),
        tracer=tracer,
    )
