import ast
import os
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Set

import pytest

from luksmedia import executil
from luksmedia.errors import ExternalToolFailure
from luksmedia.executil import Result

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "luksmedia").absolute()

_HITS: Dict[Path, Set[int]] = defaultdict(set)
_STATEMENTS: Dict[Path, Set[int]] = {}
_SAVED_TRACERS = None


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    text = source.splitlines()
    lines = set()
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        lineno = node.lineno
        if lineno <= len(text) and text[lineno - 1].strip() and not text[lineno - 1].strip().startswith("#"):
            lines.add(lineno)
    return lines


for _path in sorted(_PACKAGE_DIR.rglob("*.py")):
    _STATEMENTS[_path.absolute()] = _statement_lines(_path)


def _tracer(frame, event, arg):
    if event == "line":
        path = Path(frame.f_code.co_filename)
        if path in _STATEMENTS:
            _HITS[path].add(frame.f_lineno)
    return _tracer


def pytest_sessionstart(session):
    global _SAVED_TRACERS
    if _SAVED_TRACERS is not None:
        return
    _SAVED_TRACERS = (sys.gettrace(), threading.gettrace())
    _HITS.clear()
    sys.settrace(_tracer)
    threading.settrace(_tracer)


def pytest_sessionfinish(session, exitstatus):
    global _SAVED_TRACERS
    if _SAVED_TRACERS is None:
        return
    previous, previous_thread = _SAVED_TRACERS
    _SAVED_TRACERS = None
    sys.settrace(previous)
    threading.settrace(previous_thread)

    reporter = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = reporter.write_line if reporter else print
    header = f"{'Name':<50} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line("")
    write_line("Coverage summary for 'luksmedia':")
    write_line(header)
    write_line("-" * len(header))
    total = hit = 0
    for path, statements in sorted(_STATEMENTS.items()):
        if not statements:
            continue
        covered = _HITS.get(path, set()) & statements
        total += len(statements)
        hit += len(covered)
        pct = len(covered) / len(statements) * 100.0
        missing = sorted(statements - covered)
        write_line(f"{str(path.relative_to(_ROOT_DIR)):<50} {len(statements):>6} {len(missing):>6} {pct:>6.1f}%")
        if missing:
            more = "..." if len(missing) > 10 else ""
            write_line(f"    Missing: {', '.join(map(str, missing[:10]))}{more}")
    if total:
        write_line("-" * len(header))
        write_line(f"{'TOTAL':<50} {total:>6} {total - hit:>6} {hit / total * 100.0:>6.1f}%")


class RunRecorder:
    """Stands in for ``executil.run``: records argv, answers from rules.

    Rules match on an argv prefix; the first match wins and ``once`` rules
    are dropped after use.  ``check`` is honoured the way ``run`` does it.
    """

    def __init__(self):
        self.calls = []
        self.inputs = []
        self.rules = []

    def on(self, *prefix, rc=0, out="", err="", once=False):
        self.rules.append({"prefix": list(prefix), "rc": rc, "out": out, "err": err, "once": once})
        return self

    def __call__(self, cmd, check=True, dry_run=False, input=None, result=None, **_: object):
        argv = list(cmd)
        self.calls.append(argv)
        self.inputs.append(input)
        if dry_run:
            return Result(0, "DRY-RUN: " + " ".join(argv), "", 0.0)
        rc, out, err = 0, "", ""
        for rule in self.rules:
            if argv[:len(rule["prefix"])] == rule["prefix"]:
                rc, out, err = rule["rc"], rule["out"], rule["err"]
                if rule["once"]:
                    self.rules.remove(rule)
                break
        if check and rc != 0:
            raise ExternalToolFailure(argv, rc, out, err, result=result)
        return Result(rc, out, err, 0.0)

    def commands(self, tool):
        return [c for c in self.calls if c and c[0] == tool]

    def index(self, *prefix):
        for i, call in enumerate(self.calls):
            if call[:len(prefix)] == list(prefix):
                return i
        raise AssertionError(f"{prefix} was never run; calls: {self.calls}")


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "VERBOSE", False)


@pytest.fixture
def recorder(monkeypatch):
    rec = RunRecorder()
    monkeypatch.setattr("luksmedia.commands.run", rec)
    for module in ("luks_lvm", "partitioning", "devices", "mounts"):
        monkeypatch.setattr(f"luksmedia.{module}.udev_settle", lambda: None)
    return rec


@pytest.fixture
def key_dir_mode(monkeypatch):
    """Mode the key directory gets in this run.

    Only root can create the key inside a 0500 directory; unprivileged runs
    keep the owner write bit.
    """

    from luksmedia import keybinding

    if os.geteuid() != 0:
        monkeypatch.setattr(keybinding, "SECRET_DIR_MODE", 0o700)
    return keybinding.SECRET_DIR_MODE
