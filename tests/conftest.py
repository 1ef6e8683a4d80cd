import logging
import subprocess
import sys
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so `import retro_sync` works without installing
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import retro_sync as rs  # noqa: E402

TEST_LOGGER = "tests.retro_sync"


class FakeRunner:
    """Stands in for subprocess.run; records every command it is given."""

    def __init__(self, returncode=0, stdout="", stderr="", raises=None, fail_on=()):
        self.calls = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises
        self.fail_on = tuple(fail_on)

    def __call__(self, cmd, **kwargs):
        self.calls.append((list(cmd), kwargs))
        if self.raises is not None:
            raise self.raises
        item = cmd[-2]
        if any(item.endswith(suffix) for suffix in self.fail_on):
            return subprocess.CompletedProcess(cmd, 23, "", f"rsync: link_stat \"{item}\" failed: No such file or directory (2)\n")
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


class FakeSource:
    """Synthetic event source: replays a list of events, then reports the channel closed."""

    def __init__(self, events=()):
        self.events = list(events)
        self.received = 0

    def next_event(self, timeout=None):
        if not self.events:
            return None
        self.received += 1
        return self.events.pop(0)


class RecordingInvoker:
    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def invoke(self, source_root, dest_root, rel_path):
        self.calls.append((str(source_root), str(dest_root), rel_path))
        if rel_path in self.fail_on:
            return rs.SyncResult(False, "exit status 23: boom")
        return rs.SyncResult(True, "")


@pytest.fixture
def logger():
    return logging.getLogger(TEST_LOGGER)


@pytest.fixture
def roots(tmp_path):
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    src.mkdir()
    dst.mkdir()
    return src, dst


@pytest.fixture(autouse=True)
def _reset_app_logger():
    """main() installs its handlers on the app logger once; drop them so each test starts clean."""
    yield
    app = logging.getLogger(rs.LOGGER_NAME)
    for h in list(app.handlers):
        if h.get_name() in (rs.CONSOLE_HANDLER, rs.FILE_HANDLER):
            app.removeHandler(h)
            h.close()
