import os
import sys
import tempfile

# Keep test logs and preview files out of the real temp dir.
os.environ.setdefault("MVDCOAPP_TEMP_DIR", tempfile.mkdtemp(prefix="mvdcoapp-test-"))

import anyio
import pytest

PYTHON = {"ffmpeg": sys.executable, "ffprobe": sys.executable}


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeProcess:
    """Stands in for anyio's Process in registry and router tests."""

    _next_pid = 10000

    def __init__(self, pid=None):
        if pid is None:
            FakeProcess._next_pid += 1
            pid = FakeProcess._next_pid
        self.pid = pid
        self.returncode = None
        self.terminated = 0
        self.killed = 0
        self._exited = None

    def terminate(self):
        self.terminated += 1

    def kill(self):
        self.killed += 1

    def _event(self):
        if self._exited is None:
            self._exited = anyio.Event()
        return self._exited

    def exit(self, code=0):
        self.returncode = code
        self._event().set()

    async def wait(self):
        await self._event().wait()
        return self.returncode


class Wire:
    """Records what would have been framed onto stdout."""

    def __init__(self):
        self.messages = []

    def send(self, message, request_id=None):
        out = dict(message)
        if request_id is not None:
            out["id"] = request_id
        self.messages.append(out)

    def commands(self, name):
        return [m for m in self.messages if m.get("command") == name]

    def reply(self, request_id):
        replies = [m for m in self.messages if m.get("id") == request_id]
        assert len(replies) == 1, self.messages
        return replies[0]


@pytest.fixture
def wire():
    return Wire()
