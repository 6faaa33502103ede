import subprocess
import threading

import pytest

from settings import Config, RepositoryConfig


class FakeRestic:
    """Stands in for subprocess.run and answers restic commands with canned results."""

    def __init__(self):
        self.responses = {}
        self.calls = []
        self.lock = threading.Lock()

    def set(self, subcommand, stdout="", stderr="", returncode=0):
        self.responses[subcommand] = (returncode, stdout, stderr)

    def __call__(self, command, capture_output=False, text=False, env=None, timeout=None, **kwargs):
        with self.lock:
            self.calls.append({"command": list(command), "env": env, "timeout": timeout})
        subcommand = command[1]
        returncode, stdout, stderr = self.responses.get(subcommand, (0, "", ""))
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    @property
    def last(self):
        return self.calls[-1]


@pytest.fixture
def config():
    return Config(repository=RepositoryConfig(path="/srv/restic-repo", password="hunter2"))


@pytest.fixture
def fake_restic(monkeypatch):
    fake = FakeRestic()
    monkeypatch.setattr("backup.subprocess.run", fake)
    return fake
