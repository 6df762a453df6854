"""Pytest configuration and shared fixtures."""

import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Generator

import pytest

from eintopf_common import SweepConfig
from eintopf_fleet import Node
from eintopf_session import CommandResult


class FakeProcess:
    """Stand-in for the Popen handle returned by RemoteSession.execute."""

    def __init__(self, stdout="", stderr="", returncode=0, delay=0.0):
        self._stdout = stdout
        self._stderr = stderr
        self._returncode = returncode
        self.delay = delay
        self.returncode = None

    def communicate(self, input=None):
        if self.delay:
            time.sleep(self.delay)
        self.returncode = self._returncode
        return self._stdout, self._stderr

    def wait(self):
        self.returncode = self._returncode
        return self.returncode


class FakeSession:
    """Records commands instead of reaching a node over ssh."""

    def __init__(self, address, result=None, process=None):
        self.address = address
        self.result = result or CommandResult(0, "", "")
        self.process = process or FakeProcess()
        self.commands = []
        self.inputs = []
        self.closed = False

    def execute(self, argv, with_stdin=False):
        self.commands.append(list(argv))
        return self.process

    def run_to_completion(self, argv, input=None):
        self.commands.append(list(argv))
        self.inputs.append(input)
        return self.result

    def close(self):
        self.closed = True


@pytest.fixture
def config(tmp_path: Path) -> SweepConfig:
    """A sweep configuration writing into a temporary directory."""
    return SweepConfig(
        base_count=2,
        output_dir=tmp_path,
        ssh_key_path=tmp_path / "key.pem",
        wait_limit=30,
    )


@pytest.fixture
def pool() -> Generator[ThreadPoolExecutor, None, None]:
    executor = ThreadPoolExecutor(max_workers=16)
    yield executor
    executor.shutdown(wait=True)


@pytest.fixture
def make_nodes():
    """Factory for nodes backed by FakeSession."""

    def _make(n, **session_kwargs):
        nodes = []
        for i in range(n):
            address = f"ec2-{i}.compute.amazonaws.com"
            nodes.append(Node(
                index=i,
                instance_id=f"i-{i:04d}",
                public_ip=f"54.0.0.{i}",
                private_ip=f"10.0.0.{i}",
                public_dns=address,
                session=FakeSession(address, **session_kwargs),
            ))
        return nodes

    return _make
