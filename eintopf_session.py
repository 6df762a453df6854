"""
Remote command execution on one node over ssh.

Commands are given as argv lists. Every token is shell-escaped except a small
set of control tokens, so callers can still build pipelines and redirections
on purpose while untrusted argument text stays literal.
"""

import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from eintopf_common import SSH_USER, WAIT_LIMIT_SECONDS, log

CONTROL_TOKENS = frozenset({"&&", "<", ">", "2>", "2>&1", "|"})

# The remote login shell may be anything; always run under a Bourne shell.
POSIX_SHELL = "bash"


def assemble(argv: Sequence[str]) -> str:
    """Join argv into one shell command line."""
    return " ".join(arg if arg in CONTROL_TOKENS else shlex.quote(arg) for arg in argv)


def wrap(line: str) -> str:
    return f"{POSIX_SHELL} -c {shlex.quote(line)}"


@dataclass
class CommandResult:
    """Result of a remote command run to completion."""
    exit_status: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_status == 0


class RemoteSession:
    """A multiplexed ssh connection to a single node."""

    def __init__(
        self,
        address: str,
        user: str = SSH_USER,
        key_path: Optional[Path] = None,
        connect_timeout: int = 30,
    ):
        self.address = address
        self.user = user
        self.key_path = key_path
        self.connect_timeout = connect_timeout
        self._connected = False

    def __repr__(self):
        return f"RemoteSession({self.user}@{self.address})"

    def _ssh_base_cmd(self):
        cmd = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "ServerAliveInterval=60",
            "-o", "ControlMaster=auto",
            "-o", "ControlPath=~/.ssh/eintopf-%C",
            "-o", "ControlPersist=10m",
        ]
        if self.key_path:
            cmd += ["-o", "IdentitiesOnly=yes", "-i", str(self.key_path)]
        cmd.append(f"{self.user}@{self.address}")
        return cmd

    def execute(self, argv: Sequence[str], with_stdin: bool = False) -> subprocess.Popen:
        """Start argv on the node and return the live process handle.

        The handle exposes ``stdout``/``stderr`` text streams and a blocking
        ``wait()`` that returns the remote exit status. The local ssh runs in
        its own session so a terminal ^C only reaches the orchestrator.
        """
        line = assemble(argv)
        log(f"    :> {line}")
        return subprocess.Popen(
            self._ssh_base_cmd() + [wrap(line)],
            stdin=subprocess.PIPE if with_stdin else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )

    def run_to_completion(self, argv: Sequence[str], input: Optional[str] = None) -> CommandResult:
        """Run argv, read both streams fully and wait for it to exit.

        A nonzero exit status is a normal outcome and is reported through
        ``CommandResult.success``, never raised.
        """
        proc = self.execute(argv, with_stdin=input is not None)
        stdout, stderr = proc.communicate(input)
        return CommandResult(exit_status=proc.returncode, stdout=stdout, stderr=stderr)

    def connect(self, timeout: float = WAIT_LIMIT_SECONDS, interval: float = 10) -> "RemoteSession":
        """Wait until the node accepts ssh, raising ConnectionError after timeout."""
        deadline = time.monotonic() + timeout
        attempt = 0
        while True:
            attempt += 1
            result = self.run_to_completion(["true"])
            if result.success:
                self._connected = True
                return self
            if time.monotonic() + interval > deadline:
                raise ConnectionError(
                    f"{self.address} not reachable after {attempt} attempts: {result.stderr.strip()}"
                )
            log(f"  {self.address} not ready yet (attempt {attempt})...")
            time.sleep(interval)

    def close(self):
        if not self._connected:
            return
        self._connected = False
        subprocess.run(
            self._ssh_base_cmd()[:-1] + ["-O", "exit", f"{self.user}@{self.address}"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            check=False,
        )
