"""
Shared settings, logging and error types for the eintopf benchmark sweep.

Every orchestration diagnostic goes through log(), which writes to stderr so
the benchmark result artifacts never pick up orchestration chatter.
"""

import os
import sys
import threading
from concurrent.futures import FIRST_EXCEPTION, wait
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from botocore.config import Config

REGION = "us-east-1"
AWS_PROFILE = os.environ.get("AWS_PROFILE")
ROLE_ARN = os.environ.get("EINTOPF_ROLE_ARN", "arn:aws:sts::125163634912:role/soup")
SESSION_NAME = "vote-benchmark"
PROJECT_TAG = "eintopf-vote-benchmark"

AMI_ID = os.environ.get("EINTOPF_AMI_ID", "ami-72b0000d")
KEY_NAME = os.environ.get("EINTOPF_KEY_NAME", "eintopf-benchmark-key")
DEFAULT_SSH_KEY_PATH = Path(__file__).resolve().with_name("eintopf-benchmark-key.pem")
SSH_USER = "ubuntu"

# c5.4xlarge: 16 vCPU, 32GB - one eintopf server per host
DEFAULT_INSTANCE_TYPE = "c5.4xlarge"

MEMBERSHIP_PORT = 1234
MANIFEST_PATH = "hosts"
BINARY_PATH = "eintopf/target/release/eintopf"
OUTPUT_PREFIX = "eintopf-12s"

WAIT_LIMIT_SECONDS = 5 * 60
MAX_DURATION_HOURS = 1
POOL_SIZE = 100

WORKERS = 12
ARTICLES = 100000
RUNTIME_SECONDS = 60
ZIPF_THETA = 1.08
DISTRIBUTIONS = ("uniform", "skewed")

BOTO_CONFIG = Config(
    retries={"max_attempts": 10, "mode": "adaptive"},
    connect_timeout=15,
    read_timeout=60,
)

# Global log file handle
_log_file = None
_log_lock = threading.Lock()


def ts():
    return datetime.now().strftime("[%Y-%m-%dT%H:%M:%S]")


def log(msg):
    """Log message to stderr and optionally to log file."""
    line = f"{ts()} {msg}"
    with _log_lock:
        print(line, file=sys.stderr, flush=True)
        if _log_file:
            _log_file.write(line + "\n")
            _log_file.flush()


def set_log_file(fh):
    global _log_file
    _log_file = fh


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SweepError(Exception):
    """Base class for orchestration failures."""


class CredentialError(SweepError):
    """The assumed-role credential chain is broken. Fatal to the sweep."""


class ProvisionError(SweepError):
    """Fleet creation or bootstrap failed on at least one node."""


class DistributionError(SweepError):
    """The membership manifest did not reach every node."""


class RunError(SweepError):
    """The benchmark run could not be launched or its output not persisted."""


class FanOutError(Exception):
    """One or more per-item tasks of an all-or-nothing fan-out failed.

    ``failures`` holds ``(item, exception)`` pairs in submission order.
    """

    def __init__(self, failures):
        self.failures = failures
        super().__init__("; ".join(f"{item}: {exc}" for item, exc in failures))


def fan_out(pool, fn, items, abort: Optional[threading.Event] = None):
    """Run ``fn(item)`` for every item on the pool and return results in item order.

    The first failure cancels every task that has not started yet and sets
    ``abort`` so running siblings can bail out at their next step. All running
    tasks are joined before FanOutError is raised.
    """
    items = list(items)
    futures = [pool.submit(fn, item) for item in items]
    done, pending = wait(futures, return_when=FIRST_EXCEPTION)
    if pending:
        if abort is not None:
            abort.set()
        for future in pending:
            future.cancel()
        wait(pending)

    failures = [
        (item, future.exception())
        for item, future in zip(items, futures)
        if not future.cancelled() and future.exception() is not None
    ]
    if failures:
        raise FanOutError(failures)
    return [future.result() for future in futures]


# ---------------------------------------------------------------------------
# Sweep configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SweepConfig:
    base_count: int = 1
    instance_type: str = DEFAULT_INSTANCE_TYPE
    distribution: str = "uniform"
    articles: int = ARTICLES
    runtime: int = RUNTIME_SECONDS
    workers: int = WORKERS
    zipf_theta: float = ZIPF_THETA
    output_prefix: str = OUTPUT_PREFIX
    output_dir: Path = Path(".")
    region: str = REGION
    aws_profile: Optional[str] = AWS_PROFILE
    role_arn: str = ROLE_ARN
    session_name: str = SESSION_NAME
    ami_id: str = AMI_ID
    key_name: str = KEY_NAME
    ssh_key_path: Path = DEFAULT_SSH_KEY_PATH
    ssh_user: str = SSH_USER
    security_group_id: Optional[str] = None
    subnet_id: Optional[str] = None
    wait_limit: int = WAIT_LIMIT_SECONDS
    max_duration_hours: int = MAX_DURATION_HOURS
    membership_port: int = MEMBERSHIP_PORT
    manifest_path: str = MANIFEST_PATH
    binary_path: str = BINARY_PATH

    def __post_init__(self):
        if self.distribution not in DISTRIBUTIONS:
            raise ValueError(
                f"distribution must be one of {', '.join(DISTRIBUTIONS)}, got {self.distribution!r}"
            )
        if self.base_count < 1:
            raise ValueError(f"base node count must be positive, got {self.base_count}")
        for name in ("articles", "runtime", "workers", "wait_limit", "max_duration_hours"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    @property
    def skewed(self) -> bool:
        return self.distribution == "skewed"

    @property
    def distribution_arg(self) -> str:
        """Key distribution as the benchmark binary's -d flag expects it."""
        return f"zipf:{self.zipf_theta}" if self.skewed else "uniform"

    def output_path(self, fleet_size: int) -> Path:
        return Path(self.output_dir) / f"{self.output_prefix}.{self.distribution}.{fleet_size}h.log"
