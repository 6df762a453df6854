#!/usr/bin/env python3
"""
Orchestrate runs of the distributed eintopf benchmark.

For each scale factor the sweep provisions base_count * factor servers on EC2,
builds eintopf on all of them, distributes the hosts manifest, runs the
benchmark on every server and writes the combined output to
<prefix>.<uniform|skewed>.<n>h.log. ^C finishes the current iteration and
then stops; a second ^C aborts immediately.
"""

import argparse
import shutil
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List

from eintopf_common import (
    AMI_ID,
    ARTICLES,
    AWS_PROFILE,
    DEFAULT_INSTANCE_TYPE,
    DEFAULT_SSH_KEY_PATH,
    DISTRIBUTIONS,
    KEY_NAME,
    OUTPUT_PREFIX,
    POOL_SIZE,
    REGION,
    ROLE_ARN,
    RUNTIME_SECONDS,
    SESSION_NAME,
    SSH_USER,
    WAIT_LIMIT_SECONDS,
    WORKERS,
    ZIPF_THETA,
    CredentialError,
    DistributionError,
    ProvisionError,
    RunError,
    SweepConfig,
    log,
    set_log_file,
)
from eintopf_credentials import CredentialProvider
from eintopf_fleet import Fleet, build_eintopf, cleanup_leftovers
from eintopf_membership import distribute
from eintopf_run import RunCoordinator


class CancellationSignal:
    """Set once by an operator interrupt, read between sweep iterations."""

    def __init__(self):
        self._event = threading.Event()

    def set(self):
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def install(self, signum=signal.SIGINT):
        def handler(sig, frame):
            self.set()
            log("==> interrupt received; finishing the current iteration (^C again to abort)")
            signal.signal(signum, signal.default_int_handler)

        signal.signal(signum, handler)


def parse_scale_factor(raw) -> int:
    if isinstance(raw, bool):
        raise ValueError(f"not a scale factor: {raw!r}")
    value = raw if isinstance(raw, int) else int(str(raw).strip())
    if value < 1:
        raise ValueError(f"scale factor must be positive: {raw!r}")
    return value


class SweepOrchestrator:
    def __init__(self, config: SweepConfig, credentials, pool, cancel: CancellationSignal,
                 bootstrap=build_eintopf):
        self.config = config
        self.credentials = credentials
        self.pool = pool
        self.cancel = cancel
        self.bootstrap = bootstrap

    def run_iteration(self, nservers: int) -> Path:
        """Provision, distribute, run and tear down one fleet of nservers."""
        with Fleet(self.config, self.credentials, self.pool) as fleet:
            nodes = fleet.provision(nservers, self.bootstrap)
            manifest_path = distribute(
                nodes, self.pool, self.config.manifest_path, self.config.membership_port
            )
            RunCoordinator(self.config).run(nodes, manifest_path)
        return self.config.output_path(nservers)

    def sweep(self, scale_factors) -> List[Path]:
        """Run one iteration per well-formed scale factor; return artifacts written.

        CredentialError propagates. Other iteration failures are logged and the
        sweep moves on to the next factor.
        """
        written = []
        for raw in scale_factors:
            if self.cancel.is_set():
                log("==> sweep interrupted; not starting further iterations")
                break
            try:
                factor = parse_scale_factor(raw)
            except ValueError as e:
                log(f"Ignoring malformed scale factor {raw!r}: {e}")
                continue

            nservers = self.config.base_count * factor
            log(f"==> {nservers} servers")
            try:
                written.append(self.run_iteration(nservers))
            except (ProvisionError, DistributionError, RunError) as e:
                log(f"==> iteration with {nservers} servers failed: {e}")
        return written


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args():
    parser = argparse.ArgumentParser(
        description="Orchestrate runs of the distributed eintopf benchmark."
    )
    parser.add_argument(
        "-a", "--articles",
        type=int,
        default=ARTICLES,
        help=f"Number of articles to prepopulate the database with (default: {ARTICLES})",
    )
    parser.add_argument(
        "-r", "--runtime",
        type=int,
        default=RUNTIME_SECONDS,
        help=f"Benchmark runtime in seconds (default: {RUNTIME_SECONDS})",
    )
    parser.add_argument(
        "-d", "--distribution",
        choices=DISTRIBUTIONS,
        help="How to distribute keys (required unless --cleanup).",
    )
    parser.add_argument(
        "--server",
        dest="instance_type",
        default=DEFAULT_INSTANCE_TYPE,
        help=f"Instance type for servers (default: {DEFAULT_INSTANCE_TYPE})",
    )
    parser.add_argument(
        "-s", "--servers",
        type=int,
        default=1,
        help="Number of server machines to spawn with a scale of 1 (default: 1)",
    )
    parser.add_argument("scales", nargs="*", help="Scaling factors to try")

    parser.add_argument("--region", default=REGION, help=f"AWS region (default: {REGION})")
    parser.add_argument("--aws-profile", default=AWS_PROFILE, help="AWS profile used to assume the role.")
    parser.add_argument("--role-arn", default=ROLE_ARN, help=f"Role to assume (default: {ROLE_ARN})")
    parser.add_argument("--ami", default=AMI_ID, help=f"Server AMI (default: {AMI_ID})")
    parser.add_argument("--key-name", default=KEY_NAME, help=f"EC2 key pair name (default: {KEY_NAME})")
    parser.add_argument(
        "--ssh-private-key-path",
        dest="ssh_key_path",
        default=str(DEFAULT_SSH_KEY_PATH),
        help=f"Path to SSH private key (.pem) (default: {DEFAULT_SSH_KEY_PATH}).",
    )
    parser.add_argument("--ssh-user", default=SSH_USER, help=f"SSH login user (default: {SSH_USER})")
    parser.add_argument("--security-group", help="Security group id for the servers.")
    parser.add_argument("--subnet", help="Subnet id for the servers.")
    parser.add_argument(
        "--wait-limit",
        type=int,
        default=WAIT_LIMIT_SECONDS,
        help=f"Seconds to wait for servers to come up (default: {WAIT_LIMIT_SECONDS})",
    )
    parser.add_argument("--workers", type=int, default=WORKERS, help=f"eintopf worker threads (default: {WORKERS})")
    parser.add_argument("--zipf", type=float, default=ZIPF_THETA, help=f"Skew for -d skewed (default: {ZIPF_THETA})")
    parser.add_argument("--output-prefix", default=OUTPUT_PREFIX, help=f"Result file prefix (default: {OUTPUT_PREFIX})")
    parser.add_argument("--output-dir", default=".", help="Directory for result files (default: .)")
    parser.add_argument("--log-file", help="Also append diagnostics to this file.")
    parser.add_argument("--cleanup", action="store_true", help="Terminate leftover servers and exit.")
    return parser


def config_from_args(args) -> SweepConfig:
    return SweepConfig(
        base_count=args.servers,
        instance_type=args.instance_type,
        distribution=args.distribution or "uniform",
        articles=args.articles,
        runtime=args.runtime,
        workers=args.workers,
        zipf_theta=args.zipf,
        output_prefix=args.output_prefix,
        output_dir=Path(args.output_dir).expanduser(),
        region=args.region,
        aws_profile=args.aws_profile,
        role_arn=args.role_arn,
        session_name=SESSION_NAME,
        ami_id=args.ami,
        key_name=args.key_name,
        ssh_key_path=Path(args.ssh_key_path).expanduser().resolve(),
        ssh_user=args.ssh_user,
        security_group_id=args.security_group,
        subnet_id=args.subnet,
        wait_limit=args.wait_limit,
    )


def need_cmd(cmd):
    if shutil.which(cmd):
        return
    raise SystemExit(f"ERROR: Required command '{cmd}' not found in PATH.")


def main(argv=None):
    parser = parse_args()
    args = parser.parse_args(argv)
    if not args.cleanup:
        if not args.distribution:
            parser.error("-d/--distribution is required")
        if not args.scales:
            parser.error("at least one scale factor is required")

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    log_fh = None
    if args.log_file:
        log_path = Path(args.log_file).expanduser().resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_fh = open(log_path, "a")
        set_log_file(log_fh)

    credentials = CredentialProvider(
        config.role_arn, config.session_name, region=config.region, profile=config.aws_profile
    )
    try:
        if args.cleanup:
            cleanup_leftovers(config, credentials)
            return

        if not config.ssh_key_path.exists():
            raise SystemExit(f"ERROR: SSH key not found: {config.ssh_key_path}")
        need_cmd("ssh")

        cancel = CancellationSignal()
        cancel.install()
        with ThreadPoolExecutor(max_workers=POOL_SIZE) as pool:
            orchestrator = SweepOrchestrator(config, credentials, pool, cancel)
            written = orchestrator.sweep(args.scales)
        log(f"==> sweep done; {len(written)} result file(s):")
        for path in written:
            log(f"  {path}")
    except CredentialError as e:
        raise SystemExit(f"ERROR: {e}")
    finally:
        if log_fh:
            set_log_file(None)
            log_fh.close()


if __name__ == "__main__":
    main()
