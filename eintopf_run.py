"""
Launch the benchmark on every node and collect what each one printed.

All nodes are started first, then their output is captured concurrently. A node
that fails is reported but does not stop collection from the rest; the
artifact holds the stdout of every successful node in partition order.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List

from eintopf_common import RunError, log


@dataclass
class RunResult:
    index: int
    node: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def success(self) -> bool:
        return self.exit_status == 0


def benchmark_argv(config, index: int, manifest_path: str) -> List[str]:
    return [
        "env",
        "RUST_BACKTRACE=1",
        config.binary_path,
        "--workers", str(config.workers),
        "-a", str(config.articles),
        "-r", str(config.runtime),
        "-d", config.distribution_arg,
        "-h", manifest_path,
        "-p", str(index),
    ]


def report(results: List[RunResult]):
    """Surface per-node failures and stderr chatter on the diagnostic stream."""
    for r in results:
        if not r.success:
            log(f"{r.node} failed to run benchmark client (exit {r.exit_status}):")
            log(r.stderr)
        elif r.stderr:
            log(f"{r.node} reported:")
            stderr = r.stderr.rstrip().replace("\n", "\n > ")
            log(f" > {stderr}")


def write_artifact(results: List[RunResult], path: Path) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as fh:
            for r in sorted(results, key=lambda r: r.index):
                if r.success:
                    fh.write(r.stdout)
    except OSError as e:
        raise RunError(f"Unable to write results to {path}: {e}") from e
    return path


class RunCoordinator:
    def __init__(self, config):
        self.config = config

    def _launch(self, node, manifest_path):
        log(f" -> starting eintopf on {node}")
        return node.session.execute(benchmark_argv(self.config, node.index, manifest_path))

    @staticmethod
    def _collect(node, proc) -> RunResult:
        try:
            stdout, stderr = proc.communicate()
            status = proc.returncode
        except (OSError, ValueError) as e:
            stdout, stderr, status = "", f"output capture failed: {e}", -1
        return RunResult(index=node.index, node=str(node), stdout=stdout, stderr=stderr, exit_status=status)

    def run(self, nodes, manifest_path: str) -> List[RunResult]:
        """Run the benchmark on all nodes, write the artifact, return ordered results.

        Every node is started before any output is read, so the whole fleet
        runs together regardless of fleet size.
        """
        if not nodes:
            raise RunError("No servers to run the benchmark on")

        results = []
        running = []
        for node in nodes:
            try:
                running.append((node, self._launch(node, manifest_path)))
            except OSError as e:
                results.append(RunResult(node.index, str(node), "", str(e), -1))
        log(f" .. benchmark running @ {datetime.now().time()}")

        if running:
            # one reader per node; a node must never wait for a free worker
            with ThreadPoolExecutor(max_workers=len(running)) as capture:
                futures = [capture.submit(self._collect, node, proc) for node, proc in running]
                results.extend(f.result() for f in futures)
        results.sort(key=lambda r: r.index)

        report(results)
        failed = [r for r in results if not r.success]
        if failed:
            log(f"{len(failed)} of {len(results)} servers failed; writing output from the rest")

        path = write_artifact(results, self.config.output_path(len(nodes)))
        log(f"Results written to {path}")
        return results
