"""Build the hosts manifest and push it to every node."""

from eintopf_common import MANIFEST_PATH, MEMBERSHIP_PORT, DistributionError, FanOutError, fan_out, log


def build_manifest(nodes, port: int = MEMBERSHIP_PORT) -> str:
    """One ``private_ip:port`` line per node, in partition-index order."""
    ordered = sorted(nodes, key=lambda node: node.index)
    return "".join(f"{node.private_ip}:{port}\n" for node in ordered)


def distribute(nodes, pool, path: str = MANIFEST_PATH, port: int = MEMBERSHIP_PORT) -> str:
    """Write the identical manifest to ``path`` on every node and return the path."""
    manifest = build_manifest(nodes, port)
    log(f" -> writing {len(nodes)}-entry manifest to {path} on every server")

    def write(node):
        result = node.session.run_to_completion(["cat", ">", path], input=manifest)
        if not result.success:
            raise DistributionError(result.stderr.strip() or f"exit status {result.exit_status}")

    try:
        fan_out(pool, write, nodes)
    except FanOutError as e:
        raise DistributionError(f"Manifest did not reach every server: {e}") from e
    return path
