"""
EC2 fleet provisioning for one sweep iteration.

A Fleet requests N identical machines under assumed-role credentials, waits
for them to run and accept ssh, bootstraps all of them in parallel and hands
back Nodes with partition indices assigned in launch order. Leaving the
``with`` block terminates every machine the fleet launched.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import botocore

from eintopf_common import (
    BOTO_CONFIG,
    PROJECT_TAG,
    CredentialError,
    FanOutError,
    ProvisionError,
    fan_out,
    log,
)
from eintopf_session import RemoteSession

LIVE_STATES = ["pending", "running", "stopping", "stopped"]


@dataclass
class Node:
    index: int
    instance_id: str
    public_ip: str
    private_ip: str
    public_dns: str = ""
    session: Optional[RemoteSession] = None

    @property
    def address(self) -> str:
        return self.public_dns or self.public_ip

    def __str__(self):
        return self.address or self.instance_id


class BootstrapCancelled(Exception):
    """A sibling node failed first; this node stopped before finishing."""


# ---------------------------------------------------------------------------
# Bootstrap hooks
# ---------------------------------------------------------------------------

def just_exec(node: Node, label: str, argv):
    """Run one bootstrap step, raising ProvisionError on a nonzero exit."""
    result = node.session.run_to_completion(argv)
    if not result.success:
        raise ProvisionError(f"{label} failed on {node}: {result.stderr.strip()}")
    return result.stdout


def build_eintopf(node: Node):
    """Reset, update and rebuild the eintopf checkout on a node."""
    log(f" -> building eintopf on {node}")
    just_exec(node, "git reset", ["git", "-C", "eintopf", "reset", "--hard", "2>&1"])
    just_exec(node, "git pull", ["git", "-C", "eintopf", "pull", "2>&1"])
    just_exec(node, "build", ["cd", "eintopf", "&&", "cargo", "b", "--release"])


NodeHook = Callable[[Node], None]


# ---------------------------------------------------------------------------
# Fleet
# ---------------------------------------------------------------------------

def tags_common():
    return [{"Key": "Project", "Value": PROJECT_TAG}]


def shutdown_user_data(max_duration_hours):
    """Cloud-init script that powers the machine off once its lifetime is up."""
    return f"#!/bin/sh\nshutdown -h +{max_duration_hours * 60}\n"


class Fleet:
    """One iteration's machines. Use as a context manager."""

    def __init__(self, config, credentials, pool):
        self.config = config
        self.credentials = credentials
        self.pool = pool
        self.nodes: List[Node] = []
        self._instance_ids: List[str] = []
        self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.teardown()
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError, CredentialError) as e:
            log(f"WARNING: fleet teardown failed: {e}")
            if exc_type is None:
                raise
        return False

    def ec2(self, fresh=False):
        """EC2 client under the current assumed-role credentials."""
        if fresh or self._client is None:
            self._client = self.credentials.session().client(
                "ec2", region_name=self.config.region, config=BOTO_CONFIG
            )
        return self._client

    def _launch(self, n):
        cfg = self.config
        name = f"{PROJECT_TAG}-{n}h"
        params = dict(
            ImageId=cfg.ami_id,
            InstanceType=cfg.instance_type,
            KeyName=cfg.key_name,
            MinCount=n,
            MaxCount=n,
            InstanceInitiatedShutdownBehavior="terminate",
            UserData=shutdown_user_data(cfg.max_duration_hours),
            TagSpecifications=[{
                "ResourceType": "instance",
                "Tags": tags_common() + [
                    {"Key": "Name", "Value": name},
                    {"Key": "Role", "Value": "server"},
                ],
            }],
        )
        if cfg.subnet_id:
            params["SubnetId"] = cfg.subnet_id
        if cfg.security_group_id:
            params["SecurityGroupIds"] = [cfg.security_group_id]
        resp = self.ec2().run_instances(**params)
        # launch index order is stable for one request; partition indices follow it
        instances = sorted(resp["Instances"], key=lambda inst: inst.get("AmiLaunchIndex", 0))
        ids = [inst["InstanceId"] for inst in instances]
        self._instance_ids.extend(ids)
        for i, iid in enumerate(ids):
            log(f"CREATED instance {cfg.instance_type}: {iid}")
            self.ec2().create_tags(Resources=[iid], Tags=[{"Key": "Name", "Value": f"{name}-{i}"}])
        return ids

    def _wait_running(self, ids, deadline):
        remaining = max(deadline - time.monotonic(), 1)
        delay = 5
        self.ec2().get_waiter("instance_running").wait(
            InstanceIds=ids,
            WaiterConfig={"Delay": delay, "MaxAttempts": max(1, int(remaining // delay))},
        )

    def _describe(self, ids) -> List[Node]:
        resp = self.ec2().describe_instances(InstanceIds=ids)
        by_id = {}
        for res in resp.get("Reservations", []):
            for inst in res.get("Instances", []):
                by_id[inst["InstanceId"]] = inst
        missing = [iid for iid in ids if iid not in by_id]
        if missing:
            raise ProvisionError(f"Instances not found after launch: {', '.join(missing)}")
        nodes = []
        for i, iid in enumerate(ids):
            inst = by_id[iid]
            nodes.append(Node(
                index=i,
                instance_id=iid,
                public_ip=inst.get("PublicIpAddress", ""),
                private_ip=inst.get("PrivateIpAddress", ""),
                public_dns=inst.get("PublicDnsName", ""),
            ))
        return nodes

    def _bring_up(self, node, bootstrap, deadline, abort):
        session = RemoteSession(
            node.address,
            user=self.config.ssh_user,
            key_path=self.config.ssh_key_path,
        )
        try:
            node.session = session.connect(timeout=max(deadline - time.monotonic(), 0))
        except ConnectionError as e:
            raise ProvisionError(f"timed out waiting for ssh: {e}") from e
        if abort.is_set():
            raise BootstrapCancelled("sibling node failed")
        bootstrap(node)

    def provision(self, n: int, bootstrap: NodeHook = build_eintopf) -> List[Node]:
        """Launch and bootstrap ``n`` machines; all succeed or ProvisionError."""
        if n < 1:
            raise ProvisionError(f"Cannot provision a fleet of {n} machines")
        deadline = time.monotonic() + self.config.wait_limit
        try:
            ids = self._launch(n)
            self._wait_running(ids, deadline)
            nodes = self._describe(ids)
        except botocore.exceptions.WaiterError as e:
            raise ProvisionError(
                f"Machines not running within {self.config.wait_limit}s: {e}"
            ) from e
        except botocore.exceptions.ClientError as e:
            msg = e.response.get("Error", {}).get("Message", str(e))
            raise ProvisionError(f"Fleet request for {n} x {self.config.instance_type} failed: {msg}") from e
        except botocore.exceptions.BotoCoreError as e:
            raise ProvisionError(f"Fleet request for {n} x {self.config.instance_type} failed: {e}") from e

        self.nodes = nodes
        for node in nodes:
            log(f"  server {node.index}: public={node.public_ip} private={node.private_ip}")

        abort = threading.Event()
        try:
            fan_out(self.pool, lambda node: self._bring_up(node, bootstrap, deadline, abort), nodes, abort)
        except FanOutError as e:
            failed = [(node, exc) for node, exc in e.failures if not isinstance(exc, BootstrapCancelled)]
            for node, exc in failed:
                log(f"{node} failed to bootstrap: {exc}")
            raise ProvisionError(
                f"Bootstrap failed on {len(failed)} of {n} machines: "
                + "; ".join(f"{node}: {exc}" for node, exc in failed)
            ) from e
        return nodes

    def teardown(self):
        for node in self.nodes:
            if node.session:
                node.session.close()
        if not self._instance_ids:
            return
        ids, self._instance_ids = self._instance_ids, []
        # the benchmark may have outlived the credentials the fleet was launched with
        terminate_instances(self.ec2(fresh=True), ids)


def terminate_instances(client, ids):
    for iid in ids:
        log(f"TERMINATING instance: {iid}")
    try:
        client.terminate_instances(InstanceIds=ids)
        client.get_waiter("instance_terminated").wait(InstanceIds=ids)
    except botocore.exceptions.ClientError as e:
        if e.response["Error"]["Code"] != "InvalidInstanceID.NotFound":
            raise


def find_project_instances(client):
    """Find all live instances carrying the project tag."""
    pages = client.get_paginator("describe_instances").paginate(
        Filters=[{"Name": "tag:Project", "Values": [PROJECT_TAG]},
                 {"Name": "instance-state-name", "Values": LIVE_STATES}]
    )
    return [
        inst["InstanceId"]
        for page in pages
        for res in page.get("Reservations", [])
        for inst in res.get("Instances", [])
    ]


def cleanup_leftovers(config, credentials):
    """Terminate machines left behind by an interrupted sweep."""
    client = credentials.session().client("ec2", region_name=config.region, config=BOTO_CONFIG)
    ids = find_project_instances(client)
    if not ids:
        log("No leftover instances found to terminate.")
        return []
    terminate_instances(client, ids)
    log("Cleanup complete.")
    return ids
