"""Unit tests for fleet provisioning and teardown."""

import threading
from unittest.mock import MagicMock, patch

import botocore
import pytest

from conftest import FakeSession
from eintopf_common import PROJECT_TAG, ProvisionError
from eintopf_fleet import Fleet, build_eintopf, cleanup_leftovers, shutdown_user_data
from eintopf_session import CommandResult


class ConnectingSession(FakeSession):
    def __init__(self, address, user=None, key_path=None):
        super().__init__(address)

    def connect(self, timeout):
        return self


def _instances(n, launch_order=None):
    order = launch_order or list(range(n))
    return [
        {
            "InstanceId": f"i-{idx:04d}",
            "AmiLaunchIndex": idx,
            "PublicIpAddress": f"54.0.0.{idx}",
            "PrivateIpAddress": f"10.0.0.{idx}",
            "PublicDnsName": f"ec2-{idx}.compute.amazonaws.com",
        }
        for idx in order
    ]


@pytest.fixture
def ec2():
    return MagicMock()


@pytest.fixture
def credentials(ec2):
    creds = MagicMock()
    creds.session.return_value.client.return_value = ec2
    return creds


def _serve(ec2, n, launch_order=None):
    instances = _instances(n, launch_order)
    ec2.run_instances.return_value = {"Instances": instances}
    ec2.describe_instances.return_value = {"Reservations": [{"Instances": list(reversed(instances))}]}


@pytest.fixture(autouse=True)
def quiet():
    with patch("eintopf_fleet.log"), patch("eintopf_fleet.RemoteSession", ConnectingSession):
        yield


class TestProvision:
    """Tests for Fleet.provision."""

    @pytest.mark.parametrize("n", [1, 2, 3, 7])
    def test_partition_indices_are_contiguous(self, n, config, credentials, ec2, pool):
        _serve(ec2, n)
        with Fleet(config, credentials, pool) as fleet:
            nodes = fleet.provision(n, bootstrap=lambda node: None)

        assert sorted(node.index for node in nodes) == list(range(n))
        assert len({node.index for node in nodes}) == n

    def test_indices_follow_launch_index(self, config, credentials, ec2, pool):
        _serve(ec2, 3, launch_order=[2, 0, 1])
        with Fleet(config, credentials, pool) as fleet:
            nodes = fleet.provision(3, bootstrap=lambda node: None)

        assert [node.instance_id for node in nodes] == ["i-0000", "i-0001", "i-0002"]
        assert [node.index for node in nodes] == [0, 1, 2]
        assert nodes[1].private_ip == "10.0.0.1"

    def test_run_instances_request(self, config, credentials, ec2, pool):
        _serve(ec2, 2)
        with Fleet(config, credentials, pool) as fleet:
            fleet.provision(2, bootstrap=lambda node: None)

        kwargs = ec2.run_instances.call_args[1]
        assert kwargs["MinCount"] == kwargs["MaxCount"] == 2
        assert kwargs["InstanceType"] == config.instance_type
        assert kwargs["InstanceInitiatedShutdownBehavior"] == "terminate"
        assert kwargs["UserData"] == shutdown_user_data(config.max_duration_hours)
        tags = kwargs["TagSpecifications"][0]["Tags"]
        assert {"Key": "Project", "Value": PROJECT_TAG} in tags
        assert "SecurityGroupIds" not in kwargs

    def test_each_machine_named_by_index(self, config, credentials, ec2, pool):
        _serve(ec2, 3, launch_order=[1, 2, 0])
        with Fleet(config, credentials, pool) as fleet:
            fleet.provision(3, bootstrap=lambda node: None)

        named = {
            c[1]["Resources"][0]: c[1]["Tags"][0]["Value"]
            for c in ec2.create_tags.call_args_list
        }
        assert named == {
            "i-0000": f"{PROJECT_TAG}-3h-0",
            "i-0001": f"{PROJECT_TAG}-3h-1",
            "i-0002": f"{PROJECT_TAG}-3h-2",
        }

    def test_bootstrap_runs_on_every_node(self, config, credentials, ec2, pool):
        _serve(ec2, 4)
        seen = []
        lock = threading.Lock()

        def hook(node):
            with lock:
                seen.append(node.index)

        with Fleet(config, credentials, pool) as fleet:
            fleet.provision(4, bootstrap=hook)

        assert sorted(seen) == [0, 1, 2, 3]

    def test_bootstrap_failure_fails_whole_batch(self, config, credentials, ec2, pool):
        _serve(ec2, 3)

        def hook(node):
            if node.index == 1:
                raise ProvisionError("build failed")

        with pytest.raises(ProvisionError, match="ec2-1.compute.amazonaws.com"):
            with Fleet(config, credentials, pool) as fleet:
                fleet.provision(3, bootstrap=hook)

        ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-0000", "i-0001", "i-0002"])

    def test_waiter_timeout(self, config, credentials, ec2, pool):
        _serve(ec2, 2)
        ec2.get_waiter.return_value.wait.side_effect = botocore.exceptions.WaiterError(
            name="InstanceRunning", reason="Max attempts exceeded", last_response={}
        )
        with pytest.raises(ProvisionError, match="not running within"):
            with Fleet(config, credentials, pool) as fleet:
                fleet.provision(2, bootstrap=lambda node: None)

        ec2.terminate_instances.assert_called_once()

    def test_run_instances_rejected(self, config, credentials, ec2, pool):
        ec2.run_instances.side_effect = botocore.exceptions.ClientError(
            {"Error": {"Code": "InsufficientInstanceCapacity", "Message": "no capacity"}}, "RunInstances"
        )
        with pytest.raises(ProvisionError, match="no capacity"):
            with Fleet(config, credentials, pool) as fleet:
                fleet.provision(2, bootstrap=lambda node: None)

        ec2.terminate_instances.assert_not_called()

    def test_zero_machines(self, config, credentials, pool):
        with pytest.raises(ProvisionError):
            Fleet(config, credentials, pool).provision(0)


class TestTeardown:
    def test_teardown_closes_sessions_and_terminates(self, config, credentials, ec2, pool):
        _serve(ec2, 2)
        with Fleet(config, credentials, pool) as fleet:
            nodes = fleet.provision(2, bootstrap=lambda node: None)

        assert all(node.session.closed for node in nodes)
        ec2.get_waiter.assert_any_call("instance_terminated")

    def test_teardown_ignores_missing_instances(self, config, credentials, ec2, pool):
        _serve(ec2, 1)
        ec2.terminate_instances.side_effect = botocore.exceptions.ClientError(
            {"Error": {"Code": "InvalidInstanceID.NotFound", "Message": "gone"}}, "TerminateInstances"
        )
        with Fleet(config, credentials, pool) as fleet:
            fleet.provision(1, bootstrap=lambda node: None)

    def test_teardown_uses_fresh_credentials(self, config, credentials, ec2, pool):
        _serve(ec2, 1)
        with Fleet(config, credentials, pool) as fleet:
            fleet.provision(1, bootstrap=lambda node: None)
            assert credentials.session.call_count == 1

        assert credentials.session.call_count == 2
        ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-0000"])

    def test_cleanup_leftovers(self, config, credentials, ec2):
        ec2.get_paginator.return_value.paginate.return_value = [
            {"Reservations": [{"Instances": [{"InstanceId": "i-aaaa"}, {"InstanceId": "i-bbbb"}]}]},
            {"Reservations": [{"Instances": [{"InstanceId": "i-cccc"}]}]},
        ]
        assert cleanup_leftovers(config, credentials) == ["i-aaaa", "i-bbbb", "i-cccc"]
        ec2.get_paginator.assert_called_once_with("describe_instances")
        ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-aaaa", "i-bbbb", "i-cccc"])

    def test_cleanup_nothing_left(self, config, credentials, ec2):
        ec2.get_paginator.return_value.paginate.return_value = [{"Reservations": []}]
        assert cleanup_leftovers(config, credentials) == []
        ec2.terminate_instances.assert_not_called()


class TestBuildHook:
    def test_build_steps(self, make_nodes):
        node = make_nodes(1)[0]
        build_eintopf(node)

        assert node.session.commands == [
            ["git", "-C", "eintopf", "reset", "--hard", "2>&1"],
            ["git", "-C", "eintopf", "pull", "2>&1"],
            ["cd", "eintopf", "&&", "cargo", "b", "--release"],
        ]

    def test_build_step_failure(self, make_nodes):
        node = make_nodes(1, result=CommandResult(1, "", "merge conflict"))[0]
        with pytest.raises(ProvisionError, match="git reset failed.*merge conflict"):
            build_eintopf(node)
