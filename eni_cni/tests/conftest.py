from __future__ import annotations

import json

import httpx
import pytest
from botocore.exceptions import ClientError, WaiterError

from eni_cni.config import CNIEnvironment, Settings, settings
from eni_cni.metadata import MetadataResolver
from eni_cni.netns import NamespaceInstaller

INSTANCE_ID = "i-0123456789abcdef0"
PRIMARY_MAC = "0a:11:22:33:44:55"
ENI_MAC = "0a:aa:bb:cc:dd:01"
SUBNET_ID = "subnet-0abc"


@pytest.fixture(autouse=True)
def _isolate_filesystem(monkeypatch, tmp_path):
    """Point every on-disk location of the shared settings at tmp_path.

    Keeps tests from touching /tmp/cni-*, /var/run/netns or /var/log.
    """
    monkeypatch.setattr(settings, "state_root", str(tmp_path / "state"))
    monkeypatch.setattr(settings, "netns_dir", str(tmp_path / "netns"))
    monkeypatch.setattr(settings, "lock_path", str(tmp_path / "eni-cni.lock"))
    monkeypatch.setattr(settings, "log_file", str(tmp_path / "log" / "cni.log"))
    yield


@pytest.fixture
def plugin_settings(tmp_path) -> Settings:
    return Settings(
        state_root=str(tmp_path / "state"),
        netns_dir=str(tmp_path / "netns"),
        lock_path=str(tmp_path / "eni-cni.lock"),
        log_file=str(tmp_path / "log" / "cni.log"),
        lock_timeout=1.0,
        attach_timeout=0.05,
        detach_timeout=1.0,
        poll_interval=0,
        poll_max_interval=0,
    )


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeWaiter:
    def __init__(self, ec2: "FakeEC2", name: str):
        self.ec2 = ec2
        self.name = name

    def wait(self, **kwargs):
        self.ec2.calls.append((f"wait:{self.name}", kwargs))
        if self.ec2.waiter_error is not None:
            raise self.ec2.waiter_error


class FakeEC2:
    """In-memory stand-in for the boto3 EC2 client.

    One instance plays the cloud for the whole test, so it may be shared by
    an ADD plugin and an independent DEL plugin.
    """

    def __init__(
        self,
        interface_id: str = "eni-1",
        attachment_id: str = "attach-1",
        mac: str = ENI_MAC,
        used_indexes: tuple[int, ...] = (0,),
    ):
        self.interface_id = interface_id
        self.attachment_id = attachment_id
        self.mac = mac
        self.used_indexes = list(used_indexes)
        self.calls: list[tuple[str, dict]] = []
        self.errors: dict[str, list[Exception]] = {}
        self.waiter_error: Exception | None = None

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def fail(self, operation: str, *errors: Exception) -> None:
        self.errors.setdefault(operation, []).extend(errors)

    def _call(self, name: str, kwargs: dict) -> None:
        self.calls.append((name, kwargs))
        pending = self.errors.get(name)
        if pending:
            raise pending.pop(0)

    def create_network_interface(self, **kwargs):
        self._call("create_network_interface", kwargs)
        return {
            "NetworkInterface": {
                "NetworkInterfaceId": self.interface_id,
                "MacAddress": self.mac,
                "SubnetId": kwargs["SubnetId"],
                "Status": "pending",
            }
        }

    def describe_instances(self, **kwargs):
        self._call("describe_instances", kwargs)
        return {
            "Reservations": [{
                "Instances": [{
                    "InstanceId": kwargs["InstanceIds"][0],
                    "NetworkInterfaces": [
                        {"Attachment": {"DeviceIndex": index}} for index in self.used_indexes
                    ],
                }]
            }]
        }

    def attach_network_interface(self, **kwargs):
        self._call("attach_network_interface", kwargs)
        self.used_indexes.append(kwargs["DeviceIndex"])
        return {"AttachmentId": self.attachment_id, "NetworkCardIndex": 0}

    def detach_network_interface(self, **kwargs):
        self._call("detach_network_interface", kwargs)
        return {}

    def delete_network_interface(self, **kwargs):
        self._call("delete_network_interface", kwargs)
        return {}

    def get_waiter(self, name: str) -> FakeWaiter:
        return FakeWaiter(self, name)


def waiter_error(code: str) -> WaiterError:
    return WaiterError(
        name="NetworkInterfaceAvailable",
        reason="Waiter encountered a terminal failure state",
        last_response={"Error": {"Code": code, "Message": code}},
    )


@pytest.fixture
def fake_ec2() -> FakeEC2:
    return FakeEC2()


class FakeIpRunner:
    """Answers the ip(8) invocations NamespaceInstaller makes."""

    def __init__(self, links: dict[str, str] | None = None):
        # host link name -> MAC
        self.links = dict(links or {"eth0": PRIMARY_MAC, "ens6": ENI_MAC})
        self.commands: list[list[str]] = []
        self.failures: dict[tuple[str, ...], str] = {}
        self.address = {"family": "inet", "local": "10.0.1.23", "prefixlen": 24, "broadcast": "10.0.1.255"}
        self.gateway = "10.0.1.1"
        # old name -> new name, applied the first time the old name is queried
        self.renames: dict[str, str] = {}

    def fail_on(self, *prefix: str, stderr: str = "RTNETLINK answers: Operation not permitted") -> None:
        self.failures[prefix] = stderr

    def __call__(self, args: list[str]) -> tuple[int, str, str]:
        self.commands.append(list(args))
        for prefix, stderr in self.failures.items():
            if tuple(args[:len(prefix)]) == prefix:
                return 2, "", stderr

        if args == ["-j", "link", "show"]:
            return 0, json.dumps([{"ifname": n, "address": m} for n, m in self.links.items()]), ""
        if args[:4] == ["-j", "addr", "show", "dev"]:
            dev = args[4]
            if dev in self.renames:
                self.links[self.renames.pop(dev)] = self.links.pop(dev)
            if dev not in self.links:
                return 1, "", f'Device "{dev}" does not exist.'
            info = [self.address] if self.address else []
            return 0, json.dumps([{"ifname": dev, "addr_info": info}]), ""
        if args == ["-j", "route", "show", "default"]:
            return 0, json.dumps([{"dst": "default", "gateway": self.gateway, "dev": "eth0"}]), ""
        if args[:2] == ["link", "set"] and len(args) == 5 and args[3] == "netns":
            self.links.pop(args[2], None)
        return 0, "", ""


@pytest.fixture
def fake_ip() -> FakeIpRunner:
    return FakeIpRunner()


@pytest.fixture
def installer(plugin_settings, fake_ip) -> NamespaceInstaller:
    inst = NamespaceInstaller(plugin_settings)
    inst._run_ip_command = fake_ip  # type: ignore[assignment]
    return inst


def imds_handler(overrides: dict[str, httpx.Response] | None = None, token: bool = True):
    overrides = overrides or {}
    paths = {
        "/latest/meta-data/instance-id": INSTANCE_ID,
        "/latest/meta-data/placement/availability-zone": "us-east-1a",
        "/latest/meta-data/mac": PRIMARY_MAC,
        f"/latest/meta-data/network/interfaces/macs/{PRIMARY_MAC}/subnet-id": SUBNET_ID,
        "/latest/meta-data/network/interfaces/macs/": f"{PRIMARY_MAC}/\n",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path in overrides:
            return overrides[path]
        if path == "/latest/api/token":
            return httpx.Response(200, text="tok") if token else httpx.Response(404)
        if path in paths:
            return httpx.Response(200, text=paths[path])
        return httpx.Response(404)

    return handler


@pytest.fixture
def metadata(plugin_settings) -> MetadataResolver:
    client = httpx.Client(transport=httpx.MockTransport(imds_handler()))
    return MetadataResolver(plugin_settings, client=client)


def cni_env(command: str, container_id: str = "0123456789abcdef", **kwargs) -> CNIEnvironment:
    return CNIEnvironment(
        command=command,
        containerid=container_id,
        netns=kwargs.pop("netns", "/proc/4242/ns/net"),
        ifname=kwargs.pop("ifname", "eth1"),
        args=kwargs.pop("args", ""),
        path=kwargs.pop("path", "/opt/cni/bin"),
    )
