from __future__ import annotations

from eni_cni.config import CNIEnvironment, Settings
from eni_cni.errors import AttachLimitExceededError, ConfigError, MetadataError, PluginError, ProvisionError
from eni_cni.schemas import ENIRecord, ErrorResult, NetConf


def test_netconf_keeps_prev_result_and_unknown_keys():
    conf = NetConf.model_validate({
        "cniVersion": "0.4.0",
        "name": "nomad-eni",
        "type": "vpc-eni",
        "prevResult": {"ips": []},
        "securityGroupIds": ["sg-1"],
        "runtimeConfig": {"portMappings": []},
    })
    assert conf.cni_version == "0.4.0"
    assert conf.prev_result == {"ips": []}
    assert conf.security_group_ids == ["sg-1"]
    assert conf.subnet_id is None
    assert conf.model_extra["runtimeConfig"] == {"portMappings": []}


def test_error_result_wire_format():
    envelope = ErrorResult(cni_version="0.3.1", code=1, msg="Failed to execute ADD command.")
    assert envelope.model_dump_json(by_alias=True) == (
        '{"cniVersion":"0.3.1","code":1,"msg":"Failed to execute ADD command."}'
    )


def test_record_from_provider_responses():
    record = ENIRecord.from_provider_responses(
        "0123456789abcdef",
        {"NetworkInterface": {"NetworkInterfaceId": "eni-1", "MacAddress": "0a:aa:bb:cc:dd:01"}},
        {"AttachmentId": "attach-1"},
        region="us-east-1",
    )
    assert record.interface_id == "eni-1"
    assert record.attachment_id == "attach-1"
    assert record.device_index is None


def test_cni_environment_reads_runtime_variables(monkeypatch):
    monkeypatch.setenv("CNI_COMMAND", "DEL")
    monkeypatch.setenv("CNI_CONTAINERID", "0123456789abcdef")
    monkeypatch.setenv("CNI_NETNS", "/proc/4242/ns/net")
    monkeypatch.setenv("CNI_IFNAME", "eth1")
    monkeypatch.setenv("CNI_ARGS", "IgnoreUnknown=1")

    env = CNIEnvironment()
    assert env.command == "DEL"
    assert env.containerid == "0123456789abcdef"
    assert env.netns == "/proc/4242/ns/net"
    assert env.args == "IgnoreUnknown=1"


def test_settings_env_prefix(monkeypatch):
    monkeypatch.setenv("ENI_CNI_STATE_ROOT", "/run/eni-cni")
    monkeypatch.setenv("ENI_CNI_SECURITY_GROUP_IDS", '["sg-1", "sg-2"]')

    s = Settings()
    assert s.state_root == "/run/eni-cni"
    assert s.security_group_ids == ["sg-1", "sg-2"]


def test_retry_flags():
    assert PluginError("x").retryable is False
    assert ConfigError("x").retryable is False
    assert MetadataError("x").retryable is True
    assert ProvisionError("x", retryable=True).retryable is True
    assert ProvisionError("x").retryable is False
    assert AttachLimitExceededError("x").retryable is False
