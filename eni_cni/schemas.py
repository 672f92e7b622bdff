"""CNI wire and persisted-state schemas.

These Pydantic models define the JSON exchanged with the container runtime
over stdin/stdout and the record handed from an ADD invocation to the later,
independent DEL invocation through the working directory.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RECORD_SCHEMA_VERSION = 1


# --- Runtime -> Plugin ---

class NetConf(BaseModel):
    """Network configuration read from stdin."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    cni_version: str = Field(default="", alias="cniVersion")
    name: str = ""
    type: str = ""
    # Result computed by earlier plugins in the chain, echoed unchanged
    prev_result: Any = Field(default=None, alias="prevResult")
    # Plugin-specific overrides
    security_group_ids: list[str] | None = Field(default=None, alias="securityGroupIds")
    subnet_id: str | None = Field(default=None, alias="subnetId")


# --- Plugin -> Runtime ---

class ErrorResult(BaseModel):
    """Failure result written to stdout when ADD aborts."""
    model_config = ConfigDict(populate_by_name=True)

    cni_version: str = Field(alias="cniVersion")
    code: int
    msg: str


class VersionResult(BaseModel):
    """Reply to the VERSION command."""
    model_config = ConfigDict(populate_by_name=True)

    cni_version: str = Field(alias="cniVersion")
    supported_versions: list[str] = Field(alias="supportedVersions")


# --- Persisted state ---

class ENIRecord(BaseModel):
    """Everything DEL needs to release the ENI that ADD provisioned."""
    schema_version: Literal[1] = RECORD_SCHEMA_VERSION
    container_id: str
    interface_id: str
    mac_address: str = ""
    region: str = ""
    # None until the attach call succeeds
    attachment_id: str | None = None
    device_index: int | None = None
    # Host-side link name the ENI appeared as after attach
    link_name: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_provider_responses(
        cls,
        container_id: str,
        create_response: dict[str, Any],
        attach_response: dict[str, Any] | None = None,
        region: str = "",
    ) -> "ENIRecord":
        """Rebuild a record from raw CreateNetworkInterface/AttachNetworkInterface output."""
        eni = create_response.get("NetworkInterface", {})
        attach = attach_response or {}
        return cls(
            container_id=container_id,
            interface_id=eni["NetworkInterfaceId"],
            mac_address=eni.get("MacAddress", ""),
            region=region,
            attachment_id=attach.get("AttachmentId"),
        )
