"""EC2 instance metadata lookup.

Resolves the instance facts an invocation needs (instance id, zone, region,
primary MAC, subnet) and assembles the InvocationContext. Unreachable
metadata fails fast with MetadataError instead of yielding an empty context.
"""

from __future__ import annotations

import logging
import re

import httpx

from eni_cni.config import CNIEnvironment, Settings, settings as default_settings
from eni_cni.context import InvocationContext, workdir_for
from eni_cni.errors import ConfigError, MetadataError

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-aws-ec2-metadata-token"
TOKEN_TTL_HEADER = "X-aws-ec2-metadata-token-ttl-seconds"

_ZONE_SUFFIX = re.compile(r"[a-z]$")


def region_from_zone(availability_zone: str) -> str:
    """Derive the region from an availability zone ("us-east-1a" -> "us-east-1")."""
    return _ZONE_SUFFIX.sub("", availability_zone)


class MetadataResolver:
    """Client for the instance metadata service (IMDSv2 with v1 fallback)."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ):
        self.settings = settings or default_settings
        self._client = client or httpx.Client(timeout=self.settings.imds_timeout)
        self._token: str | None = None
        self._token_checked = False

    def close(self) -> None:
        self._client.close()

    def _session_token(self) -> str | None:
        """Fetch an IMDSv2 token once; None means fall back to IMDSv1."""
        if self._token_checked:
            return self._token
        self._token_checked = True
        try:
            response = self._client.put(
                f"{self.settings.imds_url}/api/token",
                headers={TOKEN_TTL_HEADER: str(self.settings.imds_token_ttl)},
            )
            if response.status_code == 200 and response.text:
                self._token = response.text.strip()
            else:
                logger.debug(f"IMDSv2 token unavailable (HTTP {response.status_code})")
        except httpx.HTTPError as e:
            logger.debug(f"IMDSv2 token request failed: {e}")
        return self._token

    def get(self, path: str) -> str:
        """GET a metadata path, raising MetadataError on any failure or empty value."""
        url = f"{self.settings.imds_url}/meta-data/{path}"
        headers = {}
        token = self._session_token()
        if token:
            headers[TOKEN_HEADER] = token
        try:
            response = self._client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise MetadataError(f"Instance metadata unreachable ({path}): {e}") from e
        if response.status_code != 200:
            raise MetadataError(
                f"Instance metadata returned HTTP {response.status_code} for {path}"
            )
        value = response.text.strip()
        if not value:
            raise MetadataError(f"Instance metadata returned an empty value for {path}")
        return value

    def instance_id(self) -> str:
        return self.get("instance-id")

    def availability_zone(self) -> str:
        return self.get("placement/availability-zone")

    def primary_mac(self) -> str:
        return self.get("mac")

    def subnet_id(self, mac: str) -> str:
        return self.get(f"network/interfaces/macs/{mac}/subnet-id")

    def attached_macs(self) -> list[str]:
        """MACs of every interface currently attached to this instance."""
        listing = self.get("network/interfaces/macs/")
        return [line.strip().rstrip("/") for line in listing.splitlines() if line.strip()]

    def resolve(self, env: CNIEnvironment) -> InvocationContext:
        """Build the invocation context from the CNI environment and metadata.

        Raises:
            ConfigError: CNI_CONTAINERID is missing
            MetadataError: metadata service unreachable or incomplete
        """
        if not env.containerid:
            raise ConfigError("CNI_CONTAINERID is not set")

        instance_id = self.instance_id()
        zone = self.availability_zone()
        mac = self.primary_mac()
        subnet_id = self.subnet_id(mac)

        ctx = InvocationContext(
            container_id=env.containerid,
            netns=env.netns,
            ifname=env.ifname or self.settings.default_ifname,
            args=env.args,
            workdir=workdir_for(env.containerid, self.settings.state_root),
            instance_id=instance_id,
            region=region_from_zone(zone),
            availability_zone=zone,
            subnet_id=subnet_id,
            primary_mac=mac,
        )
        logger.info(
            f"AWS (Instance ID: {ctx.instance_id}, Region: {ctx.region}, "
            f"Subnet ID: {ctx.subnet_id})"
        )
        return ctx
