"""Network namespace wiring for the container's ENI.

This module moves a host link into the container's network namespace and
configures it there:

1. Register a named handle for the namespace (`ip netns` resolves it by
   container id)
2. Capture the link's address, broadcast and gateway on the host side
3. Move the link into the namespace and rename it
4. Assign the captured address
5. Replace the default route

Steps 3-5 must run in that order; each depends on kernel state the
previous one established. Addresses are only visible in the host
namespace before the move, so step 2 has to come first.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from eni_cni.config import Settings, settings as default_settings
from eni_cni.errors import NamespaceError
from eni_cni.polling import poll_until

logger = logging.getLogger(__name__)

# ip(8) stderr when a device name no longer resolves
_DEVICE_GONE = "does not exist"
_DEVICE_NOT_FOUND = "Cannot find device"


@dataclass(frozen=True)
class HostLinkFacts:
    """Addressing of a link as seen from the host namespace."""

    address: str  # CIDR, e.g. "10.0.1.23/24"
    broadcast: str
    gateway: str
    link: str = ""


class NamespaceInstaller:
    """Runs the ip(8) commands that hand a link to a container namespace."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.netns_dir = Path(self.settings.netns_dir)

    def _run_ip_command(self, args: list[str]) -> tuple[int, str, str]:
        """Run an ip command and return (returncode, stdout, stderr)."""
        cmd = [self.settings.ip_binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.settings.command_timeout,
            )
            return result.returncode, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out: {' '.join(cmd)}")
            return 1, "", "Command timed out"
        except OSError as e:
            logger.error(f"Command failed: {' '.join(cmd)}: {e}")
            return 1, "", str(e)

    def _ip(self, args: list[str]) -> str:
        """Run an ip command that must succeed; return its stdout."""
        returncode, stdout, stderr = self._run_ip_command(args)
        if returncode != 0:
            command = [self.settings.ip_binary] + args
            raise NamespaceError(
                f"'{' '.join(command)}' failed: {stderr.strip() or f'exit {returncode}'}",
                command=command,
                stderr=stderr,
            )
        return stdout

    def _ip_json(self, args: list[str]) -> list[dict[str, Any]]:
        stdout = self._ip(["-j"] + args)
        if not stdout.strip():
            return []
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise NamespaceError(f"Unparseable output from ip {' '.join(args)}: {e}") from e

    # --- Namespace handles ---

    def handle_path(self, container_id: str) -> Path:
        return self.netns_dir / container_id

    def create_handle(self, container_id: str, netns_path: str) -> Path:
        """Expose the container namespace as <netns_dir>/<container_id>.

        Replaces any stale entry left by an earlier invocation.
        """
        if not netns_path:
            raise NamespaceError("CNI_NETNS is not set; cannot register namespace handle")
        self.netns_dir.mkdir(parents=True, exist_ok=True)
        handle = self.handle_path(container_id)
        tmp = handle.with_name(f".{container_id}.tmp")
        tmp.unlink(missing_ok=True)
        os.symlink(netns_path, tmp)
        os.replace(tmp, handle)
        logger.info(f"Namespace handle {handle} -> {netns_path}")
        return handle

    def remove_handle(self, container_id: str) -> bool:
        """Delete the namespace handle.

        Returns:
            True if a handle was removed, False if none existed
        """
        handle = self.handle_path(container_id)
        if not handle.is_symlink() and not handle.exists():
            logger.debug(f"Namespace handle {handle} does not exist")
            return False
        handle.unlink()
        logger.info(f"Removed namespace handle {handle}")
        return True

    # --- Host-side discovery ---

    def find_link_by_mac(self, mac: str) -> str | None:
        """Return the host link name carrying `mac`, if any."""
        wanted = mac.lower()
        for link in self._ip_json(["link", "show"]):
            if str(link.get("address", "")).lower() == wanted:
                return link.get("ifname")
        return None

    def link_facts(self, link: str) -> HostLinkFacts | None:
        """Read the link's IPv4 address and the host default gateway.

        Returns:
            HostLinkFacts, or None while the link has no IPv4 address yet
        """
        address = None
        broadcast = None
        for entry in self._ip_json(["addr", "show", "dev", link]):
            for info in entry.get("addr_info", []):
                if info.get("family") == "inet":
                    address = f"{info['local']}/{info['prefixlen']}"
                    broadcast = info.get("broadcast")
                    break
            if address:
                break
        if not address:
            return None
        if not broadcast:
            broadcast = str(ipaddress.ip_interface(address).network.broadcast_address)

        routes = self._ip_json(["route", "show", "default"])
        own = [r for r in routes if r.get("dev") == link and r.get("gateway")]
        any_gateway = [r for r in routes if r.get("gateway")]
        chosen = (own or any_gateway or [None])[0]
        if chosen is None:
            raise NamespaceError("No default gateway found in the host namespace")

        return HostLinkFacts(
            address=address, broadcast=broadcast, gateway=chosen["gateway"], link=link
        )

    def wait_for_link_facts(self, link: str, timeout: float, mac: str | None = None) -> HostLinkFacts:
        """Poll until the freshly attached link has an address.

        udev may rename a new link shortly after it appears (eth1 -> ens6),
        so with `mac` given the link is looked up again on every attempt and
        the returned facts carry its final name.
        """
        def _read_facts() -> HostLinkFacts | None:
            name = self.find_link_by_mac(mac) if mac else link
            if not name:
                return None
            try:
                return self.link_facts(name)
            except NamespaceError as e:
                if _DEVICE_GONE in e.stderr or _DEVICE_NOT_FOUND in e.stderr:
                    logger.debug(f"Link {name} vanished while polling, likely renamed")
                    return None
                raise

        facts = poll_until(
            _read_facts,
            timeout=timeout,
            interval=self.settings.poll_interval,
            max_interval=self.settings.poll_max_interval,
            description=f"an IPv4 address on {link}",
        )
        if facts is None:
            raise NamespaceError(f"Link {link} has no IPv4 address after {timeout}s")
        logger.info(
            f"inetaddr: {facts.address}, gateway: {facts.gateway}, "
            f"broadcast: {facts.broadcast}, dev: {facts.link}"
        )
        return facts

    # --- Namespace configuration ---

    def move_interface(self, link: str, container_id: str, target: str) -> None:
        """Move `link` into the namespace, rename it to `target`, bring it up."""
        self._ip(["link", "set", link, "netns", container_id])
        self._ip(["-n", container_id, "link", "set", link, "name", target])
        self._ip(["-n", container_id, "link", "set", "lo", "up"])
        self._ip(["-n", container_id, "link", "set", target, "up"])
        logger.info(f"dev {link} moved to netns {container_id} as {target}")

    def configure_address(
        self,
        container_id: str,
        cidr: str,
        broadcast: str,
        target: str,
    ) -> None:
        self._ip([
            "-n", container_id, "addr", "add", cidr,
            "broadcast", broadcast, "dev", target,
        ])
        logger.info(
            f"ip address {cidr} broadcast {broadcast} added to {target} in {container_id} netns"
        )

    def install_default_route(self, container_id: str, gateway: str, target: str) -> None:
        """Replace any default route in the namespace with one via `gateway`."""
        returncode, _, stderr = self._run_ip_command(
            ["-n", container_id, "route", "del", "default"]
        )
        if returncode != 0:
            logger.debug(f"No default route to remove in {container_id}: {stderr.strip()}")
        self._ip([
            "-n", container_id, "route", "add", "default",
            "via", gateway, "dev", target,
        ])
        logger.info(f"default route via {gateway} added to {target} in {container_id} netns")
