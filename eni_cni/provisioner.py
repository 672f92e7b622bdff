"""ENI lifecycle against the EC2 API.

Creates and attaches a secondary ENI on ADD, detaches and deletes it on
DEL. Every provider response is written to the container's working
directory, and the ENIRecord there is kept current after each step so a
later DEL can release whatever was actually provisioned.

Failure semantics:
- create/attach failures are fatal; an attach failure deletes the ENI it
  just created before re-raising
- detach/delete failures are returned as OperationResult, never raised
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from eni_cni.config import Settings, settings as default_settings
from eni_cni.context import InvocationContext
from eni_cni.errors import (
    AttachError,
    AttachLimitExceededError,
    DeleteError,
    DetachError,
    PluginError,
    ProvisionError,
)
from eni_cni.lock import host_lock
from eni_cni.polling import poll_until, retry
from eni_cni.schemas import ENIRecord
from eni_cni.state import (
    ATTACH_RESPONSE,
    CREATE_RESPONSE,
    DELETE_RESPONSE,
    DETACH_RESPONSE,
    StateStore,
)

logger = logging.getLogger(__name__)

CONTAINER_TAG = "cni:container-id"

# Provider error codes worth retrying later
TRANSIENT_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
}
ATTACH_LIMIT_CODE = "AttachmentLimitExceeded"
ENI_NOT_FOUND_CODE = "InvalidNetworkInterfaceID.NotFound"
ATTACHMENT_NOT_FOUND_CODE = "InvalidAttachmentID.NotFound"
ENI_IN_USE_CODE = "InvalidNetworkInterface.InUse"
# InvalidParameterValue message when the requested slot is taken
DEVICE_INDEX_TAKEN = "already has an interface attached at device index"


def create_ec2_client(region: str):
    """EC2 client for `region` with the SDK's standard retry mode."""
    return boto3.client(
        "ec2",
        region_name=region,
        config=Config(retries={"max_attempts": 5, "mode": "standard"}),
    )


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "")
    return ""


def _error_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Message", str(error))
    return str(error)


def _is_transient(error: Exception) -> bool:
    return isinstance(error, BotoCoreError) or _error_code(error) in TRANSIENT_CODES


class DeviceIndexInUseError(AttachError):
    """The chosen device index was taken between selection and attach."""

    retryable = True


@dataclass
class OperationResult:
    """Outcome of one best-effort teardown step."""

    step: str
    ok: bool
    skipped: bool = False
    error: PluginError | None = None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


class ENIProvisioner:
    """Creates, attaches, detaches and deletes the container's ENI."""

    def __init__(
        self,
        ec2: Any,
        settings: Settings | None = None,
        link_locator: Callable[[str], str | None] | None = None,
        mac_lister: Callable[[], list[str]] | None = None,
    ):
        """
        Args:
            ec2: boto3 EC2 client (or a stand-in with the same methods)
            settings: Plugin settings
            link_locator: Maps an ENI MAC address to its host link name
            mac_lister: Lists MACs attached to the instance (device-index fallback)
        """
        self.ec2 = ec2
        self.settings = settings or default_settings
        self.link_locator = link_locator
        self.mac_lister = mac_lister

    # --- Setup ---

    def create_and_attach(
        self,
        ctx: InvocationContext,
        store: StateStore,
        security_group_ids: list[str] | None = None,
        subnet_id: str | None = None,
    ) -> ENIRecord:
        """Create an ENI in the instance's subnet and attach it to the instance.

        Raises:
            ProvisionError: creation failed, or a stale ENI could not be released
            AttachError: attach failed or the link never appeared (ENI deleted)
        """
        stale = store.load_record(ctx.container_id, region=ctx.region)
        if stale is not None:
            logger.warning(
                f"Found ENI {stale.interface_id} from an earlier ADD for "
                f"{ctx.container_id}; releasing it before provisioning"
            )
            failed = [r for r in self.release(stale, store) if not r.ok]
            if failed:
                raise ProvisionError(
                    f"Could not release ENI {stale.interface_id} left by an earlier ADD "
                    f"for {ctx.container_id}; keeping its record for teardown",
                    retryable=any(r.retryable for r in failed),
                )

        record = self.create(ctx, store, security_group_ids, subnet_id)
        try:
            record = self.attach(ctx, store, record)
            record = self.wait_for_link(store, record)
        except PluginError:
            logger.error(f"Attach of ENI {record.interface_id} failed; deleting it")
            self.release(record, store)
            raise
        return record

    def create(
        self,
        ctx: InvocationContext,
        store: StateStore,
        security_group_ids: list[str] | None = None,
        subnet_id: str | None = None,
    ) -> ENIRecord:
        groups = security_group_ids if security_group_ids is not None else self.settings.security_group_ids
        params: dict[str, Any] = {
            "SubnetId": subnet_id or ctx.subnet_id,
            "Description": f"CNI secondary ENI for container {ctx.container_id}",
            "TagSpecifications": [{
                "ResourceType": "network-interface",
                "Tags": [
                    {"Key": "Name", "Value": self.settings.eni_name_tag},
                    {"Key": CONTAINER_TAG, "Value": ctx.container_id},
                ],
            }],
        }
        if groups:
            params["Groups"] = list(groups)

        try:
            response = self.ec2.create_network_interface(**params)
        except (ClientError, BotoCoreError) as e:
            raise ProvisionError(
                f"Failed to create a new ENI in {params['SubnetId']}: {_error_message(e)}",
                retryable=_is_transient(e),
            ) from e

        store.save_response(CREATE_RESPONSE, response)
        record = ENIRecord.from_provider_responses(
            ctx.container_id, response, region=ctx.region
        )
        store.save_record(record)
        logger.info(f"New ENI ID: {record.interface_id}")
        return record

    def next_device_index(self, ctx: InvocationContext) -> int:
        """Lowest device index not occupied by any attachment on the instance.

        Must be called with the host lock held.
        """
        try:
            response = self.ec2.describe_instances(InstanceIds=[ctx.instance_id])
            used = {
                nic["Attachment"]["DeviceIndex"]
                for reservation in response.get("Reservations", [])
                for instance in reservation.get("Instances", [])
                for nic in instance.get("NetworkInterfaces", [])
                if "Attachment" in nic
            }
        except (ClientError, BotoCoreError) as e:
            if self.mac_lister is None:
                raise AttachError(
                    f"Cannot list attachments of {ctx.instance_id}: {_error_message(e)}",
                    retryable=_is_transient(e),
                ) from e
            index = len(self.mac_lister())
            logger.warning(
                f"DescribeInstances failed ({_error_message(e)}); "
                f"using attached MAC count {index} as device index"
            )
            return index

        index = 1
        while index in used:
            index += 1
        return index

    def attach(self, ctx: InvocationContext, store: StateStore, record: ENIRecord) -> ENIRecord:
        def _attempt(attempt: int) -> tuple[int, dict[str, Any]]:
            try:
                with host_lock(self.settings.lock_path, timeout=self.settings.lock_timeout):
                    index = self.next_device_index(ctx)
                    logger.debug(f"Attaching {record.interface_id} at device index {index}")
                    try:
                        response = self.ec2.attach_network_interface(
                            NetworkInterfaceId=record.interface_id,
                            InstanceId=ctx.instance_id,
                            DeviceIndex=index,
                        )
                    except (ClientError, BotoCoreError) as e:
                        raise self._attach_error(e, ctx, record, index) from e
                    return index, response
            except TimeoutError as e:
                raise AttachError(str(e), retryable=True) from e

        index, response = retry(
            _attempt,
            should_retry=lambda e: isinstance(e, DeviceIndexInUseError),
            attempts=max(1, self.settings.attach_retries),
            interval=self.settings.poll_interval,
            max_interval=self.settings.poll_max_interval,
            description=f"attach of {record.interface_id}",
        )

        store.save_response(ATTACH_RESPONSE, response)
        record = record.model_copy(update={
            "attachment_id": response["AttachmentId"],
            "device_index": index,
        })
        store.save_record(record)
        logger.info(
            f"New ENI ({record.interface_id}) created and attached to the instance "
            f"({ctx.instance_id}) at device index {index}"
        )
        return record

    def _attach_error(
        self,
        error: Exception,
        ctx: InvocationContext,
        record: ENIRecord,
        index: int,
    ) -> AttachError:
        code = _error_code(error)
        message = _error_message(error)
        if code == ATTACH_LIMIT_CODE:
            return AttachLimitExceededError(
                f"Instance {ctx.instance_id} has reached its network interface "
                f"attachment limit; cannot attach {record.interface_id}"
            )
        if code == "InvalidParameterValue" and DEVICE_INDEX_TAKEN in message.lower():
            return DeviceIndexInUseError(f"Device index {index} already in use: {message}")
        return AttachError(
            f"Failed to attach ENI ({record.interface_id}) to the instance "
            f"({ctx.instance_id}): {message}",
            retryable=_is_transient(error),
        )

    def wait_for_link(self, store: StateStore, record: ENIRecord) -> ENIRecord:
        """Poll until the attached ENI shows up as a host link."""
        if self.link_locator is None or not record.mac_address:
            link = f"eth{record.device_index}"
            logger.debug(f"No MAC lookup available, assuming link {link}")
        else:
            link = poll_until(
                lambda: self.link_locator(record.mac_address),
                timeout=self.settings.attach_timeout,
                interval=self.settings.poll_interval,
                max_interval=self.settings.poll_max_interval,
                description=f"link with MAC {record.mac_address}",
            )
            if link is None:
                raise AttachError(
                    f"ENI {record.interface_id} ({record.mac_address}) did not appear "
                    f"on the host within {self.settings.attach_timeout}s",
                    retryable=True,
                )

        record = record.model_copy(update={"link_name": link})
        store.save_record(record)
        logger.info(f"ENI {record.interface_id} is host link {link}")
        return record

    # --- Teardown ---

    def release(self, record: ENIRecord | None, store: StateStore) -> list[OperationResult]:
        """Detach then delete; forget the record once both succeeded."""
        results = [self.detach(record, store), self.delete(record, store)]
        if record is not None and all(r.ok for r in results):
            store.clear_record()
        return results

    def detach(self, record: ENIRecord | None, store: StateStore) -> OperationResult:
        if record is None or not record.attachment_id:
            logger.info("No ENI attachment recorded; nothing to detach")
            return OperationResult(step="detach", ok=True, skipped=True)

        logger.info(f"ENI Attachment ID to be detached: {record.attachment_id}")
        try:
            response = self.ec2.detach_network_interface(AttachmentId=record.attachment_id)
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) == ATTACHMENT_NOT_FOUND_CODE:
                logger.info(f"Attachment {record.attachment_id} already gone")
                return OperationResult(step="detach", ok=True, skipped=True)
            error = DetachError(
                f"Failed to detach ENI using attachment id ({record.attachment_id}): "
                f"{_error_message(e)}",
                retryable=_is_transient(e),
            )
            logger.error(error.message)
            return OperationResult(step="detach", ok=False, error=error)

        store.save_response(DETACH_RESPONSE, response)
        logger.info(f"Detached attachment {record.attachment_id}")
        return OperationResult(step="detach", ok=True)

    def _wait_until_available(self, interface_id: str) -> bool:
        """Wait for a detaching ENI to settle.

        Returns:
            False if the ENI no longer exists, True otherwise
        """
        delay = max(1, int(self.settings.poll_max_interval))
        max_attempts = max(1, math.ceil(self.settings.detach_timeout / delay))
        try:
            self.ec2.get_waiter("network_interface_available").wait(
                NetworkInterfaceIds=[interface_id],
                WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
            )
        except WaiterError as e:
            code = (e.last_response or {}).get("Error", {}).get("Code", "")
            if code == ENI_NOT_FOUND_CODE:
                return False
            logger.warning(f"ENI {interface_id} not available after detach: {e}")
        return True

    def delete(self, record: ENIRecord | None, store: StateStore) -> OperationResult:
        if record is None:
            logger.info("No ENI recorded; nothing to delete")
            return OperationResult(step="delete", ok=True, skipped=True)

        interface_id = record.interface_id
        logger.info(f"ENI ID to be deleted: {interface_id}")
        if record.attachment_id and not self._wait_until_available(interface_id):
            logger.info(f"ENI ({interface_id}) does not exist")
            return OperationResult(step="delete", ok=True, skipped=True)

        def _delete(attempt: int) -> dict[str, Any]:
            return self.ec2.delete_network_interface(NetworkInterfaceId=interface_id)

        try:
            response = retry(
                _delete,
                should_retry=lambda e: _error_code(e) == ENI_IN_USE_CODE,
                attempts=max(1, self.settings.delete_retries),
                interval=self.settings.poll_interval,
                max_interval=self.settings.poll_max_interval,
                description=f"delete of {interface_id}",
            )
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) == ENI_NOT_FOUND_CODE:
                logger.info(f"ENI ({interface_id}) does not exist")
                return OperationResult(step="delete", ok=True, skipped=True)
            error = DeleteError(
                f"Failed to delete ENI ({interface_id}): {_error_message(e)}",
                retryable=_is_transient(e) or _error_code(e) == ENI_IN_USE_CODE,
            )
            logger.error(error.message)
            return OperationResult(step="delete", ok=False, error=error)

        store.save_response(DELETE_RESPONSE, response)
        logger.info(f"ENI ({interface_id}) deleted.")
        return OperationResult(step="delete", ok=True)
