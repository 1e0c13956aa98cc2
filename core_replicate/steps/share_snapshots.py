"""Grant destination accounts permission to create volumes from the source image snapshots."""

from typing import Any

import core_logging as log

from ..errors import ReplicationError, SharingGrantError
from ..models import SourceImageAttributes
from ..retry import RetryPolicy


def describe_source_image(ec2_client: Any, image_id: str, retry: RetryPolicy) -> SourceImageAttributes:
    """
    Capture the attributes of the source image.

    :param ec2_client: EC2 client in the builder account and region
    :type ec2_client: Any
    :param image_id: The source image id
    :type image_id: str
    :param retry: Retry policy for the describe call
    :type retry: RetryPolicy
    :return: The image attributes, including its tags and block device mappings
    :rtype: SourceImageAttributes
    :raises ReplicationError: If the image cannot be described or does not exist
    """
    log.debug("Describing source image '{}'", image_id)

    response = retry.run("DescribeImages", lambda: ec2_client.describe_images(ImageIds=[image_id]))

    images = response.get("Images", [])
    if not images:
        raise SharingGrantError(f"Source image '{image_id}' not found", details={"ImageId": image_id})

    attrs = SourceImageAttributes.model_validate(images[0])
    log.debug(
        "Found image '{}' with name '{}' and {} snapshot(s)",
        attrs.image_id,
        attrs.name,
        len(attrs.snapshot_ids()),
    )
    return attrs


class SharingAuthorizer:
    """
    Share every EBS snapshot of a source image with the destination accounts.

    This runs once per dispatch, before any target workflow starts.  Any failure is a
    :class:`SharingGrantError` and stops the whole fan-out.
    """

    def __init__(self, ec2_client: Any, retry_policy: RetryPolicy):
        self.ec2_client = ec2_client
        self.retry = retry_policy

    def authorize(self, image_id: str, account_ids: list[str]) -> SourceImageAttributes:
        """
        Grant ``createVolumePermission`` on each snapshot of ``image_id`` to ``account_ids``.

        :return: The source image attributes, so the caller does not describe it again
        :rtype: SourceImageAttributes
        :raises SharingGrantError: If the image cannot be described or a grant fails
        """
        if not account_ids:
            raise SharingGrantError("No destination accounts to share with")

        try:
            attrs = describe_source_image(self.ec2_client, image_id, self.retry)
        except SharingGrantError:
            raise
        except ReplicationError as e:
            raise SharingGrantError(
                f"Unable to describe source image '{image_id}': {e.message}", code=e.code
            ) from e

        snapshot_ids = attrs.snapshot_ids()
        if not snapshot_ids:
            raise SharingGrantError(f"Source image '{image_id}' has no EBS snapshots to share")

        for snapshot_id in snapshot_ids:
            self._share(snapshot_id, account_ids)

        log.info(
            "Shared {} snapshot(s) of image '{}' with accounts {}",
            len(snapshot_ids),
            image_id,
            ", ".join(account_ids),
        )
        return attrs

    def _share(self, snapshot_id: str, account_ids: list[str]) -> None:

        log.debug("Sharing snapshot '{}' with accounts {}", snapshot_id, account_ids)

        try:
            self.retry.run(
                "ModifySnapshotAttribute",
                lambda: self.ec2_client.modify_snapshot_attribute(
                    SnapshotId=snapshot_id,
                    Attribute="createVolumePermission",
                    OperationType="add",
                    UserIds=list(account_ids),
                ),
            )
        except ReplicationError as e:
            log.error("Failed to share snapshot '{}': {}", snapshot_id, e.message)
            raise SharingGrantError(
                f"Failed to share snapshot '{snapshot_id}' with {', '.join(account_ids)}: {e.message}",
                code=e.code,
                details={"SnapshotId": snapshot_id, "AccountIds": list(account_ids)},
            ) from e
