"""Register the destination image from the copied snapshot and carry the source tags over."""

from typing import Any

import core_logging as log

from ..errors import InvalidRequestError, RegistrationError
from ..models import ReplicationJob, SourceImageAttributes
from ..retry import RetryPolicy

DUPLICATE_NAME_CODE = "InvalidAMIName.Duplicate"

EBS_SETTINGS = ["DeleteOnTermination", "VolumeType", "VolumeSize", "Iops", "Throughput"]


def register_image_params(attrs: SourceImageAttributes, snapshot_id: str) -> dict[str, Any]:
    """
    Build ``RegisterImage`` parameters mirroring the source image.

    The primary EBS mapping points at ``snapshot_id``; the copy carries the key the snapshot
    was encrypted with, so no KMS settings are passed here.  Ephemeral and ``NoDevice``
    mappings are kept as they are.  Source EBS volumes other than the primary one are not
    copied and are left out.
    """
    primary = attrs.primary_mapping()
    ebs = {"SnapshotId": snapshot_id}
    for key in EBS_SETTINGS:
        if primary["Ebs"].get(key) is not None:
            ebs[key] = primary["Ebs"][key]

    mappings = [{"DeviceName": primary["DeviceName"], "Ebs": ebs}]
    for mapping in attrs.block_device_mappings:
        if "Ebs" not in mapping:
            mappings.append(mapping)

    params = {
        "Name": attrs.name,
        "Description": attrs.description,
        "Architecture": attrs.architecture,
        "VirtualizationType": attrs.virtualization_type,
        "RootDeviceName": attrs.root_device_name,
        "KernelId": attrs.kernel_id,
        "RamdiskId": attrs.ramdisk_id,
        "EnaSupport": attrs.ena_support,
        "SriovNetSupport": attrs.sriov_net_support,
        "BootMode": attrs.boot_mode,
        "BlockDeviceMappings": mappings,
    }
    return {k: v for k, v in params.items() if v is not None}


class ImageRegistrar:
    """Register the copied snapshot as an image in the destination and tag it."""

    def __init__(self, clients: Any, retry_policy: RetryPolicy):
        self.clients = clients
        self.retry = retry_policy

    def register(self, job: ReplicationJob) -> ReplicationJob:
        """
        Register the image (unless already registered) and copy every source tag onto the
        new image and its snapshot.

        :return: The job with ``destination_image_id`` populated
        :rtype: ReplicationJob
        :raises RegistrationError: If registration or tagging fails
        """
        attrs = job.source_image_attrs
        if attrs is None or not job.destination_snapshot_id:
            raise InvalidRequestError(f"Nothing to register for {job.identity}: copy has not completed")

        with self.clients.destination(job, "RegisterImage") as credentials:
            ec2_client = credentials.client("ec2")

            if not job.destination_image_id:
                params = register_image_params(attrs, job.destination_snapshot_id)
                job.record("destination_image_id", self._register(ec2_client, params, job))

            self._copy_tags(ec2_client, job)

        log.info("Registered image '{}' in {}", job.destination_image_id, job.identity)
        return job

    def _register(self, ec2_client: Any, params: dict[str, Any], job: ReplicationJob) -> str:

        log.debug("Registering image", details=params)

        try:
            response = self.retry.run(
                "RegisterImage",
                lambda: ec2_client.register_image(**params),
                fallback=RegistrationError,
            )
        except RegistrationError as e:
            if e.code != DUPLICATE_NAME_CODE:
                raise
            return self._adopt_existing(ec2_client, params["Name"], job, e)

        return response["ImageId"]

    def _adopt_existing(self, ec2_client: Any, name: str, job: ReplicationJob, cause: RegistrationError) -> str:
        """Find the image an earlier attempt registered from this job's snapshot."""

        response = self.retry.run(
            "DescribeImages",
            lambda: ec2_client.describe_images(
                Owners=["self"], Filters=[{"Name": "name", "Values": [name]}]
            ),
            fallback=RegistrationError,
        )
        for image in response.get("Images", []):
            for mapping in image.get("BlockDeviceMappings", []):
                if mapping.get("Ebs", {}).get("SnapshotId") == job.destination_snapshot_id:
                    log.warning("Image '{}' already registered from snapshot '{}', adopting it",
                                image["ImageId"], job.destination_snapshot_id)
                    return image["ImageId"]

        raise RegistrationError(
            f"An image named '{name}' already exists in {job.identity}",
            code=DUPLICATE_NAME_CODE,
            details={"Name": name},
        ) from cause

    def _copy_tags(self, ec2_client: Any, job: ReplicationJob) -> None:

        tags = job.source_image_attrs.tags
        if not tags:
            log.debug("Source image '{}' has no tags to copy", job.source_image_id)
            return

        resources = [job.destination_image_id, job.destination_snapshot_id]
        log.debug("Tagging {} with {} tag(s)", resources, len(tags))

        self.retry.run(
            "CreateTags",
            lambda: ec2_client.create_tags(Resources=resources, Tags=[dict(t) for t in tags]),
            fallback=RegistrationError,
        )
