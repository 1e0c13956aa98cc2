"""Start the encrypted cross-account copy of the source image's primary snapshot."""

from typing import Any

import core_logging as log

from ..errors import InvalidRequestError
from ..models import ReplicationJob, SnapshotState
from ..retry import RetryPolicy
from .bootstrap_key import KeyBootstrapper


class SnapshotCopier:
    """
    Request the snapshot copy in the destination account.

    The copy is asynchronous: this step records the new snapshot id and returns.  Progress is
    followed by :class:`~core_replicate.steps.check_progress.ProgressPoller`.

    :param clients: Provider of builder clients and destination sessions
    :type clients: AwsClients
    :param retry_policy: Retry policy for every remote call
    :type retry_policy: RetryPolicy
    """

    def __init__(self, clients: Any, retry_policy: RetryPolicy):
        self.clients = clients
        self.retry = retry_policy

    def copy(self, job: ReplicationJob) -> ReplicationJob:
        """
        Bootstrap the destination key and start the snapshot copy.

        A job that already has ``destination_snapshot_id`` is returned unchanged, so resuming
        after the copy was requested does not start a second copy.

        :param job: Job with ``source_image_attrs`` populated
        :type job: ReplicationJob
        :return: The job with ``destination_snapshot_id`` populated
        :rtype: ReplicationJob
        """
        if job.destination_snapshot_id:
            log.info("Snapshot copy already started as '{}', skipping", job.destination_snapshot_id)
            return job

        if job.source_image_attrs is None:
            raise InvalidRequestError(f"Source image attributes for {job.source_image_id} have not been captured")

        source_snapshot_id = job.source_image_attrs.primary_snapshot_id()
        source_account_id = self.clients.caller_account_id()

        with self.clients.destination(job, "CopySnapshot") as credentials:

            key = KeyBootstrapper(credentials.client("kms"), self.retry).bootstrap(
                job.kms_key_alias,
                job.destination_role_arn,
                job.destination_account_id,
                job.destination_region,
                job.ami_name,
            )
            log.debug("Using key '{}' ({}) for the copy", key.alias_name, key.key_id)

            params = {
                "Description": "{} - Copied from {} in {} from account {}".format(
                    job.ami_name, source_snapshot_id, job.source_region, source_account_id
                ),
                "SourceRegion": job.source_region,
                "DestinationRegion": job.destination_region,
                "SourceSnapshotId": source_snapshot_id,
                "Encrypted": True,
                "KmsKeyId": job.kms_key_alias,
            }
            log.debug("Copying snapshot", details=params)

            ec2_client = credentials.client("ec2")
            response = self.retry.run("CopySnapshot", lambda: ec2_client.copy_snapshot(**params))

        job.record("destination_snapshot_id", response["SnapshotId"])
        job.snapshot_state = SnapshotState.PENDING

        log.info(
            "Started copy of snapshot '{}' to '{}' in {}",
            source_snapshot_id,
            job.destination_snapshot_id,
            job.identity,
        )
        return job
