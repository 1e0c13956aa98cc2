"""Check the status of an in-flight snapshot copy."""

from typing import Any

import core_logging as log

from ..errors import CopyFailedError, InvalidRequestError
from ..models import ReplicationJob, SnapshotState
from ..retry import RetryPolicy, PollSettings

# A freshly requested copy may not be visible to DescribeSnapshots yet
EVENTUALLY_CONSISTENT_CODES = {"InvalidSnapshot.NotFound"}


class ProgressPoller:
    """
    Classify the destination snapshot as pending, completed or error.

    One call to :meth:`check` is one status query.  Waiting between queries is the caller's
    job; :meth:`check` only enforces the overall ceiling on the number of queries.
    """

    def __init__(self, clients: Any, retry_policy: RetryPolicy, poll: PollSettings | None = None):
        self.clients = clients
        self.retry = retry_policy
        self.poll = poll or PollSettings()

    def check(self, job: ReplicationJob) -> ReplicationJob:
        """
        Query the snapshot once and record its state and progress on the job.

        :raises CopyFailedError: If the snapshot is in the error state or the query ceiling
                                 was reached
        """
        snapshot_id = job.destination_snapshot_id
        if not snapshot_id:
            raise InvalidRequestError(f"No destination snapshot recorded for {job.identity}")

        if job.poll_attempts >= self.poll.max_attempts:
            raise CopyFailedError(
                f"Snapshot {snapshot_id} in {job.identity} did not complete after {job.poll_attempts} status checks",
                details={"SnapshotId": snapshot_id, "PollAttempts": job.poll_attempts},
            )

        with self.clients.destination(job, "CheckSnapshotProgress") as credentials:
            ec2_client = credentials.client("ec2")
            response = self.retry.run(
                "DescribeSnapshots",
                lambda: ec2_client.describe_snapshots(SnapshotIds=[snapshot_id]),
                transient_codes=EVENTUALLY_CONSISTENT_CODES,
            )

        job.poll_attempts += 1

        snapshots = response.get("Snapshots", [])
        if not snapshots:
            log.debug("Snapshot '{}' is not visible yet", snapshot_id)
            job.snapshot_state = SnapshotState.PENDING
            return job

        snapshot = snapshots[0]
        job.snapshot_state = SnapshotState.from_status(snapshot.get("State"))
        job.snapshot_progress = snapshot.get("Progress")
        job.snapshot_state_message = snapshot.get("StateMessage")

        log.debug(
            "Snapshot '{}' state {} progress {} (check {})",
            snapshot_id,
            job.snapshot_state,
            job.snapshot_progress,
            job.poll_attempts,
        )

        if job.snapshot_state == SnapshotState.ERROR:
            raise CopyFailedError(
                "Error occurred during copy of snapshot to {}, snapshot ID {}: {}".format(
                    job.identity, snapshot_id, job.snapshot_state_message or "no reason given"
                ),
                details={"SnapshotId": snapshot_id},
            )

        return job
