import pytest

from core_replicate.errors import AuthorizationError, InvalidRequestError
from core_replicate.models import SnapshotState
from core_replicate.steps.copy_snapshot import SnapshotCopier

from .aws_fixtures import *


def test_copy_requests_encrypted_snapshot_copy(job, fake_clients, retry_policy):

    dest = configure_destination(fake_clients, DESTINATION_ACCOUNT, "us-east-1")

    SnapshotCopier(fake_clients, retry_policy).copy(job)

    assert job.destination_snapshot_id == "snap-dest"
    assert job.snapshot_state == SnapshotState.PENDING

    dest["kms"].describe_key.assert_called_once_with(KeyId="alias/ami/golden-image-1.0")
    dest["ec2"].copy_snapshot.assert_called_once_with(
        Description=f"golden-image-1.0 - Copied from snap-root in us-west-2 from account {SOURCE_ACCOUNT}",
        SourceRegion="us-west-2",
        DestinationRegion="us-east-1",
        SourceSnapshotId="snap-root",
        Encrypted=True,
        KmsKeyId="alias/ami/golden-image-1.0",
    )
    assert fake_clients.assumed == [(DESTINATION_ACCOUNT, "us-east-1", "CopySnapshot")]


def test_copy_is_skipped_when_already_started(job, fake_clients, retry_policy):

    dest = configure_destination(fake_clients, DESTINATION_ACCOUNT, "us-east-1")
    job.record("destination_snapshot_id", "snap-earlier")

    SnapshotCopier(fake_clients, retry_policy).copy(job)

    assert job.destination_snapshot_id == "snap-earlier"
    dest["ec2"].copy_snapshot.assert_not_called()
    assert fake_clients.assumed == []


def test_copy_needs_source_attributes(job, fake_clients, retry_policy):

    job.source_image_attrs = None

    with pytest.raises(InvalidRequestError):
        SnapshotCopier(fake_clients, retry_policy).copy(job)


def test_copy_denied_is_not_retried(job, fake_clients, retry_policy, recording_sleep):

    dest = configure_destination(fake_clients, DESTINATION_ACCOUNT, "us-east-1")
    dest["ec2"].copy_snapshot.side_effect = client_error("UnauthorizedOperation", status=403)

    with pytest.raises(AuthorizationError):
        SnapshotCopier(fake_clients, retry_policy).copy(job)

    assert dest["ec2"].copy_snapshot.call_count == 1
    assert recording_sleep.calls == []
    assert job.destination_snapshot_id is None
