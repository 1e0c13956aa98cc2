from unittest.mock import MagicMock

import pytest

from core_replicate.errors import CopyFailedError, NotificationError
from core_replicate.notify import CodePipelineNotifier, ConsoleNotifier, failure_message

from .aws_fixtures import *


@pytest.fixture
def failed_job(job):
    job.record("destination_snapshot_id", "snap-dest")
    job.error_info = CopyFailedError("snapshot copy reported error").to_dict()
    return job


def test_success_is_reported_once(job, retry_policy):

    codepipeline = MagicMock()
    notifier = CodePipelineNotifier(codepipeline, retry_policy)

    job.record("destination_image_id", "ami-dest")
    notifier.notify_success(job)

    codepipeline.put_job_success_result.assert_called_once_with(jobId="pipeline-job-1")
    assert job.notified == "success"
    assert notifier.reported("pipeline-job-1") == "success"

    with pytest.raises(NotificationError):
        notifier.notify_success(job)
    with pytest.raises(NotificationError):
        notifier.notify_failure(job)

    assert codepipeline.put_job_success_result.call_count == 1
    codepipeline.put_job_failure_result.assert_not_called()


def test_failure_message_names_target_and_resources(failed_job, retry_policy):

    codepipeline = MagicMock()

    CodePipelineNotifier(codepipeline, retry_policy).notify_failure(failed_job)

    kwargs = codepipeline.put_job_failure_result.call_args.kwargs
    assert kwargs["jobId"] == "pipeline-job-1"
    assert kwargs["failureDetails"]["type"] == "JobFailed"
    assert kwargs["failureDetails"]["message"] == (
        f"Error occurred during copy of snapshot to {DESTINATION_ACCOUNT}/us-east-1, snapshot ID snap-dest, "
        "image ID none: CopyFailedError: snapshot copy reported error"
    )
    assert failed_job.notified == "failure"


def test_failure_message_is_truncated(failed_job):

    failed_job.error_info = {"Error": "CopyFailedError", "Message": "x" * 10000}

    assert len(failure_message(failed_job)) == 5000


def test_delivery_failure_is_a_notification_error(job, retry_policy):

    codepipeline = MagicMock()
    codepipeline.put_job_success_result.side_effect = client_error("JobNotFoundException")

    notifier = CodePipelineNotifier(codepipeline, retry_policy)

    with pytest.raises(NotificationError):
        notifier.notify_success(job)

    assert job.notified is None
    assert notifier.reported(job.job_id) == "success"


def test_console_notifier_records_outcomes(job):

    notifier = ConsoleNotifier()

    job.record("destination_image_id", "ami-dest")
    notifier.notify_success(job)

    assert notifier.outcomes["pipeline-job-1"] == {"status": "succeeded", "imageId": "ami-dest"}
