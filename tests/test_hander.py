import io
import json
from unittest.mock import MagicMock, patch

import pytest

from core_replicate.handler import kickoff, step, tag_image
from core_replicate.stepfn import execution_input
from core_replicate.workflow import WorkflowState
from core_replicate.models import SnapshotState

from .aws_fixtures import *

PIPELINE_JOB_ID = "cp-job-1"
EXECUTION_ARN = "arn:aws:states:us-west-2:111111111111:execution:replicate:1"


def pipeline_event(user_parameters: str, artifact_name: str = "BuildOutput") -> dict:
    return {
        "CodePipeline.job": {
            "id": PIPELINE_JOB_ID,
            "data": {
                "actionConfiguration": {"configuration": {"UserParameters": user_parameters}},
                "inputArtifacts": [
                    {
                        "name": artifact_name,
                        "location": {
                            "type": "S3",
                            "s3Location": {"bucketName": "pipeline-artifacts", "objectKey": "build/output.zip"},
                        },
                    }
                ],
                "artifactCredentials": {
                    "accessKeyId": "mock_access_key",
                    "secretAccessKey": "mock_secret_key",
                    "sessionToken": "mock_session_token",
                },
            },
        }
    }


REPLICATE_PARAMETERS = json.dumps(
    {
        "amiName": "golden-image-1.0",
        "destinationAccountId": DESTINATION_ACCOUNT,
        "destinationRegion": "us-east-1",
    }
)


@pytest.fixture
def artifact_s3():
    s3 = MagicMock()
    s3.get_object.side_effect = lambda **kwargs: {
        "Body": io.BytesIO(manifest_zip("us-west-2:ami-source,us-east-1:ami-east"))
    }
    with patch("core_replicate.handler.artifact_s3_client", return_value=s3):
        yield s3


@pytest.fixture
def handler_clients(fake_clients, source_image, monkeypatch):

    monkeypatch.delenv("STATE_MACHINE_ARN", raising=False)
    monkeypatch.delenv("INPUT_ARTIFACT_NAME", raising=False)

    fake_clients.ec2.describe_images.return_value = {"Images": [source_image]}
    with patch("core_replicate.handler.AwsClients", side_effect=lambda **kwargs: fake_clients):
        yield fake_clients


def test_kickoff_starts_step_function_execution(handler_clients, artifact_s3, monkeypatch):

    monkeypatch.setenv("STATE_MACHINE_ARN", "arn:aws:states:us-west-2:111111111111:stateMachine:replicate")
    sfn = handler_clients.source_client("stepfunctions")
    sfn.start_execution.return_value = {"executionArn": EXECUTION_ARN}

    result = kickoff(pipeline_event(REPLICATE_PARAMETERS))

    assert result["sourceImageId"] == "ami-source"
    outcome = result["outcomes"][0]
    assert outcome["status"] == "started"
    assert outcome["jobId"] == PIPELINE_JOB_ID
    assert outcome["executionArn"] == EXECUTION_ARN

    artifact_s3.get_object.assert_called_once_with(Bucket="pipeline-artifacts", Key="build/output.zip")
    handler_clients.ec2.modify_snapshot_attribute.assert_called()

    codepipeline = handler_clients.source_client("codepipeline")
    codepipeline.put_job_success_result.assert_not_called()
    codepipeline.put_job_failure_result.assert_not_called()


def test_kickoff_runs_workflow_in_process(handler_clients, artifact_s3):

    configure_destination(handler_clients, DESTINATION_ACCOUNT, "us-east-1")

    result = kickoff(pipeline_event(REPLICATE_PARAMETERS))

    assert result["outcomes"][0]["status"] == "succeeded"
    assert result["outcomes"][0]["destinationImageId"] == "ami-dest"

    codepipeline = handler_clients.source_client("codepipeline")
    codepipeline.put_job_success_result.assert_called_once_with(jobId=PIPELINE_JOB_ID)


def test_kickoff_with_bad_parameters(handler_clients, artifact_s3):

    result = kickoff(pipeline_event("not json"))

    assert result["status"] == "failed"
    assert result["message"].startswith("ERROR: InvalidRequestError:")

    codepipeline = handler_clients.source_client("codepipeline")
    kwargs = codepipeline.put_job_failure_result.call_args.kwargs
    assert kwargs["jobId"] == PIPELINE_JOB_ID
    assert kwargs["failureDetails"]["message"] == result["message"]
    artifact_s3.get_object.assert_not_called()


def test_kickoff_with_invalid_account(handler_clients, artifact_s3):

    parameters = json.dumps({"amiName": "golden-image-1.0", "destinationAccountId": "12", "destinationRegion": "us-east-1"})

    result = kickoff(pipeline_event(parameters))

    assert result["message"].startswith("ERROR: ValidationError:")
    assert result["error_details"]["ValidationErrors"]


def test_kickoff_ignores_non_pipeline_events(handler_clients):

    result = kickoff({"detail": "something else"})

    assert result["status"] == "failed"
    handler_clients.source_client("codepipeline").put_job_failure_result.assert_not_called()


def test_step_moves_to_registration(job, handler_clients):

    configure_destination(handler_clients, DESTINATION_ACCOUNT, "us-east-1", states=["completed"])
    job.record("destination_snapshot_id", "snap-dest")
    job.snapshot_state = SnapshotState.PENDING

    result = step(json.loads(json.dumps(execution_input(job, WorkflowState.CHECK_PROGRESS))))

    assert result["workflowState"] == "register_image"
    assert result["job"]["snapshotState"] == "completed"
    assert result["job"]["pollAttempts"] == 1


def test_step_wait_does_not_sleep(job, handler_clients):

    result = step(execution_input(job, WorkflowState.WAIT))

    assert result["workflowState"] == "check_progress"
    assert handler_clients.assumed == []


def test_step_terminal_state_is_returned_unchanged(job, handler_clients):

    result = step(execution_input(job, WorkflowState.SUCCEEDED))

    assert result["workflowState"] == "succeeded"


def test_step_with_bad_event():

    result = step({"workflowState": "copy_snapshot"})

    assert result["workflowState"] == "failed"
    assert result["status"] == "failed"
    assert result["message"].startswith("ERROR: KeyError:")


def test_tag_image(handler_clients, artifact_s3):

    result = tag_image(pipeline_event("", artifact_name="TestResult"))

    assert result == {"status": "succeeded", "imageId": "ami-source"}
    handler_clients.ec2.create_tags.assert_called_once_with(
        Resources=["ami-source"], Tags=[{"Key": "TestStatus", "Value": "PASSED"}]
    )
    handler_clients.source_client("codepipeline").put_job_success_result.assert_called_once_with(
        jobId=PIPELINE_JOB_ID
    )


def test_tag_image_without_test_result(handler_clients, artifact_s3):

    result = tag_image(pipeline_event("", artifact_name="BuildOutput"))

    assert result["message"].startswith("ERROR: ManifestFormatError:")
    handler_clients.ec2.create_tags.assert_not_called()
    codepipeline = handler_clients.source_client("codepipeline")
    assert codepipeline.put_job_failure_result.call_args.kwargs["jobId"] == PIPELINE_JOB_ID


def test_kickoff_with_bad_key_alias_reports_failure(handler_clients, artifact_s3):

    parameters = json.dumps(
        {
            "amiName": "golden-image-1.0",
            "destinationAccountId": DESTINATION_ACCOUNT,
            "destinationRegion": "us-east-1",
            "kmsKeyAlias": "golden-key",
        }
    )

    result = kickoff(pipeline_event(parameters))

    assert result["status"] == "failed"
    assert result["message"].startswith("ERROR: ValidationError:")
    codepipeline = handler_clients.source_client("codepipeline")
    assert codepipeline.put_job_failure_result.call_args.kwargs["jobId"] == PIPELINE_JOB_ID
    handler_clients.ec2.modify_snapshot_attribute.assert_not_called()
