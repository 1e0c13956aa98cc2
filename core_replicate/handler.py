"""Lambda entry points for the replication pipeline actions."""

from typing import Any
import json

from pydantic import ValidationError

import boto3

import core_logging as log

from . import envinfo
from .credentials import AwsClients
from .dispatcher import ReplicationDispatcher
from .errors import InvalidRequestError, ManifestFormatError, ReplicationError, classify_error
from .manifest import ManifestReader, download_artifact
from .models import ReplicationJob, ReplicationRequest, ReplicationTarget
from .notify import CodePipelineNotifier, MAX_FAILURE_MESSAGE_LENGTH
from .retry import RetryPolicy, PollSettings
from .stepfn import LocalLauncher, StepFunctionLauncher, execution_input
from .workflow import ReplicationWorkflow, WorkflowState

KICKOFF_LOG_IDENTITY = "core-replicate-kickoff"
STEP_LOG_IDENTITY = "core-replicate-step"
TAGGER_LOG_IDENTITY = "core-replicate-tagger"
TEST_RESULT_ARTIFACT_NAME = "TestResult"
TEST_STATUS_TAG = {"Key": "TestStatus", "Value": "PASSED"}


def pipeline_job(event: dict) -> tuple[str, dict]:
    """Return the CodePipeline job id and job data from a pipeline action event."""
    try:
        job = event["CodePipeline.job"]
        return job["id"], job.get("data", {})
    except (KeyError, TypeError) as e:
        raise InvalidRequestError(f"Event is not a CodePipeline job event: missing {e}") from e


def user_parameters(data: dict) -> dict:
    raw = data.get("actionConfiguration", {}).get("configuration", {}).get("UserParameters")
    if not raw:
        raise InvalidRequestError("Pipeline action has no UserParameters")
    try:
        params = json.loads(raw)
    except ValueError as e:
        raise InvalidRequestError(f"UserParameters is not valid JSON: {e}") from e
    if not isinstance(params, dict):
        raise InvalidRequestError("UserParameters must be a JSON object")
    return params


def artifact_s3_client(credentials: dict) -> Any:
    """S3 client using the temporary credentials CodePipeline hands to the action."""
    session = boto3.session.Session(
        aws_access_key_id=credentials.get("accessKeyId"),
        aws_secret_access_key=credentials.get("secretAccessKey"),
        aws_session_token=credentials.get("sessionToken"),
    )
    return session.client("s3")


def fetch_input_artifact(data: dict, name: str | None) -> bytes:
    """
    Download the input artifact called ``name`` (or the only one, when ``name`` is not set).

    :raises ManifestFormatError: If the artifact is missing or cannot be downloaded
    """
    artifacts = data.get("inputArtifacts", [])
    if name:
        artifacts = [a for a in artifacts if a.get("name") == name]
    if not artifacts:
        raise ManifestFormatError(f"Input artifact '{name or '(any)'}' not found in pipeline job")

    artifact = artifacts[0]
    location = artifact.get("location", {}).get("s3Location", {})
    bucket, key = location.get("bucketName"), location.get("objectKey")
    if not bucket or not key:
        raise ManifestFormatError(f"Input artifact '{artifact.get('name')}' has no S3 location")

    try:
        return download_artifact(artifact_s3_client(data.get("artifactCredentials", {})), bucket, key)
    except Exception as e:
        error = classify_error(e)
        if error is None:
            raise
        raise ManifestFormatError(
            f"Unable to download artifact s3://{bucket}/{key}: {error.message}", code=error.code
        ) from e


def report_pipeline_failure(codepipeline_client: Any, job_id: str, message: str, retry: RetryPolicy) -> None:
    """Mark a pipeline job failed when no replication job exists to report through."""
    try:
        retry.run(
            "PutJobFailureResult",
            lambda: codepipeline_client.put_job_failure_result(
                jobId=job_id,
                failureDetails={"type": "JobFailed", "message": message[:MAX_FAILURE_MESSAGE_LENGTH]},
            ),
        )
    except ReplicationError as e:
        log.error("Unable to report failure of pipeline job {}: {}", job_id, e.message)


def make_launcher(clients: AwsClients, notifier: CodePipelineNotifier, retry: RetryPolicy) -> Any:
    """Step Functions when a state machine is configured, otherwise run in this process."""

    state_machine_arn = envinfo.get_state_machine_arn()
    if state_machine_arn:
        return StepFunctionLauncher(clients.source_client("stepfunctions"), state_machine_arn, retry)

    workflow = ReplicationWorkflow(clients, notifier, retry, PollSettings.from_environment())
    return LocalLauncher(workflow)


def _failure_payload(e: Exception, event: dict) -> dict:

    errortype = type(e).__name__
    validation_errors = []
    if isinstance(e, ValidationError):
        for error in e.errors():
            validation_errors.append(
                {
                    "loc": list(error.get("loc", [])),
                    "msg": error.get("msg", ""),
                    "type": error.get("type", ""),
                }
            )

    message = f"ERROR: {errortype}: {e}"
    error_details: dict[str, Any] = {"Message": message}
    if validation_errors:
        error_details["ValidationErrors"] = validation_errors

    log.error("Error in handler execution", details=error_details)
    log.error("Original event: ", details=event)

    return {
        "status": "failed",
        "message": message,
        "error_details": error_details,
        "original_event": event,
    }


def kickoff(event: dict, context: Any | None = None) -> dict:
    """
    Start the replication for a CodePipeline action.

    The action's UserParameters name one destination::

        {"amiName": "...", "destinationAccountId": "...", "destinationRegion": "...",
         "destinationRoleName": "...", "kmsKeyAlias": "..."}

    The pipeline job id is the job token the outcome is reported against.  With
    ``STATE_MACHINE_ARN`` set the workflow runs as a Step Functions execution and this
    handler returns once it has started; otherwise it runs to completion here.

    :param event: The CodePipeline job event
    :type event: dict
    :param context: Lambda context
    :type context: Any | None
    :return: The dispatch result, or a failure payload when the event could not be used
    :rtype: dict
    """
    log.setup(KICKOFF_LOG_IDENTITY)
    log.trace("Entering core_replicate.handler.kickoff")

    retry = RetryPolicy.from_environment()
    clients = AwsClients(retry_policy=retry)
    codepipeline = clients.source_client("codepipeline")
    notifier = CodePipelineNotifier(codepipeline, retry)

    job_id = None
    try:
        job_id, data = pipeline_job(event)
        params = user_parameters(data)

        log.info("Received pipeline job {}", job_id)
        log.debug("UserParameters: ", details=params)

        request = ReplicationRequest(
            ami_name=params.get("amiName"),
            destination_role_name=params.get("destinationRoleName") or envinfo.get_destination_role_name(),
            kms_key_alias=params.get("kmsKeyAlias"),
            source_region=clients.region,
            targets=[
                ReplicationTarget(
                    account_id=params.get("destinationAccountId"),
                    region=params.get("destinationRegion"),
                    job_id=job_id,
                )
            ],
        )
        artifact = fetch_input_artifact(data, envinfo.get_input_artifact_name())

    except Exception as e:
        payload = _failure_payload(e, event)
        if job_id:
            report_pipeline_failure(codepipeline, job_id, payload["message"], retry)
        return payload

    dispatcher = ReplicationDispatcher(clients, notifier, make_launcher(clients, notifier, retry), retry)
    result = dispatcher.dispatch(request, artifact)

    response = result.to_dict()
    log.debug("Kickoff result: ", details=response)
    return response


def step(event: dict, context: Any | None = None) -> dict:
    """
    Perform one transition of a replication job.

    The event is the document produced by :func:`core_replicate.stepfn.execution_input`::

        {"job": {...}, "workflowState": "check_progress"}

    The returned document has the same shape.  The state machine waits on ``wait`` and
    stops on ``succeeded`` or ``failed``.
    """
    try:
        job = ReplicationJob.model_validate(event["job"])
        state = WorkflowState.from_value(event.get("workflowState"))
    except Exception as e:
        payload = _failure_payload(e, event)
        payload["workflowState"] = WorkflowState.FAILED.value
        return payload

    log.setup(STEP_LOG_IDENTITY)

    if state.is_terminal:
        log.warning("Job for {} is already {}", job.identity, state)
        return execution_input(job, state)

    retry = RetryPolicy.from_environment()
    clients = AwsClients(region=job.source_region, retry_policy=retry)
    notifier = CodePipelineNotifier(clients.source_client("codepipeline"), retry)

    workflow = ReplicationWorkflow(clients, notifier, retry, PollSettings.from_environment(), sleep=None)
    state = workflow.step(state, job)

    result = execution_input(job, state)
    log.trace("Step result: ", details=result)
    return result


def tag_image(event: dict, context: Any | None = None) -> dict:
    """Tag the region's image ``TestStatus=PASSED`` once the pipeline's image tests passed."""

    log.setup(TAGGER_LOG_IDENTITY)

    retry = RetryPolicy.from_environment()
    clients = AwsClients(retry_policy=retry)
    codepipeline = clients.source_client("codepipeline")

    job_id = None
    try:
        job_id, data = pipeline_job(event)
        artifact = fetch_input_artifact(data, TEST_RESULT_ARTIFACT_NAME)
        image_id = ManifestReader(region=clients.region).image_id(artifact)

        ec2_client = clients.source_ec2()
        retry.run(
            "CreateTags",
            lambda: ec2_client.create_tags(Resources=[image_id], Tags=[dict(TEST_STATUS_TAG)]),
        )
        log.info("Tagged image '{}' with {}={}", image_id, TEST_STATUS_TAG["Key"], TEST_STATUS_TAG["Value"])

        retry.run("PutJobSuccessResult", lambda: codepipeline.put_job_success_result(jobId=job_id))

        return {"status": "succeeded", "imageId": image_id}

    except Exception as e:
        payload = _failure_payload(e, event)
        if job_id:
            report_pipeline_failure(codepipeline, job_id, payload["message"], retry)
        return payload
