"""Start replication workflows, either in this process or as AWS Step Functions executions."""

from typing import Any
from concurrent.futures import ThreadPoolExecutor, as_completed
import json
import re
import time

import core_logging as log

from . import envinfo
from .errors import ReplicationError
from .models import ReplicationJob, TargetOutcome
from .retry import RetryPolicy
from .workflow import ReplicationWorkflow, WorkflowState

MAX_EXECUTION_NAME_LENGTH = 80


def generate_execution_name(job: ReplicationJob) -> str:
    """
    Generate a unique name for the execution.

    It will concatenate the following fields:

    - AMI name
    - Destination account
    - Destination region
    - Current time in seconds

    The result will be, for example:  ``my-ami-123456789012-us-east-1-1234567890``

    Args:
        job (ReplicationJob): The job to generate the name for

    Returns:
        str: The name of the execution
    """
    suffix = "-".join([job.destination_account_id, job.destination_region, str(int(time.time()))])
    prefix = re.sub(r"[^A-Za-z0-9_-]", "-", job.ami_name)
    prefix = prefix[: MAX_EXECUTION_NAME_LENGTH - len(suffix) - 1]
    return f"{prefix}-{suffix}".lower()


def execution_input(job: ReplicationJob, state: WorkflowState = WorkflowState.START) -> dict[str, Any]:
    """The document exchanged with :func:`core_replicate.handler.step`."""
    return {"job": job.to_event(), "workflowState": state.value}


class LocalLauncher:
    """
    Run every job's workflow in this process, in parallel, and wait for all of them.

    :param workflow: The workflow used to drive each job
    :type workflow: ReplicationWorkflow
    :param max_workers: Upper bound on concurrently running jobs
    :type max_workers: int | None
    """

    def __init__(self, workflow: ReplicationWorkflow, max_workers: int | None = None):
        self.workflow = workflow
        self.max_workers = max_workers or envinfo.get_max_parallel_targets()

    def launch(self, jobs: list[ReplicationJob]) -> list[TargetOutcome]:

        if not jobs:
            return []

        workers = min(self.max_workers, len(jobs))
        log.debug("Running {} job(s) on {} worker(s)", len(jobs), workers)

        outcomes: dict[str, TargetOutcome] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="replicate") as executor:
            futures = {executor.submit(self.workflow.run, job): job for job in jobs}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    state = future.result()
                except Exception as e:
                    # run() handles step errors; this is a failure in the driver itself
                    log.error("Workflow for {} stopped unexpectedly: {}", job.identity, e)
                    state = WorkflowState.FAILED
                    if job.error_info is None:
                        job.error_info = {"Error": type(e).__name__, "Message": str(e)}

                status = "succeeded" if state == WorkflowState.SUCCEEDED else "failed"
                outcomes[job.job_id] = TargetOutcome.from_job(job, status)

        return [outcomes[job.job_id] for job in jobs]


class StepFunctionLauncher:
    """
    Start one AWS Step Functions execution per job and return without waiting.

    The state machine invokes :func:`core_replicate.handler.step` until the job is terminal.
    """

    def __init__(self, sfn_client: Any, state_machine_arn: str, retry_policy: RetryPolicy | None = None):
        self.client = sfn_client
        self.state_machine_arn = state_machine_arn
        self.retry = retry_policy or RetryPolicy()

    def launch(self, jobs: list[ReplicationJob]) -> list[TargetOutcome]:

        outcomes = []
        for job in jobs:
            name = generate_execution_name(job)
            document = json.dumps(execution_input(job))

            log.info("Starting execution '{}' for {}", name, job.identity)

            try:
                response = self.retry.run(
                    "StartExecution",
                    lambda: self.client.start_execution(
                        stateMachineArn=self.state_machine_arn, name=name, input=document
                    ),
                )
            except ReplicationError as e:
                log.error("Unable to start execution for {}: {}", job.identity, e.message)
                job.error_info = e.to_dict()
                outcomes.append(TargetOutcome.from_job(job, "failed"))
                continue

            outcomes.append(TargetOutcome.from_job(job, "started", execution_arn=response["executionArn"]))

        return outcomes
