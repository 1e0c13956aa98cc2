"""Report workflow outcomes to whoever started them."""

from typing import Any
import threading

import core_logging as log

from .errors import NotificationError, ReplicationError
from .models import ReplicationJob
from .retry import RetryPolicy

# CodePipeline rejects failure messages longer than this
MAX_FAILURE_MESSAGE_LENGTH = 5000


def failure_message(job: ReplicationJob) -> str:
    """Human readable failure message naming the target and the resources involved."""

    message = "Error occurred during copy of snapshot to {}/{}, snapshot ID {}, image ID {}".format(
        job.destination_account_id,
        job.destination_region,
        job.destination_snapshot_id or "none",
        job.destination_image_id or "none",
    )
    if job.error_info:
        message += ": {}: {}".format(job.error_info.get("Error"), job.error_info.get("Message"))
    return message[:MAX_FAILURE_MESSAGE_LENGTH]


class Notifier:
    """
    Report success or failure for a job token exactly once.

    Subclasses implement :meth:`_report_success` and :meth:`_report_failure`.  A token that
    has been reported, or is being reported, cannot be reported again through this notifier.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._reported: dict[str, str] = {}

    def _claim(self, job: ReplicationJob, outcome: str) -> None:
        with self._lock:
            previous = self._reported.get(job.job_id)
            if previous:
                raise NotificationError(
                    f"Job {job.job_id} for {job.identity} was already reported as {previous}",
                    details={"JobId": job.job_id},
                )
            self._reported[job.job_id] = outcome

    def reported(self, job_id: str) -> str | None:
        with self._lock:
            return self._reported.get(job_id)

    def notify_success(self, job: ReplicationJob) -> None:
        self._claim(job, "success")
        log.info("Reporting success for {} (image '{}')", job.identity, job.destination_image_id)
        self._deliver("PutJobSuccessResult", lambda: self._report_success(job))
        job.notified = "success"

    def notify_failure(self, job: ReplicationJob) -> None:
        self._claim(job, "failure")
        log.info("Reporting failure for {}", job.identity)
        self._deliver("PutJobFailureResult", lambda: self._report_failure(job))
        job.notified = "failure"

    def _deliver(self, description: str, fn) -> None:
        try:
            fn()
        except ReplicationError as e:
            raise NotificationError(f"{description} failed: {e.message}", code=e.code) from e

    def _report_success(self, job: ReplicationJob) -> None:
        raise NotImplementedError

    def _report_failure(self, job: ReplicationJob) -> None:
        raise NotImplementedError


class CodePipelineNotifier(Notifier):
    """Report to the CodePipeline job whose id is the job token."""

    def __init__(self, codepipeline_client: Any, retry_policy: RetryPolicy):
        super().__init__()
        self.client = codepipeline_client
        self.retry = retry_policy

    def _report_success(self, job: ReplicationJob) -> None:
        self.retry.run(
            "PutJobSuccessResult",
            lambda: self.client.put_job_success_result(jobId=job.job_id),
        )

    def _report_failure(self, job: ReplicationJob) -> None:
        message = failure_message(job)
        self.retry.run(
            "PutJobFailureResult",
            lambda: self.client.put_job_failure_result(
                jobId=job.job_id,
                failureDetails={"type": "JobFailed", "message": message},
            ),
        )


class ConsoleNotifier(Notifier):
    """Record outcomes in memory and in the log.  Used when there is no pipeline to report to."""

    def __init__(self):
        super().__init__()
        self.outcomes: dict[str, dict] = {}

    def _report_success(self, job: ReplicationJob) -> None:
        self.outcomes[job.job_id] = {"status": "succeeded", "imageId": job.destination_image_id}

    def _report_failure(self, job: ReplicationJob) -> None:
        message = failure_message(job)
        log.error(message)
        self.outcomes[job.job_id] = {"status": "failed", "message": message}
