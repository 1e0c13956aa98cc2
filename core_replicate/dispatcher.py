"""Fan a source image out to every replication target."""

from typing import Any

import inflect

from pydantic import ValidationError

import core_logging as log

from .errors import InvalidRequestError, NotificationError, ReplicationError
from .manifest import ManifestReader
from .models import (
    DispatchResult,
    ReplicationJob,
    ReplicationRequest,
    TargetOutcome,
)
from .notify import Notifier
from .retry import RetryPolicy
from .steps import SharingAuthorizer

p = inflect.engine()


def plural(word: str, count: int) -> str:
    return "{} {}".format(count, p.plural(word, count))


class ReplicationDispatcher:
    """
    Resolve the source image, share its snapshots once, then start one workflow per target.

    A failure before the fan-out (manifest or sharing) is reported as a failure for every
    target.  After the fan-out each target succeeds or fails on its own.

    :param clients: Provider of builder clients and destination sessions
    :type clients: AwsClients
    :param notifier: Where outcomes are reported
    :type notifier: Notifier
    :param launcher: Starts the per-target workflows (``LocalLauncher`` or ``StepFunctionLauncher``)
    :type launcher: Any
    :param retry_policy: Retry policy for the sharing calls
    :type retry_policy: RetryPolicy | None
    :param manifest_reader: Resolves the source image from a build artifact
    :type manifest_reader: ManifestReader | None
    """

    def __init__(
        self,
        clients: Any,
        notifier: Notifier,
        launcher: Any,
        retry_policy: RetryPolicy | None = None,
        manifest_reader: ManifestReader | None = None,
    ):
        self.clients = clients
        self.notifier = notifier
        self.launcher = launcher
        self.retry = retry_policy or RetryPolicy()
        self.manifest_reader = manifest_reader

    def dispatch(self, request: ReplicationRequest, artifact: bytes | str | dict | None = None) -> DispatchResult:
        """
        Replicate the request's source image to all of its targets.

        :param request: The request.  When it has no ``source_image_id`` the image is
                        resolved from ``artifact``.
        :type request: ReplicationRequest
        :param artifact: Build artifact (zip bytes) or manifest document
        :type artifact: bytes | str | dict | None
        :return: One outcome per target
        :rtype: DispatchResult
        """
        log.info("Dispatching '{}' to {}", request.ami_name, plural("target", len(request.targets)))

        try:
            source_image_id = request.source_image_id or self._resolve(artifact)
            jobs = self._create_jobs(request, source_image_id)

            authorizer = SharingAuthorizer(self.clients.source_ec2(), self.retry)
            attrs = authorizer.authorize(source_image_id, request.account_ids())

        except ReplicationError as e:
            log.error("Replication of '{}' cannot start: {}", request.ami_name, e.message)
            return self._fail_all(request, e)

        for job in jobs:
            job.record("source_image_attrs", attrs.model_copy(deep=True))

        outcomes = self.launcher.launch(jobs)
        self._report_unstarted(jobs, outcomes)

        result = DispatchResult(source_image_id=source_image_id, outcomes=outcomes)
        log.info(
            "Dispatch of '{}' finished: {} succeeded, {} failed, {} started",
            request.ami_name,
            len(result.succeeded),
            len(result.failed),
            len([o for o in outcomes if o.status == "started"]),
        )
        return result

    def _resolve(self, artifact: bytes | str | dict | None) -> str:
        reader = self.manifest_reader or ManifestReader(region=self.clients.region)
        return reader.image_id(artifact)

    def _create_jobs(self, request: ReplicationRequest, source_image_id: str) -> list[ReplicationJob]:
        try:
            return request.jobs(source_image_id)
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid replication job for '{request.ami_name}': {e}") from e

    def _fail_all(self, request: ReplicationRequest, error: ReplicationError) -> DispatchResult:

        # Jobs need an image id; use the placeholder when resolution itself failed
        source_image_id = request.source_image_id or "unresolved"
        try:
            jobs = request.jobs(source_image_id)
        except ValidationError:
            # Only the default key alias is needed to report the failure
            jobs = request.model_copy(update={"kms_key_alias": None}).jobs(source_image_id)
        outcomes = []
        for job in jobs:
            job.error_info = error.to_dict()
            self._notify_failure(job)
            outcomes.append(TargetOutcome.from_job(job, "failed"))

        return DispatchResult(source_image_id=request.source_image_id, outcomes=outcomes, error=error.to_dict())

    def _report_unstarted(self, jobs: list[ReplicationJob], outcomes: list[TargetOutcome]) -> None:
        """Report failure for jobs the launcher could not start."""
        by_id = {job.job_id: job for job in jobs}
        for outcome in outcomes:
            job = by_id.get(outcome.job_id)
            if job is not None and outcome.status == "failed" and job.notified is None:
                if self.notifier.reported(job.job_id) is None:
                    self._notify_failure(job)

    def _notify_failure(self, job: ReplicationJob) -> None:
        try:
            self.notifier.notify_failure(job)
        except NotificationError as e:
            # Keep going so the remaining targets are still reported
            log.error("Unable to report failure for {}: {}", job.identity, e.message)
