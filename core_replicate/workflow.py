"""The per-target replication state machine.

:func:`next_state` is the pure transition function.  :class:`ReplicationWorkflow` performs the
work of a state and drives a job from ``START`` to ``SUCCEEDED`` or ``FAILED``, either in one
loop (:meth:`ReplicationWorkflow.run`) or one transition at a time
(:meth:`ReplicationWorkflow.step`) for an external scheduler such as AWS Step Functions.
"""

from typing import Any, Callable
import enum
import time

import core_logging as log

from .errors import InvalidRequestError, ReplicationError, as_replication_error
from .models import ReplicationJob, SnapshotState
from .notify import Notifier
from .retry import RetryPolicy, PollSettings
from .steps import (
    SnapshotCopier,
    ProgressPoller,
    ImageRegistrar,
    describe_source_image,
)


class WorkflowState(enum.Enum):
    """States of one replication job."""

    START = "start"
    CAPTURE_SOURCE = "capture_source"
    COPY_SNAPSHOT = "copy_snapshot"
    CHECK_PROGRESS = "check_progress"
    WAIT = "wait"
    REGISTER_IMAGE = "register_image"
    NOTIFY_SUCCESS = "notify_success"
    NOTIFY_FAILURE = "notify_failure"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def from_value(cls, value: "str | WorkflowState | None") -> "WorkflowState":
        """Convert a string value to a WorkflowState enum."""
        if value is None:
            return cls.START
        if isinstance(value, cls):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid workflow state: {value}") from None

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.SUCCEEDED, WorkflowState.FAILED)

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"WorkflowState.{self.value.upper()}"


def next_state(state: WorkflowState, job: ReplicationJob) -> WorkflowState:
    """
    The state that follows ``state`` once its work completed without error.

    :raises ValueError: If ``state`` is terminal
    """
    if state == WorkflowState.START:
        return WorkflowState.CAPTURE_SOURCE if job.source_image_attrs is None else WorkflowState.COPY_SNAPSHOT

    if state == WorkflowState.CAPTURE_SOURCE:
        return WorkflowState.COPY_SNAPSHOT

    if state == WorkflowState.COPY_SNAPSHOT:
        return WorkflowState.CHECK_PROGRESS

    if state == WorkflowState.CHECK_PROGRESS:
        if job.snapshot_state == SnapshotState.COMPLETED:
            return WorkflowState.REGISTER_IMAGE
        if job.snapshot_state == SnapshotState.ERROR:
            return WorkflowState.NOTIFY_FAILURE
        return WorkflowState.WAIT

    if state == WorkflowState.WAIT:
        return WorkflowState.CHECK_PROGRESS

    if state == WorkflowState.REGISTER_IMAGE:
        return WorkflowState.NOTIFY_SUCCESS

    if state == WorkflowState.NOTIFY_SUCCESS:
        return WorkflowState.SUCCEEDED

    if state == WorkflowState.NOTIFY_FAILURE:
        return WorkflowState.FAILED

    raise ValueError(f"No transition out of terminal state {state}")


def failure_state(state: WorkflowState) -> WorkflowState:
    """
    Where an error raised in ``state`` leads.

    Errors while notifying end the workflow, so a job is never reported both ways.
    """
    if state in (WorkflowState.NOTIFY_SUCCESS, WorkflowState.NOTIFY_FAILURE):
        return WorkflowState.FAILED
    return WorkflowState.NOTIFY_FAILURE


class ReplicationWorkflow:
    """
    Perform the work of each state for a job.

    :param clients: Provider of builder clients and destination sessions
    :type clients: AwsClients
    :param notifier: Where outcomes are reported
    :type notifier: Notifier
    :param retry_policy: Retry policy for every remote call
    :type retry_policy: RetryPolicy | None
    :param poll: Interval and ceiling for progress checks
    :type poll: PollSettings | None
    :param sleep: Callable used for the ``WAIT`` state.  ``None`` when an external scheduler
                  performs the wait and re-invokes :meth:`step`.
    :type sleep: Callable[[float], None] | None
    """

    def __init__(
        self,
        clients: Any,
        notifier: Notifier,
        retry_policy: RetryPolicy | None = None,
        poll: PollSettings | None = None,
        sleep: Callable[[float], None] | None = time.sleep,
    ):
        self.clients = clients
        self.notifier = notifier
        self.retry = retry_policy or RetryPolicy()
        self.poll = poll or PollSettings()
        self.sleep = sleep

        self.copier = SnapshotCopier(clients, self.retry)
        self.poller = ProgressPoller(clients, self.retry, self.poll)
        self.registrar = ImageRegistrar(clients, self.retry)

    def step(self, state: WorkflowState, job: ReplicationJob) -> WorkflowState:
        """
        Perform the work of ``state`` and return the next state.

        Errors never escape: they are recorded on the job as ``error_info`` and the returned
        state is the failure path.
        """
        log.set_identity(job.identity)
        try:
            log.trace("Entering state {} for {}", state, job.identity)
            self._perform(state, job)
            following = next_state(state, job)
        except Exception as e:
            error = as_replication_error(e)
            if not isinstance(e, ReplicationError):
                log.error("Unexpected error in state {} for {}: {}", state, job.identity, e)
            else:
                log.error("{} in state {} for {}: {}", error.error_type, state, job.identity, error.message)
            if job.error_info is None:
                job.error_info = error.to_dict()
            following = failure_state(state)
        finally:
            log.reset_identity()

        log.debug("Transition {} -> {} for {}", state, following, job.identity)
        return following

    def run(
        self,
        job: ReplicationJob,
        state: WorkflowState = WorkflowState.START,
        checkpoint: Callable[[WorkflowState, ReplicationJob], None] | None = None,
    ) -> WorkflowState:
        """
        Drive ``job`` to a terminal state.

        :param job: The job to run
        :type job: ReplicationJob
        :param state: State to resume from
        :type state: WorkflowState
        :param checkpoint: Called after each transition with the new state and the job, so
                           a caller can persist enough to resume later
        :type checkpoint: Callable | None
        :return: ``SUCCEEDED`` or ``FAILED``
        :rtype: WorkflowState
        """
        log.info("Starting replication of '{}' to {} from state {}", job.source_image_id, job.identity, state)

        while not state.is_terminal:
            state = self.step(state, job)
            if checkpoint:
                checkpoint(state, job)

        log.info("Replication to {} finished: {}", job.identity, state)
        return state

    def _perform(self, state: WorkflowState, job: ReplicationJob) -> None:

        if state == WorkflowState.START:
            return

        if state == WorkflowState.CAPTURE_SOURCE:
            attrs = describe_source_image(self.clients.source_ec2(), job.source_image_id, self.retry)
            job.record("source_image_attrs", attrs)
            return

        if state == WorkflowState.COPY_SNAPSHOT:
            self.copier.copy(job)
            return

        if state == WorkflowState.CHECK_PROGRESS:
            self.poller.check(job)
            return

        if state == WorkflowState.WAIT:
            if self.sleep is not None:
                log.debug("Waiting {}s before the next progress check", self.poll.interval)
                self.sleep(self.poll.interval)
            return

        if state == WorkflowState.REGISTER_IMAGE:
            self.registrar.register(job)
            return

        if state == WorkflowState.NOTIFY_SUCCESS:
            if job.notified:
                log.warning("{} was already reported as {}", job.identity, job.notified)
                return
            self.notifier.notify_success(job)
            return

        if state == WorkflowState.NOTIFY_FAILURE:
            if job.notified:
                log.warning("{} was already reported as {}", job.identity, job.notified)
                return
            if job.error_info is None:
                job.error_info = InvalidRequestError(
                    f"Snapshot copy in {job.identity} ended in state {job.snapshot_state}"
                ).to_dict()
            self.notifier.notify_failure(job)
            return

        raise ValueError(f"Cannot perform terminal state {state}")
