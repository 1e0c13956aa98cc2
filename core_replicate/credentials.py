"""Clients for the builder account and short-lived sessions in destination accounts."""

from typing import Any, Iterator
from contextlib import contextmanager
from datetime import datetime
import re

import boto3

import core_logging as log
import core_helper.aws as aws

from . import envinfo
from .errors import AuthorizationError
from .models import ReplicationJob
from .retry import RetryPolicy

SESSION_DURATION_SECONDS = 900


def role_session_name(*parts: str) -> str:
    """Role session names allow ``[\\w+=,.@-]`` and at most 64 characters."""
    name = "-".join(p for p in parts if p)
    return re.sub(r"[^\w+=,.@-]", "-", name)[:64]


class ScopedCredentials:
    """
    Temporary credentials for one destination role, usable only while open.

    Instances are created per call context by :meth:`AwsClients.destination` and closed when
    that context exits, so they are never reused by another step or another workflow.
    """

    def __init__(
        self,
        role_arn: str,
        region: str,
        access_key_id: str,
        secret_access_key: str,
        session_token: str,
        expiration: datetime | None = None,
    ):
        self.role_arn = role_arn
        self.region = region
        self.expiration = expiration
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._session_token = session_token
        self._session: boto3.session.Session | None = None
        self.closed = False

    @classmethod
    def from_response(cls, role_arn: str, region: str, response: dict) -> "ScopedCredentials":
        credentials = response["Credentials"]
        return cls(
            role_arn=role_arn,
            region=region,
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expiration=credentials.get("Expiration"),
        )

    def client(self, service: str) -> Any:
        if self.closed:
            raise AuthorizationError(f"Credentials for {self.role_arn} have already been released")
        if self._session is None:
            self._session = boto3.session.Session(
                aws_access_key_id=self._access_key_id,
                aws_secret_access_key=self._secret_access_key,
                aws_session_token=self._session_token,
                region_name=self.region,
            )
        return self._session.client(service, region_name=self.region)

    def close(self) -> None:
        self._access_key_id = self._secret_access_key = self._session_token = ""
        self._session = None
        self.closed = True

    def __repr__(self) -> str:
        return f"ScopedCredentials(role_arn={self.role_arn!r}, region={self.region!r}, closed={self.closed})"


def assume_role(sts_client: Any, role_arn: str, session_name: str, region: str) -> ScopedCredentials:
    """Assume ``role_arn`` and wrap the temporary credentials for ``region``."""

    log.debug("Assuming role '{}' as session '{}'", role_arn, session_name)

    response = sts_client.assume_role(
        RoleArn=role_arn,
        RoleSessionName=session_name,
        DurationSeconds=SESSION_DURATION_SECONDS,
    )
    return ScopedCredentials.from_response(role_arn, region, response)


class AwsClients:
    """
    Provide the AWS clients each step needs.

    Builder account (source) clients come from ``core_helper.aws`` and the default credential
    chain.  Destination clients are only reachable through :meth:`destination`, which assumes
    the job's role for the duration of a ``with`` block.

    :param region: The builder (source) region.  Defaults to the current region.
    :type region: str | None
    :param retry_policy: Policy used around role assumption
    :type retry_policy: RetryPolicy | None
    :param source_role: Optional role to assume in the builder account for EC2 calls
    :type source_role: str | None
    """

    def __init__(
        self,
        region: str | None = None,
        retry_policy: RetryPolicy | None = None,
        source_role: str | None = None,
    ):
        self.region = region or envinfo.get_region()
        self.source_role = source_role
        self.retry = retry_policy or RetryPolicy()

    def source_ec2(self) -> Any:
        return aws.ec2_client(region=self.region, role=self.source_role)

    def source_client(self, service: str) -> Any:
        return aws.get_session(region=self.region).client(service, region_name=self.region)

    def caller_account_id(self) -> str:
        sts = self.source_client("sts")
        response = self.retry.run("GetCallerIdentity", lambda: sts.get_caller_identity())
        return response["Account"]

    @contextmanager
    def destination(self, job: ReplicationJob, purpose: str) -> Iterator[ScopedCredentials]:
        """
        Assume the job's destination role for the body of the ``with`` block.

        :param job: The job whose destination role and region to use
        :type job: ReplicationJob
        :param purpose: Short label for the role session name (``CopySnapshot`` for example)
        :type purpose: str
        """
        sts = self.source_client("sts")
        session_name = role_session_name(purpose, job.destination_account_id, job.destination_region)

        credentials = self.retry.run(
            "AssumeRole",
            lambda: assume_role(sts, job.destination_role_arn, session_name, job.destination_region),
            fallback=AuthorizationError,
        )
        try:
            yield credentials
        finally:
            credentials.close()
