import io
import json
import threading
import zipfile
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from core_replicate.models import ReplicationJob, SourceImageAttributes
from core_replicate.retry import RetryPolicy, PollSettings

SOURCE_ACCOUNT = "111111111111"
DESTINATION_ACCOUNT = "222222222222"
OTHER_ACCOUNT = "333333333333"
SOURCE_REGION = "us-west-2"


def client_error(code: str, message: str = "error", status: int = 400, operation: str = "Operation") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def manifest_zip(artifact_id: str, file_name: str = "manifest.json") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr(file_name, json.dumps({"builds": [{"name": "ami", "artifact_id": artifact_id}]}))
    return buffer.getvalue()


class RecordingSleep:
    """Stand-in for time.sleep that records the requested intervals"""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeCredentials:

    def __init__(self, clients: dict):
        self.clients = clients

    def client(self, service: str):
        return self.clients[service]


class FakeClients:
    """Same interface as AwsClients with one set of MagicMock clients per destination"""

    def __init__(self, region: str = SOURCE_REGION, caller_account: str = SOURCE_ACCOUNT):
        self.region = region
        self.caller_account = caller_account
        self.ec2 = MagicMock()
        self.services: dict[str, MagicMock] = {}
        self.destinations: dict[tuple[str, str], dict[str, MagicMock]] = {}
        self.assumed: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def source_ec2(self):
        return self.ec2

    def source_client(self, service: str):
        with self._lock:
            return self.services.setdefault(service, MagicMock())

    def caller_account_id(self) -> str:
        return self.caller_account

    def destination_clients(self, account: str, region: str) -> dict[str, MagicMock]:
        with self._lock:
            return self.destinations.setdefault((account, region), {"ec2": MagicMock(), "kms": MagicMock()})

    @contextmanager
    def destination(self, job: ReplicationJob, purpose: str):
        with self._lock:
            self.assumed.append((job.destination_account_id, job.destination_region, purpose))
        yield FakeCredentials(self.destination_clients(job.destination_account_id, job.destination_region))


def configure_destination(
    clients: FakeClients,
    account: str,
    region: str,
    states: list[str] | None = None,
    snapshot_id: str = "snap-dest",
    image_id: str = "ami-dest",
) -> dict[str, MagicMock]:
    """Make one destination answer every call of a successful replication"""

    dest = clients.destination_clients(account, region)
    dest["kms"].describe_key.return_value = {"KeyMetadata": {"KeyId": f"key-{account}-{region}"}}
    dest["ec2"].copy_snapshot.return_value = {"SnapshotId": snapshot_id}
    dest["ec2"].describe_snapshots.side_effect = [
        {"Snapshots": [{"SnapshotId": snapshot_id, "State": state, "Progress": "100%" if state == "completed" else "50%"}]}
        for state in (states or ["completed"])
    ]
    dest["ec2"].register_image.return_value = {"ImageId": image_id}
    return dest


@pytest.fixture
def source_image() -> dict:
    return {
        "ImageId": "ami-source",
        "Name": "golden-image-1.0",
        "Description": "Golden image",
        "OwnerId": SOURCE_ACCOUNT,
        "State": "available",
        "Architecture": "x86_64",
        "VirtualizationType": "hvm",
        "RootDeviceName": "/dev/xvda",
        "EnaSupport": True,
        "SriovNetSupport": "simple",
        "BlockDeviceMappings": [
            {
                "DeviceName": "/dev/xvda",
                "Ebs": {
                    "SnapshotId": "snap-root",
                    "VolumeSize": 8,
                    "VolumeType": "gp3",
                    "DeleteOnTermination": True,
                    "Encrypted": False,
                },
            },
            {
                "DeviceName": "/dev/xvdb",
                "Ebs": {"SnapshotId": "snap-data", "VolumeSize": 20, "VolumeType": "gp3"},
            },
            {"DeviceName": "/dev/sdc", "VirtualName": "ephemeral0"},
        ],
        "Tags": [
            {"Key": "Name", "Value": "golden-image"},
            {"Key": "Build", "Value": "42"},
            {"Key": "Team", "Value": "platform"},
        ],
    }


@pytest.fixture
def source_attrs(source_image) -> SourceImageAttributes:
    return SourceImageAttributes.model_validate(source_image)


@pytest.fixture
def job(source_attrs) -> ReplicationJob:
    return ReplicationJob(
        source_image_id="ami-source",
        source_region=SOURCE_REGION,
        destination_account_id=DESTINATION_ACCOUNT,
        destination_region="us-east-1",
        ami_name="golden-image-1.0",
        job_id="pipeline-job-1",
        source_image_attrs=source_attrs,
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(recording_sleep) -> RetryPolicy:
    return RetryPolicy(sleep=recording_sleep)


@pytest.fixture
def poll_settings() -> PollSettings:
    return PollSettings(interval=30, max_attempts=10)


@pytest.fixture
def fake_clients() -> FakeClients:
    return FakeClients()


@pytest.fixture
def mock_credentials():

    credentials = {
        "AccessKeyId": "mock_access_key",
        "SecretAccessKey": "mock_secret_key",
        "SessionToken": "mock_session_token",
        "Expiration": datetime.now(timezone.utc) + timedelta(hours=1),
    }

    return credentials


@pytest.fixture
def mock_client(mock_credentials):

    mock_client = MagicMock()
    mock_client.get_caller_identity.return_value = {
        "Arn": f"arn:aws:iam::{SOURCE_ACCOUNT}:user/builder",
        "UserId": "AIDAJDPLRKLG7UEXAMPLE",
        "Account": SOURCE_ACCOUNT,
    }
    mock_client.assume_role.return_value = {
        "Credentials": mock_credentials,
        "ResponseMetadata": {"HTTPStatusCode": 200},
    }

    return mock_client


@pytest.fixture
def mock_session(mock_client):
    mock_session = MagicMock()
    mock_session.region_name = SOURCE_REGION
    mock_session.client.return_value = mock_client

    with patch("boto3.session.Session", return_value=mock_session) as session_class, patch(
        "core_replicate.credentials.aws.get_session", return_value=mock_session
    ) as get_session:
        mock_session.session_class = session_class
        mock_session.get_session = get_session
        yield mock_session
