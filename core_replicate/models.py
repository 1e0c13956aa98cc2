"""Data models passed between the replication steps.

All models accept either their python field names or their camelCase wire names so a job
document can round trip through a step function execution unchanged.
"""

from typing import Any, Literal
import enum
import json
import uuid

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from . import envinfo
from .errors import InvalidRequestError


class SnapshotState(enum.Enum):
    """Classification of the copy status reported by the destination."""

    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"

    @classmethod
    def from_status(cls, status: str | None) -> "SnapshotState":
        """EC2 reports ``pending``, ``completed``, ``error`` and a few transitional values."""
        if status is None:
            return cls.PENDING
        status = status.lower()
        if status == "completed":
            return cls.COMPLETED
        if status == "error":
            return cls.ERROR
        return cls.PENDING

    def __str__(self):
        return self.value


class SourceImageAttributes(BaseModel):
    """
    The attributes of the source image needed to register a copy of it.

    Field aliases are the EC2 ``DescribeImages`` keys, so an image description can be
    validated directly.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    image_id: str = Field(..., alias="ImageId")
    name: str = Field(..., alias="Name")
    description: str | None = Field(None, alias="Description")
    architecture: str | None = Field(None, alias="Architecture")
    virtualization_type: str | None = Field(None, alias="VirtualizationType")
    root_device_name: str | None = Field(None, alias="RootDeviceName")
    kernel_id: str | None = Field(None, alias="KernelId")
    ramdisk_id: str | None = Field(None, alias="RamdiskId")
    ena_support: bool | None = Field(None, alias="EnaSupport")
    sriov_net_support: str | None = Field(None, alias="SriovNetSupport")
    boot_mode: str | None = Field(None, alias="BootMode")
    block_device_mappings: list[dict[str, Any]] = Field(default_factory=list, alias="BlockDeviceMappings")
    tags: list[dict[str, str]] = Field(default_factory=list, alias="Tags")

    def ebs_mappings(self) -> list[dict[str, Any]]:
        return [m for m in self.block_device_mappings if m.get("Ebs", {}).get("SnapshotId")]

    def snapshot_ids(self) -> list[str]:
        """Every snapshot backing an EBS device of the image, in mapping order."""
        return [m["Ebs"]["SnapshotId"] for m in self.ebs_mappings()]

    def primary_mapping(self) -> dict[str, Any]:
        """The root device mapping, or the first EBS mapping when the root is not EBS backed."""
        mappings = self.ebs_mappings()
        if not mappings:
            raise InvalidRequestError(f"Image {self.image_id} has no EBS backed block device mappings")
        for mapping in mappings:
            if mapping.get("DeviceName") == self.root_device_name:
                return mapping
        return mappings[0]

    def primary_snapshot_id(self) -> str:
        return self.primary_mapping()["Ebs"]["SnapshotId"]


class EncryptionKeyDescriptor(BaseModel):
    """The destination encryption key: its alias, resolved id and policy document."""

    model_config = ConfigDict(populate_by_name=True)

    alias_name: str = Field(..., alias="aliasName")
    key_id: str | None = Field(None, alias="keyId")
    policy: dict[str, Any] = Field(..., alias="policy")

    @classmethod
    def compose(cls, alias_name: str, owner_account_id: str, role_arn: str) -> "EncryptionKeyDescriptor":
        """
        Build the descriptor with the key policy for ``role_arn``.

        The owner account root administers the key.  The destination role may use the key and
        may only issue grants on it to AWS services (EBS decrypting the volume).
        """
        policy = {
            "Version": "2012-10-17",
            "Id": "ami-copy-key-policy",
            "Statement": [
                {
                    "Sid": "Enable IAM User Permissions",
                    "Effect": "Allow",
                    "Principal": {"AWS": f"arn:aws:iam::{owner_account_id}:root"},
                    "Action": "kms:*",
                    "Resource": "*",
                },
                {
                    "Sid": "Allow importer role to use key",
                    "Effect": "Allow",
                    "Principal": {"AWS": role_arn},
                    "Action": [
                        "kms:Encrypt",
                        "kms:Decrypt",
                        "kms:ReEncrypt*",
                        "kms:GenerateDataKey*",
                        "kms:DescribeKey",
                    ],
                    "Resource": "*",
                },
                {
                    "Sid": "Allow importer role to grant access to EBS for decryption",
                    "Effect": "Allow",
                    "Principal": {"AWS": role_arn},
                    "Action": ["kms:CreateGrant", "kms:ListGrants", "kms:RevokeGrant"],
                    "Resource": "*",
                    "Condition": {"Bool": {"kms:GrantIsForAWSResource": "true"}},
                },
            ],
        }
        return cls(alias_name=alias_name, policy=policy)

    def policy_document(self) -> str:
        return json.dumps(self.policy)


class ReplicationJob(BaseModel):
    """
    One (destination account, destination region) replication.

    Identifier fields are frozen.  Progress fields start empty and are written once by the
    step that produces them through :meth:`record`.
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    source_image_id: str = Field(..., alias="sourceImageId", frozen=True)
    source_region: str = Field(..., alias="sourceRegion", frozen=True)
    destination_account_id: str = Field(..., alias="destinationAccountId", frozen=True)
    destination_region: str = Field(..., alias="destinationRegion", frozen=True)
    destination_role_name: str = Field(
        envinfo.DEFAULT_DESTINATION_ROLE_NAME, alias="destinationRoleName", frozen=True
    )
    destination_role_arn: str = Field(..., alias="destinationRoleArn", frozen=True)
    kms_key_alias: str = Field(..., alias="kmsKeyAlias", frozen=True)
    ami_name: str = Field(..., alias="amiName", frozen=True)
    job_id: str = Field(..., alias="jobId", frozen=True, description="Pipeline job token or a generated id")

    source_image_attrs: SourceImageAttributes | None = Field(None, alias="sourceImageAttrs")
    destination_snapshot_id: str | None = Field(None, alias="destinationSnapshotId")
    snapshot_state: SnapshotState | None = Field(None, alias="snapshotState")
    snapshot_progress: str | None = Field(None, alias="snapshotProgress")
    snapshot_state_message: str | None = Field(None, alias="snapshotStateMessage")
    poll_attempts: int = Field(0, alias="pollAttempts")
    destination_image_id: str | None = Field(None, alias="destinationImageId")
    error_info: dict[str, Any] | None = Field(None, alias="errorInfo")
    notified: Literal["success", "failure"] | None = Field(None, alias="notified")

    @model_validator(mode="before")
    @classmethod
    def derive_identifiers(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values

        def pick(name: str, alias: str) -> Any:
            return values.get(alias, values.get(name))

        account = pick("destination_account_id", "destinationAccountId")
        role_name = pick("destination_role_name", "destinationRoleName") or envinfo.DEFAULT_DESTINATION_ROLE_NAME
        ami_name = pick("ami_name", "amiName")

        values = dict(values)
        if account and not pick("destination_role_arn", "destinationRoleArn"):
            values.pop("destination_role_arn", None)
            values["destinationRoleArn"] = envinfo.destination_role_arn(account, role_name)
        if ami_name and not pick("kms_key_alias", "kmsKeyAlias"):
            values.pop("kms_key_alias", None)
            values["kmsKeyAlias"] = envinfo.kms_key_alias(ami_name)
        if not pick("job_id", "jobId"):
            values.pop("job_id", None)
            values["jobId"] = uuid.uuid4().hex
        return values

    @field_validator("kms_key_alias")
    @classmethod
    def validate_alias(cls, value: str) -> str:
        if not value.startswith("alias/"):
            raise ValueError(f"KMS key alias must start with 'alias/': {value}")
        return value

    @property
    def identity(self) -> str:
        """Short label used to attribute log lines and messages to this target."""
        return f"{self.destination_account_id}/{self.destination_region}"

    def record(self, name: str, value: Any) -> None:
        """
        Write a progress field that may only be set once.

        Writing the same value again is allowed so a resumed step is harmless.

        :raises InvalidRequestError: If the field already holds a different value
        """
        current = getattr(self, name)
        if current is not None and current != value:
            raise InvalidRequestError(
                f"{name} for {self.identity} is already '{current}', refusing to overwrite with '{value}'"
            )
        setattr(self, name, value)

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ReplicationTarget(BaseModel):
    """A destination (account, region) and the pipeline job token for it, when there is one."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId")
    region: str = Field(..., alias="region")
    job_id: str | None = Field(None, alias="jobId")

    @field_validator("account_id", mode="before")
    @classmethod
    def validate_account_id(cls, value: Any) -> str:
        value = str(value).strip()
        if len(value) != 12 or not value.isdigit():
            raise ValueError(f"Account id must be 12 digits: '{value}'")
        return value

    @property
    def key(self) -> tuple[str, str]:
        return (self.account_id, self.region)


class SharingTarget(BaseModel):
    """One entry of a share-with list: an account and the regions to replicate into."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId")
    regions: list[str] = Field(..., alias="regions")

    @field_validator("account_id", mode="before")
    @classmethod
    def coerce_account_id(cls, value: Any) -> str:
        # YAML reads unquoted account ids as integers
        return str(value).zfill(12) if isinstance(value, int) else value

    def targets(self) -> list[ReplicationTarget]:
        return [ReplicationTarget(account_id=str(self.account_id), region=region) for region in self.regions]


class ReplicationRequest(BaseModel):
    """Everything the dispatcher needs to fan a source image out to its targets."""

    model_config = ConfigDict(populate_by_name=True)

    ami_name: str = Field(..., alias="amiName")
    source_image_id: str | None = Field(None, alias="sourceImageId")
    source_region: str = Field(default_factory=envinfo.get_region, alias="sourceRegion")
    destination_role_name: str = Field(
        default_factory=envinfo.get_destination_role_name, alias="destinationRoleName"
    )
    kms_key_alias: str | None = Field(None, alias="kmsKeyAlias")
    targets: list[ReplicationTarget] = Field(..., alias="targets")

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, value: list[ReplicationTarget]) -> list[ReplicationTarget]:
        if not value:
            raise ValueError("At least one replication target is required")
        seen = set()
        tokens = set()
        for target in value:
            if target.key in seen:
                raise ValueError(f"Duplicate replication target {target.account_id}/{target.region}")
            seen.add(target.key)
            if target.job_id:
                if target.job_id in tokens:
                    raise ValueError(f"Job token '{target.job_id}' is used by more than one target")
                tokens.add(target.job_id)
        return value

    @field_validator("kms_key_alias")
    @classmethod
    def validate_alias(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith("alias/"):
            raise ValueError(f"KMS key alias must start with 'alias/': {value}")
        return value

    def account_ids(self) -> list[str]:
        return sorted({t.account_id for t in self.targets})

    def jobs(self, source_image_id: str) -> list[ReplicationJob]:
        """Create one job per target for the resolved source image."""
        return [
            ReplicationJob(
                source_image_id=source_image_id,
                source_region=self.source_region,
                destination_account_id=target.account_id,
                destination_region=target.region,
                destination_role_name=self.destination_role_name,
                kms_key_alias=self.kms_key_alias,
                ami_name=self.ami_name,
                job_id=target.job_id,
            )
            for target in self.targets
        ]


class TargetOutcome(BaseModel):
    """What happened to one target of a dispatch."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId")
    region: str = Field(..., alias="region")
    job_id: str = Field(..., alias="jobId")
    status: Literal["succeeded", "failed", "started"] = Field(..., alias="status")
    destination_snapshot_id: str | None = Field(None, alias="destinationSnapshotId")
    destination_image_id: str | None = Field(None, alias="destinationImageId")
    execution_arn: str | None = Field(None, alias="executionArn")
    error: dict[str, Any] | None = Field(None, alias="error")

    @classmethod
    def from_job(cls, job: ReplicationJob, status: str, **kwargs) -> "TargetOutcome":
        return cls(
            account_id=job.destination_account_id,
            region=job.destination_region,
            job_id=job.job_id,
            status=status,
            destination_snapshot_id=job.destination_snapshot_id,
            destination_image_id=job.destination_image_id,
            error=job.error_info,
            **kwargs,
        )


class DispatchResult(BaseModel):
    """The result of dispatching a request: one outcome per target."""

    model_config = ConfigDict(populate_by_name=True)

    source_image_id: str | None = Field(None, alias="sourceImageId")
    outcomes: list[TargetOutcome] = Field(default_factory=list, alias="outcomes")
    error: dict[str, Any] | None = Field(None, alias="error", description="Set when a precondition failed")

    @property
    def succeeded(self) -> list[TargetOutcome]:
        return [o for o in self.outcomes if o.status == "succeeded"]

    @property
    def failed(self) -> list[TargetOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
