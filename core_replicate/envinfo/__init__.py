"""Environment driven configuration for the replication engine."""

import os

import core_framework as util

DEFAULT_DESTINATION_ROLE_NAME = "AmiSnapshotCopyRole"
DEFAULT_MANIFEST_FILE_NAME = "manifest.json"
DEFAULT_POLL_INTERVAL_SECONDS = 30
DEFAULT_MAX_POLL_ATTEMPTS = 2880
DEFAULT_RETRY_MAX_ATTEMPTS = 6
DEFAULT_RETRY_BASE_INTERVAL_SECONDS = 2.0
DEFAULT_MAX_PARALLEL_TARGETS = 8
KMS_KEY_ALIAS_PREFIX = "alias/ami/"


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be an integer, got '{value}'") from e


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be a number, got '{value}'") from e


def get_region() -> str:
    return util.get_region()


def get_state_machine_arn() -> str | None:
    return os.getenv("STATE_MACHINE_ARN") or None


def get_input_artifact_name() -> str | None:
    return os.getenv("INPUT_ARTIFACT_NAME") or None


def get_manifest_file_name() -> str:
    return os.getenv("MANIFEST_FILE_NAME", DEFAULT_MANIFEST_FILE_NAME)


def get_destination_role_name() -> str:
    return os.getenv("DESTINATION_ROLE_NAME", DEFAULT_DESTINATION_ROLE_NAME)


def get_poll_interval() -> int:
    return _int_env("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS)


def get_max_poll_attempts() -> int:
    return _int_env("MAX_POLL_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS)


def get_retry_max_attempts() -> int:
    return _int_env("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS)


def get_retry_base_interval() -> float:
    return _float_env("RETRY_BASE_INTERVAL_SECONDS", DEFAULT_RETRY_BASE_INTERVAL_SECONDS)


def get_max_parallel_targets() -> int:
    return _int_env("MAX_PARALLEL_TARGETS", DEFAULT_MAX_PARALLEL_TARGETS)


def destination_role_arn(account: str, role_name: str | None = None) -> str:

    return "arn:aws:iam::{}:role/{}".format(account, role_name or get_destination_role_name())


def kms_key_alias(ami_name: str) -> str:

    return "{}{}".format(KMS_KEY_ALIAS_PREFIX, ami_name)
