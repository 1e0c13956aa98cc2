"""Ensure the destination encryption key and its alias exist with the right policy."""

from typing import Any
import threading
import weakref

from botocore.exceptions import ClientError

import core_logging as log

from ..errors import (
    ReplicationError,
    ResourceMissingError,
    TransientCloudError,
    error_code,
)
from ..models import EncryptionKeyDescriptor
from ..retry import RetryPolicy

KEY_POLICY_NAME = "default"
ORPHAN_KEY_PENDING_WINDOW_DAYS = 7

_partition_guard = threading.Lock()
_partition_locks: "weakref.WeakValueDictionary[tuple[str, str, str], threading.Lock]" = weakref.WeakValueDictionary()


def partition_lock(account_id: str, region: str, alias_name: str) -> threading.Lock:
    """
    Single writer lock for one (account, region, alias) within this process.

    An entry lives only while some caller still references its lock.
    """
    key = (account_id, region, alias_name)
    with _partition_guard:
        lock = _partition_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _partition_locks[key] = lock
        return lock


class KeyBootstrapper:
    """
    Resolve the destination key alias, creating the key when it does not exist.

    Creation is serialised per (account, region, alias) inside the process.  Workflows in
    other processes can still race; alias creation is the arbiter there, and the loser
    schedules its own key for deletion and adopts the winner.

    Failures other than authorization denials are classified as transient and retried.

    :param kms_client: KMS client for the destination account and region
    :type kms_client: Any
    :param retry_policy: Retry policy for every KMS call
    :type retry_policy: RetryPolicy
    """

    def __init__(self, kms_client: Any, retry_policy: RetryPolicy):
        self.kms_client = kms_client
        self.retry = retry_policy

    def bootstrap(
        self,
        alias_name: str,
        role_arn: str,
        owner_account_id: str,
        region: str,
        ami_name: str | None = None,
    ) -> EncryptionKeyDescriptor:
        """
        Ensure a key exists under ``alias_name`` with a policy for ``role_arn``.

        :return: The key descriptor with ``key_id`` resolved
        :rtype: EncryptionKeyDescriptor
        :raises AuthorizationError: If KMS denies the destination role
        :raises RetriesExhaustedError: If KMS keeps failing
        """
        descriptor = EncryptionKeyDescriptor.compose(alias_name, owner_account_id, role_arn)

        with partition_lock(owner_account_id, region, alias_name):
            key_id = self._resolve_alias(alias_name)
            if key_id:
                log.debug("Key alias '{}' resolves to key '{}', refreshing policy", alias_name, key_id)
                self._put_policy(key_id, descriptor)
            else:
                log.info("Key alias '{}' not found, creating key", alias_name)
                key_id = self._create(descriptor, ami_name or alias_name)

        return descriptor.model_copy(update={"key_id": key_id})

    def _resolve_alias(self, alias_name: str) -> str | None:
        try:
            response = self.retry.run(
                "DescribeKey",
                lambda: self.kms_client.describe_key(KeyId=alias_name),
                fallback=TransientCloudError,
            )
        except ResourceMissingError:
            return None
        return response["KeyMetadata"]["KeyId"]

    def _put_policy(self, key_id: str, descriptor: EncryptionKeyDescriptor) -> None:
        self.retry.run(
            "PutKeyPolicy",
            lambda: self.kms_client.put_key_policy(
                KeyId=key_id,
                PolicyName=KEY_POLICY_NAME,
                Policy=descriptor.policy_document(),
                BypassPolicyLockoutSafetyCheck=True,
            ),
            fallback=TransientCloudError,
        )

    def _create(self, descriptor: EncryptionKeyDescriptor, ami_name: str) -> str:

        response = self.retry.run(
            "CreateKey",
            lambda: self.kms_client.create_key(
                Description=f"AMI encryption key - {ami_name}",
                Policy=descriptor.policy_document(),
                BypassPolicyLockoutSafetyCheck=True,
            ),
            fallback=TransientCloudError,
        )
        key_id = response["KeyMetadata"]["KeyId"]
        log.debug("Created key '{}'", key_id)

        if self.retry.run(
            "CreateAlias",
            lambda: self._create_alias(descriptor.alias_name, key_id),
            fallback=TransientCloudError,
        ):
            log.info("Created key '{}' with alias '{}'", key_id, descriptor.alias_name)
            return key_id

        # Another workflow created the alias first
        log.warning(
            "Alias '{}' was created concurrently, discarding key '{}'",
            descriptor.alias_name,
            key_id,
        )
        self._discard(key_id)

        winner = self._resolve_alias(descriptor.alias_name)
        if not winner:
            raise TransientCloudError(f"Alias '{descriptor.alias_name}' exists but cannot be resolved")
        return winner

    def _create_alias(self, alias_name: str, key_id: str) -> bool:
        try:
            self.kms_client.create_alias(AliasName=alias_name, TargetKeyId=key_id)
        except ClientError as e:
            if error_code(e) == "AlreadyExistsException":
                return False
            raise
        return True

    def _discard(self, key_id: str) -> None:
        try:
            self.retry.run(
                "ScheduleKeyDeletion",
                lambda: self.kms_client.schedule_key_deletion(
                    KeyId=key_id, PendingWindowInDays=ORPHAN_KEY_PENDING_WINDOW_DAYS
                ),
                fallback=TransientCloudError,
            )
        except ReplicationError as e:
            # Unused key is left for manual removal
            log.warning("Unable to schedule deletion of unused key '{}': {}", key_id, e.message)
