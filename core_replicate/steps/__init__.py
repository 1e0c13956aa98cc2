"""The individual replication steps, each operating on a :class:`~core_replicate.models.ReplicationJob`."""

from .share_snapshots import SharingAuthorizer, describe_source_image
from .bootstrap_key import KeyBootstrapper
from .copy_snapshot import SnapshotCopier
from .check_progress import ProgressPoller
from .register_image import ImageRegistrar

__all__ = [
    "SharingAuthorizer",
    "describe_source_image",
    "KeyBootstrapper",
    "SnapshotCopier",
    "ProgressPoller",
    "ImageRegistrar",
]
