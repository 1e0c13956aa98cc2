"""Resolve the image built for a region from a build artifact manifest.

The manifest is the packer ``manifest.json`` post-processor output.  The first build's
``artifact_id`` lists the images it produced as ``region:imageId`` pairs separated by commas.
"""

from typing import Any
import io
import json
import zipfile

import core_logging as log

from . import envinfo
from .errors import ManifestFormatError, RegionNotFoundError


def parse_artifact_ids(artifact_id: str) -> dict[str, str]:
    """
    Split an ``artifact_id`` value into a region to image id mapping.

    Each entry is split on its first colon.  Empty entries are ignored.

    :param artifact_id: For example ``"us-west-2:ami-1,us-east-1:ami-2"``
    :type artifact_id: str
    :return: ``{"us-west-2": "ami-1", "us-east-1": "ami-2"}``
    :rtype: dict[str, str]
    :raises ManifestFormatError: If an entry is not a ``region:imageId`` pair
    """
    if not isinstance(artifact_id, str):
        raise ManifestFormatError(f"artifact_id must be a string, got {type(artifact_id).__name__}")

    images: dict[str, str] = {}
    for entry in artifact_id.split(","):
        entry = entry.strip()
        if not entry:
            continue
        region, sep, image_id = entry.partition(":")
        region, image_id = region.strip(), image_id.strip()
        if not sep or not region or not image_id:
            raise ManifestFormatError(f"Malformed artifact entry '{entry}', expected 'region:imageId'")
        images[region] = image_id

    if not images:
        raise ManifestFormatError("artifact_id does not list any images")
    return images


def read_manifest(document: str | bytes | dict) -> dict[str, str]:
    """Parse a manifest document and return the first build's images by region."""

    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except ValueError as e:
            raise ManifestFormatError(f"Manifest is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise ManifestFormatError("Manifest must be a JSON object")

    builds = document.get("builds")
    if not isinstance(builds, list) or not builds:
        raise ManifestFormatError("Manifest has no builds")

    first = builds[0]
    if not isinstance(first, dict) or "artifact_id" not in first:
        raise ManifestFormatError("First build in manifest has no artifact_id")

    return parse_artifact_ids(first["artifact_id"])


def read_manifest_from_artifact(data: bytes, file_name: str = envinfo.DEFAULT_MANIFEST_FILE_NAME) -> dict[str, str]:
    """Read ``file_name`` out of a zipped build artifact and parse it."""

    if not data:
        raise ManifestFormatError("Build artifact is empty")

    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            content = archive.read(file_name)
    except zipfile.BadZipFile as e:
        raise ManifestFormatError(f"Build artifact is not a zip archive: {e}") from e
    except KeyError as e:
        raise ManifestFormatError(f"Build artifact does not contain '{file_name}'") from e

    return read_manifest(content)


def resolve_image_id(images: dict[str, str], region: str) -> str:
    """
    :raises RegionNotFoundError: If ``region`` has no image in the manifest
    """
    image_id = images.get(region)
    if not image_id:
        raise RegionNotFoundError(
            f"No image for region '{region}' in manifest (regions: {', '.join(sorted(images)) or 'none'})",
            details={"Region": region},
        )
    return image_id


def download_artifact(s3_client: Any, bucket: str, key: str) -> bytes:
    """Fetch an artifact object from S3."""

    log.debug("Downloading artifact s3://{}/{}", bucket, key)

    response = s3_client.get_object(Bucket=bucket, Key=key)
    return response["Body"].read()


class ManifestReader:
    """Resolve the image id for one region from build artifacts or manifest documents."""

    def __init__(self, region: str | None = None, file_name: str | None = None):
        self.region = region or envinfo.get_region()
        self.file_name = file_name or envinfo.get_manifest_file_name()

    def images(self, artifact: bytes | str | dict | None) -> dict[str, str]:
        if artifact is None:
            raise ManifestFormatError("No build artifact supplied")
        if isinstance(artifact, bytes) and zipfile.is_zipfile(io.BytesIO(artifact)):
            return read_manifest_from_artifact(artifact, self.file_name)
        return read_manifest(artifact)

    def image_id(self, artifact: bytes | str | dict | None) -> str:
        image_id = resolve_image_id(self.images(artifact), self.region)
        log.info("Resolved image '{}' for region '{}' from manifest", image_id, self.region)
        return image_id
