"""Resolve the image id for a region from a build manifest"""

from ..manifest import ManifestReader

from .common import cprint, read_artifact


def run_resolve(**kwargs) -> dict:
    """Print the image id the manifest lists for the region"""

    reader = ManifestReader(region=kwargs.get("region"), file_name=kwargs.get("manifest_file_name"))

    image_id = reader.image_id(read_artifact(kwargs["manifest"]))

    cprint(f"{reader.region}: {image_id}")

    return {"result": {"region": reader.region, "imageId": image_id}}


def add_resolve_subparser(subparsers):
    """Add the resolve subparser to the subparsers

    Args:
        subparsers (subparsers): The subparsers to add the resolve subparser to

    """

    parser = subparsers.add_parser("resolve", help="Show the image id a build manifest lists for a region")
    parser.set_defaults(command="resolve")

    parser.add_argument(
        "--manifest",
        dest="manifest",
        metavar="<path>",
        type=str,
        required=True,
        help="Build artifact zip or manifest.json",
    )
    parser.add_argument(
        "--manifest-file-name",
        dest="manifest_file_name",
        metavar="<name>",
        type=str,
        help="Name of the manifest inside the artifact zip. Default is 'manifest.json'",
    )
