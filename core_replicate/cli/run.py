"""Run a replication from the command line"""

import core_framework as util

from ..credentials import AwsClients
from ..dispatcher import ReplicationDispatcher
from ..models import ReplicationRequest
from ..notify import ConsoleNotifier, CodePipelineNotifier
from ..retry import RetryPolicy, PollSettings
from ..stepfn import LocalLauncher
from ..workflow import ReplicationWorkflow

from .common import cprint, yprint, parse_target, load_share_with_file, read_artifact


def run_replication(**kwargs) -> dict:
    """Share, copy and register the image in every target, waiting for all of them"""

    targets = [parse_target(t) for t in kwargs.get("targets") or []]
    if kwargs.get("share_with"):
        targets.extend(load_share_with_file(kwargs["share_with"]))

    request = ReplicationRequest(
        ami_name=kwargs["ami_name"],
        source_image_id=kwargs.get("image_id"),
        source_region=kwargs.get("region") or util.get_region(),
        kms_key_alias=kwargs.get("kms_key_alias"),
        targets=targets,
        **({"destination_role_name": kwargs["role_name"]} if kwargs.get("role_name") else {}),
    )

    retry = RetryPolicy.from_environment()
    clients = AwsClients(region=request.source_region, retry_policy=retry)

    # Job tokens on the command line mean a pipeline is waiting on the outcome
    if any(t.job_id for t in request.targets):
        notifier = CodePipelineNotifier(clients.source_client("codepipeline"), retry)
    else:
        notifier = ConsoleNotifier()

    workflow = ReplicationWorkflow(clients, notifier, retry, PollSettings.from_environment())
    dispatcher = ReplicationDispatcher(clients, notifier, LocalLauncher(workflow), retry)

    artifact = read_artifact(kwargs["manifest"]) if kwargs.get("manifest") else None

    cprint(f"Replicating '{request.ami_name}' to {len(request.targets)} target(s)...\n")

    result = dispatcher.dispatch(request, artifact)

    yprint(util.to_yaml(result.to_dict()))

    return {"result": result.to_dict()}


def add_run_subparser(subparsers):
    """Add the run subparser to the subparsers

    Args:
        subparsers (subparsers): The subparsers to add the run subparser to

    """

    parser = subparsers.add_parser("run", help="Replicate an image to one or more accounts and regions")
    parser.set_defaults(command="run")

    parser.add_argument(
        "--ami-name",
        dest="ami_name",
        metavar="<name>",
        type=str,
        required=True,
        help="Name of the image, used for the destination image and its key alias",
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--image-id",
        dest="image_id",
        metavar="<image-id>",
        type=str,
        help="The source image id",
    )
    source.add_argument(
        "--manifest",
        dest="manifest",
        metavar="<path>",
        type=str,
        help="Build artifact zip or manifest.json to resolve the source image from",
    )

    parser.add_argument(
        "--target",
        dest="targets",
        metavar="<account:region[:jobtoken]>",
        action="append",
        type=str,
        help="A destination. May be given more than once",
    )
    parser.add_argument(
        "--share-with",
        dest="share_with",
        metavar="<file.yaml>",
        type=str,
        help="YAML list of {accountId, regions} destinations",
    )
    parser.add_argument(
        "--role-name",
        dest="role_name",
        metavar="<role>",
        type=str,
        help="Role to assume in each destination account. Default is 'AmiSnapshotCopyRole'",
    )
    parser.add_argument(
        "--kms-key-alias",
        dest="kms_key_alias",
        metavar="<alias>",
        type=str,
        help="Destination key alias. Default is 'alias/ami/<ami-name>'",
    )
