"""The "core-replicate" command line interface.

Runs the replication engine locally: resolve an image from a build manifest, or share, copy and
register it in destination accounts and regions"""

from typing import Callable
import sys
import argparse
import traceback

from dotenv import load_dotenv

import core_logging as log
import core_framework as util

from core_replicate import __version__

from core_replicate.cli.resolve import run_resolve, add_resolve_subparser
from core_replicate.cli.run import run_replication, add_run_subparser

from .common import cprint

load_dotenv()

log_stream_name = "core-replicate-cli"

COMMAND: dict[str, Callable] = {
    "resolve": run_resolve,
    "run": run_replication,
}


def parse_args(args: list[str] | None = None) -> dict:
    """Parse the CLI arguments"""

    region = util.get_region()

    parser = argparse.ArgumentParser(
        description="Replicate a built image into other accounts and regions",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="\nSimple Cloud Kit AMI Replication CLI.\n",
    )

    parser.add_argument(
        "--region",
        dest="region",
        type=str,
        metavar="<region>",
        help=f"The source region. Default is '{region}'",
        default=region,
    )

    subparsers = parser.add_subparsers(title="Commands", dest="command", metavar="<command>", required=True)

    add_resolve_subparser(subparsers)
    add_run_subparser(subparsers)

    data = vars(parser.parse_args(args))

    return data


def execute(args: list[str] | None = None):
    """Execute the CLI"""

    try:
        log.setup(log_stream_name)

        kwargs = parse_args(args)

        cprint(f"\nCore Replicate CLI v{__version__}\n")

        cmd = COMMAND.get(kwargs.pop("command"))
        if cmd is not None:
            cmd(**kwargs)

        cprint("\nOperation complete.\n")

    except Exception:
        traceback.print_exc()
        sys.exit(1)


def main():
    """Main entry point for the CLI"""

    execute()


if __name__ == "__main__":
    main()
