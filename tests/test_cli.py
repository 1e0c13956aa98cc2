import json

import pytest

from core_replicate.cli.common import load_share_with_file, parse_target
from core_replicate.cli.main import parse_args
from core_replicate.cli.resolve import run_resolve

from .aws_fixtures import *


def test_parse_target():

    target = parse_target(f"{DESTINATION_ACCOUNT}:us-east-1")
    assert (target.account_id, target.region, target.job_id) == (DESTINATION_ACCOUNT, "us-east-1", None)

    target = parse_target(f"{DESTINATION_ACCOUNT}:us-east-1:cp-job-1")
    assert target.job_id == "cp-job-1"

    with pytest.raises(ValueError):
        parse_target(DESTINATION_ACCOUNT)


def test_load_share_with_file(tmp_path):

    fn = tmp_path / "share-with.yaml"
    fn.write_text(
        f"- accountId: '{DESTINATION_ACCOUNT}'\n"
        "  regions: [us-east-1, eu-west-1]\n"
        f"- accountId: {OTHER_ACCOUNT}\n"
        "  regions: [us-east-1]\n"
    )

    targets = load_share_with_file(str(fn))

    assert [t.key for t in targets] == [
        (DESTINATION_ACCOUNT, "us-east-1"),
        (DESTINATION_ACCOUNT, "eu-west-1"),
        (OTHER_ACCOUNT, "us-east-1"),
    ]


def test_load_missing_share_with_file(tmp_path):

    with pytest.raises(FileNotFoundError):
        load_share_with_file(str(tmp_path / "missing.yaml"))


def test_parse_run_arguments():

    kwargs = parse_args(
        [
            "--region",
            "us-west-2",
            "run",
            "--ami-name",
            "golden-image-1.0",
            "--image-id",
            "ami-source",
            "--target",
            f"{DESTINATION_ACCOUNT}:us-east-1",
            "--target",
            f"{OTHER_ACCOUNT}:eu-west-1",
        ]
    )

    assert kwargs["command"] == "run"
    assert kwargs["region"] == "us-west-2"
    assert kwargs["targets"] == [f"{DESTINATION_ACCOUNT}:us-east-1", f"{OTHER_ACCOUNT}:eu-west-1"]
    assert kwargs["manifest"] is None


def test_resolve_from_manifest_file(tmp_path):

    fn = tmp_path / "manifest.json"
    fn.write_text(json.dumps({"builds": [{"artifact_id": "us-west-2:ami-west,us-east-1:ami-east"}]}))

    result = run_resolve(region="us-east-1", manifest=str(fn))

    assert result == {"result": {"region": "us-east-1", "imageId": "ami-east"}}
