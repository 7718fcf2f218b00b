from __future__ import annotations

from typing import Any

import boto3

from .settings import S, Settings


def build_session(settings: Settings = S) -> boto3.session.Session:
    return boto3.session.Session(region_name=settings.aws_region or "us-east-1")


def dynamodb_resource(settings: Settings = S) -> Any:
    return build_session(settings).resource("dynamodb")
