"""Factory for selecting the ShardSink backend."""
from __future__ import annotations

from typing import Optional

import boto3
from botocore.client import BaseClient

from .config import TargetConfig, WriterConfig
from .env import env_or
from .sink import ShardSink
from .sink_local import LocalFileShardSink
from .sink_object import ObjectStorageShardSink, ProgressCallback


def create_s3_client(target: TargetConfig) -> BaseClient:
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=env_or(target.endpoint_url, "SHARDWRITER_S3_ENDPOINT_URL"),
        region_name=env_or(target.region, "SHARDWRITER_S3_REGION"),
        aws_access_key_id=env_or(target.access_key, "SHARDWRITER_S3_ACCESS_KEY_ID"),
        aws_secret_access_key=env_or(target.secret_key, "SHARDWRITER_S3_SECRET_ACCESS_KEY"),
    )


def create_shard_sink(
    config: WriterConfig,
    on_progress: Optional[ProgressCallback] = None,
    client: Optional[BaseClient] = None,
) -> ShardSink:
    target = config.target
    if target.local:
        return LocalFileShardSink(
            target.folder,
            mkdir_recursive=config.mkdir_recursive,
            debug=config.debug,
        )
    return ObjectStorageShardSink(
        client or create_s3_client(target),
        bucket=target.bucket,
        folder=target.folder,
        on_progress=on_progress,
        verbose=config.verbose,
        debug=config.debug,
    )


__all__ = ["create_s3_client", "create_shard_sink"]
