from __future__ import annotations

import asyncio
import json
import os
import uuid

import pytest

from shardwriter.config import TargetConfig, validate_config
from shardwriter.sink_factory import create_s3_client
from shardwriter.sink_object import ObjectStorageShardSink
from shardwriter.writer import ArrayWriter

pytestmark = [pytest.mark.integration, pytest.mark.minio]


def _minio_target() -> TargetConfig:
    endpoint = os.getenv("MINIO_ENDPOINT_URL")
    bucket = os.getenv("MINIO_BUCKET")
    access = os.getenv("MINIO_ACCESS_KEY_ID")
    secret = os.getenv("MINIO_SECRET_ACCESS_KEY")
    prefix = os.getenv("MINIO_PREFIX", "shard-tests")
    if not all([endpoint, bucket, access, secret]):
        pytest.skip("MinIO env vars not configured")
    return TargetConfig(
        local=False,
        folder=f"{prefix}/{uuid.uuid4().hex}",
        bucket=bucket,
        endpoint_url=endpoint,
        access_key=access,
        secret_key=secret,
    )


def test_minio_sharded_round_trip():
    target = _minio_target()
    client = create_s3_client(target)
    try:
        client.head_bucket(Bucket=target.bucket)
    except Exception:
        client.create_bucket(Bucket=target.bucket)

    config = validate_config(
        {
            "target": target.model_dump(by_alias=True),
            "keyPattern": "part_$$",
            "maxItemsPerShard": 2,
        }
    )
    sink = ObjectStorageShardSink(client, target.bucket, folder=target.folder)

    async def run():
        async with ArrayWriter(config, sink=sink) as writer:
            for n in range(5):
                await writer.write({"n": n})
        return writer

    writer = asyncio.run(run())
    keys = writer.shard_keys()
    assert len(keys) == 3
    items = []
    for key in keys:
        body = client.get_object(Bucket=target.bucket, Key=key)["Body"].read()
        items.extend(json.loads(body))
    assert items == [{"n": n} for n in range(5)]

    # create mode must not clobber what is already there
    async def run_again():
        async with ArrayWriter(config, sink=sink) as writer:
            await writer.write({"n": 99})
        return writer

    second = asyncio.run(run_again())
    assert second.shard_keys() == [f"{target.folder}/part_0003.json"]
