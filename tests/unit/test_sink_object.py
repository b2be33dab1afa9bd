from __future__ import annotations

import io
import json
import threading
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from shardwriter.config import WriteMode
from shardwriter.errors import SinkIOError
from shardwriter.sink_object import ObjectStorageShardSink, PassThroughBuffer


def _not_found_error(operation="head_object"):
    return ClientError({"Error": {"Code": "404"}}, operation)


def _fake_client(store: dict, fail_upload: Exception | None = None, chunk_size: int = 4):
    """MagicMock S3 client keeping uploaded objects in ``store``."""
    client = MagicMock()

    def head_object(Bucket, Key):
        if (Bucket, Key) not in store:
            raise _not_found_error()
        return {"ContentLength": len(store[(Bucket, Key)])}

    def get_object(Bucket, Key):
        if (Bucket, Key) not in store:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "get_object")
        return {"Body": io.BytesIO(store[(Bucket, Key)])}

    def upload_fileobj(Fileobj, Bucket, Key, Callback=None):
        body = bytearray()
        while True:
            chunk = Fileobj.read(chunk_size)
            if not chunk:
                break
            body += chunk
            if Callback is not None:
                Callback(len(chunk))
            if fail_upload is not None:
                raise fail_upload
        store[(Bucket, Key)] = bytes(body)

    client.head_object.side_effect = head_object
    client.get_object.side_effect = get_object
    client.upload_fileobj.side_effect = upload_fileobj
    return client


def test_object_key_joins_folder():
    sink = ObjectStorageShardSink(MagicMock(), "bucket", folder="/exports/daily/")
    assert sink.object_key("a_0000.json") == "exports/daily/a_0000.json"
    assert ObjectStorageShardSink(MagicMock(), "bucket").object_key("a.json") == "a.json"


def test_upload_round_trip():
    store: dict = {}
    sink = ObjectStorageShardSink(_fake_client(store), "bucket", folder="out")
    handle = sink.open("a_0000.json", WriteMode.CREATE)
    handle.write(b'{"a":1}')
    handle.write(b',{"a":2}')
    handle.close()
    assert json.loads(store[("bucket", "out/a_0000.json")]) == [{"a": 1}, {"a": 2}]


def test_progress_is_reported():
    store: dict = {}
    seen = []
    sink = ObjectStorageShardSink(
        _fake_client(store),
        "bucket",
        folder="out",
        on_progress=lambda key, total: seen.append((key, total)),
    )
    handle = sink.open("a_0000.json", WriteMode.CREATE)
    handle.write(b'"hello"')
    handle.close()
    assert seen
    assert seen[-1] == ("out/a_0000.json", len(store[("bucket", "out/a_0000.json")]))
    assert handle.bytes_transferred == len(b'["hello"]\n')


def test_exists_maps_404_to_false():
    store = {("bucket", "out/a_0000.json"): b"[]\n"}
    sink = ObjectStorageShardSink(_fake_client(store), "bucket", folder="out")
    assert sink.exists("a_0000.json") is True
    assert sink.exists("a_0001.json") is False


def test_exists_other_errors_are_fatal():
    client = MagicMock()
    client.head_object.side_effect = ClientError({"Error": {"Code": "403"}}, "head_object")
    sink = ObjectStorageShardSink(client, "bucket")
    with pytest.raises(SinkIOError):
        sink.exists("a_0000.json")


def test_append_restreams_existing_object():
    store = {("bucket", "out/a_0000.json"): b'["p"]\n'}
    sink = ObjectStorageShardSink(_fake_client(store), "bucket", folder="out")
    handle = sink.open("a_0000.json", WriteMode.APPEND)
    assert handle.needs_separator is True
    handle.write(b',"q"')
    handle.close()
    assert json.loads(store[("bucket", "out/a_0000.json")]) == ["p", "q"]


def test_append_to_missing_object_starts_new_array():
    store: dict = {}
    sink = ObjectStorageShardSink(_fake_client(store), "bucket", folder="out")
    handle = sink.open("a_0000.json", WriteMode.APPEND)
    assert handle.needs_separator is False
    handle.write(b"1")
    handle.close()
    assert store[("bucket", "out/a_0000.json")] == b"[1]\n"


def test_failed_upload_surfaces_on_close():
    store: dict = {}
    client = _fake_client(store, fail_upload=ClientError({"Error": {"Code": "500"}}, "upload_part"))
    sink = ObjectStorageShardSink(client, "bucket", folder="out")
    handle = sink.open("a_0000.json", WriteMode.CREATE)
    with pytest.raises(SinkIOError, match="Upload failed"):
        handle.write(b"1")
        handle.close()
    assert ("bucket", "out/a_0000.json") not in store


def test_abort_stops_upload_without_storing():
    store: dict = {}
    sink = ObjectStorageShardSink(_fake_client(store), "bucket", folder="out")
    handle = sink.open("a_0000.json", WriteMode.CREATE)
    handle.write(b"1")
    handle.abort()
    handle.abort()
    assert store == {}


def test_pass_through_read_blocks_until_requested_size():
    stream = PassThroughBuffer(high_water_mark=4)
    result = {}

    def reader():
        result["data"] = stream.read(10)

    thread = threading.Thread(target=reader)
    thread.start()
    for piece in (b"abc", b"defg", b"hij", b"k"):
        stream.write(piece)
    thread.join(timeout=5)
    assert result["data"] == b"abcdefghij"
    stream.finish()
    assert stream.read() == b"k"
    assert stream.read(5) == b""


def test_pass_through_write_after_abort_fails():
    stream = PassThroughBuffer()
    stream.abort()
    with pytest.raises(OSError):
        stream.write(b"x")
