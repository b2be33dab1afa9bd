from __future__ import annotations

from shardwriter.config import WriteMode
from shardwriter.keys import ShardKeyGenerator


def test_format_key_pads_to_four_digits():
    generator = ShardKeyGenerator("shard_$$")
    assert generator.next(0) == "shard_0000.json"
    assert generator.next(7) == "shard_0007.json"
    assert generator.next(12345) == "shard_12345.json"


def test_format_key_custom_padding():
    assert ShardKeyGenerator.format_key(3, "part-$$-x", "json", pad_digits=2) == "part-03-x.json"


def test_find_free_key_skips_existing_in_create_mode():
    taken = {"shard_0000.json", "shard_0001.json", "shard_0002.json"}
    generator = ShardKeyGenerator("shard_$$", mode=WriteMode.CREATE)
    assert generator.find_free_key(taken.__contains__) == (3, "shard_0003.json")


def test_find_free_key_starts_from_given_index():
    taken = {"shard_0004.json"}
    generator = ShardKeyGenerator("shard_$$")
    assert generator.find_free_key(taken.__contains__, 4) == (5, "shard_0005.json")


def test_find_free_key_reuses_existing_in_append_and_overwrite_mode():
    calls = []

    def probe(key):
        calls.append(key)
        return True

    for mode in (WriteMode.APPEND, WriteMode.OVERWRITE):
        generator = ShardKeyGenerator("shard_$$", mode=mode)
        assert generator.find_free_key(probe) == (0, "shard_0000.json")
    assert calls == []
