"""Shuffle + deflate codec chain."""

from __future__ import annotations

import gzip
import zlib

import numpy as np
import pytest
import zarr
from zarr.registry import get_codec_class
from zarr.storage import MemoryStore

from ensemble_explorer.chunk_codecs import (
    CODEC_REGISTRY,
    CodecPipeline,
    CodecSpec,
    ShuffleBytesCodec,
    ShuffleCodec,
    ZlibBytesCodec,
    ZlibCodec,
    decode_chunk,
    encode_chunk,
    register_codec,
    zarr_compressors,
)
from ensemble_explorer.errors import DecodeFailure


def test_shuffle_transposes_bytes():
    raw = bytes(range(8))  # two 4-byte elements
    assert ShuffleCodec(4).encode(raw) == bytes([0, 4, 1, 5, 2, 6, 3, 7])
    assert ShuffleCodec(4).decode(bytes([0, 4, 1, 5, 2, 6, 3, 7])) == raw


def test_shuffle_keeps_tail_unshuffled():
    raw = bytes(range(10))
    enc = ShuffleCodec(4).encode(raw)
    assert enc[-2:] == bytes([8, 9])
    assert ShuffleCodec(4).decode(enc) == raw


def test_shuffle_elementsize_one_is_identity():
    raw = b"abcdef"
    assert ShuffleCodec(1).encode(raw) == raw


def test_shuffle_rejects_bad_elementsize():
    with pytest.raises(DecodeFailure):
        ShuffleCodec(0)


def test_pipeline_decodes_in_reverse_order():
    values = np.linspace(-10, 10, 64, dtype=np.float32)
    raw = values.tobytes()
    specs = [CodecSpec("shuffle", {"elementsize": 4}), CodecSpec("zlib", {"level": 5})]
    compressed = encode_chunk(raw, specs)
    # deflate is the outermost layer
    assert zlib.decompress(compressed) == ShuffleCodec(4).encode(raw)
    out = np.frombuffer(decode_chunk(compressed, specs), dtype=np.float32)
    np.testing.assert_array_equal(out, values)


def test_gzip_and_numcodecs_aliases():
    raw = np.arange(16, dtype="<i4").tobytes()
    pipeline = CodecPipeline.from_specs([CodecSpec("numcodecs.shuffle", {}), CodecSpec("numcodecs.gzip", {"level": 1})], itemsize=4)
    enc = pipeline.encode(raw)
    assert gzip.decompress(enc) == ShuffleCodec(4).encode(raw)
    assert pipeline.decode(enc) == raw


def test_unknown_codec_is_decode_failure():
    with pytest.raises(DecodeFailure, match="Unsupported codec"):
        CodecPipeline.from_specs([CodecSpec("blosc")])


def test_corrupt_bytes_are_decode_failure():
    pipeline = CodecPipeline.from_specs([CodecSpec("zlib")])
    with pytest.raises(DecodeFailure):
        pipeline.decode(b"definitely not deflate")


def test_register_codec_extension_point():
    class Xor(ZlibCodec):
        name = "xor"

        def encode(self, data):
            return bytes(b ^ 0x5A for b in data)

        decode = encode

    register_codec("test.xor", lambda cfg, itemsize: Xor())
    try:
        assert decode_chunk(encode_chunk(b"hello", [CodecSpec("test.xor")]), [CodecSpec("test.xor")]) == b"hello"
    finally:
        CODEC_REGISTRY.pop("test.xor", None)


def test_spec_from_v2_and_v3_entries():
    chain = [CodecSpec.from_metadata(e) for e in [{"id": "shuffle", "elementsize": 8}, {"name": "zlib", "configuration": {"level": 3}}]]
    assert chain == [CodecSpec("shuffle", {"elementsize": 8}), CodecSpec("zlib", {"level": 3})]
    with pytest.raises(DecodeFailure):
        CodecSpec.from_metadata({"level": 1})


def test_zarr_registry_resolves_chain_codecs():
    assert get_codec_class("shuffle") is ShuffleBytesCodec
    assert get_codec_class("zlib") is ZlibBytesCodec
    codec = ZlibBytesCodec.from_dict({"name": "zlib", "configuration": {"level": 3}})
    assert codec.to_dict() == {"name": "zlib", "configuration": {"level": 3}}
    assert ShuffleBytesCodec.from_dict({"name": "shuffle"}).elementsize is None


def test_zarr_array_takes_shuffle_elementsize_from_dtype():
    zstore = MemoryStore()
    values = np.linspace(0, 1, 12).reshape(3, 4)
    arr = zarr.create_array(
        zstore, name="v", data=values, chunks=(2, 2),
        compressors=[ShuffleBytesCodec(), ZlibBytesCodec(level=5)],
    )
    codecs = arr.metadata.to_dict()["codecs"]
    assert codecs[1] == {"name": "shuffle", "configuration": {"elementsize": 8}}
    np.testing.assert_array_equal(zarr.open_array(zstore, path="v", mode="r")[...], values)


def test_zarr_compressors_from_specs():
    shuffle, deflate = zarr_compressors([CodecSpec("numcodecs.shuffle", {"elementsize": 2}), CodecSpec("zlib", {"level": 9})])
    assert (shuffle.elementsize, deflate.level) == (2, 9)
    with pytest.raises(DecodeFailure):
        zarr_compressors([CodecSpec("gzip")])
    with pytest.raises(DecodeFailure):
        ShuffleBytesCodec(elementsize=0)
