"""Byte-to-byte codec chain used to decode Zarr chunks.

The source data is written with an HDF5-style byte shuffle followed by deflate.
A chain is described in *encode* order (e.g. ``[shuffle, zlib]``); decoding
walks it in reverse.

The steps live in a name -> factory table (``CODEC_REGISTRY``). zarr reads
them through ``ShuffleBytesCodec`` / ``ZlibBytesCodec``, registered with
``zarr.registry`` under the ``shuffle`` and ``zlib`` names that appear in the
arrays' ``codecs`` metadata.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
from zarr.abc.codec import BytesBytesCodec
from zarr.core.buffer.cpu import as_numpy_array_wrapper
from zarr.core.common import parse_named_configuration
from zarr.registry import register_codec as register_zarr_codec

from .errors import DecodeFailure

logger = logging.getLogger("ensemble_explorer.codecs")


@dataclass(frozen=True)
class CodecSpec:
    name: str
    configuration: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_metadata(cls, entry: Mapping[str, Any]) -> "CodecSpec":
        """Build from a v3 ``{"name", "configuration"}`` or v2 ``{"id", ...}`` entry."""
        if "name" in entry:
            return cls(str(entry["name"]), dict(entry.get("configuration") or {}))
        if "id" in entry:
            cfg = {k: v for k, v in entry.items() if k != "id"}
            return cls(str(entry["id"]), cfg)
        raise DecodeFailure(f"Codec entry without name/id: {entry!r}")


class Codec:
    """A reversible bytes -> bytes transform."""

    name = "codec"

    def encode(self, data: bytes) -> bytes:
        raise NotImplementedError

    def decode(self, data: bytes) -> bytes:
        raise NotImplementedError


class ShuffleCodec(Codec):
    """Byte transposition: byte j of element i is stored at ``j*n + i``.

    ``n = len(data) // elementsize``; the ``len % elementsize`` tail bytes are
    appended unshuffled.
    """

    name = "shuffle"

    def __init__(self, elementsize: int = 4):
        if int(elementsize) < 1:
            raise DecodeFailure(f"Invalid shuffle elementsize: {elementsize}")
        self.elementsize = int(elementsize)

    def _split(self, data: bytes):
        buf = np.frombuffer(data, dtype=np.uint8)
        n = len(buf) // self.elementsize
        body_len = n * self.elementsize
        return buf[:body_len], buf[body_len:], n

    def encode(self, data: bytes) -> bytes:
        body, tail, n = self._split(data)
        if self.elementsize == 1 or n == 0:
            return bytes(data)
        shuffled = body.reshape(n, self.elementsize).T.reshape(-1)
        return shuffled.tobytes() + tail.tobytes()

    def decode(self, data: bytes) -> bytes:
        body, tail, n = self._split(data)
        if self.elementsize == 1 or n == 0:
            return bytes(data)
        unshuffled = body.reshape(self.elementsize, n).T.reshape(-1)
        return unshuffled.tobytes() + tail.tobytes()


class ZlibCodec(Codec):
    name = "zlib"
    wbits = zlib.MAX_WBITS

    def __init__(self, level: int = 1):
        self.level = int(level)

    def encode(self, data: bytes) -> bytes:
        compressor = zlib.compressobj(self.level, zlib.DEFLATED, self.wbits)
        return compressor.compress(bytes(data)) + compressor.flush()

    def decode(self, data: bytes) -> bytes:
        try:
            return zlib.decompress(bytes(data), self.wbits)
        except zlib.error as e:
            raise DecodeFailure(f"{self.name} decompression failed: {e}") from e


class GZipCodec(ZlibCodec):
    name = "gzip"
    wbits = 16 + zlib.MAX_WBITS


CodecFactory = Callable[[Mapping[str, Any], int], Codec]


def _shuffle_factory(config: Mapping[str, Any], itemsize: int) -> Codec:
    return ShuffleCodec(config.get("elementsize") or itemsize or 4)


def _zlib_factory(config: Mapping[str, Any], itemsize: int) -> Codec:
    return ZlibCodec(config.get("level", 1))


def _gzip_factory(config: Mapping[str, Any], itemsize: int) -> Codec:
    return GZipCodec(config.get("level", 1))


CODEC_REGISTRY: Dict[str, CodecFactory] = {}


def register_codec(name: str, factory: CodecFactory, aliases: Iterable[str] = ()) -> None:
    """Register a codec factory under ``name`` and any aliases."""
    for key in (name, *aliases):
        CODEC_REGISTRY[key] = factory
    logger.debug("Registered codec %s (aliases: %s)", name, ", ".join(aliases) or "-")


register_codec("shuffle", _shuffle_factory, aliases=("numcodecs.shuffle",))
register_codec("zlib", _zlib_factory, aliases=("numcodecs.zlib",))
register_codec("gzip", _gzip_factory, aliases=("numcodecs.gzip",))


def build_step(spec: CodecSpec, itemsize: int = 4) -> Codec:
    factory = CODEC_REGISTRY.get(spec.name)
    if factory is None:
        raise DecodeFailure(f"Unsupported codec: {spec.name}")
    return factory(spec.configuration, itemsize)


class CodecPipeline:
    """Ordered codec chain (encode order); decode runs it in reverse."""

    def __init__(self, codecs: Sequence[Codec]):
        self.codecs: List[Codec] = list(codecs)

    @classmethod
    def from_specs(cls, specs: Iterable[CodecSpec], itemsize: int = 4) -> "CodecPipeline":
        return cls([build_step(spec, itemsize) for spec in specs])

    def encode(self, data: bytes) -> bytes:
        for codec in self.codecs:
            data = codec.encode(data)
        return data

    def decode(self, data: bytes) -> bytes:
        for codec in reversed(self.codecs):
            try:
                data = codec.decode(data)
            except DecodeFailure:
                raise
            except Exception as e:
                raise DecodeFailure(f"{codec.name} decode failed: {e}") from e
        return data

    def __repr__(self) -> str:
        return f"CodecPipeline([{', '.join(c.name for c in self.codecs)}])"


def decode_chunk(chunk: bytes, chain: Iterable[CodecSpec], itemsize: int = 4) -> bytes:
    return CodecPipeline.from_specs(chain, itemsize).decode(chunk)


def encode_chunk(raw: bytes, chain: Iterable[CodecSpec], itemsize: int = 4) -> bytes:
    return CodecPipeline.from_specs(chain, itemsize).encode(raw)


# -- zarr v3 codecs ------------------------------------------------------


class _ChainStepCodec(BytesBytesCodec):
    """zarr ``BytesBytesCodec`` that runs one registered chain step per chunk."""

    codec_name = "codec"

    def _spec(self) -> CodecSpec:
        raise NotImplementedError

    def _step(self, chunk_spec) -> Codec:
        return build_step(self._spec(), chunk_spec.dtype.to_native_dtype().itemsize)

    @classmethod
    def from_dict(cls, data):
        _, configuration = parse_named_configuration(data, cls.codec_name, require_configuration=False)
        return cls(**(configuration or {}))

    def to_dict(self):
        spec = self._spec()
        return {"name": spec.name, "configuration": dict(spec.configuration)}

    def _decode_sync(self, chunk_bytes, chunk_spec):
        return as_numpy_array_wrapper(self._step(chunk_spec).decode, chunk_bytes, chunk_spec.prototype)

    async def _decode_single(self, chunk_bytes, chunk_spec):
        return await asyncio.to_thread(self._decode_sync, chunk_bytes, chunk_spec)

    def _encode_sync(self, chunk_bytes, chunk_spec):
        return as_numpy_array_wrapper(self._step(chunk_spec).encode, chunk_bytes, chunk_spec.prototype)

    async def _encode_single(self, chunk_bytes, chunk_spec):
        return await asyncio.to_thread(self._encode_sync, chunk_bytes, chunk_spec)


@dataclass(frozen=True)
class ShuffleBytesCodec(_ChainStepCodec):
    is_fixed_size = True
    codec_name = "shuffle"

    elementsize: Optional[int] = None

    def __init__(self, *, elementsize: Optional[int] = None) -> None:
        if elementsize is not None and int(elementsize) < 1:
            raise DecodeFailure(f"Invalid shuffle elementsize: {elementsize}")
        object.__setattr__(self, "elementsize", None if elementsize is None else int(elementsize))

    def _spec(self) -> CodecSpec:
        return CodecSpec("shuffle", {"elementsize": self.elementsize} if self.elementsize else {})

    def evolve_from_array_spec(self, array_spec):
        if self.elementsize is None:
            return ShuffleBytesCodec(elementsize=array_spec.dtype.to_native_dtype().itemsize)
        return self

    def compute_encoded_size(self, input_byte_length: int, _chunk_spec) -> int:
        return input_byte_length


@dataclass(frozen=True)
class ZlibBytesCodec(_ChainStepCodec):
    is_fixed_size = False
    codec_name = "zlib"

    level: int = 1

    def __init__(self, *, level: int = 1) -> None:
        if not 0 <= int(level) <= 9:
            raise ValueError(f"zlib level must be 0-9, got {level}")
        object.__setattr__(self, "level", int(level))

    def _spec(self) -> CodecSpec:
        return CodecSpec("zlib", {"level": self.level})

    def compute_encoded_size(self, _input_byte_length: int, _chunk_spec) -> int:
        raise NotImplementedError


ZARR_CODECS = {"shuffle": ShuffleBytesCodec, "zlib": ZlibBytesCodec}

for _name, _cls in ZARR_CODECS.items():
    register_zarr_codec(_name, _cls)


def zarr_compressors(specs: Iterable[CodecSpec]) -> List[BytesBytesCodec]:
    """zarr codec instances for a chain (``compressors=`` of ``zarr.create_array``)."""
    out = []
    for spec in specs:
        cls = ZARR_CODECS.get(spec.name.replace("numcodecs.", ""))
        if cls is None:
            raise DecodeFailure(f"No zarr codec for {spec.name}")
        out.append(cls(**dict(spec.configuration)))
    return out
