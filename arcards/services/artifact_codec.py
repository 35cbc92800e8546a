# arcards/services/artifact_codec.py
"""
Binary descriptor artifact codec.

Every table starts with the same 32-byte little-endian header:

    offset  size  field
    0       4     magic (ISET | FSET | SET3 | MIND)
    4       4     format version, uint32
    8       4     source width, uint32 (fset: descriptor length)
    12      4     source height, uint32 (fset: 0)
    16      4     keypoint count, uint32
    20      4     generation timestamp, unix seconds, uint32
    24      8     reserved, zero

followed by ``count`` fixed-size records:

    iset   24 B   x, y, response, angle (float32), octave, index (uint32)
    fset   512 B  128 x float32 descriptor
    fset3  16 B   x, y, z (=0), response (float32)
    mind   536 B  iset record followed by the descriptor

Two backends share one interface: ``TripletCodec`` writes the three
``descriptors.*`` tables, ``ConsolidatedCodec`` writes a single ``target.mind``.
Pure functions only, no storage or network access.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from ..errors import MalformedArtifact

FORMAT_VERSION = 1
DESCRIPTOR_LENGTH = 128

MAGIC_ISET = b"ISET"
MAGIC_FSET = b"FSET"
MAGIC_FSET3 = b"SET3"
MAGIC_MIND = b"MIND"

HEADER = struct.Struct("<4sIIIII8x")
ISET_RECORD = struct.Struct("<ffffII")
FSET_RECORD = struct.Struct(f"<{DESCRIPTOR_LENGTH}f")
FSET3_RECORD = struct.Struct("<ffff")
MIND_RECORD = struct.Struct(f"<ffffII{DESCRIPTOR_LENGTH}f")

_UINT32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class Keypoint:
    x: float
    y: float
    response: float
    angle: float
    octave: int
    descriptor: Tuple[float, ...]


@dataclass(frozen=True)
class TableHeader:
    magic: bytes
    version: int
    width: int
    height: int
    count: int
    generated_at: int


@dataclass(frozen=True)
class DescriptorArtifact:
    width: int
    height: int
    generated_at: int
    keypoints: Tuple[Keypoint, ...]
    version: int = FORMAT_VERSION


# -----------------
# Header helpers
# -----------------

def _uint32(name: str, value: int) -> int:
    value = int(value)
    if value < 0 or value > _UINT32_MAX:
        raise ValueError(f"{name} out of uint32 range: {value}")
    return value


def _pack_header(magic: bytes, width: int, height: int, count: int, generated_at: int) -> bytes:
    return HEADER.pack(
        magic,
        FORMAT_VERSION,
        _uint32("width", width),
        _uint32("height", height),
        _uint32("count", count),
        _uint32("generated_at", generated_at),
    )


def read_header(data: bytes, expected_magic: bytes, record: struct.Struct) -> TableHeader:
    """Validate header and body length; raise MalformedArtifact on any mismatch."""
    if len(data) < HEADER.size:
        raise MalformedArtifact(f"truncated header: {len(data)} bytes")
    magic, version, width, height, count, generated_at = HEADER.unpack_from(data, 0)
    if magic != expected_magic:
        raise MalformedArtifact(f"bad magic {magic!r}, expected {expected_magic!r}")
    if version != FORMAT_VERSION:
        raise MalformedArtifact(f"unsupported version {version}")
    body = len(data) - HEADER.size
    expected = count * record.size
    if body < expected:
        raise MalformedArtifact(f"truncated body: {body} bytes for {count} records")
    if body != expected:
        raise MalformedArtifact(f"keypoint count {count} inconsistent with body length {body}")
    return TableHeader(magic, version, width, height, count, generated_at)


def _check_descriptor(kp: Keypoint) -> Sequence[float]:
    if len(kp.descriptor) != DESCRIPTOR_LENGTH:
        raise ValueError(f"descriptor must have {DESCRIPTOR_LENGTH} values, got {len(kp.descriptor)}")
    return kp.descriptor


# -----------------
# Per-table encoders / decoders
# -----------------

def encode_iset(keypoints: Sequence[Keypoint], width: int, height: int, generated_at: int) -> bytes:
    parts = [_pack_header(MAGIC_ISET, width, height, len(keypoints), generated_at)]
    for i, kp in enumerate(keypoints):
        parts.append(ISET_RECORD.pack(kp.x, kp.y, kp.response, kp.angle, _uint32("octave", kp.octave), i))
    return b"".join(parts)


def decode_iset(data: bytes) -> Tuple[TableHeader, List[Tuple[float, float, float, float, int]]]:
    header = read_header(data, MAGIC_ISET, ISET_RECORD)
    rows = []
    for i, (x, y, response, angle, octave, index) in enumerate(
        ISET_RECORD.iter_unpack(data[HEADER.size:])
    ):
        if index != i:
            raise MalformedArtifact(f"iset record {i} carries index {index}")
        rows.append((x, y, response, angle, octave))
    return header, rows


def encode_fset(keypoints: Sequence[Keypoint], generated_at: int) -> bytes:
    parts = [_pack_header(MAGIC_FSET, DESCRIPTOR_LENGTH, 0, len(keypoints), generated_at)]
    for kp in keypoints:
        parts.append(FSET_RECORD.pack(*_check_descriptor(kp)))
    return b"".join(parts)


def decode_fset(data: bytes) -> Tuple[TableHeader, List[Tuple[float, ...]]]:
    header = read_header(data, MAGIC_FSET, FSET_RECORD)
    if header.width != DESCRIPTOR_LENGTH:
        raise MalformedArtifact(f"unsupported descriptor length {header.width}")
    return header, [tuple(row) for row in FSET_RECORD.iter_unpack(data[HEADER.size:])]


def encode_fset3(keypoints: Sequence[Keypoint], width: int, height: int, generated_at: int) -> bytes:
    parts = [_pack_header(MAGIC_FSET3, width, height, len(keypoints), generated_at)]
    for kp in keypoints:
        parts.append(FSET3_RECORD.pack(kp.x, kp.y, 0.0, kp.response))
    return b"".join(parts)


def decode_fset3(data: bytes) -> Tuple[TableHeader, List[Tuple[float, float, float, float]]]:
    header = read_header(data, MAGIC_FSET3, FSET3_RECORD)
    return header, list(FSET3_RECORD.iter_unpack(data[HEADER.size:]))


def encode_mind(keypoints: Sequence[Keypoint], width: int, height: int, generated_at: int) -> bytes:
    parts = [_pack_header(MAGIC_MIND, width, height, len(keypoints), generated_at)]
    for i, kp in enumerate(keypoints):
        parts.append(MIND_RECORD.pack(
            kp.x, kp.y, kp.response, kp.angle, _uint32("octave", kp.octave), i,
            *_check_descriptor(kp)
        ))
    return b"".join(parts)


def decode_mind(data: bytes) -> DescriptorArtifact:
    header = read_header(data, MAGIC_MIND, MIND_RECORD)
    keypoints = []
    for i, row in enumerate(MIND_RECORD.iter_unpack(data[HEADER.size:])):
        x, y, response, angle, octave, index = row[:6]
        if index != i:
            raise MalformedArtifact(f"mind record {i} carries index {index}")
        keypoints.append(Keypoint(x, y, response, angle, octave, tuple(row[6:])))
    return DescriptorArtifact(header.width, header.height, header.generated_at, tuple(keypoints), header.version)


# -----------------
# Codec backends
# -----------------

class ArtifactCodec:
    """One artifact family. ``base_name`` + each of ``extensions`` = blob names."""

    name = ""
    base_name = ""
    extensions: Tuple[str, ...] = ()

    @property
    def blob_names(self) -> Tuple[str, ...]:
        return tuple(f"{self.base_name}{ext}" for ext in self.extensions)

    def encode(self, keypoints: Sequence[Keypoint], width: int, height: int,
               generated_at: int = 0) -> Dict[str, bytes]:
        raise NotImplementedError

    def decode(self, blobs: Dict[str, bytes]) -> DescriptorArtifact:
        raise NotImplementedError

    def _require(self, blobs: Dict[str, bytes]) -> None:
        missing = [n for n in self.blob_names if n not in blobs]
        if missing:
            raise MalformedArtifact(f"missing tables: {', '.join(missing)}")


class TripletCodec(ArtifactCodec):
    name = "triplet"
    base_name = "descriptors"
    extensions = (".iset", ".fset", ".fset3")

    def encode(self, keypoints, width, height, generated_at=0):
        keypoints = list(keypoints)
        return {
            "descriptors.iset": encode_iset(keypoints, width, height, generated_at),
            "descriptors.fset": encode_fset(keypoints, generated_at),
            "descriptors.fset3": encode_fset3(keypoints, width, height, generated_at),
        }

    def decode(self, blobs):
        self._require(blobs)
        iset_header, positions = decode_iset(blobs["descriptors.iset"])
        fset_header, descriptors = decode_fset(blobs["descriptors.fset"])
        fset3_header, points = decode_fset3(blobs["descriptors.fset3"])

        if not (iset_header.count == fset_header.count == fset3_header.count):
            raise MalformedArtifact(
                f"table counts disagree: iset={iset_header.count} fset={fset_header.count} "
                f"fset3={fset3_header.count}"
            )
        if (iset_header.width, iset_header.height) != (fset3_header.width, fset3_header.height):
            raise MalformedArtifact("iset and fset3 disagree on source size")
        if not (iset_header.generated_at == fset_header.generated_at == fset3_header.generated_at):
            raise MalformedArtifact("tables come from different generations")

        keypoints = []
        for (x, y, response, angle, octave), desc, (x3, y3, _z, r3) in zip(positions, descriptors, points):
            if (x, y, response) != (x3, y3, r3):
                raise MalformedArtifact("iset and fset3 disagree on keypoint positions")
            keypoints.append(Keypoint(x, y, response, angle, octave, desc))
        return DescriptorArtifact(
            iset_header.width, iset_header.height, iset_header.generated_at,
            tuple(keypoints), iset_header.version,
        )


class ConsolidatedCodec(ArtifactCodec):
    name = "consolidated"
    base_name = "target"
    extensions = (".mind",)

    def encode(self, keypoints, width, height, generated_at=0):
        return {"target.mind": encode_mind(list(keypoints), width, height, generated_at)}

    def decode(self, blobs):
        self._require(blobs)
        return decode_mind(blobs["target.mind"])


CODECS = {codec.name: codec for codec in (TripletCodec(), ConsolidatedCodec())}


def get_codec(name: str) -> ArtifactCodec:
    try:
        return CODECS[(name or "").strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown artifact format: {name!r}") from None


def content_type_for(filename: str) -> str:
    # Every artifact table is opaque binary to the tracking client.
    return "application/octet-stream"
