"""Binary encoding of CameraFingerprint records.

Layout::

    b"PRNU" | format (u8) | header length (u32, big-endian) | JSON header |
    width * height little-endian float32 samples

Width and height are read back from the header, never re-derived from the
payload size.
"""

from __future__ import annotations

import json
import struct
from datetime import datetime

import numpy as np

from prnuauth.errors import DimensionMismatchError, StorageError
from prnuauth.models import CameraFingerprint

MAGIC = b"PRNU"
FORMAT_VERSION = 1
_PREFIX = struct.Struct(">4sBI")
_SAMPLE_DTYPE = np.dtype("<f4")


def encode_fingerprint(fp: CameraFingerprint) -> bytes:
    header = json.dumps(
        {
            "cameraID": fp.camera_id,
            "width": fp.width,
            "height": fp.height,
            "enrollmentDate": fp.enrollment_date.isoformat(),
            "numberOfImages": fp.number_of_images,
            "averagePCE": fp.average_pce,
            "version": fp.version,
        },
        separators=(",", ":"),
    ).encode("utf-8")
    samples = fp.fingerprint.astype(_SAMPLE_DTYPE, copy=False).tobytes()
    return _PREFIX.pack(MAGIC, FORMAT_VERSION, len(header)) + header + samples


def decode_fingerprint(data: bytes) -> CameraFingerprint:
    """Decode a record produced by encode_fingerprint().

    Raises:
        StorageError: If the record is truncated, malformed or inconsistent.
    """
    if len(data) < _PREFIX.size:
        raise StorageError("fingerprint record is truncated")
    magic, version, header_len = _PREFIX.unpack_from(data)
    if magic != MAGIC:
        raise StorageError("not a fingerprint record")
    if version != FORMAT_VERSION:
        raise StorageError(f"unsupported record format {version}")

    body = data[_PREFIX.size :]
    if len(body) < header_len:
        raise StorageError("fingerprint header is truncated")
    try:
        header = json.loads(body[:header_len].decode("utf-8"))
        width = int(header["width"])
        height = int(header["height"])
        camera_id = str(header["cameraID"])
        enrollment_date = datetime.fromisoformat(header["enrollmentDate"])
        number_of_images = int(header["numberOfImages"])
        average_pce = float(header["averagePCE"])
        version_str = str(header["version"])
    except (ValueError, KeyError, TypeError) as exc:
        raise StorageError(f"invalid fingerprint header: {exc}") from exc

    payload = body[header_len:]
    expected = width * height * _SAMPLE_DTYPE.itemsize
    if width <= 0 or height <= 0 or len(payload) != expected:
        raise StorageError(f"fingerprint payload is {len(payload)} bytes, expected {expected}")

    try:
        return CameraFingerprint(
            camera_id=camera_id,
            fingerprint=np.frombuffer(payload, dtype=_SAMPLE_DTYPE),
            width=width,
            height=height,
            enrollment_date=enrollment_date,
            number_of_images=number_of_images,
            average_pce=average_pce,
            version=version_str,
        )
    except DimensionMismatchError as exc:
        raise StorageError(str(exc)) from exc
