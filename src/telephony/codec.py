"""Audio frame conversion between the telephony transport and the realtime backend.

Twilio Media Streams carry G.711 at 8kHz, which the realtime backend accepts
as-is, so most conversions only retag the frame. Linear 16-bit audio travels
big-endian on the telephony side (RFC 3551) and little-endian on the backend
side and is byte-swapped.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Final

import numpy as np

from agents.errors import MalformedFrameError, UnsupportedFormatError

BACKEND_PCM16_RATE_HZ: Final[int] = 24000


@dataclass(frozen=True, slots=True)
class AudioFormat:
    encoding: str
    sample_rate_hz: int = 8000
    channels: int = 1

    @property
    def tag(self) -> str:
        return f"{self.encoding};rate={self.sample_rate_hz}"


@dataclass(frozen=True, slots=True)
class AudioFrame:
    """One chunk of audio with its format and per-direction sequence number.

    resample_to_hz:
        Rate the consumer has to resample to before use, or None when the
        payload is already at the consumer's native rate.
    """

    payload: bytes
    format: AudioFormat
    sequence: int
    resample_to_hz: int | None = None


@dataclass(frozen=True, slots=True)
class _Mapping:
    caller_encoding: str
    backend_encoding: str
    swap_bytes: bool
    backend_native_rate_hz: int | None


_MAPPINGS: Final[tuple[_Mapping, ...]] = (
    _Mapping("audio/x-mulaw", "g711_ulaw", swap_bytes=False, backend_native_rate_hz=None),
    _Mapping("audio/x-alaw", "g711_alaw", swap_bytes=False, backend_native_rate_hz=None),
    _Mapping("audio/l16", "pcm16", swap_bytes=True, backend_native_rate_hz=BACKEND_PCM16_RATE_HZ),
)

_BY_CALLER: Final[dict[str, _Mapping]] = {m.caller_encoding: m for m in _MAPPINGS}
_BY_BACKEND: Final[dict[str, _Mapping]] = {m.backend_encoding: m for m in _MAPPINGS}


def _swap16(payload: bytes) -> bytes:
    if len(payload) % 2:
        raise MalformedFrameError(f"16-bit payload has odd length {len(payload)}")
    return np.frombuffer(payload, dtype=">i2").astype("<i2").tobytes()


def _lookup(table: dict[str, _Mapping], fmt: AudioFormat) -> _Mapping:
    mapping = table.get(fmt.encoding)
    if mapping is None:
        raise UnsupportedFormatError(f"Unsupported audio format: {fmt.tag}")
    if fmt.channels != 1:
        raise UnsupportedFormatError(f"Only mono audio is supported, got {fmt.channels} channels")
    return mapping


class CodecAdapter:
    """Stateless converter between caller-side and backend-side frames.

    ``to_caller_format(to_backend_format(f)) == f`` holds for every
    well-formed caller frame.
    """

    def backend_format_for(self, caller_format: AudioFormat) -> AudioFormat:
        mapping = _lookup(_BY_CALLER, caller_format)
        return AudioFormat(
            encoding=mapping.backend_encoding,
            sample_rate_hz=caller_format.sample_rate_hz,
            channels=caller_format.channels,
        )

    def caller_format_for(self, backend_format: AudioFormat) -> AudioFormat:
        mapping = _lookup(_BY_BACKEND, backend_format)
        return AudioFormat(
            encoding=mapping.caller_encoding,
            sample_rate_hz=backend_format.sample_rate_hz,
            channels=backend_format.channels,
        )

    def to_backend_format(self, frame: AudioFrame) -> AudioFrame:
        mapping = _lookup(_BY_CALLER, frame.format)
        payload = _swap16(frame.payload) if mapping.swap_bytes else frame.payload

        resample_to = None
        native = mapping.backend_native_rate_hz
        if native is not None and native != frame.format.sample_rate_hz:
            resample_to = native

        return replace(
            frame,
            payload=payload,
            format=self.backend_format_for(frame.format),
            resample_to_hz=resample_to,
        )

    def to_caller_format(self, frame: AudioFrame) -> AudioFrame:
        mapping = _lookup(_BY_BACKEND, frame.format)
        payload = _swap16(frame.payload) if mapping.swap_bytes else frame.payload
        return replace(
            frame,
            payload=payload,
            format=self.caller_format_for(frame.format),
            resample_to_hz=None,
        )
