"""
audio/codec.py — Pure audio transformations

Byte↔text encoding, 16-bit PCM ↔ normalized float conversion, linear
resampling, RMS level / energy VAD, canonical WAV framing and frame
concatenation. No state and no I/O: every function returns a new value and
never mutates its inputs.

Decoding helpers that feed playback (`decode`, `decode_pcm16`) are
non-fatal — malformed input is logged and a safe empty/minimal result is
returned. The strict variants (`frame_from_pcm16`, `parse_wav_header`)
raise typed errors for callers that want them.
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from audio.frame import AudioFrame
from exceptions import AudioDecodeError, AudioValidationError
from observability.logger import get_logger

log = get_logger(__name__)

# ── PCM constants ─────────────────────────────────────────────────────────────

_PCM_NEG_SCALE = 32768.0   # 0x8000
_PCM_POS_SCALE = 32767.0   # 0x7fff

WAV_HEADER_SIZE = 44
DEFAULT_VAD_THRESHOLD = 0.01


# ─────────────────────────────────────────────────────────────────────────────
# Byte ↔ text
# ─────────────────────────────────────────────────────────────────────────────

def encode(data: bytes) -> str:
    """Encode raw bytes as base64 text."""
    return base64.b64encode(bytes(data)).decode("ascii")


def decode(text: str) -> bytes:
    """Decode base64 text to bytes. Returns b"" for malformed input."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        log.warning("codec.base64_decode_failed", error=str(e))
        return b""


# ─────────────────────────────────────────────────────────────────────────────
# PCM ↔ float
# ─────────────────────────────────────────────────────────────────────────────

def pcm16_to_float32(samples: np.ndarray) -> np.ndarray:
    """Scale int16 samples to [-1, 1]: negatives by 1/32768, the rest by 1/32767."""
    pcm = np.asarray(samples, dtype=np.int16).astype(np.float32)
    return np.where(pcm < 0, pcm / _PCM_NEG_SCALE, pcm / _PCM_POS_SCALE).astype(np.float32)


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale to int16 (negatives ×32768, the rest ×32767)."""
    x = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(x < 0, x * _PCM_NEG_SCALE, x * _PCM_POS_SCALE)
    return np.rint(scaled).astype(np.int16)


def frame_from_pcm16(data: bytes, sample_rate: int, channels: int = 1) -> AudioFrame:
    """
    Decode interleaved little-endian int16 bytes into an AudioFrame.

    Raises AudioValidationError for odd byte counts or a zero channel count.
    Trailing samples that don't complete a frame are dropped.
    """
    if channels < 1:
        raise AudioValidationError(f"channels must be >= 1, got {channels}")
    if len(data) % 2 != 0:
        raise AudioValidationError(
            "Audio data length must be a multiple of 2 for int16 samples"
        )

    pcm = np.frombuffer(data, dtype="<i2")
    frame_count = len(pcm) // channels
    if len(pcm) % channels != 0:
        log.warning("codec.incomplete_frames", samples=len(pcm), channels=channels)
    if frame_count == 0:
        return AudioFrame.silent(1, sample_rate, channels)

    interleaved = pcm[: frame_count * channels].reshape(frame_count, channels)
    # Playback path: plain /32768 for every sample
    return AudioFrame(interleaved.astype(np.float32) / _PCM_NEG_SCALE, sample_rate, channels)


def decode_pcm16(data: bytes, sample_rate: int, channels: int = 1) -> AudioFrame:
    """Non-fatal frame_from_pcm16: malformed input yields a one-frame silent frame."""
    try:
        return frame_from_pcm16(data, sample_rate, channels)
    except AudioValidationError as e:
        log.warning("codec.pcm_decode_failed", error=str(e), bytes=len(data))
        return AudioFrame.silent(1, sample_rate, max(1, channels))


# ─────────────────────────────────────────────────────────────────────────────
# Resampling
# ─────────────────────────────────────────────────────────────────────────────

def resample(samples: np.ndarray, rate_in: int, rate_out: int) -> np.ndarray:
    """
    Linear-interpolation resampling of a 1-D sample array.

    Identity (same object) when the rates match. Output length is
    floor(len(samples) × rate_out / rate_in); a trailing position with no
    right-hand neighbour takes the last valid sample (or 0).
    """
    if rate_in < 1 or rate_out < 1:
        raise AudioValidationError(f"sample rates must be >= 1, got {rate_in} → {rate_out}")
    if rate_in == rate_out:
        return samples

    x = np.asarray(samples, dtype=np.float32)
    n_in = len(x)
    n_out = n_in * rate_out // rate_in
    if n_out == 0:
        return np.zeros(0, dtype=np.float32)

    positions = np.arange(n_out, dtype=np.float64) * rate_in / rate_out
    idx = np.floor(positions).astype(np.int64)
    frac = (positions - idx).astype(np.float32)

    out = np.zeros(n_out, dtype=np.float32)
    inner = idx + 1 < n_in
    out[inner] = x[idx[inner]] * (1.0 - frac[inner]) + x[idx[inner] + 1] * frac[inner]

    tail = ~inner
    in_range = tail & (idx < n_in)
    out[in_range] = x[idx[in_range]]
    return out


def resample_frame(frame: AudioFrame, rate_out: int) -> AudioFrame:
    """Resample every channel of a frame to rate_out."""
    if frame.sample_rate == rate_out:
        return frame
    channels = [resample(frame.channel(c), frame.sample_rate, rate_out)
                for c in range(frame.channel_count)]
    return AudioFrame(np.stack(channels, axis=1), rate_out, frame.channel_count)


# ─────────────────────────────────────────────────────────────────────────────
# Level / VAD
# ─────────────────────────────────────────────────────────────────────────────

def rms_level(samples: np.ndarray) -> float:
    """sqrt(mean(sample²)); 0.0 for empty input."""
    x = np.asarray(samples, dtype=np.float64)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(x * x)))


def detect_speech(samples: np.ndarray, threshold: float = DEFAULT_VAD_THRESHOLD) -> bool:
    """Energy VAD: True when the RMS level exceeds threshold."""
    return rms_level(samples) > threshold


# ─────────────────────────────────────────────────────────────────────────────
# WAV framing
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WavInfo:
    data_length: int
    sample_rate: int
    channels: int
    bits_per_sample: int
    byte_rate: int
    block_align: int


def _write_ascii(buf: bytearray, offset: int, tag: str) -> None:
    if offset + len(tag) > len(buf):
        raise AudioValidationError(f"String {tag!r} exceeds buffer at offset {offset}")
    buf[offset:offset + len(tag)] = tag.encode("ascii")


def _pack(fmt: str, buf: bytearray, offset: int, value: int) -> None:
    try:
        struct.pack_into(fmt, buf, offset, value)
    except struct.error as e:
        raise AudioValidationError(
            f"WAV header field at offset {offset} cannot hold {value}: {e}"
        ) from e


def wav_header(
    data_length: int,
    sample_rate: int,
    channels: int = 1,
    bits_per_sample: int = 16,
) -> bytes:
    """Build the canonical 44-byte RIFF/WAVE header for PCM data."""
    byte_rate = sample_rate * channels * bits_per_sample // 8
    block_align = channels * bits_per_sample // 8
    buf = bytearray(WAV_HEADER_SIZE)

    # RIFF chunk descriptor
    _write_ascii(buf, 0, "RIFF")
    _pack("<I", buf, 4, 36 + data_length)
    _write_ascii(buf, 8, "WAVE")

    # fmt sub-chunk
    _write_ascii(buf, 12, "fmt ")
    _pack("<I", buf, 16, 16)          # sub-chunk size
    _pack("<H", buf, 20, 1)           # audio format: PCM
    _pack("<H", buf, 22, channels)
    _pack("<I", buf, 24, sample_rate)
    _pack("<I", buf, 28, byte_rate)
    _pack("<H", buf, 32, block_align)
    _pack("<H", buf, 34, bits_per_sample)

    # data sub-chunk
    _write_ascii(buf, 36, "data")
    _pack("<I", buf, 40, data_length)

    return bytes(buf)


def parse_wav_header(header: bytes) -> WavInfo:
    """Inverse of wav_header. Raises AudioDecodeError on a non-canonical header."""
    if len(header) < WAV_HEADER_SIZE:
        raise AudioDecodeError(f"WAV header needs {WAV_HEADER_SIZE} bytes, got {len(header)}")
    if header[0:4] != b"RIFF" or header[8:12] != b"WAVE":
        raise AudioDecodeError("Not a RIFF/WAVE payload")
    if header[12:16] != b"fmt " or header[36:40] != b"data":
        raise AudioDecodeError("WAV header is not in canonical 44-byte layout")

    channels, sample_rate, byte_rate, block_align, bits = struct.unpack_from("<HIIHH", header, 22)
    (data_length,) = struct.unpack_from("<I", header, 40)
    return WavInfo(
        data_length=data_length,
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits,
        byte_rate=byte_rate,
        block_align=block_align,
    )


def wav_bytes(pcm: np.ndarray, sample_rate: int, channels: int = 1) -> bytes:
    """Header + little-endian int16 payload. pcm may be (n,) or (n, channels)."""
    payload = np.ascontiguousarray(np.asarray(pcm, dtype="<i2")).tobytes()
    return wav_header(len(payload), sample_rate, channels) + payload


# ─────────────────────────────────────────────────────────────────────────────
# Concatenation
# ─────────────────────────────────────────────────────────────────────────────

def concatenate(frames: Sequence[AudioFrame]) -> Optional[AudioFrame]:
    """
    Join frames end to end, channel by channel.

    Returns None for no input and the frame itself for a single input.
    All frames must share the first frame's sample rate and channel count.
    """
    if not frames:
        return None
    if len(frames) == 1:
        return frames[0]

    first = frames[0]
    for i, frame in enumerate(frames[1:], start=1):
        if frame.sample_rate != first.sample_rate or frame.channel_count != first.channel_count:
            raise AudioValidationError(
                f"frame {i} is {frame.channel_count}ch@{frame.sample_rate}Hz, "
                f"expected {first.channel_count}ch@{first.sample_rate}Hz"
            )

    total = sum(f.length for f in frames)
    out = np.empty((total, first.channel_count), dtype=np.float32)
    for channel in range(first.channel_count):
        offset = 0
        for frame in frames:
            out[offset:offset + frame.length, channel] = frame.channel(channel)
            offset += frame.length

    return AudioFrame(out, first.sample_rate, first.channel_count)
