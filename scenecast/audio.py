"""
Audio sample preparation: decode, mono mixdown, resample, WAV encode, base64.
"""
import base64
import io
import math
import wave

import numpy as np
from scipy import signal

from .errors import ParseError
from .types import AudioBlob, EncodedAudio


def decode_samples(blob: AudioBlob) -> np.ndarray:
    """Interleaved 16-bit PCM to float32 of shape (frames, channels) in [-1, 1]."""
    if blob.sample_width != 2:
        raise ParseError(f"Unsupported sample width: {blob.sample_width} bytes")
    usable = len(blob.pcm) - len(blob.pcm) % (blob.sample_width * blob.channels)
    samples = np.frombuffer(blob.pcm[:usable], dtype=np.int16).astype(np.float32) / 32768.0
    return samples.reshape(-1, blob.channels)


def to_mono(samples: np.ndarray) -> np.ndarray:
    if samples.ndim == 1:
        return samples
    return samples.mean(axis=1)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Polyphase resample of a mono signal."""
    if source_rate == target_rate or samples.size == 0:
        return samples.astype(np.float32)
    divisor = math.gcd(source_rate, target_rate)
    resampled = signal.resample_poly(samples, target_rate // divisor, source_rate // divisor)
    return resampled.astype(np.float32)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Mono 16-bit PCM WAV. Negative samples scale by 0x8000, positive by 0x7fff."""
    clamped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clamped < 0, clamped * 0x8000, clamped * 0x7FFF)
    pcm = np.trunc(scaled).astype("<i2")

    wav_buffer = io.BytesIO()
    wf = wave.open(wav_buffer, 'wb')
    wf.setnchannels(1)
    wf.setsampwidth(2)
    wf.setframerate(sample_rate)
    wf.writeframes(pcm.tobytes())
    wf.close()
    return wav_buffer.getvalue()


def prepare_transcription_payload(blob: AudioBlob, target_rate: int) -> EncodedAudio:
    """Raw capture to a base64 WAV at the target rate."""
    decoded = decode_samples(blob)
    duration = decoded.shape[0] / blob.sample_rate if blob.sample_rate else 0.0
    mono = resample(to_mono(decoded), blob.sample_rate, target_rate)
    wav_bytes = encode_wav(mono, target_rate)
    return EncodedAudio(
        base64=base64.b64encode(wav_bytes).decode("ascii"),
        wav_byte_length=len(wav_bytes),
        duration_seconds=duration,
        sample_rate=target_rate
    )
