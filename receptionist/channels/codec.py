"""Audio conversion between the telephony leg and the agent leg.

Twilio Media Streams carry G.711 µ-law at 8kHz mono.  The agent accepts
linear16 PCM (announced in ``session_settings``) and answers with WAV
chunks at whatever rate it likes, so the outbound path reads the WAV
header and resamples down to 8kHz before re-encoding as µ-law.
"""

from __future__ import annotations

import io
import wave

import numpy as np

try:
    import audioop
except ImportError:
    # Python 3.13+ removed audioop from stdlib
    import audioop_lts as audioop  # type: ignore[no-redef]

TWILIO_SAMPLE_RATE = 8000
SAMPLE_WIDTH = 2  # int16

# What a corrupt base64 or audio chunk can raise while converting
DECODE_ERRORS = (ValueError, wave.Error, audioop.error)


def mulaw_to_linear16(mulaw_bytes: bytes) -> bytes:
    """µ-law 8kHz → PCM int16 LE 8kHz."""
    return audioop.ulaw2lin(mulaw_bytes, SAMPLE_WIDTH)


def resample(pcm_bytes: bytes, from_rate: int, to_rate: int) -> bytes:
    """Resample int16 mono PCM via linear interpolation."""
    if from_rate == to_rate or not pcm_bytes:
        return pcm_bytes
    samples = np.frombuffer(pcm_bytes, dtype=np.int16).astype(np.float32)
    num_output = max(1, int(round(len(samples) * to_rate / from_rate)))
    indices = np.linspace(0, len(samples) - 1, num_output)
    resampled = np.interp(indices, np.arange(len(samples)), samples)
    return resampled.astype(np.int16).tobytes()


def _read_wav(data: bytes) -> tuple[bytes, int]:
    """Decode a WAV blob to (mono int16 PCM, sample rate)."""
    with wave.open(io.BytesIO(data), "rb") as wav:
        channels = wav.getnchannels()
        width = wav.getsampwidth()
        rate = wav.getframerate()
        frames = wav.readframes(wav.getnframes())
    if width != SAMPLE_WIDTH:
        frames = audioop.lin2lin(frames, width, SAMPLE_WIDTH)
    if channels == 2:
        frames = audioop.tomono(frames, SAMPLE_WIDTH, 0.5, 0.5)
    return frames, rate


def agent_audio_to_mulaw(data: bytes, raw_rate: int = TWILIO_SAMPLE_RATE) -> bytes:
    """Agent audio (WAV, or raw linear16 at ``raw_rate``) → µ-law 8kHz."""
    if data[:4] == b"RIFF":
        pcm, rate = _read_wav(data)
    else:
        pcm, rate = data, raw_rate
    pcm_8k = resample(pcm, rate, TWILIO_SAMPLE_RATE)
    return audioop.lin2ulaw(pcm_8k, SAMPLE_WIDTH)
