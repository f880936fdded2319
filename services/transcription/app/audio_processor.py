"""Audio processing utilities: PCM16 framing, energy metrics, WAV packaging"""

import io
import math
import wave
from typing import List, Optional, Tuple

import librosa
import numpy as np
import structlog

from .config import Settings, settings as default_settings
from .models import AudioQuality, Frame, FrameMetadata

logger = structlog.get_logger(__name__)

INT16_MAX = 32767
WAV_HEADER_BYTES = 44


def pcm16_samples(pcm: bytes) -> np.ndarray:
    """View raw little-endian PCM16 bytes as int16 samples (odd trailing byte ignored)"""
    usable = len(pcm) - (len(pcm) % 2)
    return np.frombuffer(pcm[:usable], dtype="<i2")


def compute_frame_metrics(pcm: bytes, sample_rate: int = 16000) -> Tuple[float, int, int, float]:
    """Return (rms, peak, sample_count, duration_ms) for a PCM16 mono buffer"""
    samples = pcm16_samples(pcm)
    if samples.size == 0:
        return 0.0, 0, 0, 0.0

    as_float = samples.astype(np.float64)
    rms = float(np.sqrt(np.mean(as_float * as_float)))
    peak = int(np.max(np.abs(samples.astype(np.int32))))
    duration_ms = samples.size / sample_rate * 1000.0
    return rms, peak, int(samples.size), duration_ms


def to_db(value: float) -> float:
    return 20 * math.log10(max(1.0, value) / 32768.0)


def pcm16_to_wav(pcm: bytes, sample_rate: int = 16000, channels: int = 1) -> bytes:
    """Wrap raw PCM16 samples in a 44-byte RIFF/WAVE header"""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm)
    return buffer.getvalue()


class AudioProcessor:
    """Converts captured audio into fixed-size PCM16 mono frames with metrics.

    One instance per incoming stream: samples that do not fill a whole frame
    are carried over to the next ``feed`` call.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.target_sample_rate = self.settings.sample_rate
        self.frame_samples = int(self.target_sample_rate * self.settings.frame_duration_ms / 1000)
        self._pending = np.zeros(0, dtype=np.int16)

    def feed(self, audio: np.ndarray, sample_rate: int, channels: int = 1) -> List[Frame]:
        """Accept captured samples and return every complete frame"""
        pcm = self.to_pcm16(audio, sample_rate, channels)
        if self._pending.size:
            pcm = np.concatenate([self._pending, pcm])

        frames = []
        whole = (pcm.size // self.frame_samples) * self.frame_samples
        for start in range(0, whole, self.frame_samples):
            chunk = pcm[start:start + self.frame_samples]
            frames.append(self.build_frame(chunk.astype("<i2").tobytes()))

        self._pending = pcm[whole:]
        return frames

    def flush_pending(self) -> Optional[Frame]:
        """Emit the trailing partial frame, if any"""
        if self._pending.size == 0:
            return None
        frame = self.build_frame(self._pending.astype("<i2").tobytes())
        self._pending = np.zeros(0, dtype=np.int16)
        return frame

    def to_pcm16(self, audio: np.ndarray, sample_rate: int, channels: int = 1) -> np.ndarray:
        """Convert float or integer samples to 16kHz mono int16"""
        audio = np.asarray(audio)

        if audio.dtype == np.int16:
            as_float = audio.astype(np.float32) / 32768.0
        elif audio.dtype == np.int32:
            as_float = audio.astype(np.float32) / 2147483648.0
        else:
            as_float = audio.astype(np.float32)

        if channels > 1:
            as_float = as_float.reshape(-1, channels).mean(axis=1)

        if sample_rate != self.target_sample_rate and as_float.size:
            as_float = librosa.resample(
                as_float,
                orig_sr=sample_rate,
                target_sr=self.target_sample_rate,
            )

        clipped = np.clip(as_float, -1.0, 1.0)
        # Asymmetric scale matches the capture worklet: -1 -> -32768, 1 -> 32767
        scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
        return scaled.astype(np.int16)

    def build_frame(self, data: bytes, metadata: Optional[FrameMetadata] = None) -> Frame:
        """Wrap raw PCM16 bytes as a Frame, trusting client metadata when present"""
        if len(data) % 2:
            logger.warning("Odd-length PCM16 chunk, dropping trailing byte", size=len(data))
            data = data[:-1]

        sample_rate = (metadata.sample_rate if metadata and metadata.sample_rate else None) or self.target_sample_rate
        rms, peak, sample_count, duration_ms = compute_frame_metrics(data, sample_rate)

        if metadata is not None:
            if metadata.rms_energy is not None:
                rms = float(metadata.rms_energy)
            if metadata.duration_ms is not None:
                duration_ms = float(metadata.duration_ms)
            if metadata.sample_count is not None:
                sample_count = int(metadata.sample_count)

        if peak >= INT16_MAX:
            logger.warning("Audio clipping detected", peak=peak)

        return Frame(
            data=data,
            rms_energy=rms,
            duration_ms=duration_ms,
            sample_count=sample_count,
            sample_rate=sample_rate,
            peak=peak,
        )

    def analyze(self, pcm: bytes) -> AudioQuality:
        """Quality metrics for a whole clip"""
        samples = pcm16_samples(pcm)
        if samples.size == 0:
            return AudioQuality(
                samples=0, duration_ms=0.0, rms=0.0, rms_db=to_db(0.0), peak=0,
                peak_db=to_db(0.0), quality="silence", estimated_snr=0.0,
            )

        rms, peak, sample_count, duration_ms = compute_frame_metrics(pcm, self.target_sample_rate)
        rms_db = to_db(rms)

        # Noise floor estimated from the quietest 10% of samples
        magnitudes = np.sort(np.abs(samples.astype(np.int32)))
        noise_floor = float(magnitudes[int(magnitudes.size * 0.1)]) or 1.0
        snr = 20 * math.log10(max(1.0, rms) / max(1.0, noise_floor))

        return AudioQuality(
            samples=sample_count,
            duration_ms=duration_ms,
            rms=round(rms, 1),
            rms_db=round(rms_db, 1),
            peak=peak,
            peak_db=round(to_db(peak), 1),
            quality=self._classify(rms, rms_db, peak),
            estimated_snr=round(snr, 1),
            is_clipping=peak >= INT16_MAX * 0.99,
            requires_normalization=rms < self.settings.normalization_min_rms,
        )

    def _classify(self, rms: float, rms_db: float, peak: int) -> str:
        if rms < self.settings.vad_energy_floor:
            return "silence"
        if rms < self.settings.vad_speech_threshold:
            return "very_quiet"
        if rms_db < -30:
            return "quiet"
        if rms_db < -20:
            return "fair"
        if rms_db < -10:
            return "good"
        if peak >= INT16_MAX * 0.99:
            return "clipping"
        return "excellent"

    def normalize(self, pcm: bytes, quality: Optional[AudioQuality] = None) -> bytes:
        """Boost quiet clips toward the target RMS, clamped to the int16 range"""
        quality = quality or self.analyze(pcm)
        if not quality.requires_normalization or quality.rms <= 0:
            return pcm

        gain = min(
            self.settings.normalization_target_rms / max(1.0, quality.rms),
            self.settings.normalization_max_gain,
        )
        samples = pcm16_samples(pcm).astype(np.float32) * gain
        boosted = np.clip(np.round(samples), -INT16_MAX, INT16_MAX).astype("<i2")

        logger.debug("Normalized clip", gain=round(gain, 2), rms=quality.rms)
        return boosted.tobytes()
