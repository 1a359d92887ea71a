import io
import math
import sys
import wave
from array import array


def float32_from_bytes(data: bytes) -> array:
    """Interpreta bytes como muestras float32 little-endian.
    Lanza ValueError si la longitud no es multiplo de 4.
    """
    if len(data) % 4:
        raise ValueError(f"Payload de {len(data)} bytes no es float32")
    samples = array("f")
    samples.frombytes(data)
    if sys.byteorder != "little":
        samples.byteswap()
    return samples


def float32_to_bytes(samples: array) -> bytes:
    if sys.byteorder != "little":
        samples = array("f", samples)
        samples.byteswap()
    return samples.tobytes()


def downmix(data: bytes, channels: int) -> array:
    """Mezcla un bloque intercalado float32 a un solo canal (promedio)."""
    samples = float32_from_bytes(data)
    if channels <= 1:
        return samples
    frames = len(samples) // channels
    if channels == 2:
        left = samples[0::2]
        right = samples[1::2]
        return array("f", [(left[i] + right[i]) * 0.5 for i in range(frames)])
    mono = array("f", bytes(4 * frames))
    scale = 1.0 / channels
    for c in range(channels):
        channel = samples[c::channels]
        for i in range(frames):
            mono[i] += channel[i] * scale
    return mono


def pcm16_from_float(samples: array) -> bytes:
    """Cuantiza a 16 bits: recorta a [-1, 1] y escala (0x8000 negativo, 0x7FFF positivo)."""
    out = array("h", bytes(2 * len(samples)))
    for i, s in enumerate(samples):
        if s != s:  # NaN
            continue
        s = max(-1.0, min(1.0, s))
        out[i] = int(s * 0x8000) if s < 0 else int(s * 0x7FFF)
    if sys.byteorder != "little":
        out.byteswap()
    return out.tobytes()


def build_wav(samples: array, sample_rate: int) -> bytes:
    """Envuelve muestras mono en un WAV PCM de 16 bits (cabecera de 44 bytes)."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm16_from_float(samples))
    return buf.getvalue()


def measure_level(samples) -> tuple[float, float]:
    """Retorna (rms, pico) de una ventana de muestras."""
    if not samples:
        return 0.0, 0.0
    total = 0.0
    peak = 0.0
    for v in samples:
        total += v * v
        a = abs(v)
        if a > peak:
            peak = a
    return math.sqrt(total / len(samples)), peak
