import io
import logging
from array import array

from pydub import AudioSegment

from recorder.mixer import pcm16_from_float

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "adts": "audio/aac",
    "ogg": "audio/ogg",
}


class PydubSegmentEncoder:
    """Codifica cada segmento de forma independiente usando pydub/ffmpeg.

    Los segmentos MP3/ADTS/Ogg se pueden concatenar byte a byte y el resultado
    sigue siendo reproducible, lo que permite el respaldo por concatenacion.
    """

    def __init__(self, fmt: str = "mp3", bitrate: str = "128k"):
        if fmt not in MIME_TYPES:
            raise ValueError(f"Formato de contenedor no soportado: {fmt}")
        self.format = fmt
        self.bitrate = bitrate

    @property
    def mime_type(self) -> str:
        return MIME_TYPES[self.format]

    def encode(self, samples: array, sample_rate: int) -> bytes:
        audio = AudioSegment(
            data=pcm16_from_float(samples),
            sample_width=2,
            frame_rate=int(sample_rate),
            channels=1,
        )
        buf = io.BytesIO()
        audio.export(buf, format=self.format, bitrate=self.bitrate)
        data = buf.getvalue()
        logger.debug("Segmento %s codificado: %d muestras -> %d bytes",
                     self.format, len(samples), len(data))
        return data
