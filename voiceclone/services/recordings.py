"""
On-disk storage for uploaded recordings and combined training assets.

Jobs only ever hold reference strings (paths relative to the storage root);
bytes stay here.
"""

import asyncio
import io
import uuid
from pathlib import Path
from typing import Union

import soundfile as sf

from voiceclone.core.errors import EncodingError, NotFoundError
from voiceclone.core.logging import get_logger
from voiceclone.services.signal import AudioBufferDescriptor, CombinedAsset, WAV_HEADER_SIZE

logger = get_logger(__name__)


def decode_audio(data: Union[bytes, Path, str]) -> AudioBufferDescriptor:
    """Decode WAV/FLAC/OGG data into a float32 buffer descriptor."""
    source = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else str(data)
    try:
        samples, sample_rate = sf.read(source, dtype="float32", always_2d=True)
    except RuntimeError as exc:
        raise EncodingError(f"Unsupported audio data: {exc}") from exc
    return AudioBufferDescriptor.from_array(samples, int(sample_rate))


class RecordingStore:
    """Stores recordings under `<root>/recordings` and assets under `<root>/assets`."""

    def __init__(self, storage_dir: str = "./voice_jobs"):
        self.root = Path(storage_dir).resolve()
        self.recordings_dir = self.root / "recordings"
        self.assets_dir = self.root / "assets"

    async def initialize(self) -> None:
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        self.assets_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root not in path.parents:
            raise NotFoundError("recording", ref)
        if not path.exists():
            raise NotFoundError("recording", ref)
        return path

    async def save_recording(self, data: bytes, filename: str = "recording.wav") -> str:
        """Validate and persist an uploaded recording, returning its reference."""
        # Reject undecodable uploads before they are referenced by a job
        await asyncio.to_thread(decode_audio, data)

        suffix = Path(filename).suffix.lower() or ".wav"
        name = f"{uuid.uuid4().hex}{suffix}"
        path = self.recordings_dir / name
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        logger.info(
            f"Stored recording {name}",
            extra={"recording": name, "size_bytes": len(data)},
        )
        return f"recordings/{name}"

    async def load(self, ref: str) -> AudioBufferDescriptor:
        path = self._resolve(ref)
        return await asyncio.to_thread(decode_audio, path)

    async def save_asset(self, job_id: str, asset: CombinedAsset) -> str:
        self.assets_dir.mkdir(parents=True, exist_ok=True)
        path = self.assets_dir / f"{job_id}.wav"
        path.write_bytes(asset.data)
        return f"assets/{path.name}"

    async def read_asset(self, ref: str) -> CombinedAsset:
        data = self._resolve(ref).read_bytes()
        if len(data) < WAV_HEADER_SIZE:
            raise EncodingError("Combined asset is truncated", details={"ref": ref})
        sample_rate = int.from_bytes(data[24:28], "little")
        return CombinedAsset(
            data=data,
            frame_count=(len(data) - WAV_HEADER_SIZE) // 2,
            sample_rate=sample_rate,
        )
