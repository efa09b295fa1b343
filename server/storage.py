"""
On-disk artifact store.

Layout under the output root:

    <output>/<job name>/00000.png
    <output>/<job name>/00001.png
    <output>/upscaled/00000.png

Returned paths are relative to the output root and are what the file
server exposes under ``/output/``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import re
from pathlib import Path
from typing import Dict, List

from PIL import Image, UnidentifiedImageError

from server.logging_utils import get_logger
from shared.errors import BackendError, InvalidRequest, NotFound
from shared.sanitize_name import sanitize_job_name

_NUMBERED_RE = re.compile(r"^(\d+)$")
_DATA_URL_RE = re.compile(r"^data:image/[a-z0-9.+-]+;base64,", re.IGNORECASE)


def parse_parameters_text(parameters: str) -> Dict[str, str]:
    """Split the web UI ``parameters`` PNG text into prompt / negative prompt."""
    parts = parameters.split("\nNegative prompt: ", 1)
    prompt = parts[0].strip()
    negative_prompt = parts[1].split("\n", 1)[0].strip() if len(parts) > 1 else ""
    # Without a negative prompt the settings line follows the prompt directly.
    if len(parts) == 1 and "\nSteps: " in prompt:
        prompt = prompt.split("\nSteps: ", 1)[0].strip()
    return {"prompt": prompt, "negative_prompt": negative_prompt}


class ImageStore:
    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.slog = get_logger()

    def initialize(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def ensure_named_directory(self, name: str) -> Path:
        job_dir = self.output_dir / sanitize_job_name(name)
        job_dir.mkdir(parents=True, exist_ok=True)
        return job_dir

    def resolve(self, relative_path: str) -> Path:
        """Map a stored relative path back to disk, refusing anything outside the output root."""
        if not relative_path or Path(relative_path).is_absolute():
            raise InvalidRequest(f"Invalid image path: {relative_path!r}")
        base = self.output_dir.resolve()
        path = (base / relative_path).resolve()
        if base not in path.parents:
            raise InvalidRequest(f"Invalid image path: {relative_path!r}")
        return path

    def _next_number(self, job_dir: Path) -> int:
        numbers = [
            int(match.group(1))
            for match in (_NUMBERED_RE.match(p.stem) for p in job_dir.iterdir() if p.is_file())
            if match
        ]
        return max(numbers) + 1 if numbers else 0

    def _decode(self, image: str) -> bytes:
        if not image:
            raise BackendError("Backend returned an empty image")
        try:
            return base64.b64decode(_DATA_URL_RE.sub("", image), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise BackendError(f"Backend returned an image that is not valid base64: {exc}") from exc

    def _save_all_sync(self, name: str, images: List[str]) -> List[str]:
        if not images:
            self.slog.warning("no_images_to_save", name=name)
            return []

        # decode the whole batch before touching disk so a bad image leaves nothing behind
        decoded = [self._decode(image) for image in images]
        job_dir = self.ensure_named_directory(name)
        number = self._next_number(job_dir)
        written: List[Path] = []
        try:
            for data in decoded:
                path = job_dir / f"{number:05d}.png"
                written.append(path)
                path.write_bytes(data)
                number += 1
        except OSError:
            for path in written:
                path.unlink(missing_ok=True)
            raise
        return [f"{job_dir.name}/{path.name}" for path in written]

    async def save_all(self, name: str, images: List[str]) -> List[str]:
        """Decode and write base64 images; returns paths relative to the output root."""
        return await asyncio.to_thread(self._save_all_sync, name, images)

    def _read_metadata_sync(self, relative_path: str) -> Dict[str, str]:
        empty = {"prompt": "", "negative_prompt": ""}
        try:
            path = self.resolve(relative_path)
            with Image.open(path) as img:
                parameters = img.info.get("parameters")
        except (InvalidRequest, OSError, UnidentifiedImageError, ValueError) as exc:
            self.slog.warning("image_metadata_unreadable", path=relative_path, error=str(exc))
            return empty
        if not isinstance(parameters, str) or not parameters.strip():
            self.slog.debug("image_metadata_missing", path=relative_path)
            return empty
        return parse_parameters_text(parameters)

    async def read_metadata(self, relative_path: str) -> Dict[str, str]:
        """Best-effort prompt / negative prompt from PNG text; empty strings on any failure."""
        return await asyncio.to_thread(self._read_metadata_sync, relative_path)

    def _load_base64_sync(self, relative_path: str) -> str:
        path = self.resolve(relative_path)
        if not path.is_file():
            raise NotFound(f"Image {relative_path} not found")
        return base64.b64encode(path.read_bytes()).decode("ascii")

    async def load_base64(self, relative_path: str) -> str:
        return await asyncio.to_thread(self._load_base64_sync, relative_path)

    def _exists_sync(self, relative_path: str) -> bool:
        return self.resolve(relative_path).is_file()

    async def exists(self, relative_path: str) -> bool:
        """True when *relative_path* names a file under the output root."""
        return await asyncio.to_thread(self._exists_sync, relative_path)
