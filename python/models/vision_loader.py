from __future__ import annotations

import os
import re
import threading
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, List, Optional, Tuple

from PIL import Image

import sys
from pathlib import Path

# Fix: Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from benchmark_utils import BenchmarkAwareLogger
from config_loader import get_config
from errors import ClipLoadError
from validators import validate_base64_image

# <img src="data:image/jpeg;base64,....">
_IMAGE_MARKER = re.compile(
    r'<img\s+src="data:image/[A-Za-z0-9.+-]+;base64,([A-Za-z0-9+/=\s]*)"\s*/?>'
)


def prompt_contains_image(prompt: str) -> bool:
    return _IMAGE_MARKER.search(prompt) is not None


def remove_all_images_from_prompt(prompt: str, replacement: str = "") -> str:
    return _IMAGE_MARKER.sub(lambda _m: replacement, prompt)


def extract_image_payloads(prompt: str) -> List[str]:
    """Base64 payloads of every inline image, in prompt order"""
    return ["".join(m.group(1).split()) for m in _IMAGE_MARKER.finditer(prompt)]


@dataclass
class ImageEmbedding:
    """Engine-side embedding of one prompt image; free() releases it exactly once"""

    index: int
    embed: Any
    n_image_pos: int
    original_size: Tuple[int, int]
    engine: Any = field(repr=False, default=None)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_freed(self) -> bool:
        return self.embed is None

    def free(self) -> None:
        with self._lock:
            embed, self.embed = self.embed, None
        if embed is not None and self.engine is not None:
            self.engine.free_image_embed(embed)


class VisionEncoderAdapter:
    """
    Produces image embeddings for the inline images of a prompt.

    The vision encoder (mmproj / CLIP) is loaded for one request and freed
    before returning; it is never cached. A single image that fails to decode
    or embed is logged and skipped.
    """

    def __init__(self, engine: Any, logger: Optional[BenchmarkAwareLogger] = None) -> None:
        self.engine = engine
        self.logger = logger or BenchmarkAwareLogger("vision")

    def _normalize_image(self, payload: str) -> Tuple[bytes, Tuple[int, int]]:
        """Decode a base64 payload and re-encode it as RGB JPEG for the encoder"""
        raw = validate_base64_image(payload, max_bytes=get_config().max_image_bytes)
        with Image.open(BytesIO(raw)) as image:
            size = (image.width, image.height)
            if image.mode != "RGB":
                image = image.convert("RGB")
            out = BytesIO()
            image.save(out, format="JPEG", quality=95)
        return out.getvalue(), size

    def load_encoder(self, mmproj_path: str) -> Any:
        """
        Raises:
            ClipLoadError: If the file is unreadable or the encoder fails to load
        """
        if not mmproj_path or not os.path.isfile(mmproj_path) or not os.access(mmproj_path, os.R_OK):
            raise ClipLoadError(mmproj_path or "", "file is missing or unreadable")
        try:
            clip = self.engine.load_clip(mmproj_path, verbosity=get_config().encoder_verbosity)
        except MemoryError:
            raise
        except Exception as exc:
            raise ClipLoadError(mmproj_path, f"failed to load encoder: {exc}") from exc
        if clip is None:
            raise ClipLoadError(mmproj_path, "failed to load encoder")
        return clip

    def embed_prompt_images(self, mmproj_path: str, prompt: str, n_threads: int) -> List[ImageEmbedding]:
        """
        Embed every inline image of prompt with the encoder at mmproj_path

        Returns:
            Embeddings in prompt order (skipped images are absent)

        Raises:
            ClipLoadError: If the encoder cannot be loaded
        """
        payloads = extract_image_payloads(prompt)
        if not payloads:
            return []

        self.logger.info("Loading multimodal model", path=mmproj_path, images=len(payloads))
        clip = self.load_encoder(mmproj_path)
        embeddings: List[ImageEmbedding] = []
        try:
            for index, payload in enumerate(payloads):
                try:
                    image_bytes, size = self._normalize_image(payload)
                    embed = self.engine.embed_image(clip, n_threads, image_bytes)
                    n_pos = self.engine.image_embed_positions(embed)
                except MemoryError:
                    raise
                except Exception as exc:
                    self.logger.warning(f"Skipping image #{index + 1}: {exc}")
                    continue
                embeddings.append(
                    ImageEmbedding(
                        index=index,
                        embed=embed,
                        n_image_pos=n_pos,
                        original_size=size,
                        engine=self.engine,
                    )
                )
        except BaseException:
            for emb in embeddings:
                emb.free()
            raise
        finally:
            self.engine.free_clip(clip)

        if embeddings:
            self.logger.info("Images embedded", count=len(embeddings))
        else:
            self.logger.warning("Unable to create image embeddings, removing image data from prompt")
        return embeddings
