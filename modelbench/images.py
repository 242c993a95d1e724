from __future__ import annotations

import asyncio
import os
from typing import List, Optional, Protocol

from PIL import Image

from .cancel import CancelToken, race
from .config import settings
from .errors import ImageLoadFailure
from .resources import ResourceRegistry, registry as default_registry

# Fixed test corpus, identical for every artifact in a run.
DEFAULT_CORPUS: List[str] = (
    ["card1.png", "card2.jpeg", "card3.png"]
    + [f"card{i}.jpg" for i in range(4, 11)]
    + [f"id{i}.jpg" for i in range(1, 11)]
    + [f"face{i}.jpg" for i in range(1, 11)]
    + [f"signature{i}.jpg" for i in range(1, 11)]
)


def corpus_paths(images_dir: Optional[str] = None, names: Optional[List[str]] = None) -> List[str]:
    base = images_dir or settings.images_dir
    return [os.path.join(base, n) for n in (names or DEFAULT_CORPUS)]


class ImageLoader(Protocol):
    async def load(self, path: str) -> Image.Image: ...


class PILImageLoader:
    """Decodes corpus images off the event loop, bounded in time."""

    def __init__(
        self,
        timeout_ms: Optional[int] = None,
        registry: ResourceRegistry = default_registry,
    ) -> None:
        self.timeout_ms = settings.image_load_timeout_ms if timeout_ms is None else timeout_ms
        self.registry = registry

    def _decode(self, path: str, token: CancelToken) -> Image.Image:
        with Image.open(path) as im:
            img = im.convert("RGB")
        if token.cancelled:
            img.close()
            token.raise_if_cancelled()
        return img

    async def load(self, path: str) -> Image.Image:
        async def attempt(token: CancelToken) -> Image.Image:
            return await asyncio.to_thread(self._decode, path, token)

        try:
            img = await race(
                attempt,
                self.timeout_ms,
                lambda: ImageLoadFailure(path, "Image loading timeout"),
            )
        except ImageLoadFailure:
            raise
        except Exception as e:
            raise ImageLoadFailure(path, str(e)) from e

        self.registry.track(img, img.width * img.height * 3)
        return img
