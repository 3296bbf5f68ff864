"""On-disk cache of per-notebook word cloud images and image maps.

This module provides:
- WordcloudCache: staleness check, single-flight regeneration, removal
- render_wordcloud: default generator built on the wordcloud library
- color_for: deterministic palette colour for a word

Features:
- Regenerates when the artifact is missing, older than the TTL (7 days),
  or older than the notebook's content_updated_at
- At most one regeneration in flight per notebook; concurrent callers
  join it
- Generation writes temp files and publishes them with os.replace, map
  first, image last; freshness is read from the image mtime
"""

from __future__ import annotations

import asyncio
import html
import logging
import os
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote_plus

from PIL import Image, ImageFont
from wordcloud import WordCloud

from .errors import GenerationTimeout
from .models import Notebook

logger = logging.getLogger(__name__)

# Default TTL: 7 days in seconds
DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60

DEFAULT_WIDTH = 320
DEFAULT_HEIGHT = 200

SEARCH_LINK = "/notebooks?q={}&sort=score"

PALETTE = (
    "#1f77b4", "#ff7f0e", "#2ca02c", "#d62728", "#9467bd",
    "#8c564b", "#e377c2", "#7f7f7f", "#bcbd22", "#17becf",
)

# (notebook uuid, keyword weights, image path, map path) -> None
Generator = Callable[[str, Mapping[str, float], Path, Path], None]


def color_for(text: str) -> str:
    """Palette colour picked by the 16-bit byte sum of the text."""
    checksum = sum(text.encode("utf-8")) & 0xFFFF
    return PALETTE[checksum % len(PALETTE)]


def _word_color(word: str, **kwargs) -> str:
    return color_for(word)


# ---------------------------------------------------------------------------
# Default generator
# ---------------------------------------------------------------------------


def render_wordcloud(
    notebook_uuid: str,
    weights: Mapping[str, float],
    image_path: Path,
    map_path: Path,
    width: int = DEFAULT_WIDTH,
    height: int = DEFAULT_HEIGHT,
) -> None:
    """Render keyword weights to a PNG and an HTML image map.

    Each map area links its word to a score-sorted search for that word.
    Blocking; run it in a worker thread.
    """
    frequencies = {word: weight for word, weight in weights.items() if weight > 0}
    areas: list[str] = []

    if frequencies:
        cloud = WordCloud(
            width=width,
            height=height,
            background_color="white",
            color_func=_word_color,
            random_state=0,
        ).generate_from_frequencies(frequencies)
        cloud.to_file(str(image_path))

        for (word, _freq), font_size, position, orientation, _color in cloud.layout_:
            font = ImageFont.TransposedFont(
                ImageFont.truetype(cloud.font_path, int(font_size * cloud.scale)),
                orientation=orientation,
            )
            left, top, right, bottom = font.getbbox(word)
            x = int(position[1] * cloud.scale)
            y = int(position[0] * cloud.scale)
            href = html.escape(SEARCH_LINK.format(quote_plus(word)))
            areas.append(
                f'<area shape="rect" coords="{x},{y},{x + right - left},{y + bottom - top}" '
                f'href="{href}" title="{html.escape(word)}" alt="{html.escape(word)}">'
            )
    else:
        Image.new("RGB", (width, height), "white").save(str(image_path), format="PNG")

    lines = [f'<map name="wordcloud-{html.escape(notebook_uuid)}">', *areas, "</map>"]
    Path(map_path).write_text("\n".join(lines) + "\n", encoding="utf-8")


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArtifactPaths:
    image: Path
    map: Path


@dataclass
class WordcloudCache:
    """Word cloud artifacts for notebooks, regenerated under a staleness policy.

    Attributes:
        directory: Where {uuid}.png and {uuid}.map live.
        generator: Blocking callable that writes both artifacts.
        ttl_seconds: Maximum artifact age before regeneration.
        clock: Wall-clock source, seconds since the epoch.
    """

    directory: Path
    generator: Generator = render_wordcloud
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = time.time

    _inflight: dict[str, asyncio.Task[None]] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.directory = Path(self.directory)

    def paths_for(self, notebook_uuid: str) -> ArtifactPaths:
        return ArtifactPaths(
            image=self.directory / f"{notebook_uuid}.png",
            map=self.directory / f"{notebook_uuid}.map",
        )

    def is_stale(self, notebook: Notebook) -> bool:
        """Whether the notebook's artifact must be regenerated. No side effects."""
        paths = self.paths_for(notebook.uuid)
        try:
            generated_at = paths.image.stat().st_mtime
        except FileNotFoundError:
            return True
        if not paths.map.exists():
            return True
        if generated_at < self.clock() - self.ttl_seconds:
            return True
        return generated_at < notebook.content_updated_at.timestamp()

    def in_flight(self, notebook_uuid: str) -> bool:
        return notebook_uuid in self._inflight

    def read_map(self, notebook_uuid: str) -> str | None:
        try:
            return self.paths_for(notebook_uuid).map.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    async def ensure_current(
        self,
        notebook: Notebook,
        keyword_weights: Mapping[str, float],
        timeout: float | None = None,
    ) -> ArtifactPaths:
        """Return the notebook's artifact paths, regenerating first if stale.

        Callers arriving while a regeneration is in flight wait for that
        one instead of starting another.

        Args:
            notebook: The notebook.
            keyword_weights: keyword -> tf-idf weight.
            timeout: Seconds to wait for a regeneration, or None to wait.

        Returns:
            Paths of the (now current) image and map.

        Raises:
            GenerationTimeout: If the regeneration outlasted the timeout.
                It keeps running and publishes when done.
        """
        uuid = notebook.uuid
        task = self._inflight.get(uuid)
        if task is None:
            if not self.is_stale(notebook):
                return self.paths_for(uuid)
            task = asyncio.create_task(self._regenerate(uuid, dict(keyword_weights)))
            self._inflight[uuid] = task
            task.add_done_callback(lambda t, key=uuid: self._finished(key, t))
            logger.debug("Started word cloud regeneration", extra={"notebook_uuid": uuid})
        else:
            logger.debug("Joined word cloud regeneration", extra={"notebook_uuid": uuid})

        try:
            if timeout is None:
                await asyncio.shield(task)
            else:
                await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            raise GenerationTimeout(uuid, timeout) from None
        return self.paths_for(uuid)

    def _finished(self, notebook_uuid: str, task: asyncio.Task[None]) -> None:
        if self._inflight.get(notebook_uuid) is task:
            del self._inflight[notebook_uuid]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Word cloud generation failed for {notebook_uuid}: {task.exception()}"
            )

    async def _regenerate(self, notebook_uuid: str, weights: dict[str, float]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        paths = self.paths_for(notebook_uuid)
        temps = []
        try:
            for suffix in (".png", ".map"):
                fd, temp_path = tempfile.mkstemp(
                    dir=self.directory, prefix=f".{notebook_uuid}.", suffix=suffix
                )
                os.close(fd)
                temps.append(Path(temp_path))
            image_temp, map_temp = temps

            await asyncio.to_thread(self.generator, notebook_uuid, weights, image_temp, map_temp)

            generated_at = self.clock()
            os.utime(image_temp, (generated_at, generated_at))
            os.replace(map_temp, paths.map)
            os.replace(image_temp, paths.image)
        finally:
            for temp in temps:
                if temp.exists():
                    temp.unlink()

        logger.info(
            "Regenerated word cloud",
            extra={"notebook_uuid": notebook_uuid, "keywords": len(weights)},
        )

    def remove(self, notebook_uuid: str) -> int:
        """Delete both artifacts. Missing files are not an error.

        Returns:
            Number of files removed.
        """
        removed = 0
        paths = self.paths_for(notebook_uuid)
        for path in (paths.image, paths.map):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
        if removed:
            logger.debug("Removed word cloud", extra={"notebook_uuid": notebook_uuid})
        return removed
