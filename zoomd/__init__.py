"""
zoomd - Zoomify Pyramid Downloader

This module provides tools to discover, download, and stitch Zoomify tile pyramids
served without any manifest.

Key features:
- Probe the deepest zoom level and the grid size by trial requests.
- Find each tile's `TileGroupN` folder by walking the group index upwards.
- Concurrently fetch rows of tiles using asyncio + aiohttp, with one shared request limit.
- Stitch tiles into a single image with ImageMagick `montage` or Pillow.

Example usage::

    import asyncio
    from zoomd import PyramidConfig, download_pyramid
    from zoomd import timer
    from rich import print

    config = PyramidConfig(url="https://example.org/zoomify/map", output_dir="tiles", composer="pillow")

    with timer() as t:
        extents, output = asyncio.run(download_pyramid(config))
        print(f"Downloaded {extents.downloaded}/{extents.tile_count} tiles in {t.time_elapsed}")
        print(f"Saved at {output}")
"""
from .core import *
from .errors import *
from .stitch import *
from .my_utils import *
from .constants import *
