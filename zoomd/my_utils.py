"""
Utility module for the Zoomify pyramid downloader.

This module provides helper functions and classes for:

- Timing code execution (`timer` context manager).
- Parsing command-line arguments for the downloader (`parse_args`).
- Naming and writing tile files (`tile_path`, `save_tile`).
- Formatting file sizes (`format_size`).

Dependencies:
- rich for colored terminal output
- argparse for CLI argument parsing
- os for file handling
"""
import time
import argparse
import os
from typing import Optional, Sequence

from .constants import (
    COMPOSERS,
    CONCURRENT_REQUESTS,
    DEFAULT_OUTPUT,
    MAX_TILE_GROUP,
    TILE_FILENAME,
    TILE_SIZE
)


class timer:
    """
    Context manager to measure and print elapsed execution time.

    Usage:
        with timer():
            # your code here
    -----
    >>> with timer() as t:
    ...     # some code to measure
    ...     time.sleep(2)
    >>> print(t.time_elapsed)
    '0h 0m 2.00s'
    """

    def __enter__(self):
        self.start = time.time()
        self.time_elapsed = None
        return self


    def __exit__(self, *args):
        self.end = time.time()
        self.interval = self.end - self.start
        hrs, rem = divmod(self.interval, 3600)
        mins, secs = divmod(rem, 60)
        self.time_elapsed = f"{int(hrs)}h {int(mins)}m {secs:.2f}s"
        return False


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for the pyramid downloader.

    Arguments:
        url (str, required): Base URL of the Zoomify pyramid (the folder holding `TileGroupN/`).
        --dir (str, optional): Directory the tiles are written to. (Default: current directory.)
        --output (str, optional): Path of the stitched image. (Default: out.png)
        --max-tile-group (int, optional): Highest TileGroup index to try. (Default: 32)
        --concurrent-requests (int, optional): Max requests in flight. (Default: 64)
        --verbose (flag): Print every request and its status.
        --strict (flag): Abort on connection errors instead of treating them as missing tiles.
        --row-workers (int, optional): Walk at most N rows at once. (Default: one task per row)
        --timeout (float, optional): Total timeout per request in seconds. (Default: None)
        --tile-size (int, optional): Tile edge in pixels. (Default: 256)
        --composer (str, optional): `montage` (ImageMagick) or `pillow`. (Default: montage)
        --no-stitch (flag): Only download the tiles.

    Returns:
        argparse.Namespace: Parsed arguments object.
    """
    parser = argparse.ArgumentParser(
        description="Zoomify Pyramid Downloader"
    )

    parser.add_argument("url", type=str, help="Base URL of the pyramid (the folder holding TileGroupN/)")
    parser.add_argument("-d", "--dir", type=str, default=".", help="Tile output directory (default: current directory)")
    parser.add_argument("-o", "--output", type=str, default=DEFAULT_OUTPUT, help=f"Stitched image path (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--max-tile-group", type=int, default=MAX_TILE_GROUP, help=f"Highest TileGroup index to try (default: {MAX_TILE_GROUP})")
    parser.add_argument("-c", "--concurrent-requests", type=int, default=CONCURRENT_REQUESTS, help=f"Max requests in flight (default: {CONCURRENT_REQUESTS})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print every request and its status")
    parser.add_argument("--strict", action="store_true", help="Abort on connection errors instead of treating them as missing tiles")
    parser.add_argument("--row-workers", type=int, default=None, help="Walk at most N rows at once (default: one task per row)")
    parser.add_argument("--timeout", type=float, default=None, help="Total timeout per request in seconds")
    parser.add_argument("--tile-size", type=int, default=TILE_SIZE, help=f"Tile edge in pixels (default: {TILE_SIZE})")
    parser.add_argument("--composer", choices=COMPOSERS, default=COMPOSERS[0], help="Stitching backend (default: montage)")
    parser.add_argument("--no-stitch", action="store_true", help="Only download the tiles")

    return parser.parse_args(argv)


def tile_path(output_dir: str, zoom: int, x: int, y: int) -> str:
    """Return the on-disk path of tile (zoom, x, y)."""
    return os.path.join(output_dir, TILE_FILENAME.format(zoom=zoom, x=x, y=y))


def grid_tile_paths(output_dir: str, zoom: int, width: int, height: int) -> list[str]:
    """
    List the tile paths of a `width` x `height` grid in row-major order.

    Args:
        output_dir (str): Directory holding the tiles.
        zoom (int): Zoom level of the grid.
        width (int): Number of columns.
        height (int): Number of rows.

    Returns:
        list[str]: One path per tile, left to right then top to bottom.
    """
    return [
        tile_path(output_dir, zoom, x, y)
        for y in range(height)
        for x in range(width)
    ]


def save_tile(path: str, data: bytes) -> int:
    """Write raw tile bytes to `path`, overwriting it, and return the byte count."""
    with open(path, "wb") as tile_file:
        return tile_file.write(data)


def format_size(num_bytes: int) -> str:
    """
    Convert a file size in bytes into a human-readable string.

    Args:
        num_bytes (int): File size in bytes.

    Returns:
        str: Formatted size (e.g., '512.00 KB', '384.00 MB').
    """
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if num_bytes < 1024:
            return f"{num_bytes:.2f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.2f} PB"
