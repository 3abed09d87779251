"""
Stitching downloaded tiles into a single image.

Two composers are available behind the same `compose()` call:

- `MontageComposer` shells out to ImageMagick (`magick montage`).
- `PillowComposer` pastes the tiles onto one canvas in-process.

`stitch_pyramid` checks that every tile of the grid is on disk, runs the
chosen composer and reports the size of the result.

Dependencies:
- PIL/Pillow for in-process composition
- rich for colored logging
"""
import asyncio
import os
from typing import Sequence, Tuple

from PIL import Image
from rich import print

from .constants import MONTAGE_COMMAND
from .errors import StitchError
from .my_utils import (
    format_size,
    grid_tile_paths,
    timer
)


class Composer:
    """Builds one image out of a row-major list of tile files."""

    name = None

    async def compose(
        self,
        tile_paths: Sequence[str],
        grid: Tuple[int, int],
        tile_size: int,
        output: str
    ) -> None:
        raise NotImplementedError


class MontageComposer(Composer):
    """
    Runs `magick montage <tiles...> -tile WxH -geometry SxS <output>`.

    Any non-zero exit code or any output on stderr is a failure. Nothing is
    retried.
    """

    name = "montage"

    def __init__(self, command: Sequence[str] = MONTAGE_COMMAND):
        self.command = tuple(command)

    def arguments(self, tile_paths, grid, tile_size, output) -> list[str]:
        width, height = grid
        return [
            *self.command,
            *tile_paths,
            "-tile", f"{width}x{height}",
            "-geometry", f"{tile_size}x{tile_size}",
            output,
        ]

    async def compose(self, tile_paths, grid, tile_size, output) -> None:
        args = self.arguments(tile_paths, grid, tile_size, output)

        try:
            process = await asyncio.create_subprocess_exec(*args, stderr=asyncio.subprocess.PIPE)
        except OSError as error:
            raise StitchError(f"Could not start `{' '.join(self.command)}`: {error}") from error

        _, stderr = await process.communicate()
        stderr = stderr.decode(errors="replace") if stderr else ""

        if process.returncode != 0 or stderr:
            raise StitchError(
                f"`{' '.join(self.command)}` failed with exit code {process.returncode}",
                returncode=process.returncode,
                stderr=stderr,
            )


def compose_tiles(tile_paths: Sequence[str], grid: Tuple[int, int], tile_size: int, output: str) -> None:
    """
    Paste a row-major list of tiles into one image and save it to `output`.

    Tiles go at (x * tile_size, y * tile_size). The canvas takes its right and
    bottom edges from the last column's and last row's actual tile sizes,
    since edge tiles of a pyramid are usually narrower than `tile_size`.

    Args:
        tile_paths (Sequence[str]): Tile files, left to right then top to bottom.
        grid (tuple[int, int]): Columns and rows.
        tile_size (int): Edge of a full tile in pixels.
        output (str): Path of the image to write; the format follows its extension.
    """
    width, height = grid

    with Image.open(tile_paths[width - 1]) as last_column:
        canvas_width = (width - 1) * tile_size + last_column.width
    with Image.open(tile_paths[(height - 1) * width]) as last_row:
        canvas_height = (height - 1) * tile_size + last_row.height

    full_img = Image.new("RGB", (canvas_width, canvas_height))
    for index, path in enumerate(tile_paths):
        y, x = divmod(index, width)
        with Image.open(path) as tile:
            full_img.paste(tile, (x * tile_size, y * tile_size))

    full_img.save(output)
    full_img.close()


class PillowComposer(Composer):
    """Composes in-process with Pillow; the CPU work runs in the default executor."""

    name = "pillow"

    async def compose(self, tile_paths, grid, tile_size, output) -> None:
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, compose_tiles, list(tile_paths), grid, tile_size, output
            )
        except (OSError, ValueError) as error:
            raise StitchError(f"Pillow could not compose {output}: {error}") from error


COMPOSER_BACKENDS = {
    MontageComposer.name: MontageComposer,
    PillowComposer.name: PillowComposer,
}


def get_composer(name: str) -> Composer:
    """Return a composer instance for `name` (`montage` or `pillow`)."""
    try:
        return COMPOSER_BACKENDS[name]()
    except KeyError:
        raise ValueError(f"unknown composer `{name}`, expected one of {tuple(COMPOSER_BACKENDS)}") from None


async def stitch_pyramid(
    extents,
    output_dir: str,
    output: str,
    tile_size: int,
    composer: Composer
) -> str:
    """
    Stitch the deepest zoom level of a downloaded pyramid.

    Args:
        extents (PyramidExtents): Grid found by the prober.
        output_dir (str): Directory holding the tiles.
        output (str): Path of the image to write.
        tile_size (int): Edge of a full tile in pixels.
        composer (Composer): Backend doing the actual work.

    Returns:
        str: `output`, once written.

    Raises:
        StitchError: The grid is empty, tiles are missing, or the composer failed.
    """
    if extents.width < 1 or extents.height < 1:
        raise StitchError(f"Nothing to stitch: grid is {extents.grid}")

    tile_paths = grid_tile_paths(output_dir, extents.max_zoom, extents.width, extents.height)

    missing = [path for path in tile_paths if not os.path.exists(path)]
    if missing:
        raise StitchError(f"{len(missing)}/{len(tile_paths)} tiles missing, first: {missing[0]}")

    print(f"[green][STITCH] Combining {len(tile_paths)} tiles ({extents.grid}) with {composer.name}..[/]")

    with timer() as t:
        await composer.compose(tile_paths, (extents.width, extents.height), tile_size, output)

    size = format_size(os.path.getsize(output)) if os.path.exists(output) else "?"
    print(f"[green][STITCH] Finished combining images in {t.time_elapsed} | size {size}[/]")

    return output
