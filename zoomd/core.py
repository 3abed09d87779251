"""
Core module for discovering and downloading Zoomify tile pyramids.

A Zoomify server publishes no manifest, so everything is found by probing.
This module provides asynchronous functions to:

- Fetch one tile, walking up the `TileGroupN` folders until it is found (`fetch_tile`).
- Download a whole row of tiles until the right edge is hit (`download_row`).
- Find the deepest zoom level (`probe_depth`).
- Discover width and height while downloading every tile (`probe_pyramid`).
- Run a full download and hand the tiles to a composer (`download_pyramid`).

Every request goes through one shared `asyncio.Semaphore`; the running
width, height and tile count live in a `SharedState` shared by all rows.

Dependencies:
- aiohttp for asynchronous HTTP requests
- rich for colored logging
"""
import asyncio
import enum
import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import aiohttp
from aiohttp import ClientTimeout

from rich import print
from rich.markup import escape

from .constants import (
    COMPOSERS,
    CONCURRENT_REQUESTS,
    DEFAULT_OUTPUT,
    MAX_TILE_GROUP,
    PROGRESS_EVERY,
    TILE_SIZE,
    TILE_URL
)
from .errors import (
    GroupExhausted,
    PyramidNotFound,
    StitchError,
    TransportError
)
from .my_utils import (
    save_tile,
    tile_path,
    timer
)
from .stitch import (
    get_composer,
    stitch_pyramid
)


@dataclass(frozen=True)
class PyramidConfig:
    """Run-wide settings, built once at startup and shared by every task."""
    url: str
    output_dir: str = "."
    output: str = DEFAULT_OUTPUT
    max_tile_group: int = MAX_TILE_GROUP
    concurrent_requests: int = CONCURRENT_REQUESTS
    verbose: bool = False
    strict: bool = False
    row_workers: Optional[int] = None
    timeout: Optional[float] = None
    tile_size: int = TILE_SIZE
    composer: str = COMPOSERS[0]
    stitch: bool = True

    def __post_init__(self):
        object.__setattr__(self, "url", self.url.rstrip("/"))

        if self.concurrent_requests < 1:
            raise ValueError("concurrent_requests must be at least 1")
        if self.max_tile_group < 0:
            raise ValueError("max_tile_group must not be negative")
        if self.row_workers is not None and self.row_workers < 1:
            raise ValueError("row_workers must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.tile_size < 1:
            raise ValueError("tile_size must be at least 1")
        if self.composer not in COMPOSERS:
            raise ValueError(f"unknown composer `{self.composer}`, expected one of {COMPOSERS}")

    @classmethod
    def from_args(cls, args) -> "PyramidConfig":
        """Build a config from the namespace returned by `parse_args`."""
        return cls(
            url=args.url,
            output_dir=args.dir,
            output=args.output,
            max_tile_group=args.max_tile_group,
            concurrent_requests=args.concurrent_requests,
            verbose=args.verbose,
            strict=args.strict,
            row_workers=args.row_workers,
            timeout=args.timeout,
            tile_size=args.tile_size,
            composer=args.composer,
            stitch=not args.no_stitch,
        )


@dataclass(frozen=True)
class TileCoordinate:
    """
    One request target. `tile_group` is only a guess: the same tile may have
    to be retried under several increasing groups before it is found.
    """
    x: int
    y: int
    zoom: int
    tile_group: int = 0

    def url(self, base_url: str) -> str:
        return TILE_URL.format(base_url=base_url, tile_group=self.tile_group, zoom=self.zoom, x=self.x, y=self.y)

    def path(self, output_dir: str) -> str:
        return tile_path(output_dir, self.zoom, self.x, self.y)

    def next_group(self) -> "TileCoordinate":
        return replace(self, tile_group=self.tile_group + 1)

    def __str__(self):
        return f"tg{self.tile_group}/{self.zoom}-{self.x}-{self.y}"


class Outcome(enum.Enum):
    SUCCESS = "success"
    ABSENT = "absent"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass(frozen=True)
class TileAttempt:
    """What a single GET for a `TileCoordinate` produced."""
    coordinate: TileCoordinate
    outcome: Outcome
    status: Optional[int] = None
    data: Optional[bytes] = field(default=None, repr=False)
    error: Optional[BaseException] = None


class SharedState:
    """
    Running width, height and downloaded-tile count shared by all row tasks.

    Each value has its own lock and no method takes two of them, so updates
    from different rows can interleave freely.
    """

    def __init__(self):
        self.width = 0
        self.height = 0
        self.count = 0
        self._width_lock = asyncio.Lock()
        self._height_lock = asyncio.Lock()
        self._count_lock = asyncio.Lock()

    async def record_width(self, x: int) -> int:
        """Fold a row's first missing column into the width (running maximum)."""
        async with self._width_lock:
            if x > self.width:
                self.width = x
            return self.width

    async def set_height(self, y: int) -> None:
        async with self._height_lock:
            self.height = y

    async def increment_count(self) -> int:
        async with self._count_lock:
            self.count += 1
            return self.count

    async def reset_count(self, value: int = 0) -> None:
        async with self._count_lock:
            self.count = value

    async def snapshot(self) -> Tuple[int, int, int]:
        async with self._width_lock:
            width = self.width
        async with self._height_lock:
            height = self.height
        async with self._count_lock:
            count = self.count
        return width, height, count


@dataclass(frozen=True)
class PyramidExtents:
    """Grid discovered at the deepest zoom level."""
    width: int
    height: int
    max_zoom: int
    downloaded: int

    @property
    def tile_count(self) -> int:
        return self.width * self.height

    @property
    def grid(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass
class DownloadContext:
    """Everything a fetch needs: the HTTP session, the config, the request gate and the shared state."""
    session: aiohttp.ClientSession
    config: PyramidConfig
    gate: asyncio.Semaphore
    state: SharedState = field(default_factory=SharedState)

    @classmethod
    def create(cls, session, config: PyramidConfig) -> "DownloadContext":
        return cls(session, config, asyncio.Semaphore(config.concurrent_requests))


async def request_tile(ctx: DownloadContext, coordinate: TileCoordinate) -> TileAttempt:
    """
    Issue a single GET for `coordinate`.

    The gate is held only until the response headers arrive; the body is read
    after the permit is returned, so the gate bounds outstanding requests and
    not transfers.

    Args:
        ctx (DownloadContext): Session, config, gate and shared state.
        coordinate (TileCoordinate): Tile and tile group to request.

    Returns:
        TileAttempt: SUCCESS with the body for a 2xx response, ABSENT for any
        other status, TRANSPORT_FAILURE if the request raised before a
        status was received.
    """
    url = coordinate.url(ctx.config.url)
    verbose = ctx.config.verbose

    try:
        async with ctx.gate:
            if verbose:
                print(f"[dim]Requesting: {coordinate}[/]")
            response = await ctx.session.get(url)

        async with response:
            if verbose:
                print(f"[dim]Requested: {coordinate}, status:{response.status}[/]")

            if not 200 <= response.status < 300:
                return TileAttempt(coordinate, Outcome.ABSENT, status=response.status)

            data = await response.read()

    except (aiohttp.ClientError, asyncio.TimeoutError) as error:
        if verbose:
            print(f"[yellow][TILE] {coordinate} failed: {escape(repr(error))}[/]")
        return TileAttempt(coordinate, Outcome.TRANSPORT_FAILURE, error=error)

    return TileAttempt(coordinate, Outcome.SUCCESS, status=response.status, data=data)


async def fetch_tile(
    ctx: DownloadContext,
    x: int,
    y: int,
    zoom: int,
    tile_group: int
) -> int:
    """
    Download tile (x, y, zoom), trying `tile_group`, `tile_group + 1`, ...

    On success the body is written to `{output_dir}/{zoom}-{x}-{y}.jpg`, the
    shared count goes up by one (with a progress line every `PROGRESS_EVERY`
    tiles) and the group that worked is returned, to be used as the starting
    guess for the next tile.

    Connection-level failures count as "not in this group" unless the config
    is strict, in which case they raise `TransportError` straight away.

    Args:
        ctx (DownloadContext): Session, config, gate and shared state.
        x (int): Tile column.
        y (int): Tile row.
        zoom (int): Zoom level.
        tile_group (int): First tile group to try.

    Returns:
        int: The tile group the tile was found in.

    Raises:
        GroupExhausted: No group up to `max_tile_group` served the tile.
        TransportError: A request failed below HTTP and the config is strict.
        OSError: The tile could not be written.
    """
    coordinate = TileCoordinate(x, y, zoom, tile_group)
    attempt = None

    while coordinate.tile_group <= ctx.config.max_tile_group:
        attempt = await request_tile(ctx, coordinate)

        if attempt.outcome is Outcome.SUCCESS:
            break

        if attempt.outcome is Outcome.TRANSPORT_FAILURE and ctx.config.strict:
            raise TransportError(coordinate, attempt.error) from attempt.error

        coordinate = coordinate.next_group()
    else:
        raise GroupExhausted(x, y, zoom, attempt)

    await asyncio.get_running_loop().run_in_executor(
        None, save_tile, coordinate.path(ctx.config.output_dir), attempt.data
    )

    count = await ctx.state.increment_count()
    if count % PROGRESS_EVERY == 0:
        print(f"[green]Downloaded {count}/?[/]")

    return coordinate.tile_group


async def download_row(
    ctx: DownloadContext,
    x: int,
    y: int,
    zoom: int,
    tile_group: int
) -> int:
    """
    Download row `y` from column `x` rightwards until a tile can't be found.

    The group each tile was found in seeds the next column. The first missing
    column is folded into the shared width.

    Returns:
        int: The first column that could not be fetched.
    """
    while True:
        try:
            tile_group = await fetch_tile(ctx, x, y, zoom, tile_group)
        except GroupExhausted:
            break
        x += 1

    await ctx.state.record_width(x)
    return x


class RowScheduler:
    """
    Runs a `download_row` for every row the column probe finds.

    Without `row_workers` each row gets its own task. With it, rows are put on
    a queue drained by that many worker tasks.
    """

    def __init__(self, ctx: DownloadContext, zoom: int):
        self.ctx = ctx
        self.zoom = zoom
        self._tasks = []
        self._queue = None

        if ctx.config.row_workers:
            self._queue = asyncio.Queue()
            self._tasks = [asyncio.create_task(self._worker()) for _ in range(ctx.config.row_workers)]

    def submit(self, y: int, tile_group: int) -> None:
        """Schedule row `y`, starting at column 1 with `tile_group` as the first guess."""
        if self._queue is None:
            self._tasks.append(asyncio.create_task(download_row(self.ctx, 1, y, self.zoom, tile_group)))
        else:
            self._queue.put_nowait((y, tile_group))

    async def _worker(self) -> None:
        while True:
            row = await self._queue.get()
            if row is None:
                return
            y, tile_group = row
            await download_row(self.ctx, 1, y, self.zoom, tile_group)

    def _close_queue(self) -> None:
        if self._queue is not None:
            for _ in self._tasks:
                self._queue.put_nowait(None)

    async def join(self) -> None:
        """
        Wait for every submitted row to stop. A failing row does not cancel
        the others; once all have stopped, the first row error is re-raised.
        """
        self._close_queue()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)

        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise errors[0]

    async def cancel(self) -> None:
        """Cancel every row still running and wait until they have all stopped."""
        self._close_queue()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


async def probe_depth(ctx: DownloadContext) -> Tuple[int, int]:
    """
    Find the deepest zoom level by fetching tile (0, 0) at zoom 0, 1, 2, ...

    Returns:
        tuple[int, int]: The deepest zoom that served (0, 0) and the tile
        group it was found in.

    Raises:
        PyramidNotFound: Not even zoom 0 could be fetched.
    """
    zoom = 0
    tile_group = 0

    while True:
        try:
            tile_group = await fetch_tile(ctx, 0, 0, zoom, tile_group)
        except GroupExhausted as exhausted:
            if zoom == 0:
                raise PyramidNotFound(ctx.config.url, exhausted.last_response) from exhausted
            break
        zoom += 1

    return zoom - 1, tile_group


async def probe_pyramid(ctx: DownloadContext) -> PyramidExtents:
    """
    Discover the pyramid's extents and download every tile at the deepest zoom.

    Steps:
        1. Find the deepest zoom with `probe_depth`.
        2. Reset the count to 1: only tile (0, 0) of that zoom is kept.
        3. Start row 0 from column 1.
        4. Walk down column 0, starting each row as soon as its first tile is found.
        5. Wait for every row to finish.

    The tile group is never searched from 0 again; each step starts from the
    last group found, as groups only grow left to right and top to bottom.

    Args:
        ctx (DownloadContext): Session, config, gate and shared state.

    Returns:
        PyramidExtents: Width, height, deepest zoom and downloaded tile count.
    """
    max_zoom, tile_group = await probe_depth(ctx)
    await ctx.state.reset_count(1)

    print(f"[green][PROBE] Found highest zoom: {max_zoom}[/]")

    rows = RowScheduler(ctx, max_zoom)
    try:
        rows.submit(0, tile_group)

        y = 1
        while True:
            try:
                tile_group = await fetch_tile(ctx, 0, y, max_zoom, tile_group)
            except GroupExhausted:
                break
            rows.submit(y, tile_group)
            y += 1

        await ctx.state.set_height(y)
    except BaseException:
        # the run is over: no row may keep requesting or writing after we raise
        await rows.cancel()
        raise

    await rows.join()

    width, height, count = await ctx.state.snapshot()
    return PyramidExtents(width, height, max_zoom, count)


def open_session(config: PyramidConfig) -> aiohttp.ClientSession:
    """Create the HTTP session used for the whole run."""
    connector = aiohttp.TCPConnector(limit=config.concurrent_requests)
    if config.timeout is not None:
        return aiohttp.ClientSession(connector=connector, timeout=ClientTimeout(total=config.timeout))
    return aiohttp.ClientSession(connector=connector)


async def download_pyramid(
    config: PyramidConfig,
    session: Optional[aiohttp.ClientSession] = None,
    composer=None
) -> Tuple[PyramidExtents, Optional[str]]:
    """
    Probe and download a whole pyramid, then stitch it into one image.

    Workflow:
        - Creates the output directory and, unless one is given, an aiohttp session.
        - Runs `probe_pyramid()` to download every tile of the deepest zoom.
        - Hands the tiles to the composer named in the config (or `composer`).

    A stitching failure is reported but does not raise: the tiles stay on disk.

    Args:
        config (PyramidConfig): Run settings.
        session (aiohttp.ClientSession | None): Session to reuse; closed by the caller.
        composer (Composer | None): Overrides `config.composer`.

    Returns:
        tuple[PyramidExtents, str | None]: The discovered extents and the
        stitched image path, or None when stitching was skipped or failed.
    """
    print("[green]| Running Prober..[/]\n")

    os.makedirs(config.output_dir, exist_ok=True)

    if session is None:
        async with open_session(config) as own_session:
            return await _download(config, own_session, composer)

    return await _download(config, session, composer)


async def _download(config, session, composer) -> Tuple[PyramidExtents, Optional[str]]:
    ctx = DownloadContext.create(session, config)

    with timer() as t:
        extents = await probe_pyramid(ctx)

    print(
        f"[green][OK] Downloaded {extents.downloaded}/{extents.tile_count} "
        f"({extents.grid}) in {t.time_elapsed}[/]"
    )

    if not config.stitch:
        return extents, None

    if composer is None:
        composer = get_composer(config.composer)

    try:
        output = await stitch_pyramid(extents, config.output_dir, config.output, config.tile_size, composer)
    except StitchError as error:
        print(f"[red][STITCH ERROR] {escape(str(error))}[/]")
        if error.stderr:
            print(escape(error.stderr))
        return extents, None

    return extents, output
