"""
In-memory stand-ins for the HTTP side of the downloader.

`FakeTileServer` has the one method the downloader uses on an
`aiohttp.ClientSession` (`get`) and serves a Zoomify pyramid described by a
`{zoom: (width, height)}` mapping. It records every request and the highest
number of requests in flight at once.
"""
import asyncio
import re

import aiohttp


TILE_RE = re.compile(r"/TileGroup(\d+)/(\d+)-(\d+)-(\d+)\.jpg$")


class FakeResponse:
    def __init__(self, status, body=b"", body_ready=None):
        self.status = status
        self._body = body
        self._body_ready = body_ready
        self.released = False

    async def read(self):
        if self._body_ready is not None:
            await self._body_ready.wait()
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.released = True


class FakeTileServer:
    """
    Args:
        grids (dict[int, tuple[int, int]]): Columns and rows per zoom level.
        group_of (callable | None): (x, y, zoom) -> the only tile group that serves
            that tile. Defaults to group 0 everywhere.
        broken (iterable): (x, y, zoom) tiles whose requests raise a connection error.
        delay (float): Seconds each request takes.
        body_ready (asyncio.Event | None): When given, reading a tile body
            waits until the event is set.
    """

    def __init__(self, grids, group_of=None, broken=(), delay=0, body_ready=None):
        self.body_ready = body_ready
        self.grids = grids
        self.group_of = group_of or (lambda x, y, zoom: 0)
        self.broken = set(broken)
        self.delay = delay
        self.requests = []
        self.in_flight = 0
        self.max_in_flight = 0

    def has_tile(self, x, y, zoom):
        if zoom not in self.grids:
            return False
        width, height = self.grids[zoom]
        return x < width and y < height

    @staticmethod
    def body(x, y, zoom):
        return f"tile {zoom}-{x}-{y}".encode()

    async def get(self, url, **kwargs):
        tile_group, zoom, x, y = map(int, TILE_RE.search(url).groups())
        self.requests.append((x, y, zoom, tile_group))

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)

            if (x, y, zoom) in self.broken:
                raise aiohttp.ClientConnectionError(f"connection reset on {zoom}-{x}-{y}")

            if self.has_tile(x, y, zoom) and self.group_of(x, y, zoom) == tile_group:
                return FakeResponse(200, self.body(x, y, zoom), self.body_ready)
            return FakeResponse(404)
        finally:
            self.in_flight -= 1

    def groups_tried(self, x, y, zoom):
        return [g for (rx, ry, rz, g) in self.requests if (rx, ry, rz) == (x, y, zoom)]


def raster_groups(grids, tiles_per_group):
    """
    Zoomify-style group numbering: tiles are counted in raster order from zoom 0
    upwards and every `tiles_per_group` of them share a group.
    """
    groups = {}
    index = 0
    for zoom in sorted(grids):
        width, height = grids[zoom]
        for y in range(height):
            for x in range(width):
                groups[(x, y, zoom)] = index // tiles_per_group
                index += 1

    return lambda x, y, zoom: groups.get((x, y, zoom), -1)


# 5 x 3 tiles at zoom 3, zooms 0-3 present.
SCENARIO_GRIDS = {
    0: (1, 1),
    1: (2, 1),
    2: (3, 2),
    3: (5, 3),
}
