"""
Exceptions raised while probing, downloading and stitching a pyramid.

`GroupExhausted` is the normal way a probe learns it walked off the edge of
the pyramid; the probing loops catch it. Everything else aborts the run.
"""


class ZoomdError(Exception):
    """Base class for all downloader errors."""


class GroupExhausted(ZoomdError):
    """
    No `TileGroupN` up to the configured maximum served tile (x, y, zoom).

    Attributes:
        x (int): Tile column.
        y (int): Tile row.
        zoom (int): Zoom level.
        last_response (TileAttempt | None): The final attempt made, or None
            if the starting hint was already past the maximum.
    """

    def __init__(self, x, y, zoom, last_response=None):
        self.x = x
        self.y = y
        self.zoom = zoom
        self.last_response = last_response
        super().__init__(f"Max tile group limit reached for {zoom}-{x}-{y} (last: {last_response})")


class TransportError(ZoomdError):
    """A request failed below HTTP (connection reset, DNS, timeout) in strict mode."""

    def __init__(self, coordinate, cause):
        self.coordinate = coordinate
        self.cause = cause
        super().__init__(f"Request for {coordinate} failed: {cause!r}")


class PyramidNotFound(ZoomdError):
    """Not even the zoom 0 tile could be fetched, so there is nothing to probe."""

    def __init__(self, url, last_response=None):
        self.url = url
        self.last_response = last_response
        super().__init__(f"No tile pyramid found at {url} (last: {last_response})")


class StitchError(ZoomdError):
    """The composer could not build the final image."""

    def __init__(self, message, returncode=None, stderr=""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)
