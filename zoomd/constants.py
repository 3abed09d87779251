# Highest `TileGroupN` folder we are willing to try before giving up on a tile.
MAX_TILE_GROUP = 32

# Requests allowed in flight at the same time.
CONCURRENT_REQUESTS = 64

# Zoomify tiles are square; edge tiles may be narrower.
TILE_SIZE = 256

# Print a progress line every N downloaded tiles.
PROGRESS_EVERY = 10

TILE_URL = "{base_url}/TileGroup{tile_group}/{zoom}-{x}-{y}.jpg"
TILE_FILENAME = "{zoom}-{x}-{y}.jpg"

DEFAULT_OUTPUT = "out.png"

MONTAGE_COMMAND = ("magick", "montage")

COMPOSERS = ("montage", "pillow")
