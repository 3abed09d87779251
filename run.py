import sys
import asyncio
from rich import print
from rich.markup import escape

from zoomd.core import PyramidConfig, download_pyramid
from zoomd.my_utils import (
    parse_args,
    timer
)

async def main(args):
    config = PyramidConfig.from_args(args)

    return await download_pyramid(config)


def cli(argv=None) -> int:
    try:
        args = parse_args(argv)

        with timer() as t:
            extents, output = asyncio.run(main(args))

        print(f"\n[grey50]{'-' * 85}[/]")
        print(f"\n[orange1]| Downloaded [green]{extents.downloaded}/{extents.tile_count}[/] tiles "
              f"([green]{extents.grid}[/] at zoom [green]{extents.max_zoom}[/]) in [green]{t.time_elapsed}[/][/]")

        if output is None:
            print(f"[orange1]| Tiles left in [green]{escape(args.dir)}[/][/]\n")
            return 0 if args.no_stitch else 1

        print(f"[orange1]| Saved at [green]{escape(output)}[/][/]\n")
        return 0
    except Exception as error:
        print(f"[red][MAIN] Error: {escape(str(error))}[/]")
    except KeyboardInterrupt:
        print("[red]Keyboard Interrupted[/]")
    return 1


if __name__ == "__main__":
    sys.exit(cli())
