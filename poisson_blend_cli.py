#!/usr/bin/env python3
# Command line front end: blends a masked source image into a target image and writes the result.
#
# Example:
#   poisson-blend -target bg.png -source fg.png -mask mask.png -output out.png -mx 120 -my 80

import argparse
import sys
import time
from typing import List, Optional

from image_io import load_image, save_image
from poisson_blend import DEFAULT_GAMMA, poisson_blend

USAGE_NOTE = (
    "NOTE: it is not allowed to blend an image to the exact borders of the image.\n"
    "      i.e., you can't set something like mx=0, my=0"
)


# Prints the usage text and exits with status 1 on any missing or invalid flag.
class BlendArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        print("Invalid command line arguments specified!\n")
        print(f"{self.prog}: {message}\n")
        self.print_help()
        self.exit(1)


def unsigned_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {text!r}")
    if value < 0:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {text!r}")
    return value


def positive_float(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}")
    if not value > 0:
        raise argparse.ArgumentTypeError(f"gamma must be positive: {text!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = BlendArgumentParser(
        prog="poisson_blend",
        description="Poisson (gradient domain) blending of a masked source image into a target image.",
        epilog=USAGE_NOTE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False
    )
    parser.add_argument('-target', required=True, help='target image')
    parser.add_argument('-source', required=True, help='source image')
    parser.add_argument('-output', required=True, help='output image')
    parser.add_argument('-mask', required=True, help='mask image')
    parser.add_argument('-mx', type=unsigned_int, required=True, help='blending target x-position')
    parser.add_argument('-my', type=unsigned_int, required=True, help='blending target y-position')
    parser.add_argument('-gamma', type=positive_float, default=DEFAULT_GAMMA,
                        help=f'gamma used to decode and encode the images (default: {DEFAULT_GAMMA})')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Loads all three images
    images = {}
    for name in ('target', 'mask', 'source'):
        path = getattr(args, name)
        try:
            images[name] = load_image(path, args.gamma)
        except FileNotFoundError as e:
            print(f"could not open input image {path}: {e}")
            return 1

    target = images['target']
    print(f"Target: {target.shape[1]} × {target.shape[0]}, mask: {images['mask'].shape[1]} × {images['mask'].shape[0]}")
    print(f"Blending at (mx, my) = ({args.mx}, {args.my}) ...")

    start = time.time()
    try:
        ok, rgba = poisson_blend(images['mask'], images['source'], target, args.mx, args.my, gamma=args.gamma)
    except ValueError as e:
        print(f"Invalid input images: {e}")
        return 1
    elapsed = time.time() - start

    # Failure reason was already printed by poisson_blend
    if not ok:
        return 1

    try:
        save_image(args.output, target.shape[1], target.shape[0], rgba)
    except OSError as e:
        print(e)
        return 1

    print(f"Time: {elapsed:.2f} seconds")
    print(f"Saved: {args.output}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
