"""
In order to get meaningful diffs, do not feed this JPEG images. The block compression is going
to flag about a million differences that aren't actually there. Use a bitmap format like PNG.

Exit codes: 0 when the images match, 65 when their dimensions differ, 66 when
differing pixels were found.
"""

import sys
import time
import argparse

from pydantic import ValidationError

import utils
from pixeldiff import Options, pixelmatch

EXIT_DIMENSION_MISMATCH = 65
EXIT_DIFFERENT = 66


def parse_color(value):
	"""
	Turn "R,G,B" or "R,G,B,A" into an RGBA tuple.
	"""
	parts = value.split(',')
	if len(parts) not in (3, 4):
		raise argparse.ArgumentTypeError(f'{value} is not an R,G,B[,A] color')
	try:
		channels = [int(p) for p in parts]
	except ValueError:
		raise argparse.ArgumentTypeError(f'{value} is not an R,G,B[,A] color')
	if any(c < 0 or c > 255 for c in channels):
		raise argparse.ArgumentTypeError(f'{value}: color channels must be between 0 and 255')
	if len(channels) == 3:
		channels.append(255)
	return tuple(channels)


def build_parser():
	parser = argparse.ArgumentParser(description='Perceptually diff two (bitmap) images.')
	parser.add_argument('img1', help='The path for the first image.')
	parser.add_argument('img2', help='The path for the second image.')
	parser.add_argument('diff', nargs='?', help='Write the diff image (PNG) to this path.')
	parser.add_argument('-t', '--threshold', type=float, help='Matching threshold, 0 to 1. Smaller is more sensitive. Defaults to 0.1.')
	parser.add_argument('-i', '--include-aa', action='store_true', help='Count anti-aliased pixels as differences.')
	parser.add_argument('-a', '--alpha', type=float, help='Opacity of the original image in the diff output. Defaults to 0.1.')
	parser.add_argument('--aa-color', type=parse_color, help='Color of anti-aliased pixels, as R,G,B[,A]. Defaults to yellow.')
	parser.add_argument('--diff-color', type=parse_color, help='Color of differing pixels, as R,G,B[,A]. Defaults to red.')
	parser.add_argument('--diff-color-alt', type=parse_color, help='Color of differing pixels where the first image is brighter.')
	parser.add_argument('-m', '--diff-mask', action='store_true', help='Draw the diff over a transparent background.')
	parser.add_argument('-v', '--verbose', action='store_true', help='Log progress to stdout.')
	return parser


def main(argv=None):
	parser = build_parser()
	args = parser.parse_args(argv)
	utils.set_verbose(args.verbose)

	# only pass along what was actually set, Options knows its own defaults
	settings = {
		name: getattr(args, name)
		for name in ('threshold', 'alpha', 'aa_color', 'diff_color', 'diff_color_alt')
		if getattr(args, name) is not None
	}
	try:
		options = Options(include_aa=args.include_aa, diff_mask=args.diff_mask, **settings)
	except ValidationError as err:
		parser.error(str(err))

	img1 = utils.loadImage(args.img1)
	img2 = utils.loadImage(args.img2)

	if img1.size != img2.size:
		print(f'Image dimensions do not match: {img1.width}x{img1.height} vs {img2.width}x{img2.height}')
		return EXIT_DIMENSION_MISMATCH

	output = utils.PixelBuffer.blank(img1.width, img1.height) if args.diff else None

	start = time.perf_counter()
	diffs = pixelmatch(img1, img2, output, options=options)
	elapsed = (time.perf_counter() - start) * 1000

	total = img1.width * img1.height
	error = round(100 * 100 * diffs / total) / 100 if total else 0.0

	print(f'matched in {elapsed:.3f}ms')
	print(f'different pixels: {diffs}')
	print(f'error: {error}%')

	if args.diff:
		utils.log_info(f'writing diff image to {args.diff}')
		utils.write_image(args.diff, output)

	if diffs > 0:
		return EXIT_DIFFERENT
	return 0


if __name__ == '__main__':
	sys.exit(main())
