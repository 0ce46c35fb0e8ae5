"""
Perceptual pixel diffing, for checking rendered screenshots against a reference.

The color metric follows "Measuring perceived color difference using YIQ NTSC
transmission color space in mobile applications" by Y. Kotsarenko and F. Ramos,
and the anti-aliasing check follows "Anti-aliased Pixel and Intensity Slope
Detector" by V. Vysniauskas (2009).

Requirements:

- opencv-python (via utils)
- numpy
- pydantic
"""

from typing import Annotated, NamedTuple, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from utils import (
	RED,
	YELLOW,
	ExpectedSizeMismatch,
	ImageSizeMismatch,
	OutOfBoundsWrite,
	PixelBuffer,
	decode_image,
	encode_png,
	log_info,
)

# maximum possible value of the YIQ difference metric
MAX_YIQ_DELTA = 35215

Channel = Annotated[int, Field(ge=0, le=255)]
Color = Tuple[Channel, Channel, Channel, Channel]


class Options(BaseModel):
	model_config = ConfigDict(frozen=True)

	# matching threshold (0 to 1); smaller is more sensitive
	threshold: float = Field(default=0.1, ge=0.0, le=1.0)
	# count anti-aliased pixels as differences, rather than filtering them out
	include_aa: bool = False
	# opacity of the (grayscale) original image in the diff output
	alpha: float = Field(default=0.1, ge=0.0, le=1.0)
	aa_color: Color = YELLOW
	diff_color: Color = RED
	# used instead of diff_color wherever img1 is the brighter of the two
	diff_color_alt: Optional[Color] = None
	# only draw the differences, over a transparent background
	diff_mask: bool = False


def blend(c, a):
	# blend a semi-transparent color with white
	return 255 + (c - 255) * a


def rgb2y(r, g, b):
	return r * 0.29889531 + g * 0.58662247 + b * 0.11448223


def rgb2i(r, g, b):
	return r * 0.59597799 - g * 0.27417610 - b * 0.32180189


def rgb2q(r, g, b):
	return r * 0.21147017 - g * 0.52261711 + b * 0.31114694


def color_delta(rgba1, rgba2, y_only=False):
	"""
	Signed perceptual distance between two RGBA colors.

	With y_only, this is just the brightness difference. Otherwise it is the
	weighted squared YIQ distance, negated when the first color is the brighter
	one. Identical colors always give exactly 0.
	"""
	if tuple(rgba1) == tuple(rgba2):
		return 0.0

	r1, g1, b1, a1 = (float(c) for c in rgba1)
	r2, g2, b2, a2 = (float(c) for c in rgba2)

	if a1 < 255:
		a1 /= 255
		r1, g1, b1 = blend(r1, a1), blend(g1, a1), blend(b1, a1)

	if a2 < 255:
		a2 /= 255
		r2, g2, b2 = blend(r2, a2), blend(g2, a2), blend(b2, a2)

	y1 = rgb2y(r1, g1, b1)
	y2 = rgb2y(r2, g2, b2)
	y = y1 - y2

	if y_only:
		return y

	i = rgb2i(r1, g1, b1) - rgb2i(r2, g2, b2)
	q = rgb2q(r1, g1, b1) - rgb2q(r2, g2, b2)

	delta = 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q
	return -delta if y1 > y2 else delta


def _blended_rgb(pixels):
	rgba = pixels.astype(np.float64)
	rgb = rgba[..., :3]
	alpha = rgba[..., 3:4]
	return np.where(alpha < 255, blend(rgb, alpha / 255), rgb)


def color_delta_array(pixels1, pixels2):
	"""
	color_delta for every pixel of two equally shaped (..., 4) uint8 arrays.
	"""
	rgb1 = _blended_rgb(pixels1)
	rgb2 = _blended_rgb(pixels2)
	r1, g1, b1 = rgb1[..., 0], rgb1[..., 1], rgb1[..., 2]
	r2, g2, b2 = rgb2[..., 0], rgb2[..., 1], rgb2[..., 2]

	y1 = rgb2y(r1, g1, b1)
	y2 = rgb2y(r2, g2, b2)
	y = y1 - y2
	i = rgb2i(r1, g1, b1) - rgb2i(r2, g2, b2)
	q = rgb2q(r1, g1, b1) - rgb2q(r2, g2, b2)

	delta = 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q
	delta = np.where(y1 > y2, -delta, delta)
	delta[np.all(pixels1 == pixels2, axis=-1)] = 0.0
	return delta


def _neighbours(x, y, width, height):
	for dx in (-1, 0, 1):
		for dy in (-1, 0, 1):
			if dx == 0 and dy == 0:
				continue
			yield (
				min(max(x + dx, 0), width - 1),
				min(max(y + dy, 0), height - 1),
			)


class BrightnessScan(NamedTuple):
	# more than 2 neighbours are as bright as the centre pixel
	flat: bool
	darkest: float = 0.0
	darkest_at: Tuple[int, int] = (0, 0)
	brightest: float = 0.0
	brightest_at: Tuple[int, int] = (0, 0)


def scan_brightness(img, x, y, width, height):
	"""
	Compare the brightness of (x, y) against its 8 neighbours, remembering
	where the darkest and the brightest of them are.
	"""
	zeroes = 0
	darkest = brightest = 0.0
	darkest_at = brightest_at = (0, 0)

	center = img.get_pixel(x, y)
	for nx, ny in _neighbours(x, y, width, height):
		delta = color_delta(center, img.get_pixel(nx, ny), y_only=True)

		if delta == 0:
			zeroes += 1
			if zeroes > 2:
				return BrightnessScan(flat=True)
			continue

		if delta < darkest:
			darkest = delta
			darkest_at = (nx, ny)
			continue

		if delta > brightest:
			brightest = delta
			brightest_at = (nx, ny)

	return BrightnessScan(False, darkest, darkest_at, brightest, brightest_at)


def has_many_siblings(img, x, y, width, height):
	"""
	Does (x, y) have 3 or more neighbours of exactly the same color?
	"""
	zeroes = 0
	center = img.get_pixel(x, y)
	for nx, ny in _neighbours(x, y, width, height):
		if img.get_pixel(nx, ny) == center:
			zeroes += 1
			if zeroes > 2:
				return True
	return False


def antialiased(img1, x, y, width, height, img2):
	"""
	Is the pixel at (x, y) in img1 likely to be part of an anti-aliased edge?
	img2 is only used to confirm that the edge exists in both images.
	"""
	scan = scan_brightness(img1, x, y, width, height)

	# a flat area, or no contrast on one side: not an edge
	if scan.flat or scan.darkest == 0 or scan.brightest == 0:
		return False

	# if either the darkest or the brightest neighbour is part of a solid
	# area in both images, this pixel sits on the transition between them
	for nx, ny in (scan.darkest_at, scan.brightest_at):
		if has_many_siblings(img1, nx, ny, width, height) and has_many_siblings(img2, nx, ny, width, height):
			return True
	return False


class DiffRenderer:
	"""
	Draws the diff visualization into a fresh, fully transparent image. Every
	draw call takes a (height, width) boolean mask of the pixels to paint.
	"""

	def __init__(self, width, height):
		self.image = PixelBuffer.blank(width, height)

	def _check_bounds(self, where):
		if where.shape != self.image.data.shape[:2]:
			raise OutOfBoundsWrite('Pixel is not in bounds of output.')

	def draw_background(self, source, alpha, where):
		"""
		Paint the source pixels as their brightness blended with white, at
		alpha * A / 255 opacity, into all four channels.
		"""
		self._check_bounds(where)
		if source.data.shape != self.image.data.shape:
			raise OutOfBoundsWrite('Source image is not the size of the output.')

		pixels = source.data[where].astype(np.float64)
		luma = rgb2y(pixels[:, 0], pixels[:, 1], pixels[:, 2])
		gray = blend(luma, alpha * pixels[:, 3] / 255)
		self.image.data[where] = np.clip(gray, 0, 255).astype(np.uint8)[:, np.newaxis]

	def draw_color(self, where, color):
		self._check_bounds(where)
		self.image.data[where] = color


def _check_sizes(img1, img2, output, width, height):
	if img1.size != img2.size:
		raise ImageSizeMismatch('Image sizes do not match.')

	if (width is not None and width != img1.width) or (height is not None and height != img1.height):
		raise ExpectedSizeMismatch('Image data size does not match width/height.')

	if output is not None and output.size != img1.size:
		raise ImageSizeMismatch('Output image size does not match input images.')


def pixelmatch(img1, img2, output=None, width=None, height=None, options=None):
	"""
	Count the pixels that differ perceptually between img1 and img2.

	If an output PixelBuffer is given, it gets overwritten with a diff image:
	matching pixels as a faded grayscale copy of img1, anti-aliasing in
	aa_color and real differences in diff_color (or diff_color_alt). The
	output is only touched once the comparison has succeeded.

	width and height, when given, must match the images' actual size.
	"""
	_check_sizes(img1, img2, output, width, height)

	if options is None:
		options = Options()

	width, height = img1.size
	renderer = DiffRenderer(width, height) if output is not None else None

	# fast path if identical
	if np.array_equal(img1.data, img2.data):
		log_info('images are identical, skipping the pixel comparison')
		if renderer is not None:
			if not options.diff_mask:
				renderer.draw_background(img1, options.alpha, np.ones((height, width), dtype=bool))
			output.data[...] = renderer.image.data
		return 0

	# maximum acceptable square distance between two colors
	max_delta = MAX_YIQ_DELTA * options.threshold * options.threshold
	log_info(f'comparing {width}x{height} pixels, max delta {max_delta:.2f}')

	delta = color_delta_array(img1.data, img2.data)
	over = np.abs(delta) > max_delta

	aa = np.zeros_like(over)
	if not options.include_aa:
		ys, xs = np.nonzero(over)
		log_info(f'checking {len(xs)} pixels for anti-aliasing')
		for x, y in zip(xs.tolist(), ys.tolist()):
			if antialiased(img1, x, y, width, height, img2) or antialiased(img2, x, y, width, height, img1):
				aa[y, x] = True

	diff = over & ~aa
	diff_count = int(np.count_nonzero(diff))
	log_info(f'{diff_count} different pixels, {int(np.count_nonzero(aa))} anti-aliased')

	if renderer is not None:
		if not options.diff_mask:
			renderer.draw_background(img1, options.alpha, ~over)
			# anti-aliased pixels are not differences, so they stay out of masks
			renderer.draw_color(aa, options.aa_color)

		if options.diff_color_alt is not None:
			# a negative delta means img1 is the brighter image at that pixel
			brighter = delta < 0
			renderer.draw_color(diff & ~brighter, options.diff_color)
			renderer.draw_color(diff & brighter, options.diff_color_alt)
		else:
			renderer.draw_color(diff, options.diff_color)

		output.data[...] = renderer.image.data

	return diff_count


def pixelmatch_png(png1, png2, write_output=False, width=None, height=None, options=None):
	"""
	pixelmatch for encoded images. Returns the diff count and, when
	write_output is set, the diff image as PNG bytes.
	"""
	img1 = decode_image(png1)
	img2 = decode_image(png2)

	output = None
	if write_output:
		output = PixelBuffer.blank(img1.width, img1.height)

	diff_count = pixelmatch(img1, img2, output, width, height, options)
	return diff_count, (encode_png(output) if output is not None else None)
