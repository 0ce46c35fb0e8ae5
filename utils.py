"""
Pixel buffer and image codec requirements:

- opencv-python
- numpy
"""

import cv2
import numpy as np

# Colors are RGBA, the channel order every PixelBuffer uses.
BLACK = (0, 0, 0, 255)
WHITE = (255, 255, 255, 255)
RED = (255, 0, 0, 255)
GREEN = (0, 255, 0, 255)
YELLOW = (255, 255, 0, 255)

LOG_VERBOSE = False


def set_verbose(verbose):
	global LOG_VERBOSE
	LOG_VERBOSE = bool(verbose)


def log_info(*args):
	if LOG_VERBOSE is False:
		return
	print(*args)


class DimensionMismatch(ValueError):
	"""
	The images (or the sizes we were told to expect) do not line up. This is
	always raised before a single pixel gets compared.
	"""


class ImageSizeMismatch(DimensionMismatch):
	pass


class ExpectedSizeMismatch(DimensionMismatch):
	pass


class ImageDecodeError(ValueError):
	pass


class OutOfBoundsWrite(IndexError):
	pass


class PixelBuffer:
	"""
	An RGBA image, held as a (height, width, 4) uint8 array.

	get_pixel clamps coordinates to the image edges, so looking "past" a
	border pixel simply yields the border row or column again.
	"""

	def __init__(self, data):
		if not isinstance(data, np.ndarray) or data.dtype != np.uint8:
			raise ValueError('pixel data must be a uint8 numpy array')
		if data.ndim != 3 or data.shape[2] != 4:
			raise ValueError(f'pixel data must have shape (height, width, 4), got {data.shape}')
		self.data = data

	@classmethod
	def blank(cls, width, height):
		return cls(np.zeros((height, width, 4), dtype=np.uint8))

	@classmethod
	def from_bytes(cls, data, width, height):
		"""
		Wrap raw RGBA bytes, e.g. as produced by a decoder that already unpacked
		the pixels for us.
		"""
		if len(data) != width * height * 4:
			raise ExpectedSizeMismatch('Image data size does not match width/height.')
		pixels = np.frombuffer(data, dtype=np.uint8).reshape((height, width, 4))
		return cls(pixels.copy())

	@classmethod
	def from_array(cls, array):
		"""
		Accepts gray, RGB or RGBA arrays (RGB channel order, not OpenCV's BGR).
		16 bit data gets reduced to 8 bits per channel.
		"""
		array = np.asarray(array)
		if array.dtype == np.uint16:
			array = (array >> 8).astype(np.uint8)
		elif array.dtype != np.uint8:
			raise ValueError(f'unsupported pixel type {array.dtype}')

		if array.ndim == 3 and array.shape[2] == 1:
			array = array[:, :, 0]

		if array.ndim == 2:
			array = cv2.cvtColor(array, cv2.COLOR_GRAY2RGBA)
		elif array.ndim == 3 and array.shape[2] == 3:
			array = cv2.cvtColor(array, cv2.COLOR_RGB2RGBA)
		elif array.ndim != 3 or array.shape[2] != 4:
			raise ValueError(f'cannot build an RGBA image from shape {array.shape}')

		return cls(np.ascontiguousarray(array))

	@property
	def width(self):
		return self.data.shape[1]

	@property
	def height(self):
		return self.data.shape[0]

	@property
	def size(self):
		return (self.width, self.height)

	def get_pixel(self, x, y):
		x = min(max(x, 0), self.width - 1)
		y = min(max(y, 0), self.height - 1)
		return tuple(self.data[y, x].tolist())

	def tobytes(self):
		return self.data.tobytes()


def _from_decoded(image, source):
	if image is None:
		raise ImageDecodeError(f'{source} is not an image, or does not exist')

	if image.dtype == np.uint16:
		image = (image >> 8).astype(np.uint8)

	# OpenCV hands us BGR(A), everything else in here is RGB(A)
	if image.ndim == 3 and image.shape[2] == 3:
		image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
	elif image.ndim == 3 and image.shape[2] == 4:
		image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)

	return PixelBuffer.from_array(image)


def loadImage(path):
	"""
	Load an image, or explain why that wasn't possible
	"""
	image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
	return _from_decoded(image, path)


def decode_image(data):
	"""
	Same as loadImage, for an encoded image that is already in memory.
	"""
	if not data:
		raise ImageDecodeError('no image data to decode')
	try:
		image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
	except cv2.error as err:
		raise ImageDecodeError(f'could not decode image data: {err}') from err
	return _from_decoded(image, 'image data')


def _to_bgra(buffer):
	return cv2.cvtColor(buffer.data, cv2.COLOR_RGBA2BGRA)


def encode_png(buffer):
	ok, encoded = cv2.imencode('.png', _to_bgra(buffer))
	if not ok:
		raise RuntimeError('OpenCV failed to encode the image as PNG')
	return encoded.tobytes()


def write_image(path, buffer):
	try:
		written = cv2.imwrite(str(path), _to_bgra(buffer))
	except cv2.error as err:
		# e.g. no encoder for the file extension
		raise OSError(f'could not write image to {path}: {err}') from err
	if not written:
		raise OSError(f'could not write image to {path}')
