#!/usr/bin/env python3
"""
QR Page Tagger - Stamp every PDF page with a QR code and recover page order from scans

This tool embeds a QR code carrying the page index into the bottom-right corner
of every page of a PDF document, and can later read those codes back from a
scanned or re-rendered copy of the document, splitting it into one PDF per page
keyed by the recovered index.

REQUIREMENTS:
  Python 3.9+

  Install Python dependencies with:
    pip install -e .

  System dependencies:
    - zbar (for pyzbar)
        Linux: sudo apt-get install libzbar0
        macOS: brew install zbar
    - poppler (for pdf2image)
        Linux: sudo apt-get install poppler-utils
        macOS: brew install poppler

USAGE:
  Tag every page of a document:
    python qr_page_tagger.py embed document.pdf -o tagged.pdf

  Split a scanned document into pages keyed by their QR index:
    python qr_page_tagger.py recover scanned.pdf -d pages/

  Only report the recovered indices:
    python qr_page_tagger.py scan scanned.pdf

  Show page sizes and barcode placement:
    python qr_page_tagger.py info tagged.pdf
"""

import sys
import os
import io
import json
import logging
import math
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

import click
import cv2
import numpy as np
import qrcode
from qrcode.constants import ERROR_CORRECT_H
from qrcode.exceptions import DataOverflowError
from PIL import Image
from pyzbar import pyzbar
from pyzbar.pyzbar import ZBarSymbol
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Physical placement contract. Every value below is part of the document
# format: changing any of them makes previously tagged documents unreadable.
PLACEMENT_FORMAT_VERSION = "1"
POINTS_PER_INCH = 72
BARCODE_EDGE_PT = 200       # QR edge length on the page, in points
PLACEMENT_MARGIN_PT = 40    # distance from the bottom and right page edges
QR_EDGE_PX = 200            # raster edge of the symbol before the border
QR_BORDER_PX = 20           # white border added around the symbol raster
QR_QUIET_ZONE = 4           # quiet zone in modules
SCAN_DPI = 600

PAYLOAD_FIELD = "pageIndex"

# Decode pipeline parameters
CONTRAST_GAIN = 2
SCALE_FACTORS = (1.5, 2.0, 0.75, 0.5)
ROTATION_ANGLES = (90, 180, 270)
ADAPTIVE_OFFSET = 10
MIN_LOCAL_RANGE = 64       # flatter neighbourhoods binarize to background


# ============================================================================
# ERRORS
# ============================================================================

class QRPageError(Exception):
    """Base class for all errors raised by this tool."""


class EncodingError(QRPageError):
    """Payload cannot be rendered as a QR code."""


class CodecError(QRPageError, ValueError):
    """QR code text is not a valid page payload."""


class MalformedPayloadError(CodecError):
    pass


class MissingFieldError(CodecError):
    pass


class DecodeError(QRPageError):
    """No usable QR code could be read from a region.

    Attributes:
        outcome: The DecodeOutcome describing the failed pipeline run
    """

    def __init__(self, message: str, outcome: 'DecodeOutcome'):
        super().__init__(message)
        self.outcome = outcome


class DocumentError(QRPageError):
    """The source document cannot be loaded, rendered or split."""


# ============================================================================
# PAYLOAD CODEC
# ============================================================================

def serialize_payload(page_index: int) -> str:
    """Serialize a page index into the QR payload text.

    Args:
        page_index: Non-negative page identifier

    Returns:
        JSON object text, e.g. '{"pageIndex": 3}'
    """
    if isinstance(page_index, bool) or not isinstance(page_index, int) or page_index < 0:
        raise ValueError(f"Page index must be a non-negative integer, got {page_index!r}")
    return json.dumps({PAYLOAD_FIELD: page_index})


def deserialize_payload(text: str) -> int:
    """Parse QR payload text back into a page index.

    Args:
        text: Text read from a QR code

    Returns:
        The page index

    Raises:
        MalformedPayloadError: Text is not a JSON object, or the index is not
            a non-negative integer
        MissingFieldError: The object has no page index field
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedPayloadError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPayloadError(f"Payload must be a JSON object, got {type(data).__name__}")

    if PAYLOAD_FIELD not in data:
        raise MissingFieldError(f"Payload has no '{PAYLOAD_FIELD}' field")

    value = data[PAYLOAD_FIELD]
    # bool is an int subclass, reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedPayloadError(
            f"'{PAYLOAD_FIELD}' must be a non-negative integer, got {value!r}")

    return value


# ============================================================================
# ENCODER
# ============================================================================

def encode_qr(payload: str, edge_length: int = QR_EDGE_PX,
              border_px: int = QR_BORDER_PX) -> Image.Image:
    """Render payload text as a bordered QR code image.

    The symbol uses error correction level H and a quiet zone of
    QR_QUIET_ZONE modules. It is scaled by the largest whole number of pixels
    per module that fits in edge_length, centred on a white square of that
    size, then padded with an extra white border of border_px pixels.

    Args:
        payload: Text to encode
        edge_length: Edge of the symbol raster in pixels (quiet zone included)
        border_px: Extra white border added on every side

    Returns:
        RGB PIL Image of size (edge_length + 2*border_px) squared

    Raises:
        EncodingError: If the payload does not fit in a QR code at level H,
            or edge_length is too small for the symbol
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_H,
        box_size=1,
        border=QR_QUIET_ZONE,
    )
    qr.add_data(payload)
    try:
        qr.make(fit=True)
    except DataOverflowError as e:
        raise EncodingError(
            f"Payload of {len(payload)} characters exceeds QR capacity at error correction H") from e

    # get_matrix() includes the quiet zone
    matrix = np.array(qr.get_matrix(), dtype=bool)
    total_modules = matrix.shape[0]
    box_size = edge_length // total_modules
    if box_size < 1:
        raise EncodingError(
            f"Edge length {edge_length}px is too small for a {total_modules}-module symbol")

    pixels = np.where(matrix, 0, 255).astype(np.uint8)
    pixels = np.kron(pixels, np.ones((box_size, box_size), dtype=np.uint8))
    symbol = Image.fromarray(pixels).convert('RGB')

    canvas = Image.new('RGB', (edge_length, edge_length), 'white')
    offset = (edge_length - symbol.width) // 2
    canvas.paste(symbol, (offset, offset))

    bordered = Image.new('RGB', (edge_length + 2 * border_px, edge_length + 2 * border_px), 'white')
    bordered.paste(canvas, (border_px, border_px))

    return bordered


# ============================================================================
# PLACEMENT GEOMETRY
# ============================================================================

class PlacementRect(NamedTuple):
    """Barcode rectangle in PDF page space (points, origin at bottom-left)."""
    x: float
    y: float
    width: float
    height: float


class PixelRect(NamedTuple):
    """Barcode rectangle in image space (pixels, origin at top-left)."""
    x: int
    y: int
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


def placement_rect(page_width: float, page_height: float,
                   barcode_edge: float = BARCODE_EDGE_PT,
                   margin: float = PLACEMENT_MARGIN_PT) -> PlacementRect:
    """Calculate where the QR code sits on a page.

    The code is anchored to the bottom-right corner, margin points away from
    both edges. Embedding and extraction both use this function, so the two
    agree on the location without exchanging coordinates.

    Args:
        page_width: Page width in points
        page_height: Page height in points (unused by the bottom anchor)
        barcode_edge: QR edge length in points
        margin: Distance from the bottom and right edges in points

    Returns:
        PlacementRect in page space
    """
    x = page_width - barcode_edge - margin
    y = margin
    return PlacementRect(x, y, barcode_edge, barcode_edge)


def to_pixels(value: float, dpi: float) -> int:
    """Convert a length in points to whole pixels at dpi."""
    return int(value * dpi / POINTS_PER_INCH)


# ============================================================================
# REGION LOCATOR
# ============================================================================

def locate_region(image: np.ndarray, page_width_pts: float, page_height_pts: float,
                  dpi: float = SCAN_DPI) -> PixelRect:
    """Find the pixel rectangle expected to hold the QR code.

    Applies placement_rect() in reverse: the page-space rectangle is scaled
    by dpi / 72, flipped from bottom-up to top-down y, and clamped to the
    image bounds. A rectangle shrunk by clamping is still returned.

    Args:
        image: Rendered page (only its shape is used)
        page_width_pts: Page width in points
        page_height_pts: Page height in points
        dpi: Resolution the page was rendered at

    Returns:
        PixelRect, possibly empty
    """
    image_height, image_width = image.shape[:2]
    rect = placement_rect(page_width_pts, page_height_pts)

    pixel_x = to_pixels(rect.x, dpi)
    pixel_y = to_pixels(rect.y, dpi)
    pixel_edge = to_pixels(rect.width, dpi)

    # Page y is measured from the bottom, image y from the top
    image_y = image_height - pixel_y - pixel_edge

    x0 = min(max(pixel_x, 0), image_width)
    y0 = min(max(image_y, 0), image_height)
    x1 = min(max(pixel_x + pixel_edge, 0), image_width)
    y1 = min(max(image_y + pixel_edge, 0), image_height)

    return PixelRect(x0, y0, x1 - x0, y1 - y0)


def crop_region(image: np.ndarray, rect: PixelRect) -> np.ndarray:
    """Copy the sub-image covered by rect (empty array for an empty rect)."""
    if rect.is_empty:
        return image[0:0, 0:0].copy()
    return image[rect.y:rect.y + rect.height, rect.x:rect.x + rect.width].copy()


def extract_region(image: np.ndarray, page_width_pts: float, page_height_pts: float,
                   dpi: float = SCAN_DPI) -> np.ndarray:
    rect = locate_region(image, page_width_pts, page_height_pts, dpi)
    if rect.is_empty:
        logger.debug("QR region clamps to nothing on a %dx%d image",
                     image.shape[1], image.shape[0])
    return crop_region(image, rect)


# ============================================================================
# IMAGE TRANSFORMS
# ============================================================================

def identity(image: np.ndarray) -> np.ndarray:
    return image


def stretch_contrast(image: np.ndarray, gain: int = CONTRAST_GAIN) -> np.ndarray:
    """Linear contrast stretch around mid-grey: clamp((v - 128) * gain + 128)."""
    stretched = (image.astype(np.int16) - 128) * gain + 128
    return np.clip(stretched, 0, 255).astype(np.uint8)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Convert a BGR or BGRA image to single-channel grayscale."""
    if image.ndim == 2:
        return image.copy()
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def invert_colors(image: np.ndarray) -> np.ndarray:
    return cv2.bitwise_not(image)


def scale_image(image: np.ndarray, factor: float) -> np.ndarray:
    """Resize by factor; output dimensions are truncated to whole pixels.

    Raises:
        ValueError: If the scaled image would have no pixels
    """
    height, width = image.shape[:2]
    new_width = int(width * factor)
    new_height = int(height * factor)
    if new_width < 1 or new_height < 1:
        raise ValueError(f"Scaling {width}x{height} by {factor} leaves an empty image")

    interpolation = cv2.INTER_AREA if factor < 1 else cv2.INTER_LINEAR
    return cv2.resize(image, (new_width, new_height), interpolation=interpolation)


def rotate_image(image: np.ndarray, degrees: float) -> np.ndarray:
    """Rotate clockwise by degrees, expanding the canvas to the rotated bounds.

    Quarter turns are exact. Other angles leave the uncovered corners at the
    zero background value.
    """
    quarter_turns = {
        90: cv2.ROTATE_90_CLOCKWISE,
        180: cv2.ROTATE_180,
        270: cv2.ROTATE_90_COUNTERCLOCKWISE,
    }
    angle = degrees % 360
    if angle == 0:
        return image.copy()
    if angle in quarter_turns:
        return cv2.rotate(image, quarter_turns[angle])

    height, width = image.shape[:2]
    radians = math.radians(angle)
    sin = abs(math.sin(radians))
    cos = abs(math.cos(radians))
    new_width = int(math.floor(width * cos + height * sin))
    new_height = int(math.floor(height * cos + width * sin))

    # OpenCV angles are counter-clockwise
    matrix = cv2.getRotationMatrix2D((width / 2, height / 2), -angle, 1.0)
    matrix[0, 2] += (new_width - width) / 2
    matrix[1, 2] += (new_height - height) / 2
    return cv2.warpAffine(image, matrix, (new_width, new_height))


# ============================================================================
# BINARIZERS
# ============================================================================

def adaptive_binarize(image: np.ndarray) -> np.ndarray:
    """Local adaptive threshold, tolerant of uneven illumination.

    The neighbourhood is a quarter of the shorter image side, so it always
    spans several QR modules and solid finder-pattern centres stay black.
    Neighbourhoods whose max - min spread is below MIN_LOCAL_RANGE carry no
    usable edge and come out white; a uniformly washed-out scan is left to
    the global histogram binarizer or a contrast stretch.
    """
    gray = to_grayscale(image)
    block_size = max(3, (min(gray.shape[:2]) // 4) | 1)
    binary = cv2.adaptiveThreshold(gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                                   cv2.THRESH_BINARY, block_size, ADAPTIVE_OFFSET)

    kernel = np.ones((block_size, block_size), np.uint8)
    local_range = cv2.subtract(cv2.dilate(gray, kernel), cv2.erode(gray, kernel))
    binary[local_range < MIN_LOCAL_RANGE] = 255
    return binary


def histogram_binarize(image: np.ndarray) -> np.ndarray:
    """Global Otsu threshold, tolerant of uniformly low contrast."""
    gray = to_grayscale(image)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return binary


# ============================================================================
# DECODE PIPELINE
# ============================================================================

class DecodeStatus(str, Enum):
    FOUND = 'found'
    NOT_FOUND = 'not_found'
    AMBIGUOUS = 'ambiguous'
    CORRUPT = 'corrupt'


@dataclass(frozen=True)
class DecodeStrategy:
    """One decode attempt: a transform followed by a binarizer."""
    name: str
    transform: Callable[[np.ndarray], np.ndarray]
    binarizer: Callable[[np.ndarray], np.ndarray]


@dataclass(frozen=True)
class DecodeOutcome:
    """Result of running the decode pipeline over one region."""
    status: DecodeStatus
    text: Optional[str] = None
    strategy: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is DecodeStatus.FOUND


BINARIZERS = (
    ('adaptive', adaptive_binarize),
    ('histogram', histogram_binarize),
)


def build_decode_plan() -> Tuple[DecodeStrategy, ...]:
    """Build the ordered list of decode strategies.

    Every transform is tried with the adaptive binarizer first, then the
    histogram one. Rotations of the untouched region come last. The first
    strategy to produce a payload wins, so this order is also the tie-break.

    Returns:
        Tuple of DecodeStrategy in priority order
    """
    transforms: List[Tuple[str, Callable[[np.ndarray], np.ndarray]]] = [
        ('identity', identity),
        ('contrast', stretch_contrast),
        ('grayscale', to_grayscale),
        ('invert', invert_colors),
    ]
    for factor in SCALE_FACTORS:
        transforms.append((f'scale-{factor}', partial(scale_image, factor=factor)))
    for angle in ROTATION_ANGLES:
        transforms.append((f'rotate-{angle}', partial(rotate_image, degrees=angle)))

    return tuple(
        DecodeStrategy(f'{transform_name}/{binarizer_name}', transform, binarizer)
        for transform_name, transform in transforms
        for binarizer_name, binarizer in BINARIZERS
    )


DECODE_PLAN = build_decode_plan()


def read_qr_text(binary: np.ndarray) -> Tuple[DecodeStatus, Optional[str], Optional[str]]:
    """Run the QR reader over one binarized image.

    Args:
        binary: Single-channel 8-bit image

    Returns:
        Tuple of (status, text, error message)
    """
    symbols = pyzbar.decode(binary, symbols=[ZBarSymbol.QRCODE])
    if not symbols:
        return DecodeStatus.NOT_FOUND, None, "no QR code found"

    texts = []
    for symbol in symbols:
        try:
            text = symbol.data.decode('utf-8')
        except UnicodeDecodeError as e:
            return DecodeStatus.CORRUPT, None, f"QR data is not UTF-8: {e}"
        if text not in texts:
            texts.append(text)

    if len(texts) > 1:
        return DecodeStatus.AMBIGUOUS, None, f"{len(texts)} different QR codes found"

    return DecodeStatus.FOUND, texts[0], None


def decode_region(image: Optional[np.ndarray],
                  plan: Sequence[DecodeStrategy] = DECODE_PLAN) -> DecodeOutcome:
    """Read the QR payload from a region, trying every strategy in order.

    A failing attempt, including one that raises, never ends the run: its
    error is kept and the next strategy is tried. Only exhaustion of the plan
    yields a failed outcome.

    Args:
        image: Region image (BGR or grayscale uint8 array)
        plan: Ordered strategies (default: DECODE_PLAN)

    Returns:
        DecodeOutcome. On exhaustion the status is NOT_FOUND, unless some
        attempt located a symbol, in which case it is the last such attempt's
        status (AMBIGUOUS or CORRUPT).
    """
    if image is None or image.size == 0:
        return DecodeOutcome(DecodeStatus.NOT_FOUND, last_error="region is empty")

    failure = DecodeStatus.NOT_FOUND
    last_error = None
    attempts = 0

    for strategy in plan:
        attempts += 1
        try:
            binary = strategy.binarizer(strategy.transform(image))
            status, text, error = read_qr_text(binary)
        except Exception as e:
            status, text, error = DecodeStatus.NOT_FOUND, None, f"{type(e).__name__}: {e}"

        if status is DecodeStatus.FOUND:
            logger.debug("QR decoded with %s after %d attempts", strategy.name, attempts)
            return DecodeOutcome(status, text=text, strategy=strategy.name, attempts=attempts)

        if status is not DecodeStatus.NOT_FOUND:
            failure = status
        last_error = f"{strategy.name}: {error}"
        logger.debug("Attempt %s failed (%s)", strategy.name, error)

    return DecodeOutcome(failure, attempts=attempts, last_error=last_error)


def decode_page_index(region: np.ndarray) -> int:
    """Decode a region straight to its page index.

    Raises:
        DecodeError: If no QR code could be read
        CodecError: If the QR code text is not a page payload
    """
    outcome = decode_region(region)
    if not outcome.found:
        raise DecodeError(
            f"Failed to read QR code after {outcome.attempts} attempts. "
            f"Last error: {outcome.last_error}", outcome)
    return deserialize_payload(outcome.text)


# ============================================================================
# STORAGE
# ============================================================================

def validate_pdf_path(path: Union[str, Path]) -> Path:
    """Check a source path is a PDF without parent-directory segments.

    Raises:
        DocumentError: If the path is rejected
    """
    path = Path(path)
    if '..' in path.parts:
        raise DocumentError(f"Filename contains invalid path sequence {path}")
    if path.suffix.lower() != '.pdf':
        raise DocumentError("Only PDF files are supported")
    return path


def create_session_directory(root: Union[str, Path]) -> Path:
    """Create a fresh uniquely named directory under root."""
    session_dir = Path(root) / str(uuid.uuid4())
    try:
        session_dir.mkdir(parents=True)
    except OSError as e:
        raise DocumentError(f"Could not create session directory under {root}: {e}") from e
    return session_dir


def save_page(page_bytes: bytes, directory: Union[str, Path], page_index: int) -> Path:
    """Write a single page PDF as <directory>/page_<page_index>.pdf."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    file_path = directory / f"page_{page_index}.pdf"
    file_path.write_bytes(page_bytes)
    return file_path


def delete_file(path: Union[str, Path]) -> None:
    """Remove a file if present. Failures are logged, never raised."""
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not delete file %s: %s", path, e)


# ============================================================================
# DOCUMENT OPERATIONS
# ============================================================================

@dataclass(frozen=True)
class PageResult:
    """Recovered identity of one scanned page.

    Attributes:
        sequence: Zero-based position of the page in the scanned document
        page_index: Recovered page identifier, None when unknown
        path: Where the extracted single-page PDF was written, if anywhere
        status: DecodeStatus value, or 'invalid_payload' for unparseable text
        error: Diagnostic message for unknown pages
    """
    sequence: int
    page_index: Optional[int]
    path: Optional[str] = None
    status: str = DecodeStatus.FOUND.value
    error: Optional[str] = None

    @property
    def is_known(self) -> bool:
        return self.page_index is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'page_index': self.page_index if self.is_known else -1,
            'path': self.path,
            'status': self.status,
            'error': self.error,
        }


Renderer = Callable[[str, int, int], np.ndarray]


def load_pdf(pdf_path: Union[str, Path]) -> PdfReader:
    """Open a PDF for reading.

    Raises:
        DocumentError: If the path is rejected or the file cannot be parsed
    """
    path = validate_pdf_path(pdf_path)
    try:
        reader = PdfReader(str(path))
        # Force page tree parsing so broken files fail here
        len(reader.pages)
    except (OSError, PdfReadError) as e:
        raise DocumentError(f"Failed to load PDF {path}: {e}") from e
    return reader


def page_size(page) -> Tuple[float, float]:
    """Return (width, height) of a pypdf page in points."""
    return float(page.mediabox.width), float(page.mediabox.height)


def render_page(pdf_path: str, page_number: int, dpi: int = SCAN_DPI) -> np.ndarray:
    """Render one PDF page to an OpenCV image.

    Args:
        pdf_path: Path to PDF file
        page_number: Zero-based page position
        dpi: Rendering resolution

    Returns:
        BGR image as a numpy array

    Raises:
        DocumentError: If the page cannot be rendered
    """
    from pdf2image import convert_from_path

    try:
        pil_images = convert_from_path(str(pdf_path), dpi=dpi,
                                       first_page=page_number + 1, last_page=page_number + 1)
    except Exception as e:
        raise DocumentError(f"Failed to render page {page_number + 1} of {pdf_path}: {e}") from e

    if not pil_images:
        raise DocumentError(f"Page {page_number + 1} of {pdf_path} produced no image")

    img_array = np.array(pil_images[0].convert('RGB'))
    return cv2.cvtColor(img_array, cv2.COLOR_RGB2BGR)


def _build_overlay(qr_image: Image.Image, page_width: float, page_height: float,
                   rect: PlacementRect):
    """Create a one-page PDF holding only the QR code, returned as a pypdf page."""
    buffer = io.BytesIO()
    c = pdf_canvas.Canvas(buffer, pagesize=(page_width, page_height))

    img_buffer = io.BytesIO()
    qr_image.save(img_buffer, format='PNG')
    img_buffer.seek(0)

    c.drawImage(ImageReader(img_buffer), rect.x, rect.y, width=rect.width, height=rect.height)
    c.showPage()
    c.save()

    buffer.seek(0)
    return PdfReader(buffer).pages[0]


def embed_qr_codes(input_pdf: Union[str, Path], output_pdf: Union[str, Path]) -> int:
    """Stamp every page with a QR code carrying its zero-based index.

    All codes are generated before anything is written, so an encoding
    failure leaves no partially tagged output.

    Args:
        input_pdf: Source PDF
        output_pdf: Destination for the tagged PDF

    Returns:
        Number of pages tagged

    Raises:
        DocumentError: If the source cannot be loaded
        EncodingError: If any page's payload cannot be encoded
    """
    reader = load_pdf(input_pdf)
    num_pages = len(reader.pages)

    qr_images = [encode_qr(serialize_payload(i)) for i in range(num_pages)]

    writer = PdfWriter()
    for i, page in enumerate(reader.pages):
        width, height = page_size(page)
        rect = placement_rect(width, height)
        overlay = _build_overlay(qr_images[i], width, height, rect)

        # Overlay coordinates start at 0,0; shift to the media box origin
        target = writer.add_page(page)
        target.merge_translated_page(overlay, float(page.mediabox.left),
                                     float(page.mediabox.bottom))

    try:
        with open(output_pdf, 'wb') as f:
            writer.write(f)
    except Exception:
        delete_file(output_pdf)
        raise

    logger.info("Tagged %d pages of %s", num_pages, input_pdf)
    return num_pages


def recover_page_index(pdf_path: str, sequence: int, page_width: float, page_height: float,
                       dpi: int = SCAN_DPI,
                       renderer: Optional[Renderer] = None) -> PageResult:
    """Render one page and read its QR page index.

    Decode and payload failures produce an unknown result; only a rendering
    failure raises.

    Raises:
        DocumentError: If the page cannot be rendered
    """
    renderer = renderer or render_page
    image = renderer(pdf_path, sequence, dpi)
    region = extract_region(image, page_width, page_height, dpi)

    outcome = decode_region(region)
    if not outcome.found:
        logger.warning("Page %d: no QR code recovered (%s)", sequence + 1, outcome.last_error)
        return PageResult(sequence, None, status=outcome.status.value, error=outcome.last_error)

    try:
        page_index = deserialize_payload(outcome.text)
    except CodecError as e:
        logger.warning("Page %d: QR payload rejected (%s)", sequence + 1, e)
        return PageResult(sequence, None, status='invalid_payload', error=str(e))

    return PageResult(sequence, page_index, status=outcome.status.value)


def default_workers() -> int:
    return min(4, os.cpu_count() or 1)


def scan_pages(pdf_path: Union[str, Path], dpi: int = SCAN_DPI,
               workers: Optional[int] = None,
               renderer: Optional[Renderer] = None,
               progress: Optional[Callable[[PageResult], None]] = None,
               reader: Optional[PdfReader] = None) -> List[PageResult]:
    """Recover the QR page index of every page, in scan order.

    Pages are independent and run on a bounded thread pool. Results are
    keyed by scan position, so failed or duplicate indices never disturb the
    ordering.

    Args:
        pdf_path: Scanned PDF
        dpi: Rendering resolution
        workers: Maximum parallel pages (default: min(4, CPU count))
        renderer: Page rasterizer (default: render_page)
        progress: Called once per finished page
        reader: Already opened reader for pdf_path

    Returns:
        List of PageResult ordered by sequence

    Raises:
        DocumentError: If the document cannot be loaded or a page cannot be
            rendered; pending pages are cancelled
    """
    if reader is None:
        reader = load_pdf(pdf_path)
    sizes = [page_size(page) for page in reader.pages]
    results: Dict[int, PageResult] = {}

    with ThreadPoolExecutor(max_workers=workers or default_workers()) as executor:
        futures = {
            executor.submit(recover_page_index, str(pdf_path), seq, width, height, dpi, renderer): seq
            for seq, (width, height) in enumerate(sizes)
        }
        try:
            for future in as_completed(futures):
                result = future.result()
                results[futures[future]] = result
                if progress:
                    progress(result)
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    ordered = [results[seq] for seq in range(len(sizes))]
    unknown = sum(1 for r in ordered if not r.is_known)
    logger.info("Scanned %d pages, %d unknown", len(ordered), unknown)
    return ordered


def extract_page(reader: PdfReader, page_number: int) -> bytes:
    """Copy one page into a standalone PDF.

    Raises:
        DocumentError: If page_number is out of range
    """
    if page_number < 0 or page_number >= len(reader.pages):
        raise DocumentError(f"Invalid page index: {page_number}")

    writer = PdfWriter()
    writer.add_page(reader.pages[page_number])
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def recover_pages(pdf_path: Union[str, Path], output_dir: Union[str, Path],
                  dpi: int = SCAN_DPI, workers: Optional[int] = None,
                  renderer: Optional[Renderer] = None,
                  progress: Optional[Callable[[PageResult], None]] = None,
                  reader: Optional[PdfReader] = None) -> List[PageResult]:
    """Split a scanned PDF into single-page PDFs named by their QR index.

    Pages land in a new session directory under output_dir:
    page_<index>/page_<index>.pdf for recovered pages and
    page_unknown_<seq>/page_<seq>.pdf for the rest. A results.json manifest
    is written alongside.

    Args:
        pdf_path: Scanned PDF
        output_dir: Root directory for the session directory
        dpi, workers, renderer, progress, reader: See scan_pages()

    Returns:
        List of PageResult ordered by sequence, with paths filled in
    """
    if reader is None:
        reader = load_pdf(pdf_path)
    scanned = scan_pages(pdf_path, dpi=dpi, workers=workers, renderer=renderer,
                         progress=progress, reader=reader)
    session_dir = create_session_directory(output_dir)

    results = []
    seen = set()
    for result in scanned:
        page_bytes = extract_page(reader, result.sequence)
        if not result.is_known:
            page_dir = session_dir / f"page_unknown_{result.sequence}"
            path = save_page(page_bytes, page_dir, result.sequence)
        elif result.page_index in seen:
            logger.warning("Page %d repeats QR index %d", result.sequence + 1, result.page_index)
            page_dir = session_dir / f"page_{result.page_index}_seq_{result.sequence}"
            path = save_page(page_bytes, page_dir, result.page_index)
        else:
            seen.add(result.page_index)
            page_dir = session_dir / f"page_{result.page_index}"
            path = save_page(page_bytes, page_dir, result.page_index)

        results.append(PageResult(result.sequence, result.page_index, str(path),
                                  result.status, result.error))

    write_manifest(results, session_dir / 'results.json')
    return results


def write_manifest(results: List[PageResult], path: Union[str, Path]) -> None:
    with open(path, 'w') as f:
        json.dump([r.to_dict() for r in results], f, indent=2)


def write_reordered_pdf(reader: PdfReader, results: List[PageResult],
                        output_pdf: Union[str, Path]) -> None:
    """Write the scanned pages sorted by recovered index.

    Unknown pages follow the known ones, in scan order.
    """
    known = sorted((r for r in results if r.is_known), key=lambda r: (r.page_index, r.sequence))
    unknown = [r for r in results if not r.is_known]

    writer = PdfWriter()
    for result in known + unknown:
        writer.add_page(reader.pages[result.sequence])

    with open(output_pdf, 'wb') as f:
        writer.write(f)


# ============================================================================
# CLI COMMANDS
# ============================================================================

def _describe(result: PageResult) -> str:
    if result.is_known:
        return f"QR index {result.page_index}"
    return f"unknown ({result.status})"


@click.group()
@click.version_option(version=VERSION)
@click.option('-v', '--verbose', is_flag=True, help='Log every decode attempt')
def cli(verbose):
    """QR Page Tagger - Tag PDF pages with QR codes and recover them from scans.

    Pages are tagged with their zero-based index in the bottom-right corner and
    can be identified again after printing, scanning or reordering.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )


@cli.command()
@click.argument('input_pdf', type=click.Path(exists=True))
@click.option('-o', '--output', type=click.Path(), default=None,
              help='Output PDF path (default: <input_pdf>.qr.pdf)')
def embed(input_pdf, output):
    """Tag every page of a PDF with a QR code holding its index.

    Example:
        qr_page_tagger embed document.pdf -o tagged.pdf
    """
    try:
        if output is None:
            output = input_pdf + '.qr.pdf'

        click.echo(f"\nTagging: {input_pdf}")
        num_pages = embed_qr_codes(input_pdf, output)
        click.echo(f"Tagged {num_pages} pages")
        click.echo(f"Output: {output}")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('input_pdf', type=click.Path(exists=True))
@click.option('-d', '--output-dir', type=click.Path(file_okay=False), required=True,
              help='Directory that receives the session directory of extracted pages')
@click.option('--dpi', type=int, default=SCAN_DPI,
              help=f'Rendering resolution [default: {SCAN_DPI}]')
@click.option('--workers', type=int, default=None,
              help='Pages processed in parallel [default: min(4, CPU count)]')
@click.option('--reorder', type=click.Path(), default=None,
              help='Also write a PDF with pages sorted by recovered index')
@click.option('--json', 'as_json', is_flag=True,
              help='Print results as JSON')
def recover(input_pdf, output_dir, dpi, workers, reorder, as_json):
    """Split a scanned PDF into pages named by their QR index.

    Example:
        qr_page_tagger recover scanned.pdf -d pages/
        qr_page_tagger recover scanned.pdf -d pages/ --reorder ordered.pdf
    """
    try:
        reader = load_pdf(input_pdf)
        num_pages = len(reader.pages)
        if not as_json:
            click.echo(f"\nRecovering: {input_pdf} ({num_pages} pages)")

        with click.progressbar(length=num_pages, label='Scanning pages',
                               file=sys.stderr) as bar:
            results = recover_pages(input_pdf, output_dir, dpi=dpi, workers=workers,
                                    progress=lambda result: bar.update(1), reader=reader)

        if reorder:
            write_reordered_pdf(reader, results, reorder)

        if as_json:
            click.echo(json.dumps([r.to_dict() for r in results], indent=2))
            return

        for result in results:
            click.echo(f"Page {result.sequence + 1}: {_describe(result)} -> {result.path}")

        unknown = [r.sequence + 1 for r in results if not r.is_known]
        if unknown:
            click.echo(f"Warning: {len(unknown)} pages without a readable QR code: {unknown}", err=True)
        if reorder:
            click.echo(f"Reordered PDF: {reorder}")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('input_pdf', type=click.Path(exists=True))
@click.option('--dpi', type=int, default=SCAN_DPI,
              help=f'Rendering resolution [default: {SCAN_DPI}]')
@click.option('--workers', type=int, default=None,
              help='Pages processed in parallel [default: min(4, CPU count)]')
def scan(input_pdf, dpi, workers):
    """Report the QR index of every page without extracting anything.

    Example:
        qr_page_tagger scan scanned.pdf
    """
    try:
        results = scan_pages(input_pdf, dpi=dpi, workers=workers)

        for result in results:
            click.echo(f"Page {result.sequence + 1}: {_describe(result)}")

        scan_order = [r.page_index for r in results if r.is_known]
        if scan_order != sorted(scan_order):
            click.echo("Pages are out of order")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('pdf_file', type=click.Path(exists=True))
def info(pdf_file):
    """Display page sizes and where the QR code sits on each page.

    Example:
        qr_page_tagger info tagged.pdf
    """
    try:
        reader = load_pdf(pdf_file)

        click.echo(f"\n{'='*60}")
        click.echo("QR PAGE TAGGER PLACEMENT")
        click.echo(f"{'='*60}")
        click.echo(f"Placement Format:    v{PLACEMENT_FORMAT_VERSION}")
        click.echo(f"QR Edge:             {BARCODE_EDGE_PT} pt ({QR_EDGE_PX} px + {QR_BORDER_PX} px border)")
        click.echo(f"Margin:              {PLACEMENT_MARGIN_PT} pt from bottom and right")
        click.echo(f"Scan DPI:            {SCAN_DPI}")
        click.echo(f"PDF Pages:           {len(reader.pages)}")

        for i, page in enumerate(reader.pages):
            width, height = page_size(page)
            rect = placement_rect(width, height)
            click.echo(f"Page {i + 1}: {width:g} x {height:g} pt, "
                       f"QR at x={rect.x:g} y={rect.y:g}")

        click.echo(f"{'='*60}\n")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
