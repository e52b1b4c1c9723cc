"""QR rendering: vCard text -> colored PNG data URI."""

import base64
import io
import logging
import re

import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image, ImageOps

from vcard import format_vcard

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)
BLACK = (0, 0, 0)

HEX_COLOR = re.compile(r"[0-9A-Fa-f]{6}")


class EncodingError(Exception):
    """Content does not fit in the largest QR symbol."""


def parse_color(color_str):
    hex_digits = color_str.lstrip("#")
    if not HEX_COLOR.fullmatch(hex_digits):
        logger.warning("Unparseable color %r, using black", color_str)
        return BLACK
    return tuple(int(hex_digits[i:i + 2], 16) for i in (0, 2, 4))


def render_qr(content, color=None):
    """Encode ``content`` as a QR image.

    Without ``color`` the result is a grayscale image. With an ``(r, g, b)``
    color, dark modules take that color and light modules are white.
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
    )
    qr.add_data(content)
    try:
        qr.make(fit=True)
    # qrcode 8 reports overflow as ValueError("Invalid version ...") from best_fit
    except (DataOverflowError, ValueError) as e:
        raise EncodingError(f"{len(content)} bytes do not fit in a QR code") from e

    gray = qr.make_image(fill_color="black", back_color="white").get_image().convert("L")
    if color is None:
        return gray

    # dark pixels are 0 in gray, so the inverted image selects them
    return Image.composite(
        Image.new("RGB", gray.size, color),
        Image.new("RGB", gray.size, WHITE),
        ImageOps.invert(gray),
    )


def to_data_uri(img):
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    b64 = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{b64}"


def generate_qr_data_uri(contact):
    content = format_vcard(contact).encode("utf-8")
    color = parse_color(contact.color) if contact.color else None
    return to_data_uri(render_qr(content, color))
