"""QR image encoding for pairing tokens."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from io import BytesIO, StringIO

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_L
from qrcode.image.pil import PilImage

from evogate.core.errors import InvalidArgumentError

PNG_DATA_URL_PREFIX = "data:image/png;base64,"


@dataclass(frozen=True, slots=True)
class QrOptions:
    """Rendering options: target width in pixels, quiet-zone margin in modules, colours."""

    width: int = 264
    margin: int = 4
    dark: str = "#000000"
    light: str = "#ffffff"


class QrImageEncoder:
    """Stateless PNG encoder for QR payloads."""

    def __init__(self, default_options: QrOptions | None = None):
        self.default_options = default_options or QrOptions()

    def encode(self, payload: bytes | str, options: QrOptions | None = None) -> bytes:
        """Render ``payload`` as a square PNG of ``options.width`` pixels.

        Bytes are encoded as-is, so binary credentials need not be UTF-8. Widths
        too small for one pixel per module are raised to that minimum.
        """
        opts = options or self.default_options
        if not payload:
            raise InvalidArgumentError("QR payload must not be empty")

        qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_L, border=opts.margin)
        qr.add_data(payload)
        qr.make(fit=True)

        total_modules = qr.modules_count + 2 * opts.margin
        width = max(opts.width, total_modules)
        qr.box_size = width // total_modules
        image = qr.make_image(
            image_factory=PilImage,
            fill_color=opts.dark,
            back_color=opts.light,
        ).get_image()
        if image.size != (width, width):
            image = image.resize((width, width), Image.Resampling.NEAREST)

        buf = BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue()

    def encode_data_url(self, payload: bytes | str, options: QrOptions | None = None) -> str:
        return to_data_url(self.encode(payload, options))


def to_data_url(png: bytes) -> str:
    """Wrap PNG bytes in a base64 data URL."""
    return PNG_DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")


def render_ascii(payload: str, margin: int = 1) -> str:
    """Render a QR payload as terminal block characters."""
    if not payload:
        raise InvalidArgumentError("QR payload must not be empty")
    qr = qrcode.QRCode(border=margin)
    qr.add_data(payload)
    qr.make(fit=True)
    out = StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()
