"""QR code rendering."""

from evogate.qr.encoder import QrImageEncoder, QrOptions, render_ascii, to_data_url

__all__ = ["QrImageEncoder", "QrOptions", "render_ascii", "to_data_url"]
