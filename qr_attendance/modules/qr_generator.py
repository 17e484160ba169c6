"""
QR Code Generator Module - QR Attendance Verification Engine

Renders an attendance token as a QR code image for display on the
instructor's screen. The engine has no opinion on the image beyond this:
callers get a base64 PNG and may ask for a caption under the code.
"""

import base64
import io
import logging
from typing import Any, Dict, Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont

ERROR_CORRECTION_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,
    'M': qrcode.constants.ERROR_CORRECT_M,
    'Q': qrcode.constants.ERROR_CORRECT_Q,
    'H': qrcode.constants.ERROR_CORRECT_H
}


class QRGenerator:
    """Token to QR image renderer."""

    def __init__(self, box_size: int = 10, border: int = 4, error_correction: str = 'M',
                 fill_color: str = 'black', back_color: str = 'white'):
        self.logger = logging.getLogger(__name__)

        self.default_settings = {
            'box_size': box_size,
            'border': border,
            'error_correction': ERROR_CORRECTION_LEVELS.get(error_correction.upper(),
                                                            qrcode.constants.ERROR_CORRECT_M),
            'fill_color': fill_color,
            'back_color': back_color
        }

    def render_token(self, token: str, caption: Optional[str] = None,
                     custom_settings: Dict[str, Any] = None) -> Dict[str, Any]:
        """
        Render a token string as a PNG QR code.

        Args:
            token (str): Token produced by the token codec
            caption (str): Optional text drawn under the code
            custom_settings (dict): Overrides for the default settings

        Returns:
            dict: image_base64, image_size and the encoded data
        """
        if not token:
            raise ValueError("token is required")

        settings = self.default_settings.copy()
        if custom_settings:
            settings.update(custom_settings)

        qr = qrcode.QRCode(
            version=None,
            error_correction=settings['error_correction'],
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(token)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        ).convert('RGB')

        if caption:
            img = self._add_caption(img, caption)

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')

        self.logger.debug(f"Rendered QR code {img.size[0]}x{img.size[1]}")
        return {
            'qr_data': token,
            'image_base64': base64.b64encode(buffer.getvalue()).decode('ascii'),
            'image_size': img.size,
            'format': 'PNG'
        }

    def _add_caption(self, qr_img: Image.Image, caption: str) -> Image.Image:
        """Extend the canvas and center the caption under the code."""
        width, height = qr_img.size
        canvas = Image.new('RGB', (width, height + 40), 'white')
        canvas.paste(qr_img, (0, 0))

        draw = ImageDraw.Draw(canvas)
        try:
            font = ImageFont.truetype("arial.ttf", 16)
        except (IOError, OSError):
            font = ImageFont.load_default()

        bbox = draw.textbbox((0, 0), caption, font=font)
        text_width = bbox[2] - bbox[0]
        draw.text(((width - text_width) // 2, height + 10), caption, fill='black', font=font)
        return canvas
