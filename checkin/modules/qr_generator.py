"""
QR Code Generator Module - QR Check-in Attendance System

This module renders attendance payloads as QR code images. The payload text
comes from QRPayloadCodec; this module only draws it, optionally with the
person's name and class or department printed underneath, and returns the
PNG as base64 for the JSON API or writes it to disk.

Features:
- QR code image generation for a student or staff member
- Optional caption overlay with name and context
- Batch generation for a whole roster snapshot
- QR code image export
"""

import base64
import io
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont

from checkin.modules.errors import ValidationError
from checkin.modules.identity import PersonKind, RosterSnapshot
from checkin.modules.qr_codec import QRPayloadCodec

ERROR_CORRECTION_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,
    'M': qrcode.constants.ERROR_CORRECT_M,
    'Q': qrcode.constants.ERROR_CORRECT_Q,
    'H': qrcode.constants.ERROR_CORRECT_H,
}


class QRGenerator:
    """
    Renders attendance payloads as PNG QR codes.
    """

    def __init__(self, codec: Optional[QRPayloadCodec] = None, settings: Optional[dict] = None):
        """
        Args:
            codec (QRPayloadCodec): Codec producing the payload text
            settings (dict): Overrides for box size, border, colors, error correction
        """
        self.codec = codec or QRPayloadCodec()
        self.logger = logging.getLogger(__name__)

        self.default_settings = {
            'box_size': 10,  # Size of each box in pixels
            'border': 4,     # Size of the border (minimum is 4)
            'error_correction': 'M',
            'fill_color': 'black',
            'back_color': 'white'
        }
        if settings:
            self.default_settings.update(settings)

    @classmethod
    def from_config(cls, config) -> 'QRGenerator':
        qr_config = config.QR_CODE
        return cls(QRPayloadCodec.from_config(config), {
            'box_size': qr_config.BOX_SIZE,
            'border': qr_config.BORDER,
            'error_correction': qr_config.ERROR_CORRECTION,
            'fill_color': qr_config.FILL_COLOR,
            'back_color': qr_config.BACK_COLOR,
        })

    def render_payload(self, payload: str, caption_lines=None) -> Image.Image:
        """
        Draw ``payload`` as a QR code image.

        Args:
            payload (str): Text to embed
            caption_lines (list): Optional lines printed under the code

        Returns:
            Image.Image: RGB image
        """
        settings = self.default_settings
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECTION_LEVELS.get(settings['error_correction'],
                                                         qrcode.constants.ERROR_CORRECT_M),
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(payload)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        ).convert('RGB')

        lines = [line for line in (caption_lines or []) if line]
        if lines:
            img = self._add_caption(img, lines)
        return img

    def _add_caption(self, qr_img: Image.Image, lines) -> Image.Image:
        """Extend the canvas and print ``lines`` centered under the code."""
        line_height = 22
        original_width, original_height = qr_img.size
        new_img = Image.new('RGB', (original_width, original_height + 10 + line_height * len(lines)), 'white')
        new_img.paste(qr_img, (0, 0))

        draw = ImageDraw.Draw(new_img)
        try:
            font = ImageFont.truetype("arial.ttf", 16)
        except (IOError, OSError):
            font = ImageFont.load_default()

        text_y = original_height + 5
        for line in lines:
            bbox = draw.textbbox((0, 0), line, font=font)
            width = bbox[2] - bbox[0]
            draw.text(((original_width - width) // 2, text_y), line, fill='black', font=font)
            text_y += line_height
        return new_img

    @staticmethod
    def to_base64(img: Image.Image) -> str:
        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return base64.b64encode(buffer.getvalue()).decode()

    def generate_person_qr_code(self, kind, person_id: str, display_name: str = '',
                                context_label: str = '', with_caption: bool = True) -> Dict[str, Any]:
        """
        Generate the QR code for a student or staff member.

        Returns:
            dict: payload, image_base64, image_size and a suggested filename
        """
        kind = PersonKind.parse(kind)
        payload = self.codec.encode(kind, person_id, display_name, context_label)
        caption = [display_name, context_label] if with_caption else None
        img = self.render_payload(payload, caption)

        result = {
            'payload': payload,
            'image_base64': self.to_base64(img),
            'image_size': img.size,
            'filename': f"qr_{kind.value}_{person_id}_{datetime.now().strftime('%Y%m%d')}.png",
            'person_id': person_id,
            'type': kind.value,
        }
        self.logger.info(f"QR code generated for {kind.value} {person_id}")
        return result

    def batch_generate(self, roster: RosterSnapshot, class_names: Optional[Dict[str, str]] = None,
                       with_caption: bool = True) -> Dict[str, Any]:
        """
        Generate QR codes for every person in a roster snapshot.

        Args:
            roster (RosterSnapshot): People to generate codes for
            class_names (dict): class id -> name, used for student captions

        Returns:
            dict: Batch generation results
        """
        class_names = class_names or {}
        results = {
            'total': len(roster.students) + len(roster.staff),
            'successful': 0,
            'failed': 0,
            'results': [],
            'errors': []
        }

        people = [(PersonKind.STUDENT, s, class_names.get(s.class_id or '', '')) for s in roster.students]
        people += [(PersonKind.STAFF, s, s.department or '') for s in roster.staff]

        for kind, person, label in people:
            try:
                results['results'].append(
                    self.generate_person_qr_code(kind, person.id, person.full_name, label, with_caption)
                )
                results['successful'] += 1
            except (ValidationError, OSError) as e:
                results['failed'] += 1
                results['errors'].append({'person_id': person.id, 'error': str(e)})

        self.logger.info(f"Batch QR generation completed: {results['successful']}/{results['total']} successful")
        return results

    def save_qr_code_image(self, image_base64: str, filename: str, output_dir) -> str:
        """
        Save a base64 PNG to ``output_dir``.

        Returns:
            str: Path of the written file
        """
        os.makedirs(output_dir, exist_ok=True)
        file_path = os.path.join(output_dir, filename)
        with open(file_path, 'wb') as f:
            f.write(base64.b64decode(image_base64))

        self.logger.info(f"QR code image saved to {file_path}")
        return file_path
