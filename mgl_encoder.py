"""
MGL Encoder — Madagascar License Barcode Payload Encoder
=========================================================

Produces barcode payloads in the format the decoder consumes:

  plaintext  → zlib compress → XOR with static key → hex / base64 text

Used by the test suite as a fixture generator and by the decoder's
known-sample self test. Can also render the payload text as a QR code PNG
when qrcode and Pillow are installed.
"""

import io
import zlib
import base64
from typing import Optional, Union
from pathlib import Path

from mgl_types import (
    STATIC_ENCRYPTION_KEY, IMAGE_MARKER,
    LicenseRecord, BarcodeError,
)

# Optional: QR code generation
try:
    import qrcode
    HAS_QRCODE = True
except ImportError:
    HAS_QRCODE = False

# Optional: PNG image support
try:
    from PIL import Image
    HAS_PIL = True
except ImportError:
    HAS_PIL = False


# ═══════════════════════════════════════════════════════════════
# CIPHER
# ═══════════════════════════════════════════════════════════════

class XorCipher:
    """
    Repeating-key XOR. Length preserving and self-inverse, so the same
    call both encrypts and decrypts.
    """

    def __init__(self, key: bytes = STATIC_ENCRYPTION_KEY):
        if isinstance(key, str):
            key = key.encode('ascii')
        if not key:
            raise ValueError("cipher key must not be empty")
        self.key = bytes(key)

    def apply(self, data: bytes) -> bytes:
        key = self.key
        klen = len(key)
        return bytes(b ^ key[i % klen] for i, b in enumerate(data))

    encrypt = apply
    decrypt = apply


# ═══════════════════════════════════════════════════════════════
# COMPRESSION ENGINE
# ═══════════════════════════════════════════════════════════════

class CompressionEngine:
    """Single-variant zlib compression used by the barcode producers."""

    def __init__(self, level: int = 9):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level)

    @staticmethod
    def decompress(data: bytes) -> bytes:
        """Strict inflate. Raises zlib.error on any damage."""
        return zlib.decompress(data)


# ═══════════════════════════════════════════════════════════════
# ENCODER
# ═══════════════════════════════════════════════════════════════

class MGLEncoder:
    """
    License barcode payload encoder.

    Usage:
        encoder = MGLEncoder()
        hex_text = encoder.encode_hex(record, image=jpeg_bytes)
    """

    def __init__(self, key: bytes = STATIC_ENCRYPTION_KEY,
                 compression_level: int = 9):
        self.cipher = XorCipher(key)
        self.compressor = CompressionEngine(compression_level)

    # ─── Main Entry Points ────────────────────────────────────

    def encode(self,
               record: Union[LicenseRecord, str, bytes],
               image: Optional[bytes] = None,
               encrypt: bool = True) -> bytes:
        """
        Encode a record into raw barcode bytes.

        Args:
            record: LicenseRecord, or an already pipe-delimited plaintext.
            image: Optional photo bytes appended after the image marker.
            encrypt: False produces a compressed-but-unencrypted payload.
        """
        plaintext = self._serialize(record)
        if image is not None:
            plaintext += IMAGE_MARKER + image

        payload = self.compressor.compress(plaintext)
        if encrypt:
            payload = self.cipher.encrypt(payload)
        return payload

    def encode_hex(self, record, image: Optional[bytes] = None,
                   encrypt: bool = True) -> str:
        return self.encode(record, image=image, encrypt=encrypt).hex()

    def encode_base64(self, record, image: Optional[bytes] = None,
                      encrypt: bool = True) -> str:
        raw = self.encode(record, image=image, encrypt=encrypt)
        return base64.b64encode(raw).decode('ascii')

    # ─── Serialization ────────────────────────────────────────

    def _serialize(self, record: Union[LicenseRecord, str, bytes]) -> bytes:
        if isinstance(record, LicenseRecord):
            return record.serialize().encode('utf-8')
        elif isinstance(record, str):
            return record.encode('utf-8')
        return bytes(record)

    # ─── Barcode Rendering ────────────────────────────────────

    def render_barcode(self, text: str, output_path: Optional[str] = None) -> bytes:
        """Render payload text (usually hex) as a QR code PNG."""
        if not (HAS_QRCODE and HAS_PIL):
            raise BarcodeError("qrcode and Pillow are required to render barcodes")

        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=4,
            border=2
        )
        qr.add_data(text)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buf = io.BytesIO()
        img.save(buf, format='PNG')
        png = buf.getvalue()

        if output_path:
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, 'wb') as f:
                f.write(png)
        return png
