"""
MGL Decoder — Madagascar License Barcode Decoder
=================================================

Turns scanned barcode text into a LicenseRecord plus an optional photo.

Four ordered stages, each independent and stateless:

  1. Normalize    hex / base64 / raw text → bytes
  2. Cipher       XOR with the static key (may be skipped)
  3. Decompress   zlib inflate, with a fallback chain for damaged scans
  4. Parse        9-field pipe record + optional ||IMG|| photo

Each stage raises its own MGLError subclass; MGLDecoder converts that into
a DecodeFailure tagged with the stage, so decode() never raises for a bad
payload.
"""

import re
import base64
import binascii
import logging
import zlib
from typing import List, Optional, Tuple

from mgl_types import (
    STATIC_ENCRYPTION_KEY, IMAGE_MARKER, FIELD_SEPARATOR,
    RECORD_FIELD_COUNT, MIN_RECORD_FIELDS,
    ZLIB_HEADER_BYTE, MAX_SKIP_OFFSET, MIN_RECOVERED_TEXT,
    DecodeStage, InputFormat, RecoveryPath, ImageFormat, RANGE_SEPARATOR,
    LicenseRecord, EmbeddedImage, StageDiagnostics, Diagnostics,
    DecodeSuccess, DecodeFailure, DecodeResult,
    MGLError, InputFormatError, DecompressionError, ParseError, UnknownError,
    sniff_image_format, hex_preview, is_calendar_date, find_record,
)
from mgl_encoder import XorCipher, CompressionEngine, MGLEncoder

logger = logging.getLogger(__name__)

_HEX_TEXT = re.compile(r"[0-9A-Fa-f]*")
_BASE64_TEXT = re.compile(r"[A-Za-z0-9+/]*={0,2}")
_WHITESPACE = re.compile(r"\s+", re.ASCII)

_PRINTABLE = frozenset(range(0x20, 0x7F)) | {0x09, 0x0A, 0x0D}

KNOWN_SAMPLE = "John Doe|123456789012|19800115|LIC1234567890|20200101-20250101|B,C|None|None|M"


# ═══════════════════════════════════════════════════════════════
# STAGE 1: INPUT NORMALIZER
# ═══════════════════════════════════════════════════════════════

class InputNormalizer:
    """
    Classifies scanner output and converts it to bytes.

    First match wins: hex (whitespace ignored, even length), then
    standard base64 (length multiple of 4), then a lossy reinterpretation
    of every code point modulo 256. Only the hex branch can fail, and its
    guard makes that practically unreachable.
    """

    def normalize(self, text: str) -> bytes:
        return self.classify(text)[1]

    def classify(self, text: str) -> Tuple[InputFormat, bytes]:
        compact = _WHITESPACE.sub("", text)
        if len(compact) % 2 == 0 and _HEX_TEXT.fullmatch(compact):
            try:
                return InputFormat.HEX, bytes.fromhex(compact)
            except ValueError as e:
                raise InputFormatError(f"Invalid hex string: {e}")

        stripped = text.strip()
        if stripped and len(stripped) % 4 == 0 and _BASE64_TEXT.fullmatch(stripped):
            try:
                return InputFormat.BASE64, base64.b64decode(stripped, validate=True)
            except binascii.Error:
                # '=' in the wrong place; treat it as raw text instead
                pass

        return InputFormat.RAW, bytes(ord(c) % 256 for c in text)


# ═══════════════════════════════════════════════════════════════
# STAGE 3: DECOMPRESSION WITH FALLBACK CHAIN
# ═══════════════════════════════════════════════════════════════

class PayloadDecompressor:
    """
    zlib inflate with recovery for damaged scans.

    Fallbacks run only when the primary inflate raises:
      a. printable-text extraction (non-printable runs collapse to one '|')
      b. record pattern match on that text
      c. inflate retried from each 0x78 byte within max_skip_offset
      d. the extracted text itself, if longer than min_text_length
    """

    def __init__(self, max_skip_offset: int = MAX_SKIP_OFFSET,
                 min_text_length: int = MIN_RECOVERED_TEXT):
        self.max_skip_offset = max_skip_offset
        self.min_text_length = min_text_length
        self.engine = CompressionEngine()

    def decompress(self, data: bytes) -> bytes:
        return self.decompress_with_path(data)[0]

    def decompress_with_path(self, data: bytes) -> Tuple[bytes, RecoveryPath, Optional[int]]:
        """Returns (buffer, path used, offset for OFFSET recoveries)."""
        try:
            return self.engine.decompress(data), RecoveryPath.PRIMARY, None
        except zlib.error as e:
            logger.info("Primary inflate failed (%s); trying recovery", e)

        text = self.extract_printable(data)

        match = find_record(text)
        if match:
            if IMAGE_MARKER.decode('ascii') in text:
                recovered = text
            else:
                recovered = match.group(0)
            logger.info("Recovered record by pattern match (%d chars)", len(recovered))
            return recovered.encode('latin-1'), RecoveryPath.PATTERN, None

        for offset in range(min(self.max_skip_offset, len(data))):
            if data[offset] != ZLIB_HEADER_BYTE:
                continue
            try:
                inflated = self.engine.decompress(data[offset:])
            except zlib.error:
                continue
            logger.info("Recovered zlib stream at offset %d", offset)
            return inflated, RecoveryPath.OFFSET, offset

        if len(text) > self.min_text_length:
            logger.info("Falling back to raw printable text (%d chars)", len(text))
            return text.encode('latin-1'), RecoveryPath.RAW_TEXT, None

        raise DecompressionError("all decompression methods failed")

    @staticmethod
    def extract_printable(data: bytes) -> str:
        chars = []
        for b in data:
            if b in _PRINTABLE:
                chars.append(chr(b))
            elif not chars or chars[-1] != FIELD_SEPARATOR:
                chars.append(FIELD_SEPARATOR)
        return "".join(chars)


# ═══════════════════════════════════════════════════════════════
# STAGE 4: RECORD PARSER
# ═══════════════════════════════════════════════════════════════

class RecordParser:
    """
    Splits the decompressed buffer into record text and photo, then maps
    the 9 fields. Only a field count below 5 is fatal; every other
    anomaly degrades to empty or pass-through values.
    """

    def parse(self, data: bytes, diagnostics: Optional[Diagnostics] = None
              ) -> Tuple[LicenseRecord, Optional[EmbeddedImage]]:
        diag = diagnostics if diagnostics is not None else Diagnostics()

        text, image_bytes = self.split_image(data, diag)
        fields = self.extract_fields(text, diag)
        record = LicenseRecord.from_fields(fields)
        self._check_dates(fields, diag)

        image = None
        if image_bytes:
            image = EmbeddedImage(data=image_bytes, format=sniff_image_format(image_bytes))
            if image.format == ImageFormat.UNKNOWN:
                diag.warnings.append("embedded image format not recognised")
        elif diag.image_marker_found:
            diag.warnings.append("image marker present but image segment is empty")

        diag.total_payload_size = len(data)
        diag.has_image = diag.image_marker_found
        diag.image_size_bytes = image.size if image else 0
        return record, image

    # ─── Image Split ──────────────────────────────────────────

    def split_image(self, data: bytes, diag: Diagnostics) -> Tuple[str, bytes]:
        """Returns (license text, image bytes). Image bytes may be empty."""
        # The marker is ASCII, so a byte search also finds every occurrence
        # the decoded text view would.
        idx = data.find(IMAGE_MARKER)
        if idx >= 0:
            diag.image_marker_found = True
            return self._as_text(data[:idx]), data[idx + len(IMAGE_MARKER):]
        return self._as_text(data), b""

    # ─── Field Extraction ─────────────────────────────────────

    def extract_fields(self, text: str, diag: Optional[Diagnostics] = None) -> List[str]:
        """Always returns exactly 9 fields, or raises ParseError."""
        diag = diag if diag is not None else Diagnostics()
        text = text.replace("\x00", "")

        match = find_record(text)
        if match:
            diag.pattern_matched = True
            diag.field_count = RECORD_FIELD_COUNT
            return list(match.groups())

        fields = text.split(FIELD_SEPARATOR)
        diag.field_count = len(fields)
        if len(fields) < MIN_RECORD_FIELDS:
            raise ParseError(
                f"Expected at least {MIN_RECORD_FIELDS} fields in license data, "
                f"got {len(fields)}"
            )

        if len(fields) > RECORD_FIELD_COUNT:
            diag.warnings.append(
                f"{len(fields) - RECORD_FIELD_COUNT} extra field(s) ignored"
            )
            return fields[:RECORD_FIELD_COUNT]

        if len(fields) < RECORD_FIELD_COUNT:
            diag.fields_padded = True
            fields += [""] * (RECORD_FIELD_COUNT - len(fields))
        return fields

    def _check_dates(self, fields: List[str], diag: Diagnostics) -> None:
        tokens = [fields[2]] + fields[4].split(RANGE_SEPARATOR)[:2]
        for token in tokens:
            if len(token) == 8 and token.isascii() and token.isdigit() and not is_calendar_date(token):
                diag.warnings.append(f"date token {token} is not a calendar date")

    @staticmethod
    def _as_text(data: bytes) -> str:
        return data.decode('utf-8', errors='replace')


# ═══════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════

class MGLDecoder:
    """
    License barcode decoder.

    Usage:
        decoder = MGLDecoder()
        result = decoder.decode(scanned_text)
        if result.success:
            print(result.record.person_name)
        else:
            print(result.stage, result.message)
    """

    def __init__(self, key: bytes = STATIC_ENCRYPTION_KEY,
                 max_skip_offset: int = MAX_SKIP_OFFSET,
                 min_text_length: int = MIN_RECOVERED_TEXT):
        self.key = key
        self.normalizer = InputNormalizer()
        self.cipher = XorCipher(key)
        self.decompressor = PayloadDecompressor(max_skip_offset, min_text_length)
        self.parser = RecordParser()

    # ─── Main Entry Points ────────────────────────────────────

    def decode(self, text: str, skip_cipher: bool = False) -> DecodeResult:
        """Decode scanner text (hex, base64 or raw)."""
        diag = Diagnostics(input_length=len(text))
        stage = StageDiagnostics(DecodeStage.NORMALIZE, bytes_in=len(text))
        diag.stages.append(stage)
        try:
            fmt, data = self.normalizer.classify(text)
        except Exception as e:
            return self._fail(diag, stage, e)
        diag.input_format = fmt
        self._finish(stage, data)
        logger.debug("Normalize: %d chars as %s -> %d bytes", len(text), fmt.value, len(data))
        return self._decode_from(data, diag, skip_cipher)

    def decode_bytes(self, data: bytes, skip_cipher: bool = False) -> DecodeResult:
        """Decode a payload that is already bytes."""
        diag = Diagnostics(input_length=len(data), input_format=InputFormat.BYTES)
        return self._decode_from(bytes(data), diag, skip_cipher)

    def self_test(self) -> DecodeResult:
        """Encode the known sample with this decoder's key and decode it back."""
        payload = MGLEncoder(key=self.key).encode_hex(KNOWN_SAMPLE)
        return self.decode(payload)

    # ─── Stage Threading ──────────────────────────────────────

    def _decode_from(self, data: bytes, diag: Diagnostics, skip_cipher: bool) -> DecodeResult:
        # ── Stage 2: cipher ──
        stage = StageDiagnostics(DecodeStage.CIPHER, bytes_in=len(data))
        diag.stages.append(stage)
        diag.cipher_skipped = skip_cipher
        try:
            plain = data if skip_cipher else self.cipher.decrypt(data)
        except Exception as e:
            return self._fail(diag, stage, e)
        self._finish(stage, plain)
        if plain:
            diag.header_byte = plain[0]
            diag.is_zlib_header = plain[0] == ZLIB_HEADER_BYTE
        logger.debug("Cipher: %s, first byte %s",
                     "skipped" if skip_cipher else "xor",
                     f"0x{plain[0]:02x}" if plain else "n/a")

        # ── Stage 3: decompress ──
        stage = StageDiagnostics(DecodeStage.DECOMPRESS, bytes_in=len(plain))
        diag.stages.append(stage)
        try:
            inflated, path, offset = self.decompressor.decompress_with_path(plain)
        except Exception as e:
            return self._fail(diag, stage, e)
        diag.recovery_path = path
        diag.recovery_offset = offset
        self._finish(stage, inflated)
        logger.debug("Decompress: %d -> %d bytes via %s", len(plain), len(inflated), path.value)

        # ── Stage 4: parse ──
        stage = StageDiagnostics(DecodeStage.PARSE, bytes_in=len(inflated))
        diag.stages.append(stage)
        try:
            record, image = self.parser.parse(inflated, diag)
        except Exception as e:
            return self._fail(diag, stage, e)
        stage.bytes_out = len(inflated) - (image.size if image else 0)
        stage.completed = True
        logger.debug("Parse: %d fields, image=%s", diag.field_count,
                     image.format.value if image else None)

        return DecodeSuccess(record=record, image=image, diagnostics=diag)

    @staticmethod
    def _finish(stage: StageDiagnostics, output: bytes) -> None:
        stage.bytes_out = len(output)
        stage.preview = hex_preview(output)
        stage.completed = True

    @staticmethod
    def _fail(diag: Diagnostics, stage: StageDiagnostics, exc: Exception) -> DecodeFailure:
        if not isinstance(exc, MGLError):
            exc = UnknownError(f"{type(exc).__name__}: {exc}")
        stage.error = str(exc)
        logger.warning("Decode failed at %s stage: %s", stage.stage.value, exc)
        return DecodeFailure(
            stage=stage.stage,
            message=str(exc),
            error=type(exc).__name__,
            diagnostics=diag,
        )


# ═══════════════════════════════════════════════════════════════
# CONVENIENCE FUNCTIONS
# ═══════════════════════════════════════════════════════════════

def decode_payload(text: str, skip_cipher: bool = False) -> DecodeResult:
    """Convenience: decode scanner text in one call with the static key."""
    return MGLDecoder().decode(text, skip_cipher=skip_cipher)

def normalize_input(text: str) -> bytes:
    return InputNormalizer().normalize(text)

def decompress(data: bytes) -> bytes:
    return PayloadDecompressor().decompress(data)

def parse_record(data: bytes) -> Tuple[LicenseRecord, Optional[EmbeddedImage]]:
    return RecordParser().parse(data)
