"""
MGL Types & Constants — Madagascar License Barcode Format v5
============================================================

Foundational type definitions, constants, enumerations, and error classes
for the license barcode decoder. This module has ZERO external dependencies
beyond the Python standard library.

Wire format:
  ciphertext = zlib(plaintext) XOR repeating(KEY)
  plaintext  = "name|id|dob|licnum|from-to|codes|vehRestr|drvRestr|sex"
               ["||IMG||" + raw image bytes]
"""

import re
import base64
from enum import Enum
from datetime import datetime
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Tuple, Union, Any

# ═══════════════════════════════════════════════════════════════
# KEY, MARKERS & VERSION
# ═══════════════════════════════════════════════════════════════

# Static XOR key shared with every barcode producer. Must stay byte-identical.
STATIC_ENCRYPTION_KEY = b"93E98969AD11D2C8162DD95DB3F69"

# Separator between the record text and the embedded photo
IMAGE_MARKER = b"||IMG||"

FIELD_SEPARATOR = "|"
RANGE_SEPARATOR = "-"
LIST_SEPARATOR = ","

RECORD_FIELD_COUNT = 9
MIN_RECORD_FIELDS = 5

# zlib streams from the producers always start with 0x78 (deflate, 32K window)
ZLIB_HEADER_BYTE = 0x78

# Fallback chain bounds
MAX_SKIP_OFFSET = 50
MIN_RECOVERED_TEXT = 20

COUNTRY_CODE = "MG"
FORMAT_VERSION = "standardized_madagascar_v5"
DECODING_FORMAT = "pipe_delimited_xor_encrypted"

# Structural shape of a record, used to salvage fields from noisy buffers.
# Case-sensitive, upper-case Latin only.
RECORD_PATTERN = re.compile(
    r"([A-Z\s]+)\|"            # name
    r"(\d+)\|"                 # national ID
    r"(\d{8})\|"               # date of birth
    r"([A-Z\d]+)\|"            # license number
    r"(\d{8}-\d{8})\|"         # validity range
    r"([A-Z,]*)\|"             # license codes
    r"([A-Z,]*)\|"             # vehicle restrictions
    r"([A-Z,]*)\|"             # driver restrictions
    r"([MF])"                  # sex
)

# A match preceded by one of these started inside a name (JEAN-PIERRE,
# O'BRIEN, Jean RAKOTO) and would cut the name short.
_NAME_CHAR = re.compile(r"[A-Za-z0-9'\-]")

_DATE_TOKEN = re.compile(r"\d{8}", re.ASCII)
_ISO_DATE = re.compile(r"(\d{4})-(\d{2})-(\d{2})", re.ASCII)


# ═══════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════

class DecodeStage(str, Enum):
    """The four ordered pipeline stages."""
    NORMALIZE   = "normalize"
    CIPHER      = "cipher"
    DECOMPRESS  = "decompress"
    PARSE       = "parse"


class InputFormat(str, Enum):
    """How the normalizer interpreted the incoming payload."""
    HEX     = "hex"
    BASE64  = "base64"
    RAW     = "raw"     # code point modulo 256 per character
    BYTES   = "bytes"   # caller already supplied bytes


class RecoveryPath(str, Enum):
    """Which decompression path produced the buffer."""
    PRIMARY     = "zlib"
    PATTERN     = "pattern_match"
    OFFSET      = "offset_retry"
    RAW_TEXT    = "raw_text"


class ImageFormat(str, Enum):
    JPEG    = "JPEG"
    PNG     = "PNG"
    UNKNOWN = "Unknown"


# ═══════════════════════════════════════════════════════════════
# ERROR CLASSES
# ═══════════════════════════════════════════════════════════════

class MGLError(Exception):
    """Base error for all license barcode operations."""
    pass

class InputFormatError(MGLError):
    """Input text could not be turned into bytes."""
    pass

class DecompressionError(MGLError):
    """Primary inflate and every fallback failed."""
    pass

class ParseError(MGLError):
    """Too few fields recovered from the decompressed text."""
    pass

class UnknownError(MGLError):
    """Unclassified failure inside a stage primitive."""
    pass

class BarcodeError(MGLError):
    """Barcode image rendering unavailable or failed."""
    pass


# ═══════════════════════════════════════════════════════════════
# UTILITY FUNCTIONS
# ═══════════════════════════════════════════════════════════════

def format_date(token: str) -> str:
    """YYYYMMDD → YYYY-MM-DD. Anything that is not 8 digits passes through."""
    if not token or not _DATE_TOKEN.fullmatch(token):
        return token
    return f"{token[0:4]}-{token[4:6]}-{token[6:8]}"


def compact_date(value: str) -> str:
    """YYYY-MM-DD → YYYYMMDD. Inverse of format_date."""
    m = _ISO_DATE.fullmatch(value or "")
    if not m:
        return value
    return "".join(m.groups())


def is_calendar_date(token: str) -> bool:
    try:
        datetime.strptime(token, "%Y%m%d")
    except ValueError:
        return False
    return True


def sniff_image_format(data: bytes) -> ImageFormat:
    """Identify an embedded photo by its leading bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return ImageFormat.JPEG
    if data[:4] == b"\x89PNG":
        return ImageFormat.PNG
    # Printable-text recovery destroys the magic bytes but keeps "JFIF"
    if "JFIF" in data[:32].decode("latin-1"):
        return ImageFormat.JPEG
    return ImageFormat.UNKNOWN


def hex_preview(data: bytes, length: int = 16) -> str:
    return " ".join(f"{b:02x}" for b in data[:length])


def split_list(token: str) -> Tuple[str, ...]:
    return tuple(token.split(LIST_SEPARATOR)) if token else ()


def find_record(text: str) -> Optional[re.Match]:
    """
    Leftmost RECORD_PATTERN match, accepted only at a field boundary.
    Returns None when the match begins partway through a name.
    """
    match = RECORD_PATTERN.search(text)
    if match is None:
        return None
    start = match.start()
    if start > 0 and _NAME_CHAR.match(text[start - 1]):
        return None
    return match


# ═══════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LicenseRecord:
    """
    One decoded driver's license.

    Wire format (pipe-delimited, 9 fields):
        name | id | dob YYYYMMDD | license number |
        from YYYYMMDD-to YYYYMMDD | codes,csv | vehicle,csv | driver,csv | sex
    """
    person_name: str
    id_number: str
    date_of_birth: str
    license_number: str
    valid_from: str
    valid_to: str
    license_codes: Tuple[str, ...] = ()
    vehicle_restrictions: Tuple[str, ...] = ()
    driver_restrictions: Tuple[str, ...] = ()
    sex: str = ""
    country: str = COUNTRY_CODE
    format_version: str = FORMAT_VERSION

    def __post_init__(self):
        # Lists passed by callers are frozen too, so records stay hashable
        for name in ('license_codes', 'vehicle_restrictions', 'driver_restrictions'):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @classmethod
    def from_fields(cls, fields: List[str]) -> 'LicenseRecord':
        """Map exactly 9 raw fields onto a record, normalizing dates."""
        if len(fields) != RECORD_FIELD_COUNT:
            raise ParseError(f"LicenseRecord needs {RECORD_FIELD_COUNT} fields, got {len(fields)}")

        validity = fields[4].split(RANGE_SEPARATOR) if fields[4] else ["", ""]
        valid_from = validity[0]
        valid_to = validity[1] if len(validity) > 1 else ""

        return cls(
            person_name=fields[0],
            id_number=fields[1],
            date_of_birth=format_date(fields[2]),
            license_number=fields[3],
            valid_from=format_date(valid_from),
            valid_to=format_date(valid_to),
            license_codes=split_list(fields[5]),
            vehicle_restrictions=split_list(fields[6]),
            driver_restrictions=split_list(fields[7]),
            sex=fields[8],
        )

    def serialize(self) -> str:
        """Rebuild the canonical pipe-delimited plaintext."""
        validity = compact_date(self.valid_from) + RANGE_SEPARATOR + compact_date(self.valid_to)
        return FIELD_SEPARATOR.join([
            self.person_name,
            self.id_number,
            compact_date(self.date_of_birth),
            self.license_number,
            validity,
            LIST_SEPARATOR.join(self.license_codes),
            LIST_SEPARATOR.join(self.vehicle_restrictions),
            LIST_SEPARATOR.join(self.driver_restrictions),
            self.sex,
        ])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EmbeddedImage:
    """Photo carried after the image marker. Length is implicit (to end of buffer)."""
    data: bytes
    format: ImageFormat

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class StageDiagnostics:
    """Byte accounting for a single pipeline stage."""
    stage: DecodeStage
    bytes_in: int = 0
    bytes_out: int = 0
    preview: str = ""
    completed: bool = False
    error: Optional[str] = None


@dataclass
class Diagnostics:
    """Per-call decode diagnostics. Built fresh for every decode."""
    input_length: int = 0
    input_format: Optional[InputFormat] = None
    cipher_skipped: bool = False
    header_byte: Optional[int] = None
    is_zlib_header: bool = False
    recovery_path: Optional[RecoveryPath] = None
    recovery_offset: Optional[int] = None
    pattern_matched: bool = False
    field_count: int = 0
    fields_padded: bool = False
    image_marker_found: bool = False
    has_image: bool = False
    image_size_bytes: int = 0
    total_payload_size: int = 0
    warnings: List[str] = field(default_factory=list)
    stages: List[StageDiagnostics] = field(default_factory=list)

    def stage(self, stage: DecodeStage) -> Optional[StageDiagnostics]:
        for entry in self.stages:
            if entry.stage == stage:
                return entry
        return None


@dataclass
class DecodeSuccess:
    record: LicenseRecord
    image: Optional[EmbeddedImage]
    diagnostics: Diagnostics
    success: bool = field(default=True, init=False)

    @property
    def has_image(self) -> bool:
        """True whenever the payload carries an image section, even an empty one."""
        return self.diagnostics.has_image

    def to_dict(self) -> Dict[str, Any]:
        """Presentation-layer view of the result."""
        result = {
            'success': True,
            'license_data': self.record.to_dict(),
            'has_image': self.has_image,
            'image_size_bytes': self.diagnostics.image_size_bytes,
            'total_payload_size': self.diagnostics.total_payload_size,
            'decoding_format': DECODING_FORMAT,
            'message': f"Madagascar license decoded successfully: {self.record.license_number}",
        }
        if self.image is not None:
            result['image_base64'] = self.image.to_base64()
            result['image_format'] = self.image.format.value
        return result


@dataclass
class DecodeFailure:
    stage: DecodeStage
    message: str
    error: str = UnknownError.__name__
    diagnostics: Optional[Diagnostics] = None
    success: bool = field(default=False, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'stage': self.stage.value,
            'decoding_format': DECODING_FORMAT,
            'message': "Failed to decode barcode data",
            'error': self.message,
            'error_kind': self.error,
        }


DecodeResult = Union[DecodeSuccess, DecodeFailure]
