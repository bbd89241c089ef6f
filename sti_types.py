import copy
from dataclasses import dataclass, field
from typing import List, Optional, Union

# ==============================================================================
# 1. Format constants
# ==============================================================================

STI_SIGNATURE = b'STCI'
HEADER_SIZE = 64
PALETTE_COLORS = 256
PALETTE_SIZE = PALETTE_COLORS * 3
SUB_HEADER_SIZE = 16
ANIMATION_RECORD_SIZE = 16

FLAG_TRANSPARENT = 0x01
FLAG_ALPHA = 0x02
FLAG_RGB = 0x04
FLAG_INDEXED = 0x08
FLAG_ZLIB = 0x10
FLAG_ETRLE = 0x20

# RGB565
RGB565_RED_MASK = 0xF800
RGB565_GREEN_MASK = 0x07E0
RGB565_BLUE_MASK = 0x001F

# ==============================================================================
# 2. Errors
# ==============================================================================

class StiError(Exception):
    """Base for every failure raised by the codec. Carries the file path when known."""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self):
        if self.path:
            return f"{self.message} ({self.path})"
        return self.message


class InvalidFormatError(StiError):
    pass


class StiIoError(StiError):
    pass


class DecompressionError(StiError):
    pass


class UnsupportedFormatError(StiError):
    pass


class EditError(StiError):
    # edit precondition failed; nothing was touched
    pass

# ==============================================================================
# 3. Header model
# ==============================================================================

@dataclass(frozen=True)
class StiFlags:
    transparent: bool = False
    alpha: bool = False
    rgb: bool = False
    indexed: bool = False
    zlib_compressed: bool = False
    etrle_compressed: bool = False

    @classmethod
    def from_int(cls, value):
        return cls(
            transparent=bool(value & FLAG_TRANSPARENT),
            alpha=bool(value & FLAG_ALPHA),
            rgb=bool(value & FLAG_RGB),
            indexed=bool(value & FLAG_INDEXED),
            zlib_compressed=bool(value & FLAG_ZLIB),
            etrle_compressed=bool(value & FLAG_ETRLE),
        )

    def to_int(self):
        value = 0
        if self.transparent: value |= FLAG_TRANSPARENT
        if self.alpha: value |= FLAG_ALPHA
        if self.rgb: value |= FLAG_RGB
        if self.indexed: value |= FLAG_INDEXED
        if self.zlib_compressed: value |= FLAG_ZLIB
        if self.etrle_compressed: value |= FLAG_ETRLE
        return value


@dataclass
class RgbLayout:
    """Header region of a 16-bit file: dimensions plus channel masks and depths."""
    height: int = 0
    width: int = 0
    red_mask: int = RGB565_RED_MASK
    green_mask: int = RGB565_GREEN_MASK
    blue_mask: int = RGB565_BLUE_MASK
    alpha_mask: int = 0
    red_depth: int = 5
    green_depth: int = 6
    blue_depth: int = 5
    alpha_depth: int = 0


@dataclass
class IndexedLayout:
    """Header region of an 8-bit file. Dimensions live in the sub-image headers."""
    palette_colors: int = PALETTE_COLORS
    num_images: int = 0
    red_depth: int = 8
    green_depth: int = 8
    blue_depth: int = 8


HeaderLayout = Union[RgbLayout, IndexedLayout]


@dataclass
class StiHeader:
    flags: StiFlags
    layout: HeaderLayout
    original_size: int = 0
    compressed_size: int = 0
    transparent_color: int = 0
    color_depth: int = 0
    app_data_size: int = 0
    signature: bytes = STI_SIGNATURE

    @property
    def is_rgb(self):
        return isinstance(self.layout, RgbLayout)

    @property
    def width(self):
        return self.layout.width if self.is_rgb else 0

    @property
    def height(self):
        return self.layout.height if self.is_rgb else 0

    @property
    def num_images(self):
        return 1 if self.is_rgb else self.layout.num_images


@dataclass
class SubImageHeader:
    data_offset: int = 0
    data_size: int = 0
    offset_x: int = 0
    offset_y: int = 0
    height: int = 0
    width: int = 0


@dataclass
class AnimationRecord:
    """
    One 16-byte application-data record. Only frame_count has a known meaning;
    the other bytes are kept verbatim.
    """
    prefix: bytes = bytes(8)
    frame_count: int = 0
    marker: int = 0
    suffix: bytes = bytes(6)

# ==============================================================================
# 4. Container model
# ==============================================================================

@dataclass
class StiImage:
    width: int
    height: int
    header: Optional[SubImageHeader] = None  # None for the 16-bit image
    raw_data: bytes = b''
    decompressed_data: Optional[bytes] = None

    @classmethod
    def with_header(cls, header):
        return cls(width=header.width, height=header.height, header=header)


@dataclass
class StiFile:
    header: StiHeader
    palette: Optional[bytes] = None
    images: List[StiImage] = field(default_factory=list)
    animation_data: List[AnimationRecord] = field(default_factory=list)

    @property
    def is_16bit(self):
        return self.header.flags.rgb and not self.header.flags.indexed

    @property
    def is_8bit(self):
        return self.header.flags.indexed and not self.header.flags.rgb

    @property
    def is_animated(self):
        return self.header.num_images > 1

    @property
    def is_compressed(self):
        return self.header.flags.etrle_compressed or self.header.flags.zlib_compressed

    def clone(self):
        """Private deep copy. Cached containers are shared and must never be edited in place."""
        return copy.deepcopy(self)
