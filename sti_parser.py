import json
import logging
import os
import struct
import sys
import zlib
from dataclasses import replace

import numpy as np
from PIL import Image

import etrle
from sti_types import (
    ANIMATION_RECORD_SIZE, HEADER_SIZE, PALETTE_SIZE, STI_SIGNATURE, SUB_HEADER_SIZE,
    AnimationRecord, DecompressionError, IndexedLayout, InvalidFormatError, RgbLayout,
    StiError, StiFile, StiFlags, StiHeader, StiImage, StiIoError, SubImageHeader,
    UnsupportedFormatError,
)

logger = logging.getLogger(__name__)

# ==============================================================================
# 1. Stream reader / writer (little-endian, field-level debug log)
# ==============================================================================

class StreamReader:
    def __init__(self, data, path=None):
        self.data = data
        self.cursor = 0
        self.length = len(data)
        self.path = path
        self.indent_level = 0
        self.indent_str = "    "

    def indent(self): self.indent_level += 1
    def dedent(self):
        if self.indent_level > 0: self.indent_level -= 1
    def is_eof(self): return self.cursor >= self.length
    def tell(self): return self.cursor
    def remaining(self): return self.length - self.cursor

    def _log(self, size, name, value_repr):
        if logger.isEnabledFor(logging.DEBUG):
            prefix = self.indent_str * self.indent_level
            logger.debug("[0x%08X] %s%-25s : %s", self.cursor - size, prefix, name, value_repr)

    def _need(self, size, name):
        if self.cursor + size > self.length:
            raise InvalidFormatError(
                f"Unexpected end of data reading {name} at offset {self.cursor} "
                f"(need {size}, have {self.remaining()})", self.path)

    def _unpack(self, fmt, size, name):
        self._need(size, name)
        val = struct.unpack_from(fmt, self.data, self.cursor)[0]
        self.cursor += size
        self._log(size, name, f"{val}")
        return val

    def read_u1(self, name="Uint8"): return self._unpack('<B', 1, name)
    def read_u2(self, name="Uint16"): return self._unpack('<H', 2, name)
    def read_i2(self, name="Int16"): return self._unpack('<h', 2, name)
    def read_u4(self, name="Uint32"): return self._unpack('<I', 4, name)

    def read_bytes(self, length, name="Bytes"):
        self._need(length, name)
        raw = bytes(self.data[self.cursor:self.cursor + length])
        self.cursor += length
        disp = raw[:16].hex()
        if len(raw) > 16: disp += "..."
        self._log(length, name, f"Size:{length} [{disp}]")
        return raw

    def skip(self, length, name="Skipped", check_nonzero=True):
        raw = self.read_bytes(length, name)
        if check_nonzero and any(raw):
            logger.warning("[Warn] %s holds non-zero bytes at 0x%08X, dropped on re-encode",
                           name, self.cursor - length)


class StreamWriter:
    def __init__(self):
        self.buf = bytearray()

    def tell(self): return len(self.buf)

    def _pack(self, fmt, val):
        try:
            self.buf += struct.pack(fmt, val)
        except struct.error as e:
            raise InvalidFormatError(
                f"Value {val!r} does not fit field '{fmt}' at offset {len(self.buf)}: {e}") from e

    def write_u1(self, val): self._pack('<B', val)
    def write_u2(self, val): self._pack('<H', val)
    def write_i2(self, val): self._pack('<h', val)
    def write_u4(self, val): self._pack('<I', val)
    def write_bytes(self, raw): self.buf += raw

    def pad_to(self, size):
        if len(self.buf) < size:
            self.buf += bytes(size - len(self.buf))

    def getvalue(self):
        return bytes(self.buf)


def hex_dump(data, offset=0, limit=128):
    """Hex/ASCII lines, 16 bytes per line."""
    lines = []
    chunk_size = 16
    data = data[:limit]
    for i in range(0, len(data), chunk_size):
        chunk = data[i:i + chunk_size]
        hex_part = ' '.join(f'{b:02x}' for b in chunk).ljust(chunk_size * 3)
        ascii_part = ''.join(chr(b) if 32 <= b <= 126 else '.' for b in chunk)
        lines.append(f"0x{offset + i:08X} | {hex_part} | {ascii_part}")
    return lines

# ==============================================================================
# 2. Header codec
# ==============================================================================

def _read_header(reader):
    signature = reader.read_bytes(4, "Signature")
    if signature != STI_SIGNATURE:
        raise InvalidFormatError(f"Invalid STI signature {signature!r}", reader.path)

    original_size = reader.read_u4("Original Size")
    compressed_size = reader.read_u4("Compressed Size")
    transparent_color = reader.read_u4("Transparent Color")
    flags = StiFlags.from_int(reader.read_u4("Flags"))

    reader.indent()
    if flags.rgb and not flags.indexed:
        height = reader.read_u2("Height")
        width = reader.read_u2("Width")
        layout = RgbLayout(
            height=height,
            width=width,
            red_mask=reader.read_u4("Red Mask"),
            green_mask=reader.read_u4("Green Mask"),
            blue_mask=reader.read_u4("Blue Mask"),
            alpha_mask=reader.read_u4("Alpha Mask"),
            red_depth=reader.read_u1("Red Depth"),
            green_depth=reader.read_u1("Green Depth"),
            blue_depth=reader.read_u1("Blue Depth"),
            alpha_depth=reader.read_u1("Alpha Depth"),
        )
    elif flags.indexed and not flags.rgb:
        # some writers mirror the single sub-image's size here; never read back
        reader.skip(4, "Reserved Dimensions", check_nonzero=False)
        layout = IndexedLayout(
            palette_colors=reader.read_u4("Palette Colors"),
            num_images=reader.read_u2("Num Images"),
            red_depth=reader.read_u1("Red Depth"),
            green_depth=reader.read_u1("Green Depth"),
            blue_depth=reader.read_u1("Blue Depth"),
        )
        reader.skip(11, "Reserved")
    else:
        raise InvalidFormatError(
            f"Invalid STI format flags 0x{flags.to_int():08X} - must be either RGB or indexed", reader.path)
    reader.dedent()

    color_depth = reader.read_u1("Color Depth")
    app_data_size = reader.read_u4("App Data Size")
    reader.skip(HEADER_SIZE - reader.tell(), "Header Padding")

    return StiHeader(
        flags=flags,
        layout=layout,
        original_size=original_size,
        compressed_size=compressed_size,
        transparent_color=transparent_color,
        color_depth=color_depth,
        app_data_size=app_data_size,
        signature=signature,
    )


def _write_header(writer, header):
    flags = header.flags
    layout = header.layout
    if isinstance(layout, RgbLayout) != (flags.rgb and not flags.indexed) or \
            isinstance(layout, IndexedLayout) != (flags.indexed and not flags.rgb):
        raise InvalidFormatError(
            f"Header layout {type(layout).__name__} contradicts flags 0x{flags.to_int():08X}")

    start = writer.tell()
    writer.write_bytes(header.signature)
    writer.write_u4(header.original_size)
    writer.write_u4(header.compressed_size)
    writer.write_u4(header.transparent_color)
    writer.write_u4(flags.to_int())

    if isinstance(layout, RgbLayout):
        writer.write_u2(layout.height)
        writer.write_u2(layout.width)
        writer.write_u4(layout.red_mask)
        writer.write_u4(layout.green_mask)
        writer.write_u4(layout.blue_mask)
        writer.write_u4(layout.alpha_mask)
        writer.write_u1(layout.red_depth)
        writer.write_u1(layout.green_depth)
        writer.write_u1(layout.blue_depth)
        writer.write_u1(layout.alpha_depth)
    else:
        writer.write_bytes(bytes(4))
        writer.write_u4(layout.palette_colors)
        writer.write_u2(layout.num_images)
        writer.write_u1(layout.red_depth)
        writer.write_u1(layout.green_depth)
        writer.write_u1(layout.blue_depth)
        writer.write_bytes(bytes(11))

    writer.write_u1(header.color_depth)
    writer.write_u4(header.app_data_size)
    writer.pad_to(start + HEADER_SIZE)


def decode_header(data):
    if len(data) < HEADER_SIZE:
        raise InvalidFormatError(f"File too small: {len(data)} bytes (need at least {HEADER_SIZE} for header)")
    return _read_header(StreamReader(data))


def encode_header(header):
    writer = StreamWriter()
    _write_header(writer, header)
    return writer.getvalue()

# ==============================================================================
# 3. Palette, sub-image headers, animation records
# ==============================================================================

def _read_sub_header(reader, idx):
    reader.indent()
    sub = SubImageHeader(
        data_offset=reader.read_u4(f"Img{idx}.DataOffset"),
        data_size=reader.read_u4(f"Img{idx}.DataSize"),
        offset_x=reader.read_i2(f"Img{idx}.OffsetX"),
        offset_y=reader.read_i2(f"Img{idx}.OffsetY"),
        height=reader.read_u2(f"Img{idx}.Height"),
        width=reader.read_u2(f"Img{idx}.Width"),
    )
    reader.dedent()
    return sub


def _write_sub_header(writer, sub):
    writer.write_u4(sub.data_offset)
    writer.write_u4(sub.data_size)
    writer.write_i2(sub.offset_x)
    writer.write_i2(sub.offset_y)
    writer.write_u2(sub.height)
    writer.write_u2(sub.width)


def _read_animation_record(reader, idx):
    return AnimationRecord(
        prefix=reader.read_bytes(8, f"Anim{idx}.Prefix"),
        frame_count=reader.read_u1(f"Anim{idx}.FrameCount"),
        marker=reader.read_u1(f"Anim{idx}.Marker"),
        suffix=reader.read_bytes(6, f"Anim{idx}.Suffix"),
    )


def _write_animation_record(writer, rec):
    if len(rec.prefix) != 8 or len(rec.suffix) != 6:
        raise InvalidFormatError("Animation record opaque fields must be 8 and 6 bytes")
    writer.write_bytes(rec.prefix)
    writer.write_u1(rec.frame_count)
    writer.write_u1(rec.marker)
    writer.write_bytes(rec.suffix)

# ==============================================================================
# 4. Assembler
# ==============================================================================

class StiParser:

    @staticmethod
    def parse(data, path=None):
        if len(data) < HEADER_SIZE:
            raise InvalidFormatError(
                f"File too small: {len(data)} bytes (need at least {HEADER_SIZE} for header)", path)

        reader = StreamReader(data, path)
        logger.debug(">>> STI Header")
        header = _read_header(reader)
        sti = StiFile(header=header)

        if sti.is_8bit:
            StiParser._parse_8bit(reader, sti)
        elif sti.is_16bit:
            StiParser._parse_16bit(reader, sti)
        else:
            raise UnsupportedFormatError("Unknown STI format - neither 8-bit nor 16-bit", path)

        if not reader.is_eof():
            logger.debug("[Info] %d trailing bytes ignored", reader.remaining())
        return sti

    @staticmethod
    def _parse_8bit(reader, sti):
        flags = sti.header.flags
        logger.debug(">>> Palette")
        sti.palette = reader.read_bytes(PALETTE_SIZE, "Palette")

        logger.debug(">>> Sub-image Headers")
        sub_headers = [_read_sub_header(reader, i) for i in range(sti.header.num_images)]

        logger.debug(">>> Image Data (Offset 0x%08X)", reader.tell())
        for idx, sub in enumerate(sub_headers):
            image = StiImage.with_header(sub)
            image.raw_data = reader.read_bytes(sub.data_size, f"Img{idx}.Payload")
            try:
                image.decompressed_data = StiParser._decode_payload(image, flags)
            except StiError as e:
                if e.path is None: e.path = reader.path
                raise
            sti.images.append(image)

        if sti.header.app_data_size > 0:
            count = sti.header.app_data_size // ANIMATION_RECORD_SIZE
            logger.debug(">>> Animation Data (%d records)", count)
            sti.animation_data = [_read_animation_record(reader, i) for i in range(count)]

    @staticmethod
    def _decode_payload(image, flags):
        expected = image.width * image.height
        if flags.etrle_compressed:
            return etrle.decompress(image.raw_data, image.width, image.height)
        if flags.zlib_compressed:
            try:
                pixels = zlib.decompress(image.raw_data)
            except zlib.error as e:
                raise DecompressionError(f"Corrupt zlib payload: {e}") from e
        else:
            pixels = image.raw_data
        if len(pixels) != expected:
            raise InvalidFormatError(
                f"Uncompressed payload is {len(pixels)} bytes, expected {expected} "
                f"for {image.width}x{image.height}")
        return pixels

    @staticmethod
    def _parse_16bit(reader, sti):
        w, h = sti.header.width, sti.header.height
        image = StiImage(width=w, height=h)
        logger.debug(">>> RGB565 Data (%dx%d)", w, h)
        image.raw_data = reader.read_bytes(w * h * 2, "Pixels")
        image.decompressed_data = image.raw_data
        sti.images.append(image)

    @staticmethod
    def _encode_payload(image, flags):
        pixels = image.decompressed_data
        if flags.etrle_compressed:
            return etrle.compress(pixels, image.width, image.height)
        if flags.zlib_compressed:
            return zlib.compress(bytes(pixels))
        return bytes(pixels)

    @staticmethod
    def assemble(sti):
        """
        Return a new StiFile whose raw payloads, sub-headers and header sizes are
        recomputed from each image's decompressed_data. The input is left untouched.

        Sub-header data_offset is cumulative from the start of the image-data
        section, starting at 0.
        """
        header = sti.header
        if sti.is_8bit:
            if not isinstance(header.layout, IndexedLayout):
                raise InvalidFormatError("Indexed flags require an indexed header layout")
            if sti.palette is None:
                raise InvalidFormatError("8-bit STI file requires palette")
            if len(sti.palette) != PALETTE_SIZE:
                raise InvalidFormatError(f"Palette must be {PALETTE_SIZE} bytes, got {len(sti.palette)}")

            images = []
            offset = 0
            original_size = 0
            for idx, image in enumerate(sti.images):
                _check_pixels(image, 1, idx)
                raw = StiParser._encode_payload(image, header.flags)
                sub = image.header if image.header is not None else SubImageHeader()
                sub = replace(sub, data_offset=offset, data_size=len(raw),
                              width=image.width, height=image.height)
                images.append(StiImage(width=image.width, height=image.height, header=sub,
                                       raw_data=raw, decompressed_data=bytes(image.decompressed_data)))
                offset += len(raw)
                original_size += image.width * image.height

            layout = replace(header.layout, num_images=len(images))
            new_header = replace(header, layout=layout, original_size=original_size,
                                 compressed_size=offset, color_depth=8,
                                 app_data_size=len(sti.animation_data) * ANIMATION_RECORD_SIZE)
            return StiFile(header=new_header, palette=bytes(sti.palette), images=images,
                           animation_data=[replace(r) for r in sti.animation_data])

        if sti.is_16bit:
            if not isinstance(header.layout, RgbLayout):
                raise InvalidFormatError("RGB flags require an RGB header layout")
            if len(sti.images) != 1:
                raise InvalidFormatError(f"16-bit STI file requires exactly one image, got {len(sti.images)}")
            image = sti.images[0]
            _check_pixels(image, 2, 0)
            pixels = bytes(image.decompressed_data)
            layout = replace(header.layout, width=image.width, height=image.height)
            new_header = replace(header, layout=layout, original_size=len(pixels),
                                 compressed_size=len(pixels), color_depth=16, app_data_size=0)
            new_image = StiImage(width=image.width, height=image.height, raw_data=pixels,
                                 decompressed_data=pixels)
            return StiFile(header=new_header, images=[new_image])

        raise UnsupportedFormatError("Unknown STI format for writing")

    @staticmethod
    def encode(sti):
        """Lay out an already assembled container as bytes, in file order."""
        writer = StreamWriter()
        _write_header(writer, sti.header)
        if sti.is_8bit:
            writer.write_bytes(sti.palette)
            for image in sti.images:
                _write_sub_header(writer, image.header)
            for image in sti.images:
                writer.write_bytes(image.raw_data)
            for rec in sti.animation_data:
                _write_animation_record(writer, rec)
        else:
            writer.write_bytes(sti.images[0].raw_data)
        return writer.getvalue()

    @staticmethod
    def write(sti):
        return StiParser.encode(StiParser.assemble(sti))

    @staticmethod
    def read_file(path):
        path = os.fspath(path)
        try:
            with open(path, 'rb') as f: data = f.read()
        except OSError as e:
            raise StiIoError(f"Failed to read file: {e.strerror or e}", path) from e
        try:
            return StiParser.parse(data, path)
        except StiError as e:
            if e.path is None: e.path = path
            raise

    @staticmethod
    def write_file(path, sti):
        path = os.fspath(path)
        data = StiParser.write(sti)
        try:
            with open(path, 'wb') as f: f.write(data)
        except OSError as e:
            raise StiIoError(f"Failed to write file: {e.strerror or e}", path) from e
        logger.info("[Success] Wrote %d bytes to %s", len(data), path)
        return len(data)


def _check_pixels(image, bytes_per_pixel, idx):
    expected = image.width * image.height * bytes_per_pixel
    if image.decompressed_data is None:
        raise InvalidFormatError(f"Image {idx} has no pixel data")
    if len(image.decompressed_data) != expected:
        raise InvalidFormatError(
            f"Image {idx} pixel data is {len(image.decompressed_data)} bytes, "
            f"expected {expected} for {image.width}x{image.height}")

# ==============================================================================
# 5. Export buffer & metadata
# ==============================================================================

def to_rgb_array(sti, index):
    """(height, width, 3) uint8 RGB array for one image."""
    if not 0 <= index < len(sti.images):
        raise IndexError(f"Image index {index} out of bounds ({len(sti.images)} images)")
    image = sti.images[index]
    h, w = image.height, image.width
    if image.decompressed_data is None:
        raise InvalidFormatError(f"Image {index} data not decompressed")

    if sti.is_8bit:
        if sti.palette is None:
            raise InvalidFormatError("8-bit image missing palette")
        palette = np.frombuffer(sti.palette, dtype=np.uint8).reshape((-1, 3))
        indices = np.frombuffer(image.decompressed_data, dtype=np.uint8).reshape((h, w))
        return palette[indices]

    px = np.frombuffer(image.decompressed_data, dtype='<u2').reshape((h, w))
    rgb = np.empty((h, w, 3), dtype=np.uint8)
    rgb[..., 0] = ((px >> 11) & 0x1F) << 3
    rgb[..., 1] = ((px >> 5) & 0x3F) << 2
    rgb[..., 2] = (px & 0x1F) << 3
    return rgb


def to_pil_image(sti, index):
    return Image.fromarray(to_rgb_array(sti, index))


def file_info(sti, file_size=0):
    if sti.is_16bit:
        width, height = sti.header.width, sti.header.height
    elif sti.images:
        width, height = sti.images[0].width, sti.images[0].height
    else:
        width = height = 0
    return {
        'width': width,
        'height': height,
        'num_images': sti.header.num_images,
        'is_16bit': sti.is_16bit,
        'is_8bit': sti.is_8bit,
        'is_animated': sti.is_animated,
        'is_compressed': sti.is_compressed,
        'file_size': file_size,
    }


def header_to_dict(header):
    layout = header.layout
    rgb = isinstance(layout, RgbLayout)
    return {
        'signature': header.signature.decode('ascii', errors='replace'),
        'original_size': header.original_size,
        'compressed_size': header.compressed_size,
        'transparent_color': header.transparent_color,
        'flags': {
            'transparent': header.flags.transparent,
            'alpha': header.flags.alpha,
            'rgb': header.flags.rgb,
            'indexed': header.flags.indexed,
            'zlib_compressed': header.flags.zlib_compressed,
            'etrle_compressed': header.flags.etrle_compressed,
        },
        'height': header.height,
        'width': header.width,
        'red_mask': layout.red_mask if rgb else 0,
        'green_mask': layout.green_mask if rgb else 0,
        'blue_mask': layout.blue_mask if rgb else 0,
        'alpha_mask': layout.alpha_mask if rgb else 0,
        'red_depth': layout.red_depth,
        'green_depth': layout.green_depth,
        'blue_depth': layout.blue_depth,
        'alpha_depth': layout.alpha_depth if rgb else 0,
        'palette_colors': 0 if rgb else layout.palette_colors,
        'num_images': header.num_images,
        'color_depth': header.color_depth,
        'app_data_size': header.app_data_size,
    }


def metadata_json(sti):
    return json.dumps(header_to_dict(sti.header), indent=4, sort_keys=True)


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG, format="%(message)s")
    if len(sys.argv) != 2:
        sys.exit(f"Usage: {sys.argv[0]} <sti_file>")
    try:
        parsed = StiParser.read_file(sys.argv[1])
    except StiError as e:
        sys.exit(f"[Err] {e}")
    with open(sys.argv[1], 'rb') as f: head = f.read(128)
    logger.info("\n%s", metadata_json(parsed))
    for i, img in enumerate(parsed.images):
        sub = img.header
        if sub is not None:
            logger.info("Image %d: data_offset=%d, data_size=%d, offset_x=%d, offset_y=%d, width=%d, height=%d",
                        i, sub.data_offset, sub.data_size, sub.offset_x, sub.offset_y, sub.width, sub.height)
    logger.info("First 128 bytes:\n%s", "\n".join(hex_dump(head)))
