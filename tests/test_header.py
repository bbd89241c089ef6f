"""
Unit tests for the 64-byte header codec and format flags.
"""

import pytest

from samples import FLAG_ETRLE, FLAG_INDEXED, FLAG_RGB, INDEXED_HEADER, RGB_HEADER
from sti_parser import decode_header, encode_header
from sti_types import (
    HEADER_SIZE, IndexedLayout, InvalidFormatError, RgbLayout, StiFlags, StiHeader,
)


def indexed_header_bytes(flags=FLAG_INDEXED | FLAG_ETRLE, num_images=3):
    return INDEXED_HEADER.pack(b'STCI', 100, 60, 0, flags, 256, num_images, 8, 8, 8, 8, 48)


class TestStiFlags:

    def test_all_bits_round_trip(self):
        flags = StiFlags.from_int(0x3F)
        assert all([flags.transparent, flags.alpha, flags.rgb, flags.indexed,
                    flags.zlib_compressed, flags.etrle_compressed])
        assert flags.to_int() == 0x3F

    def test_unknown_bits_are_dropped(self):
        assert StiFlags.from_int(0x128).to_int() == 0x28


class TestDecodeHeader:

    def test_indexed_layout(self):
        header = decode_header(indexed_header_bytes())
        assert header.signature == b'STCI'
        assert header.original_size == 100
        assert header.compressed_size == 60
        assert header.flags.indexed and header.flags.etrle_compressed
        assert isinstance(header.layout, IndexedLayout)
        assert header.layout.palette_colors == 256
        assert header.num_images == 3
        assert header.color_depth == 8
        assert header.app_data_size == 48
        # dimensions live in the sub-image headers for indexed files
        assert (header.width, header.height) == (0, 0)

    def test_rgb_layout(self):
        data = RGB_HEADER.pack(b'STCI', 8, 8, 0, FLAG_RGB, 2, 4,
                               0xF800, 0x07E0, 0x001F, 0, 5, 6, 5, 0, 16, 0)
        header = decode_header(data)
        assert isinstance(header.layout, RgbLayout)
        assert (header.width, header.height) == (4, 2)
        assert header.layout.green_mask == 0x07E0
        assert header.layout.green_depth == 6
        assert header.num_images == 1
        assert header.color_depth == 16

    def test_short_buffer(self):
        with pytest.raises(InvalidFormatError, match="too small"):
            decode_header(b'STCI' + bytes(20))

    def test_bad_signature(self):
        data = b'XTCI' + indexed_header_bytes()[4:]
        with pytest.raises(InvalidFormatError, match="signature"):
            decode_header(data)

    @pytest.mark.parametrize("flags", [FLAG_RGB | FLAG_INDEXED, 0, FLAG_ETRLE])
    def test_contradictory_flags(self, flags):
        with pytest.raises(InvalidFormatError, match="RGB or indexed"):
            decode_header(indexed_header_bytes(flags=flags))


class TestEncodeHeader:

    def test_indexed_round_trip(self):
        header = StiHeader(
            flags=StiFlags(indexed=True, etrle_compressed=True),
            layout=IndexedLayout(num_images=5),
            original_size=1234, compressed_size=567, transparent_color=0,
            color_depth=8, app_data_size=80,
        )
        encoded = encode_header(header)
        assert len(encoded) == HEADER_SIZE
        assert decode_header(encoded) == header

    def test_rgb_round_trip(self):
        header = StiHeader(
            flags=StiFlags(rgb=True, transparent=True),
            layout=RgbLayout(height=480, width=640),
            original_size=640 * 480 * 2, compressed_size=640 * 480 * 2,
            color_depth=16,
        )
        encoded = encode_header(header)
        assert len(encoded) == HEADER_SIZE
        assert decode_header(encoded) == header

    def test_matches_packed_layout(self):
        raw = indexed_header_bytes()
        assert encode_header(decode_header(raw)) == raw

    def test_reserved_bytes_are_zeroed(self):
        """Non-zero padding is not preserved; the re-encoded header is canonical."""
        raw = bytearray(indexed_header_bytes())
        raw[20:24] = b'\x04\x00\x02\x00'
        raw[35] = 0x77
        raw[60] = 0x55
        header = decode_header(bytes(raw))
        encoded = encode_header(header)
        assert encoded == indexed_header_bytes()
        assert decode_header(encoded) == header

    def test_layout_must_match_flags(self):
        header = StiHeader(flags=StiFlags(rgb=True), layout=IndexedLayout())
        with pytest.raises(InvalidFormatError, match="contradicts"):
            encode_header(header)

    def test_field_overflow_is_typed(self):
        header = StiHeader(flags=StiFlags(indexed=True), layout=IndexedLayout(num_images=70000))
        with pytest.raises(InvalidFormatError, match="does not fit"):
            encode_header(header)
