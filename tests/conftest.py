import struct

import pytest

from samples import make_palette, pack_indexed, pack_rgb


@pytest.fixture
def palette():
    return make_palette()


@pytest.fixture
def scenario_bytes():
    """One 4x2 ETRLE image decoding to rows [0,0,1,2] and [0,3,4,5]."""
    payload = bytes([0x82, 0x02, 0x01, 0x02, 0x00, 0x81, 0x03, 0x03, 0x04, 0x05, 0x00])
    return pack_indexed([(4, 2, payload, 0, 0)])


@pytest.fixture
def three_image_bytes():
    """Three ETRLE images of different sizes with one animation record per image."""
    images = [
        (2, 1, bytes([0x02, 0x0A, 0x0B, 0x00]), 1, -1),
        (3, 2, bytes([0x83, 0x00, 0x01, 0x07, 0x82, 0x00]), -2, 3),
        (1, 1, bytes([0x01, 0x2A, 0x00]), 0, 0),
    ]
    animation = (
        bytes(range(1, 9)) + bytes([8, 2]) + bytes(6)
        + bytes(8) + bytes([0, 0]) + bytes(6)
        + bytes(8) + bytes([0, 0]) + bytes([9, 9, 9, 9, 9, 9])
    )
    return pack_indexed(images, animation=animation)


@pytest.fixture
def rgb_bytes():
    # 2x2: red, green, blue, white
    pixels = struct.pack('<4H', 0xF800, 0x07E0, 0x001F, 0xFFFF)
    return pack_rgb(2, 2, pixels)


@pytest.fixture
def write_file(tmp_path):
    def _write(name, data):
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)
    return _write
