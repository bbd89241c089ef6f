import logging

import numpy as np

from sti_types import DecompressionError, InvalidFormatError

logger = logging.getLogger(__name__)

ROW_END = 0x00
TRANSPARENT_BIT = 0x80
COUNT_MASK = 0x7F
MAX_RUN = 127


class EtrleCodec:
    """
    ETRLE row codec for one indexed image.

    Control bytes:
        0x00          end of row, rest of the row is transparent
        0x80 | n      n transparent (zero) pixels
        n (1..127)    n literal pixel bytes follow
    """

    def __init__(self, width, height):
        self.width = int(width)
        self.height = int(height)

    def decompress(self, data):
        w, h = self.width, self.height
        img_mat = np.zeros((h, w), dtype=np.uint8)
        ptr = 0
        row = 0
        col = 0
        data_len = len(data)

        while ptr < data_len and row < h:
            ctrl = data[ptr]
            ptr += 1

            if ctrl == ROW_END:
                row += 1
                col = 0
                continue

            count = ctrl & COUNT_MASK
            if ctrl & TRANSPARENT_BIT:
                if col + count > w:
                    raise DecompressionError(
                        f"Transparent run of {count} at column {col} exceeds row width {w} (row {row})")
                col += count
            else:
                if ptr + count > data_len:
                    raise DecompressionError(
                        f"Literal run of {count} needs {ptr + count - data_len} more bytes (row {row})")
                if col + count > w:
                    raise DecompressionError(
                        f"Literal run of {count} at column {col} exceeds row width {w} (row {row})")
                img_mat[row, col:col + count] = np.frombuffer(data, dtype=np.uint8, count=count, offset=ptr)
                ptr += count
                col += count

        if row < h:
            logger.debug("[ETRLE] Stream ended at row %d of %d, padded with transparent pixels", row, h)
        return img_mat.tobytes()

    def compress(self, pixels):
        w, h = self.width, self.height
        if len(pixels) != w * h:
            raise InvalidFormatError(
                f"Pixel data size {len(pixels)} doesn't match image dimensions {w}x{h}")

        arr = np.frombuffer(bytes(pixels), dtype=np.uint8)
        out = bytearray()
        for r in range(h):
            self._compress_row(arr[r * w:(r + 1) * w], out)
            out.append(ROW_END)
        return bytes(out)

    def _compress_row(self, row, out):
        if len(row) == 0:
            return
        opaque = row != 0
        # indices where a zero run turns into a literal run or back
        cuts = np.flatnonzero(opaque[1:] != opaque[:-1]) + 1
        starts = np.concatenate(([0], cuts))
        ends = np.concatenate((cuts, [len(row)]))

        for start, end in zip(starts, ends):
            is_literal = bool(opaque[start])
            pos = int(start)
            end = int(end)
            while pos < end:
                count = min(end - pos, MAX_RUN)
                if is_literal:
                    out.append(count)
                    out += row[pos:pos + count].tobytes()
                else:
                    out.append(TRANSPARENT_BIT | count)
                pos += count


def decompress(data, width, height):
    return EtrleCodec(width, height).decompress(data)


def compress(pixels, width, height):
    return EtrleCodec(width, height).compress(pixels)
