import logging
import os
import shutil
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Tuple

from sti_parser import StiParser
from sti_types import (
    PALETTE_COLORS, AnimationRecord, EditError, IndexedLayout, InvalidFormatError,
    RgbLayout, StiFile, StiFlags, StiHeader, StiImage, StiIoError, SubImageHeader,
)

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"

# ==============================================================================
# 1. Editable snapshot
# ==============================================================================

@dataclass
class EditableImage:
    width: int
    height: int
    data: bytes  # palette indices (8-bit) or little-endian RGB565 (16-bit)
    offset_x: int = 0
    offset_y: int = 0


@dataclass
class EditableSti:
    is_8bit: bool
    is_16bit: bool
    palette: Optional[List[Tuple[int, int, int]]]
    images: List[EditableImage]
    transparent_color: int = 0
    flags: int = 0
    animation_data: List[AnimationRecord] = field(default_factory=list)
    file_path: str = ""


def to_editable(sti, file_path=""):
    palette = None
    if sti.palette is not None:
        p = sti.palette
        palette = [(p[i], p[i + 1], p[i + 2]) for i in range(0, len(p), 3)]

    images = []
    for image in sti.images:
        sub = image.header
        images.append(EditableImage(
            width=image.width,
            height=image.height,
            data=bytes(image.decompressed_data or b''),
            offset_x=sub.offset_x if sub else 0,
            offset_y=sub.offset_y if sub else 0,
        ))

    return EditableSti(
        is_8bit=sti.is_8bit,
        is_16bit=sti.is_16bit,
        palette=palette,
        images=images,
        transparent_color=sti.header.transparent_color,
        flags=sti.header.flags.to_int(),
        animation_data=[replace(r) for r in sti.animation_data],
        file_path=os.fspath(file_path),
    )


def _palette_bytes(palette):
    if len(palette) != PALETTE_COLORS:
        raise InvalidFormatError(f"Palette must have {PALETTE_COLORS} colors, got {len(palette)}")
    out = bytearray()
    for idx, color in enumerate(palette):
        if not isinstance(color, (tuple, list)) or len(color) != 3 or \
                not all(isinstance(c, int) and 0 <= c <= 255 for c in color):
            raise InvalidFormatError(f"Palette entry {idx} {color!r} is not an RGB triple in 0..255")
        out += bytes(color)
    return bytes(out)


def _check_editable_image(image, bytes_per_pixel, idx):
    if not (0 <= image.width <= 0xFFFF and 0 <= image.height <= 0xFFFF):
        raise InvalidFormatError(f"Image {idx} size {image.width}x{image.height} outside 0..65535")
    if not (-0x8000 <= image.offset_x <= 0x7FFF and -0x8000 <= image.offset_y <= 0x7FFF):
        raise InvalidFormatError(
            f"Image {idx} offset ({image.offset_x}, {image.offset_y}) outside -32768..32767")
    expected = image.width * image.height * bytes_per_pixel
    if len(image.data) != expected:
        raise InvalidFormatError(
            f"Image {idx} data is {len(image.data)} bytes, expected {expected} "
            f"for {image.width}x{image.height}")


def from_editable(snapshot):
    """
    Rebuild a StiFile from an edited snapshot. Sub-header offsets and sizes are
    placeholders until StiParser.assemble() lays the file out.
    """
    if snapshot.is_8bit == snapshot.is_16bit:
        raise InvalidFormatError("Snapshot must be exactly one of 8-bit or 16-bit")

    flags = replace(StiFlags.from_int(snapshot.flags), rgb=snapshot.is_16bit, indexed=snapshot.is_8bit)

    if snapshot.is_8bit:
        if snapshot.palette is None:
            raise InvalidFormatError("8-bit STI file requires palette")
        palette = _palette_bytes(snapshot.palette)
        images = []
        for idx, img in enumerate(snapshot.images):
            _check_editable_image(img, 1, idx)
            sub = SubImageHeader(offset_x=img.offset_x, offset_y=img.offset_y,
                                 height=img.height, width=img.width)
            images.append(StiImage(width=img.width, height=img.height, header=sub,
                                   decompressed_data=bytes(img.data)))
        header = StiHeader(
            flags=flags,
            layout=IndexedLayout(num_images=len(images)),
            transparent_color=snapshot.transparent_color,
            color_depth=8,
        )
        return StiFile(header=header, palette=palette, images=images,
                       animation_data=[replace(r) for r in snapshot.animation_data])

    if len(snapshot.images) != 1:
        raise InvalidFormatError(f"16-bit STI file requires exactly one image, got {len(snapshot.images)}")
    img = snapshot.images[0]
    _check_editable_image(img, 2, 0)
    header = StiHeader(
        flags=flags,
        layout=RgbLayout(height=img.height, width=img.width),
        transparent_color=snapshot.transparent_color,
        color_depth=16,
    )
    image = StiImage(width=img.width, height=img.height, decompressed_data=bytes(img.data))
    return StiFile(header=header, images=[image])

# ==============================================================================
# 2. Editor (structural edits, save, backup, restore)
# ==============================================================================

class StiEditor:
    """
    Edits go through a private clone of the cached file and end in save(),
    which encodes the new bytes, backs up the old file, writes and evicts the
    cache entry.
    """

    def __init__(self, cache, backup_dir=None, backup_suffix=BACKUP_SUFFIX):
        self.cache = cache
        self.backup_dir = backup_dir
        self.backup_suffix = backup_suffix

    def _checkout(self, path):
        return self.cache.lookup_or_parse(path).clone()

    def _require_8bit(self, sti, action):
        if not sti.is_8bit:
            raise EditError(f"Cannot {action}: only 8-bit files hold multiple images")

    @staticmethod
    def _animation_follows_images(sti):
        return len(sti.animation_data) == len(sti.images) and len(sti.images) > 0

    def enter_edit_mode(self, path):
        return to_editable(self.cache.lookup_or_parse(path), path)

    def update_image(self, path, index, image):
        sti = self._checkout(path)
        if not 0 <= index < len(sti.images):
            raise EditError(f"Image index {index} out of bounds ({len(sti.images)} images)", path)
        _check_editable_image(image, 2 if sti.is_16bit else 1, index)

        target = sti.images[index]
        target.width, target.height = image.width, image.height
        target.decompressed_data = bytes(image.data)
        if target.header is not None:
            target.header = replace(target.header, width=image.width, height=image.height,
                                    offset_x=image.offset_x, offset_y=image.offset_y)
        return self.save(path, sti)

    def insert_image(self, path, image, index=None):
        sti = self._checkout(path)
        self._require_8bit(sti, "insert image")
        count = len(sti.images)
        if index is None:
            index = count
        if not 0 <= index <= count:
            raise EditError(f"Insert position {index} out of bounds (0..{count})", path)
        _check_editable_image(image, 1, index)

        follows = self._animation_follows_images(sti)
        sub = SubImageHeader(offset_x=image.offset_x, offset_y=image.offset_y,
                             height=image.height, width=image.width)
        sti.images.insert(index, StiImage(width=image.width, height=image.height, header=sub,
                                          decompressed_data=bytes(image.data)))
        if follows:
            sti.animation_data.insert(index, AnimationRecord())
        self.save(path, sti)
        return index

    def remove_image(self, path, index):
        return self.remove_images(path, [index])

    def remove_images(self, path, indices):
        sti = self._checkout(path)
        self._require_8bit(sti, "remove images")
        count = len(sti.images)
        indices = list(indices)
        if not indices:
            raise EditError("No image indices given", path)
        if len(set(indices)) != len(indices):
            raise EditError(f"Duplicate image indices in {indices}", path)
        for idx in indices:
            if not 0 <= idx < count:
                raise EditError(f"Image index {idx} out of bounds ({count} images)", path)
        if len(indices) >= count:
            raise EditError("Cannot remove all images", path)

        follows = self._animation_follows_images(sti)
        for idx in sorted(indices, reverse=True):
            del sti.images[idx]
            if follows:
                del sti.animation_data[idx]
        return self.save(path, sti)

    def reorder_images(self, path, new_order):
        """new_order[i] is the current index of the image that moves to position i."""
        sti = self._checkout(path)
        self._require_8bit(sti, "reorder images")
        new_order = list(new_order)
        if sorted(new_order) != list(range(len(sti.images))):
            raise EditError(
                f"New order {new_order} is not a permutation of {len(sti.images)} images", path)

        if self._animation_follows_images(sti):
            sti.animation_data = [sti.animation_data[i] for i in new_order]
        sti.images = [sti.images[i] for i in new_order]
        return self.save(path, sti)

    def save_editable(self, path, snapshot):
        return self.save(path, from_editable(snapshot))

    def save(self, path, sti):
        """Assemble, back up, write, invalidate. Returns the assembled StiFile."""
        path = os.fspath(path)
        assembled = StiParser.assemble(sti)
        data = StiParser.encode(assembled)
        # nothing touches the disk until the new bytes exist
        self.backup(path)
        try:
            with open(path, 'wb') as f: f.write(data)
        except OSError as e:
            raise StiIoError(f"Failed to write file: {e.strerror or e}", path) from e
        finally:
            self.cache.invalidate(path)
        logger.info("[Success] Saved %d images (%d bytes) to %s", len(assembled.images), len(data), path)
        return assembled

    def _backup_location(self, path):
        directory = self.backup_dir or os.path.dirname(os.path.abspath(path))
        return directory, os.path.basename(path)

    def backup(self, path):
        """Timestamped copy of the file on disk; None when there is nothing to back up yet."""
        path = os.fspath(path)
        if not os.path.exists(path):
            return None
        directory, name = self._backup_location(path)
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        backup_path = os.path.join(directory, f"{name}.{stamp}{self.backup_suffix}")
        try:
            os.makedirs(directory, exist_ok=True)
            shutil.copy2(path, backup_path)
        except OSError as e:
            raise StiIoError(f"Failed to create backup: {e.strerror or e}", path) from e
        logger.info("[Backup] %s -> %s", path, backup_path)
        return backup_path

    def list_backups(self, path):
        path = os.fspath(path)
        directory, name = self._backup_location(path)
        if not os.path.isdir(directory):
            return []
        prefix = name + "."
        found = [f for f in os.listdir(directory)
                 if f.startswith(prefix) and f.endswith(self.backup_suffix)]
        return [os.path.join(directory, f) for f in sorted(found)]

    def restore(self, path, backup_path):
        path = os.fspath(path)
        backup_path = os.fspath(backup_path)
        if not os.path.isfile(backup_path):
            raise StiIoError("Backup file does not exist", backup_path)
        try:
            shutil.copy2(backup_path, path)
        except OSError as e:
            raise StiIoError(f"Failed to restore backup: {e.strerror or e}", path) from e
        finally:
            self.cache.invalidate(path)
        logger.info("[Restore] %s -> %s", backup_path, path)
