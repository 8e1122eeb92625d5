#!/usr/bin/env python3
"""
GX texture decoder

Decodes the base mip level of GameCube textures (as found in TEX1 chunks
and BTI files) to RGBA8 and encodes it to PNG.

GX textures are stored in tiles. Each tile covers block_w x block_h
pixels, row-major inside the tile, and tiles are laid out row-major over
the image. Images whose size isn't a multiple of the tile size are padded
up to whole tiles.

Tile sizes:
    I4, C4, CMPR          8x8
    I8, IA4, C8           8x4
    IA8, RGB565, RGB5A3,
    RGBA8, C14X2          4x4

Usage:
    python gx_texture.py model.bdl [output_dir]
"""

import io
import logging
import os
import struct
import sys
from typing import Callable, List, Optional, Tuple

from PIL import Image

from j3d_types import TexFormat, TexPalette, TextureEmbedError, TextureHeader

_log = logging.getLogger("j3d2glb.texture")

RGBA = Tuple[int, int, int, int]

TRANSPARENT = (0, 0, 0, 0)

# format: (block width, block height, bits per pixel)
BLOCK_INFO = {
    TexFormat.I4: (8, 8, 4),
    TexFormat.I8: (8, 4, 8),
    TexFormat.IA4: (8, 4, 8),
    TexFormat.IA8: (4, 4, 16),
    TexFormat.RGB565: (4, 4, 16),
    TexFormat.RGB5A3: (4, 4, 16),
    TexFormat.RGBA8: (4, 4, 32),
    TexFormat.C4: (8, 8, 4),
    TexFormat.C8: (8, 4, 8),
    TexFormat.C14X2: (4, 4, 16),
    TexFormat.CMPR: (8, 8, 4),
}


def _expand3(v: int) -> int:
    return (v << 5) | (v << 2) | (v >> 1)


def _expand4(v: int) -> int:
    return (v << 4) | v


def _expand5(v: int) -> int:
    return (v << 3) | (v >> 2)


def _expand6(v: int) -> int:
    return (v << 2) | (v >> 4)


def rgb565_to_rgba(c: int) -> RGBA:
    return (_expand5((c >> 11) & 0x1F), _expand6((c >> 5) & 0x3F), _expand5(c & 0x1F), 0xFF)


def rgb5a3_to_rgba(c: int) -> RGBA:
    """Top bit set: opaque RGB555. Otherwise ARGB3444."""
    if c & 0x8000:
        return (_expand5((c >> 10) & 0x1F), _expand5((c >> 5) & 0x1F), _expand5(c & 0x1F), 0xFF)
    return (_expand4((c >> 8) & 0x0F), _expand4((c >> 4) & 0x0F), _expand4(c & 0x0F), _expand3((c >> 12) & 0x07))


def ia8_to_rgba(c: int) -> RGBA:
    i = c & 0xFF
    return (i, i, i, c >> 8)


def i4_to_rgba(v: int) -> RGBA:
    i = _expand4(v)
    return (i, i, i, i)


def i8_to_rgba(v: int) -> RGBA:
    return (v, v, v, v)


def ia4_to_rgba(v: int) -> RGBA:
    i = _expand4(v & 0x0F)
    return (i, i, i, _expand4(v >> 4))


PALETTE_DECODERS = {
    TexPalette.IA8: ia8_to_rgba,
    TexPalette.RGB565: rgb565_to_rgba,
    TexPalette.RGB5A3: rgb5a3_to_rgba,
}


def get_texture_size(fmt: int, width: int, height: int) -> int:
    """Byte size of the base mip level, padded to whole tiles"""
    block_w, block_h, bpp = BLOCK_INFO[fmt]
    blocks_x = (width + block_w - 1) // block_w
    blocks_y = (height + block_h - 1) // block_h
    return blocks_x * blocks_y * block_w * block_h * bpp // 8


def read_palette(texture: TextureHeader) -> List[RGBA]:
    if not texture.palette_data:
        raise TextureEmbedError(f"Texture '{texture.name}' is paletted but has no palette")
    decode = PALETTE_DECODERS.get(texture.palette_format)
    if decode is None:
        raise TextureEmbedError(f"Texture '{texture.name}' has unknown palette format {texture.palette_format}")
    count = min(texture.palette_count, len(texture.palette_data) // 2)
    entries = struct.unpack_from(f'>{count}H', texture.palette_data, 0)
    return [decode(c) for c in entries]


def _decode_tiled(data: bytes, width: int, height: int, fmt: int,
                  to_rgba: Callable[[int], RGBA]) -> bytearray:
    """Decode a 4/8/16 bits per pixel tiled image, one raw value per pixel"""
    block_w, block_h, bpp = BLOCK_INFO[fmt]
    block_size = block_w * block_h * bpp // 8
    out = bytearray(width * height * 4)

    offs = 0
    for by in range(0, height, block_h):
        for bx in range(0, width, block_w):
            for i in range(block_w * block_h):
                if bpp == 4:
                    byte = data[offs + i // 2]
                    raw = (byte >> 4) if i % 2 == 0 else (byte & 0x0F)
                elif bpp == 8:
                    raw = data[offs + i]
                else:
                    raw = (data[offs + i * 2] << 8) | data[offs + i * 2 + 1]

                x = bx + i % block_w
                y = by + i // block_w
                if x < width and y < height:
                    dst = (y * width + x) * 4
                    out[dst:dst + 4] = bytes(to_rgba(raw))
            offs += block_size
    return out


def _decode_rgba8(data: bytes, width: int, height: int) -> bytearray:
    """4x4 tiles of 64 bytes: 16 AR pairs, then 16 GB pairs"""
    out = bytearray(width * height * 4)
    offs = 0
    for by in range(0, height, 4):
        for bx in range(0, width, 4):
            for i in range(16):
                x = bx + i % 4
                y = by + i // 4
                if x < width and y < height:
                    a = data[offs + i * 2]
                    r = data[offs + i * 2 + 1]
                    g = data[offs + 32 + i * 2]
                    b = data[offs + 32 + i * 2 + 1]
                    dst = (y * width + x) * 4
                    out[dst:dst + 4] = bytes((r, g, b, a))
            offs += 64
    return out


def _cmpr_palette(c0: int, c1: int) -> List[RGBA]:
    p0 = rgb565_to_rgba(c0)
    p1 = rgb565_to_rgba(c1)
    if c0 > c1:
        p2 = tuple((2 * p0[k] + p1[k]) // 3 for k in range(3)) + (0xFF,)
        p3 = tuple((p0[k] + 2 * p1[k]) // 3 for k in range(3)) + (0xFF,)
    else:
        p2 = tuple((p0[k] + p1[k]) // 2 for k in range(3)) + (0xFF,)
        p3 = TRANSPARENT
    return [p0, p1, p2, p3]


def _decode_cmpr(data: bytes, width: int, height: int) -> bytearray:
    """8x8 tiles of four 4x4 DXT1 sub-blocks with big-endian colours"""
    out = bytearray(width * height * 4)
    offs = 0
    for by in range(0, height, 8):
        for bx in range(0, width, 8):
            for sub_y in (0, 4):
                for sub_x in (0, 4):
                    c0, c1 = struct.unpack_from('>HH', data, offs)
                    palette = _cmpr_palette(c0, c1)
                    for row in range(4):
                        bits = data[offs + 4 + row]
                        for col in range(4):
                            x = bx + sub_x + col
                            y = by + sub_y + row
                            if x < width and y < height:
                                index = (bits >> (6 - col * 2)) & 0x03
                                dst = (y * width + x) * 4
                                out[dst:dst + 4] = bytes(palette[index])
                    offs += 8
    return out


def decode_texture(texture: TextureHeader) -> bytes:
    """Decode the base mip level of a texture to RGBA8 raster bytes"""
    fmt = texture.format
    if fmt not in BLOCK_INFO:
        raise TextureEmbedError(f"Texture '{texture.name}' has unsupported format 0x{fmt:X}")
    if texture.width == 0 or texture.height == 0:
        raise TextureEmbedError(f"Texture '{texture.name}' has zero size")
    if not texture.data:
        raise TextureEmbedError(f"Texture '{texture.name}' has no image data")

    width, height = texture.width, texture.height
    needed = get_texture_size(fmt, width, height)
    if len(texture.data) < needed:
        raise TextureEmbedError(
            f"Texture '{texture.name}' is truncated ({len(texture.data)} of {needed} bytes)")
    data = texture.data

    if fmt == TexFormat.RGBA8:
        return bytes(_decode_rgba8(data, width, height))
    if fmt == TexFormat.CMPR:
        return bytes(_decode_cmpr(data, width, height))

    if fmt in (TexFormat.C4, TexFormat.C8, TexFormat.C14X2):
        palette = read_palette(texture)
        mask = 0x3FFF if fmt == TexFormat.C14X2 else 0xFFFF

        def lookup(raw: int) -> RGBA:
            index = raw & mask
            return palette[index] if index < len(palette) else TRANSPARENT

        return bytes(_decode_tiled(data, width, height, fmt, lookup))

    direct = {
        TexFormat.I4: i4_to_rgba,
        TexFormat.I8: i8_to_rgba,
        TexFormat.IA4: ia4_to_rgba,
        TexFormat.IA8: ia8_to_rgba,
        TexFormat.RGB565: rgb565_to_rgba,
        TexFormat.RGB5A3: rgb5a3_to_rgba,
    }
    return bytes(_decode_tiled(data, width, height, fmt, direct[fmt]))


def encode_png(rgba: bytes, width: int, height: int) -> bytes:
    """Encode RGBA8 raster bytes as PNG"""
    expected = width * height * 4
    if len(rgba) != expected:
        raise TextureEmbedError(f"Raster is {len(rgba)} bytes, expected {expected} for {width}x{height}")
    img = Image.frombytes('RGBA', (width, height), bytes(rgba))
    buf = io.BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()


def texture_to_png(texture: TextureHeader,
                   decoder: Optional[Callable[[TextureHeader], bytes]] = None) -> bytes:
    """Decode a texture with the given decoder (default: decode_texture) and encode it to PNG"""
    try:
        rgba = (decoder or decode_texture)(texture)
    except TextureEmbedError:
        raise
    except Exception as e:
        raise TextureEmbedError(f"Could not decode texture '{texture.name}': {e}") from e
    try:
        return encode_png(rgba, texture.width, texture.height)
    except TextureEmbedError:
        raise
    except Exception as e:
        raise TextureEmbedError(f"Could not encode texture '{texture.name}': {e}") from e


def main():
    from j3d_reader import read_j3d

    if len(sys.argv) < 2:
        print(f"Usage: {sys.argv[0]} model.bdl [output_dir]")
        sys.exit(1)

    input_path = sys.argv[1]
    output_dir = sys.argv[2] if len(sys.argv) > 2 else os.path.splitext(input_path)[0] + "_textures"

    with open(input_path, 'rb') as f:
        model = read_j3d(f.read())

    if not model.textures:
        print("No TEX1 textures in model")
        return

    os.makedirs(output_dir, exist_ok=True)
    written = 0
    for i, texture in enumerate(model.textures):
        try:
            png = texture_to_png(texture)
        except TextureEmbedError as e:
            print(f"  [{i}] {texture.name}: skipped ({e})")
            continue
        out_path = os.path.join(output_dir, f"{texture.name or f'tex_{i}'}.png")
        with open(out_path, 'wb') as f:
            f.write(png)
        print(f"  [{i}] {texture.name}: {texture.width}x{texture.height} format 0x{texture.format:X}")
        written += 1

    print(f"Wrote {written} of {len(model.textures)} textures to {output_dir}")


if __name__ == "__main__":
    main()
