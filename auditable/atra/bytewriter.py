"""Growable byte buffer for WebAssembly binary output."""

from __future__ import annotations

import math
import struct


class ByteWriter:
    """Append-only buffer with LEB128 and little-endian IEEE-754 writers."""

    def __init__(self):
        self.buf = bytearray()

    def __len__(self) -> int:
        return len(self.buf)

    def byte(self, value: int) -> None:
        self.buf.append(value & 0xFF)

    def bytes(self, data) -> None:
        self.buf.extend(data)

    def u32(self, value: int) -> None:
        if value < 0:
            raise ValueError(f"u32 LEB128 requires a non-negative value, got {value}")
        while True:
            low = value & 0x7F
            value >>= 7
            if value:
                self.buf.append(low | 0x80)
            else:
                self.buf.append(low)
                return

    def sleb(self, value: int) -> None:
        """Signed LEB128; Python ints make this serve both s32 and s64."""

        while True:
            low = value & 0x7F
            value >>= 7
            done = (value == 0 and not low & 0x40) or (value == -1 and low & 0x40)
            self.buf.append(low if done else low | 0x80)
            if done:
                return

    s32 = sleb
    s64 = sleb

    def f32(self, value: float) -> None:
        try:
            self.buf.extend(struct.pack("<f", value))
        except OverflowError:
            self.buf.extend(struct.pack("<f", math.copysign(math.inf, value)))

    def f64(self, value: float) -> None:
        self.buf.extend(struct.pack("<d", value))

    def name(self, text: str) -> None:
        encoded = text.encode("utf-8")
        self.u32(len(encoded))
        self.buf.extend(encoded)

    def vector(self, items, write_item) -> None:
        """Write a length-prefixed vector, calling ``write_item(self, item)`` for each."""

        items = list(items)
        self.u32(len(items))
        for item in items:
            write_item(self, item)

    def section(self, section_id: int, content: "ByteWriter") -> None:
        self.byte(section_id)
        self.u32(len(content))
        self.buf.extend(content.buf)

    def getvalue(self) -> bytes:
        return bytes(self.buf)


def encode_u32(value: int) -> bytes:
    writer = ByteWriter()
    writer.u32(value)
    return writer.getvalue()


def encode_sleb(value: int) -> bytes:
    writer = ByteWriter()
    writer.sleb(value)
    return writer.getvalue()


__all__ = ["ByteWriter", "encode_u32", "encode_sleb"]
