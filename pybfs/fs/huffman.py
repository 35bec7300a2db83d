"""Huffman coded file name table of the FlatOut 2 and later ``bfs1`` revisions.

Every unique folder and file name is stored once, Huffman coded and
byte aligned.  The dictionary is a pre-order dump of the tree where every
node is two bytes: ``node_type`` (``0x80`` leaf, ``0x00`` branch) and a value.
A leaf's value is the decoded byte.  A branch's "1" child follows it
directly; its value is the index of the "0" child.

Codes are read least significant bit first from each byte.
"""

from __future__ import annotations

import heapq
import itertools
import struct
from collections import Counter
from dataclasses import dataclass

from ..errors import MalformedHeader
from ..util import U16_MAX, U32_MAX, U8_MAX, check_width, decode_name, encode_name

LEAF = 0x80
BRANCH = 0x00


@dataclass
class NameTable:
    names: list[str]
    offsets: list[int]
    lengths: list[int]
    dictionary: bytes
    data: bytes

    def index(self) -> dict[str, int]:
        ids = {}
        for position, name in enumerate(self.names):
            ids.setdefault(name, position)
        return ids


def read_dictionary(serialized: bytes) -> dict[int, int]:
    """Map every code (with a leading 1 bit) to the byte it decodes to."""
    codes = {}
    pending = [(1, 0)]
    visited = set()
    while pending:
        key, position = pending.pop()
        if position * 2 + 2 > len(serialized) or key > U32_MAX:
            continue
        if (key, position) in visited:
            continue
        visited.add((key, position))
        node_type, value = serialized[position * 2], serialized[position * 2 + 1]
        if node_type == LEAF:
            codes[key] = value
        else:
            pending.append(((key << 1) | 1, position + 1))
            pending.append((key << 1, value))
    return codes


def decode(data: bytes, codes: dict[int, int], length: int) -> bytes:
    if length == 0:
        return b""
    out = bytearray()
    pattern = 1
    for byte in data:
        for bit in range(8):
            pattern = (pattern << 1) | ((byte >> bit) & 1)
            value = codes.get(pattern)
            if value is not None:
                out.append(value)
                if len(out) == length:
                    return bytes(out)
                pattern = 1
            elif pattern > U32_MAX:
                raise MalformedHeader("Undecodable file name data")
    if len(out) != length:
        raise MalformedHeader("File name data ends after %d of %d characters" % (len(out), length))
    return bytes(out)


def decode_names(offsets, lengths, dictionary: bytes, data: bytes) -> list[str]:
    codes = read_dictionary(dictionary)
    names = []
    for index, (offset, length) in enumerate(zip(offsets, lengths)):
        end = offsets[index + 1] if index + 1 < len(offsets) else len(data)
        if offset > len(data) or end < offset:
            raise MalformedHeader("File name %d points outside the name data" % index, offset)
        names.append(decode_name(decode(data[offset:end], codes, length)))
    return names


def _build_tree(counts: Counter):
    sequence = itertools.count()
    heap = [(count, next(sequence), value) for value, count in sorted(counts.items())]
    if len(heap) == 1:
        # A lone symbol still needs a one bit code
        count, _, value = heap[0]
        return (value, value)
    heapq.heapify(heap)
    while len(heap) > 1:
        first_count, _, first = heapq.heappop(heap)
        second_count, _, second = heapq.heappop(heap)
        heapq.heappush(heap, (first_count + second_count, next(sequence), (first, second)))
    return heap[0][2]


def _serialize_tree(root) -> bytes:
    nodes: list[tuple[int, int]] = []

    def emit(node):
        position = len(nodes)
        if isinstance(node, int):
            nodes.append((LEAF, node))
            return
        nodes.append((BRANCH, 0))
        emit(node[0])
        zero_position = len(nodes)
        check_width("huffman dictionary index", zero_position, U8_MAX)
        nodes[position] = (BRANCH, zero_position)
        emit(node[1])

    emit(root)
    return b"".join(struct.pack("<BB", node_type, value) for node_type, value in nodes)


def _codes(root) -> dict[int, list[int]]:
    codes = {}
    pending = [(root, [])]
    while pending:
        node, bits = pending.pop()
        if isinstance(node, int):
            codes.setdefault(node, bits)
        else:
            pending.append((node[1], bits + [0]))
            pending.append((node[0], bits + [1]))
    return codes


def _pack_bits(bits: list[int]) -> bytes:
    out = bytearray((len(bits) + 7) // 8)
    for position, bit in enumerate(bits):
        if bit:
            out[position >> 3] |= 1 << (position & 7)
    return bytes(out)


def build_name_table(names: list[str]) -> NameTable:
    encoded_names = [encode_name(name) for name in names]
    counts = Counter(itertools.chain.from_iterable(encoded_names))
    if not counts:
        return NameTable(list(names), [0] * len(names), [0] * len(names), b"", b"")
    root = _build_tree(counts)
    codes = _codes(root)

    data = bytearray()
    offsets = []
    lengths = []
    for index, raw in enumerate(encoded_names):
        check_width("file name length", len(raw), U16_MAX, index)
        offsets.append(len(data))
        lengths.append(len(raw))
        data += _pack_bits([bit for value in raw for bit in codes[value]])
    return NameTable(list(names), offsets, lengths, _serialize_tree(root), bytes(data))
