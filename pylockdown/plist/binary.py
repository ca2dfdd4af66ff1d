import struct
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

from construct import Int8ub, Int64ub, Padding, StreamError, Struct

from pylockdown.exceptions import PlistFormatError
from pylockdown.plist.nodes import APPLE_EPOCH, ArrayNode, BooleanNode, DataNode, DateNode, DictionaryNode, \
    FillNode, IntegerNode, MAX_NESTING_DEPTH, NullNode, PropertyNode, RealNode, StringNode, UidNode
from pylockdown.plist.registry import DEFAULT_TAG_REGISTRY, TagRegistry

BPLIST_MAGIC = b'bplist00'
EXTENDED_LENGTH = 0x0F
BOOL_FALSE = 0x08
BOOL_TRUE = 0x09
UTF16_STRING_TAG = 0x6
INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

plist_trailer = Struct(
    Padding(6),
    'offset_size' / Int8ub,
    'ref_size' / Int8ub,
    'num_objects' / Int64ub,
    'top_object' / Int64ub,
    'offset_table_offset' / Int64ub,
)
TRAILER_SIZE = plist_trailer.sizeof()


def _min_width(value: int) -> int:
    for width in (1, 2, 4, 8):
        if value < 1 << (8 * width):
            return width
    raise PlistFormatError(f'value too large for an offset/reference: {value}')


def _to_apple_time(value: datetime) -> float:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return (value - APPLE_EPOCH).total_seconds()


class BinaryPlistDecoder:
    """
    Decode a ``bplist00`` stream into a node tree.

    The trailer locates the offset table, then the top object is resolved and every referenced object is read once
    by its index (shared references yield the same node).
    """

    def __init__(self, registry: TagRegistry = DEFAULT_TAG_REGISTRY) -> None:
        self._registry = registry
        self._readers = {
            NullNode: self._read_marker,
            FillNode: self._read_marker,
            BooleanNode: self._read_boolean,
            IntegerNode: self._read_integer,
            RealNode: self._read_real,
            DateNode: self._read_date,
            DataNode: self._read_data,
            StringNode: self._read_string,
            UidNode: self._read_uid,
            ArrayNode: self._read_array,
            DictionaryNode: self._read_dictionary,
        }
        self._data = b''
        self._limit = 0
        self._ref_size = 0
        self._offsets: List[int] = []
        self._objects: List[Optional[PropertyNode]] = []
        self._in_progress: Set[int] = set()

    def decode(self, data: bytes) -> PropertyNode:
        if len(data) < len(BPLIST_MAGIC) + TRAILER_SIZE:
            raise PlistFormatError(f'binary plist too short: {len(data)} bytes')
        if not data.startswith(BPLIST_MAGIC):
            raise PlistFormatError(f'invalid binary plist magic: {data[:len(BPLIST_MAGIC)]!r}')

        try:
            trailer = plist_trailer.parse(data[-TRAILER_SIZE:])
        except StreamError as e:
            raise PlistFormatError(f'invalid binary plist trailer: {e}') from e

        self._data = bytes(data)
        self._limit = len(data) - TRAILER_SIZE
        self._ref_size = trailer.ref_size

        if not 1 <= trailer.offset_size <= 8 or not 1 <= trailer.ref_size <= 8:
            raise PlistFormatError(f'invalid trailer widths: offset_size={trailer.offset_size} '
                                   f'ref_size={trailer.ref_size}')
        if trailer.num_objects == 0 or trailer.top_object >= trailer.num_objects:
            raise PlistFormatError(f'top object {trailer.top_object} outside of object table '
                                   f'({trailer.num_objects} objects)')

        table_start = trailer.offset_table_offset
        table_end = table_start + trailer.num_objects * trailer.offset_size
        if table_start < len(BPLIST_MAGIC) or table_end > self._limit:
            raise PlistFormatError(f'offset table [{table_start}, {table_end}) outside of stream bounds')

        self._offsets = []
        for i in range(trailer.num_objects):
            offset = self._read_uint(table_start + i * trailer.offset_size, trailer.offset_size)
            if not len(BPLIST_MAGIC) <= offset < table_start:
                raise PlistFormatError(f'object #{i} offset {offset} outside of object area')
            self._offsets.append(offset)

        self._objects = [None] * trailer.num_objects
        self._in_progress = set()
        return self._read_object(trailer.top_object)

    def _read(self, pos: int, size: int) -> bytes:
        if size < 0 or pos + size > self._limit:
            raise PlistFormatError(f'truncated payload: need {size} bytes at offset {pos}')
        return self._data[pos:pos + size]

    def _read_uint(self, pos: int, size: int) -> int:
        return int.from_bytes(self._read(pos, size), 'big')

    def _read_object(self, ref: int) -> PropertyNode:
        if ref >= len(self._offsets):
            raise PlistFormatError(f'object reference {ref} outside of object table')
        node = self._objects[ref]
        if node is not None:
            return node
        if ref in self._in_progress:
            raise PlistFormatError(f'cyclic reference to object #{ref}')
        if len(self._in_progress) >= MAX_NESTING_DEPTH:
            raise PlistFormatError(f'object #{ref} is nested deeper than {MAX_NESTING_DEPTH} levels')

        self._in_progress.add(ref)
        node = self._read_at(self._offsets[ref])
        self._in_progress.discard(ref)
        self._objects[ref] = node
        return node

    def _read_at(self, pos: int) -> PropertyNode:
        marker = self._read(pos, 1)[0]
        tag, length = marker >> 4, marker & 0x0F
        node = self._registry.create_by_binary_tag(tag, length)
        reader = self._readers.get(type(node))
        if reader is None:
            raise PlistFormatError(f'no binary reader for {type(node).__name__}')
        reader(node, length, pos + 1)
        return node

    def _read_length(self, length: int, pos: int) -> Tuple[int, int]:
        """ resolve an inline length or an extended length stored as a following Integer node """
        if length != EXTENDED_LENGTH:
            return length, pos
        marker = self._read(pos, 1)[0]
        length_node = self._registry.create_by_binary_tag(marker >> 4, marker & 0x0F)
        if not isinstance(length_node, IntegerNode):
            raise PlistFormatError(f'extended length at offset {pos} is not an integer (marker 0x{marker:02x})')
        size = 1 << (marker & 0x0F)
        if size > 8:
            raise PlistFormatError(f'extended length at offset {pos} is {size} bytes wide')
        return self._read_uint(pos + 1, size), pos + 1 + size

    def _read_refs(self, pos: int, count: int) -> List[int]:
        raw = self._read(pos, count * self._ref_size)
        return [int.from_bytes(raw[i:i + self._ref_size], 'big') for i in range(0, len(raw), self._ref_size)]

    def _read_marker(self, node: PropertyNode, length: int, pos: int) -> None:
        pass

    def _read_boolean(self, node: BooleanNode, length: int, pos: int) -> None:
        if length not in (BOOL_FALSE, BOOL_TRUE):
            raise PlistFormatError(f'invalid singleton marker 0x{length:02x} at offset {pos - 1}')
        node.value = length == BOOL_TRUE

    def _read_integer(self, node: IntegerNode, length: int, pos: int) -> None:
        size = 1 << length
        if size not in (1, 2, 4, 8, 16):
            raise PlistFormatError(f'invalid integer width {size} at offset {pos - 1}')
        # 1, 2 and 4 byte integers are unsigned, wider ones are two's complement
        node.value = int.from_bytes(self._read(pos, size), 'big', signed=size >= 8)

    def _read_real(self, node: RealNode, length: int, pos: int) -> None:
        if length == 2:
            node.value = struct.unpack('>f', self._read(pos, 4))[0]
        elif length == 3:
            node.value = struct.unpack('>d', self._read(pos, 8))[0]
        else:
            raise PlistFormatError(f'invalid real width {1 << length} at offset {pos - 1}')

    def _read_date(self, node: DateNode, length: int, pos: int) -> None:
        if length != 3:
            raise PlistFormatError(f'invalid date width {1 << length} at offset {pos - 1}')
        seconds = struct.unpack('>d', self._read(pos, 8))[0]
        try:
            node.value = APPLE_EPOCH + timedelta(seconds=seconds)
        except (OverflowError, ValueError) as e:
            raise PlistFormatError(f'date out of range at offset {pos - 1}: {seconds}') from e

    def _read_data(self, node: DataNode, length: int, pos: int) -> None:
        length, pos = self._read_length(length, pos)
        node.value = self._read(pos, length)

    def _read_string(self, node: StringNode, length: int, pos: int) -> None:
        length, pos = self._read_length(length, pos)
        try:
            if node.is_utf16:
                node.value = self._read(pos, length * 2).decode('utf-16be')
            else:
                node.value = self._read(pos, length).decode('ascii')
        except UnicodeDecodeError as e:
            raise PlistFormatError(f'invalid string payload at offset {pos}: {e}') from e

    def _read_uid(self, node: UidNode, length: int, pos: int) -> None:
        node.value = self._read_uint(pos, length + 1)

    def _read_array(self, node: ArrayNode, length: int, pos: int) -> None:
        count, pos = self._read_length(length, pos)
        node.value = [self._read_object(ref) for ref in self._read_refs(pos, count)]

    def _read_dictionary(self, node: DictionaryNode, length: int, pos: int) -> None:
        count, pos = self._read_length(length, pos)
        refs = self._read_refs(pos, count * 2)
        for key_ref, value_ref in zip(refs[:count], refs[count:]):
            key = self._read_object(key_ref)
            if not isinstance(key, StringNode):
                raise PlistFormatError(f'dictionary key object #{key_ref} is a {type(key).__name__}')
            node.value[key.value] = self._read_object(value_ref)


class BinaryPlistEncoder:
    """
    Encode a node tree as a ``bplist00`` stream.

    Equal strings, integers, data blobs, uids and booleans share one object table entry, as does a container node
    that appears more than once in the tree.
    """

    def __init__(self, registry: TagRegistry = DEFAULT_TAG_REGISTRY) -> None:
        self._registry = registry
        self._writers = {
            NullNode: self._write_null,
            FillNode: self._write_fill,
            BooleanNode: self._write_boolean,
            IntegerNode: self._write_integer,
            RealNode: self._write_real,
            DateNode: self._write_date,
            DataNode: self._write_data,
            StringNode: self._write_string,
            UidNode: self._write_uid,
            ArrayNode: self._write_array,
            DictionaryNode: self._write_dictionary,
        }
        self._objects: List[PropertyNode] = []
        self._refs: Dict[tuple, int] = {}
        self._ref_size = 1

    def encode(self, root: PropertyNode) -> bytes:
        self._objects = []
        self._refs = {}
        self._flatten(root, set())

        self._ref_size = _min_width(len(self._objects) - 1)

        out = bytearray(BPLIST_MAGIC)
        offsets = []
        for node in self._objects:
            offsets.append(len(out))
            self._writers[type(node)](out, node)

        offset_table_offset = len(out)
        offset_size = _min_width(offsets[-1])
        for offset in offsets:
            out += offset.to_bytes(offset_size, 'big')

        out += plist_trailer.build(dict(offset_size=offset_size, ref_size=self._ref_size,
                                        num_objects=len(self._objects), top_object=0,
                                        offset_table_offset=offset_table_offset))
        return bytes(out)

    @staticmethod
    def _key(node: PropertyNode) -> tuple:
        if isinstance(node, DataNode):
            return DataNode, bytes(node.value)
        if isinstance(node, (StringNode, IntegerNode, UidNode, BooleanNode)):
            return type(node), node.value
        return 'id', id(node)

    def _flatten(self, node: PropertyNode, stack: Set[int]) -> None:
        if type(node) not in self._writers:
            raise PlistFormatError(f'cannot encode {type(node).__name__} as binary plist')
        key = self._key(node)
        if key in self._refs:
            if id(node) in stack:
                raise PlistFormatError('cannot encode a cyclic node tree')
            return

        if len(stack) >= MAX_NESTING_DEPTH:
            raise PlistFormatError(f'node tree is nested deeper than {MAX_NESTING_DEPTH} levels')

        self._refs[key] = len(self._objects)
        self._objects.append(node)

        if isinstance(node, ArrayNode):
            stack.add(id(node))
            for item in node.value:
                self._flatten(item, stack)
            stack.discard(id(node))
        elif isinstance(node, DictionaryNode):
            stack.add(id(node))
            for key_name in node.value:
                self._flatten(self._registry.create_key_node(key_name), stack)
            for item in node.value.values():
                self._flatten(item, stack)
            stack.discard(id(node))

    def _ref(self, node: PropertyNode) -> bytes:
        return self._refs[self._key(node)].to_bytes(self._ref_size, 'big')

    def _write_size(self, out: bytearray, tag: int, size: int) -> None:
        if size < EXTENDED_LENGTH:
            out.append(tag << 4 | size)
        else:
            out.append(tag << 4 | EXTENDED_LENGTH)
            self._write_integer(out, self._registry.create_length_node(size))

    def _write_null(self, out: bytearray, node: NullNode) -> None:
        out.append(0x00)

    def _write_fill(self, out: bytearray, node: FillNode) -> None:
        out.append(EXTENDED_LENGTH)

    def _write_boolean(self, out: bytearray, node: BooleanNode) -> None:
        out.append(BOOL_TRUE if node.value else BOOL_FALSE)

    def _write_integer(self, out: bytearray, node: IntegerNode) -> None:
        value = node.value
        if not INT64_MIN <= value <= INT64_MAX:
            raise PlistFormatError(f'integer does not fit in 64 bits: {value}')
        if value < 0:
            out.append(0x13)
            out += struct.pack('>q', value)
        elif value < 1 << 8:
            out.append(0x10)
            out += struct.pack('>B', value)
        elif value < 1 << 16:
            out.append(0x11)
            out += struct.pack('>H', value)
        elif value < 1 << 32:
            out.append(0x12)
            out += struct.pack('>L', value)
        else:
            out.append(0x13)
            out += struct.pack('>q', value)

    def _write_real(self, out: bytearray, node: RealNode) -> None:
        out.append(0x23)
        out += struct.pack('>d', node.value)

    def _write_date(self, out: bytearray, node: DateNode) -> None:
        out.append(0x33)
        out += struct.pack('>d', _to_apple_time(node.value))

    def _write_data(self, out: bytearray, node: DataNode) -> None:
        self._write_size(out, DataNode.binary_tag, len(node.value))
        out += node.value

    def _write_string(self, out: bytearray, node: StringNode) -> None:
        if node.needs_utf16:
            encoded = node.value.encode('utf-16be')
            self._write_size(out, UTF16_STRING_TAG, len(encoded) // 2)
        else:
            encoded = node.value.encode('ascii')
            self._write_size(out, StringNode.binary_tag, len(encoded))
        out += encoded

    def _write_uid(self, out: bytearray, node: UidNode) -> None:
        if not 0 <= node.value < 1 << 64:
            raise PlistFormatError(f'uid does not fit in 64 bits: {node.value}')
        width = _min_width(node.value)
        out.append(UidNode.binary_tag << 4 | (width - 1))
        out += node.value.to_bytes(width, 'big')

    def _write_array(self, out: bytearray, node: ArrayNode) -> None:
        self._write_size(out, ArrayNode.binary_tag, len(node.value))
        for item in node.value:
            out += self._ref(item)

    def _write_dictionary(self, out: bytearray, node: DictionaryNode) -> None:
        self._write_size(out, DictionaryNode.binary_tag, len(node.value))
        for key_name in node.value:
            out += self._ref(self._registry.create_key_node(key_name))
        for item in node.value.values():
            out += self._ref(item)


def decode(data: bytes, registry: TagRegistry = DEFAULT_TAG_REGISTRY) -> PropertyNode:
    return BinaryPlistDecoder(registry).decode(data)


def encode(node: PropertyNode, registry: TagRegistry = DEFAULT_TAG_REGISTRY) -> bytes:
    return BinaryPlistEncoder(registry).encode(node)
