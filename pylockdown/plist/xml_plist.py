import base64
import binascii
import re
from datetime import datetime, timezone
from typing import List
from xml.etree import ElementTree
from xml.sax.saxutils import escape

from pylockdown.exceptions import PlistFormatError
from pylockdown.plist.nodes import ArrayNode, BooleanNode, DataNode, DateNode, DictionaryNode, IntegerNode, \
    MAX_NESTING_DEPTH, PropertyNode, RealNode, StringNode, UidNode
from pylockdown.plist.registry import DEFAULT_TAG_REGISTRY, TagRegistry

PLIST_HEADER = b'''<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
'''
PLIST_FOOTER = b'</plist>\n'
DATE_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
UID_KEY = 'CF$UID'
BASE64_LINE_LENGTH = 76
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f]')


def _escape(text: str) -> str:
    if _CONTROL_CHARS.search(text) is not None:
        raise PlistFormatError(f'string contains characters that are not allowed in XML: {text!r}')
    # a bare CR would be normalized to LF by the parser
    return escape(text, {'\r': '&#13;'})


class XmlPlistEncoder:
    def __init__(self, indent: str = '\t') -> None:
        self._indent = indent
        self._writers = {
            DictionaryNode: self._write_dictionary,
            ArrayNode: self._write_array,
            StringNode: self._write_string,
            IntegerNode: self._write_integer,
            RealNode: self._write_real,
            BooleanNode: self._write_boolean,
            DataNode: self._write_data,
            DateNode: self._write_date,
            UidNode: self._write_uid,
        }
        self._lines: List[str] = []

    def encode(self, root: PropertyNode) -> bytes:
        self._lines = []
        self._write(root, 0)
        return PLIST_HEADER + '\n'.join(self._lines).encode('utf-8') + b'\n' + PLIST_FOOTER

    def _emit(self, depth: int, line: str) -> None:
        self._lines.append(self._indent * depth + line)

    def _write(self, node: PropertyNode, depth: int) -> None:
        writer = self._writers.get(type(node))
        if writer is None:
            raise PlistFormatError(f'{type(node).__name__} has no XML representation')
        if depth >= MAX_NESTING_DEPTH:
            raise PlistFormatError(f'node tree is nested deeper than {MAX_NESTING_DEPTH} levels')
        writer(node, depth)

    def _write_dictionary(self, node: DictionaryNode, depth: int) -> None:
        if not node.value:
            self._emit(depth, '<dict/>')
            return
        self._emit(depth, '<dict>')
        for key, value in node.value.items():
            self._emit(depth + 1, f'<key>{_escape(key)}</key>')
            self._write(value, depth + 1)
        self._emit(depth, '</dict>')

    def _write_array(self, node: ArrayNode, depth: int) -> None:
        if not node.value:
            self._emit(depth, '<array/>')
            return
        self._emit(depth, '<array>')
        for value in node.value:
            self._write(value, depth + 1)
        self._emit(depth, '</array>')

    def _write_string(self, node: StringNode, depth: int) -> None:
        self._emit(depth, f'<string>{_escape(node.value)}</string>')

    def _write_integer(self, node: IntegerNode, depth: int) -> None:
        self._emit(depth, f'<integer>{node.value:d}</integer>')

    def _write_real(self, node: RealNode, depth: int) -> None:
        self._emit(depth, f'<real>{node.value!r}</real>')

    def _write_boolean(self, node: BooleanNode, depth: int) -> None:
        self._emit(depth, '<true/>' if node.value else '<false/>')

    def _write_data(self, node: DataNode, depth: int) -> None:
        encoded = base64.b64encode(node.value).decode('ascii')
        if not encoded:
            self._emit(depth, '<data></data>')
            return
        self._emit(depth, '<data>')
        for i in range(0, len(encoded), BASE64_LINE_LENGTH):
            self._emit(depth, encoded[i:i + BASE64_LINE_LENGTH])
        self._emit(depth, '</data>')

    def _write_date(self, node: DateNode, depth: int) -> None:
        value = node.value
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        self._emit(depth, f'<date>{value.strftime(DATE_FORMAT)}</date>')

    def _write_uid(self, node: UidNode, depth: int) -> None:
        self._emit(depth, '<dict>')
        self._emit(depth + 1, f'<key>{UID_KEY}</key>')
        self._emit(depth + 1, f'<integer>{node.value:d}</integer>')
        self._emit(depth, '</dict>')


class XmlPlistDecoder:
    def __init__(self, registry: TagRegistry = DEFAULT_TAG_REGISTRY) -> None:
        self._registry = registry
        self._readers = {
            DictionaryNode: self._read_dictionary,
            ArrayNode: self._read_array,
            StringNode: self._read_string,
            IntegerNode: self._read_integer,
            RealNode: self._read_real,
            BooleanNode: self._read_boolean,
            DataNode: self._read_data,
            DateNode: self._read_date,
        }
        self._depth = 0

    def decode(self, data: bytes) -> PropertyNode:
        try:
            root = ElementTree.fromstring(data)
        except ElementTree.ParseError as e:
            raise PlistFormatError(f'invalid XML plist: {e}') from e

        self._depth = 0
        if root.tag != 'plist':
            return self._read_element(root)
        children = list(root)
        if len(children) != 1:
            raise PlistFormatError(f'<plist> must contain exactly one element, got {len(children)}')
        return self._read_element(children[0])

    def _read_element(self, element: ElementTree.Element) -> PropertyNode:
        node = self._registry.create_by_xml_tag(element.tag)
        reader = self._readers.get(type(node))
        if reader is None:
            raise PlistFormatError(f'{type(node).__name__} has no XML representation')
        if not isinstance(node, (DictionaryNode, ArrayNode)) and len(element):
            raise PlistFormatError(f'<{element.tag}> must not contain child elements')
        if self._depth >= MAX_NESTING_DEPTH:
            raise PlistFormatError(f'<{element.tag}> is nested deeper than {MAX_NESTING_DEPTH} levels')

        self._depth += 1
        try:
            return reader(node, element)
        finally:
            self._depth -= 1

    @staticmethod
    def _text(element: ElementTree.Element) -> str:
        return element.text or ''

    def _read_dictionary(self, node: DictionaryNode, element: ElementTree.Element) -> PropertyNode:
        children = list(element)
        if len(children) % 2:
            raise PlistFormatError('<dict> has a <key> without a value')
        for key_element, value_element in zip(children[::2], children[1::2]):
            if key_element.tag != 'key':
                raise PlistFormatError(f'expected <key> inside <dict>, got <{key_element.tag}>')
            node.value[self._text(key_element)] = self._read_element(value_element)

        uid = node.value.get(UID_KEY)
        if len(node.value) == 1 and isinstance(uid, IntegerNode):
            return UidNode(uid.value)
        return node

    def _read_array(self, node: ArrayNode, element: ElementTree.Element) -> PropertyNode:
        node.value = [self._read_element(child) for child in element]
        return node

    def _read_string(self, node: StringNode, element: ElementTree.Element) -> PropertyNode:
        node.value = self._text(element)
        return node

    def _read_integer(self, node: IntegerNode, element: ElementTree.Element) -> PropertyNode:
        text = self._text(element).strip()
        try:
            if text.lower().startswith(('0x', '-0x')):
                node.value = int(text, 16)
            else:
                node.value = int(text)
        except ValueError as e:
            raise PlistFormatError(f'invalid <integer> body: {text!r}') from e
        return node

    def _read_real(self, node: RealNode, element: ElementTree.Element) -> PropertyNode:
        text = self._text(element).strip()
        try:
            node.value = float(text)
        except ValueError as e:
            raise PlistFormatError(f'invalid <real> body: {text!r}') from e
        return node

    def _read_boolean(self, node: BooleanNode, element: ElementTree.Element) -> PropertyNode:
        if self._text(element).strip():
            raise PlistFormatError(f'<{element.tag}/> must be empty')
        return node

    def _read_data(self, node: DataNode, element: ElementTree.Element) -> PropertyNode:
        text = ''.join(self._text(element).split())
        try:
            node.value = base64.b64decode(text, validate=True)
        except binascii.Error as e:
            raise PlistFormatError(f'invalid <data> body: {e}') from e
        return node

    def _read_date(self, node: DateNode, element: ElementTree.Element) -> PropertyNode:
        text = self._text(element).strip()
        try:
            node.value = datetime.strptime(text, DATE_FORMAT)
        except ValueError as e:
            raise PlistFormatError(f'invalid <date> body: {text!r}') from e
        return node


def decode(data: bytes, registry: TagRegistry = DEFAULT_TAG_REGISTRY) -> PropertyNode:
    return XmlPlistDecoder(registry).decode(data)


def encode(node: PropertyNode) -> bytes:
    return XmlPlistEncoder().encode(node)
