from datetime import datetime
from enum import Enum
from typing import Any

from pylockdown.exceptions import PropertyNodeTypeError
from pylockdown.plist import binary, xml_plist
from pylockdown.plist.binary import BPLIST_MAGIC
from pylockdown.plist.nodes import ArrayNode, BooleanNode, DataNode, DateNode, DictionaryNode, FillNode, \
    IntegerNode, NullNode, PropertyNode, RealNode, StringNode, Uid, UidNode
from pylockdown.plist.registry import DEFAULT_TAG_REGISTRY, TagRegistry

__all__ = [
    'PlistFormat', 'dumps', 'loads', 'dumps_native', 'loads_native', 'from_python', 'to_python', 'Uid',
    'PropertyNode', 'DictionaryNode', 'ArrayNode', 'StringNode', 'IntegerNode', 'RealNode', 'BooleanNode',
    'DataNode', 'DateNode', 'UidNode', 'NullNode', 'FillNode', 'TagRegistry', 'DEFAULT_TAG_REGISTRY',
]


class PlistFormat(Enum):
    BINARY = 'binary'
    XML = 'xml'


def dumps(node: PropertyNode, fmt: PlistFormat = PlistFormat.BINARY) -> bytes:
    if fmt == PlistFormat.BINARY:
        return binary.encode(node)
    return xml_plist.encode(node)


def loads(data: bytes, registry: TagRegistry = DEFAULT_TAG_REGISTRY) -> PropertyNode:
    """ decode a binary or XML plist, detected by the ``bplist`` magic """
    if data[:6] == BPLIST_MAGIC[:6]:
        return binary.decode(data, registry)
    return xml_plist.decode(data, registry)


def from_python(obj: Any) -> PropertyNode:
    """ build a node tree out of native python values """
    if isinstance(obj, PropertyNode):
        return obj
    if obj is None:
        return NullNode()
    # bool must be checked before int
    if isinstance(obj, bool):
        return BooleanNode(obj)
    if isinstance(obj, int):
        return IntegerNode(obj)
    if isinstance(obj, float):
        return RealNode(obj)
    if isinstance(obj, str):
        return StringNode(obj)
    if isinstance(obj, (bytes, bytearray)):
        return DataNode(bytes(obj))
    if isinstance(obj, datetime):
        return DateNode(obj)
    if isinstance(obj, Uid):
        return UidNode(obj.value)
    if isinstance(obj, dict):
        node = DictionaryNode()
        for key, value in obj.items():
            node[key] = from_python(value)
        return node
    if isinstance(obj, (list, tuple)):
        return ArrayNode([from_python(item) for item in obj])
    raise PropertyNodeTypeError(f'unrecognized type for: {obj} {type(obj)}')


def _to_python_dictionary(node: DictionaryNode) -> dict:
    return {key: to_python(value) for key, value in node.value.items()}


def _to_python_array(node: ArrayNode) -> list:
    return [to_python(item) for item in node.value]


def _to_python_uid(node: UidNode) -> Uid:
    return Uid(node.value)


def _to_python_scalar(node: PropertyNode) -> Any:
    return node.value


def _to_python_marker(node: PropertyNode) -> None:
    return None


_NATIVE_CONVERTERS = {
    DictionaryNode: _to_python_dictionary,
    ArrayNode: _to_python_array,
    StringNode: _to_python_scalar,
    IntegerNode: _to_python_scalar,
    RealNode: _to_python_scalar,
    BooleanNode: _to_python_scalar,
    DataNode: _to_python_scalar,
    DateNode: _to_python_scalar,
    UidNode: _to_python_uid,
    NullNode: _to_python_marker,
    FillNode: _to_python_marker,
}


def to_python(node: PropertyNode) -> Any:
    """ convert a node tree into native python values """
    converter = _NATIVE_CONVERTERS.get(type(node))
    if converter is None:
        raise PropertyNodeTypeError(f'deserialize error: {node}')
    return converter(node)


def dumps_native(obj: Any, fmt: PlistFormat = PlistFormat.BINARY) -> bytes:
    return dumps(from_python(obj), fmt=fmt)


def loads_native(data: bytes) -> Any:
    return to_python(loads(data))
