from datetime import datetime

import pytest

from pylockdown.exceptions import PlistFormatError, PropertyNodeTypeError, UnknownTagError
from pylockdown.plist import PlistFormat, dumps, dumps_native, from_python, loads, loads_native, to_python
from pylockdown.plist.nodes import ArrayNode, BooleanNode, DataNode, DateNode, DictionaryNode, FillNode, \
    IntegerNode, NullNode, RealNode, StringNode, Uid, UidNode
from pylockdown.plist.registry import DEFAULT_TAG_REGISTRY, TagRegistry


def test_accessors() -> None:
    node = DictionaryNode({'Key': IntegerNode(3)})
    assert node.as_dict()['Key'].as_integer() == 3
    assert StringNode('a').as_string() == 'a'
    assert DataNode(b'\x00').as_data() == b'\x00'
    assert UidNode(2).as_uid() == 2


@pytest.mark.parametrize('node, accessor', [
    (IntegerNode(1), 'as_string'),
    (StringNode('1'), 'as_integer'),
    (ArrayNode(), 'as_dict'),
    (DictionaryNode(), 'as_array'),
    (BooleanNode(True), 'as_integer'),
    (UidNode(1), 'as_integer'),
    (NullNode(), 'as_data'),
])
def test_accessor_type_mismatch(node, accessor: str) -> None:
    with pytest.raises(PropertyNodeTypeError):
        getattr(node, accessor)()


def test_type_error_is_also_builtin_type_error() -> None:
    with pytest.raises(TypeError):
        RealNode(1.0).as_date()


def test_dictionary_rejects_foreign_values() -> None:
    node = DictionaryNode()
    with pytest.raises(PropertyNodeTypeError):
        node['Key'] = 'not a node'
    with pytest.raises(PropertyNodeTypeError):
        node[1] = IntegerNode(1)
    node['Key'] = IntegerNode(1)
    assert 'Key' in node
    assert list(node) == ['Key']


def test_array_rejects_foreign_values() -> None:
    node = ArrayNode()
    with pytest.raises(PropertyNodeTypeError):
        node.append(1)
    node.append(IntegerNode(1))
    assert len(node) == 1


def test_string_equality_ignores_encoding() -> None:
    assert StringNode('abc', is_utf16=True) == StringNode('abc')
    assert StringNode('abc', is_utf16=True).needs_utf16
    assert StringNode('é').needs_utf16
    assert not StringNode('abc').needs_utf16


def test_registry_first_registration_wins() -> None:
    registry = TagRegistry()
    registry.register(IntegerNode, xml_tag='number')
    registry.register(RealNode, xml_tag='number', binary_tag=IntegerNode.binary_tag)
    assert isinstance(registry.create_by_xml_tag('number'), IntegerNode)
    assert isinstance(registry.create_by_binary_tag(IntegerNode.binary_tag, 0), IntegerNode)


def test_registry_boolean_elements() -> None:
    assert DEFAULT_TAG_REGISTRY.create_by_xml_tag('true') == BooleanNode(True)
    assert DEFAULT_TAG_REGISTRY.create_by_xml_tag('false') == BooleanNode(False)


@pytest.mark.parametrize('tag, length, expected', [
    (0x0, 0x0, NullNode()),
    (0x0, 0xf, FillNode()),
    (0x6, 0x3, StringNode('')),
])
def test_registry_special_binary_tags(tag: int, length: int, expected) -> None:
    registry = TagRegistry()
    assert registry.create_by_binary_tag(tag, length) == expected


def test_registry_utf16_strings_are_flagged() -> None:
    assert DEFAULT_TAG_REGISTRY.create_by_binary_tag(0x6, 1).is_utf16
    assert not DEFAULT_TAG_REGISTRY.create_by_binary_tag(0x5, 1).is_utf16


def test_registry_unknown_tags() -> None:
    registry = TagRegistry()
    with pytest.raises(UnknownTagError):
        registry.create_by_binary_tag(IntegerNode.binary_tag, 0)
    with pytest.raises(UnknownTagError):
        registry.create_by_xml_tag('integer')
    with pytest.raises(PlistFormatError):
        DEFAULT_TAG_REGISTRY.create_by_binary_tag(0x7, 0)


def test_registry_key_and_length_nodes() -> None:
    assert TagRegistry.create_key_node('Key') == StringNode('Key')
    assert TagRegistry.create_length_node(20) == IntegerNode(20)


def test_from_python() -> None:
    when = datetime(2021, 1, 2, 3, 4, 5)
    node = from_python({
        'Flag': True,
        'Count': 1,
        'Ratio': 0.5,
        'Name': 'device',
        'Blob': bytearray(b'\x01'),
        'When': when,
        'Ref': Uid(3),
        'Nothing': None,
        'List': (1, 'a'),
    })
    assert node == DictionaryNode({
        'Flag': BooleanNode(True),
        'Count': IntegerNode(1),
        'Ratio': RealNode(0.5),
        'Name': StringNode('device'),
        'Blob': DataNode(b'\x01'),
        'When': DateNode(when),
        'Ref': UidNode(3),
        'Nothing': NullNode(),
        'List': ArrayNode([IntegerNode(1), StringNode('a')]),
    })


def test_from_python_keeps_nodes() -> None:
    node = IntegerNode(7)
    assert from_python(node) is node


@pytest.mark.parametrize('value', [{1, 2}, object(), {1: 'a'}])
def test_from_python_unsupported(value) -> None:
    with pytest.raises(PropertyNodeTypeError):
        from_python(value)


def test_to_python() -> None:
    node = DictionaryNode({
        'Ref': UidNode(3),
        'Flags': ArrayNode([BooleanNode(False), NullNode(), FillNode()]),
        'Blob': DataNode(b'\xff'),
    })
    assert to_python(node) == {'Ref': Uid(3), 'Flags': [False, None, None], 'Blob': b'\xff'}


@pytest.mark.parametrize('fmt', list(PlistFormat))
def test_loads_detects_format(fmt: PlistFormat) -> None:
    value = {'HostID': 'ABC', 'Port': 62078, 'Certificate': b'-----BEGIN'}
    assert loads_native(dumps_native(value, fmt=fmt)) == value


def test_dumps_formats_differ() -> None:
    node = StringNode('x')
    assert dumps(node, fmt=PlistFormat.BINARY).startswith(b'bplist00')
    assert dumps(node, fmt=PlistFormat.XML).startswith(b'<?xml')
    assert loads(dumps(node, fmt=PlistFormat.XML)) == node
