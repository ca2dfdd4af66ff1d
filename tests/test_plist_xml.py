from datetime import datetime

import pytest

from pylockdown.exceptions import PlistFormatError, UnknownTagError
from pylockdown.plist import xml_plist
from pylockdown.plist.nodes import MAX_NESTING_DEPTH, ArrayNode, BooleanNode, DataNode, DateNode, DictionaryNode, \
    FillNode, IntegerNode, NullNode, RealNode, StringNode, UidNode

PAIR_RECORD_XML = b'''<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
\t<key>HostID</key>
\t<string>ABCD &amp; EFGH</string>
\t<key>EscrowBag</key>
\t<data>
\taGVsbG8g
\td29ybGQ=
\t</data>
\t<key>Paired</key>
\t<true/>
\t<key>Trusted</key>
\t<false/>
\t<key>Count</key>
\t<integer>-12</integer>
\t<key>Mask</key>
\t<integer>0x1F</integer>
\t<key>When</key>
\t<date>2020-05-06T07:08:09Z</date>
\t<key>Ref</key>
\t<dict>
\t\t<key>CF$UID</key>
\t\t<integer>4</integer>
\t</dict>
\t<key>Empty</key>
\t<array/>
</dict>
</plist>
'''


def test_decode_document() -> None:
    node = xml_plist.decode(PAIR_RECORD_XML)
    assert node == DictionaryNode({
        'HostID': StringNode('ABCD & EFGH'),
        'EscrowBag': DataNode(b'hello world'),
        'Paired': BooleanNode(True),
        'Trusted': BooleanNode(False),
        'Count': IntegerNode(-12),
        'Mask': IntegerNode(0x1f),
        'When': DateNode(datetime(2020, 5, 6, 7, 8, 9)),
        'Ref': UidNode(4),
        'Empty': ArrayNode(),
    })


def test_decode_without_plist_root() -> None:
    assert xml_plist.decode(b'<array><integer>1</integer><real>2.5</real></array>') == \
        ArrayNode([IntegerNode(1), RealNode(2.5)])


def test_round_trip() -> None:
    tree = DictionaryNode({
        'String': StringNode('tab\tnew\nline\rreturn <&>'),
        'Unicode': StringNode('héllo ☃'),
        'Empty': StringNode(''),
        'Integer': IntegerNode(-(1 << 40)),
        'Real': RealNode(0.1),
        'Bools': ArrayNode([BooleanNode(True), BooleanNode(False)]),
        'Data': DataNode(bytes(range(256))),
        'NoData': DataNode(b''),
        'Date': DateNode(datetime(1999, 12, 31, 23, 59, 59)),
        'Uid': UidNode(12),
        'Nested': DictionaryNode({'Inner': ArrayNode([DictionaryNode()])}),
    })
    assert xml_plist.decode(xml_plist.encode(tree)) == tree


def test_data_lines_are_wrapped() -> None:
    lines = [line.strip() for line in xml_plist.encode(DataNode(bytes(200))).decode().splitlines()]
    body = lines[lines.index('<data>') + 1:lines.index('</data>')]
    assert len(body) > 1
    assert all(len(line) <= 76 for line in body)


def test_boolean_carries_value_in_element_name() -> None:
    encoded = xml_plist.encode(ArrayNode([BooleanNode(True), BooleanNode(False)]))
    assert b'<true/>' in encoded
    assert b'<false/>' in encoded


@pytest.mark.parametrize('node', [NullNode(), FillNode(), ArrayNode([NullNode()])])
def test_markers_have_no_xml_form(node) -> None:
    with pytest.raises(PlistFormatError):
        xml_plist.encode(node)


def test_control_characters_are_rejected() -> None:
    with pytest.raises(PlistFormatError):
        xml_plist.encode(StringNode('bell\x07'))


def test_unknown_element() -> None:
    with pytest.raises(UnknownTagError):
        xml_plist.decode(b'<plist><set/></plist>')


@pytest.mark.parametrize('document', [
    b'<plist><dict><key>a</key></dict></plist>',
    b'<plist><dict><string>a</string><string>b</string></dict></plist>',
    b'<plist><integer>twelve</integer></plist>',
    b'<plist><real>x</real></plist>',
    b'<plist><date>yesterday</date></plist>',
    b'<plist><data>!!!</data></plist>',
    b'<plist><true>yes</true></plist>',
    b'<plist><string><integer>1</integer></string></plist>',
    b'<plist/>',
    b'<plist><string/><string/></plist>',
    b'<plist><dict>',
])
def test_malformed_documents(document: bytes) -> None:
    with pytest.raises(PlistFormatError):
        xml_plist.decode(document)


def nested_dictionaries(depth: int) -> DictionaryNode:
    node = DictionaryNode({'Leaf': StringNode('x')})
    for _ in range(depth - 2):
        node = DictionaryNode({'Child': node})
    return node


def test_nesting_up_to_the_limit_round_trips() -> None:
    tree = nested_dictionaries(MAX_NESTING_DEPTH)
    assert xml_plist.decode(xml_plist.encode(tree)) == tree


def test_encode_rejects_deep_nesting() -> None:
    with pytest.raises(PlistFormatError):
        xml_plist.encode(nested_dictionaries(MAX_NESTING_DEPTH + 1))


def test_decode_rejects_deep_nesting() -> None:
    document = b'<plist version="1.0">' + b'<array>' * 5000 + b'</array>' * 5000 + b'</plist>'
    with pytest.raises(PlistFormatError):
        xml_plist.decode(document)


def test_uid_is_written_as_cf_uid_dictionary() -> None:
    encoded = xml_plist.encode(UidNode(12)).decode()
    assert '<key>CF$UID</key>' in encoded
    assert '<integer>12</integer>' in encoded
    assert xml_plist.decode(encoded.encode()) == UidNode(12)
