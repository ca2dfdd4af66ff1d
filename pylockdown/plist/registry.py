import functools
from typing import Callable, Dict, Optional, Type

from pylockdown.exceptions import UnknownTagError
from pylockdown.plist.nodes import ArrayNode, BooleanNode, DataNode, DateNode, DictionaryNode, FillNode, \
    IntegerNode, NullNode, PropertyNode, RealNode, StringNode, UidNode

NULL_LENGTH = 0x00
FILL_LENGTH = 0x0F
UTF16_STRING_TAG = 0x6

NodeFactory = Callable[[], PropertyNode]


class TagRegistry:
    """
    Maps wire tags to node constructors.

    Built once (see :data:`DEFAULT_TAG_REGISTRY`) and only read afterwards, so a single instance can be shared by
    every codec and thread.
    """

    def __init__(self) -> None:
        self._binary_tags: Dict[int, NodeFactory] = {}
        self._xml_tags: Dict[str, NodeFactory] = {}

    @classmethod
    def create_default(cls) -> 'TagRegistry':
        registry = cls()
        for node_type in (DictionaryNode, IntegerNode, RealNode, StringNode, ArrayNode, DataNode, DateNode, UidNode):
            registry.register(node_type)

        registry.register(StringNode, xml_tag='ustring', binary_tag=UTF16_STRING_TAG,
                          factory=functools.partial(StringNode, is_utf16=True))
        registry.register(BooleanNode, xml_tag='true', binary_tag=BooleanNode.binary_tag,
                          factory=functools.partial(BooleanNode, True))
        registry.register(BooleanNode, xml_tag='false', binary_tag=BooleanNode.binary_tag,
                          factory=functools.partial(BooleanNode, False))
        return registry

    def register(self, node_type: Type[PropertyNode], xml_tag: Optional[str] = None,
                 binary_tag: Optional[int] = None, factory: Optional[NodeFactory] = None) -> None:
        """
        Register a node variant. The first registration of a given tag wins, later ones are ignored.

        :param node_type: node variant class
        :param xml_tag: XML element name, defaults to the variant's own
        :param binary_tag: binary tag nibble, defaults to the variant's own
        :param factory: callable creating an empty node, defaults to the variant class
        """
        factory = node_type if factory is None else factory
        xml_tag = node_type.xml_tag if xml_tag is None else xml_tag
        binary_tag = node_type.binary_tag if binary_tag is None else binary_tag

        if binary_tag is not None:
            self._binary_tags.setdefault(binary_tag, factory)
        if xml_tag is not None:
            self._xml_tags.setdefault(xml_tag, factory)

    def create_by_xml_tag(self, tag: str) -> PropertyNode:
        factory = self._xml_tags.get(tag)
        if factory is None:
            raise UnknownTagError(f'Unknown node - XML tag "{tag}"')
        return factory()

    def create_by_binary_tag(self, tag: int, length: int) -> PropertyNode:
        if tag == 0 and length == NULL_LENGTH:
            return NullNode()
        if tag == 0 and length == FILL_LENGTH:
            return FillNode()
        if tag == UTF16_STRING_TAG:
            return StringNode(is_utf16=True)

        factory = self._binary_tags.get(tag)
        if factory is None:
            raise UnknownTagError(f'Unknown node - binary tag 0x{tag:x}')
        return factory()

    @staticmethod
    def create_key_node(key: str) -> StringNode:
        return StringNode(key)

    @staticmethod
    def create_length_node(length: int) -> IntegerNode:
        return IntegerNode(length)


DEFAULT_TAG_REGISTRY = TagRegistry.create_default()
