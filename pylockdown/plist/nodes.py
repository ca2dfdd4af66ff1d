"""
Property list node model.

A plist value is a tree of :class:`PropertyNode` variants. The set of variants is closed: the codecs dispatch on the
concrete node type and reject anything they don't know. Each variant carries the binary tag (high nibble of the
object marker) and the XML element name it is serialized as.
"""
import dataclasses
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Type, TypeVar

from pylockdown.exceptions import PropertyNodeTypeError

APPLE_EPOCH = datetime(2001, 1, 1)
# deepest node (root is at depth 1) either codec reads or writes
MAX_NESTING_DEPTH = 128

NodeT = TypeVar('NodeT', bound='PropertyNode')


@dataclasses.dataclass(frozen=True)
class Uid:
    """ native counterpart of :class:`UidNode` (archiver object reference) """
    value: int


@dataclasses.dataclass
class PropertyNode:
    binary_tag = None  # type: Optional[int]
    xml_tag = None  # type: Optional[str]

    def _expect(self, node_type: Type[NodeT]) -> NodeT:
        if not isinstance(self, node_type):
            raise PropertyNodeTypeError(f'expected {node_type.__name__}, got {type(self).__name__}')
        return self

    def as_dict(self) -> Dict[str, 'PropertyNode']:
        return self._expect(DictionaryNode).value

    def as_array(self) -> List['PropertyNode']:
        return self._expect(ArrayNode).value

    def as_string(self) -> str:
        return self._expect(StringNode).value

    def as_integer(self) -> int:
        return self._expect(IntegerNode).value

    def as_real(self) -> float:
        return self._expect(RealNode).value

    def as_boolean(self) -> bool:
        return self._expect(BooleanNode).value

    def as_data(self) -> bytes:
        return self._expect(DataNode).value

    def as_date(self) -> datetime:
        return self._expect(DateNode).value

    def as_uid(self) -> int:
        return self._expect(UidNode).value


@dataclasses.dataclass
class DictionaryNode(PropertyNode):
    binary_tag = 0xD
    xml_tag = 'dict'

    value: Dict[str, PropertyNode] = dataclasses.field(default_factory=dict)

    def __getitem__(self, key: str) -> PropertyNode:
        return self.value[key]

    def __setitem__(self, key: str, node: PropertyNode) -> None:
        if not isinstance(key, str):
            raise PropertyNodeTypeError(f'dictionary keys must be strings, got {type(key).__name__}')
        if not isinstance(node, PropertyNode):
            raise PropertyNodeTypeError(f'dictionary values must be property nodes, got {type(node).__name__}')
        self.value[key] = node

    def __contains__(self, key: str) -> bool:
        return key in self.value

    def __iter__(self) -> Iterator[str]:
        return iter(self.value)

    def __len__(self) -> int:
        return len(self.value)

    def get(self, key: str, default: Optional[PropertyNode] = None) -> Optional[PropertyNode]:
        return self.value.get(key, default)

    def items(self):
        return self.value.items()


@dataclasses.dataclass
class ArrayNode(PropertyNode):
    binary_tag = 0xA
    xml_tag = 'array'

    value: List[PropertyNode] = dataclasses.field(default_factory=list)

    def __getitem__(self, index: int) -> PropertyNode:
        return self.value[index]

    def __iter__(self) -> Iterator[PropertyNode]:
        return iter(self.value)

    def __len__(self) -> int:
        return len(self.value)

    def append(self, node: PropertyNode) -> None:
        if not isinstance(node, PropertyNode):
            raise PropertyNodeTypeError(f'array items must be property nodes, got {type(node).__name__}')
        self.value.append(node)


@dataclasses.dataclass
class StringNode(PropertyNode):
    binary_tag = 0x5
    xml_tag = 'string'

    value: str = ''
    # encoding detail only, two strings with the same text are equal
    is_utf16: bool = dataclasses.field(default=False, compare=False)

    @property
    def needs_utf16(self) -> bool:
        return self.is_utf16 or not self.value.isascii()


@dataclasses.dataclass
class IntegerNode(PropertyNode):
    binary_tag = 0x1
    xml_tag = 'integer'

    value: int = 0


@dataclasses.dataclass
class RealNode(PropertyNode):
    binary_tag = 0x2
    xml_tag = 'real'

    value: float = 0.0


@dataclasses.dataclass
class BooleanNode(PropertyNode):
    # the XML element name is the value itself (<true/> or <false/>)
    binary_tag = 0x0

    value: bool = False


@dataclasses.dataclass
class DataNode(PropertyNode):
    binary_tag = 0x4
    xml_tag = 'data'

    value: bytes = b''


@dataclasses.dataclass
class DateNode(PropertyNode):
    binary_tag = 0x3
    xml_tag = 'date'

    value: datetime = APPLE_EPOCH


@dataclasses.dataclass
class UidNode(PropertyNode):
    binary_tag = 0x8

    value: int = 0


@dataclasses.dataclass
class NullNode(PropertyNode):
    binary_tag = 0x0


@dataclasses.dataclass
class FillNode(PropertyNode):
    binary_tag = 0x0
