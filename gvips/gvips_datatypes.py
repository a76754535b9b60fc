"""
Defines the core data types for the gvips invocation engine.

This module provides the read-only description of foreign operations
(signatures, argument specs, enum tables), the per-call records built by
the classifier, and the exception hierarchy raised by every layer.
"""

import enum
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple


# =================================================================
# Errors
# =================================================================

class VipsError(Exception):
    """Base class for every error raised by the engine.

    Carries the offending operation name and, where one is known, the
    offending argument name so callers can report the bad call precisely.
    """
    def __init__(self, message: str, operation: Optional[str] = None, argument: Optional[str] = None):
        self.message = message
        self.operation = operation
        self.argument = argument
        super().__init__(self._format())

    def _format(self) -> str:
        where = ""
        if self.operation:
            where = self.operation
            if self.argument:
                where += f".{self.argument}"
            where += ": "
        return f"{where}{self.message}"


class UnknownOperation(VipsError):
    pass


class ArityMismatch(VipsError):
    pass


class UnknownOption(VipsError):
    pass


class InvalidIndex(VipsError):
    pass


class TypeMismatch(VipsError):
    pass


class NotRectangular(TypeMismatch):
    pass


class NotNumeric(TypeMismatch):
    pass


class OperationFailed(VipsError):
    """The foreign call itself reported failure; `message` holds its diagnostic text."""
    pass


# =================================================================
# Flags and type tags
# =================================================================

class ArgumentFlags(enum.IntFlag):
    """Per-argument flags, numbered as the foreign library numbers them."""
    REQUIRED = 1
    CONSTRUCT = 2
    SET_ONCE = 4
    SET_ALWAYS = 8
    INPUT = 16
    OUTPUT = 32
    DEPRECATED = 64
    MODIFY = 128


class OperationFlags(enum.IntFlag):
    DEPRECATED = 8


IMAGE_TYPE = "VipsImage"
ARRAY_IMAGE_TYPE = "VipsArrayImage"
ARRAY_DOUBLE_TYPE = "VipsArrayDouble"
ARRAY_INT_TYPE = "VipsArrayInt"
BLOB_TYPE = "VipsBlob"
BOOL_TYPE = "gboolean"
INT_TYPE = "gint"
DOUBLE_TYPE = "gdouble"
STRING_TYPE = "gchararray"


# =================================================================
# Catalog records
# =================================================================

@dataclass(frozen=True)
class ArgumentSpec:
    """One argument of a foreign operation, as the catalog describes it."""
    name: str
    type: str
    flags: ArgumentFlags
    blurb: str = ""

    @property
    def py_name(self) -> str:
        """The argument name as it is spelled in Python keyword options."""
        return self.name.replace("-", "_")

    @property
    def is_input(self) -> bool:
        return bool(self.flags & ArgumentFlags.INPUT)

    @property
    def is_output(self) -> bool:
        # MODIFY inputs are handed back as outputs too
        return bool(self.flags & ArgumentFlags.OUTPUT) or (
            self.is_input and bool(self.flags & ArgumentFlags.MODIFY))

    @property
    def is_required(self) -> bool:
        return bool(self.flags & ArgumentFlags.REQUIRED)

    @property
    def is_deprecated(self) -> bool:
        return bool(self.flags & ArgumentFlags.DEPRECATED)

    @property
    def is_modify(self) -> bool:
        return bool(self.flags & ArgumentFlags.MODIFY)


@dataclass(frozen=True)
class OperationSignature:
    """The read-only signature of a cataloged operation."""
    nickname: str
    arguments: Tuple[ArgumentSpec, ...]
    description: str = ""
    flags: OperationFlags = OperationFlags(0)

    @property
    def is_deprecated(self) -> bool:
        return bool(self.flags & OperationFlags.DEPRECATED)

    def argument(self, name: str) -> Optional[ArgumentSpec]:
        name = name.replace("-", "_")
        for spec in self.arguments:
            if spec.py_name == name:
                return spec
        return None


class EnumType:
    """A foreign enumeration: an ordered table of nicks and their ordinals."""
    def __init__(self, name: str, values: Dict[str, int]):
        self.name = name
        self.values: Dict[str, int] = dict(values)
        self._nicks: Dict[int, str] = {v: k for k, v in self.values.items()}

    def nick(self, ordinal: int) -> str:
        return self._nicks[ordinal]

    def ordinal(self, nick: str) -> int:
        return self.values[self.normalize(nick)]

    def normalize(self, nick: str) -> str:
        if nick in self.values:
            return nick
        alt = nick.replace("_", "-")
        if alt in self.values:
            return alt
        return nick.replace("-", "_")

    def __contains__(self, item: Any) -> bool:
        if isinstance(item, bool):
            return False
        if isinstance(item, int):
            return item in self._nicks
        if isinstance(item, str):
            return self.normalize(item) in self.values
        return False

    def __repr__(self) -> str:
        return f"<EnumType {self.name} {list(self.values)}>"


class EnumValue(str):
    """An enum nick that also remembers its type and ordinal.

    Compares equal to its nick, to the nick spelled with `_` for `-`, and to
    its integer ordinal, so `im.format == "uchar"` and `im.format == 0` both
    hold for an 8-bit image.
    """
    def __new__(cls, enum_type: EnumType, nick: str):
        obj = super().__new__(cls, nick)
        obj.enum_type = enum_type
        obj.value = enum_type.ordinal(nick)
        return obj

    def __eq__(self, other):
        if isinstance(other, bool):
            return False
        if isinstance(other, int):
            return self.value == other
        if isinstance(other, str):
            return str.__eq__(self, other) or str.__eq__(self, other.replace("_", "-"))
        return NotImplemented

    def __ne__(self, other):
        eq = self.__eq__(other)
        return eq if eq is NotImplemented else not eq

    __hash__ = str.__hash__

    def __repr__(self) -> str:
        return f"<{self.enum_type.name} {str(self)}>"


# =================================================================
# Per-call records
# =================================================================

@dataclass
class CallRequest:
    """A single call: name, positional values, keyed options and receiver."""
    name: str
    positional: List[Any] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    receiver: Any = None


@dataclass
class Classification:
    """An operation's arguments partitioned into call buckets, in catalog order."""
    signature: OperationSignature
    required_input: List[ArgumentSpec] = field(default_factory=list)
    optional_input: Dict[str, ArgumentSpec] = field(default_factory=dict)
    required_output: List[ArgumentSpec] = field(default_factory=list)
    optional_output: Dict[str, ArgumentSpec] = field(default_factory=dict)
    receiver: Optional[ArgumentSpec] = None
    # position of the receiver among all required inputs
    receiver_index: int = -1
    deprecated: Dict[str, ArgumentSpec] = field(default_factory=dict)
    # names of inputs the operation changes in place
    modify: List[str] = field(default_factory=list)

    @property
    def all_required_input(self) -> List[ArgumentSpec]:
        """Required inputs including the receiver slot, in catalog order."""
        if self.receiver is None:
            return list(self.required_input)
        args = list(self.required_input)
        args.insert(self.receiver_index, self.receiver)
        return args


@dataclass
class BoundArguments:
    """Foreign-ready values for one call, produced by `bind`."""
    name: str
    required_input: Dict[str, Any] = field(default_factory=dict)
    optional_input: Dict[str, Any] = field(default_factory=dict)
    required_output: List[str] = field(default_factory=list)
    optional_output: List[str] = field(default_factory=list)

    def foreign_args(self) -> Dict[str, Any]:
        """The flat argument mapping handed to the foreign call, in binding order."""
        args = dict(self.required_input)
        args.update(self.optional_input)
        return args
