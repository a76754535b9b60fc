"""
The boundary between the engine and a foreign image library.

A backend subclasses `ForeignRuntime` and supplies the operation catalog,
the raw call mechanism and a handful of introspection services. The engine
never reaches the foreign side except through these methods, and reaches
`call` only through the dispatcher.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Tuple

from gvips.gvips_datatypes import OperationSignature, EnumType


CallOutcome = Tuple[bool, Dict[str, Any], str]


class ForeignRuntime(ABC):
    """The required base class for any foreign backend driven by an Engine."""

    # -- catalog ----------------------------------------------------------

    @abstractmethod
    def lookup(self, name: str) -> OperationSignature:
        """Return the signature for `name`, or raise KeyError."""
        raise NotImplementedError

    @abstractmethod
    def operation_names(self) -> Iterable[str]:
        raise NotImplementedError

    def enum_type(self, type_tag: str) -> Optional[EnumType]:
        """Return the enum table for `type_tag`, or None if it is not an enum."""
        return None

    @abstractmethod
    def version(self) -> Tuple[int, int, int]:
        raise NotImplementedError

    # -- calls ------------------------------------------------------------

    @abstractmethod
    def call(self, name: str, args: Dict[str, Any]) -> CallOutcome:
        """Run one operation.

        `args` maps argument names to foreign values, required inputs first
        in catalog order, then any optional inputs. Returns a success flag,
        a mapping of every output the operation produced, and the foreign
        diagnostic text (empty on success).
        """
        raise NotImplementedError

    # -- loader and saver resolution ---------------------------------------

    def find_load(self, filename: str) -> Optional[str]:
        return None

    def find_load_buffer(self, data: bytes) -> Optional[str]:
        return None

    def find_save(self, filename: str) -> Optional[str]:
        return None

    def find_save_buffer(self, suffix: str) -> Optional[str]:
        return None

    # -- header metadata ---------------------------------------------------

    @abstractmethod
    def get_typeof(self, ref: Any, field: str) -> Optional[str]:
        """Type tag of a header field, or None if the field does not exist."""
        raise NotImplementedError

    @abstractmethod
    def get(self, ref: Any, field: str) -> Any:
        raise NotImplementedError

    @abstractmethod
    def set(self, ref: Any, field: str, type_tag: str, value: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove(self, ref: Any, field: str) -> bool:
        raise NotImplementedError
