"""
Conversion between Python values and foreign values.

`coerce_in` turns whatever the caller supplied into the representation a
foreign argument of a given type tag expects, and `coerce_out` turns foreign
outputs back into Python values. Narrow shapes widen by broadcasting (a
number is a 1-element array); wide shapes narrow only on an exact fit.
"""

import numbers
from typing import Any, Callable, List, Optional, Tuple

from gvips.gvips_datatypes import (
    TypeMismatch, NotRectangular, NotNumeric, EnumValue,
    IMAGE_TYPE, ARRAY_IMAGE_TYPE, ARRAY_DOUBLE_TYPE, ARRAY_INT_TYPE, BLOB_TYPE,
    BOOL_TYPE, INT_TYPE, DOUBLE_TYPE, STRING_TYPE,
)


# -----------------------------------------------------------------
# Shape helpers
# -----------------------------------------------------------------

def is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def is_image(value: Any) -> bool:
    from gvips.gvips_image import Image  # local import to avoid cycle
    return isinstance(value, Image)


def is_constant(value: Any) -> bool:
    """A number, or an arbitrarily nested sequence whose leaves are all numbers."""
    if is_sequence(value):
        return all(is_constant(x) for x in value)
    return is_number(value)


def smap(value: Any, fn: Callable[[Any], Any]) -> Any:
    """Apply fn to every scalar leaf of value, keeping the nesting."""
    if is_sequence(value):
        return [smap(x, fn) for x in value]
    return fn(value)


def shape_name(value: Any) -> str:
    if is_image(value):
        return "image"
    if value is None:
        return "None"
    if isinstance(value, bool):
        return "bool"
    if is_number(value):
        return "number"
    if is_sequence(value):
        if any(is_sequence(x) for x in value):
            return "nested sequence"
        return "sequence"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "bytes"
    return type(value).__name__


def matrix_shape(array: Any, operation: Optional[str] = None,
                 argument: Optional[str] = None) -> Tuple[int, int, List[float]]:
    """Validate a 1-D or 2-D numeric array; return (width, height, flat values).

    A 1-D array is a single row. Every row of a 2-D array must be the same
    length and every element must be a number.
    """
    if not is_sequence(array):
        raise TypeMismatch(f"expected a 1-D or 2-D array, got {shape_name(array)}",
                           operation, argument)
    if len(array) == 0:
        raise TypeMismatch("array is empty", operation, argument)

    if any(is_sequence(row) for row in array):
        if not all(is_sequence(row) for row in array):
            raise NotRectangular("not a 2-D array: rows and scalars are mixed",
                                 operation, argument)
        height = len(array)
        width = len(array[0])
        for i, row in enumerate(array):
            if len(row) != width:
                raise NotRectangular(
                    f"array not rectangular: row {i} has {len(row)} elements, expected {width}",
                    operation, argument)
        flat = [x for row in array for x in row]
    else:
        height = 1
        width = len(array)
        flat = list(array)

    if width == 0:
        raise TypeMismatch("array rows are empty", operation, argument)
    for x in flat:
        if not is_number(x):
            raise NotNumeric(f"array element {x!r} is not a number", operation, argument)

    return width, height, [float(x) for x in flat]


# -----------------------------------------------------------------
# Host -> foreign
# -----------------------------------------------------------------

def _single(value: Any):
    # a 1-element sequence narrows to its element
    if is_sequence(value) and len(value) == 1 and not is_sequence(value[0]):
        return value[0]
    return value


def _to_int(value, operation, argument):
    value = _single(value)
    if isinstance(value, bool):
        raise TypeMismatch("expected an int, got bool", operation, argument)
    if isinstance(value, numbers.Integral):
        return int(value)
    if is_number(value) and float(value).is_integer():
        return int(value)
    raise TypeMismatch(f"expected an int, got {shape_name(value)} {value!r}", operation, argument)


def _to_double(value, operation, argument):
    value = _single(value)
    if is_number(value):
        return float(value)
    raise TypeMismatch(f"expected a number, got {shape_name(value)}", operation, argument)


def _to_array(value, convert, operation, argument):
    if is_number(value):
        return [convert(value)]
    if not is_sequence(value):
        raise TypeMismatch(f"expected a number or a sequence of numbers, got {shape_name(value)}",
                           operation, argument)
    out = []
    for x in value:
        if is_sequence(x):
            raise TypeMismatch("expected a flat sequence, got a nested sequence", operation, argument)
        if not is_number(x):
            raise NotNumeric(f"element {x!r} is not a number", operation, argument)
        out.append(convert(x))
    return out


def _to_image(value, engine, operation, argument):
    if is_image(value):
        return value.ref
    if is_sequence(value) and any(is_sequence(row) for row in value):
        # validate here so errors name the argument being bound
        matrix_shape(value, operation, argument)
        return engine.new_from_array(value).ref
    raise TypeMismatch(f"expected an image or a 2-D numeric array, got {shape_name(value)}",
                       operation, argument)


def _to_enum(value, enum_type, operation, argument):
    if isinstance(value, EnumValue) and value.enum_type.name == enum_type.name:
        return value.value
    if isinstance(value, (str, int)) and not isinstance(value, bool) and value in enum_type:
        if isinstance(value, str):
            return enum_type.ordinal(value)
        return int(value)
    legal = ", ".join(enum_type.values)
    raise TypeMismatch(f"{value!r} is not a {enum_type.name}; expected one of: {legal}",
                       operation, argument)


def coerce_in(value: Any, type_tag: str, engine, operation: Optional[str] = None,
              argument: Optional[str] = None) -> Any:
    """Convert a Python value into the foreign representation for type_tag."""
    if type_tag == IMAGE_TYPE:
        return _to_image(value, engine, operation, argument)
    if type_tag == ARRAY_IMAGE_TYPE:
        if is_image(value):
            return [value.ref]
        if is_sequence(value) and all(is_image(x) for x in value):
            return [x.ref for x in value]
        raise TypeMismatch(f"expected a list of images, got {shape_name(value)}",
                           operation, argument)
    if type_tag == ARRAY_DOUBLE_TYPE:
        return _to_array(value, float, operation, argument)
    if type_tag == ARRAY_INT_TYPE:
        return _to_array(value, lambda x: _to_int(x, operation, argument), operation, argument)
    if type_tag == INT_TYPE:
        return _to_int(value, operation, argument)
    if type_tag == DOUBLE_TYPE:
        return _to_double(value, operation, argument)
    if type_tag == BOOL_TYPE:
        if isinstance(value, bool):
            return value
        raise TypeMismatch(f"expected a bool, got {shape_name(value)}", operation, argument)
    if type_tag == STRING_TYPE:
        if isinstance(value, str):
            return str(value)
        raise TypeMismatch(f"expected a str, got {shape_name(value)}", operation, argument)
    if type_tag == BLOB_TYPE:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        raise TypeMismatch(f"expected bytes, got {shape_name(value)}", operation, argument)

    enum_type = engine.runtime.enum_type(type_tag)
    if enum_type is not None:
        return _to_enum(value, enum_type, operation, argument)

    raise TypeMismatch(f"unsupported foreign type {type_tag}", operation, argument)


# -----------------------------------------------------------------
# Foreign -> host
# -----------------------------------------------------------------

def coerce_out(value: Any, type_tag: str, engine) -> Any:
    """Convert a foreign output value into a Python value."""
    from gvips.gvips_image import Image

    if value is None:
        return None
    if type_tag == IMAGE_TYPE:
        return Image(engine, value)
    if type_tag == ARRAY_IMAGE_TYPE:
        return [Image(engine, x) for x in value]
    if type_tag == ARRAY_DOUBLE_TYPE:
        return [float(x) for x in value]
    if type_tag == ARRAY_INT_TYPE:
        return [int(x) for x in value]
    if type_tag == BLOB_TYPE:
        return bytes(value)
    if type_tag == INT_TYPE:
        return int(value)
    if type_tag == DOUBLE_TYPE:
        return float(value)
    if type_tag == BOOL_TYPE:
        return bool(value)

    enum_type = engine.runtime.enum_type(type_tag)
    if enum_type is not None:
        if isinstance(value, str):
            return EnumValue(enum_type, enum_type.normalize(value))
        return EnumValue(enum_type, enum_type.nick(int(value)))

    return value
