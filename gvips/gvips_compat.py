"""
Version-dependent quirks of the foreign library.

Library versions up to and including 8.4 list the arguments of the
`*_const` enum operations (`relational_const`, `boolean_const`,
`math2_const`) with the constant before the selector; later versions put
the selector first. Everything that depends on that lives here.
"""

from typing import Any, List, Sequence

from gvips.gvips_coerce import is_image

# last version with the old constant/selector order, inclusive
OLD_CONST_ORDER_VERSION = (8, 4)


def swap_const_args(version: Sequence[int]) -> bool:
    """True when `version` passes the constant before the selector."""
    major, minor = version[0], version[1]
    return major < OLD_CONST_ORDER_VERSION[0] or (
        major == OLD_CONST_ORDER_VERSION[0] and minor <= OLD_CONST_ORDER_VERSION[1])


def const_args(image: Any, other: Any, selector: Any, version: Sequence[int]) -> List[Any]:
    """Positional arguments for a `*_const` call on this library version."""
    if swap_const_args(version):
        return [image, other, selector]
    return [image, selector, other]


def enum_call_args(image: Any, family: str, other: Any, selector: Any,
                   version: Sequence[int]):
    """Operation name and positional arguments for an enum-selected call."""
    if is_image(other):
        return family, [image, other, selector]
    return family + "_const", const_args(image, other, selector, version)


def call_enum(image, family: str, other: Any, selector: str):
    """Run an enum-selected operation against an image or a constant."""
    engine = image.engine
    name, args = enum_call_args(image, family, other, selector, engine.version)
    return engine.invoke(name, args)
