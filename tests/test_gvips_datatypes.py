import pytest

from gvips.gvips_datatypes import (
    VipsError, OperationFailed, NotRectangular, TypeMismatch,
    ArgumentFlags, ArgumentSpec, OperationSignature, EnumType, EnumValue, Classification,
)

BAND_FORMAT = EnumType("VipsBandFormat", {"uchar": 0, "char": 1, "double": 8})
INTERPRETATION = EnumType("VipsInterpretation", {"multiband": 0, "b-w": 1})


def spec(name, type_tag, flags):
    return ArgumentSpec(name, type_tag, flags | ArgumentFlags.CONSTRUCT)


# --- errors ---

def test_error_names_operation_and_argument():
    assert str(VipsError("bad", "add", "left")) == "add.left: bad"
    assert str(VipsError("bad", "add")) == "add: bad"
    assert str(VipsError("bad")) == "bad"


def test_error_hierarchy():
    assert issubclass(NotRectangular, TypeMismatch)
    assert issubclass(OperationFailed, VipsError)
    err = OperationFailed("out of memory", "embed")
    assert err.message == "out of memory"
    assert err.operation == "embed"


# --- argument specs ---

def test_modify_inputs_are_outputs_too():
    image = spec("image", "VipsImage", ArgumentFlags.REQUIRED | ArgumentFlags.INPUT | ArgumentFlags.MODIFY)
    assert image.is_input
    assert image.is_output
    assert image.is_modify


def test_python_names():
    arg = spec("out-array", "VipsArrayDouble", ArgumentFlags.REQUIRED | ArgumentFlags.OUTPUT)
    assert arg.py_name == "out_array"
    sig = OperationSignature("getpoint", (arg,))
    assert sig.argument("out_array") is arg
    assert sig.argument("out-array") is arg
    assert sig.argument("nope") is None


# --- enums ---

def test_enum_type_lookup():
    assert BAND_FORMAT.nick(8) == "double"
    assert BAND_FORMAT.ordinal("char") == 1
    assert "b_w" in INTERPRETATION
    assert 1 in INTERPRETATION
    assert 5 not in INTERPRETATION
    assert True not in INTERPRETATION


def test_enum_value_equality():
    v = EnumValue(INTERPRETATION, "b-w")
    assert v == "b-w"
    assert v == "b_w"
    assert v == 1
    assert v != 0
    assert v != "multiband"
    assert v != True  # noqa: E712
    assert v.value == 1
    assert v.enum_type is INTERPRETATION
    assert hash(v) == hash("b-w")
    assert {v: 1}["b-w"] == 1


def test_all_required_input_places_the_receiver():
    left = spec("left", "VipsImage", ArgumentFlags.REQUIRED | ArgumentFlags.INPUT)
    right = spec("right", "VipsImage", ArgumentFlags.REQUIRED | ArgumentFlags.INPUT)
    c = Classification(OperationSignature("add", (left, right)),
                       required_input=[right], receiver=left, receiver_index=0)
    assert c.all_required_input == [left, right]
