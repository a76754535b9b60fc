import pytest

from gvips.gvips_config import Config
from gvips.gvips_datatypes import (
    ArgumentFlags, ArgumentSpec, OperationSignature, OperationFlags, UnknownOperation,
)
from gvips.gvips_memory import MemoryRuntime
from gvips.gvips_runtime import Engine
from gvips.gvips_wrappers import render_docstring, python_type_name


def make_engine():
    return Engine(MemoryRuntime(), config=Config())


def test_wrappers_call_the_operation():
    e = make_engine()
    im = e.ops.black(2, 3, bands=2)
    assert (im.width, im.height, im.bands) == (2, 3, 2)
    assert e.runtime.calls[-1].name == "black"


def test_wrappers_are_named_and_cached():
    e = make_engine()
    assert e.ops.black.__name__ == "black"
    assert e.ops.function("add") is e.ops.function("add")
    assert e.ops.method("add").__qualname__ == "Image.add"


def test_function_docstring():
    doc = make_engine().ops.black.__doc__
    assert doc.startswith("make a black image")
    assert "Called as a plain function." in doc
    assert "width (int): Image width in pixels" in doc
    assert "Keyword options:" in doc
    assert "bands (int): Number of bands in image" in doc
    assert "out (Image): Output image" in doc


def test_method_docstring():
    e = make_engine()
    im = e.ops.black(1, 1)
    doc = im.embed.__doc__
    assert "Called as a method of the `in` image." in doc
    assert "extend (Extend)" in doc
    assert "background (list[float])" in doc
    assert im.embed.__name__ == "embed"


def test_docstring_leaves_out_deprecated_arguments():
    doc = make_engine().ops.copy.__doc__
    assert "swap" not in doc
    assert "interpretation (Interpretation)" in doc


def test_docstring_lists_optional_outputs():
    doc = make_engine().ops.max.__doc__
    assert "Optional outputs" in doc
    assert "x (int): Horizontal position of maximum" in doc


def test_docstring_for_operation_without_outputs():
    doc = make_engine().ops.npysave.__doc__
    assert "None" in doc.split("Returns:")[1]


def test_deprecated_operation_docstring():
    arg = ArgumentSpec("in", "VipsImage",
                       ArgumentFlags.REQUIRED | ArgumentFlags.CONSTRUCT | ArgumentFlags.INPUT)
    sig = OperationSignature("im_old", (arg,), "an old operation", OperationFlags.DEPRECATED)
    doc = render_docstring(sig)
    assert "This operation is deprecated." in doc
    assert doc.startswith("an old operation")


def test_python_type_names():
    assert python_type_name("gint") == "int"
    assert python_type_name("VipsArrayImage") == "list[Image]"
    assert python_type_name("VipsBandFormat") == "BandFormat"
    assert python_type_name("GValue") == "GValue"


def test_unknown_names():
    e = make_engine()
    with pytest.raises(AttributeError):
        e.ops.frobnicate
    with pytest.raises(UnknownOperation):
        e.ops.function("frobnicate")
    assert "black" in dir(e.ops)
