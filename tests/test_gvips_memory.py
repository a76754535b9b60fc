import numpy as np
import pytest

from gvips.gvips_config import Config
from gvips.gvips_datatypes import ArgumentFlags
from gvips.gvips_memory import (
    MemoryRuntime, MemoryImage, parse_argument, widen, clip_cast, out_bands,
    source_index, OperationError,
)
from gvips.gvips_runtime import Engine


def make_engine(version=None):
    return Engine(MemoryRuntime(version=version), config=Config())


def pixels(values, dtype=np.float64):
    px = np.asarray(values, dtype)
    if px.ndim == 2:
        px = px[:, :, np.newaxis]
    return MemoryImage(px)


# --- catalog ---

def test_catalog_loads():
    runtime = MemoryRuntime()
    assert runtime.version() == (8, 6, 0)
    assert "add" in runtime.operation_names()
    assert runtime.enum_type("VipsBandFormat").ordinal("uchar") == 0
    assert runtime.enum_type("NotAnEnum") is None
    with pytest.raises(KeyError):
        runtime.lookup("frobnicate")


def test_version_is_padded():
    assert MemoryRuntime(version=(8, 9)).version() == (8, 9, 0)


def test_old_versions_take_the_constant_first():
    old = MemoryRuntime(version=(8, 4, 0)).lookup("relational_const")
    new = MemoryRuntime(version=(8, 5, 0)).lookup("relational_const")
    assert [a.name for a in old.arguments] == ["in", "out", "c", "relational"]
    assert [a.name for a in new.arguments] == ["in", "out", "relational", "c"]


def test_parse_argument():
    arg = parse_argument(["image", "VipsImage", "required input modify", "Image to draw on"])
    assert arg.flags & ArgumentFlags.MODIFY
    assert arg.flags & ArgumentFlags.CONSTRUCT
    assert arg.is_required and arg.is_input
    assert arg.blurb == "Image to draw on"


# --- calls ---

def test_missing_required_input_fails():
    runtime = MemoryRuntime()
    ok, outputs, message = runtime.call("add", {"left": pixels([[1]])})
    assert not ok
    assert outputs == {}
    assert "right" in message
    assert list(runtime.calls_to("add")[0].args) == ["left"]


def test_operation_errors_become_failed_outcomes():
    runtime = MemoryRuntime()
    ok, _, message = runtime.call("black", {"width": 0, "height": 1})
    assert not ok
    assert message.startswith("black: ")


def test_outputs_are_computed_on_first_use():
    runtime = MemoryRuntime()
    a = pixels([[1, 2]])
    ok, outputs, _ = runtime.call("add", {"left": a, "right": a})
    out = outputs["out"]
    assert ok and not out.evaluated
    assert out.pixels[0, 1, 0] == 4
    assert out.evaluations == 1
    out.pixels
    assert out.evaluations == 1


# --- header ---

def test_header_fields():
    runtime = MemoryRuntime()
    im = pixels([[1, 2, 3]], np.uint8)
    assert runtime.get_typeof(im, "width") == "gint"
    assert runtime.get(im, "width") == 3
    assert runtime.get(im, "format") == "uchar"
    assert runtime.get_typeof(im, "nothing") is None
    runtime.set(im, "interpretation", "VipsInterpretation", 22)
    assert runtime.get(im, "interpretation") == "srgb"
    runtime.set(im, "note", "gchararray", "hello")
    assert runtime.remove(im, "note")
    assert not runtime.remove(im, "note")
    assert not runtime.remove(im, "width")
    with pytest.raises(ValueError):
        runtime.set(im, "width", "gint", 9)


def test_loader_resolution():
    runtime = MemoryRuntime()
    assert runtime.find_load("a.NPY") == "npyload"
    assert runtime.find_load("a.png") is None
    assert runtime.find_save("a.npy") == "npysave"
    assert runtime.find_save_buffer("npy") == "npysave_buffer"
    assert runtime.find_save_buffer(".tif") is None
    assert runtime.find_load_buffer(b"\x93NUMPY\x01\x00") == "npyload_buffer"
    assert runtime.find_load_buffer(b"GIF89a") is None


# --- pixel helpers ---

def test_widen():
    u = np.zeros(1, np.uint8)
    s = np.zeros(1, np.int16)
    f = np.zeros(1, np.float32)
    assert widen("add", u, u) == np.uint16
    assert widen("subtract", u, u) == np.int16
    assert widen("add", u, s) == np.int32
    assert widen("add", u, f) == np.float32


def test_clip_cast_saturates():
    assert clip_cast(np.array([-5.0, 300.0]), np.uint8).tolist() == [0, 255]


def test_out_bands():
    assert out_bands(1, 3) == 3
    with pytest.raises(OperationError):
        out_bands(2, 3)


def test_source_index():
    index = np.arange(-2, 5)
    assert source_index(index, 3, "copy").tolist() == [0, 0, 0, 1, 2, 2, 2]
    assert source_index(index, 3, "repeat").tolist() == [1, 2, 0, 1, 2, 0, 1]
    assert source_index(index, 3, "mirror").tolist() == [1, 0, 0, 1, 2, 2, 1]


# --- operations through an engine ---

def test_uchar_add_widens():
    e = make_engine()
    u = e.new_from_array([[200]]).cast("uchar")
    out = u + u
    assert out.format == "ushort"
    assert out.getpoint(0, 0) == [400.0]


def test_uchar_subtract_goes_signed():
    e = make_engine()
    a = e.new_from_array([[1]]).cast("uchar")
    b = e.new_from_array([[3]]).cast("uchar")
    out = a - b
    assert out.format == "short"
    assert out.getpoint(0, 0) == [-2.0]


@pytest.mark.parametrize("extend, row", [
    ("black", [0, 1, 2, 0]),
    ("copy", [1, 1, 2, 2]),
    ("repeat", [2, 1, 2, 1]),
])
def test_embed(extend, row):
    e = make_engine()
    im = e.new_from_array([[1, 2]])
    out = im.embed(1, 0, 4, 1, extend=extend)
    assert [p[0] for p in out.tolist()[0]] == row


def test_embed_background():
    e = make_engine()
    im = e.new_from_array([[1, 2]])
    out = im.embed(1, 0, 4, 1, extend="background", background=[7])
    assert [p[0] for p in out.tolist()[0]] == [7, 1, 2, 7]


def test_conv_uses_the_mask_scale():
    e = make_engine()
    im = e.new_from_array([[3, 6, 9]]).cast("uchar")
    mask = e.new_from_array([[1, 1, 1]], scale=3)
    out = im.conv(mask)
    assert out.format == "uchar"
    assert [p[0] for p in out.tolist()[0]] == [4, 6, 8]


def test_crop_and_bad_area():
    e = make_engine()
    im = e.new_from_array([[1, 2, 3], [4, 5, 6]])
    assert im.crop(1, 1, 2, 1).tolist() == [[[5.0], [6.0]]]
    ok, _, message = e.runtime.call("crop", {
        "input": im.ref, "left": 2, "top": 0, "width": 2, "height": 1,
    })
    assert not ok
    assert "bad extract area" in message


def test_rank_median():
    e = make_engine()
    im = e.new_from_array([[1, 9, 2, 8, 3]])
    out = e.ops.rank(im, 3, 1, 1)
    assert [p[0] for p in out.tolist()[0]] == [1, 2, 8, 3, 3]


def test_copy_reinterprets_format_and_size():
    e = make_engine()
    im = e.new_from_array([[1, 2], [3, 4]]).cast("uchar")
    out = im.copy(width=4, height=1, interpretation="b-w", xres=2.0)
    assert (out.width, out.height) == (4, 1)
    assert out.interpretation == "b-w"
    assert out.xres == 2.0
    assert [p[0] for p in out.tolist()[0]] == [1, 2, 3, 4]
