import pytest

from gvips.gvips_compat import (
    swap_const_args, const_args, enum_call_args,
)
from gvips.gvips_config import Config
from gvips.gvips_datatypes import TypeMismatch
from gvips.gvips_memory import MemoryRuntime
from gvips.gvips_runtime import Engine


def make_engine(version):
    return Engine(MemoryRuntime(version=version), config=Config())


@pytest.mark.parametrize("version, swapped", [
    ((7, 40, 0), True),
    ((8, 0, 0), True),
    ((8, 4, 0), True),
    ((8, 4, 9), True),
    ((8, 5, 0), False),
    ((8, 10, 2), False),
    ((9, 0, 0), False),
])
def test_swap_const_args_boundary(version, swapped):
    assert swap_const_args(version) is swapped


def test_const_args_order():
    assert const_args("im", 2, "more", (8, 4, 1)) == ["im", 2, "more"]
    assert const_args("im", 2, "more", (8, 5, 0)) == ["im", "more", 2]


def test_enum_call_args_picks_the_family():
    e = make_engine((8, 6, 0))
    im = e.ops.black(1, 1)
    assert enum_call_args(im, "relational", im, "more", (8, 6, 0)) == ("relational", [im, im, "more"])
    assert enum_call_args(im, "relational", 3, "more", (8, 6, 0)) == ("relational_const", [im, "more", 3])
    assert enum_call_args(im, "relational", [3], "more", (8, 2, 0)) == ("relational_const", [im, [3], "more"])


def relational_const_call(version):
    e = make_engine(version)
    im = e.new_from_array([[1, 2], [3, 4]])
    out = im > 2
    call = e.runtime.calls[-1]
    assert call.name == "relational_const"
    assert call.args["c"] == [2.0]
    assert out.tolist() == [[[0.0], [0.0]], [[255.0], [255.0]]]
    return call


@pytest.mark.parametrize("version", [(8, 4, 0), (8, 4, 2), (7, 40, 1)])
def test_old_library_takes_the_constant_before_the_selector(version):
    call = relational_const_call(version)
    assert list(call.args) == ["in", "c", "relational"]


@pytest.mark.parametrize("version", [(8, 5, 0), (8, 10, 2)])
def test_new_library_takes_the_selector_before_the_constant(version):
    call = relational_const_call(version)
    assert list(call.args) == ["in", "relational", "c"]


@pytest.mark.parametrize("version", [(8, 4, 0), (8, 6, 0)])
def test_every_const_family_works_on_both_orders(version):
    e = make_engine(version)
    im = e.new_from_array([[1, 2, 3]])
    u = im.cast("uchar")
    assert (im ** 2).tolist() == [[[1.0], [4.0], [9.0]]]
    assert (u | 8).tolist() == [[[9.0], [10.0], [11.0]]]
    assert (im != 2).tolist() == [[[255.0], [0.0], [255.0]]]


def test_modern_order_on_an_old_library_is_rejected():
    e = make_engine((8, 4, 0))
    im = e.new_from_array([[1, 2]])
    with pytest.raises(TypeMismatch):
        e.invoke("relational_const", [im, "more", [2]])
