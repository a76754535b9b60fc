import pytest

from gvips.gvips_config import Config
from gvips.gvips_gc import GCPolicy, default_generational
from gvips.gvips_memory import MemoryRuntime
from gvips.gvips_runtime import Engine


class FakeCollector:
    def __init__(self):
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        return 0


def make_engine(policy=None):
    return Engine(MemoryRuntime(), config=Config(), gc_policy=policy)


# --- GC policy ---

def test_countdown_forces_a_full_collection_every_interval():
    collect = FakeCollector()
    policy = GCPolicy(interval=3, generational=False, collect=collect)
    policy.after_write()
    policy.after_write()
    assert collect.calls == []
    assert policy.countdown == 1
    policy.after_write()
    assert collect.calls == [()]
    assert policy.countdown == 3
    for _ in range(3):
        policy.after_write()
    assert collect.calls == [(), ()]


def test_generational_collector_runs_a_young_collection_every_write():
    collect = FakeCollector()
    policy = GCPolicy(interval=100, generational=True, collect=collect)
    policy.after_write()
    policy.after_write()
    assert collect.calls == [(0,), (0,)]
    assert policy.countdown == 100


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        GCPolicy(interval=0)


def test_reset_and_detection():
    policy = GCPolicy(interval=2, generational=False, collect=FakeCollector())
    policy.after_write()
    policy.reset()
    assert policy.countdown == 2
    assert "countdown=2" in repr(policy)
    assert GCPolicy().generational is default_generational()


def test_writes_go_through_the_policy(tmp_path):
    collect = FakeCollector()
    e = make_engine(GCPolicy(interval=2, generational=False, collect=collect))
    im = e.ops.black(2, 2)
    im.write_to_buffer(".npy")
    im.write_to_file(str(tmp_path / "a.npy"))
    assert collect.calls == [()]


# --- copy before mutate ---

def test_draw_works_on_a_private_copy():
    e = make_engine()
    im = e.new_from_array([[0, 0], [0, 0]])
    drawn = im.draw_rect([9], 0, 0, 1, 1, fill=True)
    assert drawn.tolist() == [[[9.0], [0.0]], [[0.0], [0.0]]]
    assert im.tolist() == [[[0.0], [0.0]], [[0.0], [0.0]]]
    assert drawn.ref is not im.ref
    assert e.guard.copies == 1
    assert len(e.runtime.calls_to("copy_memory")) == 1


def test_pending_dependents_are_not_disturbed():
    e = make_engine()
    base = e.new_from_array([[1, 2], [3, 4]])
    dependent = base + 1
    assert not dependent.ref.evaluated
    base.draw_circle([100], 0, 0, 0, fill=True)
    assert dependent.tolist() == [[[2.0], [3.0]], [[4.0], [5.0]]]
    assert base.getpoint(0, 0) == [1.0]


def test_painting_in_place_without_the_guard_changes_dependents():
    e = make_engine()
    base = e.new_from_array([[1, 2], [3, 4]])
    dependent = base + 1
    ok, _, _ = e.runtime.call("draw_rect", {
        "image": base.ref, "ink": [9.0], "left": 0, "top": 0, "width": 1, "height": 1,
    })
    assert ok
    assert dependent.getpoint(0, 0) == [10.0]


def test_repeated_copies_reuse_the_computed_pixels():
    e = make_engine()
    base = e.new_from_array([[1, 2], [3, 4]])
    pending = base * 2
    assert pending.ref.evaluations == 0
    first = pending.draw_rect([0], 0, 0, 1, 1)
    second = pending.draw_rect([0], 1, 1, 1, 1)
    assert pending.ref.evaluations == 1
    assert e.guard.copies == 2
    assert first.tolist() == [[[0.0], [4.0]], [[6.0], [8.0]]]
    assert second.tolist() == [[[2.0], [4.0]], [[6.0], [0.0]]]
    assert pending.tolist() == [[[2.0], [4.0]], [[6.0], [8.0]]]
