import logging

import pytest

from gvips.gvips_config import Config, load_config, configure_logging, DEFAULT_GC_INTERVAL
from gvips.gvips_memory import MemoryRuntime
from gvips.gvips_runtime import Engine


def write_config(tmp_path, text):
    path = tmp_path / "gvips.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults():
    config = load_config(environ={})
    assert config == Config()
    assert config.gc_interval == DEFAULT_GC_INTERVAL == 100
    assert config.generational_gc is None
    assert config.debug is False


def test_yaml_file(tmp_path):
    path = write_config(tmp_path, "gc_interval: 7\ngenerational_gc: false\n")
    config = load_config(path, environ={})
    assert config.gc_interval == 7
    assert config.generational_gc is False


def test_environment_overrides_the_file(tmp_path):
    path = write_config(tmp_path, "gc_interval: 7\ngenerational_gc: true\n")
    config = load_config(environ={
        "GVIPS_CONFIG": path,
        "GVIPS_GC_INTERVAL": "3",
        "GVIPS_GENERATIONAL_GC": "auto",
    })
    assert config.gc_interval == 3
    assert config.generational_gc is None


@pytest.mark.parametrize("text, expected", [("yes", True), ("0", False), ("auto", None)])
def test_generational_values(text, expected):
    assert load_config(environ={"GVIPS_GENERATIONAL_GC": text}).generational_gc is expected


def test_bad_values(tmp_path):
    with pytest.raises(ValueError):
        load_config(environ={"GVIPS_GENERATIONAL_GC": "maybe"})
    with pytest.raises(ValueError):
        load_config(environ={"GVIPS_GC_INTERVAL": "0"})
    with pytest.raises(ValueError):
        load_config(write_config(tmp_path, "gc_interval: lots\n"), environ={})
    with pytest.raises(ValueError):
        load_config(write_config(tmp_path, "- 1\n- 2\n"), environ={})


def test_engine_builds_its_gc_policy_from_config():
    e = Engine(MemoryRuntime(), config=Config(gc_interval=5, generational_gc=False))
    assert e.gc_policy.interval == 5
    assert e.gc_policy.generational is False


def test_debug_attaches_a_stderr_handler():
    logger = logging.getLogger("gvips")
    level = logger.level
    try:
        load_config(environ={"GVIPS_DEBUG": "1"})
        Engine(MemoryRuntime(), config=load_config(environ={"GVIPS_DEBUG": "1"}))
        configure_logging(True)
        handlers = [h for h in logger.handlers if getattr(h, "_gvips_debug", False)]
        assert len(handlers) == 1
        assert logger.level == logging.DEBUG
    finally:
        for h in [h for h in logger.handlers if getattr(h, "_gvips_debug", False)]:
            logger.removeHandler(h)
        logger.setLevel(level)
