"""
The engine: one foreign runtime plus everything needed to call into it.

An `Engine` owns its dispatcher, its copy-before-mutate guard, its GC
policy and its configuration; nothing is process-wide. `Engine.invoke` is
the single public entry point, and the constructors here build the first
image of a chain (from an array, a file or a memory buffer).
"""

import logging
import re
from typing import Any, Dict, Optional, Sequence, Tuple

from gvips.gvips_datatypes import TypeMismatch, UnknownOperation
from gvips.gvips_config import Config, load_config, configure_logging
from gvips.gvips_coerce import matrix_shape, is_image, is_constant
from gvips.gvips_operation import Dispatcher
from gvips.gvips_gc import GCPolicy, MutationGuard
from gvips.gvips_wrappers import Operations
from gvips.gvips_foreign import ForeignRuntime

lib_logger = logging.getLogger("gvips")

_FILENAME_OPTIONS = re.compile(r"^(?P<filename>.*?)\[(?P<options>[^\[\]]*)\]$")


# ===================================================================
# Filename option strings
# ===================================================================

def split_filename(name: str) -> Tuple[str, str]:
    """Split `"fred.jpg[Q=90,strip]"` into `("fred.jpg", "Q=90,strip")`."""
    m = _FILENAME_OPTIONS.match(name)
    if not m:
        return name, ""
    return m.group("filename"), m.group("options")


def _option_value(text: str) -> Any:
    lowered = text.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    for convert in (int, float):
        try:
            return convert(text)
        except ValueError:
            pass
    return text


def parse_option_string(option_string: str) -> Dict[str, Any]:
    """Turn `"Q=90,strip"` into `{"Q": 90, "strip": True}`."""
    options: Dict[str, Any] = {}
    for item in option_string.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" in item:
            key, value = item.split("=", 1)
            options[key.strip()] = _option_value(value.strip())
        else:
            options[item] = True
    return options


# ===================================================================
# Engine
# ===================================================================

class Engine:
    """Calls operations of one foreign runtime by name."""

    def __init__(self, runtime: ForeignRuntime, config: Optional[Config] = None,
                 gc_policy: Optional[GCPolicy] = None):
        self.runtime = runtime
        self.config = config if config is not None else load_config()
        configure_logging(self.config.debug)
        self.gc_policy = gc_policy if gc_policy is not None else GCPolicy(
            self.config.gc_interval, self.config.generational_gc)
        self.guard = MutationGuard(self)
        self.dispatcher = Dispatcher(self)
        self.ops = Operations(self)

    @property
    def version(self) -> Tuple[int, int, int]:
        return tuple(self.runtime.version())

    def has_operation(self, name: str) -> bool:
        try:
            self.runtime.lookup(name)
        except KeyError:
            return False
        return True

    def invoke(self, name: str, positional: Sequence[Any] = (),
               options: Optional[Dict[str, Any]] = None, receiver: Any = None) -> Any:
        """Call operation `name`. See `Dispatcher.invoke`."""
        return self.dispatcher.invoke(name, positional, options, receiver)

    # -- constructors -----------------------------------------------------

    def new_from_array(self, array, scale: float = 1, offset: float = 0):
        """Make a matrix image from a 1-D or 2-D array of numbers.

        A 1-D array becomes an image of height 1. `scale` and `offset` are
        stored in the header for use by integer convolutions.
        """
        width, height, values = matrix_shape(array, "new_from_array", "array")
        image = self.invoke("matrix_from_array", [width, height, values])
        image.set_type("gdouble", "scale", float(scale))
        image.set_type("gdouble", "offset", float(offset))
        return image

    def new_from_file(self, name: str, **options):
        """Load an image from a file; `"fred.npy[opt=1]"` style options are accepted."""
        if name is None:
            raise TypeMismatch("filename is None", "new_from_file", "filename")
        filename, option_string = split_filename(name)
        loader = self.runtime.find_load(filename)
        if loader is None:
            raise UnknownOperation(f"no known loader for {filename!r}", "new_from_file")
        merged = parse_option_string(option_string)
        merged.update(options)
        lib_logger.debug("new_from_file %s via %s", filename, loader)
        return self.invoke(loader, [filename], merged)

    def new_from_buffer(self, data: bytes, option_string: str = "", **options):
        """Load an image from a formatted memory buffer."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeMismatch("buffer must be bytes", "new_from_buffer", "data")
        loader = self.runtime.find_load_buffer(bytes(data))
        if loader is None:
            raise UnknownOperation("no known loader for buffer", "new_from_buffer")
        merged = parse_option_string(option_string)
        merged.update(options)
        return self.invoke(loader, [bytes(data)], merged)

    def bandjoin(self, items: Sequence[Any]):
        """Join images, or images and constants, bandwise.

        Constants are expanded to match the first image. With no image at
        all, the first constant becomes a one-pixel image and the rest are
        matched to it.
        """
        items = list(items)
        match_image = next((x for x in items if is_image(x)), None)
        if match_image is None:
            if not items or not all(is_constant(x) for x in items):
                raise TypeMismatch("bandjoin needs an image or only constants", "bandjoin", "in")
            first = self.new_from_array([[0]]) + items[0]
            return first.bandjoin(items[1:]) if len(items) > 1 else first
        images = []
        for x in items:
            if is_image(x):
                images.append(x)
            elif is_constant(x):
                images.append(match_image.new_from_image(x))
            else:
                raise TypeMismatch(f"cannot join {type(x).__name__}", "bandjoin", "in")
        return self.invoke("bandjoin", [images])

    def __repr__(self) -> str:
        return f"<Engine runtime={type(self.runtime).__name__} version={self.version}>"
