"""
An in-memory reference runtime backed by numpy.

`MemoryRuntime` implements the foreign boundary without a native image
library. Its operation catalog is read from `operations.yaml` beside this
module, pixels are numpy arrays of shape (height, width, bands), and
operation results are computed on first use, the way a demand-driven image
library evaluates a pipeline. Inputs are evaluated when an operation is
called; outputs stay pending until something reads them.

Every call is recorded in `MemoryRuntime.calls`, in the order the engine
passed the arguments.
"""

import io
import itertools
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import yaml
from numpy.lib.stride_tricks import sliding_window_view

from gvips.gvips_datatypes import ArgumentFlags, ArgumentSpec, OperationSignature, EnumType
from gvips.gvips_foreign import ForeignRuntime, CallOutcome

lib_logger = logging.getLogger("gvips")

CATALOG_PATH = Path(__file__).with_name("operations.yaml")

# library versions up to here take the constant before the selector
LAST_OLD_CONST_ORDER = (8, 4)

FORMAT_DTYPES = {
    "uchar": np.uint8,
    "char": np.int8,
    "ushort": np.uint16,
    "short": np.int16,
    "uint": np.uint32,
    "int": np.int32,
    "float": np.float32,
    "complex": np.complex64,
    "double": np.float64,
    "dpcomplex": np.complex128,
}
DTYPE_FORMATS = {np.dtype(v): k for k, v in FORMAT_DTYPES.items()}

# integer results of add and multiply widen one step, subtract goes signed
_WIDEN = {
    "add": {"uchar": "ushort", "char": "short", "ushort": "uint",
            "short": "int", "uint": "uint", "int": "int"},
    "subtract": {"uchar": "short", "char": "short", "ushort": "int",
                 "short": "int", "uint": "int", "int": "int"},
}
_WIDEN["multiply"] = _WIDEN["add"]

_FLAG_WORDS = {
    "required": ArgumentFlags.REQUIRED,
    "input": ArgumentFlags.INPUT,
    "output": ArgumentFlags.OUTPUT,
    "modify": ArgumentFlags.MODIFY,
    "deprecated": ArgumentFlags.DEPRECATED,
}

_PIXEL_FIELDS = {"width": "gint", "height": "gint", "bands": "gint", "format": "VipsBandFormat"}

_HEADER_TYPES = {
    "interpretation": "VipsInterpretation",
    "coding": "VipsCoding",
    "xres": "gdouble",
    "yres": "gdouble",
    "xoffset": "gint",
    "yoffset": "gint",
    "filename": "gchararray",
}

NUMPY_MAGIC = b"\x93NUMPY"


class OperationError(Exception):
    """Raised inside an operation to report failure through `call`."""
    pass


class ForeignCall(NamedTuple):
    name: str
    args: Dict[str, Any]


# ===================================================================
# Catalog
# ===================================================================

def load_catalog(path: Optional[Path] = None) -> Dict[str, Any]:
    with open(path or CATALOG_PATH, encoding="utf-8") as f:
        return yaml.safe_load(f)


def parse_argument(entry: Sequence[Any]) -> ArgumentSpec:
    """Build an ArgumentSpec from a `[name, type, flag words, blurb]` entry."""
    name, type_tag, words = str(entry[0]), str(entry[1]), str(entry[2])
    blurb = str(entry[3]) if len(entry) > 3 else ""
    flags = ArgumentFlags.CONSTRUCT
    for word in words.split():
        flags |= _FLAG_WORDS[word]
    return ArgumentSpec(name, type_tag, flags, blurb)


def _old_const_order(arguments: List[ArgumentSpec]) -> List[ArgumentSpec]:
    # move the constant ahead of the enum selector
    names = [a.name for a in arguments]
    c = arguments[names.index("c")]
    rest = [a for a in arguments if a.name != "c"]
    selector = next(i for i, a in enumerate(rest) if a.type.startswith("VipsOperation"))
    rest.insert(selector, c)
    return rest


# ===================================================================
# Images
# ===================================================================

class MemoryImage:
    """A pixel array, computed on first access, plus its header fields."""

    _ids = itertools.count(1)

    def __init__(self, pixels: Optional[np.ndarray] = None,
                 compute: Optional[Callable[[], np.ndarray]] = None,
                 fields: Optional[Dict[str, Tuple[str, Any]]] = None):
        self._pixels = pixels
        self._compute = compute
        self.fields: Dict[str, Tuple[str, Any]] = dict(fields or {})
        self.evaluations = 0
        self.id = next(self._ids)
        self._lock = threading.Lock()

    @property
    def evaluated(self) -> bool:
        return self._pixels is not None

    @property
    def pixels(self) -> np.ndarray:
        with self._lock:
            if self._pixels is None:
                self._pixels = self._compute()
                self._compute = None
                self.evaluations += 1
        return self._pixels

    def header(self, name: str, default: Any = None) -> Any:
        entry = self.fields.get(name)
        return default if entry is None else entry[1]

    def __repr__(self) -> str:
        state = "evaluated" if self.evaluated else "pending"
        return f"<MemoryImage #{self.id} {state}>"


def new_fields(interpretation: str = "multiband") -> Dict[str, Tuple[str, Any]]:
    fields = {
        "interpretation": interpretation,
        "coding": "none",
        "xres": 1.0,
        "yres": 1.0,
        "xoffset": 0,
        "yoffset": 0,
    }
    return {k: (_HEADER_TYPES[k], v) for k, v in fields.items()}


def guess_interpretation(bands: int) -> str:
    return {1: "b-w", 3: "srgb", 4: "srgb"}.get(bands, "multiband")


# ===================================================================
# Pixel helpers
# ===================================================================

def format_of(px: np.ndarray) -> str:
    return DTYPE_FORMATS[px.dtype]


def is_integer(px: np.ndarray) -> bool:
    return np.issubdtype(px.dtype, np.integer)


def is_complex(px: np.ndarray) -> bool:
    return np.issubdtype(px.dtype, np.complexfloating)


def storable(dtype) -> np.dtype:
    """The nearest dtype the band formats can hold."""
    dtype = np.dtype(dtype)
    if dtype in DTYPE_FORMATS:
        return dtype
    if np.issubdtype(dtype, np.complexfloating):
        return np.dtype(np.complex128)
    if np.issubdtype(dtype, np.integer):
        return np.dtype(np.int32)
    return np.dtype(np.float64)


def float_dtype(*arrays: np.ndarray) -> np.dtype:
    """float unless an operand is double, complex if an operand is complex."""
    double = any(a.dtype in (np.float64, np.complex128) for a in arrays)
    if any(is_complex(a) for a in arrays):
        return np.dtype(np.complex128 if double else np.complex64)
    return np.dtype(np.float64 if double else np.float32)


def widen(op: str, *arrays: np.ndarray) -> np.dtype:
    if all(is_integer(a) for a in arrays):
        common = DTYPE_FORMATS[storable(np.result_type(*arrays))]
        return np.dtype(FORMAT_DTYPES[_WIDEN[op][common]])
    return float_dtype(*arrays)


def clip_cast(values: np.ndarray, dtype) -> np.ndarray:
    """Cast with saturation, as band format conversion does."""
    dtype = np.dtype(dtype)
    if is_complex(values) and not np.issubdtype(dtype, np.complexfloating):
        values = values.real
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        values = np.clip(values, info.min, info.max)
    return values.astype(dtype)


def out_bands(*counts: int) -> int:
    n = max(counts)
    for c in counts:
        if c not in (1, n):
            raise OperationError(f"band counts {', '.join(map(str, counts))} do not match")
    return n


def vector(values: Iterable[float]) -> np.ndarray:
    return np.asarray(list(values), dtype=np.float64)


def working(px: np.ndarray) -> np.ndarray:
    """Widen to a type arithmetic cannot overflow."""
    if is_complex(px):
        return px.astype(np.complex128)
    if is_integer(px):
        return px.astype(np.int64)
    return px.astype(np.float64)


def expand(px: np.ndarray, bands: int) -> np.ndarray:
    if px.shape[2] == bands:
        return px
    return np.repeat(px, bands, axis=2)


def check_same_size(*images: np.ndarray) -> None:
    sizes = {px.shape[:2] for px in images}
    if len(sizes) > 1:
        raise OperationError("images must be the same size")


def windows(px: np.ndarray, width: int, height: int) -> np.ndarray:
    """Edge-extended (h, w, bands, height, width) neighbourhoods of every pixel."""
    top, left = height // 2, width // 2
    padded = np.pad(px, ((top, height - 1 - top), (left, width - 1 - left), (0, 0)), mode="edge")
    return sliding_window_view(padded, (height, width), axis=(0, 1))


def source_index(index: np.ndarray, n: int, extend: str) -> np.ndarray:
    if extend == "copy":
        return np.clip(index, 0, n - 1)
    if extend == "repeat":
        return np.mod(index, n)
    m = np.mod(index, 2 * n)
    return np.where(m < n, m, 2 * n - 1 - m)


def white(dtype: np.dtype) -> float:
    if np.issubdtype(dtype, np.integer) and dtype != np.uint8:
        return np.iinfo(dtype).max
    return 255


def relational(nick: str, left: np.ndarray, right: np.ndarray) -> np.ndarray:
    if is_complex(left) or is_complex(right):
        left, right = np.abs(left), np.abs(right)
    fn = {
        "equal": np.equal,
        "noteq": np.not_equal,
        "less": np.less,
        "lesseq": np.less_equal,
        "more": np.greater,
        "moreeq": np.greater_equal,
    }[nick]
    return np.where(fn(left, right), 255, 0).astype(np.uint8)


def boolean(nick: str, left: np.ndarray, right: np.ndarray) -> np.ndarray:
    a = np.trunc(np.real(left)).astype(np.int64)
    b = np.trunc(np.real(right)).astype(np.int64)
    fn = {
        "and": np.bitwise_and,
        "or": np.bitwise_or,
        "eor": np.bitwise_xor,
        "lshift": np.left_shift,
        "rshift": np.right_shift,
    }[nick]
    return fn(a, b)


def math2(nick: str, left: np.ndarray, right: np.ndarray) -> np.ndarray:
    with np.errstate(all="ignore"):
        if nick == "pow":
            return np.power(left, right)
        return np.power(right, left)


def math1(nick: str, px: np.ndarray) -> np.ndarray:
    with np.errstate(all="ignore"):
        if nick in ("sin", "cos", "tan"):
            return getattr(np, nick)(np.radians(px))
        if nick in ("asin", "acos", "atan"):
            return np.degrees(getattr(np, "arc" + nick[1:])(px))
        if nick == "exp10":
            return np.power(10.0, px)
        return getattr(np, nick)(px)


# ===================================================================
# Runtime
# ===================================================================

class MemoryRuntime(ForeignRuntime):
    """A foreign runtime that keeps every image as a numpy array in memory."""

    def __init__(self, version: Optional[Sequence[int]] = None,
                 catalog_path: Optional[Path] = None):
        catalog = load_catalog(catalog_path)
        version = tuple(version if version is not None else catalog["version"])
        self._version = version + (0,) * (3 - len(version))
        self._enums = {name: EnumType(name, values)
                       for name, values in catalog["enums"].items()}

        reorder = set()
        if self._version[:2] <= LAST_OLD_CONST_ORDER:
            reorder = set(catalog.get("old_const_order", ()))

        self._signatures: Dict[str, OperationSignature] = {}
        for name, entry in catalog["operations"].items():
            arguments = [parse_argument(a) for a in entry["arguments"]]
            if name in reorder:
                arguments = _old_const_order(arguments)
            self._signatures[name] = OperationSignature(
                name, tuple(arguments), entry.get("description", ""))

        self.calls: List[ForeignCall] = []
        self._lock = threading.Lock()

    # -- catalog ----------------------------------------------------------

    def lookup(self, name: str) -> OperationSignature:
        return self._signatures[name]

    def operation_names(self) -> List[str]:
        return sorted(self._signatures)

    def enum_type(self, type_tag: str) -> Optional[EnumType]:
        return self._enums.get(type_tag)

    def version(self) -> Tuple[int, int, int]:
        return self._version

    def _nick(self, type_tag: str, value: Any) -> str:
        enum = self._enums[type_tag]
        if isinstance(value, str):
            return enum.normalize(value)
        return enum.nick(int(value))

    # -- calls ------------------------------------------------------------

    def call(self, name: str, args: Dict[str, Any]) -> CallOutcome:
        signature = self.lookup(name)
        with self._lock:
            self.calls.append(ForeignCall(name, dict(args)))

        missing = [a.name for a in signature.arguments
                   if a.is_input and a.is_required and a.name not in args]
        if missing:
            return False, {}, f"{name}: missing required input {', '.join(missing)}"

        handler = getattr(self, "_op_" + name)
        try:
            outputs = handler(args)
        except OperationError as e:
            lib_logger.debug("memory runtime: %s failed: %s", name, e)
            return False, {}, f"{name}: {e}"
        return True, outputs, ""

    def calls_to(self, name: str) -> List[ForeignCall]:
        return [c for c in self.calls if c.name == name]

    # -- loader and saver resolution ---------------------------------------

    def find_load(self, filename: str) -> Optional[str]:
        if filename.lower().endswith(".npy"):
            return "npyload"
        return None

    def find_load_buffer(self, data: bytes) -> Optional[str]:
        if bytes(data[:len(NUMPY_MAGIC)]) == NUMPY_MAGIC:
            return "npyload_buffer"
        return None

    def find_save(self, filename: str) -> Optional[str]:
        if filename.lower().endswith(".npy"):
            return "npysave"
        return None

    def find_save_buffer(self, suffix: str) -> Optional[str]:
        if suffix.lower().lstrip(".") == "npy":
            return "npysave_buffer"
        return None

    # -- header metadata ---------------------------------------------------

    def get_typeof(self, ref: MemoryImage, field: str) -> Optional[str]:
        if field in _PIXEL_FIELDS:
            return _PIXEL_FIELDS[field]
        entry = ref.fields.get(field)
        return None if entry is None else entry[0]

    def get(self, ref: MemoryImage, field: str) -> Any:
        if field == "width":
            return ref.pixels.shape[1]
        if field == "height":
            return ref.pixels.shape[0]
        if field == "bands":
            return ref.pixels.shape[2]
        if field == "format":
            return format_of(ref.pixels)
        return ref.fields[field][1]

    def set(self, ref: MemoryImage, field: str, type_tag: str, value: Any) -> None:
        if field in _PIXEL_FIELDS:
            raise ValueError(f"header field {field!r} is read-only")
        if type_tag in self._enums:
            value = self._nick(type_tag, value)
        ref.fields[field] = (type_tag, value)

    def remove(self, ref: MemoryImage, field: str) -> bool:
        if field in _PIXEL_FIELDS:
            return False
        return ref.fields.pop(field, None) is not None

    # -- helpers -----------------------------------------------------------

    def _derive(self, src: MemoryImage, compute: Callable[[], np.ndarray],
                **header) -> MemoryImage:
        out = MemoryImage(compute=compute, fields=src.fields)
        for key, value in header.items():
            if value is not None:
                out.fields[key] = (_HEADER_TYPES[key], value)
        return out

    def _binary(self, args: Dict[str, Any], fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
                dtype: Optional[np.dtype] = None) -> Dict[str, MemoryImage]:
        left, right = args["left"], args["right"]
        a, b = left.pixels, right.pixels
        check_same_size(a, b)
        bands = out_bands(a.shape[2], b.shape[2])

        def compute():
            result = fn(working(expand(a, bands)), working(expand(b, bands)))
            return clip_cast(result, dtype if dtype is not None else storable(result.dtype))
        return {"out": self._derive(left, compute)}

    def _with_const(self, args: Dict[str, Any], fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
                    dtype: Optional[np.dtype] = None) -> Dict[str, MemoryImage]:
        src = args["in"]
        px = src.pixels
        c = vector(args["c"])
        out_bands(px.shape[2], len(c))

        def compute():
            result = fn(working(px), c)
            return clip_cast(result, dtype if dtype is not None else storable(result.dtype))
        return {"out": self._derive(src, compute)}

    # ===================================================================
    # Operations
    # ===================================================================

    # -- create --------------------------------------------------------------

    def _op_black(self, args):
        width, height, bands = args["width"], args["height"], args.get("bands", 1)
        if width < 1 or height < 1 or bands < 1:
            raise OperationError("bad image size")
        return {"out": MemoryImage(np.zeros((height, width, bands), np.uint8),
                                   fields=new_fields(guess_interpretation(bands)))}

    def _op_matrix_from_array(self, args):
        width, height, array = args["width"], args["height"], args["array"]
        if width < 1 or height < 1 or len(array) != width * height:
            raise OperationError(f"bad array length {len(array)} for a {width}x{height} matrix")
        px = np.asarray(array, np.float64).reshape(height, width, 1)
        return {"out": MemoryImage(px, fields=new_fields("matrix"))}

    def _op_copy_memory(self, args):
        src = args["in"]
        return {"out": MemoryImage(np.array(src.pixels, copy=True), fields=src.fields)}

    # -- arithmetic ----------------------------------------------------------

    def _op_add(self, args):
        return self._binary(args, np.add, widen("add", args["left"].pixels, args["right"].pixels))

    def _op_subtract(self, args):
        return self._binary(args, np.subtract,
                            widen("subtract", args["left"].pixels, args["right"].pixels))

    def _op_multiply(self, args):
        return self._binary(args, np.multiply,
                            widen("multiply", args["left"].pixels, args["right"].pixels))

    def _op_divide(self, args):
        dtype = float_dtype(args["left"].pixels, args["right"].pixels)

        def divide(a, b):
            with np.errstate(all="ignore"):
                return np.where(b == 0, 0, np.true_divide(a, np.where(b == 0, 1, b)))
        return self._binary(args, divide, dtype)

    # remainder by zero is zero

    def _op_remainder(self, args):
        def remainder(a, b):
            return np.where(b == 0, 0, np.fmod(a, np.where(b == 0, 1, b)))
        return self._binary(args, remainder)

    def _op_remainder_const(self, args):
        px = args["in"].pixels

        def remainder(a, c):
            safe = np.where(c == 0, 1, c)
            if is_integer(a):
                safe = np.trunc(safe).astype(np.int64)
            return np.where(c == 0, 0, np.fmod(a, safe))
        return self._with_const(args, remainder, px.dtype if is_integer(px) else None)

    def _op_linear(self, args):
        src = args["in"]
        px = src.pixels
        a, b = vector(args["a"]), vector(args["b"])
        out_bands(px.shape[2], len(a), len(b))
        dtype = np.uint8 if args.get("uchar", False) else float_dtype(px)

        def compute():
            work = px.astype(np.complex128 if is_complex(px) else np.float64)
            result = work * a + b
            if dtype == np.uint8:
                result = np.rint(np.real(result))
            return clip_cast(result, dtype)
        return {"out": self._derive(src, compute)}

    def _op_relational(self, args):
        nick = self._nick("VipsOperationRelational", args["relational"])
        return self._binary(args, lambda a, b: relational(nick, a, b), np.uint8)

    def _op_relational_const(self, args):
        nick = self._nick("VipsOperationRelational", args["relational"])
        return self._with_const(args, lambda a, c: relational(nick, a, c), np.uint8)

    # bit operations wrap to the input format rather than saturating

    def _op_boolean(self, args):
        nick = self._nick("VipsOperationBoolean", args["boolean"])
        px = args["left"].pixels
        dtype = px.dtype if is_integer(px) else np.dtype(np.int32)
        return self._binary(args, lambda a, b: boolean(nick, a, b).astype(dtype), dtype)

    def _op_boolean_const(self, args):
        nick = self._nick("VipsOperationBoolean", args["boolean"])
        px = args["in"].pixels
        dtype = px.dtype if is_integer(px) else np.dtype(np.int32)
        return self._with_const(args, lambda a, c: boolean(nick, a, c).astype(dtype), dtype)

    def _op_math2(self, args):
        nick = self._nick("VipsOperationMath2", args["math2"])
        dtype = float_dtype(args["left"].pixels, args["right"].pixels)
        return self._binary(args, lambda a, b: math2(nick, a.astype(np.float64), b), dtype)

    def _op_math2_const(self, args):
        nick = self._nick("VipsOperationMath2", args["math2"])
        dtype = float_dtype(args["in"].pixels)
        return self._with_const(args, lambda a, c: math2(nick, a.astype(np.float64), c), dtype)

    def _op_math(self, args):
        nick = self._nick("VipsOperationMath", args["math"])
        src = args["in"]
        px = src.pixels
        return {"out": self._derive(src, lambda: clip_cast(math1(nick, working(px)),
                                                          float_dtype(px)))}

    def _op_round(self, args):
        nick = self._nick("VipsOperationRound", args["round"])
        src = args["in"]
        px = src.pixels
        if is_integer(px):
            return {"out": self._derive(src, lambda: px.copy())}
        fn = {"rint": np.rint, "ceil": np.ceil, "floor": np.floor}[nick]
        return {"out": self._derive(src, lambda: fn(px).astype(px.dtype))}

    def _op_abs(self, args):
        src = args["in"]
        px = src.pixels
        if is_complex(px):
            dtype = np.float64 if px.dtype == np.complex128 else np.float32
            return {"out": self._derive(src, lambda: np.abs(px).astype(dtype))}
        return {"out": self._derive(src, lambda: np.abs(px))}

    def _op_complex(self, args):
        nick = self._nick("VipsOperationComplex", args["cmplx"])
        src = args["in"]
        px = src.pixels
        if not is_complex(px):
            raise OperationError("not a complex image")

        def compute():
            if nick == "conj":
                return np.conj(px)
            if nick == "polar":
                angle = np.mod(np.degrees(np.angle(px)), 360)
                return (np.abs(px) + 1j * angle).astype(px.dtype)
            radians = np.radians(px.imag)
            return (px.real * np.cos(radians) + 1j * px.real * np.sin(radians)).astype(px.dtype)
        return {"out": self._derive(src, compute)}

    def _op_complexget(self, args):
        nick = self._nick("VipsOperationComplexget", args["get"])
        src = args["in"]
        px = src.pixels
        dtype = np.float64 if px.dtype in (np.complex128, np.float64) else np.float32

        def compute():
            part = np.real(px) if nick == "real" else np.imag(px)
            return part.astype(dtype)
        return {"out": self._derive(src, compute)}

    def _op_sum(self, args):
        images = args["in"]
        if not images:
            raise OperationError("no images to sum")
        arrays = [im.pixels for im in images]
        check_same_size(*arrays)
        bands = out_bands(*(a.shape[2] for a in arrays))
        dtype = widen("add", *arrays)

        def compute():
            total = np.zeros(arrays[0].shape[:2] + (bands,), np.complex128 if dtype.kind == "c" else np.float64)
            for a in arrays:
                total = total + expand(a, bands)
            return clip_cast(total, dtype)
        return {"out": self._derive(images[0], compute)}

    # -- statistics ----------------------------------------------------------

    def _values(self, px: np.ndarray) -> np.ndarray:
        return np.abs(px) if is_complex(px) else px

    def _op_avg(self, args):
        return {"out": float(np.mean(self._values(args["in"].pixels)))}

    def _extreme(self, args, find):
        px = self._values(args["in"].pixels)
        index = int(find(px))
        bands, width = px.shape[2], px.shape[1]
        pixel = index // bands
        return {"out": float(px.flat[index]), "x": pixel % width, "y": pixel // width}

    def _op_min(self, args):
        return self._extreme(args, np.argmin)

    def _op_max(self, args):
        return self._extreme(args, np.argmax)

    def _op_getpoint(self, args):
        px = args["in"].pixels
        x, y = args["x"], args["y"]
        if not (0 <= x < px.shape[1] and 0 <= y < px.shape[0]):
            raise OperationError(f"point ({x}, {y}) out of range")
        point = px[y, x]
        if is_complex(px):
            values = [v for z in point for v in (z.real, z.imag)]
        else:
            values = list(point)
        return {"out-array": [float(v) for v in values]}

    def _op_profile(self, args):
        src = args["in"]
        px = src.pixels
        height, width = px.shape[:2]

        def columns():
            hit = px != 0
            return np.where(hit.any(axis=0), hit.argmax(axis=0), height)[np.newaxis].astype(np.int32)

        def rows():
            hit = px != 0
            return np.where(hit.any(axis=1), hit.argmax(axis=1), width)[:, np.newaxis].astype(np.int32)
        return {"columns": self._derive(src, columns), "rows": self._derive(src, rows)}

    # -- conversion ----------------------------------------------------------

    def _op_cast(self, args):
        src = args["in"]
        px = src.pixels
        dtype = FORMAT_DTYPES[self._nick("VipsBandFormat", args["format"])]
        return {"out": self._derive(src, lambda: clip_cast(px, dtype))}

    def _op_copy(self, args):
        src = args["in"]
        px = src.pixels
        height, width, bands = px.shape
        dtype = px.dtype
        if "format" in args:
            dtype = np.dtype(FORMAT_DTYPES[self._nick("VipsBandFormat", args["format"])])
        new_bands = args.get("bands", bands * px.dtype.itemsize // dtype.itemsize)
        new_width, new_height = args.get("width", width), args.get("height", height)
        if bands * px.dtype.itemsize != new_bands * dtype.itemsize:
            raise OperationError(f"cannot reinterpret {bands} {format_of(px)} bands "
                                 f"as {new_bands} {DTYPE_FORMATS[dtype]} bands")
        if new_width * new_height != width * height:
            raise OperationError(f"cannot reshape {width}x{height} to {new_width}x{new_height}")

        def compute():
            view = np.ascontiguousarray(px).view(dtype)
            return view.reshape(new_height, new_width, new_bands).copy()

        interpretation = args.get("interpretation")
        if interpretation is not None:
            interpretation = self._nick("VipsInterpretation", interpretation)
        return {"out": self._derive(src, compute,
                                    interpretation=interpretation,
                                    xres=args.get("xres"), yres=args.get("yres"),
                                    xoffset=args.get("xoffset"), yoffset=args.get("yoffset"))}

    def _op_embed(self, args):
        src = args["in"]
        px = src.pixels
        x, y, width, height = args["x"], args["y"], args["width"], args["height"]
        if width < 1 or height < 1:
            raise OperationError("bad output size")
        extend = self._nick("VipsExtend", args.get("extend", "black"))
        background = vector(args.get("background", [0.0]))
        out_bands(px.shape[2], len(background))

        def compute():
            h, w = px.shape[:2]
            if extend in ("copy", "repeat", "mirror"):
                rows = source_index(np.arange(height) - y, h, extend)
                cols = source_index(np.arange(width) - x, w, extend)
                return px[rows][:, cols]
            out = np.empty((height, width, px.shape[2]), px.dtype)
            if extend == "background":
                out[...] = clip_cast(background, px.dtype)
            else:
                out[...] = 0 if extend == "black" else white(px.dtype)
            y0, y1 = max(y, 0), min(y + h, height)
            x0, x1 = max(x, 0), min(x + w, width)
            if y0 < y1 and x0 < x1:
                out[y0:y1, x0:x1] = px[y0 - y:y1 - y, x0 - x:x1 - x]
            return out
        return {"out": self._derive(src, compute)}

    def _op_crop(self, args):
        src = args["input"]
        px = src.pixels
        left, top, width, height = args["left"], args["top"], args["width"], args["height"]
        if (width < 1 or height < 1 or left < 0 or top < 0
                or left + width > px.shape[1] or top + height > px.shape[0]):
            raise OperationError("bad extract area")
        return {"out": self._derive(src, lambda: px[top:top + height, left:left + width].copy())}

    def _op_extract_band(self, args):
        src = args["in"]
        px = src.pixels
        band, n = args["band"], args.get("n", 1)
        if band < 0 or n < 1 or band + n > px.shape[2]:
            raise OperationError(f"bad extract area: bands {band}..{band + n - 1} "
                                 f"of a {px.shape[2]}-band image")
        return {"out": self._derive(src, lambda: px[:, :, band:band + n].copy())}

    def _op_bandjoin(self, args):
        images = args["in"]
        if not images:
            raise OperationError("no images to join")
        arrays = [im.pixels for im in images]
        check_same_size(*arrays)

        def compute():
            joined = np.concatenate(arrays, axis=2)
            return clip_cast(joined, storable(joined.dtype))
        bands = sum(a.shape[2] for a in arrays)
        return {"out": self._derive(images[0], compute,
                                    interpretation=guess_interpretation(bands))}

    def _op_bandjoin_const(self, args):
        src = args["in"]
        px = src.pixels
        c = vector(args["c"])

        def compute():
            extra = np.broadcast_to(clip_cast(c, px.dtype), px.shape[:2] + (len(c),))
            return np.concatenate([px, extra], axis=2)
        return {"out": self._derive(src, compute)}

    def _op_bandbool(self, args):
        nick = self._nick("VipsOperationBoolean", args["boolean"])
        if nick not in ("and", "or", "eor"):
            raise OperationError(f"bandbool cannot {nick}")
        src = args["in"]
        px = src.pixels
        fn = {"and": np.bitwise_and, "or": np.bitwise_or, "eor": np.bitwise_xor}[nick]
        dtype = px.dtype if is_integer(px) else np.int32

        def compute():
            ints = np.trunc(np.real(px)).astype(np.int64)
            return fn.reduce(ints, axis=2, keepdims=True).astype(dtype)
        return {"out": self._derive(src, compute, interpretation="b-w")}

    def _op_ifthenelse(self, args):
        cond, then_, else_ = args["cond"], args["in1"], args["in2"]
        c, a, b = cond.pixels, then_.pixels, else_.pixels
        check_same_size(c, a, b)
        bands = out_bands(c.shape[2], a.shape[2], b.shape[2])
        dtype = storable(np.result_type(a, b))
        blend = args.get("blend", False)

        def compute():
            cc, aa, bb = expand(c, bands), expand(a, bands), expand(b, bands)
            if blend:
                weight = np.clip(np.real(cc).astype(np.float64), 0, 255) / 255
                return clip_cast(weight * aa + (1 - weight) * bb, dtype)
            return np.where(cc != 0, aa, bb).astype(dtype)
        return {"out": self._derive(then_, compute)}

    def _op_flip(self, args):
        src = args["in"]
        px = src.pixels
        horizontal = self._nick("VipsDirection", args["direction"]) == "horizontal"
        return {"out": self._derive(src, lambda: (px[:, ::-1] if horizontal else px[::-1]).copy())}

    def _op_rot(self, args):
        src = args["in"]
        px = src.pixels
        turns = {"d0": 0, "d90": -1, "d180": 2, "d270": 1}[self._nick("VipsAngle", args["angle"])]
        return {"out": self._derive(src, lambda: np.ascontiguousarray(np.rot90(px, turns, axes=(0, 1))))}

    def _op_scale(self, args):
        src = args["in"]
        px = src.pixels
        exp, log = args.get("exp", 0.25), args.get("log", False)

        def compute():
            values = self._values(px).astype(np.float64)
            if log:
                values = np.log10(1.0 + np.power(values, exp))
                top = values.max()
                scaled = values * (255.0 / top) if top > 0 else values * 0
            else:
                low, high = values.min(), values.max()
                scaled = (values - low) * (255.0 / (high - low)) if high > low else values * 0
            return clip_cast(np.rint(scaled), np.uint8)
        return {"out": self._derive(src, compute)}

    # -- filtering -----------------------------------------------------------

    def _op_rank(self, args):
        src = args["in"]
        px = src.pixels
        width, height, index = args["width"], args["height"], args["index"]
        if width < 1 or height < 1 or not 0 <= index < width * height:
            raise OperationError(f"bad rank window {width}x{height} index {index}")

        def compute():
            w = windows(px, width, height)
            flat = w.reshape(w.shape[:3] + (-1,))
            return np.sort(flat, axis=-1)[..., index].astype(px.dtype)
        return {"out": self._derive(src, compute)}

    def _mask(self, mask: MemoryImage) -> np.ndarray:
        m = mask.pixels
        if m.shape[2] != 1:
            raise OperationError("mask must have one band")
        return np.real(m[:, :, 0]).astype(np.float64)

    def _op_morph(self, args):
        src = args["in"]
        px = src.pixels
        m = self._mask(args["mask"])
        nick = self._nick("VipsOperationMorphology", args["morph"])
        care = m != 128
        want = m == 255

        def compute():
            on = windows(px != 0, m.shape[1], m.shape[0])
            match = (on == want) | ~care
            if nick == "erode":
                hit = match.all(axis=(-2, -1))
            else:
                hit = (match & care).any(axis=(-2, -1))
            return np.where(hit, 255, 0).astype(np.uint8)
        return {"out": self._derive(src, compute)}

    def _op_conv(self, args):
        src, mask = args["in"], args["mask"]
        px = src.pixels
        m = self._mask(mask)
        scale = mask.header("scale", 1.0)
        offset = mask.header("offset", 0.0)
        if scale == 0:
            raise OperationError("mask scale is zero")

        def compute():
            w = windows(px.astype(np.float64), m.shape[1], m.shape[0])
            result = (w * m).sum(axis=(-2, -1)) / scale + offset
            if is_integer(px):
                return clip_cast(np.rint(result), px.dtype)
            return result.astype(float_dtype(px))
        return {"out": self._derive(src, compute)}

    # -- draw ----------------------------------------------------------------
    # draw operations paint on the image they are given

    def _ink(self, args, px: np.ndarray) -> np.ndarray:
        ink = vector(args["ink"])
        if len(ink) not in (1, px.shape[2]):
            raise OperationError(f"ink has {len(ink)} bands, image has {px.shape[2]}")
        return clip_cast(ink, px.dtype)

    def _op_draw_circle(self, args):
        image = args["image"]
        px = image.pixels
        ink = self._ink(args, px)
        cx, cy, radius = args["cx"], args["cy"], args["radius"]
        yy, xx = np.ogrid[:px.shape[0], :px.shape[1]]
        distance = np.sqrt((xx - cx) ** 2 + (yy - cy) ** 2)
        if args.get("fill", False):
            area = distance <= radius
        else:
            area = np.abs(distance - radius) < 0.5
        px[area] = ink
        return {"image": image}

    def _op_draw_rect(self, args):
        image = args["image"]
        px = image.pixels
        ink = self._ink(args, px)
        left, top, width, height = args["left"], args["top"], args["width"], args["height"]
        area = np.zeros(px.shape[:2], bool)
        area[max(top, 0):max(top + height, 0), max(left, 0):max(left + width, 0)] = True
        if not args.get("fill", False) and width > 2 and height > 2:
            area[max(top + 1, 0):max(top + height - 1, 0),
                 max(left + 1, 0):max(left + width - 1, 0)] = False
        px[area] = ink
        return {"image": image}

    # -- load and save -------------------------------------------------------

    def _loaded(self, array: np.ndarray, compute: Callable[[], np.ndarray],
                filename: Optional[str] = None) -> MemoryImage:
        if array.ndim == 2:
            shape = array.shape + (1,)
        elif array.ndim == 3:
            shape = array.shape
        else:
            raise OperationError(f"expected a 2-D or 3-D array, got {array.ndim}-D")
        if array.dtype not in DTYPE_FORMATS:
            raise OperationError(f"unsupported array type {array.dtype}")
        fields = new_fields(guess_interpretation(shape[2]))
        if filename is not None:
            fields["filename"] = ("gchararray", filename)
        return MemoryImage(compute=lambda: compute().reshape(shape), fields=fields)

    def _op_npyload(self, args):
        filename = args["filename"]
        if not os.path.exists(filename):
            raise OperationError(f"unable to open {filename!r}")
        try:
            # the memory map reads only the header until pixels are needed
            header = np.load(filename, mmap_mode="r", allow_pickle=False)
        except (OSError, ValueError, EOFError) as e:
            raise OperationError(f"{filename!r} is not a numpy array file: {e}") from None
        return {"out": self._loaded(header, lambda: np.array(header), filename)}

    def _op_npyload_buffer(self, args):
        try:
            array = np.load(io.BytesIO(args["buffer"]), allow_pickle=False)
        except (OSError, ValueError, EOFError) as e:
            raise OperationError(f"buffer is not a numpy array: {e}") from None
        return {"out": self._loaded(array, lambda: array)}

    def _op_npysave(self, args):
        px = args["in"].pixels
        try:
            with open(args["filename"], "wb") as f:
                np.save(f, px, allow_pickle=False)
        except OSError as e:
            raise OperationError(f"unable to write {args['filename']!r}: {e}") from None
        return {}

    def _op_npysave_buffer(self, args):
        out = io.BytesIO()
        np.save(out, args["in"].pixels, allow_pickle=False)
        return {"buffer": out.getvalue()}
