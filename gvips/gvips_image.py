"""
The image handle and its operator overloads.

An `Image` is an opaque reference to a foreign-owned image plus the engine
that owns it. Any cataloged operation can be called as a method of an
image: the image fills the operation's first required image input and the
remaining positional arguments fill the other required inputs in order.
Keyword arguments set optional inputs or request optional outputs.

Arithmetic, bitwise and relational operators work against other images,
numbers and (nested) lists of numbers, one element per band:

    im = ((im * [1, 2, 1]).abs() < 128) | 4

Constants on the right of an operator are folded into the matching
`*_const` or `linear` operation instead of being made into images.
"""

import numbers
from typing import Any, Callable, List, Optional

from gvips.gvips_datatypes import VipsError, InvalidIndex, TypeMismatch, UnknownOperation
from gvips.gvips_coerce import coerce_in, coerce_out, smap, is_image, is_number, is_constant
from gvips.gvips_compat import call_enum
from gvips.gvips_runtime import split_filename, parse_option_string

COMPLEX_FORMATS = ("complex", "dpcomplex")
FLOAT_FORMATS = ("float", "double", "complex", "dpcomplex")


def is_complex_format(format: str) -> bool:
    return format in COMPLEX_FORMATS


def is_float_format(format: str) -> bool:
    return format in FLOAT_FORMATS


def run_cmplx(image: "Image", fn: Callable[["Image"], "Image"]) -> "Image":
    """Run a complex operation on a complex image or a real image with an even band count.

    A real image has pairs of bands reinterpreted as (x, y) complex values,
    and the result is turned back into pairs of real bands.
    """
    original_format = image.format

    if not is_complex_format(original_format):
        if image.bands % 2 != 0:
            raise VipsError("not an even number of bands", "run_cmplx")
        if not is_float_format(image.format):
            image = image.cast("float")
        new_format = "dpcomplex" if image.format == "double" else "complex"
        image = image.copy(format=new_format, bands=image.bands // 2)

    image = fn(image)

    if not is_complex_format(original_format):
        new_format = "double" if image.format == "dpcomplex" else "float"
        image = image.copy(format=new_format, bands=image.bands * 2)

    return image


class Image:
    """A handle on a foreign-owned image."""

    # images are not sequences of bands; use bandsplit()
    __iter__ = None

    def __init__(self, engine, ref: Any):
        self.engine = engine
        self.ref = ref

    def __getattr__(self, name: str):
        if name.startswith("_") or name in ("engine", "ref"):
            raise AttributeError(name)
        if not self.engine.has_operation(name):
            raise AttributeError(f"'Image' object has no attribute or operation {name!r}")
        return self.engine.ops.bound_method(name, self)

    def __dir__(self) -> List[str]:
        return sorted(set(super().__dir__()) | set(self.engine.runtime.operation_names()))

    def __repr__(self) -> str:
        return f"<Image ref={self.ref!r}>"

    # ===================================================================
    # Header metadata
    # ===================================================================

    def get_typeof(self, name: str) -> Optional[str]:
        """Type tag of a header field, or None if there is no such field."""
        return self.engine.runtime.get_typeof(self.ref, name)

    def get(self, name: str) -> Any:
        """Get a header field, converted to a Python value.

        For example `image.get("icc-profile-data")` is a bytes object.
        """
        type_tag = self.get_typeof(name)
        if type_tag is None:
            raise VipsError(f"no header field {name!r}", "get", name)
        return coerce_out(self.engine.runtime.get(self.ref, name), type_tag, self.engine)

    def set_type(self, type_tag: str, name: str, value: Any) -> None:
        """Create or replace a header field of a given type."""
        foreign = coerce_in(value, type_tag, self.engine, "set", name)
        self.engine.runtime.set(self.ref, name, type_tag, foreign)

    def set(self, name: str, value: Any) -> None:
        """Set an existing header field, keeping its type."""
        type_tag = self.get_typeof(name)
        if type_tag is None:
            raise VipsError(f"no header field {name!r}", "set", name)
        self.set_type(type_tag, name, value)

    def remove(self, name: str) -> bool:
        return self.engine.runtime.remove(self.ref, name)

    @property
    def width(self) -> int:
        return self.get("width")

    @property
    def height(self) -> int:
        return self.get("height")

    @property
    def bands(self) -> int:
        return self.get("bands")

    @property
    def format(self):
        return self.get("format")

    @property
    def interpretation(self):
        return self.get("interpretation")

    @property
    def coding(self):
        return self.get("coding")

    @property
    def filename(self) -> Optional[str]:
        if self.get_typeof("filename") is None:
            return None
        return self.get("filename")

    @property
    def xoffset(self) -> int:
        return self.get("xoffset")

    @property
    def yoffset(self) -> int:
        return self.get("yoffset")

    @property
    def xres(self) -> float:
        return self.get("xres")

    @property
    def yres(self) -> float:
        return self.get("yres")

    @property
    def scale(self) -> float:
        if self.get_typeof("scale") is None:
            return 1.0
        return self.get("scale")

    @property
    def offset(self) -> float:
        if self.get_typeof("offset") is None:
            return 0.0
        return self.get("offset")

    @property
    def size(self):
        return self.width, self.height

    # ===================================================================
    # Writing
    # ===================================================================

    def write_to_file(self, name: str, **options) -> None:
        """Write to a file; the format comes from the filename suffix.

        Options may be given in the name, `"fred.npy[opt=1]"`, or as keywords.
        """
        if name is None:
            raise TypeMismatch("filename is None", "write_to_file", "filename")
        filename, option_string = split_filename(name)
        saver = self.engine.runtime.find_save(filename)
        if saver is None:
            raise UnknownOperation(f"no known saver for {filename!r}", "write_to_file")
        merged = parse_option_string(option_string)
        merged.update(options)
        self.engine.invoke(saver, [filename], merged, receiver=self)
        self.engine.gc_policy.after_write()

    def write_to_buffer(self, format_string: str, **options) -> bytes:
        """Write to a memory buffer in the format named by a suffix, e.g. `".npy"`."""
        suffix, option_string = split_filename(format_string)
        saver = self.engine.runtime.find_save_buffer(suffix)
        if saver is None:
            raise UnknownOperation(f"no known saver for {suffix!r}", "write_to_buffer")
        merged = parse_option_string(option_string)
        merged.update(options)
        buffer = self.engine.invoke(saver, [], merged, receiver=self)
        self.engine.gc_policy.after_write()
        return buffer

    def copy_memory(self) -> "Image":
        """A private, fully evaluated in-memory copy of this image."""
        return self.engine.invoke("copy_memory", [], receiver=self)

    # ===================================================================
    # Operators
    # ===================================================================

    def _call(self, name: str, *args, **options):
        return self.engine.invoke(name, args, options, receiver=self)

    def __add__(self, other):
        if is_image(other):
            return self._call("add", other)
        return self._call("linear", 1, other)

    def __radd__(self, other):
        return self.__add__(other)

    def __sub__(self, other):
        if is_image(other):
            return self._call("subtract", other)
        return self._call("linear", 1, smap(other, lambda x: x * -1))

    def __rsub__(self, other):
        return self._call("linear", -1, other)

    def __mul__(self, other):
        if is_image(other):
            return self._call("multiply", other)
        return self._call("linear", other, 0)

    def __rmul__(self, other):
        return self.__mul__(other)

    def __truediv__(self, other):
        if is_image(other):
            return self._call("divide", other)
        # a zero divisor gives 0, as the divide operation does
        return self._call("linear", smap(other, lambda x: 1.0 / x if x != 0 else 0.0), 0)

    def __rtruediv__(self, other):
        return (self ** -1) * other

    def __floordiv__(self, other):
        return (self / other).floor()

    def __rfloordiv__(self, other):
        return (other / self).floor()

    def __mod__(self, other):
        if is_image(other):
            return self._call("remainder", other)
        return self._call("remainder_const", other)

    def __pow__(self, other):
        return call_enum(self, "math2", other, "pow")

    def __rpow__(self, other):
        return call_enum(self, "math2", other, "wop")

    def __lshift__(self, other):
        return call_enum(self, "boolean", other, "lshift")

    def __rshift__(self, other):
        return call_enum(self, "boolean", other, "rshift")

    def __and__(self, other):
        return call_enum(self, "boolean", other, "and")

    def __rand__(self, other):
        return self.__and__(other)

    def __or__(self, other):
        return call_enum(self, "boolean", other, "or")

    def __ror__(self, other):
        return self.__or__(other)

    def __xor__(self, other):
        return call_enum(self, "boolean", other, "eor")

    def __rxor__(self, other):
        return self.__xor__(other)

    def __neg__(self):
        return self * -1

    def __pos__(self):
        return self

    def __invert__(self):
        return self ^ -1

    def __abs__(self):
        return self._call("abs")

    def __lt__(self, other):
        return call_enum(self, "relational", other, "less")

    def __le__(self, other):
        return call_enum(self, "relational", other, "lesseq")

    def __gt__(self, other):
        return call_enum(self, "relational", other, "more")

    def __ge__(self, other):
        return call_enum(self, "relational", other, "moreeq")

    def __eq__(self, other):
        # relational operations cannot take None, so answer here
        if other is None:
            return False
        return call_enum(self, "relational", other, "equal")

    def __ne__(self, other):
        if other is None:
            return True
        return call_enum(self, "relational", other, "noteq")

    __hash__ = object.__hash__

    def __getitem__(self, index):
        """Extract bands: `im[1]`, `im[-1]`, `im[0:2]` or `im[range(1, 3)]`."""
        if isinstance(index, bool):
            raise InvalidIndex("index must be an int, slice or range, not bool", "extract_band")
        if isinstance(index, numbers.Integral):
            index = int(index)
            bands = self.bands
            if index < 0:
                index += bands
            if not 0 <= index < bands:
                raise InvalidIndex(f"band {index} out of range for a {bands}-band image",
                                   "extract_band")
            return self._call("extract_band", index)
        if isinstance(index, range):
            if index.step != 1:
                raise InvalidIndex("band ranges must have step 1", "extract_band")
            index = slice(index.start, index.stop)
        if isinstance(index, slice):
            if index.step not in (None, 1):
                raise InvalidIndex("band slices must have step 1", "extract_band")
            bands = self.bands
            start = 0 if index.start is None else index.start
            stop = bands if index.stop is None else index.stop
            start = start + bands if start < 0 else start
            stop = stop + bands if stop < 0 else stop
            n = stop - start
            if n < 1:
                raise InvalidIndex(f"empty band range {start}:{stop}", "extract_band")
            if start < 0 or stop > bands:
                raise InvalidIndex(f"bands {start}:{stop} out of range for a {bands}-band image",
                                   "extract_band")
            return self._call("extract_band", start, n=n)
        raise InvalidIndex(f"index must be an int, slice or range, not {type(index).__name__}",
                           "extract_band")

    # ===================================================================
    # Multi-image operations
    # ===================================================================

    def new_from_image(self, value) -> "Image":
        """An image like this one with every pixel set to `value`.

        A list makes a many-band image, a number a one-band image. Size,
        format, interpretation, resolution and offset match this image.
        """
        engine = self.engine
        pixel = (engine.ops.black(1, 1) + value).cast(self.format)
        image = pixel.embed(0, 0, self.width, self.height, extend="copy")
        return image.copy(interpretation=self.interpretation,
                          xres=self.xres, yres=self.yres,
                          xoffset=self.xoffset, yoffset=self.yoffset)

    def bandjoin(self, other) -> "Image":
        """Append bands: an image, a constant, or a list of images and constants."""
        if not isinstance(other, (list, tuple)):
            other = [other]
        if all(is_number(x) for x in other):
            return self._call("bandjoin_const", list(other))
        return self.engine.bandjoin([self] + list(other))

    def bandsplit(self) -> List["Image"]:
        return [self[i] for i in range(self.bands)]

    def ifthenelse(self, th, el, **options) -> "Image":
        """Pick pixels from `th` where self is non-zero, from `el` elsewhere.

        Constants for either branch are expanded to images matching the
        first image among th, el and self. Use `blend=True` to fade
        smoothly between the two.
        """
        match_image = next(x for x in (th, el, self) if is_image(x))
        if not is_image(th):
            th = self._imageize(match_image, th, "in1")
        if not is_image(el):
            el = self._imageize(match_image, el, "in2")
        return self._call("ifthenelse", th, el, **options)

    @staticmethod
    def _imageize(match_image: "Image", value, argument: str) -> "Image":
        if not is_constant(value):
            raise TypeMismatch(f"expected an image or a constant, got {type(value).__name__}",
                               "ifthenelse", argument)
        return match_image.new_from_image(value)

    # ===================================================================
    # Convenience
    # ===================================================================

    def maxpos(self):
        """The maximum value and its coordinates, as (value, x, y)."""
        v, opts = self._call("max", x=True, y=True)
        return v, opts["x"], opts["y"]

    def minpos(self):
        """The minimum value and its coordinates, as (value, x, y)."""
        v, opts = self._call("min", x=True, y=True)
        return v, opts["x"], opts["y"]

    def getpoint(self, x: int, y: int) -> List[float]:
        return self._call("getpoint", x, y)

    def tolist(self) -> List[List[List[float]]]:
        """Pixel values as rows of per-pixel band lists. Slow for large images."""
        return [[self.getpoint(x, y) for x in range(self.width)]
                for y in range(self.height)]

    def median(self, size: int = 3) -> "Image":
        return self._call("rank", size, size, (size * size) // 2)

    def scaleimage(self, **options) -> "Image":
        """The `scale` operation, renamed to avoid the `scale` property."""
        return self._call("scale", **options)

    def real(self) -> "Image":
        return self._call("complexget", "real")

    def imag(self) -> "Image":
        return self._call("complexget", "imag")

    def polar(self) -> "Image":
        return run_cmplx(self, lambda x: x._call("complex", "polar"))

    def rect(self) -> "Image":
        return run_cmplx(self, lambda x: x._call("complex", "rect"))

    def conj(self) -> "Image":
        return run_cmplx(self, lambda x: x._call("complex", "conj"))

    def floor(self) -> "Image":
        return self._call("round", "floor")

    def ceil(self) -> "Image":
        return self._call("round", "ceil")

    def rint(self) -> "Image":
        return self._call("round", "rint")

    def bandand(self) -> "Image":
        return self._call("bandbool", "and")

    def bandor(self) -> "Image":
        return self._call("bandbool", "or")

    def bandeor(self) -> "Image":
        return self._call("bandbool", "eor")

    def fliphor(self) -> "Image":
        return self._call("flip", "horizontal")

    def flipver(self) -> "Image":
        return self._call("flip", "vertical")

    def rot90(self) -> "Image":
        return self._call("rot", "d90")

    def rot180(self) -> "Image":
        return self._call("rot", "d180")

    def rot270(self) -> "Image":
        return self._call("rot", "d270")

    def erode(self, mask) -> "Image":
        """Erode with a structuring element: 0 black, 255 white, 128 don't care."""
        return self._call("morph", mask, "erode")

    def dilate(self, mask) -> "Image":
        return self._call("morph", mask, "dilate")


def _math_method(selector: str) -> Callable[[Image], Image]:
    def method(self: Image) -> Image:
        return self._call("math", selector)
    method.__name__ = selector
    method.__qualname__ = f"Image.{selector}"
    method.__doc__ = f"The `{selector}` of every pixel (degrees for trigonometry)."
    return method


for _selector in ("sin", "cos", "tan", "asin", "acos", "atan",
                  "log", "log10", "exp", "exp10"):
    setattr(Image, _selector, _math_method(_selector))
del _selector
