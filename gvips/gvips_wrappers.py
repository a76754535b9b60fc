"""
Per-operation wrapper functions.

Rather than answering unknown attribute lookups with blind dispatch, the
engine builds one named Python function per cataloged operation, on first
use, and every one of them delegates to `Engine.invoke`. Each wrapper gets
a docstring rendered from the operation's signature.
"""

import functools
import threading
from typing import Any, Callable, Dict, List

import pystache

from gvips.gvips_datatypes import ArgumentSpec, OperationSignature
from gvips.gvips_operation import classify

# map foreign type tags to the Python types callers pass
PYTHON_TYPE_NAMES = {
    "gboolean": "bool",
    "gint": "int",
    "gdouble": "float",
    "gchararray": "str",
    "VipsImage": "Image",
    "VipsArrayDouble": "list[float]",
    "VipsArrayInt": "list[int]",
    "VipsArrayImage": "list[Image]",
    "VipsBlob": "bytes",
}

DOC_TEMPLATE = """{{description}}

{{#method}}Called as a method of the `{{receiver}}` image.{{/method}}{{^method}}Called as a plain function.{{/method}}
{{#deprecated}}

This operation is deprecated.{{/deprecated}}
{{#has_required}}

Args:
{{#required}}
    {{name}} ({{type}}): {{blurb}}
{{/required}}
{{/has_required}}
{{#has_optional}}

Keyword options:
{{#optional}}
    {{name}} ({{type}}): {{blurb}}
{{/optional}}
{{/has_optional}}

Returns:
{{#outputs}}
    {{name}} ({{type}}): {{blurb}}
{{/outputs}}
{{^outputs}}
    None
{{/outputs}}
{{#has_optional_outputs}}

Optional outputs, requested with `name=True` and returned in a trailing dict:
{{#optional_outputs}}
    {{name}} ({{type}}): {{blurb}}
{{/optional_outputs}}
{{/has_optional_outputs}}
"""


def python_type_name(type_tag: str) -> str:
    if type_tag in PYTHON_TYPE_NAMES:
        return PYTHON_TYPE_NAMES[type_tag]
    if type_tag.startswith("Vips"):
        return type_tag[len("Vips"):]
    return type_tag


def _arg_context(spec: ArgumentSpec) -> Dict[str, str]:
    return {"name": spec.py_name, "type": python_type_name(spec.type), "blurb": spec.blurb}


def render_docstring(signature: OperationSignature) -> str:
    """Render the docstring for an operation's wrapper."""
    c = classify(signature)
    required = [_arg_context(s) for s in c.required_input]
    optional = [_arg_context(s) for s in c.optional_input.values()]
    optional_outputs = [_arg_context(s) for s in c.optional_output.values()]
    context = {
        "description": signature.description or signature.nickname,
        "method": c.receiver is not None,
        "receiver": c.receiver.py_name if c.receiver is not None else "",
        "deprecated": signature.is_deprecated,
        "required": required,
        "has_required": bool(required),
        "optional": optional,
        "has_optional": bool(optional),
        "outputs": [_arg_context(s) for s in c.required_output],
        "optional_outputs": optional_outputs,
        "has_optional_outputs": bool(optional_outputs),
    }
    renderer = pystache.Renderer(escape=lambda u: u)
    return renderer.render(DOC_TEMPLATE, context).strip() + "\n"


def make_function(engine, name: str) -> Callable[..., Any]:
    """A free function calling `name` with every argument positional."""
    signature = engine.dispatcher.signature(name)

    def wrapper(*args, **kwargs):
        return engine.invoke(name, args, kwargs)

    wrapper.__name__ = name
    wrapper.__qualname__ = name
    wrapper.__doc__ = render_docstring(signature)
    return wrapper


def make_method(engine, name: str) -> Callable[..., Any]:
    """A function whose first argument is the receiver image."""
    signature = engine.dispatcher.signature(name)

    def wrapper(image, *args, **kwargs):
        return engine.invoke(name, args, kwargs, receiver=image)

    wrapper.__name__ = name
    wrapper.__qualname__ = f"Image.{name}"
    wrapper.__doc__ = render_docstring(signature)
    return wrapper


class Operations:
    """Namespace of generated free-function wrappers, one per operation.

    `engine.ops.black(10, 10)` calls the `black` operation. Wrappers are
    built on first use and cached.
    """

    def __init__(self, engine):
        self._engine = engine
        self._functions: Dict[str, Callable[..., Any]] = {}
        self._methods: Dict[str, Callable[..., Any]] = {}
        self._lock = threading.Lock()

    def function(self, name: str) -> Callable[..., Any]:
        return self._cached(self._functions, make_function, name)

    def method(self, name: str) -> Callable[..., Any]:
        return self._cached(self._methods, make_method, name)

    def bound_method(self, name: str, image) -> Callable[..., Any]:
        method = self.method(name)
        bound = functools.partial(method, image)
        functools.update_wrapper(bound, method)
        return bound

    def _cached(self, cache, factory, name: str):
        with self._lock:
            fn = cache.get(name)
        if fn is None:
            fn = factory(self._engine, name)
            with self._lock:
                fn = cache.setdefault(name, fn)
        return fn

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        if not self._engine.has_operation(name):
            raise AttributeError(f"no operation named {name!r}")
        return self.function(name)

    def __dir__(self) -> List[str]:
        return sorted(set(super().__dir__()) | set(self._engine.runtime.operation_names()))
