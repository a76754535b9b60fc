"""
Generic invocation of cataloged operations.

An operation is called by name with positional values, keyword options and
an optional receiver image. The signature comes from the catalog, is
classified once per name, and every call is bound, run and packed here:
this module is the only code that calls `ForeignRuntime.call`.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from gvips.gvips_datatypes import (
    ArgumentFlags, OperationSignature, Classification, BoundArguments, CallRequest,
    UnknownOperation, ArityMismatch, UnknownOption, OperationFailed,
    IMAGE_TYPE,
)
from gvips.gvips_coerce import coerce_in, coerce_out

lib_logger = logging.getLogger("gvips")


# ===================================================================
# 1. Classification
# ===================================================================

def classify(signature: OperationSignature) -> Classification:
    """Partition an operation's arguments into call buckets.

    Arguments are visited in catalog order. The first required input image
    becomes the receiver slot, so the operation can be called as a method
    of that image. MODIFY inputs are also counted as outputs.
    """
    c = Classification(signature=signature)
    for spec in signature.arguments:
        if spec.is_deprecated:
            c.deprecated[spec.py_name] = spec
            continue

        if spec.is_input and spec.is_modify:
            c.modify.append(spec.name)

        if spec.is_input:
            if spec.is_required:
                if c.receiver is None and spec.type == IMAGE_TYPE and spec.flags & ArgumentFlags.CONSTRUCT:
                    c.receiver = spec
                    c.receiver_index = len(c.required_input)
                else:
                    c.required_input.append(spec)
            else:
                c.optional_input[spec.py_name] = spec

        if spec.is_output:
            if spec.is_required:
                c.required_output.append(spec)
            else:
                c.optional_output[spec.py_name] = spec
    return c


def bind(classification: Classification, positional: Sequence[Any],
         options: Optional[Dict[str, Any]], receiver: Any, engine) -> BoundArguments:
    """Bind a call's values to an operation's argument slots, coercing as we go."""
    name = classification.signature.nickname
    positional = list(positional)
    options = dict(options or {})
    bound = BoundArguments(name=name)

    if receiver is not None and classification.receiver is not None:
        slots = classification.required_input
        receiver_spec = classification.receiver
    else:
        if receiver is not None:
            # no image input to attach to: the receiver is the first argument
            positional.insert(0, receiver)
        slots = classification.all_required_input
        receiver_spec = None

    if len(positional) != len(slots):
        expected = ", ".join(s.py_name for s in slots) or "no arguments"
        raise ArityMismatch(
            f"takes {len(slots)} positional arguments ({expected}), {len(positional)} given",
            name)

    supplied = {s.name: v for s, v in zip(slots, positional)}
    for spec in classification.all_required_input:
        if receiver_spec is not None and spec is receiver_spec:
            bound.required_input[spec.name] = coerce_in(receiver, spec.type, engine, name, spec.name)
        else:
            bound.required_input[spec.name] = coerce_in(supplied[spec.name], spec.type, engine, name, spec.name)

    for key, value in options.items():
        key = key.replace("-", "_")
        spec = classification.optional_input.get(key) or classification.deprecated.get(key)
        if spec is not None and spec.is_input:
            bound.optional_input[spec.name] = coerce_in(value, spec.type, engine, name, spec.name)
            continue
        spec = classification.optional_output.get(key)
        if spec is not None:
            if value:
                bound.optional_output.append(spec.name)
            continue
        raise UnknownOption(f"unknown option {key!r}", name, key)

    bound.required_output = [spec.name for spec in classification.required_output]
    return bound


# ===================================================================
# 2. Result packing
# ===================================================================

def pack(required_values: List[Any], optional_values: Dict[str, Any]) -> Any:
    """Shape an operation's results for the caller.

    One required output comes back bare, several as a list. Requested
    optional outputs add a trailing dict: `(value, opts)` for one required
    output, `[v1, v2, opts]` for several, `opts` alone for none.
    """
    n = len(required_values)
    if not optional_values:
        if n == 0:
            return None
        if n == 1:
            return required_values[0]
        return list(required_values)
    if n == 0:
        return dict(optional_values)
    if n == 1:
        return required_values[0], dict(optional_values)
    return list(required_values) + [dict(optional_values)]


# ===================================================================
# 3. Dispatch
# ===================================================================

class Dispatcher:
    """Looks up, classifies, binds, runs and packs operation calls."""

    def __init__(self, engine):
        self.engine = engine
        self._classifications: Dict[str, Classification] = {}
        self._lock = threading.Lock()

    def signature(self, name: str) -> OperationSignature:
        try:
            return self.engine.runtime.lookup(name)
        except KeyError:
            raise UnknownOperation("no such operation", name) from None

    def classification(self, name: str) -> Classification:
        """Classify an operation, caching the result per name."""
        with self._lock:
            cached = self._classifications.get(name)
        if cached is not None:
            return cached
        c = classify(self.signature(name))
        with self._lock:
            self._classifications.setdefault(name, c)
        return c

    def bind(self, request: CallRequest) -> BoundArguments:
        c = self.classification(request.name)
        return bind(c, request.positional, request.options, request.receiver, self.engine)

    def invoke(self, name: str, positional: Sequence[Any] = (),
               options: Optional[Dict[str, Any]] = None, receiver: Any = None) -> Any:
        """Call an operation by name and return its packed result."""
        c = self.classification(name)
        bound = self.bind(CallRequest(name, list(positional), dict(options or {}), receiver))

        for arg in c.modify:
            for values in (bound.required_input, bound.optional_input):
                if arg in values:
                    values[arg] = self.engine.guard.private_copy(values[arg])

        lib_logger.debug("invoke %s: inputs %s, optional %s, outputs %s",
                         name, list(bound.required_input), list(bound.optional_input),
                         bound.required_output + bound.optional_output)

        ok, outputs, message = self.engine.runtime.call(name, bound.foreign_args())
        if not ok:
            lib_logger.warning("operation %s failed: %s", name, message)
            raise OperationFailed(message or "operation failed", name)

        signature = c.signature
        required_values = []
        for out_name in bound.required_output:
            if out_name not in outputs:
                raise OperationFailed(f"no value for output {out_name!r}", name, out_name)
            spec = signature.argument(out_name)
            required_values.append(coerce_out(outputs[out_name], spec.type, self.engine))

        optional_values = {}
        for out_name in bound.optional_output:
            spec = signature.argument(out_name)
            optional_values[spec.py_name] = coerce_out(outputs.get(out_name), spec.type, self.engine)

        return pack(required_values, optional_values)
