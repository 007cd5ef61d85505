"""Selection of a single method definition among overloads."""

import re
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from ._contract_abi import Method


class MethodResolutionError(Exception):
    """The base class for errors raised when a method cannot be selected for a call."""


class UnknownMethod(MethodResolutionError):
    """No method with the given name or signature is declared in the ABI."""


class AmbiguousOverload(MethodResolutionError):
    """More than one overload accepts the given arguments."""


class ArityMismatch(MethodResolutionError):
    """No candidate method takes the given number of arguments."""


class TypeMismatch(MethodResolutionError):
    """No candidate method with a matching arity accepts the given argument values."""


_WHITESPACE_RE = re.compile(r"\s+")
_INTEGER_ALIAS_RE = re.compile(r"\b(u?int)\b(?!\d)")


def normalize_signature(signature: str) -> str:
    """
    Brings a user-supplied signature to the canonical form:
    removes the whitespace and expands ``uint``/``int`` to ``uint256``/``int256``.
    """
    name, sep, params = _WHITESPACE_RE.sub("", signature).partition("(")
    return name + sep + _INTEGER_ALIAS_RE.sub(r"\g<1>256", params)


def _describe_args(args: Sequence[Any]) -> str:
    return "(" + ", ".join(repr(arg) for arg in args) + ")"


class MethodIndex:
    """
    Method lookup by bare name (all overloads) and by full signature.
    Built once from an ABI and read-only afterwards.
    """

    def __init__(self, methods: Iterable["Method"]):
        self._by_name: dict[str, list["Method"]] = {}
        self._by_signature: dict[str, "Method"] = {}

        for method in methods:
            if method.signature in self._by_signature:
                raise ValueError(f"Method `{method.signature}` is declared more than once")
            self._by_signature[method.signature] = method
            self._by_name.setdefault(method.name, []).append(method)

    def names(self) -> list[str]:
        """Returns the bare names of all the methods."""
        return list(self._by_name)

    def overloads(self, name: str) -> list["Method"]:
        """Returns all the methods declared with the given bare name."""
        return list(self._by_name.get(name, []))

    def __contains__(self, name_or_signature: object) -> bool:
        if not isinstance(name_or_signature, str):
            return False
        if "(" in name_or_signature:
            return normalize_signature(name_or_signature) in self._by_signature
        return name_or_signature in self._by_name

    def resolve(self, name_or_signature: str, args: Sequence[Any] = ()) -> "Method":
        """
        Returns the single method that matches the given name or full signature
        and can be called with ``args``.

        Raises :py:class:`UnknownMethod`, :py:class:`ArityMismatch`, :py:class:`TypeMismatch`
        or :py:class:`AmbiguousOverload`.
        """
        if "(" in name_or_signature:
            signature = normalize_signature(name_or_signature)
            method = self._by_signature.get(signature)
            if method is None:
                raise UnknownMethod(f"Method `{signature}` is not declared in the ABI")
            return self._check_single(method, args)

        candidates = self._by_name.get(name_or_signature)
        if not candidates:
            raise UnknownMethod(f"Method `{name_or_signature}` is not declared in the ABI")

        if len(candidates) == 1:
            return self._check_single(candidates[0], args)

        same_arity = [method for method in candidates if len(method.inputs) == len(args)]
        if not same_arity:
            arities = sorted({len(method.inputs) for method in candidates})
            raise ArityMismatch(
                f"Overloads of `{name_or_signature}` take {arities} arguments, got {len(args)}"
            )

        compatible = [method for method in same_arity if method.inputs.accepts(args)]
        if not compatible:
            raise TypeMismatch(
                "None of "
                + ", ".join(f"`{method.signature}`" for method in same_arity)
                + f" accepts the arguments {_describe_args(args)}"
            )

        if len(compatible) > 1:
            raise AmbiguousOverload(
                f"Arguments {_describe_args(args)} match several overloads: "
                + ", ".join(f"`{method.signature}`" for method in compatible)
                + "; use a full signature to select one"
            )

        return compatible[0]

    @staticmethod
    def _check_single(method: "Method", args: Sequence[Any]) -> "Method":
        if len(method.inputs) != len(args):
            raise ArityMismatch(
                f"`{method.signature}` takes {len(method.inputs)} arguments, got {len(args)}"
            )
        for position, (tp, arg) in enumerate(zip(method.inputs.types, args, strict=True)):
            if not tp.accepts(arg):
                raise TypeMismatch(
                    f"Argument {position} of `{method.signature}` must be "
                    f"a `{tp.canonical_form}` value, got {arg!r}"
                )
        return method
