# src/hl7_fhir_engine/transform/scope.py
"""
Immutable scope stack used to resolve ``$name`` references.

Frames are strictly nested. Every operation returns a new stack, so a frame
pushed for a group occurrence or a template evaluation disappears as soon as
the caller stops using the derived stack, even when evaluation is cut short.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple

from ..exceptions import ScopeError

__all__ = ["Frame", "ResourceRef", "ScopeStack"]


@dataclass(frozen=True)
class ResourceRef:
    """Handle to a retained resource; serializes as a FHIR Reference."""

    resource_type: str
    id: str

    @property
    def reference(self) -> str:
        return f"{self.resource_type}/{self.id}"

    def to_reference(self) -> dict:
        return {"reference": self.reference}

    def is_blank(self) -> bool:
        return False

    def __str__(self) -> str:
        return self.reference


def _as_items(value: Any) -> Tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(v for v in value if v is not None)
    return (value,)


@dataclass(frozen=True)
class Frame:
    """One named frame; each binding holds an ordered tuple of values."""

    name: str
    bindings: Mapping[str, Tuple[Any, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def with_binding(self, var: str, value: Any, append: bool) -> "Frame":
        items = _as_items(value)
        data = dict(self.bindings)
        if append and var in data:
            data[var] = data[var] + items
        else:
            data[var] = items
        return Frame(self.name, MappingProxyType(data))


class ScopeStack:
    """
    Stack of frames, innermost last.

    Examples
    --------
    >>> s = ScopeStack.empty().push("message").bind("Patient", "p1")
    >>> s.lookup("Patient")
    'p1'
    >>> s.push("ORDER[1]").pop("ORDER[1]").depth
    1
    """

    __slots__ = ("_frames",)

    def __init__(self, frames: Iterable[Frame] = ()):
        self._frames: Tuple[Frame, ...] = tuple(frames)

    @classmethod
    def empty(cls) -> "ScopeStack":
        return cls()

    # --------------------------------------------------------------------------
    # structure
    # --------------------------------------------------------------------------

    @property
    def depth(self) -> int:
        return len(self._frames)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self._frames)

    @property
    def top(self) -> Optional[Frame]:
        return self._frames[-1] if self._frames else None

    def push(self, name: str, bindings: Optional[Mapping[str, Any]] = None) -> "ScopeStack":
        """
        Return a new stack with a frame named ``name`` on top.

        Parameters
        ----------
        name : str
            Frame name, e.g. "message" or "ORDER_OBSERVATION[2]".
        bindings : Mapping[str, Any], optional
            Initial bindings. Lists and tuples bind several values.
        """
        data = {k: _as_items(v) for k, v in (bindings or {}).items()}
        return ScopeStack(self._frames + (Frame(name, MappingProxyType(data)),))

    def pop(self, name: str) -> "ScopeStack":
        """
        Return the stack without its top frame.

        Raises
        ------
        ScopeError
            If the stack is empty or the top frame is not ``name``.
        """
        top = self.top
        if top is None:
            raise ScopeError(f"cannot pop {name!r}: scope stack is empty")
        if top.name != name:
            raise ScopeError(f"cannot pop {name!r}: top frame is {top.name!r}")
        return ScopeStack(self._frames[:-1])

    # --------------------------------------------------------------------------
    # bindings
    # --------------------------------------------------------------------------

    def bind(self, var: str, value: Any, append: bool = True) -> "ScopeStack":
        """
        Return a stack with ``value`` bound to ``var`` in the top frame.

        With ``append`` the values are added after any existing binding of
        ``var`` in that frame; otherwise the binding is replaced.

        Raises
        ------
        ScopeError
            If the stack is empty.
        """
        top = self.top
        if top is None:
            raise ScopeError(f"cannot bind {var!r}: scope stack is empty")
        return ScopeStack(self._frames[:-1] + (top.with_binding(var, value, append),))

    def lookup(self, var: str) -> Any:
        """
        Return the innermost binding of ``var``.

        Returns
        -------
        Any
            The single bound value, a tuple when several values are bound,
            or None when ``var`` is not bound in any frame.
        """
        for frame in reversed(self._frames):
            if var in frame.bindings:
                items = frame.bindings[var]
                if len(items) == 1:
                    return items[0]
                return items
        return None

    def __repr__(self) -> str:
        return f"ScopeStack({' > '.join(self.names)})"
