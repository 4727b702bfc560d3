from __future__ import annotations

from functools import total_ordering
from typing import Optional, Union

__all__ = ["GeometryID", "Identifier", "GEO_ID_BITS"]

GEO_ID_BITS = 64
_U64 = (1 << GEO_ID_BITS) - 1


@total_ordering
class GeometryID:
    r"""
    Packed 64-bit identifier for geometry nodes.

    The raw value is split into six disjoint unsigned subfields::

        volume     [63:56]   0xff00000000000000
        boundary   [55:48]   0x00ff000000000000
        layer      [47:40]   0x0000ff0000000000
        approach   [39:32]   0x000000ff00000000
        sensitive  [31:16]   0x00000000ffff0000
        channel    [15:0]    0x000000000000ffff

    A field is only ever read through its own ``(mask, shift)`` pair:

    .. math::

        \mathrm{field}(v) \;=\; (v \,\&\, \mathrm{mask}) \gg \mathrm{shift}.

    Ordering and equality are those of the raw unsigned integer, so the
    identifier can be used as a sort key or dictionary key.

    Parameters
    ----------
    value : int or GeometryID, optional
        Raw packed value. Default ``0``.

    Notes
    -----
    ``+=`` is a **raw** integer add (modulo :math:`2^{64}`). It is meant for
    identifier assembly during geometry construction where each addend is
    confined to one field, e.g. ``gid += 3 << GeometryID.layer_shift``.
    Identifiers are immutable; ``+=`` rebinds the name to a new value.
    """

    volume_mask = 0xFF00000000000000
    volume_shift = 56
    boundary_mask = 0x00FF000000000000
    boundary_shift = 48
    layer_mask = 0x0000FF0000000000
    layer_shift = 40
    approach_mask = 0x000000FF00000000
    approach_shift = 32
    sensitive_mask = 0x00000000FFFF0000
    sensitive_shift = 16
    channel_mask = 0x000000000000FFFF
    channel_shift = 0

    __slots__ = ("_value",)

    def __init__(self, value: Union[int, "GeometryID"] = 0) -> None:
        if isinstance(value, GeometryID):
            value = value._value
        self._value = int(value) & _U64

    @classmethod
    def encode(cls,
               volume: int = 0,
               boundary: int = 0,
               layer: int = 0,
               approach: int = 0,
               sensitive: int = 0,
               channel: int = 0) -> "GeometryID":
        r"""
        Assemble an identifier from field values.

        Each field is shifted into place and accumulated with ``+=``.

        Raises
        ------
        ValueError
            If a field value is negative or does not fit into its mask.
        """
        gid = cls()
        for name, val in (("volume", volume), ("boundary", boundary), ("layer", layer),
                          ("approach", approach), ("sensitive", sensitive), ("channel", channel)):
            mask = getattr(cls, f"{name}_mask")
            shift = getattr(cls, f"{name}_shift")
            val = int(val)
            if val < 0 or (val << shift) & ~mask:
                raise ValueError(f"GeometryID field '{name}' out of range: {val}")
            gid += val << shift
        return gid

    def value(self, mask: int = 0, shift: int = 0) -> int:
        r"""
        Return the raw value, or one field of it.

        Parameters
        ----------
        mask : int, optional
            Field mask. ``0`` (default) returns the full raw value.
        shift : int, optional
            Right shift applied after masking.

        Returns
        -------
        int
            ``raw`` if ``mask == 0`` else ``(raw & mask) >> shift``.
        """
        if mask:
            return (self._value & mask) >> shift
        return self._value

    # named field accessors (read-only)
    @property
    def volume(self) -> int:
        return self.value(self.volume_mask, self.volume_shift)

    @property
    def boundary(self) -> int:
        return self.value(self.boundary_mask, self.boundary_shift)

    @property
    def layer(self) -> int:
        return self.value(self.layer_mask, self.layer_shift)

    @property
    def approach(self) -> int:
        return self.value(self.approach_mask, self.approach_shift)

    @property
    def sensitive(self) -> int:
        return self.value(self.sensitive_mask, self.sensitive_shift)

    @property
    def channel(self) -> int:
        return self.value(self.channel_mask, self.channel_shift)

    def __add__(self, other: Union[int, "GeometryID"]) -> "GeometryID":
        add = other._value if isinstance(other, GeometryID) else int(other)
        return GeometryID((self._value + add) & _U64)

    # value type: += rebinds to a new identifier
    __iadd__ = __add__

    def __int__(self) -> int:
        return self._value

    def __index__(self) -> int:
        return self._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, GeometryID):
            return self._value == other._value
        return NotImplemented

    def __lt__(self, other: "GeometryID") -> bool:
        if not isinstance(other, GeometryID):
            return NotImplemented
        return self._value < other._value

    def __repr__(self) -> str:
        return f"GeometryID(0x{self._value:016x})"

    def __str__(self) -> str:
        return (f"[{self.volume:>3} | {self.boundary:>3} | {self.layer:>3} | "
                f"{self.approach:>3} | {self.sensitive:>4} | {self.channel:>4}]")


@total_ordering
class Identifier:
    """
    Minimal unsigned 64-bit identifier.

    The default-constructed identifier has all bits set and is *invalid*.
    """

    max_value = _U64

    __slots__ = ("_id",)

    def __init__(self, value: Optional[int] = None) -> None:
        self._id = self.max_value if value is None else int(value) & _U64

    def value(self) -> int:
        return self._id

    def is_valid(self) -> bool:
        return self._id != self.max_value

    def __ior__(self, value: int) -> "Identifier":
        self._id = (self._id | int(value)) & _U64
        return self

    def __iand__(self, value: int) -> "Identifier":
        self._id &= int(value)
        return self

    def __int__(self) -> int:
        return self._id

    def __hash__(self) -> int:
        return hash(self._id)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Identifier):
            return self._id == other._id
        return NotImplemented

    def __lt__(self, other: "Identifier") -> bool:
        if not isinstance(other, Identifier):
            return NotImplemented
        return self._id < other._id

    def __repr__(self) -> str:
        return f"Identifier({self._id})" if self.is_valid() else "Identifier(<invalid>)"
