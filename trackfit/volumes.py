from __future__ import annotations

import abc
import logging
import weakref
from typing import Iterable, List, Optional

import networkx as nx
import numpy as np

from trackfit.surfaces import (
    Surface,
    SurfaceType,
    cylinder_surface,
    disc_surface,
    make_transform,
    plane_surface,
)

logger = logging.getLogger(__name__)

__all__ = [
    "VolumeBounds",
    "CylinderVolumeBounds",
    "CuboidVolumeBounds",
    "BoundarySurface",
    "AbstractVolume",
    "volume_adjacency",
]


class VolumeBounds(abc.ABC):
    """Shape of a volume in its local frame."""

    @abc.abstractmethod
    def decompose_to_surfaces(self, transform: np.ndarray) -> List[Surface]:
        """Return the boundary surfaces in the bounds-specific order."""

    @abc.abstractmethod
    def inside(self, local: np.ndarray, tolerance: float = 0.0) -> bool:
        """Containment test for a point in the volume's local frame."""


class CylinderVolumeBounds(VolumeBounds):
    r"""
    (Hollow) cylinder, optionally a :math:`\phi` sector.

    Decomposition order
    -------------------
    ====  ==================================================
    0     negative disc at :math:`z=-h_z`
    1     positive disc at :math:`z=+h_z`
    2     outer cylinder :math:`r=r_\text{max}`
    3     inner cylinder :math:`r=r_\text{min}` (only if :math:`r_\text{min}>0`)
    4, 5  sector planes at :math:`\pm\Delta\phi` (only if :math:`\Delta\phi<\pi`)
    ====  ==================================================
    """

    __slots__ = ("r_min", "r_max", "half_z", "half_phi")

    def __init__(self, r_min: float, r_max: float, half_z: float, half_phi: float = np.pi) -> None:
        if not (0.0 <= r_min < r_max) or half_z <= 0.0:
            raise ValueError(f"Invalid cylinder volume bounds r=[{r_min}, {r_max}], half_z={half_z}")
        self.r_min = float(r_min)
        self.r_max = float(r_max)
        self.half_z = float(half_z)
        self.half_phi = float(min(half_phi, np.pi))

    def decompose_to_surfaces(self, transform: np.ndarray) -> List[Surface]:
        T = np.asarray(transform, dtype=np.float64)
        R, t = T[:3, :3], T[:3, 3]
        axis = R[:, 2]
        out: List[Surface] = [
            disc_surface(self.r_min, self.r_max, transform=make_transform(t - self.half_z * axis, R)),
            disc_surface(self.r_min, self.r_max, transform=make_transform(t + self.half_z * axis, R)),
            cylinder_surface(self.r_max, self.half_z, transform=T.copy()),
        ]
        if self.r_min > 0.0:
            out.append(cylinder_surface(self.r_min, self.half_z, transform=T.copy()))
        if self.half_phi < np.pi:
            r_mid = 0.5 * (self.r_min + self.r_max)
            half_r = 0.5 * (self.r_max - self.r_min)
            for sign in (-1.0, 1.0):
                phi = sign * self.half_phi
                radial = R @ np.array([np.cos(phi), np.sin(phi), 0.0])
                normal = R @ np.array([-np.sin(phi), np.cos(phi), 0.0])
                out.append(plane_surface(t + r_mid * radial, normal, half_x=half_r, half_y=self.half_z))
        return out

    def inside(self, local: np.ndarray, tolerance: float = 0.0) -> bool:
        r = float(np.hypot(local[0], local[1]))
        if not (self.r_min - tolerance <= r <= self.r_max + tolerance):
            return False
        if abs(local[2]) > self.half_z + tolerance:
            return False
        if self.half_phi < np.pi:
            return abs(np.arctan2(local[1], local[0])) <= self.half_phi + tolerance
        return True

    def __repr__(self) -> str:
        return f"CylinderVolumeBounds(r=[{self.r_min}, {self.r_max}], half_z={self.half_z})"


class CuboidVolumeBounds(VolumeBounds):
    """Axis-aligned box; decomposes into -z, +z, -x, +x, -y, +y faces."""

    __slots__ = ("half_x", "half_y", "half_z")

    def __init__(self, half_x: float, half_y: float, half_z: float) -> None:
        if min(half_x, half_y, half_z) <= 0.0:
            raise ValueError("Cuboid half lengths must be positive")
        self.half_x = float(half_x)
        self.half_y = float(half_y)
        self.half_z = float(half_z)

    def decompose_to_surfaces(self, transform: np.ndarray) -> List[Surface]:
        T = np.asarray(transform, dtype=np.float64)
        R, t = T[:3, :3], T[:3, 3]
        ex, ey, ez = R[:, 0], R[:, 1], R[:, 2]
        hx, hy, hz = self.half_x, self.half_y, self.half_z
        return [
            plane_surface(t - hz * ez, ez, hx, hy),
            plane_surface(t + hz * ez, ez, hx, hy),
            plane_surface(t - hx * ex, ex, hy, hz),
            plane_surface(t + hx * ex, ex, hy, hz),
            plane_surface(t - hy * ey, ey, hz, hx),
            plane_surface(t + hy * ey, ey, hz, hx),
        ]

    def inside(self, local: np.ndarray, tolerance: float = 0.0) -> bool:
        return (abs(local[0]) <= self.half_x + tolerance
                and abs(local[1]) <= self.half_y + tolerance
                and abs(local[2]) <= self.half_z + tolerance)

    def __repr__(self) -> str:
        return f"CuboidVolumeBounds({self.half_x}, {self.half_y}, {self.half_z})"


class BoundarySurface:
    r"""
    Boundary surface with back-references to the volumes on either side.

    The references are weak: a boundary never keeps a volume alive. A side
    that is not attached (yet) resolves to ``None``.

    Parameters
    ----------
    surface : Surface
        The underlying (owned) surface.
    inner, outer : AbstractVolume or None
        Volume on the inner / outer side.
    """

    __slots__ = ("surface", "_inner", "_outer")

    def __init__(self,
                 surface: Surface,
                 inner: Optional["AbstractVolume"] = None,
                 outer: Optional["AbstractVolume"] = None) -> None:
        self.surface = surface
        self._inner = weakref.ref(inner) if inner is not None else None
        self._outer = weakref.ref(outer) if outer is not None else None

    @property
    def inner_volume(self) -> Optional["AbstractVolume"]:
        return self._inner() if self._inner is not None else None

    @property
    def outer_volume(self) -> Optional["AbstractVolume"]:
        return self._outer() if self._outer is not None else None

    def attach(self, volume: "AbstractVolume", side: str) -> None:
        """Set the ``"inner"`` or ``"outer"`` back-reference."""
        if side == "inner":
            self._inner = weakref.ref(volume)
        elif side == "outer":
            self._outer = weakref.ref(volume)
        else:
            raise ValueError(f"Unknown boundary side '{side}'")

    def __repr__(self) -> str:
        def _n(v):
            return getattr(v, "name", None) or (None if v is None else hex(id(v)))
        return f"BoundarySurface({self.surface.type.name}, inner={_n(self.inner_volume)}, outer={_n(self.outer_volume)})"


class AbstractVolume:
    r"""
    Volume with a placement, bounds and an ordered list of boundary surfaces.

    The boundaries are created once at construction by decomposing the bounds.

    Attribution rule
    ----------------
    For nested cylindrical shells the boundary between two consecutive shells
    must be the *outer* side of exactly one volume and the *inner* side of the
    other. The inner cover of a hollow cylinder (decomposition index 3, only
    present when more than three surfaces exist) therefore faces inward: its
    ``outer`` reference is this volume and ``inner`` stays empty (to be glued
    to the next-inner shell). Every other surface has ``inner`` set to this
    volume and ``outer`` empty.
    """

    def __init__(self, bounds: VolumeBounds, transform: Optional[np.ndarray] = None, name: str = "") -> None:
        self.bounds = bounds
        self.transform = make_transform() if transform is None else np.asarray(transform, dtype=np.float64)
        self.name = name
        self.boundary_surfaces: List[BoundarySurface] = []
        self._create_boundary_surfaces()

    def _create_boundary_surfaces(self) -> None:
        surfaces = self.bounds.decompose_to_surfaces(self.transform)
        n_surfaces = len(surfaces)
        for counter, sf in enumerate(surfaces):
            flip = sf.type is SurfaceType.CYLINDER and counter == 3 and n_surfaces > 3
            inner = None if flip else self
            outer = self if flip else None
            self.boundary_surfaces.append(BoundarySurface(sf, inner, outer))

    def to_local(self, point: np.ndarray) -> np.ndarray:
        return self.transform[:3, :3].T @ (np.asarray(point, dtype=np.float64) - self.transform[:3, 3])

    def inside(self, point: np.ndarray, tolerance: float = 0.0) -> bool:
        return self.bounds.inside(self.to_local(point), tolerance)

    def center(self) -> np.ndarray:
        return self.transform[:3, 3].copy()

    def glue(self, boundary_index: int, neighbour: "AbstractVolume") -> None:
        r"""
        Attach ``neighbour`` to the free side of one of this volume's boundaries.

        Raises
        ------
        ValueError
            If the boundary already has both sides attached.
        """
        boundary = self.boundary_surfaces[boundary_index]
        if boundary.inner_volume is None:
            boundary.attach(neighbour, "inner")
        elif boundary.outer_volume is None:
            boundary.attach(neighbour, "outer")
        else:
            raise ValueError(f"Boundary {boundary_index} of '{self.name}' is already fully glued")
        logger.debug("Glued '%s' boundary %d to '%s'", self.name, boundary_index, neighbour.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}('{self.name}', {self.bounds!r})"


def volume_adjacency(volumes: Iterable[AbstractVolume]) -> nx.DiGraph:
    r"""
    Directed adjacency of volumes through their glued boundaries.

    For each boundary with both sides attached an edge
    ``inner -> outer`` is added with attributes ``boundary`` (index in the
    owner's boundary list) and ``owner`` (volume holding the boundary).
    Every volume is a node, even if isolated.

    Returns
    -------
    networkx.DiGraph
    """
    G = nx.DiGraph()
    for vol in volumes:
        G.add_node(vol)
        for i, b in enumerate(vol.boundary_surfaces):
            inner, outer = b.inner_volume, b.outer_volume
            if inner is not None and outer is not None and inner is not outer:
                G.add_edge(inner, outer, boundary=i, owner=vol)
    return G
