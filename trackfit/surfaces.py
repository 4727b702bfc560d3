from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence

import numpy as np

from trackfit.geometry_id import GeometryID

__all__ = [
    "SurfaceType",
    "Surface",
    "Intersection",
    "make_transform",
    "frame_from_normal",
    "plane_surface",
    "disc_surface",
    "cylinder_surface",
    "line_surface",
    "perigee_surface",
    "ON_SURFACE_TOLERANCE",
]

# mm
ON_SURFACE_TOLERANCE = 1e-4

_IDENTITY = np.eye(4, dtype=np.float64)


class SurfaceType(Enum):
    """Closed set of surface kinds."""
    PLANE = "plane"
    DISC = "disc"
    CYLINDER = "cylinder"
    LINE = "line"
    PERIGEE = "perigee"


def make_transform(translation: Sequence[float] = (0.0, 0.0, 0.0),
                   rotation: Optional[np.ndarray] = None) -> np.ndarray:
    r"""
    Build a homogeneous :math:`4\times 4` transform.

    Parameters
    ----------
    translation : sequence of float, shape (3,)
        Origin of the local frame in global coordinates.
    rotation : ndarray, shape (3, 3), optional
        Columns are the local axes expressed in the global frame. Identity if
        omitted.

    Returns
    -------
    ndarray, shape (4, 4)
        :math:`T` with :math:`x_\text{glob} = R\,x_\text{loc} + t`.
    """
    T = np.eye(4, dtype=np.float64)
    if rotation is not None:
        T[:3, :3] = np.asarray(rotation, dtype=np.float64)
    T[:3, 3] = np.asarray(translation, dtype=np.float64)
    return T


def frame_from_normal(normal: Sequence[float]) -> np.ndarray:
    r"""
    Build an orthonormal rotation whose third axis is ``normal``.

    Two in-plane axes :math:`\mathbf{u},\mathbf{v}` are obtained by crossing an
    arbitrary helper axis (``x`` unless nearly parallel, then ``y``) with the
    unit normal :math:`\mathbf{w}`.

    Returns
    -------
    ndarray, shape (3, 3)
        Columns :math:`[\mathbf{u}, \mathbf{v}, \mathbf{w}]`.
    """
    w = np.asarray(normal, dtype=np.float64)
    w = w / np.linalg.norm(w)
    arbitrary = np.array([1.0, 0.0, 0.0]) if abs(w[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    u = np.cross(arbitrary, w)
    u /= np.linalg.norm(u)
    v = np.cross(w, u)
    return np.column_stack([u, v, w])


@dataclass(frozen=True)
class Intersection:
    """Straight-line intersection estimate; truthy when ``valid``."""
    position: np.ndarray
    path_length: float
    valid: bool

    def __bool__(self) -> bool:
        return self.valid


_INVALID = Intersection(np.full(3, np.nan), np.inf, False)


@dataclass(eq=False)
class Surface:
    r"""
    Detector surface as a closed tagged variant over :class:`SurfaceType`.

    Identity semantics: two surfaces are equal only if they are the same
    object, so surfaces can key dictionaries (e.g. the fit access index).

    Parameters
    ----------
    type : SurfaceType
        Kind of surface; selects the coordinate and intersection model.
    transform : ndarray, shape (4, 4)
        Placement of the local frame. For planes and discs the local
        :math:`z` axis is the normal; for cylinders and lines it is the axis.
    bounds : dict[str, float]
        Type-specific bounds: ``half_x``/``half_y`` (plane),
        ``r_min``/``r_max`` (disc), ``radius``/``half_z`` (cylinder),
        ``half_z`` (line). Missing entries are unbounded.
    geometry_id : GeometryID
        Packed identifier, assigned when the geometry is closed.
    layer_index : int or None
        Back-reference into the geometry's layer arena (lookup only).
    name : str
        Free-form label for debug output.

    Local coordinates
    -----------------
    ============  ==========================  =================================
    type          ``loc0``                    ``loc1``
    ============  ==========================  =================================
    PLANE         :math:`x_\text{loc}`        :math:`y_\text{loc}`
    DISC          :math:`r`                   :math:`\phi`
    CYLINDER      :math:`R\,\phi`             :math:`z_\text{loc}`
    LINE/PERIGEE  signed distance :math:`d_0` :math:`z` along the line
    ============  ==========================  =================================

    The line sign convention uses the radial axis
    :math:`\hat{\mathbf{r}} = \widehat{\mathbf{a}\times\mathbf{d}}` of the line
    axis :math:`\mathbf{a}` and track direction :math:`\mathbf{d}`.
    """
    type: SurfaceType
    transform: np.ndarray = field(default_factory=lambda: _IDENTITY.copy())
    bounds: Dict[str, float] = field(default_factory=dict)
    geometry_id: GeometryID = field(default_factory=GeometryID)
    layer_index: Optional[int] = None
    name: str = ""

    def __post_init__(self) -> None:
        self.transform = np.ascontiguousarray(self.transform, dtype=np.float64)
        if self.transform.shape != (4, 4):
            raise ValueError(f"Surface transform must be 4x4, got {self.transform.shape}")

    def __repr__(self) -> str:
        label = f" '{self.name}'" if self.name else ""
        return f"Surface({self.type.name}{label}, id={self.geometry_id})"

    # ------------------------------------------------------------------ frame
    @property
    def rotation(self) -> np.ndarray:
        return self.transform[:3, :3]

    def center(self) -> np.ndarray:
        return self.transform[:3, 3].copy()

    def to_local_frame(self, position: np.ndarray) -> np.ndarray:
        """Cartesian position in the local frame."""
        return self.rotation.T @ (np.asarray(position, dtype=np.float64) - self.transform[:3, 3])

    def _axis(self) -> np.ndarray:
        return self.rotation[:, 2]

    def _line_radial_axis(self, direction: Optional[np.ndarray]) -> np.ndarray:
        a = self._axis()
        if direction is not None:
            ra = np.cross(a, np.asarray(direction, dtype=np.float64))
            n = np.linalg.norm(ra)
            if n > 1e-12:
                return ra / n
        return self.rotation[:, 0]

    def normal(self, position: Optional[np.ndarray] = None) -> np.ndarray:
        r"""
        Surface normal at ``position``.

        For cylinders the normal is radial and therefore position dependent;
        for lines the line axis is returned.
        """
        if self.type is SurfaceType.CYLINDER and position is not None:
            loc = self.to_local_frame(position)
            rho = np.hypot(loc[0], loc[1])
            if rho > 0.0:
                return self.rotation @ np.array([loc[0] / rho, loc[1] / rho, 0.0])
        return self._axis().copy()

    # ------------------------------------------------------- local <-> global
    def global_to_local(self, position: np.ndarray, direction: Optional[np.ndarray] = None) -> np.ndarray:
        """Map a global position (assumed on the surface) to the 2D local frame."""
        if self.type in (SurfaceType.LINE, SurfaceType.PERIGEE):
            w = np.asarray(position, dtype=np.float64) - self.transform[:3, 3]
            ra = self._line_radial_axis(direction)
            return np.array([w @ ra, w @ self._axis()])
        loc = self.to_local_frame(position)
        if self.type is SurfaceType.PLANE:
            return loc[:2].copy()
        if self.type is SurfaceType.DISC:
            return np.array([np.hypot(loc[0], loc[1]), np.arctan2(loc[1], loc[0])])
        # CYLINDER
        radius = self.bounds["radius"]
        return np.array([radius * np.arctan2(loc[1], loc[0]), loc[2]])

    def local_to_global(self, local: Sequence[float], direction: Optional[np.ndarray] = None) -> np.ndarray:
        """Inverse of :meth:`global_to_local`."""
        l0, l1 = float(local[0]), float(local[1])
        c = self.transform[:3, 3]
        if self.type in (SurfaceType.LINE, SurfaceType.PERIGEE):
            return c + l1 * self._axis() + l0 * self._line_radial_axis(direction)
        if self.type is SurfaceType.PLANE:
            loc = np.array([l0, l1, 0.0])
        elif self.type is SurfaceType.DISC:
            loc = np.array([l0 * np.cos(l1), l0 * np.sin(l1), 0.0])
        else:
            radius = self.bounds["radius"]
            phi = l0 / radius
            loc = np.array([radius * np.cos(phi), radius * np.sin(phi), l1])
        return self.rotation @ loc + c

    def inside_bounds(self, local: Sequence[float], tolerance: float = 0.0) -> bool:
        """Check a local position against the surface bounds."""
        b = self.bounds
        l0, l1 = float(local[0]), float(local[1])
        if self.type is SurfaceType.PLANE:
            return (abs(l0) <= b.get("half_x", np.inf) + tolerance
                    and abs(l1) <= b.get("half_y", np.inf) + tolerance)
        if self.type is SurfaceType.DISC:
            return b.get("r_min", 0.0) - tolerance <= l0 <= b.get("r_max", np.inf) + tolerance
        # cylinder / line / perigee are bounded along their axis only
        return abs(l1) <= b.get("half_z", np.inf) + tolerance

    # ------------------------------------------------------------ intersection
    def intersection_estimate(self,
                              position: np.ndarray,
                              direction: np.ndarray,
                              nav_dir: int = 1,
                              bound_check: bool = False) -> Intersection:
        r"""
        Straight-line intersection estimate from ``position`` along ``direction``.

        Solves for the path length :math:`s` with
        :math:`\mathbf{x}(s)=\mathbf{p} + s\,\sigma\,\mathbf{d}` on the surface,
        where :math:`\sigma=\pm 1` is ``nav_dir``:

        - plane/disc: :math:`s = \mathbf{n}\cdot(\mathbf{c}-\mathbf{p}) / (\mathbf{n}\cdot\sigma\mathbf{d})`,
        - cylinder: smallest forward root of
          :math:`(p_x+s d_x)^2 + (p_y+s d_y)^2 = R^2` in the local frame,
        - line/perigee: point of closest approach to the line.

        Parameters
        ----------
        position, direction : ndarray, shape (3,)
            Start point and unit direction (global frame).
        nav_dir : {+1, -1}
            Navigation direction.
        bound_check : bool
            If ``True``, an intersection outside the bounds is invalid.

        Returns
        -------
        Intersection
            ``valid`` is ``False`` when no forward solution exists.
        """
        p = np.asarray(position, dtype=np.float64)
        d = float(nav_dir) * np.asarray(direction, dtype=np.float64)
        c = self.transform[:3, 3]
        tol = ON_SURFACE_TOLERANCE

        if self.type in (SurfaceType.PLANE, SurfaceType.DISC):
            n = self._axis()
            denom = float(n @ d)
            if abs(denom) < 1e-12:
                return _INVALID
            s = float(n @ (c - p)) / denom
            valid = s >= -tol
        elif self.type is SurfaceType.CYLINDER:
            pl = self.rotation.T @ (p - c)
            dl = self.rotation.T @ d
            a = dl[0] ** 2 + dl[1] ** 2
            if a < 1e-12:
                return _INVALID
            b = 2.0 * (pl[0] * dl[0] + pl[1] * dl[1])
            cc = pl[0] ** 2 + pl[1] ** 2 - self.bounds["radius"] ** 2
            disc = b * b - 4.0 * a * cc
            if disc < 0.0:
                return _INVALID
            sq = np.sqrt(disc)
            roots = sorted(((-b - sq) / (2.0 * a), (-b + sq) / (2.0 * a)))
            forward = [r for r in roots if r >= -tol]
            valid = bool(forward)
            s = float(forward[0] if forward else roots[-1])
        else:
            a = self._axis()
            w = p - c
            b = float(d @ a)
            denom = 1.0 - b * b
            if denom < 1e-12:
                return _INVALID
            s = (b * float(w @ a) - float(w @ d)) / denom
            valid = s >= -tol

        point = p + s * d
        if valid and bound_check:
            valid = self.inside_bounds(self.global_to_local(point, d), tol)
        return Intersection(point, float(s), bool(valid))

    def signed_distance(self, position: np.ndarray, direction: Optional[np.ndarray] = None) -> float:
        r"""
        Scalar function that vanishes on the surface.

        Planes/discs: :math:`\mathbf{n}\cdot(\mathbf{x}-\mathbf{c})`; cylinders:
        :math:`\rho_\text{loc}-R`; lines: the derivative of the squared distance,
        :math:`\mathbf{w}\cdot\mathbf{d} - (\mathbf{w}\cdot\mathbf{a})(\mathbf{d}\cdot\mathbf{a})`,
        which is zero at the point of closest approach.
        """
        x = np.asarray(position, dtype=np.float64)
        if self.type in (SurfaceType.PLANE, SurfaceType.DISC):
            return float(self._axis() @ (x - self.transform[:3, 3]))
        if self.type is SurfaceType.CYLINDER:
            loc = self.to_local_frame(x)
            return float(np.hypot(loc[0], loc[1]) - self.bounds["radius"])
        if direction is None:
            raise ValueError("Line surfaces need a direction for the distance function")
        a = self._axis()
        w = x - self.transform[:3, 3]
        d = np.asarray(direction, dtype=np.float64)
        return float(w @ d - (w @ a) * (d @ a))

    def is_on_surface(self,
                      position: np.ndarray,
                      direction: Optional[np.ndarray] = None,
                      tolerance: float = ON_SURFACE_TOLERANCE,
                      bound_check: bool = True) -> bool:
        if abs(self.signed_distance(position, direction)) > tolerance:
            return False
        if not bound_check:
            return True
        return self.inside_bounds(self.global_to_local(position, direction), tolerance)


def plane_surface(center: Sequence[float],
                  normal: Sequence[float] = (0.0, 0.0, 1.0),
                  half_x: float = np.inf,
                  half_y: float = np.inf,
                  name: str = "") -> Surface:
    """Rectangular (or unbounded) plane centred at ``center``."""
    return Surface(SurfaceType.PLANE,
                   make_transform(center, frame_from_normal(normal)),
                   {"half_x": float(half_x), "half_y": float(half_y)},
                   name=name)


def disc_surface(r_min: float, r_max: float, z: float = 0.0,
                 transform: Optional[np.ndarray] = None, name: str = "") -> Surface:
    """Annulus in a plane of constant local ``z`` (normal along the local z axis)."""
    T = make_transform((0.0, 0.0, z)) if transform is None else transform
    return Surface(SurfaceType.DISC, T, {"r_min": float(r_min), "r_max": float(r_max)}, name=name)


def cylinder_surface(radius: float, half_z: float = np.inf,
                     transform: Optional[np.ndarray] = None, name: str = "") -> Surface:
    """Cylinder of ``radius`` around the local z axis."""
    if radius <= 0.0:
        raise ValueError(f"Cylinder radius must be positive, got {radius}")
    T = _IDENTITY.copy() if transform is None else transform
    return Surface(SurfaceType.CYLINDER, T, {"radius": float(radius), "half_z": float(half_z)}, name=name)


def line_surface(center: Sequence[float] = (0.0, 0.0, 0.0),
                 axis: Sequence[float] = (0.0, 0.0, 1.0),
                 half_z: float = np.inf, name: str = "") -> Surface:
    """Straight line (e.g. a drift wire) through ``center`` along ``axis``."""
    return Surface(SurfaceType.LINE, make_transform(center, frame_from_normal(axis)),
                   {"half_z": float(half_z)}, name=name)


def perigee_surface(center: Sequence[float] = (0.0, 0.0, 0.0), name: str = "perigee") -> Surface:
    """Unbounded line along global z through ``center``; reference for start parameters."""
    return Surface(SurfaceType.PERIGEE, make_transform(center), {}, name=name)
