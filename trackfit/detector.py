from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

import networkx as nx
import numpy as np

from trackfit.exceptions import GeometryError
from trackfit.geometry_id import GeometryID
from trackfit.surfaces import Surface, SurfaceType, cylinder_surface, make_transform, plane_surface
from trackfit.volumes import (
    AbstractVolume,
    CuboidVolumeBounds,
    CylinderVolumeBounds,
    VolumeBounds,
    volume_adjacency,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Layer",
    "LayerArray",
    "TrackingVolume",
    "TrackingGeometry",
    "telescope_geometry",
    "barrel_geometry",
]

_BINNINGS = ("r", "z", "x")


@dataclass(eq=False)
class Layer:
    r"""
    Detector layer: a representing surface plus the sensitive surfaces on it.

    ``index`` is the position in the geometry's layer arena and is assigned
    when the :class:`TrackingGeometry` is closed (``-1`` before that).
    """
    surface: Surface
    sensitive: List[Surface] = field(default_factory=list)
    thickness: float = 0.0
    index: int = -1

    def __repr__(self) -> str:
        return f"Layer(index={self.index}, {self.surface.type.name}, n_sensitive={len(self.sensitive)})"


def _binning_value(point: np.ndarray, binning: str) -> float:
    if binning == "r":
        return float(np.hypot(point[0], point[1]))
    if binning == "z":
        return float(point[2])
    return float(point[0])


class LayerArray:
    r"""
    One-dimensional layer lookup along ``r``, ``z`` or ``x``.

    Layers are sorted by their binning value :math:`v_i`. Bin edges sit at the
    midpoints :math:`(v_i + v_{i+1})/2`; the outermost bins extend to
    infinity, so every point maps to its nearest layer along the binning
    direction. Lookup is a single :func:`numpy.searchsorted`.

    Parameters
    ----------
    layers : sequence of Layer
        Layers to bin (any order).
    binning : {"r", "z", "x"}
        Binning coordinate.

    Raises
    ------
    ValueError
        If ``binning`` is unknown or two layers share a binning value.
    """

    def __init__(self, layers: Sequence[Layer], binning: str = "r") -> None:
        if binning not in _BINNINGS:
            raise ValueError(f"Unknown binning '{binning}', expected one of {_BINNINGS}")
        self.binning = binning
        values = np.array([self._layer_value(l) for l in layers], dtype=np.float64)
        order = np.argsort(values, kind="stable")
        self.layers: List[Layer] = [layers[i] for i in order]
        self.values = values[order]
        if np.any(np.diff(self.values) <= 0.0):
            raise ValueError("Layers in a LayerArray must have distinct binning values")
        self.edges = 0.5 * (self.values[1:] + self.values[:-1])

    def _layer_value(self, layer: Layer) -> float:
        sf = layer.surface
        if self.binning == "r" and sf.type is SurfaceType.CYLINDER:
            return float(sf.bounds["radius"])
        return _binning_value(sf.center(), self.binning)

    def lookup(self, point: np.ndarray) -> Optional[Layer]:
        if not self.layers:
            return None
        v = _binning_value(np.asarray(point, dtype=np.float64), self.binning)
        return self.layers[int(np.searchsorted(self.edges, v))]

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers)


class TrackingVolume(AbstractVolume):
    r"""
    Navigable volume: optional layer array and confined sub-volumes.

    Parameters
    ----------
    bounds : VolumeBounds
    transform : ndarray, shape (4, 4), optional
    name : str
    layers : LayerArray, optional
        Layers contained in this volume.
    confined : list of TrackingVolume, optional
        Sub-volumes; they must lie inside this volume.
    """

    def __init__(self,
                 bounds: VolumeBounds,
                 transform: Optional[np.ndarray] = None,
                 name: str = "",
                 layers: Optional[LayerArray] = None,
                 confined: Optional[List["TrackingVolume"]] = None) -> None:
        super().__init__(bounds, transform, name)
        self.layer_array = layers
        self.confined: List[TrackingVolume] = list(confined or [])
        self.geometry_id = GeometryID()

    def tracking_volume(self, point: np.ndarray, tolerance: float = 1e-6) -> Optional["TrackingVolume"]:
        """Deepest volume containing ``point``, or ``None`` if outside this one."""
        if not self.inside(point, tolerance):
            return None
        for sub in self.confined:
            found = sub.tracking_volume(point, tolerance)
            if found is not None:
                return found
        return self

    def associated_layer(self, point: np.ndarray) -> Optional[Layer]:
        if self.layer_array is None:
            return None
        return self.layer_array.lookup(point)

    def layers(self) -> List[Layer]:
        return [] if self.layer_array is None else list(self.layer_array)


class TrackingGeometry:
    r"""
    Closed detector geometry: volume and layer arenas plus identifiers.

    Closing the geometry walks the volume tree depth-first and

    1. appends every volume to the volume arena and every layer to the layer
       arena (``Layer.index`` is its arena position);
    2. assigns identifiers by accumulating shifted fields::

           volume    : vol_id  << volume_shift            (1-based)
           boundary  : vol_id | b_id << boundary_shift    (1-based)
           layer     : vol_id | l_id << layer_shift       (1-based, per volume)
           sensitive : layer id | s_id << sensitive_shift (1-based, per layer)

    3. optionally sets ``layer_index`` on sensitive surfaces. With
       ``assign_layer_index=False`` the back-references stay ``None`` and
       must be resolved geometrically.

    Raises
    ------
    GeometryError
        If a field overflows or a surface is registered twice.
    """

    def __init__(self, world: TrackingVolume, assign_layer_index: bool = True) -> None:
        self.world = world
        self.volumes: List[TrackingVolume] = []
        self.layers: List[Layer] = []
        self._by_id: Dict[GeometryID, Surface] = {}
        self._sensitive: List[Surface] = []
        self._close(world, assign_layer_index)
        logger.info("Closed geometry: %d volumes, %d layers, %d sensitive surfaces",
                    len(self.volumes), len(self.layers), len(self._sensitive))

    def _register(self, surface: Surface, gid: GeometryID) -> None:
        if gid in self._by_id:
            raise GeometryError(f"Duplicate geometry id {gid!r}")
        surface.geometry_id = gid
        self._by_id[gid] = surface

    def _close(self, world: TrackingVolume, assign_layer_index: bool) -> None:
        stack = [world]
        while stack:
            vol = stack.pop()
            self.volumes.append(vol)
            vol_id = len(self.volumes)
            if vol_id > 0xFF:
                raise GeometryError("Too many volumes for the volume id field")
            vol.geometry_id = GeometryID()
            vol.geometry_id += vol_id << GeometryID.volume_shift

            for b_id, boundary in enumerate(vol.boundary_surfaces, start=1):
                gid = GeometryID(vol.geometry_id)
                gid += b_id << GeometryID.boundary_shift
                self._register(boundary.surface, gid)

            for l_id, layer in enumerate(vol.layers(), start=1):
                layer.index = len(self.layers)
                self.layers.append(layer)
                lay_gid = GeometryID(vol.geometry_id)
                lay_gid += l_id << GeometryID.layer_shift
                self._register(layer.surface, lay_gid)
                layer.surface.layer_index = layer.index
                for s_id, sf in enumerate(layer.sensitive, start=1):
                    gid = GeometryID(lay_gid)
                    gid += s_id << GeometryID.sensitive_shift
                    self._register(sf, gid)
                    sf.layer_index = layer.index if assign_layer_index else None
                    self._sensitive.append(sf)

            # depth-first, confined volumes in declaration order
            stack.extend(reversed(vol.confined))

    # ---------------------------------------------------------------- lookup
    def tracking_volume(self, point: np.ndarray) -> Optional[TrackingVolume]:
        return self.world.tracking_volume(point)

    def associated_layer(self, point: np.ndarray) -> Optional[Layer]:
        vol = self.tracking_volume(point)
        return None if vol is None else vol.associated_layer(point)

    def layer(self, index: int) -> Layer:
        return self.layers[index]

    def find_surface(self, geometry_id: GeometryID) -> Optional[Surface]:
        return self._by_id.get(geometry_id)

    def sensitive_surfaces(self) -> List[Surface]:
        return list(self._sensitive)

    def volume_graph(self) -> nx.DiGraph:
        """Adjacency of glued volumes (see :func:`~trackfit.volumes.volume_adjacency`)."""
        return volume_adjacency(self.volumes)

    def __repr__(self) -> str:
        return f"TrackingGeometry(world='{self.world.name}', volumes={len(self.volumes)}, layers={len(self.layers)})"


def telescope_geometry(z_positions: Sequence[float],
                       half_xy: float = 100.0,
                       thickness: float = 0.3,
                       margin: float = 50.0,
                       assign_layer_index: bool = True) -> TrackingGeometry:
    r"""
    Telescope of square planes perpendicular to :math:`z`.

    The world is a box that encloses all planes plus ``margin`` on each side
    and the origin. Layers are binned in ``z``.
    """
    if len(z_positions) == 0:
        raise ValueError("Telescope needs at least one plane")
    layers = []
    for i, z in enumerate(z_positions):
        center = (0.0, 0.0, float(z))
        layers.append(Layer(plane_surface(center, half_x=half_xy, half_y=half_xy, name=f"layer{i}"),
                            [plane_surface(center, half_x=half_xy, half_y=half_xy, name=f"plane{i}")],
                            thickness))
    half_z = max(abs(float(z)) for z in z_positions) + margin
    world = TrackingVolume(CuboidVolumeBounds(half_xy + margin, half_xy + margin, half_z),
                           name="telescope", layers=LayerArray(layers, "z"))
    return TrackingGeometry(world, assign_layer_index)


def barrel_geometry(radii: Sequence[float],
                    half_z: float = 500.0,
                    beam_pipe_radius: Optional[float] = None,
                    thickness: float = 0.3,
                    margin: float = 50.0,
                    assign_layer_index: bool = True) -> TrackingGeometry:
    r"""
    Nested cylindrical barrel: beam pipe, layer shell, and an enclosing world.

    The beam pipe ``[0, r_bp]`` and the barrel shell ``[r_bp, r_max]`` are glued
    along their common cylinder; the shell's inner cover is attributed to
    the shell's ``outer`` side.
    """
    radii = sorted(float(r) for r in radii)
    if not radii:
        raise ValueError("Barrel needs at least one layer radius")
    r_bp = beam_pipe_radius if beam_pipe_radius is not None else 0.5 * radii[0]
    if not 0.0 < r_bp < radii[0]:
        raise ValueError("Beam pipe radius must be positive and inside the first layer")
    r_max = radii[-1] + margin
    layers = [Layer(cylinder_surface(r, half_z, name=f"layer{i}"),
                    [cylinder_surface(r, half_z, name=f"barrel{i}")], thickness)
              for i, r in enumerate(radii)]

    beam_pipe = TrackingVolume(CylinderVolumeBounds(0.0, r_bp, half_z + margin), name="beam_pipe")
    barrel = TrackingVolume(CylinderVolumeBounds(r_bp, r_max, half_z + margin), name="barrel",
                            layers=LayerArray(layers, "r"))
    # beam pipe outer cover (2) and barrel inner cover (3)
    beam_pipe.glue(2, barrel)
    barrel.glue(3, beam_pipe)
    world = TrackingVolume(CylinderVolumeBounds(0.0, r_max + margin, half_z + 2.0 * margin),
                           transform=make_transform(), name="world", confined=[beam_pipe, barrel])
    return TrackingGeometry(world, assign_layer_index)
