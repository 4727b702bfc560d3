from __future__ import annotations

import bisect
import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from trackfit.parameters import TrackState
from trackfit.surfaces import Surface

logger = logging.getLogger(__name__)

__all__ = ["MeasurementSurfaces", "build_measurement_index", "resolve_layer"]


class MeasurementSurfaces:
    r"""
    Ordered multi-map ``layer index -> surfaces``.

    Keys are kept sorted; inside a key the surfaces keep insertion order.
    The order carries no physical meaning (it is not the trajectory order).
    After :meth:`freeze` the container is read-only.
    """

    __slots__ = ("_keys", "_buckets", "_frozen")

    def __init__(self) -> None:
        self._keys: List[int] = []
        self._buckets: Dict[int, List[Surface]] = {}
        self._frozen = False

    def insert(self, layer: int, surface: Surface) -> None:
        if self._frozen:
            raise RuntimeError("MeasurementSurfaces is frozen")
        bucket = self._buckets.get(layer)
        if bucket is None:
            bisect.insort(self._keys, layer)
            bucket = self._buckets[layer] = []
        bucket.append(surface)

    def freeze(self) -> "MeasurementSurfaces":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def layers(self) -> List[int]:
        return list(self._keys)

    def get(self, layer: int) -> Tuple[Surface, ...]:
        return tuple(self._buckets.get(layer, ()))

    def surfaces(self) -> List[Surface]:
        return [sf for _, sf in self]

    def __iter__(self) -> Iterator[Tuple[int, Surface]]:
        for key in self._keys:
            for sf in self._buckets[key]:
                yield key, sf

    def __len__(self) -> int:
        return sum(len(b) for b in self._buckets.values())

    def __contains__(self, surface: object) -> bool:
        return any(surface is sf for b in self._buckets.values() for sf in b)

    def __repr__(self) -> str:
        return f"MeasurementSurfaces(layers={self._keys}, entries={len(self)})"


def resolve_layer(surface: Surface, stepping, navigation) -> Optional[int]:
    r"""
    Find the layer index of ``surface``.

    The surface's own ``layer_index`` wins. Otherwise the straight-line
    intersection from the current stepper position is located in the
    navigation world volume, which is asked for the layer at that point.

    Returns
    -------
    int or None
        ``None`` when there is no forward intersection, no world volume, the
        point is outside the world, or the volume has no layer there.
    """
    if surface.layer_index is not None:
        return surface.layer_index
    hit = surface.intersection_estimate(stepping.position, stepping.direction, stepping.nav_dir, False)
    if not hit:
        return None
    world = getattr(navigation, "world_volume", None)
    if world is None:
        return None
    volume = world.tracking_volume(hit.position)
    if volume is None:
        return None
    layer = volume.associated_layer(hit.position)
    return None if layer is None else layer.index


def build_measurement_index(track_states: Sequence[TrackState],
                            stepping,
                            navigation) -> Tuple[MeasurementSurfaces, Dict[Surface, int], List[int]]:
    r"""
    Build the measurement index of one trajectory.

    For each state (in sequence order) the layer of its surface is resolved
    with :func:`resolve_layer`. Resolved states enter the multi-map and the
    access index ``surface -> position``; the positions of unresolved states
    are returned separately and never updated. When several states share a
    surface the last one wins; the earlier positions are logged and listed
    with the unresolved ones.

    Parameters
    ----------
    track_states : sequence of TrackState
        Trajectory, any order.
    stepping : object
        Provides ``position``, ``direction`` and ``nav_dir``.
    navigation : object
        Provides ``world_volume`` (may be ``None``).

    Returns
    -------
    index : MeasurementSurfaces
        Frozen layer -> surface multi-map.
    access_index : dict[Surface, int]
        Position of each resolved surface in ``track_states``.
    unresolved : list of int
        Positions excluded from the fit (no layer, or shadowed by a later
        state on the same surface), ascending.
    """
    index = MeasurementSurfaces()
    access_index: Dict[Surface, int] = {}
    unresolved: List[int] = []
    for pos, ts in enumerate(track_states):
        surface = ts.surface
        shadowed = access_index.get(surface)
        if shadowed is not None:
            logger.warning("Track states %d and %d share %r; keeping %d", shadowed, pos, surface, pos)
            access_index[surface] = pos
            unresolved.append(shadowed)
            continue
        layer = resolve_layer(surface, stepping, navigation)
        if layer is None:
            logger.warning("No layer for track state %d on %r; excluded from the fit", pos, surface)
            unresolved.append(pos)
            continue
        index.insert(layer, surface)
        access_index[surface] = pos
    logger.debug("Measurement index: %d resolved, %d unresolved", len(access_index), len(unresolved))
    return index.freeze(), access_index, sorted(unresolved)
