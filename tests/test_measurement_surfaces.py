import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import itertools
from types import SimpleNamespace

import numpy as np
import pytest

from trackfit.detector import telescope_geometry
from trackfit.measurement_surfaces import MeasurementSurfaces, build_measurement_index
from trackfit.navigator import NavigationState
from trackfit.parameters import LOC0, LOC1, Measurement, TrackState
from trackfit.surfaces import plane_surface


def _state(surface):
    return TrackState(Measurement(surface, (LOC0, LOC1), [0.0, 0.0], np.eye(2) * 0.01))


def _stepping(position=(0.0, 0.0, 0.0), direction=(0.0, 0.0, 1.0), nav_dir=1):
    return SimpleNamespace(position=np.array(position), direction=np.array(direction), nav_dir=nav_dir)


def test_multimap_keys_sorted_and_buckets_in_insertion_order():
    a, b, c, d = (plane_surface((0, 0, z)) for z in range(4))
    ms = MeasurementSurfaces()
    ms.insert(5, a)
    ms.insert(2, b)
    ms.insert(5, c)
    ms.insert(1, d)
    assert ms.layers() == [1, 2, 5]
    assert list(ms) == [(1, d), (2, b), (5, a), (5, c)]
    assert ms.get(5) == (a, c)
    assert ms.get(7) == ()
    assert len(ms) == 4
    assert c in ms and plane_surface((0, 0, 9)) not in ms
    ms.freeze()
    with pytest.raises(RuntimeError):
        ms.insert(3, a)


def test_index_independent_of_input_order():
    geo = telescope_geometry([100.0, 200.0, 300.0, 400.0])
    surfaces = geo.sensitive_surfaces()
    reference = None
    for perm in itertools.permutations(range(4)):
        states = [_state(surfaces[i]) for i in perm]
        index, access, unresolved = build_measurement_index(states, _stepping(), NavigationState())
        assert len(access) == 4
        assert len(index) == 4
        assert unresolved == []
        for pos, ts in enumerate(states):
            assert access[ts.surface] == pos
        contents = sorted((k, id(sf)) for k, sf in index)
        if reference is None:
            reference = contents
        assert contents == reference
        assert index.frozen


def test_layers_resolved_geometrically():
    geo = telescope_geometry([100.0, 200.0, 300.0], assign_layer_index=False)
    states = [_state(sf) for sf in geo.sensitive_surfaces()]
    nav = NavigationState(world_volume=geo)
    index, access, unresolved = build_measurement_index(states, _stepping(), nav)
    assert unresolved == []
    assert index.layers() == [0, 1, 2]
    assert [index.get(i)[0] for i in range(3)] == geo.sensitive_surfaces()


def test_unresolved_states_are_excluded():
    geo = telescope_geometry([100.0, 200.0], assign_layer_index=False)
    behind = plane_surface((0, 0, -100.0))
    outside = plane_surface((0, 0, 5000.0))
    parallel = plane_surface((0, 0, 0.0), normal=(1.0, 0.0, 0.0))
    parallel_shifted = plane_surface((50.0, 0, 0.0), normal=(1.0, 0.0, 0.0))
    surfaces = geo.sensitive_surfaces()
    states = [_state(s) for s in (surfaces[0], behind, outside, surfaces[1], parallel_shifted)]
    nav = NavigationState(world_volume=geo)
    index, access, unresolved = build_measurement_index(states, _stepping(), nav)
    assert unresolved == [1, 2, 4]
    assert set(access) == set(surfaces)
    assert access[surfaces[1]] == 3
    assert len(index) == 2
    assert parallel not in index


def test_no_world_volume_leaves_layer_unresolved():
    sf = plane_surface((0, 0, 100.0))
    _, access, unresolved = build_measurement_index([_state(sf)], _stepping(), NavigationState())
    assert access == {}
    assert unresolved == [0]


def test_own_layer_back_reference_wins():
    sf = plane_surface((0, 0, -100.0))
    sf.layer_index = 42
    index, access, _ = build_measurement_index([_state(sf)], _stepping(), NavigationState())
    assert index.layers() == [42]
    assert access[sf] == 0


def test_shared_surface_keeps_the_last_state():
    sf = plane_surface((0, 0, 100.0))
    other = plane_surface((0, 0, 200.0))
    sf.layer_index, other.layer_index = 0, 1
    states = [_state(sf), _state(other), _state(sf)]
    index, access, unresolved = build_measurement_index(states, _stepping(), NavigationState())
    assert access == {sf: 2, other: 1}
    assert unresolved == [0]
    assert index.get(0) == (sf,)
    assert len(index) == 2
