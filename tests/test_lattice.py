# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal
from hypothesis import given, settings, strategies as st
from svdqmc.lattice import LatticeGeometry, hubbard_hypercube

settings.load_profile("svdqmc")

st_extent = st.integers(1, 5)
st_shape = st.tuples(st_extent, st_extent, st_extent)


@given(st_shape)
def test_site_position_roundtrip(shape):
    latt = LatticeGeometry(shape)
    assert latt.num_sites == shape[0] * shape[1] * shape[2]
    for i in range(latt.num_sites):
        assert latt.site(*latt.position(i)) == i


@pytest.mark.parametrize("shape", [0, (2, 0), (1, 2, 3, 4), (2.5, ), (), "ab", None])
def test_invalid_shape(shape):
    with pytest.raises(ValueError):
        LatticeGeometry(shape)


def test_shape_padding():
    latt = hubbard_hypercube(4)
    assert latt.extents == (4, 1, 1)
    assert latt.dim == 1
    # Axes without extent do not hop
    assert latt.hopping == (1.0, 0.0, 0.0)


@given(st_shape, st.floats(0.1, 2.0))
def test_energies_match_hamiltonian(shape, hop):
    latt = LatticeGeometry(shape, hop)
    ham = latt.hamiltonian_kinetic()
    assert_allclose(ham, ham.T)
    expected = np.sort(np.linalg.eigvalsh(ham))
    assert_allclose(np.sort(latt.energies), expected, atol=1e-10)


def test_energies_sum_vanishes():
    latt = LatticeGeometry((4, 3, 2), (1.0, 0.5, 0.2))
    assert abs(np.sum(latt.energies)) < 1e-12


@given(st_shape, st.integers(0, 2), st.integers(-7, 7))
def test_shift_inverse(shape, axis, k):
    latt = LatticeGeometry(shape)
    sites = np.arange(latt.num_sites)
    shifted = latt.shift(sites, axis, k)
    assert_array_equal(latt.shift(shifted, axis, -k), sites)
    assert latt.shift(0, axis, k) == shifted[0]


def test_neighbors():
    latt = LatticeGeometry((4, 4))
    x, y, _ = latt.position(5)
    assert latt.neighbors[5, 0] == latt.site(x + 1, y)
    assert latt.neighbors[5, 1] == latt.site(x - 1, y)
    assert latt.neighbors[5, 2] == latt.site(x, y + 1)
    assert latt.neighbors[5, 3] == latt.site(x, y - 1)


def test_staggering_and_potential():
    latt = LatticeGeometry((2, 2), staggered_field=0.5)
    assert_array_equal(latt.staggering, [1.0, -1.0, -1.0, 1.0])
    assert_allclose(latt.potential, 0.5 * latt.staggering)
    assert_allclose(np.diag(latt.hamiltonian_kinetic()), latt.potential)


def test_arrays_read_only():
    latt = LatticeGeometry((2, 2))
    with pytest.raises(ValueError):
        latt.energies[0] = 1.0
    with pytest.raises(ValueError):
        latt.neighbors[0, 0] = 1
