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
from scipy.linalg import expm
from numpy.testing import assert_allclose
from hypothesis import given, settings, strategies as st
from svdqmc.lattice import LatticeGeometry
from svdqmc.propagator import SpectralPropagator

settings.load_profile("svdqmc")

st_extent = st.integers(1, 4)
st_shape = st.tuples(st_extent, st_extent, st_extent)
st_dt = st.floats(0.01, 0.5)


@given(st_shape, st_dt)
def test_matrix_matches_expm(shape, dt):
    latt = LatticeGeometry(shape)
    prop = SpectralPropagator(latt, dt)
    expected = expm(-dt * latt.hamiltonian_kinetic())
    assert_allclose(prop.matrix(), expected, atol=1e-10)
    assert_allclose(prop.matrix(backward=True), expm(dt * latt.hamiltonian_kinetic()),
                    atol=1e-10)


@given(st_shape, st_dt, st.integers(0, 1000))
def test_backward_inverts_forward(shape, dt, seed):
    latt = LatticeGeometry(shape)
    prop = SpectralPropagator(latt, dt)
    rng = np.random.default_rng(seed)
    vec = rng.normal(size=latt.num_sites)
    mat = rng.normal(size=(latt.num_sites, 3))
    assert_allclose(prop.apply(prop.apply(vec), backward=True), vec, atol=1e-10)
    assert_allclose(prop.apply(prop.apply(mat, backward=True)), mat, atol=1e-10)


def test_single_and_batched_agree():
    latt = LatticeGeometry((4, 2))
    prop = SpectralPropagator(latt, 0.1)
    rng = np.random.default_rng(0)
    mat = rng.normal(size=(latt.num_sites, 5))
    batched = prop.apply(mat)
    for j in range(mat.shape[1]):
        assert_allclose(batched[:, j], prop.apply(mat[:, j]), atol=1e-12)


def test_real_and_complex_inputs():
    latt = LatticeGeometry((3, 3))
    prop = SpectralPropagator(latt, 0.2)
    rng = np.random.default_rng(1)
    vec = rng.normal(size=latt.num_sites)
    out = prop.apply(vec)
    assert not np.iscomplexobj(out)
    cvec = vec + 1j * rng.normal(size=latt.num_sites)
    cout = prop.apply(cvec)
    assert np.iscomplexobj(cout)
    assert_allclose(cout, prop.matrix() @ cvec, atol=1e-10)


def test_apply_rows():
    latt = LatticeGeometry((4, 3))
    prop = SpectralPropagator(latt, 0.15)
    rng = np.random.default_rng(2)
    mat = rng.normal(size=(6, latt.num_sites))
    assert_allclose(prop.apply_rows(mat), mat @ prop.matrix(), atol=1e-10)
    assert_allclose(prop.apply_rows(mat, backward=True),
                    mat @ prop.matrix(backward=True), atol=1e-10)


def test_kinetic_energy():
    latt = LatticeGeometry((4, 4), 0.7)
    prop = SpectralPropagator(latt, 0.1)
    rng = np.random.default_rng(3)
    rho = rng.normal(size=(latt.num_sites, latt.num_sites))
    expected = np.trace(latt.hamiltonian_kinetic() @ rho)
    assert abs(prop.kinetic_energy(rho) - expected) < 1e-10


def test_zero_hopping_is_identity():
    latt = LatticeGeometry((3, 2), 0.0)
    prop = SpectralPropagator(latt, 0.3)
    assert_allclose(prop.matrix(), np.eye(latt.num_sites), atol=1e-12)


def test_errors():
    latt = LatticeGeometry((4, ))
    with pytest.raises(ValueError):
        SpectralPropagator(latt, float("nan"))
    prop = SpectralPropagator(latt, 0.1)
    with pytest.raises(ValueError):
        prop.apply(np.ones(3))
