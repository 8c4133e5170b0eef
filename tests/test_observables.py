# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

import math
import pytest
import numpy as np
from numpy.testing import assert_allclose
from hypothesis import given, settings, strategies as st
from svdqmc.lattice import LatticeGeometry
from svdqmc.propagator import SpectralPropagator
from svdqmc.fields import FieldConfiguration
from svdqmc.slices import SliceAccumulator, SliceCache
from svdqmc.stabilize import StabilizedFactorization
from svdqmc.observables import (
    ObservableSample,
    ObservableSummary,
    pair_correlation,
    spin_correlation,
    density_matrices,
    extract_observables,
)

settings.load_profile("svdqmc")


def _fermi(x, beta):
    return 0.5 * (1.0 - np.tanh(0.5 * beta * x))


def _configuration(shape=(4, 4), num_times=20, beta=2.0, amp=0.0, mu=0.0, field=0.0,
                   h=0.0, seed=0):
    latt = LatticeGeometry(shape, staggered_field=h)
    prop = SpectralPropagator(latt, beta / num_times)
    fields = FieldConfiguration(num_times, latt.num_sites, amp)
    fields.initialize(np.random.default_rng(seed))
    cache = SliceCache(SliceAccumulator(fields, prop), 5)
    cache.rebuild()
    fact = StabilizedFactorization(latt.num_sites, beta, mu, field)
    fact.rebuild(cache)
    return latt, prop, cache, fact


@given(st.floats(-1.0, 1.0), st.floats(-1.0, 1.0))
def test_free_fermions(mu, field):
    beta = 2.0
    latt, prop, cache, fact = _configuration(beta=beta, mu=mu, field=field)
    sample = extract_observables(fact, latt, prop, 0.0, cache)
    eps = latt.energies
    f_up = _fermi(eps - mu - field / 2, beta)
    f_dn = _fermi(eps - mu + field / 2, beta)

    assert sample.sign == 1.0
    assert_allclose(sample.density_up, np.mean(f_up), atol=1e-8)
    assert_allclose(sample.density_dn, 1.0 - np.mean(f_dn), atol=1e-8)
    expected_kin = np.sum(eps * f_up) - np.sum(eps * (1.0 - f_dn))
    assert abs(sample.kinetic - expected_kin) < 1e-8
    assert sample.interaction == 0.0


def test_density_matrices():
    latt, prop, cache, fact = _configuration(shape=(2, 2), num_times=8, amp=0.4,
                                             mu=0.2, field=0.3)
    m = np.eye(latt.num_sites)
    for mat in cache:
        m = mat @ m
    eye = np.eye(latt.num_sites)
    rho_up, rho_dn = density_matrices(fact)
    assert_allclose(rho_up, eye - np.linalg.inv(eye + fact.scale_up * m), atol=1e-10)
    assert_allclose(rho_dn, np.linalg.inv(eye + fact.scale_dn * m), atol=1e-10)


def test_pair_correlation_kernel():
    latt = LatticeGeometry((4, 4))
    rng = np.random.default_rng(0)
    rho_up = rng.normal(size=(16, 16))
    rho_dn = rng.normal(size=(16, 16))
    nb = np.array(latt.neighbors, dtype=np.int64)
    form = np.array([1.0, 1.0, -1.0, -1.0])
    blocks = rho_dn[nb[:, :, None, None], nb[None, None, :, :]]
    d = np.einsum("a,b,iajb->ij", form, form, blocks)
    expected = np.sum(rho_up * d) / 16 ** 2
    assert abs(pair_correlation(rho_up, rho_dn, nb) - expected) < 1e-10


def test_spin_correlation_kernel():
    latt = LatticeGeometry((4, 2))
    rng = np.random.default_rng(1)
    rho_up = rng.uniform(size=(8, 8))
    rho_dn = rng.uniform(size=(8, 8))
    sites = np.arange(8)
    shifted = np.array([latt.shift(sites, 0, k) for k in (1, 2)], dtype=np.int64)
    result = spin_correlation(rho_up, rho_dn, shifted)
    assert result.shape == (2, )
    for k in range(2):
        total = 0.0
        for x in range(8):
            y = shifted[k, x]
            nu = rho_up[x, x] - rho_dn[x, x]
            nv = rho_up[y, y] - rho_dn[y, y]
            total += nu * nv - rho_up[x, y] * rho_up[y, x] - rho_dn[x, y] * rho_dn[y, x]
        assert abs(result[k] - 0.25 * total) < 1e-12


def test_sample_shapes():
    latt, prop, cache, fact = _configuration(shape=(4, 2), amp=0.3, seed=2)
    sample = extract_observables(fact, latt, prop, 1.5)
    assert math.isnan(sample.chi_d)
    assert sample.spin_correlation.shape == (2, )
    assert sample.density_up.shape == (8, )
    assert sample.staggered_magnetization is None
    assert abs(sample.density - np.mean(sample.density_up + sample.density_dn)) < 1e-12
    expected = 1.5 * np.sum(sample.density_up * sample.density_dn)
    assert abs(sample.interaction - expected) < 1e-12

    latt, prop, cache, fact = _configuration(shape=1, num_times=4)
    sample = extract_observables(fact, latt, prop, 0.0, cache)
    assert sample.spin_correlation.shape == (0, )


def test_staggered_magnetization():
    latt, prop, cache, fact = _configuration(shape=(2, 2), num_times=10, amp=0.3,
                                             h=0.5, seed=3)
    sample = extract_observables(fact, latt, prop, 1.0, cache)
    stag = latt.staggering
    expected = np.sum((sample.density_up - sample.density_dn) * stag) / 4
    assert isinstance(sample.staggered_magnetization, float)
    assert abs(sample.staggered_magnetization - expected) < 1e-12
    assert math.isfinite(sample.chi_d)


def test_extraction_does_not_mutate():
    latt, prop, cache, fact = _configuration(shape=(2, 2), num_times=10, amp=0.4,
                                             mu=0.1, seed=4)
    up = fact.up.matrix()
    slices = [mat.copy() for mat in cache]
    first = extract_observables(fact, latt, prop, 1.0, cache)
    second = extract_observables(fact, latt, prop, 1.0, cache)
    assert_allclose(fact.up.matrix(), up)
    for mat, ref in zip(cache, slices):
        assert_allclose(mat, ref)
    assert first.kinetic == second.kinetic
    assert first.chi_d == second.chi_d


def _sample(sign, density, spin):
    return ObservableSample(sign=sign, density=density, magnetization=0.0,
                            kinetic=-1.0, interaction=0.5, order_parameter=0.1,
                            chi_af=0.2, spin_correlation=np.asarray(spin))


def test_summary():
    summary = ObservableSummary()
    assert math.isnan(summary.average_sign)
    with pytest.raises(ValueError):
        summary.mean("density")

    summary.add(_sample(1.0, 1.0, [1.0, 2.0]))
    summary.add(_sample(1.0, 0.5, [0.0, 1.0]))
    summary.add(_sample(-1.0, 0.8, [1.0, 1.0]))
    assert summary.count == 3
    assert abs(summary.average_sign - 1 / 3) < 1e-14
    assert abs(summary.mean("density") - 0.7) < 1e-14
    assert_allclose(summary.mean("spin_correlation"), [0.0, 2.0])
    assert "staggered_magnetization" not in summary.sums

    restored = ObservableSummary.from_arrays(summary.to_arrays())
    assert restored.count == 3
    assert restored.sign == summary.sign
    assert abs(restored.mean("density") - 0.7) < 1e-14
