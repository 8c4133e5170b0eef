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
from svdqmc.fields import FieldConfiguration, field_amplitude
from svdqmc.slices import SliceAccumulator, SliceCache
from svdqmc.stabilize import StabilizedFactorization, SyncResult, Outcome

settings.load_profile("svdqmc")

st_seed = st.integers(0, 10_000)
st_method = st.sampled_from(["svd", "qr"])


def _setup(shape=(2, 2), num_times=8, amp=0.4, beta=1.0, block_size=2, seed=0,
           prob=0.5):
    latt = LatticeGeometry(shape)
    prop = SpectralPropagator(latt, beta / num_times)
    fields = FieldConfiguration(num_times, latt.num_sites, amp)
    fields.initialize(np.random.default_rng(seed), prob)
    acc = SliceAccumulator(fields, prop)
    cache = SliceCache(acc, block_size)
    cache.rebuild()
    return acc, cache


def _dense_weight(m, cup, cdn):
    eye = np.eye(m.shape[0])
    s_up, ld_up = np.linalg.slogdet(eye + cup * m)
    s_dn, ld_dn = np.linalg.slogdet(eye + cdn * m)
    return ld_up + ld_dn, s_up * s_dn


@pytest.mark.parametrize("method", ["svd", "qr"])
def test_single_site_closed_form(method):
    amp, num_times = 0.3, 4
    _, cache = _setup(shape=1, num_times=num_times, amp=amp, block_size=1, prob=1.0)
    fact = StabilizedFactorization(1, 1.0, method=method)
    result = fact.rebuild(cache)
    assert result.ok
    expected = 2 * math.log1p((1 + amp) ** num_times)
    assert abs(fact.probability() - expected) < 1e-9
    assert fact.sign() == 1.0
    assert abs(fact.base.log_abs_det() - num_times * math.log1p(amp)) < 1e-9


@given(st_seed, st_method, st.floats(-0.5, 0.5), st.floats(-0.5, 0.5))
def test_matches_dense_weight(seed, method, mu, field):
    acc, cache = _setup(seed=seed)
    fact = StabilizedFactorization(acc.num_sites, 1.0, mu, field, method=method)
    result = fact.rebuild(cache)
    logw, sign = _dense_weight(acc.build_slice(), fact.scale_up, fact.scale_dn)
    assert abs(fact.probability() - logw) < 1e-8
    assert fact.sign() == sign
    assert result.rebuilt_log_weight == fact.probability()
    assert result.rebuilt_sign == fact.sign()


def test_scales():
    fact = StabilizedFactorization(4, 2.0, mu=0.25, field=0.5)
    assert abs(fact.scale_up - math.exp(0.5 + 0.5)) < 1e-14
    assert abs(fact.scale_dn - math.exp(-0.5 + 0.5)) < 1e-14


@pytest.mark.parametrize("block_size, msvd", [(1, 1), (1, 3), (2, 1), (4, 2), (8, 1)])
def test_grouping_invariance(block_size, msvd):
    acc, cache = _setup(shape=(4, 2), num_times=16, beta=4.0, block_size=block_size,
                        seed=3)
    ref_acc, ref_cache = _setup(shape=(4, 2), num_times=16, beta=4.0, block_size=1,
                                seed=3)
    ref = StabilizedFactorization(acc.num_sites, 4.0, 0.1, msvd=1)
    ref.rebuild(ref_cache)
    fact = StabilizedFactorization(acc.num_sites, 4.0, 0.1, msvd=msvd)
    fact.rebuild(cache)
    assert abs(fact.probability() - ref.probability()) < 1e-6
    assert fact.sign() == ref.sign()


def test_svd_and_qr_agree():
    acc, cache = _setup(shape=(4, 4), num_times=40, beta=8.0, block_size=4, seed=1)
    svd = StabilizedFactorization(acc.num_sites, 8.0, 0.2, method="svd")
    qr = StabilizedFactorization(acc.num_sites, 8.0, 0.2, method="qr")
    svd.rebuild(cache)
    qr.rebuild(cache)
    assert abs(svd.probability() - qr.probability()) < 1e-6 * abs(svd.probability())
    assert svd.sign() == qr.sign()


def test_green_matrices():
    acc, cache = _setup(seed=5)
    fact = StabilizedFactorization(acc.num_sites, 1.0, 0.3, 0.2)
    fact.rebuild(cache)
    m = acc.build_slice()
    eye = np.eye(acc.num_sites)
    for sigma, c in ((+1, fact.scale_up), (-1, fact.scale_dn)):
        inv = np.linalg.inv(eye + c * m)
        assert_allclose(fact.species(sigma).matrix(), eye + c * m, atol=1e-10)
        assert_allclose(fact.green(sigma).matrix(), eye - inv, atol=1e-10)


@pytest.mark.parametrize("seed", [0, 3])
def test_green_matrices_at_strong_coupling(seed):
    acc, cache = _setup(shape=(4, 4), num_times=40, amp=field_amplitude(-4.0, 0.1),
                        beta=4.0, block_size=5, seed=seed)
    greens = list()
    for method, msvd in (("svd", 1), ("qr", 1), ("svd", 4)):
        fact = StabilizedFactorization(acc.num_sites, 4.0, 0.1, 0.2, msvd=msvd,
                                       method=method)
        fact.rebuild(cache)
        assert fact.base.s[0] / fact.base.s[-1] > 1e12
        greens.append([fact.green(sigma).matrix() for sigma in (+1, -1)])
    # Independent decompositions of M give the same Green matrices
    for other in greens[1:]:
        assert_allclose(other[0], greens[0][0], atol=1e-6)
        assert_allclose(other[1], greens[0][1], atol=1e-6)


def test_invert_roundtrip():
    acc, cache = _setup(seed=2)
    fact = StabilizedFactorization(acc.num_sites, 1.0)
    fact.rebuild(cache)
    before = fact.probability()
    up = fact.up.matrix()
    fact.invert()
    assert fact.inverted
    assert_allclose(fact.up.matrix(), np.linalg.inv(up), atol=1e-10)
    with pytest.raises(AssertionError):
        fact.probability()
    fact.invert()
    assert not fact.inverted
    assert abs(fact.probability() - before) < 1e-10


def test_requires_build():
    fact = StabilizedFactorization(4, 1.0)
    assert not fact.built
    with pytest.raises(AssertionError):
        fact.probability()
    with pytest.raises(ValueError):
        StabilizedFactorization(4, 1.0, method="lu")


def test_rejects_stale_cache():
    acc, cache = _setup()
    cache.invalidate(acc.fields.flip(0, 0))
    fact = StabilizedFactorization(acc.num_sites, 1.0)
    with pytest.raises(AssertionError):
        fact.rebuild(cache)


@given(st_seed)
def test_phase_of_attractive_model(seed):
    # Both species share `M`, the weight is real and positive
    acc, cache = _setup(seed=seed)
    fact = StabilizedFactorization(acc.num_sites, 1.0, 0.2)
    result = fact.rebuild(cache)
    assert result.outcome is Outcome.OK
    assert abs(math.cos(result.phase)) > 0.99
    log_w = fact.eigen_log_weight()
    assert abs(log_w.real - fact.probability()) < 1e-8


def test_copy_and_load():
    acc, cache = _setup(seed=4)
    fact = StabilizedFactorization(acc.num_sites, 1.0)
    fact.rebuild(cache)
    clone = fact.copy()
    clone.invert()
    assert not fact.inverted
    other = StabilizedFactorization(acc.num_sites, 1.0).load(fact)
    assert other.built
    assert other.probability() == fact.probability()


def test_sync_result():
    result = SyncResult(Outcome.WARNING, 1.0, 1.5, 1.0, -1.0, location=(2, 3),
                        message="drift")
    assert not result.ok
    assert result.drift == 0.5
    text = str(result)
    assert "WARNING" in text and "(2, 3)" in text
