# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

r"""Equal time observables of a single field configuration.

The down species is treated in the particle-hole transformed representation of
the attractive model. The single particle density matrices are
..math::
    ρ_↑ = I - (I + c_↑ M)^{-1},    ρ_↓ = (I + c_↓ M)^{-1}

All values of a `ObservableSample` are raw values of one configuration, the sign
of the configuration is stored separately. Averaging is left to the caller.
"""

import math
import numpy as np
from dataclasses import dataclass, field, fields as dc_fields
from typing import Optional
from numba import njit, float64, int64
from .lattice import LatticeGeometry
from .propagator import SpectralPropagator
from .stabilize import StabilizedFactorization

__all__ = [
    "ObservableSample",
    "ObservableSummary",
    "pair_correlation",
    "spin_correlation",
    "density_matrices",
    "extract_observables",
]

jkwargs = dict(nogil=True, fastmath=True, cache=True)


@njit(float64(float64[:, :], float64[:, :], int64[:, :]), **jkwargs)
def pair_correlation(rho_up, rho_dn, neighbors):
    r"""Computes the equal time d-wave pair correlation of two propagators.

    Parameters
    ----------
    rho_up : (V, V) np.ndarray
        The propagator of the spin-up species.
    rho_dn : (V, V) np.ndarray
        The propagator of the spin-down species.
    neighbors : (V, 4) np.ndarray
        The `+x, -x, +y, -y` neighbours of every site.

    Returns
    -------
    corr : float
        The correlation
        ..math::
            \frac{1}{V^2} \sum_{ij} ρ_↑(i, j) \sum_{δδ'} f_δ f_{δ'} ρ_↓(i+δ, j+δ')

        with the d-wave form factor :math:`f_{±x} = 1`, :math:`f_{±y} = -1`.
    """
    num_sites = rho_up.shape[0]
    form = np.array([1.0, 1.0, -1.0, -1.0])
    total = 0.0
    for i in range(num_sites):
        for j in range(num_sites):
            d = 0.0
            for a in range(4):
                for b in range(4):
                    d += form[a] * form[b] * rho_dn[neighbors[i, a], neighbors[j, b]]
            total += rho_up[i, j] * d
    return total / num_sites / num_sites


@njit(float64[:](float64[:, :], float64[:, :], int64[:, :]), **jkwargs)
def spin_correlation(rho_up, rho_dn, shifted):
    r"""Computes the spin correlation :math:`\sum_j <S^z_j S^z_{j+k}>` along x.

    Parameters
    ----------
    rho_up : (V, V) np.ndarray
        The spin-up density matrix.
    rho_dn : (V, V) np.ndarray
        The (particle-hole transformed) spin-down density matrix.
    shifted : (K, V) np.ndarray
        The index of the site `j + k` for `k = 1, ..., K`.

    Returns
    -------
    corr : (K, ) np.ndarray
    """
    num_dist, num_sites = shifted.shape
    out = np.zeros(num_dist, dtype=np.float64)
    for k in range(num_dist):
        ssz = 0.0
        for x in range(num_sites):
            y = shifted[k, x]
            ssz += rho_up[x, x] * rho_up[y, y] + rho_dn[x, x] * rho_dn[y, y]
            ssz -= rho_up[x, x] * rho_dn[y, y] + rho_dn[x, x] * rho_up[y, y]
            ssz -= rho_up[x, y] * rho_up[y, x] + rho_dn[x, y] * rho_dn[y, x]
        out[k] = 0.25 * ssz
    return out


@dataclass
class ObservableSample:
    """The raw observables of a single configuration.

    Attributes
    ----------
    sign : float
        The sign of the weight of the configuration.
    density : float
        The particle density per site.
    magnetization : float
        The magnetization per site.
    kinetic : float
        The kinetic energy.
    interaction : float
        The interaction energy :math:`g \\sum_i ρ_↑(i,i) ρ_↓(i,i)`.
    order_parameter : float
        The squared local difference of the two species densities.
    chi_af : float
        The antiferromagnetic susceptibility.
    chi_d : float
        The d-wave pairing susceptibility, `NaN` if no slices were available.
    spin_correlation : np.ndarray
        The spin correlation along x for distances `1, ..., Lx/2`.
    density_up, density_dn : np.ndarray
        The per-site densities of the two species.
    staggered_magnetization : float, optional
        The staggered magnetization, only measured with a staggered potential.
    """

    sign: float
    density: float
    magnetization: float
    kinetic: float
    interaction: float
    order_parameter: float
    chi_af: float
    chi_d: float = math.nan
    spin_correlation: np.ndarray = field(default_factory=lambda: np.zeros(0))
    density_up: np.ndarray = field(default_factory=lambda: np.zeros(0), repr=False)
    density_dn: np.ndarray = field(default_factory=lambda: np.zeros(0), repr=False)
    staggered_magnetization: Optional[float] = None


class ObservableSummary:
    """Sign-weighted sums of observable samples.

    This is only a minimal collector used by the command line interface and for
    checkpoints, it does not estimate errors.
    """

    SCALARS = ("density", "magnetization", "kinetic", "interaction",
               "order_parameter", "chi_af", "chi_d", "staggered_magnetization")
    ARRAYS = ("spin_correlation", "density_up", "density_dn")

    def __init__(self):
        self.count = 0
        self.sign = 0.0
        self.sums = dict()

    def add(self, sample: ObservableSample):
        self.count += 1
        self.sign += sample.sign
        for f in dc_fields(sample):
            if f.name == "sign":
                continue
            value = getattr(sample, f.name)
            if value is None:
                continue
            value = sample.sign * np.asarray(value, dtype=np.float64)
            if f.name in self.sums:
                self.sums[f.name] = self.sums[f.name] + value
            else:
                self.sums[f.name] = value

    def mean(self, name: str):
        """Returns the sign-corrected mean :math:`<s O> / <s>` of an observable."""
        if not self.count:
            raise ValueError("No samples have been added!")
        return self.sums[name] / self.sign

    @property
    def average_sign(self):
        return self.sign / self.count if self.count else math.nan

    def to_arrays(self):
        """Returns the sums as a dictionary of arrays (used by checkpoints)."""
        arrays = {name: np.asarray(value) for name, value in self.sums.items()}
        arrays["count"] = np.asarray(self.count)
        arrays["sign"] = np.asarray(self.sign)
        return arrays

    @classmethod
    def from_arrays(cls, arrays):
        summary = cls()
        arrays = dict(arrays)
        summary.count = int(arrays.pop("count", 0))
        summary.sign = float(arrays.pop("sign", 0.0))
        summary.sums = {k: np.asarray(v, dtype=np.float64) for k, v in arrays.items()}
        return summary


def density_matrices(factorization: StabilizedFactorization):
    """Returns the single particle density matrices `(ρ_↑, ρ_↓)`."""
    inv_up = factorization.species(+1).inverse()
    rho_up = np.eye(inv_up.shape[0]) - inv_up
    rho_dn = factorization.species(-1).inverse()
    return rho_up, rho_dn


def _pairing_susceptibility(factorization, slices, neighbors):
    slices = list(slices)
    beta = factorization.beta
    dtau = beta / len(slices)
    num_sites = factorization.num_sites
    f_up = factorization.species(+1).inverse()
    f_dn = np.eye(num_sites) - factorization.species(-1).inverse()
    fac_up = math.exp(dtau * (+0.5 * factorization.field + factorization.mu))
    fac_dn = math.exp(dtau * (-0.5 * factorization.field + factorization.mu))
    chi = 0.0
    for mat in slices:
        f_up = fac_up * np.dot(mat, f_up)
        f_dn = fac_dn * np.dot(mat, f_dn)
        chi += pair_correlation(f_up, f_dn, neighbors)
    return chi * beta / len(slices)


def extract_observables(factorization: StabilizedFactorization,
                        geometry: LatticeGeometry, propagator: SpectralPropagator,
                        coupling: float, slices=None) -> ObservableSample:
    r"""Computes the observables of the current configuration.

    Parameters
    ----------
    factorization : StabilizedFactorization
        The (up to date) factorization of the configuration.
    geometry : LatticeGeometry
        The lattice geometry.
    propagator : SpectralPropagator
        The free propagator, used for the kinetic energy.
    coupling : float
        The coupling `g = -U`.
    slices : SliceCache or sequence of np.ndarray, optional
        The slices of the configuration. The pairing susceptibility is only
        computed if the slices are given.

    Returns
    -------
    sample : ObservableSample
    """
    num_sites = geometry.num_sites
    sign = factorization.sign()
    rho_up, rho_dn = density_matrices(factorization)
    n_up = np.diag(rho_up).copy()
    n_dn = np.diag(rho_dn).copy()
    stag = geometry.staggering

    kinetic = propagator.kinetic_energy(rho_up) - propagator.kinetic_energy(rho_dn)
    interaction = coupling * float(np.sum(n_up * n_dn))
    order = float(np.sum((n_up - n_dn) ** 2))
    af = float(np.sum((n_up - n_dn) * stag)) / num_sites
    chi_af = factorization.beta * af * af

    lx = geometry.extents[0]
    sites = np.arange(num_sites)
    if lx // 2:
        shifted = np.array([geometry.shift(sites, 0, k) for k in range(1, lx // 2 + 1)],
                           dtype=np.int64)
    else:
        shifted = np.zeros((0, num_sites), dtype=np.int64)
    spin = spin_correlation(rho_up, rho_dn, shifted)

    chi_d = math.nan
    if slices is not None:
        neighbors = np.array(geometry.neighbors, dtype=np.int64)
        chi_d = _pairing_susceptibility(factorization, slices, neighbors)

    stag_mag = None
    if geometry.staggered_field != 0.0:
        stag_mag = float(np.sum(n_up * stag - n_dn * stag)) / num_sites

    return ObservableSample(
        sign=sign,
        density=float(np.sum(n_up) + np.sum(n_dn)) / num_sites,
        magnetization=float(np.sum(n_up) - np.sum(n_dn)) / 2.0 / num_sites,
        kinetic=kinetic,
        interaction=interaction,
        order_parameter=order,
        chi_af=chi_af,
        chi_d=chi_d,
        spin_correlation=spin,
        density_up=n_up,
        density_dn=n_dn,
        staggered_magnetization=stag_mag,
    )
