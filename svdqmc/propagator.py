# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

"""Spectral application of the non-interacting imaginary time evolution operator."""

import numpy as np
from scipy import fft
from .lattice import LatticeGeometry

__all__ = ["SpectralPropagator"]


class SpectralPropagator:
    r"""Applies :math:`e^{\mp Δτ H_0}` in momentum space.

    The hopping Hamiltonian :math:`H_0` of a periodic hyper-cubic lattice is
    diagonal in the plane wave basis. A vector (or the columns of a matrix) indexed
    by lattice sites is transformed to momentum space, multiplied by the decay
    factors :math:`e^{-Δτ ε(k)}` and transformed back. The inverse transform of
    `scipy.fft` already divides by the number of modes.

    Parameters
    ----------
    geometry : LatticeGeometry
        The lattice geometry providing the extents and the kinetic energies.
    dt : float
        The imaginary time step `Δτ`.
    workers : int, optional
        Number of workers passed to `scipy.fft`.
    """

    def __init__(self, geometry: LatticeGeometry, dt: float, workers: int = None):
        self.geometry = geometry
        self.dt = float(dt)
        self.workers = workers
        energies = np.asarray(geometry.energies, dtype=np.float64)
        if not np.all(np.isfinite(energies)) or not np.isfinite(self.dt):
            raise ValueError("Energies and time step of the propagator must be finite!")
        grid = geometry.extents
        self._energies = energies.reshape(grid)
        self._forward = np.exp(-self.dt * self._energies)
        self._backward = np.exp(+self.dt * self._energies)
        self._axes = tuple(range(len(grid)))

    @property
    def num_sites(self):
        return self.geometry.num_sites

    @property
    def factors(self):
        """The forward decay factors :math:`e^{-Δτ ε(k)}` in row-major mode order."""
        return self._forward.reshape(-1)

    def _transform(self, arr, factor):
        arr = np.asarray(arr)
        if arr.shape[0] != self.num_sites:
            raise ValueError(f"Leading dimension {arr.shape[0]} does not match the "
                             f"number of sites {self.num_sites}!")
        extra = arr.shape[1:]
        grid = arr.reshape(self.geometry.extents + extra)
        factor = factor.reshape(factor.shape + (1, ) * len(extra))
        mom = fft.fftn(grid, axes=self._axes, workers=self.workers)
        mom *= factor
        out = fft.ifftn(mom, axes=self._axes, workers=self.workers).reshape(arr.shape)
        if not np.iscomplexobj(arr):
            out = np.ascontiguousarray(out.real)
        return out

    def apply(self, arr, backward=False):
        r"""Applies the free propagator to a vector or to the columns of a matrix.

        Parameters
        ----------
        arr : (V, ) or (V, M) np.ndarray
            A site-indexed vector or a matrix whose columns are propagated.
        backward : bool, optional
            If `True` the inverse propagator :math:`e^{+Δτ H_0}` is applied.

        Returns
        -------
        out : np.ndarray
            The propagated array with the same shape as the input. Real inputs give
            real outputs.
        """
        factor = self._backward if backward else self._forward
        return self._transform(arr, factor)

    def apply_rows(self, arr, backward=False):
        """Applies the free propagator from the right to the rows of a matrix.

        The propagator is symmetric, therefore `M e^{-Δτ H_0} = (e^{-Δτ H_0} M^T)^T`.
        """
        arr = np.asarray(arr)
        return np.ascontiguousarray(self.apply(arr.T, backward).T)

    def apply_energies(self, arr):
        """Applies the kinetic Hamiltonian :math:`H_0` to the columns of `arr`."""
        return self._transform(arr, self._energies)

    def kinetic_energy(self, rho):
        r"""Computes :math:`\mathrm{Re}\,\mathrm{tr}(H_0 ρ)` of a density matrix."""
        return float(np.trace(self.apply_energies(rho)).real)

    def matrix(self, backward=False):
        """Returns the dense `(V, V)` matrix of the free propagator."""
        return self.apply(np.eye(self.num_sites), backward)
