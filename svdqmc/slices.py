# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

r"""Products of the time step operators over contiguous imaginary time ranges.

The time step operator of the slice `t` is
..math::
    B_t = e^{-Δτ H_0} D_t,    D_t = \mathrm{diag}((1 + σ_t) e^{-Δτ v})

for the default order ("interaction_first") or :math:`B_t = D_t e^{-Δτ H_0}` for
the order "kinetic_first". Here `v` is the staggered on-site potential. A slice is
the product :math:`B_{e-1} \cdots B_{s+1} B_s` of a time range `[s, e)`.

No stabilization is performed in this module, long products are handled by
`svdqmc.stabilize`.
"""

import numpy as np
from typing import Tuple
from .fields import FieldConfiguration
from .propagator import SpectralPropagator

__all__ = ["SliceAccumulator", "SliceCache", "INTERACTION_FIRST", "KINETIC_FIRST"]

INTERACTION_FIRST = "interaction_first"
KINETIC_FIRST = "kinetic_first"
ORDERS = (INTERACTION_FIRST, KINETIC_FIRST)


class SliceAccumulator:
    """Builds dense slices and rank-1 corrections from the current field configuration.

    Parameters
    ----------
    fields : FieldConfiguration
        The auxiliary field configuration. The accumulator keeps a reference and
        always uses the current values.
    propagator : SpectralPropagator
        The free propagator of the lattice.
    order : str, optional
        The order of the operators within one time step, either
        `"interaction_first"` (default) or `"kinetic_first"`.
    """

    def __init__(self, fields: FieldConfiguration, propagator: SpectralPropagator,
                 order: str = INTERACTION_FIRST):
        if order not in ORDERS:
            raise ValueError(f"Unknown operator order '{order}'! Valid: {ORDERS}")
        if fields.num_sites != propagator.num_sites:
            raise ValueError("Number of sites of fields and propagator do not match!")
        self.fields = fields
        self.propagator = propagator
        self.order = order
        potential = propagator.geometry.potential
        self._pot_f = np.exp(-propagator.dt * potential)
        self._pot_b = np.exp(+propagator.dt * potential)
        # (1 + A)(1 - A): inverse of (1 + σ) is (1 - σ) / (1 - A²)
        self._norm_b = 1.0 - fields.amplitude ** 2

    @property
    def num_sites(self):
        return self.fields.num_sites

    @property
    def num_times(self):
        return self.fields.num_times

    def interaction(self, t: int) -> np.ndarray:
        """The diagonal of the interaction factor `D_t`."""
        return (1.0 + self.fields.diagonal(t)) * self._pot_f

    def interaction_inv(self, t: int) -> np.ndarray:
        """The diagonal of the inverse interaction factor `D_t^{-1}`."""
        return (1.0 - self.fields.diagonal(t)) * self._pot_b / self._norm_b

    def step(self, mat: np.ndarray, t: int) -> np.ndarray:
        """Computes `B_t @ mat` for a vector or matrix."""
        d = self.interaction(t)
        if self.order == INTERACTION_FIRST:
            return self.propagator.apply((d * mat.T).T)
        return (d * self.propagator.apply(mat).T).T

    def step_transpose(self, mat: np.ndarray, t: int) -> np.ndarray:
        """Computes `B_t^T @ mat` for a vector or matrix."""
        d = self.interaction(t)
        if self.order == INTERACTION_FIRST:
            return (d * self.propagator.apply(mat).T).T
        return self.propagator.apply((d * mat.T).T)

    def _clamp(self, start, end):
        end = self.num_times if end is None or end < 0 else min(end, self.num_times)
        start = max(0, start)
        return start, end

    def build_slice(self, start: int = 0, end: int = None) -> np.ndarray:
        """Computes the forward product `B_{end-1} ... B_{start}`.

        Parameters
        ----------
        start : int, optional
            The first logical time slice of the product.
        end : int, optional
            The end (exclusive) of the time range. Clamped to the number of slices.

        Returns
        -------
        slice : (V, V) np.ndarray
        """
        start, end = self._clamp(start, end)
        mat = np.eye(self.num_sites)
        for t in range(start, end):
            mat = self.step(mat, t)
        return mat

    def build_slice_backward(self, start: int = 0, end: int = None) -> np.ndarray:
        """Computes the inverse product `B_{start}^{-1} ... B_{end-1}^{-1}`.

        The inverse of the forward slice of the same range is accumulated from the
        right with negated fields and the backward propagator.
        """
        start, end = self._clamp(start, end)
        mat = np.eye(self.num_sites)
        for t in range(start, end):
            dinv = self.interaction_inv(t)
            if self.order == INTERACTION_FIRST:
                mat = self.propagator.apply_rows(mat * dinv, backward=True)
            else:
                mat = self.propagator.apply_rows(mat, backward=True) * dinv
        return mat

    def site_vectors(self, x: int, t: int, start: int, end: int) -> Tuple[np.ndarray,
                                                                          np.ndarray]:
        r"""Computes the rank-1 change of a slice caused by flipping the field `(t, x)`.

        Flipping changes the interaction factor by :math:`ΔD_t = -2 σ(t, x) e^{-Δτ v_x}
        e_x e_x^T`, the slice `[start, end)` containing `t` changes by

        ..math::
            ΔS = (B_{e-1} \cdots B_{t+1}) ΔB_t (B_{t-1} \cdots B_s) = u v^T

        Parameters
        ----------
        x : int
            The site index of the flip.
        t : int
            The logical time of the flip, `start <= t < end`.
        start, end : int
            The time range of the slice containing `t`.

        Returns
        -------
        u : (V, ) np.ndarray
            The column vector of the correction.
        v : (V, ) np.ndarray
            The row vector of the correction.
        """
        if not start <= t < end:
            raise ValueError(f"Time {t} not in slice range [{start}, {end})!")
        x = x % self.num_sites
        unit = np.zeros(self.num_sites)
        unit[x] = 1.0

        vec = unit
        if self.order == INTERACTION_FIRST:
            vec = self.propagator.apply(vec)
        for i in range(t + 1, end):
            vec = self.step(vec, i)
        coupling = -2.0 * self.fields.diagonal(t)[x] * self._pot_f[x]
        u = coupling * vec

        vec = unit
        if self.order == KINETIC_FIRST:
            vec = self.propagator.apply(vec)
        for i in range(t - 1, start - 1, -1):
            vec = self.step_transpose(vec, i)
        return u, vec


class SliceCache:
    """Cache of the slices of consecutive blocks of `block_size` time steps.

    Each cached slice carries a validity flag. A valid slice equals the product of
    its time range for the current field configuration.

    Parameters
    ----------
    accumulator : SliceAccumulator
        The accumulator used to build the slices.
    block_size : int
        The number of time steps per slice (`mslices`). Values smaller than one or
        larger than `N` use a single slice.
    """

    def __init__(self, accumulator: SliceAccumulator, block_size: int):
        num_times = accumulator.num_times
        if block_size < 1 or block_size > num_times:
            block_size = num_times
        self.accumulator = accumulator
        self.block_size = int(block_size)
        self.num_blocks = -(-num_times // self.block_size)
        num_sites = accumulator.num_sites
        self._slices = [np.eye(num_sites) for _ in range(self.num_blocks)]
        self._valid = [False] * self.num_blocks

    def __len__(self):
        return self.num_blocks

    def __getitem__(self, block: int) -> np.ndarray:
        assert self._valid[block], f"Slice {block} is stale!"
        return self._slices[block]

    def __iter__(self):
        for block in range(self.num_blocks):
            yield self[block]

    def block_of(self, t: int) -> int:
        """Returns the block index of the logical time `t`."""
        return (t % self.accumulator.num_times) // self.block_size

    def block_range(self, block: int) -> Tuple[int, int]:
        """Returns the time range `[start, end)` of a block."""
        start = block * self.block_size
        end = min(start + self.block_size, self.accumulator.num_times)
        return start, end

    def is_valid(self, block: int) -> bool:
        return self._valid[block]

    def all_valid(self) -> bool:
        return all(self._valid)

    def invalidate(self, stale: range = None) -> None:
        """Marks all blocks overlapping the time range as stale (all if `None`)."""
        if stale is None:
            self._valid = [False] * self.num_blocks
            return
        if len(stale) == 0:
            return
        first = stale.start // self.block_size
        last = (stale.stop - 1) // self.block_size
        for block in range(first, min(last, self.num_blocks - 1) + 1):
            self._valid[block] = False

    def refresh(self) -> int:
        """Rebuilds all stale slices and returns the number of rebuilt slices."""
        count = 0
        for block in range(self.num_blocks):
            if not self._valid[block]:
                self._slices[block] = self.accumulator.build_slice(
                    *self.block_range(block)
                )
                self._valid[block] = True
                count += 1
        return count

    def rebuild(self) -> None:
        """Rebuilds every slice from the field configuration."""
        self.invalidate()
        self.refresh()

    def patch(self, block: int, u: np.ndarray, v: np.ndarray) -> None:
        """Adds the rank-1 correction `u v^T` of an accepted flip to a valid slice."""
        assert self._valid[block], f"Patching stale slice {block}!"
        self._slices[block] += np.outer(u, v)

    def snapshot(self):
        """Copies the slices and validity flags (restored with `restore`)."""
        return [s.copy() for s in self._slices], list(self._valid)

    def restore(self, snapshot) -> None:
        slices, valid = snapshot
        self._slices = [s.copy() for s in slices]
        self._valid = list(valid)
