# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

r"""Incremental determinant ratios of single field flips.

Flipping the field `(t, x)` inside the first slice changes it by a rank-1 matrix,
:math:`S_0 \to S_0 + u v^T`. With :math:`\tilde{u} = S_0^{-1} u` the product of all
slices changes as :math:`M \to M (I + \tilde{u} v^T)`. After `L` accepted flips the
pending corrections are collected in the `V × L` matrix :math:`\tilde{U}` and the
`L × V` matrix :math:`V^T`, and

..math::
    \frac{\det(I + c M (I + \tilde{U} V^T))}{\det(I + c M)} = \det(I_L + V^T G \tilde{U})

with :math:`G = I - (I + c M)^{-1}`. A proposal only requires the bordered
`(L+1) × (L+1)` determinant including the new column and row.
"""

import math
import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Optional, Tuple
from .fields import FieldConfiguration
from .slices import SliceCache
from .stabilize import StabilizedFactorization, SyncResult, Outcome

__all__ = ["Proposal", "UpdateBatch", "DeterminantUpdateEngine"]

logger = logging.getLogger("svdqmc")


@dataclass
class Proposal:
    """A proposed flip of the field `(t, x)` and its effect on the weight.

    Attributes
    ----------
    x, t : int
        The site and the logical time of the flip.
    log_weight : float
        Log-weight of the pending batch including the flip, relative to the last
        rebuild of the factorization.
    sign : float
        Sign of the pending batch including the flip.
    log_ratio : float
        Log of the weight ratio of the proposal relative to the current state.
    u, v : np.ndarray
        The rank-1 correction `u v^T` of the first slice.
    column : np.ndarray
        The correction column :math:`S_0^{-1} u` of the batch.
    """

    x: int
    t: int
    log_weight: float
    sign: float
    log_ratio: float
    u: np.ndarray = field(repr=False, default=None)
    v: np.ndarray = field(repr=False, default=None)
    column: np.ndarray = field(repr=False, default=None)

    @property
    def location(self) -> Tuple[int, int]:
        return self.t, self.x


class UpdateBatch:
    """Pending rank-1 corrections that have not been folded into the factorization.

    Parameters
    ----------
    num_sites : int
        The number of lattice sites `V`.
    capacity : int
        The maximal number of pending corrections.
    """

    def __init__(self, num_sites: int, capacity: int):
        if capacity < 1:
            raise ValueError(f"Update batch capacity {capacity} is not positive!")
        self.capacity = int(capacity)
        self.columns = np.zeros((num_sites, self.capacity))
        self.rows = np.zeros((self.capacity, num_sites))
        self.size = 0
        self.log_weight = 0.0
        self.sign = 1.0

    def __len__(self):
        return self.size

    def is_full(self) -> bool:
        return self.size >= self.capacity

    def bordered(self, column: np.ndarray, row: np.ndarray):
        """Returns the pending columns and rows with the candidate appended."""
        n = self.size
        cols = np.empty((self.columns.shape[0], n + 1))
        cols[:, :n] = self.columns[:, :n]
        cols[:, n] = column
        rows = np.empty((n + 1, self.rows.shape[1]))
        rows[:n] = self.rows[:n]
        rows[n] = row
        return cols, rows

    def append(self, column, row, log_weight, sign):
        assert not self.is_full(), "Update batch is full!"
        self.columns[:, self.size] = column
        self.rows[self.size] = row
        self.size += 1
        self.log_weight = log_weight
        self.sign = sign

    def reset(self):
        self.size = 0
        self.log_weight = 0.0
        self.sign = 1.0


class DeterminantUpdateEngine:
    """Proposes single field flips and tracks the weight between full rebuilds.

    The engine owns the consistency between the field configuration, the cached
    slices and the stabilized factorization. Accepted flips are applied to the
    fields and patched into the first slice, the factorization is only rebuilt when
    the batch is folded.

    Parameters
    ----------
    fields : FieldConfiguration
        The auxiliary fields.
    cache : SliceCache
        The slice cache built from `fields`.
    factorization : StabilizedFactorization
        The factorization of the product of the cached slices.
    max_update_size : int, optional
        The capacity of the pending update batch.
    tolerance : float, optional
        Relative drift tolerance. A rebuild is flagged if
        `|rebuilt - tracked| > tolerance * max(1, |rebuilt|)`, so for log-weights
        larger than one the absolute tolerance grows with the log-weight.
    """

    def __init__(self, fields: FieldConfiguration, cache: SliceCache,
                 factorization: StabilizedFactorization, max_update_size: int = 16,
                 tolerance: float = 1e-6):
        self.fields = fields
        self.cache = cache
        self.accumulator = cache.accumulator
        self.factorization = factorization
        self.batch = UpdateBatch(fields.num_sites, max_update_size)
        self.tolerance = tolerance

        self.reference_log_weight = 0.0
        self.reference_sign = 1.0
        self.last_location: Optional[Tuple[int, int]] = None
        self._first_inv = None

    @property
    def window(self) -> Tuple[int, int]:
        """The time range `[start, end)` of the slice in which flips are proposed."""
        return self.cache.block_range(0)

    @property
    def log_weight(self) -> float:
        """The tracked log-weight of the current configuration."""
        return self.reference_log_weight + self.batch.log_weight

    @property
    def sign(self) -> float:
        """The tracked sign of the current configuration."""
        return self.reference_sign * self.batch.sign

    def is_full(self) -> bool:
        return self.batch.is_full()

    def adopt(self, result: SyncResult):
        """Replaces the tracked weight by a rebuilt one and clears the batch."""
        self.reference_log_weight = result.rebuilt_log_weight
        self.reference_sign = result.rebuilt_sign
        self.batch.reset()
        self._first_inv = self.accumulator.build_slice_backward(*self.window)

    def reset(self) -> SyncResult:
        """Rebuilds all slices and the factorization from the fields.

        The tracked weight is replaced by the rebuilt one without verification.
        """
        self.cache.rebuild()
        result = self.factorization.rebuild(self.cache)
        result.location = self.last_location
        self.adopt(result)
        return result

    def propose_flip(self, x: int, t: int) -> Proposal:
        """Computes the weight change of flipping the field `(t, x)`.

        Parameters
        ----------
        x : int
            The site index (wrapped modulo `V`).
        t : int
            The logical time inside the first slice window.

        Returns
        -------
        proposal : Proposal
        """
        start, end = self.window
        x = x % self.fields.num_sites
        self.last_location = (t, x)
        u, v = self.accumulator.site_vectors(x, t, start, end)
        column = np.dot(self._first_inv, u)
        cols, rows = self.batch.bordered(column, v)

        identity = np.eye(cols.shape[1])
        log_weight, sign = 0.0, 1.0
        for sigma in (+1, -1):
            green = self.factorization.green(sigma)
            mat = identity + green.sandwich(rows, cols)
            s, logdet = np.linalg.slogdet(mat)
            log_weight += logdet
            sign *= s
        sign = 1.0 if sign > 0 else -1.0
        log_ratio = log_weight - self.batch.log_weight
        return Proposal(x, t, log_weight, sign, log_ratio, u, v, column)

    def accept(self, proposal: Proposal) -> None:
        """Applies an accepted flip to the fields, the first slice and the batch."""
        stale = self.fields.flip(proposal.t, proposal.x)
        start, end = self.window
        assert start <= stale.start and stale.stop <= end
        self.cache.patch(0, proposal.u, proposal.v)
        self.batch.append(proposal.column, proposal.v, proposal.log_weight,
                          proposal.sign)

    def verify(self, result: SyncResult, log_weight: float, sign: float) -> SyncResult:
        """Compares a rebuilt weight with tracked values and sets the outcome."""
        result.tracked_log_weight = log_weight
        result.tracked_sign = sign
        result.location = self.last_location
        if result.outcome is Outcome.FATAL:
            return result
        scale = max(1.0, abs(result.rebuilt_log_weight))
        if not math.isfinite(result.rebuilt_log_weight):
            result.outcome = Outcome.WARNING
            result.message = "Rebuilt log-weight is not finite"
        elif abs(result.drift) > self.tolerance * scale:
            result.outcome = Outcome.WARNING
            result.message = f"Log-weight drifted by {result.drift:.3g}"
        elif result.rebuilt_sign != sign:
            result.outcome = Outcome.WARNING
            result.message = "Sign of the weight changed"
        return result

    def fold(self) -> SyncResult:
        """Folds the pending batch into the factorization.

        The factorization is rebuilt from the patched slices and compared with the
        tracked weight. On a mismatch all slices are rebuilt from the fields and the
        rebuilt values replace the tracked ones.
        """
        tracked_log, tracked_sign = self.log_weight, self.sign
        result = self.factorization.rebuild(self.cache)
        result = self.verify(result, tracked_log, tracked_sign)
        if result.outcome is Outcome.WARNING:
            logger.debug("Rebuilding all slices from the fields after drift")
            self.cache.rebuild()
            rebuilt = self.factorization.rebuild(self.cache)
            result.rebuilt_log_weight = rebuilt.rebuilt_log_weight
            result.rebuilt_sign = rebuilt.rebuilt_sign
            if rebuilt.outcome is Outcome.FATAL:
                result.outcome = Outcome.FATAL
                result.message = rebuilt.message
        self.adopt(result)
        return result

    def resynchronize(self, stale: range = None) -> SyncResult:
        """Rebuilds the stale slices and the factorization and verifies the weight.

        Parameters
        ----------
        stale : range, optional
            The logical time range made stale by mutations of the fields. All slices
            are rebuilt if `None`.
        """
        tracked_log, tracked_sign = self.log_weight, self.sign
        self.cache.invalidate(stale)
        self.cache.refresh()
        result = self.factorization.rebuild(self.cache)
        result = self.verify(result, tracked_log, tracked_sign)
        self.adopt(result)
        return result
