# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

"""Auxiliary (Hubbard-Stratonovich) field configuration on the space-time lattice."""

import math
import numpy as np
from typing import Iterable, Union

__all__ = ["FieldConfiguration", "field_amplitude"]


def field_amplitude(u: float, dt: float) -> float:
    r"""Computes the field amplitude :math:`A = \sqrt{e^{g Δτ} - 1}` with `g = -U`.

    Raises
    ------
    ValueError
        If the amplitude is not real or not smaller than one. Only attractive
        interactions `U <= 0` with a small enough time step are supported.
    """
    arg = math.expm1(-u * dt)
    if arg < 0:
        raise ValueError(f"Interaction U={u} gives an imaginary field amplitude, "
                         f"only U <= 0 is supported!")
    amp = math.sqrt(arg)
    if amp >= 1.0:
        raise ValueError(f"Field amplitude A={amp:.3f} >= 1, increase the number of "
                         f"time steps!")
    return amp


class FieldConfiguration:
    """The array of auxiliary fields `σ(t, i) = ±A` indexed by time slice and site.

    The logical time `t` is mapped to the row `(t + origin) % N` of the underlying
    array. Shifting the origin relabels all time slices in constant time. Every
    mutating method returns the range of logical times whose cached products are
    stale after the mutation.

    Parameters
    ----------
    num_times : int
        The number of imaginary time slices `N`.
    num_sites : int
        The number of lattice sites `V`.
    amplitude : float
        The magnitude `A` of the fields.
    """

    def __init__(self, num_times: int, num_sites: int, amplitude: float):
        if num_times <= 0:
            raise ValueError(f"Number of time slices {num_times} is not positive!")
        if num_sites <= 0:
            raise ValueError(f"Number of sites {num_sites} is not positive!")
        if not 0.0 <= amplitude < 1.0:
            raise ValueError(f"Field amplitude {amplitude} not in [0, 1)!")
        self.num_times = int(num_times)
        self.num_sites = int(num_sites)
        self.amplitude = float(amplitude)
        self.origin = 0
        self._fields = np.full((self.num_times, self.num_sites), self.amplitude)

    @property
    def shape(self):
        return self._fields.shape

    def row(self, t: int) -> int:
        """Returns the row of the underlying array of the logical time `t`."""
        return (t + self.origin) % self.num_times

    def initialize(self, rng: np.random.Generator, prob: float = 0.5) -> range:
        """Fills every entry with `+A` with probability `prob` and with `-A` otherwise.

        Parameters
        ----------
        rng : np.random.Generator
            The random generator of the simulation.
        prob : float, optional
            The marginal probability of a positive field. The default is a fair coin.
        """
        positive = rng.random(self._fields.shape) < prob
        self._fields[:, :] = np.where(positive, self.amplitude, -self.amplitude)
        return range(0, self.num_times)

    def diagonal(self, t: int) -> np.ndarray:
        """Returns the fields of the logical time slice `t` (a view)."""
        return self._fields[self.row(t)]

    def __getitem__(self, item):
        t, x = item
        return self._fields[self.row(t), x % self.num_sites]

    def flip(self, t: int, x: Union[int, Iterable[int]]) -> range:
        """Negates the field of one or several sites at the logical time `t`.

        Returns
        -------
        stale : range
            The logical time range `[t, t+1)` whose products are no longer valid.
        """
        t = t % self.num_times
        row = self._fields[self.row(t)]
        if np.ndim(x) == 0:
            x = int(x) % self.num_sites
            row[x] = -row[x]
        else:
            # Unique sites, a repeated site would be flipped back
            sites = np.unique(np.asarray(list(x), dtype=np.int64) % self.num_sites)
            row[sites] = -row[sites]
        return range(t, t + 1)

    def shift_origin(self, delta: int) -> range:
        """Moves the logical time origin by `delta` slices.

        Returns
        -------
        stale : range
            All logical times, or an empty range if the shift is a multiple of `N`.
        """
        delta = delta % self.num_times
        if delta == 0:
            return range(0, 0)
        self.origin = (self.origin + delta) % self.num_times
        return range(0, self.num_times)

    def logical(self) -> np.ndarray:
        """Returns a copy of the fields ordered by logical time."""
        return np.roll(self._fields, -self.origin, axis=0).copy()

    def load(self, fields: np.ndarray) -> range:
        """Replaces the configuration by an array in logical time order."""
        fields = np.asarray(fields, dtype=np.float64)
        if fields.shape != self._fields.shape:
            raise ValueError(f"Field array of shape {fields.shape} does not match "
                             f"{self._fields.shape}!")
        if not np.allclose(np.abs(fields), self.amplitude):
            raise ValueError(f"Field values are not +-{self.amplitude}!")
        self._fields[:, :] = fields
        self.origin = 0
        return range(0, self.num_times)

    def copy(self) -> "FieldConfiguration":
        other = FieldConfiguration(self.num_times, self.num_sites, self.amplitude)
        other._fields[:, :] = self._fields
        other.origin = self.origin
        return other

    def num_positive(self) -> int:
        """The number of fields with the value `+A`."""
        return int(np.count_nonzero(self._fields > 0))

    def log_det_bare(self) -> float:
        r"""Closed form of :math:`\sum_{t,i} \log(1 + σ(t, i))`.

        This is the logarithm of the determinant of the product of all interaction
        factors, the kinetic factors only contribute a constant.
        """
        npos = self.num_positive()
        nneg = self._fields.size - npos
        amp = self.amplitude
        return npos * math.log1p(amp) + nneg * math.log1p(-amp)

    def __eq__(self, other):
        if not isinstance(other, FieldConfiguration):
            return NotImplemented
        return np.array_equal(self.logical(), other.logical())

    def __repr__(self):
        return (f"{self.__class__.__name__}(N={self.num_times}, V={self.num_sites}, "
                f"A={self.amplitude:.4f}, origin={self.origin})")
