# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

"""Geometry of periodic hyper-cubic lattices and their tight-binding spectrum."""

import numpy as np
from typing import Union, Sequence, Tuple

__all__ = ["LatticeGeometry", "hubbard_hypercube"]

MAX_DIM = 3


def _normalize_shape(shape) -> Tuple[int, int, int]:
    if isinstance(shape, (int, np.integer)):
        shape = (int(shape), )
    try:
        shape = tuple(shape)
    except TypeError:
        raise ValueError(f"Malformed lattice shape {shape!r}!")
    if not 0 < len(shape) <= MAX_DIM:
        raise ValueError(f"Lattice shape {shape} must have between 1 and {MAX_DIM} "
                         f"extents!")
    extents = list()
    for n in shape:
        if isinstance(n, bool) or not isinstance(n, (int, np.integer)):
            raise ValueError(f"Lattice extent {n!r} is not an integer!")
        if n < 1:
            raise ValueError(f"Lattice extent {n} of shape {shape} is not positive!")
        extents.append(int(n))
    extents += [1] * (MAX_DIM - len(extents))
    return extents[0], extents[1], extents[2]


class LatticeGeometry:
    r"""Immutable geometry of a periodic `Lx × Ly × Lz` lattice.

    Sites are labeled row-major, the index of the site at `(x, y, z)` is
    `(x * Ly + y) * Lz + z`. This is the memory order of `numpy` and allows to
    reshape site-indexed arrays to the lattice grid for the spectral transform.

    Parameters
    ----------
    shape : int or sequence of int
        The extents of the lattice. Up to three extents are supported, missing
        extents are set to `1`.
    hopping : float or sequence of float, optional
        The nearest neighbour hopping `t_d` along each axis. A scalar is used for
        all axes. The hopping along axes with an extent smaller than two is ignored.
    staggered_field : float, optional
        The strength `h` of the staggered potential, `+h` on sites with even and
        `-h` on sites with odd coordinate sum.

    Notes
    -----
    The kinetic energies of the plane waves are
    .. math::
        ε(k) = -2 Σ_d t_d \cos(2π k_d / L_d)
    """

    def __init__(self, shape: Union[int, Sequence[int]],
                 hopping: Union[float, Sequence[float]] = 1.0,
                 staggered_field: float = 0.0):
        lx, ly, lz = _normalize_shape(shape)
        if np.ndim(hopping) == 0:
            hopping = [float(hopping)] * MAX_DIM
        hopping = [float(t) for t in hopping]
        hopping += [0.0] * (MAX_DIM - len(hopping))
        if len(hopping) != MAX_DIM:
            raise ValueError(f"Expected at most {MAX_DIM} hopping amplitudes, "
                             f"got {len(hopping)}!")
        extents = (lx, ly, lz)
        # Axes without a neighbour do not hop
        hopping = tuple(t if n > 1 else 0.0 for t, n in zip(hopping, extents))

        self._extents = extents
        self._hopping = hopping
        self._staggered_field = float(staggered_field)
        self._num_sites = lx * ly * lz
        if self._num_sites <= 0:
            raise ValueError(f"Lattice volume {self._num_sites} is not positive!")

        coords = np.indices(extents).reshape(MAX_DIM, -1).T
        self._coords = coords
        self._staggering = np.where(coords.sum(axis=1) % 2, -1.0, 1.0)
        self._energies = self._compute_energies()
        if not np.all(np.isfinite(self._energies)):
            raise ValueError("Kinetic energies are not finite!")
        self._neighbors = self._compute_neighbors()

        for arr in (self._coords, self._staggering, self._energies, self._neighbors):
            arr.setflags(write=False)

    def _compute_energies(self):
        energies = np.zeros(self._extents, dtype=np.float64)
        for axis, (n, t) in enumerate(zip(self._extents, self._hopping)):
            k = 2.0 * np.pi * np.arange(n) / n
            shape = [1] * MAX_DIM
            shape[axis] = n
            energies = energies - 2.0 * t * np.cos(k).reshape(shape)
        return energies.reshape(-1)

    def _compute_neighbors(self):
        nbrs = np.zeros((self._num_sites, 4), dtype=np.int64)
        sites = np.arange(self._num_sites)
        nbrs[:, 0] = self.shift(sites, 0, +1)
        nbrs[:, 1] = self.shift(sites, 0, -1)
        nbrs[:, 2] = self.shift(sites, 1, +1)
        nbrs[:, 3] = self.shift(sites, 1, -1)
        return nbrs

    @property
    def extents(self) -> Tuple[int, int, int]:
        """The extents `(Lx, Ly, Lz)` of the lattice."""
        return self._extents

    @property
    def dim(self) -> int:
        """The number of axes with an extent larger than one."""
        return sum(1 for n in self._extents if n > 1)

    @property
    def num_sites(self) -> int:
        """The number of lattice sites `V`."""
        return self._num_sites

    @property
    def hopping(self) -> Tuple[float, float, float]:
        return self._hopping

    @property
    def staggered_field(self) -> float:
        return self._staggered_field

    @property
    def energies(self) -> np.ndarray:
        """The kinetic energy `ε(k)` of each plane wave, in row-major mode order."""
        return self._energies

    @property
    def staggering(self) -> np.ndarray:
        """The sublattice signs `(-1)^(x+y+z)` of the sites."""
        return self._staggering

    @property
    def potential(self) -> np.ndarray:
        """The on-site staggered potential `h (-1)^(x+y+z)`."""
        return self._staggered_field * self._staggering

    @property
    def neighbors(self) -> np.ndarray:
        """The `(V, 4)` table of the `+x, -x, +y, -y` neighbours of every site."""
        return self._neighbors

    def site(self, x: int, y: int = 0, z: int = 0) -> int:
        """Returns the index of the site at the (periodically wrapped) position."""
        lx, ly, lz = self._extents
        return ((x % lx) * ly + (y % ly)) * lz + (z % lz)

    def position(self, index: int) -> Tuple[int, int, int]:
        """Returns the position `(x, y, z)` of a site index."""
        return tuple(int(c) for c in self._coords[index % self._num_sites])

    def shift(self, index, axis: int, k: int):
        """Shifts site indices by `k` lattice spacings along an axis (periodic).

        Parameters
        ----------
        index : int or np.ndarray
            The site index or indices.
        axis : int
            The axis `0`, `1` or `2` of the translation.
        k : int
            The number of lattice spacings to translate.
        """
        coords = np.array(self._coords[np.asarray(index) % self._num_sites])
        coords[..., axis] = (coords[..., axis] + k) % self._extents[axis]
        lx, ly, lz = self._extents
        shifted = (coords[..., 0] * ly + coords[..., 1]) * lz + coords[..., 2]
        return int(shifted) if np.ndim(shifted) == 0 else shifted

    def hamiltonian_kinetic(self) -> np.ndarray:
        r"""Builds the real space tight-binding Hamiltonian of the lattice.

        Only used for cross-checks, the propagation itself is performed in
        momentum space.

        Returns
        -------
        ham : (V, V) np.ndarray
            The Hamiltonian matrix including the staggered potential.
        """
        ham = np.diag(self.potential).astype(np.float64)
        sites = np.arange(self._num_sites)
        for axis, t in enumerate(self._hopping):
            if not t:
                continue
            nbrs = self.shift(sites, axis, +1)
            np.add.at(ham, (sites, nbrs), -t)
            np.add.at(ham, (nbrs, sites), -t)
        return ham

    def __repr__(self):
        return (f"{self.__class__.__name__}(extents={self._extents}, "
                f"hopping={self._hopping}, h={self._staggered_field})")


def hubbard_hypercube(shape, hop=1.0, h=0.0):
    """Construct a periodic `d`-dimensional lattice geometry.

    Parameters
    ----------
    shape : array_like or int
        The shape of the lattice. If a sequence is passed the length determines
        the dimensionality of the lattice. In case of an integer a 1D lattice
        is constructed.
    hop : float or sequence of float, optional
        The absolut value of the hopping parameter `t`. The default value is `1.0`.
        Note that the Hamiltonian is built using the negative of the hopping parameter.
    h : float, optional
        The staggered on-site potential. The default is `0`.

    Returns
    -------
    geometry : LatticeGeometry
    """
    return LatticeGeometry(shape, hop, h)
