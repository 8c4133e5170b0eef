# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

"""Matrix decompositions and graded factorizations of long matrix products.

References
----------
.. [1] Z. Bai et al., "Stable solutions of linear systems involving long chain
       of matrix multiplications", Linear Algebra Appl. 435, 659-673 (2011)
"""

import numpy as np
from scipy import linalg as la

__all__ = [
    "mdot",
    "decompose_qrp",
    "reconstruct_qrp",
    "decompose_udt",
    "reconstruct_udt",
    "decompose_svd",
    "SVDFactorization",
    "UDTFactorization",
    "FACTORIZATIONS",
]


def mdot(*arrays):
    """Chains `np.dot` over two or more matrices, `mdot(a, b, c) = a @ b @ c`.

    A single sequence of matrices is accepted as well.
    """
    if len(arrays) == 1:
        arrays = arrays[0]
    out = arrays[0]
    for mat in arrays[1:]:
        out = np.dot(out, mat)
    return out


def decompose_qrp(a):
    """Column-pivoted QR decomposition :math:`A P^T = Q R` of a square matrix.

    Parameters
    ----------
    a : (N, N) np.ndarray
        The square matrix to factor.

    Returns
    -------
    q : (N, N) np.ndarray
        Orthogonal factor.
    r : (N, N) np.ndarray
        Upper triangular factor with non-increasing `|r_ii|`.
    jpvt : (N) np.ndarray
        Column indices with `A = (Q R)[:, jpvt]`.
    """
    assert a.shape[0] == a.shape[1]
    qr, piv, tau, _, info = la.lapack.dgeqp3(a)
    if info < 0:
        raise np.linalg.LinAlgError(f"DGEQP3: illegal value in argument {-info}")
    n = qr.shape[0]
    r = np.triu(qr[:n, :])
    # Householder reflectors below the diagonal of `qr` form Q
    q, _, info = la.lapack.dorgqr(qr, tau)
    # Inverting the (one-based) pivot permutation gives the column order of A
    return q, r, np.argsort(piv)


def reconstruct_qrp(q, r, jpvt):
    """Inverse of `decompose_qrp`."""
    return np.dot(q, r)[:, jpvt]


def decompose_udt(a):
    r"""Graded decomposition :math:`A = U D T` built on `decompose_qrp`.

    `U` is the orthogonal QR factor, `D` the absolute diagonal of `R` and
    :math:`T = D^{-1} R P`. Pivoting sorts `D` in decreasing order and keeps `T`
    well-conditioned, so all scales of `A` are carried by `D`.

    Returns
    -------
    u : (N, N) np.ndarray
    d : (N) np.ndarray
    t : (N, N) np.ndarray
    """
    q, r, jpvt = decompose_qrp(a)
    d = np.abs(np.diag(r))
    d[d == 0.0] = 1.0
    # Scale rows of R by elements of 1/D and apply column pivoting
    t = (r.T / d).T[:, jpvt]
    return q, d, t


def reconstruct_udt(u, d, t):
    """Inverse of `decompose_udt`."""
    return np.dot(u, (d * t.T).T)


def decompose_svd(a):
    """Singular value decomposition `A = U diag(S) V^T`.

    The divide and conquer driver occasionally fails to converge for strongly
    graded matrices, in that case the QR-iteration driver is used.
    """
    try:
        return la.svd(a, lapack_driver="gesdd", check_finite=False)
    except np.linalg.LinAlgError:
        return la.svd(a, lapack_driver="gesvd", check_finite=False)


def _sign_det(mat):
    sign, _ = np.linalg.slogdet(mat)
    return float(sign)


class SVDFactorization:
    r"""A matrix :math:`X = U \mathrm{diag}(S) V^T` stored in graded form.

    `U` and `V^T` are orthogonal, all scales are carried by the singular values
    `S`. The same attribute names are used by `UDTFactorization`, where the right
    factor is only well-conditioned.

    Parameters
    ----------
    u : (N, N) np.ndarray
        The left factor.
    s : (N, ) np.ndarray
        The non-negative scales.
    vt : (N, N) np.ndarray
        The right factor.
    """

    def __init__(self, u, s, vt):
        self.u = np.asarray(u, dtype=np.float64)
        self.s = np.asarray(s, dtype=np.float64)
        self.vt = np.asarray(vt, dtype=np.float64)

    @staticmethod
    def _decompose(a):
        return decompose_svd(a)

    @classmethod
    def identity(cls, n: int):
        return cls(np.eye(n), np.ones(n), np.eye(n))

    @classmethod
    def from_matrix(cls, a):
        u, s, vt = cls._decompose(np.asarray(a, dtype=np.float64))
        return cls(u, s, vt)

    @property
    def size(self):
        return len(self.s)

    def copy(self):
        return self.__class__(self.u.copy(), self.s.copy(), self.vt.copy())

    def apply_left(self, mat):
        """Multiplies `mat` from the left onto `U` without re-orthogonalizing."""
        self.u = np.dot(mat, self.u)
        return self

    def absorb(self):
        r"""Re-factors :math:`U \mathrm{diag}(S)` and moves its right factor into `V^T`.

        Has to be called after `apply_left` before the scales of the multiplied
        matrices exceed the machine precision.
        """
        u, s, w = self._decompose(self.u * self.s)
        self.u = u
        self.s = s
        self.vt = np.dot(w, self.vt)
        return self

    def add_identity(self, scale=1.0):
        r"""Replaces `X` by :math:`I + c X` in factorized form.

        ..math::
            I + c U S V^T = U (U^T V + c S) V^T
        """
        inner = np.dot(self.u.T, self._right_inverse()) + np.diag(scale * self.s)
        u, s, w = self._decompose(inner)
        self.u = np.dot(self.u, u)
        self.s = s
        self.vt = np.dot(w, self.vt)
        return self

    def _right_inverse(self):
        return self.vt.T

    def invert(self):
        """Replaces `X` by its inverse in place."""
        self.u, self.s, self.vt = self.vt.T.copy(), 1.0 / self.s, self.u.T.copy()
        return self

    def inverted(self):
        return self.copy().invert()

    def matrix(self):
        """Returns the dense matrix `X`."""
        return np.dot(self.u, (self.s * self.vt.T).T)

    def inverse(self):
        """Returns the dense matrix :math:`X^{-1}`."""
        return np.dot(self.vt.T, (self.u / self.s).T)

    def sandwich(self, left, right):
        r"""Computes `left @ X @ right` without forming `X`."""
        return mdot(left, self.u * self.s, self.vt, right)

    def log_abs_det(self):
        """Returns :math:`\\log|\\det X|` from the scales."""
        return float(np.sum(np.log(self.s)))

    def sign(self):
        """Returns the sign of :math:`\\det X`, always `+1.0` or `-1.0`."""
        sign = _sign_det(self.u) * _sign_det(self.vt)
        return 1.0 if sign >= 0 else -1.0

    def __repr__(self):
        return f"{self.__class__.__name__}(n={self.size})"


class UDTFactorization(SVDFactorization):
    r"""A matrix :math:`X = U D T` from column-pivoted QR decompositions.

    `U` is orthogonal, `D` positive diagonal and `T` well-conditioned. This is the
    cheaper alternative to the SVD used in ref [1]_.
    """

    @staticmethod
    def _decompose(a):
        return decompose_udt(a)

    def _right_inverse(self):
        return la.inv(self.vt)

    def invert(self):
        r"""Replaces `X` by its inverse in place.

        The graded matrix :math:`T^{-1} D^{-1}` is decomposed again, pivoting keeps
        the small and large columns apart.
        """
        graded = la.inv(self.vt) / self.s
        u, d, t = decompose_udt(graded)
        self.vt = np.dot(t, self.u.T)
        self.u = u
        self.s = d
        return self

    def inverse(self):
        return la.solve(self.vt, (self.u / self.s).T)

    def log_abs_det(self):
        # |det T| is one up to rounding for every factor T = D^{-1} R P
        return float(np.sum(np.log(self.s)) + np.linalg.slogdet(self.vt)[1])


FACTORIZATIONS = {
    "svd": SVDFactorization,
    "qr": UDTFactorization,
}
