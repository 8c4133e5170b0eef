# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

r"""Numerically stabilized factorization of the imaginary time flow map.

The Monte Carlo weight of a field configuration is
..math::
    W = \det(I + c_↑ M) \det(I + c_↓ M),    M = B_{N-1} \cdots B_1 B_0

with :math:`c_{↑↓} = e^{β(μ ± B/2)}`. Multiplying the slices of `M` directly loses
all significant digits of the small scales after a few slices. The product is
therefore accumulated in graded form :math:`U \mathrm{diag}(S) V^T`, re-factoring
every `msvd` slices.
"""

import enum
import math
import logging
import numpy as np
from scipy import linalg as la
from dataclasses import dataclass
from typing import Optional, Tuple
from .linalg import FACTORIZATIONS

__all__ = ["Outcome", "SyncResult", "StabilizedFactorization", "PHASE_TOLERANCE"]

logger = logging.getLogger("svdqmc")

# Minimal |cos(φ)| of the phase φ of the total weight
PHASE_TOLERANCE = 0.99


class Outcome(enum.Enum):
    OK = "ok"
    WARNING = "warning"
    FATAL = "fatal"


@dataclass
class SyncResult:
    """Result of a rebuild of the factorization, compared to the tracked weight.

    Attributes
    ----------
    outcome : Outcome
        `OK`, `WARNING` on numerical drift or `FATAL` if the weight is not real.
    tracked_log_weight : float
        The log-weight tracked by the incremental updates.
    rebuilt_log_weight : float
        The log-weight of the rebuilt factorization.
    tracked_sign, rebuilt_sign : float
        The tracked and the rebuilt sign of the weight.
    phase : float
        The phase of the weight computed from the eigenvalues of `M`.
    location : tuple of int, optional
        The `(t, x)` location of the last proposed flip.
    message : str
        A description of the outcome.
    """

    outcome: Outcome
    tracked_log_weight: float = math.nan
    rebuilt_log_weight: float = math.nan
    tracked_sign: float = 1.0
    rebuilt_sign: float = 1.0
    phase: float = 0.0
    location: Optional[Tuple[int, int]] = None
    message: str = ""

    @property
    def ok(self):
        return self.outcome is Outcome.OK

    @property
    def drift(self):
        return self.rebuilt_log_weight - self.tracked_log_weight

    def __str__(self):
        return (f"{self.outcome.name}: {self.message} (location={self.location}, "
                f"tracked={self.tracked_log_weight:.8g}, "
                f"rebuilt={self.rebuilt_log_weight:.8g}, "
                f"signs={self.tracked_sign:+.0f}/{self.rebuilt_sign:+.0f})")


class StabilizedFactorization:
    r"""Graded factorizations of `M` and of the two species matrices.

    After `rebuild` the following factorizations are available:

    - `base`: :math:`M`
    - `up`, `dn`: :math:`I + c_σ M`
    - `green_up`, `green_dn`: :math:`I - (I + c_σ M)^{-1}`, derived from the
      species factorizations and used by the bordered determinant of the
      rank-1 updates.

    Parameters
    ----------
    num_sites : int
        The matrix dimension `V`.
    beta : float
        The inverse temperature `β`.
    mu : float, optional
        The chemical potential `μ`.
    field : float, optional
        The magnetic field `B`.
    msvd : int, optional
        The number of slices multiplied before re-factoring the product.
    method : str, optional
        The decomposition, `"svd"` (default) or `"qr"` (pivoted QR / UDT).
    check_phase : bool, optional
        If `True` the phase of the weight is checked after every rebuild.
    """

    def __init__(self, num_sites, beta, mu=0.0, field=0.0, msvd=1, method="svd",
                 check_phase=True):
        if method not in FACTORIZATIONS:
            raise ValueError(f"Unknown stabilization '{method}'! "
                             f"Valid: {list(FACTORIZATIONS)}")
        self.num_sites = int(num_sites)
        self.beta = float(beta)
        self.mu = float(mu)
        self.field = float(field)
        self.msvd = max(1, int(msvd))
        self.method = method
        self.check_phase = check_phase
        self.factory = FACTORIZATIONS[method]

        self.base = self.factory.identity(self.num_sites)
        self.up = None
        self.dn = None
        self.green_up = None
        self.green_dn = None
        self.phase = 0.0
        self._built = False
        self._inverted = False

    @property
    def scale_up(self):
        """The fugacity :math:`c_↑ = e^{+βB/2 + βμ}` of the spin-up species."""
        return math.exp(+0.5 * self.beta * self.field + self.beta * self.mu)

    @property
    def scale_dn(self):
        """The fugacity :math:`c_↓ = e^{-βB/2 + βμ}` of the spin-down species."""
        return math.exp(-0.5 * self.beta * self.field + self.beta * self.mu)

    @property
    def built(self):
        return self._built

    def rebuild(self, slices) -> SyncResult:
        """Factorizes the product of the slices and derives the species matrices.

        Parameters
        ----------
        slices : SliceCache or sequence of np.ndarray
            The slices :math:`S_0, S_1, \\dots` in time order. A `SliceCache` must not
            contain stale slices.

        Returns
        -------
        result : SyncResult
            `OK`, or `FATAL` if the phase check failed. The tracked values of the
            result are not set.
        """
        if hasattr(slices, "all_valid"):
            assert slices.all_valid(), "Rebuilding from stale slices!"
        slices = list(slices)
        fact = self.factory.identity(self.num_sites)
        last = len(slices) - 1
        for i, mat in enumerate(slices):
            fact.apply_left(mat)
            if i % self.msvd == 0 or i == last:
                fact.absorb()
        self.base = fact
        self._derive()
        self._built = True
        self._inverted = False

        result = SyncResult(Outcome.OK, rebuilt_log_weight=self.probability(),
                            rebuilt_sign=self.sign())
        if self.check_phase:
            self.phase = self.eigen_phase()
            result.phase = self.phase
            if abs(math.cos(self.phase)) < PHASE_TOLERANCE:
                result.outcome = Outcome.FATAL
                result.message = (f"Weight is not real, cos(phase)="
                                  f"{math.cos(self.phase):.4f}. Increase the "
                                  f"stabilization granularity!")
        return result

    def _derive(self):
        self.up = self.base.copy().add_identity(self.scale_up)
        self.dn = self.base.copy().add_identity(self.scale_dn)
        # I - (I + cM)^{-1} from the species, inverting M itself loses the O(1) part
        eye = np.eye(self.num_sites)
        self.green_up = self.factory.from_matrix(eye - self.up.inverse())
        self.green_dn = self.factory.from_matrix(eye - self.dn.inverse())

    def _assert_built(self, upright=False):
        assert self._built, "Factorization has not been built!"
        if upright:
            assert not self._inverted, "Factorization is inverted!"

    def probability(self) -> float:
        r"""Returns the log-weight :math:`\log|\det(I+c_↑M)| + \log|\det(I+c_↓M)|`."""
        self._assert_built(upright=True)
        return self.up.log_abs_det() + self.dn.log_abs_det()

    def sign(self) -> float:
        r"""Returns the sign of the weight, :math:`\mathrm{sgn}\det(U_↑ V^T_↑ U_↓ V^T_↓)`."""
        self._assert_built(upright=True)
        sign = self.up.sign() * self.dn.sign()
        return 1.0 if sign > 0 else -1.0

    @property
    def inverted(self):
        return self._inverted

    def invert(self):
        """Replaces `base`, `up` and `dn` by the factorizations of their inverses.

        While inverted, `base` holds :math:`M^{-1}` and `up`, `dn` hold
        :math:`(I + c_σ M)^{-1}`. Calling the method twice restores the original
        factorizations. The Green factorizations are left untouched, they are only
        accessible while upright.
        """
        self._assert_built()
        for fact in (self.base, self.up, self.dn):
            fact.invert()
        self._inverted = not self._inverted
        return self

    def species(self, sigma: int):
        """Returns the factorization of :math:`I + c_σ M` for `σ = ±1`."""
        self._assert_built(upright=True)
        return self.up if sigma > 0 else self.dn

    def green(self, sigma: int):
        """Returns the factorization of :math:`I - (I + c_σ M)^{-1}` for `σ = ±1`."""
        self._assert_built(upright=True)
        return self.green_up if sigma > 0 else self.green_dn

    def eigen_log_weight(self) -> complex:
        r"""Computes the complex log-weight from the eigenvalues `λ` of `M`.

        ..math::
            \log W = \sum_λ \log(1 + c_↑ λ) + \log(1 + c_↓ λ)

        The eigenvalues of :math:`U S V^T` are those of the graded matrix
        :math:`S V^T U`. This is an independent route to the log-weight, its accuracy
        degrades at low temperatures.
        """
        self._assert_built(upright=True)
        base = self.base
        graded = (base.s * np.dot(base.vt, base.u).T).T
        eigvals = la.eigvals(graded).astype(np.complex128)
        log_w = np.sum(np.log(1.0 + self.scale_up * eigvals))
        log_w += np.sum(np.log(1.0 + self.scale_dn * eigvals))
        return complex(log_w)

    def eigen_phase(self) -> float:
        """Returns the phase of the weight computed by `eigen_log_weight`."""
        log_w = self.eigen_log_weight()
        diff = log_w.real - self.probability()
        if abs(diff) > 1e-6 * max(1.0, abs(log_w.real)):
            # Both routes are kept independent, the bordered determinant is used
            logger.debug("Eigenvalue log-weight differs from SVD log-weight by %.3g",
                         diff)
        return log_w.imag

    def load(self, other: "StabilizedFactorization"):
        """Takes over the factorizations of another instance with the same model."""
        self.base = other.base
        self.up = other.up
        self.dn = other.dn
        self.green_up = other.green_up
        self.green_dn = other.green_dn
        self.phase = other.phase
        self._built = other._built
        self._inverted = other._inverted
        return self

    def copy(self):
        other = StabilizedFactorization(self.num_sites, self.beta, self.mu, self.field,
                                        self.msvd, self.method, self.check_phase)
        other.base = self.base.copy()
        if self._built:
            other.up = self.up.copy()
            other.dn = self.dn.copy()
            other.green_up = self.green_up.copy()
            other.green_dn = self.green_dn.copy()
        other.phase = self.phase
        other._built = self._built
        other._inverted = self._inverted
        return other
