# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

"""Main Metropolis sampler of the auxiliary field configurations."""

import enum
import time
import logging
import numpy as np
from tqdm import tqdm
from typing import Optional
from .lattice import LatticeGeometry
from .propagator import SpectralPropagator
from .fields import FieldConfiguration, field_amplitude
from .slices import SliceAccumulator, SliceCache
from .stabilize import StabilizedFactorization, SyncResult, Outcome
from .updates import DeterminantUpdateEngine, Proposal
from .observables import ObservableSample, ObservableSummary, extract_observables
from .checkpoint import Checkpoint, hash_params
from .params import Parameters, check_timestep

__all__ = ["ConfigurationError", "SamplerState", "MetropolisSampler", "run_dqmc",
           "log_results"]

logger = logging.getLogger("svdqmc")


class ConfigurationError(Exception):
    """Raised if the weight of a configuration is not real.

    This signals that the stabilization is too coarse for the parameters of the
    simulation. The `SyncResult` with the diagnostics is stored in `result`.
    """

    def __init__(self, result: SyncResult):
        self.result = result
        super().__init__(str(result))


class SamplerState(enum.Enum):
    IDLE = "idle"
    PROPOSAL_PENDING = "proposal pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RESYNCHRONIZING = "resynchronizing"


class MetropolisSampler:
    """Metropolis sampler of the auxiliary field configurations.

    Parameters
    ----------
    p : Parameters
        The simulation parameters.
    progress : bool, optional
        If `True` a progressbar is shown for the warmup and measurement loops.
    """

    def __init__(self, p: Parameters, progress=False):
        self.params = p
        self.progress = progress
        self.rng = np.random.default_rng(p.seed)
        self.status = ""
        self.it = 0

        self.geometry = LatticeGeometry(p.shape, p.hopping, p.h)
        num_sites = self.geometry.num_sites
        check_timestep(p)
        amplitude = field_amplitude(p.u, p.dt)
        logger.debug("Field amplitude A=%.6f", amplitude)

        self.propagator = SpectralPropagator(self.geometry, p.dt)
        self.fields = FieldConfiguration(p.num_times, num_sites, amplitude)
        self.accumulator = SliceAccumulator(self.fields, self.propagator, p.order)
        self.cache = SliceCache(self.accumulator, p.slices)
        self.factorization = StabilizedFactorization(num_sites, p.beta, p.mu, p.b,
                                                     p.svd, p.stabilization)
        self.engine = DeterminantUpdateEngine(self.fields, self.cache,
                                              self.factorization, p.max_update_size,
                                              p.tolerance)

        self.state = SamplerState.IDLE
        self.plog = 0.0
        self.psign = 1.0
        self.last_result: Optional[SyncResult] = None
        self.summary = ObservableSummary()
        self.acceptance = list()
        self.sweeps = 0

        self.fields.initialize(self.rng, p.init_prob)
        self._handle(self.engine.reset())

    @property
    def num_sites(self):
        return self.geometry.num_sites

    @property
    def num_times(self):
        return self.fields.num_times

    @property
    def flips_per_update(self):
        """The number of proposals of a sweep, one per field of the window by default."""
        if self.params.flips_per_update > 0:
            return self.params.flips_per_update
        start, end = self.engine.window
        return self.num_sites * (end - start)

    @property
    def full_flips(self):
        """The number of fields flipped in a full update, 10% of all by default."""
        if self.params.full_flips > 0:
            return self.params.full_flips
        return max(1, int(0.1 * self.num_sites * self.num_times))

    def _handle(self, result: SyncResult) -> SyncResult:
        self.last_result = result
        if result.outcome is Outcome.FATAL:
            logger.error("Fatal configuration: %s", result)
            raise ConfigurationError(result)
        if result.outcome is Outcome.WARNING:
            logger.warning("Resynchronization: %s", result)
        self.plog = self.engine.log_weight
        self.psign = self.engine.sign
        return result

    def log_weight(self):
        """The tracked log-weight including pending updates."""
        return self.engine.log_weight

    def sign(self):
        return self.engine.sign

    def propose(self) -> Proposal:
        """Proposes a flip of a random field in the update window."""
        self.state = SamplerState.PROPOSAL_PENDING
        start, end = self.engine.window
        x = int(self.rng.integers(0, self.num_sites))
        t = int(self.rng.integers(start, end))
        return self.engine.propose_flip(x, t)

    def metropolis(self) -> bool:
        """Performs a single Metropolis step of the rank-1 update scheme.

        The proposal is accepted iff `-Exp(1) < log_ratio`, which is equivalent to
        accepting with probability `min(1, exp(log_ratio))`.
        """
        proposal = self.propose()
        accepted = -self.rng.exponential() < proposal.log_ratio
        if accepted:
            self.engine.accept(proposal)
            self.state = SamplerState.ACCEPTED
            if self.engine.is_full():
                self.fold()
        else:
            self.state = SamplerState.REJECTED
        self.state = SamplerState.IDLE
        return accepted

    def fold(self) -> SyncResult:
        """Folds the pending updates into the factorization."""
        self.state = SamplerState.RESYNCHRONIZING
        result = self._handle(self.engine.fold())
        self.state = SamplerState.IDLE
        return result

    def resynchronize(self, stale: range = None) -> SyncResult:
        """Rebuilds slices and factorization and verifies the tracked weight."""
        self.state = SamplerState.RESYNCHRONIZING
        result = self._handle(self.engine.resynchronize(stale))
        self.state = SamplerState.IDLE
        return result

    def shift_time(self) -> SyncResult:
        """Moves the time origin to a random slice and resynchronizes.

        The weight is invariant under a cyclic relabeling of the time slices, the
        shift changes which fields are in the update window.
        """
        delta = int(self.rng.integers(0, self.num_times))
        stale = self.fields.shift_origin(delta)
        # An empty shift still rebuilds the patched first slice
        return self.resynchronize(None if len(stale) == 0 else stale)

    def full_update(self, num_flips: int = 0) -> bool:
        """Flips several distinct fields and re-evaluates the weight from scratch.

        Parameters
        ----------
        num_flips : int, optional
            The number of distinct space-time fields to flip. By default 10% of all
            fields are flipped.

        Returns
        -------
        accepted : bool
        """
        if self.engine.batch.size:
            self.fold()
        num_flips = num_flips or self.full_flips
        total = self.num_sites * self.num_times
        num_flips = min(num_flips, total)
        self.state = SamplerState.PROPOSAL_PENDING
        indices = self.rng.choice(total, size=num_flips, replace=False)
        times, sites = np.divmod(indices, self.num_sites)

        snapshot = self.cache.snapshot()
        previous = self.factorization.copy()

        def flip_all():
            for t in np.unique(times):
                self.cache.invalidate(self.fields.flip(int(t), sites[times == t]))

        flip_all()
        self.cache.refresh()
        self.engine.last_location = (int(times[-1]), int(sites[-1]))
        result = self.factorization.rebuild(self.cache)
        result.location = self.engine.last_location
        if result.outcome is Outcome.FATAL:
            flip_all()
            self.cache.restore(snapshot)
            self.factorization.load(previous)
            self._handle(result)

        log_ratio = result.rebuilt_log_weight - self.plog
        accepted = -self.rng.exponential() < log_ratio
        if accepted:
            self.state = SamplerState.ACCEPTED
            self.engine.adopt(result)
            self._handle(result)
        else:
            self.state = SamplerState.REJECTED
            flip_all()
            self.cache.restore(snapshot)
            self.factorization.load(previous)
        self.state = SamplerState.IDLE
        return accepted

    def sweep(self) -> float:
        """Performs one sweep and returns the acceptance ratio.

        With the rank-1 scheme a sweep consists of `flips_per_update` proposals in
        the update window, folding whenever the batch is full, followed by a random
        shift of the time origin and a full resynchronization. With the full scheme
        a single multi-flip update is performed.
        """
        if self.params.scheme == "full":
            accepted = int(self.full_update(self.full_flips))
            ratio = float(accepted)
        else:
            num = self.flips_per_update
            accepted = 0
            for _ in range(num):
                accepted += int(self.metropolis())
            if self.engine.batch.size:
                self.fold()
            self.shift_time()
            ratio = accepted / num
        self.acceptance.append(ratio)
        self.sweeps += 1
        logger.debug("[%s] %3d Ratio: %.2f  Sign: %+.0f  Log-weight: %.6f",
                     self.status, self.it, ratio, self.psign, self.plog)
        return ratio

    def measure_sample(self) -> ObservableSample:
        """Computes the observables of the current configuration."""
        assert self.engine.batch.size == 0, "Measuring with pending updates!"
        return extract_observables(self.factorization, self.geometry, self.propagator,
                                   self.params.coupling, self.cache)

    def warmup(self, sweeps):
        self.it = 0
        self.status = "warm"
        for _ in tqdm(range(sweeps), desc="Warmup", disable=not self.progress):
            self.sweep()
            self.it += 1

    def measure(self, sweeps, callback=None, *args, **kwargs):
        out = 0.0
        self.status = "meas"
        for _ in tqdm(range(sweeps), desc="Sample", disable=not self.progress):
            self.sweep()
            sample = self.measure_sample()
            self.summary.add(sample)
            if callback is not None:
                out += np.asarray(callback(self, sample, *args, **kwargs))
            self.it += 1
        return out / sweeps if sweeps else out

    def simulate(self, num_equil, num_sampl, callback=None, *args, **kwargs):
        total_sweeps = num_equil + num_sampl
        t0 = time.perf_counter()

        logger.info("Running %s equilibrium sweeps...", num_equil)
        t0_equil = time.perf_counter()
        self.warmup(num_equil)
        t_equil = time.perf_counter() - t0_equil

        logger.info("Running %s sampling sweeps...", num_sampl)
        t0_sampl = time.perf_counter()
        extra_results = self.measure(num_sampl, callback, *args, **kwargs)
        t_sampl = time.perf_counter() - t0_sampl

        t = time.perf_counter() - t0
        logger.info("%s iterations completed!", total_sweeps)
        logger.info("      Sign: %+.0f", self.psign)
        logger.info("Log-weight: %.4f", self.plog)
        logger.info("Equil CPU time: %6.1fs  (%.4f s/it)", t_equil,
                    t_equil / max(1, num_equil))
        logger.info("Sampl CPU time: %6.1fs  (%.4f s/it)", t_sampl,
                    t_sampl / max(1, num_sampl))
        logger.info("Total CPU time: %6.1fs  (%.4f s/it)", t, t / max(1, total_sweeps))
        return self.summary, extra_results

    def checkpoint(self) -> Checkpoint:
        """Returns the raw state of the sampler.

        Pending updates are folded first so that the stored fields and the tracked
        weight agree.
        """
        if self.engine.batch.size:
            self.fold()
        return Checkpoint(
            fields=self.fields.logical(),
            rng_state=self.rng.bit_generator.state,
            summary=self.summary.to_arrays(),
            sweeps=self.sweeps,
            params_hash=hash_params(**self.params.__dict__),
        )

    def restore(self, checkpoint: Checkpoint) -> SyncResult:
        """Restores the raw state of a checkpoint and rebuilds all caches."""
        self.fields.load(checkpoint.fields)
        self.rng.bit_generator.state = checkpoint.rng_state
        self.summary = ObservableSummary.from_arrays(checkpoint.summary)
        self.sweeps = checkpoint.sweeps
        self.engine.last_location = None
        return self._handle(self.engine.reset())


def run_dqmc(p: Parameters, callback=None, progress=False, *args, **kwargs):
    """Runs a simulation.

    Parameters
    ----------
    p : Parameters
        The input parameters of the simulation.
    callback : callable, optional
        A optional callback method for measuring additional observables. It is
        called with the sampler and the current `ObservableSample`.
    progress : bool
        If `True` a progressbar will be printed.
    *args : tuple, optional
        Optional positional arguments for the user callback method.
    **kwargs : dict, optional
        Optional keyword arguments for the user callback method.

    Returns
    -------
    summary : ObservableSummary
        The sign-weighted sums of the measured observables.
    extra : np.ndarray or float
        The averaged result of the user callback.
    """
    sampler = MetropolisSampler(p, progress)
    return sampler.simulate(p.num_equil, p.num_sampl, callback, *args, **kwargs)


def log_results(summary: ObservableSummary, *_):
    logger.info("_" * 60)
    logger.info("Simulation results")
    logger.info("")
    logger.info("      Average sign: %8.4f", summary.average_sign)
    for name in ObservableSummary.SCALARS:
        if name not in summary.sums:
            continue
        logger.info("%18s: %8.4f", name, summary.mean(name))
    logger.info("")
