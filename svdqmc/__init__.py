# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

from .logging import logger
from .lattice import LatticeGeometry, hubbard_hypercube
from .propagator import SpectralPropagator
from .fields import FieldConfiguration, field_amplitude
from .slices import SliceAccumulator, SliceCache
from .linalg import SVDFactorization, UDTFactorization
from .stabilize import StabilizedFactorization, SyncResult, Outcome
from .updates import DeterminantUpdateEngine, Proposal
from .observables import ObservableSample, ObservableSummary, extract_observables
from .params import Parameters, parse, log_parameters
from .checkpoint import Checkpoint, save_checkpoint, load_checkpoint
from .simulator import (
    ConfigurationError,
    SamplerState,
    MetropolisSampler,
    run_dqmc,
    log_results,
)

__version__ = "0.1.0"
