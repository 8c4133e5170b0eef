# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

"""Simulation parameter object and parameter file parser."""

import logging
from typing import Union
from dataclasses import dataclass, asdict

logger = logging.getLogger("svdqmc")

STABILIZATIONS = ("svd", "qr")
ORDERS = ("interaction_first", "kinetic_first")
SCHEMES = ("rank1", "full")

# maps attribute name to labels, type and converter of the parameter file
ATTR_LABEL_MAP = {
    "shape": [("shape", "size"), int],
    "u": [("u", ), float],
    "mu": [("mu", ), float],
    "b": [("b", "field"), float],
    "h": [("h", ), float],
    "hop": [("t", "hop"), float],
    "tx": [("tx", ), float],
    "ty": [("ty", ), float],
    "tz": [("tz", ), float],
    "beta": [("beta", ), float],
    "temp": [("temp", "temperature"), float],
    "num_times": [("n", "l", "num_times"), int],
    "slices": [("slices", "mslices"), int],
    "svd": [("svd", "msvd"), int],
    "max_update_size": [("max_update_size", ), int],
    "flips_per_update": [("flips_per_update", ), int],
    "num_equil": [("nequil", "num_equil"), int],
    "num_sampl": [("nsampl", "num_sampl"), int],
    "seed": [("seed", ), int],
    "init_prob": [("init_prob", ), float],
    "stabilization": [("stabilization", ), str],
    "order": [("order", ), str],
    "scheme": [("scheme", ), str],
    "full_flips": [("full_flips", ), int],
    "tolerance": [("tolerance", "tol"), float],
}


@dataclass
class Parameters:
    """Input parameters of a simulation.

    The interaction `u` is the Hubbard `U`, only attractive values `u <= 0` are
    supported. `slices` is the number of time steps per cached slice and `svd` the
    number of slices multiplied between two re-factorizations.
    """

    shape: Union[int, tuple] = 4
    u: float = 0.0
    mu: float = 0.0
    b: float = 0.0
    h: float = 0.0
    tx: float = 1.0
    ty: float = 1.0
    tz: float = 1.0
    beta: float = 1.0
    num_times: int = 10
    slices: int = 10
    svd: int = 1
    max_update_size: int = 16
    flips_per_update: int = 0
    num_equil: int = 512
    num_sampl: int = 2048
    seed: int = 0
    init_prob: float = 0.5
    stabilization: str = "svd"
    order: str = "interaction_first"
    scheme: str = "rank1"
    full_flips: int = 0
    tolerance: float = 1e-6

    def __post_init__(self):
        if isinstance(self.shape, list):
            self.shape = tuple(self.shape)
        if self.num_times <= 0:
            raise ValueError(f"Number of time slices {self.num_times} is not positive!")
        if not self.beta > 0:
            raise ValueError(f"Inverse temperature {self.beta} is not positive!")
        if self.max_update_size < 1:
            raise ValueError("Maximal update size has to be positive!")
        if not 0.0 <= self.init_prob <= 1.0:
            raise ValueError(f"Initial probability {self.init_prob} not in [0, 1]!")
        for name, valid in (("stabilization", STABILIZATIONS), ("order", ORDERS),
                            ("scheme", SCHEMES)):
            if getattr(self, name) not in valid:
                raise ValueError(f"Invalid {name} '{getattr(self, name)}'! "
                                 f"Valid: {valid}")

    def copy(self, **kwargs):
        items = asdict(self)
        if "temp" in kwargs:
            kwargs["beta"] = 1 / kwargs.pop("temp")
        items.update(kwargs)
        return Parameters(**items)

    @property
    def dt(self):
        return self.beta / self.num_times

    @property
    def temp(self):
        return 1 / self.beta

    @temp.setter
    def temp(self, temp):
        self.beta = 1 / temp

    @property
    def hopping(self):
        return self.tx, self.ty, self.tz

    @property
    def coupling(self):
        """The coupling `g = -U` of the auxiliary fields."""
        return -self.u


def _build_attribute_map():
    attr_map = dict()
    for attr, info in ATTR_LABEL_MAP.items():
        keys, attr_type = info
        for key in keys:
            if key in attr_map:
                raise ValueError(f"Key {key} already registered in attribute map!")
            attr_map[key] = [attr, attr_type]
    return attr_map


def _read_param_file(file):
    attr_map = _build_attribute_map()
    items = dict()
    with open(file, "r") as fh:
        text = fh.read()
    for line in text.splitlines(keepends=False):
        line = line.partition("#")[0].strip()
        if not line:
            continue
        parts = line.split(maxsplit=1)
        if len(parts) < 2:
            logger.warning("Parameter %s of file '%s' has no value!", parts[0], file)
            continue
        label, data = parts
        label = label.lower()
        data = data.replace(",", " ").split()
        try:
            key, datatype = attr_map[label]
        except KeyError:
            logger.warning("Parameter %s of file '%s' not recognized!", label, file)
            continue
        values = [datatype(value) for value in data]
        items[key] = values if len(values) > 1 else values[0]
    return items


def parse(file):
    """Parses an input text file and extracts the simulation parameters.

    Every non-empty line holds a label and a value, e.g. `shape 4, 4` or
    `temp 0.2`. Everything after a `#` is ignored.

    Parameters
    ----------
    file : str
        The path of the input file.

    Returns
    -------
    p : Parameters
        The parsed parameters of the input file.
    """
    logger.info("Parsing parameters from file %s...", file)
    items = _read_param_file(file)
    temp = items.pop("temp", None)
    if temp is not None:
        items["beta"] = 1 / temp
    hop = items.pop("hop", None)
    if hop is not None:
        for key in ("tx", "ty", "tz"):
            items.setdefault(key, hop)
    return Parameters(**items)


def check_timestep(p: Parameters):
    """Warns if the time step is too large for the Trotter decomposition."""
    check = abs(p.u) * max(abs(t) for t in p.hopping) * p.dt ** 2
    if check > 0.1:
        logger.warning(
            "Increase number of time steps: Check-value %.2f should be <0.1!", check
        )
    else:
        logger.debug("Check-value %.4f is <0.1!", check)
    return check


def log_parameters(p: Parameters):
    logger.info("_" * 60)
    logger.info("Simulation parameters")
    logger.info("")
    logger.info("         Shape: %s", p.shape)
    logger.info("             U: %s", p.u)
    logger.info("    (tx,ty,tz): %s", p.hopping)
    logger.info("            mu: %s", p.mu)
    logger.info("             B: %s", p.b)
    logger.info("             h: %s", p.h)
    logger.info("          beta: %s", p.beta)
    logger.info("          temp: %s", p.temp)
    logger.info("     time-step: %s", p.dt)
    logger.info("             N: %s", p.num_times)
    logger.info("        slices: %s", p.slices)
    logger.info("           svd: %s", p.svd)
    logger.info("  max. updates: %s", p.max_update_size)
    logger.info("         flips: %s", p.flips_per_update)
    logger.info("        nequil: %s", p.num_equil)
    logger.info("        nsampl: %s", p.num_sampl)
    logger.info(" stabilization: %s", p.stabilization)
    logger.info("         order: %s", p.order)
    logger.info("        scheme: %s", p.scheme)
    logger.info("          seed: %s", p.seed)
    logger.info("")
