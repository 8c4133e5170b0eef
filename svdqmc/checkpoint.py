# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

"""HDF5 checkpoints of the raw state of a simulation.

Only the field configuration, the state of the random generator and the summaries
of the measured observables are stored. Slices and factorizations are rebuilt from
the fields when a checkpoint is restored.
"""

import json
import h5py
import hashlib
import logging
import numpy as np
from typing import Union
from dataclasses import dataclass, field, asdict
from .params import Parameters

__all__ = ["Checkpoint", "hash_params", "save_checkpoint", "load_checkpoint"]

logger = logging.getLogger("svdqmc")


def hash_params(**kwargs):
    keys = sorted(kwargs.keys())
    data = "; ".join([str(kwargs[k]) for k in keys])
    m = hashlib.md5(data.encode("utf-8"))
    return m.hexdigest()


@dataclass
class Checkpoint:
    """Raw state of a simulation.

    Attributes
    ----------
    fields : (N, V) np.ndarray
        The auxiliary fields in logical time order.
    rng_state : dict
        The state of the bit generator of the random generator.
    summary : dict of np.ndarray
        Opaque arrays of accumulated observables.
    sweeps : int
        The number of completed sweeps.
    params_hash : str
        Hash of the parameters of the simulation.
    """

    fields: np.ndarray
    rng_state: dict
    summary: dict = field(default_factory=dict)
    sweeps: int = 0
    params_hash: str = ""


def _params_dict(p: Union[dict, Parameters]):
    return asdict(p) if isinstance(p, Parameters) else dict(p)


def save_checkpoint(file, checkpoint: Checkpoint, params=None):
    """Writes a checkpoint to an HDF5 file, replacing previous content.

    Parameters
    ----------
    file : str or h5py.File
        The output file.
    checkpoint : Checkpoint
        The checkpoint to store.
    params : Parameters or dict, optional
        The simulation parameters, stored as attributes of the file.
    """
    own = not isinstance(file, h5py.File)
    fh = h5py.File(file, "w") if own else file
    try:
        for key in list(fh.keys()):
            del fh[key]
        fh.create_dataset("fields", data=np.asarray(checkpoint.fields))
        group = fh.create_group("summary", track_order=True)
        for key, value in checkpoint.summary.items():
            group.create_dataset(key, data=np.asarray(value))
        fh.attrs["rng_state"] = json.dumps(checkpoint.rng_state)
        fh.attrs["sweeps"] = int(checkpoint.sweeps)
        params_hash = checkpoint.params_hash
        if params is not None:
            kwargs = _params_dict(params)
            params_hash = hash_params(**kwargs)
            for k, v in kwargs.items():
                fh.attrs[k] = np.asarray(v) if isinstance(v, tuple) else v
        fh.attrs["params_hash"] = params_hash
    finally:
        if own:
            fh.close()
    logger.debug("Saved checkpoint after %s sweeps", checkpoint.sweeps)


def load_checkpoint(file, params=None) -> Checkpoint:
    """Reads a checkpoint from an HDF5 file.

    Parameters
    ----------
    file : str or h5py.File
        The input file.
    params : Parameters or dict, optional
        If given, the hash of the parameters has to match the stored one.

    Raises
    ------
    ValueError
        If the parameters do not match the parameters of the checkpoint.
    """
    own = not isinstance(file, h5py.File)
    fh = h5py.File(file, "r") if own else file
    try:
        fields = np.array(fh["fields"])
        summary = {k: np.array(fh["summary"][k]) for k in fh["summary"]}
        rng_state = json.loads(fh.attrs["rng_state"])
        sweeps = int(fh.attrs["sweeps"])
        params_hash = str(fh.attrs["params_hash"])
    finally:
        if own:
            fh.close()
    if params is not None:
        expected = hash_params(**_params_dict(params))
        if params_hash and expected != params_hash:
            raise ValueError("Checkpoint was created with different parameters!")
    return Checkpoint(fields, rng_state, summary, sweeps, params_hash)
