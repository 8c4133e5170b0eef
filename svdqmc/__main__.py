# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

import logging
import argparse
from svdqmc import (
    parse,
    log_parameters,
    log_results,
    MetropolisSampler,
    save_checkpoint,
    load_checkpoint,
)

logger = logging.getLogger("svdqmc")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="svdqmc")
    parser.add_argument("file", type=str, help="The parameter file")
    parser.add_argument("--progress", "-p", action="store_true",
                        help="Show a progressbar")
    parser.add_argument("--checkpoint", "-c", type=str, default="",
                        help="HDF5 file for saving the state after the run")
    parser.add_argument("--restore", "-r", type=str, default="",
                        help="HDF5 checkpoint to restore before the run")
    parser.add_argument("--quiet", "-q", action="store_true",
                        help="Only log warnings")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logger.setLevel(logging.WARNING if args.quiet else logging.INFO)

    p = parse(args.file)
    log_parameters(p)
    sampler = MetropolisSampler(p, progress=args.progress)
    if args.restore:
        logger.info("Restoring checkpoint %s", args.restore)
        sampler.restore(load_checkpoint(args.restore, p))

    logger.info("Starting DQMC simulation...")
    summary, _ = sampler.simulate(p.num_equil, p.num_sampl)
    log_results(summary)

    if args.checkpoint:
        save_checkpoint(args.checkpoint, sampler.checkpoint(), p)
        logger.info("Saved checkpoint to %s", args.checkpoint)


if __name__ == "__main__":
    main()
