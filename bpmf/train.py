# bpmf/train.py

import argparse
import os
import sys

from bpmf.config import DEFAULT_CONFIG, load_config, validate_config
from bpmf.data.matrix_store import MatrixStore
from bpmf.errors import BPMFError
from bpmf.model.bpmf import BPMF
from bpmf.sync.collective import make_collective

# command-line flag -> (config section, key)
OVERRIDES = {
    'num_latent': ('model', 'num_latent'),
    'alpha':      ('model', 'alpha'),
    'burnin':     ('sampler', 'burnin'),
    'nsims':      ('sampler', 'nsims'),
    'seed':       ('sampler', 'seed'),
    'n_jobs':     ('sampler', 'n_jobs'),
    'threshold':  ('eval', 'threshold'),
    'comm':       ('runtime', 'comm'),
}


def build_parser():
    p = argparse.ArgumentParser(description="Bayesian PMF by Gibbs sampling")
    p.add_argument('train', type=str, help="Training ratings matrix (.mtx, .npz or .csv)")
    p.add_argument('probe', type=str, help="Held-out probe matrix")
    p.add_argument('--config',     type=str, default=None,
                   help="YAML config (default: the bundled default.yaml)")
    p.add_argument('--num-latent', type=int, default=None, help="Latent rank")
    p.add_argument('--alpha',      type=float, default=None, help="Rating noise precision")
    p.add_argument('--burnin',     type=int, default=None)
    p.add_argument('--nsims',      type=int, default=None)
    p.add_argument('--seed',       type=int, default=None)
    p.add_argument('--n-jobs',     type=int, default=None, help="Sampling threads")
    p.add_argument('--threshold',  type=float, default=None,
                   help="Probe classification threshold")
    p.add_argument('--comm',       type=str, default=None, choices=['local', 'mpi'])
    p.add_argument('--quiet',      action='store_true', help="No progress or iteration output")
    return p


def make_config(args):
    path = args.config
    if path is None and os.path.exists(DEFAULT_CONFIG):
        path = DEFAULT_CONFIG
    config = load_config(path)
    for flag, (section, key) in OVERRIDES.items():
        value = getattr(args, flag)
        if value is not None:
            config[section][key] = value
    if args.quiet:
        config['runtime']['verbose'] = False
    return validate_config(config)


def run(args):
    config = make_config(args)
    model_cfg, sampler_cfg = config['model'], config['sampler']
    collective = make_collective(config['runtime']['comm'])
    try:
        store = MatrixStore.load(args.train, args.probe)
        model = BPMF(num_latent=model_cfg['num_latent'],
                     alpha=model_cfg['alpha'],
                     b0=model_cfg['b0'],
                     df=model_cfg['df'],
                     burnin=sampler_cfg['burnin'],
                     nsims=sampler_cfg['nsims'],
                     seed=sampler_cfg['seed'],
                     n_jobs=sampler_cfg['n_jobs'],
                     threshold=config['eval']['threshold'],
                     collective=collective,
                     verbose=config['runtime']['verbose'])
        model.fit(store)
    except BPMFError as e:
        # under MPI one failing rank must take the others down with it
        print(f"[ERROR] {e}", file=sys.stderr)
        collective.abort(1)
        raise
    return model


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        run(args)
    except BPMFError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
