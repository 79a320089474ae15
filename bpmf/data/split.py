# bpmf/data/split.py

import argparse
import os
import numpy as np
import scipy.sparse as sp
from tqdm import tqdm

from bpmf.data.matrix_store import load_matrix, save_matrix


def train_probe_split(R, test_ratio=0.1, seed=42, verbose=True):
    """
    Hold out about test_ratio of every user's ratings as probe entries.
    Users with a single rating keep it for training.
    Returns (R_train, R_probe), both with the shape of R.
    """
    rng = np.random.default_rng(seed)
    R = sp.csr_matrix(R)

    train_rows, train_cols, train_data = [], [], []
    probe_rows, probe_cols, probe_data = [], [], []

    for u in tqdm(range(R.shape[0]), desc="Splitting users", disable=not verbose):
        lo, hi = R.indptr[u], R.indptr[u + 1]
        items, values = R.indices[lo:hi], R.data[lo:hi]
        n = len(items)
        if n == 0:
            continue
        n_probe = min(max(1, int(n * test_ratio)), n - 1)
        is_probe = np.zeros(n, dtype=bool)
        is_probe[rng.choice(n, size=n_probe, replace=False)] = True

        train_rows.extend([u] * int((~is_probe).sum()))
        train_cols.extend(items[~is_probe])
        train_data.extend(values[~is_probe])
        probe_rows.extend([u] * n_probe)
        probe_cols.extend(items[is_probe])
        probe_data.extend(values[is_probe])

    R_train = sp.csr_matrix((train_data, (train_rows, train_cols)), shape=R.shape)
    R_probe = sp.csr_matrix((probe_data, (probe_rows, probe_cols)), shape=R.shape)
    return R_train, R_probe


def main(argv=None):
    parser = argparse.ArgumentParser(description="Split a ratings matrix into training and probe sets")
    parser.add_argument('--ratings',    type=str, required=True, help="Ratings matrix (.mtx, .npz or .csv)")
    parser.add_argument('--out-dir',    type=str, default='data/processed')
    parser.add_argument('--test-ratio', type=float, default=0.1)
    parser.add_argument('--seed',       type=int,   default=42)
    parser.add_argument('--format',     type=str,   default='mtx', choices=['mtx', 'npz'])
    args = parser.parse_args(argv)

    R = load_matrix(args.ratings)
    R_train, R_probe = train_probe_split(R, test_ratio=args.test_ratio, seed=args.seed)

    save_matrix(R_train, os.path.join(args.out_dir, f"train.{args.format}"))
    save_matrix(R_probe, os.path.join(args.out_dir, f"probe.{args.format}"))
    print(f"Split {R.nnz} ratings: {R_train.nnz} train, {R_probe.nnz} probe")


if __name__ == "__main__":
    main()
