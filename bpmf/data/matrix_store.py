# bpmf/data/matrix_store.py

import os
import zipfile
import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.io import mmread, mmwrite

from bpmf.errors import MatrixLoadError


def _is_number(token):
    try:
        float(token)
    except (TypeError, ValueError):
        return False
    return True


def _read_triplets(path, shape=None):
    """
    Read a CSV/TSV file whose first three columns are (row, col, value),
    with zero-based indices. A header line is allowed.
    """
    sep = '\t' if path.endswith('.tsv') else ','
    df = pd.read_csv(path, sep=sep, header=None, comment='%', dtype=str,
                     keep_default_na=False, skipinitialspace=True)
    if df.shape[1] < 3:
        raise MatrixLoadError(f"{path}: expected at least 3 columns, got {df.shape[1]}")
    df = df.iloc[:, :3]
    # a header is a first line made only of names
    if len(df) and not any(_is_number(t) or t == '' for t in df.iloc[0]):
        df = df.iloc[1:]
    if df.isna().any().any() or (df == '').any().any():
        raise MatrixLoadError(f"{path}: missing entries")
    df = df.apply(pd.to_numeric, errors='coerce')
    if df.isna().any().any():
        raise MatrixLoadError(f"{path}: non-numeric entries")

    rows = df.iloc[:, 0].to_numpy(dtype=np.int64)
    cols = df.iloc[:, 1].to_numpy(dtype=np.int64)
    data = df.iloc[:, 2].to_numpy(dtype=np.float64)
    if len(rows) and (rows.min() < 0 or cols.min() < 0):
        raise MatrixLoadError(f"{path}: negative row/column index")
    if shape is None:
        shape = (int(rows.max()) + 1 if len(rows) else 0,
                 int(cols.max()) + 1 if len(cols) else 0)
    return sp.coo_matrix((data, (rows, cols)), shape=shape)


def load_matrix(path, shape=None):
    """
    Load a sparse ratings matrix. The format is chosen by suffix:
    .mtx (Matrix Market), .npz (scipy.sparse) or .csv/.tsv triplets.
    Returns a scipy.sparse.csc_matrix of float64.
    """
    if not os.path.exists(path):
        raise MatrixLoadError(f"Could not find matrix file {path}")
    try:
        if path.endswith('.npz'):
            mat = sp.load_npz(path)
        elif path.endswith('.csv') or path.endswith('.tsv'):
            mat = _read_triplets(path, shape)
        else:
            mat = mmread(path)
    except MatrixLoadError:
        raise
    except (ValueError, OSError, IndexError, TypeError, RuntimeError, zipfile.BadZipFile) as e:
        raise MatrixLoadError(f"{path}: {e}") from e

    if not sp.issparse(mat):
        mat = sp.coo_matrix(mat)
    mat = sp.csc_matrix(mat, dtype=np.float64)
    mat.sum_duplicates()
    if not np.all(np.isfinite(mat.data)):
        raise MatrixLoadError(f"{path}: matrix holds non-finite values")
    return mat


def save_matrix(mat, out_path):
    dirname = os.path.dirname(out_path)
    if dirname:
        os.makedirs(dirname, exist_ok=True)
    if out_path.endswith('.npz'):
        sp.save_npz(out_path, sp.csr_matrix(mat))
    else:
        mmwrite(out_path, sp.coo_matrix(mat))
    print(f"Saved matrix to {out_path} with shape {mat.shape}")


class RatingMatrix:
    """
    Read-only column-compressed ratings matrix.
    column(i) gives the nonzeros of column i as (row indices, values);
    .T is the transposed view with the same semantics.
    """
    def __init__(self, mat):
        self._mat = sp.csc_matrix(mat, dtype=np.float64, copy=True)
        self._mat.sort_indices()
        self._mat.indices.flags.writeable = False
        self._mat.data.flags.writeable = False
        self._t = None

    @property
    def shape(self):
        return self._mat.shape

    @property
    def nnz(self):
        return self._mat.nnz

    def degree(self, i):
        return int(self._mat.indptr[i + 1] - self._mat.indptr[i])

    def column(self, i):
        lo, hi = self._mat.indptr[i], self._mat.indptr[i + 1]
        return self._mat.indices[lo:hi], self._mat.data[lo:hi]

    def triples(self):
        coo = self._mat.tocoo()
        return coo.row, coo.col, coo.data

    def sum(self):
        return float(self._mat.data.sum())

    @property
    def T(self):
        if self._t is None:
            self._t = RatingMatrix(self._mat.T)
            self._t._t = self
        return self._t


class MatrixStore:
    """
    Training matrix (users x items), its transpose and the probe matrix.

    ratings.column(j) iterates the users who rated item j,
    ratings.T.column(u) the items rated by user u.
    """
    def __init__(self, train, probe=None):
        train = sp.csc_matrix(train, dtype=np.float64)
        if train.nnz == 0:
            raise MatrixLoadError("Training matrix has no ratings")
        if probe is None:
            probe = sp.coo_matrix(train.shape)
        probe = sp.coo_matrix(probe, dtype=np.float64)
        if probe.shape[0] > train.shape[0] or probe.shape[1] > train.shape[1]:
            raise MatrixLoadError(
                f"Probe matrix shape {probe.shape} does not fit training shape {train.shape}")
        if probe.shape != train.shape:
            probe = sp.coo_matrix((probe.data, (probe.row, probe.col)), shape=train.shape)

        self.ratings = RatingMatrix(train)
        self.probe = probe
        self.mean_rating = self.ratings.sum() / self.ratings.nnz

    @classmethod
    def load(cls, train_path, probe_path):
        train = load_matrix(train_path)
        probe = load_matrix(probe_path)
        return cls(train, probe)

    @property
    def num_users(self):
        return self.ratings.shape[0]

    @property
    def num_items(self):
        return self.ratings.shape[1]
