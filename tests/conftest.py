import functools
import operator
import threading

import numpy as np
import pytest
import scipy.sparse as sp

from bpmf.data.matrix_store import MatrixStore


class ThreadWorld:
    """Shared slots and a barrier for `size` in-process ranks."""
    def __init__(self, size):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=60)
        self.slots = [None] * size


class ThreadComm:
    """The subset of the mpi4py communicator API that MPICollective uses."""
    def __init__(self, world, rank):
        self.world = world
        self.rank = rank

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.world.size

    def Barrier(self):
        self.world.barrier.wait()

    def allgather(self, obj):
        self.world.slots[self.rank] = obj
        self.Barrier()
        out = list(self.world.slots)
        self.Barrier()
        return out

    def allreduce(self, obj, op=None):
        return functools.reduce(operator.add, self.allgather(obj))

    def bcast(self, obj, root=0):
        return self.allgather(obj)[root]

    def Abort(self, code=1):
        raise SystemExit(code)


def _run_ranks(size, fn):
    """Run fn(comm) on `size` threads; return the per-rank results."""
    world = ThreadWorld(size)
    results = [None] * size
    errors = []

    def target(rank):
        try:
            results[rank] = fn(ThreadComm(world, rank))
        except BaseException as e:
            errors.append(e)
            world.barrier.abort()

    threads = [threading.Thread(target=target, args=(r,)) for r in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    if errors:
        raise errors[0]
    return results


@pytest.fixture
def run_ranks():
    return _run_ranks


@pytest.fixture
def toy_store():
    """2 users x 2 items, every rating known, no probe."""
    R = sp.coo_matrix(([4.0, 2.0, 3.0, 5.0], ([0, 0, 1, 1], [0, 1, 0, 1])), shape=(2, 2))
    return MatrixStore(R)


@pytest.fixture
def small_store():
    """3 x 3 training matrix with 5 ratings and a 2-entry probe set."""
    train = sp.coo_matrix(([4.0, 3.0, 2.0, 5.0, 1.0],
                           ([0, 0, 1, 2, 2], [0, 1, 1, 0, 2])), shape=(3, 3))
    probe = sp.coo_matrix(([3.0, 4.0], ([1, 2], [0, 1])), shape=(3, 3))
    return MatrixStore(train, probe)


@pytest.fixture
def random_store():
    rng = np.random.default_rng(7)
    n_users, n_items, nnz = 30, 20, 200
    rows = rng.integers(0, n_users, nnz)
    cols = rng.integers(0, n_items, nnz)
    vals = rng.integers(1, 6, nnz).astype(float)
    train = sp.coo_matrix((vals, (rows, cols)), shape=(n_users, n_items)).tocsr()
    train.data = np.clip(train.data, 1, 5)
    probe = sp.coo_matrix(([2.0, 4.0, 5.0], ([0, 1, 2], [3, 4, 5])), shape=(n_users, n_items))
    return MatrixStore(train, probe)


@pytest.fixture
def lowrank_store():
    """
    40 x 30 ratings from an exact rank-2 model: about 60% of the entries
    train, 80 of the rest are held out for evaluation.
    """
    rng = np.random.default_rng(11)
    users = rng.normal(size=(40, 2))
    items = rng.normal(size=(30, 2))
    dense = 3.0 + users @ items.T
    observed = rng.random(dense.shape) < 0.6
    rows, cols = np.nonzero(observed)
    train = sp.coo_matrix((dense[rows, cols], (rows, cols)), shape=dense.shape)
    rows, cols = np.nonzero(~observed)
    keep = rng.choice(len(rows), size=80, replace=False)
    held = sp.coo_matrix((dense[rows[keep], cols[keep]], (rows[keep], cols[keep])),
                         shape=dense.shape)
    return MatrixStore(train, held)
