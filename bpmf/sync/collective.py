# bpmf/sync/collective.py

import numpy as np

from bpmf.errors import ConfigError
from bpmf.model.hyperparams import SideStats


def get_partition_info(dim, num_partitions):
    """Counts and displacements of a near-equal contiguous split of range(dim)."""
    base, extra = dim // num_partitions, dim % num_partitions
    counts = [base + 1 if i < extra else base for i in range(num_partitions)]
    displs = np.insert(np.cumsum(counts), 0, 0)[:-1].tolist()
    return counts, displs


class LocalCollective:
    """Single partition: owns every entity, broadcast is a no-op."""
    rank = 0
    size = 1
    is_root = True

    def partition(self, n):
        return 0, n

    def broadcast(self, U, lo, hi):
        self.barrier()
        return U

    def reduce(self, U, lo, hi):
        return SideStats.from_columns(U[:, lo:hi])

    def share(self, obj):
        return obj

    def barrier(self):
        pass

    def abort(self, code=1):
        raise SystemExit(code)


class MPICollective:
    """
    One contiguous block of entities per rank, full replicas of both latent
    matrices on every rank.

    broadcast: allgather of the owned column blocks, then a barrier, so every
               replica is complete before the other side's pass reads it.
    reduce:    allreduce of (count, sum, outer-product sum, squared norm);
               each rank contributes only its own block.
    """
    def __init__(self, comm=None):
        if comm is None:
            from mpi4py import MPI
            comm = MPI.COMM_WORLD
        self.comm = comm
        self.rank = comm.Get_rank()
        self.size = comm.Get_size()
        self.is_root = self.rank == 0

    def partition(self, n):
        counts, displs = get_partition_info(n, self.size)
        lo = displs[self.rank]
        return lo, lo + counts[self.rank]

    def broadcast(self, U, lo, hi):
        blocks = self.comm.allgather((lo, hi, np.ascontiguousarray(U[:, lo:hi])))
        for b_lo, b_hi, block in blocks:
            U[:, b_lo:b_hi] = block
        self.barrier()
        return U

    def reduce(self, U, lo, hi):
        # SideStats defines +, which the default SUM op applies to pickled objects
        return self.comm.allreduce(SideStats.from_columns(U[:, lo:hi]))

    def share(self, obj):
        return self.comm.bcast(obj, root=0)

    def barrier(self):
        self.comm.Barrier()

    def abort(self, code=1):
        self.comm.Abort(code)


COLLECTIVES = {
    'local': LocalCollective,
    'mpi': MPICollective,
}


def make_collective(kind='local', **kwargs):
    try:
        cls = COLLECTIVES[kind]
    except KeyError:
        raise ConfigError(f"Unknown collective '{kind}', expected one of {sorted(COLLECTIVES)}")
    return cls(**kwargs)
