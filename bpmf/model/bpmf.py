# bpmf/model/bpmf.py

import time
import numpy as np

from bpmf.errors import ConfigError
from bpmf.model.entity import sample_side
from bpmf.model.evaluate import Evaluator, DEFAULT_THRESHOLD
from bpmf.model.hyperparams import HyperParams, SideStats
from bpmf.sync.collective import LocalCollective

ITEMS, USERS = 0, 1
SIDE_NAMES = {ITEMS: 'items', USERS: 'users'}


class SimulationState:
    """
    Everything the Gibbs chain mutates: both latent matrices (K x n, one
    column per entity), both sides' hyperparameters and reduced statistics.
    """
    def __init__(self, num_latent, num_users, num_items, b0=2.0, df=None):
        self.iteration = 0
        self.items = np.zeros((num_latent, num_items), order='F')
        self.users = np.zeros((num_latent, num_users), order='F')
        self.hp_items = HyperParams(num_latent, b0=b0, df=df, name='items')
        self.hp_users = HyperParams(num_latent, b0=b0, df=df, name='users')
        self.stats_items = SideStats.from_columns(self.items)
        self.stats_users = SideStats.from_columns(self.users)


class BPMF:
    """
    Bayesian PMF trained by Gibbs sampling.

    Each iteration resamples both sides' Normal-Wishart hyperparameters,
    then every item vector given the user matrix, then every user vector
    given the fresh item matrix. Sampling within a side runs on a thread
    pool and, with an MPI collective, on one block of entities per rank.
    """
    def __init__(self, num_latent, alpha=2.0, burnin=5, nsims=20, b0=2.0, df=None,
                 threshold=DEFAULT_THRESHOLD, seed=None, n_jobs=1, collective=None,
                 verbose=True):
        if num_latent is None or int(num_latent) < 1:
            raise ConfigError(f"num_latent must be a positive integer, got {num_latent!r}")
        if alpha <= 0:
            raise ConfigError(f"alpha must be positive, got {alpha!r}")
        if burnin < 0 or nsims < 0:
            raise ConfigError(f"burnin and nsims must be >= 0, got {burnin}, {nsims}")
        if df is not None and df <= num_latent - 1:
            raise ConfigError(f"df must exceed num_latent - 1, got {df}")
        self.num_latent = int(num_latent)
        self.alpha = alpha
        self.burnin = burnin
        self.nsims = nsims
        self.b0 = b0
        self.df = df
        self.threshold = threshold
        self.n_jobs = n_jobs
        self.verbose = verbose
        self.collective = LocalCollective() if collective is None else collective
        if seed is None:
            seed = np.random.SeedSequence().entropy
        # all partitions must draw identical hyperparameters
        self.seed = self.collective.share(seed)
        self.state = None
        self.history = []

    def _key(self, iteration, side):
        return (self.seed, iteration, side)

    def _log(self, msg):
        if self.verbose and self.collective.is_root:
            print(msg)

    def sample_hyperparams(self, state):
        it = state.iteration
        state.hp_items.sample(state.stats_items, np.random.default_rng(self._key(it, 2 + ITEMS)))
        state.hp_users.sample(state.stats_users, np.random.default_rng(self._key(it, 2 + USERS)))

    def sample_items(self, state, store):
        lo, hi = self.collective.partition(store.num_items)
        n = sample_side(state.items, store.ratings, state.users, store.mean_rating,
                        self.alpha, state.hp_items, self._key(state.iteration, ITEMS),
                        lo, hi, n_jobs=self.n_jobs,
                        verbose=self.verbose and self.collective.is_root, side='items')
        self.collective.broadcast(state.items, lo, hi)
        state.stats_items = self.collective.reduce(state.items, lo, hi)
        return n

    def sample_users(self, state, store):
        lo, hi = self.collective.partition(store.num_users)
        n = sample_side(state.users, store.ratings.T, state.items, store.mean_rating,
                        self.alpha, state.hp_users, self._key(state.iteration, USERS),
                        lo, hi, n_jobs=self.n_jobs,
                        verbose=self.verbose and self.collective.is_root, side='users')
        self.collective.broadcast(state.users, lo, hi)
        state.stats_users = self.collective.reduce(state.users, lo, hi)
        return n

    def step(self, state, store, evaluator):
        self.sample_hyperparams(state)
        self.sample_items(state, store)
        self.sample_users(state, store)
        record = evaluator(state.iteration, state.items, state.users)
        record['iteration'] = state.iteration
        record['norm_users'] = state.stats_users.norm
        record['norm_items'] = state.stats_items.norm
        return record

    def fit(self, store):
        """Run burnin + nsims Gibbs iterations on a MatrixStore."""
        self.state = state = SimulationState(
            self.num_latent, store.num_users, store.num_items, b0=self.b0, df=self.df)
        evaluator = Evaluator(store.probe, store.mean_rating, burnin=self.burnin,
                              threshold=self.threshold)
        self.history = []

        self._log(f"Sampling: {store.num_users} users, {store.num_items} items, "
                  f"{store.ratings.nnz} ratings, K={self.num_latent}")
        start = time.perf_counter()
        for it in range(self.burnin + self.nsims):
            state.iteration = it
            record = self.step(state, store, evaluator)
            elapsed = time.perf_counter() - start
            record['samples_per_sec'] = (it + 1) * (store.num_users + store.num_items) / elapsed
            self.history.append(record)
            self._log(self.format_record(record))
        return self

    @staticmethod
    def format_record(r):
        return (f"Iteration {r['iteration']}:\t num_correct: {100 * r['accuracy']:3.2f}%"
                f"\tavg_diff: {r['avg_diff']:3.2f}\tFU({r['norm_users']:6.2f})"
                f"\tFM({r['norm_items']:6.2f})\tSamples/sec: {r['samples_per_sec']:6.2f}"
                f"\tRMSE: {r['rmse']:.4f}\tRMSE(avg): {r['rmse_avg']:.4f}\tStd(avg): {r['pred_std']:.4f}")

    @property
    def user_factors(self):
        return self.state.users

    @property
    def item_factors(self):
        return self.state.items
