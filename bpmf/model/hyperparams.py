# bpmf/model/hyperparams.py

import numpy as np
from scipy.linalg import cholesky, cho_solve, solve_triangular, LinAlgError

from bpmf.errors import NumericalError


class SideStats:
    """
    Aggregate statistics of one side's latent matrix (columns = entities).
    Built from the reduced sums so that partitioned runs count every
    column exactly once.
    """
    def __init__(self, count, total, prod, sq_norm):
        self.count = int(count)
        self.total = np.asarray(total, dtype=np.float64)
        self.prod = np.asarray(prod, dtype=np.float64)
        self.sq_norm = float(sq_norm)

    @classmethod
    def from_columns(cls, U):
        """Local contribution of the columns of U, shape (K, n)."""
        return cls(U.shape[1], U.sum(axis=1), U @ U.T, np.sum(U * U))

    def __add__(self, other):
        return SideStats(self.count + other.count,
                         self.total + other.total,
                         self.prod + other.prod,
                         self.sq_norm + other.sq_norm)

    @property
    def mean(self):
        if self.count == 0:
            return np.zeros_like(self.total)
        return self.total / self.count

    @property
    def cov(self):
        # unbiased column covariance, zero when it is undefined
        N = self.count
        if N <= 1:
            return np.zeros_like(self.prod)
        Um = self.mean
        C = (self.prod - N * np.outer(Um, Um)) / (N - 1)
        return (C + C.T) / 2.0

    @property
    def norm(self):
        return float(np.sqrt(max(self.sq_norm, 0.0)))


def normal_wishart_posterior(N, Um, C, mu0, b0, WI, df):
    """
    Conjugate Normal-Wishart update.
    Returns (mu_post, kappa_post, T_post_inv, df_post) where T_post_inv is
    the inverse of the posterior Wishart scale.
    """
    kappa = b0 + N
    mu_post = (b0 * mu0 + N * Um) / kappa
    diff = mu0 - Um
    try:
        WI_inv = np.linalg.inv(WI)
    except LinAlgError as e:
        raise NumericalError(f"Prior scale WI is singular: {e}") from e
    T_inv = (WI_inv + N * C
             + (b0 * N / kappa) * np.outer(diff, diff))
    T_inv = (T_inv + T_inv.T) / 2.0
    return mu_post, kappa, T_inv, df + N


def sample_wishart(scale_chol, df, rng):
    """
    Bartlett decomposition. scale_chol is the lower Cholesky factor L of the
    Wishart scale; returns the lower Cholesky factor L @ A of the draw.
    """
    K = scale_chol.shape[0]
    A = np.zeros((K, K))
    A[np.diag_indices(K)] = np.sqrt(rng.chisquare(df - np.arange(K)))
    lower = np.tril_indices(K, -1)
    A[lower] = rng.standard_normal(len(lower[0]))
    return scale_chol @ A


def sample_normal_wishart(mu_post, kappa, T_inv, df, rng):
    """
    Draw (mu, Lambda, Lambda_L) with Lambda ~ Wishart(df, inv(T_inv)) and
    mu ~ Normal(mu_post, inv(kappa * Lambda)).
    """
    K = len(mu_post)
    try:
        T_inv_chol = cholesky(T_inv, lower=True)
        T = cho_solve((T_inv_chol, True), np.eye(K))
        T_chol = cholesky((T + T.T) / 2.0, lower=True)
    except LinAlgError as e:
        raise NumericalError(
            f"Posterior Wishart scale is not positive definite: {e}") from e

    Lambda_L = sample_wishart(T_chol, df, rng)
    Lambda = Lambda_L @ Lambda_L.T

    # inv(kappa * Lambda) = inv(Lambda_L.T) inv(Lambda_L) / kappa
    z = rng.standard_normal(K)
    mu = mu_post + solve_triangular(Lambda_L.T, z, lower=False) / np.sqrt(kappa)
    return mu, Lambda, Lambda_L


class HyperParams:
    """
    Normal-Wishart prior over one side's latent vectors.

    Fixed part: mu0 (zeros), WI (identity), b0, df (num_latent unless given).
    Sampled part: mu, Lambda and its lower/upper Cholesky factors.
    """
    def __init__(self, num_latent, b0=2.0, df=None, mu0=None, WI=None, name=None):
        self.num_latent = num_latent
        self.name = name
        self.b0 = b0
        self.df = num_latent if df is None else df
        self.mu0 = np.zeros(num_latent) if mu0 is None else np.asarray(mu0, dtype=np.float64)
        self.WI = np.eye(num_latent) if WI is None else np.asarray(WI, dtype=np.float64)

        self.mu = np.zeros(num_latent)
        self.Lambda = np.eye(num_latent)
        self.LambdaL = np.eye(num_latent)

    @property
    def LambdaU(self):
        return self.LambdaL.T

    def posterior(self, stats):
        return normal_wishart_posterior(
            stats.count, stats.mean, stats.cov, self.mu0, self.b0, self.WI, self.df)

    def sample(self, stats, rng):
        try:
            mu_post, kappa, T_inv, df_post = self.posterior(stats)
            self.mu, self.Lambda, self.LambdaL = sample_normal_wishart(
                mu_post, kappa, T_inv, df_post, rng)
        except NumericalError as e:
            raise NumericalError(str(e), side=self.name) from e
        return self
