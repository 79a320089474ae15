# bpmf/model/entity.py

import numpy as np
from scipy.linalg import cholesky, cho_solve, LinAlgError
from joblib import Parallel, delayed, effective_n_jobs
from tqdm import tqdm

from bpmf.errors import NumericalError


def entity_rng(key, entity):
    """Independent, reproducible stream for one entity: key = (seed, iteration, side)."""
    return np.random.default_rng([*key, entity])


def conditional_posterior(E, rr, alpha, mu_prior, Lambda_prior, side=None, entity=None):
    """
    Conditional posterior of one latent vector.
    E:  (K, d) latent vectors of the d rated entities on the other side.
    rr: (d,) ratings minus the global mean.
    Returns (mean, covar, lower Cholesky factor of covar).
    """
    K = Lambda_prior.shape[0]
    MM = alpha * (E @ E.T)
    Lrr = alpha * (E @ rr)
    P = Lambda_prior + MM
    try:
        P_chol = cholesky(P, lower=True)
        covar = cho_solve((P_chol, True), np.eye(K))
        covar = (covar + covar.T) / 2.0
        covar_chol = cholesky(covar, lower=True)
    except LinAlgError as e:
        raise NumericalError(
            f"Posterior precision is not positive definite: {e}",
            side=side, entity=entity) from e
    mean = covar @ (Lrr + Lambda_prior @ mu_prior)
    return mean, covar, covar_chol


def sample_entity(i, ratings, other, mean_rating, alpha, hp, rng=None, z=None, side=None):
    """
    Draw a new latent vector for column i of `ratings`.
    ratings: RatingMatrix whose column i lists the other side's entities
             that rated / were rated by i.
    other:   (K, n_other) latent matrix of the other side.
    hp:      HyperParams of i's side.
    z:       fixed standard-normal draw; taken from rng when None.
    """
    idx, vals = ratings.column(i)
    E = other[:, idx]
    rr = vals - mean_rating
    mean, _, covar_chol = conditional_posterior(
        E, rr, alpha, hp.mu, hp.Lambda, side=side, entity=i)
    if z is None:
        z = rng.standard_normal(len(mean))
    return covar_chol @ z + mean


def _sample_block(block, U, ratings, other, mean_rating, alpha, hp, key, side):
    # every entity writes only its own column of U
    for i in block:
        U[:, i] = sample_entity(i, ratings, other, mean_rating, alpha, hp,
                                rng=entity_rng(key, i), side=side)
    return len(block)


def sample_side(U, ratings, other, mean_rating, alpha, hp, key, lo=0, hi=None,
                n_jobs=1, verbose=True, side=None):
    """
    Resample columns lo..hi-1 of U in place on a thread pool.
    Returns the number of entities sampled.
    """
    if hi is None:
        hi = U.shape[1]
    if hi <= lo:
        return 0
    n_blocks = min(hi - lo, 4 * effective_n_jobs(n_jobs))
    blocks = np.array_split(np.arange(lo, hi), n_blocks)

    results = Parallel(n_jobs=n_jobs, prefer="threads", return_as="generator")(
        delayed(_sample_block)(block, U, ratings, other, mean_rating, alpha, hp, key, side)
        for block in blocks
    )
    done = 0
    for n in tqdm(results, total=len(blocks), desc=f"Sampling {side or 'entities'}",
                  leave=False, disable=not verbose):
        done += n
    return done
