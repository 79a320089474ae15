# bpmf/model/evaluate.py

import math
import numpy as np
import scipy.sparse as sp

DEFAULT_THRESHOLD = math.log10(200)


def predict_probe(probe, items, users, mean_rating):
    """
    Predictions for every entry of the probe matrix (users x items):
    dot(item_vector, user_vector) + mean_rating.
    items: (K, n_items), users: (K, n_users).
    """
    probe = sp.coo_matrix(probe)
    return np.einsum('ij,ij->j', items[:, probe.col], users[:, probe.row]) + mean_rating


def score(values, pred, threshold=DEFAULT_THRESHOLD):
    """(threshold accuracy, mean absolute difference) of pred against values."""
    correct = (values < threshold) == (pred < threshold)
    return float(correct.mean()), float(np.abs(values - pred).mean())


def eval_probe(probe, items, users, mean_rating, threshold=DEFAULT_THRESHOLD):
    """
    Returns (fraction of probe entries whose prediction falls on the same side
    of `threshold` as the true value, mean absolute difference).
    """
    probe = sp.coo_matrix(probe)
    if probe.nnz == 0:
        return float('nan'), float('nan')
    return score(probe.data, predict_probe(probe, items, users, mean_rating), threshold)


def _rmse(values, pred):
    return float(np.sqrt(np.mean((values - pred) ** 2)))


class Evaluator:
    """
    Scores latent matrices against the probe set. Post burn-in samples are
    folded into a running mean prediction, whose RMSE is reported as
    rmse_avg next to the single-sample rmse. A running sum of squared
    deviations (Welford) gives the posterior spread of each prediction;
    pred_std is its mean over the held-out entries.
    """
    def __init__(self, probe, mean_rating, burnin=0, threshold=DEFAULT_THRESHOLD):
        self.probe = sp.coo_matrix(probe)
        self.mean_rating = mean_rating
        self.burnin = burnin
        self.threshold = threshold
        self.pred_avg = np.zeros(self.probe.nnz)
        self.pred_m2 = np.zeros(self.probe.nnz)
        self.num_avg = 0

    @property
    def pred_var(self):
        """Sample variance of the averaged predictions, zero before two samples."""
        if self.num_avg < 2:
            return np.zeros_like(self.pred_m2)
        return self.pred_m2 / (self.num_avg - 1)

    def __call__(self, iteration, items, users):
        if self.probe.nnz == 0:
            nan = float('nan')
            return {'accuracy': nan, 'avg_diff': nan, 'rmse': nan, 'rmse_avg': nan,
                    'pred_std': nan}

        values = self.probe.data
        pred = predict_probe(self.probe, items, users, self.mean_rating)
        accuracy, avg_diff = score(values, pred, self.threshold)
        rmse = _rmse(values, pred)
        if iteration >= self.burnin:
            self.num_avg += 1
            delta = pred - self.pred_avg
            self.pred_avg += delta / self.num_avg
            self.pred_m2 += delta * (pred - self.pred_avg)
            rmse_avg = _rmse(values, self.pred_avg)
        else:
            rmse_avg = rmse
        return {'accuracy': accuracy, 'avg_diff': avg_diff, 'rmse': rmse, 'rmse_avg': rmse_avg,
                'pred_std': float(np.sqrt(self.pred_var).mean())}
