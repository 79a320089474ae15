import math

import numpy as np
import pytest
import scipy.sparse as sp

from bpmf.model.evaluate import DEFAULT_THRESHOLD, Evaluator, eval_probe, predict_probe


@pytest.fixture
def exact_model():
    """Rank-1 factors whose predictions hit the probe values exactly."""
    probe = sp.coo_matrix(([4.0, 1.0], ([0, 1], [0, 1])), shape=(2, 2))
    users = np.array([[1.0, 1.0]])
    items = np.array([[1.0, -2.0]])
    return probe, items, users, 3.0


def test_default_threshold():
    assert DEFAULT_THRESHOLD == pytest.approx(math.log10(200))


def test_predictions(exact_model):
    probe, items, users, mean = exact_model
    np.testing.assert_allclose(predict_probe(probe, items, users, mean), [4.0, 1.0])


def test_exact_predictions_are_fully_accurate(exact_model):
    probe, items, users, mean = exact_model
    accuracy, avg_diff = eval_probe(probe, items, users, mean)
    assert accuracy == 1.0
    assert avg_diff == 0.0


def test_classification_uses_threshold():
    probe = sp.coo_matrix(([4.0, 1.0], ([0, 1], [0, 1])), shape=(2, 2))
    users = np.zeros((2, 2))
    items = np.zeros((2, 2))
    # every prediction equals the mean rating 3.0
    accuracy, avg_diff = eval_probe(probe, items, users, 3.0)
    assert accuracy == 0.5
    assert avg_diff == pytest.approx(1.5)

    accuracy, _ = eval_probe(probe, items, users, 3.0, threshold=0.5)
    assert accuracy == 1.0


def test_empty_probe():
    accuracy, avg_diff = eval_probe(sp.coo_matrix((2, 2)), np.zeros((1, 2)), np.zeros((1, 2)), 3.0)
    assert math.isnan(accuracy)
    assert math.isnan(avg_diff)


def test_evaluator_averages_after_burnin(exact_model):
    probe, items, users, mean = exact_model
    ev = Evaluator(probe, mean, burnin=1)

    r0 = ev(0, items + 1.0, users)
    assert r0['rmse_avg'] == r0['rmse']
    assert ev.num_avg == 0

    r1 = ev(1, items + 1.0, users)
    assert r1['rmse'] == pytest.approx(1.0)
    r2 = ev(2, items - 1.0, users)
    # +1 and -1 errors cancel in the averaged prediction
    assert r2['rmse'] == pytest.approx(1.0)
    assert r2['rmse_avg'] == pytest.approx(0.0, abs=1e-12)
    assert ev.num_avg == 2


def test_evaluator_does_not_touch_factors(exact_model):
    probe, items, users, mean = exact_model
    items_before, users_before = items.copy(), users.copy()
    Evaluator(probe, mean)(0, items, users)
    np.testing.assert_array_equal(items, items_before)
    np.testing.assert_array_equal(users, users_before)


def test_evaluator_predicts_once_per_iteration(exact_model, monkeypatch):
    import bpmf.model.evaluate as evaluate
    calls = []

    def counting_predict(*args):
        calls.append(1)
        return predict_probe(*args)

    monkeypatch.setattr(evaluate, 'predict_probe', counting_predict)
    probe, items, users, mean = exact_model
    record = Evaluator(probe, mean)(0, items, users)
    assert len(calls) == 1
    assert record['accuracy'] == 1.0
    assert record['avg_diff'] == 0.0
    assert record['rmse'] == 0.0


def test_evaluator_tracks_prediction_spread(exact_model):
    probe, items, users, mean = exact_model
    ev = Evaluator(probe, mean, burnin=1)

    assert ev(0, items + 7.0, users)['pred_std'] == 0.0
    assert ev(1, items + 1.0, users)['pred_std'] == 0.0
    r = ev(2, items - 1.0, users)
    # samples 5, 3 and 2, 0 around means 4 and 1
    np.testing.assert_allclose(ev.pred_var, [2.0, 2.0])
    assert r['pred_std'] == pytest.approx(math.sqrt(2.0))


def test_prediction_spread_matches_sample_variance(exact_model):
    probe, items, users, mean = exact_model
    rng = np.random.default_rng(3)
    ev = Evaluator(probe, mean)
    preds = []
    for it in range(6):
        sample = items + rng.normal(size=items.shape)
        preds.append(predict_probe(probe, sample, users, mean))
        ev(it, sample, users)
    preds = np.array(preds)
    np.testing.assert_allclose(ev.pred_avg, preds.mean(axis=0))
    np.testing.assert_allclose(ev.pred_var, preds.var(axis=0, ddof=1))


def test_empty_evaluator_reports_nan():
    record = Evaluator(sp.coo_matrix((2, 2)), 3.0)(0, np.zeros((1, 2)), np.zeros((1, 2)))
    assert all(math.isnan(v) for v in record.values())
