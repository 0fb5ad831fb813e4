import math

import pytest

from admm_regression import evaluation
from admm_regression.exceptions import DataError
from admm_regression.models import LinearModel


def record(response, value, weight=1.0):
    return {
        "response": response,
        "weight": weight,
        "features": [{"name": "a", "term": "", "value": value}],
    }


def test_loglik_is_the_weighted_mean():
    models = {"1.0": LinearModel(0.0, {"a": 1.0}), "10.0": LinearModel()}
    records = [record(1, 2.0, weight=3.0), record(0, 1.0)]

    loglik = evaluation.test_loglik(models, records)

    expected = (-3.0 * math.log1p(math.exp(-2.0)) - math.log1p(math.exp(1.0))) / 4.0
    assert loglik["1.0"] == pytest.approx(expected)
    assert loglik["10.0"] == pytest.approx(-math.log(2.0))


def test_loglik_reads_at_most_max_records():
    models = {"1.0": LinearModel(0.0, {"a": 1.0})}
    records = [record(1, 5.0), record(0, 5.0)]
    loglik = evaluation.test_loglik(models, records, max_records=1)
    assert loglik["1.0"] == pytest.approx(-math.log1p(math.exp(-5.0)))


def test_loglik_without_weight():
    with pytest.raises(DataError):
        evaluation.test_loglik({"1.0": LinearModel()}, [record(1, 1.0, weight=0.0)])
    with pytest.raises(DataError):
        evaluation.test_loglik({"1.0": LinearModel()}, [])


def test_predictions_are_sorted_by_score():
    model = LinearModel(0.5, {"a": -1.0})
    records = [record(1, -2.0), record(0, 3.0), record(1, 0.0)]
    predictions = evaluation.predict(model, records)
    assert [prediction["pred"] for prediction in predictions] == [-2.5, 0.5, 2.5]
    assert predictions[0]["response"] == 0
    assert "pred" not in records[0]


def test_prediction_loglik_is_the_weighted_mean_of_the_scores():
    predictions = [
        {"response": 1, "pred": 2.0, "weight": 3.0},
        {"response": 0, "pred": 1.0},
        {"response": -1, "pred": -800.0},
    ]

    loglik, count = evaluation.prediction_loglik(predictions)

    expected = (-3.0 * math.log1p(math.exp(-2.0)) - math.log1p(math.exp(1.0))) / 5.0
    assert count == 5.0
    assert loglik == pytest.approx(expected)


@pytest.mark.parametrize(
    "predictions",
    [
        [{"response": 2, "pred": 0.0}],
        [{"response": 1, "pred": 0.0, "weight": 0.0}],
        [],
    ],
)
def test_prediction_loglik_errors(predictions):
    with pytest.raises(DataError):
        evaluation.prediction_loglik(predictions)
