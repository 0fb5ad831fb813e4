import logging
import math
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Tuple

import numpy as np

from admm_regression.constants import MAX_NTEST_EVENTS
from admm_regression.exceptions import DataError
from admm_regression.models.linear_model import LinearModel
from admm_regression.records import get_float
from admm_regression.records import get_response

logger = logging.getLogger(__name__)


def test_loglik(
    models: Mapping[str, LinearModel],
    records: Iterable[Mapping],
    num_click_replicates: int = 1,
    ignore_value: bool = False,
    max_records: int = MAX_NTEST_EVENTS,
) -> Dict[str, float]:
    """
    Mean weighted log-likelihood of the held-out records under every model:
    Σ_i weight_i * loglik_i / Σ_i weight_i over at most max_records records.
    """
    terms = {key: [] for key in models}
    weights = []
    for record in records:
        for key, model in models.items():
            terms[key].append(
                model.eval_record(
                    record,
                    loglik=True,
                    num_click_replicates=num_click_replicates,
                    ignore_value=ignore_value,
                )
            )
        weights.append(get_float(record, "weight", 1.0))
        if len(weights) >= max_records:
            break
    total_weight = math.fsum(weights)
    if total_weight <= 0:
        raise DataError("There are no weighted test records to evaluate.")
    logger.info(
        f"Finished computing testloglik...Evaluated #test records={len(weights)}"
    )
    return {key: math.fsum(values) / total_weight for key, values in terms.items()}


def predict(
    model: LinearModel,
    records: Iterable[Mapping],
    num_click_replicates: int = 1,
    ignore_value: bool = False,
) -> List[Dict]:
    """
    The held-out records with their score under the model in an extra 'pred'
    field, ordered by the score.
    """
    predictions = []
    for record in records:
        prediction = dict(record)
        prediction["pred"] = model.eval_record(
            record,
            loglik=False,
            num_click_replicates=num_click_replicates,
            ignore_value=ignore_value,
        )
        predictions.append(prediction)
    predictions.sort(key=lambda prediction: prediction["pred"])
    return predictions


def prediction_loglik(predictions: Iterable[Mapping]) -> Tuple[float, float]:
    """
    Mean weighted log-likelihood of scored records, from their 'pred' field,
    and the total weight it was taken over.
    """
    terms = []
    weights = []
    for prediction in predictions:
        response = get_response(prediction)
        if response not in (1, 0, -1):
            raise DataError(f"response = {response} (only 1, 0, -1 are allowed)")
        score = get_float(prediction, "pred", 0.0)
        weight = get_float(prediction, "weight", 1.0)
        sign = -1.0 if response == 1 else 1.0
        terms.append(-float(np.logaddexp(0.0, sign * score)) * weight)
        weights.append(weight)
    total_weight = math.fsum(weights)
    if total_weight <= 0:
        raise DataError("There are no weighted predictions to evaluate.")
    return math.fsum(terms) / total_weight, total_weight
