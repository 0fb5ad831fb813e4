import logging
import math
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional

from admm_regression.artifacts import ArtifactStore
from admm_regression.artifacts import write_models
from admm_regression.config import FitterConfig
from admm_regression.config import JobConfig
from admm_regression.config import NaiveTrainConfig
from admm_regression.constants import INTERCEPT_NAME
from admm_regression.constants import UNPENALIZED_INTERCEPT_VAR
from admm_regression.dataset import build_dataset
from admm_regression.execution import ExecutionEngine
from admm_regression.execution import check_barrier
from admm_regression.fitter import BayesianLogisticRegression
from admm_regression.fitter import FitOptions
from admm_regression.logger import log_method_call
from admm_regression.models.linear_model import LinearModel
from admm_regression.models.linear_model import mean_models
from admm_regression.utils import get_lambda
from admm_regression.utils import lambda_key
from admm_regression.utils import partition_key

logger = logging.getLogger(__name__)

NAIVE_SOLVER_EPSILON = 0.001


def inverse(value: float) -> float:
    """1/value, where a zero regularization means an unbounded prior variance."""
    return math.inf if value == 0 else 1.0 / value


def prior_variances(
    lambda_map: Optional[Mapping[str, float]], penalize_intercept: bool
) -> Dict[str, float]:
    """Per-feature prior variances 1/lambda_k of the independent fits."""
    variances = {key: inverse(value) for key, value in (lambda_map or {}).items()}
    if not penalize_intercept:
        variances[INTERCEPT_NAME] = UNPENALIZED_INTERCEPT_VAR
    return variances


def train_naive_partition(
    key: str,
    records: List[Mapping],
    fitter_config: FitterConfig,
    naive_config: NaiveTrainConfig,
    prior_var: Dict[str, float],
    epsilon: float,
    ignore_value: bool = False,
) -> Optional[LinearModel]:
    """
    Fits the records of one "lambda#key" on their own, under the prior
    N(prior_mean, 1/lambda). Keys with fewer records than the data size
    threshold deliver no model.
    """
    dataset = build_dataset(
        records,
        binary_feature=fitter_config.binary_feature,
        short_feature_index=fitter_config.short_feature_index,
        bias=1.0 if fitter_config.has_intercept else 0.0,
        ignore_value=ignore_value,
    )
    if dataset.n_instances < naive_config.data_size_threshold:
        logger.info(
            f"Skipping {key}: {dataset.n_instances} records is below the "
            f"data size threshold {naive_config.data_size_threshold}"
        )
        return None
    fitter = BayesianLogisticRegression()
    fitter.fit(
        dataset,
        prior_var=prior_var,
        default_prior_mean=naive_config.prior_mean,
        default_prior_var=inverse(float(get_lambda(key))),
        options=FitOptions(epsilon=epsilon, max_iter=fitter_config.max_iter),
    )
    return fitter.get_linear_model()


class NaiveTrainer:
    """
    Independent per-key fits, one for every lambda and every partition of
    the training records, and their mean per lambda.
    """

    def __init__(
        self,
        config: JobConfig,
        engine: ExecutionEngine,
        lambda_map: Optional[Mapping[str, float]] = None,
        artifacts: Optional[ArtifactStore] = None,
        epsilon: Optional[float] = None,
    ):
        self.config = config
        self.engine = engine
        self.lambda_map = dict(lambda_map or {})
        self.artifacts = artifacts
        if epsilon is None:
            epsilon = config.naive_train.liblinear_epsilon
        self.epsilon = epsilon if epsilon is not None else NAIVE_SOLVER_EPSILON

    @property
    def n_blocks(self) -> int:
        return self.config.prepare.num_blocks

    @log_method_call
    def train(self, partitions: Mapping[str, List[Mapping]]) -> Dict[str, LinearModel]:
        prior_var = prior_variances(
            self.lambda_map, self.config.fitter.penalize_intercept
        )
        tasks = {
            partition_key(lambda_, block): dict(
                key=partition_key(lambda_, block),
                records=records,
                fitter_config=self.config.fitter,
                naive_config=self.config.naive_train,
                prior_var=prior_var,
                epsilon=self.epsilon,
                ignore_value=self.config.prepare.ignore_value,
            )
            for lambda_ in self.config.admm.lambdas
            for block, records in partitions.items()
        }
        results = self.engine.run_on_partitions(train_naive_partition, tasks)
        models = {key: model for key, model in results.items() if model is not None}
        logger.info(f"Trained {len(models)} naive models out of {len(tasks)} keys.")
        if self.artifacts is not None:
            write_models(self.artifacts.naive_models_path, models)
        return models

    def mean_models(self, models: Mapping[str, LinearModel]) -> Dict[str, LinearModel]:
        """Mean model per lambda. Every lambda and block must have its model."""
        check_barrier(models, len(self.config.admm.lambdas) * self.n_blocks)
        means = mean_models(models, self.n_blocks)
        for lambda_ in self.config.admm.lambdas:
            means.setdefault(lambda_key(lambda_), LinearModel())
        return means
