"""
Per-item Bayesian logistic regressions.

Every item (the value of the item key column) gets its own fit for every
point of the (intercept lambda, default lambda) grid. The intercept has
prior N(intercept prior mean of the item, 1/intercept lambda) and every
other feature N(0, 1/lambda), where lambda comes from the lambda map or,
failing that, is the grid's default lambda.
"""
import logging
from pathlib import Path
from typing import Dict
from typing import List
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Union

from admm_regression.artifacts import ArtifactStore
from admm_regression.config import FitterConfig
from admm_regression.config import ItemModelConfig
from admm_regression.config import JobConfig
from admm_regression.constants import INTERCEPT_NAME
from admm_regression.dataset import build_dataset
from admm_regression.exceptions import FormatError
from admm_regression.execution import ExecutionEngine
from admm_regression.fitter import BayesianLogisticRegression
from admm_regression.fitter import FitOptions
from admm_regression.logger import log_method_call
from admm_regression.models.linear_model import LinearModel
from admm_regression.naive_train import inverse
from admm_regression.records import read_records
from admm_regression.utils import lambda_key

logger = logging.getLogger(__name__)

GRID_SEPARATOR = ":"
ITEM_SEPARATOR = "#"


class ItemModel(NamedTuple):
    model: LinearModel
    posterior_var: LinearModel


def grid_key(intercept_lambda, default_lambda) -> str:
    return GRID_SEPARATOR.join(
        (lambda_key(intercept_lambda), lambda_key(default_lambda))
    )


def item_model_key(grid: str, item: str) -> str:
    return f"{grid}{ITEM_SEPARATOR}{item}"


def grid_keys(item_config: ItemModelConfig) -> List[str]:
    return [
        grid_key(intercept_lambda, default_lambda)
        for intercept_lambda in item_config.intercept_lambdas
        for default_lambda in item_config.default_lambdas
    ]


def _as_model(params: Optional[Mapping[str, float]]) -> LinearModel:
    if not params:
        return LinearModel()
    if INTERCEPT_NAME in params:
        return LinearModel.from_map(INTERCEPT_NAME, params)
    return LinearModel(0.0, params)


def train_item_partition(
    item: str,
    records: List[Mapping],
    fitter_config: FitterConfig,
    item_config: ItemModelConfig,
    lambda_map: Mapping[str, float],
    intercept_prior_mean: float,
    ignore_value: bool = False,
) -> Dict[str, ItemModel]:
    """Fits the records of one item at every grid point, keyed by grid point."""
    dataset = build_dataset(
        records,
        binary_feature=fitter_config.binary_feature,
        short_feature_index=fitter_config.short_feature_index,
        bias=1.0,
        ignore_value=ignore_value,
    )
    feature_prior_var = {key: inverse(value) for key, value in lambda_map.items()}
    options = FitOptions(
        epsilon=item_config.liblinear_epsilon, max_iter=fitter_config.max_iter
    )
    models = {}
    for intercept_lambda in item_config.intercept_lambdas:
        prior_var = dict(feature_prior_var)
        prior_var[INTERCEPT_NAME] = inverse(intercept_lambda)
        for default_lambda in item_config.default_lambdas:
            fitter = BayesianLogisticRegression()
            fitter.fit(
                dataset,
                prior_mean={INTERCEPT_NAME: intercept_prior_mean},
                prior_var=prior_var,
                default_prior_mean=0.0,
                default_prior_var=inverse(default_lambda),
                options=options,
                compute_posterior_var=item_config.compute_var,
            )
            models[grid_key(intercept_lambda, default_lambda)] = ItemModel(
                fitter.get_linear_model(), _as_model(fitter.posterior_var)
            )
    logger.debug(
        f"Item {item}: fitted {len(models)} models on {dataset.n_instances} records"
    )
    return models


class ItemModelTrainer:
    """Independent per-item fits over the grid of intercept and default lambdas."""

    def __init__(
        self,
        config: JobConfig,
        engine: ExecutionEngine,
        artifacts: Optional[ArtifactStore] = None,
        lambda_map: Optional[Mapping[str, float]] = None,
        intercept_prior_means: Optional[Mapping[str, float]] = None,
    ):
        if config.item_model is None:
            raise FormatError("The job configuration has no [item_model] section.")
        self.config = config
        self.item_config = config.item_model
        self.engine = engine
        self.artifacts = artifacts
        self.lambda_map = dict(lambda_map or {})
        self.intercept_prior_means = dict(intercept_prior_means or {})

    def intercept_prior_mean(self, item: str) -> float:
        return self.intercept_prior_means.get(
            item, self.item_config.intercept_default_prior_mean
        )

    @log_method_call
    def train(self, partitions: Mapping[str, List[Mapping]]) -> Dict[str, ItemModel]:
        tasks = {
            item: dict(
                item=item,
                records=records,
                fitter_config=self.config.fitter,
                item_config=self.item_config,
                lambda_map=self.lambda_map,
                intercept_prior_mean=self.intercept_prior_mean(item),
                ignore_value=self.config.prepare.ignore_value,
            )
            for item, records in partitions.items()
        }
        results = self.engine.run_on_partitions(train_item_partition, tasks)
        models = {
            item_model_key(grid, item): model
            for item, grid_models in results.items()
            for grid, model in grid_models.items()
        }
        logger.info(f"Trained {len(models)} item models for {len(tasks)} items.")
        if self.artifacts is not None:
            self.artifacts.write_item_models(models)
            if self.item_config.remove_tmp_dir:
                self.artifacts.remove_training_records()
        return models


def read_item_models(path: Union[str, Path]) -> Dict[str, ItemModel]:
    return {
        record["key"]: ItemModel(
            LinearModel.from_triples(INTERCEPT_NAME, record["model"]),
            LinearModel.from_triples(INTERCEPT_NAME, record["posterior_var"]),
        )
        for record in read_records(path)
    }


def score_item_records(
    models: Mapping[str, ItemModel],
    grid: str,
    records: List[Mapping],
    item_key: str,
    ignore_value: bool = False,
) -> List[Dict]:
    """
    Scores every record with the model of its item at one grid point. Items
    without a model are scored by an empty model. The records keep their
    order and fields and gain a 'pred'.
    """
    predictions = []
    missing_items = set()
    for record in records:
        if record.get(item_key) is None:
            raise FormatError(f"data does not contain the column '{item_key}'")
        item = str(record[item_key])
        item_model = models.get(item_model_key(grid, item))
        if item_model is None:
            if item not in missing_items:
                logger.info(
                    f"No model for item {item} at {grid}, using an empty model"
                )
                missing_items.add(item)
            model = LinearModel()
        else:
            model = item_model.model
        prediction = dict(record)
        prediction["pred"] = model.eval_record(record, ignore_value=ignore_value)
        predictions.append(prediction)
    return predictions
