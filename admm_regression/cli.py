import logging
from functools import wraps
from pathlib import Path
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional

import click
import numpy as np

from admm_regression.admm import AdmmTrainer
from admm_regression.artifacts import ArtifactStore
from admm_regression.config import JobConfig
from admm_regression.config import load_config
from admm_regression.constants import INTERCEPT_NAME
from admm_regression.constants import MAX_NTEST_EVENTS
from admm_regression.dataset import BinaryDataset
from admm_regression.dataset import Dataset
from admm_regression.evaluation import predict
from admm_regression.evaluation import prediction_loglik
from admm_regression.exceptions import DataError
from admm_regression.exceptions import FitError
from admm_regression.exceptions import FormatError
from admm_regression.exceptions import StateError
from admm_regression.execution import create_engine
from admm_regression.execution import group_by_key
from admm_regression.fitter import BayesianLogisticRegression
from admm_regression.item_model import ItemModelTrainer
from admm_regression.item_model import grid_keys
from admm_regression.item_model import score_item_records
from admm_regression.logger import init_logger
from admm_regression.models.linear_model import LinearModel
from admm_regression.prepare import prepare_records
from admm_regression.records import enumerate_files
from admm_regression.records import read_intercept_prior_means
from admm_regression.records import read_lambda_map
from admm_regression.records import read_records
from admm_regression.records import write_records
from admm_regression.utils import lambda_key

logger = logging.getLogger(__name__)

BEST_MODEL_PREDICTION = "best-model"


def exit_on_error(func):
    """Known failures end the command with exit status 1 and their message."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (FormatError, DataError, StateError, FitError) as exc:
            logger.error(exc.message)
            raise click.ClickException(exc.message)
        except OSError as exc:
            logger.error(str(exc))
            raise click.ClickException(str(exc))

    return wrapper


@click.group()
def cli():
    """
    Distributed L1/L2 logistic regression fitted by consensus ADMM over
    partitions of the training data.
    """
    pass


@cli.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@exit_on_error
def train(config_path):
    """Prepares the data, runs ADMM and, if configured, scores the test data."""
    config = load_config(config_path)
    init_logger(config.job_id, config.log_level)
    artifacts = ArtifactStore(config.output_base_path)
    partitions = prepare_partitions(config, artifacts)

    lambda_map = {}
    if config.admm.lambda_map_path:
        lambda_map = read_lambda_map(config.admm.lambda_map_path)
    test_records = read_test_records(config.test_path) if config.test_path else None

    with create_engine(config.execution) as engine:
        trainer = AdmmTrainer(
            config,
            engine,
            artifacts=artifacts,
            lambda_map=lambda_map,
            test_records=test_records,
        )
        result = trainer.train(partitions)

    if config.predict and test_records:
        write_predictions(config, artifacts, result.final_models, test_records)
        if result.best_model is not None:
            write_prediction(
                config,
                artifacts,
                BEST_MODEL_PREDICTION,
                LinearModel.from_triples(INTERCEPT_NAME, result.best_model),
                test_records,
            )

    click.echo(
        f"ADMM finished with status {result.status.value} after "
        f"{result.iterations} iterations."
    )
    if result.best_lambda is not None:
        click.echo(
            f"Best model: lambda={result.best_lambda}, "
            f"iteration={result.best_iteration}, "
            f"test loglik={result.best_test_loglik}"
        )


def prepare_partitions(
    config: JobConfig, artifacts: ArtifactStore
) -> Dict[str, List[Dict]]:
    """Reads the input records, keys them and writes them under tmp-data."""
    raw_records = []
    for input_path in config.prepare.input_paths:
        raw_records.extend(read_records(input_path))
    prepared = prepare_records(
        raw_records,
        num_blocks=config.prepare.num_blocks,
        map_key=config.prepare.map_key,
        num_click_replicates=config.prepare.num_click_replicates,
        ignore_value=config.prepare.ignore_value,
        rng=np.random.default_rng(config.prepare.seed),
    )
    artifacts.write_training_records(prepared)
    return group_by_key(prepared)


def read_test_records(test_path: str) -> List[Dict]:
    """The records of the first file under the test path, at most MAX_NTEST_EVENTS."""
    files = enumerate_files(test_path)
    if not files:
        raise FormatError(f"There is no test data under '{test_path}'")
    return read_records(files[0])[:MAX_NTEST_EVENTS]


def write_predictions(
    config: JobConfig,
    artifacts: ArtifactStore,
    final_models: Mapping[str, List[Dict]],
    test_records: List[Dict],
):
    for lambda_, triples in final_models.items():
        write_prediction(
            config,
            artifacts,
            f"lambda-{lambda_key(lambda_)}",
            LinearModel.from_triples(INTERCEPT_NAME, triples),
            test_records,
        )


def write_prediction(
    config: JobConfig,
    artifacts: ArtifactStore,
    name: str,
    model: LinearModel,
    test_records: List[Dict],
):
    predictions = predict(
        model,
        test_records,
        num_click_replicates=config.prepare.num_click_replicates,
        ignore_value=config.prepare.ignore_value,
    )
    write_records(artifacts.prediction_path(name), predictions)
    logger.info(f"Wrote {len(predictions)} predictions of {name}.")


@cli.command("train-items")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@exit_on_error
def train_items(config_path):
    """
    Fits one model per item and grid point and, if a test path is configured,
    scores the test data with them.
    """
    config = load_config(config_path)
    init_logger(config.job_id, config.log_level)
    if config.item_model is None:
        raise FormatError("The job configuration has no [item_model] section.")
    if not config.prepare.map_key:
        raise FormatError("Item models need prepare.map_key to name the item column.")
    item_config = config.item_model
    artifacts = ArtifactStore(config.output_base_path)
    partitions = prepare_partitions(config, artifacts)

    lambda_map = {}
    if item_config.lambda_map_path:
        lambda_map = read_lambda_map(item_config.lambda_map_path)
    intercept_prior_means = {}
    if item_config.intercept_prior_mean_map_path:
        intercept_prior_means = read_intercept_prior_means(
            item_config.intercept_prior_mean_map_path
        )

    with create_engine(config.execution) as engine:
        trainer = ItemModelTrainer(
            config,
            engine,
            artifacts=artifacts,
            lambda_map=lambda_map,
            intercept_prior_means=intercept_prior_means,
        )
        models = trainer.train(partitions)
    click.echo(f"Trained {len(models)} item models for {len(partitions)} items.")

    if not config.test_path:
        return
    test_records = read_test_records(config.test_path)
    item_key = item_config.item_key or config.prepare.map_key
    loglik = {}
    for grid in grid_keys(item_config):
        predictions = score_item_records(
            models,
            grid,
            test_records,
            item_key,
            ignore_value=config.prepare.ignore_value,
        )
        if config.predict:
            write_records(artifacts.prediction_path(f"item-{grid}"), predictions)
        loglik[grid] = prediction_loglik(predictions)
        click.echo(f"Item models {grid}: test loglik={loglik[grid][0]}")
    artifacts.write_item_test_loglik(loglik)


@cli.command()
@click.option(
    "--data",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Training data in LibSVM format.",
)
@click.option(
    "--out",
    required=True,
    type=click.Path(dir_okay=False),
    help="Output file of the fitted coefficients.",
)
@click.option(
    "--prior-var", required=True, type=float, help="Prior variance of every feature."
)
@click.option(
    "--bias",
    default=0.0,
    type=float,
    help="Set to 1 to add an intercept feature of value 1 to every instance.",
)
@click.option(
    "--param",
    type=click.Path(exists=True, dir_okay=False),
    help="Prior means, one '<feature> = <value>' per line.",
)
@click.option(
    "--init",
    type=click.Path(exists=True, dir_okay=False),
    help="Initial values, one '<feature> = <value>' per line.",
)
@click.option("--posterior-var/--no-posterior-var", default=True)
@click.option("--posterior-cov/--no-posterior-cov", default=False)
@click.option("--binary-feature", is_flag=True, help="All feature values are 1.")
@click.option("--use-short", is_flag=True, help="Store feature indices as int16.")
@click.option(
    "--option",
    default=None,
    help="Comma-separated options, e.g. max_iter=5,epsilon=0.01,positive_weight=2",
)
@click.option("--log-level", default="INFO")
@exit_on_error
def fit(
    data,
    out,
    prior_var,
    bias,
    param,
    init,
    posterior_var,
    posterior_cov,
    binary_feature,
    use_short,
    option,
    log_level,
):
    """Fits a single block of LibSVM data and writes the posterior."""
    init_logger("fit", log_level.upper())
    if posterior_cov and not posterior_var:
        raise FormatError(
            "Cannot compute posterior covariances with --no-posterior-var"
        )
    prior_mean = read_param_map(param) if param else None
    init_param = read_param_map(init) if init else None

    if binary_feature:
        dataset = BinaryDataset(bias, use_short=use_short)
    else:
        dataset = Dataset(bias)
    dataset.read_libsvm(data)
    dataset.finish()

    fitter = BayesianLogisticRegression(compute_full_posterior_var=posterior_cov)
    fitter.fit(
        dataset,
        init_param=init_param,
        prior_mean=prior_mean,
        default_prior_var=prior_var,
        options=option,
        compute_posterior_var=posterior_var,
    )
    write_param_map(out, fitter.coefficients)
    if posterior_var:
        write_param_map(f"{out}.var", fitter.posterior_var)
        if posterior_cov:
            with open(f"{out}.cov", "w") as file:
                for (name_i, name_j), value in fitter.posterior_cov.items():
                    file.write(f"[{name_i}, {name_j}] = {value!r}\n")
    click.echo(
        f"Fitted {dataset.n_features} features on {dataset.n_instances} instances "
        f"in {fitter.n_iterations} iterations."
    )


def read_param_map(path) -> Dict[str, float]:
    """Reads '<name> = <value>' lines; the value follows the last '='."""
    params = {}
    with open(path) as file:
        for line_no, line in enumerate(file, 1):
            line = line.strip()
            if not line:
                continue
            name, separator, value = line.rpartition("=")
            name = name.strip()
            if not separator or not name:
                raise FormatError(
                    f"Format error in file '{path}' at line {line_no}: {line}"
                )
            try:
                params[name] = float(value)
            except ValueError:
                raise FormatError(
                    f"Format error in file '{path}' at line {line_no}: {line}"
                )
    return params


def write_param_map(path, params: Optional[Mapping[str, float]]):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as file:
        for name in sorted(params or {}):
            file.write(f"{name} = {params[name]!r}\n")


if __name__ == "__main__":
    cli()
