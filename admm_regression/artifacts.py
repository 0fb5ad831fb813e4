"""
Layout of the artifacts of a job under its output base path:

    tmp-data/                      prepared training records
    lambda-rho/                    (lambda, rho) table
    initial-model/                 mean model of the naive per-key fits
    models/                        naive per-key fits
    iter-<i>/u/                    scaled dual variable u per partition key
    iter-<i>/init-value/           consensus model z at the start of iteration i
    iter-<i>/model/                per-partition x and u + x
    final-model/                   consensus model per lambda
    best-model/best-iteration-<i>  model with the best held-out log-likelihood
    sample-test-loglik/            held-out log-likelihood per iteration
    test-prediction/<name>/        predictions of the held-out records per model
    item-models/                   per-item models and posterior variances
    item-test-loglik/              held-out log-likelihood per item model grid point

The artifacts are outputs only: a running job keeps its state in memory and
never reads them back.
"""
import logging
import shutil
from pathlib import Path
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Tuple
from typing import Union

from admm_regression.constants import INTERCEPT_NAME
from admm_regression.models.linear_model import LinearModel
from admm_regression.records import ITEM_MODEL_SCHEMA
from admm_regression.records import ITEM_TEST_LOGLIK_SCHEMA
from admm_regression.records import LAMBDA_RHO_SCHEMA
from admm_regression.records import MODEL_SCHEMA
from admm_regression.records import SAMPLE_TEST_LOGLIK_SCHEMA
from admm_regression.records import TRAIN_OUTPUT_SCHEMA
from admm_regression.records import TRAINING_RECORD_SCHEMA
from admm_regression.records import read_records
from admm_regression.records import write_records

logger = logging.getLogger(__name__)

PART_FILE = "part-00000.arrow"


def model_record(key: str, model: LinearModel) -> Dict:
    return {"key": key, "model": model.to_triples(INTERCEPT_NAME)}


def write_models(path: Union[str, Path], models: Mapping[str, LinearModel]):
    write_records(
        path,
        [model_record(key, model) for key, model in sorted(models.items())],
        schema=MODEL_SCHEMA,
    )


def read_models(path: Union[str, Path]) -> Dict[str, LinearModel]:
    return {
        record["key"]: LinearModel.from_triples(INTERCEPT_NAME, record["model"])
        for record in read_records(path)
    }


class ArtifactStore:
    def __init__(self, output_base_path: Union[str, Path]):
        self.base_path = Path(output_base_path)

    @property
    def tmp_data_path(self) -> Path:
        return self.base_path / "tmp-data" / PART_FILE

    @property
    def lambda_rho_path(self) -> Path:
        return self.base_path / "lambda-rho" / PART_FILE

    @property
    def initial_model_path(self) -> Path:
        return self.base_path / "initial-model" / PART_FILE

    @property
    def naive_models_path(self) -> Path:
        return self.base_path / "models" / PART_FILE

    @property
    def final_model_path(self) -> Path:
        return self.base_path / "final-model" / PART_FILE

    @property
    def best_model_dir(self) -> Path:
        return self.base_path / "best-model"

    def prediction_path(self, name: str) -> Path:
        return self.base_path / "test-prediction" / name / PART_FILE

    @property
    def item_models_path(self) -> Path:
        return self.base_path / "item-models" / PART_FILE

    @property
    def item_test_loglik_path(self) -> Path:
        return self.base_path / "item-test-loglik" / PART_FILE

    def iteration_dir(self, iteration: int) -> Path:
        return self.base_path / f"iter-{iteration}"

    def u_path(self, iteration: int) -> Path:
        return self.iteration_dir(iteration) / "u" / PART_FILE

    def init_value_path(self, iteration: int) -> Path:
        return self.iteration_dir(iteration) / "init-value" / PART_FILE

    def model_path(self, iteration: int) -> Path:
        return self.iteration_dir(iteration) / "model" / PART_FILE

    def best_model_path(self, iteration: int) -> Path:
        return self.best_model_dir / f"best-iteration-{iteration}.arrow"

    def sample_test_loglik_path(self, iteration: int) -> Path:
        return self.base_path / "sample-test-loglik" / f"iteration-{iteration}.arrow"

    def write_training_records(self, records: List[Dict]):
        write_records(self.tmp_data_path, records, schema=TRAINING_RECORD_SCHEMA)

    def write_lambda_rho(self, lambda_rho: Mapping[float, float]):
        write_records(
            self.lambda_rho_path,
            [
                {"lambda": lambda_, "rho": rho}
                for lambda_, rho in sorted(lambda_rho.items())
            ],
            schema=LAMBDA_RHO_SCHEMA,
        )

    def write_iteration_inputs(
        self,
        iteration: int,
        u: Mapping[str, LinearModel],
        z: Mapping[str, LinearModel],
    ):
        write_models(self.u_path(iteration), u)
        write_models(self.init_value_path(iteration), z)

    def write_iteration_outputs(
        self,
        iteration: int,
        x: Mapping[str, LinearModel],
        u_plus_x: Mapping[str, LinearModel],
    ):
        write_records(
            self.model_path(iteration),
            [
                {
                    "key": key,
                    "model": x[key].to_triples(INTERCEPT_NAME),
                    "uplusx": u_plus_x[key].to_triples(INTERCEPT_NAME),
                }
                for key in sorted(x)
            ],
            schema=TRAIN_OUTPUT_SCHEMA,
        )

    def write_best_model(self, iteration: int, lambda_: str, model: LinearModel):
        """Replaces any previous best model."""
        shutil.rmtree(self.best_model_dir, ignore_errors=True)
        write_models(self.best_model_path(iteration), {lambda_: model})

    def write_sample_test_loglik(self, iteration: int, loglik: Mapping[str, float]):
        write_records(
            self.sample_test_loglik_path(iteration),
            [
                {"iter": iteration, "lambda": lambda_, "test_loglik": value}
                for lambda_, value in sorted(loglik.items())
            ],
            schema=SAMPLE_TEST_LOGLIK_SCHEMA,
        )

    def write_item_models(self, models):
        """Models are (model, posterior_var) pairs keyed by "grid#item"."""
        write_records(
            self.item_models_path,
            [
                {
                    "key": key,
                    "model": item.model.to_triples(INTERCEPT_NAME),
                    "posterior_var": item.posterior_var.to_triples(INTERCEPT_NAME),
                }
                for key, item in sorted(models.items())
            ],
            schema=ITEM_MODEL_SCHEMA,
        )

    def write_item_test_loglik(self, loglik: Mapping[str, Tuple[float, float]]):
        write_records(
            self.item_test_loglik_path,
            [
                {"key": key, "test_loglik": value, "count": count}
                for key, (value, count) in sorted(loglik.items())
            ],
            schema=ITEM_TEST_LOGLIK_SCHEMA,
        )

    def remove_training_records(self):
        self._remove(self.tmp_data_path.parent)

    def remove_iteration(self, iteration: int):
        self._remove(self.iteration_dir(iteration))

    def remove_tmp_dirs(self, last_iteration: Optional[int] = None):
        self._remove(self.initial_model_path.parent)
        if last_iteration is not None:
            for iteration in range(last_iteration - 2, last_iteration + 1):
                self.remove_iteration(iteration)
        self.remove_training_records()

    @staticmethod
    def _remove(path: Path):
        if path.exists():
            logger.debug(f"Removing {path}")
            shutil.rmtree(path)
