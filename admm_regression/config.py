import os
from enum import Enum
from enum import unique
from importlib.resources import files
from pathlib import Path
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

import envtoml
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import ValidationError
from pydantic import field_validator
from pydantic import model_validator

import admm_regression
from admm_regression.constants import Regularizer
from admm_regression.exceptions import FormatError
from admm_regression.utils import AttrDict

CONFIG_FILE_ENV_VARIABLE = "ADMM_REGRESSION_CONFIG_FILE"


class ImmutableBaseModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PrepareConfig(ImmutableBaseModel):
    input_paths: List[str]
    num_blocks: int
    map_key: str = ""
    num_click_replicates: int = 1
    ignore_value: bool = False
    seed: int = 0

    @field_validator("num_blocks", "num_click_replicates")
    @classmethod
    def validate_at_least_one(cls, value: int):
        if value < 1:
            raise ValueError("must be at least 1")
        return value


class FitterConfig(ImmutableBaseModel):
    binary_feature: bool = False
    short_feature_index: bool = False
    has_intercept: bool = True
    penalize_intercept: bool = False
    max_iter: int = 10000


class AdmmConfig(ImmutableBaseModel):
    lambdas: List[float]
    rhos: Optional[List[float]] = None
    regularizer: Regularizer = Regularizer.L2
    num_iters: int = 10
    epsilon: float = 0.0001
    aggressive_liblinear_epsilon_decay: bool = False
    initialize_boost_rate: float = 0.0
    rho_adapt_coefficient: float = 0.0
    lambda_map_path: str = ""
    remove_tmp_dir: bool = False

    @field_validator("regularizer", mode="before")
    @classmethod
    def validate_regularizer(cls, value):
        return Regularizer.from_code(value)

    @field_validator("lambdas")
    @classmethod
    def validate_lambdas(cls, lambdas: List[float]):
        if not lambdas:
            raise ValueError("at least one lambda is required")
        if any(lambda_ < 0 for lambda_ in lambdas):
            raise ValueError("lambdas cannot be negative")
        if len(set(lambdas)) != len(lambdas):
            raise ValueError("lambdas must be distinct")
        return lambdas

    @model_validator(mode="after")
    def validate_rhos(self):
        if self.rhos is not None and len(self.rhos) != len(self.lambdas):
            raise FormatError(
                "The number of rho's should be exactly the same as the number "
                "of lambda's. OR: don't claim rho!"
            )
        return self


class NaiveTrainConfig(ImmutableBaseModel):
    prior_mean: float = 0.0
    data_size_threshold: int = 0
    liblinear_epsilon: Optional[float] = None


class ItemModelConfig(ImmutableBaseModel):
    intercept_lambdas: List[float]
    default_lambdas: List[float]
    intercept_default_prior_mean: float = 0.0
    intercept_prior_mean_map_path: str = ""
    lambda_map_path: str = ""
    item_key: str = ""
    liblinear_epsilon: float = 0.001
    compute_var: bool = False
    remove_tmp_dir: bool = True

    @field_validator("intercept_lambdas", "default_lambdas")
    @classmethod
    def validate_lambdas(cls, lambdas: List[float]):
        if not lambdas:
            raise ValueError("at least one lambda is required")
        if any(lambda_ < 0 for lambda_ in lambdas):
            raise ValueError("lambdas cannot be negative")
        return lambdas


@unique
class EngineType(str, Enum):
    IN_MEMORY = "in_memory"
    PROCESS_POOL = "process_pool"


class ExecutionConfig(ImmutableBaseModel):
    engine: EngineType = EngineType.IN_MEMORY
    max_workers: Optional[int] = None


class JobConfig(ImmutableBaseModel):
    job_id: str = "admm-regression"
    log_level: str = "INFO"
    output_base_path: str
    test_path: str = ""
    predict: bool = False
    prepare: PrepareConfig
    admm: AdmmConfig
    fitter: FitterConfig = FitterConfig()
    naive_train: NaiveTrainConfig = NaiveTrainConfig()
    item_model: Optional[ItemModelConfig] = None
    execution: ExecutionConfig = ExecutionConfig()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, log_level: str):
        log_level = log_level.upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {log_level}")
        return log_level


def load_config_dict(path: Union[str, Path, None] = None) -> AttrDict:
    """
    Reads the TOML configuration of a job. The file is, in order of
    precedence, the given path, the file named by ADMM_REGRESSION_CONFIG_FILE,
    or the packaged config.toml. Values may reference environment variables.
    """
    if path is None:
        path = os.getenv(CONFIG_FILE_ENV_VARIABLE)
    if path is not None:
        with open(path) as fp:
            return AttrDict(envtoml.load(fp))
    with files(admm_regression).joinpath("config.toml").open() as fp:
        return AttrDict(envtoml.load(fp))


def load_config(
    path: Union[str, Path, None] = None, overrides: Optional[Dict] = None
) -> JobConfig:
    config = load_config_dict(path)
    if overrides:
        config.update(overrides)
    return parse_config(config)


def parse_config(config: Dict) -> JobConfig:
    try:
        return JobConfig.model_validate(config)
    except ValidationError as exc:
        raise FormatError(f"Invalid job configuration: {exc}")
