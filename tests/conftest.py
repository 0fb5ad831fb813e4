import logging

import numpy as np
import pytest

from admm_regression.config import parse_config
from admm_regression.logger import PACKAGE_LOGGER_NAME

TRUE_INTERCEPT = -0.5
TRUE_COEFFICIENTS = {"x1": 1.5, "x2": -2.0, "x3": 0.0, "x4": 0.7}


def synthetic_records(n_records, seed=0, coefficients=None, intercept=TRUE_INTERCEPT):
    """Raw records of a logistic model with dense gaussian features."""
    coefficients = coefficients or TRUE_COEFFICIENTS
    rng = np.random.default_rng(seed)
    names = sorted(coefficients)
    beta = np.array([coefficients[name] for name in names])
    x = rng.normal(size=(n_records, len(names)))
    p = 1.0 / (1.0 + np.exp(-(x @ beta + intercept)))
    y = (rng.random(n_records) < p).astype(int)
    return [
        {
            "response": int(y[i]),
            "features": [
                {"name": name, "term": "", "value": float(x[i, j])}
                for j, name in enumerate(names)
            ],
        }
        for i in range(n_records)
    ]


@pytest.fixture
def make_records():
    return synthetic_records


@pytest.fixture
def job_config_dict(tmp_path):
    return {
        "job_id": "test-job",
        "log_level": "DEBUG",
        "output_base_path": str(tmp_path / "output"),
        "prepare": {"input_paths": [str(tmp_path / "input")], "num_blocks": 2},
        "admm": {"lambdas": [1.0], "regularizer": "L2", "num_iters": 10},
    }


@pytest.fixture
def make_job_config(job_config_dict):
    def _make(**sections):
        config = {
            key: dict(value) if isinstance(value, dict) else value
            for key, value in job_config_dict.items()
        }
        for key, value in sections.items():
            if isinstance(value, dict):
                config.setdefault(key, {}).update(value)
            else:
                config[key] = value
        return parse_config(config)

    return _make


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
