import logging

import pytest

from admm_regression import INTERCEPT_NAME
from admm_regression.artifacts import ArtifactStore
from admm_regression.config import FitterConfig
from admm_regression.config import ItemModelConfig
from admm_regression.exceptions import FormatError
from admm_regression.execution import InMemoryExecutionEngine
from admm_regression.item_model import ItemModel
from admm_regression.item_model import ItemModelTrainer
from admm_regression.item_model import grid_key
from admm_regression.item_model import grid_keys
from admm_regression.item_model import read_item_models
from admm_regression.item_model import score_item_records
from admm_regression.item_model import train_item_partition
from admm_regression.models import LinearModel


def item_config(**values):
    values.setdefault("intercept_lambdas", [1.0])
    values.setdefault("default_lambdas", [1.0])
    return ItemModelConfig(**values)


def test_grid_keys():
    assert grid_key(0.1, 10) == "0.1:10.0"
    config = item_config(intercept_lambdas=[0.1, 1], default_lambdas=[2, 3])
    assert grid_keys(config) == ["0.1:2.0", "0.1:3.0", "1.0:2.0", "1.0:3.0"]


def test_one_model_per_grid_point(make_records):
    models = train_item_partition(
        "item",
        make_records(200),
        FitterConfig(),
        item_config(intercept_lambdas=[0.1, 1.0], default_lambdas=[0.1, 100.0]),
        lambda_map={},
        intercept_prior_mean=0.0,
    )
    assert sorted(models) == ["0.1:0.1", "0.1:100.0", "1.0:0.1", "1.0:100.0"]
    weak, strong = models["0.1:0.1"].model, models["0.1:100.0"].model
    assert weak.coefficients["x1"] > 0
    assert abs(strong.coefficients["x1"]) < abs(weak.coefficients["x1"])
    assert models["0.1:0.1"].posterior_var == LinearModel()


def test_intercept_prior_mean_and_lambda(make_records):
    models = train_item_partition(
        "item",
        make_records(300),
        FitterConfig(),
        item_config(intercept_lambdas=[1e-4, 1e4]),
        lambda_map={},
        intercept_prior_mean=3.0,
    )
    assert models["10000.0:1.0"].model.intercept == pytest.approx(3.0, abs=0.05)
    assert models["0.0001:1.0"].model.intercept < 0


def test_lambda_map_overrides_the_default_lambda(make_records):
    models = train_item_partition(
        "item",
        make_records(300),
        FitterConfig(),
        item_config(default_lambdas=[0.01]),
        lambda_map={"x1": 1e6},
        intercept_prior_mean=0.0,
    )
    model = models["1.0:0.01"].model
    assert abs(model.coefficients["x1"]) < 1e-2
    assert model.coefficients["x2"] < -1.0


def test_posterior_variances(make_records):
    models = train_item_partition(
        "item",
        make_records(200),
        FitterConfig(),
        item_config(intercept_lambdas=[2.0], default_lambdas=[4.0], compute_var=True),
        lambda_map={"unseen": 10.0},
        intercept_prior_mean=0.0,
    )
    posterior_var = models["2.0:4.0"].posterior_var
    assert 0 < posterior_var.intercept < 0.5
    assert sorted(posterior_var.coefficients) == ["unseen", "x1", "x2", "x3", "x4"]
    assert all(0 < posterior_var.coefficients[key] < 0.25 for key in ("x1", "x2"))
    assert posterior_var.coefficients["unseen"] == pytest.approx(0.1)


def test_trainer_writes_item_models(tmp_path, make_records, make_job_config):
    config = make_job_config(
        item_model={
            "intercept_lambdas": [1.0],
            "default_lambdas": [1.0, 10.0],
            "intercept_default_prior_mean": -1.0,
        }
    )
    artifacts = ArtifactStore(tmp_path)
    artifacts.write_training_records([])
    trainer = ItemModelTrainer(
        config,
        InMemoryExecutionEngine(),
        artifacts=artifacts,
        intercept_prior_means={"a": 2.0},
    )

    models = trainer.train({"a": make_records(100), "b": make_records(100, seed=1)})

    assert trainer.intercept_prior_mean("a") == 2.0
    assert trainer.intercept_prior_mean("b") == -1.0
    assert sorted(models) == ["1.0:1.0#a", "1.0:1.0#b", "1.0:10.0#a", "1.0:10.0#b"]
    assert read_item_models(artifacts.item_models_path) == models
    assert not artifacts.tmp_data_path.exists()


def test_trainer_keeps_the_training_records(tmp_path, make_records, make_job_config):
    config = make_job_config(
        item_model={
            "intercept_lambdas": [1.0],
            "default_lambdas": [1.0],
            "remove_tmp_dir": False,
        }
    )
    artifacts = ArtifactStore(tmp_path)
    artifacts.write_training_records([])
    ItemModelTrainer(config, InMemoryExecutionEngine(), artifacts=artifacts).train(
        {"a": make_records(50)}
    )
    assert artifacts.tmp_data_path.exists()


def test_trainer_requires_the_item_model_section(make_job_config):
    with pytest.raises(FormatError):
        ItemModelTrainer(make_job_config(), InMemoryExecutionEngine())


def scored_record(user, value, response=1):
    return {
        "user": user,
        "response": response,
        "offset": 0.5,
        "features": [{"name": "x", "term": "", "value": value}],
    }


def test_score_item_records(caplog):
    caplog.set_level(logging.INFO)
    models = {
        "1.0:1.0#7": ItemModel(LinearModel(1.0, {"x": 2.0}), LinearModel()),
        "1.0:10.0#7": ItemModel(LinearModel(-1.0, {"x": 2.0}), LinearModel()),
    }
    records = [scored_record(7, 1.0), scored_record(8, 1.0), scored_record(8, 2.0, 0)]

    predictions = score_item_records(models, "1.0:1.0", records, "user")

    assert [prediction["pred"] for prediction in predictions] == [3.5, 0.5, 0.5]
    assert predictions[2]["response"] == 0
    assert predictions[0]["user"] == 7
    assert "pred" not in records[0]
    assert caplog.text.count("No model for item 8") == 1


def test_score_item_records_without_the_item_column():
    models = {"1.0:1.0#7": ItemModel(LinearModel(1.0), LinearModel())}
    with pytest.raises(FormatError, match="does not contain the column 'item'"):
        score_item_records(models, "1.0:1.0", [scored_record(7, 1.0)], "item")


def test_item_models_keep_the_intercept_key(make_records):
    models = train_item_partition(
        "item",
        make_records(50),
        FitterConfig(),
        item_config(compute_var=True),
        lambda_map={},
        intercept_prior_mean=0.0,
    )
    model = models["1.0:1.0"]
    assert INTERCEPT_NAME not in model.model.coefficients
    assert INTERCEPT_NAME not in model.posterior_var.coefficients
