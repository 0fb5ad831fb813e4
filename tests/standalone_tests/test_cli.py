import numpy as np
import pytest
from click.testing import CliRunner

from admm_regression.artifacts import ArtifactStore
from admm_regression.artifacts import read_models
from admm_regression.cli import cli
from admm_regression.cli import read_param_map
from admm_regression.item_model import read_item_models
from admm_regression.records import read_records
from admm_regression.records import write_records


@pytest.fixture
def train_config(tmp_path, make_records):
    write_records(tmp_path / "train" / "part-00000.arrow", make_records(600))
    write_records(tmp_path / "test" / "part-00000.arrow", make_records(100, seed=9))
    config_path = tmp_path / "job.toml"
    config_path.write_text(
        f'job_id = "cli-test"\n'
        f'output_base_path = "{tmp_path / "output"}"\n'
        f'test_path = "{tmp_path / "test"}"\n'
        f"predict = true\n"
        f"[prepare]\n"
        f'input_paths = ["{tmp_path / "train"}"]\n'
        f"num_blocks = 2\n"
        f"[admm]\n"
        f"lambdas = [1.0, 10.0]\n"
        f"num_iters = 3\n"
    )
    return config_path


@pytest.fixture
def libsvm_path(tmp_path):
    rng = np.random.default_rng(0)
    lines = []
    for _ in range(200):
        x = rng.normal(size=2)
        p = 1.0 / (1.0 + np.exp(-(1.0 * x[0] - 2.0 * x[1])))
        label = 1 if rng.random() < p else 0
        lines.append(f"{label} 1:{x[0]:.6f} 2:{x[1]:.6f}\n")
    path = tmp_path / "train.libsvm"
    path.write_text("".join(lines))
    return path


@pytest.mark.slow
def test_train(tmp_path, train_config):
    result = CliRunner().invoke(cli, ["train", str(train_config)])

    assert result.exit_code == 0, result.output
    assert "ADMM finished with status" in result.output
    assert "Best model: lambda=" in result.output

    artifacts = ArtifactStore(tmp_path / "output")
    assert sorted(read_models(artifacts.final_model_path)) == ["1.0", "10.0"]
    assert len(read_records(artifacts.tmp_data_path)) == 600
    for name in ("lambda-1.0", "lambda-10.0", "best-model"):
        predictions = read_records(artifacts.prediction_path(name))
        assert len(predictions) == 100
        scores = [prediction["pred"] for prediction in predictions]
        assert scores == sorted(scores)


def test_train_with_a_missing_map_key(tmp_path, train_config):
    config_text = train_config.read_text().replace(
        "num_blocks = 2\n", 'num_blocks = 2\nmap_key = "user"\n'
    )
    train_config.write_text(config_text)

    result = CliRunner().invoke(cli, ["train", str(train_config)])

    assert result.exit_code == 1
    assert "map_key is wrongly specified" in result.output


def test_train_with_an_invalid_config(tmp_path):
    config_path = tmp_path / "job.toml"
    config_path.write_text('output_base_path = "out"\n')

    result = CliRunner().invoke(cli, ["train", str(config_path)])

    assert result.exit_code == 1
    assert "Invalid job configuration" in result.output


def test_fit_writes_coefficients_and_posterior(tmp_path, libsvm_path):
    out = tmp_path / "model" / "coefficients.txt"

    result = CliRunner().invoke(
        cli,
        [
            "fit",
            "--data",
            str(libsvm_path),
            "--out",
            str(out),
            "--prior-var",
            "10",
            "--bias",
            "1",
            "--posterior-cov",
        ],
    )

    assert result.exit_code == 0, result.output
    coefficients = read_param_map(out)
    assert sorted(coefficients) == ["(INTERCEPT)", "1", "2"]
    assert coefficients["1"] > 0
    assert coefficients["2"] < 0

    variances = read_param_map(f"{out}.var")
    assert sorted(variances) == sorted(coefficients)
    assert all(0 < value < 10 for value in variances.values())

    cov_lines = open(f"{out}.cov").read().splitlines()
    assert len(cov_lines) == 9
    assert f"[1, 1] = {variances['1']!r}" in cov_lines


def test_fit_with_prior_means(tmp_path, libsvm_path):
    param = tmp_path / "prior.txt"
    param.write_text("1 = 5.0\n")
    out = tmp_path / "coefficients.txt"

    result = CliRunner().invoke(
        cli,
        [
            "fit",
            "--data",
            str(libsvm_path),
            "--out",
            str(out),
            "--prior-var",
            "1e-6",
            "--param",
            str(param),
            "--no-posterior-var",
            "--option",
            "epsilon=1e-8",
        ],
    )

    assert result.exit_code == 0, result.output
    assert read_param_map(out)["1"] == pytest.approx(5.0, abs=1e-3)
    assert not (tmp_path / "coefficients.txt.var").exists()


def test_fit_covariance_requires_variance(tmp_path, libsvm_path):
    result = CliRunner().invoke(
        cli,
        [
            "fit",
            "--data",
            str(libsvm_path),
            "--out",
            str(tmp_path / "out.txt"),
            "--prior-var",
            "1",
            "--no-posterior-var",
            "--posterior-cov",
        ],
    )
    assert result.exit_code == 1
    assert "--no-posterior-var" in result.output


def test_fit_with_invalid_data(tmp_path):
    data = tmp_path / "bad.libsvm"
    data.write_text("1 2:1.0 1:2.0\n")

    out = tmp_path / "out.txt"

    result = CliRunner().invoke(
        cli, ["fit", "--data", str(data), "--out", str(out), "--prior-var", "1"]
    )

    assert result.exit_code == 1
    assert "ascending order" in result.output


def with_users(records, users):
    return [
        dict(record, user=users[i % len(users)]) for i, record in enumerate(records)
    ]


@pytest.fixture
def item_config(tmp_path, make_records):
    write_records(
        tmp_path / "train" / "part-00000.arrow",
        with_users(make_records(400), ["u0", "u1"]),
    )
    write_records(
        tmp_path / "test" / "part-00000.arrow",
        with_users(make_records(90, seed=9), ["u0", "u1", "u2"]),
    )
    config_path = tmp_path / "items.toml"
    config_path.write_text(
        f'job_id = "cli-items"\n'
        f'output_base_path = "{tmp_path / "output"}"\n'
        f'test_path = "{tmp_path / "test"}"\n'
        f"predict = true\n"
        f"[prepare]\n"
        f'input_paths = ["{tmp_path / "train"}"]\n'
        f'map_key = "user"\n'
        f"[admm]\n"
        f"lambdas = [1.0]\n"
        f"[item_model]\n"
        f"intercept_lambdas = [1.0]\n"
        f"default_lambdas = [1.0, 10.0]\n"
        f"compute_var = true\n"
    )
    return config_path


def test_train_items(tmp_path, item_config):
    result = CliRunner().invoke(cli, ["train-items", str(item_config)])

    assert result.exit_code == 0, result.output
    assert "Trained 4 item models for 2 items." in result.output
    assert "Item models 1.0:10.0: test loglik=" in result.output

    artifacts = ArtifactStore(tmp_path / "output")
    models = read_item_models(artifacts.item_models_path)
    assert sorted(models) == ["1.0:1.0#u0", "1.0:1.0#u1", "1.0:10.0#u0", "1.0:10.0#u1"]
    assert all(model.posterior_var.intercept > 0 for model in models.values())
    assert not artifacts.tmp_data_path.exists()

    loglik = read_records(artifacts.item_test_loglik_path)
    assert [record["key"] for record in loglik] == ["1.0:1.0", "1.0:10.0"]
    assert all(record["count"] == 90.0 for record in loglik)
    assert all(record["test_loglik"] < 0 for record in loglik)

    predictions = read_records(artifacts.prediction_path("item-1.0:1.0"))
    assert [prediction["user"] for prediction in predictions[:3]] == ["u0", "u1", "u2"]
    assert predictions[2]["pred"] == 0.0


def test_train_items_without_the_item_model_section(tmp_path, train_config):
    config_text = train_config.read_text().replace(
        "num_blocks = 2\n", 'num_blocks = 2\nmap_key = "user"\n'
    )
    train_config.write_text(config_text)

    result = CliRunner().invoke(cli, ["train-items", str(train_config)])

    assert result.exit_code == 1
    assert "no [item_model] section" in result.output


def test_train_items_requires_a_map_key(tmp_path, item_config):
    item_config.write_text(item_config.read_text().replace('map_key = "user"\n', ""))

    result = CliRunner().invoke(cli, ["train-items", str(item_config)])

    assert result.exit_code == 1
    assert "prepare.map_key" in result.output
