import numpy as np
import pytest

from admm_regression import INTERCEPT_NAME
from admm_regression.dataset import BinaryDataset
from admm_regression.dataset import Dataset
from admm_regression.dataset import build_dataset
from admm_regression.exceptions import DataError
from admm_regression.exceptions import FormatError
from admm_regression.exceptions import StateError


def test_features_are_interned_in_first_seen_order():
    dataset = Dataset()
    dataset.add_instance(1, {"b": 1.0, "a": 2.0})
    dataset.add_instance(0, [("c", 3.0), ("a", 4.0)])
    dataset.finish()

    assert dataset.feature_names == ["b", "a", "c"]
    assert dataset.feature_index("a") == 2
    assert dataset.feature_index("unseen") == -1
    assert dataset.feature_name(3) == "c"
    np.testing.assert_array_equal(dataset.y, [1, -1])
    np.testing.assert_array_equal(
        dataset.x.toarray(), [[1.0, 2.0, 0.0], [0.0, 4.0, 3.0]]
    )


def test_bias_is_the_last_feature():
    dataset = Dataset(bias=1.0)
    dataset.add_instance(1, {"a": 2.0})
    dataset.add_instance(-1, {"b": 3.0})
    dataset.finish(sanity_level=2)

    assert dataset.n_features == 3
    assert dataset.feature_names == ["a", "b", INTERCEPT_NAME]
    assert dataset.feature_index(INTERCEPT_NAME) == 3
    np.testing.assert_array_equal(
        dataset.x.toarray(), [[2.0, 0.0, 1.0], [0.0, 3.0, 1.0]]
    )


def test_weights_and_offsets():
    dataset = Dataset()
    dataset.add_instance(1, {"a": 1.0}, weight=2.0, offset=-0.5)
    dataset.add_instance(0, {"a": 1.0})
    dataset.finish()
    np.testing.assert_array_equal(dataset.weight, [2.0, 1.0])
    np.testing.assert_array_equal(dataset.offset, [-0.5, 0.0])


@pytest.mark.parametrize("label", [2, -2, 5])
def test_invalid_label(label):
    with pytest.raises(DataError):
        Dataset().add_instance(label, {"a": 1.0})


def test_negative_weight():
    with pytest.raises(DataError):
        Dataset().add_instance(1, {"a": 1.0}, weight=-1.0)


def test_duplicate_feature_in_instance():
    with pytest.raises(DataError):
        Dataset().add_instance(1, [("a", 1.0), ("a", 2.0)])


def test_intercept_name_is_reserved():
    with pytest.raises(DataError):
        Dataset().add_instance(1, {INTERCEPT_NAME: 1.0})


def test_finished_dataset_is_frozen():
    dataset = Dataset()
    dataset.add_instance(1, {"a": 1.0})
    dataset.finish()
    assert dataset.is_finished
    with pytest.raises(StateError):
        dataset.add_instance(1, {"a": 1.0})
    with pytest.raises(StateError):
        dataset.finish()
    with pytest.raises(StateError):
        dataset.reset()


def test_finish_requires_the_bias_placeholder():
    dataset = Dataset(bias=1.0)
    dataset.add_instance(1, {"a": 1.0})
    dataset.instances[0].indices[-1] = 1
    with pytest.raises(DataError):
        dataset.finish()


def test_reset_clears_instances_and_features():
    dataset = Dataset()
    dataset.add_instance(1, {"a": 1.0})
    dataset.reset()
    assert dataset.n_instances == 0
    assert dataset.feature_names == []


def test_feature_name_out_of_bounds():
    dataset = Dataset()
    dataset.add_instance(1, {"a": 1.0})
    dataset.finish()
    with pytest.raises(DataError):
        dataset.feature_name(0)
    with pytest.raises(DataError):
        dataset.feature_name(2)


def test_libsvm_lines():
    dataset = Dataset(bias=1.0)
    dataset.add_instance_libsvm("+1 1:0.5 3:2\n")
    dataset.add_instance_libsvm("-1 2:1.5")
    dataset.finish()

    assert dataset.feature_names == ["1", "2", "3", INTERCEPT_NAME]
    np.testing.assert_array_equal(dataset.y, [1, -1])
    np.testing.assert_array_equal(
        dataset.x.toarray(), [[0.5, 0.0, 2.0, 1.0], [0.0, 1.5, 0.0, 1.0]]
    )


@pytest.mark.parametrize(
    "line",
    ["", "x 1:1", "1 1:1 2", "1 2:1 1:1", "1 1:abc", "1 -1:1"],
)
def test_invalid_libsvm_lines(line):
    with pytest.raises(DataError):
        Dataset().add_instance_libsvm(line)


def test_libsvm_and_named_instances_do_not_mix():
    dataset = Dataset()
    dataset.add_instance(1, {"a": 1.0})
    with pytest.raises(StateError):
        dataset.add_instance_libsvm("1 1:1")

    dataset = Dataset()
    dataset.add_instance_libsvm("1 1:1")
    with pytest.raises(StateError):
        dataset.add_instance(1, {"a": 1.0})


def test_read_libsvm(tmp_path):
    path = tmp_path / "train.libsvm"
    path.write_text("1 1:1 2:1\n\n0 2:1\n")
    dataset = Dataset()
    dataset.read_libsvm(path)
    dataset.finish()
    assert dataset.n_instances == 2
    assert dataset.n_features == 2


def test_binary_dataset_keeps_only_indices():
    dataset = BinaryDataset(bias=1, use_short=True)
    dataset.add_instance(1, {"a": 1, "b": 1})
    dataset.add_instance(0, {"b": 1})
    dataset.finish(sanity_level=2)

    assert dataset.indices.dtype == np.int16
    np.testing.assert_array_equal(dataset.row(0), [1, 2, 3])
    np.testing.assert_array_equal(dataset.row(1), [2, 3])
    np.testing.assert_array_equal(
        dataset.x.toarray(), [[1.0, 1.0, 1.0], [0.0, 1.0, 1.0]]
    )


def test_binary_dataset_rejects_non_binary_values():
    with pytest.raises(DataError):
        BinaryDataset().add_instance(1, {"a": 0.5})


@pytest.mark.parametrize("bias", [0.5, 2])
def test_binary_dataset_bias_is_zero_or_one(bias):
    with pytest.raises(FormatError):
        BinaryDataset(bias=bias)


def test_binary_dataset_short_index_limit():
    dataset = BinaryDataset(use_short=True)
    with pytest.raises(DataError):
        dataset.add_instance_libsvm("1 32767:1")


def test_build_dataset_from_training_records():
    records = [
        {
            "response": 1,
            "weight": 0.5,
            "features": [
                {"name": "age", "term": "young", "value": 1.0},
                {"name": "height", "term": "", "value": 2.0},
            ],
        },
        {"response": 0, "features": [{"name": "height", "term": "", "value": 3.0}]},
    ]
    dataset = build_dataset(records, bias=1.0)
    assert dataset.is_finished
    assert dataset.n_instances == 2
    assert dataset.n_features == 3
    np.testing.assert_array_equal(dataset.weight, [0.5, 1.0])

    binary = build_dataset(records, binary_feature=True, ignore_value=True)
    assert isinstance(binary, BinaryDataset)
    assert binary.n_features == 3
