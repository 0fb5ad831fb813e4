"""
In-memory training data of one block.

A dataset is filled instance by instance, then frozen with finish(). Feature
names are interned into dense 1-based indices in first-seen order, one table
per dataset. When a bias is configured, every instance gets one extra feature
named INTERCEPT_NAME whose index is only known once all the instances have
been seen; it is kept as a placeholder until finish().

After finish() the design matrix is a scipy CSR matrix whose column j holds
the feature of index j + 1. BinaryDataset keeps only the index arrays, the
values being implicitly 1.
"""
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

import numpy as np
from scipy import sparse

from admm_regression.constants import INTERCEPT_NAME
from admm_regression.exceptions import DataError
from admm_regression.exceptions import FormatError
from admm_regression.exceptions import StateError
from admm_regression.records import get_float
from admm_regression.records import get_response
from admm_regression.records import parse_features

logger = logging.getLogger(__name__)

BIAS_PLACEHOLDER = -1

SHORT_MAX_VALUE = np.iinfo(np.int16).max

Features = Union[Mapping, Iterable[Tuple[str, float]]]


class Instance:
    """One training example with index sorted, 1-based features."""

    def __init__(
        self,
        label: int,
        indices: np.ndarray,
        values: Optional[np.ndarray],
        weight: float = 1.0,
        offset: float = 0.0,
    ):
        self.label = label
        self.indices = indices
        self.values = values
        self.weight = weight
        self.offset = offset

    def __repr__(self):
        return (
            f"Instance(label={self.label}, indices={self.indices.tolist()}, "
            f"weight={self.weight}, offset={self.offset})"
        )


class Dataset:
    def __init__(self, bias: float = 0.0):
        self.bias = float(bias)
        self._instances: List[Instance] = []
        self._feature_index: Dict[str, int] = {}
        self._feature_name: List[str] = []
        self._max_feature_index = 0
        self._libsvm = False
        self._finished = False

        self.n = 0
        self.y: Optional[np.ndarray] = None
        self.weight: Optional[np.ndarray] = None
        self.offset: Optional[np.ndarray] = None
        self.x: Optional[sparse.csr_matrix] = None

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def n_instances(self) -> int:
        if self._finished:
            return len(self.y)
        return len(self._instances)

    @property
    def n_features(self) -> int:
        if self._finished:
            return self.n
        return self._max_feature_index

    @property
    def instances(self) -> List[Instance]:
        return self._instances

    def feature_index(self, name: str) -> int:
        """The 1-based index of a feature, or -1 if the feature was never seen."""
        return self._feature_index.get(name, -1)

    def feature_name(self, index: int) -> str:
        if index < 1 or index > len(self._feature_name):
            raise DataError(
                f"feature index {index} is out of bound [1, {len(self._feature_name)}]"
            )
        return self._feature_name[index - 1]

    @property
    def feature_names(self) -> List[str]:
        return list(self._feature_name)

    def add_instance(
        self,
        label: int,
        features: Features,
        weight: float = 1.0,
        offset: float = 0.0,
    ):
        self._check_not_finished("add instances to")
        if self._libsvm:
            raise StateError(
                "Cannot add named instances to a dataset read from LibSVM lines."
            )
        label = self._check_label(label)
        if weight < 0:
            raise DataError(f"weight = {weight} (weight cannot < 0)")

        if isinstance(features, Mapping):
            features = features.items()
        indices = []
        values = []
        seen = set()
        for name, value in features:
            if name in seen:
                raise DataError(f"feature '{name}' appears twice in one instance")
            seen.add(name)
            indices.append(self._intern(name))
            values.append(self._check_value(name, value))
        self._append(label, indices, values, weight, offset)

    def add_record(self, record: Mapping, ignore_value: bool = False):
        """Adds a training record: response, optional weight and offset, features."""
        self.add_instance(
            get_response(record),
            parse_features(record, ignore_value),
            weight=get_float(record, "weight", 1.0),
            offset=get_float(record, "offset", 0.0),
        )

    def add_instance_libsvm(self, line: str):
        """
        Adds one "label index:value index:value ..." line. The indices are
        used as they are and must be ascending; the feature names are their
        string forms.
        """
        self._check_not_finished("add instances to")
        if self._feature_index and not self._libsvm:
            raise StateError(
                "Cannot add LibSVM lines to a dataset holding named instances."
            )
        self._libsvm = True
        tokens = line.replace(":", " ").split()
        if not tokens:
            raise DataError("Empty line")
        try:
            label = int(tokens[0])
        except ValueError:
            raise DataError(f"Invalid label: {tokens[0]}")
        label = self._check_label(label)
        if len(tokens) % 2 != 1:
            raise DataError(f"Invalid line: {line.strip()}")

        indices = []
        values = []
        index_before = 0
        for index_token, value_token in zip(tokens[1::2], tokens[2::2]):
            try:
                index = int(index_token)
            except ValueError:
                raise DataError(f"Invalid index: {index_token}")
            if index < 0:
                raise DataError(f"Invalid index: {index}")
            if index <= index_before:
                raise DataError("Indices must be sorted in ascending order")
            index_before = index
            try:
                value = float(value_token)
            except ValueError:
                raise DataError(f"Invalid value: {value_token}")
            indices.append(index)
            values.append(self._check_value(index_token, value))
        if indices:
            self._max_feature_index = max(self._max_feature_index, indices[-1])
        self._check_feature_count()
        self._append(label, indices, values, 1.0, 0.0)

    def read_libsvm(self, path: Union[str, Path]):
        with open(path) as file:
            for line in file:
                if line.strip():
                    self.add_instance_libsvm(line)

    def reset(self):
        self._check_not_finished("reset")
        self._instances.clear()
        self._feature_index.clear()
        self._feature_name.clear()
        self._max_feature_index = 0
        self._libsvm = False
        self.n = 0

    def finish(self, sanity_level: int = 1):
        """
        Freezes the dataset: resolves the bias feature to index n, builds the
        label, weight and offset arrays and the design matrix, then runs
        sanity_check(sanity_level).
        """
        self._check_not_finished("finish")
        if self._libsvm:
            self._feature_name = [
                str(index) for index in range(1, self._max_feature_index + 1)
            ]
            self._feature_index = {
                name: index for index, name in enumerate(self._feature_name, 1)
            }
        self.n = self._max_feature_index
        if self.bias > 0:
            self.n += 1
            self._feature_index[INTERCEPT_NAME] = self.n
            self._feature_name.append(INTERCEPT_NAME)
            for instance in self._instances:
                if instance.indices[-1] != BIAS_PLACEHOLDER:
                    raise DataError(
                        f"Missing bias placeholder in instance {instance!r}"
                    )
                instance.indices[-1] = self.n

        self.y = np.array([i.label for i in self._instances], dtype=np.int8)
        self.weight = np.array([i.weight for i in self._instances], dtype=np.float64)
        self.offset = np.array([i.offset for i in self._instances], dtype=np.float64)
        self._build_matrix()
        self._finished = True
        self.sanity_check(sanity_level)
        self._instances = []
        logger.debug(
            f"Finished dataset with {self.n_instances} instances and "
            f"{self.n} features."
        )

    def sanity_check(self, level: int):
        """
        level 0: array lengths and the sizes of the interning table,
        level 1: name <-> index consistency and the placement of the bias,
        level 2: feature index bounds and the label domain.
        """
        if not self._finished:
            raise StateError("Cannot check a dataset that is not finished.")
        n_instances = len(self.y)
        if len(self.weight) != n_instances:
            raise DataError(
                f"l = {n_instances}, but weight.length = {len(self.weight)}"
            )
        if len(self.offset) != n_instances:
            raise DataError(
                f"l = {n_instances}, but offset.length = {len(self.offset)}"
            )
        if self._n_rows() != n_instances:
            raise DataError(f"l = {n_instances}, but x.size() = {self._n_rows()}")
        if len(self._feature_index) != len(self._feature_name):
            raise DataError(
                f"featureIndex.size()={len(self._feature_index)}, "
                f"but featureName.size()={len(self._feature_name)}"
            )
        if len(self._feature_name) != self.n:
            raise DataError(
                f"featureIndex.size()={len(self._feature_name)}, but n={self.n}"
            )

        if level >= 1:
            if self.bias > 0 and self._feature_name[-1] != INTERCEPT_NAME:
                raise DataError(f"The last feature is not {INTERCEPT_NAME}")
            for name, index in self._feature_index.items():
                if self._feature_name[index - 1] != name:
                    raise DataError(
                        f"featureName[{index - 1}] = {self._feature_name[index - 1]}, "
                        f"instead of {name}"
                    )

        if level >= 2:
            indices = self._row_indices()
            if len(indices) and (indices.min() < 1 or indices.max() > self.n):
                raise DataError(
                    f"feature index out of bound [1, {self.n}]: "
                    f"[{indices.min()}, {indices.max()}]"
                )
            if not np.isin(self.y, (1, -1)).all():
                raise DataError(f"labels outside of {{1, -1}}: {np.unique(self.y)}")
            if (self.weight < 0).any():
                raise DataError("negative instance weight")

    def _check_not_finished(self, action: str):
        if self._finished:
            raise StateError(f"Cannot {action} a finished dataset.")

    @staticmethod
    def _check_label(label) -> int:
        if label not in (1, 0, -1):
            raise DataError(f"response = {label} (only 1, 0, -1 are allowed)")
        return -1 if label == 0 else int(label)

    def _check_value(self, name, value) -> float:
        return float(value)

    def _check_feature_count(self):
        pass

    def _intern(self, name: str) -> int:
        index = self._feature_index.get(name)
        if index is None:
            if name == INTERCEPT_NAME:
                raise DataError(f"feature name cannot be {INTERCEPT_NAME}")
            self._max_feature_index += 1
            index = self._max_feature_index
            self._feature_index[name] = index
            self._feature_name.append(name)
            self._check_feature_count()
        return index

    def _append(self, label, indices, values, weight, offset):
        indices = np.asarray(indices, dtype=np.int64)
        values = np.asarray(values, dtype=np.float64)
        order = np.argsort(indices, kind="stable")
        indices = indices[order]
        values = values[order]
        if self.bias > 0:
            indices = np.append(indices, BIAS_PLACEHOLDER)
            values = np.append(values, self.bias)
        self._instances.append(
            Instance(label, indices, values, weight=float(weight), offset=float(offset))
        )

    def _build_matrix(self):
        indptr = np.zeros(len(self._instances) + 1, dtype=np.int64)
        indptr[1:] = np.cumsum([len(i.indices) for i in self._instances])
        if self._instances:
            columns = np.concatenate([i.indices for i in self._instances]) - 1
            data = np.concatenate([i.values for i in self._instances])
        else:
            columns = np.zeros(0, dtype=np.int64)
            data = np.zeros(0, dtype=np.float64)
        self.x = sparse.csr_matrix(
            (data, columns, indptr), shape=(len(self._instances), self.n)
        )

    def _n_rows(self) -> int:
        return self.x.shape[0]

    def _row_indices(self) -> np.ndarray:
        return self.x.indices + 1


class BinaryDataset(Dataset):
    """
    A dataset whose feature values are all 1. Only the sorted feature
    indices of each instance are stored: as int16 with use_short, which
    caps the number of features below 32767, as int32 otherwise.
    """

    def __init__(self, bias: float = 0.0, use_short: bool = False):
        if bias not in (0, 1):
            raise FormatError(f"Bias can only be either 0 or 1: input value = {bias}")
        super().__init__(bias)
        self.use_short = use_short
        self.index_dtype = np.int16 if use_short else np.int32
        self.indptr: Optional[np.ndarray] = None
        self.indices: Optional[np.ndarray] = None

    def row(self, i: int) -> np.ndarray:
        """The 1-based feature indices of instance i."""
        return self.indices[self.indptr[i] : self.indptr[i + 1]]

    def _check_value(self, name, value) -> float:
        if value != 1:
            raise DataError(
                "Cannot handle non-binary feature value (all feature values "
                f"have to be 1; or just do not specify the value): {name}={value}"
            )
        return 1.0

    def _check_feature_count(self):
        if self.use_short and self._max_feature_index >= SHORT_MAX_VALUE:
            raise DataError(
                "When using short to store feature indices, you cannot have "
                f"more than {SHORT_MAX_VALUE - 1} features!!"
            )

    def _build_matrix(self):
        self.indptr = np.zeros(len(self._instances) + 1, dtype=np.int64)
        self.indptr[1:] = np.cumsum([len(i.indices) for i in self._instances])
        if self._instances:
            self.indices = np.concatenate(
                [i.indices for i in self._instances]
            ).astype(self.index_dtype)
        else:
            self.indices = np.zeros(0, dtype=self.index_dtype)
        for instance in self._instances:
            instance.values = None

    def _n_rows(self) -> int:
        return len(self.indptr) - 1

    def _row_indices(self) -> np.ndarray:
        return self.indices

    @property
    def x(self) -> Optional[sparse.csr_matrix]:
        """The design matrix, materialized on demand."""
        if self.indices is None:
            return None
        data = np.ones(len(self.indices), dtype=np.float64)
        return sparse.csr_matrix(
            (data, self.indices.astype(np.int64) - 1, self.indptr),
            shape=(self._n_rows(), self.n),
        )

    @x.setter
    def x(self, value):
        if value is not None:
            raise StateError("The design matrix of a binary dataset is read only.")


def build_dataset(
    records: Iterable[Mapping],
    binary_feature: bool = False,
    short_feature_index: bool = False,
    bias: float = 1.0,
    ignore_value: bool = False,
) -> Dataset:
    """Builds and finishes the dataset of one partition from its training records."""
    if binary_feature:
        dataset = BinaryDataset(bias, use_short=short_feature_index)
    else:
        dataset = Dataset(bias)
    for record in records:
        dataset.add_record(record, ignore_value=ignore_value)
    dataset.finish()
    return dataset
