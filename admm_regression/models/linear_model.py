import math
from collections import defaultdict
from collections.abc import Mapping
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence

import numpy as np

from admm_regression.exceptions import DataError
from admm_regression.exceptions import FormatError
from admm_regression.records import get_float
from admm_regression.records import get_response
from admm_regression.records import parse_features
from admm_regression.utils import feature_key
from admm_regression.utils import get_lambda
from admm_regression.utils import split_feature_key


class LinearModel:
    """
    A sparse affine model: an intercept plus named coefficients.

    Coefficient keys are feature keys, i.e. a name optionally joined with a
    term. The intercept is kept apart and never appears among the
    coefficients; wire formats carry it under a caller-chosen key.
    """

    def __init__(
        self, intercept: float = 0.0, coefficients: Optional[Mapping] = None
    ):
        self.intercept = float(intercept)
        self.coefficients: Dict[str, float] = {}
        if coefficients is not None:
            self.coefficients.update(
                {key: float(value) for key, value in coefficients.items()}
            )

    @classmethod
    def from_map(cls, intercept_key: str, coefficients: Mapping) -> "LinearModel":
        if intercept_key not in coefficients:
            raise FormatError(
                f"intercept_key '{intercept_key}' does not exist in the coefficients map!"
            )
        model = cls(coefficients[intercept_key], coefficients)
        del model.coefficients[intercept_key]
        return model

    @classmethod
    def from_triples(cls, intercept_key: str, triples: Sequence) -> "LinearModel":
        """
        Builds a model from a wire list of (name, term, value) triples, given
        either as mappings or as 3-tuples. The intercept triple is the one
        whose (composite) name equals intercept_key.
        """
        if isinstance(triples, (str, bytes, Mapping)):
            raise FormatError("The model is not a list of (name, term, value)")
        model = cls()
        has_intercept = False
        for i, triple in enumerate(triples):
            if isinstance(triple, Mapping):
                name, term, value = (
                    triple.get("name"),
                    triple.get("term"),
                    triple.get("value"),
                )
            elif isinstance(triple, (list, tuple)) and len(triple) == 3:
                name, term, value = triple
            else:
                raise FormatError(f"model[{i}] is not a (name, term, value) triple")
            if not isinstance(name, str):
                raise FormatError(f"model[{i}] has no string name: {triple!r}")
            if term is not None and not isinstance(term, str):
                raise FormatError(f"model[{i}] has a non string term: {triple!r}")
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise FormatError(f"model[{i}] has an invalid value: {triple!r}")
            key = feature_key(name, term or "")
            if key == intercept_key:
                model.intercept = value
                has_intercept = True
            else:
                model.coefficients[key] = value
        if not has_intercept:
            raise FormatError(
                f"intercept_key '{intercept_key}' does not exist in the model list!"
            )
        return model

    @classmethod
    def from_text(
        cls,
        intercept_key: str,
        text: str,
        inner_delim: str = "=",
        outer_delim: str = " ",
    ) -> "LinearModel":
        """Parses "key1=value1 key2=value2 ..." (the format of to_text)."""
        model = cls()
        for token in text.replace("\r", "").replace("\n", "").split(outer_delim):
            if not token:
                continue
            pair = token.split(inner_delim)
            if len(pair) != 2:
                raise FormatError(f"Model format is wrong! {text}")
            try:
                value = float(pair[1])
            except ValueError:
                raise FormatError(f"Model format is wrong! {text}")
            if pair[0] == intercept_key:
                model.intercept = value
            else:
                model.coefficients[pair[0]] = value
        return model

    def rescale(self, a: float):
        """x = a*x"""
        self.intercept *= a
        for key in self.coefficients:
            self.coefficients[key] *= a

    def linear_combine(
        self,
        a: float,
        b: float,
        other: "LinearModel",
        b_map: Optional[Mapping] = None,
    ):
        """
        x = a*x + b*y over the union of the keys of both models. b_map
        holds per-key replacements of b; the intercept always uses b.
        """
        self.intercept = a * self.intercept + b * other.intercept
        keys = set(self.coefficients) | set(other.coefficients)
        for key in keys:
            value = 0.0
            if key in self.coefficients:
                value += a * self.coefficients[key]
            if key in other.coefficients:
                key_b = b_map[key] if b_map is not None and key in b_map else b
                value += key_b * other.coefficients[key]
            self.coefficients[key] = value

    def eval(
        self,
        keys: Sequence[str],
        values: Sequence[float],
        num_click_replicates: int = 1,
    ) -> float:
        """
        Returns x'beta. When positive instances were replicated r times at
        training time, the intercept is corrected to
        -log(r - 1 + r*exp(-intercept)), which reduces to the intercept for
        r = 1.
        """
        if len(keys) != len(values):
            raise DataError("The length of keys and values must be equal!")
        if num_click_replicates == 1:
            result = self.intercept
        else:
            result = -float(
                np.logaddexp(
                    math.log(num_click_replicates - 1),
                    math.log(num_click_replicates) - self.intercept,
                )
            )
        for key, value in zip(keys, values):
            coefficient = self.coefficients.get(key)
            if coefficient is not None:
                result += coefficient * value
        return result

    def eval_record(
        self,
        record: Mapping,
        loglik: bool = False,
        num_click_replicates: int = 1,
        ignore_value: bool = False,
    ) -> float:
        """
        Returns offset + x'beta of a training/test record or, with loglik,
        its weighted log-likelihood under the model.
        """
        response = get_response(record)
        if response not in (1, 0, -1):
            raise DataError(f"response = {response} (only 1, 0, -1 are allowed)")
        offset = get_float(record, "offset", 0.0)
        features = parse_features(record, ignore_value)
        keys = [key for key, _ in features]
        values = [value for _, value in features]
        score = offset + self.eval(keys, values, num_click_replicates)
        if not loglik:
            return score
        weight = get_float(record, "weight", 1.0)
        if response == 1:
            return -_log1pexp(-score) * weight
        return -_log1pexp(score) * weight

    def to_map(self, intercept_key: str) -> Dict[str, float]:
        result = dict(self.coefficients)
        result[intercept_key] = self.intercept
        return result

    def to_triples(self, intercept_key: str) -> List[Dict[str, Any]]:
        triples = [{"name": intercept_key, "term": "", "value": self.intercept}]
        for key, value in self.coefficients.items():
            name, term = split_feature_key(key)
            triples.append({"name": name, "term": term, "value": value})
        return triples

    def to_text(
        self, intercept_key: str, inner_delim: str = "=", outer_delim: str = " "
    ) -> str:
        tokens = [f"{intercept_key}{inner_delim}{self.intercept!r}"]
        tokens.extend(
            f"{key}{inner_delim}{value!r}" for key, value in self.coefficients.items()
        )
        return outer_delim.join(tokens)

    def max_abs_value(self) -> float:
        return max(
            [abs(self.intercept)] + [abs(value) for value in self.coefficients.values()]
        )

    def filter_out(self, substring: str):
        """Removes the coefficients whose key contains substring."""
        for key in [key for key in self.coefficients if substring in key]:
            del self.coefficients[key]

    def copy(self) -> "LinearModel":
        return LinearModel(self.intercept, self.coefficients)

    def clear(self):
        self.intercept = 0.0
        self.coefficients.clear()

    def __eq__(self, other):
        if not isinstance(other, LinearModel):
            return NotImplemented
        return (
            self.intercept == other.intercept
            and self.coefficients == other.coefficients
        )

    def __repr__(self):
        return (
            f"LinearModel(intercept={self.intercept!r}, "
            f"coefficients={self.coefficients!r})"
        )


def _log1pexp(x: float) -> float:
    """log(1 + exp(x)) without overflow."""
    if x > 0:
        return x + math.log1p(math.exp(-x))
    return math.log1p(math.exp(x))


def mean_models(
    models: Mapping[str, LinearModel], n_blocks: int
) -> Dict[str, LinearModel]:
    """
    Averages "lambda#partition" models into one model per lambda, dividing by
    the number of blocks: a partition without a model, or a model without a
    coefficient, counts as zero. Sums are exactly rounded, so the result does
    not depend on the order of the partitions.
    """
    groups = defaultdict(list)
    for key in sorted(models):
        groups[get_lambda(key)].append(models[key])
    means = {}
    for lambda_, group in groups.items():
        keys = sorted(set().union(*(model.coefficients for model in group)))
        means[lambda_] = LinearModel(
            math.fsum(model.intercept for model in group) / n_blocks,
            {
                key: math.fsum(model.coefficients.get(key, 0.0) for model in group)
                / n_blocks
                for key in keys
            },
        )
    return means
