"""
Arrow IPC readers and writers for the record shapes exchanged by the jobs.

Every file embeds its schema, so readers never need to be told what they are
reading. Records are parsed into the in-memory representation here and only
here; the dataset and the objective never see raw records.
"""
import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Tuple
from typing import Union

import numpy as np
import pyarrow as pa
from pyarrow import ipc

from admm_regression.exceptions import FormatError
from admm_regression.utils import feature_key

ARROW_FILE_SUFFIX = ".arrow"

FEATURE_TYPE = pa.struct(
    [
        pa.field("name", pa.string()),
        pa.field("term", pa.string()),
        pa.field("value", pa.float64()),
    ]
)

MODEL_SCHEMA = pa.schema(
    [
        pa.field("key", pa.string()),
        pa.field("model", pa.list_(FEATURE_TYPE)),
    ]
)

TRAINING_RECORD_SCHEMA = pa.schema(
    [
        pa.field("key", pa.string()),
        pa.field("response", pa.int32()),
        pa.field("weight", pa.float64()),
        pa.field("offset", pa.float64()),
        pa.field("features", pa.list_(FEATURE_TYPE)),
    ]
)

TRAIN_OUTPUT_SCHEMA = pa.schema(
    [
        pa.field("key", pa.string()),
        pa.field("model", pa.list_(FEATURE_TYPE)),
        pa.field("uplusx", pa.list_(FEATURE_TYPE)),
    ]
)

LAMBDA_RHO_SCHEMA = pa.schema(
    [
        pa.field("lambda", pa.float64()),
        pa.field("rho", pa.float64()),
    ]
)

LAMBDA_MAP_SCHEMA = pa.schema(
    [
        pa.field("name", pa.string()),
        pa.field("term", pa.string()),
        pa.field("value", pa.float64()),
    ]
)

SAMPLE_TEST_LOGLIK_SCHEMA = pa.schema(
    [
        pa.field("iter", pa.int32()),
        pa.field("lambda", pa.string()),
        pa.field("test_loglik", pa.float64()),
    ]
)

ITEM_MODEL_SCHEMA = pa.schema(
    [
        pa.field("key", pa.string()),
        pa.field("model", pa.list_(FEATURE_TYPE)),
        pa.field("posterior_var", pa.list_(FEATURE_TYPE)),
    ]
)

INTERCEPT_PRIOR_MEAN_SCHEMA = pa.schema(
    [
        pa.field("key", pa.string()),
        pa.field("value", pa.float64()),
    ]
)

ITEM_TEST_LOGLIK_SCHEMA = pa.schema(
    [
        pa.field("key", pa.string()),
        pa.field("test_loglik", pa.float64()),
        pa.field("count", pa.float64()),
    ]
)

PathLike = Union[str, Path]


def write_records(path: PathLike, records: List[Dict[str, Any]], schema=None):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table = pa.Table.from_pylist(records, schema=schema)
    with pa.OSFile(str(path), "wb") as sink:
        with ipc.new_file(sink, table.schema) as writer:
            writer.write_table(table)


def read_records(path: PathLike) -> List[Dict[str, Any]]:
    """Reads every record of a file, or of all the part files of a folder."""
    records = []
    for file_path in enumerate_files(path):
        with pa.memory_map(str(file_path), "r") as source:
            table = ipc.open_file(source).read_all()
        records.extend(table.to_pylist())
    return records


def enumerate_files(path: PathLike) -> List[Path]:
    path = Path(path)
    if path.is_file():
        return [path]
    if not path.is_dir():
        return []
    return sorted(
        file_path
        for file_path in path.iterdir()
        if file_path.is_file()
        and file_path.suffix == ARROW_FILE_SUFFIX
        and not file_path.name.startswith((".", "_"))
    )


def get_response(record: Mapping) -> int:
    """
    The response of a raw record is read from 'click', 'response' or 'label',
    the latter taking precedence. Booleans map to 1/0.
    """
    response = None
    for field in ("click", "response", "label"):
        if record.get(field) is not None:
            response = record[field]
    if response is None:
        raise FormatError(
            "Data should contain one field of the three: response, click or label!"
        )
    if isinstance(response, (bool, np.bool_)):
        return 1 if response else 0
    if isinstance(response, (int, np.integer)):
        return int(response)
    raise FormatError(
        f"Response/Click/Label column should be either boolean or int, got {response!r}."
    )


def get_float(record: Mapping, field: str, default: float) -> float:
    value = record.get(field)
    if value is None:
        return default
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise FormatError(f"Field '{field}' is not a number: {value!r}")
    if math.isnan(value):
        raise FormatError(f"Field '{field}' is NaN.")
    return value


def parse_features(
    record: Mapping, ignore_value: bool = False
) -> List[Tuple[str, float]]:
    """
    Returns the (feature key, value) pairs of a record's 'features' list.
    Each feature is a mapping with a 'name', an optional 'term' and a 'value'.
    With ignore_value every value is taken as 1.
    """
    features = record.get("features")
    if features is None:
        raise FormatError("features is null")
    if isinstance(features, (str, bytes, Mapping)) or not isinstance(
        features, Iterable
    ):
        raise FormatError("features is not a list")
    parsed = []
    for i, feature in enumerate(features):
        if not isinstance(feature, Mapping):
            raise FormatError(f"features[{i}] is not a record")
        name = feature.get("name")
        if not isinstance(name, str):
            raise FormatError(f"features[{i}] has no string 'name': {feature}")
        term = feature.get("term") or ""
        if not isinstance(term, str):
            raise FormatError(f"features[{i}] has a non string 'term': {feature}")
        if ignore_value:
            value = 1.0
        else:
            if feature.get("value") is None:
                raise FormatError(f"features[{i}] has no 'value': {feature}")
            value = get_float(feature, "value", 1.0)
        parsed.append((feature_key(name, term), value))
    return parsed


def training_record(
    key: str,
    response: int,
    features: List[Dict[str, Any]],
    weight: float = 1.0,
    offset: float = 0.0,
) -> Dict[str, Any]:
    return {
        "key": key,
        "response": response,
        "weight": weight,
        "offset": offset,
        "features": features,
    }


def read_lambda_map(path: PathLike) -> Dict[str, float]:
    """Per-feature lambda overrides stored as (name, term, value) records."""
    lambda_map = {}
    for record in read_records(path):
        if record.get("name") is None or record.get("value") is None:
            continue
        key = feature_key(record["name"], record.get("term") or "")
        lambda_map[key] = get_float(record, "value", 0.0)
    return lambda_map


def read_intercept_prior_means(path: PathLike) -> Dict[str, float]:
    """Intercept prior mean per item, stored as (key, value) records."""
    prior_means = {}
    for record in read_records(path):
        if record.get("key") is None:
            raise FormatError(f"Intercept prior mean without a key: {record}")
        prior_means[str(record["key"])] = get_float(record, "value", 0.0)
    return prior_means
