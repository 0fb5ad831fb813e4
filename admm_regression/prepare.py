import logging
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional

import numpy as np

from admm_regression.exceptions import FormatError
from admm_regression.logger import log_method_call
from admm_regression.records import get_float
from admm_regression.records import get_response
from admm_regression.records import parse_features
from admm_regression.records import training_record
from admm_regression.utils import split_feature_key

logger = logging.getLogger(__name__)


@log_method_call
def prepare_records(
    records: Iterable[Mapping],
    num_blocks: int,
    map_key: str = "",
    num_click_replicates: int = 1,
    ignore_value: bool = False,
    rng: Optional[np.random.Generator] = None,
) -> List[Dict]:
    """
    Turns raw records into training records keyed by their partition.

    The partition is the value of the map_key column or, without a map key,
    a block in [0, num_blocks) drawn uniformly from rng. Positive records
    have their weight divided by num_click_replicates and, with random
    blocks, are emitted once into each of num_click_replicates consecutive
    blocks (mod num_blocks), so every block sees enough positives.
    """
    logger.info(
        f"Running the preparation of admm with map_key = '{map_key}' and "
        f"num_blocks={num_blocks}"
    )
    if rng is None:
        rng = np.random.default_rng(0)
    prepared = []
    for record in records:
        if map_key:
            if record.get(map_key) is None:
                raise FormatError(
                    "map_key is wrongly specified! No such key exists in some "
                    f"lines of the data: '{map_key}'"
                )
            key = str(record[map_key])
        else:
            key = str(int(rng.integers(num_blocks)))

        response = get_response(record)
        features = []
        for key_, value in parse_features(record, ignore_value=ignore_value):
            name, term = split_feature_key(key_)
            features.append({"name": name, "term": term, "value": value})
        weight = get_float(record, "weight", 1.0)
        if response == 1:
            weight = weight / num_click_replicates
        offset = get_float(record, "offset", 0.0)

        if not map_key and response == 1:
            block = int(key)
            for _ in range(num_click_replicates):
                prepared.append(
                    training_record(str(block), response, features, weight, offset)
                )
                block = (block + 1) % num_blocks
        else:
            prepared.append(training_record(key, response, features, weight, offset))
    logger.info(f"Prepared {len(prepared)} training records.")
    return prepared
