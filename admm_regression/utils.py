from collections.abc import Mapping
from typing import Tuple

from admm_regression.constants import FEATURE_TERM_SEPARATOR
from admm_regression.constants import PARTITION_KEY_SEPARATOR


class AttrDict(dict):
    """A dict whose (nested) keys can also be read as attributes."""

    def __init__(self, dct: Mapping):
        recdict = {
            key: AttrDict(val) if isinstance(val, Mapping) else val
            for key, val in dct.items()
        }
        super(AttrDict, self).__init__(recdict)
        self.__dict__ = self


def feature_key(name: str, term: str = "") -> str:
    if term:
        return name + FEATURE_TERM_SEPARATOR + term
    return name


def split_feature_key(key: str) -> Tuple[str, str]:
    name, _, term = key.partition(FEATURE_TERM_SEPARATOR)
    return name, term


def lambda_key(lambda_) -> str:
    """
    The canonical string of a regularization strength, used for keying
    consensus models, e.g. 1 -> "1.0".
    """
    return str(float(lambda_))


def partition_key(lambda_, partition_id) -> str:
    return f"{lambda_key(lambda_)}{PARTITION_KEY_SEPARATOR}{partition_id}"


def get_lambda(key: str) -> str:
    return key.split(PARTITION_KEY_SEPARATOR)[0]


def get_partition_id(key: str) -> str:
    return key.split(PARTITION_KEY_SEPARATOR, 1)[1]
