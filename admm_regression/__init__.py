from admm_regression.constants import FEATURE_TERM_SEPARATOR
from admm_regression.constants import INTERCEPT_NAME
from admm_regression.constants import PARTITION_KEY_SEPARATOR
from admm_regression.constants import Regularizer
from admm_regression.constants import SolverType
from admm_regression.utils import AttrDict

__all__ = [
    "AttrDict",
    "FEATURE_TERM_SEPARATOR",
    "INTERCEPT_NAME",
    "PARTITION_KEY_SEPARATOR",
    "Regularizer",
    "SolverType",
]
