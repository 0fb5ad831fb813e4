from enum import Enum
from enum import unique

from admm_regression.exceptions import FormatError

INTERCEPT_NAME = "(INTERCEPT)"

# Joins a feature name with its term. Never appears in legitimate names/terms.
FEATURE_TERM_SEPARATOR = "\u0001"

# Separates the lambda from the partition id in "lambda#partition" keys.
PARTITION_KEY_SEPARATOR = "#"

# Prior variance of an unpenalized intercept in independent per-key fits.
UNPENALIZED_INTERCEPT_VAR = 100000.0

MAX_NTEST_EVENTS = 1000000


@unique
class Regularizer(int, Enum):
    L1 = 1
    L2 = 2

    @classmethod
    def from_code(cls, code) -> "Regularizer":
        if isinstance(code, Regularizer):
            return code
        if isinstance(code, str) and code.upper() in cls.__members__:
            return cls[code.upper()]
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            raise FormatError(
                f"Only L1 and L2 regularization supported! Got regularizer={code!r}"
            )

    def __str__(self):
        return self.name


@unique
class SolverType(str, Enum):
    LOGISTIC_L2_PRIMAL = "Logistic_L2_primal"
    DO_NOTHING = "Do_nothing"

    def __str__(self) -> str:
        return str.__str__(self)
