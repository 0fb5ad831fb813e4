"""
The error taxonomy of the package.

FormatError and StateError are never retried. DataError is fatal for the
partition it was raised in, and therefore for the whole run, since a partition
with bad data cannot contribute to the consensus model. FitError carries the
diagnostics of the block that failed so that the partition can be debugged.
"""
from typing import Dict
from typing import Optional


class FormatError(Exception):
    """
    Exception raised for malformed wire records, model triple lists,
    option strings or configuration values.

    Attributes:
        message -- explanation of the error
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class DataError(Exception):
    """
    Exception raised for training data outside of the supported domain:
    labels other than -1/0/1, negative weights, unsorted or duplicate feature
    indices, mismatched array lengths.

    Attributes:
        message -- explanation of the error
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class StateError(Exception):
    """
    Exception raised when an object is used out of its lifecycle, e.g. adding
    instances to a finished dataset or reading results before they exist.

    Attributes:
        message -- explanation of the error
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class FitError(Exception):
    """
    Exception raised when the minimizer fails on a block.

    Attributes:
        message -- explanation of the error
        n_instances -- the number of instances of the block
        n_features -- the number of features of the block
        params -- the parameter map at the moment of the failure
    """

    def __init__(
        self,
        message: str,
        n_instances: int = 0,
        n_features: int = 0,
        params: Optional[Dict[str, float]] = None,
    ):
        self.n_instances = n_instances
        self.n_features = n_features
        self.params = params if params is not None else {}
        self.message = (
            f"{message} (dataset size={n_instances}, "
            f"number of features={n_features}, model size={len(self.params)})"
        )
        super().__init__(self.message)
