import logging
import re
from typing import Dict
from typing import Mapping
from typing import Optional
from typing import Tuple
from typing import Union

import numpy as np
from pydantic import BaseModel
from pydantic import ValidationError
from pydantic import field_validator
from scipy import linalg
from scipy.optimize import minimize

from admm_regression.constants import INTERCEPT_NAME
from admm_regression.constants import SolverType
from admm_regression.dataset import BinaryDataset
from admm_regression.dataset import Dataset
from admm_regression.exceptions import FitError
from admm_regression.exceptions import FormatError
from admm_regression.exceptions import StateError
from admm_regression.models.linear_model import LinearModel
from admm_regression.objective import LogisticRegressionL2
from admm_regression.objective import LogisticRegressionL2BinaryFeature

logger = logging.getLogger(__name__)

# scipy trust-ncg status codes
MAXITER_REACHED = 1
BAD_APPROXIMATION = 2
LINALG_ERROR = 3


class FitOptions(BaseModel):
    epsilon: float = 0.01
    max_iter: int = 10000
    verbose: int = 0
    positive_weight: float = 1.0
    type: SolverType = SolverType.LOGISTIC_L2_PRIMAL

    @field_validator("epsilon", "positive_weight")
    @classmethod
    def validate_positive(cls, value: float):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_iter")
    @classmethod
    def validate_max_iter(cls, value: int):
        if value < 1:
            raise ValueError("must be at least 1")
        return value


def parse_options(option: Optional[str]) -> FitOptions:
    """
    Parses a comma separated option string, e.g.
    "max_iter=50, epsilon=0.01, positive_weight=2, type=Logistic_L2_primal".
    Unknown keys and invalid values are a FormatError.
    """
    if option is None or not option.strip():
        return FitOptions()
    values = {}
    for token in re.split(r"\s*,\s*", option.strip()):
        pair = re.split(r"\s*=\s*", token)
        if len(pair) != 2:
            raise FormatError(
                f"Unknown option: '{token}' in '{option}'"
            )
        key, value = pair
        if key not in FitOptions.model_fields:
            raise FormatError(
                f"Invalid option: '{token}' in '{option}'"
            )
        values[key] = value
    try:
        return FitOptions(**values)
    except ValidationError as exc:
        raise FormatError(f"Invalid options in '{option}': {exc}")


class BayesianLogisticRegression:
    """
    Fits the posterior mode of a logistic regression on one finished dataset
    under an independent Gaussian prior per feature, with a trust region
    Newton-CG minimizer.

    Prior means, prior variances and the initial point are given as sparse
    maps keyed by feature name; features missing from a map take the
    default, and map entries for features absent from the dataset take no
    part in the minimization. When the dataset has a bias, the coefficient of
    the bias feature is the intercept.
    """

    def __init__(self, compute_full_posterior_var: bool = False):
        self.compute_full_posterior_var = compute_full_posterior_var
        self.coefficients: Optional[Dict[str, float]] = None
        self.posterior_var: Optional[Dict[str, float]] = None
        self.posterior_cov: Optional[Dict[Tuple[str, str], float]] = None
        self.n_iterations = 0

    def fit(
        self,
        dataset: Dataset,
        init_param: Optional[Mapping] = None,
        prior_mean: Optional[Mapping] = None,
        prior_var: Optional[Mapping] = None,
        default_prior_mean: float = 0.0,
        default_prior_var: float = 1.0,
        options: Union[FitOptions, str, None] = None,
        compute_posterior_var: bool = False,
    ):
        if not dataset.is_finished:
            raise StateError("Cannot train a model using unfinished dataset")
        if not isinstance(options, FitOptions):
            options = parse_options(options)

        n = dataset.n
        w = _dense(init_param, dataset, 0.0)
        mean = _dense(prior_mean, dataset, default_prior_mean)
        var = _dense(prior_var, dataset, default_prior_var)
        if (var <= 0).any():
            raise FormatError("Prior variances must be positive")
        self.coefficients = None
        self.posterior_var = None
        self.posterior_cov = None
        self.n_iterations = 0

        post_var = var.copy() if compute_posterior_var else None
        post_cov = None
        if options.type == SolverType.LOGISTIC_L2_PRIMAL:
            objective_class = (
                LogisticRegressionL2BinaryFeature
                if isinstance(dataset, BinaryDataset)
                else LogisticRegressionL2
            )
            objective = objective_class(
                dataset, mean, var, multiplier=1.0, cp=options.positive_weight, cn=1.0
            )
            n_positive = int((dataset.y == 1).sum())
            n_negative = dataset.n_instances - n_positive
            tolerance = (
                options.epsilon * min(n_positive, n_negative) / dataset.n_instances
                if dataset.n_instances
                else options.epsilon
            )
            if n > 0:
                w = self._minimize(objective, w, tolerance, options, dataset)
            if compute_posterior_var and n > 0:
                if self.compute_full_posterior_var:
                    post_cov = _inverse_spd(objective.hessian(w), dataset, w)
                    post_var = np.diag(post_cov).copy()
                else:
                    post_var = 1.0 / objective.hessian_diagonal(w)

        names = dataset.feature_names
        self.coefficients = {name: float(w[i]) for i, name in enumerate(names)}
        if compute_posterior_var:
            self.posterior_var = {
                name: float(post_var[i]) for i, name in enumerate(names)
            }
            if self.compute_full_posterior_var:
                if post_cov is None:
                    post_cov = np.diag(var)
                rows, columns = np.nonzero(post_cov)
                self.posterior_cov = {
                    (names[i], names[j]): float(post_cov[i, j])
                    for i, j in zip(rows, columns)
                }

        # features known only to the prior keep their prior
        if prior_mean is not None:
            for key, value in prior_mean.items():
                self.coefficients.setdefault(key, float(value))
        if prior_var is not None and compute_posterior_var:
            for key, value in prior_var.items():
                self.posterior_var.setdefault(key, float(value))
                if self.compute_full_posterior_var:
                    self.posterior_cov.setdefault((key, key), float(value))
        return self

    def _minimize(self, objective, w0, tolerance, options, dataset) -> np.ndarray:
        g0_norm = np.linalg.norm(objective.gradient(w0))
        if g0_norm == 0:
            return w0
        gtol = max(tolerance, np.finfo(np.float64).eps) * g0_norm
        result = minimize(
            objective.value,
            w0,
            method="trust-ncg",
            jac=objective.gradient,
            hessp=objective.hessian_vector_product,
            options={
                "gtol": gtol,
                "maxiter": options.max_iter,
                "disp": options.verbose > 0,
            },
        )
        self.n_iterations = result.nit
        if result.status == LINALG_ERROR or not np.isfinite(result.x).all():
            raise _fit_error(f"Minimization failed: {result.message}", dataset, result.x)
        if result.status in (MAXITER_REACHED, BAD_APPROXIMATION):
            logger.warning(
                f"Minimization stopped before reaching the tolerance "
                f"after {result.nit} iterations: {result.message}"
            )
        logger.debug(
            f"Minimization finished after {result.nit} iterations, "
            f"f={result.fun}, |g|={np.linalg.norm(result.jac)}"
        )
        return result.x

    def get_linear_model(self) -> LinearModel:
        if self.coefficients is None:
            raise StateError(
                "This model has not been built. Please call fit() before calling get_linear_model()."
            )
        if INTERCEPT_NAME in self.coefficients:
            return LinearModel.from_map(INTERCEPT_NAME, self.coefficients)
        return LinearModel(0.0, self.coefficients)


def _dense(values: Optional[Mapping], dataset: Dataset, default: float) -> np.ndarray:
    array = np.full(dataset.n, default, dtype=np.float64)
    if values is not None:
        for name, value in values.items():
            if name is None:
                raise FormatError("input key is null")
            index = dataset.feature_index(name)
            if index == -1:
                continue
            array[index - 1] = value
    return array


def _inverse_spd(h: np.ndarray, dataset: Dataset, w: np.ndarray) -> np.ndarray:
    try:
        factor = linalg.cho_factor(h)
    except linalg.LinAlgError as exc:
        raise _fit_error(f"The Hessian is not positive definite: {exc}", dataset, w)
    return linalg.cho_solve(factor, np.eye(len(h)))


def _fit_error(message: str, dataset: Dataset, w: np.ndarray) -> FitError:
    params = {name: float(w[i]) for i, name in enumerate(dataset.feature_names)}
    error = FitError(
        message,
        n_instances=dataset.n_instances,
        n_features=dataset.n,
        params=params,
    )
    logger.error(f"{error.message}\nparams: {params}")
    return error
