"""
Consensus ADMM over the partitions of the training data.

Every lambda is solved independently. For a lambda with B partitions, the
iteration i does

    x_j = argmin  loglik_j(x) + rho/2 ||x - (z - u_j)||²     (per partition, in parallel)
    z   = consensus(mean_j(x_j) + mean_j(u_j))                 (driver)
    u_j = u_j + x_j - z                                        (start of i + 1)

where the local step is a Bayesian logistic regression with prior mean z - u_j
and prior variance 1/rho, and the consensus step shrinks towards zero: a
weighted mean for L2, a soft thresholding for L1. The u recurrence travels
between iterations as messages (u + x is returned by every partition); the
artifacts written along the way are never read back.
"""
import logging
import math
from enum import Enum
from enum import unique
from typing import Dict
from typing import List
from typing import Mapping
from typing import NamedTuple
from typing import Optional

from pydantic import BaseModel

from admm_regression.artifacts import ArtifactStore
from admm_regression.artifacts import write_models
from admm_regression.config import ImmutableBaseModel
from admm_regression.config import JobConfig
from admm_regression.constants import INTERCEPT_NAME
from admm_regression.constants import Regularizer
from admm_regression.dataset import Dataset
from admm_regression.dataset import build_dataset
from admm_regression.evaluation import test_loglik
from admm_regression.exceptions import FormatError
from admm_regression.execution import ExecutionEngine
from admm_regression.execution import check_barrier
from admm_regression.fitter import BayesianLogisticRegression
from admm_regression.fitter import FitOptions
from admm_regression.logger import log_method_call
from admm_regression.models.linear_model import LinearModel
from admm_regression.models.linear_model import mean_models
from admm_regression.naive_train import NaiveTrainer
from admm_regression.utils import get_lambda
from admm_regression.utils import lambda_key
from admm_regression.utils import partition_key

logger = logging.getLogger(__name__)

INITIAL_SOLVER_EPSILON = 0.01
MIN_SOLVER_EPSILON = 0.00001
SOLVER_EPSILON_DECAY = 10.0
MIN_DIFF_FOR_EPSILON_DECAY = 0.001
AGGRESSIVE_DECAY_START_ITERATION = 5
INITIALIZATION_SOLVER_EPSILON = 0.01
INITIAL_BEST_TEST_LOGLIK = -9999999.0


@unique
class AdmmStatus(str, Enum):
    INIT = "INIT"
    ITERATE = "ITERATE"
    CONVERGED = "CONVERGED"
    ITERATION_BUDGET_EXHAUSTED = "ITERATION_BUDGET_EXHAUSTED"
    TERMINAL = "TERMINAL"


class BroadcastState(ImmutableBaseModel):
    """What every partition task of one iteration reads. Rebuilt every iteration."""

    iteration: int
    z: Dict[str, Dict[str, float]]
    lambda_rho: Dict[str, float]
    rho_adapt_rate: float
    solver_epsilon: float
    max_iter: int


class PartitionFit(NamedTuple):
    x: LinearModel
    u_plus_x: LinearModel


class IterationSummary(BaseModel):
    iteration: int
    rho_adapt_rate: float
    solver_epsilon: float
    max_diff: float
    min_diff: float
    test_loglik: Optional[Dict[str, float]] = None


class AdmmResult(BaseModel):
    status: AdmmStatus
    iterations: int
    final_models: Dict[str, List[Dict]]
    best_lambda: Optional[str] = None
    best_iteration: Optional[int] = None
    best_test_loglik: Optional[float] = None
    best_model: Optional[List[Dict]] = None
    summaries: List[IterationSummary] = []

    def final_model(self, lambda_) -> LinearModel:
        return LinearModel.from_triples(
            INTERCEPT_NAME, self.final_models[lambda_key(lambda_)]
        )


def lambda_rho_table(
    lambdas: List[float], rhos: Optional[List[float]] = None
) -> Dict[str, float]:
    """
    The rho of every lambda: as configured, or 1 for lambda <= 100 and 10
    above.
    """
    if rhos is not None and len(rhos) != len(lambdas):
        raise FormatError(
            "The number of rho's should be exactly the same as the number of "
            "lambda's. OR: don't claim rho!"
        )
    table = {}
    for j, lambda_ in enumerate(lambdas):
        if rhos is not None:
            rho = float(rhos[j])
        else:
            rho = 1.0 if lambda_ <= 100 else 10.0
        table[lambda_key(lambda_)] = rho
    return table


def rho_adapt_rate(
    iteration: int,
    initialize_boost_rate: float = 0.0,
    initialized: bool = False,
    rho_adapt_coefficient: float = 0.0,
) -> float:
    if iteration == 1:
        return initialize_boost_rate if initialized else 1.0
    if rho_adapt_coefficient > 0:
        return math.exp(-(iteration - 1) * rho_adapt_coefficient)
    return 1.0


def next_solver_epsilon(
    solver_epsilon: float, iteration: int, min_diff: float, aggressive: bool
) -> float:
    """
    The solver tolerance tightens tenfold once the consensus moves little,
    or on every iteration after the fifth in aggressive mode.
    """
    if not aggressive and iteration > 1 and min_diff < MIN_DIFF_FOR_EPSILON_DECAY:
        return solver_epsilon / SOLVER_EPSILON_DECAY
    if aggressive and iteration > AGGRESSIVE_DECAY_START_ITERATION:
        return solver_epsilon / SOLVER_EPSILON_DECAY
    return solver_epsilon


def soft_threshold(value: float, threshold: float) -> float:
    if value > threshold:
        return value - threshold
    if value < -threshold:
        return value + threshold
    return 0.0


def _unpenalized_intercept(xbar: LinearModel, ubar: Optional[LinearModel]) -> float:
    if ubar is None:
        return xbar.intercept
    return xbar.intercept + ubar.intercept


def l2_consensus(
    xbar: LinearModel,
    ubar: Optional[LinearModel],
    lambda_: float,
    rho: float,
    n_blocks: int,
    lambda_map: Optional[Mapping[str, float]] = None,
    penalize_intercept: bool = False,
) -> LinearModel:
    """
    z = w * (xbar + ubar) with w = B*rho / (lambda + B*rho), or with lambda_k
    for the features of the lambda map.
    """
    weight = n_blocks * rho / (lambda_ + n_blocks * rho)
    weight_map = {
        key: n_blocks * rho / (value + n_blocks * rho)
        for key, value in (lambda_map or {}).items()
    }
    z = LinearModel()
    z.linear_combine(1.0, weight, xbar, weight_map)
    if ubar is not None:
        z.linear_combine(1.0, weight, ubar, weight_map)
    if not penalize_intercept:
        z.intercept = _unpenalized_intercept(xbar, ubar)
    return z


def l1_consensus(
    xbar: LinearModel,
    ubar: Optional[LinearModel],
    lambda_: float,
    rho: float,
    n_blocks: int,
    lambda_map: Optional[Mapping[str, float]] = None,
    penalize_intercept: bool = False,
) -> LinearModel:
    """
    z = S(xbar + ubar, lambda / (rho*B)), S the soft thresholding, with
    lambda_k for the features of the lambda map. Coefficients thresholded
    to zero are dropped.
    """
    lambda_map = lambda_map or {}
    threshold = lambda_ / (rho * n_blocks)
    z = LinearModel()
    z.linear_combine(1.0, 1.0, xbar)
    if ubar is not None:
        z.linear_combine(1.0, 1.0, ubar)
    coefficients = {}
    for key, value in z.coefficients.items():
        key_threshold = (
            lambda_map[key] / (rho * n_blocks) if key in lambda_map else threshold
        )
        value = soft_threshold(value, key_threshold)
        if value != 0.0:
            coefficients[key] = value
    z.coefficients = coefficients
    if not penalize_intercept:
        z.intercept = _unpenalized_intercept(xbar, ubar)
    return z


def max_abs_diff(old: Optional[LinearModel], new: LinearModel) -> float:
    diff = old.copy() if old is not None else LinearModel()
    diff.linear_combine(1.0, -1.0, new)
    return diff.max_abs_value()


def fit_admm_partition(
    key: str,
    dataset: Dataset,
    state: BroadcastState,
    u: Optional[Dict[str, float]] = None,
) -> PartitionFit:
    """
    The local step of one "lambda#partition": the posterior mode under the
    prior N(z - u, 1/(rho*rate)), started from z.
    """
    lambda_ = get_lambda(key)
    rho = state.lambda_rho[lambda_] * state.rho_adapt_rate
    z = LinearModel.from_map(INTERCEPT_NAME, state.z[lambda_])
    u_model = LinearModel.from_map(INTERCEPT_NAME, u) if u else LinearModel()
    prior_mean = u_model.copy()
    prior_mean.linear_combine(-1.0, 1.0, z)

    fitter = BayesianLogisticRegression()
    fitter.fit(
        dataset,
        init_param=z.to_map(INTERCEPT_NAME),
        prior_mean=prior_mean.to_map(INTERCEPT_NAME),
        default_prior_var=1.0 / rho,
        options=FitOptions(epsilon=state.solver_epsilon, max_iter=state.max_iter),
    )
    x = fitter.get_linear_model()
    u_plus_x = u_model.copy()
    u_plus_x.linear_combine(1.0, 1.0, x)
    return PartitionFit(x, u_plus_x)


class AdmmTrainer:
    """
    Drives the consensus loop: INIT, then ITERATE(i) until CONVERGED or
    ITERATION_BUDGET_EXHAUSTED, then TERMINAL once the final models are out.
    """

    def __init__(
        self,
        config: JobConfig,
        engine: ExecutionEngine,
        artifacts: Optional[ArtifactStore] = None,
        lambda_map: Optional[Mapping[str, float]] = None,
        test_records: Optional[List[Mapping]] = None,
    ):
        self.config = config
        self.admm_config = config.admm
        self.engine = engine
        self.artifacts = artifacts
        self.lambda_map = dict(lambda_map or {})
        self.test_records = test_records or None
        self.lambda_rho = lambda_rho_table(
            self.admm_config.lambdas, self.admm_config.rhos
        )
        self.status = AdmmStatus.INIT

        self.z: Dict[str, LinearModel] = {}
        self.u: Dict[str, LinearModel] = {}
        self.best_test_loglik = INITIAL_BEST_TEST_LOGLIK
        self.best_lambda: Optional[str] = None
        self.best_iteration: Optional[int] = None
        self.best_model: Optional[LinearModel] = None
        self.summaries: List[IterationSummary] = []

    @property
    def n_blocks(self) -> int:
        return self.config.prepare.num_blocks

    @property
    def n_lambdas(self) -> int:
        return len(self.lambda_rho)

    @property
    def initializes_with_mean_model(self) -> bool:
        return (
            self.admm_config.initialize_boost_rate > 0
            and self.admm_config.regularizer == Regularizer.L2
        )

    @property
    def initialization_epsilon(self) -> float:
        epsilon = self.config.naive_train.liblinear_epsilon
        return epsilon if epsilon is not None else INITIALIZATION_SOLVER_EPSILON

    @log_method_call
    def train(self, partitions: Mapping[str, List[Mapping]]) -> AdmmResult:
        """
        Runs ADMM over the training records grouped by partition id (the
        "key" of the prepared records).
        """
        self.status = AdmmStatus.INIT
        logger.info(f"Lambda Map has size = {len(self.lambda_map)}")
        if self.artifacts is not None:
            self.artifacts.write_lambda_rho(
                {float(lambda_): rho for lambda_, rho in self.lambda_rho.items()}
            )
        datasets = self._build_datasets(partitions)
        self.z = {lambda_: LinearModel() for lambda_ in self.lambda_rho}
        self.u = {}

        if self.initializes_with_mean_model:
            self._initialize(partitions)

        solver_epsilon = INITIAL_SOLVER_EPSILON
        min_diff = math.inf
        u_plus_x: Dict[str, LinearModel] = {}
        iteration = 0
        self.status = AdmmStatus.ITERATE
        for iteration in range(1, self.admm_config.num_iters + 1):
            logger.info(f"Now starting iteration {iteration}")
            rate = rho_adapt_rate(
                iteration,
                self.admm_config.initialize_boost_rate,
                self.initializes_with_mean_model,
                self.admm_config.rho_adapt_coefficient,
            )
            if iteration > 1:
                self.u = self._next_u(u_plus_x)
            solver_epsilon = next_solver_epsilon(
                solver_epsilon,
                iteration,
                min_diff,
                self.admm_config.aggressive_liblinear_epsilon_decay,
            )
            logger.info(
                f"Liblinear Epsilon for iter = {iteration} is: {solver_epsilon}, "
                f"rho adapt rate is: {rate}"
            )
            if self.artifacts is not None:
                self.artifacts.write_iteration_inputs(iteration, self.u, self.z)

            x, u_plus_x = self._local_step(iteration, datasets, rate, solver_epsilon)
            if self.artifacts is not None:
                self.artifacts.write_iteration_outputs(iteration, x, u_plus_x)

            last_z = self.z
            self.z = self._consensus_step(x)
            diffs = {
                lambda_: max_abs_diff(last_z.get(lambda_), z)
                for lambda_, z in self.z.items()
            }
            for lambda_, diff in sorted(diffs.items()):
                logger.info(
                    f"For lambda={lambda_}: Max Difference between last z and "
                    f"this z = {diff}"
                )
            max_diff = max(diffs.values())
            min_diff = min(diffs.values())

            if (
                self.artifacts is not None
                and self.admm_config.remove_tmp_dir
                and iteration >= 2
            ):
                self.artifacts.remove_iteration(iteration - 1)

            loglik = self._evaluate(iteration) if self.test_records else None
            self.summaries.append(
                IterationSummary(
                    iteration=iteration,
                    rho_adapt_rate=rate,
                    solver_epsilon=solver_epsilon,
                    max_diff=max_diff,
                    min_diff=min_diff,
                    test_loglik=loglik,
                )
            )
            if max_diff < self.admm_config.epsilon and _reached_min_solver_epsilon(
                solver_epsilon
            ):
                self.status = AdmmStatus.CONVERGED
                break
        else:
            self.status = AdmmStatus.ITERATION_BUDGET_EXHAUSTED
        logger.info(f"ADMM stopped after {iteration} iterations: {self.status.value}")

        result = self._result(iteration)
        if self.artifacts is not None:
            write_models(self.artifacts.final_model_path, self.z)
            if self.admm_config.remove_tmp_dir:
                self.artifacts.remove_tmp_dirs(last_iteration=iteration)
        self.status = AdmmStatus.TERMINAL
        return result

    def _build_datasets(self, partitions) -> Dict[str, Dataset]:
        fitter_config = self.config.fitter
        tasks = {
            block: dict(
                records=records,
                binary_feature=fitter_config.binary_feature,
                short_feature_index=fitter_config.short_feature_index,
                bias=1.0 if fitter_config.has_intercept else 0.0,
                ignore_value=self.config.prepare.ignore_value,
            )
            for block, records in partitions.items()
        }
        return self.engine.run_on_partitions(build_dataset, tasks)

    def _initialize(self, partitions):
        """Mean model of the independent per-key fits as the starting z."""
        logger.info("Now start mean model initializing......")
        trainer = NaiveTrainer(
            self.config,
            self.engine,
            lambda_map=self.lambda_map,
            artifacts=self.artifacts,
            epsilon=self.initialization_epsilon,
        )
        self.z = trainer.mean_models(trainer.train(partitions))
        if self.artifacts is not None:
            write_models(self.artifacts.initial_model_path, self.z)
        if self.test_records:
            self._evaluate(0)

    def _next_u(self, u_plus_x: Mapping[str, LinearModel]) -> Dict[str, LinearModel]:
        u = {}
        for key, model in u_plus_x.items():
            new_u = model.copy()
            new_u.linear_combine(1.0, -1.0, self.z[get_lambda(key)])
            u[key] = new_u
        return u

    def _local_step(self, iteration, datasets, rate, solver_epsilon):
        state = BroadcastState(
            iteration=iteration,
            z={
                lambda_: model.to_map(INTERCEPT_NAME)
                for lambda_, model in self.z.items()
            },
            lambda_rho=self.lambda_rho,
            rho_adapt_rate=rate,
            solver_epsilon=solver_epsilon,
            max_iter=self.config.fitter.max_iter,
        )
        tasks = {}
        for lambda_ in self.lambda_rho:
            for block, dataset in datasets.items():
                key = partition_key(lambda_, block)
                u = self.u.get(key)
                tasks[key] = dict(
                    key=key,
                    dataset=dataset,
                    state=state,
                    u=u.to_map(INTERCEPT_NAME) if u is not None else None,
                )
        results = self.engine.run_on_partitions(fit_admm_partition, tasks)
        check_barrier(results, self.n_lambdas * self.n_blocks)
        x = {key: result.x for key, result in results.items()}
        u_plus_x = {key: result.u_plus_x for key, result in results.items()}
        return x, u_plus_x

    def _consensus_step(self, x: Mapping[str, LinearModel]) -> Dict[str, LinearModel]:
        xbar = mean_models(x, self.n_blocks)
        ubar = mean_models(self.u, self.n_blocks) if self.u else {}
        consensus = (
            l2_consensus
            if self.admm_config.regularizer == Regularizer.L2
            else l1_consensus
        )
        z = {}
        for lambda_, rho in self.lambda_rho.items():
            z[lambda_] = consensus(
                xbar[lambda_],
                ubar.get(lambda_),
                float(lambda_),
                rho,
                self.n_blocks,
                self.lambda_map,
                self.config.fitter.penalize_intercept,
            )
        return z

    def _evaluate(self, iteration: int) -> Dict[str, float]:
        loglik = test_loglik(
            self.z,
            self.test_records,
            num_click_replicates=self.config.prepare.num_click_replicates,
            ignore_value=self.config.prepare.ignore_value,
        )
        if self.artifacts is not None:
            self.artifacts.write_sample_test_loglik(iteration, loglik)
        for lambda_ in sorted(loglik):
            logger.info(
                f"Sample test loglik for lambda={lambda_} is: {loglik[lambda_]}"
            )
            if loglik[lambda_] > self.best_test_loglik and iteration > 0:
                self.best_test_loglik = loglik[lambda_]
                self.best_lambda = lambda_
                self.best_iteration = iteration
                self.best_model = self.z[lambda_].copy()
                if self.artifacts is not None:
                    self.artifacts.write_best_model(
                        iteration, lambda_, self.best_model
                    )
        return loglik

    def _result(self, iterations: int) -> AdmmResult:
        best = self.best_model is not None
        return AdmmResult(
            status=self.status,
            iterations=iterations,
            final_models={
                lambda_: model.to_triples(INTERCEPT_NAME)
                for lambda_, model in self.z.items()
            },
            best_lambda=self.best_lambda,
            best_iteration=self.best_iteration,
            best_test_loglik=self.best_test_loglik if best else None,
            best_model=self.best_model.to_triples(INTERCEPT_NAME) if best else None,
            summaries=self.summaries,
        )


def _reached_min_solver_epsilon(solver_epsilon: float) -> bool:
    return solver_epsilon < MIN_SOLVER_EPSILON or math.isclose(
        solver_epsilon, MIN_SOLVER_EPSILON
    )
