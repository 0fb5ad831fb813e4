import numpy as np
from scipy import sparse
from scipy.special import expit

from admm_regression.dataset import BinaryDataset
from admm_regression.dataset import Dataset
from admm_regression.exceptions import StateError


class LogisticRegressionL2:
    """
    Negative log posterior of a logistic regression with a Gaussian prior.

    Mathematical notes:
    - Score: s_i = w·x_i + offset_i
    - Instance weight: c_i = weight_i * (Cp if y_i = 1 else Cn)
    - Value: f(w) = m * [½ Σ_k (w_k − μ_k)² / σ²_k + Σ_i c_i log(1 + exp(−y_i s_i))]
    - Gradient: g = m * [(w − μ)/σ² + Xᵀ (c ⊙ (p − 1) ⊙ y)], p_i = sigmoid(y_i s_i)
    - Hessian-vector product: Hv = m * [v/σ² + Xᵀ D X v], D_ii = c_i p_i (1 − p_i)

    The full Hessian and its diagonal are the unscaled diag(1/σ²) + Xᵀ D X,
    from which the posterior (co)variance is derived.

    Scores and probabilities are cached per w, so the value, the gradient and
    the Hessian-vector products requested by the minimizer at the same point
    make a single pass over the data for the scores.
    """

    def __init__(
        self,
        dataset: Dataset,
        prior_mean: np.ndarray,
        prior_var: np.ndarray,
        multiplier: float = 1.0,
        cp: float = 1.0,
        cn: float = 1.0,
    ):
        if not dataset.is_finished:
            raise StateError("The dataset must be finished before building an objective.")
        self.dataset = dataset
        self.prior_mean = np.asarray(prior_mean, dtype=np.float64)
        self.prior_var_inv = 1.0 / np.asarray(prior_var, dtype=np.float64)
        self.multiplier = multiplier
        self.instance_weight = np.where(dataset.y == 1, cp, cn) * dataset.weight
        self._y = dataset.y.astype(np.float64)
        self._cached_w = None
        self._p = None

    @property
    def dimension(self) -> int:
        return self.dataset.n

    def xv(self, v: np.ndarray) -> np.ndarray:
        return self.dataset.x @ v

    def xtv(self, v: np.ndarray) -> np.ndarray:
        return self.dataset.x.T @ v

    def _scores(self, w: np.ndarray) -> np.ndarray:
        return self.xv(w) + self.dataset.offset

    def _update(self, w: np.ndarray):
        if self._cached_w is not None and np.array_equal(w, self._cached_w):
            return
        self._yz = self._y * self._scores(w)
        self._p = expit(self._yz)
        self._cached_w = np.array(w, copy=True)

    def value(self, w: np.ndarray) -> float:
        self._update(w)
        # log(1 + exp(-yz)) in its overflow free form
        loss = np.dot(self.instance_weight, np.logaddexp(0.0, -self._yz))
        diff = w - self.prior_mean
        return self.multiplier * (0.5 * np.dot(diff * diff, self.prior_var_inv) + loss)

    def gradient(self, w: np.ndarray) -> np.ndarray:
        self._update(w)
        residual = self.instance_weight * (self._p - 1.0) * self._y
        return self.multiplier * (
            (w - self.prior_mean) * self.prior_var_inv + self.xtv(residual)
        )

    def hessian_vector_product(self, w: np.ndarray, s: np.ndarray) -> np.ndarray:
        self._update(w)
        d = self.instance_weight * self._p * (1.0 - self._p)
        return self.multiplier * (s * self.prior_var_inv + self.xtv(d * self.xv(s)))

    def _curvature(self, w: np.ndarray) -> np.ndarray:
        p = expit(self._y * self._scores(w))
        return self.instance_weight * p * (1.0 - p)

    def hessian_diagonal(self, w: np.ndarray) -> np.ndarray:
        d = self._curvature(w)
        return self.prior_var_inv + self.dataset.x.power(2).T @ d

    def hessian(self, w: np.ndarray) -> np.ndarray:
        x = self.dataset.x
        d = self._curvature(w)
        h = (x.T @ (sparse.diags(d) @ x)).toarray()
        h[np.diag_indices_from(h)] += self.prior_var_inv
        return h


class LogisticRegressionL2BinaryFeature(LogisticRegressionL2):
    """
    The objective over a BinaryDataset. Every feature value is 1, so the
    products with X and Xᵀ reduce to gathering and scattering with unit
    increments over the stored indices.
    """

    def __init__(
        self,
        dataset: BinaryDataset,
        prior_mean: np.ndarray,
        prior_var: np.ndarray,
        multiplier: float = 1.0,
        cp: float = 1.0,
        cn: float = 1.0,
    ):
        super().__init__(dataset, prior_mean, prior_var, multiplier, cp, cn)
        n_rows = len(dataset.y)
        self._columns = dataset.indices.astype(np.intp) - 1
        self._rows = np.repeat(np.arange(n_rows), np.diff(dataset.indptr))
        self._n_rows = n_rows

    def xv(self, v: np.ndarray) -> np.ndarray:
        return np.bincount(self._rows, weights=v[self._columns], minlength=self._n_rows)

    def xtv(self, v: np.ndarray) -> np.ndarray:
        return np.bincount(
            self._columns, weights=v[self._rows], minlength=self.dimension
        )

    def hessian_diagonal(self, w: np.ndarray) -> np.ndarray:
        return self.prior_var_inv + self.xtv(self._curvature(w))

    def hessian(self, w: np.ndarray) -> np.ndarray:
        d = self._curvature(w)
        h = np.diag(self.prior_var_inv)
        indptr = self.dataset.indptr
        for i in range(self._n_rows):
            columns = self._columns[indptr[i] : indptr[i + 1]]
            h[np.ix_(columns, columns)] += d[i]
        return h
