from admm_regression.models.linear_model import LinearModel
from admm_regression.models.linear_model import mean_models

__all__ = ["LinearModel", "mean_models"]
