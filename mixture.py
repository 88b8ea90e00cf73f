"""Mixture-model fitters used to propose cluster splits."""

import logging
import math
import warnings
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.special import logsumexp
from scipy.stats import multivariate_normal
from sklearn.exceptions import ConvergenceWarning
from sklearn.mixture import GaussianMixture

from config import ClusteringSettings
from errors import FitFailedError, InvalidClusterCount
from fitting import DifferentialEvolutionMinimizer
from models import ClusterObject, MixtureFit, ObjectId
from random_source import UniformRandomSource

logger = logging.getLogger(__name__)

MAX_RANDOM_STATE = 2**31 - 1
PARAMETERS_PER_COMPONENT = 5  # mean_x, mean_y, var_x, rho, var_y
LOG_2PI = math.log(2.0 * math.pi)
DETERMINANT_FLOOR = 1e-12


class MixtureModelFitter(Protocol):
    """Partitions objects into k groups and scores the partition."""

    def fit(
        self,
        objects: Sequence[ClusterObject],
        k: int,
        rng: UniformRandomSource,
        initial_centers: Optional[np.ndarray] = None,
    ) -> MixtureFit:
        ...


def _check_component_count(k: int, n_objects: int) -> None:
    if k < 1 or k > n_objects:
        raise InvalidClusterCount(k, n_objects)


def _feature_matrix(objects: Sequence[ClusterObject]) -> Tuple[np.ndarray, List[int]]:
    """Object centroids as features; z is only used when it varies."""
    positions = np.array([o.centroid.as_array() for o in objects], dtype=float).reshape(-1, 3)
    columns = [0, 1]
    if np.ptp(positions[:, 2]) > 0:
        columns.append(2)
    return positions[:, columns], columns


def _record_assignment(
    objects: Sequence[ClusterObject],
    labels: np.ndarray,
    probabilities: np.ndarray,
) -> Dict[ObjectId, int]:
    assignment: Dict[ObjectId, int] = {}
    for obj, label, probability in zip(objects, labels, probabilities):
        obj.most_probable_cluster = int(label)
        obj.probability = float(probability)
        assignment[obj.object_id] = int(label)
    return assignment


class GaussianMixtureFitter:
    """Full-covariance Gaussian mixture fitted by expectation maximization.

    Args:
        reg_covar: variance (px^2) added to every covariance diagonal; keeps
            components around one or two objects from collapsing
        max_iter: EM iteration cap
        tol: EM convergence threshold on the mean log-likelihood gain
    """

    def __init__(self, reg_covar: float = 1.0, max_iter: int = 100, tol: float = 1e-3):
        self.reg_covar = reg_covar
        self.max_iter = max_iter
        self.tol = tol

    def fit(
        self,
        objects: Sequence[ClusterObject],
        k: int,
        rng: UniformRandomSource,
        initial_centers: Optional[np.ndarray] = None,
    ) -> MixtureFit:
        """Fit k components to the object centroids.

        Returns:
            MixtureFit whose log-likelihood is summed over all objects, so values
            for different subsets and component counts can be added and compared.
        """
        _check_component_count(k, len(objects))
        features, columns = _feature_matrix(objects)
        if k == 1:
            return self._fit_single(objects, features, columns)

        means_init = None
        if initial_centers is not None:
            means_init = np.asarray(initial_centers, dtype=float).reshape(k, 3)[:, columns]

        model = GaussianMixture(
            n_components=k,
            covariance_type="full",
            reg_covar=self.reg_covar,
            max_iter=self.max_iter,
            tol=self.tol,
            means_init=means_init,
            random_state=rng.next_int(MAX_RANDOM_STATE),
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            model.fit(features)
        if not model.converged_:
            logger.debug(f"Gaussian mixture with {k} components did not converge in {self.max_iter} iterations")

        labels = model.predict(features)
        posteriors = model.predict_proba(features)
        log_likelihood = float(model.score(features) * len(features))
        assignment = _record_assignment(objects, labels, posteriors[np.arange(len(labels)), labels])

        centers = np.zeros((k, 3))
        centers[:, columns] = model.means_
        return MixtureFit(assignment=assignment, log_likelihood=log_likelihood, centers=centers)

    def _fit_single(self, objects: Sequence[ClusterObject], features: np.ndarray, columns: List[int]) -> MixtureFit:
        """Closed-form maximum-likelihood Gaussian for one component."""
        mean = features.mean(axis=0)
        centered = features - mean
        covariance = centered.T @ centered / len(features) + self.reg_covar * np.eye(features.shape[1])
        log_pdf = np.atleast_1d(multivariate_normal.logpdf(features, mean=mean, cov=covariance))
        assignment = _record_assignment(objects, np.zeros(len(objects), dtype=int), np.exp(log_pdf))

        centers = np.zeros((1, 3))
        centers[0, columns] = mean
        return MixtureFit(assignment=assignment, log_likelihood=float(log_pdf.sum()), centers=centers)


class GaussianLikelihoodObjectiveFunction:
    """Negative log-likelihood of a 2D Gaussian mixture over object centroids.

    Each component takes five parameters: mean x, mean y, variance x,
    correlation and variance y. Mixing weights are not free parameters; they
    follow from the normalized soft counts of every component.
    """

    def __init__(self, objects: Sequence[ClusterObject]):
        self.objects = list(objects)
        self.points = np.array([[o.centroid.x, o.centroid.y] for o in self.objects], dtype=float).reshape(-1, 2)

    def component_log_densities(self, parameters: np.ndarray) -> Optional[np.ndarray]:
        """(n_objects, k) log densities, or None when any covariance is singular."""
        components = np.asarray(parameters, dtype=float).reshape(-1, PARAMETERS_PER_COMPONENT)
        log_densities = np.empty((len(self.points), len(components)))
        for c, (mean_x, mean_y, var_x, rho, var_y) in enumerate(components):
            if var_x <= 0 or var_y <= 0:
                return None
            covariance_xy = math.sqrt(var_x * var_y) * rho
            determinant = var_x * var_y - covariance_xy * covariance_xy
            if determinant <= DETERMINANT_FLOOR:
                return None
            inverse = np.array([[var_y, -covariance_xy], [-covariance_xy, var_x]]) / determinant
            diff = self.points - np.array([mean_x, mean_y])
            mahalanobis = np.einsum("ni,ij,nj->n", diff, inverse, diff)
            log_densities[:, c] = -LOG_2PI - 0.5 * math.log(determinant) - 0.5 * mahalanobis
        if not np.all(np.isfinite(log_densities)):
            return None
        return log_densities

    def evaluate(self, parameters: np.ndarray) -> float:
        log_densities = self.component_log_densities(parameters)
        if log_densities is None:
            return math.inf
        log_weights = logsumexp(log_densities, axis=0) - math.log(len(self.points))
        log_weights = log_weights - logsumexp(log_weights)
        log_likelihood = float(np.sum(logsumexp(log_densities + log_weights, axis=1)))
        if not math.isfinite(log_likelihood):
            return math.inf
        return -log_likelihood

    def most_probable(self, parameters: np.ndarray) -> np.ndarray:
        """Index of the densest component for every object."""
        log_densities = self.component_log_densities(parameters)
        if log_densities is None:
            return np.zeros(len(self.points), dtype=int)
        return np.argmax(log_densities, axis=1)


class DEGaussianMixtureFitter:
    """Gaussian mixture fitted by differential evolution over the negative log-likelihood.

    Works on x and y only. Slower than GaussianMixtureFitter but free of EM's
    dependence on the starting means.
    """

    def __init__(
        self,
        scale_factor: float = 0.9,
        crossover_frequency: float = 0.05,
        max_iterations: int = 10,
        tol: float = 1e-3,
        max_generations: int = 2000,
        max_restarts: int = 10,
    ):
        self.scale_factor = scale_factor
        self.crossover_frequency = crossover_frequency
        self.max_iterations = max_iterations
        self.tol = tol
        self.max_generations = max_generations
        self.max_restarts = max_restarts

    def bounds(self, points: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Per-component search box derived from the bounding box of the points."""
        low = points.min(axis=0)
        high = points.max(axis=0)
        extent = np.maximum(high - low, 1.0)
        component_lower = [
            low[0] - 0.1 * extent[0],
            low[1] - 0.1 * extent[1],
            self.tol,
            -1.0,
            self.tol,
        ]
        component_upper = [
            high[0] + 0.1 * extent[0],
            high[1] + 0.1 * extent[1],
            extent[0] ** 2,
            1.0,
            extent[1] ** 2,
        ]
        return np.tile(component_lower, k), np.tile(component_upper, k)

    def fit(
        self,
        objects: Sequence[ClusterObject],
        k: int,
        rng: UniformRandomSource,
        initial_centers: Optional[np.ndarray] = None,
    ) -> MixtureFit:
        _check_component_count(k, len(objects))
        objective = GaussianLikelihoodObjectiveFunction(objects)
        lower, upper = self.bounds(objective.points, k)
        population_size = PARAMETERS_PER_COMPONENT * k
        minimizer = DifferentialEvolutionMinimizer(rng, max_generations=self.max_generations)
        guess = None if initial_centers is None else self._initial_guess(initial_centers, lower, upper, k)

        value = math.inf
        best = lower.copy()
        for attempt in range(1, self.max_restarts + 1):
            if guess is None:
                best = minimizer.minimize(
                    objective, lower, upper, population_size,
                    self.scale_factor, self.max_iterations, self.crossover_frequency, self.tol,
                )
            else:
                best = minimizer.minimize_with_initial(
                    objective, lower, upper, population_size,
                    self.scale_factor, self.max_iterations, self.crossover_frequency, self.tol, guess,
                )
            value = objective.evaluate(best)
            if math.isfinite(value):
                break
            logger.debug(f"Attempt {attempt} for {k} component(s) found no finite likelihood; restarting")
        else:
            raise FitFailedError(
                f"No finite likelihood for {k} component(s) over {len(objects)} objects "
                f"after {self.max_restarts} attempts"
            )

        labels = objective.most_probable(best)
        log_densities = objective.component_log_densities(best)
        densities = np.exp(log_densities[np.arange(len(labels)), labels])
        assignment = _record_assignment(objects, labels, densities)

        centers = np.zeros((k, 3))
        centers[:, :2] = best.reshape(k, PARAMETERS_PER_COMPONENT)[:, :2]
        return MixtureFit(assignment=assignment, log_likelihood=-value, centers=centers)

    @staticmethod
    def _initial_guess(initial_centers: np.ndarray, lower: np.ndarray, upper: np.ndarray, k: int) -> np.ndarray:
        centers = np.asarray(initial_centers, dtype=float).reshape(k, 3)
        guess = (lower + upper) / 2.0
        guess = guess.reshape(k, PARAMETERS_PER_COMPONENT)
        guess[:, 0:2] = centers[:, 0:2]
        guess[:, 3] = 0.0
        guess[:, 2] = upper.reshape(k, PARAMETERS_PER_COMPONENT)[:, 2] / 16.0
        guess[:, 4] = upper.reshape(k, PARAMETERS_PER_COMPONENT)[:, 4] / 16.0
        return np.clip(guess.ravel(), lower, upper)


def build_fitter(settings: ClusteringSettings) -> MixtureModelFitter:
    """Create the fitter selected in the settings."""
    if settings.fitter == "de":
        return DEGaussianMixtureFitter(max_generations=settings.de_max_generations)
    return GaussianMixtureFitter(reg_covar=settings.reg_covar, max_iter=settings.gmm_max_iter)
