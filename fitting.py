"""Derivative-free minimizers for scalar objective functions."""

import logging
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from errors import MaxIterationsExceeded
from random_source import UniformRandomSource

logger = logging.getLogger(__name__)

# Scale used to build a simplex around a point when no scales are given
INITIAL_SIMPLEX_SCALE = 0.1
# Iteration count after which an uncapped simplex search is reported as stalled
STALL_WARNING_ITERATIONS = 100_000
# Guards the relative tolerance against division by zero
TOLERANCE_EPSILON = 1.0e-20


class ObjectiveFunction(Protocol):
    """Maps a parameter vector to a scalar cost."""

    def evaluate(self, parameters: np.ndarray) -> float:
        ...


ObjectiveLike = Union[ObjectiveFunction, Callable[[np.ndarray], float]]


def as_objective(f: ObjectiveLike) -> Callable[[np.ndarray], float]:
    """Accept either an ObjectiveFunction or a plain callable."""
    evaluate = getattr(f, "evaluate", None)
    if callable(evaluate):
        return evaluate
    if callable(f):
        return f
    raise TypeError(f"Expected an objective function or callable, got {type(f).__name__}")


def _relative_change(new_value: float, old_value: float) -> float:
    return 2.0 * (new_value - old_value) / (abs(new_value) + abs(old_value) + TOLERANCE_EPSILON)


class NelderMeadMinimizer:
    """Downhill simplex minimizer.

    Args:
        a: reflection factor
        g: expansion factor
        r: contraction factor
        s: reduction (shrink) factor
        tol: relative tolerance between the newest and the replaced worst value
        max_iterations: optional hard cap; exceeding it raises MaxIterationsExceeded.
            When None the search runs until tolerance and only logs a stall warning.
    """

    def __init__(
        self,
        a: float = 1.0,
        g: float = 2.0,
        r: float = 0.5,
        s: float = 0.5,
        tol: float = 1.0e-6,
        max_iterations: Optional[int] = None,
    ):
        self.a = a
        self.g = g
        self.r = r
        self.s = s
        self.tol = tol
        self.max_iterations = max_iterations

    def generate_initial_simplex(
        self,
        initial_point: Sequence[float],
        component_scales: Optional[Sequence[float]] = None,
    ) -> np.ndarray:
        """Build p+1 vertices: the point plus one copy offset along each dimension.

        Without explicit scales each dimension moves by 10% of its value; zero
        components move by the constant 0.1 so every dimension is optimized.
        """
        point = np.asarray(initial_point, dtype=float).ravel()
        if point.size == 0:
            raise ValueError("initial point must have at least one component")
        if component_scales is None:
            scales = point * INITIAL_SIMPLEX_SCALE
            scales[scales == 0.0] = INITIAL_SIMPLEX_SCALE
        else:
            scales = np.asarray(component_scales, dtype=float).ravel()
            if scales.shape != point.shape:
                raise ValueError(f"expected {point.size} scales, got {scales.size}")

        simplex = np.tile(point, (point.size + 1, 1))
        simplex[1:] += np.diag(scales)
        return simplex

    def optimize(self, f: ObjectiveLike, start: Union[Sequence[float], np.ndarray]) -> np.ndarray:
        """Minimize f starting from a point (1-D) or an explicit simplex (2-D).

        Returns:
            The vertex with the lowest function value once the relative change
            between the new and the worst value drops below tol.
        """
        objective = as_objective(f)
        start_array = np.asarray(start, dtype=float)
        if start_array.ndim == 1:
            simplex = self.generate_initial_simplex(start_array)
        elif start_array.ndim == 2 and start_array.shape[0] == start_array.shape[1] + 1:
            simplex = start_array.copy()
        else:
            raise ValueError(f"Expected a point or a (p+1, p) simplex, got shape {start_array.shape}")

        n_vertices = simplex.shape[0]
        values = np.array([objective(vertex) for vertex in simplex], dtype=float)
        should_evaluate = False
        current_tol = np.inf
        iterations = 0

        while abs(current_tol) > self.tol:
            if should_evaluate:
                values = np.array([objective(vertex) for vertex in simplex], dtype=float)

            order = np.argsort(values, kind="stable")
            min_index = int(order[0])
            max_index = int(order[-1])
            min_value = values[min_index]
            max_value = values[max_index]
            second_max_value = values[order[-2]]

            centroid = (simplex.sum(axis=0) - simplex[max_index]) / (n_vertices - 1)
            worst = simplex[max_index]
            direction = centroid - worst

            reflected = centroid + self.a * direction
            reflected_value = objective(reflected)

            if reflected_value < second_max_value:
                new_point, new_value = reflected, reflected_value
                if reflected_value < min_value:
                    expanded = centroid + self.g * direction
                    expanded_value = objective(expanded)
                    if expanded_value < reflected_value:
                        new_point, new_value = expanded, expanded_value
                simplex[max_index] = new_point
                values[max_index] = new_value
                current_tol = _relative_change(new_value, max_value)
                should_evaluate = False
            else:
                # contract from whichever of reflection/worst is better toward the centroid
                anchor = reflected if reflected_value < max_value else worst
                contracted = centroid + self.r * (anchor - centroid)
                contracted_value = objective(contracted)
                if contracted_value < max_value:
                    simplex[max_index] = contracted
                    values[max_index] = contracted_value
                    current_tol = _relative_change(contracted_value, max_value)
                    should_evaluate = False
                else:
                    best = simplex[min_index].copy()
                    for i in range(n_vertices):
                        if i != min_index:
                            simplex[i] = best + self.s * (simplex[i] - best)
                    reduced_value = objective(simplex[max_index])
                    current_tol = _relative_change(reduced_value, max_value)
                    should_evaluate = True

            iterations += 1
            if self.max_iterations is not None and iterations >= self.max_iterations and abs(current_tol) > self.tol:
                if should_evaluate:
                    values = np.array([objective(vertex) for vertex in simplex], dtype=float)
                best_index = int(np.argmin(values))
                raise MaxIterationsExceeded(
                    simplex[best_index].copy(), float(values[best_index]), iterations, float(current_tol)
                )
            if self.max_iterations is None and iterations == STALL_WARNING_ITERATIONS:
                logger.warning(
                    f"Simplex search stalled? {iterations} iterations, tol: {current_tol:g}, min value: {min_value:g}"
                )

        values = np.array([objective(vertex) for vertex in simplex], dtype=float)
        best_index = int(np.argmin(values))
        logger.debug(f"Simplex search converged after {iterations} iterations (value {values[best_index]:g})")
        return simplex[best_index].copy()


class DifferentialEvolutionMinimizer:
    """Population-based global minimizer for bounded problems.

    Args:
        rng: uniform random source used for every stochastic decision
        mutation_probability: per-dimension chance of a random kick
        mutation_range: kick magnitude as a fraction of the parameter range
        max_generations: optional hard cap on generations (None = run until stable)
    """

    def __init__(
        self,
        rng: UniformRandomSource,
        mutation_probability: float = 0.01,
        mutation_range: float = 0.2,
        max_generations: Optional[int] = None,
    ):
        self.rng = rng
        self.mutation_probability = mutation_probability
        self.mutation_range = mutation_range
        self.max_generations = max_generations

    def minimize(
        self,
        f: ObjectiveLike,
        parameter_lower_bounds: Sequence[float],
        parameter_upper_bounds: Sequence[float],
        population_size: int,
        scale_factor: float,
        max_iterations: int,
        crossover_frequency: float,
        tol: float,
    ) -> np.ndarray:
        """Minimize f from a population drawn uniformly within the bounds."""
        lower, upper = _check_bounds(parameter_lower_bounds, parameter_upper_bounds)
        population = self._random_population(lower, upper, population_size)
        return self.minimize_with_population(
            population, f, lower, upper, scale_factor, max_iterations, crossover_frequency, tol
        )

    def minimize_with_initial(
        self,
        f: ObjectiveLike,
        parameter_lower_bounds: Sequence[float],
        parameter_upper_bounds: Sequence[float],
        population_size: int,
        scale_factor: float,
        max_iterations: int,
        crossover_frequency: float,
        tol: float,
        initial_guess: Sequence[float],
    ) -> np.ndarray:
        """Like minimize, but row 0 of the population is the initial guess."""
        lower, upper = _check_bounds(parameter_lower_bounds, parameter_upper_bounds)
        guess = np.asarray(initial_guess, dtype=float).ravel()
        if guess.shape != lower.shape:
            raise ValueError(f"initial guess has {guess.size} entries, expected {lower.size}")
        population = self._random_population(lower, upper, population_size)
        population[0] = guess
        return self.minimize_with_population(
            population, f, lower, upper, scale_factor, max_iterations, crossover_frequency, tol
        )

    def minimize_with_population(
        self,
        population: np.ndarray,
        f: ObjectiveLike,
        parameter_lower_bounds: Sequence[float],
        parameter_upper_bounds: Sequence[float],
        scale_factor: float,
        max_iterations: int,
        crossover_frequency: float,
        tol: float,
    ) -> np.ndarray:
        """Evolve the given population until it has been stable for max_iterations generations.

        A generation is stable when |max - min| < tol * (|max| + |min|) over the
        population's objective values; any unstable generation resets the count.

        Returns:
            The lowest-cost member of the final population.
        """
        objective = as_objective(f)
        lower, upper = _check_bounds(parameter_lower_bounds, parameter_upper_bounds)
        population = np.array(population, dtype=float)
        if population.ndim != 2 or population.shape[1] != lower.size:
            raise ValueError(f"population must have shape (size, {lower.size}), got {population.shape}")
        population_size, n_parameters = population.shape
        if population_size < 4:
            raise ValueError("population_size must be at least 4 to draw three distinct donors")

        values = np.array([_safe_value(objective(row)) for row in population], dtype=float)
        span = upper - lower
        stall_counter = max_iterations
        generation = 0

        while stall_counter > 0:
            new_population = population.copy()
            for i in range(population_size):
                i1, i2, i3 = self._pick_donors(i, population_size)
                trial = population[i].copy()
                crossing = False
                for j in range(n_parameters):
                    # running crossover segment: each draw may open or close it
                    if self.rng.next_double() < crossover_frequency:
                        crossing = not crossing
                    if crossing:
                        trial[j] = population[i3, j] + scale_factor * (population[i2, j] - population[i1, j])
                    if self.rng.next_double() < self.mutation_probability:
                        trial[j] += (self.rng.next_double() - 0.5) * self.mutation_range * span[j]

                if np.any(trial < lower) or np.any(trial > upper):
                    trial_value = np.inf
                else:
                    trial_value = _safe_value(objective(trial))

                if trial_value < values[i]:
                    new_population[i] = trial
                    values[i] = trial_value

            population = new_population
            generation += 1

            min_value = values.min()
            max_value = values.max()
            if abs(max_value - min_value) < tol * (abs(max_value) + abs(min_value)):
                stall_counter -= 1
            else:
                stall_counter = max_iterations

            if self.max_generations is not None and generation >= self.max_generations:
                logger.info(
                    f"Differential evolution stopped at generation cap {generation} "
                    f"(best: {min_value:g}, worst: {max_value:g})"
                )
                break

        values = np.array([_safe_value(objective(row)) for row in population], dtype=float)
        best_index = int(np.argmin(values))
        logger.debug(f"Differential evolution finished after {generation} generations (best {values[best_index]:g})")
        return population[best_index].copy()

    def _random_population(self, lower: np.ndarray, upper: np.ndarray, population_size: int) -> np.ndarray:
        population = np.empty((population_size, lower.size), dtype=float)
        for i in range(population_size):
            for j in range(lower.size):
                population[i, j] = self.rng.next_double() * (upper[j] - lower[j]) + lower[j]
        return population

    def _pick_donors(self, index: int, population_size: int) -> Tuple[int, int, int]:
        """Three distinct members, none of them the candidate itself."""
        donors: List[int] = []
        while len(donors) < 3:
            choice = self.rng.next_int(population_size)
            if choice != index and choice not in donors:
                donors.append(choice)
        return donors[0], donors[1], donors[2]


def _check_bounds(lower: Sequence[float], upper: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    lower_array = np.asarray(lower, dtype=float).ravel()
    upper_array = np.asarray(upper, dtype=float).ravel()
    if lower_array.shape != upper_array.shape:
        raise ValueError(f"bounds differ in length: {lower_array.size} vs {upper_array.size}")
    if np.any(lower_array > upper_array):
        raise ValueError("every lower bound must be <= its upper bound")
    return lower_array, upper_array


def _safe_value(value: float) -> float:
    """NaN costs are treated as worse than anything."""
    value = float(value)
    return np.inf if np.isnan(value) else value
