"""
Shared fixtures for the MPC tests.
"""

import numpy as np
import pytest

from trackmpc.core.actuation.problem_formulation import ProblemFormulation
from trackmpc.core.actuation.solver_adapter import SolverOutput
from trackmpc.core.common.path_reference import PathReference


SMALL_CONFIG = {
    'horizon': 5,
    'dt': 0.1,
    'ref_speed': 10.0,
}

CURVED_COEFFS = [0.2, 0.05, 0.01, -0.001]


@pytest.fixture
def small_config():
    return dict(SMALL_CONFIG)


@pytest.fixture
def straight_path():
    return PathReference([0.0, 0.0, 0.0, 0.0])


@pytest.fixture
def curved_path():
    return PathReference(CURVED_COEFFS)


@pytest.fixture
def curved_problem(small_config, curved_path):
    x0 = [0.0, 0.0, 0.0, 8.0, -0.2, -0.05]
    return ProblemFormulation(x0, curved_path, small_config, previous_control=[0.05, 0.2])


@pytest.fixture
def random_z():
    """Random decision vector with speeds and controls in a realistic range."""
    def make(problem, seed=0):
        rng = np.random.default_rng(seed)
        states = rng.normal(scale=0.3, size=(problem.horizon, 6))
        states[:, 3] = rng.uniform(5.0, 12.0, size=problem.horizon)
        controls = np.column_stack([
            rng.uniform(-0.3, 0.3, size=problem.horizon - 1),
            rng.uniform(-0.8, 0.8, size=problem.horizon - 1),
        ])
        return problem.layout.join(states, controls)
    return make


@pytest.fixture
def numerical_jacobian():
    """Central finite differences of a vector function."""
    def jac(func, z, h=1e-6):
        z = np.asarray(z, dtype=float)
        f0 = np.atleast_1d(func(z))
        out = np.zeros((f0.size, z.size))
        for j in range(z.size):
            step = np.zeros_like(z)
            step[j] = h
            out[:, j] = (np.atleast_1d(func(z + step)) - np.atleast_1d(func(z - step))) / (2 * h)
        return out
    return jac


class ScriptedSolver:
    """Solver stand-in that returns the starting point with a fixed status."""

    def __init__(self, return_status='Solve_Succeeded', perturbation=0.0):
        self.return_status = return_status
        self.perturbation = perturbation
        self.problems = []

    def solve(self, problem):
        self.problems.append(problem)
        problem.get_nlp_info()
        problem.get_bounds_info()
        z = problem.get_starting_point() + self.perturbation
        return SolverOutput(self.return_status, z, g=problem.eval_g(z), iterations=1)


@pytest.fixture
def scripted_solver():
    return ScriptedSolver
