"""
Tests for the solver binding: status mapping, warm starts and IPOPT solves.
"""

import casadi as ca
import numpy as np
import pytest

from trackmpc.core.actuation import solver_adapter
from trackmpc.core.actuation.problem_formulation import ProblemFormulation, SolveStatus
from trackmpc.core.actuation.solver_adapter import (
    CasadiIpoptSolver, SolverAdapter, SolverOutput, _FunctionCallback, map_status)
from trackmpc.core.common.exceptions import ContractViolation
from trackmpc.core.common.path_reference import PathReference


@pytest.fixture
def ipopt_config(small_config):
    def make(hessian):
        config = dict(small_config)
        config['hessian'] = hessian
        config['ipopt'] = {'max_cpu_time': 10.0}
        return config
    return make


class TestStatusMapping:

    @pytest.mark.parametrize("raw, expected", [
        ('Solve_Succeeded', SolveStatus.CONVERGED),
        ('Solved_To_Acceptable_Level', SolveStatus.CONVERGED),
        ('Maximum_Iterations_Exceeded', SolveStatus.NON_CONVERGENCE),
        ('Maximum_CpuTime_Exceeded', SolveStatus.NON_CONVERGENCE),
        ('Infeasible_Problem_Detected', SolveStatus.INFEASIBLE),
        ('Restoration_Failed', SolveStatus.INFEASIBLE),
        ('Invalid_Number_Detected', SolveStatus.NUMERICAL_ERROR),
    ])
    def test_known_statuses(self, raw, expected):
        assert map_status(raw) is expected

    def test_unknown_status_is_a_numerical_error(self):
        assert map_status('Something_New') is SolveStatus.NUMERICAL_ERROR


class TestSolverAdapter:

    def test_converged_solve_returns_first_control(self, small_config, curved_path,
                                                   scripted_solver):
        adapter = SolverAdapter(small_config, solver=scripted_solver())

        result = adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path, previous_control=[0.1, 0.3])

        assert result.success
        assert result.status is SolveStatus.CONVERGED
        np.testing.assert_allclose(result.applied_control, [0.1, 0.3])
        assert result.predicted_trajectory.shape == (5, 6)
        assert result.solver_status == 'Solve_Succeeded'
        assert result.solve_time >= 0.0

    def test_infeasible_solve_reports_no_control(self, small_config, curved_path,
                                                 scripted_solver):
        adapter = SolverAdapter(small_config,
                                solver=scripted_solver('Infeasible_Problem_Detected'))

        result = adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)

        assert not result.success
        assert result.status is SolveStatus.INFEASIBLE
        assert result.applied_control is None
        assert adapter.last_solution is None

    def test_iteration_limit_with_feasible_iterate_is_accepted(self, small_config, curved_path,
                                                               scripted_solver):
        adapter = SolverAdapter(small_config,
                                solver=scripted_solver('Maximum_Iterations_Exceeded'))

        result = adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)

        assert result.success
        assert result.status is SolveStatus.NON_CONVERGENCE

    def test_iteration_limit_with_infeasible_iterate_is_rejected(self, small_config,
                                                                 curved_path, scripted_solver):
        solver = scripted_solver('Maximum_Iterations_Exceeded', perturbation=0.5)
        adapter = SolverAdapter(small_config, solver=solver)

        result = adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)

        assert not result.success
        assert result.applied_control is None

    def test_successful_solution_seeds_the_next_solve(self, small_config, curved_path,
                                                      scripted_solver):
        solver = scripted_solver()
        adapter = SolverAdapter(small_config, solver=solver)

        first = adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)
        adapter.solve([0, 0, 0, 8, -0.1, 0], curved_path)

        assert solver.problems[0].warm_start is None
        np.testing.assert_array_equal(solver.problems[1].warm_start, first.solution)

    def test_failed_solve_drops_the_warm_start(self, small_config, curved_path,
                                               scripted_solver):
        solver = scripted_solver()
        adapter = SolverAdapter(small_config, solver=solver)
        adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)

        solver.return_status = 'Restoration_Failed'
        adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)
        solver.return_status = 'Solve_Succeeded'
        adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)

        assert solver.problems[1].warm_start is not None
        assert solver.problems[2].warm_start is None

    def test_reset_drops_the_warm_start(self, small_config, curved_path, scripted_solver):
        solver = scripted_solver()
        adapter = SolverAdapter(small_config, solver=solver)
        adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)

        adapter.reset()
        adapter.solve([0, 0, 0, 8, -0.2, 0], curved_path)

        assert solver.problems[1].warm_start is None

    def test_reentrant_solve_is_rejected(self, small_config, curved_path):
        class ReentrantSolver:
            def solve(self, problem):
                return adapter.solve([0, 0, 0, 8, 0, 0], curved_path)

        adapter = SolverAdapter(small_config, solver=ReentrantSolver())

        with pytest.raises(RuntimeError):
            adapter.solve([0, 0, 0, 8, 0, 0], curved_path)
        assert not adapter._busy

    def test_contract_violation_from_solver_propagates(self, small_config, curved_path):
        class BrokenSolver:
            def solve(self, problem):
                problem.eval_g(np.zeros(3))
                return SolverOutput('Solve_Succeeded', np.zeros(3))

        adapter = SolverAdapter(small_config, solver=BrokenSolver())

        with pytest.raises(ContractViolation):
            adapter.solve([0, 0, 0, 8, 0, 0], curved_path)


@pytest.mark.parametrize("hessian", ['exact', 'limited-memory'])
class TestIpoptSolve:

    def test_straight_path_needs_no_actuation(self, ipopt_config, straight_path, hessian):
        adapter = SolverAdapter(ipopt_config(hessian))

        result = adapter.solve([0, 0, 0, 10, 0, 0], straight_path)

        assert result.success
        np.testing.assert_allclose(result.predicted_controls, 0.0, atol=1e-6)

    @pytest.mark.parametrize("speed", [7.0, 13.0])
    def test_speed_error_only_drives_acceleration(self, ipopt_config, straight_path, hessian,
                                                  speed):
        adapter = SolverAdapter(ipopt_config(hessian))

        result = adapter.solve([0, 0, 0, speed, 0, 0], straight_path)

        assert result.success
        np.testing.assert_allclose(result.predicted_controls[:, 0], 0.0, atol=1e-6)
        assert np.sign(result.applied_control[1]) == np.sign(10.0 - speed)

    @pytest.mark.parametrize("offset, sign", [(-1.0, -1.0), (1.0, 1.0)])
    def test_steers_towards_an_offset_path(self, ipopt_config, hessian, offset, sign):
        path = PathReference([offset, 0.0, 0.0, 0.0])
        x0 = [0, 0, 0, 10, path.cross_track_error(), path.heading_error()]
        adapter = SolverAdapter(ipopt_config(hessian))

        result = adapter.solve(x0, path)

        assert result.success
        assert np.sign(result.applied_control[0]) == sign

    def test_solution_is_pinned_and_feasible(self, ipopt_config, curved_path, hessian):
        config = ipopt_config(hessian)
        x0 = np.array([0, 0, 0, 8, curved_path.cross_track_error(), curved_path.heading_error()])
        adapter = SolverAdapter(config)

        result = adapter.solve(x0, curved_path, previous_control=[0.0, 0.5])

        assert result.success
        np.testing.assert_allclose(result.predicted_trajectory[0], x0, atol=1e-6)
        problem = ProblemFormulation(x0, curved_path, config, previous_control=[0.0, 0.5])
        assert problem.max_violation(result.solution) < 1e-6
        assert np.all(np.abs(result.predicted_controls[:, 0]) <= problem.delta_max + 1e-8)
        assert np.all(np.abs(result.predicted_controls[:, 1]) <= problem.a_max + 1e-8)

    def test_warm_started_solve_succeeds(self, ipopt_config, curved_path, hessian):
        adapter = SolverAdapter(ipopt_config(hessian))
        x0 = [0, 0, 0, 8, curved_path.cross_track_error(), curved_path.heading_error()]

        first = adapter.solve(x0, curved_path)
        second = adapter.solve(x0, curved_path, previous_control=first.applied_control)

        assert first.success and second.success
        assert adapter.last_solution is not None


def test_objective_and_constraint_callbacks_expose_derivatives():
    dense = ca.Sparsity.dense(2, 1)
    grad = _FunctionCallback('grad', [dense], [dense], lambda z: [ca.DM(2.0 * z)])
    square = _FunctionCallback('square', [dense], [ca.Sparsity.dense(1, 1)],
                               lambda z: [ca.DM(float(z @ z))],
                               jac=lambda z: grad(z).T)
    z = ca.MX.sym('z', 2)

    jac = ca.Function('jac_fn', [z], [ca.jacobian(square(z), z)])

    assert square.has_jacobian()
    np.testing.assert_allclose(np.asarray(jac([1.0, -3.0]).full()), [[2.0, -6.0]])


def test_solver_setup_failure_is_a_numerical_error(small_config, straight_path, monkeypatch):
    def broken_nlpsol(*args, **kwargs):
        raise RuntimeError("Error calling IpoptInterface::init")

    monkeypatch.setattr(solver_adapter.ca, 'nlpsol', broken_nlpsol)
    adapter = SolverAdapter(small_config)

    result = adapter.solve([0, 0, 0, 10, 0, 0], straight_path)

    assert not result.success
    assert result.status is SolveStatus.NUMERICAL_ERROR
    assert result.applied_control is None


def test_ipopt_solver_rejects_inconsistent_bounds(small_config, straight_path):
    problem = ProblemFormulation([0, 0, 0, 10, 0, 0], straight_path, small_config)
    problem.get_bounds_info = lambda: (np.zeros(2), np.zeros(2), np.zeros(2), np.zeros(2))

    with pytest.raises(ContractViolation):
        CasadiIpoptSolver().solve(problem)
