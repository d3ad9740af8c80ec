"""
Binds a ProblemFormulation to an NLP solver and extracts the result.

The default backend is IPOPT as bundled with CasADi. The formulation's
callbacks are wrapped in CasADi Callback functions and handed to nlpsol as the
objective, constraints, gradient, constraint Jacobian and Lagrangian Hessian,
so IPOPT iterates on our analytic derivatives and declared sparsity instead of
on a symbolic graph.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol, Tuple

import casadi as ca
import numpy as np

from trackmpc.core.actuation.problem_formulation import (
    DEFAULTS, NlpInfo, ProblemFormulation, SolveStatus)
from trackmpc.core.common.exceptions import ContractViolation
from trackmpc.scenario_testing.config_yaml import merge_config
from trackmpc.dynamics.vehicle_model import VehicleModel

logger = logging.getLogger(__name__)

IPOPT_DEFAULTS = {
    'print_level': 0,      # Suppress IPOPT output
    'sb': 'yes',           # Suppress IPOPT banner
    'tol': 1e-8,           # Convergence tolerance
    'max_iter': 200,
    'max_cpu_time': 1.0,   # Seconds, bounded by the control period
}

# IPOPT return_status strings, as reported by casadi's solver.stats()
STATUS_MAP = {
    'Solve_Succeeded': SolveStatus.CONVERGED,
    'Solved_To_Acceptable_Level': SolveStatus.CONVERGED,
    'Feasible_Point_Found': SolveStatus.CONVERGED,
    'Maximum_Iterations_Exceeded': SolveStatus.NON_CONVERGENCE,
    'Maximum_CpuTime_Exceeded': SolveStatus.NON_CONVERGENCE,
    'Maximum_WallTime_Exceeded': SolveStatus.NON_CONVERGENCE,
    'Search_Direction_Becomes_Too_Small': SolveStatus.NON_CONVERGENCE,
    'User_Requested_Stop': SolveStatus.NON_CONVERGENCE,
    'Infeasible_Problem_Detected': SolveStatus.INFEASIBLE,
    'Restoration_Failed': SolveStatus.INFEASIBLE,
    'Not_Enough_Degrees_Of_Freedom': SolveStatus.INFEASIBLE,
    'Diverging_Iterates': SolveStatus.NUMERICAL_ERROR,
    'Error_In_Step_Computation': SolveStatus.NUMERICAL_ERROR,
    'Invalid_Number_Detected': SolveStatus.NUMERICAL_ERROR,
}


def map_status(return_status):
    """Map a raw solver status to SolveStatus; unknown codes are errors."""
    return STATUS_MAP.get(return_status, SolveStatus.NUMERICAL_ERROR)


class NlpProblem(Protocol):
    """Query set a solver calls on a problem."""

    def get_nlp_info(self) -> NlpInfo: ...

    def get_bounds_info(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]: ...

    def get_starting_point(self, init_x=True, init_z=False, init_lambda=False) -> np.ndarray: ...

    def eval_f(self, z, new_z=True) -> float: ...

    def eval_grad_f(self, z, new_z=True, out=None) -> np.ndarray: ...

    def eval_g(self, z, new_z=True, out=None) -> np.ndarray: ...

    def eval_jac_g(self, z=None, new_z=True, values=None): ...

    def eval_h(self, z=None, new_z=True, obj_factor=1.0, lam=None, new_lam=True, values=None): ...

    def finalize_solution(self, status, z, g=None, lam=None, obj_value=None) -> bool: ...


@dataclass
class SolverOutput:
    """Raw outcome of a solver run."""
    return_status: str
    z: np.ndarray
    g: Optional[np.ndarray] = None
    lam_g: Optional[np.ndarray] = None
    obj_value: Optional[float] = None
    iterations: int = 0


class NlpSolver(Protocol):
    def solve(self, problem: NlpProblem) -> SolverOutput: ...


@dataclass
class SolveResult:
    """Outcome of one MPC solve."""
    success: bool
    applied_control: Optional[np.ndarray]
    predicted_trajectory: Optional[np.ndarray]
    status: SolveStatus
    solver_status: str
    cost: Optional[float] = None
    solution: Optional[np.ndarray] = field(default=None, repr=False)
    predicted_controls: Optional[np.ndarray] = field(default=None, repr=False)
    iterations: int = 0
    solve_time: float = 0.0


class _FunctionCallback(ca.Callback):
    """
    CasADi Callback evaluating a python function on numpy arrays.

    Args:
        name (str): Function name.
        sparsity_in (list): Sparsity of each input.
        sparsity_out (list): Sparsity of each output.
        func (callable): Maps the input arrays to a list of outputs.
        jac (callable): For a single input and output, maps an MX input
            symbol to the MX expression of the Jacobian. nlpsol
            differentiates the objective and constraints when it is set up,
            so those callbacks need one.
        opts (dict): Options forwarded to construct.
    """

    def __init__(self, name, sparsity_in, sparsity_out, func, jac=None, opts=None):
        ca.Callback.__init__(self)
        self._sparsity_in = sparsity_in
        self._sparsity_out = sparsity_out
        self._func = func
        # Must be set before construct, which queries has_jacobian
        self._jac = jac
        self.construct(name, opts or {})

    def get_n_in(self):
        return len(self._sparsity_in)

    def get_n_out(self):
        return len(self._sparsity_out)

    def get_sparsity_in(self, i):
        return self._sparsity_in[i]

    def get_sparsity_out(self, i):
        return self._sparsity_out[i]

    def eval(self, arg):
        return self._func(*[np.asarray(a.full()).ravel() for a in arg])

    def has_jacobian(self):
        return self._jac is not None

    def get_jacobian(self, name, inames, onames, opts):
        # Inputs of the Jacobian function: the nominal inputs, then the nominal outputs
        z = ca.MX.sym('z', self._sparsity_in[0])
        out = ca.MX.sym('out', self._sparsity_out[0])
        return ca.Function(name, [z, out], [self._jac(z)], inames, onames, opts)


class _SparseTriplets:
    """A fixed (row, col) structure and its CasADi column-major ordering."""

    def __init__(self, nrow, ncol, rows, cols):
        rows = np.asarray(rows, dtype=int)
        cols = np.asarray(cols, dtype=int)
        self.sparsity = ca.Sparsity.triplet(nrow, ncol, rows.tolist(), cols.tolist())
        if self.sparsity.nnz() != len(rows):
            raise ContractViolation("sparsity structure contains duplicate entries")
        # Column-major order of the triplets, as stored by CasADi
        self.order = np.lexsort((rows, cols))

    def to_dm(self, values):
        return ca.DM(self.sparsity, ca.DM(values[self.order]))


class CasadiIpoptSolver:
    """
    IPOPT through casadi.nlpsol, fed by the problem's own callbacks.

    Args:
        options (dict): IPOPT options, merged over IPOPT_DEFAULTS.
        hessian (str): 'exact' to use the problem's eval_h, 'limited-memory'
            for IPOPT's quasi-Newton approximation.
    """

    def __init__(self, options=None, hessian='exact'):
        self.options = merge_config(IPOPT_DEFAULTS, options)
        self.hessian = hessian

    def solve(self, problem):
        info = problem.get_nlp_info()
        n, m = info.n, info.m
        x_l, x_u, g_l, g_u = problem.get_bounds_info()
        z0 = problem.get_starting_point(init_x=True, init_z=False, init_lambda=False)
        for name, arr, size in (('x_l', x_l, n), ('x_u', x_u, n), ('g_l', g_l, m),
                                ('g_u', g_u, m), ('starting point', z0, n)):
            if np.shape(arr) != (size,):
                raise ContractViolation(f"{name} has shape {np.shape(arr)}, declared ({size},)")

        violations = []

        def guarded(func):
            # Exceptions raised inside IPOPT come back as RuntimeError; keep
            # contract violations so they can be re-raised intact.
            def wrapper(*args):
                try:
                    return func(*args)
                except ContractViolation as e:
                    violations.append(e)
                    raise
            return wrapper

        jac_rows, jac_cols = problem.eval_jac_g(None, False, None)
        if len(jac_rows) != info.nnz_jac_g:
            raise ContractViolation(
                f"jac_g structure has {len(jac_rows)} entries, declared {info.nnz_jac_g}")
        jac = _SparseTriplets(m, n, jac_rows, jac_cols)

        dense_z = ca.Sparsity.dense(n, 1)
        dense_p = ca.Sparsity.dense(0, 1)
        scalar = ca.Sparsity.dense(1, 1)
        dense_g = ca.Sparsity.dense(m, 1)

        def grad_f(z, p):
            return [ca.DM(problem.eval_f(z, False)),
                    ca.DM(problem.eval_grad_f(z, False, np.zeros(n)))]

        def jac_g(z, p):
            values = problem.eval_jac_g(z, False, np.zeros(info.nnz_jac_g))
            return [ca.DM(problem.eval_g(z, False, np.zeros(m))), jac.to_dm(values)]

        # Callbacks must stay referenced for as long as the solver uses them
        grad_f_cb = _FunctionCallback('mpc_grad_f', [dense_z, dense_p], [scalar, dense_z],
                                      guarded(grad_f))
        jac_g_cb = _FunctionCallback('mpc_jac_g', [dense_z, dense_p], [dense_g, jac.sparsity],
                                     guarded(jac_g))
        no_p = ca.MX(0, 1)
        f_cb = _FunctionCallback('mpc_f', [dense_z], [scalar],
                                 guarded(lambda z: [ca.DM(problem.eval_f(z, False))]),
                                 jac=lambda z: grad_f_cb(z, no_p)[1].T)
        g_cb = _FunctionCallback('mpc_g', [dense_z], [dense_g],
                                 guarded(lambda z: [ca.DM(problem.eval_g(z, False, np.zeros(m)))]),
                                 jac=lambda z: jac_g_cb(z, no_p)[1])
        callbacks = [grad_f_cb, jac_g_cb, f_cb, g_cb]

        opts = {
            'print_time': 0,
            'calc_lam_p': False,
            'grad_f': grad_f_cb,
            'jac_g': jac_g_cb,
        }
        for key, value in self.options.items():
            opts['ipopt.' + key] = value

        if self.hessian == 'exact':
            hess_rows, hess_cols = problem.eval_h(None, False, 1.0, None, False, None)
            if len(hess_rows) != info.nnz_h_lag:
                raise ContractViolation(
                    f"h structure has {len(hess_rows)} entries, declared {info.nnz_h_lag}")
            # casadi expects the upper triangle, the transpose of our lower one
            hess = _SparseTriplets(n, n, hess_cols, hess_rows)

            def hess_lag(z, p, obj_factor, lam):
                values = problem.eval_h(z, False, float(obj_factor[0]), lam, True,
                                        np.zeros(info.nnz_h_lag))
                return [hess.to_dm(values)]

            hess_cb = _FunctionCallback('mpc_hess_lag', [dense_z, dense_p, scalar, dense_g],
                                        [hess.sparsity], guarded(hess_lag))
            callbacks.append(hess_cb)
            opts['hess_lag'] = hess_cb
        else:
            opts['ipopt.hessian_approximation'] = 'limited-memory'

        z_sym = ca.MX.sym('z', n)
        nlp = {'x': z_sym, 'f': f_cb(z_sym), 'g': g_cb(z_sym)}
        solver = None
        try:
            solver = ca.nlpsol('mpc_solver', 'ipopt', nlp, opts)
            sol = solver(x0=z0, lbx=x_l, ubx=x_u, lbg=g_l, ubg=g_u)
        except RuntimeError as e:
            if violations:
                raise violations[0] from e
            logger.error("IPOPT aborted: %s", e)
            stats = self._stats(solver) if solver is not None else {}
            return SolverOutput(stats.get('return_status', 'Internal_Error'), z0,
                                iterations=stats.get('iter_count', 0))
        if violations:
            raise violations[0]

        stats = self._stats(solver)
        return SolverOutput(
            return_status=stats.get('return_status', 'Internal_Error'),
            z=np.asarray(sol['x'].full()).ravel(),
            g=np.asarray(sol['g'].full()).ravel(),
            lam_g=np.asarray(sol['lam_g'].full()).ravel(),
            obj_value=float(sol['f']),
            iterations=int(stats.get('iter_count', 0)),
        )

    @staticmethod
    def _stats(solver):
        try:
            return solver.stats()
        except RuntimeError as e:
            logger.error("IPOPT statistics unavailable: %s", e)
            return {}


class SolverAdapter:
    """
    Runs one MPC solve per call and keeps the warm start between calls.

    Args:
        config (dict): Formulation parameters plus an optional 'ipopt' dict.
        solver (NlpSolver): Solver backend, CasadiIpoptSolver by default.
        model (VehicleModel): Vehicle model shared by all solves.
    """

    def __init__(self, config=None, solver=None, model=None):
        self.config = merge_config(DEFAULTS, config)
        self.model = model or VehicleModel(self.config['wheelbase'])
        self.solver = solver or CasadiIpoptSolver(self.config.get('ipopt'),
                                                  hessian=self.config['hessian'])
        self.last_solution = None
        self._busy = False

    def reset(self):
        """Forget the warm start."""
        self.last_solution = None

    def solve(self, x0, path, previous_control=None, warm_start=None, ref_speed=None):
        """
        Solve the tracking problem for one control cycle.

        Args:
            x0 (array-like): Initial state [x, y, psi, v, cte, epsi].
            path (PathReference or array-like): Reference path or its coefficients.
            previous_control (array-like): Actuation applied last cycle.
            warm_start (np.ndarray): Seed solution; defaults to the last
                successful solution of this adapter.
            ref_speed (float): Speed reference override.

        Returns:
            SolveResult
        """
        if self._busy:
            raise RuntimeError("a solve is already in progress on this adapter")
        self._busy = True
        try:
            if warm_start is None:
                warm_start = self.last_solution
            problem = ProblemFormulation(x0, path, self.config, self.model,
                                         previous_control=previous_control,
                                         warm_start=warm_start, ref_speed=ref_speed)
            info = problem.get_nlp_info()
            logger.debug("Solving MPC: n=%d m=%d nnz_jac=%d nnz_h=%d warm=%s",
                         info.n, info.m, info.nnz_jac_g, info.nnz_h_lag,
                         problem.warm_start is not None)

            start = time.perf_counter()
            output = self.solver.solve(problem)
            solve_time = time.perf_counter() - start

            status = map_status(output.return_status)
            problem.finalize_solution(status, output.z, output.g, output.lam_g, output.obj_value)
            self.last_solution = problem.solution if problem.succeeded else None
            logger.debug("MPC solve finished: %s (%s) in %d iterations, %.1f ms",
                         status.value, output.return_status, output.iterations,
                         solve_time * 1e3)
            if not problem.succeeded:
                logger.warning("MPC solve failed: %s", output.return_status)

            return SolveResult(
                success=problem.succeeded,
                applied_control=problem.applied_control,
                predicted_trajectory=problem.predicted_trajectory,
                status=status,
                solver_status=output.return_status,
                cost=problem.cost,
                solution=problem.solution,
                predicted_controls=problem.predicted_controls,
                iterations=output.iterations,
                solve_time=solve_time,
            )
        finally:
            self._busy = False
