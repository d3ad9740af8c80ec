"""
Nonlinear program for path-tracking MPC.

ProblemFormulation answers the query set a generic NLP solver needs: sizes,
bounds, a starting point, the cost and its gradient, the dynamics residuals,
their sparse Jacobian and the sparse Hessian of the Lagrangian. One instance
describes one solve; a new one is built every control cycle.

Decision variables are laid out step-major:
    z = [X_0, X_1, ..., X_{N-1}, U_0, ..., U_{N-2}]
with X_k = [x, y, psi, v, cte, epsi] and U_k = [delta, acc].
"""

import logging
from enum import Enum
from typing import NamedTuple

import numpy as np

from trackmpc.core.common.exceptions import ContractViolation
from trackmpc.core.common.path_reference import PathReference
from trackmpc.scenario_testing.config_yaml import merge_config
from trackmpc.dynamics.vehicle_model import VehicleModel

logger = logging.getLogger(__name__)

DEFAULTS = {
    'horizon': 10,         # Number of prediction steps
    'dt': 0.1,             # Time per step (seconds)
    'wheelbase': 2.67,     # Meters
    'ref_speed': 10.0,     # Speed reference (m/s)
    'delta_max': 25.0,     # Max steering angle (degrees)
    'a_max': 1.0,          # Max acceleration (m/s²)
    'weights': {
        'cte': 2000.0,
        'epsi': 2000.0,
        'speed': 1.0,
        'steer': 5.0,
        'accel': 5.0,
        'steer_rate': 200.0,
        'accel_rate': 10.0,
    },
    'hessian': 'exact',    # 'exact' or 'limited-memory'
    'feasibility_tol': 1e-4,
}

HESSIAN_MODES = ('exact', 'limited-memory')


class ProblemPhase(Enum):
    UNCONFIGURED = 'unconfigured'
    BOUNDS_DECLARED = 'bounds_declared'
    STARTING_POINT_SET = 'starting_point_set'
    EVALUATING = 'evaluating'
    FINALIZED = 'finalized'


class SolveStatus(Enum):
    """Solver outcome, independent of the backend's raw status codes."""
    CONVERGED = 'converged'
    NON_CONVERGENCE = 'non_convergence'
    INFEASIBLE = 'infeasible'
    NUMERICAL_ERROR = 'numerical_error'


class NlpInfo(NamedTuple):
    n: int
    m: int
    nnz_jac_g: int
    nnz_h_lag: int
    index_style: str  # 'C': zero-based indices


class VariableLayout:
    """Index bookkeeping for the decision and constraint vectors."""

    def __init__(self, horizon, n_states, n_controls):
        self.horizon = horizon
        self.n_states = n_states
        self.n_controls = n_controls
        self.n_state_vars = horizon * n_states
        self.n = self.n_state_vars + (horizon - 1) * n_controls
        self.m = horizon * n_states

    def state_index(self, k, i):
        return k * self.n_states + i

    def control_index(self, k, j):
        return self.n_state_vars + k * self.n_controls + j

    def constraint_index(self, k, i):
        return k * self.n_states + i

    def split(self, z):
        """Views (N, n_states) and (N-1, n_controls) into z."""
        states = z[:self.n_state_vars].reshape(self.horizon, self.n_states)
        controls = z[self.n_state_vars:].reshape(self.horizon - 1, self.n_controls)
        return states, controls

    def join(self, states, controls, out=None):
        if out is None:
            out = np.empty(self.n)
        out[:self.n_state_vars] = np.ravel(states)
        out[self.n_state_vars:] = np.ravel(controls)
        return out


class _Evaluation(NamedTuple):
    """Intermediate quantities shared by the callbacks for one z."""
    z: np.ndarray
    states: np.ndarray
    controls: np.ndarray
    predicted: np.ndarray  # (N-1, n_states) step(X_k, U_k)
    state_jac: np.ndarray  # (N-1, n_states, n_states)
    control_jac: np.ndarray  # (N-1, n_states, n_controls)


def _check_buffer(buf, size, name):
    if buf is None:
        return np.zeros(size)
    if not isinstance(buf, np.ndarray) or buf.ndim != 1 or buf.shape[0] != size:
        raise ContractViolation(
            f"{name} buffer must be a 1-D array of length {size}, "
            f"got {getattr(buf, 'shape', type(buf))}")
    return buf


class ProblemFormulation:
    """
    MPC path-tracking problem for one control cycle.

    Args:
        x0 (array-like): Measured initial state [x, y, psi, v, cte, epsi].
        path (PathReference): Fitted reference path in the vehicle frame.
        config (dict): Formulation parameters, merged over DEFAULTS.
        model (VehicleModel): Discrete vehicle model.
        previous_control (array-like): Actuation applied in the previous
            cycle [delta, acc]; boundary value of the rate penalty.
        warm_start (np.ndarray): Previous cycle's optimal z, or None.
        ref_speed (float): Overrides config['ref_speed'] for this cycle.
    """

    def __init__(self, x0, path, config=None, model=None, previous_control=None,
                 warm_start=None, ref_speed=None):
        self.config = merge_config(DEFAULTS, config)
        self.horizon = int(self.config['horizon'])
        self.dt = float(self.config['dt'])
        if self.horizon < 2:
            raise ValueError(f"horizon must be at least 2, got {self.horizon}")
        if self.dt <= 0.0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        self.hessian_mode = self.config['hessian']
        if self.hessian_mode not in HESSIAN_MODES:
            raise ValueError(f"hessian must be one of {HESSIAN_MODES}, got {self.hessian_mode!r}")

        self.model = model or VehicleModel(self.config['wheelbase'])
        self.layout = VariableLayout(self.horizon, self.model.n_states, self.model.n_controls)
        self.path = path if isinstance(path, PathReference) else PathReference(path)

        self.x0 = np.array(x0, dtype=float)
        if self.x0.shape != (self.model.n_states,):
            raise ContractViolation(
                f"x0 must have {self.model.n_states} entries, got shape {self.x0.shape}")
        self.x0.setflags(write=False)

        if previous_control is None:
            previous_control = np.zeros(self.model.n_controls)
        self.previous_control = np.array(previous_control, dtype=float)
        if self.previous_control.shape != (self.model.n_controls,):
            raise ContractViolation(
                f"previous_control must have {self.model.n_controls} entries, "
                f"got shape {self.previous_control.shape}")

        self.warm_start = None
        if warm_start is not None:
            warm_start = np.asarray(warm_start, dtype=float)
            if warm_start.shape == (self.layout.n,):
                self.warm_start = warm_start.copy()
            else:
                logger.warning("Ignoring warm start of shape %s, expected (%d,)",
                               warm_start.shape, self.layout.n)

        # Cost function weights
        w = self.config['weights']
        v_ref = self.config['ref_speed'] if ref_speed is None else ref_speed
        self.state_weights = np.array([0.0, 0.0, 0.0, w['speed'], w['cte'], w['epsi']])
        self.state_ref = np.array([0.0, 0.0, 0.0, v_ref, 0.0, 0.0])
        self.control_weights = np.array([w['steer'], w['accel']])
        self.rate_weights = np.array([w['steer_rate'], w['accel_rate']])

        # Actuator limits
        self.delta_max = np.deg2rad(self.config['delta_max'])
        self.a_max = self.config['a_max']

        self.phase = ProblemPhase.UNCONFIGURED
        self._cache = None
        self._jac_structure = self._build_jacobian_structure()
        self._hess_index, self._hess_structure = self._build_hessian_structure()

        # Results, set by finalize_solution
        self.status = None
        self.succeeded = False
        self.solution = None
        self.applied_control = None
        self.predicted_trajectory = None
        self.predicted_controls = None
        self.cost = None

    # ------------------------------------------------------------------
    # Problem declaration
    # ------------------------------------------------------------------
    def get_nlp_info(self):
        """Sizes of the problem; fixed for the lifetime of this instance."""
        rows, _ = self._jac_structure
        hess_rows, _ = self._hess_structure
        nnz_h = len(hess_rows) if self.hessian_mode == 'exact' else 0
        if self.phase is ProblemPhase.UNCONFIGURED:
            self.phase = ProblemPhase.BOUNDS_DECLARED
        return NlpInfo(self.layout.n, self.layout.m, len(rows), nnz_h, 'C')

    def get_bounds_info(self):
        """
        Variable and constraint bounds.

        Returns:
            tuple: (x_l, x_u, g_l, g_u). States are free, controls are bounded
                by the actuator limits and every constraint is an equality.
        """
        layout = self.layout
        x_l = np.full(layout.n, -np.inf)
        x_u = np.full(layout.n, np.inf)
        lower_controls = np.array([-self.delta_max, -self.a_max])
        upper_controls = np.array([self.delta_max, self.a_max])
        x_l[layout.n_state_vars:] = np.tile(lower_controls, self.horizon - 1)
        x_u[layout.n_state_vars:] = np.tile(upper_controls, self.horizon - 1)
        g_l = np.zeros(layout.m)
        g_u = np.zeros(layout.m)
        return x_l, x_u, g_l, g_u

    def get_starting_point(self, init_x=True, init_z=False, init_lambda=False):
        """
        Initial guess for z.

        With a warm start the previous solution is shifted one step forward
        and its last state and control are duplicated to fill the tail;
        otherwise the model is rolled out from x0 holding the previous
        control. X_0 is always pinned to x0.
        """
        if not init_x or init_z or init_lambda:
            raise ContractViolation("only a primal starting point is provided")

        lo, hi = np.array([-self.delta_max, -self.a_max]), np.array([self.delta_max, self.a_max])
        if self.warm_start is not None:
            prev_states, prev_controls = self.layout.split(self.warm_start)
            states = np.vstack([prev_states[1:], prev_states[-1:]])
            controls = np.vstack([prev_controls[1:], prev_controls[-1:]])
            states[0] = self.x0
            controls = np.clip(controls, lo, hi)
        else:
            controls = np.tile(np.clip(self.previous_control, lo, hi), (self.horizon - 1, 1))
            states = np.empty((self.horizon, self.model.n_states))
            states[0] = self.x0
            for k in range(self.horizon - 1):
                states[k + 1] = self.model.step(states[k], controls[k], self.dt, self.path)

        if self.phase in (ProblemPhase.UNCONFIGURED, ProblemPhase.BOUNDS_DECLARED):
            self.phase = ProblemPhase.STARTING_POINT_SET
        return self.layout.join(states, controls)

    # ------------------------------------------------------------------
    # Evaluation callbacks
    # ------------------------------------------------------------------
    def eval_f(self, z, new_z=True):
        """Cost: tracking error, actuator effort and actuator rate."""
        ev = self._evaluate(z, new_z)
        state_err = ev.states - self.state_ref
        rates = self._control_rates(ev.controls)
        cost = np.sum(self.state_weights * state_err ** 2)
        cost += np.sum(self.control_weights * ev.controls ** 2)
        cost += np.sum(self.rate_weights * rates ** 2)
        return float(cost)

    def eval_grad_f(self, z, new_z=True, out=None):
        """Gradient of the cost, written into ``out`` when given."""
        ev = self._evaluate(z, new_z)
        out = _check_buffer(out, self.layout.n, 'grad_f')
        rates = self._control_rates(ev.controls)

        grad_states = 2.0 * self.state_weights * (ev.states - self.state_ref)
        grad_controls = 2.0 * self.control_weights * ev.controls
        # Each U_k appears in the rate term of step k and, negated, of step k+1
        grad_controls += 2.0 * self.rate_weights * rates
        grad_controls[:-1] -= 2.0 * self.rate_weights * rates[1:]
        return self.layout.join(grad_states, grad_controls, out=out)

    def eval_g(self, z, new_z=True, out=None):
        """Dynamics residuals X_k - step(X_{k-1}, U_{k-1}); rows 0..5 pin X_0 = x0."""
        ev = self._evaluate(z, new_z)
        out = _check_buffer(out, self.layout.m, 'g')
        n_s = self.model.n_states
        out[:n_s] = ev.states[0] - self.x0
        out[n_s:] = (ev.states[1:] - ev.predicted).ravel()
        return out

    def eval_jac_g(self, z=None, new_z=True, values=None):
        """
        Sparse constraint Jacobian.

        Structure pass when ``values`` is None: returns (rows, cols).
        Value pass otherwise: fills ``values`` in the same order.
        """
        rows, cols = self._jac_structure
        if values is None:
            return rows.copy(), cols.copy()

        values = _check_buffer(values, len(rows), 'jac_g')
        ev = self._evaluate(z, new_z)
        n_s = self.model.n_states
        a_rows, a_cols = self._state_pattern
        b_rows, b_cols = self._control_pattern
        pos = 0
        for k in range(self.horizon):
            values[pos:pos + n_s] = 1.0
            pos += n_s
            if k == 0:
                continue
            a_vals = -ev.state_jac[k - 1][a_rows, a_cols]
            values[pos:pos + len(a_vals)] = a_vals
            pos += len(a_vals)
            b_vals = -ev.control_jac[k - 1][b_rows, b_cols]
            values[pos:pos + len(b_vals)] = b_vals
            pos += len(b_vals)
        if pos != len(rows):
            raise ContractViolation(f"jac_g value pass wrote {pos} of {len(rows)} nonzeros")
        return values

    def eval_h(self, z=None, new_z=True, obj_factor=1.0, lam=None, new_lam=True, values=None):
        """
        Sparse lower-triangular Hessian of the Lagrangian.

        obj_factor * d2f + sum_i lam_i * d2g_i. Structure pass when ``values``
        is None: returns (rows, cols). Value pass otherwise.
        """
        rows, cols = self._hess_structure
        if values is None:
            return rows.copy(), cols.copy()
        if self.hessian_mode != 'exact':
            raise ContractViolation("eval_h called with a quasi-Newton Hessian configured")

        values = _check_buffer(values, len(rows), 'h')
        values[:] = 0.0
        lam = np.zeros(self.layout.m) if lam is None else np.asarray(lam, dtype=float)
        if lam.shape != (self.layout.m,):
            raise ContractViolation(f"lambda must have {self.layout.m} entries, got {lam.shape}")
        ev = self._evaluate(z, new_z)
        layout = self.layout
        index = self._hess_index

        # Cost: constant diagonal plus the rate coupling between neighbours
        for k in range(self.horizon):
            for i in np.flatnonzero(self.state_weights):
                s = layout.state_index(k, i)
                values[index[(s, s)]] += obj_factor * 2.0 * self.state_weights[i]
        last = self.horizon - 2
        for k in range(self.horizon - 1):
            for j in range(self.model.n_controls):
                c = layout.control_index(k, j)
                n_rates = 2 if k < last else 1
                values[index[(c, c)]] += obj_factor * 2.0 * (
                    self.control_weights[j] + n_rates * self.rate_weights[j])
                if k > 0:
                    prev = layout.control_index(k - 1, j)
                    values[index[(c, prev)]] -= obj_factor * 2.0 * self.rate_weights[j]

        # Dynamics: g = X_{k+1} - step(X_k, U_k), so d2g = -d2step
        n_s = self.model.n_states
        for k in range(self.horizon - 1):
            multipliers = lam[layout.constraint_index(k + 1, 0):layout.constraint_index(k + 1, 0) + n_s]
            if not np.any(multipliers):
                continue
            terms = self.model.hessian_terms(ev.states[k], ev.controls[k], self.dt, self.path,
                                             -multipliers)
            local = self._local_indices(k)
            for (r, c), value in zip(self.model.HESSIAN_PATTERN, terms):
                values[index[self._lower(local[r], local[c])]] += value
        return values

    def finalize_solution(self, status, z, g=None, lam=None, obj_value=None):
        """
        Store the solver's final iterate.

        A converged solve, or a non-converged one whose iterate is still
        feasible, yields the first control as the actuation to apply and
        keeps z for the next cycle's warm start. Any other outcome leaves
        applied_control as None.
        """
        z = self._check_z(z)
        self.status = status
        self.phase = ProblemPhase.FINALIZED
        if status is SolveStatus.CONVERGED:
            self.succeeded = True
        elif status is SolveStatus.NON_CONVERGENCE:
            violation = self.max_violation(z)
            self.succeeded = violation <= self.config['feasibility_tol']
            if self.succeeded:
                logger.warning("Solver did not converge, using feasible iterate "
                               "(violation %.2e)", violation)
        else:
            self.succeeded = False

        if not self.succeeded:
            self.applied_control = None
            self.solution = None
            return False

        states, controls = self.layout.split(z)
        self.solution = z.copy()
        self.applied_control = controls[0].copy()
        self.predicted_trajectory = states.copy()
        self.predicted_controls = controls.copy()
        self.cost = self.eval_f(z) if obj_value is None else float(obj_value)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def max_violation(self, z):
        """Largest constraint residual or bound violation at z."""
        z = self._check_z(z)
        x_l, x_u, _, _ = self.get_bounds_info()
        residual = np.max(np.abs(self.eval_g(z, new_z=False)))
        bounds = max(np.max(x_l - z), np.max(z - x_u), 0.0)
        return float(max(residual, bounds))

    def _check_z(self, z):
        z = np.asarray(z, dtype=float)
        if z.shape != (self.layout.n,):
            raise ContractViolation(f"z must have {self.layout.n} entries, got shape {z.shape}")
        return z

    def _evaluate(self, z, new_z):
        z = self._check_z(z)
        if self.phase is not ProblemPhase.FINALIZED:
            self.phase = ProblemPhase.EVALUATING
        cache = self._cache
        if not new_z and cache is not None and np.array_equal(cache.z, z):
            return cache

        z = z.copy()
        z.setflags(write=False)
        states, controls = self.layout.split(z)
        n_steps = self.horizon - 1
        n_s, n_u = self.model.n_states, self.model.n_controls
        predicted = np.empty((n_steps, n_s))
        state_jac = np.empty((n_steps, n_s, n_s))
        control_jac = np.empty((n_steps, n_s, n_u))
        for k in range(n_steps):
            predicted[k] = self.model.step(states[k], controls[k], self.dt, self.path)
            state_jac[k], control_jac[k] = self.model.jacobian(
                states[k], controls[k], self.dt, self.path)
        self._cache = _Evaluation(z, states, controls, predicted, state_jac, control_jac)
        return self._cache

    def _control_rates(self, controls):
        return np.diff(np.vstack([self.previous_control, controls]), axis=0)

    @property
    def _state_pattern(self):
        return tuple(np.array(self.model.STATE_PATTERN).T)

    @property
    def _control_pattern(self):
        return tuple(np.array(self.model.CONTROL_PATTERN).T)

    def _local_indices(self, k):
        layout = self.layout
        return ([layout.state_index(k, i) for i in range(self.model.n_states)]
                + [layout.control_index(k, j) for j in range(self.model.n_controls)])

    @staticmethod
    def _lower(r, c):
        return (r, c) if r >= c else (c, r)

    def _build_jacobian_structure(self):
        layout = self.layout
        rows, cols = [], []
        for k in range(self.horizon):
            for i in range(self.model.n_states):
                rows.append(layout.constraint_index(k, i))
                cols.append(layout.state_index(k, i))
            if k == 0:
                continue
            for i, j in self.model.STATE_PATTERN:
                rows.append(layout.constraint_index(k, i))
                cols.append(layout.state_index(k - 1, j))
            for i, j in self.model.CONTROL_PATTERN:
                rows.append(layout.constraint_index(k, i))
                cols.append(layout.control_index(k - 1, j))
        rows, cols = np.array(rows, dtype=int), np.array(cols, dtype=int)
        rows.setflags(write=False)
        cols.setflags(write=False)
        return rows, cols

    def _build_hessian_structure(self):
        layout = self.layout
        index = {}

        def add(r, c):
            index.setdefault(self._lower(r, c), len(index))

        for k in range(self.horizon):
            for i in np.flatnonzero(self.state_weights):
                s = layout.state_index(k, i)
                add(s, s)
        for k in range(self.horizon - 1):
            for j in range(self.model.n_controls):
                add(layout.control_index(k, j), layout.control_index(k, j))
                if k > 0:
                    add(layout.control_index(k, j), layout.control_index(k - 1, j))
            local = self._local_indices(k)
            for r, c in self.model.HESSIAN_PATTERN:
                add(local[r], local[c])

        pairs = sorted(index, key=index.get)
        rows = np.array([p[0] for p in pairs], dtype=int)
        cols = np.array([p[1] for p in pairs], dtype=int)
        return index, (rows, cols)
