"""
Defines the vehicle's kinematic model for MPC.
States: [x, y, yaw (psi), speed (v), cross-track error (cte), heading error (epsi)]
Controls: [steering angle (delta), acceleration (acc)]

Positions and headings are expressed in the local frame of the reference path,
so the error states are measured against the path polynomial y = f(x).
"""

import numpy as np

N_STATES = 6
N_CONTROLS = 2


class VehicleModel:
    # Structural nonzeros (row, col) of d(step)/d(state); entries outside
    # this pattern are identically zero for every state and control.
    STATE_PATTERN = (
        (0, 0), (0, 2), (0, 3),
        (1, 1), (1, 2), (1, 3),
        (2, 2), (2, 3),
        (3, 3),
        (4, 0), (4, 1), (4, 3), (4, 5),
        (5, 0), (5, 2), (5, 3),
    )
    # Structural nonzeros (row, col) of d(step)/d(control)
    CONTROL_PATTERN = (
        (2, 0),
        (3, 1),
        (5, 0),
    )
    # Lower-triangular nonzeros of the second derivatives of step over the
    # stacked local variables [x, y, psi, v, cte, epsi, delta, acc]
    HESSIAN_PATTERN = (
        (0, 0),
        (2, 2),
        (3, 2),
        (5, 3),
        (5, 5),
        (6, 3),
        (6, 6),
    )

    def __init__(self, wheelbase=2.67):
        # Number of states and controls
        self.n_states = N_STATES
        self.n_controls = N_CONTROLS
        self.L = wheelbase  # Wheelbase (meters) - distance between front and rear axles

    def kinematic_model(self, state, control, path):
        """
        Continuous-time kinematic bicycle model with path error dynamics.

        This is the true rate of change of the errors, including the path's
        own turning in depsi. step does not integrate it for the error
        states: it re-measures cte and epsi against the path at the current
        x and adds only the one-step drift. The error rows of the two match
        only on a straight path with cte and epsi consistent with the pose.
        Args:
            state (array-like): [x, y, psi, v, cte, epsi]
            control (array-like): [delta, acc]
            path (PathReference): Reference path in the local frame.
        Returns:
            np.ndarray: State derivatives (dx/dt, dy/dt, etc.)
        """
        x, y, psi, v, cte, epsi = state
        delta, acc = control

        dx = v * np.cos(psi)  # x velocity
        dy = v * np.sin(psi)  # y velocity
        dpsi = v * np.tan(delta) / self.L  # Yaw rate from steering
        dv = acc  # Longitudinal acceleration
        dcte = v * np.sin(epsi)  # Lateral drift away from the path
        # Heading error drifts with yaw rate minus the path's turning rate
        dpath = path.derivative(x, 2) / (1.0 + path.slope(x) ** 2) * dx
        depsi = dpsi - dpath

        return np.array([dx, dy, dpsi, dv, dcte, depsi])

    def step(self, state, control, dt, path):
        """
        Discrete update from step k to step k+1.
        Args:
            state (array-like): [x, y, psi, v, cte, epsi] at step k.
            control (array-like): [delta, acc] at step k.
            dt (float): Timestep (seconds).
            path (PathReference): Reference path in the local frame.
        Returns:
            np.ndarray: State at step k+1.
        """
        x, y, psi, v, cte, epsi = state
        delta, acc = control
        yaw_rate = v * np.tan(delta) / self.L

        return np.array([
            x + v * np.cos(psi) * dt,
            y + v * np.sin(psi) * dt,
            psi + yaw_rate * dt,
            v + acc * dt,
            (y - path.evaluate(x)) + v * np.sin(epsi) * dt,
            (psi - path.heading(x)) + yaw_rate * dt,
        ])

    def jacobian(self, state, control, dt, path):
        """
        Analytic partial derivatives of step.
        Args:
            state (array-like): [x, y, psi, v, cte, epsi] at step k.
            control (array-like): [delta, acc] at step k.
            dt (float): Timestep (seconds).
            path (PathReference): Reference path in the local frame.
        Returns:
            tuple: (A, B) with A = d(step)/d(state) (6x6) and
                B = d(step)/d(control) (6x2).
        """
        x, y, psi, v, cte, epsi = state
        delta, acc = control
        cos_psi, sin_psi = np.cos(psi), np.sin(psi)
        tan_delta = np.tan(delta)
        sec2_delta = 1.0 + tan_delta ** 2
        slope = path.slope(x)
        curvature_term = path.derivative(x, 2) / (1.0 + slope ** 2)

        A = np.zeros((N_STATES, N_STATES))
        A[0, 0] = 1.0
        A[0, 2] = -v * sin_psi * dt
        A[0, 3] = cos_psi * dt
        A[1, 1] = 1.0
        A[1, 2] = v * cos_psi * dt
        A[1, 3] = sin_psi * dt
        A[2, 2] = 1.0
        A[2, 3] = tan_delta / self.L * dt
        A[3, 3] = 1.0
        A[4, 0] = -slope
        A[4, 1] = 1.0
        A[4, 3] = np.sin(epsi) * dt
        A[4, 5] = v * np.cos(epsi) * dt
        A[5, 0] = -curvature_term
        A[5, 2] = 1.0
        A[5, 3] = tan_delta / self.L * dt

        B = np.zeros((N_STATES, N_CONTROLS))
        B[2, 0] = v * sec2_delta / self.L * dt
        B[3, 1] = dt
        B[5, 0] = v * sec2_delta / self.L * dt
        return A, B

    def hessian_terms(self, state, control, dt, path, weights):
        """
        Weighted sum of the second derivatives of step.

        Computes sum_i weights[i] * d2(step_i) over the local variables
        [x, y, psi, v, cte, epsi, delta, acc].
        Args:
            state (array-like): [x, y, psi, v, cte, epsi] at step k.
            control (array-like): [delta, acc] at step k.
            dt (float): Timestep (seconds).
            path (PathReference): Reference path in the local frame.
            weights (array-like): One weight per state equation (6,).
        Returns:
            np.ndarray: Values aligned with HESSIAN_PATTERN.
        """
        x, y, psi, v, cte, epsi = state
        delta, acc = control
        w = np.asarray(weights, dtype=float)
        cos_psi, sin_psi = np.cos(psi), np.sin(psi)
        tan_delta = np.tan(delta)
        sec2_delta = 1.0 + tan_delta ** 2

        # d2/dx2 of atan(f'(x))
        f1 = path.slope(x)
        f2 = path.derivative(x, 2)
        f3 = path.derivative(x, 3)
        denom = 1.0 + f1 ** 2
        heading_dxx = (f3 * denom - 2.0 * f1 * f2 ** 2) / denom ** 2

        steer_weight = w[2] + w[5]
        return np.array([
            -w[4] * f2 - w[5] * heading_dxx,                       # (x, x)
            -(w[0] * cos_psi + w[1] * sin_psi) * v * dt,           # (psi, psi)
            (-w[0] * sin_psi + w[1] * cos_psi) * dt,               # (v, psi)
            w[4] * np.cos(epsi) * dt,                              # (epsi, v)
            -w[4] * v * np.sin(epsi) * dt,                         # (epsi, epsi)
            steer_weight * sec2_delta / self.L * dt,               # (delta, v)
            steer_weight * 2.0 * v * tan_delta * sec2_delta / self.L * dt,  # (delta, delta)
        ])
