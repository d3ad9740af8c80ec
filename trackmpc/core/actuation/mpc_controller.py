"""
Model Predictive Controller (MPC) for autonomous vehicle path tracking.
Fits the upcoming waypoints in the vehicle frame, solves the tracking NLP with
IPOPT and applies the first control of the optimal sequence.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from trackmpc.core.actuation import problem_formulation
from trackmpc.core.actuation.problem_formulation import SolveStatus
from trackmpc.core.actuation.solver_adapter import (
    IPOPT_DEFAULTS, SolveResult, SolverAdapter)
from trackmpc.core.common.exceptions import (
    InsufficientWaypoints, MPCError, SolverInfeasible, SolverNonConvergence,
    SolverNumericalError)
from trackmpc.core.common.path_reference import PathReference, select_window
from trackmpc.scenario_testing.config_yaml import merge_config

logger = logging.getLogger(__name__)

DEFAULTS = merge_config(problem_formulation.DEFAULTS, {
    'poly_order': 3,        # Order of the reference polynomial
    'waypoint_window': 12,  # Waypoints fitted per cycle
    'ipopt': IPOPT_DEFAULTS,
})

_FAILURES = {
    SolveStatus.NON_CONVERGENCE: SolverNonConvergence,
    SolveStatus.INFEASIBLE: SolverInfeasible,
    SolveStatus.NUMERICAL_ERROR: SolverNumericalError,
}


@dataclass
class ControlResult:
    """Outcome of one control cycle."""
    success: bool
    control: np.ndarray                # [delta, acc] to apply
    status: Optional[SolveStatus] = None
    error: Optional[MPCError] = None
    result: Optional[SolveResult] = None
    path: Optional[PathReference] = None


@dataclass
class VehicleControl:
    """Normalized actuation command."""
    throttle: float = 0.0
    steer: float = 0.0
    brake: float = 0.0


class MPCController:
    def __init__(self, config=None, solver=None):
        """
        Initialize MPC with configuration parameters.
        Args:
            config (dict): Configuration from YAML file.
            solver (NlpSolver): Optional solver backend (IPOPT by default).
        """
        self.config = merge_config(DEFAULTS, config)

        # Prediction horizon and timestep
        self.horizon = self.config['horizon']
        self.dt = self.config['dt']
        self.poly_order = self.config['poly_order']
        self.waypoint_window = self.config['waypoint_window']

        # Actuator limits
        self.a_max = self.config['a_max']  # Max acceleration (m/s²)
        self.delta_max = np.deg2rad(self.config['delta_max'])  # Max steering angle (radians)

        self.adapter = SolverAdapter(self.config, solver=solver)
        self.current_state = None
        self.last_control = np.zeros(2)  # [delta, acc] applied last cycle
        self.last_result = None

    def compute_control(self, measured_state, recent_waypoints, previous_control=None,
                        ref_speed=None):
        """
        Compute the actuation for one control cycle.
        Args:
            measured_state (array-like): [x, y, psi, v] in the global frame.
            recent_waypoints (list): Upcoming waypoints in the global frame.
            previous_control (array-like): [delta, acc] applied last cycle.
            ref_speed (float): Speed reference override (m/s).
        Returns:
            ControlResult: On failure ``control`` is the previous command.
        """
        held = np.zeros(2) if previous_control is None else np.array(previous_control, dtype=float)
        px, py, psi, v = (float(s) for s in measured_state[:4])

        # The fit is only valid for this pose, so it is redone every cycle
        try:
            path = PathReference.fit(recent_waypoints, self.poly_order, origin=(px, py, psi))
        except InsufficientWaypoints as e:
            logger.warning("Holding previous actuation: %s", e)
            return ControlResult(False, held, error=e)

        # Vehicle sits at the origin of its own frame
        x0 = np.array([0.0, 0.0, 0.0, v,
                       path.cross_track_error(0.0, 0.0),
                       path.heading_error(0.0, 0.0)])
        result = self.adapter.solve(x0, path, previous_control=held, ref_speed=ref_speed)

        if result.success:
            horizon_end = float(result.predicted_trajectory[-1, 0])
            if not path.covers(horizon_end):
                # The polynomial is extrapolated beyond the fitted waypoints
                logger.warning("Prediction reaches x=%.1f m outside the fitted waypoints %s",
                               horizon_end, path.domain)
            return ControlResult(True, result.applied_control.copy(), result.status,
                                 result=result, path=path)

        error = _FAILURES.get(result.status, SolverNumericalError)(
            f"MPC solve failed with {result.solver_status}")
        logger.warning("Holding previous actuation: %s", error)
        return ControlResult(False, held, result.status, error, result, path)

    def update_info(self, ego_pose, ego_speed):
        """
        Update the controller with the vehicle's current state.
        Args:
            ego_pose (tuple): (x, y, yaw) position (m) and heading (radians).
            ego_speed (float): Current longitudinal speed (m/s).
        """
        x, y, yaw = ego_pose
        self.current_state = np.array([x, y, yaw, ego_speed], dtype=float)

    def run_step(self, waypoints, target_speed=None):
        """
        Compute control commands for the current timestep.
        Args:
            waypoints (list): Route waypoints in the global frame.
            target_speed (float): Desired speed (m/s), config value if None.
        Returns:
            VehicleControl: Throttle, steering, and brake commands.
        """
        if self.current_state is None:
            raise RuntimeError("update_info must be called before run_step")

        window = select_window(waypoints, self.current_state[:2], self.waypoint_window)
        self.last_result = self.compute_control(self.current_state, window,
                                                self.last_control, ref_speed=target_speed)
        # Rate penalty of the next cycle starts from what is actually applied
        self.last_control = self.last_result.control
        delta, acc = self.last_control
        return self._to_vehicle_control(acc, delta)

    def hold(self, control):
        """Record ``control`` as the applied actuation and drop the warm start."""
        self.last_control = np.array(control, dtype=float)
        self.adapter.reset()

    def _to_vehicle_control(self, acc, delta):
        """
        Convert MPC outputs to a normalized VehicleControl.
        Args:
            acc (float): Acceleration command (m/s²)
            delta (float): Steering angle (radians)
        Returns:
            VehicleControl: Normalized throttle, steer, and brake.
        """
        control = VehicleControl()
        # Normalize acceleration to throttle (0-1) or brake (0-1)
        control.throttle = float(np.clip(acc / self.a_max, 0, 1))
        control.steer = float(np.clip(delta / self.delta_max, -1, 1))
        control.brake = float(np.clip(-acc / self.a_max, 0, 1))
        return control
