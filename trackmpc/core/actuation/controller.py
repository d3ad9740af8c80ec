"""
Integrates the MPC controller into the control loop.
"""

import logging
import time

from trackmpc.core.actuation.mpc_controller import MPCController

logger = logging.getLogger(__name__)


class ControlManager:
    def __init__(self, control_config, solver=None):
        """
        Initialize the MPC controller.
        Args:
            control_config (dict): Configuration from YAML, with the
                controller parameters under 'args'.
            solver (NlpSolver): Optional solver backend.
        """
        args = control_config.get('args', {})
        # Initialize MPC with parameters from YAML
        self.controller = MPCController(args, solver=solver)
        # A solve that overruns the sampling period is discarded
        self.deadline = control_config.get('deadline', self.controller.dt)
        self.last_command = None
        self.overruns = 0

    def update_info(self, ego_pose, ego_speed):
        """
        Update the controller with the vehicle's current state.
        Args:
            ego_pose (tuple): (x, y, yaw) position (m) and heading (radians).
            ego_speed (float): Current speed (m/s).
        """
        self.controller.update_info(ego_pose, ego_speed)

    def run_step(self, waypoints, target_speed=None):
        """
        Execute one control step.
        Args:
            waypoints (list): Route waypoints.
            target_speed (float): Desired speed (m/s).
        Returns:
            VehicleControl: Throttle, steer, and brake commands.
        """
        held_control = self.controller.last_control.copy()
        start = time.perf_counter()
        command = self.controller.run_step(waypoints, target_speed)
        elapsed = time.perf_counter() - start

        if elapsed > self.deadline:
            self.overruns += 1
            logger.warning("MPC step took %.1f ms (deadline %.1f ms), holding previous command",
                           elapsed * 1e3, self.deadline * 1e3)
            self.controller.hold(held_control)
            if self.last_command is None:
                # Nothing applied yet: hold the initial actuation
                delta, acc = held_control
                self.last_command = self.controller._to_vehicle_control(acc, delta)
            return self.last_command

        self.last_command = command
        return command
