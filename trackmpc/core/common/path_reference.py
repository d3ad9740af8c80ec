"""
Local polynomial approximation of the reference path.

Waypoints are moved into the vehicle frame (origin at the rear axle, x axis
along the heading) and fitted with y = c0 + c1 x + ... + cd x^d. Evaluations and
derivatives are closed form in the coefficients so the optimizer sees a smooth,
reproducible target.
"""

import numpy as np
from numpy.polynomial import polynomial as P

from trackmpc.core.common.exceptions import InsufficientWaypoints


def _xy(points):
    # heading column may be None
    return np.array([(p[0], p[1]) for p in points], dtype=float).reshape(-1, 2)


def to_local_frame(points, origin):
    """
    Transform global points into the frame of a vehicle pose.

    Args:
        points (array-like): (M, 2+) global points, extra columns are ignored.
        origin (tuple): Vehicle pose (px, py, psi) in the global frame.

    Returns:
        np.ndarray: (M, 2) local coordinates.
    """
    pts = _xy(points)
    px, py, psi = origin
    dx = pts[:, 0] - px
    dy = pts[:, 1] - py
    cos_psi, sin_psi = np.cos(psi), np.sin(psi)
    # Rotation by -psi
    local_x = dx * cos_psi + dy * sin_psi
    local_y = -dx * sin_psi + dy * cos_psi
    return np.column_stack((local_x, local_y))


def fit_polynomial(xs, ys, order):
    """
    Ordinary least squares fit on the increasing Vandermonde matrix.

    Args:
        xs (array-like): Longitudinal offsets.
        ys (array-like): Lateral offsets.
        order (int): Polynomial order d.

    Returns:
        np.ndarray: Coefficients c0..cd (increasing powers).
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.size < order + 1:
        raise InsufficientWaypoints(xs.size, order + 1)
    vander = np.vander(xs, order + 1, increasing=True)
    coeffs, _, _, _ = np.linalg.lstsq(vander, ys, rcond=None)
    return coeffs


def select_window(waypoints, position, size):
    """
    Waypoint window starting at the waypoint nearest to a position.

    Args:
        waypoints (list): Ordered route waypoints.
        position (tuple): Global (x, y) of the vehicle.
        size (int): Number of waypoints in the window.

    Returns:
        list: Up to ``size`` consecutive waypoints.
    """
    if not waypoints:
        return []
    pts = _xy(waypoints)
    dist = np.hypot(pts[:, 0] - position[0], pts[:, 1] - position[1])
    start = int(np.argmin(dist))
    return list(waypoints[start:start + size])


class PathReference:
    """Polynomial reference path y = f(x) in a vehicle-local frame."""

    def __init__(self, coeffs, domain=None, origin=None):
        """
        Args:
            coeffs (array-like): Coefficients in increasing powers.
            domain (tuple): (x_min, x_max) covered by the fitted points.
            origin (tuple): Global pose (px, py, psi) the frame is attached to.
        """
        self.coeffs = np.array(coeffs, dtype=float)
        self.coeffs.setflags(write=False)
        self.domain = domain
        self.origin = origin

    @classmethod
    def fit(cls, waypoints, order=3, origin=None):
        """
        Fit a reference path to waypoints.

        Args:
            waypoints (list): Waypoints (x, y[, heading]) in the global frame.
            order (int): Polynomial order.
            origin (tuple): Vehicle pose (px, py, psi). When None the
                waypoints are assumed to be local already.

        Returns:
            PathReference

        Raises:
            InsufficientWaypoints: len(waypoints) < order + 1.
        """
        if len(waypoints) < order + 1:
            raise InsufficientWaypoints(len(waypoints), order + 1)
        if origin is None:
            local = _xy(waypoints)
        else:
            local = to_local_frame(waypoints, origin)
        coeffs = fit_polynomial(local[:, 0], local[:, 1], order)
        domain = (float(local[:, 0].min()), float(local[:, 0].max()))
        return cls(coeffs, domain=domain, origin=origin)

    @property
    def order(self):
        return len(self.coeffs) - 1

    def evaluate(self, x):
        """Lateral offset f(x)."""
        return P.polyval(x, self.coeffs)

    def slope(self, x):
        """First derivative f'(x)."""
        return self.derivative(x, 1)

    def derivative(self, x, m):
        """m-th derivative of f at x (zero beyond the polynomial order)."""
        if m > self.order:
            return 0.0 * np.asarray(x, dtype=float)
        return P.polyval(x, P.polyder(self.coeffs, m))

    def heading(self, x):
        """Path direction atan(f'(x)) in the local frame."""
        return np.arctan(self.slope(x))

    def cross_track_error(self, x=0.0, y=0.0):
        """Signed lateral offset y - f(x), positive left of the path."""
        return y - self.evaluate(x)

    def heading_error(self, x=0.0, psi=0.0):
        """Heading relative to the path direction at x."""
        return psi - self.heading(x)

    def covers(self, x):
        """Whether x lies inside the fitted domain."""
        if self.domain is None:
            return True
        return self.domain[0] <= x <= self.domain[1]

    def __repr__(self):
        return f"PathReference(coeffs={self.coeffs.tolist()}, domain={self.domain})"
