# Copyright 2024 inuex35
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Weighted least-squares position solver

Gauss-Newton iteration on [x, y, z, b] where b = c * dt is the receiver
clock bias expressed in meters. Keeping the clock in meters leaves the normal
matrix well scaled; the estimate reports it back in seconds.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from numpy.linalg import norm

from ..config import SolverConfig
from ..coordinate.transforms import ecef2llh, enu_rotation
from ..core.constants import CLIGHT, MIN_ELEVATION_WEIGHT, RE_WGS84
from ..core.data_structures import DOP, PositionEstimate, SatelliteObservation, SolutionStatus
from ..core.exceptions import GeoFusionError, InsufficientObservations, SingularSystem

logger = logging.getLogger(__name__)

NUM_STATES = 4


def geodist(sat_pos: np.ndarray, rec_pos: np.ndarray):
    """Geometric range and receiver-minus-satellite unit vector"""
    diff = rec_pos - sat_pos
    r = norm(diff)
    if r <= 0:
        raise SingularSystem("Receiver coincides with a satellite position")
    return r, diff / r


def elevation_angle(receiver: np.ndarray, satellite: np.ndarray) -> float:
    """Geocentric elevation of ``satellite`` seen from ``receiver`` (radians)

    Near the Earth's centre the local vertical is undefined and pi/4 is
    returned so the first iterations from a cold start weight all
    observations alike.
    """
    r_norm = norm(receiver)
    if r_norm < RE_WGS84 / 2:
        return np.pi / 4
    d = satellite - receiver
    sin_el = float(np.dot(d, receiver) / (norm(d) * r_norm))
    return float(np.arcsin(np.clip(sin_el, -1.0, 1.0)))


def observation_weight(elevation: float, snr: Optional[float],
                       snr_reference: float = 50.0, default_snr_weight: float = 0.5) -> float:
    """Unnormalised weight sin^2(el) * (0.5 + 0.5 * snr_weight)"""
    if snr is None or not np.isfinite(snr):
        snr_weight = default_snr_weight
    else:
        snr_weight = min(1.0, max(0.0, snr / snr_reference))
    el_weight = max(np.sin(elevation)**2, MIN_ELEVATION_WEIGHT)
    return float(el_weight * (0.5 + 0.5 * snr_weight))


def compute_dop(H: np.ndarray, W: np.ndarray, llh: Optional[np.ndarray] = None) -> DOP:
    """Dilution of precision from the diagonal of (H^T W H)^-1

    Parameters
    ----------
    H : np.ndarray
        (m, 4) design matrix, clock column in meters
    W : np.ndarray
        (m, m) weight matrix or (m,) weight vector
    llh : np.ndarray, optional
        Receiver geodetic position; horizontal/vertical DOP are rotated
        into the local frame when given, otherwise ECEF axes are used

    Returns
    -------
    DOP
        All components infinite when the geometry is singular
    """
    W = np.diag(W) if np.ndim(W) == 1 else W
    try:
        Q = np.linalg.inv(H.T @ W @ H)
    except np.linalg.LinAlgError:
        return DOP.singular()
    if not np.all(np.isfinite(Q)):
        return DOP.singular()

    Qpos = Q[:3, :3]
    if llh is not None:
        R = enu_rotation(llh[0], llh[1])
        Qpos = R @ Qpos @ R.T

    diag = np.diag(Qpos)
    if np.any(diag < 0) or Q[3, 3] < 0:
        return DOP.singular()
    hdop = np.sqrt(diag[0] + diag[1])
    vdop = np.sqrt(diag[2])
    pdop = np.sqrt(diag.sum())
    tdop = np.sqrt(Q[3, 3])
    gdop = np.sqrt(diag.sum() + Q[3, 3])
    return DOP(pdop=float(pdop), hdop=float(hdop), vdop=float(vdop),
               gdop=float(gdop), tdop=float(tdop))


@dataclass(frozen=True)
class SolveOutcome:
    """Typed result of ``PositionSolver.try_solve``"""
    estimate: Optional[PositionEstimate]
    status: SolutionStatus
    error: Optional[GeoFusionError] = None

    @property
    def ok(self) -> bool:
        return self.estimate is not None


class PositionSolver:
    """Gauss-Newton weighted least-squares on [x, y, z, clock]

    Parameters
    ----------
    config : SolverConfig, optional
        Iteration cap, convergence threshold and quality limits
    """

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()

    def _linearize(self, observations: Sequence[SatelliteObservation], x: np.ndarray):
        """Design matrix, residuals and normalised weights at state ``x``"""
        m = len(observations)
        H = np.zeros((m, NUM_STATES))
        v = np.zeros(m)
        w = np.zeros(m)
        pos, clk = x[:3], x[3]

        for i, obs in enumerate(observations):
            rho, e = geodist(obs.position, pos)
            v[i] = obs.pseudorange - (rho + clk)
            H[i, :3] = e
            H[i, 3] = 1.0
            el = elevation_angle(pos, obs.position)
            w[i] = observation_weight(el, obs.snr, self.config.snr_reference,
                                      self.config.default_snr_weight)

        total = w.sum()
        if total <= 0 or not np.isfinite(total):
            raise SingularSystem("Observation weights vanish")
        return H, v, w / total

    def _step(self, H: np.ndarray, v: np.ndarray, w: np.ndarray) -> np.ndarray:
        sqrt_w = np.sqrt(w)[:, None]
        if np.linalg.matrix_rank(sqrt_w * H) < NUM_STATES:
            raise SingularSystem("Observation geometry is rank deficient")
        N = H.T @ (w[:, None] * H)
        b = H.T @ (w * v)
        try:
            dx = np.linalg.solve(N, b)
        except np.linalg.LinAlgError as e:
            raise SingularSystem(f"Normal equations not invertible: {e}") from e
        if not np.all(np.isfinite(dx)):
            raise SingularSystem("Non-finite state correction")
        return dx

    def solve(self, observations: Sequence[SatelliteObservation],
              initial_position: Optional[np.ndarray] = None) -> PositionEstimate:
        """Estimate receiver position and clock bias

        Parameters
        ----------
        observations : sequence of SatelliteObservation
            At least ``min_satellites`` pseudoranges
        initial_position : np.ndarray, optional
            ECEF start point; the Earth's centre when omitted

        Returns
        -------
        PositionEstimate
            VALID or DEGRADED estimate

        Raises
        ------
        InsufficientObservations
            Fewer observations than required
        SingularSystem
            Geometry leaves the normal equations non-invertible
        """
        cfg = self.config
        observations = list(observations)
        if len(observations) < cfg.min_satellites:
            raise InsufficientObservations(len(observations), cfg.min_satellites)

        x = np.zeros(NUM_STATES)
        if initial_position is not None:
            x[:3] = np.asarray(initial_position, dtype=float)[:3]

        converged = False
        iterations = 0
        for iterations in range(1, cfg.max_iterations + 1):
            H, v, w = self._linearize(observations, x)
            dx = self._step(H, v, w)
            x += dx
            logger.trace("iteration %d: |dx| = %.6g m", iterations, norm(dx))
            if norm(dx) < cfg.convergence_threshold:
                converged = True
                break

        # Geometry, residuals and weights at the final state
        H, v, w = self._linearize(observations, x)
        llh = ecef2llh(x[:3])
        dop = compute_dop(H, w, llh)

        m = len(observations)
        W = np.diag(w)
        try:
            Q = np.linalg.inv(H.T @ W @ H)
        except np.linalg.LinAlgError as e:
            raise SingularSystem(f"Covariance not available: {e}") from e
        if m > NUM_STATES:
            sigma0_sq = float(v @ W @ v) / (m - NUM_STATES)
            covariance = sigma0_sq * Q
        else:
            covariance = np.zeros((NUM_STATES, NUM_STATES))

        rms = float(np.sqrt(np.mean(v**2)))
        # no redundancy: residuals are zero by construction and say nothing about accuracy
        error_estimate = dop.gdop * rms if dop.is_finite and m > NUM_STATES else None

        if not converged:
            logger.warning("Solver hit the iteration cap (%d) without converging",
                           cfg.max_iterations)
        if not dop.is_finite or dop.gdop > cfg.max_gdop or not converged:
            status = SolutionStatus.DEGRADED
        else:
            status = SolutionStatus.VALID

        logger.debug("Solved with %d satellites in %d iterations, GDOP %.2f, %s",
                     m, iterations, dop.gdop, status.value)

        return PositionEstimate(
            ecef=x[:3].copy(),
            llh=llh,
            clock_bias=float(x[3] / CLIGHT),
            dop=dop,
            covariance=covariance,
            residuals=v,
            iterations=iterations,
            num_satellites=m,
            status=status,
            error_estimate=error_estimate,
            weights=w,
            sat_ids=tuple(obs.sat_id for obs in observations),
        )

    def try_solve(self, observations: Sequence[SatelliteObservation],
                  initial_position: Optional[np.ndarray] = None) -> SolveOutcome:
        """Like ``solve`` but failures come back as an INVALID outcome"""
        try:
            estimate = self.solve(observations, initial_position)
        except (InsufficientObservations, SingularSystem) as e:
            logger.warning("Position solve failed: %s", e)
            return SolveOutcome(None, SolutionStatus.INVALID, e)
        return SolveOutcome(estimate, estimate.status)
