"""Plotting utilities for inspecting planning cycles.

:class:`TrajectoryPlotter` draws the reference line, road edges, obstacles
and the planned trajectory (coloured by velocity) with ego footprints
along it.
"""

import logging
from typing import Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.lines import Line2D
from matplotlib.patches import Polygon as MplPolygon, Patch

from miqpplan.core.config import VehicleParams
from miqpplan.obstacles.collision import RoadBoundaries, ego_footprint
from miqpplan.obstacles.obstacle import Obstacle
from miqpplan.planner.miqp_planner import PlanningResult

logger = logging.getLogger(__name__)


class TrajectoryPlotter:
    """Draws planning results into a matplotlib figure.

    Args:
        vehicle: Ego dimensions for the footprints.
        footprint_interval: Draw an ego footprint every N trajectory points.
    """

    def __init__(self, vehicle: Optional[VehicleParams] = None, footprint_interval: int = 5):
        self._vehicle = vehicle or VehicleParams()
        self._footprint_interval = max(1, footprint_interval)

    def plot(self,
             result: PlanningResult,
             reference: np.ndarray,
             obstacles: Sequence[Obstacle] = (),
             road_boundaries: Optional[RoadBoundaries] = None,
             ax: Optional[plt.Axes] = None) -> plt.Figure:
        """Draw one planning result.

        Args:
            result: Result of :meth:`MiqpPlanner.plan`.
            reference: (M, 2) reference line.
            obstacles: Obstacles of the cycle; predicted ones are drawn at
                the first trajectory time.
            road_boundaries: Optional road edges.
            ax: Axes to draw into; a new figure is created if omitted.

        Returns:
            The figure holding ``ax``.
        """
        if ax is None:
            fig, ax = plt.subplots(1, 1, figsize=(12, 6))
        else:
            fig = ax.figure

        reference = np.asarray(reference, dtype=float).reshape(-1, 2)
        if len(reference) > 0:
            ax.plot(reference[:, 0], reference[:, 1], 'g-', linewidth=2, zorder=3)

        if road_boundaries is not None:
            for edge in (road_boundaries.left, road_boundaries.right):
                edge = np.asarray(edge, dtype=float).reshape(-1, 2)
                ax.plot(edge[:, 0], edge[:, 1], 'k-', linewidth=1, zorder=2)

        t0 = result.trajectory[0].relative_time if len(result.trajectory) else 0.0
        for obstacle in obstacles:
            if obstacle.has_trajectory:
                shape = obstacle.bounding_box(obstacle.get_point_at_time(t0))
                pred = obstacle.trajectory.positions
                ax.plot(pred[:, 0], pred[:, 1], color=(0.8, 0.2, 0.2), ls='-.', lw=1, zorder=4)
            else:
                shape = obstacle.polygon
            colour = (0.6, 0.6, 0.6, 0.3) if obstacle.is_virtual else (0.8, 0.2, 0.2, 0.35)
            ax.add_patch(MplPolygon(np.asarray(shape.exterior.coords), closed=True,
                                    facecolor=colour, edgecolor=(0.5, 0.1, 0.1, 0.8), zorder=4))

        trajectory = result.trajectory
        if len(trajectory) > 0:
            pos = trajectory.positions
            ax.plot(pos[:, 0], pos[:, 1], 'b-', linewidth=1, zorder=5)
            sc = ax.scatter(pos[:, 0], pos[:, 1], c=trajectory.velocities, cmap='viridis',
                            s=12, zorder=6)
            fig.colorbar(sc, ax=ax, label='v [m/s]')
            for i in range(0, len(trajectory), self._footprint_interval):
                footprint = ego_footprint(trajectory[i], self._vehicle)
                ax.add_patch(MplPolygon(np.asarray(footprint.exterior.coords), closed=True,
                                        facecolor=(0.1, 0.1, 0.1, 0.15), edgecolor='black',
                                        linewidth=0.8, zorder=5))

        legend_handles = [
            Line2D([0], [0], color='g', linewidth=2, label='Reference'),
            Line2D([0], [0], color='b', linewidth=1, label='Planned'),
            Patch(facecolor=(0.8, 0.2, 0.2, 0.35), edgecolor=(0.5, 0.1, 0.1, 0.8), label='Obstacle'),
            Patch(facecolor=(0.1, 0.1, 0.1, 0.15), edgecolor='black', label='Ego footprint'),
        ]
        ax.legend(handles=legend_handles, loc='upper right', fontsize=8)
        state = result.planner_state.name if result.planner_state is not None else '-'
        ax.set_title(f"{state}: {result.status}")
        ax.set_aspect('equal')
        fig.tight_layout()
        return fig
