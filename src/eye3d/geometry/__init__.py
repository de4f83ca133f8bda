"""几何内核：求根、二次曲线/锥面、投影与反投影。"""

from eye3d.geometry.primitives import Circle3D, Conic, Conicoid, Ellipse, Line
from eye3d.geometry.projections import (
    intersect_line_sphere,
    nearest_point_on_sphere_to_line,
    project_line_into_image_plane,
    project_point_into_image_plane,
    unproject_conicoid,
    unproject_ellipse,
)
from eye3d.geometry.solvers import NoSolutionError, solve_cubic, solve_linear, solve_quadratic
from eye3d.geometry.utils import cart2sph, normalize, sph2cart

__all__ = [
    "Circle3D",
    "Conic",
    "Conicoid",
    "Ellipse",
    "Line",
    "NoSolutionError",
    "cart2sph",
    "intersect_line_sphere",
    "nearest_point_on_sphere_to_line",
    "normalize",
    "project_line_into_image_plane",
    "project_point_into_image_plane",
    "solve_cubic",
    "solve_linear",
    "solve_quadratic",
    "sph2cart",
    "unproject_conicoid",
    "unproject_ellipse",
]
