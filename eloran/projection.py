"""
Planar projection helpers.

Grid lattices are laid out in Web Mercator (EPSG:3857) meters. Distances
are never measured in that frame: callers convert cell centers back to
latitude/longitude first (see ``physics.haversine_distance``).
"""

from typing import List, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field
from pyproj import Transformer

_TO_PLANAR = Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)
_TO_GEODETIC = Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)


def to_planar(lat, lng):
    """
    Project geodetic coordinates to Web Mercator meters.

    Args:
        lat: Latitude in decimal degrees (scalar or array)
        lng: Longitude in decimal degrees (scalar or array)

    Returns:
        Tuple of (x, y) in meters
    """
    return _TO_PLANAR.transform(lng, lat)


def to_geodetic(x, y):
    """
    Inverse-project Web Mercator meters to geodetic coordinates.

    Returns:
        Tuple of (lat, lng) in decimal degrees
    """
    lng, lat = _TO_GEODETIC.transform(x, y)
    return lat, lng


class GridBounds(BaseModel):
    """Axis-aligned bounds of a grid in Web Mercator meters."""

    model_config = ConfigDict(frozen=True)

    min_x: float = Field(..., description="Minimum easting in meters")
    min_y: float = Field(..., description="Minimum northing in meters")
    max_x: float = Field(..., description="Maximum easting in meters")
    max_y: float = Field(..., description="Maximum northing in meters")

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def axes(self, nx: int, ny: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return the x and y lattice coordinates for an nx by ny grid."""
        xs = np.linspace(self.min_x, self.max_x, nx)
        ys = np.linspace(self.min_y, self.max_y, ny)
        return xs, ys

    def cell_size(self, nx: int, ny: int) -> Tuple[float, float]:
        return self.width / (nx - 1), self.height / (ny - 1)

    def geodetic_lattice(self, nx: int, ny: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Latitude and longitude of every lattice point.

        Returns:
            Two (ny, nx) arrays; row j holds the points with northing ys[j].
        """
        xs, ys = self.axes(nx, ny)
        x_grid, y_grid = np.meshgrid(xs, ys)
        lat, lng = to_geodetic(x_grid, y_grid)
        return np.asarray(lat, dtype=float), np.asarray(lng, dtype=float)

    def to_list(self) -> List[float]:
        """Convert to [min_x, min_y, max_x, max_y] list."""
        return [self.min_x, self.min_y, self.max_x, self.max_y]
