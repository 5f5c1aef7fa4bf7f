"""
Concurrent grid computation.

Grid and ASF sampling work runs on a background executor so the caller
stays responsive. Each operation has one request and one response type,
discriminated by ``type``. Requests carry an immutable snapshot of the
stations; numpy buffers cross the boundary by reference, never copied.

A newer grid request cancels the one in flight. If the executor is
unavailable or the computation fails, the same handler runs in-process.
"""

import concurrent.futures
import itertools
import logging
import threading
from typing import Annotated, Dict, Literal, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from .asf import AsfSource, ConstantAsf, RasterAsf, rasterize
from .config import GridSettings
from .context import ScenarioSnapshot
from .errors import AsfExpressionError, GridComputeCancelled, GridComputeError, GridComputeTimeout
from .grid import compute_bounds, compute_grid
from .projection import GridBounds
from .schemas import GridResult, Station

logger = logging.getLogger(__name__)


class GridComputeRequest(BaseModel):
    """Compute rasters and contours for every master/slave pair."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: Literal["computeGrid"] = "computeGrid"
    request_id: int
    masters: Tuple[Station, ...]
    slaves: Tuple[Station, ...]
    bounds: GridBounds
    nx: int = Field(..., ge=2)
    ny: int = Field(..., ge=2)
    sim_time_seconds: float = 0.0
    levels_seconds: Optional[Tuple[float, ...]] = None
    asf_rasters: Dict[str, np.ndarray] = Field(
        default_factory=dict, description="Presampled flat ASF rasters by station label"
    )


class GridComputeResponse(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: Literal["gridResult"] = "gridResult"
    request_id: int
    result: GridResult
    asf_errors: Dict[str, str] = Field(default_factory=dict)
    fallback: bool = Field(False, description="Computed in-process after a worker failure")


class AsfSampleRequest(BaseModel):
    """Sample one station's ASF source on a grid lattice."""

    model_config = ConfigDict(frozen=True)

    type: Literal["sampleAsf"] = "sampleAsf"
    request_id: int
    station_label: str
    source: AsfSource
    bounds: GridBounds
    nx: int = Field(..., ge=2)
    ny: int = Field(..., ge=2)


class AsfSampleResponse(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: Literal["asfResult"] = "asfResult"
    request_id: int
    station_label: str
    values: Optional[np.ndarray] = None
    error: Optional[str] = None


WorkerRequest = Annotated[Union[GridComputeRequest, AsfSampleRequest], Field(discriminator="type")]
WorkerResponse = Union[GridComputeResponse, AsfSampleResponse]


def handle_request(
    request: Union[GridComputeRequest, AsfSampleRequest],
    cancel: Optional[threading.Event] = None,
) -> WorkerResponse:
    """
    Execute one request. Runs on the executor or, as a fallback, in-process.

    A cancelled ASF sample is answered with an error response.

    Raises:
        GridComputeCancelled: If ``cancel`` is set during a grid computation
    """
    if isinstance(request, AsfSampleRequest):
        try:
            raster = rasterize(
                request.source, request.bounds, request.nx, request.ny, cancel=cancel
            )
        except AsfExpressionError as e:
            return AsfSampleResponse(
                request_id=request.request_id, station_label=request.station_label, error=str(e)
            )
        return AsfSampleResponse(
            request_id=request.request_id, station_label=request.station_label, values=raster.values
        )

    asf_errors: Dict[str, str] = {}
    result = compute_grid(
        request.masters,
        request.slaves,
        request.bounds,
        request.nx,
        request.ny,
        sim_time_seconds=request.sim_time_seconds,
        levels_seconds=request.levels_seconds,
        asf_rasters=request.asf_rasters,
        cancel=cancel,
        asf_errors=asf_errors,
    )
    return GridComputeResponse(request_id=request.request_id, result=result, asf_errors=asf_errors)


def needs_presampling(station: Station, bounds: GridBounds, nx: int, ny: int) -> bool:
    """True when a station's ASF must be rasterized before a grid request."""
    source = station.asf
    if source is None or isinstance(source, ConstantAsf):
        return False
    if isinstance(source, RasterAsf):
        return not source.matches(bounds, nx, ny)
    return True


class GridComputeService:
    """
    Runs grid requests on a background executor.

    Only the most recent grid request is live: submitting a new one sets
    the cancellation event of the previous one.
    """

    def __init__(
        self,
        max_workers: int = 1,
        timeout_seconds: float = 10.0,
        executor: Optional[concurrent.futures.Executor] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="eloran-grid"
        )
        self._lock = threading.Lock()
        self._cancel: Optional[threading.Event] = None
        self._ids = itertools.count(1)

    def __enter__(self) -> "GridComputeService":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def next_request_id(self) -> int:
        return next(self._ids)

    def build_request(
        self,
        snapshot: ScenarioSnapshot,
        settings: Optional[GridSettings] = None,
        levels_seconds: Optional[Sequence[float]] = None,
        bounds: Optional[GridBounds] = None,
    ) -> GridComputeRequest:
        """Freeze a snapshot into a grid request sized from the station extents."""
        settings = settings or GridSettings()
        if bounds is None:
            points = [(s.latitude, s.longitude) for s in snapshot.stations]
            points += [(r.latitude, r.longitude) for r in snapshot.receivers]
            bounds = compute_bounds(points, settings)
        return GridComputeRequest(
            request_id=self.next_request_id(),
            masters=snapshot.masters,
            slaves=snapshot.slaves,
            bounds=bounds,
            nx=settings.nx,
            ny=settings.ny,
            sim_time_seconds=snapshot.sim_time_seconds,
            levels_seconds=tuple(levels_seconds) if levels_seconds is not None else None,
        )

    def cancel_current(self) -> None:
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()

    def submit(
        self, request: Union[GridComputeRequest, AsfSampleRequest]
    ) -> Tuple["concurrent.futures.Future[WorkerResponse]", threading.Event]:
        """
        Queue a request on the executor.

        Grid requests supersede any grid request still in flight.

        Raises:
            RuntimeError: If the executor has been shut down
        """
        cancel = threading.Event()
        if isinstance(request, GridComputeRequest):
            with self._lock:
                if self._cancel is not None:
                    self._cancel.set()
                self._cancel = cancel
        future = self._executor.submit(handle_request, request, cancel)
        return future, cancel

    def sample_asf(
        self, stations: Sequence[Station], bounds: GridBounds, nx: int, ny: int
    ) -> Tuple[Dict[str, np.ndarray], Dict[str, str]]:
        """
        Rasterize the ASF of every station that needs it.

        A station whose sampling fails or times out gets a zero raster and
        its error is reported. A timed-out sample is cancelled so the
        executor is free for the grid request that follows.

        Returns:
            Tuple of (rasters by label, errors by label)
        """
        rasters: Dict[str, np.ndarray] = {}
        errors: Dict[str, str] = {}
        for station in stations:
            if not needs_presampling(station, bounds, nx, ny):
                continue
            request = AsfSampleRequest(
                request_id=self.next_request_id(),
                station_label=station.label,
                source=station.asf,
                bounds=bounds,
                nx=nx,
                ny=ny,
            )
            try:
                future, cancel = self.submit(request)
            except RuntimeError:
                response = handle_request(request)
            else:
                try:
                    response = future.result(timeout=self.timeout_seconds)
                except concurrent.futures.TimeoutError:
                    cancel.set()
                    errors[station.label] = "ASF sampling timeout"
                    rasters[station.label] = np.zeros(nx * ny)
                    logger.warning("ASF sampling timed out for %s", station.label)
                    continue
                except Exception as e:
                    logger.warning(
                        "ASF worker failed for %s, sampling in-process: %s", station.label, e
                    )
                    response = handle_request(request)

            if response.error is not None:
                errors[station.label] = response.error
                rasters[station.label] = np.zeros(nx * ny)
                logger.warning("ASF sampling failed for %s: %s", station.label, response.error)
            else:
                rasters[station.label] = response.values
        return rasters, errors

    def compute(
        self, request: GridComputeRequest, timeout: Optional[float] = None
    ) -> GridComputeResponse:
        """
        Presample ASF sources, run the grid request and wait for it.

        Args:
            request: Grid request
            timeout: Seconds to wait; defaults to the service timeout

        Returns:
            GridComputeResponse (``fallback`` set when computed in-process)

        Raises:
            GridComputeTimeout: If the worker does not answer in time
            GridComputeCancelled: If a newer request superseded this one
        """
        timeout = self.timeout_seconds if timeout is None else timeout
        rasters, asf_errors = self.sample_asf(
            list(request.masters) + list(request.slaves), request.bounds, request.nx, request.ny
        )
        if rasters:
            request = request.model_copy(update={"asf_rasters": {**request.asf_rasters, **rasters}})

        try:
            future, cancel = self.submit(request)
        except RuntimeError as e:
            logger.warning("Grid worker unavailable, computing in-process: %s", e)
            return self._compute_in_process(request, asf_errors)

        try:
            response = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            cancel.set()
            raise GridComputeTimeout(
                f"grid request {request.request_id} did not finish within {timeout:.1f} s"
            )
        except GridComputeCancelled:
            raise
        except Exception as e:
            logger.warning("Grid worker failed, computing in-process: %s", e)
            return self._compute_in_process(request, asf_errors)

        return response.model_copy(update={"asf_errors": {**asf_errors, **response.asf_errors}})

    def _compute_in_process(
        self, request: GridComputeRequest, asf_errors: Dict[str, str]
    ) -> GridComputeResponse:
        try:
            response = handle_request(request)
        except GridComputeCancelled:
            raise
        except Exception as e:
            raise GridComputeError(f"grid computation failed: {e}") from e
        return response.model_copy(
            update={"asf_errors": {**asf_errors, **response.asf_errors}, "fallback": True}
        )

    def shutdown(self, wait: bool = True) -> None:
        self.cancel_current()
        self._executor.shutdown(wait=wait)
