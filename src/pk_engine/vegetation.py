# src/pk_engine/vegetation.py
"""Explicit vegetation kernel driving an external demography model.

The vegetation model itself (canopy radiation, photosynthesis, cohort
dynamics) is an opaque collaborator behind the VegetationModel protocol. This
kernel only:

- gathers meteorological forcing and soil state per site into SiteRecords,
- calls photosynthesis every photosynthesis_interval seconds and site
  dynamics every dynamics_interval seconds,
- writes the returned GPP, transpiration and biomass into owned fields.

Sub-process event times only advance at commit, so a rejected step never
skips an event.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

import numpy as np
import numpy.typing as npt

from .errors import ConfigurationError, raise_invalid_kernel_config
from .mesh import EntityKind
from .pk import PhysicalKernel
from .variable_store import TimeTag

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .graph import EvaluationGraph
    from .variable_store import VariableStore

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]

SECONDS_PER_DAY = 86400.0
DAYS_PER_YEAR = 365
_CUMULATIVE_MONTH_DAYS = np.cumsum([31, 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31])

_INTERVAL_ERROR = "{name} must be positive; got {value}"
_RESULT_SHAPE_ERROR = "vegetation model returned {what} with shape {shape}; expected ({n},)"


class Calendar(NamedTuple):
    """No-leap calendar date of a simulation time."""

    year: int
    month: int
    day: int
    day_of_year: int
    model_day: int
    time_of_day: float


def calendar_from_time(t: float, start_year: int = 1990) -> Calendar:
    """Convert seconds since the start of the run to a no-leap calendar date.

    Args:
        t: Simulation time [s].
        start_year: Year in which the run starts.

    Returns:
        The Calendar at t.
    """
    t_days = t / SECONDS_PER_DAY
    day_of_year = math.floor(math.fmod(t_days, DAYS_PER_YEAR)) + 1
    month = int(np.searchsorted(_CUMULATIVE_MONTH_DAYS, day_of_year)) + 1
    before = 0 if month == 1 else int(_CUMULATIVE_MONTH_DAYS[month - 2])
    return Calendar(
        year=start_year + math.floor(t_days / DAYS_PER_YEAR),
        month=month,
        day=day_of_year - before,
        day_of_year=day_of_year,
        model_day=math.ceil(t_days),
        time_of_day=SECONDS_PER_DAY * (t_days - math.floor(t_days)),
    )


@dataclass(slots=True, frozen=True)
class SiteRecord:
    """Per-site inputs handed to the vegetation model.

    Attributes:
        site: Site (surface cell) index.
        air_temperature: Air temperature [K].
        precipitation: Rain rate [m/s].
        relative_humidity: Relative humidity [-].
        wind_speed: Wind speed [m/s].
        incident_radiation: Incident shortwave radiation [W/m^2].
        longwave_radiation: Incoming longwave radiation [W/m^2].
        co2: Atmospheric CO2 partial pressure [Pa].
        soil_temperature: Soil temperature [K].
        soil_moisture: Volumetric soil water content [-].
        calendar: Date at the end of the step.
    """

    site: int
    air_temperature: float
    precipitation: float
    relative_humidity: float
    wind_speed: float
    incident_radiation: float
    longwave_radiation: float
    co2: float
    soil_temperature: float
    soil_moisture: float
    calendar: Calendar


class CanopyFluxes(NamedTuple):
    """Photosynthesis outputs, one entry per site."""

    gpp: FloatArray
    transpiration: FloatArray


class VegetationModel(Protocol):
    """External vegetation-demography model."""

    def photosynthesis(self, sites: Sequence[SiteRecord], dt: float) -> CanopyFluxes:
        """Canopy fluxes accumulated over dt [s], the photosynthesis interval."""
        ...

    def dynamics(self, sites: Sequence[SiteRecord], dt: float) -> FloatArray:
        """Advance site dynamics over dt [s], the dynamics interval.

        Returns:
            Biomass per site.
        """
        ...


@dataclass(slots=True, frozen=True)
class VegetationOptions:
    """Options of a VegetationKernel.

    Attributes:
        photosynthesis_interval: Seconds between photosynthesis calls.
        dynamics_interval: Seconds between site-dynamics calls.
        max_dt: Upper bound on the proposed step.
        air_temperature_key: Forcing field keys (surface cells).
        precipitation_key: See air_temperature_key.
        humidity_key: See air_temperature_key.
        wind_key: See air_temperature_key.
        incident_radiation_key: See air_temperature_key.
        longwave_radiation_key: See air_temperature_key.
        co2_key: See air_temperature_key.
        soil_temperature_key: Optional soil temperature per site; air
            temperature is used when absent.
        soil_moisture_key: Optional soil water content per site.
        default_soil_moisture: Soil water content used without a field.
        gpp_key: Output field for gross primary production.
        transpiration_key: Output field for transpiration.
        biomass_key: Output field for biomass.
        start_year: Calendar year of t = 0.
    """

    photosynthesis_interval: float = 1800.0
    dynamics_interval: float = SECONDS_PER_DAY
    max_dt: float = math.inf
    air_temperature_key: str = "air_temperature"
    precipitation_key: str = "precipitation_rain"
    humidity_key: str = "relative_humidity"
    wind_key: str = "wind_speed"
    incident_radiation_key: str = "incoming_shortwave_radiation"
    longwave_radiation_key: str = "incoming_longwave_radiation"
    co2_key: str = "co2_concentration"
    soil_temperature_key: str | None = None
    soil_moisture_key: str | None = None
    default_soil_moisture: float = 0.5
    gpp_key: str = "gpp"
    transpiration_key: str = "transpiration"
    biomass_key: str = "biomass"
    start_year: int = 1990

    def __post_init__(self) -> None:
        """Validate intervals."""
        for name in ("photosynthesis_interval", "dynamics_interval", "max_dt"):
            value = getattr(self, name)
            if not value > 0.0:
                raise ConfigurationError(_INTERVAL_ERROR.format(name=name, value=value))

    def forcing_keys(self) -> list[str]:
        """Every field read by the kernel."""
        keys = [
            self.air_temperature_key,
            self.precipitation_key,
            self.humidity_key,
            self.wind_key,
            self.incident_radiation_key,
            self.longwave_radiation_key,
            self.co2_key,
        ]
        keys.extend(k for k in (self.soil_temperature_key, self.soil_moisture_key) if k)
        return keys


class VegetationKernel(PhysicalKernel):
    """Explicit kernel with staggered photosynthesis and dynamics events."""

    def __init__(
        self,
        name: str,
        store: VariableStore,
        graph: EvaluationGraph,
        model: VegetationModel,
        options: VegetationOptions | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize.

        Args:
            name: Kernel name.
            store: Shared variable store.
            graph: Shared evaluation graph.
            model: External vegetation model.
            options: Intervals and field keys.
            **kwargs: Passed to PhysicalKernel (mesh, initial_conditions).
        """
        kwargs.setdefault("mesh", "surface")
        super().__init__(name, store, graph, **kwargs)
        self.model = model
        self.options = options or VegetationOptions()
        self.t_photosynthesis = 0.0
        self.t_dynamics = 0.0
        self._pending_events: dict[str, float] = {}

    @property
    def n_sites(self) -> int:
        """Number of sites (cells of the kernel's mesh)."""
        return self.store.mesh(self.mesh_name).num_entities(EntityKind.CELL)

    def _setup(self) -> None:
        opts = self.options
        for key in (opts.gpp_key, opts.transpiration_key, opts.biomass_key):
            self.require_owned_field(key, {"cell": EntityKind.CELL}, default=0.0)
        for key in opts.forcing_keys():
            self.store.require_field_evaluator(key, requester=self.name).set_mesh(
                self.mesh_name
            ).add_component("cell", EntityKind.CELL)

    def _initialize(self) -> None:
        super()._initialize()
        t0 = self.store.time(TimeTag.OLD)
        self.t_photosynthesis = t0
        self.t_dynamics = t0
        self._pending_events.clear()

    def get_dt(self) -> float:
        """Time remaining to the next photosynthesis or dynamics event."""
        opts = self.options
        t = self.store.time(TimeTag.OLD)
        dt = min(self.t_photosynthesis + opts.photosynthesis_interval - t, opts.photosynthesis_interval)
        dt = min(self.t_dynamics + opts.dynamics_interval - t, dt, opts.dynamics_interval)
        return min(dt, opts.max_dt)

    @staticmethod
    def _reached(t_new: float, event: float) -> bool:
        return t_new >= event - 1.0e-12 * max(abs(t_new), 1.0)

    def _forcing(self, key: str | None) -> FloatArray | None:
        if key is None:
            return None
        return np.asarray(self.graph.get_field(key, TimeTag.NEW)["cell"])

    def site_records(self, t: float) -> list[SiteRecord]:
        """Current forcing and soil state per site at the NEW tag."""
        opts = self.options
        air_t = self._forcing(opts.air_temperature_key)
        rain = self._forcing(opts.precipitation_key)
        rh = self._forcing(opts.humidity_key)
        wind = self._forcing(opts.wind_key)
        sw = self._forcing(opts.incident_radiation_key)
        lw = self._forcing(opts.longwave_radiation_key)
        co2 = self._forcing(opts.co2_key)
        soil_t = self._forcing(opts.soil_temperature_key)
        soil_m = self._forcing(opts.soil_moisture_key)
        calendar = calendar_from_time(t, opts.start_year)
        return [
            SiteRecord(
                site=s,
                air_temperature=float(air_t[s]),
                precipitation=float(rain[s]),
                relative_humidity=float(rh[s]),
                wind_speed=float(wind[s]),
                incident_radiation=float(sw[s]),
                longwave_radiation=float(lw[s]),
                co2=float(co2[s]),
                soil_temperature=float(air_t[s] if soil_t is None else soil_t[s]),
                soil_moisture=float(opts.default_soil_moisture if soil_m is None else soil_m[s]),
                calendar=calendar,
            )
            for s in range(self.n_sites)
        ]

    def _checked(self, what: str, values: npt.ArrayLike) -> FloatArray:
        arr = np.asarray(values, dtype=np.float64).ravel()
        if arr.shape != (self.n_sites,):
            raise_invalid_kernel_config(
                kernel=self.name,
                detail=_RESULT_SHAPE_ERROR.format(what=what, shape=arr.shape, n=self.n_sites),
            )
        return arr

    def _write(self, key: str, values: FloatArray) -> None:
        self.store.set_field_data(key, {"cell": values}, TimeTag.NEW, writer=self.name)

    def _advance(self, t_old: float, t_new: float, reinit: bool) -> bool:  # noqa: ARG002, FBT001
        opts = self.options
        self._pending_events.clear()
        run_photo = self._reached(t_new, self.t_photosynthesis + opts.photosynthesis_interval)
        run_dynamics = self._reached(t_new, self.t_dynamics + opts.dynamics_interval)
        if not (run_photo or run_dynamics):
            return True

        sites = self.site_records(t_new)
        if run_photo:
            fluxes = self.model.photosynthesis(sites, opts.photosynthesis_interval)
            self._write(opts.gpp_key, self._checked("gpp", fluxes.gpp))
            self._write(
                opts.transpiration_key, self._checked("transpiration", fluxes.transpiration)
            )
            self._pending_events["photosynthesis"] = t_new
            logger.debug("%s: photosynthesis at t=%g", self.name, t_new)
        if run_dynamics:
            biomass = self.model.dynamics(sites, opts.dynamics_interval)
            self._write(opts.biomass_key, self._checked("biomass", biomass))
            self._pending_events["dynamics"] = t_new
            logger.debug("%s: site dynamics at t=%g", self.name, t_new)
        return True

    def _commit(self, t_old: float, t_new: float) -> None:
        super()._commit(t_old, t_new)
        self.t_photosynthesis = self._pending_events.get("photosynthesis", self.t_photosynthesis)
        self.t_dynamics = self._pending_events.get("dynamics", self.t_dynamics)
        self._pending_events.clear()
