# -*- coding: utf-8 -*-
from __future__ import annotations

import dataclasses
import io
import math
import sys
import time
import traceback
import unittest
import unittest.mock
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    ClassVar,
    Final,
    Literal,
    Protocol,
    TextIO,
    Tuple,
    TypeAlias,
    runtime_checkable,
)

try:
    from PIL import Image
    import numpy as np
    import numpy.typing as npt
    import matplotlib.figure
    import matplotlib.pyplot as plt
except ImportError as import_error:
    print(
        f"Error: Missing dependencies -> {import_error}. "
        "Please run: pip install Pillow numpy matplotlib"
    )
    sys.exit(1)


StateIndex: TypeAlias = int
NDArrayF64: TypeAlias = npt.NDArray[np.float64]
NDArrayInt: TypeAlias = npt.NDArray[np.int64]
StateKind: TypeAlias = Literal[
    "empty", "ordinary", "full", "buffering", "service_init"
]
ConvergencePoint: TypeAlias = Tuple[int, float]

PRECISION_TOLERANCE: Final[float] = 1e-9
DEFAULT_OUTPUT_DIR: Final[Path] = Path("./simulation_outputs").resolve()
PERCENT: Final[float] = 100.0
INT32_MAX: Final[int] = 2**31 - 1
NO_TRANSITION: Final[StateIndex] = -1
DEFAULT_DRAW_BLOCK_SIZE: Final[int] = 4096
REPORT_WIDTH: Final[int] = 78
DEFAULT_SEED_FUNC: Callable[[], int] = lambda: int(
    time.time() * 1_000_000
) % (2**32)


class SimulationError(Exception):
    pass


class VisualizationError(Exception):
    pass


class ConfigError(ValueError):
    pass


class InvalidStateGraphError(SimulationError):
    pass


def _create_unique_filename(prefix: str, suffix: str) -> str:
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    unique_id = uuid.uuid4().hex[:6]
    return f"{prefix}_{timestamp}_{unique_id}.{suffix}"


def _ensure_output_dir(file_path: Path) -> Path | None:
    output_dir = file_path.parent
    try:
        resolved_path = file_path.resolve()
        output_dir = resolved_path.parent
        output_dir.mkdir(parents=True, exist_ok=True)
        return resolved_path
    except OSError as e:
        print(
            f"Warning: Cannot create output directory {output_dir}: {e}",
            file=sys.stderr,
        )
        return None


def _format_optional(value: float | None, unit: str = "") -> str:
    if value is None:
        return "undefined"
    return f"{value:.3f}{unit}"


def _validate_positive_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a positive integer, got {value}."
            )


def _validate_non_negative_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a non-negative integer, got {value}."
            )


def _validate_non_negative_nums(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if (
            isinstance(value, bool)
            or not isinstance(value, (int, float))
            or not math.isfinite(value)
            or value < 0
        ):
            raise ConfigError(
                f"Configuration error: '{name}' must be a non-negative number, got {value}."
            )


def _validate_floats_exclusive_0_1(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, float) or not (0.0 < value <= 1.0):
            raise ConfigError(
                f"Configuration error: '{name}' must be a float between 0.0 (exclusive) and 1.0 (inclusive), got {value}."
            )


@dataclass(frozen=True)
class QueueModelConfig:
    CAPACITY: int = 10
    ARRIVAL_RATE: float = 1.0
    SERVICE_RATE: float = 1.5
    THRESHOLD: int = 3

    def __post_init__(self) -> None:
        _validate_positive_ints(("CAPACITY", self.CAPACITY))
        _validate_non_negative_ints(("THRESHOLD", self.THRESHOLD))
        _validate_non_negative_nums(
            ("ARRIVAL_RATE", self.ARRIVAL_RATE),
            ("SERVICE_RATE", self.SERVICE_RATE),
        )
        if self.ARRIVAL_RATE + self.SERVICE_RATE <= 0.0:
            raise ConfigError(
                "ARRIVAL_RATE + SERVICE_RATE must be positive: the arrival "
                "probability lambda / (lambda + mu) is undefined otherwise."
            )

    @property
    def num_states(self) -> int:
        return self.CAPACITY + max(self.THRESHOLD, 1)


@dataclass(frozen=True)
class SimulationConfig:
    EVENTS_PER_GENERATION: int = 1_000
    MAX_GENERATIONS: int = 1_000
    TOLERANCE: float = 0.01
    VERBOSE: bool = False
    SEED: int | None = field(default_factory=DEFAULT_SEED_FUNC)

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("EVENTS_PER_GENERATION", self.EVENTS_PER_GENERATION),
            ("MAX_GENERATIONS", self.MAX_GENERATIONS),
        )
        _validate_non_negative_nums(("TOLERANCE", self.TOLERANCE))
        if self.SEED is not None:
            _validate_non_negative_ints(("SEED", self.SEED))

        if self.max_events > INT32_MAX:
            raise ConfigError(
                f"MAX_GENERATIONS x EVENTS_PER_GENERATION ({self.max_events:,}) exceeds "
                f"the event counter limit ({INT32_MAX:,}). Use at most "
                f"{INT32_MAX // self.EVENTS_PER_GENERATION:,} generations."
            )

    @property
    def max_events(self) -> int:
        return self.MAX_GENERATIONS * self.EVENTS_PER_GENERATION


@dataclass(frozen=True)
class VisConfig:
    FIGSIZE: tuple[int, int] = (12, 6)
    DPI: int = 150
    BAR_ALPHA: float = 0.8
    GRID_ALPHA: float = 0.3
    ORDINARY_COLOR: str = "tab:blue"
    BUFFERING_COLOR: str = "tab:orange"
    DEFAULT_CONVERGENCE_PLOT_FILENAME: Final[str] = field(
        default_factory=lambda: _create_unique_filename(
            "convergence", "png"
        )
    )
    DEFAULT_PROBABILITY_PLOT_FILENAME: Final[str] = field(
        default_factory=lambda: _create_unique_filename(
            "ergodic_probabilities", "png"
        )
    )

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("FIGSIZE width", self.FIGSIZE[0]),
            ("FIGSIZE height", self.FIGSIZE[1]),
            ("DPI", self.DPI),
        )
        _validate_floats_exclusive_0_1(
            ("BAR_ALPHA", self.BAR_ALPHA),
            ("GRID_ALPHA", self.GRID_ALPHA),
        )


@dataclass(frozen=True)
class State:
    index: StateIndex
    kind: StateKind
    up_probability: float
    next_on_arrival: StateIndex
    next_on_service: StateIndex
    generation_visits: int
    total_visits: int
    last_probability: float

    @property
    def has_service_transition(self) -> bool:
        return self.next_on_service != NO_TRANSITION


class StateGraph:
    _ISGE = InvalidStateGraphError

    def __init__(
        self,
        capacity: int,
        threshold: int,
        arrival_rate: float,
        service_rate: float,
        kinds: Sequence[StateKind],
        up_probability: NDArrayF64,
        next_on_arrival: NDArrayInt,
        next_on_service: NDArrayInt,
    ) -> None:
        num_states = len(kinds)
        up = np.array(up_probability, dtype=np.float64)
        on_arrival = np.array(next_on_arrival, dtype=np.int64)
        on_service = np.array(next_on_service, dtype=np.int64)

        if num_states == 0:
            raise self._ISGE("State graph must contain at least one state.")
        for name, array in (
            ("up_probability", up),
            ("next_on_arrival", on_arrival),
            ("next_on_service", on_service),
        ):
            if array.shape != (num_states,):
                raise self._ISGE(
                    f"'{name}' has shape {array.shape}, expected ({num_states},)."
                )

        if np.any(~np.isfinite(up)) or np.any(up < 0.0) or np.any(up > 1.0):
            raise self._ISGE(
                "Arrival probabilities must be finite values in [0, 1]."
            )
        if np.any(on_arrival < 0) or np.any(on_arrival >= num_states):
            raise self._ISGE("Arrival transition points outside the graph.")
        if np.any(on_service < NO_TRANSITION) or np.any(
            on_service >= num_states
        ):
            raise self._ISGE("Service transition points outside the graph.")

        missing_service = np.where(
            (up < 1.0) & (on_service == NO_TRANSITION)
        )[0]
        if missing_service.size > 0:
            raise self._ISGE(
                f"States {missing_service.tolist()} can complete service but have "
                "no service transition."
            )
        self_loops = np.where(on_arrival == np.arange(num_states))[0]
        if self_loops.size != 1:
            raise self._ISGE(
                f"Exactly one state must loop on arrival, found {self_loops.tolist()}."
            )

        for array in (up, on_arrival, on_service):
            array.setflags(write=False)

        self.capacity: Final = capacity
        self.threshold: Final = threshold
        self.arrival_rate: Final = arrival_rate
        self.service_rate: Final = service_rate
        self.kinds: Final[tuple[StateKind, ...]] = tuple(kinds)
        self.up_probability: Final[NDArrayF64] = up
        self.next_on_arrival: Final[NDArrayInt] = on_arrival
        self.next_on_service: Final[NDArrayInt] = on_service

        self.generation_visits: NDArrayInt = np.zeros(
            num_states, dtype=np.int64
        )
        self.total_visits: NDArrayInt = np.zeros(num_states, dtype=np.int64)
        self.last_probability: NDArrayF64 = np.ones(
            num_states, dtype=np.float64
        )

    @classmethod
    def from_config(cls, config: QueueModelConfig) -> StateGraph:
        return build_state_graph(
            config.CAPACITY,
            config.THRESHOLD,
            config.ARRIVAL_RATE,
            config.SERVICE_RATE,
        )

    @property
    def num_states(self) -> int:
        return len(self.kinds)

    @property
    def probabilities(self) -> NDArrayF64:
        return np.where(self.total_visits > 0, self.last_probability, 0.0)

    def __len__(self) -> int:
        return self.num_states

    def __getitem__(self, state_index: int) -> State:
        if isinstance(state_index, bool) or not isinstance(state_index, int):
            raise TypeError("State index must be an integer.")
        if not 0 <= state_index < self.num_states:
            raise IndexError(
                f"State index {state_index} out of range for {self.num_states} states."
            )
        return State(
            index=state_index,
            kind=self.kinds[state_index],
            up_probability=float(self.up_probability[state_index]),
            next_on_arrival=int(self.next_on_arrival[state_index]),
            next_on_service=int(self.next_on_service[state_index]),
            generation_visits=int(self.generation_visits[state_index]),
            total_visits=int(self.total_visits[state_index]),
            last_probability=float(self.last_probability[state_index]),
        )

    def __repr__(self) -> str:
        return (
            f"StateGraph(capacity={self.capacity}, threshold={self.threshold}, "
            f"num_states={self.num_states})"
        )


def build_state_graph(
    capacity: int,
    threshold: int,
    arrival_rate: float,
    service_rate: float,
) -> StateGraph:
    if capacity < 1:
        raise InvalidStateGraphError(
            f"Capacity must be at least 1, got {capacity}."
        )
    if threshold < 0:
        raise InvalidStateGraphError(
            f"Threshold must be non-negative, got {threshold}."
        )
    if arrival_rate + service_rate <= 0.0:
        raise InvalidStateGraphError(
            "Arrival probability lambda / (lambda + mu) is undefined for "
            f"lambda = {arrival_rate}, mu = {service_rate}."
        )

    n = capacity
    num_states = n + max(threshold, 1)
    arrival_probability = arrival_rate / (arrival_rate + service_rate)

    up_probability = np.ones(num_states, dtype=np.float64)
    next_on_arrival = np.empty(num_states, dtype=np.int64)
    next_on_service = np.full(num_states, NO_TRANSITION, dtype=np.int64)
    kinds: list[StateKind] = ["empty"] + ["ordinary"] * (n - 1) + ["full"]

    next_on_arrival[0] = 1 if threshold <= 1 else n + 1

    occupied = np.arange(1, n + 1)
    up_probability[occupied] = arrival_probability
    next_on_arrival[occupied] = occupied + 1
    next_on_service[occupied] = occupied - 1
    next_on_arrival[n] = n

    # Startup chain: K-1 packets wait, the K-th arrival starts service.
    if threshold >= 2:
        buffering = np.arange(n + 1, n + threshold - 1)
        next_on_arrival[buffering] = buffering + 1
        kinds.extend(["buffering"] * buffering.size)
        next_on_arrival[n + threshold - 1] = min(threshold, n)
        kinds.append("service_init")

    return StateGraph(
        capacity=capacity,
        threshold=threshold,
        arrival_rate=arrival_rate,
        service_rate=service_rate,
        kinds=kinds,
        up_probability=up_probability,
        next_on_arrival=next_on_arrival,
        next_on_service=next_on_service,
    )


@runtime_checkable
class UniformDrawSource(Protocol):
    def random(self) -> float:
        ...


class GeneratorDrawSource:
    def __init__(
        self,
        rng: np.random.Generator,
        block_size: int = DEFAULT_DRAW_BLOCK_SIZE,
    ) -> None:
        _validate_positive_ints(("block_size", block_size))
        self._rng: Final = rng
        self._block_size: Final = block_size
        self._block: list[float] = []
        self._position = 0

    def random(self) -> float:
        if self._position >= len(self._block):
            self._block = self._rng.random(self._block_size).tolist()
            self._position = 0
        draw = self._block[self._position]
        self._position += 1
        return draw


class SequenceDrawSource:
    def __init__(self, draws: Iterable[float]) -> None:
        values = [float(draw) for draw in draws]
        if any(not 0.0 <= value < 1.0 for value in values):
            raise SimulationError("Uniform draws must lie in [0, 1).")
        self._draws: Final[list[float]] = values
        self._position = 0

    @property
    def consumed(self) -> int:
        return self._position

    def random(self) -> float:
        if self._position >= len(self._draws):
            raise SimulationError(
                f"Draw sequence exhausted after {len(self._draws)} draws."
            )
        draw = self._draws[self._position]
        self._position += 1
        return draw


def select_transition(
    up_probability: float,
    next_on_arrival: StateIndex,
    next_on_service: StateIndex,
    draw: float | None,
) -> tuple[StateIndex, bool]:
    if up_probability == 1.0:
        arrived = True
    elif draw is None:
        raise SimulationError(
            f"A uniform draw is required when the arrival probability is {up_probability}."
        )
    else:
        arrived = draw < up_probability

    target = next_on_arrival if arrived else next_on_service
    if target == NO_TRANSITION:
        raise InvalidStateGraphError(
            f"Chosen {'arrival' if arrived else 'service'} transition does not exist."
        )
    return target, arrived


class StochasticWalker:
    def __init__(self, graph: StateGraph, draws: UniformDrawSource) -> None:
        self._graph: Final = graph
        self._draws: Final = draws
        self._up_probability: Final[list[float]] = graph.up_probability.tolist()
        self._next_on_arrival: Final[list[int]] = graph.next_on_arrival.tolist()
        self._next_on_service: Final[list[int]] = graph.next_on_service.tolist()

    def _advance(self, cursor: StateIndex) -> tuple[StateIndex, bool]:
        up = self._up_probability[cursor]
        draw = None if up == 1.0 else self._draws.random()
        return select_transition(
            up,
            self._next_on_arrival[cursor],
            self._next_on_service[cursor],
            draw,
        )

    def step(self, cursor: StateIndex) -> StateIndex:
        next_index, _ = self.walk(cursor, 1)
        return next_index

    def walk(
        self, cursor: StateIndex, num_events: int
    ) -> tuple[StateIndex, int]:
        visits = [0] * self._graph.num_states
        arrivals = 0
        for _ in range(num_events):
            next_index, arrived = self._advance(cursor)
            if arrived:
                visits[cursor] += 1
                arrivals += 1
            cursor = next_index
        self._graph.generation_visits += np.asarray(visits, dtype=np.int64)
        return cursor, arrivals


@dataclass(frozen=True, eq=False)
class GenerationSnapshot:
    generation: int
    max_relative_change: float
    probabilities: NDArrayF64

    def __post_init__(self) -> None:
        frozen = np.array(self.probabilities, dtype=np.float64)
        frozen.setflags(write=False)
        object.__setattr__(self, "probabilities", frozen)


@runtime_checkable
class GenerationReporter(Protocol):
    def report(self, snapshot: GenerationSnapshot) -> None:
        ...


def virtual_convergence_time(
    total_arrivals: int, arrival_rate: float
) -> float | None:
    if arrival_rate <= 0.0:
        return None
    return total_arrivals / arrival_rate


@dataclass(frozen=True, eq=False)
class SimulationResult:
    generations: int
    events_simulated: int
    total_arrivals: int
    tolerance: float
    tolerance_achieved: float
    converged: bool
    probabilities: NDArrayF64
    history: tuple[ConvergencePoint, ...] = ()
    virtual_convergence_time: float | None = None

    def __post_init__(self) -> None:
        frozen = np.array(self.probabilities, dtype=np.float64)
        frozen.setflags(write=False)
        object.__setattr__(self, "probabilities", frozen)
        object.__setattr__(self, "history", tuple(self.history))


class ConvergenceMonitor:
    _SE = SimulationError

    def __init__(
        self,
        graph: StateGraph,
        config: SimulationConfig,
        draws: UniformDrawSource | None = None,
        reporter: GenerationReporter | None = None,
    ) -> None:
        if reporter is not None and not isinstance(
            reporter, GenerationReporter
        ):
            raise TypeError(
                f"Reporter {type(reporter).__name__} does not implement report(snapshot)."
            )
        if np.any(graph.total_visits) or np.any(graph.generation_visits):
            raise self._SE(
                "State graph counters are already in use. Build a fresh graph for every run."
            )

        self.graph = graph
        self.config = config
        self.reporter = reporter
        self._walker = StochasticWalker(
            graph,
            draws
            if draws is not None
            else GeneratorDrawSource(np.random.default_rng(config.SEED)),
        )

        self.generation = 0
        self.max_relative_change = math.inf
        self.history: list[ConvergencePoint] = []

        # The walk starts with one packet already admitted from the empty state.
        graph.total_visits[0] += 1
        self.total_arrivals = 1
        self.cursor: StateIndex = int(graph.next_on_arrival[0])

    @property
    def converged(self) -> bool:
        return self.max_relative_change < self.config.TOLERANCE

    def run_generation(self) -> int:
        self.cursor, arrivals = self._walker.walk(
            self.cursor, self.config.EVENTS_PER_GENERATION
        )
        return arrivals

    def settle_generation(self) -> float:
        graph = self.graph
        self.total_arrivals += int(graph.generation_visits.sum())
        graph.total_visits += graph.generation_visits
        graph.generation_visits[:] = 0

        visited = graph.total_visits > 0
        new_probability = graph.total_visits[visited] / self.total_arrivals
        previous = graph.last_probability[visited]
        relative_change = np.abs(new_probability - previous) / previous

        max_change = float(relative_change.max()) if relative_change.size else 0.0
        if not np.all(visited):
            max_change = max(max_change, self.config.TOLERANCE + 1.0)

        graph.last_probability[visited] = new_probability
        self.generation += 1
        self.max_relative_change = max_change
        self.history.append((self.generation, max_change))
        return max_change

    def snapshot(self) -> GenerationSnapshot:
        return GenerationSnapshot(
            generation=self.generation,
            max_relative_change=self.max_relative_change,
            probabilities=self.graph.probabilities,
        )

    def run(self) -> SimulationResult:
        while True:
            self.run_generation()
            self.settle_generation()
            if self.reporter is not None:
                self.reporter.report(self.snapshot())
            if self.converged or self.generation >= self.config.MAX_GENERATIONS:
                break
        return self.result()

    def result(self) -> SimulationResult:
        return SimulationResult(
            generations=self.generation,
            events_simulated=self.generation * self.config.EVENTS_PER_GENERATION,
            total_arrivals=self.total_arrivals,
            tolerance=self.config.TOLERANCE,
            tolerance_achieved=self.max_relative_change,
            converged=self.converged,
            probabilities=self.graph.probabilities,
            history=tuple(self.history),
            virtual_convergence_time=virtual_convergence_time(
                self.total_arrivals, self.graph.arrival_rate
            ),
        )


@dataclass(frozen=True)
class QueueStatistics:
    overflow_probability: float
    mean_occupancy: float
    throughput: float
    mean_sojourn_time: float | None

    @property
    def sojourn_time_defined(self) -> bool:
        return self.mean_sojourn_time is not None


def compute_queue_statistics(
    probabilities: NDArrayF64 | Sequence[float],
    capacity: int,
    threshold: int,
    arrival_rate: float,
) -> QueueStatistics:
    vector = np.asarray(probabilities, dtype=np.float64)
    expected_states = capacity + max(threshold, 1)
    if vector.shape != (expected_states,):
        raise SimulationError(
            f"Probability vector has shape {vector.shape}, expected ({expected_states},) "
            f"for capacity {capacity} and threshold {threshold}."
        )
    if np.any(~np.isfinite(vector)):
        raise SimulationError("Probability vector contains NaN or Inf values.")

    indices = np.arange(expected_states)
    packets = np.where(indices > capacity, indices - capacity, indices)
    mean_occupancy = float(packets @ vector)
    overflow_probability = float(vector[capacity])
    throughput = arrival_rate * (1.0 - overflow_probability)
    # Little's Law
    mean_sojourn_time = (
        mean_occupancy / throughput if throughput != 0.0 else None
    )

    return QueueStatistics(
        overflow_probability=overflow_probability,
        mean_occupancy=mean_occupancy,
        throughput=throughput,
        mean_sojourn_time=mean_sojourn_time,
    )


class ReportPrinter:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream)

    @staticmethod
    def _row(label: str, change: float, probabilities: NDArrayF64) -> str:
        cells = [label, f"{PERCENT * change:.3f}"] + [
            f"{PERCENT * p:.3f}" for p in probabilities
        ]
        return "\t".join(cells)

    def print_model_header(
        self, model: QueueModelConfig, simulation: SimulationConfig
    ) -> None:
        title = "QUEUEING SYSTEMS SIMULATION"
        self._print(f"{'=' * REPORT_WIDTH}\n{title:^{REPORT_WIDTH}}\n{'=' * REPORT_WIDTH}")
        self._print("\nModel:\n------")
        self._print("\tMarkovian A/V streaming server with threshold\n")
        self._print("Model parameters:\n-----------------")
        self._print(f"\tArrivals   : lambda = {model.ARRIVAL_RATE:.3f} packets/sec")
        self._print(f"\tService    : mu = {model.SERVICE_RATE:.3f} packets/sec")
        self._print(f"\tQueue limit: N = {model.CAPACITY} packets")
        self._print(f"\tThreshold  : K = {model.THRESHOLD} packets\n")
        self._print("Simulation parameters:\n----------------------")
        self._print(f"\tEvents per generation: {simulation.EVENTS_PER_GENERATION:,}")
        self._print(f"\tMax generations      : {simulation.MAX_GENERATIONS:,}")
        self._print(f"\tTolerance            : {PERCENT * simulation.TOLERANCE:.3f}%")
        self._print(f"\tVerbose mode         : {'ON' if simulation.VERBOSE else 'OFF'}")
        self._print(f"\tSeed                 : {simulation.SEED}\n")

    def print_table_header(self, model: QueueModelConfig) -> None:
        ordinary_labels = [f"P_o({i})" for i in range(model.CAPACITY + 1)]
        buffering_labels = [f"P_b({i})" for i in range(1, model.THRESHOLD)]
        self._print("Results:\n--------")
        self._print("Gen\tEps [%]\tErgodic probabilities [%]")
        self._print(
            "\t\tOrdinary states"
            + "\t" * model.CAPACITY
            + ("Buffering states" if buffering_labels else "")
        )
        self._print("\t\t" + "\t".join(ordinary_labels + buffering_labels))

    def report(self, snapshot: GenerationSnapshot) -> None:
        self._print(
            self._row(
                str(snapshot.generation),
                snapshot.max_relative_change,
                snapshot.probabilities,
            )
        )

    def print_final_report(
        self, result: SimulationResult, statistics: QueueStatistics
    ) -> None:
        self._print()
        self._print(
            self._row("Final", result.tolerance_achieved, result.probabilities)
        )
        self.print_simulation_statistics(result)
        self.print_model_statistics(statistics)

    def print_simulation_statistics(self, result: SimulationResult) -> None:
        tconv = result.virtual_convergence_time
        self._print("\nSimulation statistics:\n----------------------")
        self._print(f"\tGenerations simulated   : {result.generations:,}")
        self._print(f"\tEvents simulated        : {result.events_simulated:,}")
        self._print(f"\tTotal arrivals          : {result.total_arrivals:,} packets")
        self._print(f"\tVirtual convergence time: {_format_optional(tconv, ' sec')}")
        if tconv is not None:
            self._print(f"\t                          {tconv / 60:.3f} min")
            self._print(f"\t                          {tconv / 3600:.3f} h")
        self._print(
            f"\tResult tolerance        : {PERCENT * result.tolerance_achieved:.3f} %"
        )
        self._print(f"\tConverged               : {'YES' if result.converged else 'NO'}\n")

    def print_model_statistics(self, statistics: QueueStatistics) -> None:
        self._print("Model statistics:\n-----------------")
        self._print(
            f"\tOverflow probability: P_bl = {PERCENT * statistics.overflow_probability:.3f} %"
        )
        self._print(
            f"\tMean queue size     : E_N = {statistics.mean_occupancy:.3f} packets"
        )
        self._print(
            f"\tThroughput          : gamma = {statistics.throughput:.3f} packets/sec"
        )
        self._print(
            f"\tMean packet sojourn : T_d = {_format_optional(statistics.mean_sojourn_time, ' sec')}"
        )


class Visualizer:
    def __init__(self, config: VisConfig) -> None:
        self.config = config

    def _save_or_show(
        self,
        fig: matplotlib.figure.Figure,
        show_plot: bool,
        save_path: Path | None,
    ) -> None:
        try:
            if save_path:
                target_path = _ensure_output_dir(save_path)
                if target_path:
                    try:
                        fig.savefig(
                            target_path,
                            dpi=self.config.DPI,
                            bbox_inches="tight",
                        )
                    except (OSError, ValueError) as e:
                        print(
                            f"Warning: Failed to save plot to {target_path}: {e}",
                            file=sys.stderr,
                        )
                else:
                    print(
                        f"Warning: Plot not saved due to directory issue for path: {save_path}",
                        file=sys.stderr,
                    )

            if show_plot:
                plt.show()
        finally:
            plt.close(fig)

    def plot_convergence(
        self,
        result: SimulationResult,
        show_plot: bool = True,
        save_path: Path | None = None,
    ) -> None:
        if not result.history:
            print("Info: No generations recorded, skipping convergence plot.")
            return

        fig: matplotlib.figure.Figure | None = None
        try:
            generations, changes = zip(*result.history)
            fig, ax = plt.subplots(figsize=self.config.FIGSIZE)
            ax.plot(
                generations,
                PERCENT * np.asarray(changes),
                marker="o",
                markersize=3,
                label="Max relative change",
            )
            if result.tolerance > 0.0:
                ax.axhline(
                    PERCENT * result.tolerance,
                    color="red",
                    linestyle="--",
                    label=f"Tolerance ({PERCENT * result.tolerance:.3f}%)",
                )
            ax.set_yscale("log")
            ax.set_xlabel("Generation")
            ax.set_ylabel("Max relative change [%]")
            status = "converged" if result.converged else "not converged"
            ax.set_title(
                f"Convergence of ergodic probability estimates ({status})"
            )
            ax.grid(True, which="both", alpha=self.config.GRID_ALPHA)
            ax.legend()
            self._save_or_show(fig, show_plot, save_path)
        except (ValueError, RuntimeError) as e:
            if fig is not None:
                plt.close(fig)
            raise VisualizationError(
                f"Failed to plot convergence history: {e}"
            ) from e

    def plot_state_probabilities(
        self,
        result: SimulationResult,
        capacity: int,
        show_plot: bool = True,
        save_path: Path | None = None,
    ) -> None:
        num_states = result.probabilities.size
        if num_states == 0:
            print("Info: No probability data provided to plot.")
            return

        fig: matplotlib.figure.Figure | None = None
        try:
            fig, ax = plt.subplots(figsize=self.config.FIGSIZE)
            indices = np.arange(num_states)
            ordinary = indices <= capacity
            labels = [
                f"P_o({i})" if i <= capacity else f"P_b({i - capacity})"
                for i in indices
            ]
            ax.bar(
                indices[ordinary],
                PERCENT * result.probabilities[ordinary],
                color=self.config.ORDINARY_COLOR,
                alpha=self.config.BAR_ALPHA,
                label="Ordinary states",
            )
            if np.any(~ordinary):
                ax.bar(
                    indices[~ordinary],
                    PERCENT * result.probabilities[~ordinary],
                    color=self.config.BUFFERING_COLOR,
                    alpha=self.config.BAR_ALPHA,
                    label="Buffering states",
                )
            ax.set_xticks(indices)
            ax.set_xticklabels(labels, rotation=45, ha="right")
            ax.set_ylabel("Ergodic probability [%]")
            ax.set_title(
                f"Estimated ergodic probabilities after {result.generations:,} generations"
            )
            ax.grid(True, axis="y", alpha=self.config.GRID_ALPHA)
            ax.legend()
            self._save_or_show(fig, show_plot, save_path)
        except (ValueError, RuntimeError) as e:
            if fig is not None:
                plt.close(fig)
            raise VisualizationError(
                f"Failed to plot state probabilities: {e}"
            ) from e


class SimulationRunner:
    def __init__(
        self,
        model_config: QueueModelConfig | None = None,
        simulation_config: SimulationConfig | None = None,
        vis_config: VisConfig | None = None,
        output_dir: Path = DEFAULT_OUTPUT_DIR,
    ) -> None:
        try:
            self.q_cfg = model_config or QueueModelConfig()
            self.s_cfg = simulation_config or SimulationConfig()
            self.v_cfg = vis_config or VisConfig()
        except ConfigError as e:
            raise ConfigError(
                f"Configuration initialization failed: {e}"
            ) from e

        self.output_dir = output_dir
        self.printer = ReportPrinter()
        self.visualizer = Visualizer(self.v_cfg)
        self.result: SimulationResult | None = None
        self.statistics: QueueStatistics | None = None

    def _run_task(
        self,
        task_name: str,
        task_func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> bool:
        print(f"\n--- Running {task_name} ---")
        start_time = time.monotonic()
        success = False
        try:
            task_func(*args, **kwargs)
            success = True
        except (
            SimulationError,
            VisualizationError,
            ConfigError,
            OSError,
        ) as e:
            print(
                f"ERROR during {task_name}: {type(e).__name__}: {e}",
                file=sys.stderr,
            )
        except Exception as e:
            print(
                f"UNEXPECTED ERROR during {task_name}: {type(e).__name__}: {e}",
                file=sys.stderr,
            )
            traceback.print_exc(file=sys.stderr)
        finally:
            elapsed_time = time.monotonic() - start_time
            status = "OK" if success else "FAILED"
            print(
                f"--- {task_name} {status} (Duration: {elapsed_time:.2f}s) ---"
            )
        return success

    def run_simulation(self) -> bool:
        def task():
            graph = StateGraph.from_config(self.q_cfg)
            self.printer.print_model_header(self.q_cfg, self.s_cfg)
            self.printer.print_table_header(self.q_cfg)

            monitor = ConvergenceMonitor(
                graph,
                self.s_cfg,
                reporter=self.printer if self.s_cfg.VERBOSE else None,
            )
            result = monitor.run()
            statistics = compute_queue_statistics(
                result.probabilities,
                self.q_cfg.CAPACITY,
                self.q_cfg.THRESHOLD,
                self.q_cfg.ARRIVAL_RATE,
            )
            self.printer.print_final_report(result, statistics)

            if not result.converged:
                print(
                    f"Warning: Tolerance {PERCENT * self.s_cfg.TOLERANCE:.3f}% not reached "
                    f"after {result.generations:,} generations. Reported probabilities "
                    f"carry a relative change of {PERCENT * result.tolerance_achieved:.3f}%.",
                    file=sys.stderr,
                )
            if not statistics.sojourn_time_defined:
                print(
                    "Warning: Throughput is zero, mean sojourn time is undefined.",
                    file=sys.stderr,
                )
            self.result = result
            self.statistics = statistics

        return self._run_task("Threshold Queue Simulation", task)

    def plot_results(
        self, show_plots: bool = True, save_plots: bool = True
    ) -> bool:
        def task(show: bool, save: bool):
            if self.result is None:
                raise SimulationError(
                    "No simulation result available. Run the simulation first."
                )

            convergence_path = (
                self.output_dir / self.v_cfg.DEFAULT_CONVERGENCE_PLOT_FILENAME
                if save
                else None
            )
            probability_path = (
                self.output_dir / self.v_cfg.DEFAULT_PROBABILITY_PLOT_FILENAME
                if save
                else None
            )
            self.visualizer.plot_convergence(
                self.result, show_plot=show, save_path=convergence_path
            )
            self.visualizer.plot_state_probabilities(
                self.result,
                self.q_cfg.CAPACITY,
                show_plot=show,
                save_path=probability_path,
            )

            for description, path in (
                ("Convergence plot", convergence_path),
                ("Probability plot", probability_path),
            ):
                if path is None:
                    continue
                if path.exists():
                    print(f"{description} saved: {path.resolve()}")
                else:
                    print(
                        f"{description} FAILED to save to: {path.resolve()}",
                        file=sys.stderr,
                    )

        return self._run_task(
            "Result Visualization", task, show_plots, save_plots
        )

    def run_all(
        self,
        run_plots: bool = True,
        show_plots: bool = True,
        save_outputs: bool = True,
    ) -> bool:
        title = "Threshold Queue Ergodic Simulation Run"
        print(
            f"\n{'*' * REPORT_WIDTH}\n{title:^{REPORT_WIDTH}}\n{'*' * REPORT_WIDTH}"
        )
        overall_start_time = time.monotonic()
        task_results = [self.run_simulation()]

        if run_plots and task_results[0]:
            task_results.append(self.plot_results(show_plots, save_outputs))

        overall_elapsed_time = time.monotonic() - overall_start_time
        overall_success = all(task_results)

        print("\n--- Simulation Run Summary ---")
        print(f"Total execution time: {overall_elapsed_time:.2f} seconds.")
        status_message = (
            "All selected tasks completed successfully"
            if overall_success
            else "One or more tasks FAILED"
        )
        print(f"Overall status: {status_message}")
        print("*" * REPORT_WIDTH + "\n")

        return overall_success


def _parse_cli_parameters(
    args: Sequence[str], seed: int | None = None
) -> tuple[QueueModelConfig, SimulationConfig]:
    if len(args) != 8:
        raise ConfigError(
            f"Expected 8 positional parameters (N lambda mu K e maxg eps v), got {len(args)}."
        )
    try:
        capacity = max(1, int(args[0]))
        arrival_rate = max(0.0, float(args[1]))
        service_rate = max(0.0, float(args[2]))
        threshold = max(0, int(args[3]))
        events_per_gen = max(1, int(args[4]))
        max_gens = int(args[5])
        tolerance = max(0.0, float(args[6]) / PERCENT)
        verbose = int(args[7]) != 0
    except ValueError as e:
        raise ConfigError(f"Non-numeric simulation parameter: {e}") from e

    model_config = QueueModelConfig(
        CAPACITY=capacity,
        ARRIVAL_RATE=arrival_rate,
        SERVICE_RATE=service_rate,
        THRESHOLD=threshold,
    )
    simulation_kwargs: dict[str, Any] = dict(
        EVENTS_PER_GENERATION=events_per_gen,
        MAX_GENERATIONS=max_gens,
        TOLERANCE=tolerance,
        VERBOSE=verbose,
    )
    if seed is not None:
        simulation_kwargs["SEED"] = seed
    return model_config, SimulationConfig(**simulation_kwargs)


def main_simulation_runner(
    model_config: QueueModelConfig | None = None,
    simulation_config: SimulationConfig | None = None,
    plot: bool = False,
) -> int:
    plt.ioff()
    exit_code = 0

    try:
        runner = SimulationRunner(model_config, simulation_config)
        success = runner.run_all(
            run_plots=plot,
            show_plots=False,
            save_outputs=True,
        )
        exit_code = 0 if success else 1

    except ConfigError as e:
        print(
            f"\nCRITICAL CONFIGURATION ERROR: {e}\nAborting simulation.",
            file=sys.stderr,
        )
        exit_code = 2
    except Exception as e:
        print(
            f"\nCRITICAL UNHANDLED ERROR: {type(e).__name__}: {e}",
            file=sys.stderr,
        )
        traceback.print_exc(file=sys.stderr)
        exit_code = 3
    finally:
        plt.close("all")

    print(f"\nSimulation run finished. Exiting with code {exit_code}.")
    return exit_code


class _RecordingReporter:
    def __init__(self) -> None:
        self.snapshots: list[GenerationSnapshot] = []

    def report(self, snapshot: GenerationSnapshot) -> None:
        self.snapshots.append(snapshot)


class TestSimulationSuite(unittest.TestCase):
    test_output_dir: ClassVar[Path]
    run_id: ClassVar[str]
    test_vis_config: ClassVar[VisConfig]

    @classmethod
    def setUpClass(cls) -> None:
        cls.test_output_dir = DEFAULT_OUTPUT_DIR / "unit_tests"
        cls.test_output_dir.mkdir(parents=True, exist_ok=True)
        cls.run_id = uuid.uuid4().hex[:8]
        cls.test_vis_config = VisConfig(
            FIGSIZE=(4, 3),
            DPI=75,
            DEFAULT_CONVERGENCE_PLOT_FILENAME=f"test_convergence_{cls.run_id}.png",
            DEFAULT_PROBABILITY_PLOT_FILENAME=f"test_probabilities_{cls.run_id}.png",
        )

    @classmethod
    def tearDownClass(cls) -> None:
        try:
            if cls.test_output_dir.exists():
                for f in cls.test_output_dir.glob(f"*_{cls.run_id}.*"):
                    if f.is_file():
                        f.unlink()
                if not any(cls.test_output_dir.iterdir()):
                    cls.test_output_dir.rmdir()
        except OSError as e:
            print(
                f"[Test Cleanup] Warning: Error during file/directory cleanup: {e}",
                file=sys.stderr,
            )

    def _get_test_file_path(self, filename: str) -> Path:
        return self.test_output_dir / filename

    def _run(
        self,
        model: QueueModelConfig,
        simulation: SimulationConfig,
        draws: UniformDrawSource | None = None,
        reporter: GenerationReporter | None = None,
    ) -> tuple[StateGraph, SimulationResult]:
        graph = StateGraph.from_config(model)
        monitor = ConvergenceMonitor(graph, simulation, draws, reporter)
        return graph, monitor.run()

    def test_A01_default_configs_are_valid(self) -> None:
        try:
            q_cfg = QueueModelConfig()
            s_cfg = SimulationConfig()
            v_cfg = VisConfig()
            self.assertIsInstance(q_cfg, QueueModelConfig)
            self.assertIsInstance(s_cfg, SimulationConfig)
            self.assertIsInstance(v_cfg, VisConfig)
            self.assertEqual(q_cfg.num_states, 13)
        except ConfigError as e:
            self.fail(
                f"Default configuration initialization failed unexpectedly: {e}"
            )

    def test_A02_invalid_config_parameters_raise_error(self) -> None:
        with self.assertRaisesRegex(
            ConfigError, "positive integer", msg="Zero capacity"
        ):
            QueueModelConfig(CAPACITY=0)
        with self.assertRaisesRegex(
            ConfigError, "non-negative integer", msg="Negative threshold"
        ):
            QueueModelConfig(THRESHOLD=-1)
        with self.assertRaisesRegex(
            ConfigError, "non-negative number", msg="Negative arrival rate"
        ):
            QueueModelConfig(ARRIVAL_RATE=-1.0)
        with self.assertRaisesRegex(
            ConfigError, "undefined", msg="Zero total rate"
        ):
            QueueModelConfig(ARRIVAL_RATE=0.0, SERVICE_RATE=0.0)
        with self.assertRaisesRegex(
            ConfigError, "positive integer", msg="Zero events per generation"
        ):
            SimulationConfig(EVENTS_PER_GENERATION=0)
        with self.assertRaisesRegex(
            ConfigError, "non-negative number", msg="Negative tolerance"
        ):
            SimulationConfig(TOLERANCE=-0.1)
        with self.assertRaisesRegex(
            ConfigError, "event counter limit", msg="Event budget overflow"
        ):
            SimulationConfig(
                EVENTS_PER_GENERATION=100_000, MAX_GENERATIONS=100_000
            )
        with self.assertRaisesRegex(
            ConfigError, "positive integer", msg="Zero DPI"
        ):
            VisConfig(DPI=0)

    def test_A03_event_budget_at_counter_limit_is_accepted(self) -> None:
        events = 2**16
        config = SimulationConfig(
            EVENTS_PER_GENERATION=events,
            MAX_GENERATIONS=INT32_MAX // events,
        )
        self.assertLessEqual(config.max_events, INT32_MAX)

    def test_B01_state_graph_topology_matches_table(self) -> None:
        graph = build_state_graph(3, 3, 1.0, 3.0)
        self.assertEqual(graph.num_states, 6)
        self.assertEqual(
            graph.kinds,
            ("empty", "ordinary", "ordinary", "full", "buffering", "service_init"),
        )
        np.testing.assert_allclose(
            graph.up_probability, [1.0, 0.25, 0.25, 0.25, 1.0, 1.0]
        )
        np.testing.assert_array_equal(graph.next_on_arrival, [4, 2, 3, 3, 5, 3])
        np.testing.assert_array_equal(
            graph.next_on_service, [-1, 0, 1, 2, -1, -1]
        )
        np.testing.assert_array_equal(graph.last_probability, np.ones(6))
        self.assertEqual(int(graph.total_visits.sum()), 0)

    def test_B02_small_threshold_has_no_buffering_chain(self) -> None:
        for threshold in (0, 1):
            with self.subTest(threshold=threshold):
                graph = build_state_graph(2, threshold, 1.0, 1.0)
                self.assertEqual(graph.num_states, 3)
                self.assertEqual(graph.kinds, ("empty", "ordinary", "full"))
                np.testing.assert_array_equal(graph.next_on_arrival, [1, 2, 2])
                np.testing.assert_array_equal(graph.next_on_service, [-1, 0, 1])
                self.assertEqual(graph[2].up_probability, 0.5)
                self.assertTrue(graph[2].has_service_transition)

    def test_B03_rebuild_yields_identical_read_only_topology(self) -> None:
        first = build_state_graph(4, 3, 2.0, 3.0)
        second = build_state_graph(4, 3, 2.0, 3.0)
        for name in ("up_probability", "next_on_arrival", "next_on_service"):
            np.testing.assert_array_equal(
                getattr(first, name), getattr(second, name)
            )
        self.assertEqual(first.kinds, second.kinds)
        with self.assertRaises(ValueError):
            first.up_probability[1] = 0.9
        with self.assertRaises(ValueError):
            first.next_on_arrival[0] = 2

    def test_B04_service_init_target_limited_to_capacity(self) -> None:
        graph = build_state_graph(2, 4, 1.0, 1.0)
        self.assertEqual(graph.num_states, 6)
        np.testing.assert_array_equal(graph.next_on_arrival, [3, 2, 2, 4, 5, 2])
        self.assertEqual(graph[5].kind, "service_init")
        self.assertFalse(graph[5].has_service_transition)

    def test_B05_invalid_graph_parameters_raise_error(self) -> None:
        with self.assertRaisesRegex(InvalidStateGraphError, "at least 1"):
            build_state_graph(0, 1, 1.0, 1.0)
        with self.assertRaisesRegex(InvalidStateGraphError, "undefined"):
            build_state_graph(2, 1, 0.0, 0.0)
        with self.assertRaisesRegex(InvalidStateGraphError, "loop on arrival"):
            StateGraph(
                capacity=1,
                threshold=1,
                arrival_rate=1.0,
                service_rate=1.0,
                kinds=["empty", "full"],
                up_probability=np.array([1.0, 0.5]),
                next_on_arrival=np.array([1, 0]),
                next_on_service=np.array([-1, 0]),
            )

    def test_B06_state_view_indexing(self) -> None:
        graph = build_state_graph(2, 3, 1.0, 1.0)
        state = graph[0]
        self.assertIsInstance(state, State)
        self.assertEqual(state.kind, "empty")
        self.assertFalse(state.has_service_transition)
        self.assertEqual(state.next_on_arrival, 3)
        with self.assertRaises(IndexError):
            graph[graph.num_states]
        with self.assertRaises(TypeError):
            graph["0"]  # type: ignore[index]

    def test_C01_walker_skips_draw_for_certain_arrival(self) -> None:
        graph = build_state_graph(2, 3, 1.0, 1.0)
        draws = SequenceDrawSource([])
        walker = StochasticWalker(graph, draws)
        self.assertEqual(walker.step(0), 3)
        self.assertEqual(walker.step(3), 4)
        self.assertEqual(walker.step(4), 2)
        self.assertEqual(draws.consumed, 0)
        np.testing.assert_array_equal(graph.generation_visits, [1, 0, 0, 1, 1])

    def test_C02_walker_applies_draw_against_up_probability(self) -> None:
        graph = build_state_graph(3, 1, 1.0, 1.0)
        draws = SequenceDrawSource([0.2, 0.7])
        walker = StochasticWalker(graph, draws)
        self.assertEqual(walker.step(1), 2)
        self.assertEqual(walker.step(2), 1)
        self.assertEqual(draws.consumed, 2)
        np.testing.assert_array_equal(graph.generation_visits, [0, 1, 0, 0])
        with self.assertRaisesRegex(SimulationError, "exhausted"):
            walker.step(1)

    def test_C03_select_transition_rejects_missing_edges(self) -> None:
        self.assertEqual(select_transition(1.0, 4, NO_TRANSITION, None), (4, True))
        self.assertEqual(select_transition(0.5, 2, 0, 0.5), (0, False))
        with self.assertRaises(InvalidStateGraphError):
            select_transition(0.5, 2, NO_TRANSITION, 0.9)
        with self.assertRaisesRegex(SimulationError, "draw is required"):
            select_transition(0.5, 2, 0, None)

    def test_C04_replayed_draws_reproduce_counters(self) -> None:
        draws = np.random.default_rng(7).random(20_000).tolist()
        model = QueueModelConfig(
            CAPACITY=4, ARRIVAL_RATE=1.0, SERVICE_RATE=1.3, THRESHOLD=3
        )
        simulation = SimulationConfig(
            EVENTS_PER_GENERATION=1_000, MAX_GENERATIONS=10, TOLERANCE=0.0
        )
        graph_a, result_a = self._run(model, simulation, SequenceDrawSource(draws))
        graph_b, result_b = self._run(model, simulation, SequenceDrawSource(draws))

        self.assertEqual(result_a.generations, 10)
        self.assertEqual(result_a.total_arrivals, result_b.total_arrivals)
        np.testing.assert_array_equal(graph_a.total_visits, graph_b.total_visits)
        np.testing.assert_array_equal(
            result_a.probabilities, result_b.probabilities
        )
        self.assertEqual(result_a.history, result_b.history)

    def test_D01_symmetric_single_slot_converges_to_half(self) -> None:
        model = QueueModelConfig(
            CAPACITY=1, ARRIVAL_RATE=1.0, SERVICE_RATE=1.0, THRESHOLD=1
        )
        simulation = SimulationConfig(
            EVENTS_PER_GENERATION=5_000,
            MAX_GENERATIONS=100,
            TOLERANCE=0.001,
            SEED=2013,
        )
        _, result = self._run(model, simulation)
        self.assertEqual(result.probabilities.shape, (2,))
        self.assertAlmostEqual(result.probabilities[0], 0.5, delta=0.05)
        self.assertAlmostEqual(result.probabilities[1], 0.5, delta=0.05)
        self.assertAlmostEqual(float(result.probabilities.sum()), 1.0, places=9)

    def test_D02_probabilities_are_bounded_and_sum_to_one(self) -> None:
        reporter = _RecordingReporter()
        model = QueueModelConfig(
            CAPACITY=5, ARRIVAL_RATE=1.0, SERVICE_RATE=1.2, THRESHOLD=3
        )
        simulation = SimulationConfig(
            EVENTS_PER_GENERATION=2_000, MAX_GENERATIONS=30, SEED=11
        )
        _, result = self._run(model, simulation, reporter=reporter)

        self.assertEqual(len(reporter.snapshots), result.generations)
        self.assertEqual(
            [s.generation for s in reporter.snapshots],
            list(range(1, result.generations + 1)),
        )
        for snapshot in reporter.snapshots:
            self.assertTrue(np.all(snapshot.probabilities >= 0.0))
            self.assertTrue(np.all(snapshot.probabilities <= 1.0))
            self.assertAlmostEqual(
                float(snapshot.probabilities.sum()), 1.0, places=9
            )
        self.assertEqual(
            result.events_simulated,
            result.generations * simulation.EVENTS_PER_GENERATION,
        )

    def test_D03_counters_monotonic_and_reset(self) -> None:
        graph = build_state_graph(3, 2, 1.0, 1.0)
        monitor = ConvergenceMonitor(
            graph,
            SimulationConfig(EVENTS_PER_GENERATION=500, MAX_GENERATIONS=5, SEED=5),
        )
        self.assertEqual(monitor.total_arrivals, 1)
        self.assertEqual(monitor.cursor, graph[0].next_on_arrival)

        previous = graph.total_visits.copy()
        for _ in range(5):
            arrivals = monitor.run_generation()
            self.assertEqual(int(graph.generation_visits.sum()), arrivals)
            monitor.settle_generation()
            self.assertTrue(np.all(graph.total_visits >= previous))
            self.assertFalse(np.any(graph.generation_visits))
            self.assertEqual(int(graph.total_visits.sum()), monitor.total_arrivals)
            previous = graph.total_visits.copy()

    def test_D03a_relative_change_measured_against_previous_estimate(
        self,
    ) -> None:
        graph = build_state_graph(1, 1, 1.0, 1.0)
        monitor = ConvergenceMonitor(
            graph,
            SimulationConfig(
                EVENTS_PER_GENERATION=4, MAX_GENERATIONS=2, TOLERANCE=0.0
            ),
            draws=SequenceDrawSource([0.9, 0.1, 0.9, 0.1, 0.1, 0.9]),
        )

        self.assertEqual(monitor.run_generation(), 2)
        first_change = monitor.settle_generation()
        np.testing.assert_array_equal(graph.total_visits, [2, 1])
        self.assertEqual(monitor.total_arrivals, 3)
        self.assertAlmostEqual(first_change, 2 / 3)
        np.testing.assert_allclose(graph.last_probability, [2 / 3, 1 / 3])

        self.assertEqual(monitor.run_generation(), 3)
        second_change = monitor.settle_generation()
        np.testing.assert_array_equal(graph.total_visits, [3, 3])
        self.assertEqual(monitor.total_arrivals, 6)
        self.assertAlmostEqual(second_change, 0.5)
        self.assertEqual(monitor.history, [(1, first_change), (2, second_change)])

    def test_D03b_run_stops_early_once_tolerance_is_met(self) -> None:
        model = QueueModelConfig(
            CAPACITY=1, ARRIVAL_RATE=1.0, SERVICE_RATE=1.0, THRESHOLD=1
        )
        simulation = SimulationConfig(
            EVENTS_PER_GENERATION=20_000,
            MAX_GENERATIONS=50,
            TOLERANCE=0.01,
            SEED=2013,
        )
        _, result = self._run(model, simulation)
        self.assertTrue(result.converged)
        self.assertLess(result.generations, simulation.MAX_GENERATIONS)
        self.assertLess(result.tolerance_achieved, simulation.TOLERANCE)
        self.assertEqual(result.history[-1], (result.generations, result.tolerance_achieved))

    def test_D03c_change_equal_to_tolerance_keeps_running(self) -> None:
        model = QueueModelConfig(
            CAPACITY=1, ARRIVAL_RATE=1.0, SERVICE_RATE=1.0, THRESHOLD=1
        )
        draws = [0.9, 0.1, 0.9, 0.1, 0.1, 0.9]
        _, reference = self._run(
            model,
            SimulationConfig(
                EVENTS_PER_GENERATION=4, MAX_GENERATIONS=1, TOLERANCE=0.0
            ),
            SequenceDrawSource(draws),
        )
        first_change = reference.history[0][1]

        _, at_tolerance = self._run(
            model,
            SimulationConfig(
                EVENTS_PER_GENERATION=4, MAX_GENERATIONS=2, TOLERANCE=first_change
            ),
            SequenceDrawSource(draws),
        )
        self.assertEqual(at_tolerance.history[0], (1, first_change))
        self.assertEqual(at_tolerance.generations, 2)

        _, above_tolerance = self._run(
            model,
            SimulationConfig(
                EVENTS_PER_GENERATION=4,
                MAX_GENERATIONS=2,
                TOLERANCE=math.nextafter(first_change, math.inf),
            ),
            SequenceDrawSource(draws),
        )
        self.assertTrue(above_tolerance.converged)
        self.assertEqual(above_tolerance.generations, 1)

    def test_D04_no_arrivals_keep_mass_in_empty_state(self) -> None:
        model = QueueModelConfig(
            CAPACITY=3, ARRIVAL_RATE=0.0, SERVICE_RATE=1.0, THRESHOLD=1
        )
        simulation = SimulationConfig(
            EVENTS_PER_GENERATION=200, MAX_GENERATIONS=5, SEED=3
        )
        _, result = self._run(model, simulation)
        np.testing.assert_array_equal(result.probabilities, [1.0, 0.0, 0.0, 0.0])
        self.assertFalse(result.converged)
        self.assertEqual(result.generations, 5)
        self.assertIsNone(result.virtual_convergence_time)

        statistics = compute_queue_statistics(
            result.probabilities, model.CAPACITY, model.THRESHOLD, model.ARRIVAL_RATE
        )
        self.assertEqual(statistics.overflow_probability, 0.0)
        self.assertEqual(statistics.throughput, 0.0)
        self.assertIsNone(statistics.mean_sojourn_time)

    def test_D05_no_service_drives_mass_to_full_state(self) -> None:
        model = QueueModelConfig(
            CAPACITY=3, ARRIVAL_RATE=1.0, SERVICE_RATE=0.0, THRESHOLD=1
        )
        simulation = SimulationConfig(
            EVENTS_PER_GENERATION=1_000, MAX_GENERATIONS=5, TOLERANCE=0.01
        )
        draws = SequenceDrawSource([])
        graph, result = self._run(model, simulation, draws)

        self.assertEqual(draws.consumed, 0)
        self.assertEqual(result.total_arrivals, 5_001)
        np.testing.assert_array_equal(graph.total_visits, [1, 1, 1, 4_998])
        self.assertAlmostEqual(result.probabilities[3], 4_998 / 5_001)
        self.assertFalse(result.converged)
        self.assertAlmostEqual(result.virtual_convergence_time, 5_001.0)

    def test_D06_statistics_aggregation_formula(self) -> None:
        statistics = compute_queue_statistics(
            [0.1, 0.2, 0.3, 0.15, 0.25], capacity=2, threshold=3, arrival_rate=2.0
        )
        self.assertAlmostEqual(statistics.overflow_probability, 0.3)
        self.assertAlmostEqual(statistics.mean_occupancy, 1.45)
        self.assertAlmostEqual(statistics.throughput, 1.4)
        self.assertAlmostEqual(statistics.mean_sojourn_time, 1.45 / 1.4)
        self.assertTrue(statistics.sojourn_time_defined)

    def test_D07_undefined_metrics_are_reported_as_none(self) -> None:
        statistics = compute_queue_statistics(
            [0.0, 1.0], capacity=1, threshold=1, arrival_rate=1.0
        )
        self.assertEqual(statistics.throughput, 0.0)
        self.assertIsNone(statistics.mean_sojourn_time)
        self.assertIsNone(virtual_convergence_time(10, 0.0))
        self.assertEqual(virtual_convergence_time(10, 2.0), 5.0)
        with self.assertRaisesRegex(SimulationError, "shape"):
            compute_queue_statistics([0.5, 0.5], capacity=2, threshold=1, arrival_rate=1.0)

    def test_E01_snapshots_are_immutable(self) -> None:
        reporter = _RecordingReporter()
        self.assertIsInstance(reporter, GenerationReporter)
        self._run(
            QueueModelConfig(CAPACITY=2, THRESHOLD=2),
            SimulationConfig(EVENTS_PER_GENERATION=100, MAX_GENERATIONS=3, SEED=1),
            reporter=reporter,
        )
        snapshot = reporter.snapshots[0]
        with self.assertRaises(ValueError):
            snapshot.probabilities[0] = 0.5
        with self.assertRaises(dataclasses.FrozenInstanceError):
            snapshot.generation = 7  # type: ignore[misc]

    def test_E02_monitor_rejects_used_graph_and_bad_reporter(self) -> None:
        graph = build_state_graph(2, 1, 1.0, 1.0)
        simulation = SimulationConfig(
            EVENTS_PER_GENERATION=50, MAX_GENERATIONS=2, SEED=9
        )
        ConvergenceMonitor(graph, simulation).run()
        with self.assertRaisesRegex(SimulationError, "already in use"):
            ConvergenceMonitor(graph, simulation)
        with self.assertRaises(TypeError):
            ConvergenceMonitor(
                build_state_graph(2, 1, 1.0, 1.0), simulation, reporter=object()  # type: ignore[arg-type]
            )

    def test_E03_report_printer_writes_table_rows(self) -> None:
        stream = io.StringIO()
        printer = ReportPrinter(stream)
        printer.print_table_header(QueueModelConfig(CAPACITY=2, THRESHOLD=3))
        printer.report(
            GenerationSnapshot(
                generation=1,
                max_relative_change=0.5,
                probabilities=np.array([0.25, 0.25, 0.25, 0.125, 0.125]),
            )
        )
        output = stream.getvalue()
        self.assertIn("\t\tOrdinary states\t\tBuffering states\n", output)
        self.assertIn("P_o(0)", output)
        self.assertIn("P_o(2)", output)
        self.assertIn("P_b(2)", output)
        self.assertNotIn("P_b(3)", output)
        self.assertIn("1\t50.000\t25.000\t25.000\t25.000\t12.500\t12.500", output)

    def test_E04_report_printer_marks_undefined_values(self) -> None:
        stream = io.StringIO()
        printer = ReportPrinter(stream)
        printer.print_model_statistics(
            QueueStatistics(
                overflow_probability=0.0,
                mean_occupancy=0.0,
                throughput=0.0,
                mean_sojourn_time=None,
            )
        )
        self.assertIn("T_d = undefined", stream.getvalue())

    @unittest.mock.patch("matplotlib.pyplot.show")
    def test_F01_visualization_plot_saving_works(self, mock_plt_show) -> None:
        model = QueueModelConfig(CAPACITY=3, THRESHOLD=3)
        _, result = self._run(
            model,
            SimulationConfig(EVENTS_PER_GENERATION=500, MAX_GENERATIONS=5, SEED=4),
        )
        visualizer = Visualizer(self.test_vis_config)
        convergence_path = self._get_test_file_path(
            self.test_vis_config.DEFAULT_CONVERGENCE_PLOT_FILENAME
        )
        probability_path = self._get_test_file_path(
            self.test_vis_config.DEFAULT_PROBABILITY_PLOT_FILENAME
        )
        try:
            visualizer.plot_convergence(
                result, show_plot=False, save_path=convergence_path
            )
            visualizer.plot_state_probabilities(
                result, model.CAPACITY, show_plot=False, save_path=probability_path
            )
            for path in (convergence_path, probability_path):
                self.assertTrue(path.exists(), f"Plot file was not saved to {path}")
                with Image.open(path) as img:
                    self.assertEqual(img.format, "PNG")
                    self.assertGreater(img.size[0], 0)
        except VisualizationError as e:
            self.fail(f"Plot saving raised VisualizationError: {e}")
        finally:
            for path in (convergence_path, probability_path):
                if path.exists():
                    path.unlink()
        mock_plt_show.assert_not_called()

    @unittest.mock.patch("matplotlib.pyplot.show")
    @unittest.mock.patch("sys.stdout")
    def test_F02_visualization_handles_empty_results(
        self, mock_stdout, mock_plt_show
    ) -> None:
        visualizer = Visualizer(self.test_vis_config)
        empty_result = SimulationResult(
            generations=0,
            events_simulated=0,
            total_arrivals=1,
            tolerance=0.01,
            tolerance_achieved=math.inf,
            converged=False,
            probabilities=np.array([], dtype=np.float64),
        )
        try:
            visualizer.plot_convergence(empty_result, show_plot=False)
            visualizer.plot_state_probabilities(empty_result, 1, show_plot=False)
        except Exception as e:
            self.fail(
                f"Visualization failed unexpectedly with empty data: {type(e).__name__}: {e}"
            )

    @unittest.mock.patch("matplotlib.pyplot.show")
    @unittest.mock.patch("sys.stdout")
    @unittest.mock.patch("sys.stderr")
    def test_G01_simulation_runner_full_execution(
        self, mock_stderr, mock_stdout, mock_plt_show
    ) -> None:
        runner = SimulationRunner(
            QueueModelConfig(CAPACITY=4, ARRIVAL_RATE=1.0, SERVICE_RATE=2.0, THRESHOLD=2),
            SimulationConfig(
                EVENTS_PER_GENERATION=1_000, MAX_GENERATIONS=20, VERBOSE=True, SEED=21
            ),
            self.test_vis_config,
            output_dir=self.test_output_dir,
        )
        convergence_path = self._get_test_file_path(
            self.test_vis_config.DEFAULT_CONVERGENCE_PLOT_FILENAME
        )
        probability_path = self._get_test_file_path(
            self.test_vis_config.DEFAULT_PROBABILITY_PLOT_FILENAME
        )

        success = runner.run_all(run_plots=True, show_plots=False, save_outputs=True)

        self.assertTrue(success, "SimulationRunner.run_all reported failure.")
        self.assertIsNotNone(runner.result)
        self.assertIsNotNone(runner.statistics)
        self.assertTrue(convergence_path.exists())
        self.assertTrue(probability_path.exists())
        for path in (convergence_path, probability_path):
            if path.exists():
                path.unlink()

    @unittest.mock.patch("sys.stdout")
    @unittest.mock.patch("sys.stderr")
    def test_G02_plotting_without_result_fails_cleanly(
        self, mock_stderr, mock_stdout
    ) -> None:
        runner = SimulationRunner(vis_config=self.test_vis_config)
        self.assertFalse(runner.plot_results(show_plots=False, save_plots=False))

    def test_G03_cli_parameters_clamped_like_command_line(self) -> None:
        model, simulation = _parse_cli_parameters(
            ["0", "-1", "2", "-3", "0", "10", "50", "1"], seed=99
        )
        self.assertEqual(model.CAPACITY, 1)
        self.assertEqual(model.ARRIVAL_RATE, 0.0)
        self.assertEqual(model.SERVICE_RATE, 2.0)
        self.assertEqual(model.THRESHOLD, 0)
        self.assertEqual(simulation.EVENTS_PER_GENERATION, 1)
        self.assertEqual(simulation.MAX_GENERATIONS, 10)
        self.assertAlmostEqual(simulation.TOLERANCE, 0.5)
        self.assertTrue(simulation.VERBOSE)
        self.assertEqual(simulation.SEED, 99)

        with self.assertRaisesRegex(ConfigError, "event counter limit"):
            _parse_cli_parameters(["2", "1", "1", "1", "100000", "100000", "1", "0"])
        with self.assertRaisesRegex(ConfigError, "Non-numeric"):
            _parse_cli_parameters(["two", "1", "1", "1", "10", "10", "1", "0"])
        with self.assertRaisesRegex(ConfigError, "Expected 8"):
            _parse_cli_parameters(["2", "1"])

    @unittest.mock.patch("sys.stdout")
    @unittest.mock.patch("sys.stderr")
    def test_G04_main_exit_codes(self, mock_stderr, mock_stdout) -> None:
        self.assertEqual(main(["--help"]), 0)
        self.assertEqual(main(["1", "0", "0", "1", "10", "10", "1", "0"]), 2)
        self.assertEqual(main(["1", "2"]), 4)
        self.assertEqual(
            main(["2", "1", "1", "1", "200", "3", "1", "0", "--seed", "5"]), 0
        )


def run_tests(verbosity_level: int = 2) -> int:
    print("\n--- Running Unit Tests ---")
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromTestCase(TestSimulationSuite)
    runner = unittest.TextTestRunner(
        verbosity=verbosity_level, failfast=False, buffer=True
    )
    result = runner.run(suite)

    print("\n--- Unit Tests Complete ---")
    print(f"Total Tests Run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")
    print(f"Skipped: {len(result.skipped)}")

    return 0 if result.wasSuccessful() else 1


def display_help() -> None:
    try:
        script_name = Path(__file__).name
    except NameError:
        script_name = "threshold_queue_sim.py"

    help_text = f"""
Usage: python {script_name} <N> <lambda> <mu> <K> <e> <maxg> <eps> <v> [options]
       python {script_name} --test [-v N]
       python {script_name} --help

Threshold queue simulation: ergodic probabilities of a Markovian A/V
streaming server with a service initiation threshold, estimated by a
single random walk over the state chain.

Parameters:
  N      : System capacity [packets]
  lambda : Mean arrival rate [packets / sec]
  mu     : Mean queue service rate [packets / sec]
  K      : Service initiation threshold [packets]
  e      : Events per simulation generation
  maxg   : Maximum generations simulated (maxg x e must fit a 32-bit counter)
  eps    : Tolerance [%]
  v      : Verbose, print every generation (0|1)

Options:
  --seed S      : Seed the random number generator (default: time based).
  --plot        : Save convergence and probability plots as PNG files.
  --test [-v N] : Run the integrated unit test suite with verbosity N (0-2).
  --help, -h    : Display this help message and exit.

Notes:
  Convergence is a heuristic: the run stops once no state probability moved
  by more than eps (relative) between two generations, or after maxg
  generations. Results of an unconverged run are still reported.

Default Output Directory:
  Generated files are saved to: {DEFAULT_OUTPUT_DIR.resolve()}
"""
    print(help_text)


def _parse_test_verbosity(command_args: list[str]) -> int:
    if "-v" not in command_args:
        return 2
    v_index = command_args.index("-v")
    if v_index + 1 >= len(command_args):
        print(
            "Warning: Missing verbosity level after -v argument. Using default (2).",
            file=sys.stderr,
        )
        return 2
    level_str = command_args[v_index + 1]
    if not level_str.isdigit() or int(level_str) not in (0, 1, 2):
        print(
            "Warning: Invalid verbosity level specified after -v. Must be 0, 1, or 2. Using default (2).",
            file=sys.stderr,
        )
        return 2
    return int(level_str)


def main(command_args: list[str]) -> int:
    command_args = list(command_args)

    if "--test" in command_args:
        return run_tests(verbosity_level=_parse_test_verbosity(command_args))

    if "--help" in command_args or "-h" in command_args:
        display_help()
        return 0

    plot = "--plot" in command_args
    if plot:
        command_args.remove("--plot")

    seed: int | None = None
    if "--seed" in command_args:
        s_index = command_args.index("--seed")
        seed_args = command_args[s_index + 1 : s_index + 2]
        if not seed_args or not seed_args[0].isdigit():
            print(
                "Error: --seed requires a non-negative integer value.",
                file=sys.stderr,
            )
            display_help()
            return 4
        seed = int(seed_args[0])
        del command_args[s_index : s_index + 2]

    if len(command_args) != 8:
        print(
            f"Error: Unknown or invalid arguments provided: {' '.join(command_args)}",
            file=sys.stderr,
        )
        display_help()
        return 4

    try:
        model_config, simulation_config = _parse_cli_parameters(
            command_args, seed=seed
        )
    except ConfigError as e:
        print(
            f"\nCRITICAL CONFIGURATION ERROR: {e}\nAborting simulation.",
            file=sys.stderr,
        )
        return 2

    return main_simulation_runner(model_config, simulation_config, plot=plot)


def _console_entry() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(_console_entry())
