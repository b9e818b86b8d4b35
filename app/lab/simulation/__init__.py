from app.lab.simulation.projector import CostProjection, CostProjector, ProjectionOptions
from app.lab.simulation.scale import ScaleAnalysis, ScaleCalculator, ScaleReport
from app.lab.simulation.simulator import (
    SimulationConfig,
    SimulationResult,
    UsageScenario,
    UsageSimulator,
)

__all__ = [
    "CostProjection",
    "CostProjector",
    "ProjectionOptions",
    "ScaleAnalysis",
    "ScaleCalculator",
    "ScaleReport",
    "SimulationConfig",
    "SimulationResult",
    "UsageScenario",
    "UsageSimulator",
]
