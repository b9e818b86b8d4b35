from app.lab.cost.baseline import BaselineManager
from app.lab.cost.pricing import calculate_cost
from app.lab.cost.suggester import OptimizationSuggester, OptimizationSuggestion
from app.lab.cost.token_analyzer import TokenAnalysisResult, TokenAnalyzer
from app.lab.cost.tracker import CostTracker, ExperimentCostSummary
from app.lab.cost.visualizer import TokenVisualizer

__all__ = [
    "BaselineManager",
    "CostTracker",
    "ExperimentCostSummary",
    "OptimizationSuggester",
    "OptimizationSuggestion",
    "TokenAnalysisResult",
    "TokenAnalyzer",
    "TokenVisualizer",
    "calculate_cost",
]
