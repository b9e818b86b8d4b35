"""
API 成本优化实验室

沙箱会话、计费、Token 分析、优化策略与用量模拟。

注意：这里不做“强导入”，`app.core.config` 依赖 `app.lab.entities`，
在包入口导入服务层会造成循环导入。
"""

from __future__ import annotations

from typing import Any

__all__ = ["LabService", "SandboxManager", "CostTracker", "TokenAnalyzer", "StrategyRegistry"]


_LAZY_IMPORTS = {
    "LabService": (".service", "LabService"),
    "SandboxManager": (".sandbox.manager", "SandboxManager"),
    "CostTracker": (".cost.tracker", "CostTracker"),
    "TokenAnalyzer": (".cost.token_analyzer", "TokenAnalyzer"),
    "StrategyRegistry": (".optimization.registry", "StrategyRegistry"),
}


def __getattr__(name: str) -> Any:
    if name not in _LAZY_IMPORTS:
        raise AttributeError(name)
    module_path, attr = _LAZY_IMPORTS[name]
    from importlib import import_module

    module = import_module(module_path, __name__)
    return getattr(module, attr)
