from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from app.api import deps
from app.lab.cost.baseline import BaselineManager
from app.lab.cost.tracker import CostTracker
from app.lab.entities import UserProgress
from app.lab.enums import ExperimentStatus
from app.lab.errors import ExperimentNotFoundError, LabError, LabErrorKind
from app.lab.experiments import ExperimentRepository
from app.lab.progress import ProgressTracker, recommend
from app.lab.service import LabService
from app.schemas.lab_schema import (
    AnalyzeTokensOut,
    AnalyzeTokensRequest,
    APICallRecordOut,
    APIKeyOut,
    ApiResponse,
    AwardBadgeRequest,
    BaselineComparisonRequest,
    BaselineOut,
    BreakEvenOut,
    BreakEvenRequest,
    CompareAtScaleRequest,
    CompareProvidersRequest,
    CompleteChallengeRequest,
    CostProjectionOut,
    CreateBaselineRequest,
    CreateExperimentRequest,
    CreateSessionRequest,
    ExecuteCallOut,
    ExecuteCallRequest,
    ExperimentOut,
    ExperimentSummaryOut,
    GatewayMetricsOut,
    OptimizationContextIn,
    OptimizationResultOut,
    ProjectionRequest,
    ProviderComparisonOut,
    RotateKeyRequest,
    ScaleAnalysisOut,
    ScaleComparisonOut,
    ScaleReportOut,
    ScaleReportRequest,
    ScaleRequest,
    SessionMetricsOut,
    SessionSnapshotOut,
    SimulationRequest,
    SimulationResultOut,
    StoreKeyRequest,
    StrategyOut,
    StrategyRankingOut,
    SweepOut,
    TCOOut,
    TCORequest,
    TokenChartOut,
    UpdateExperimentStatusRequest,
    UpdateSkillLevelRequest,
    UserProgressOut,
)


router = APIRouter()

# 错误类别 -> HTTP 状态码（必须覆盖全部 LabErrorKind）
LAB_ERROR_STATUS: dict[LabErrorKind, int] = {
    LabErrorKind.session_not_found: 404,
    LabErrorKind.resource_limit: 429,
    LabErrorKind.provider_unavailable: 503,
    LabErrorKind.provider_error: 502,
    LabErrorKind.key_error: 403,
}


@contextmanager
def lab_errors() -> Iterator[None]:
    try:
        yield
    except LabError as exc:
        logger.info(f"[LabAPI] 业务错误: kind={exc.kind.value}, message={exc.message}")
        raise HTTPException(status_code=LAB_ERROR_STATUS[exc.kind], detail=exc.to_dict()) from exc
    except ExperimentNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Experiment not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/health")
def health() -> dict:
    return {
        "status": "healthy",
        "module": "api-cost-optimization-lab",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ==========================
# 沙箱会话
# ==========================
@router.post("/sessions", status_code=201, response_model=ApiResponse[SessionSnapshotOut])
def create_session(
    req: CreateSessionRequest,
    service: LabService = Depends(deps.get_lab_service),
    repo: ExperimentRepository = Depends(deps.get_experiment_repository),
) -> ApiResponse[SessionSnapshotOut]:
    with lab_errors():
        snapshot = service.create_session(
            req.user_id,
            req.provider,
            experiment_id=req.experiment_id,
            isolation_level=req.isolation_level,
            api_key_id=req.api_key_id,
            api_key=req.api_key,
            use_shared_key=req.use_shared_key,
            experiments=repo,
        )
    return ApiResponse(data=SessionSnapshotOut.model_validate(snapshot))


@router.post("/sessions/sweep", response_model=ApiResponse[SweepOut])
def sweep_sessions(service: LabService = Depends(deps.get_lab_service)) -> ApiResponse[SweepOut]:
    purged = service.sweep_sessions()
    return ApiResponse(data=SweepOut(purged=purged, remaining=len(service.sandbox)))


@router.get("/sessions/{session_id}", response_model=ApiResponse[SessionMetricsOut])
def get_session_metrics(
    session_id: str,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[SessionMetricsOut]:
    with lab_errors():
        metrics = service.get_session_metrics(session_id)
    return ApiResponse(data=SessionMetricsOut.model_validate(metrics))


@router.delete("/sessions/{session_id}", response_model=ApiResponse[dict])
def terminate_session(
    session_id: str,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[dict]:
    with lab_errors():
        service.terminate_session(session_id)
    return ApiResponse(data={"sessionId": session_id, "terminated": True})


@router.post("/sessions/{session_id}/execute", response_model=ApiResponse[ExecuteCallOut])
async def execute_api_call(
    session_id: str,
    req: ExecuteCallRequest,
    service: LabService = Depends(deps.get_lab_service),
    tracker: CostTracker = Depends(deps.get_cost_tracker),
) -> ApiResponse[ExecuteCallOut]:
    with lab_errors():
        result = await service.execute_api_call(
            session_id,
            model=req.model,
            prompt=req.prompt,
            parameters=req.parameters,
            metadata=req.metadata,
            tracker=tracker,
        )
    return ApiResponse(data=ExecuteCallOut.model_validate(result))


@router.get("/gateway/metrics", response_model=ApiResponse[GatewayMetricsOut])
def gateway_metrics(service: LabService = Depends(deps.get_lab_service)) -> ApiResponse[GatewayMetricsOut]:
    return ApiResponse(data=GatewayMetricsOut.model_validate(service.gateway.get_metrics_snapshot()))


# ==========================
# 实验 / 计费 / 基线
# ==========================
@router.post("/experiments", status_code=201, response_model=ApiResponse[ExperimentOut])
def create_experiment(
    req: CreateExperimentRequest,
    repo: ExperimentRepository = Depends(deps.get_experiment_repository),
) -> ApiResponse[ExperimentOut]:
    with lab_errors():
        experiment = repo.create_experiment(req.user_id, req.name, req.description)
    return ApiResponse(data=ExperimentOut.model_validate(experiment))


@router.get("/experiments/{experiment_id}", response_model=ApiResponse[ExperimentOut])
def get_experiment(
    experiment_id: str,
    repo: ExperimentRepository = Depends(deps.get_experiment_repository),
) -> ApiResponse[ExperimentOut]:
    experiment = repo.get_experiment(experiment_id)
    if experiment is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return ApiResponse(data=ExperimentOut.model_validate(experiment))


@router.patch("/experiments/{experiment_id}/status", response_model=ApiResponse[ExperimentOut])
def update_experiment_status(
    experiment_id: str,
    req: UpdateExperimentStatusRequest,
    repo: ExperimentRepository = Depends(deps.get_experiment_repository),
    progress: ProgressTracker = Depends(deps.get_progress_tracker),
) -> ApiResponse[ExperimentOut]:
    previous = repo.get_experiment(experiment_id)
    if previous is None:
        raise HTTPException(status_code=404, detail="Experiment not found")

    experiment = repo.update_status(experiment_id, req.status)
    if experiment.status == ExperimentStatus.completed and previous.status != ExperimentStatus.completed:
        progress.update_experiment_completed(experiment.user_id, req.cost_savings)
    return ApiResponse(data=ExperimentOut.model_validate(experiment))


@router.get("/experiments/{experiment_id}/summary", response_model=ApiResponse[ExperimentSummaryOut])
def get_experiment_summary(
    experiment_id: str,
    tracker: CostTracker = Depends(deps.get_cost_tracker),
) -> ApiResponse[ExperimentSummaryOut]:
    summary = tracker.get_experiment_summary(experiment_id)
    return ApiResponse(data=ExperimentSummaryOut.model_validate(summary))


@router.get("/experiments/{experiment_id}/calls", response_model=ApiResponse[List[APICallRecordOut]])
def get_recent_calls(
    experiment_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    tracker: CostTracker = Depends(deps.get_cost_tracker),
) -> ApiResponse[List[APICallRecordOut]]:
    calls = tracker.get_recent_calls(experiment_id, limit=limit)
    return ApiResponse(data=[APICallRecordOut.model_validate(c) for c in calls])


@router.post(
    "/experiments/{experiment_id}/baselines",
    status_code=201,
    response_model=ApiResponse[BaselineOut],
)
def create_baseline(
    experiment_id: str,
    req: CreateBaselineRequest,
    manager: BaselineManager = Depends(deps.get_baseline_manager),
) -> ApiResponse[BaselineOut]:
    with lab_errors():
        baseline = manager.create_baseline(
            experiment_id,
            [c.to_entity() for c in req.calls],
            scenario=req.scenario,
        )
    return ApiResponse(data=BaselineOut.model_validate(baseline))


@router.get("/experiments/{experiment_id}/baselines", response_model=ApiResponse[List[BaselineOut]])
def list_baselines(
    experiment_id: str,
    manager: BaselineManager = Depends(deps.get_baseline_manager),
) -> ApiResponse[List[BaselineOut]]:
    baselines = manager.list_baselines(experiment_id)
    return ApiResponse(data=[BaselineOut.model_validate(b) for b in baselines])


@router.get("/experiments/{experiment_id}/baselines/{scenario}", response_model=ApiResponse[BaselineOut])
def get_baseline(
    experiment_id: str,
    scenario: str,
    manager: BaselineManager = Depends(deps.get_baseline_manager),
) -> ApiResponse[BaselineOut]:
    with lab_errors():
        baseline = manager.get_baseline(experiment_id, scenario)
    if baseline is None:
        raise HTTPException(status_code=404, detail="Baseline not found")
    return ApiResponse(data=BaselineOut.model_validate(baseline))


# ==========================
# Token 分析与优化策略
# ==========================
@router.post("/analyze/tokens", response_model=ApiResponse[AnalyzeTokensOut])
def analyze_tokens(
    req: AnalyzeTokensRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[AnalyzeTokensOut]:
    with lab_errors():
        report = service.analyze_calls([c.to_entity() for c in req.calls])
    return ApiResponse(data=AnalyzeTokensOut.model_validate(report))


@router.post("/visualizations/comparison", response_model=ApiResponse[TokenChartOut])
def baseline_comparison(
    req: BaselineComparisonRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[TokenChartOut]:
    chart = service.visualizer.generate_baseline_comparison(req.baseline.to_entity(), req.optimized.to_entity())
    return ApiResponse(data=TokenChartOut.model_validate(chart))


@router.get("/strategies", response_model=ApiResponse[List[StrategyOut]])
def list_strategies(service: LabService = Depends(deps.get_lab_service)) -> ApiResponse[List[StrategyOut]]:
    return ApiResponse(data=[StrategyOut.model_validate(s) for s in service.registry.get_all()])


@router.post("/strategies/rank", response_model=ApiResponse[List[StrategyRankingOut]])
def rank_strategies(
    req: OptimizationContextIn,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[List[StrategyRankingOut]]:
    with lab_errors():
        rankings = service.rank_strategies(req.to_entity())
    return ApiResponse(
        data=[
            StrategyRankingOut(
                name=r.strategy.name,
                category=r.strategy.category,
                estimated_savings=r.estimated_savings,
                priority=r.priority,
            )
            for r in rankings
        ]
    )


@router.post("/strategies/{strategy_name}/apply", response_model=ApiResponse[OptimizationResultOut])
def apply_strategy(
    strategy_name: str,
    req: OptimizationContextIn,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[OptimizationResultOut]:
    with lab_errors():
        result = service.apply_strategy(strategy_name, req.to_entity())
    if result is None:
        raise HTTPException(status_code=404, detail="Strategy not found")
    return ApiResponse(data=OptimizationResultOut.model_validate(result))


# ==========================
# 用量模拟与规模分析
# ==========================
@router.post("/simulations", response_model=ApiResponse[SimulationResultOut])
def run_simulation(
    req: SimulationRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[SimulationResultOut]:
    with lab_errors():
        result = service.simulator.simulate(req.to_config())
    return ApiResponse(data=SimulationResultOut.model_validate(result))


@router.post("/simulations/projections", response_model=ApiResponse[List[CostProjectionOut]])
def project_costs(
    req: ProjectionRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[List[CostProjectionOut]]:
    with lab_errors():
        result = service.simulator.simulate(req.simulation.to_config())
        projections = service.projector.project_multiple(result, req.periods, req.options.to_entity())
    return ApiResponse(data=[CostProjectionOut.model_validate(p) for p in projections])


@router.post("/scale-analysis", response_model=ApiResponse[List[ScaleAnalysisOut]])
def calculate_scale(
    req: ScaleRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[List[ScaleAnalysisOut]]:
    with lab_errors():
        analyses = service.scale_calculator.calculate_multiple_scales(
            req.scales, req.requests_per_user_per_day, req.cost_per_request
        )
    return ApiResponse(data=[ScaleAnalysisOut.model_validate(a) for a in analyses])


@router.post("/scale-analysis/report", response_model=ApiResponse[ScaleReportOut])
def scale_report(
    req: ScaleReportRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[ScaleReportOut]:
    with lab_errors():
        report = service.scale_calculator.generate_scale_report(
            req.current_users, req.requests_per_user_per_day, req.cost_per_request
        )
    return ApiResponse(data=ScaleReportOut.model_validate(report))


@router.post("/scale-analysis/break-even", response_model=ApiResponse[BreakEvenOut])
def break_even(
    req: BreakEvenRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[BreakEvenOut]:
    users = service.scale_calculator.find_break_even_scale(
        req.fixed_costs, req.revenue_per_user, req.requests_per_user_per_day, req.cost_per_request
    )
    return ApiResponse(data=BreakEvenOut(break_even_users=users))


# ==========================
# API Key
# ==========================
@router.post("/keys", status_code=201, response_model=ApiResponse[APIKeyOut])
def store_key(
    req: StoreKeyRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[APIKeyOut]:
    with lab_errors():
        record = service.key_manager.store_key(req.user_id, req.provider, req.key, alias=req.alias)
    return ApiResponse(data=APIKeyOut.model_validate(record))


@router.get("/keys", response_model=ApiResponse[List[APIKeyOut]])
def list_keys(
    user_id: str = Query(..., alias="userId"),
    include_shared: bool = Query(default=True, alias="includeShared"),
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[List[APIKeyOut]]:
    records = service.key_manager.list_keys(user_id, include_shared=include_shared)
    return ApiResponse(data=[APIKeyOut.model_validate(r) for r in records])


@router.post("/keys/{key_id}/rotate", response_model=ApiResponse[APIKeyOut])
def rotate_key(
    key_id: str,
    req: RotateKeyRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[APIKeyOut]:
    with lab_errors():
        record = service.key_manager.rotate_key(key_id, req.key, req.user_id)
    return ApiResponse(data=APIKeyOut.model_validate(record))


# ==========================
# 供应商对比
# ==========================
@router.post("/providers/compare", response_model=ApiResponse[ProviderComparisonOut])
async def compare_providers(
    req: CompareProvidersRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[ProviderComparisonOut]:
    with lab_errors():
        targets = [
            service.comparison_target(
                req.user_id,
                item.provider,
                item.model,
                api_key=item.api_key,
                api_key_id=item.api_key_id,
                use_shared_key=item.use_shared_key,
            )
            for item in req.providers
        ]
        result = await service.compare_providers(req.prompt, targets, req.parameters)
    return ApiResponse(data=ProviderComparisonOut.model_validate(result))


@router.post("/providers/tco", response_model=ApiResponse[TCOOut])
def calculate_tco(
    req: TCORequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[TCOOut]:
    with lab_errors():
        tco = service.comparison.calculate_tco(
            req.provider, req.model, req.requests_per_month, req.average_cost_per_request
        )
    return ApiResponse(data=TCOOut.model_validate(tco))


@router.post("/providers/compare-at-scale", response_model=ApiResponse[List[ScaleComparisonOut]])
def compare_at_scale(
    req: CompareAtScaleRequest,
    service: LabService = Depends(deps.get_lab_service),
) -> ApiResponse[List[ScaleComparisonOut]]:
    with lab_errors():
        comparisons = service.comparison.compare_at_scale([p.to_entity() for p in req.providers], req.scales)
    return ApiResponse(data=[ScaleComparisonOut.model_validate(c) for c in comparisons])


# ==========================
# 学习进度
# ==========================
def _progress_out(progress: UserProgress) -> UserProgressOut:
    return UserProgressOut.model_validate(progress).model_copy(update={"recommendations": recommend(progress)})


@router.get("/progress/{user_id}", response_model=ApiResponse[UserProgressOut])
def get_progress(
    user_id: str,
    tracker: ProgressTracker = Depends(deps.get_progress_tracker),
) -> ApiResponse[UserProgressOut]:
    return ApiResponse(data=_progress_out(tracker.get_progress(user_id)))


@router.post("/progress/{user_id}/badges", response_model=ApiResponse[UserProgressOut])
def award_badge(
    user_id: str,
    req: AwardBadgeRequest,
    tracker: ProgressTracker = Depends(deps.get_progress_tracker),
) -> ApiResponse[UserProgressOut]:
    return ApiResponse(data=_progress_out(tracker.award_badge(user_id, req.badge_id)))


@router.post("/progress/{user_id}/challenges", response_model=ApiResponse[UserProgressOut])
def complete_challenge(
    user_id: str,
    req: CompleteChallengeRequest,
    tracker: ProgressTracker = Depends(deps.get_progress_tracker),
) -> ApiResponse[UserProgressOut]:
    return ApiResponse(data=_progress_out(tracker.complete_challenge(user_id, req.challenge_id)))


@router.put("/progress/{user_id}/skill-level", response_model=ApiResponse[UserProgressOut])
def update_skill_level(
    user_id: str,
    req: UpdateSkillLevelRequest,
    tracker: ProgressTracker = Depends(deps.get_progress_tracker),
) -> ApiResponse[UserProgressOut]:
    with lab_errors():
        progress = tracker.update_skill_level(user_id, req.level)
    return ApiResponse(data=_progress_out(progress))
