from __future__ import annotations

import asyncio
import unittest
from dataclasses import replace
from datetime import datetime, timezone

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.lab.cost.tracker import CostTracker
from app.lab.db import SqlAlchemyQueryable
from app.lab.entities import APICallRecord, ResourceLimits
from app.lab.enums import IsolationLevel, Provider
from app.lab.errors import (
    APIKeyError,
    ExperimentNotFoundError,
    LabErrorKind,
    ProviderUnavailableError,
    ResourceLimitError,
    SessionNotFoundError,
)
from app.lab.experiments import ExperimentRepository
from app.lab.optimization import OptimizationContext
from app.lab.service import build_lab_service
from app.models.lab import LAB_TABLES


KEY_HEX = "11" * 32
OPENAI_PAYLOAD = {
    "choices": [{"message": {"role": "assistant", "content": "cached answer"}}],
    "usage": {"prompt_tokens": 750, "completion_tokens": 250},
}


class _OpenAIStub:
    def __init__(self) -> None:
        self.authorizations: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.authorizations.append(request.headers.get("Authorization", ""))
        return httpx.Response(200, json=OPENAI_PAYLOAD)


class _FailingTracker:
    def record_call(self, **kwargs):
        raise RuntimeError("insert failed")


class LabServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.stub = _OpenAIStub()
        self.service = build_lab_service(
            resource_limits=ResourceLimits(
                max_concurrent_sessions=3,
                max_calls_per_session=2,
                max_tokens_per_session=200_000,
                max_session_duration_ms=60_000,
            ),
            encryption_key_hex=KEY_HEX,
            transport=httpx.MockTransport(self.stub),
        )

    def _run_async(self, awaitable):
        return asyncio.run(awaitable)

    def _execute(self, session_id: str, **kwargs):
        return self._run_async(
            self.service.execute_api_call(session_id, model="gpt-4o-mini", prompt="Explain caching.", **kwargs)
        )

    def test_execute_with_inline_key(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai, api_key="sk-inline")
        result = self._execute(snapshot.id)

        self.assertEqual(self.stub.authorizations, ["Bearer sk-inline"])
        self.assertEqual(result.response.content, "cached answer")
        self.assertEqual(result.metrics.total_calls, 1)
        self.assertAlmostEqual(result.metrics.total_cost, 0.2625, places=6)
        self.assertIsNone(result.record)

    def test_execute_with_stored_key(self) -> None:
        record = self.service.key_manager.store_key("u1", Provider.openai, "sk-stored")
        snapshot = self.service.create_session("u1", Provider.openai, api_key_id=record.id)
        self._execute(snapshot.id)
        self.assertEqual(self.stub.authorizations, ["Bearer sk-stored"])

    def test_stored_key_of_other_user_is_rejected(self) -> None:
        record = self.service.key_manager.store_key("u2", Provider.openai, "sk-other")
        snapshot = self.service.create_session("u1", Provider.openai, api_key_id=record.id)
        with self.assertRaises(APIKeyError):
            self._execute(snapshot.id)
        self.assertEqual(self.stub.authorizations, [])

    def test_shared_key(self) -> None:
        service = build_lab_service(
            encryption_key_hex=KEY_HEX,
            shared_openai_key="sk-shared",
            transport=httpx.MockTransport(self.stub),
        )
        snapshot = service.create_session("u1", Provider.openai, use_shared_key=True)
        self._run_async(service.execute_api_call(snapshot.id, model="gpt-4o-mini", prompt="hi"))
        self.assertEqual(self.stub.authorizations, ["Bearer sk-shared"])

    def test_shared_key_missing(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai, use_shared_key=True)
        with self.assertRaises(ProviderUnavailableError) as ctx:
            self._execute(snapshot.id)
        self.assertEqual(ctx.exception.kind, LabErrorKind.provider_unavailable)
        self.assertEqual(ctx.exception.details, {"provider": "openai"})
        self.assertEqual(self.stub.authorizations, [])

    def test_session_without_key(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai)
        with self.assertRaises(ProviderUnavailableError) as ctx:
            self._execute(snapshot.id)
        self.assertEqual(ctx.exception.kind, LabErrorKind.provider_unavailable)
        self.assertEqual(self.stub.authorizations, [])

    def test_call_limit_is_checked_before_provider_call(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai, api_key="sk-inline")
        self._execute(snapshot.id)
        self._execute(snapshot.id)

        with self.assertRaises(ResourceLimitError):
            self._execute(snapshot.id)
        self.assertEqual(len(self.stub.authorizations), 2)
        self.assertTrue(self.service.get_session_metrics(snapshot.id).resource_limit_breached)

    def test_experiment_isolation_requires_experiment_id(self) -> None:
        with self.assertRaises(ValueError):
            self.service.create_session("u1", Provider.openai, isolation_level=IsolationLevel.experiment)

    def test_terminate_and_sweep(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai, api_key="sk-inline")
        self.service.terminate_session(snapshot.id)
        with self.assertRaises(SessionNotFoundError):
            self.service.get_session_metrics(snapshot.id)

        self.service.create_session("u1", Provider.openai)
        self.assertEqual(self.service.sweep_sessions(datetime(2999, 1, 1, tzinfo=timezone.utc)), 1)
        self.assertEqual(len(self.service.sandbox), 0)

    def test_gateway_metrics_follow_calls(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai, api_key="sk-inline")
        self._execute(snapshot.id)
        metrics = self.service.gateway.get_metrics_snapshot()
        self.assertEqual(metrics.total_requests, 1)

    def test_failed_record_leaves_session_untouched(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai, experiment_id="exp-x", api_key="sk-inline")
        with self.assertRaises(RuntimeError):
            self._execute(snapshot.id, tracker=_FailingTracker())

        metrics = self.service.get_session_metrics(snapshot.id)
        self.assertEqual(metrics.total_calls, 0)
        self.assertEqual(metrics.total_tokens, 0)
        self.assertEqual(metrics.total_cost, 0)

    def test_successful_call_feeds_response_cache(self) -> None:
        snapshot = self.service.create_session("u1", Provider.openai, api_key="sk-inline")
        self._execute(snapshot.id)

        context = OptimizationContext(
            experiment_id="",
            session_id=snapshot.id,
            provider="openai",
            model="gpt-4o-mini",
            prompt="Explain caching.",
        )
        rankings = self.service.rank_strategies(context)
        self.assertEqual(rankings[0].strategy.name, "response-caching")
        self.assertEqual(rankings[0].estimated_savings, 1000)

        result = self.service.apply_strategy("response-caching", context)
        self.assertEqual(result.estimated_token_savings, 1000)
        self.assertAlmostEqual(result.estimated_cost_savings, 0.2625, places=6)

        other = self.service.apply_strategy("response-caching", replace(context, prompt="Something else."))
        self.assertEqual(other.estimated_token_savings, 0)


class LabServicePersistenceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        # 调用记录在线程里写入，内存库要跨线程共享同一连接
        self._engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
        self.db: Session = sessionmaker(bind=self._engine, future=True)()
        Base.metadata.create_all(bind=self._engine, tables=LAB_TABLES)
        self.queryable = SqlAlchemyQueryable(self.db)
        self.stub = _OpenAIStub()
        self.service = build_lab_service(encryption_key_hex=KEY_HEX, transport=httpx.MockTransport(self.stub))

    def tearDown(self) -> None:
        self.db.close()
        self._engine.dispose()

    def test_calls_in_experiment_sessions_are_recorded(self) -> None:
        experiment = ExperimentRepository(self.queryable).create_experiment("u1", "caching")
        tracker = CostTracker(self.queryable)
        snapshot = self.service.create_session(
            "u1",
            Provider.openai,
            experiment_id=experiment.id,
            isolation_level=IsolationLevel.experiment,
            api_key="sk-inline",
        )

        result = asyncio.run(
            self.service.execute_api_call(snapshot.id, model="gpt-4o-mini", prompt="hi", tracker=tracker)
        )

        self.assertIsNotNone(result.record)
        self.assertEqual(result.record.experiment_id, experiment.id)
        self.assertEqual(result.record.session_id, snapshot.id)
        summary = tracker.get_experiment_summary(experiment.id)
        self.assertEqual(summary.call_count, 1)
        self.assertAlmostEqual(summary.total_cost, 0.2625, places=6)

    def test_unknown_experiment_is_rejected_at_session_creation(self) -> None:
        repo = ExperimentRepository(self.queryable)
        with self.assertRaises(ExperimentNotFoundError):
            self.service.create_session(
                "u1",
                Provider.openai,
                experiment_id="does-not-exist",
                api_key="sk-inline",
                experiments=repo,
            )
        self.assertEqual(len(self.service.sandbox), 0)


class LabServiceAnalysisTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.service = build_lab_service(encryption_key_hex=KEY_HEX)

    def test_analyze_calls_builds_charts_with_estimated_breakdown(self) -> None:
        calls = [
            APICallRecord(
                id="a",
                experiment_id="exp-1",
                session_id="s1",
                provider="openai",
                model="gpt-4o-mini",
                input_tokens=750,
                output_tokens=250,
                system_tokens=100,
                cost=0.2775,
                latency_ms=100,
                timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            ),
            APICallRecord(
                id="b",
                experiment_id="exp-1",
                session_id="s1",
                provider="mistral",
                model="large",
                input_tokens=100,
                output_tokens=100,
                system_tokens=0,
                cost=0.01,
                latency_ms=100,
                timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            ),
        ]

        report = self.service.analyze_calls(calls)

        self.assertEqual(report.analysis.call_count, 2)
        self.assertEqual([c.type for c in report.charts], ["pie", "bar"])
        # 未知供应商的记录不参与成本分项
        self.assertAlmostEqual(report.charts[1].meta["totalCost"], 0.2775, places=6)
        self.assertEqual(report.suggestions, [])

    def test_apply_and_rank_strategies(self) -> None:
        context = OptimizationContext(
            experiment_id="exp-1",
            session_id="s1",
            provider="openai",
            model="gpt-4o",
            prompt="x" * 4000,
        )
        self.assertIsNone(self.service.apply_strategy("missing", context))

        result = self.service.apply_strategy("model-selection", context)
        self.assertTrue(result.success)
        self.assertEqual(result.optimized_parameters["model"], "gpt-4o-mini")

        rankings = self.service.rank_strategies(context)
        self.assertEqual(len(rankings), 4)


if __name__ == "__main__":
    unittest.main()
