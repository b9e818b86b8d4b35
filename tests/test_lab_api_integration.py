from __future__ import annotations

import unittest

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_db, get_lab_service
from app.api.v1.endpoints import lab as lab_endpoints
from app.core.database import Base
from app.lab.entities import ResourceLimits
from app.lab.errors import LabErrorKind
from app.lab.service import build_lab_service
from app.models.lab import LAB_TABLES


KEY_HEX = "11" * 32
PREFIX = "/api/v1/lab"


def _openai_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "choices": [{"message": {"role": "assistant", "content": "pong"}}],
            "usage": {"prompt_tokens": 750, "completion_tokens": 250},
        },
    )


class LabApiIntegrationTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
        Base.metadata.create_all(bind=self._engine, tables=LAB_TABLES)
        self._SessionLocal = sessionmaker(bind=self._engine, autocommit=False, autoflush=False, future=True)

        self.service = build_lab_service(
            resource_limits=ResourceLimits(
                max_concurrent_sessions=3,
                max_calls_per_session=1,
                max_tokens_per_session=200_000,
                max_session_duration_ms=60_000,
            ),
            encryption_key_hex=KEY_HEX,
            transport=httpx.MockTransport(_openai_handler),
        )

        def _get_db():
            db = self._SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app = FastAPI()
        app.include_router(lab_endpoints.router, prefix=PREFIX)
        app.dependency_overrides[get_lab_service] = lambda: self.service
        app.dependency_overrides[get_db] = _get_db
        self._client = TestClient(app)

    def tearDown(self) -> None:
        self._client.close()
        self._engine.dispose()

    def _create_session(self, **extra) -> dict:
        body = {"userId": "u1", "provider": "openai", "apiKey": "sk-inline", **extra}
        r = self._client.post(f"{PREFIX}/sessions", json=body)
        self.assertEqual(r.status_code, 201, r.text)
        return r.json()["data"]

    def _create_experiment(self) -> dict:
        r = self._client.post(f"{PREFIX}/experiments", json={"userId": "u1", "name": "caching"})
        self.assertEqual(r.status_code, 201, r.text)
        return r.json()["data"]

    def test_error_table_covers_every_kind(self) -> None:
        self.assertEqual(set(lab_endpoints.LAB_ERROR_STATUS), set(LabErrorKind))

    def test_health(self) -> None:
        r = self._client.get(f"{PREFIX}/health")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "healthy")

    def test_session_lifecycle(self) -> None:
        session = self._create_session()
        self.assertEqual(session["userId"], "u1")
        self.assertEqual(session["config"]["provider"], "openai")
        self.assertNotIn("apiKey", session["config"])
        self.assertNotIn("apiKeyPlaintext", session["config"])

        r = self._client.get(f"{PREFIX}/sessions/{session['id']}")
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["totalCalls"], 0)

        r = self._client.delete(f"{PREFIX}/sessions/{session['id']}")
        self.assertEqual(r.status_code, 200, r.text)

        r = self._client.get(f"{PREFIX}/sessions/{session['id']}")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["detail"]["code"], "SESSION_NOT_FOUND")

    def test_execute_then_hit_call_limit(self) -> None:
        session = self._create_session()
        url = f"{PREFIX}/sessions/{session['id']}/execute"

        r = self._client.post(url, json={"model": "gpt-4o-mini", "prompt": "ping"})
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()["data"]
        self.assertEqual(data["response"]["content"], "pong")
        self.assertEqual(data["response"]["tokens"]["total"], 1000)
        self.assertEqual(data["metrics"]["totalCalls"], 1)
        self.assertIsNone(data["record"])

        r = self._client.post(url, json={"model": "gpt-4o-mini", "prompt": "ping"})
        self.assertEqual(r.status_code, 429)
        self.assertEqual(r.json()["detail"]["code"], "RESOURCE_LIMIT")

        r = self._client.get(f"{PREFIX}/gateway/metrics")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["data"]["totalRequests"], 1)

    def test_execute_without_key_is_unavailable(self) -> None:
        r = self._client.post(f"{PREFIX}/sessions", json={"userId": "u1", "provider": "openai"})
        session_id = r.json()["data"]["id"]
        r = self._client.post(f"{PREFIX}/sessions/{session_id}/execute", json={"model": "gpt-4o", "prompt": "x"})
        self.assertEqual(r.status_code, 503)
        self.assertEqual(r.json()["detail"]["code"], "PROVIDER_UNAVAILABLE")

        r = self._client.get(f"{PREFIX}/sessions/{session_id}")
        self.assertEqual(r.json()["data"]["totalCalls"], 0)

    def test_experiment_isolation_without_experiment_is_bad_request(self) -> None:
        r = self._client.post(
            f"{PREFIX}/sessions",
            json={"userId": "u1", "provider": "openai", "isolationLevel": "experiment"},
        )
        self.assertEqual(r.status_code, 400)

    def test_experiment_calls_are_tracked(self) -> None:
        experiment = self._create_experiment()
        self.assertEqual(experiment["status"], "draft")

        session = self._create_session(experimentId=experiment["id"], isolationLevel="experiment")
        r = self._client.post(
            f"{PREFIX}/sessions/{session['id']}/execute",
            json={"model": "gpt-4o-mini", "prompt": "ping"},
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["record"]["experimentId"], experiment["id"])

        r = self._client.get(f"{PREFIX}/experiments/{experiment['id']}/summary")
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["callCount"], 1)
        self.assertAlmostEqual(r.json()["data"]["totalCost"], 0.2625, places=6)

        r = self._client.get(f"{PREFIX}/experiments/{experiment['id']}/calls", params={"limit": 5})
        self.assertEqual(r.status_code, 200, r.text)
        calls = r.json()["data"]
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0]["totalTokens"], 1000)

    def test_session_for_unknown_experiment_is_not_found(self) -> None:
        r = self._client.post(
            f"{PREFIX}/sessions",
            json={"userId": "u1", "provider": "openai", "apiKey": "sk-inline", "experimentId": "does-not-exist"},
        )
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["detail"], "Experiment not found")

        r = self._client.post(f"{PREFIX}/sessions/sweep")
        self.assertEqual(r.json()["data"]["remaining"], 0)

    def test_missing_experiment(self) -> None:
        r = self._client.get(f"{PREFIX}/experiments/nope")
        self.assertEqual(r.status_code, 404)
        r = self._client.patch(f"{PREFIX}/experiments/nope/status", json={"status": "running"})
        self.assertEqual(r.status_code, 404)

    def test_update_experiment_status(self) -> None:
        experiment = self._create_experiment()
        r = self._client.patch(f"{PREFIX}/experiments/{experiment['id']}/status", json={"status": "running"})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["status"], "running")

        r = self._client.patch(f"{PREFIX}/experiments/{experiment['id']}/status", json={"status": "bogus"})
        self.assertEqual(r.status_code, 422)

    def test_baselines(self) -> None:
        experiment = self._create_experiment()
        base = f"{PREFIX}/experiments/{experiment['id']}/baselines"
        calls = [
            {"inputTokens": 750, "outputTokens": 250, "cost": 0.2625, "latencyMs": 100},
            {"inputTokens": 250, "outputTokens": 250, "cost": 0.1875, "latencyMs": 300},
        ]

        r = self._client.get(f"{base}/default")
        self.assertEqual(r.status_code, 404)

        r = self._client.post(base, json={"calls": calls})
        self.assertEqual(r.status_code, 201, r.text)
        baseline = r.json()["data"]
        self.assertEqual(baseline["scenario"], "default")
        self.assertEqual(baseline["callCount"], 2)
        self.assertEqual(baseline["totalTokens"], 1500)
        self.assertAlmostEqual(baseline["averageCost"], 0.225, places=6)
        self.assertEqual(baseline["averageLatencyMs"], 200)

        r = self._client.get(f"{PREFIX}/experiments/{experiment['id']}")
        self.assertEqual(r.json()["data"]["baselineId"], baseline["id"])

        r = self._client.post(base, json={"calls": []})
        self.assertEqual(r.status_code, 400)

        r = self._client.get(base)
        self.assertEqual([b["scenario"] for b in r.json()["data"]], ["default"])

    def test_analyze_tokens(self) -> None:
        r = self._client.post(
            f"{PREFIX}/analyze/tokens",
            json={
                "calls": [
                    {"id": "c1", "model": "gpt-4o", "inputTokens": 1000, "outputTokens": 500, "systemTokens": 1000, "cost": 0.2},
                ]
            },
        )
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()["data"]
        self.assertEqual(data["analysis"]["callCount"], 1)
        self.assertTrue(data["analysis"]["flags"]["excessiveSystemTokens"])
        # 未带时间的记录原样返回 null，不补占位时间
        high_token_calls = data["analysis"]["highTokenCalls"]
        self.assertEqual([c["id"] for c in high_token_calls], ["c1"])
        self.assertIsNone(high_token_calls[0]["timestamp"])
        self.assertEqual(
            [s["id"] for s in data["suggestions"]],
            ["prompt-compression", "system-trim", "token-call-c1"],
        )
        self.assertEqual([c["type"] for c in data["charts"]], ["pie", "bar"])

    def test_baseline_comparison_chart(self) -> None:
        r = self._client.post(
            f"{PREFIX}/visualizations/comparison",
            json={
                "baseline": {"inputTokens": 1000, "outputTokens": 500, "systemTokens": 100},
                "optimized": {"inputTokens": 800, "outputTokens": 400},
            },
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["meta"]["reductionPercentage"], 25.0)

    def test_strategies(self) -> None:
        r = self._client.get(f"{PREFIX}/strategies")
        self.assertEqual(len(r.json()["data"]), 4)

        context = {"provider": "openai", "model": "gpt-4o", "prompt": "x" * 4000}
        r = self._client.post(f"{PREFIX}/strategies/model-selection/apply", json=context)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["optimizedParameters"]["model"], "gpt-4o-mini")

        r = self._client.post(f"{PREFIX}/strategies/unknown/apply", json=context)
        self.assertEqual(r.status_code, 404)

        r = self._client.post(f"{PREFIX}/strategies/rank", json=context)
        self.assertEqual(r.status_code, 200, r.text)
        rankings = r.json()["data"]
        self.assertEqual(len(rankings), 4)
        priorities = [item["priority"] for item in rankings]
        self.assertEqual(priorities, sorted(priorities, reverse=True))

    def test_simulation_and_projection(self) -> None:
        simulation = {
            "name": "chatbot",
            "requestsPerDay": 100,
            "averageTokensPerRequest": 500,
            "loadPattern": "steady",
            "durationDays": 10,
            "costPerThousandTokens": 0.5,
        }
        r = self._client.post(f"{PREFIX}/simulations", json=simulation)
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()["data"]
        self.assertEqual(data["totalRequests"], 1000)
        self.assertEqual(len(data["dailyBreakdown"]), 10)
        self.assertEqual(len(data["projections"]), 4)

        r = self._client.post(
            f"{PREFIX}/simulations/projections",
            json={"simulation": simulation, "periods": ["month"]},
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertAlmostEqual(r.json()["data"][0]["estimatedCost"], 750.0, places=2)

        r = self._client.post(f"{PREFIX}/simulations", json={**simulation, "loadPattern": "chaotic"})
        self.assertEqual(r.status_code, 400)

    def test_scale_analysis(self) -> None:
        r = self._client.post(
            f"{PREFIX}/scale-analysis",
            json={"scales": [100, 1000], "requestsPerUserPerDay": 10, "costPerRequest": 0.01},
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual([a["warning"] for a in r.json()["data"]], [False, True])

        r = self._client.post(
            f"{PREFIX}/scale-analysis/report",
            json={"currentUsers": 100, "requestsPerUserPerDay": 10, "costPerRequest": 0.01},
        )
        self.assertEqual([p["label"] for p in r.json()["data"]["projections"]], ["10x", "100x", "1000x"])

        r = self._client.post(
            f"{PREFIX}/scale-analysis/break-even",
            json={"fixedCosts": 1000, "revenuePerUser": 5, "requestsPerUserPerDay": 10, "costPerRequest": 0.01},
        )
        users = r.json()["data"]["breakEvenUsers"]
        self.assertTrue(450 < users < 550)

    def test_keys(self) -> None:
        r = self._client.post(f"{PREFIX}/keys", json={"userId": "u1", "provider": "openai", "key": "sk-mine"})
        self.assertEqual(r.status_code, 201, r.text)
        record = r.json()["data"]
        self.assertNotIn("key", record)

        r = self._client.get(f"{PREFIX}/keys", params={"userId": "u1"})
        self.assertEqual([k["id"] for k in r.json()["data"]], [record["id"]])

        r = self._client.post(f"{PREFIX}/keys/{record['id']}/rotate", json={"userId": "u2", "key": "sk-new"})
        self.assertEqual(r.status_code, 403)

        r = self._client.post(f"{PREFIX}/keys/{record['id']}/rotate", json={"userId": "u1", "key": "sk-new"})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertNotEqual(r.json()["data"]["id"], record["id"])

        session = self._create_session(apiKey=None, apiKeyId=r.json()["data"]["id"])
        self.assertEqual(session["config"]["apiKeyId"], r.json()["data"]["id"])

    def test_sweep(self) -> None:
        self._create_session()
        r = self._client.post(f"{PREFIX}/sessions/sweep")
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"], {"purged": 0, "remaining": 1})

    def test_completing_experiment_updates_progress(self) -> None:
        experiment = self._create_experiment()
        url = f"{PREFIX}/experiments/{experiment['id']}/status"

        r = self._client.get(f"{PREFIX}/progress/u1")
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["experimentsCompleted"], 0)
        self.assertEqual(len(r.json()["data"]["recommendations"]), 4)

        r = self._client.patch(url, json={"status": "completed", "costSavings": 12.5})
        self.assertEqual(r.status_code, 200, r.text)
        # 已是 completed 时再次提交不重复计数
        r = self._client.patch(url, json={"status": "completed", "costSavings": 12.5})
        self.assertEqual(r.status_code, 200, r.text)

        r = self._client.get(f"{PREFIX}/progress/u1")
        data = r.json()["data"]
        self.assertEqual(data["experimentsCompleted"], 1)
        self.assertAlmostEqual(data["totalCostSavings"], 12.5)

        r = self._client.patch(url, json={"status": "completed", "costSavings": -1})
        self.assertEqual(r.status_code, 422)

    def test_progress_badges_and_skill_level(self) -> None:
        r = self._client.post(f"{PREFIX}/progress/u1/badges", json={"badgeId": "first-saving"})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["badgesEarned"], ["first-saving"])

        r = self._client.post(f"{PREFIX}/progress/u1/challenges", json={"challengeId": "halve-tokens"})
        self.assertEqual(r.json()["data"]["challengesCompleted"], ["halve-tokens"])

        r = self._client.put(f"{PREFIX}/progress/u1/skill-level", json={"level": 3})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["skillLevel"], 3)

        r = self._client.put(f"{PREFIX}/progress/u1/skill-level", json={"level": 0})
        self.assertEqual(r.status_code, 422)

    def test_compare_providers(self) -> None:
        body = {
            "userId": "u1",
            "prompt": "ping",
            "providers": [{"provider": "openai", "model": "gpt-4o-mini", "apiKey": "sk-inline"}],
        }
        r = self._client.post(f"{PREFIX}/providers/compare", json=body)
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()["data"]
        self.assertEqual([item["provider"] for item in data["results"]], ["openai"])
        self.assertEqual(data["results"][0]["tokens"]["total"], 1000)
        self.assertEqual(data["recommendation"]["bestCost"]["provider"], "openai")
        self.assertNotIn("apiKey", data["results"][0])

        # 没有可用 Key 的供应商直接报不可用
        body["providers"] = [{"provider": "openai", "model": "gpt-4o-mini"}]
        r = self._client.post(f"{PREFIX}/providers/compare", json=body)
        self.assertEqual(r.status_code, 503)
        self.assertEqual(r.json()["detail"]["code"], "PROVIDER_UNAVAILABLE")

    def test_tco_and_compare_at_scale(self) -> None:
        r = self._client.post(
            f"{PREFIX}/providers/tco",
            json={"provider": "openai", "model": "gpt-4o-mini", "requestsPerMonth": 1000, "averageCostPerRequest": 0.01},
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["totalCost"], 66.0)
        self.assertEqual(r.json()["data"]["costPerRequest"], 0.066)

        r = self._client.post(
            f"{PREFIX}/providers/compare-at-scale",
            json={
                "providers": [{"provider": "openai", "model": "gpt-4o-mini", "costPerRequest": 0.001}],
                "scales": [1000, 100000],
            },
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual([item["scale"] for item in r.json()["data"]], [1000, 100000])

        r = self._client.post(
            f"{PREFIX}/providers/compare-at-scale",
            json={"providers": [{"provider": "openai", "model": "gpt-4o-mini", "costPerRequest": 0.001}], "scales": [0]},
        )
        self.assertEqual(r.status_code, 400)


if __name__ == "__main__":
    unittest.main()
