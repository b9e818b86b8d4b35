from __future__ import annotations

import unittest

from app.lab.cost.pricing import calculate_cost, cheapest_model, get_pricing
from app.lab.entities import TokenBreakdown
from app.lab.enums import Provider
from app.lab.errors import LabErrorKind, ProviderExecutionError


class PricingTestCase(unittest.TestCase):
    def test_known_model_breakdown(self) -> None:
        result = calculate_cost(Provider.openai, "gpt-4o-mini", TokenBreakdown(750, 250, 100))
        self.assertAlmostEqual(result.breakdown.prompt, 0.1125, places=6)
        self.assertAlmostEqual(result.breakdown.completion, 0.15, places=6)
        # system 未单独定价，按 prompt 单价计
        self.assertAlmostEqual(result.breakdown.system, 0.015, places=6)
        self.assertAlmostEqual(result.cost, 0.2775, places=6)

    def test_model_lookup_is_case_insensitive(self) -> None:
        lower = calculate_cost(Provider.openai, "gpt-4o", TokenBreakdown(1000, 1000))
        upper = calculate_cost(Provider.openai, "GPT-4o", TokenBreakdown(1000, 1000))
        self.assertEqual(lower, upper)
        self.assertAlmostEqual(upper.cost, 20.0, places=6)

    def test_unknown_model_falls_back_to_default(self) -> None:
        result = calculate_cost(Provider.google, "gemini-ultra-9", TokenBreakdown(1000, 1000, 0))
        self.assertAlmostEqual(result.cost, 1.0, places=6)
        self.assertEqual(get_pricing(Provider.google, "gemini-ultra-9"), get_pricing(Provider.google, "default"))

    def test_provider_accepts_plain_string(self) -> None:
        result = calculate_cost("anthropic", "claude-3-opus", TokenBreakdown(1000, 1000))
        self.assertAlmostEqual(result.cost, 90.0, places=6)

    def test_zero_tokens_cost_nothing(self) -> None:
        result = calculate_cost(Provider.anthropic, "claude-3-5-sonnet", TokenBreakdown())
        self.assertEqual(result.cost, 0)
        self.assertEqual(result.breakdown.prompt, 0)

    def test_missing_model_raises(self) -> None:
        with self.assertRaises(ProviderExecutionError) as ctx:
            calculate_cost(Provider.openai, "", TokenBreakdown(10))
        self.assertEqual(ctx.exception.kind, LabErrorKind.provider_error)

    def test_cheapest_model_skips_default_tier(self) -> None:
        self.assertEqual(cheapest_model(Provider.openai)[0], "gpt-4o-mini")
        self.assertEqual(cheapest_model(Provider.anthropic)[0], "claude-3-5-sonnet")
        self.assertEqual(cheapest_model(Provider.google)[0], "gemini-1.5-flash")


if __name__ == "__main__":
    unittest.main()
