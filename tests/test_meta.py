import json
import tempfile
import unittest

from concord.analyzer import ContextAnalyzer
from concord.ledger import PerformanceLedger
from concord.meta import DECISIONS_KEY, MetaOrchestrator
from concord.models.registry import ModelRegistry
from concord.models.scripted import ScriptedAdapter
from concord.selector import StrategySelector
from concord.store import FileStore, MemoryStore

PROMPT = "Compare determinism vs free will from multiple perspectives"
MODELS = ["claude", "gpt", "gemini"]


class TestMetaOrchestrator(unittest.TestCase):
    def setUp(self):
        self.registry = ModelRegistry()
        for model_id in MODELS:
            self.registry.register(ScriptedAdapter(model_id, "ok"))
        self.ledger = PerformanceLedger()
        self.selector = StrategySelector(self.ledger, self.registry)
        self.analyzer = ContextAnalyzer()
        self.store = MemoryStore()

    def meta(self, **kwargs):
        return MetaOrchestrator(self.registry, self.ledger, self.selector,
                                analyzer=self.analyzer, store=self.store, **kwargs)

    def test_recommendation_shape(self):
        meta = self.meta()
        rec = meta.recommend(PROMPT, MODELS)
        self.assertEqual(rec.category, "analysis")
        self.assertEqual(rec.complexity, "high")
        self.assertIn(rec.strategy, ("consensus", "hybrid"))
        self.assertTrue(set(rec.models) <= set(MODELS))
        self.assertAlmostEqual(sum(rec.weights.values()), 1.0)
        self.assertGreaterEqual(rec.confidence, 0.0)
        self.assertLessEqual(rec.confidence, 1.0)
        self.assertEqual(rec.source, "heuristic")
        self.assertIn("analysis task", rec.reasoning)
        tree = rec.decision_tree["root"]
        self.assertEqual(tree["children"][1]["components"]["expert_penalty"], 0.1)
        self.assertEqual(len(meta.decisions()), 1)
        self.assertEqual(self.store.get(DECISIONS_KEY)[0]["id"], rec.decision_id)

    def test_threshold_gates_auto_apply(self):
        self.assertTrue(self.meta(confidence_threshold=0.0).recommend(PROMPT, MODELS).auto_apply)
        self.assertFalse(self.meta(confidence_threshold=1.0).recommend(PROMPT, MODELS).auto_apply)

    def test_repeat_prompt_is_served_from_cache(self):
        meta = self.meta()
        first = meta.recommend(PROMPT, MODELS)
        second = meta.recommend("  " + PROMPT + "  ", list(reversed(MODELS)))
        self.assertTrue(second.cached)
        self.assertEqual(first.decision_id, second.decision_id)
        self.assertEqual(len(meta.decisions()), 1)

    def test_learned_pattern_overrides_strategy(self):
        meta = self.meta(learning_min_samples=5)
        analysis = self.analyzer.analyze(PROMPT)
        for index in range(5):
            plan = self.selector.select(analysis, MODELS, request_id=f"r{index}", strategy_override="diversity")
            meta.observe(PROMPT, analysis, plan, success_score=0.95)
        rec = meta.recommend(PROMPT, MODELS)
        self.assertTrue(rec.learned)
        self.assertEqual(rec.strategy, "diversity")
        self.assertIn("historically successful", rec.reasoning)
        components = rec.decision_tree["root"]["children"][1]["components"]
        self.assertEqual(components["learning_bonus"], 0.1)

    def test_low_scores_do_not_create_a_pattern(self):
        meta = self.meta(learning_min_samples=2)
        analysis = self.analyzer.analyze(PROMPT)
        for index in range(3):
            plan = self.selector.select(analysis, MODELS, request_id=f"r{index}", strategy_override="diversity")
            meta.observe(PROMPT, analysis, plan, success_score=0.5)
        self.assertFalse(meta.recommend(PROMPT, MODELS).learned)

    def test_language_model_analyzer(self):
        reply = "Sure!\n" + json.dumps({
            "category": {"name": "coding", "confidence": 0.9},
            "complexity": "medium",
            "intent": "write a parser",
            "keywords": ["parser"],
            "recommended_strategy": "parallel",
        })
        self.registry.register(ScriptedAdapter("judge", reply))
        rec = self.meta(analyzer_model="judge").recommend("Help me with a parser", MODELS)
        self.assertEqual(rec.source, "analyzer")
        self.assertEqual(rec.category, "coding")
        self.assertEqual(rec.intent, "write a parser")
        self.assertEqual(rec.strategy, "racing")

    def test_broken_analyzer_falls_back_to_rules(self):
        self.registry.register(ScriptedAdapter("judge", "I cannot answer in JSON today"))
        baseline = self.analyzer.analyze(PROMPT)
        rec = self.meta(analyzer_model="judge").recommend(PROMPT, MODELS)
        self.assertEqual(rec.source, "fallback")
        self.assertAlmostEqual(rec.analysis["confidence"], baseline.confidence * 0.8)
        self.assertIn("rule-based", rec.reasoning)

    def test_record_outcome(self):
        meta = self.meta()
        rec = meta.recommend(PROMPT, MODELS)
        self.assertFalse(meta.record_outcome("missing", 1.0))
        self.assertTrue(meta.record_outcome(rec.decision_id, 1.5))
        stored = self.store.get(DECISIONS_KEY)[0]
        self.assertEqual(stored["success_score"], 1.0)
        pattern = self.store.get("meta/patterns/analysis")
        self.assertEqual(pattern["success_rate"], 1.0)

    def test_state_survives_restart(self):
        self.meta().recommend(PROMPT, MODELS)
        restored = self.meta()
        self.assertEqual(len(restored.decisions()), 1)
        self.assertEqual(restored.analytics()["learning_patterns"], 1)

    def test_decision_log_is_trimmed(self):
        meta = self.meta(max_decisions=5, trim_decisions_to=3)
        for index in range(6):
            meta.recommend(f"Explain topic number {index}", MODELS)
        self.assertEqual(len(meta.decisions()), 3)

    def test_analytics_configure_and_clear(self):
        meta = self.meta()
        meta.recommend(PROMPT, MODELS)
        stats = meta.analytics()
        self.assertEqual(stats["total_decisions"], 1)
        self.assertEqual(stats["category_breakdown"], {"analysis": 1})

        settings = meta.configure(confidence_threshold=0.5, learning_enabled=False)
        self.assertEqual(settings["confidence_threshold"], 0.5)
        self.assertFalse(settings["learning_enabled"])
        with self.assertRaises(ValueError):
            meta.configure(confidence_threshold=2.0)

        meta.clear()
        self.assertEqual(meta.decisions(), [])
        self.assertIsNone(self.store.get(DECISIONS_KEY))
        self.assertEqual(self.store.list_prefix("meta/"), [])


class TestAvailability(unittest.TestCase):
    """Uses the model ids shipped in config/default.yaml."""

    def setUp(self):
        self.registry = ModelRegistry()
        self.ledger = PerformanceLedger()
        self.selector = StrategySelector(self.ledger, self.registry)
        self.store = MemoryStore()

    def meta(self):
        return MetaOrchestrator(self.registry, self.ledger, self.selector, store=self.store)

    def register(self, unavailable=()):
        for model_id in ("llama", "mistral", "gemini"):
            self.registry.register(ScriptedAdapter(model_id, "ok", available=model_id not in unavailable))

    def components(self, rec):
        return rec.decision_tree["root"]["children"][1]["components"]

    def test_recommended_models_count_as_available(self):
        self.register()
        meta = self.meta()
        for prompt in ("What is the capital of France?", "Why does this proof by induction hold?"):
            rec = meta.recommend(prompt)
            self.assertEqual(self.components(rec)["availability"], 1.0)
            self.assertGreater(rec.confidence, 0.4)

    def test_learned_models_that_went_down_lower_availability(self):
        self.register(unavailable=("gemini",))
        decisions = [
            {"id": f"d{i}", "models": ["llama", "gemini"], "strategy": "consensus",
             "success_score": 0.95, "timestamp": "2026-01-01T00:00:0%d+00:00" % i}
            for i in range(5)
        ]
        self.store.set("meta/patterns/analysis", {"decisions": decisions, "success_rate": 0.95, "last_updated": ""})
        rec = self.meta().recommend(PROMPT)
        self.assertTrue(rec.learned)
        self.assertEqual(rec.models, ["llama"])
        self.assertEqual(self.components(rec)["availability"], 0.5)


class TestSharedDataDir(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.registry = ModelRegistry()
        for model_id in MODELS:
            self.registry.register(ScriptedAdapter(model_id, "ok"))
        self.ledger = PerformanceLedger()
        self.selector = StrategySelector(self.ledger, self.registry)

    def tearDown(self):
        self.tmp.cleanup()

    def meta(self):
        return MetaOrchestrator(self.registry, self.ledger, self.selector, store=FileStore(self.tmp.name))

    def test_two_processes_keep_each_others_decisions(self):
        first = self.meta()
        second = self.meta()
        a = first.recommend(PROMPT, MODELS)
        b = second.recommend(PROMPT, MODELS)
        self.assertNotEqual(a.decision_id, b.decision_id)

        restored = self.meta()
        ids = [d["id"] for d in restored.decisions()]
        self.assertEqual(sorted(ids), sorted([a.decision_id, b.decision_id]))
        self.assertIn(a.decision_id, [d["id"] for d in second.decisions()])
        pattern = FileStore(self.tmp.name).get("meta/patterns/analysis")
        self.assertEqual(len(pattern["decisions"]), 2)

    def test_outcome_survives_a_concurrent_writer(self):
        first = self.meta()
        second = self.meta()
        a = first.recommend(PROMPT, MODELS)
        second.recommend(PROMPT, MODELS)
        self.assertTrue(first.record_outcome(a.decision_id, 0.9))
        stored = {d["id"]: d for d in FileStore(self.tmp.name).get(DECISIONS_KEY)}
        self.assertEqual(len(stored), 2)
        self.assertEqual(stored[a.decision_id]["success_score"], 0.9)


if __name__ == "__main__":
    unittest.main()
