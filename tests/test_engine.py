import time
import unittest

from concord.engine import ConcordEngine
from concord.models.registry import ModelRegistry
from concord.models.scripted import ScriptedAdapter
from concord.synthesis import SynthesisEngine

PROMPT = "Compare determinism vs free will from multiple perspectives"


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.registry = ModelRegistry()
        self.adapters = {}
        self.engine = ConcordEngine(self.registry)

    def tearDown(self):
        for adapter in self.adapters.values():
            adapter.release()
        self.engine.shutdown()

    def add(self, model_id, responses="ok", **kwargs):
        adapter = ScriptedAdapter(model_id, responses, **kwargs)
        self.registry.register(adapter)
        self.adapters[model_id] = adapter
        return adapter

    def types(self, request_id):
        return [e.type for e in self.engine.gateway.history(request_id)]


class TestEngineRun(EngineTestCase):
    def test_full_run_emits_ordered_events(self):
        self.add("claude", "Determinism says every event has a cause. However, choice still matters.")
        self.add("gpt", "Free will is compatible with causation. Therefore responsibility survives.")
        self.add("gemini", "Physics is silent on the question. Moreover, the debate is conceptual.")
        result = self.engine.run({"prompt": PROMPT, "models": ["claude", "gpt", "gemini"]})
        self.assertTrue(result.ok)
        self.assertEqual(result.response.method, "fallback")
        types = self.types(result.request_id)
        self.assertEqual(types[:2], ["request_started", "strategy_selected"])
        self.assertEqual(types[-1], "synthesized_response")
        self.assertEqual(types.count("synthesized_response"), 1)
        self.assertIn(result.plan["strategy"], ("consensus", "hybrid"))
        self.assertEqual(self.engine.ledger.strategy(result.plan["strategy"]).total, 1)
        self.assertEqual(self.engine.ledger.model("claude").total, 1)
        self.assertEqual(self.engine.meta.analytics()["total_decisions"], 1)

    def test_single_model_is_passed_through(self):
        text = "Exactly one answer.\n\nKept verbatim.  "
        self.add("solo", text)
        result = self.engine.run({"prompt": "hello", "models": ["solo"]})
        self.assertEqual(result.response.text, text)
        self.assertEqual(result.response.method, "passthrough")
        self.assertEqual(result.plan["strategy"], "racing")

    def test_repeat_request_is_served_from_cache(self):
        first_model = self.add("a", "Answer A.")
        self.add("b", "Answer B.")
        payload = {"prompt": "What is a river?", "models": ["a", "b"]}
        first = self.engine.run(payload)
        calls = first_model.call_count
        second = self.engine.run(dict(payload))
        self.assertTrue(second.response.cached)
        self.assertEqual(second.response.text, first.response.text)
        self.assertNotEqual(second.request_id, first.request_id)
        self.assertEqual(first_model.call_count, calls)
        self.assertEqual(self.types(second.request_id), ["synthesized_response"])
        self.assertEqual(self.engine.synthesis.calls, 1)

    def test_total_failure_skips_synthesis(self):
        self.add("a", fail="down")
        self.add("b", fail="down")
        result = self.engine.run({"prompt": "What is a river?", "models": ["a", "b"]})
        self.assertFalse(result.ok)
        self.assertEqual(result.error["kind"], "all_models_failed")
        self.assertEqual(self.engine.synthesis.calls, 0)
        self.assertEqual(self.types(result.request_id)[-1], "request_failed")
        self.assertEqual(self.engine.ledger.model("a").reliability, 0.0)
        self.assertEqual(len(self.engine.cache), 0)

    def test_validation_error_has_no_side_effects(self):
        self.add("a")
        result = self.engine.run({"prompt": "  ", "models": ["a"]})
        self.assertEqual(result.error["kind"], "validation_error")
        self.assertEqual(self.adapters["a"].call_count, 0)
        self.assertEqual(self.engine.gateway.stats()["total_events"], 0)

    def test_no_available_models(self):
        self.add("a", available=False)
        result = self.engine.run({"prompt": "hello", "models": ["a"]})
        self.assertEqual(result.error["kind"], "no_available_models")
        self.assertEqual(self.types(result.request_id)[-1], "request_failed")

    def test_models_listing_includes_ledger_metrics(self):
        self.add("a")
        listing = self.engine.models()
        self.assertEqual(listing[0]["id"], "a")
        self.assertIn("reliability", listing[0])
        stats = self.engine.stats()
        self.assertIn("ledger", stats)
        self.assertEqual(stats["synthesis_calls"], 0)


class TestEngineBackground(EngineTestCase):
    def test_stop_suppresses_synthesis(self):
        self.add("a", "late", delay=3.0)
        self.add("b", "late", delay=3.0)
        request = self.engine.submit({"prompt": PROMPT, "models": ["a", "b"]})
        time.sleep(0.2)
        ack = self.engine.stop(request.id)
        self.assertTrue(ack["accepted"])
        result = self.engine.wait(request.id, timeout=5)
        self.assertEqual(result.error["kind"], "request_stopped")
        types = self.types(request.id)
        self.assertEqual(types[-1], "request_stopped")
        self.assertNotIn("synthesized_response", types)
        self.assertEqual(self.engine.synthesis.calls, 0)
        self.assertEqual(self.engine.gateway.control(request.id).state, "stopped")
        self.assertFalse(self.engine.stop(request.id)["accepted"])

    def test_stop_during_arbiter_call_ends_stopped(self):
        judge = self.add("judge", "Merged answer.", delay=3.0)
        self.engine.synthesis.shutdown()
        self.engine.synthesis = SynthesisEngine(self.registry, arbiter="judge", poll_interval=0.01)
        self.add("a", "Determinism holds. However, choice matters.")
        self.add("b", "Free will survives. Therefore blame is fair.")
        request = self.engine.submit({"prompt": PROMPT, "models": ["a", "b"]})
        deadline = time.monotonic() + 5
        while judge.call_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(judge.call_count, 1)
        ack = self.engine.stop(request.id)
        self.assertTrue(ack["accepted"])
        self.assertEqual(ack["state"], "stopping")
        result = self.engine.wait(request.id, timeout=5)
        self.assertFalse(result.ok)
        self.assertEqual(result.error["kind"], "request_stopped")
        types = self.types(request.id)
        self.assertEqual(types[-1], "request_stopped")
        self.assertNotIn("synthesized_response", types)
        self.assertNotIn("synthesis_fallback", types)
        self.assertEqual(self.engine.gateway.control(request.id).state, "stopped")

    def test_pause_and_resume_are_acknowledged(self):
        self.add("a", "answer", delay=0.5)
        request = self.engine.submit({"prompt": "hello", "models": ["a"]})
        time.sleep(0.05)
        self.assertEqual(self.engine.pause(request.id)["state"], "paused")
        self.assertEqual(self.engine.resume(request.id)["state"], "running")
        result = self.engine.wait(request.id, timeout=5)
        self.assertTrue(result.ok)
        types = self.types(request.id)
        self.assertIn("request_paused", types)
        self.assertIn("request_resumed", types)

    def test_subscriber_sees_whole_request(self):
        self.add("a", "First. Second. Third.", stream=True)
        request = self.engine.submit({"prompt": "hello", "models": ["a"]})
        subscription = self.engine.gateway.subscribe(request.id)
        events = list(subscription)
        self.assertEqual(events[-1].type, "synthesized_response")
        self.assertEqual([e.seq for e in events], sorted(e.seq for e in events))
        self.assertIn("model_chunk", [e.type for e in events])
        self.engine.wait(request.id, timeout=5)


if __name__ == "__main__":
    unittest.main()
