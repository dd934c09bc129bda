import threading
import time
import unittest

from concord.coordinator import ExecutionCoordinator, early_completion_target
from concord.errors import AllModelsFailedError, RequestStoppedError
from concord.events import RequestControl
from concord.ledger import PerformanceLedger
from concord.models.registry import ModelRegistry
from concord.models.scripted import ScriptedAdapter
from concord.selector import ExecutionPlan


class Recorder:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event_type, data):
        with self._lock:
            self.events.append((event_type, dict(data)))

    def of(self, event_type):
        with self._lock:
            return [data for kind, data in self.events if kind == event_type]

    def index(self, event_type, slot):
        with self._lock:
            for i, (kind, data) in enumerate(self.events):
                if kind == event_type and data.get("slot") == slot:
                    return i
        return -1


def _plan(strategy, models, model_timeout_s=5.0, plan_timeout_s=10.0, early_completion=0.8):
    return ExecutionPlan(
        request_id="req",
        strategy=strategy,
        models=tuple(models),
        weights={m: 1.0 / len(models) for m in models},
        plan_timeout_s=plan_timeout_s,
        model_timeout_s=model_timeout_s,
        early_completion=early_completion,
    )


class CoordinatorTestCase(unittest.TestCase):
    def setUp(self):
        self.registry = ModelRegistry()
        self.ledger = PerformanceLedger()
        self.coordinator = ExecutionCoordinator(self.registry, self.ledger, poll_interval=0.01)
        self.adapters = []
        self.emit = Recorder()

    def tearDown(self):
        for adapter in self.adapters:
            adapter.release()
        self.coordinator.shutdown()

    def add(self, model_id, responses="ok", **kwargs):
        adapter = ScriptedAdapter(model_id, responses, **kwargs)
        self.registry.register(adapter)
        self.adapters.append(adapter)
        return adapter


class TestRacing(CoordinatorTestCase):
    def test_need_is_ceiling_of_fraction(self):
        self.assertEqual(early_completion_target(3, 0.8), 3)
        self.assertEqual(early_completion_target(5, 0.8), 4)
        self.assertEqual(early_completion_target(10, 0.8), 8)
        self.assertEqual(early_completion_target(1, 0.8), 1)

    def test_waits_for_all_three_at_point_eight(self):
        self.add("a", "Alpha answer.", delay=0.05)
        self.add("b", "Bravo answer.", delay=0.1)
        self.add("c", "Charlie answer.", delay=0.3)
        outcome = self.coordinator.execute(_plan("racing", ["a", "b", "c"]), "q", emit=self.emit)
        self.assertEqual(sorted(r.model_id for r in outcome.successful), ["a", "b", "c"])

    def test_early_completion_abandons_the_straggler(self):
        for name in ("a", "b", "c", "d"):
            self.add(name, f"{name} says hello.")
        slow = self.add("slow", "too late", delay=3.0)
        started = time.monotonic()
        outcome = self.coordinator.execute(_plan("racing", ["a", "b", "c", "d", "slow"]), "q", emit=self.emit)
        self.assertLess(time.monotonic() - started, 2.0)
        statuses = {r.model_id: r.status for r in outcome.results}
        self.assertEqual(statuses["slow"], "abandoned")
        self.assertEqual(len(outcome.successful), 4)
        slow.release()
        time.sleep(0.05)
        completed = [d["model_id"] for d in self.emit.of("model_completed")]
        self.assertNotIn("slow", completed)

    def test_partial_failure_is_reported(self):
        self.add("a", "fine")
        self.add("b", fail="boom")
        self.add("c", "also fine")
        outcome = self.coordinator.execute(_plan("racing", ["a", "b", "c"]), "q", emit=self.emit)
        self.assertEqual(len(outcome.successful), 2)
        self.assertEqual([r.model_id for r in outcome.failed], ["b"])
        self.assertEqual(outcome.failed[0].error_kind, "model_unavailable")
        self.assertEqual(self.emit.of("model_error")[0]["model_id"], "b")

    def test_empty_output_counts_as_failure(self):
        self.add("a", "   ")
        self.add("b", "content")
        outcome = self.coordinator.execute(_plan("racing", ["a", "b"]), "q")
        self.assertEqual([r.model_id for r in outcome.failed], ["a"])

    def test_all_failing_raises_with_outcome(self):
        self.add("a", fail="down")
        self.add("b", fail=RuntimeError("crash"))
        with self.assertRaises(AllModelsFailedError) as ctx:
            self.coordinator.execute(_plan("racing", ["a", "b"]), "q", emit=self.emit)
        self.assertEqual(len(ctx.exception.failures), 2)
        self.assertEqual(len(ctx.exception.outcome.failed), 2)

    def test_streamed_chunks_are_emitted_in_order(self):
        self.add("a", "One. Two. Three. Four.", stream=True)
        outcome = self.coordinator.execute(_plan("racing", ["a"]), "q", emit=self.emit)
        chunks = [d["chunk"] for d in self.emit.of("model_chunk")]
        self.assertEqual("".join(chunks), "One. Two. Three. Four.")
        self.assertEqual(outcome.successful[0].content, "One. Two. Three. Four.")
        self.assertTrue(all(d["weight"] >= 0.5 for d in self.emit.of("model_chunk")))

    def test_failure_midway_through_a_stream(self):
        self.add("a", "One. Two. Three. Four. Five. Six.", stream=True, fail_after=1)
        self.add("b", "steady")
        outcome = self.coordinator.execute(_plan("consensus", ["a", "b"]), "q", emit=self.emit)
        broken = outcome.results[0]
        self.assertEqual(broken.status, "error")
        self.assertEqual(broken.error_kind, "model_unavailable")
        self.assertEqual([c for _, c in broken.chunks], ["One. Two. "])
        self.assertLess(self.emit.index("model_chunk", "a"), self.emit.index("model_error", "a"))

    def test_plain_string_output_is_kept_verbatim(self):
        text = "Line one.\n\n  Indented line two!  "
        self.add("a", text)
        outcome = self.coordinator.execute(_plan("racing", ["a"]), "q")
        self.assertEqual(outcome.successful[0].content, text)


class TestTimeoutsAndCancellation(CoordinatorTestCase):
    def test_model_timeout(self):
        self.add("fast", "quick")
        self.add("slow", "slow", delay=3.0)
        outcome = self.coordinator.execute(
            _plan("consensus", ["fast", "slow"], model_timeout_s=0.2), "q", emit=self.emit,
        )
        slow = [r for r in outcome.results if r.model_id == "slow"][0]
        self.assertEqual(slow.status, "timeout")
        self.assertEqual(slow.error_kind, "model_timeout")
        self.assertEqual(self.emit.of("model_error")[0]["kind"], "model_timeout")

    def test_stop_cancels_pending_models(self):
        self.add("a", "a", delay=3.0)
        self.add("b", "b", delay=3.0)
        control = RequestControl("req")
        timer = threading.Timer(0.1, control.cancel)
        timer.start()
        started = time.monotonic()
        with self.assertRaises(RequestStoppedError) as ctx:
            self.coordinator.execute(_plan("consensus", ["a", "b"]), "q", control=control, emit=self.emit)
        timer.join()
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertEqual({r.status for r in ctx.exception.outcome.results}, {"cancelled"})
        self.assertEqual(self.emit.of("model_completed"), [])

    def _single_worker(self):
        self.coordinator.shutdown()
        self.coordinator = ExecutionCoordinator(self.registry, self.ledger, max_workers=1, poll_interval=0.01)

    def test_queued_model_timeout_starts_with_its_call(self):
        self._single_worker()
        self.add("hog", "hog", delay=0.5)
        victim = self.add("victim", "Victim answer.")
        outcome = self.coordinator.execute(
            _plan("racing", ["hog", "victim"], model_timeout_s=0.3, plan_timeout_s=3.0), "q", emit=self.emit,
        )
        statuses = {r.model_id: r.status for r in outcome.results}
        self.assertEqual(statuses, {"hog": "timeout", "victim": "ok"})
        self.assertEqual(victim.call_count, 1)

    def test_model_never_started_is_abandoned_at_plan_deadline(self):
        self._single_worker()
        self.add("hog", "hog", delay=3.0)
        victim = self.add("victim", "Victim answer.")
        with self.assertRaises(AllModelsFailedError) as ctx:
            self.coordinator.execute(
                _plan("racing", ["hog", "victim"], model_timeout_s=0.2, plan_timeout_s=0.5), "q", emit=self.emit,
            )
        results = {r.model_id: r for r in ctx.exception.outcome.results}
        self.assertEqual(results["hog"].status, "timeout")
        self.assertEqual(results["victim"].status, "abandoned")
        self.assertEqual(results["victim"].elapsed_ms, 0.0)
        self.assertEqual(victim.call_count, 0)
        self.assertEqual([d["model_id"] for d in self.emit.of("model_error")], ["hog"])


class TestConsensus(CoordinatorTestCase):
    def test_agreeing_answers_form_the_consensus_group(self):
        self.add("a", "The capital of France is Paris.")
        self.add("b", "The capital of France is Paris")
        self.add("c", "Bananas are an excellent source of potassium.")
        outcome = self.coordinator.execute(_plan("consensus", ["a", "b", "c"]), "q")
        consensus = outcome.consensus
        self.assertEqual(consensus.consensus_group, ["a", "b"])
        self.assertEqual(consensus.clusters, [["a", "b"], ["c"]])
        self.assertAlmostEqual(consensus.agreement, 2 / 3)


class TestStaged(CoordinatorTestCase):
    def test_cascade_runs_in_order_and_passes_context(self):
        first = self.add("a", "First draft about rivers.")
        second = self.add("b", "Second draft about rivers.")
        third = self.add("c", "Final answer about rivers.")
        outcome = self.coordinator.execute(_plan("cascading", ["a", "b", "c"]), "Tell me about rivers", emit=self.emit)
        self.assertEqual([r.slot for r in outcome.results], ["a@0", "b@1", "c@2"])
        self.assertEqual(first.calls, ["Tell me about rivers"])
        self.assertIn("Previous response: First draft about rivers.", second.calls[0])
        self.assertIn("Previous analysis: Second draft about rivers.", third.calls[0])
        self.assertLess(self.emit.index("model_completed", "a@0"), self.emit.index("model_started", "b@1"))
        self.assertLess(self.emit.index("model_completed", "b@1"), self.emit.index("model_started", "c@2"))
        self.assertLessEqual(first.call_times[0][1], second.call_times[0][0])

    def test_cascade_orders_by_ledger_history(self):
        self.add("a", "from a")
        self.add("b", "from b")
        for _ in range(3):
            self.ledger.record_model("a", False, 1000)
            self.ledger.record_model("b", True, 1000, 0.9)
        outcome = self.coordinator.execute(_plan("cascading", ["a", "b"]), "q")
        self.assertEqual([r.model_id for r in outcome.results], ["b", "a"])

    def test_timed_out_stage_is_skipped(self):
        self.add("a", "never", delay=3.0)
        second = self.add("b", "recovered")
        outcome = self.coordinator.execute(_plan("cascading", ["a", "b"], model_timeout_s=0.2), "q")
        self.assertEqual([r.status for r in outcome.results], ["timeout", "ok"])
        self.assertEqual(second.calls, ["q"])

    def test_sequential_sends_the_same_prompt(self):
        first = self.add("a", "one")
        second = self.add("b", "two")
        outcome = self.coordinator.execute(_plan("sequential", ["a", "b"]), "q")
        self.assertEqual(first.calls, ["q"])
        self.assertEqual(second.calls, ["q"])
        self.assertEqual(outcome.strategy, "sequential")


class TestDiversityAndHybrid(CoordinatorTestCase):
    def test_diversity_slots_prompts_and_novelty(self):
        self.add("a", "Rivers carry water to the sea.")
        second = self.add("b", "Rivers carry water to the sea.")
        outcome = self.coordinator.execute(_plan("diversity", ["a", "b"]), "Tell me about rivers")
        self.assertEqual([r.slot for r in outcome.results], ["a#0", "b#1"])
        self.assertEqual(outcome.results[0].variant, "base")
        self.assertEqual(second.calls, ["From a creative perspective: Tell me about rivers"])
        self.assertEqual(outcome.results[0].novelty, 1.0)
        self.assertEqual(outcome.results[1].novelty, 0.0)

    def test_hybrid_runs_three_groups(self):
        self.add("a", "Answer from a.")
        self.add("b", "Answer from b.")
        self.add("c", "Answer from c.")
        outcome = self.coordinator.execute(_plan("hybrid", ["a", "b", "c"]), "q", emit=self.emit)
        self.assertEqual(set(outcome.groups), {"racing", "consensus", "diversity"})
        slots = sorted(r.slot for r in outcome.results)
        self.assertEqual(slots, ["consensus:b", "diversity:c#0", "racing:a"])
        self.assertIsNotNone(outcome.consensus)
        groups = {d["group"] for d in self.emit.of("model_started")}
        self.assertEqual(groups, {"racing", "consensus", "diversity"})


if __name__ == "__main__":
    unittest.main()
