import io
import json
import unittest
from contextlib import redirect_stdout

from concord.cli import build_parser, cmd_models, cmd_recommend, cmd_run


class TestCli(unittest.TestCase):
    def run_cmd(self, func, argv):
        args = build_parser().parse_args(argv)
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = func(args)
        return code, buffer.getvalue()

    def test_demo_run(self):
        code, out = self.run_cmd(cmd_run, ["run", "--demo", "--prompt", "Compare determinism vs free will"])
        self.assertEqual(code, 0)
        body = json.loads(out)
        self.assertTrue(body["ok"])
        self.assertTrue(body["response"]["text"])

    def test_demo_run_text_with_events(self):
        code, out = self.run_cmd(
            cmd_run, ["run", "--demo", "--events", "--text", "--models", "gemini", "--prompt", "hello"],
        )
        self.assertEqual(code, 0)
        lines = out.strip().splitlines()
        self.assertEqual(json.loads(lines[0])["type"], "request_started")
        self.assertIn("core facts are settled", out)

    def test_demo_recommend_and_models(self):
        code, out = self.run_cmd(cmd_recommend, ["recommend", "--demo", "--prompt", "Write a poem"])
        self.assertEqual(code, 0)
        self.assertIn("decision_id", json.loads(out))
        code, out = self.run_cmd(cmd_models, ["models", "--demo"])
        self.assertEqual([m["id"] for m in json.loads(out)["models"]], ["claude", "gpt", "gemini"])

    def test_strategy_choices(self):
        with self.assertRaises(SystemExit):
            with redirect_stdout(io.StringIO()):
                build_parser().parse_args(["run", "--prompt", "x", "--strategy", "parallel"])


if __name__ == "__main__":
    unittest.main()
