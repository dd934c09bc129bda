"""Command line interface for Concord."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict

from concord.config import get_config
from concord.engine import ConcordEngine
from concord.models.registry import ModelRegistry
from concord.models.scripted import ScriptedAdapter
from concord.strategy import STRATEGIES

DEMO_MODELS = {
    "claude": "Consider the trade-offs carefully. The evidence points in one direction, "
              "but the assumptions deserve scrutiny. Therefore a balanced view is warranted.",
    "gpt": "There are two main positions. First, the structural argument. Second, the "
           "practical one. However, both agree on the core facts.",
    "gemini": "A quick summary: the core facts are settled. Moreover, the open questions "
              "concern interpretation rather than evidence.",
}


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _demo_registry() -> ModelRegistry:
    registry = ModelRegistry()
    for model_id, text in DEMO_MODELS.items():
        registry.register(ScriptedAdapter(model_id, text, delay=0.05, stream=True), meta={"kind": "scripted"})
    return registry


def _engine(args: argparse.Namespace) -> ConcordEngine:
    config = get_config()
    registry = _demo_registry() if getattr(args, "demo", False) else None
    return ConcordEngine.from_config(config, registry=registry, persist=not getattr(args, "demo", False))


def _payload(args: argparse.Namespace, engine: ConcordEngine) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "prompt": args.prompt,
        "models": args.models or ",".join(engine.registry.ids()),
    }
    if args.strategy:
        payload["strategy"] = args.strategy
    if args.mode:
        payload["mode"] = args.mode
    if args.session:
        payload["session_id"] = args.session
    return payload


def cmd_run(args: argparse.Namespace) -> int:
    engine = _engine(args)
    try:
        payload = _payload(args, engine)
        if args.events:
            request = engine.submit(payload)
            subscription = engine.gateway.subscribe(request.id)
            if subscription is not None:
                for event in subscription:
                    print(event.to_json())
            result = engine.wait(request.id)
        else:
            result = engine.run(payload)
    finally:
        engine.shutdown()
    if result is None:
        return 1
    if args.text and result.ok:
        print(result.response.text)
    else:
        _print(result.to_dict())
    return 0 if result.ok else 2


def cmd_recommend(args: argparse.Namespace) -> int:
    engine = _engine(args)
    try:
        models = args.models.split(",") if args.models else None
        _print(engine.recommend(args.prompt, models).to_dict())
    finally:
        engine.shutdown()
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    engine = _engine(args)
    try:
        _print({"models": engine.models()})
    finally:
        engine.shutdown()
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    engine = _engine(args)
    try:
        _print(engine.stats())
    finally:
        engine.shutdown()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn
    config = get_config()
    host = args.host or config.server.get("host", "127.0.0.1")
    port = args.port or int(config.server.get("port", 8099))
    uvicorn.run("concord.server:app", host=host, port=port, reload=False)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="concord")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Orchestrate one prompt across models")
    run.add_argument("--prompt", required=True)
    run.add_argument("--models", help="Comma-separated model ids (default: all registered)")
    run.add_argument("--strategy", choices=list(STRATEGIES))
    run.add_argument("--mode", choices=["auto", "simple", "default", "expert"])
    run.add_argument("--session")
    run.add_argument("--events", action="store_true", help="Print every event as JSON lines")
    run.add_argument("--text", action="store_true", help="Print only the synthesized text")
    run.add_argument("--demo", action="store_true", help="Use built-in scripted models")

    recommend = sub.add_parser("recommend", help="Show the meta-orchestrator's recommendation")
    recommend.add_argument("--prompt", required=True)
    recommend.add_argument("--models")
    recommend.add_argument("--demo", action="store_true")

    models = sub.add_parser("models")
    models.add_argument("--demo", action="store_true")

    sub.add_parser("stats")

    serve = sub.add_parser("serve")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=get_config().log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if args.command == "run":
        code = cmd_run(args)
    elif args.command == "recommend":
        code = cmd_recommend(args)
    elif args.command == "models":
        code = cmd_models(args)
    elif args.command == "stats":
        code = cmd_stats(args)
    elif args.command == "serve":
        code = cmd_serve(args)
    else:
        parser.print_help()
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
