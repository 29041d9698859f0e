"""
npu-router :: CLI

Usage:
    npu-router serve [--config router.json] [--host 127.0.0.1] [--port 8000] [--load-all]
    npu-router ask "abre o chrome" [--config router.json] [--timeout 30]
    npu-router list [--config router.json]
    npu-router check [--config router.json]
    npu-router bench [--vocab-size 32000]

Without --config the five stock models are expected under --model-dir.

INL - 2025
"""

import argparse
import json
import sys


def _load_config(args):
    from npu_router.core.config import RouterConfig
    from npu_router.core.exceptions import ConfigurationError

    try:
        if args.config:
            config = RouterConfig.from_json(args.config)
        else:
            config = RouterConfig.default(args.model_dir)
    except ConfigurationError as e:
        print(f"config error: {e}", file=sys.stderr)
        sys.exit(2)

    if getattr(args, "load_all", False):
        config.load_all = True
    if getattr(args, "seed", None) is not None:
        config.seed = args.seed
    return config


def cmd_serve(args):
    """Start the HTTP server."""
    from npu_router.api.server import RouterServer
    from npu_router.core.metrics import RouterMetrics
    from npu_router.engine.router import Router

    config = _load_config(args)
    metrics = RouterMetrics(port=args.metrics_port) if args.metrics_port else RouterMetrics()
    router = Router(config, metrics=metrics)

    print(f"npu-router :: serving {len(config.models)} model(s)")
    print(f"  host={args.host} port={args.port} mode={'eager' if config.load_all else 'lazy'}")
    server = RouterServer(router, host=args.host, port=args.port, api_key=args.api_key)
    server.run()


def cmd_ask(args):
    """Route one utterance and print the response."""
    from npu_router.core.exceptions import RouterError
    from npu_router.engine.router import Router

    config = _load_config(args)
    router = Router(config)
    try:
        router.start()
        response = router.process(args.text, timeout_s=args.timeout)
    except RouterError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        router.close()

    if args.json:
        print(json.dumps(response.to_dict(), ensure_ascii=False, indent=2))
        return
    print(f"[{response.intent.value if response.intent else '-'} → {response.model or '-'}] {response.text}")
    if response.action:
        print(f"  action: {json.dumps(response.action, ensure_ascii=False)}")
    if not response.success:
        sys.exit(1)


def cmd_list(args):
    """List configured models."""
    config = _load_config(args)

    print(f"{'Name':<10} {'Model':<16} {'Max tok':>8} {'Temp':>6} {'Persistent':>11}  Path")
    print("-" * 80)
    persistent = set(config.memory.persistent)
    for name, m in config.models.items():
        flag = "yes" if name in persistent else ""
        print(f"{name:<10} {m.name:<16} {m.max_tokens:>8} {m.temperature:>6.2f} {flag:>11}  {m.path}")


def cmd_check(args):
    """Verify every configured model and tokenizer exists on disk."""
    config = _load_config(args)

    missing = 0
    for name, m in config.models.items():
        problems = m.check_files()
        if problems:
            missing += 1
            for problem in problems:
                print(f"  {name:<10} MISSING  {problem}")
        else:
            tok = m.tokenizer_path or "(next to weights)"
            print(f"  {name:<10} OK       {m.path}  tokenizer={tok}")

    print(f"\n{len(config.models) - missing}/{len(config.models)} model(s) ready")
    if missing:
        sys.exit(1)


def cmd_bench(args):
    """Run sampling and routing micro-benchmarks."""
    import os
    # benchmarks/ lives at project root, not inside npu_router package
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)

    from benchmarks.bench_sampling import bench_sample_token, bench_intent_detection, bench_generation

    print("=" * 60)
    print("npu-router :: Benchmark")
    print("=" * 60)

    print("\n--- sample_token ---")
    print(f"{'Mode':<25} {'Vocab':>8} {'us/call':>10}")
    print("-" * 45)
    for mode in ("greedy", "top_k", "top_p", "full"):
        r = bench_sample_token(args.vocab_size, mode=mode)
        print(f"{r['mode']:<25} {args.vocab_size:>8} {r['us_per_call']:>10}")

    print("\n--- detect_intent ---")
    r = bench_intent_detection()
    print(f"  {r['calls']} calls: {r['us_per_call']} us/call")

    print("\n--- generation loop (fake backend) ---")
    r = bench_generation(args.vocab_size, max_tokens=args.max_tokens)
    print(f"  {r['tokens']} tokens: {r['ms_per_token']} ms/token, {r['tokens_per_sec']:,} tok/s")

    print("\nDone.")


def main():
    parser = argparse.ArgumentParser(
        prog="npu-router",
        description="Multi-model inference router for local language models",
    )
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-json", action="store_true", help="JSON log lines on stderr")
    parser.add_argument("--log-file", default=None, help="Also write JSON logs to this file")
    sub = parser.add_subparsers(dest="command")

    def add_config_args(p):
        p.add_argument("--config", default=None, help="Router config (JSON)")
        p.add_argument("--model-dir", default="models", help="Directory of the stock models")

    # serve
    p_serve = sub.add_parser("serve", help="Start HTTP server")
    add_config_args(p_serve)
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--load-all", action="store_true", help="Load every model at startup")
    p_serve.add_argument("--api-key", default=None, help="Require Bearer token on /v1/*")
    p_serve.add_argument("--metrics-port", type=int, default=None,
                         help="Also expose Prometheus metrics on a separate port")
    p_serve.add_argument("--seed", type=int, default=None)
    p_serve.set_defaults(func=cmd_serve)

    # ask
    p_ask = sub.add_parser("ask", help="Route one utterance")
    add_config_args(p_ask)
    p_ask.add_argument("text", help="Utterance (e.g. \"abre o chrome\")")
    p_ask.add_argument("--timeout", type=float, default=None, help="Generation deadline in seconds")
    p_ask.add_argument("--json", action="store_true", help="Print the response as JSON")
    p_ask.add_argument("--seed", type=int, default=None)
    p_ask.set_defaults(func=cmd_ask)

    # list
    p_list = sub.add_parser("list", help="List configured models")
    add_config_args(p_list)
    p_list.set_defaults(func=cmd_list)

    # check
    p_check = sub.add_parser("check", help="Check model files")
    add_config_args(p_check)
    p_check.set_defaults(func=cmd_check)

    # bench
    p_bench = sub.add_parser("bench", help="Run benchmarks")
    p_bench.add_argument("--vocab-size", type=int, default=32000)
    p_bench.add_argument("--max-tokens", type=int, default=64)
    p_bench.set_defaults(func=cmd_bench)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    from npu_router.core.logging import setup_logging
    setup_logging(args.log_level, json_output=args.log_json, log_file=args.log_file)

    args.func(args)


if __name__ == "__main__":
    main()
