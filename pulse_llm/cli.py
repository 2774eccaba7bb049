"""
pulse-llm :: CLI

Usage:
    pulse-llm list
    pulse-llm check --model-dir models
    pulse-llm chat --model-dir models [--context-file health.txt] [--seed 42]
    pulse-llm chat --model-dir models --message "How did I sleep?"
    pulse-llm bench

Global flags:
    --log-level DEBUG|INFO|WARNING|ERROR   --json-logs   --config session.json

Configuration precedence: --config file < PULSE_LLM_* env < command flags.

INL - 2025
"""

import argparse
import asyncio
import sys


def build_config(args):
    """SessionConfig from --config, the environment, then command flags."""
    from pulse_llm.core.config import SessionConfig

    config = SessionConfig.from_json(args.config) if args.config else SessionConfig()
    config = SessionConfig.from_env(config)

    if getattr(args, "model_dir", None):
        config.model_dirs = list(args.model_dir)
    if getattr(args, "backend", None):
        config.backend = args.backend
    if getattr(args, "seed", None) is not None:
        config.seed = args.seed
    if getattr(args, "n_ctx", None):
        config.n_ctx = args.n_ctx
    if getattr(args, "max_new_tokens", None):
        config.max_new_tokens = args.max_new_tokens
    return config


def cmd_list(args):
    """List known model artifacts, in search order."""
    from pulse_llm.core.registry import list_artifacts

    artifacts = list_artifacts()
    if not artifacts:
        print("No artifacts registered.")
        return 0

    print(f"{'File':<34} {'Quant':>8} {'Size':>9}  {'Model'}")
    print("-" * 76)
    for a in artifacts:
        print(f"{a['name'] + '.gguf':<34} {a['quantization']:>8} {a['size']:>9}  {a['display_name']}")
    return 0


def cmd_check(args):
    """Show every path the locator tries and which one wins."""
    import os
    from pulse_llm.core.errors import ModelNotFound
    from pulse_llm.core.registry import candidate_paths, locate_artifact, model_info_for

    config = build_config(args)
    print(f"Search dirs: {', '.join(config.model_dirs)}")
    for path in candidate_paths(config.model_dirs, config.candidates, config.extension):
        if path.is_file():
            size_mb = os.path.getsize(path) / 1e6
            print(f"  {str(path):<60} OK ({size_mb:.0f} MB)")
        else:
            print(f"  {str(path):<60} MISSING")

    try:
        path = locate_artifact(config.model_dirs, config.candidates, config.extension)
    except ModelNotFound as exc:
        print(f"\n{exc}")
        return 1

    info = model_info_for(path, is_loaded=False)
    print(f"\nSelected:    {path}")
    print(f"Model:       {info.name}")
    print(f"Quant:       {info.quantization}")
    print(f"Processing:  {info.processing_mode}")
    return 0


async def _chat(args, config) -> int:
    from pulse_llm.core.metrics import SessionMetrics
    from pulse_llm.engine.facade import InferenceFacade
    from pulse_llm.engine.session import ModelSession

    context = ""
    if args.context_file:
        with open(args.context_file, "r", encoding="utf-8") as f:
            context = f.read().strip()

    metrics = SessionMetrics(port=args.metrics_port) if args.metrics_port else None
    facade = InferenceFacade(ModelSession(config, metrics=metrics))

    def show_progress(status):
        if status.loading_status and not args.message:
            print(f"  [{status.loading_progress:>4.0%}] {status.loading_status}", file=sys.stderr)

    unsubscribe = facade.subscribe(show_progress)
    async with facade:
        await facade.load_if_needed()
        unsubscribe()
        if not facade.is_model_loaded:
            print(f"Model unavailable: {facade.last_error}", file=sys.stderr)
            return 1

        if args.message:
            print(await facade.generate(args.message, context))
            return 0

        info = facade.model_info()
        print(f"pulse-llm :: {info.name} ({info.quantization}), {info.processing_mode}")
        print("Type a message, or 'exit' to quit.\n")
        loop = asyncio.get_running_loop()
        while True:
            try:
                line = await loop.run_in_executor(None, input, "you> ")
            except EOFError:
                break
            line = line.strip()
            if line in ("exit", "quit"):
                break
            if not line:
                continue
            reply = await facade.generate(line, context)
            print(f"coach> {reply}\n")
            result = facade.last_result
            if result is not None and args.verbose:
                print(
                    f"  [{result.finish_reason}] {result.output_tokens} tokens, "
                    f"{result.elapsed_ms:.0f} ms\n"
                )
    return 0


def cmd_chat(args):
    """Interactive (or one-shot) chat against the local model."""
    config = build_config(args)
    error = config.validate()
    if error:
        print(f"Invalid config: {error}", file=sys.stderr)
        return 2
    try:
        return asyncio.run(_chat(args, config))
    except KeyboardInterrupt:
        return 130


def cmd_bench(args):
    """Run benchmarks."""
    import os
    # benchmarks/ lives at project root, not inside pulse_llm
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)

    from benchmarks.bench_session import bench_sampler, bench_generate

    print("=" * 60)
    print("pulse-llm :: Benchmark")
    print("=" * 60)

    print("\n--- Sampler chain ---")
    print(f"{'Vocab':>8} {'us/token':>10}")
    for r in bench_sampler(n_iters=args.iters * 20):
        print(f"{r['vocab_size']:>8} {r['us_per_token']:>10}")

    print("\n--- Session loop (scripted backend) ---")
    print(f"{'Prompt':>8} {'ms/reply':>10} {'tok/s':>10} {'prompt tok/s':>14}")
    for r in bench_generate(n_iters=args.iters):
        print(
            f"{r['prompt_tokens']:>8} {r['ms_per_reply']:>10} "
            f"{r['tokens_per_sec']:>10,} {r['prompt_tokens_per_sec']:>14,}"
        )

    print("\nDone.")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="pulse-llm",
        description="On-device inference session for a health-coach chat",
    )
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--json-logs", action="store_true", help="JSON log lines on stderr")
    parser.add_argument("--log-file", default=None, help="Also write JSON logs to this file")
    parser.add_argument("--config", default=None, help="SessionConfig JSON file")
    sub = parser.add_subparsers(dest="command")

    # list
    p_list = sub.add_parser("list", help="List known model artifacts")
    p_list.set_defaults(func=cmd_list)

    # check
    p_check = sub.add_parser("check", help="Check which model file would be loaded")
    p_check.add_argument("--model-dir", action="append", help="Search directory (repeatable)")
    p_check.set_defaults(func=cmd_check)

    # chat
    p_chat = sub.add_parser("chat", help="Chat with the local model")
    p_chat.add_argument("--model-dir", action="append", help="Search directory (repeatable)")
    p_chat.add_argument("--context-file", default=None, help="Health data text for the system turn")
    p_chat.add_argument("--message", default=None, help="Send one message, print the reply, exit")
    p_chat.add_argument("--seed", type=int, default=None, help="Sampler seed (default: fresh entropy)")
    p_chat.add_argument("--backend", default=None, choices=["llama_cpp", "scripted"])
    p_chat.add_argument("--n-ctx", type=int, default=None, help="Context size in tokens")
    p_chat.add_argument("--max-new-tokens", type=int, default=None)
    p_chat.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics")
    p_chat.add_argument("-v", "--verbose", action="store_true", help="Print finish reason and timing")
    p_chat.set_defaults(func=cmd_chat)

    # bench
    p_bench = sub.add_parser("bench", help="Run benchmarks")
    p_bench.add_argument("--iters", type=int, default=5)
    p_bench.set_defaults(func=cmd_bench)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    from pulse_llm.core.logging import setup_logging
    setup_logging(args.log_level, json_output=args.json_logs, log_file=args.log_file)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
