from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

from thinktree.agents.orchestrator import OrchestratorAgent, OrchestratorResult
from thinktree.agents.types import AgentContext
from thinktree.config.load_config import MAX_DEPTH_LIMIT, ConfigError, load_app_config
from thinktree.llm.openai_compat import LLMConfigError, OpenAICompatibleChatClient
from thinktree.tot.state import TreeState


def _clamp_int(name: str, value: int, *, min_v: int, max_v: int) -> int:
    if value < min_v or value > max_v:
        raise SystemExit(f"{name} must be in [{min_v}..{max_v}], got {value}")
    return value


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn a request into an enriched prompt via structured reasoning.")
    parser.add_argument("--query", default="", help="The request to reason about. Read from stdin if omitted.")
    parser.add_argument("--persona", default="", help="Persona id (default: selector.default_persona).")
    parser.add_argument("--deep", action="store_true", help="Force the tree engine (skip classification).")
    parser.add_argument("--max-depth", type=int, default=0, help=f"Tree depth ceiling (1..{MAX_DEPTH_LIMIT}).")
    parser.add_argument("--answer", action="store_true", help="Also generate the final answer from the prompt.")
    parser.add_argument("--json", action="store_true", help="Print the full result snapshot as JSON.")
    parser.add_argument(
        "--log-level",
        default=os.getenv("THINKTREE_LOG_LEVEL", "WARNING"),
        help="Logging level (default: env THINKTREE_LOG_LEVEL or WARNING).",
    )
    return parser.parse_args(argv)


def format_tree(state: TreeState) -> str:
    """Indented outline of the tree, one line per node."""
    lines: list[str] = []

    def _walk(node_id: str) -> None:
        node = state.node(node_id)
        line = f"{'  ' * node.depth}- [{node.status.value}] {node.title}: {node.query}"
        if node.error:
            line += f" (error: {node.error})"
        lines.append(line)
        for child_id in node.children:
            _walk(child_id)

    _walk(state.root_id)
    return "\n".join(lines)


def _print_result(result: OrchestratorResult) -> None:
    print(f"# engine: {result.engine.value} (persona: {result.persona_id})")
    if result.tree is not None:
        print(f"# tree: {result.tree.status.value}")
        print(format_tree(result.tree))
    print()
    print(result.prompt)
    if result.answer is not None:
        print("---")
        print(result.answer)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    query = (args.query or "").strip() or sys.stdin.read().strip()
    if not query:
        raise SystemExit("A query is required (--query or stdin).")

    try:
        cfg = load_app_config()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    max_depth = None
    if args.max_depth:
        max_depth = _clamp_int("max_depth", int(args.max_depth), min_v=1, max_v=MAX_DEPTH_LIMIT)

    try:
        llm = OpenAICompatibleChatClient(
            model=cfg.llm.model,
            temperature=cfg.llm.temperature,
            timeout_s=cfg.llm.timeout_s,
        )
    except LLMConfigError as e:
        print(f"LLM init failed: {e}", file=sys.stderr)
        return 1

    try:
        orchestrator = OrchestratorAgent.from_config(cfg)
        orchestrator.persona(args.persona or None)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    ctx = AgentContext(llm=llm, config=cfg, classifier_llm=llm.with_model(cfg.llm.classifier_model))
    try:
        result = asyncio.run(
            orchestrator.run(
                ctx,
                query,
                persona_id=args.persona or None,
                force_deep_mode=bool(args.deep),
                max_depth=max_depth,
                generate=bool(args.answer),
            )
        )
    except Exception as e:
        print(f"Answer generation failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))
    else:
        _print_result(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
