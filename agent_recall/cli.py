"""
`agent-recall` command line interface.

Commands
--------
agent-recall workflow create <issue> <branch> [--worktree PATH]
agent-recall workflow find <issue>
agent-recall workflow get <id>
agent-recall workflow set-phase <id> <phase>
agent-recall workflow set-status <id> <status>
agent-recall workflow log-action <id> <action> <result> [--metadata JSON]
agent-recall workflow log-commit <id> <sha> <message>
agent-recall workflow list-active
agent-recall workflow cleanup [--hours N] [--completed]
agent-recall workflow delete <id>
agent-recall workflow retry <id>

agent-recall graph parse <path> [--name NAME]      -- parse JSON to stdout
agent-recall graph store <file|-> [--package NAME]  -- store parse JSON
agent-recall graph index [root]                     -- incremental re-index
agent-recall graph find|what-calls|callers|what-depends-on|blast-radius <name>
agent-recall graph exports [--package NAME]
agent-recall graph summary

agent-recall knowledge store <content> [--code-area A] [--file F] [--issue N]
agent-recall knowledge query [--code-area A] [--file F] [--issue N] [--keywords ...]
agent-recall knowledge search <text>
agent-recall knowledge backfill

agent-recall planning push-goal|push-interrupt|push-plan|push-step|pop|peek|progress|step-status|stale

agent-recall session-start [--issue N] [--root PATH]
agent-recall session-end [--workflow-id ID] [--since REF] [--interrupted]
agent-recall session-state show|summary|init|clear|has-graph|has-docs

Exit code is 0 on success and 1 on failure or when nothing was found.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from typing import Any, Optional

from tqdm import tqdm

from .checkpoint import ActionResult, Phase, WorkflowStatus, WorkflowStore
from .config import Config
from .db import Database
from .errors import AgentRecallError, EmbedderUnavailable
from .git_utils import get_modified_files, get_recent_commits
from .keywords import extract_keywords
from .graph.indexer import GraphIndexer
from .graph.parser import ParseResult, parse_package
from .graph.query import GraphQuery
from .graph.store import GraphStore
from .knowledge.embedder import EmbedderHandle
from .knowledge.models import Learning, QueryFilter
from .knowledge.semantic import SemanticIndex
from .knowledge.store import KnowledgeStore
from .planning.progress import compute_plan_progress
from .planning.stack import PlanningStack, StepStatus
from .session.hooks import session_end, session_start
from .session.state import SessionContext

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _config(args: argparse.Namespace) -> Config:
    config = Config.load(args.config)
    if args.db:
        config.DB_PATH = args.db
    return config


def _db(args: argparse.Namespace) -> Database:
    return Database(_config(args).DB_PATH)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


def _not_found(what: str) -> int:
    print(f"Not found: {what}", file=sys.stderr)
    return 1


def _record_graph_query(args: argparse.Namespace, tool: str, query: str, count: int) -> None:
    """Note the lookup in session state; failures only log."""
    try:
        SessionContext.from_env(_config(args)).record_graph_query(tool, query, count)
    except OSError as exc:
        logger.debug("Could not record graph query: %s", exc)


def _print_entities(results: list, title: str) -> None:
    if not results:
        print(f"  (no results for: {title})")
        return
    print(f"\n{title}  [{len(results)} result(s)]")
    print("-" * 60)
    for r in results:
        label = f"{r.kind:<10}  {r.name}"
        print(f"  {label:<50}  {r.location()}")


# ---------------------------------------------------------------------------
# workflow
# ---------------------------------------------------------------------------

def _cmd_workflow_create(args: argparse.Namespace) -> int:
    workflow = WorkflowStore(_db(args)).create(args.issue, args.branch, args.worktree)
    _print_json(asdict(workflow))
    return 0


def _cmd_workflow_find(args: argparse.Namespace) -> int:
    workflow = WorkflowStore(_db(args)).find_by_issue(args.issue)
    if workflow is None:
        return _not_found(f"workflow for issue #{args.issue}")
    _print_json(asdict(workflow))
    return 0


def _cmd_workflow_get(args: argparse.Namespace) -> int:
    checkpoint = WorkflowStore(_db(args)).load(args.id)
    if checkpoint is None:
        return _not_found(f"workflow {args.id}")
    _print_json(checkpoint.to_dict())
    return 0


def _cmd_workflow_set_phase(args: argparse.Namespace) -> int:
    if not WorkflowStore(_db(args)).set_phase(args.id, args.phase):
        return _not_found(f"workflow {args.id}")
    print(f"Workflow {args.id} phase set to {args.phase}")
    return 0


def _cmd_workflow_set_status(args: argparse.Namespace) -> int:
    if not WorkflowStore(_db(args)).set_status(args.id, args.status):
        return _not_found(f"workflow {args.id}")
    print(f"Workflow {args.id} status set to {args.status}")
    return 0


def _cmd_workflow_log_action(args: argparse.Namespace) -> int:
    metadata = None
    if args.metadata:
        try:
            metadata = json.loads(args.metadata)
        except json.JSONDecodeError as exc:
            print(f"Invalid --metadata JSON: {exc}", file=sys.stderr)
            return 1
    store = WorkflowStore(_db(args))
    if store.get(args.id) is None:
        return _not_found(f"workflow {args.id}")
    store.log_action(args.id, args.action, args.result, metadata)
    return 0


def _cmd_workflow_log_commit(args: argparse.Namespace) -> int:
    store = WorkflowStore(_db(args))
    if store.get(args.id) is None:
        return _not_found(f"workflow {args.id}")
    store.log_commit(args.id, args.sha, args.message)
    return 0


def _cmd_workflow_list_active(args: argparse.Namespace) -> int:
    _print_json([asdict(w) for w in WorkflowStore(_db(args)).list_active()])
    return 0


def _cmd_workflow_cleanup(args: argparse.Namespace) -> int:
    store = WorkflowStore(_db(args))
    hours = args.hours if args.hours is not None else _config(args).STALE_HOURS
    stale = store.cleanup_stale_workflows(hours)
    print(f"Marked {len(stale)} stale workflow(s) failed")
    if args.completed:
        removed = store.cleanup_completed(args.completed_hours)
        print(f"Deleted {removed} completed workflow(s)")
    return 0


def _cmd_workflow_delete(args: argparse.Namespace) -> int:
    if not WorkflowStore(_db(args)).delete(args.id):
        return _not_found(f"workflow {args.id}")
    print(f"Deleted workflow {args.id}")
    return 0


def _cmd_workflow_retry(args: argparse.Namespace) -> int:
    count = WorkflowStore(_db(args)).increment_retry(args.id)
    if count == 0:
        return _not_found(f"workflow {args.id}")
    print(count)
    return 0


# ---------------------------------------------------------------------------
# graph
# ---------------------------------------------------------------------------

def _cmd_graph_parse(args: argparse.Namespace) -> int:
    path = os.path.abspath(args.path)
    if not os.path.isdir(path):
        return _not_found(f"directory {args.path}")
    result = parse_package(path, args.name or os.path.basename(path))
    print(result.to_json())
    return 0


def _cmd_graph_store(args: argparse.Namespace) -> int:
    try:
        if args.file == "-":
            data = json.load(sys.stdin)
        else:
            with open(args.file, encoding="utf-8") as fh:
                data = json.load(fh)
        result = ParseResult.from_dict(data)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        print(f"Cannot read parse output: {exc}", file=sys.stderr)
        return 1
    package = args.package or result.package
    stored = GraphStore(_db(args)).store_graph(package, result)
    print(
        f"Stored {package}: {stored.entities} entities, "
        f"{stored.relationships} relationships"
    )
    return 0


def _cmd_graph_index(args: argparse.Namespace) -> int:
    root = os.path.abspath(args.root)
    config = _config(args)
    indexer = GraphIndexer(GraphStore(Database(config.DB_PATH)), config.CHANGE_DETECTION)
    print(f"Indexing: {root}")

    pbar = tqdm(total=None, unit="file", desc="Parsing")

    def _progress(current: int, total: int, filename: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(filename), refresh=False)
        pbar.update(1)

    try:
        report = indexer.reindex(root, progress_callback=_progress)
    finally:
        pbar.close()

    print(
        f"\nIndex complete:\n"
        f"  Packages updated: {report.packages_updated}/{len(report.packages)}\n"
        f"  Changed files:    {report.changed_files}\n"
        f"  Deleted files:    {report.deleted_files}\n"
        f"  Time:             {report.elapsed_ms}ms"
    )
    return 0


def _cmd_graph_find(args: argparse.Namespace) -> int:
    results = GraphQuery(_db(args)).find_entities(args.name, kind=args.kind, limit=args.limit)
    _record_graph_query(args, "find", args.name, len(results))
    return _emit_entities(args, results, f"Entities matching '{args.name}'")


def _cmd_graph_what_calls(args: argparse.Namespace) -> int:
    results = GraphQuery(_db(args)).what_calls(args.name)
    _record_graph_query(args, "what-calls", args.name, len(results))
    return _emit_entities(args, results, f"Callers of '{args.name}'")


def _cmd_graph_callers(args: argparse.Namespace) -> int:
    results = GraphQuery(_db(args)).get_callers(args.name)
    _record_graph_query(args, "callers", args.name, len(results))
    return _emit_entities(args, results, f"Callers of '{args.name}'")


def _cmd_graph_exports(args: argparse.Namespace) -> int:
    results = GraphQuery(_db(args)).get_exports(args.package)
    _record_graph_query(args, "exports", args.package or "", len(results))
    return _emit_entities(args, results, "Exported entities")


def _emit_entities(args: argparse.Namespace, results: list, title: str) -> int:
    if args.json:
        _print_json([r.to_dict() for r in results])
    else:
        _print_entities(results, title)
    return 0 if results else 1


def _cmd_graph_what_depends_on(args: argparse.Namespace) -> int:
    results = GraphQuery(_db(args)).what_depends_on(args.name)
    _record_graph_query(args, "what-depends-on", args.name, len(results))
    if args.json:
        _print_json([r.to_dict() for r in results])
    elif not results:
        print(f"  (no results for: {args.name})")
    else:
        print(f"\nDependents of '{args.name}'  [{len(results)} result(s)]")
        print("-" * 60)
        for r in results:
            label = f"{r.relationship:<10}  {r.entity.name}"
            print(f"  {label:<50}  {r.entity.location()}")
    return 0 if results else 1


def _cmd_graph_blast_radius(args: argparse.Namespace) -> int:
    results = GraphQuery(_db(args)).blast_radius(args.target, max_depth=args.depth)
    _record_graph_query(args, "blast-radius", args.target, len(results))
    if args.json:
        _print_json([r.to_dict() for r in results])
    elif not results:
        print(f"  (nothing depends on: {args.target})")
    else:
        print(f"\nBlast radius of '{args.target}'  [{len(results)} result(s)]")
        print("-" * 60)
        for r in results:
            label = f"[{r.depth}] {r.entity.kind:<10}  {r.entity.name}"
            print(f"  {label:<50}  {r.entity.location()}")
    return 0 if results else 1


def _cmd_graph_summary(args: argparse.Namespace) -> int:
    summary = GraphQuery(_db(args)).get_summary()
    if args.json:
        _print_json(summary)
        return 0
    print("\nCode Graph Summary")
    print("=" * 40)
    print(f"  {'entities':<20} {summary['total_entities']}")
    print(f"  {'relationships':<20} {summary['total_relationships']}")
    for pkg in summary["packages"]:
        print(
            f"  {pkg['name']:<20} {pkg['entities']} entities, "
            f"{pkg['relationships']} relationships, {pkg['files']} files"
        )
    print()
    return 0


# ---------------------------------------------------------------------------
# knowledge
# ---------------------------------------------------------------------------

def _embedder(args: argparse.Namespace) -> EmbedderHandle:
    return EmbedderHandle.from_config(_config(args))


def _cmd_knowledge_store(args: argparse.Namespace) -> int:
    learning = Learning(
        content=args.content,
        code_area=args.code_area,
        file_path=args.file,
        source_issue=args.issue,
        confidence=args.confidence,
    )
    ids = KnowledgeStore(_db(args), _embedder(args)).store([learning])
    print(ids[0])
    return 0


def _cmd_knowledge_query(args: argparse.Namespace) -> int:
    query_filter = QueryFilter(
        code_area=args.code_area,
        file_path=args.file,
        issue_number=args.issue,
        keywords=args.keywords or [],
    )
    if query_filter.is_empty():
        print("Give at least one of --code-area, --file, --issue, --keywords", file=sys.stderr)
        return 1
    results = KnowledgeStore(_db(args)).query(query_filter, limit=args.limit)
    _print_json([r.to_dict() for r in results])
    return 0 if results else 1


def _cmd_knowledge_search(args: argparse.Namespace) -> int:
    db = _db(args)
    try:
        similar = SemanticIndex(db, _embedder(args)).search_similar(
            args.text, limit=args.limit, threshold=args.threshold,
        )
        rows = [{"learning": asdict(r.learning), "score": round(r.score, 4)} for r in similar]
    except EmbedderUnavailable:
        # keyword match instead; score is the keyword hit count
        query_filter = QueryFilter(keywords=extract_keywords(args.text))
        results = KnowledgeStore(db).query(query_filter, limit=args.limit) if query_filter.keywords else []
        rows = [{"learning": asdict(r.learning), "score": r.score} for r in results]
    _print_json(rows)
    return 0 if rows else 1


def _cmd_knowledge_backfill(args: argparse.Namespace) -> int:
    try:
        count = SemanticIndex(_db(args), _embedder(args)).backfill()
    except EmbedderUnavailable as exc:
        print(f"Semantic search unavailable: {exc}", file=sys.stderr)
        return 1
    print(f"Embedded {count} learning(s)")
    return 0


# ---------------------------------------------------------------------------
# planning
# ---------------------------------------------------------------------------

def _cmd_planning_push_goal(args: argparse.Namespace) -> int:
    goal = PlanningStack(_db(args)).push_goal(args.title, args.issue, code_area=args.code_area)
    _print_json(goal.to_dict())
    return 0


def _cmd_planning_push_interrupt(args: argparse.Namespace) -> int:
    _print_json(PlanningStack(_db(args)).push_interrupt(args.title, args.reason).to_dict())
    return 0


def _cmd_planning_push_plan(args: argparse.Namespace) -> int:
    plan = PlanningStack(_db(args)).push_plan(args.goal_id, args.title, args.source)
    _print_json(plan.to_dict())
    return 0


def _cmd_planning_push_step(args: argparse.Namespace) -> int:
    step = PlanningStack(_db(args)).push_step(
        args.plan_id, args.title, wave=args.wave,
        depends_on=args.depends_on or (), ordinal=args.ordinal,
    )
    _print_json(step.to_dict())
    return 0


def _cmd_planning_pop(args: argparse.Namespace) -> int:
    db = _db(args)
    knowledge = None if args.no_summary else KnowledgeStore(db, _embedder(args))
    item = PlanningStack(db, knowledge, repo_path=os.getcwd()).pop()
    if item is None:
        return _not_found("planning stack is empty")
    _print_json(item.to_dict())
    return 0


def _cmd_planning_stale(args: argparse.Namespace) -> int:
    stale = PlanningStack(_db(args)).detect_stale_items(threshold_days=args.days)
    _print_json([s.to_dict() for s in stale])
    return 0


def _cmd_planning_peek(args: argparse.Namespace) -> int:
    _print_json(PlanningStack(_db(args)).peek_stack().to_dict())
    return 0


def _cmd_planning_progress(args: argparse.Namespace) -> int:
    stack = PlanningStack(_db(args))
    plan = stack.get_plan_by_goal(args.goal_id) or stack.get_plan(args.goal_id)
    if plan is None:
        return _not_found(f"plan for {args.goal_id}")
    _print_json(compute_plan_progress(plan, stack.get_steps(plan.id)).to_dict())
    return 0


def _cmd_planning_step_status(args: argparse.Namespace) -> int:
    if not PlanningStack(_db(args)).set_step_status(args.step_id, args.status):
        return _not_found(f"step {args.step_id}")
    print(f"Step {args.step_id} set to {args.status}")
    return 0


# ---------------------------------------------------------------------------
# session
# ---------------------------------------------------------------------------

def _cmd_session_start(args: argparse.Namespace) -> int:
    config = _config(args)
    result = session_start(
        Database(config.DB_PATH),
        config,
        embedder=EmbedderHandle.from_config(config),
        issue_number=args.issue,
        project_root=os.path.abspath(args.root),
        session=SessionContext.from_env(config),
    )
    for workflow in result.active_workflows:
        print(
            f"Active workflow {workflow.id}: issue #{workflow.issue_number} "
            f"({workflow.phase}, {workflow.status})",
            file=sys.stderr,
        )
    if result.context.output:
        print(result.context.output)
    return 0


def _cmd_session_end(args: argparse.Namespace) -> int:
    config = _config(args)
    root = os.path.abspath(args.root)
    commits = get_recent_commits(since=args.since, limit=args.limit, cwd=root)
    modified = args.modified_file or get_modified_files(args.diff_ref, cwd=root)
    result = session_end(
        Database(config.DB_PATH),
        workflow_id=args.workflow_id,
        commits=commits,
        modified_files=modified,
        interrupted=args.interrupted,
        session_id=SessionContext.from_env(config).session_id,
        embedder=EmbedderHandle.from_config(config),
    )
    print(f"Stored {result.learnings_stored} learning(s)")
    return 0


def _cmd_session_state(args: argparse.Namespace) -> int:
    session = SessionContext.from_env(_config(args))
    cmd = args.state_cmd
    if cmd == "show":
        state = session.load()
        if state is None:
            return _not_found(f"session state for {session.session_id}")
        _print_json(asdict(state))
    elif cmd == "summary":
        print(session.usage_summary())
    elif cmd == "init":
        session.init()
        print(f"Initialized session state: {session.session_id}")
    elif cmd == "clear":
        session.clear()
        print("Session state cleared")
    elif cmd == "has-graph":
        found = session.has_graph_been_queried()
        print("true" if found else "false")
        return 0 if found else 1
    elif cmd == "has-docs":
        found = session.has_docs_been_searched()
        print("true" if found else "false")
        return 0 if found else 1
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _add_json_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-recall",
        description="Persistent memory for coding agents: checkpoints, knowledge, "
                    "code graph and planning",
    )
    parser.add_argument("--db", help="Database file (overrides config)")
    parser.add_argument("--config", help="Path to .agent-recall.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --- workflow ---
    wf_p = subparsers.add_parser("workflow", help="Workflow checkpoints")
    wf = wf_p.add_subparsers(dest="workflow_cmd", metavar="ACTION")
    wf.required = True

    p = wf.add_parser("create", help="Create a workflow")
    p.add_argument("issue", type=int)
    p.add_argument("branch")
    p.add_argument("--worktree")
    p.set_defaults(func=_cmd_workflow_create)

    p = wf.add_parser("find", help="Most recent workflow for an issue")
    p.add_argument("issue", type=int)
    p.set_defaults(func=_cmd_workflow_find)

    p = wf.add_parser("get", help="Workflow with actions and commits")
    p.add_argument("id")
    p.set_defaults(func=_cmd_workflow_get)

    p = wf.add_parser("set-phase", help="Set workflow phase")
    p.add_argument("id")
    p.add_argument("phase", help=", ".join(Phase.ALL))
    p.set_defaults(func=_cmd_workflow_set_phase)

    p = wf.add_parser("set-status", help="Set workflow status")
    p.add_argument("id")
    p.add_argument("status", help=", ".join(WorkflowStatus.ALL))
    p.set_defaults(func=_cmd_workflow_set_status)

    p = wf.add_parser("log-action", help="Append an action")
    p.add_argument("id")
    p.add_argument("action")
    p.add_argument("result", help=", ".join(ActionResult.ALL))
    p.add_argument("--metadata", help="JSON object")
    p.set_defaults(func=_cmd_workflow_log_action)

    p = wf.add_parser("log-commit", help="Append a commit")
    p.add_argument("id")
    p.add_argument("sha")
    p.add_argument("message")
    p.set_defaults(func=_cmd_workflow_log_commit)

    p = wf.add_parser("list-active", help="Workflows that are not completed")
    p.set_defaults(func=_cmd_workflow_list_active)

    p = wf.add_parser("cleanup", help="Fail stale running workflows")
    p.add_argument("--hours", type=float, help="Staleness threshold (default from config)")
    p.add_argument("--completed", action="store_true", help="Also delete completed workflows")
    p.add_argument("--completed-hours", type=float, default=0,
                   help="Only delete completed workflows older than this")
    p.set_defaults(func=_cmd_workflow_cleanup)

    p = wf.add_parser("delete", help="Delete a workflow")
    p.add_argument("id")
    p.set_defaults(func=_cmd_workflow_delete)

    p = wf.add_parser("retry", help="Increment the retry counter")
    p.add_argument("id")
    p.set_defaults(func=_cmd_workflow_retry)

    # --- graph ---
    g_p = subparsers.add_parser("graph", help="Code graph")
    g = g_p.add_subparsers(dest="graph_cmd", metavar="ACTION")
    g.required = True

    p = g.add_parser("parse", help="Parse a package and print JSON")
    p.add_argument("path")
    p.add_argument("--name", help="Package name (default: directory name)")
    p.set_defaults(func=_cmd_graph_parse)

    p = g.add_parser("store", help="Store parse JSON (file or - for stdin)")
    p.add_argument("file")
    p.add_argument("--package", help="Package name (default: from the JSON)")
    p.set_defaults(func=_cmd_graph_store)

    p = g.add_parser("index", help="Incrementally re-index every package")
    p.add_argument("root", nargs="?", default=".")
    p.set_defaults(func=_cmd_graph_index)

    for name, func, help_text in [
        ("what-calls", _cmd_graph_what_calls, "Entities calling anything named like NAME"),
        ("callers", _cmd_graph_callers, "Entities calling exactly NAME"),
        ("what-depends-on", _cmd_graph_what_depends_on, "Entities depending on NAME"),
    ]:
        p = g.add_parser(name, help=help_text)
        p.add_argument("name")
        _add_json_flag(p)
        p.set_defaults(func=func)

    p = g.add_parser("find", help="Find entities by name")
    p.add_argument("name")
    p.add_argument("--kind")
    p.add_argument("--limit", type=int, default=50)
    _add_json_flag(p)
    p.set_defaults(func=_cmd_graph_find)

    p = g.add_parser("blast-radius", help="Everything transitively depending on TARGET")
    p.add_argument("target", help="Entity id, file path or name")
    p.add_argument("--depth", type=int, default=5)
    _add_json_flag(p)
    p.set_defaults(func=_cmd_graph_blast_radius)

    p = g.add_parser("exports", help="Exported entities")
    p.add_argument("--package")
    _add_json_flag(p)
    p.set_defaults(func=_cmd_graph_exports)

    p = g.add_parser("summary", help="Counts per package")
    _add_json_flag(p)
    p.set_defaults(func=_cmd_graph_summary)

    # --- knowledge ---
    k_p = subparsers.add_parser("knowledge", help="Knowledge graph")
    k = k_p.add_subparsers(dest="knowledge_cmd", metavar="ACTION")
    k.required = True

    p = k.add_parser("store", help="Store a learning")
    p.add_argument("content")
    p.add_argument("--code-area")
    p.add_argument("--file")
    p.add_argument("--issue", type=int)
    p.add_argument("--confidence", type=float)
    p.set_defaults(func=_cmd_knowledge_store)

    p = k.add_parser("query", help="Query learnings")
    p.add_argument("--code-area")
    p.add_argument("--file")
    p.add_argument("--issue", type=int)
    p.add_argument("--keywords", nargs="+")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=_cmd_knowledge_query)

    p = k.add_parser("search", help="Semantic search over learnings")
    p.add_argument("text")
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--threshold", type=float, default=0.3)
    p.set_defaults(func=_cmd_knowledge_search)

    p = k.add_parser("backfill", help="Embed learnings stored without an embedding")
    p.set_defaults(func=_cmd_knowledge_backfill)

    # --- planning ---
    pl_p = subparsers.add_parser("planning", help="Planning stack")
    pl = pl_p.add_subparsers(dest="planning_cmd", metavar="ACTION")
    pl.required = True

    p = pl.add_parser("push-goal", help="Push a goal")
    p.add_argument("title")
    p.add_argument("--issue", type=int)
    p.add_argument("--code-area", help="Code area the completion summary is filed under")
    p.set_defaults(func=_cmd_planning_push_goal)

    p = pl.add_parser("push-interrupt", help="Push an interrupt")
    p.add_argument("title")
    p.add_argument("--reason", required=True)
    p.set_defaults(func=_cmd_planning_push_interrupt)

    p = pl.add_parser("push-plan", help="Attach a plan to a goal")
    p.add_argument("goal_id")
    p.add_argument("title")
    p.add_argument("--source", default="manual", help="Source of truth for step status")
    p.set_defaults(func=_cmd_planning_push_plan)

    p = pl.add_parser("push-step", help="Add a step to a plan")
    p.add_argument("plan_id")
    p.add_argument("title")
    p.add_argument("--wave", type=int, default=1)
    p.add_argument("--depends-on", nargs="+")
    p.add_argument("--ordinal", type=int)
    p.set_defaults(func=_cmd_planning_push_step)

    p = pl.add_parser("pop", help="Complete the top item and store its summary as a learning")
    p.add_argument("--no-summary", action="store_true", help="Do not store a completion learning")
    p.set_defaults(func=_cmd_planning_pop)

    p = pl.add_parser("stale", help="List stacked items that look abandoned")
    p.add_argument("--days", type=float, default=7, help="Paused-inactivity threshold")
    p.set_defaults(func=_cmd_planning_stale)

    p = pl.add_parser("peek", help="Show the stack")
    p.set_defaults(func=_cmd_planning_peek)

    p = pl.add_parser("progress", help="Progress of a goal's plan")
    p.add_argument("goal_id", help="Goal id (or plan id)")
    p.set_defaults(func=_cmd_planning_progress)

    p = pl.add_parser("step-status", help="Set a step's status")
    p.add_argument("step_id")
    p.add_argument("status", help=", ".join(StepStatus.ALL))
    p.set_defaults(func=_cmd_planning_step_status)

    # --- session ---
    p = subparsers.add_parser("session-start", help="Print the session context block")
    p.add_argument("--issue", type=int)
    p.add_argument("--root", default=".")
    p.set_defaults(func=_cmd_session_start)

    p = subparsers.add_parser("session-end", help="Extract learnings from the session")
    p.add_argument("--workflow-id")
    p.add_argument("--since", help="Only commits after this (git log --since)")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--modified-file", action="append",
                   help="Touched file (repeatable; default: git diff against --diff-ref)")
    p.add_argument("--diff-ref", default="HEAD~1")
    p.add_argument("--interrupted", action="store_true")
    p.add_argument("--root", default=".")
    p.set_defaults(func=_cmd_session_end)

    p = subparsers.add_parser("session-state", help="Session tool usage state")
    p.add_argument("state_cmd", choices=["show", "summary", "init", "clear",
                                         "has-graph", "has-docs"])
    p.set_defaults(func=_cmd_session_state)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for ``agent-recall``.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not logging.root.handlers:
        level = logging.DEBUG if args.verbose else Config.load(args.config).LOG_LEVEL
        logging.basicConfig(
            level=level,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    try:
        return args.func(args)
    except AgentRecallError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
