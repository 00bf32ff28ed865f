"""CLI handlers for plan/apply verb commands.

Usage:
    infra-orchestrator validate -f <manifest>
    infra-orchestrator plan -f <manifest> [-o plan.json] [--destroy] [--target ID] [--var k=v]
    infra-orchestrator apply <plan.json> | -f <manifest> [--yes]
    infra-orchestrator destroy [-f <manifest>] [--target ID] [--yes]
    infra-orchestrator show <plan.json>
    infra-orchestrator state list|show <ID>
    infra-orchestrator force-unlock <LOCK_ID>

Exit codes:
    plan: 0 no changes, 2 changes pending, 1 error
    apply/destroy: 0 success, 1 failure
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from config import OrchestratorConfig, load_config
from errors import OrchestratorError
from manifest import Manifest, load_manifest, parse_var_args
from orchestrator.executor import ApplyExecutor, ApplyResult
from orchestrator.graph import ResourceGraph
from orchestrator.planner import Plan, PlanEngine
from orchestrator.state import StateStore
from providers import get_provider
from reporting.report import ApplyReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'infra-orchestrator {verb}',
        description=description,
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to orchestrator.yaml (override: INFRA_ORCHESTRATOR_CONFIG env var)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_manifest_args(parser: argparse.ArgumentParser, required: bool = False) -> None:
    parser.add_argument(
        '--file', '-f',
        required=required,
        help='Manifest YAML file or directory of YAML files',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline manifest JSON',
    )
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Override a manifest variable (repeatable)',
    )


def _add_plan_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--target', '-t',
        action='append',
        default=[],
        metavar='ID',
        help='Limit the plan to a resource id and what it needs (repeatable)',
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Skip reading current resource state from the provider',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return EXIT_ERROR


def _load_manifest(args, required: bool = True) -> Optional[Manifest]:
    """Load the manifest named by -f / --manifest-json, or None if not given."""
    if not args.file and not args.manifest_json:
        if required:
            raise OrchestratorError("specify a manifest with -f/--file or --manifest-json")
        return None
    return load_manifest(
        path=args.file,
        json_str=args.manifest_json,
        variables=parse_var_args(args.var),
    )


def _confirm(prompt: str) -> bool:
    try:
        response = input(f"{prompt} [y/N] ").strip().lower()
    except EOFError:
        # stdin closed, treat as no
        print()
        return False
    return response == 'y'


def _nothing_to_do(verb: str, args, message: str) -> int:
    """Report an apply or destroy that has no operations to run."""
    if args.json_output:
        print(json.dumps({'verb': verb, **ApplyResult().to_dict()}, indent=2))
    else:
        print(message)
    return EXIT_OK


def _make_plan(args, config: OrchestratorConfig, destroy: bool = False) -> Plan:
    manifest = _load_manifest(args, required=not destroy)
    store = StateStore(config.state_path)
    state = store.load()
    refresh = not args.no_refresh and not destroy
    provider = get_provider(config.provider) if refresh else None
    engine = PlanEngine(provider=provider, refresh=refresh, retry=config.retry)
    return engine.plan(manifest, state, destroy=destroy, targets=args.target or None)


def _build_executor(config: OrchestratorConfig, plan: Plan) -> ApplyExecutor:
    """Executor settings: plan (manifest) settings override config."""
    return ApplyExecutor(
        provider=get_provider(config.provider),
        store=StateStore(config.state_path),
        max_workers=plan.settings.get('max_workers') or config.max_workers,
        on_error=plan.settings.get('on_error') or config.on_error,
        retry=config.retry,
    )


def _print_result(verb: str, result: ApplyResult) -> None:
    counts = result.counts()
    if result.success:
        print(f"\n{verb.capitalize()} complete! ", end='')
    else:
        print(f"\n{verb.capitalize()} failed. ", end='')
    print(
        f"Resources: {counts['succeeded']} succeeded, {counts['failed']} failed, "
        f"{counts['skipped']} skipped, {counts['canceled']} canceled."
    )
    for s in result.operations.values():
        if s.status != 'succeeded':
            print(f"  ✗ {s.resource_id} ({s.action}) {s.status}: {s.error}")
    for s in result.rollback:
        print(f"  rollback {s.resource_id}: {s.status}")


def _execute_plan(verb: str, args, config: OrchestratorConfig, plan: Plan) -> int:
    executor = _build_executor(config, plan)
    result = executor.apply(plan)

    if getattr(args, 'report_dir', None):
        report = ApplyReport(report_dir=Path(args.report_dir), manifest_name=plan.manifest_name, mode=plan.mode)
        for path in report.write(result):
            logger.info(f"Wrote report {path}")

    if args.json_output:
        output = {'verb': verb, **result.to_dict()}
        print(json.dumps(output, indent=2))
    else:
        _print_result(verb, result)
    return EXIT_OK if result.success else EXIT_ERROR


def validate_main(argv: list) -> int:
    """Handle 'validate' verb: schema, references and cycle checks."""
    parser = _common_parser('validate', 'Validate manifest structure and dependencies')
    _add_manifest_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest = _load_manifest(args)
        graph = ResourceGraph(manifest)
    except OrchestratorError as e:
        if args.json_output:
            print(json.dumps({'valid': False, 'error': str(e)}, indent=2))
            return EXIT_ERROR
        return _error(str(e))

    count = len(graph)
    if args.json_output:
        print(json.dumps({
            'valid': True,
            'name': manifest.name,
            'resources': [n.id for n in graph.create_order()],
            'manifest': manifest.to_dict(),
        }, indent=2))
    else:
        print(f"Manifest '{manifest.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    return EXIT_OK


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Compute the changes needed to reach the desired state')
    _add_manifest_args(parser)
    _add_plan_args(parser)
    parser.add_argument(
        '--out', '-o',
        help='Write the plan to this file for a later apply',
    )
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan the destruction of every managed resource',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(args.config)
        plan = _make_plan(args, config, destroy=args.destroy)
        if args.out:
            plan.save(args.out)
    except OrchestratorError as e:
        return _error(str(e))

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(plan.render())
        if args.out and plan.has_changes:
            print(f"\nSaved plan to {args.out}. Run: infra-orchestrator apply {args.out}")

    return EXIT_CHANGES if plan.has_changes else EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb: execute a saved plan, or plan and apply in one step."""
    parser = _common_parser('apply', 'Apply a plan to the infrastructure')
    parser.add_argument(
        'plan_file',
        nargs='?',
        help='Plan file written by "plan --out"',
    )
    _add_manifest_args(parser)
    _add_plan_args(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--report-dir',
        help='Write JSON and Markdown apply reports to this directory',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(args.config)
        if args.plan_file:
            plan = Plan.load(args.plan_file)
        elif args.file or args.manifest_json:
            plan = _make_plan(args, config)
            if not plan.has_changes:
                return _nothing_to_do('apply', args, plan.render())
            if not args.json_output:
                print(plan.render())
            if not args.yes and not _confirm("\nApply these changes?"):
                print("Aborted.")
                return EXIT_ERROR
        else:
            return _error("specify a plan file or a manifest with -f/--file")

        logger.info(f"Applying {len(plan.operations)} operation(s) from plan '{plan.manifest_name}'")
        return _execute_plan('apply', args, config, plan)
    except OrchestratorError as e:
        return _error(str(e))


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Destroy every managed resource')
    _add_manifest_args(parser)
    _add_plan_args(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--report-dir',
        help='Write JSON and Markdown apply reports to this directory',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(args.config)
        plan = _make_plan(args, config, destroy=True)
        if not plan.has_changes:
            return _nothing_to_do('destroy', args, "No managed resources to destroy.")

        if not args.json_output:
            print(plan.render())
        # Confirmation for destructive operation
        if not args.yes:
            print(f"\nWARNING: This will destroy {len(plan.operations)} resource(s).")
            print("This action cannot be undone.")
            if not _confirm("Continue?"):
                print("Aborted.")
                return EXIT_ERROR

        logger.info(f"Destroying {len(plan.operations)} resource(s)")
        return _execute_plan('destroy', args, config, plan)
    except OrchestratorError as e:
        return _error(str(e))


def show_main(argv: list) -> int:
    """Handle 'show' verb: print a saved plan."""
    parser = _common_parser('show', 'Show a saved plan')
    parser.add_argument('plan_file', help='Plan file written by "plan --out"')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        plan = Plan.load(args.plan_file)
    except OrchestratorError as e:
        return _error(str(e))

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(f"Plan for '{plan.manifest_name}' ({plan.mode}, state serial {plan.serial})")
        print()
        print(plan.render())
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state list' and 'state show <ID>'."""
    parser = _common_parser('state', 'Inspect managed resources')
    parser.add_argument('action', choices=['list', 'show'])
    parser.add_argument('resource_id', nargs='?')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(args.config)
        state = StateStore(config.state_path).load()
    except OrchestratorError as e:
        return _error(str(e))

    if args.action == 'list':
        if args.json_output:
            print(json.dumps({'serial': state.serial, 'lineage': state.lineage, 'resources': state.ids()}, indent=2))
        else:
            for rid in state.ids():
                print(rid)
        return EXIT_OK

    if not args.resource_id:
        return _error("state show requires a resource id")
    resource = state.get(args.resource_id)
    if resource is None:
        return _error(f"Resource '{args.resource_id}' not in state")
    print(json.dumps({'id': resource.id, **resource.to_dict()}, indent=2))
    return EXIT_OK


def force_unlock_main(argv: list) -> int:
    """Handle 'force-unlock' verb."""
    parser = _common_parser('force-unlock', 'Remove a stuck state lock')
    parser.add_argument('lock_id', help='Lock id reported by the lock error')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(args.config)
        StateStore(config.state_path).force_unlock(args.lock_id)
    except OrchestratorError as e:
        return _error(str(e))
    print("State lock released.")
    return EXIT_OK
