#!/usr/bin/env python3
"""CLI entry point for infra-orchestrator.

Verb commands:
- validate: Check manifest structure, references and cycles
- plan: Compute the change-set (exit 0 no changes, 2 changes, 1 error)
- apply: Execute a saved plan, or plan and apply a manifest
- destroy: Destroy every managed resource
- show: Print a saved plan
- state: Inspect managed resources (list/show)
- force-unlock: Remove a stuck state lock
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

# Verb commands
COMMANDS = {
    "validate": "Validate manifest structure and dependencies",
    "plan": "Compute the changes needed to reach the desired state",
    "apply": "Apply a plan (or a manifest) to the infrastructure",
    "destroy": "Destroy every managed resource",
    "show": "Show a saved plan",
    "state": "Inspect managed resources (list/show)",
    "force-unlock": "Remove a stuck state lock",
}


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"infra-orchestrator {get_version()}")
    print()
    print("Usage: infra-orchestrator <command> [options]")
    print()
    print("Commands:")
    for verb, desc in COMMANDS.items():
        print(f"  {verb:<14} {desc}")
    print()
    print("Run 'infra-orchestrator <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  infra-orchestrator plan -f stack.yaml -o plan.json")
    print("  infra-orchestrator apply plan.json")
    print("  infra-orchestrator destroy -f stack.yaml --yes")


def dispatch(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from orchestrator import cli as verbs

    handlers = {
        "validate": verbs.validate_main,
        "plan": verbs.plan_main,
        "apply": verbs.apply_main,
        "destroy": verbs.destroy_main,
        "show": verbs.show_main,
        "state": verbs.state_main,
        "force-unlock": verbs.force_unlock_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to verb handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"infra-orchestrator {get_version()}")
        return 0

    verb = argv[0]
    if verb not in COMMANDS:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 1
    return dispatch(verb, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
