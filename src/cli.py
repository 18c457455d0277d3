#!/usr/bin/env python3
"""CLI entry point for range-driver.

Noun-action subcommands:
- build: Reconcile a topology (apply/plan/taint/show)
- topology: Topology utilities (validate)

Example:
    range-driver build apply -t ranges/cdc.yaml --workers 8
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "build": "Reconcile a topology (apply/plan/taint/show)",
    "topology": "Topology utilities (validate)",
}

BUILD_ACTIONS = {
    "apply": "Build or update the topology incrementally",
    "plan": "Show what a build would change (dry run)",
    "taint": "Force nodes to be reapplied on the next build",
    "show": "Render the topology tree with record status",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
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


def dispatch_build(argv: list) -> int:
    """Dispatch 'build' noun to action-specific handler.

    Args:
        argv: Arguments after 'build' (e.g., ['apply', '-t', 'cdc.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: range-driver build <action> [options]")
        print()
        print("Actions:")
        for action, desc in BUILD_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'range-driver build <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "apply":
        from build_opr.cli import apply_main
        rc: int = apply_main(rest)
        return rc
    if action == "plan":
        from build_opr.cli import plan_main
        rc = plan_main(rest)
        return rc
    if action == "taint":
        from build_opr.cli import taint_main
        rc = taint_main(rest)
        return rc
    if action == "show":
        from build_opr.cli import show_main
        rc = show_main(rest)
        return rc

    print(f"Error: Unknown build action '{action}'")
    print(f"Available actions: {', '.join(BUILD_ACTIONS)}")
    return 1


def dispatch_topology(argv: list) -> int:
    """Dispatch 'topology' noun."""
    if not argv or argv[0].startswith('-'):
        print("Usage: range-driver topology validate -t <topology.yaml>")
        return 1 if not argv else 0

    if argv[0] == "validate":
        from build_opr.cli import validate_main
        rc: int = validate_main(argv[1:])
        return rc

    print(f"Error: Unknown topology action '{argv[0]}'")
    print("Available actions: validate")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "build")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "build":
        return dispatch_build(argv)
    if noun == "topology":
        return dispatch_topology(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"range-driver {get_version()}")
    print()
    print("Usage: range-driver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'range-driver <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  range-driver build plan -t ranges/cdc.yaml")
    print("  range-driver build apply -t ranges/cdc.yaml --workers 8")
    print("  range-driver build taint -t ranges/cdc.yaml cdc/networks/vdi/hosts/dc")
    print("  range-driver build show -t ranges/cdc.yaml --depth 2")
    print("  range-driver topology validate -t ranges/cdc.yaml")


def main(argv=None):
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"range-driver {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
