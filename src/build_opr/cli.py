"""CLI handlers for build verb commands (apply, plan, taint, show) and topology validate.

Usage:
    range-driver build apply -t <topology.yaml> [--workers N] [--json-output] [--report-dir D] [--verbose]
    range-driver build plan -t <topology.yaml> [--json-output]
    range-driver build taint -t <topology.yaml> <node id> [<node id> ...]
    range-driver build show -t <topology.yaml> [--depth N]
    range-driver topology validate -t <topology.yaml>
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from actions import default_provisioners
from build_opr.executor import BuildAbortedError, BuildExecutor
from build_opr.formatter import format_tree
from build_opr.revision import CorruptRevisionError, RevisionNotFoundError, RevisionStoreError
from config import BuildConfig, ConfigError, load_build_config
from topology import Topology, load_topology

logger = logging.getLogger(__name__)


def _common_parser(verb: str, noun: str = 'build') -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'range-driver {noun} {verb}',
        description=f'{verb.capitalize()} a range topology',
    )
    parser.add_argument(
        '--topology', '-t',
        help='Path to topology YAML file',
    )
    parser.add_argument(
        '--topology-json',
        help='Inline topology JSON',
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to range.yaml (default: discovered)',
    )
    parser.add_argument(
        '--build-root',
        help='Directory holding revision records (overrides config)',
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


def _load(args, **overrides) -> tuple[Topology, BuildConfig]:
    """Load topology and build config from parsed args.

    Raises:
        SystemExit: On missing or invalid input
    """
    if not args.topology and not args.topology_json:
        print("Error: specify a topology with -t or --topology-json", file=sys.stderr)
        sys.exit(1)

    try:
        topology = load_topology(file_path=args.topology, json_str=args.topology_json)
        config = load_build_config(args.config, build_root=args.build_root, **overrides)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    return topology, config


def _executor(topology: Topology, config: BuildConfig) -> BuildExecutor:
    return BuildExecutor(
        topology=topology,
        config=config,
        provisioners=default_provisioners(config),
    )


def _print_report(report) -> None:
    print("")
    print("=" * 65)
    print(f"  {'PLAN' if report.dry_run else 'BUILD'}: {report.topology}")
    print("=" * 65)
    for outcome in report.outcomes:
        action = outcome.action or '-'
        line = f"  {action:<8} {outcome.status:<10} {outcome.id}"
        if outcome.message and outcome.status in ('failed', 'skipped'):
            line += f"  ({outcome.message})"
        print(line)
    print("")
    print(f"  {report.summary()}")
    print("")


def apply_main(argv: list) -> int:
    """Handle 'build apply' verb."""
    parser = _common_parser('apply')
    parser.add_argument(
        '--workers', '-w',
        type=int,
        help='Maximum nodes applied concurrently (overrides config)',
    )
    parser.add_argument(
        '--report-dir',
        help='Write JSON and Markdown reports to this directory',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    topology, config = _load(args, workers=args.workers, report_dir=args.report_dir)
    executor = _executor(topology, config)

    def _on_signal(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling build...")
        executor.cancel()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = executor.apply()
    except BuildAbortedError as e:
        logger.error(f"Build aborted: {e}")
        report = e.report
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if config.report_dir:
        for path in report.write(config.report_dir):
            logger.info(f"Report written: {path}")

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)
    return report.exit_code


def plan_main(argv: list) -> int:
    """Handle 'build plan' verb (dry run)."""
    parser = _common_parser('plan')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    topology, config = _load(args)
    try:
        report = _executor(topology, config).plan()
    except RevisionStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)
    return 0 if not report.failures else 1


def taint_main(argv: list) -> int:
    """Handle 'build taint' verb."""
    parser = _common_parser('taint')
    parser.add_argument(
        'node_ids',
        nargs='+',
        help='Ids of nodes to force-reapply on the next build',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    topology, config = _load(args)
    executor = _executor(topology, config)

    rc = 0
    tainted = []
    for node_id in args.node_ids:
        try:
            revision = executor.taint(node_id)
        except KeyError:
            print(f"Error: unknown node '{node_id}'", file=sys.stderr)
            rc = 1
            continue
        except (RevisionNotFoundError, CorruptRevisionError):
            print(f"Error: node '{node_id}' has no readable record (never built?)", file=sys.stderr)
            rc = 1
            continue
        except RevisionStoreError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        tainted.append(revision.id)
        if not args.json_output:
            print(f"Tainted {revision.id}")

    if args.json_output:
        print(json.dumps({'tainted': tainted, 'success': rc == 0}, indent=2))
    return rc


def show_main(argv: list) -> int:
    """Handle 'build show' verb (tree introspection)."""
    parser = _common_parser('show')
    parser.add_argument(
        '--depth',
        type=int,
        help='Render only the first N levels below the environment',
    )
    parser.add_argument(
        '--node',
        help='Render the subtree rooted at this node id',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    topology, config = _load(args)
    executor = _executor(topology, config)
    try:
        node = topology.get(args.node) if args.node else topology.root
    except KeyError:
        print(f"Error: unknown node '{args.node}'", file=sys.stderr)
        return 1

    revisions = {}
    for _, walked in executor.graph.walk():
        revision = executor.store.lookup(walked)
        if revision.persisted:
            revisions[walked.id] = revision

    if args.json_output:
        nodes = []
        for depth, walked in executor.graph.walk():
            if args.depth is not None and depth > args.depth:
                continue
            entry = {'id': walked.id, 'kind': walked.kind.value, 'depth': depth}
            if walked.id in revisions:
                entry['status'] = revisions[walked.id].status.value
                entry['external_id'] = revisions[walked.id].external_id
            nodes.append(entry)
        print(json.dumps({'topology': topology.name, 'nodes': nodes}, indent=2))
    else:
        print(format_tree(node, max_depth=args.depth, revisions=revisions), end='')
    return 0


def validate_main(argv: list) -> int:
    """Handle 'topology validate' verb."""
    parser = argparse.ArgumentParser(
        prog='range-driver topology validate',
        description='Validate topology structure',
    )
    parser.add_argument(
        '--topology', '-t',
        help='Path to topology YAML file',
    )
    parser.add_argument(
        '--topology-json',
        help='Inline topology JSON',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.topology and not args.topology_json:
        print("Error: specify a topology with -t or --topology-json", file=sys.stderr)
        return 1

    try:
        topology = load_topology(file_path=args.topology, json_str=args.topology_json)
    except ConfigError as e:
        print(f"Topology is invalid: {e}", file=sys.stderr)
        return 1

    node_count = len(topology.nodes())
    print(f"Topology '{topology.name}' is valid ({node_count} node{'s' if node_count != 1 else ''})")
    return 0
