"""
Command-line entry point for the CaseFlow sync client.

Useful for scripting and for checking a device's local state: sign in,
list cached or remote cases, drain the offline queue, submit a case.
"""

import os
import sys
import json
import asyncio
import argparse
import logging
from dataclasses import asdict

from caseflow.config import ClientConfiguration
from caseflow.context import CaseFlowClient
from caseflow.exceptions import CaseFlowError
from caseflow.logging_config import LogFormat, LogLevel, setup_logging, log_structured_error
from caseflow.models import CaseQuery

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AUTH_FAILED = 2
EXIT_INTERRUPTED = 130


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="CaseFlow field verification sync client",
        epilog="""
Examples:
  %(prog)s --login agent01          # Sign in (password from CASEFLOW_PASSWORD or --password)
  %(prog)s --status --json          # Show session and queue state as JSON
  %(prog)s --list --offline         # List cases from the local cache only
  %(prog)s --sync                   # Replay queued offline changes
  %(prog)s --submit CASE-001        # Submit a completed case
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group(required=True)
    operation_group.add_argument("--login", type=str, metavar="USERNAME",
                                 help="Sign in and store the session")
    operation_group.add_argument("--logout", action="store_true",
                                 help="Sign out and clear stored tokens")
    operation_group.add_argument("--status", action="store_true",
                                 help="Show session, connectivity and queue state")
    operation_group.add_argument("--list", action="store_true",
                                 help="List cases")
    operation_group.add_argument("--sync", action="store_true",
                                 help="Replay queued offline mutations")
    operation_group.add_argument("--submit", type=str, metavar="CASE_ID",
                                 help="Submit a case")

    parser.add_argument("--password", type=str, help="Password for --login")
    parser.add_argument("--page", type=int, default=1, help="Page for --list")
    parser.add_argument("--case-status", type=str, help="Status filter for --list")
    parser.add_argument("--search", type=str, help="Search text for --list")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")
    config_group.add_argument("--offline", action="store_true",
                              help="Work from the local cache only")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Print results as JSON")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to this file")

    return parser.parse_args(argv)


def configure_logging(args, config: ClientConfiguration) -> None:
    if args.debug:
        level = LogLevel.DEBUG
    elif args.json:
        # Keep stdout clean for machine-readable output
        level = LogLevel.ERROR
    else:
        level = LogLevel(config.get_log_level()) if config.get_log_level() in LogLevel.__members__ else LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        enable_audit=True
    )


def _emit(args, payload, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


async def run_command(args, client: CaseFlowClient) -> int:
    if args.login:
        password = args.password or os.environ.get('CASEFLOW_PASSWORD')
        if not password:
            print("Error: no password given (use --password or CASEFLOW_PASSWORD)", file=sys.stderr)
            return EXIT_AUTH_FAILED
        result = await client.login(args.login, password)
        if result.success:
            _emit(args, {'success': True, 'user': result.user.to_dict()}, f"Signed in as {result.user.name or args.login}")
            return EXIT_OK
        _emit(args, {'success': False, 'error': result.error}, f"Login failed: {result.error['message']}")
        return EXIT_AUTH_FAILED

    if args.logout:
        result = await client.logout()
        _emit(args, asdict(result), "Signed out" if result.success else result.error['message'])
        return EXIT_OK

    if args.status:
        status = await client.get_status()
        lines = [
            f"Server:        {status['server_url']}",
            f"Authenticated: {status['authenticated']}",
            f"Online:        {status['online']} (offline mode: {status['offline_mode']})",
            f"Cached cases:  {status['cached_cases']}",
            f"Pending sync:  {status['pending_sync']}",
        ]
        _emit(args, status, "\n".join(lines))
        return EXIT_OK

    if args.list:
        query = CaseQuery(
            page=args.page,
            limit=client.config.get_page_size(),
            status=args.case_status,
            search=args.search
        )
        response = await client.list_cases(query)
        payload = {
            'source': response.source,
            'cases': [case.to_dict() for case in response.cases],
            'pagination': response.pagination.to_dict(),
        }
        lines = [f"{case.id:<12} {case.status:<12} {case.title}" for case in response.cases]
        lines.append(
            f"Page {response.pagination.page}/{max(response.pagination.total_pages, 1)} "
            f"({response.pagination.total} cases, {response.source})"
        )
        _emit(args, payload, "\n".join(lines))
        return EXIT_OK

    if args.sync:
        result = await client.sync()
        text = f"Synced {result.synced_count} change(s)"
        if result.errors:
            text += "\n" + "\n".join(f"  {error}" for error in result.errors)
        _emit(args, asdict(result), text)
        return EXIT_OK if result.success else EXIT_FAILED

    if args.submit:
        result = await client.submit_case(args.submit)
        _emit(args, asdict(result), "Submitted" if result.success else f"Submission failed: {result.error}")
        return EXIT_OK if result.success else EXIT_FAILED

    return EXIT_FAILED


async def _run(args, config: ClientConfiguration) -> int:
    async with CaseFlowClient(config) as client:
        return await run_command(args, client)


def main(argv=None) -> int:
    """Main entry point for the client."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server.url', args.server_url)
        if args.offline:
            config.set_override('sync.offline_mode', True)

        configure_logging(args, config)
        return asyncio.run(_run(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except CaseFlowError as e:
        log_structured_error(logger, e)
        print(f"Error: {e.user_message}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
