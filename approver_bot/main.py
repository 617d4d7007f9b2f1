#!/usr/bin/env python3
"""
Approver Bot - Main Entry Point

Usage:
    approver-bot                      # Serve HTTP (default)
    approver-bot --approve            # One thorough approval, then exit
    approver-bot --approve-fast       # One fast approval, then exit
    approver-bot --status             # Probe the session: OK / LOGIN_REQUIRED / FAIL
    approver-bot --health             # Print the health summary
"""

import argparse
import json
import logging
import sys
import traceback
from datetime import datetime

import uvicorn

from approver_bot.config import LOG_FILE, LOG_LEVEL, PORT, validate_credentials
from approver_bot.models import ExecutionMode
from approver_bot.utils import setup_logging

logger = logging.getLogger('approver_bot.main')


def approve_mode(mode: ExecutionMode, ts=None) -> int:
    """Run one approval. Exit code 0 on success."""
    from approver_bot.approval_pipeline import ApprovalPipeline

    pipeline = ApprovalPipeline()
    try:
        outcome = pipeline.submit_approval(ts, mode)
        print(json.dumps(outcome.to_dict(), indent=2))
        return 0 if outcome.success else 1
    finally:
        pipeline.shutdown()


def status_mode() -> int:
    from approver_bot.approval_pipeline import ApprovalPipeline

    pipeline = ApprovalPipeline()
    try:
        status = pipeline.get_session_status()
        print(json.dumps({"ok": True, "status": status.value}))
        return 0
    finally:
        pipeline.shutdown()


def health_mode() -> int:
    from approver_bot.approval_pipeline import ApprovalPipeline

    pipeline = ApprovalPipeline()
    try:
        print(json.dumps(pipeline.get_health(), indent=2))
        return 0
    finally:
        pipeline.shutdown()


def serve_mode(port: int):
    from approver_bot.server import app

    logger.info(f"Serving on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


def get_mode_name(args) -> str:
    if args.approve:
        return "APPROVE"
    elif args.approve_fast:
        return "APPROVE-FAST"
    elif args.status:
        return "STATUS"
    elif args.health:
        return "HEALTH"
    return "SERVE"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Approver Bot - approve pending dashboard actions on trigger',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    approver-bot                    Start the HTTP service
    approver-bot --approve          One thorough approval
    approver-bot --approve-fast     One fast approval
    approver-bot --status           Show login status
    approver-bot --health           Show health summary
        """
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument('--approve', action='store_true',
                       help='Run one thorough approval and exit')
    modes.add_argument('--approve-fast', action='store_true',
                       help='Run one fast approval and exit')
    modes.add_argument('--status', action='store_true',
                       help='Probe the session login status')
    modes.add_argument('--health', action='store_true',
                       help='Print the health summary')

    parser.add_argument('--ts', default=None,
                        help='Trigger timestamp (epoch or ISO-8601); defaults to now')
    parser.add_argument('--port', type=int, default=PORT,
                        help=f'HTTP port (default: {PORT})')
    parser.add_argument('--log-level', default=LOG_LEVEL.upper(),
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help=f'Logging level (default: {LOG_LEVEL.upper()})')
    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level, LOG_FILE)

    logger.info("=" * 60)
    logger.info("APPROVER BOT")
    logger.info(f"Started: {datetime.now()}")
    logger.info(f"Mode: {get_mode_name(args)}")
    logger.info("=" * 60)

    try:
        validate_credentials()
    except ValueError as e:
        logger.warning(f"{e}\nRelying on the saved session state only.")

    try:
        if args.approve:
            sys.exit(approve_mode(ExecutionMode.THOROUGH, args.ts))
        elif args.approve_fast:
            sys.exit(approve_mode(ExecutionMode.FAST, args.ts))
        elif args.status:
            sys.exit(status_mode())
        elif args.health:
            sys.exit(health_mode())
        else:
            serve_mode(args.port)

    except KeyboardInterrupt:
        logger.info("Bot stopped by user")

    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        logger.critical(traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    main()
