#!/usr/bin/env python3
"""Run the deep context pipeline in the foreground and log everything it emits."""

import argparse
import logging
import threading
from typing import Any, Dict, List, Optional

from cloud_sync import CloudSyncListener
from context_schema import Commitment, PendingFollowUp, ScreenAnalysis, ScreenCapture
from pipeline import PipelineListener, PipelineOrchestrator
from settings_store import load_settings

logger = logging.getLogger("followthrough")


class LoggingListener(PipelineListener):
    def on_commitment_detected(self, commitment: Commitment) -> None:
        logger.info("commitment_detected [%s] %s", commitment.type, commitment.text)

    def on_action_completed(self, details: Dict[str, Any]) -> None:
        logger.info("action_completed %s", details)

    def on_follow_up_needed(self, follow_ups: List[PendingFollowUp]) -> None:
        for follow_up in follow_ups:
            logger.info(
                "follow_up_needed (%s) %s: %s",
                follow_up.urgency,
                follow_up.suggested_action,
                follow_up.commitment.text,
            )

    def on_context_updated(self, capture: ScreenCapture, analysis: Optional[ScreenAnalysis]) -> None:
        activity = analysis.activity if analysis else "unanalyzed"
        logger.info("context_updated %s - %s (%s)", capture.app_name, capture.window_title[:40], activity)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FollowThrough deep context pipeline")
    parser.add_argument("--interval", type=float, default=None, help="Capture interval in seconds")
    parser.add_argument("--db", default=None, help="SQLite database path")
    parser.add_argument("--no-llm", action="store_true", help="Use heuristic analysis only")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    changes: Dict[str, Any] = {}
    if args.interval is not None:
        changes["capture_interval_ms"] = int(max(1.0, args.interval) * 1000)
    if args.no_llm:
        changes["llm_enabled"] = False
    settings = load_settings().merged(changes)

    pipeline = PipelineOrchestrator(settings, db_path=args.db)
    pipeline.add_listener(LoggingListener())
    sync = CloudSyncListener(pipeline.store)
    pipeline.add_listener(sync)
    sync.sync_backlog()

    pipeline.start()
    if not pipeline.is_running:
        return
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        pipeline.stop()
        status = pipeline.get_status()
        logger.info(
            "Processed %d capture(s), %d commitment(s), %d completed action(s).",
            status.captures_processed,
            status.commitments_detected,
            status.actions_completed,
        )


if __name__ == "__main__":
    main()
