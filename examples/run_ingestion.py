#!/usr/bin/env python3
"""
Example usage of the event ingestion core.

Runs one incremental sync, optionally backfills the previous day, drains the
reference-data queue and prints the monitoring snapshot. A real deployment
would run each of these as a separate scheduled job.

Usage:
    python examples/run_ingestion.py [config/ingestion_config.yaml] [--backfill]
"""

import logging
import sys
from datetime import UTC, datetime, timedelta

from fleet_event_sync import IngestionContext, load_config, setup_logger

# Child of the package logger so setup_logger() covers it.
logger = logging.getLogger('fleet_event_sync.example')


def drain_reference_queue(context: IngestionContext) -> None:
    """Process every waiting reference refresh job."""
    while (job := context.reference_queue.claim_next()) is not None:
        logger.info('Running %s (%s)', job.job_name, job.payload.get('source'))
        result = context.reference_sync().sync_all()
        if result.succeeded:
            context.reference_queue.mark_completed(job.id)
        else:
            context.reference_queue.mark_failed(job.id, str(result.errors))


def main() -> None:
    """Run one pass of every ingestion job."""
    arguments: list[str] = [arg for arg in sys.argv[1:] if not arg.startswith('--')]
    config = load_config(arguments[0] if arguments else None)
    setup_logger(config=config.logging)

    with IngestionContext.from_config(config) as context:
        result = context.incremental_worker().run()
        logger.info(
            'Incremental: %d pages, %d new events, token %s',
            result.pages,
            result.events_inserted,
            result.final_token,
        )

        if '--backfill' in sys.argv:
            today = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
            load = context.backfill_service.start_load(
                today - timedelta(days=1), today
            )
            backfill_result = context.backfill_worker().run(
                load.job_id, context.backfill_service.cancellation_token(load.job_id)
            )
            logger.info(
                'Backfill %s: %s, %d events over %d hours',
                backfill_result.job_id,
                backfill_result.status.value,
                backfill_result.events_processed,
                backfill_result.hours_processed,
            )

        drain_reference_queue(context)

        status = context.status_service().get_status()
        print(status.model_dump_json(indent=2))

        metrics = context.status_service().get_metrics(days=7, top_n=5)
        for bucket in metrics.daily:
            print(f'{bucket.bucket_start:%Y-%m-%d}  {bucket.events:>8}')


if __name__ == '__main__':
    main()
