#!/usr/bin/env python3
"""
Retail Ledger Job Runner

Runs the monthly interest & maturity job once, or stays up and runs it on
the configured schedule (first day of the month, 00:00 UTC by default).
"""

import argparse
import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from retail_ledger.config import get_config
from retail_ledger.errors import BankingError
from retail_ledger.logging_config import setup_logging
from retail_ledger.service import BankingService


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the retail ledger monthly interest job")
    parser.add_argument("--as-of", help="ISO timestamp to run the job as of (UTC if naive)")
    parser.add_argument("--loop", action="store_true",
                        help="Keep running and execute the job at every scheduled time")
    parser.add_argument("--database-url", help="Override RETAIL_LEDGER_DATABASE_URL")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = get_config()
    if args.database_url:
        config = config.model_copy(update={"database_url": args.database_url})
    logger = setup_logging(config.log_level, config.log_format)
    
    service = BankingService.from_config(config)
    try:
        if not args.loop:
            as_of = None
            if args.as_of:
                as_of = datetime.fromisoformat(args.as_of)
                if as_of.tzinfo is None:
                    as_of = as_of.replace(tzinfo=timezone.utc)
            results = service.run_monthly_interest_job(as_of)
            print(json.dumps(results, indent=2))
            return 0
        
        while True:
            next_run = service.next_interest_job_run(datetime.now(timezone.utc))
            logger.info(f"Next monthly interest job at {next_run.isoformat()}")
            while datetime.now(timezone.utc) < next_run:
                remaining = (next_run - datetime.now(timezone.utc)).total_seconds()
                time.sleep(max(1, min(remaining, config.interest_job_poll_seconds or remaining)))
            service.run_monthly_interest_job(next_run)
    except KeyboardInterrupt:
        logger.info("Shutting down job runner")
        return 0
    except BankingError as e:
        logger.error(f"Job runner failed: {e.message}", exc_info=True)
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
